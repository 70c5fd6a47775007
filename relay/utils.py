"""
Utility functions for the relay API.
"""

import hmac
import hashlib
import logging
from datetime import datetime, timezone
from typing import Optional, Union

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


def verify_hmac_signature(body: bytes, signature: str, secret: str) -> bool:
    """
    Verify the X-Hub-Signature-256 header of a webhook delivery.

    Args:
        body: Raw request body bytes
        signature: Header value, ``sha256=<hex digest>``
        secret: Meta app secret

    Returns:
        True if signature is valid, False otherwise
    """
    if not signature or not signature.startswith(SIGNATURE_PREFIX):
        logger.info("Signature header missing or without sha256= prefix")
        return False

    expected_signature = hmac.new(
        secret.encode("utf-8"),
        body,
        hashlib.sha256
    ).hexdigest()

    # Constant-time comparison
    is_valid = hmac.compare_digest(expected_signature, signature[len(SIGNATURE_PREFIX):])
    logger.info(f"HMAC signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid


def parse_unix_timestamp(value: Optional[Union[int, str]]) -> Optional[datetime]:
    """Provider timestamps are Unix seconds, usually as strings; anything unparseable is None."""
    if value is None or value == "":
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        logger.warning(f"Unparseable provider timestamp: {value!r}")
        return None
