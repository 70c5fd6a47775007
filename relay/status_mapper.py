"""Provider status normalization and the monotonic status guard.

Provider statuses map onto the internal vocabulary as ``sent``, ``delivered``,
``read`` and ``failed``; anything else becomes ``received`` because provider
vocabularies are not guaranteed stable.
"""
from __future__ import annotations

from typing import Optional

from relay.models import MessageStatusValue

_STATUS_MAP = {
    "sent": MessageStatusValue.SENT,
    "delivered": MessageStatusValue.DELIVERED,
    "read": MessageStatusValue.READ,
    "failed": MessageStatusValue.FAILED,
}

# Position in the happy path; failed is handled separately
_STATUS_RANK = {
    MessageStatusValue.SENDING.value: 0,
    MessageStatusValue.RECEIVED.value: 0,
    MessageStatusValue.SENT.value: 1,
    MessageStatusValue.DELIVERED.value: 2,
    MessageStatusValue.READ.value: 3,
}


def map_status(provider_status: Optional[str]) -> MessageStatusValue:
    """Map a provider status string to the internal status enum."""

    if not provider_status:
        return MessageStatusValue.RECEIVED
    return _STATUS_MAP.get(provider_status.strip().lower(), MessageStatusValue.RECEIVED)


def is_status_advance(current: Optional[str], incoming: str) -> bool:
    """Return True when ``incoming`` moves ``current`` forward.

    Repeated and out-of-order events never regress a message: ``read`` stays
    ``read`` when a late ``delivered`` arrives, and ``failed`` is terminal.
    """

    incoming = MessageStatusValue(incoming).value
    if current is None:
        return True
    current = MessageStatusValue(current).value
    if incoming == current or current == MessageStatusValue.FAILED.value:
        return False
    if incoming == MessageStatusValue.FAILED.value:
        return _STATUS_RANK[current] <= _STATUS_RANK[MessageStatusValue.SENT.value]
    return _STATUS_RANK[incoming] > _STATUS_RANK[current]
