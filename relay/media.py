"""
Media resolution for inbound and outbound attachments.

Every per-type decision (storage folder, fallback extension, default caption,
default mime type) comes from MEDIA_KINDS in relay.models so the message types
are described in one place. Files land under
``{folder}/{yyyy}/{mm}/{dd}/{filename}`` relative to MEDIA_ROOT.
"""
import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from relay.contacts import TenantCredentials
from relay.errors import MediaError, MediaStorageError, MediaTransientError
from relay.metrics import record_media_download
from relay.models import FALLBACK_KIND, MEDIA_KINDS, MediaKind
from relay.whatsapp_client import WhatsAppClient

logger = logging.getLogger(__name__)


def media_kind(message_type: Optional[str]) -> MediaKind:
    return MEDIA_KINDS.get(message_type or "", FALLBACK_KIND)


def folder_for(message_type: Optional[str]) -> str:
    return media_kind(message_type).folder


def default_caption(message_type: Optional[str]) -> str:
    """Human readable placeholder used when a media message has no caption or filename."""
    return media_kind(message_type).caption


def default_mime_type(message_type: Optional[str]) -> str:
    return media_kind(message_type).mime_type


def extension_for(message_type: Optional[str], filename: Optional[str] = None) -> str:
    """Extension of ``filename`` when it has one, else the type's fallback."""
    if filename and "." in filename.strip("."):
        return filename.rsplit(".", 1)[-1].lower()
    return media_kind(message_type).extension


def sanitize_filename(filename: str) -> str:
    """Replace path separators and non-word characters; never returns a dot-only name."""
    cleaned = re.sub(r"[^\w\-.]", "_", filename)
    return cleaned.lstrip(".")


def generate_filename(message_type: Optional[str], original: Optional[str] = None) -> str:
    extension = extension_for(message_type, original)
    if original:
        name = sanitize_filename(original)
        if name:
            return name if "." in name else f"{name}.{extension}"
    return f"whatsapp_{uuid.uuid4().hex[:13]}.{extension}"


def storage_path(message_type: Optional[str], filename: str, when: datetime) -> str:
    return f"{folder_for(message_type)}/{when:%Y}/{when:%m}/{when:%d}/{filename}"


@dataclass(frozen=True)
class MediaInfo:
    media_id: str
    url: str
    mime_type: Optional[str] = None
    sha256: Optional[str] = None
    file_size: Optional[int] = None

    @classmethod
    def from_api(cls, media_id: str, data: Dict[str, Any]) -> "MediaInfo":
        size = data.get("file_size")
        try:
            file_size = int(size) if size is not None else None
        except (TypeError, ValueError) as e:
            raise MediaTransientError(f"media info has invalid file_size {size!r}") from e
        return cls(
            media_id=data.get("id") or media_id,
            url=data["url"],
            mime_type=data.get("mime_type"),
            sha256=data.get("sha256"),
            file_size=file_size,
        )


@dataclass(frozen=True)
class StoredMedia:
    path: str
    url: str
    filename: str
    metadata: Dict[str, Any] = field(default_factory=dict)


class MediaResolver:
    """Fetches provider media metadata and stores the binary locally."""

    def __init__(self, client: WhatsAppClient, media_root: str, media_base_url: str):
        self._client = client
        self._root = Path(media_root)
        self._base_url = media_base_url.rstrip("/")

    async def fetch_media_info(self, media_id: str, credentials: TenantCredentials) -> MediaInfo:
        """
        Ask the provider where ``media_id`` can be downloaded.

        Raises:
            MediaNotFoundError: permanent, the id is unknown to the provider
            MediaAuthError: the tenant token was rejected
            MediaTransientError: network error, timeout or provider 5xx
        """
        data = await self._client.get_media_info(media_id, credentials.token_meta)
        return MediaInfo.from_api(media_id, data)

    async def download_and_store(
        self,
        media_info: MediaInfo,
        message_type: str,
        filename: Optional[str],
        credentials: TenantCredentials,
        now: Optional[datetime] = None,
    ) -> StoredMedia:
        name, relative = self._allocate(message_type, filename, now)
        destination = self._root / relative

        try:
            size = await self._client.download_to(media_info.url, credentials.token_meta, destination)
        except MediaError as e:
            record_media_download(type(e).__name__)
            raise
        record_media_download("stored")
        logger.info(f"Stored media {media_info.media_id} at {relative} ({size} bytes)")

        metadata = {
            "media_id": media_info.media_id,
            "mime_type": media_info.mime_type,
            "sha256": media_info.sha256,
            "file_size": media_info.file_size if media_info.file_size is not None else size,
        }
        if filename:
            metadata["filename"] = filename
        return StoredMedia(
            path=relative,
            url=f"{self._base_url}/{relative}",
            filename=name,
            metadata=metadata,
        )

    def store_outgoing(
        self,
        message_type: str,
        filename: Optional[str],
        content: bytes,
        mime_type: str,
        now: Optional[datetime] = None,
    ) -> StoredMedia:
        """
        Keep a local copy of a file the user is sending.

        Raises:
            MediaStorageError: the file could not be written
        """
        name, relative = self._allocate(message_type, filename, now)
        destination = self._root / relative
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            destination.write_bytes(content)
        except OSError as e:
            destination.unlink(missing_ok=True)
            raise MediaStorageError(f"could not write {destination}: {e}") from e
        logger.info(f"Stored outgoing media at {relative} ({len(content)} bytes)")

        metadata = {"mime_type": mime_type, "file_size": len(content), "filename": filename or name}
        return StoredMedia(
            path=relative,
            url=f"{self._base_url}/{relative}",
            filename=name,
            metadata=metadata,
        )

    def discard(self, relative: str) -> None:
        """Remove a stored file whose message row was never written."""
        try:
            (self._root / relative).unlink(missing_ok=True)
        except OSError as e:
            logger.error(f"Could not remove orphaned media {relative}: {e}")
            return
        logger.info(f"Removed orphaned media {relative}")

    def _allocate(
        self, message_type: Optional[str], filename: Optional[str], now: Optional[datetime]
    ) -> Tuple[str, str]:
        """Pick a file name and dated path; an existing file gets an 8-hex suffix."""
        when = now or datetime.now(timezone.utc)
        name = generate_filename(message_type, filename)
        relative = storage_path(message_type, name, when)
        if (self._root / relative).exists():
            stem, _, ext = name.rpartition(".")
            name = f"{stem}_{uuid.uuid4().hex[:8]}.{ext}"
            relative = storage_path(message_type, name, when)
        return name, relative
