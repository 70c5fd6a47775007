"""WhatsApp Cloud API client shared by the whole process."""
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import httpx

from relay.errors import (
    MediaAuthError,
    MediaNotFoundError,
    MediaStorageError,
    MediaTransientError,
    ProviderError,
)

logger = logging.getLogger(__name__)

# The Cloud API has no separate voice type for outgoing messages
PROVIDER_MEDIA_TYPES = {"voice": "audio"}
CAPTIONED_TYPES = frozenset({"image", "video", "document"})


class WhatsAppClient:
    """
    Thin async wrapper around the Graph API.

    One instance owns one pooled ``httpx.AsyncClient``; tenant credentials
    are passed per call rather than baked into the instance.
    """

    def __init__(
        self,
        base_url: str = "https://graph.facebook.com/v20.0",
        timeout: float = 10.0,
        download_timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.download_timeout = download_timeout
        self.client = httpx.AsyncClient(timeout=timeout, transport=transport)

    @staticmethod
    def _auth_headers(access_token: Optional[str]) -> Dict[str, str]:
        return {"Authorization": f"Bearer {access_token or ''}"}

    async def send_text(self, phone_number_id: str, access_token: str, to: str, body: str) -> Optional[str]:
        """Send a text message; returns the provider message id."""
        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to,
            "type": "text",
            "text": {"body": body},
        }
        data = await self._post(phone_number_id, f"{phone_number_id}/messages", access_token, json=payload)
        messages = data.get("messages") or []
        return messages[0].get("id") if messages else None

    async def upload_media(
        self, phone_number_id: str, access_token: str, filename: str, content: bytes, mime_type: str
    ) -> str:
        """Upload a binary to the provider; returns the media id to reference when sending."""
        data = await self._post(
            phone_number_id,
            f"{phone_number_id}/media",
            access_token,
            data={"messaging_product": "whatsapp", "type": mime_type},
            files={"file": (filename, content, mime_type)},
        )
        media_id = data.get("id")
        if not media_id:
            raise ProviderError("Upload returned no media id")
        return media_id

    async def send_media(
        self,
        phone_number_id: str,
        access_token: str,
        to: str,
        message_type: str,
        media_id: str,
        caption: Optional[str] = None,
        filename: Optional[str] = None,
    ) -> Optional[str]:
        """
        Send a previously uploaded media object; returns the provider message id.

        Voice notes go out as ``audio``. Captions are only attached to image,
        video and document messages and filenames only to documents.
        """
        provider_type = PROVIDER_MEDIA_TYPES.get(message_type, message_type)
        media: Dict[str, Any] = {"id": media_id}
        if caption and provider_type in CAPTIONED_TYPES:
            media["caption"] = caption
        if filename and provider_type == "document":
            media["filename"] = filename
        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to,
            "type": provider_type,
            provider_type: media,
        }
        data = await self._post(phone_number_id, f"{phone_number_id}/messages", access_token, json=payload)
        messages = data.get("messages") or []
        return messages[0].get("id") if messages else None

    async def _post(self, phone_number_id: str, path: str, access_token: str, **kwargs: Any) -> Dict[str, Any]:
        url = f"{self.base_url}/{path}"
        try:
            response = await self.client.post(url, headers=self._auth_headers(access_token), **kwargs)
        except httpx.TimeoutException as e:
            logger.error(f"WhatsApp API timeout for number {phone_number_id}")
            raise ProviderError("Request timeout") from e
        except httpx.HTTPError as e:
            logger.error(f"WhatsApp API error: {e}")
            raise ProviderError(str(e)) from e

        if response.status_code != 200:
            error = _error_body(response)
            logger.error(
                "WhatsApp API rejected request",
                extra={"status": response.status_code, "error": error, "path": path},
            )
            raise ProviderError(error.get("message", "Unknown error"), status_code=response.status_code)

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError("Response body is not JSON", status_code=response.status_code) from e
        return data if isinstance(data, dict) else {}

    async def get_media_info(self, media_id: str, access_token: Optional[str]) -> Dict[str, Any]:
        """Fetch media metadata (url, mime_type, sha256, file_size)."""
        url = f"{self.base_url}/{media_id}"
        try:
            response = await self.client.get(url, headers=self._auth_headers(access_token))
        except httpx.HTTPError as e:
            raise MediaTransientError(f"media info request failed: {e!r}") from e

        if response.status_code in (400, 404):
            raise MediaNotFoundError(f"media {media_id} not found")
        if response.status_code in (401, 403):
            raise MediaAuthError(f"media {media_id} rejected credentials ({response.status_code})")
        if response.status_code != 200:
            raise MediaTransientError(f"media info returned {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise MediaTransientError("media info body is not JSON") from e
        if not isinstance(data, dict) or not data.get("url"):
            raise MediaTransientError("media info has no download url")
        return data

    async def download_to(self, url: str, access_token: Optional[str], destination: Path) -> int:
        """Stream ``url`` into ``destination``; returns the number of bytes written."""
        written = 0
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            async with self.client.stream(
                "GET", url, headers=self._auth_headers(access_token), timeout=self.download_timeout
            ) as response:
                if response.status_code in (401, 403):
                    raise MediaAuthError(f"media download rejected credentials ({response.status_code})")
                if response.status_code == 404:
                    raise MediaNotFoundError("media download url expired or missing")
                if response.status_code != 200:
                    raise MediaTransientError(f"media download returned {response.status_code}")
                with destination.open("wb") as fh:
                    async for chunk in response.aiter_bytes():
                        fh.write(chunk)
                        written += len(chunk)
        except httpx.HTTPError as e:
            destination.unlink(missing_ok=True)
            raise MediaTransientError(f"media download failed: {e!r}") from e
        except OSError as e:
            destination.unlink(missing_ok=True)
            raise MediaStorageError(f"could not write {destination}: {e}") from e
        return written

    async def aclose(self) -> None:
        await self.client.aclose()


def _error_body(response: httpx.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {"message": response.text[:200]}
    if not isinstance(body, dict):
        return {}
    return body.get("error") or {}
