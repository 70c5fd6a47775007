"""User-initiated text and media sends; persistence and notification go through the upsert engine."""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy.orm import Session

from relay.errors import ContactNotFoundError, MediaError, PersistenceError, ProviderError
from relay.media import MediaResolver, default_caption, default_mime_type
from relay.models import Contact, Direction, Message, MessageStatusValue, MessageType
from relay.notifier import format_for
from relay.storage import SessionLocal
from relay.upsert import MessageRecord, MessageUpsertEngine, UpsertOrigin
from relay.whatsapp_client import WhatsAppClient

logger = logging.getLogger(__name__)


@dataclass
class SendResult:
    success: bool
    message: Optional[Dict[str, Any]]
    error: Optional[str] = None


@dataclass(frozen=True)
class _Route:
    user_id: int
    contact_id: int
    phone_number_id: str
    token_meta: Optional[str]
    to: str


class OutboundSender:
    def __init__(
        self,
        client: WhatsAppClient,
        engine: MessageUpsertEngine,
        media: MediaResolver,
        session_factory: Callable[[], Session] = SessionLocal,
    ):
        self.client = client
        self.engine = engine
        self.media = media
        self._session_factory = session_factory

    def _route(self, contact_id: int) -> _Route:
        with self._session_factory() as session:
            contact = session.get(Contact, contact_id)
            if contact is None:
                raise ContactNotFoundError(f"contact {contact_id} not found")
            user = contact.user
            return _Route(
                user_id=user.id,
                contact_id=contact.id,
                phone_number_id=user.phone_number_id,
                token_meta=user.token_meta,
                to=contact.phone_number,
            )

    def _load_payload(self, message_id: int) -> Dict[str, Any]:
        with self._session_factory() as session:
            return format_for(session.get(Message, message_id))

    async def send_text(self, contact_id: int, content: str) -> SendResult:
        """
        Send ``content`` to a contact.

        A provider failure still persists the attempt with status ``failed``
        so the conversation keeps a visible record of it.

        Raises:
            ContactNotFoundError: unknown contact id
            PersistenceError: neither the sent nor the failed row could be written
        """
        route = self._route(contact_id)
        record = self._outgoing(route, MessageType.TEXT.value, content)

        async def deliver() -> Optional[str]:
            return await self.client.send_text(route.phone_number_id, route.token_meta, route.to, content)

        return await self._deliver(record, deliver)

    async def send_media(
        self,
        contact_id: int,
        message_type: str,
        filename: Optional[str],
        content: bytes,
        mime_type: Optional[str] = None,
        caption: Optional[str] = None,
    ) -> SendResult:
        """
        Send a file to a contact.

        The file is kept under MEDIA_ROOT, uploaded to the provider and then
        sent by media id. Any failure along the way persists the attempt with
        status ``failed``; a row that cannot be written at all leaves no file
        behind.

        Raises:
            ContactNotFoundError: unknown contact id
            PersistenceError: neither the sent nor the failed row could be written
        """
        route = self._route(contact_id)
        mime_type = mime_type or default_mime_type(message_type)
        record = self._outgoing(route, message_type, caption or filename or default_caption(message_type))
        record.caption = caption

        async def deliver() -> Optional[str]:
            stored = self.media.store_outgoing(message_type, filename, content, mime_type)
            record.media_url = stored.url
            record.media_path = stored.path
            record.media_metadata = stored.metadata
            media_id = await self.client.upload_media(
                route.phone_number_id, route.token_meta, stored.filename, content, mime_type
            )
            return await self.client.send_media(
                route.phone_number_id,
                route.token_meta,
                route.to,
                message_type,
                media_id,
                caption=caption,
                filename=filename,
            )

        try:
            return await self._deliver(record, deliver)
        except PersistenceError:
            if record.media_path:
                self.media.discard(record.media_path)
            raise

    @staticmethod
    def _outgoing(route: _Route, message_type: str, content: str) -> MessageRecord:
        return MessageRecord(
            user_id=route.user_id,
            contact_id=route.contact_id,
            direction=Direction.OUT.value,
            message_type=message_type,
            status=MessageStatusValue.SENT.value,
            content=content,
            sent_at=datetime.now(timezone.utc),
        )

    async def _deliver(self, record: MessageRecord, deliver: Callable[[], Awaitable[Optional[str]]]) -> SendResult:
        try:
            record.meta_message_id = await deliver()
        except (ProviderError, MediaError) as e:
            logger.error(f"Send to contact {record.contact_id} failed: {e}")
            record.status = MessageStatusValue.FAILED.value
            record.error_message = str(e)[:255]
            outcome = await self.engine.upsert(record, UpsertOrigin.USER_ACTION)
            return SendResult(success=False, message=self._load_payload(outcome.message_id), error=str(e))

        outcome = await self.engine.upsert(record, UpsertOrigin.USER_ACTION)
        logger.info(
            f"{record.message_type} message sent to contact {record.contact_id}: "
            f"meta_message_id={record.meta_message_id}"
        )
        return SendResult(success=True, message=self._load_payload(outcome.message_id))
