"""
Webhook event processing.

A delivery is a batch: entry -> changes -> value, each value carrying
``messages`` and/or ``statuses`` for one business number. Items are validated
and handled one by one; a bad or failing item is logged and dropped without
affecting its siblings, because the provider treats any non-2xx answer as a
reason to redeliver the whole batch.
"""
import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from relay.contacts import ContactRef, ContactResolver
from relay.errors import MediaError, PersistenceError
from relay.media import MediaResolver, default_caption
from relay.metrics import record_webhook_item
from relay.models import MEDIA_MESSAGE_TYPES, Direction, MessageStatusValue, MessageType
from relay.schemas import ChangeValue, InboundMessage, StatusEvent, WebhookPayload
from relay.status_mapper import map_status
from relay.upsert import MessageRecord, MessageUpsertEngine, UpsertOrigin, UpsertResult
from relay.utils import parse_unix_timestamp

logger = logging.getLogger(__name__)

TEMPLATE_PLACEHOLDER = "Automated system message"


@dataclass(frozen=True)
class VerifyOutcome:
    status_code: int
    body: str


@dataclass
class WebhookResult:
    ok: bool = True
    messages: int = 0
    statuses: int = 0
    created: int = 0
    updated: int = 0
    templates: int = 0
    dropped: int = 0

    def as_log_data(self) -> Dict[str, Any]:
        # "created" is a reserved LogRecord attribute
        return {f"webhook_{name}": value for name, value in asdict(self).items()}


class WebhookEventProcessor:
    def __init__(
        self,
        contacts: ContactResolver,
        media: MediaResolver,
        engine: MessageUpsertEngine,
    ):
        self.contacts = contacts
        self.media = media
        self.engine = engine

    # ------------------------------------------------------------------
    # GET handshake
    # ------------------------------------------------------------------

    def verify(self, mode: Optional[str], verify_token: Optional[str], challenge: Optional[str]) -> VerifyOutcome:
        """Echo ``challenge`` when a tenant owns ``verify_token``."""
        if not mode or not verify_token or challenge is None:
            logger.warning("Webhook verification request missing hub parameters")
            return VerifyOutcome(400, "Bad request")
        if mode == "subscribe" and self.contacts.verify_token_exists(verify_token):
            logger.info("Webhook verified successfully")
            return VerifyOutcome(200, challenge)
        logger.warning("Webhook verification failed: invalid mode or token")
        return VerifyOutcome(403, "Invalid verification token")

    # ------------------------------------------------------------------
    # POST delivery
    # ------------------------------------------------------------------

    async def process(self, payload: WebhookPayload) -> WebhookResult:
        result = WebhookResult()
        for entry in payload.entry:
            for change in entry.changes:
                if not await self._process_value(change.value, result):
                    result.ok = False
                    return result
        return result

    async def _process_value(self, value: ChangeValue, result: WebhookResult) -> bool:
        phone_number_id = value.metadata.phone_number_id if value.metadata else None
        if not phone_number_id:
            logger.error("Missing phone_number_id in webhook value; aborting batch")
            record_webhook_item("batch", "missing_phone_number_id")
            return False

        items: List[Tuple[str, Callable[[], Awaitable[None]]]] = []

        for raw in value.messages:
            try:
                message = InboundMessage.model_validate(raw)
            except ValidationError as e:
                logger.warning(f"Skipping malformed message item: {e.error_count()} errors", extra={"item": raw})
                record_webhook_item("message", "invalid")
                result.dropped += 1
                continue
            items.append((message.id, self._bind(self._handle_message, phone_number_id, message, result)))

        for raw in value.statuses:
            try:
                status = StatusEvent.model_validate(raw)
            except ValidationError as e:
                logger.warning(f"Skipping malformed status item: {e.error_count()} errors", extra={"item": raw})
                record_webhook_item("status", "invalid")
                result.dropped += 1
                continue
            items.append((status.id, self._bind(self._handle_status, phone_number_id, status, result)))

        await self._run_grouped(items, result)
        return True

    @staticmethod
    def _bind(handler, *args) -> Callable[[], Awaitable[None]]:
        return lambda: handler(*args)

    async def _run_grouped(self, items: List[Tuple[str, Callable[[], Awaitable[None]]]], result: WebhookResult):
        """Distinct provider ids run concurrently; items sharing an id keep payload order."""
        groups: Dict[str, List[Callable[[], Awaitable[None]]]] = {}
        for key, call in items:
            groups.setdefault(key, []).append(call)

        async def run_sequence(key: str, calls: List[Callable[[], Awaitable[None]]]):
            for call in calls:
                try:
                    await call()
                except Exception:
                    logger.exception(f"Unhandled error processing webhook item {key}")
                    record_webhook_item("item", "error")
                    result.dropped += 1

        await asyncio.gather(*(run_sequence(key, calls) for key, calls in groups.items()))

    # ------------------------------------------------------------------
    # messages
    # ------------------------------------------------------------------

    async def _handle_message(self, phone_number_id: str, message: InboundMessage, result: WebhookResult):
        result.messages += 1
        if message.type == MessageType.TEXT.value:
            handler = self._handle_text
        elif message.type in MEDIA_MESSAGE_TYPES:
            handler = self._handle_media
        else:
            logger.warning(f"Unsupported message type '{message.type}' for {message.id}, dropping")
            record_webhook_item("message", "unsupported")
            result.dropped += 1
            return

        contact = self.contacts.resolve_contact(phone_number_id, message.from_phone)
        if contact is None:
            logger.error(
                "Contact not found, dropping message",
                extra={"phone_number_id": phone_number_id, "phone": message.from_phone, "meta_message_id": message.id},
            )
            record_webhook_item("message", "contact_not_found")
            result.dropped += 1
            return

        # The exists check, the download and the write happen under one lock per id
        async with self.engine.locked(message.id):
            record = await handler(phone_number_id, message, contact, result)
            if record is None:
                return
            if await self._upsert(record, "message", result) is None and record.media_path:
                self.media.discard(record.media_path)

    async def _handle_text(
        self, phone_number_id: str, message: InboundMessage, contact: ContactRef, result: WebhookResult
    ) -> Optional[MessageRecord]:
        return MessageRecord(
            user_id=contact.user_id,
            contact_id=contact.contact_id,
            direction=Direction.IN.value,
            message_type=MessageType.TEXT.value,
            status=MessageStatusValue.RECEIVED.value,
            content=message.text.body if message.text else None,
            meta_message_id=message.id,
            sent_at=parse_unix_timestamp(message.timestamp),
        )

    async def _handle_media(
        self, phone_number_id: str, message: InboundMessage, contact: ContactRef, result: WebhookResult
    ) -> Optional[MessageRecord]:
        reference = message.media_reference()
        if reference is None:
            logger.warning(f"Media message {message.id} has no '{message.type}' object, dropping")
            record_webhook_item("message", "invalid")
            result.dropped += 1
            return None

        record = MessageRecord(
            user_id=contact.user_id,
            contact_id=contact.contact_id,
            direction=Direction.IN.value,
            message_type=message.type,
            status=MessageStatusValue.RECEIVED.value,
            content=reference.caption or reference.filename or default_caption(message.type),
            meta_message_id=message.id,
            sent_at=parse_unix_timestamp(message.timestamp),
            caption=reference.caption,
        )

        if self.engine.message_exists(message.id):
            logger.info(f"Media message {message.id} already stored, skipping download")
            return record

        credentials = self.contacts.get_tenant(phone_number_id)
        if credentials is None:
            logger.error(f"Tenant vanished for phone_number_id={phone_number_id}, dropping {message.id}")
            result.dropped += 1
            return None

        try:
            info = await self.media.fetch_media_info(reference.id, credentials)
            stored = await self.media.download_and_store(info, message.type, reference.filename, credentials)
        except MediaError as e:
            logger.error(
                f"Media resolution failed for {message.id}: {e}",
                extra={"media_id": reference.id, "error_type": type(e).__name__},
            )
            record_webhook_item("message", "media_failed")
            result.dropped += 1
            return None

        record.media_url = stored.url
        record.media_path = stored.path
        record.media_metadata = stored.metadata
        return record

    # ------------------------------------------------------------------
    # statuses
    # ------------------------------------------------------------------

    async def _handle_status(self, phone_number_id: str, status: StatusEvent, result: WebhookResult):
        result.statuses += 1
        timestamp = parse_unix_timestamp(status.timestamp)

        # Template delivery receipts may arrive without any message payload
        if status.is_utility_origin and not self.engine.message_exists(status.id):
            await self._synthesize_template(phone_number_id, status, timestamp, result)

        try:
            outcome = await self.engine.apply_status(status.id, status.status, timestamp, status.error_summary)
        except PersistenceError as e:
            logger.error(f"Status update for {status.id} failed: {e}")
            record_webhook_item("status", "error")
            result.dropped += 1
            return

        if outcome is None:
            record_webhook_item("status", "unknown_message")
        elif outcome.status_changed:
            record_webhook_item("status", "updated")
            result.updated += 1
        else:
            record_webhook_item("status", "unchanged")

    async def _synthesize_template(
        self,
        phone_number_id: str,
        status: StatusEvent,
        timestamp: Optional[datetime],
        result: WebhookResult,
    ):
        if not status.recipient_id:
            logger.warning(f"Utility status {status.id} has no recipient_id, cannot create template message")
            return
        contact = self.contacts.resolve_contact(phone_number_id, status.recipient_id)
        if contact is None:
            logger.error(
                "Contact not found for template status",
                extra={"phone_number_id": phone_number_id, "phone": status.recipient_id, "meta_message_id": status.id},
            )
            record_webhook_item("status", "contact_not_found")
            return

        record = MessageRecord(
            user_id=contact.user_id,
            contact_id=contact.contact_id,
            direction=Direction.OUT.value,
            message_type=MessageType.TEMPLATE.value,
            status=map_status(status.status).value,
            content=TEMPLATE_PLACEHOLDER,
            meta_message_id=status.id,
            sent_at=timestamp,
        )
        outcome = await self._upsert(record, "template", result)
        if outcome is not None and outcome.created:
            result.templates += 1

    async def _upsert(self, record: MessageRecord, kind: str, result: WebhookResult) -> Optional[UpsertResult]:
        """Returns None when the write failed; the item is then counted as dropped."""
        try:
            outcome = await self.engine.upsert(record, UpsertOrigin.WEBHOOK)
        except PersistenceError as e:
            logger.error(f"Persisting {kind} {record.meta_message_id} failed: {e}")
            record_webhook_item(kind, "error")
            result.dropped += 1
            return None
        if outcome.created:
            result.created += 1
            record_webhook_item(kind, "created")
        else:
            result.updated += 1
            record_webhook_item(kind, "updated")
        return outcome
