"""
Message upsert engine.

Every write of a Message, whether it comes from a webhook or from a user
sending a message, goes through MessageUpsertEngine so persistence and
notification follow one path:

1. look up an existing row by ``meta_message_id``
2. merge into it (update path) or insert (create path); an insert that hits
   the unique constraint falls back to the update path
3. re-read the row, commit
4. publish ``new-message`` on create, ``status-update`` when the visible
   status changed, unless the tenant's permission list excludes the type

Writes for the same ``meta_message_id`` are serialized by a per-key lock for
the whole lookup, write and publish sequence.
"""
import asyncio
import logging
import weakref
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from relay.errors import PersistenceError
from relay.models import Direction, Message, MessageStatus, MessageStatusValue, User
from relay.notifier import Notifier, format_for
from relay.status_mapper import is_status_advance, map_status
from relay.storage import SessionLocal, session_scope

logger = logging.getLogger(__name__)

EMPTY_CONTENT_PLACEHOLDER = "[no text]"


class UpsertOrigin(str, Enum):
    USER_ACTION = "user_action"
    WEBHOOK = "webhook"


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


@dataclass
class MessageRecord:
    """Normalized message fields; None means "not present in this event"."""
    user_id: int
    contact_id: int
    direction: str
    message_type: str
    status: str
    content: Optional[str] = None
    meta_message_id: Optional[str] = None
    sent_at: Optional[datetime] = None
    media_url: Optional[str] = None
    media_path: Optional[str] = None
    caption: Optional[str] = None
    media_metadata: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None

    _MERGE_FIELDS = (
        "user_id",
        "contact_id",
        "direction",
        "message_type",
        "meta_message_id",
        "sent_at",
        "media_url",
        "media_path",
        "caption",
        "media_metadata",
        "error_message",
    )

    def merge_fields(self) -> Dict[str, Any]:
        """Fields to overwrite on an existing row; status is guarded separately."""
        fields = {
            name: _plain(getattr(self, name))
            for name in self._MERGE_FIELDS
            if getattr(self, name) is not None
        }
        if self.content is not None and self.content.strip():
            fields["content"] = self.content
        return fields

    def create_fields(self) -> Dict[str, Any]:
        fields = self.merge_fields()
        fields.setdefault("content", EMPTY_CONTENT_PLACEHOLDER)
        fields["status"] = _plain(self.status)
        return fields


@dataclass
class UpsertResult:
    message_id: int
    created: bool
    status: str
    status_changed: bool = False
    notified: bool = False


@dataclass
class _Persisted:
    message_id: int
    contact_id: int
    created: bool
    status: str
    status_changed: bool
    permitted: bool
    payload: Dict[str, Any] = field(default_factory=dict)


class KeyedLock:
    """
    asyncio locks created on demand per key and dropped once unused.

    A task already holding a key enters it again without waiting, so a caller
    can hold the lock around work that ends in ``upsert``.
    """

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._owners: Dict[str, "asyncio.Task[Any]"] = {}

    @asynccontextmanager
    async def hold(self, key: Optional[str]) -> AsyncIterator[None]:
        task = asyncio.current_task()
        if key is None or self._owners.get(key) is task:
            yield
            return
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        async with lock:
            self._owners[key] = task
            try:
                yield
            finally:
                del self._owners[key]


def _is_permitted(user: Optional[User], message_type: Optional[str]) -> bool:
    if user is None:
        return True
    allowed = user.allowed_message_types
    return not allowed or message_type in allowed


class MessageUpsertEngine:
    def __init__(self, notifier: Notifier, session_factory: Callable[[], Session] = SessionLocal):
        self.notifier = notifier
        self._session_factory = session_factory
        self._locks = KeyedLock()

    def locked(self, meta_message_id: Optional[str]):
        """Hold the per-id write lock across work that precedes ``upsert``, such as a media download."""
        return self._locks.hold(meta_message_id)

    async def upsert(self, record: MessageRecord, origin: UpsertOrigin = UpsertOrigin.WEBHOOK) -> UpsertResult:
        """
        Create or update the message described by ``record`` and notify.

        Raises:
            PersistenceError: the write did not happen; nothing was published.
        """
        async with self._locks.hold(record.meta_message_id):
            try:
                persisted = self._persist(record)
            except SQLAlchemyError as e:
                logger.error(
                    f"upsert failed: {e}",
                    extra={"meta_message_id": record.meta_message_id, "origin": _plain(origin)},
                )
                raise PersistenceError(str(e)) from e

            notified = False
            if not persisted.permitted:
                logger.info(
                    f"Notification suppressed for message {persisted.message_id}: "
                    f"type '{record.message_type}' not permitted for tenant"
                )
            elif persisted.created:
                notified = await self.notifier.notify_new_message(persisted.contact_id, persisted.payload)
            elif persisted.status_changed:
                notified = await self.notifier.notify_status_update(
                    persisted.contact_id, persisted.message_id, persisted.status
                )

        logger.info(
            f"Message {'created' if persisted.created else 'updated'}: id={persisted.message_id}",
            extra={
                "meta_message_id": record.meta_message_id,
                "origin": _plain(origin),
                "status": persisted.status,
                "notified": notified,
            },
        )
        return UpsertResult(
            message_id=persisted.message_id,
            created=persisted.created,
            status=persisted.status,
            status_changed=persisted.status_changed,
            notified=notified,
        )

    async def apply_status(
        self,
        meta_message_id: str,
        provider_status: Optional[str],
        timestamp: Optional[datetime] = None,
        error_message: Optional[str] = None,
    ) -> Optional[UpsertResult]:
        """
        Apply a provider status callback to an existing message.

        Returns None when no message carries ``meta_message_id``. A status that
        would not move the message forward is ignored without notification.
        """
        status = map_status(provider_status)
        async with self._locks.hold(meta_message_id):
            try:
                persisted = self._persist_status(meta_message_id, status, timestamp, error_message)
            except SQLAlchemyError as e:
                logger.error(f"status update failed for {meta_message_id}: {e}")
                raise PersistenceError(str(e)) from e
            if persisted is None:
                logger.warning(f"No message found to update status: meta_message_id={meta_message_id}")
                return None

            notified = False
            if persisted.status_changed and persisted.permitted:
                notified = await self.notifier.notify_status_update(
                    persisted.contact_id, persisted.message_id, persisted.status
                )

        if persisted.status_changed:
            logger.info(f"Message status updated: meta_message_id={meta_message_id}, status={persisted.status}")
        else:
            logger.info(
                f"Ignored status '{status.value}' for {meta_message_id}; current status is {persisted.status}"
            )
        return UpsertResult(
            message_id=persisted.message_id,
            created=False,
            status=persisted.status,
            status_changed=persisted.status_changed,
            notified=notified,
        )

    async def mark_contact_read(self, contact_id: int) -> int:
        """Mark a conversation's inbound messages read; one batch status-update."""
        try:
            with session_scope(self._session_factory) as session:
                messages = session.execute(
                    select(Message).where(
                        Message.contact_id == contact_id,
                        Message.direction == Direction.IN.value,
                        Message.status != MessageStatusValue.READ.value,
                    ).order_by(Message.id)
                ).scalars().all()
                if not messages:
                    return 0
                for message in messages:
                    message.status = MessageStatusValue.READ.value
                user = session.get(User, messages[0].user_id)
                statuses = [
                    {"id": m.id, "status": m.status}
                    for m in messages
                    if _is_permitted(user, m.message_type)
                ]
                count = len(messages)
        except SQLAlchemyError as e:
            logger.error(f"bulk read update failed for contact {contact_id}: {e}")
            raise PersistenceError(str(e)) from e

        if statuses:
            await self.notifier.notify_bulk_status_update(contact_id, statuses)
        logger.info(f"Marked {count} messages read for contact {contact_id}")
        return count

    def message_exists(self, meta_message_id: str) -> bool:
        with self._session_factory() as session:
            return self._find(session, meta_message_id) is not None

    # ------------------------------------------------------------------

    @staticmethod
    def _find(session: Session, meta_message_id: Optional[str]) -> Optional[Message]:
        if not meta_message_id:
            return None
        return session.execute(
            select(Message).where(Message.meta_message_id == meta_message_id)
        ).scalar_one_or_none()

    @staticmethod
    def _append_status(session: Session, meta_message_id: Optional[str], status: str, at: Optional[datetime]):
        if not meta_message_id:
            return
        session.add(
            MessageStatus(
                meta_message_id=meta_message_id,
                status=status,
                status_timestamp=at or datetime.now(timezone.utc),
            )
        )

    def _insert(self, session: Session, record: MessageRecord) -> Optional[Message]:
        """Insert the row; None when another writer already inserted this provider id."""
        message = Message(**record.create_fields())
        session.add(message)
        try:
            session.flush()
        except IntegrityError:
            session.rollback()
            if not record.meta_message_id:
                raise
            logger.info(f"Concurrent insert detected for {record.meta_message_id}, updating instead")
            return None
        return message

    @staticmethod
    def _merge(message: Message, record: MessageRecord) -> bool:
        for name, value in record.merge_fields().items():
            setattr(message, name, value)
        status = _plain(record.status)
        if status and is_status_advance(message.status, status):
            message.status = status
            return True
        return False

    def _persist(self, record: MessageRecord) -> _Persisted:
        with session_scope(self._session_factory) as session:
            message = self._find(session, record.meta_message_id)
            created = False
            status_changed = False
            if message is None:
                message = self._insert(session, record)
                created = message is not None
                if message is None:
                    message = self._find(session, record.meta_message_id)
                    if message is None:
                        raise PersistenceError(f"conflicting insert for {record.meta_message_id} left no row")
            if created:
                self._append_status(session, message.meta_message_id, message.status, record.sent_at)
            else:
                status_changed = self._merge(message, record)
                if status_changed:
                    self._append_status(session, message.meta_message_id, message.status, None)

            session.flush()
            session.refresh(message)
            return _Persisted(
                message_id=message.id,
                contact_id=message.contact_id,
                created=created,
                status=message.status,
                status_changed=status_changed,
                permitted=_is_permitted(session.get(User, message.user_id), message.message_type),
                payload=format_for(message) if created else {},
            )

    def _persist_status(
        self,
        meta_message_id: str,
        status: MessageStatusValue,
        timestamp: Optional[datetime],
        error_message: Optional[str],
    ) -> Optional[_Persisted]:
        with session_scope(self._session_factory) as session:
            message = self._find(session, meta_message_id)
            if message is None:
                return None
            changed = is_status_advance(message.status, status.value)
            if changed:
                message.status = status.value
                if status is MessageStatusValue.FAILED and error_message:
                    message.error_message = error_message
                self._append_status(session, meta_message_id, status.value, timestamp)
                session.flush()
                session.refresh(message)
            return _Persisted(
                message_id=message.id,
                contact_id=message.contact_id,
                created=False,
                status=message.status,
                status_changed=changed,
                permitted=_is_permitted(session.get(User, message.user_id), message.message_type),
            )
