"""Event shaping and publishing for conversation channels."""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from relay.metrics import record_notification
from relay.models import Direction, Message
from relay.pubsub import InMemoryPubSub

logger = logging.getLogger(__name__)

NEW_MESSAGE_EVENT = "new-message"
STATUS_UPDATE_EVENT = "status-update"


def channel_for(contact_id: int) -> str:
    return f"messages-channel-{contact_id}"


def isoformat_utc(value: Optional[datetime]) -> Optional[str]:
    """ISO-8601 in UTC; naive values (SQLite drops tzinfo) are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def format_message(message: Message) -> Dict[str, Any]:
    """Plain-text event payload."""
    return {
        "id": message.id,
        "text": message.content,
        "sender": "user" if message.direction == Direction.OUT.value else "other",
        "timestamp": isoformat_utc(message.sent_at or message.created_at),
        "status": message.status,
        "type": message.message_type,
    }


def format_media_message(message: Message) -> Dict[str, Any]:
    payload = format_message(message)
    payload["media_url"] = message.media_url
    payload["caption"] = message.caption
    return payload


def format_for(message: Message) -> Dict[str, Any]:
    return format_media_message(message) if message.is_media else format_message(message)


class Notifier:
    """
    Publishes ``new-message`` and ``status-update`` events.

    Publishing never raises: a failed publish is logged and reported as False
    because the corresponding write is already durable.
    """

    def __init__(self, pubsub: InMemoryPubSub):
        self.pubsub = pubsub

    async def notify_new_message(self, contact_id: int, payload: Dict[str, Any]) -> bool:
        return await self._publish(contact_id, NEW_MESSAGE_EVENT, payload)

    async def notify_status_update(self, contact_id: int, message_id: int, status: str) -> bool:
        return await self._publish(
            contact_id,
            STATUS_UPDATE_EVENT,
            {"messages": [{"id": message_id, "status": status}]},
        )

    async def notify_bulk_status_update(self, contact_id: int, statuses: Iterable[Dict[str, Any]]) -> bool:
        return await self._publish(
            contact_id,
            STATUS_UPDATE_EVENT,
            {"contact_id": contact_id, "messages": list(statuses)},
        )

    async def _publish(self, contact_id: int, event: str, data: Dict[str, Any]) -> bool:
        channel = channel_for(contact_id)
        try:
            await self.pubsub.publish(channel, event, data)
        except Exception as e:
            logger.error(f"Failed to publish '{event}' on {channel}: {e}")
            return False
        record_notification(event)
        return True
