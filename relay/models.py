"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy together
with the enumerations stored in them. For Pydantic request/response schemas,
see schemas.py.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    and_,
    func,
    select,
)
from sqlalchemy.orm import aliased, relationship

from relay.storage import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Direction(str, Enum):
    IN = "in"
    OUT = "out"


class MessageStatusValue(str, Enum):
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"
    RECEIVED = "received"


class MessageType(str, Enum):
    TEXT = "text"
    TEMPLATE = "template"
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"
    VOICE = "voice"
    DOCUMENT = "document"


@dataclass(frozen=True)
class MediaKind:
    folder: str
    extension: str
    caption: str
    mime_type: str


# Keyed by plain values: Enum members hash by name, so raw column strings would miss
MEDIA_KINDS: Dict[str, MediaKind] = {
    MessageType.IMAGE.value: MediaKind("images", "jpg", "Image", "image/jpeg"),
    MessageType.AUDIO.value: MediaKind("audios", "mp3", "Audio message", "audio/mpeg"),
    MessageType.VOICE.value: MediaKind("audios", "mp3", "Voice message", "audio/ogg"),
    MessageType.VIDEO.value: MediaKind("videos", "mp4", "Video", "video/mp4"),
    MessageType.DOCUMENT.value: MediaKind("documents", "pdf", "Document", "application/pdf"),
}

FALLBACK_KIND = MediaKind("others", "bin", "Media message", "application/octet-stream")

MEDIA_MESSAGE_TYPES = frozenset(MEDIA_KINDS)


class User(Base):
    """
    Tenant owning provider credentials and a set of contacts.

    ``phone_number_id`` is the provider's identifier for the business number;
    it is what inbound webhooks carry in ``metadata.phone_number_id``.
    ``permission`` is a comma separated list of message types the tenant's
    clients may see; empty means unrestricted.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    phone_number_id = Column(String, nullable=False, unique=True, index=True)
    token_meta = Column(Text, nullable=True)
    verify_token = Column(Text, nullable=True, index=True)
    permission = Column(Text, nullable=True)

    contacts = relationship("Contact", back_populates="user")

    @property
    def allowed_message_types(self) -> list[str]:
        if not self.permission:
            return []
        return [part.strip() for part in self.permission.split(",") if part.strip()]


class Contact(Base):
    """Counterparty of a conversation, scoped to one tenant."""
    __tablename__ = "contacts"
    __table_args__ = (UniqueConstraint("user_id", "phone_number", name="uq_contacts_user_phone"),)

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    phone_number = Column(String, nullable=False)
    name = Column(String, nullable=False)

    user = relationship("User", back_populates="contacts")
    messages = relationship("Message", back_populates="contact", order_by="Message.id")
    latest_message = relationship(
        "Message",
        primaryjoin=lambda: _latest_message_join(),
        foreign_keys="Message.contact_id",
        uselist=False,
        viewonly=True,
    )


class Message(Base):
    """
    SQLAlchemy model for WhatsApp messages in both directions.

    Table: messages
    ``meta_message_id`` is unique: the provider id is the idempotency key for
    webhook redelivery and status callbacks.
    """
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    contact_id = Column(Integer, ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False, index=True)
    meta_message_id = Column(String, nullable=True, unique=True)
    direction = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    status = Column(String, nullable=False, default=MessageStatusValue.SENDING.value)
    message_type = Column(String, nullable=True)
    media_url = Column(String, nullable=True)
    media_path = Column(String, nullable=True)
    caption = Column(Text, nullable=True)
    media_metadata = Column(JSON, nullable=True)
    error_message = Column(String, nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    contact = relationship("Contact", back_populates="messages")
    user = relationship("User")
    statuses = relationship(
        "MessageStatus",
        primaryjoin="Message.meta_message_id == foreign(MessageStatus.meta_message_id)",
        order_by="MessageStatus.id",
        viewonly=True,
    )

    @property
    def is_media(self) -> bool:
        return self.message_type in MEDIA_MESSAGE_TYPES


def _latest_message_join():
    """Contact to the message with the highest id in its conversation."""
    newer = aliased(Message)
    highest_id = select(func.max(newer.id)).where(newer.contact_id == Contact.id).scalar_subquery()
    return and_(Contact.id == Message.contact_id, Message.id == highest_id)


class MessageStatus(Base):
    """Append-only audit trail of status transitions, keyed by provider id."""
    __tablename__ = "message_statuses"

    id = Column(Integer, primary_key=True)
    meta_message_id = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False)
    status_timestamp = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
