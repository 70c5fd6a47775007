"""
Pydantic schemas for request/response validation.

This module contains:
- Provider webhook models (the subset of the Cloud API payload we consume)
- Request models for the outbound send path
- Response models for API responses
"""

from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from relay.models import MEDIA_KINDS


# =============================================================================
# Provider Webhook Models
# =============================================================================

class WebhookMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    phone_number_id: Optional[str] = None
    display_phone_number: Optional[str] = None


class TextBody(BaseModel):
    body: str = ""


class MediaReference(BaseModel):
    """Media object of image/audio/video/document/voice messages."""
    model_config = ConfigDict(extra="allow")

    id: str = Field(..., min_length=1)
    caption: Optional[str] = None
    filename: Optional[str] = None
    mime_type: Optional[str] = None


class InboundMessage(BaseModel):
    """
    One item of ``value.messages``.

    Only ``id`` and ``from`` are required; the declared ``type`` selects
    which of the content objects is read.
    """
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str = Field(..., min_length=1)
    from_phone: str = Field(..., alias="from", min_length=1)
    type: Optional[str] = None
    timestamp: Optional[Union[int, str]] = None
    text: Optional[TextBody] = None
    image: Optional[MediaReference] = None
    audio: Optional[MediaReference] = None
    video: Optional[MediaReference] = None
    document: Optional[MediaReference] = None
    voice: Optional[MediaReference] = None

    def media_reference(self) -> Optional[MediaReference]:
        if self.type in MEDIA_KINDS:
            return getattr(self, self.type, None)
        return None


class ConversationOrigin(BaseModel):
    type: Optional[str] = None


class Conversation(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    origin: Optional[ConversationOrigin] = None


class StatusError(BaseModel):
    model_config = ConfigDict(extra="allow")

    code: Optional[int] = None
    title: Optional[str] = None
    message: Optional[str] = None


class StatusEvent(BaseModel):
    """One item of ``value.statuses``."""
    model_config = ConfigDict(extra="allow")

    id: str = Field(..., min_length=1)
    status: Optional[str] = None
    recipient_id: Optional[str] = None
    timestamp: Optional[Union[int, str]] = None
    conversation: Optional[Conversation] = None
    errors: list[StatusError] = Field(default_factory=list)

    @property
    def is_utility_origin(self) -> bool:
        origin = self.conversation.origin if self.conversation else None
        return origin is not None and origin.type == "utility"

    @property
    def error_summary(self) -> Optional[str]:
        if not self.errors:
            return None
        first = self.errors[0]
        return first.message or first.title or (str(first.code) if first.code is not None else None)


class ChangeValue(BaseModel):
    """Items stay raw so a malformed one can be skipped without failing the batch."""
    model_config = ConfigDict(extra="allow")

    metadata: Optional[WebhookMetadata] = None
    messages: list[Any] = Field(default_factory=list)
    statuses: list[Any] = Field(default_factory=list)


class Change(BaseModel):
    field: Optional[str] = None
    value: ChangeValue


class Entry(BaseModel):
    id: Optional[str] = None
    changes: list[Change] = Field(default_factory=list)


class WebhookPayload(BaseModel):
    """Top-level shape; anything failing here is answered with 400."""
    object: Optional[str] = None
    entry: list[Entry] = Field(..., min_length=1)


# =============================================================================
# Request Models
# =============================================================================

class SendMessageRequest(BaseModel):
    contact_id: int = Field(..., ge=1, description="Internal contact id")
    content: str = Field(..., min_length=1, max_length=4096, description="Message text")


# =============================================================================
# Response Models
# =============================================================================

class WebhookResponse(BaseModel):
    """Response model for accepted webhook deliveries."""
    success: bool = Field(default=True, description="Delivery accepted")


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class MessagePayload(BaseModel):
    """Message as shown to frontend clients; same shape as the new-message event."""
    id: int
    text: str
    sender: str = Field(..., description="'user' for outbound, 'other' for inbound")
    timestamp: Optional[str] = Field(None, description="ISO-8601 UTC")
    status: str
    type: Optional[str] = None
    media_url: Optional[str] = None
    caption: Optional[str] = None


class SendMessageResponse(BaseModel):
    success: bool
    data: Optional[MessagePayload] = None
    message: str
    error: Optional[str] = None


class MessagesListResponse(BaseModel):
    """
    Response model for GET /messages/{contact_id}.

    Messages are returned oldest first within the requested page; pages are
    counted from the most recent message backwards.
    """
    success: bool = True
    data: list[MessagePayload] = Field(default_factory=list)
    total: int = Field(..., ge=0)
    page: int = Field(..., ge=1)
    limit: int = Field(..., ge=1, le=100)
    has_more: bool


class ContactSummary(BaseModel):
    """A tenant's contact with its unread count and last activity."""
    id: int
    name: str
    phone_number: str
    received_messages_count: int = Field(..., ge=0, description="Inbound messages not yet read")
    last_message_time: Optional[str] = Field(None, description="ISO-8601 UTC of the latest message")


class ContactsListResponse(BaseModel):
    """Response model for GET /users/{user_id}/contacts, most recently active first."""
    success: bool = True
    data: list[ContactSummary] = Field(default_factory=list)


class MarkReadResponse(BaseModel):
    updated_count: int = Field(..., ge=0)


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
