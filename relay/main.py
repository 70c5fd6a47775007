import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Annotated, Awaitable, Optional

import httpx
from fastapi import (
    Depends,
    FastAPI,
    File,
    Form,
    Header,
    HTTPException,
    Query,
    Request,
    Response,
    UploadFile,
    status,
)
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from relay.config import Settings, settings
from relay.contacts import ContactResolver
from relay.errors import ContactNotFoundError, PersistenceError
from relay.logging_utils import RequestLoggingMiddleware, log_webhook_data, setup_logging
from relay.media import MediaResolver
from relay.metrics import get_metrics, get_metrics_content_type, record_webhook_item
from relay.models import MEDIA_KINDS
from relay.notifier import Notifier, channel_for, format_for, isoformat_utc
from relay.outbound import OutboundSender, SendResult
from relay.pubsub import InMemoryPubSub
from relay.schemas import (
    ContactsListResponse,
    ContactSummary,
    ErrorResponse,
    HealthResponse,
    MarkReadResponse,
    MessagePayload,
    MessagesListResponse,
    SendMessageRequest,
    SendMessageResponse,
    WebhookPayload,
    WebhookResponse,
)
from relay.storage import (
    check_db_health,
    get_contacts_with_activity,
    get_conversation_messages,
    get_db,
    init_db,
)
from relay.upsert import MessageUpsertEngine
from relay.utils import verify_hmac_signature
from relay.webhook import WebhookEventProcessor
from relay.whatsapp_client import WhatsAppClient


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

SSE_HEARTBEAT_SECONDS = 20


@dataclass
class Services:
    """Process-wide collaborators, built once per application."""
    client: WhatsAppClient
    pubsub: InMemoryPubSub
    engine: MessageUpsertEngine
    media: MediaResolver
    processor: WebhookEventProcessor
    sender: OutboundSender


def build_services(config: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> Services:
    client = WhatsAppClient(
        base_url=config.WHATSAPP_API_BASE,
        timeout=config.PROVIDER_TIMEOUT_SECONDS,
        download_timeout=config.MEDIA_DOWNLOAD_TIMEOUT_SECONDS,
        transport=transport,
    )
    pubsub = InMemoryPubSub()
    engine = MessageUpsertEngine(Notifier(pubsub))
    media = MediaResolver(client, config.MEDIA_ROOT, config.MEDIA_BASE_URL)
    processor = WebhookEventProcessor(contacts=ContactResolver(), media=media, engine=engine)
    return Services(
        client=client,
        pubsub=pubsub,
        engine=engine,
        media=media,
        processor=processor,
        sender=OutboundSender(client, engine, media),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


async def _send_response(sending: Awaitable[SendResult]):
    """Map a send outcome to the HTTP answer shared by the send routes."""
    try:
        result = await sending
    except ContactNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="contact not found")
    except PersistenceError as e:
        logger.error(f"Send could not be persisted: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="failed to store message"
        )

    if result.success:
        return SendMessageResponse(
            success=True,
            data=MessagePayload(**result.message),
            message="Message sent",
        )
    failed = SendMessageResponse(
        success=False,
        data=MessagePayload(**result.message),
        message="Message could not be sent",
        error=result.error,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=failed.model_dump(),
    )


def create_app(
    config: Settings = settings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Build the application.

    ``transport`` replaces the provider HTTP transport (tests use
    ``httpx.MockTransport``).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        init_db()
        yield
        # Shutdown
        await app.state.services.client.aclose()

    app = FastAPI(
        title="WhatsApp Relay",
        description="Relays WhatsApp Business webhooks to real-time conversation channels",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.services = build_services(config, transport)
    app.add_middleware(RequestLoggingMiddleware)
    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:

    # =========================================================================
    # Health Check Routes
    # =========================================================================

    @app.get("/health/live", response_model=HealthResponse)
    async def health_live() -> HealthResponse:
        """Liveness probe - always returns 200 once the app is running."""
        return HealthResponse(status="ok")

    @app.get("/health/ready", response_model=HealthResponse)
    async def health_ready(response: Response) -> HealthResponse:
        """Readiness probe - 200 only if the DB is reachable and the schema is applied."""
        if not check_db_health():
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return HealthResponse(
                status="not_ready",
                reason="Database not reachable or schema not applied"
            )
        return HealthResponse(status="ready")

    # =========================================================================
    # Webhook Routes
    # =========================================================================

    @app.get("/webhook", response_class=PlainTextResponse)
    async def webhook_verify(
        request: Request,
        services: Services = Depends(get_services),
    ) -> PlainTextResponse:
        """
        Provider subscription handshake.

        Accepts ``hub.mode``/``hub.verify_token``/``hub.challenge`` as sent by
        Meta, or the underscore spellings.
        """
        params = request.query_params
        outcome = services.processor.verify(
            mode=params.get("hub.mode") or params.get("hub_mode"),
            verify_token=params.get("hub.verify_token") or params.get("hub_verify_token"),
            challenge=params.get("hub.challenge") or params.get("hub_challenge"),
        )
        return PlainTextResponse(outcome.body, status_code=outcome.status_code)

    @app.post(
        "/webhook",
        response_model=WebhookResponse,
        responses={
            400: {"model": ErrorResponse, "description": "Payload is not a webhook batch"},
            401: {"model": ErrorResponse, "description": "Invalid signature"},
        },
    )
    async def webhook(
        request: Request,
        x_hub_signature: Annotated[str | None, Header(alias="X-Hub-Signature-256")] = None,
        services: Services = Depends(get_services),
    ) -> WebhookResponse:
        """
        Ingest a provider event batch.

        Answers 200 whenever the body has the expected top-level shape, even
        if individual items were dropped, so the provider does not replay
        items that already succeeded.
        """
        raw_body = await request.body()
        app_secret = request.app.state.config.APP_SECRET

        if app_secret and not verify_hmac_signature(raw_body, x_hub_signature or "", app_secret):
            logger.error("Invalid webhook signature")
            record_webhook_item("batch", "invalid_signature")
            log_webhook_data(request, result="invalid_signature")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="invalid signature"
            )

        try:
            payload = WebhookPayload.model_validate(json.loads(raw_body))
        except (json.JSONDecodeError, UnicodeDecodeError, ValidationError) as e:
            logger.error(f"Invalid webhook payload: {e}")
            record_webhook_item("batch", "invalid_payload")
            log_webhook_data(request, result="invalid_payload")
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="invalid payload"
            )

        result = await services.processor.process(payload)
        log_webhook_data(request, result="processed", **result.as_log_data())
        if not result.ok:
            logger.error("Webhook batch aborted", extra=result.as_log_data())
        return WebhookResponse(success=True)

    # =========================================================================
    # Message Routes
    # =========================================================================

    @app.post(
        "/messages/send",
        response_model=SendMessageResponse,
        responses={
            404: {"model": ErrorResponse, "description": "Unknown contact"},
            500: {"model": SendMessageResponse, "description": "Provider rejected the message"},
        },
    )
    async def send_message(
        body: SendMessageRequest,
        services: Services = Depends(get_services),
    ):
        """
        Send a text message to a contact.

        A provider failure answers 500 with ``success=false`` and the failed
        message, which is persisted with status ``failed``.
        """
        return await _send_response(services.sender.send_text(body.contact_id, body.content))

    @app.post(
        "/messages/send-file",
        response_model=SendMessageResponse,
        responses={
            404: {"model": ErrorResponse, "description": "Unknown contact"},
            413: {"model": ErrorResponse, "description": "File too large"},
            500: {"model": SendMessageResponse, "description": "Provider rejected the file"},
        },
    )
    async def send_file(
        request: Request,
        contact_id: Annotated[int, Form(ge=1, description="Internal contact id")],
        message_type: Annotated[str, Form(alias="type", description="image, video, audio, voice or document")],
        file: UploadFile = File(...),
        caption: Annotated[Optional[str], Form(max_length=1024)] = None,
        services: Services = Depends(get_services),
    ):
        """
        Send a file to a contact as an image, video, audio, voice or document message.

        Failures answer like ``/messages/send``; the failed message keeps its
        local copy of the file.
        """
        if message_type not in MEDIA_KINDS:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"unsupported media type {message_type!r}"
            )
        content = await file.read()
        if not content:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="file is empty")
        if len(content) > request.app.state.config.MAX_UPLOAD_BYTES:
            raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="file too large")

        return await _send_response(
            services.sender.send_media(
                contact_id,
                message_type,
                file.filename,
                content,
                mime_type=file.content_type,
                caption=caption or None,
            )
        )

    @app.get("/messages/{contact_id}", response_model=MessagesListResponse)
    async def list_messages(
        contact_id: int,
        page: Annotated[int, Query(ge=1, description="Page number, 1 is the most recent")] = 1,
        limit: Annotated[int, Query(ge=1, le=100, description="Messages per page")] = 20,
        db: Session = Depends(get_db),
    ) -> MessagesListResponse:
        """
        Conversation history, restricted to the tenant's permitted message types.
        """
        found = get_conversation_messages(db, contact_id=contact_id, page=page, limit=limit)
        if found is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="contact not found")
        messages, total = found
        return MessagesListResponse(
            data=[MessagePayload(**format_for(m)) for m in messages],
            total=total,
            page=page,
            limit=limit,
            has_more=page * limit < total,
        )

    @app.patch("/messages/{contact_id}/read", response_model=MarkReadResponse)
    async def mark_read(
        contact_id: int,
        services: Services = Depends(get_services),
    ) -> MarkReadResponse:
        """Mark every inbound message of the conversation as read."""
        try:
            updated = await services.engine.mark_contact_read(contact_id)
        except PersistenceError:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="failed to update messages"
            )
        return MarkReadResponse(updated_count=updated)

    # =========================================================================
    # Contact Routes
    # =========================================================================

    @app.get(
        "/users/{user_id}/contacts",
        response_model=ContactsListResponse,
        responses={404: {"model": ErrorResponse, "description": "Unknown user"}},
    )
    async def list_contacts(
        user_id: int,
        db: Session = Depends(get_db),
    ) -> ContactsListResponse:
        """
        A tenant's contacts with their unread counts, most recently active first.
        """
        found = get_contacts_with_activity(db, user_id)
        if found is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="user not found")
        return ContactsListResponse(
            data=[
                ContactSummary(
                    id=contact.id,
                    name=contact.name,
                    phone_number=contact.phone_number,
                    received_messages_count=received_count,
                    last_message_time=isoformat_utc(latest.created_at) if latest is not None else None,
                )
                for contact, received_count, latest in found
            ]
        )

    # =========================================================================
    # Real-time Events Route
    # =========================================================================

    @app.get("/events/{contact_id}")
    async def conversation_events(
        contact_id: int,
        services: Services = Depends(get_services),
    ):
        """
        Server-Sent Events stream of a conversation channel.

        Events: ``new-message`` and ``status-update``; a comment heartbeat
        is sent when the channel is idle.
        """
        channel = channel_for(contact_id)

        async def event_generator():
            queue = await services.pubsub.subscribe(channel)
            try:
                yield f"event: connected\ndata: {json.dumps({'channel': channel})}\n\n"
                while True:
                    try:
                        message = await asyncio.wait_for(queue.get(), timeout=SSE_HEARTBEAT_SECONDS)
                    except asyncio.TimeoutError:
                        yield ": heartbeat\n\n"
                        continue
                    yield f"event: {message['event']}\ndata: {json.dumps(message['data'])}\n\n"
            except asyncio.CancelledError:
                logger.info(f"SSE connection on {channel} cancelled")
                raise
            finally:
                await services.pubsub.unsubscribe(channel, queue)

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    # =========================================================================
    # Metrics Route
    # =========================================================================

    @app.get("/metrics")
    async def metrics() -> Response:
        """Expose Prometheus-style metrics."""
        return Response(
            content=get_metrics(),
            media_type=get_metrics_content_type()
        )


app = create_app()
