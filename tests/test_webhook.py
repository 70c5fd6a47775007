"""
Tests for the /webhook endpoints.

Tests cover:
- Subscription handshake (GET)
- Inbound text messages, redelivery and malformed siblings
- Status callbacks, ordering and template synthesis
- Inbound media end to end
- Payload and signature rejection
- Permission-based notification filtering
- Payload model parsing and concurrent media deliveries
"""

import asyncio
import json
from pathlib import Path

import httpx
import pytest

from relay.contacts import ContactResolver
from relay.errors import PersistenceError
from relay.media import MediaResolver
from relay.notifier import NEW_MESSAGE_EVENT, STATUS_UPDATE_EVENT, Notifier, isoformat_utc
from relay.pubsub import InMemoryPubSub
from relay.schemas import InboundMessage, StatusEvent, WebhookPayload
from relay.upsert import MessageUpsertEngine
from relay.webhook import TEMPLATE_PLACEHOLDER, WebhookEventProcessor
from relay.whatsapp_client import WhatsAppClient

from factories import (
    CONTACT_PHONE,
    GRAPH_BASE,
    PROVIDER_TS,
    PROVIDER_TS_ISO,
    VERIFY_TOKEN,
    FakeProvider,
    add_message,
    count_messages,
    drain,
    get_message,
    media_message,
    seed_tenant,
    sign,
    status_event,
    text_message,
    webhook_payload,
)

APP_SECRET = "app-secret"


class TestWebhookVerify:
    """Test the GET /webhook subscription handshake."""

    def test_valid_token_echoes_challenge(self, client, tenant):
        response = client.get(
            "/webhook",
            params={"hub.mode": "subscribe", "hub.verify_token": VERIFY_TOKEN, "hub.challenge": "1158201444"},
        )
        assert response.status_code == 200
        assert response.text == "1158201444"

    def test_underscore_parameters_accepted(self, client, tenant):
        response = client.get(
            "/webhook",
            params={"hub_mode": "subscribe", "hub_verify_token": VERIFY_TOKEN, "hub_challenge": "42"},
        )
        assert response.status_code == 200
        assert response.text == "42"

    def test_unknown_token_forbidden(self, client, tenant):
        response = client.get(
            "/webhook",
            params={"hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "42"},
        )
        assert response.status_code == 403

    def test_wrong_mode_forbidden(self, client, tenant):
        response = client.get(
            "/webhook",
            params={"hub.mode": "unsubscribe", "hub.verify_token": VERIFY_TOKEN, "hub.challenge": "42"},
        )
        assert response.status_code == 403

    def test_missing_parameters_bad_request(self, client, tenant):
        response = client.get("/webhook", params={"hub.mode": "subscribe"})
        assert response.status_code == 400


class TestInboundText:
    """Test inbound text messages."""

    def test_text_message_created_and_published(self, client, events):
        response = client.post("/webhook", json=webhook_payload(messages=[text_message("wamid.IN1")]))

        assert response.status_code == 200
        assert response.json() == {"success": True}

        message = get_message("wamid.IN1")
        assert message is not None
        assert message.direction == "in"
        assert message.status == "received"
        assert message.content == "Hello"
        assert message.message_type == "text"

        published = drain(events)
        assert len(published) == 1
        assert published[0]["event"] == NEW_MESSAGE_EVENT
        data = published[0]["data"]
        assert data["text"] == "Hello"
        assert data["sender"] == "other"
        assert data["status"] == "received"
        assert data["type"] == "text"
        assert data["timestamp"] == PROVIDER_TS_ISO

    def test_redelivery_is_idempotent(self, client, events):
        body = webhook_payload(messages=[text_message("wamid.IN1")])

        assert client.post("/webhook", json=body).status_code == 200
        assert client.post("/webhook", json=body).status_code == 200

        assert count_messages() == 1
        assert [e["event"] for e in drain(events)] == [NEW_MESSAGE_EVENT]

    def test_empty_body_uses_placeholder(self, client, tenant):
        client.post("/webhook", json=webhook_payload(messages=[text_message("wamid.EMPTY", body="")]))

        assert get_message("wamid.EMPTY").content == "[no text]"

    def test_unknown_contact_dropped(self, client, tenant):
        body = webhook_payload(messages=[text_message("wamid.STRANGER", sender="4400000000")])

        response = client.post("/webhook", json=body)

        assert response.status_code == 200
        assert count_messages() == 0

    def test_malformed_item_does_not_drop_siblings(self, client, tenant):
        body = webhook_payload(messages=[{"id": "wamid.BROKEN", "type": "text"}, text_message("wamid.OK")])

        response = client.post("/webhook", json=body)

        assert response.status_code == 200
        assert get_message("wamid.BROKEN") is None
        assert get_message("wamid.OK") is not None

    def test_unsupported_type_dropped(self, client, tenant):
        sticker = {"from": CONTACT_PHONE, "id": "wamid.STICKER", "type": "sticker", "sticker": {"id": "S1"}}

        response = client.post("/webhook", json=webhook_payload(messages=[sticker]))

        assert response.status_code == 200
        assert count_messages() == 0

    def test_missing_phone_number_id_still_acknowledged(self, client, tenant):
        body = webhook_payload(messages=[text_message("wamid.IN1")], phone_number_id=None)

        response = client.post("/webhook", json=body)

        assert response.status_code == 200
        assert response.json() == {"success": True}
        assert count_messages() == 0

    def test_several_messages_in_one_batch(self, client, tenant):
        body = webhook_payload(messages=[text_message(f"wamid.B{i}", body=f"m{i}") for i in range(5)])

        client.post("/webhook", json=body)

        assert count_messages() == 5


class TestWebhookRejections:
    """Test payloads rejected before any processing."""

    def test_invalid_json(self, client, tenant):
        response = client.post("/webhook", content="not json", headers={"Content-Type": "application/json"})
        assert response.status_code == 400

    def test_missing_entry(self, client, tenant):
        response = client.post("/webhook", json={"object": "whatsapp_business_account"})
        assert response.status_code == 400

    def test_empty_entry(self, client, tenant):
        response = client.post("/webhook", json={"object": "whatsapp_business_account", "entry": []})
        assert response.status_code == 400


class TestWebhookSignature:
    """Test X-Hub-Signature-256 checks when an app secret is configured."""

    @pytest.fixture
    def test_settings(self, test_settings):
        return test_settings.model_copy(update={"APP_SECRET": APP_SECRET})

    def test_valid_signature(self, client, tenant):
        body = json.dumps(webhook_payload(messages=[text_message("wamid.SIGNED")]))

        response = client.post(
            "/webhook",
            content=body,
            headers={"Content-Type": "application/json", "X-Hub-Signature-256": sign(body, APP_SECRET)},
        )

        assert response.status_code == 200
        assert get_message("wamid.SIGNED") is not None

    def test_missing_signature(self, client, tenant):
        body = json.dumps(webhook_payload(messages=[text_message("wamid.SIGNED")]))

        response = client.post("/webhook", content=body, headers={"Content-Type": "application/json"})

        assert response.status_code == 401
        assert count_messages() == 0

    def test_wrong_signature(self, client, tenant):
        body = json.dumps(webhook_payload(messages=[text_message("wamid.SIGNED")]))

        response = client.post(
            "/webhook",
            content=body,
            headers={"Content-Type": "application/json", "X-Hub-Signature-256": sign(body, "other-secret")},
        )

        assert response.status_code == 401


class TestStatusCallbacks:
    """Test status callbacks for outbound messages."""

    def test_status_advances_and_publishes(self, client, tenant, events):
        message_id = add_message(tenant, direction="out", status="sent", meta_message_id="wamid.OUT1")

        client.post("/webhook", json=webhook_payload(statuses=[status_event("wamid.OUT1", "delivered")]))

        assert get_message("wamid.OUT1").status == "delivered"
        published = drain(events)
        assert published == [
            {"event": STATUS_UPDATE_EVENT, "data": {"messages": [{"id": message_id, "status": "delivered"}]}}
        ]

    def test_out_of_order_status_never_regresses(self, client, tenant, events):
        add_message(tenant, direction="out", status="sent", meta_message_id="wamid.OUT1")
        body = webhook_payload(statuses=[status_event("wamid.OUT1", "read"), status_event("wamid.OUT1", "delivered")])

        client.post("/webhook", json=body)

        assert get_message("wamid.OUT1").status == "read"
        assert len(drain(events)) == 1

    def test_repeated_status_publishes_once(self, client, tenant, events):
        add_message(tenant, direction="out", status="sent", meta_message_id="wamid.OUT1")
        body = webhook_payload(statuses=[status_event("wamid.OUT1", "delivered")])

        client.post("/webhook", json=body)
        client.post("/webhook", json=body)

        assert len(drain(events)) == 1

    def test_failed_status_keeps_error(self, client, tenant):
        add_message(tenant, direction="out", status="sent", meta_message_id="wamid.OUT1")
        failed = status_event(
            "wamid.OUT1",
            "failed",
            errors=[{"code": 131047, "title": "Re-engagement message", "message": "More than 24 hours have passed"}],
        )

        client.post("/webhook", json=webhook_payload(statuses=[failed]))

        message = get_message("wamid.OUT1")
        assert message.status == "failed"
        assert message.error_message == "More than 24 hours have passed"

    def test_integer_timestamps_accepted(self, client, tenant):
        message = text_message("wamid.IN1")
        message["timestamp"] = int(PROVIDER_TS)
        status = status_event("wamid.TPL1", "sent", utility=True)
        status["timestamp"] = int(PROVIDER_TS)

        response = client.post("/webhook", json=webhook_payload(messages=[message], statuses=[status]))

        assert response.status_code == 200
        assert isoformat_utc(get_message("wamid.IN1").sent_at) == PROVIDER_TS_ISO
        assert isoformat_utc(get_message("wamid.TPL1").sent_at) == PROVIDER_TS_ISO

    def test_unknown_message_ignored(self, client, tenant):
        response = client.post("/webhook", json=webhook_payload(statuses=[status_event("wamid.GHOST", "read")]))

        assert response.status_code == 200
        assert count_messages() == 0

    def test_utility_status_creates_template_once(self, client, tenant, events):
        sent = status_event("wamid.TPL", "sent", utility=True)
        delivered = status_event("wamid.TPL", "delivered", utility=True)

        client.post("/webhook", json=webhook_payload(statuses=[sent]))
        client.post("/webhook", json=webhook_payload(statuses=[sent]))
        client.post("/webhook", json=webhook_payload(statuses=[delivered]))

        assert count_messages() == 1
        message = get_message("wamid.TPL")
        assert message.message_type == "template"
        assert message.direction == "out"
        assert message.content == TEMPLATE_PLACEHOLDER
        assert message.status == "delivered"

        assert [e["event"] for e in drain(events)] == [NEW_MESSAGE_EVENT, STATUS_UPDATE_EVENT]


class TestPermissionFiltering:
    """Test that notifications respect the tenant's permitted message types."""

    def test_excluded_type_stored_but_not_published(self, client, app):
        restricted = seed_tenant(permission="text")
        queue = client.portal.call(app.state.services.pubsub.subscribe, f"messages-channel-{restricted.contact_id}")

        client.post("/webhook", json=webhook_payload(statuses=[status_event("wamid.TPL", "sent", utility=True)]))
        client.post("/webhook", json=webhook_payload(messages=[text_message("wamid.IN1")]))

        assert get_message("wamid.TPL") is not None
        published = drain(queue)
        assert len(published) == 1
        assert published[0]["data"]["type"] == "text"


class TestInboundMedia:
    """Test inbound media resolution through the webhook."""

    def test_image_downloaded_and_stored(self, client, events, provider, tmp_path):
        provider.route_media("MEDIA1", data=b"jpegbytes")
        body = webhook_payload(messages=[media_message("wamid.IMG", "image", "MEDIA1", caption="Look")])

        response = client.post("/webhook", json=body)

        assert response.status_code == 200
        message = get_message("wamid.IMG")
        assert message.message_type == "image"
        assert message.content == "Look"
        assert message.caption == "Look"
        assert message.media_path.startswith("images/")
        assert message.media_path.endswith(".jpg")
        assert message.media_url == f"/media/{message.media_path}"
        assert message.media_metadata["mime_type"] == "image/jpeg"
        assert message.media_metadata["file_size"] == len(b"jpegbytes")
        assert (Path(tmp_path) / "media" / message.media_path).read_bytes() == b"jpegbytes"

        media_request = provider.calls("/v1/MEDIA1")[0]
        assert media_request.headers["Authorization"] == "Bearer tenant-token"

        data = drain(events)[0]["data"]
        assert data["media_url"] == message.media_url
        assert data["caption"] == "Look"

    def test_document_keeps_sanitized_filename(self, client, tenant, provider):
        provider.route_media("DOC1", data=b"%PDF-1.7", mime_type="application/pdf")
        body = webhook_payload(
            messages=[media_message("wamid.DOC", "document", "DOC1", filename="report 2024.pdf")]
        )

        client.post("/webhook", json=body)

        message = get_message("wamid.DOC")
        assert message.content == "report 2024.pdf"
        assert message.media_path.startswith("documents/")
        assert message.media_path.endswith("/report_2024.pdf")
        assert message.media_metadata["filename"] == "report 2024.pdf"

    def test_voice_without_caption_gets_default_text(self, client, tenant, provider):
        provider.route_media("VOICE1", data=b"ogg", mime_type="audio/ogg")

        client.post("/webhook", json=webhook_payload(messages=[media_message("wamid.VOICE", "voice", "VOICE1")]))

        message = get_message("wamid.VOICE")
        assert message.content == "Voice message"
        assert message.media_path.startswith("audios/")

    def test_redelivery_skips_download(self, client, tenant, provider):
        provider.route_media("MEDIA1")
        body = webhook_payload(messages=[media_message("wamid.IMG", "image", "MEDIA1")])

        client.post("/webhook", json=body)
        client.post("/webhook", json=body)

        assert count_messages() == 1
        assert len(provider.calls("/v1/MEDIA1")) == 1
        assert len(provider.calls("/file/MEDIA1")) == 1

    def test_media_failure_does_not_drop_siblings(self, client, tenant, provider):
        # MEDIA404 is not routed: the fake provider answers 404
        body = webhook_payload(
            messages=[media_message("wamid.IMG", "image", "MEDIA404"), text_message("wamid.TXT")]
        )

        response = client.post("/webhook", json=body)

        assert response.status_code == 200
        assert get_message("wamid.IMG") is None
        assert get_message("wamid.TXT") is not None

    def test_media_network_error_drops_item(self, client, tenant, provider):
        provider.route_error("/v1/MEDIA1", httpx.ConnectError("connection refused"))

        response = client.post(
            "/webhook", json=webhook_payload(messages=[media_message("wamid.IMG", "image", "MEDIA1")])
        )

        assert response.status_code == 200
        assert count_messages() == 0


class TestWebhookTenants:
    """Test tenant routing by phone_number_id."""

    def test_unknown_phone_number_id_drops_items(self, client, tenant):
        body = webhook_payload(messages=[text_message("wamid.IN1")], phone_number_id="999")

        response = client.post("/webhook", json=body)

        assert response.status_code == 200
        assert count_messages() == 0

    def test_same_phone_under_two_tenants(self, client, tenant):
        other = seed_tenant(phone_number_id="555000")

        client.post("/webhook", json=webhook_payload(messages=[text_message("wamid.A")]))
        client.post("/webhook", json=webhook_payload(messages=[text_message("wamid.B")], phone_number_id="555000"))

        assert get_message("wamid.A").contact_id == tenant.contact_id
        assert get_message("wamid.B").contact_id == other.contact_id


class TestPayloadModels:
    """Test how provider items are read."""

    @pytest.mark.parametrize("message_type", ["image", "audio", "video", "document", "voice"])
    def test_media_reference_for_every_media_type(self, message_type):
        message = InboundMessage.model_validate(media_message("wamid.M", message_type, "MEDIA1"))

        assert message.media_reference().id == "MEDIA1"

    def test_no_media_reference_for_other_types(self):
        assert InboundMessage.model_validate(text_message("wamid.T")).media_reference() is None

    def test_integer_timestamp_kept(self):
        status = StatusEvent.model_validate({"id": "wamid.S", "status": "read", "timestamp": 1709630000})

        assert status.timestamp == 1709630000


@pytest.mark.anyio
class TestMediaRaces:
    """Test media deliveries for the same message id racing each other."""

    @pytest.fixture
    def provider(self):
        return FakeProvider(delay=0.01)

    @pytest.fixture
    def processor(self, provider, tmp_path):
        client = WhatsAppClient(base_url=GRAPH_BASE, transport=provider.transport)
        return WebhookEventProcessor(
            contacts=ContactResolver(),
            media=MediaResolver(client, str(tmp_path), "/media"),
            engine=MessageUpsertEngine(Notifier(InMemoryPubSub())),
        )

    def _payload(self):
        return WebhookPayload.model_validate(
            webhook_payload(messages=[media_message("wamid.IMG", "image", "MEDIA1")])
        )

    async def test_concurrent_deliveries_download_once(self, processor, provider, tenant, tmp_path):
        provider.route_media("MEDIA1")

        await asyncio.gather(processor.process(self._payload()), processor.process(self._payload()))

        assert count_messages() == 1
        assert len(provider.calls("/file/MEDIA1")) == 1
        assert len([p for p in tmp_path.rglob("*") if p.is_file()]) == 1

    async def test_failed_write_removes_downloaded_file(self, processor, provider, tenant, tmp_path, monkeypatch):
        provider.route_media("MEDIA1")

        async def failing_upsert(record, origin=None):
            raise PersistenceError("database is locked")

        monkeypatch.setattr(processor.engine, "upsert", failing_upsert)

        result = await processor.process(self._payload())

        assert result.dropped == 1
        assert len(provider.calls("/file/MEDIA1")) == 1
        assert not any(p.is_file() for p in tmp_path.rglob("*"))
