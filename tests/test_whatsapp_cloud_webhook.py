"""
Tests for the WhatsApp Cloud API webhook (verify, signature, parsing, idempotency, busy conversation)
"""
import json
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import select

from taxibot.api.dependencies.webhook_auth import verify_meta_signature
from taxibot.api.webhooks.whatsapp_cloud import (
    INBOUND_MAX_ATTEMPTS,
    INBOUND_RETRY_DELAY_SECONDS,
    STATUS_COMPLETED,
    STATUS_PROCESSING,
    handle_inbound_event,
    parse_cloud_message,
    parse_cloud_payload,
    try_acquire_message,
)
from taxibot.core.config import settings
from taxibot.core.locks import conversation_lock_key
from taxibot.db.models.webhook_event import WebhookEvent
from taxibot.domain.services.conversation_service import MSG_BUSY
from taxibot.domain.services.whatsapp.base_provider import InboundEvent, InboundLocation, InboundType
from taxibot.state_machine.context import BookingContext, Origin
from taxibot.state_machine.states import ConversationState
from taxibot.workers import tasks
from tests.conftest import CUSTOMER_PHONE, GPS_ADDRESS, GPS_LAT, GPS_LNG
from tests.scenarios.conftest import (
    WHATSAPP_WEBHOOK,
    active_conversation,
    build_wa_payload,
    build_wa_text,
    message_id_of,
    post_whatsapp,
    sign,
)


async def _event_row(db, message_id):
    result = await db.execute(
        select(WebhookEvent)
        .where(WebhookEvent.message_id == message_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


class TestCloudApiVerify:
    """GET /webhook - registro do webhook na Meta"""

    @pytest.mark.integration
    async def test_returns_challenge_as_plain_text(self, test_client):
        response = await test_client.get(
            WHATSAPP_WEBHOOK,
            params={
                "hub.mode": "subscribe",
                "hub.challenge": "1158201444",
                "hub.verify_token": "test-verify-token",
            },
        )

        assert response.status_code == 200
        assert response.text == "1158201444"
        assert response.headers["content-type"].startswith("text/plain")

    @pytest.mark.integration
    async def test_wrong_verify_token(self, test_client):
        response = await test_client.get(
            WHATSAPP_WEBHOOK,
            params={"hub.mode": "subscribe", "hub.challenge": "123", "hub.verify_token": "errado"},
        )
        assert response.status_code == 403

    @pytest.mark.integration
    async def test_wrong_mode(self, test_client):
        response = await test_client.get(
            WHATSAPP_WEBHOOK,
            params={"hub.mode": "unsubscribe", "hub.challenge": "123", "hub.verify_token": "test-verify-token"},
        )
        assert response.status_code == 403


class TestVerifySignature:

    @pytest.mark.unit
    def test_valid_signature(self):
        body = b'{"object":"whatsapp_business_account"}'
        assert verify_meta_signature(body, sign(body, "segredo"), "segredo")

    @pytest.mark.unit
    @pytest.mark.parametrize("header", [None, "", "abc123", "sha1=abc", "sha256=deadbeef"])
    def test_invalid_headers(self, header):
        assert not verify_meta_signature(b"{}", header, "segredo")

    @pytest.mark.unit
    def test_body_tampered(self):
        signature = sign(b'{"a":1}', "segredo")
        assert not verify_meta_signature(b'{"a":2}', signature, "segredo")


class TestSignatureGuard:
    """POST /webhook rejeita antes de tocar no payload"""

    @pytest.mark.integration
    async def test_rejects_when_secret_not_configured(self, test_client, channel, monkeypatch):
        monkeypatch.setattr(settings, "WHATSAPP_CLOUD_API_APP_SECRET", "")

        response = await post_whatsapp(test_client, build_wa_text(CUSTOMER_PHONE, "oi"), signature="sha256=x")

        assert response.status_code == 403
        assert channel.sent == []

    @pytest.mark.integration
    async def test_rejects_bad_signature(self, test_client, channel):
        response = await post_whatsapp(
            test_client, build_wa_text(CUSTOMER_PHONE, "oi"), signature="sha256=" + "0" * 64
        )

        assert response.status_code == 403
        assert channel.sent == []

    @pytest.mark.integration
    async def test_rejects_invalid_json(self, test_client):
        body = b"not json"
        response = await test_client.post(
            WHATSAPP_WEBHOOK,
            content=body,
            headers={"Content-Type": "application/json", "X-Hub-Signature-256": sign(body)},
        )
        assert response.status_code == 400


class TestParseCloudMessage:

    @pytest.mark.unit
    def test_text_with_profile_name(self):
        payload = build_wa_text("+55 (19) 99876-5432", "oi", name="João")
        value = payload["entry"][0]["changes"][0]["value"]

        event = parse_cloud_message(value["messages"][0], value)

        assert event.type == InboundType.TEXT
        assert event.text == "oi"
        assert event.from_phone == "5519998765432"
        assert event.profile_name == "João"

    @pytest.mark.unit
    def test_blank_text_is_ignored(self):
        payload = build_wa_text(CUSTOMER_PHONE, "   ")
        value = payload["entry"][0]["changes"][0]["value"]
        assert parse_cloud_message(value["messages"][0], value) is None

    @pytest.mark.unit
    def test_location(self):
        msg = {
            "from": CUSTOMER_PHONE,
            "id": "wamid.loc",
            "type": "location",
            "location": {"latitude": "-22.9", "longitude": -47.5, "name": "Casa"},
        }
        event = parse_cloud_message(msg, {})
        assert event.type == InboundType.LOCATION
        assert event.location.latitude == -22.9
        assert event.location.name == "Casa"
        assert event.profile_name is None

    @pytest.mark.unit
    def test_location_without_coordinates_is_ignored(self):
        msg = {"from": CUSTOMER_PHONE, "id": "x", "type": "location", "location": {"latitude": -22.9}}
        assert parse_cloud_message(msg, {}) is None

    @pytest.mark.unit
    def test_button_reply(self):
        msg = {
            "from": CUSTOMER_PHONE,
            "id": "wamid.btn",
            "type": "interactive",
            "interactive": {"type": "button_reply", "button_reply": {"id": "confirm", "title": "Confirmar"}},
        }
        event = parse_cloud_message(msg, {})
        assert event.type == InboundType.INTERACTIVE
        assert event.button_id == "confirm"
        assert event.text == "Confirmar"

    @pytest.mark.unit
    def test_template_quick_reply(self):
        msg = {"from": CUSTOMER_PHONE, "id": "x", "type": "button", "button": {"text": "Sim", "payload": "yes"}}
        event = parse_cloud_message(msg, {})
        assert event.button_id == "yes"
        assert event.text == "Sim"

    @pytest.mark.unit
    def test_audio(self):
        msg = {"from": CUSTOMER_PHONE, "id": "x", "type": "audio", "audio": {"id": "media-1", "mime_type": "audio/ogg"}}
        event = parse_cloud_message(msg, {})
        assert event.type == InboundType.AUDIO
        assert event.media_id == "media-1"

    @pytest.mark.unit
    def test_image_caption_becomes_text(self):
        msg = {"from": CUSTOMER_PHONE, "id": "x", "type": "image", "image": {"id": "m", "caption": "me busca aqui"}}
        event = parse_cloud_message(msg, {})
        assert event.type == InboundType.TEXT
        assert event.text == "me busca aqui"

    @pytest.mark.unit
    @pytest.mark.parametrize("msg_type", ["sticker", "video", "document", "reaction"])
    def test_unsupported_types(self, msg_type):
        msg = {"from": CUSTOMER_PHONE, "id": "x", "type": msg_type}
        assert parse_cloud_message(msg, {}) is None

    @pytest.mark.unit
    def test_payload_skips_statuses_and_other_products(self):
        payload = build_wa_text(CUSTOMER_PHONE, "oi")
        payload["entry"][0]["changes"].append({
            "field": "messages",
            "value": {
                "messaging_product": "whatsapp",
                "statuses": [{"id": "wamid.out", "status": "delivered"}],
            },
        })
        payload["entry"][0]["changes"].append({
            "field": "messages",
            "value": {"messaging_product": "instagram", "messages": [{"from": "1", "id": "y", "type": "text"}]},
        })

        events = parse_cloud_payload(payload)

        assert [e.text for e in events] == ["oi"]

    @pytest.mark.unit
    def test_empty_payload(self):
        assert parse_cloud_payload({}) == []


class TestIdempotency:

    @pytest.mark.integration
    async def test_new_message_is_processed_and_completed(self, test_client, db_session, channel):
        payload = build_wa_text(CUSTOMER_PHONE, "oi")

        response = await post_whatsapp(test_client, payload)

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "accepted": 1}
        assert channel.sent
        assert channel.sent[0][1] == CUSTOMER_PHONE
        row = await _event_row(db_session, message_id_of(payload))
        assert row.status == STATUS_COMPLETED

    @pytest.mark.integration
    async def test_duplicate_delivery_is_not_reprocessed(self, test_client, channel):
        payload = build_wa_text(CUSTOMER_PHONE, "oi")
        await post_whatsapp(test_client, payload)
        sent_after_first = len(channel.sent)

        response = await post_whatsapp(test_client, payload)

        assert response.json()["accepted"] == 0
        assert len(channel.sent) == sent_after_first

    @pytest.mark.integration
    async def test_in_flight_duplicate_is_skipped(self, db_session):
        assert await try_acquire_message(db_session, "wamid.inflight") is True
        assert await try_acquire_message(db_session, "wamid.inflight") is False

    @pytest.mark.integration
    async def test_stale_processing_is_retried(self, db_session):
        db_session.add(WebhookEvent(
            message_id="wamid.stale",
            source="whatsapp_cloud",
            status=STATUS_PROCESSING,
            created_at=datetime.utcnow() - timedelta(minutes=5),
        ))
        await db_session.commit()

        assert await try_acquire_message(db_session, "wamid.stale") is True

    @pytest.mark.integration
    async def test_message_without_id_is_always_processed(self, db_session):
        assert await try_acquire_message(db_session, "") is True


    @pytest.mark.integration
    async def test_multiple_messages_in_one_delivery(self, test_client, channel):
        payload = build_wa_payload("5519990000001", {"type": "text", "text": {"body": "oi"}})
        second = build_wa_text("5519990000002", "olá")
        payload["entry"].extend(second["entry"])

        response = await post_whatsapp(test_client, payload)

        assert response.json()["accepted"] == 2
        assert {to for _, to, _, _ in channel.sent} == {"5519990000001", "5519990000002"}



class TestBusyConversation:
    """Lock da conversa não obtido: reagenda no Celery ou pede reenvio ao cliente"""

    @pytest.fixture
    async def awaiting_destination(self, customer_factory, conversation_factory):
        customer = await customer_factory()
        context = BookingContext(
            flow_started=True,
            origin=Origin(address=GPS_ADDRESS, latitude=GPS_LAT, longitude=GPS_LNG, is_auto_detected=True),
        )
        return await conversation_factory(customer, ConversationState.AWAITING_DESTINATION, context)

    @pytest.fixture
    def busy(self, fake_redis, monkeypatch):
        monkeypatch.setattr(settings, "CONVERSATION_LOCK_WAIT_SECONDS", 0.1)
        return conversation_lock_key(CUSTOMER_PHONE)

    @pytest.fixture
    def apply_async(self):
        with patch.object(tasks.process_inbound_message, "apply_async") as mock:
            yield mock

    @staticmethod
    def _event(message_id: str, text: str = "Rua Virgílio Duarte, 34") -> InboundEvent:
        return InboundEvent(from_phone=CUSTOMER_PHONE, message_id=message_id, type=InboundType.TEXT, text=text)

    @pytest.mark.integration
    async def test_busy_message_is_requeued(
        self, test_client, db_session, channel, fake_redis, busy, apply_async, awaiting_destination,
    ):
        await fake_redis.set(busy, "outro-worker")
        payload = build_wa_text(CUSTOMER_PHONE, "Rua Virgílio Duarte, 34")

        response = await post_whatsapp(test_client, payload)

        assert response.json() == {"status": "ok", "accepted": 1}
        apply_async.assert_called_once()
        args = apply_async.call_args.kwargs["args"]
        assert args[0]["message_id"] == message_id_of(payload)
        assert args[0]["text"] == "Rua Virgílio Duarte, 34"
        assert args[1] == 2
        assert apply_async.call_args.kwargs["countdown"] == INBOUND_RETRY_DELAY_SECONDS
        assert channel.sent == []
        row = await _event_row(db_session, message_id_of(payload))
        assert row.status == STATUS_PROCESSING

    @pytest.mark.integration
    async def test_requeued_message_is_processed_by_task(
        self, db_session, channel, wired_services, awaiting_destination, monkeypatch,
    ):
        @asynccontextmanager
        async def _session():
            yield db_session

        monkeypatch.setattr(tasks, "get_task_session", _session)
        event = self._event("wamid.requeued")
        await try_acquire_message(db_session, event.message_id)

        await tasks._process_inbound_message(event.to_dict(), 2)

        conversation = await active_conversation(db_session, CUSTOMER_PHONE)
        assert conversation.state == ConversationState.AWAITING_CATEGORY.value
        assert channel.sent
        row = await _event_row(db_session, event.message_id)
        assert row.status == STATUS_COMPLETED

    @pytest.mark.integration
    async def test_last_attempt_asks_customer_to_resend(
        self, db_session, channel, fake_redis, busy, apply_async, wired_services, awaiting_destination,
    ):
        await fake_redis.set(busy, "outro-worker")
        event = self._event("wamid.last")
        await try_acquire_message(db_session, event.message_id)

        await handle_inbound_event(db_session, event, attempt=INBOUND_MAX_ATTEMPTS)

        apply_async.assert_not_called()
        assert channel.texts() == [MSG_BUSY]
        conversation = await active_conversation(db_session, CUSTOMER_PHONE)
        assert conversation.state == ConversationState.AWAITING_DESTINATION.value
        row = await _event_row(db_session, event.message_id)
        assert row.status == STATUS_COMPLETED

    @pytest.mark.integration
    async def test_broker_down_asks_customer_to_resend(
        self, db_session, channel, fake_redis, busy, apply_async, wired_services, awaiting_destination,
    ):
        apply_async.side_effect = OSError("broker unreachable")
        await fake_redis.set(busy, "outro-worker")
        event = self._event("wamid.nobroker")
        await try_acquire_message(db_session, event.message_id)

        await handle_inbound_event(db_session, event)

        assert channel.texts() == [MSG_BUSY]

    @pytest.mark.unit
    def test_event_survives_task_payload(self):
        event = InboundEvent(
            from_phone=CUSTOMER_PHONE,
            message_id="wamid.loc",
            type=InboundType.LOCATION,
            location=InboundLocation(latitude=GPS_LAT, longitude=GPS_LNG, name="Casa"),
        )

        payload = json.loads(json.dumps(event.to_dict()))

        assert InboundEvent.from_dict(payload) == event


class TestRequestBody:

    @pytest.mark.integration
    async def test_body_is_hashed_as_received(self, test_client):
        # espaçamento diferente do json.dumps padrão: a assinatura é do corpo bruto
        body = json.dumps(build_wa_text(CUSTOMER_PHONE, "oi"), separators=(",", ":")).encode()
        response = await test_client.post(
            WHATSAPP_WEBHOOK,
            content=body,
            headers={"Content-Type": "application/json", "X-Hub-Signature-256": sign(body)},
        )
        assert response.status_code == 200
