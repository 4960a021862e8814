"""
בדיקות ל-WPPConnectClient ול-parse_gateway_event

מכסה:
- המרת webhooks של הגטוויי ל-TransportEvent
- רצף generate-token → start-session
- retry על שגיאות זמניות, כשל מיידי על שגיאות קבועות
- circuit breaker
"""
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from httpx import Response

from app.core.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from app.core.config import settings
from app.core.exceptions import CircuitBreakerOpenError, WhatsAppError
from app.domain.services.transport.base_client import InboundMessage, TransportEventType
from app.domain.services.transport.client_factory import (
    get_chat_client_factory,
    set_chat_client_factory,
)
from app.domain.services.transport.wppconnect_client import (
    WPPConnectClient,
    build_webhook_url,
    parse_gateway_event,
)

GATEWAY = "http://gateway.test:21465"


def _response(status_code: int = 200, body: dict | None = None) -> MagicMock:
    response = MagicMock(spec=Response)
    response.status_code = status_code
    response.text = ""
    response.json.return_value = body if body is not None else {"status": "success"}
    return response


@pytest.fixture
def mock_gateway():
    """Mock httpx.AsyncClient used by the client"""
    with patch("httpx.AsyncClient") as mock_client:
        mock_instance = AsyncMock()
        mock_instance.post = AsyncMock(return_value=_response())
        mock_instance.__aenter__ = AsyncMock(return_value=mock_instance)
        mock_instance.__aexit__ = AsyncMock(return_value=None)
        mock_client.return_value = mock_instance
        yield mock_instance


@pytest.fixture
def no_sleep():
    with patch(
        "app.domain.services.transport.wppconnect_client.asyncio.sleep",
        new_callable=AsyncMock,
    ) as sleep:
        yield sleep


@pytest.fixture
def breaker() -> CircuitBreaker:
    return CircuitBreaker("whatsapp-test", CircuitBreakerConfig(failure_threshold=2, timeout_seconds=60))


@pytest.fixture
def client(breaker) -> WPPConnectClient:
    return WPPConnectClient(
        "shop1",
        breaker,
        gateway_url=GATEWAY,
        secret_key="s3cret",
        webhook_url="http://bot.test/api/webhooks/gateway/shop1?token=t",
    )


class TestParseGatewayEvent:
    @pytest.mark.unit
    def test_qrcode_gets_data_url_prefix(self):
        event = parse_gateway_event("shop1", {"event": "qrcode", "qrcode": "QUJD"})
        assert event.type == TransportEventType.QR
        assert event.data == {"dataUrl": "data:image/png;base64,QUJD"}

    @pytest.mark.unit
    def test_qrcode_data_url_kept(self):
        event = parse_gateway_event("shop1", {"event": "qrcode", "qrcode": "data:image/png;base64,QUJD"})
        assert event.data["dataUrl"] == "data:image/png;base64,QUJD"

    @pytest.mark.unit
    def test_qrcode_without_data_ignored(self):
        assert parse_gateway_event("shop1", {"event": "qrcode"}) is None

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "status, expected",
        [
            ("isLogged", TransportEventType.READY),
            ("inChat", TransportEventType.READY),
            ("qrReadSuccess", TransportEventType.AUTHENTICATED),
            ("qrReadFail", TransportEventType.AUTH_FAILURE),
            ("browserClose", TransportEventType.DISCONNECTED),
            ("desconnectedMobile", TransportEventType.DISCONNECTED),
            ("initWhatsapp", TransportEventType.LOADING),
        ],
    )
    def test_status_mapping(self, status, expected):
        event = parse_gateway_event("shop1", {"event": "status-find", "status": status})
        assert event.type == expected

    @pytest.mark.unit
    def test_loading_percent(self):
        event = parse_gateway_event("shop1", {"event": "status-find", "status": "initWhatsapp"})
        assert event.data == {"percent": 40, "message": "initWhatsapp"}

    @pytest.mark.unit
    def test_unknown_status_ignored(self):
        assert parse_gateway_event("shop1", {"event": "status-find", "status": "somethingNew"}) is None

    @pytest.mark.unit
    def test_text_message(self):
        event = parse_gateway_event("shop1", {
            "event": "onmessage",
            "from": "33611111111@c.us",
            "body": "hello",
            "type": "chat",
            "id": "m1",
            "notifyName": "Dana",
            "t": 1700000000,
        })

        message = event.message
        assert event.type == TransportEventType.MESSAGE
        assert message.chat_id == "33611111111@c.us"
        assert message.text == "hello"
        assert message.sender_name == "Dana"
        assert message.has_media is False
        assert message.timestamp == 1700000000.0

    @pytest.mark.unit
    def test_media_message_uses_caption(self):
        event = parse_gateway_event("shop1", {
            "event": "onmessage",
            "from": "33611111111@c.us",
            "body": "/9j/4AAQSkZJRg...",
            "caption": "my receipt",
            "type": "image",
            "mimetype": "image/jpeg",
            "id": "m2",
        })

        assert event.message.has_media is True
        assert event.message.text == "my receipt"
        assert event.message.mime_type == "image/jpeg"

    @pytest.mark.unit
    def test_group_message_flagged(self):
        event = parse_gateway_event("shop1", {"event": "onmessage", "from": "123-456@g.us", "body": "hi"})
        assert event.message.is_group is True

    @pytest.mark.unit
    def test_unknown_event_ignored(self):
        assert parse_gateway_event("shop1", {"event": "onack"}) is None


class TestWebhookUrl:
    @pytest.mark.unit
    def test_token_in_query(self, monkeypatch):
        monkeypatch.setattr(settings, "PUBLIC_BASE_URL", "https://bot.example.com")
        monkeypatch.setattr(settings, "GATEWAY_WEBHOOK_SECRET", "abc123")

        assert build_webhook_url("shop1") == (
            "https://bot.example.com/api/webhooks/gateway/shop1?token=abc123"
        )

    @pytest.mark.unit
    def test_without_secret(self, monkeypatch):
        monkeypatch.setattr(settings, "PUBLIC_BASE_URL", "https://bot.example.com")
        monkeypatch.setattr(settings, "GATEWAY_WEBHOOK_SECRET", "")

        assert build_webhook_url("shop1") == "https://bot.example.com/api/webhooks/gateway/shop1"


class TestInitialize:
    @pytest.mark.unit
    async def test_token_then_start_session(self, client, mock_gateway):
        mock_gateway.post.side_effect = [
            _response(201, {"status": "success", "token": "tok-1"}),
            _response(200, {"status": "INITIALIZING"}),
        ]

        await client.initialize()

        token_call, start_call = mock_gateway.post.call_args_list
        assert token_call.args[0] == f"{GATEWAY}/api/shop1/s3cret/generate-token"
        assert start_call.args[0] == f"{GATEWAY}/api/shop1/start-session"
        assert start_call.kwargs["json"]["webhook"] == "http://bot.test/api/webhooks/gateway/shop1?token=t"
        assert start_call.kwargs["headers"] == {"Authorization": "Bearer tok-1"}

    @pytest.mark.unit
    async def test_start_returning_qr_emits_event(self, client, mock_gateway):
        mock_gateway.post.side_effect = [
            _response(201, {"token": "tok-1"}),
            _response(200, {"status": "QRCODE", "qrcode": "QUJD"}),
        ]
        handler = AsyncMock()
        client.set_event_handler(handler)

        await client.initialize()

        event = handler.await_args.args[0]
        assert event.type == TransportEventType.QR
        assert event.data["dataUrl"] == "data:image/png;base64,QUJD"

    @pytest.mark.unit
    async def test_already_connected_emits_ready(self, client, mock_gateway):
        mock_gateway.post.side_effect = [
            _response(201, {"token": "tok-1"}),
            _response(200, {"status": "CONNECTED"}),
        ]
        handler = AsyncMock()
        client.set_event_handler(handler)

        await client.initialize()

        assert handler.await_args.args[0].type == TransportEventType.READY

    @pytest.mark.unit
    async def test_missing_token_fails(self, client, mock_gateway):
        mock_gateway.post.return_value = _response(201, {"status": "success"})

        with pytest.raises(WhatsAppError):
            await client.initialize()

    @pytest.mark.unit
    async def test_destroy_without_token_is_noop(self, client, mock_gateway):
        await client.destroy()
        mock_gateway.post.assert_not_awaited()


class TestSend:
    @pytest.mark.unit
    async def test_send_text_payload(self, client, mock_gateway):
        await client.send_text("33611111111@c.us", "hello")

        call = mock_gateway.post.call_args
        assert call.args[0] == f"{GATEWAY}/api/shop1/send-message"
        assert call.kwargs["json"] == {"phone": "33611111111", "isGroup": False, "message": "hello"}

    @pytest.mark.unit
    async def test_send_media_payload(self, client, mock_gateway):
        await client.send_media("33611111111@c.us", b"abc", "application/pdf", "menu.pdf", caption="menu")

        payload = mock_gateway.post.call_args.kwargs["json"]
        assert payload["base64"] == "data:application/pdf;base64,YWJj"
        assert payload["filename"] == "menu.pdf"
        assert payload["caption"] == "menu"

    @pytest.mark.unit
    async def test_send_empty_media_rejected(self, client, mock_gateway):
        with pytest.raises(WhatsAppError):
            await client.send_media("33611111111@c.us", b"", "image/png")
        mock_gateway.post.assert_not_awaited()

    @pytest.mark.unit
    async def test_transient_status_retried(self, client, mock_gateway, no_sleep):
        mock_gateway.post.side_effect = [_response(503), _response(200)]

        await client.send_text("33611111111@c.us", "hello")

        assert mock_gateway.post.await_count == 2
        no_sleep.assert_awaited_once_with(1)

    @pytest.mark.unit
    async def test_permanent_status_not_retried(self, client, mock_gateway, no_sleep):
        mock_gateway.post.return_value = _response(400)

        with pytest.raises(WhatsAppError) as exc_info:
            await client.send_text("33611111111@c.us", "hello")

        assert mock_gateway.post.await_count == 1
        assert exc_info.value.details["status_code"] == 400

    @pytest.mark.unit
    async def test_timeouts_exhaust_retries(self, client, mock_gateway, no_sleep):
        mock_gateway.post.side_effect = httpx.ReadTimeout("slow")

        with pytest.raises(WhatsAppError) as exc_info:
            await client.send_text("33611111111@c.us", "hello")

        assert mock_gateway.post.await_count == settings.WHATSAPP_MAX_RETRIES
        assert exc_info.value.details["timeout"] is True

    @pytest.mark.unit
    async def test_circuit_opens_after_failures(self, client, mock_gateway, breaker):
        mock_gateway.post.return_value = _response(500)

        for _ in range(2):
            with pytest.raises(WhatsAppError):
                await client.send_text("33611111111@c.us", "hello")

        calls = mock_gateway.post.await_count
        with pytest.raises(CircuitBreakerOpenError):
            await client.send_text("33611111111@c.us", "hello")

        assert breaker.is_open
        assert mock_gateway.post.await_count == calls


class TestDownloadMedia:
    @pytest.mark.unit
    async def test_decodes_data_url(self, client, mock_gateway):
        mock_gateway.post.return_value = _response(200, {
            "base64": "data:image/jpeg;base64,YWJj",
            "mimetype": "image/jpeg",
        })
        message = InboundMessage(chat_id="33611111111@c.us", message_id="m1", filename="r.jpg")

        media = await client.download_media(message)

        assert media.data == b"abc"
        assert media.mime_type == "image/jpeg"
        assert media.filename == "r.jpg"
        assert mock_gateway.post.call_args.kwargs["json"] == {"messageId": "m1"}

    @pytest.mark.unit
    async def test_without_message_id(self, client, mock_gateway):
        with pytest.raises(WhatsAppError):
            await client.download_media(InboundMessage(chat_id="33611111111@c.us"))

    @pytest.mark.unit
    async def test_empty_content(self, client, mock_gateway):
        mock_gateway.post.return_value = _response(200, {})

        with pytest.raises(WhatsAppError):
            await client.download_media(InboundMessage(chat_id="x@c.us", message_id="m1"))


class TestClientFactory:
    @pytest.fixture(autouse=True)
    def restore_factory(self):
        yield
        set_chat_client_factory(None)

    @pytest.mark.unit
    def test_default_builds_wppconnect(self):
        set_chat_client_factory(None)

        chat_client = get_chat_client_factory()("shop1")

        assert isinstance(chat_client, WPPConnectClient)
        assert chat_client.session_id == "shop1"
        assert chat_client.provider_name == "wppconnect"

    @pytest.mark.unit
    def test_override(self):
        sentinel = MagicMock()
        set_chat_client_factory(lambda session_id: sentinel)

        assert get_chat_client_factory()("shop1") is sentinel
