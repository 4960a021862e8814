"""
בדיקות API ל-/api/sessions — יצירה, QR, עצירה, ניקוי ו-WebSocket אירועים
"""
import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from fastapi import WebSocketDisconnect
from starlette.testclient import TestClient

from app.api.routes.sessions import _forward_notifications
from app.db.models.tenant import BotModeName
from app.domain.services.file_relay import FileRelay
from app.domain.services.notification_hub import Notification, SessionEvent
from app.domain.services.session_manager import SessionManager, reset_session_manager
from app.main import app
from tests.fakes import FakeChatClient, wait_for

OWNER = "33699999999@c.us"


class TestCreateSession:
    @pytest.mark.unit
    async def test_create_from_tenant(self, test_client, tenant_factory, session_manager, chat_clients):
        await tenant_factory("cafe1", "Cafe One")

        response = await test_client.post("/api/sessions", json={"tenantId": "cafe1"})

        assert response.status_code == 202
        assert response.json() == {"sessionId": "cafe1", "state": "INITIALIZING"}
        assert "cafe1" in session_manager
        await wait_for(lambda: chat_clients["cafe1"].init_calls == 1)

    @pytest.mark.unit
    async def test_custom_session_id(self, test_client, tenant_factory, session_manager):
        await tenant_factory("cafe1", "Cafe One")

        response = await test_client.post(
            "/api/sessions", json={"tenantId": "cafe1", "sessionId": "cafe1-branch2"}
        )

        assert response.json()["sessionId"] == "cafe1-branch2"
        assert session_manager.get_record("cafe1-branch2").tenant_id == "cafe1"

    @pytest.mark.unit
    async def test_inline_config(self, test_client, session_manager):
        response = await test_client.post("/api/sessions", json={
            "tenantId": "popup",
            "config": {
                "displayName": "Popup Store",
                "botMode": "ecommerce",
                "ownerOutwardId": OWNER,
                "acceptCod": True,
            },
        })

        assert response.status_code == 202
        record = session_manager.get_record("popup")
        assert record.config.bot_mode.name == BotModeName.ECOMMERCE
        assert record.config.display_name == "Popup Store"

    @pytest.mark.unit
    async def test_inline_ecommerce_without_owner(self, test_client, session_manager):
        response = await test_client.post("/api/sessions", json={
            "tenantId": "popup",
            "config": {"botMode": "ecommerce"},
        })

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "ERR_2005"
        assert "popup" not in session_manager

    @pytest.mark.unit
    async def test_unknown_tenant(self, test_client):
        response = await test_client.post("/api/sessions", json={"tenantId": "ghost"})

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "ERR_2004"

    @pytest.mark.unit
    async def test_inactive_tenant(self, test_client, tenant_factory):
        await tenant_factory("cafe1", "Cafe One", is_active=False)

        response = await test_client.post("/api/sessions", json={"tenantId": "cafe1"})

        assert response.status_code == 403

    @pytest.mark.unit
    async def test_duplicate(self, test_client, tenant_factory):
        await tenant_factory("cafe1", "Cafe One")
        await test_client.post("/api/sessions", json={"tenantId": "cafe1"})

        response = await test_client.post("/api/sessions", json={"tenantId": "cafe1"})

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "ERR_2002"

    @pytest.mark.unit
    async def test_invalid_identifier(self, test_client):
        response = await test_client.post("/api/sessions", json={"tenantId": "../etc"})
        assert response.status_code == 422


class TestSessionReads:
    @pytest.mark.unit
    async def test_unknown_session_view(self, test_client):
        response = await test_client.get("/api/sessions/nobody")

        assert response.status_code == 200
        body = response.json()
        assert body["exists"] is False
        assert body["state"] is None

    @pytest.mark.unit
    async def test_qr_flow(self, test_client, session_manager, chat_clients, conversational_config):
        await session_manager.create_session("cafe1", conversational_config)

        assert (await test_client.get("/api/sessions/cafe1/qr")).status_code == 404

        await chat_clients["cafe1"].push_qr("data:image/png;base64,UVI=")
        response = await test_client.get("/api/sessions/cafe1/qr")

        assert response.status_code == 200
        assert response.json() == {"sessionId": "cafe1", "dataUrl": "data:image/png;base64,UVI="}

        view = (await test_client.get("/api/sessions/cafe1")).json()
        assert view["state"] == "AWAITING_LINK"
        assert view["hasQR"] is True

    @pytest.mark.unit
    async def test_list(self, test_client, session_manager, conversational_config, ecommerce_config):
        await session_manager.create_session("cafe1", conversational_config)
        await session_manager.create_session("shop1", ecommerce_config)

        body = (await test_client.get("/api/sessions")).json()

        assert sorted(s["sessionId"] for s in body) == ["cafe1", "shop1"]
        assert {s["botMode"] for s in body} == {"conversational", "ecommerce"}


class TestStopAndClear:
    @pytest.mark.unit
    async def test_stop(self, test_client, session_manager, chat_clients, conversational_config):
        await session_manager.create_session("cafe1", conversational_config)

        response = await test_client.post("/api/sessions/cafe1/stop")

        assert response.json() == {"sessionId": "cafe1", "stopped": True}
        assert "cafe1" not in session_manager
        assert chat_clients["cafe1"].destroyed == 1

    @pytest.mark.unit
    async def test_stop_unknown(self, test_client):
        response = await test_client.post("/api/sessions/nobody/stop")
        assert response.status_code == 404

    @pytest.mark.unit
    async def test_clear_removes_auth_data(self, test_client, session_manager, chat_clients, conversational_config):
        await session_manager.create_session("cafe1", conversational_config)
        auth_dir = session_manager.auth_data_dir / "session-cafe1"
        auth_dir.mkdir(parents=True)
        (auth_dir / "creds.json").write_text("{}")

        response = await test_client.post("/api/sessions/cafe1/clear")

        assert response.json() == {"sessionId": "cafe1", "cleared": True}
        assert not auth_dir.exists()
        assert chat_clients["cafe1"].logged_out == 1

    @pytest.mark.unit
    async def test_clear_twice(self, test_client, session_manager, conversational_config):
        await session_manager.create_session("cafe1", conversational_config)
        await test_client.post("/api/sessions/cafe1/clear")

        response = await test_client.post("/api/sessions/cafe1/clear")

        assert response.status_code == 404


class TestEventsStream:
    @pytest.mark.unit
    def test_first_frame_is_status(self, tmp_path):
        manager = SessionManager(
            client_factory=FakeChatClient,
            file_relay=FileRelay(tmp_path / "uploads"),
            auth_data_dir=str(tmp_path / "auth"),
        )
        reset_session_manager(manager)
        try:
            client = TestClient(app)
            with client.websocket_connect("/api/sessions/cafe1/events") as ws:
                frame = ws.receive_json()
        finally:
            reset_session_manager()

        assert frame["sessionId"] == "cafe1"
        assert frame["event"] == "status"
        assert frame["data"]["exists"] is False

    @pytest.mark.unit
    async def test_forward_until_disconnect(self):
        queue: asyncio.Queue = asyncio.Queue()
        queue.put_nowait(Notification("cafe1", SessionEvent.QR, {"dataUrl": "x"}))
        queue.put_nowait(Notification("cafe1", SessionEvent.READY, {}))
        websocket = SimpleNamespace(send_json=AsyncMock(side_effect=[None, WebSocketDisconnect()]))

        with pytest.raises(WebSocketDisconnect):
            await _forward_notifications(websocket, queue)

        frames = [call.args[0] for call in websocket.send_json.await_args_list]
        assert [f["event"] for f in frames] == ["qr", "ready"]
        assert frames[0]["data"] == {"dataUrl": "x"}
