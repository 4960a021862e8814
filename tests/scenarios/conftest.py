"""
Fixtures ו-helpers לבדיקות תרחיש מקצה לקצה.

מספק:
- GatewaySimulator: שליחת webhooks כמו ש-WPPConnect שולח אותם
- שאילתות הזמנות על session DB נקי
"""
import itertools
from typing import Optional

import pytest
from sqlalchemy import select

from app.db.models.customer_order import CustomerOrder
from app.db.models.tenant import BotModeName

OWNER_CHAT_ID = "33699999999@c.us"
BANK_REFERENCE = "IBAN FR76 3000 6000 0112 3456 7890 189"


class GatewaySimulator:
    """בוני payload ושליחה ל-/api/webhooks/gateway/{session_id}"""

    def __init__(self, client, token: str) -> None:
        self._client = client
        self._headers = {"X-Gateway-Token": token}
        self._ids = itertools.count(1)

    async def post(self, session_id: str, payload: dict) -> dict:
        response = await self._client.post(
            f"/api/webhooks/gateway/{session_id}", json=payload, headers=self._headers
        )
        assert response.status_code == 200, response.text
        return response.json()

    async def qr(self, session_id: str, code: str = "UVJDT0RF") -> dict:
        return await self.post(session_id, {"event": "qrcode", "qrcode": code})

    async def status(self, session_id: str, status: str) -> dict:
        return await self.post(session_id, {"event": "status-find", "status": status})

    async def message(self, session_id: str, chat_id: str, text: str, *, name: str = "Dana") -> dict:
        return await self.post(session_id, {
            "event": "onmessage",
            "id": f"msg-{next(self._ids)}",
            "from": chat_id,
            "body": text,
            "type": "chat",
            "notifyName": name,
            "t": 1700000000,
        })

    async def image(
        self, session_id: str, chat_id: str, *, caption: str = "", mime_type: str = "image/jpeg"
    ) -> dict:
        return await self.post(session_id, {
            "event": "onmessage",
            "id": f"msg-{next(self._ids)}",
            "from": chat_id,
            "body": "/9j/thumbnail",
            "caption": caption,
            "type": "image",
            "mimetype": mime_type,
        })


@pytest.fixture
def gateway(test_client) -> GatewaySimulator:
    from app.core.config import settings

    return GatewaySimulator(test_client, settings.GATEWAY_WEBHOOK_SECRET)


@pytest.fixture
def shop_tenant(tenant_factory):
    """tenant במצב חנות עם בעלים, העברה בנקאית ומזומן לשליח"""
    async def _create(tenant_id: str = "shop1"):
        return await tenant_factory(
            tenant_id,
            "Shop One",
            bot_mode=BotModeName.ECOMMERCE,
            owner_outward_id=OWNER_CHAT_ID,
            bank_reference=BANK_REFERENCE,
            accept_cod=True,
            business_data="T-shirt: 20 EUR\nHoodie: 45 EUR",
        )

    return _create


@pytest.fixture
def fetch_orders(session_factory):
    """הזמנות של tenant — session חדש בכל קריאה כדי לראות כתיבות של ה-flow"""
    async def _fetch(tenant_id: str, customer: Optional[str] = None) -> list[CustomerOrder]:
        async with session_factory() as db:
            query = select(CustomerOrder).where(CustomerOrder.tenant_id == tenant_id)
            if customer is not None:
                query = query.where(CustomerOrder.customer_phone == customer)
            result = await db.execute(query.order_by(CustomerOrder.id))
            return list(result.scalars().all())

    return _fetch
