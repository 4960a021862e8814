"""
WPPConnect Gateway Webhook - אירועי session מהגטוויי

הגטוויי שולח לכל session את האירועים שלו (qrcode, status-find, onmessage).
האירוע מומר ל-TransportEvent ומנותב דרך ה-SessionManager; הודעות מטופלות
ב-task רקע של ה-session כך שהתשובה לגטוויי מיידית.
"""
from typing import Any

from fastapi import APIRouter, Body, Depends

from app.api.dependencies.webhook_auth import verify_gateway_webhook_token
from app.core.logging import get_logger
from app.domain.services.session_manager import SessionManager, get_session_manager
from app.domain.services.transport.wppconnect_client import parse_gateway_event

logger = get_logger(__name__)

router = APIRouter()


@router.post(
    "/gateway/{session_id}",
    summary="Webhook של WPPConnect",
    description="מקבל אירועי QR, סטטוס והודעות נכנסות עבור session אחד.",
)
async def gateway_webhook(
    session_id: str,
    payload: dict[str, Any] = Body(...),
    _: None = Depends(verify_gateway_webhook_token),
    manager: SessionManager = Depends(get_session_manager),
) -> dict[str, Any]:
    event = parse_gateway_event(session_id, payload)
    if event is None:
        return {"ok": True, "handled": False}

    if session_id not in manager:
        # אירוע מאוחר אחרי stop/disconnect — מתעלמים
        logger.debug(
            "Gateway event for unknown session",
            extra_data={"session_id": session_id, "event": event.type.value},
        )
        return {"ok": True, "handled": False}

    await manager.dispatch_event(session_id, event)
    return {"ok": True, "handled": True}
