"""
Session API Routes - יצירה, עצירה, ניקוי ומעקב אחרי sessions
"""
import asyncio
from typing import Any, Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status
from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import NotFoundException
from app.core.logging import get_logger
from app.core.validation import IdentifierValidator
from app.db.database import get_db
from app.db.models.tenant import BotModeName
from app.domain.services.session_config import build_session_config
from app.domain.services.session_manager import SessionManager, get_session_manager
from app.domain.services.tenant_service import TenantService

logger = get_logger(__name__)

router = APIRouter()


class InlineSessionConfig(BaseModel):
    """הגדרות session בלי tenant שמור ב-DB"""
    model_config = ConfigDict(populate_by_name=True)

    display_name: Optional[str] = Field(None, alias="displayName", max_length=200)
    bot_mode: Optional[BotModeName] = Field(None, alias="botMode")
    business_data: Optional[str] = Field(None, alias="businessData", max_length=20000)
    completion_api_key: Optional[str] = Field(None, alias="completionApiKey")
    owner_outward_id: Optional[str] = Field(None, alias="ownerOutwardId")
    bank_reference: Optional[str] = Field(None, alias="bankReference")
    accept_cod: bool = Field(False, alias="acceptCod")
    booking_instructions: Optional[str] = Field(None, alias="bookingInstructions")
    tracking_instructions: Optional[str] = Field(None, alias="trackingInstructions")


class SessionCreateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tenant_id: str = Field(..., alias="tenantId")
    session_id: Optional[str] = Field(None, alias="sessionId")
    config: Optional[InlineSessionConfig] = None

    @field_validator("tenant_id", "session_id")
    @classmethod
    def validate_identifier(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        if not IdentifierValidator.validate(v):
            raise ValueError("must be 1-64 letters, digits, '-' or '_'")
        return v


class SessionCreateResponse(BaseModel):
    sessionId: str
    state: str


class QrResponse(BaseModel):
    sessionId: str
    dataUrl: str


@router.post(
    "",
    response_model=SessionCreateResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="יצירת session",
    description=(
        "רושם session חדש ומתחיל את החיבור ברקע. ההתקדמות (QR, ready) "
        "מגיעה ב-WebSocket של האירועים."
    ),
)
async def create_session(
    body: SessionCreateRequest,
    db: AsyncSession = Depends(get_db),
    manager: SessionManager = Depends(get_session_manager),
) -> SessionCreateResponse:
    if body.config is not None:
        options = body.config.model_dump()
        if options["bot_mode"] is not None:
            options["bot_mode"] = options["bot_mode"].value
        config = build_session_config(body.tenant_id, **options)
    else:
        config = await TenantService(db).resolve_session_config(body.tenant_id)

    record = await manager.create_session(body.session_id or body.tenant_id, config)
    return SessionCreateResponse(sessionId=record.session_id, state=record.state.value)


@router.get("", summary="רשימת sessions פעילים")
async def list_sessions(
    manager: SessionManager = Depends(get_session_manager),
) -> list[dict[str, Any]]:
    return manager.list_sessions()


@router.get("/{session_id}", summary="מצב session")
async def get_session(
    session_id: str,
    manager: SessionManager = Depends(get_session_manager),
) -> dict[str, Any]:
    # session לא קיים מחזיר exists=false ולא 404 — הדשבורד עושה polling
    return manager.get_session(session_id)


@router.get("/{session_id}/qr", response_model=QrResponse, summary="QR לקישור המכשיר")
async def get_session_qr(
    session_id: str,
    manager: SessionManager = Depends(get_session_manager),
) -> QrResponse:
    data_url = manager.get_qr(session_id)
    if data_url is None:
        raise NotFoundException("QR code", session_id)
    return QrResponse(sessionId=session_id, dataUrl=data_url)


@router.post("/{session_id}/stop", summary="עצירת session")
async def stop_session(
    session_id: str,
    manager: SessionManager = Depends(get_session_manager),
) -> dict[str, Any]:
    await manager.stop_session(session_id)
    return {"sessionId": session_id, "stopped": True}


@router.post(
    "/{session_id}/clear",
    summary="ניקוי session",
    description="עוצר את ה-session (אם פעיל), מנתק את המכשיר ומוחק את נתוני ההזדהות השמורים.",
)
async def clear_session(
    session_id: str,
    manager: SessionManager = Depends(get_session_manager),
) -> dict[str, Any]:
    await manager.clear_session(session_id)
    return {"sessionId": session_id, "cleared": True}


async def _forward_notifications(websocket: WebSocket, queue: asyncio.Queue) -> None:
    while True:
        notification = await queue.get()
        await websocket.send_json(notification.to_dict())


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    # הלקוח לא שולח כלום; הקריאה רק מזהה ניתוק
    while True:
        await websocket.receive_text()


@router.websocket("/{session_id}/events")
async def session_events(
    websocket: WebSocket,
    session_id: str,
    manager: SessionManager = Depends(get_session_manager),
) -> None:
    await websocket.accept()
    async with manager.hub.subscribe(session_id) as queue:
        await websocket.send_json({
            "sessionId": session_id,
            "event": "status",
            "data": manager.get_session(session_id),
        })

        tasks = {
            asyncio.create_task(_forward_notifications(websocket, queue)),
            asyncio.create_task(_wait_for_disconnect(websocket)),
        }
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.warning(
                    "Session events stream closed with error",
                    extra_data={"session_id": session_id, "error": str(exc)},
                )
