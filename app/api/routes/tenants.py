"""
Tenant API Routes - רישום עסקים, עדכון הגדרות וספריית קבצים
"""
from typing import Any, Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile, status
from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.core.validation import IdentifierValidator, PhoneNumberValidator, TextSanitizer
from app.db.database import get_db
from app.db.models.tenant import BotModeName
from app.domain.services.file_relay import FileRelay
from app.domain.services.session_manager import get_session_manager
from app.domain.services.tenant_service import (
    TenantService,
    tenant_file_to_dict,
    tenant_to_dict,
)

logger = get_logger(__name__)

router = APIRouter()


def get_file_relay() -> FileRelay:
    """ה-relay המשותף של ה-pipeline"""
    return get_session_manager().pipeline.file_relay


class _TenantFields(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    contact_email: Optional[str] = Field(None, alias="contactEmail", max_length=255)
    owner_outward_id: Optional[str] = Field(None, alias="ownerOutwardId")
    bank_reference: Optional[str] = Field(None, alias="bankReference", max_length=2000)
    bot_mode: Optional[BotModeName] = Field(None, alias="botMode")
    business_data: Optional[str] = Field(None, alias="businessData", max_length=20000)
    completion_api_key: Optional[str] = Field(None, alias="completionApiKey", max_length=255)
    booking_instructions: Optional[str] = Field(None, alias="bookingInstructions", max_length=2000)
    tracking_instructions: Optional[str] = Field(None, alias="trackingInstructions", max_length=2000)

    @field_validator("owner_outward_id")
    @classmethod
    def validate_owner(cls, v: Optional[str]) -> Optional[str]:
        """מספר טלפון או chat id מלא (@c.us / @g.us)"""
        if v is None:
            return None
        v = v.strip()
        if "@" in v:
            return v
        if not PhoneNumberValidator.validate(v):
            raise ValueError("Invalid phone number format")
        return PhoneNumberValidator.normalize(v)

    @field_validator("business_data", "booking_instructions", "tracking_instructions")
    @classmethod
    def sanitize_text(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return TextSanitizer.sanitize(v, max_length=20000)


class TenantCreate(_TenantFields):
    id: str
    display_name: str = Field(..., alias="displayName", min_length=1, max_length=200)
    accept_cod: bool = Field(False, alias="acceptCod")

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        v = v.strip()
        if not IdentifierValidator.validate(v):
            raise ValueError("must be 1-64 letters, digits, '-' or '_'")
        return v


class TenantUpdate(_TenantFields):
    display_name: Optional[str] = Field(None, alias="displayName", min_length=1, max_length=200)
    accept_cod: Optional[bool] = Field(None, alias="acceptCod")
    is_active: Optional[bool] = Field(None, alias="isActive")


@router.post("", status_code=status.HTTP_201_CREATED, summary="רישום tenant")
async def create_tenant(
    body: TenantCreate,
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    fields = body.model_dump(exclude={"id", "display_name"}, exclude_none=True)
    tenant = await TenantService(db).create_tenant(body.id, body.display_name, **fields)
    return tenant_to_dict(tenant)


@router.get("/{tenant_id}", summary="פרטי tenant")
async def get_tenant(
    tenant_id: str,
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    tenant = await TenantService(db).get_tenant(tenant_id)
    return tenant_to_dict(tenant)


@router.patch(
    "/{tenant_id}",
    summary="עדכון tenant",
    description="עדכון חלקי. sessions פעילים ממשיכים עם ההגדרות שאיתן נוצרו.",
)
async def update_tenant(
    tenant_id: str,
    body: TenantUpdate,
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    fields = body.model_dump(exclude_unset=True)
    tenant = await TenantService(db).update_tenant(tenant_id, **fields)
    return tenant_to_dict(tenant)


@router.post(
    "/{tenant_id}/files",
    status_code=status.HTTP_201_CREATED,
    summary="הוספת קובץ לספרייה",
    description="קובץ קבוע (קטלוג, מחירון) שהבוט שולח כשהתווית מופיעה בהודעת לקוח.",
)
async def upload_library_file(
    tenant_id: str,
    label: str = Form(...),
    file: UploadFile = File(...),
    db: AsyncSession = Depends(get_db),
    relay: FileRelay = Depends(get_file_relay),
) -> dict[str, Any]:
    data = await file.read()
    record = await TenantService(db).add_library_file(
        tenant_id,
        label,
        data,
        file.content_type or "application/octet-stream",
        relay,
        original_name=file.filename,
    )
    return tenant_file_to_dict(record)


@router.get("/{tenant_id}/files", summary="רשימת קבצי ספרייה")
async def list_library_files(
    tenant_id: str,
    db: AsyncSession = Depends(get_db),
) -> list[dict[str, Any]]:
    service = TenantService(db)
    await service.get_tenant(tenant_id)
    return [tenant_file_to_dict(f) for f in await service.list_library_files(tenant_id)]


@router.delete(
    "/{tenant_id}/files/{file_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="מחיקת קובץ ספרייה",
)
async def delete_library_file(
    tenant_id: str,
    file_id: int,
    db: AsyncSession = Depends(get_db),
    relay: FileRelay = Depends(get_file_relay),
) -> None:
    await TenantService(db).delete_library_file(tenant_id, file_id, relay)
