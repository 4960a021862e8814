"""
Tenant Service - ניהול tenants, ספריית קבצים ופענוח הגדרות session
"""
import re
from typing import Any, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import (
    AppException,
    ErrorCode,
    NotFoundException,
    TenantInactiveError,
    TenantNotFoundError,
    ValidationException,
)
from app.core.logging import get_logger
from app.core.validation import IdentifierValidator, PhoneNumberValidator
from app.db.models.tenant import BotModeName, Tenant
from app.db.models.tenant_file import TenantFile
from app.domain.services.file_relay import FileRelay
from app.domain.services.session_config import SessionConfig, build_session_config
from app.state_machine.intents import normalize_text

logger = get_logger(__name__)

_UPDATABLE_FIELDS = frozenset({
    "display_name",
    "contact_email",
    "owner_outward_id",
    "bank_reference",
    "accept_cod",
    "bot_mode",
    "business_data",
    "completion_api_key",
    "booking_instructions",
    "tracking_instructions",
    "is_active",
})
_LABEL_MAX_CHARS = 100


def label_matches(label: str, text: str) -> bool:
    """Whole-word, case/accent-insensitive match of a library label inside a message"""
    needle = normalize_text(label).strip()
    if not needle:
        return False
    haystack = normalize_text(text)
    return re.search(rf"(?<!\w){re.escape(needle)}(?!\w)", haystack) is not None


class TenantService:
    """שירות ניהול tenants"""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ==================== tenants ====================

    async def create_tenant(self, tenant_id: str, display_name: str, **fields: Any) -> Tenant:
        """
        יצירת tenant חדש.

        Raises:
            ValidationException: מזהה לא תקין או tenant קיים
            TenantConfigurationError: שילוב הגדרות לא עקבי (למשל ecommerce בלי בעלים)
        """
        if not IdentifierValidator.validate(tenant_id):
            raise ValidationException(f"Invalid tenant id: {tenant_id!r}", field="id")

        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValidationException(f"Unknown tenant fields: {sorted(unknown)}")

        tenant = Tenant(id=tenant_id, display_name=display_name, **fields)
        self._validate_mode(tenant)
        self.db.add(tenant)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise AppException(
                f"Tenant {tenant_id} already exists",
                error_code=ErrorCode.ALREADY_EXISTS,
                status_code=409,
                details={"tenant_id": tenant_id},
            )
        await self.db.refresh(tenant)

        logger.info(
            "Tenant created",
            extra_data={"tenant_id": tenant_id, "bot_mode": self._mode_value(tenant)},
        )
        return tenant

    async def get_tenant(self, tenant_id: str) -> Tenant:
        tenant = await self.db.get(Tenant, tenant_id)
        if tenant is None:
            raise TenantNotFoundError(tenant_id)
        return tenant

    async def update_tenant(self, tenant_id: str, **fields: Any) -> Tenant:
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValidationException(f"Unknown tenant fields: {sorted(unknown)}")

        tenant = await self.get_tenant(tenant_id)
        for name, value in fields.items():
            setattr(tenant, name, value)
        self._validate_mode(tenant)
        await self.db.commit()
        await self.db.refresh(tenant)

        logger.info(
            "Tenant updated",
            extra_data={"tenant_id": tenant_id, "fields": sorted(fields)},
        )
        return tenant

    @staticmethod
    def _mode_value(tenant: Tenant) -> Optional[str]:
        mode = tenant.bot_mode
        return mode.value if isinstance(mode, BotModeName) else mode

    def _validate_mode(self, tenant: Tenant) -> None:
        # בונים את ה-variant רק כדי לוודא שההגדרות שלמות
        build_session_config(
            tenant.id,
            bot_mode=self._mode_value(tenant),
            owner_outward_id=tenant.owner_outward_id,
            accept_cod=bool(tenant.accept_cod),
        )

    async def resolve_session_config(self, tenant_id: str) -> SessionConfig:
        """
        Build the frozen session configuration from the tenant row.

        Raises:
            TenantNotFoundError, TenantInactiveError, TenantConfigurationError
        """
        tenant = await self.get_tenant(tenant_id)
        if not tenant.is_active:
            raise TenantInactiveError(tenant_id)

        owner = tenant.owner_outward_id
        if owner and "@" not in owner:
            owner = PhoneNumberValidator.to_chat_id(owner)

        return build_session_config(
            tenant.id,
            display_name=tenant.display_name,
            bot_mode=self._mode_value(tenant),
            business_data=tenant.business_data,
            completion_api_key=tenant.completion_api_key,
            owner_outward_id=owner,
            bank_reference=tenant.bank_reference,
            accept_cod=bool(tenant.accept_cod),
            booking_instructions=tenant.booking_instructions,
            tracking_instructions=tenant.tracking_instructions,
        )

    # ==================== ספריית קבצים ====================

    async def add_library_file(
        self,
        tenant_id: str,
        label: str,
        data: bytes,
        mime_type: str,
        relay: FileRelay,
        original_name: Optional[str] = None,
    ) -> TenantFile:
        label = (label or "").strip()
        if not label or len(label) > _LABEL_MAX_CHARS:
            raise ValidationException(
                f"Label must be 1-{_LABEL_MAX_CHARS} characters", field="label"
            )

        await self.get_tenant(tenant_id)
        info = await relay.store(data, mime_type, tenant_id, original_name, permanent=True)

        record = TenantFile(
            tenant_id=tenant_id,
            label=label,
            file_name=info.display_name,
            storage_path=str(info.path),
            mime_type=info.mime_type,
            category=info.category.value,
            size_bytes=info.size,
        )
        self.db.add(record)
        await self.db.commit()
        await self.db.refresh(record)

        logger.info(
            "Library file added",
            extra_data={"tenant_id": tenant_id, "file_id": record.id, "label": label},
        )
        return record

    async def list_library_files(self, tenant_id: str) -> List[TenantFile]:
        result = await self.db.execute(
            select(TenantFile)
            .where(TenantFile.tenant_id == tenant_id)
            .order_by(TenantFile.id)
        )
        return list(result.scalars().all())

    async def delete_library_file(self, tenant_id: str, file_id: int, relay: FileRelay) -> None:
        record = await self.db.get(TenantFile, file_id)
        if record is None or record.tenant_id != tenant_id:
            raise NotFoundException("TenantFile", file_id)

        await self.db.delete(record)
        await self.db.commit()
        # הרשומה נמחקה; קובץ יתום בדיסק עדיף על רשומה בלי קובץ
        await relay.delete(record.storage_path)

        logger.info(
            "Library file deleted",
            extra_data={"tenant_id": tenant_id, "file_id": file_id},
        )

    async def find_library_file(self, tenant_id: str, text: str) -> Optional[TenantFile]:
        """The library file whose label appears in ``text`` (longest label wins)"""
        if not text or not text.strip():
            return None
        matches = [f for f in await self.list_library_files(tenant_id) if label_matches(f.label, text)]
        if not matches:
            return None
        return max(matches, key=lambda f: len(f.label))


async def lookup_library_file(tenant_id: str, text: str) -> Optional[TenantFile]:
    """find_library_file on a short-lived session, for the message pipeline"""
    from app.db.database import AsyncSessionLocal

    async with AsyncSessionLocal() as db:
        return await TenantService(db).find_library_file(tenant_id, text)


def tenant_to_dict(tenant: Tenant) -> dict[str, Any]:
    """ייצוג API — בלי מפתח ה-completion"""
    return {
        "id": tenant.id,
        "displayName": tenant.display_name,
        "contactEmail": tenant.contact_email,
        "ownerOutwardId": tenant.owner_outward_id,
        "bankReference": tenant.bank_reference,
        "acceptCod": bool(tenant.accept_cod),
        "botMode": TenantService._mode_value(tenant),
        "businessData": tenant.business_data,
        "hasCompletionKey": bool(tenant.completion_api_key),
        "bookingInstructions": tenant.booking_instructions,
        "trackingInstructions": tenant.tracking_instructions,
        "isActive": bool(tenant.is_active),
        "createdAt": tenant.created_at.isoformat() if tenant.created_at else None,
        "updatedAt": tenant.updated_at.isoformat() if tenant.updated_at else None,
    }


def tenant_file_to_dict(record: TenantFile) -> dict[str, Any]:
    return {
        "id": record.id,
        "label": record.label,
        "fileName": record.file_name,
        "mimeType": record.mime_type,
        "category": record.category,
        "size": record.size_bytes,
        "createdAt": record.created_at.isoformat() if record.created_at else None,
    }


__all__ = [
    "TenantService",
    "label_matches",
    "lookup_library_file",
    "tenant_to_dict",
    "tenant_file_to_dict",
]
