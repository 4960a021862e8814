"""
שירות בדיקת בריאות — בדיקות תלויות (DB, Redis, WhatsApp Gateway, Celery).

מספק שתי רמות בדיקה:
- liveness: האם התהליך חי (ללא בדיקת תלויות)
- readiness: בדיקה של כל התלויות החיצוניות
"""
from typing import Any

import httpx
import redis.asyncio as aioredis
from sqlalchemy import text

from app.core.circuit_breaker import CircuitBreaker
from app.core.config import settings
from app.core.logging import get_logger
from app.db.database import AsyncSessionLocal

logger = get_logger(__name__)

_STATUS_HEALTHY = "healthy"
_STATUS_DEGRADED = "degraded"

_CHECK_OK = "ok"

# הודעות שגיאה מסוננות — בלי לחשוף פרטי תשתית
_ERROR_DB = "error: db_unavailable"
_ERROR_REDIS = "error: redis_unavailable"
_ERROR_WHATSAPP = "error: whatsapp_unavailable"
_ERROR_CELERY = "error: celery_unavailable"


async def _check_db() -> str:
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
        return _CHECK_OK
    except Exception as e:
        logger.warning("DB health check failed", extra_data={"error": str(e)})
        return _ERROR_DB


async def _ping_redis(url: str) -> None:
    client = aioredis.from_url(url, decode_responses=True)
    try:
        await client.ping()
    finally:
        await client.aclose()


async def _check_redis() -> str:
    try:
        await _ping_redis(settings.REDIS_URL)
        return _CHECK_OK
    except Exception as e:
        logger.warning("Redis health check failed", extra_data={"error": str(e)})
        return _ERROR_REDIS


async def _check_whatsapp_gateway() -> str:
    """WPPConnect Server חושף /healthz; 200 = השרת חי"""
    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            response = await client.get(f"{settings.WHATSAPP_GATEWAY_URL}/healthz")
        if response.status_code != 200:
            logger.warning(
                "WhatsApp gateway returned unexpected status",
                extra_data={"status_code": response.status_code},
            )
            return _ERROR_WHATSAPP
        return _CHECK_OK
    except Exception as e:
        logger.warning("WhatsApp gateway health check failed", extra_data={"error": str(e)})
        return _ERROR_WHATSAPP


async def _check_celery() -> str:
    """ping ל-broker של Celery"""
    try:
        await _ping_redis(settings.CELERY_BROKER_URL)
        return _CHECK_OK
    except Exception as e:
        logger.warning("Celery broker health check failed", extra_data={"error": str(e)})
        return _ERROR_CELERY


async def check_readiness() -> dict[str, Any]:
    """
    בדיקת מוכנות — בודק את כל התלויות החיצוניות.

    - status: "healthy" אם הכל תקין, "degraded" אם תלות אחת לפחות נכשלה
    - db / redis / whatsapp_gateway / celery: "ok" או "error: ..."
    - circuit_breakers: מצב כל ה-breakers (מידע בלבד, לא משפיע על status)
    """
    checks = {
        "db": await _check_db(),
        "redis": await _check_redis(),
        "whatsapp_gateway": await _check_whatsapp_gateway(),
        "celery": await _check_celery(),
    }

    all_ok = all(v == _CHECK_OK for v in checks.values())
    overall_status = _STATUS_HEALTHY if all_ok else _STATUS_DEGRADED

    if not all_ok:
        logger.warning("Readiness check degraded", extra_data=checks)

    return {
        "status": overall_status,
        **checks,
        "circuit_breakers": CircuitBreaker.snapshot(),
    }
