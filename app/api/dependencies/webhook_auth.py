"""
אימות webhook נכנס מגטוויי WPPConnect.

WPPConnect Server לא יודע לשלוח כותרות מותאמות, ולכן הטוקן נשלח או בכותרת
``X-Gateway-Token`` (proxy / בדיקות) או בפרמטר ``token`` של ה-URL שנרשם
ב-start-session.

שימוש:
    @router.post("/gateway/{session_id}")
    async def gateway_webhook(
        ...,
        _: None = Depends(verify_gateway_webhook_token),
    ):
        ...
"""
import hmac

from fastapi import Header, HTTPException, Query, status

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)


async def verify_gateway_webhook_token(
    x_gateway_token: str | None = Header(None),
    token: str | None = Query(None),
) -> None:
    """
    - אם ``GATEWAY_WEBHOOK_SECRET`` לא מוגדר — מדלג (אזהרה נרשמת ב-startup).
    - אם הטוקן חסר או לא תואם — 403 Forbidden.
    """
    expected = settings.GATEWAY_WEBHOOK_SECRET
    if not expected:
        return

    provided = x_gateway_token or token
    if not provided:
        logger.warning("Gateway webhook request without token")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Missing webhook token",
        )

    # השוואה בטוחה מפני timing attacks
    if not hmac.compare_digest(provided, expected):
        logger.warning("Gateway webhook request with invalid token")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid webhook token",
        )
