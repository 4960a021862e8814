"""
API Routes
"""
from fastapi import APIRouter

from app.api.routes.sessions import router as sessions_router
from app.api.routes.tenants import router as tenants_router
from app.api.webhooks.gateway import router as gateway_webhook_router

router = APIRouter()

router.include_router(sessions_router, prefix="/sessions", tags=["Sessions"])
router.include_router(tenants_router, prefix="/tenants", tags=["Tenants"])
router.include_router(gateway_webhook_router, prefix="/webhooks", tags=["Webhooks"])
