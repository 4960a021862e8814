"""
Celery Tasks - תחזוקה תקופתית

- purge_expired_media: מחיקת מדיה נכנסת ישנה מה-upload dir
- expire_stale_orders: ביטול הזמנות פתוחות שלא התקדמו
"""
import asyncio
from contextlib import contextmanager

from app.workers.celery_app import celery_app
from app.core.config import settings
from app.core.logging import get_logger, log_async_operation, set_correlation_id
from app.db.database import get_task_session
from app.domain.services.file_relay import FileRelay
from app.domain.services import order_repository

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    # Set correlation ID for task tracking
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


@log_async_operation("purge_expired_media")
async def _purge_expired_media(max_age_seconds: int) -> dict:
    deleted = await FileRelay().purge_older_than(max_age_seconds)
    return {"deleted": deleted}


@celery_app.task(name="app.workers.tasks.purge_expired_media")
def purge_expired_media(max_age_seconds: int | None = None):
    """מחיקת קבצי מדיה נכנסים ישנים מ-FILE_RETENTION_SECONDS"""
    return run_async(_purge_expired_media(max_age_seconds or settings.FILE_RETENTION_SECONDS))


@celery_app.task(name="app.workers.tasks.expire_stale_orders")
def expire_stale_orders(older_than_seconds: int | None = None):
    """ביטול הזמנות פתוחות שלא עודכנו מ-ORDER_STALE_SECONDS"""

    async def _expire():
        async with get_task_session() as db:
            expired = await order_repository.expire_stale_orders(
                db, older_than_seconds or settings.ORDER_STALE_SECONDS
            )
            return {"expired": expired}

    return run_async(_expire())
