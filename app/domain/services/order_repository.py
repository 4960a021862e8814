"""
Order persistence for the order flow.

The flow only knows ``OrderRepository``; ``SqlOrderRepository`` is the
SQLAlchemy-backed implementation used in production and in tests (against
sqlite). Each call opens its own short session — the flow awaits slow
completion/vision calls between steps and must not pin a connection while it
does.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import ErrorCode, NotFoundException, OrderNotOpenError
from app.core.logging import get_logger
from app.db.models.customer_order import (
    CustomerOrder,
    OrderStatus,
    OPEN_ORDER_STATUSES,
)

logger = get_logger(__name__)

_UPDATABLE_FIELDS = frozenset({
    "order_details",
    "customer_name",
    "customer_address",
    "customer_email",
    "payment_method",
    "payment_proof_ref",
    "payment_details",
    "order_state",
})


async def _raise_not_writable(db: AsyncSession, order_id: int) -> None:
    # rowcount 0: השורה חסרה, או שכבר הושלמה/בוטלה (למשל ע"י expire_stale_orders)
    if await db.get(CustomerOrder, order_id) is None:
        raise NotFoundException("Order", order_id, error_code=ErrorCode.ORDER_NOT_FOUND)
    raise OrderNotOpenError(order_id)


class OrderRepository(ABC):
    """Storage boundary for customer orders"""

    @abstractmethod
    async def create_order(self, tenant_id: str, customer_phone: str, order_details: str | None) -> int:
        """Insert a new order in AWAITING_CONFIRMATION, return its id"""

    @abstractmethod
    async def update_order(self, order_id: int, **fields: Any) -> None:
        """Update the given columns of an open order.

        Raises:
            OrderNotOpenError: the order was completed or cancelled meanwhile
        """

    @abstractmethod
    async def complete_order(self, order_id: int) -> None:
        """Mark an open order completed and stamp completed_at"""

    @abstractmethod
    async def cancel_order(self, order_id: int) -> None:
        """Mark cancelled"""

    @abstractmethod
    async def get_order(self, order_id: int) -> CustomerOrder | None:
        """Fetch one order"""


class SqlOrderRepository(OrderRepository):
    """SQLAlchemy implementation"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        if session_factory is None:
            from app.db.database import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self._session_factory = session_factory

    async def create_order(self, tenant_id: str, customer_phone: str, order_details: str | None) -> int:
        async with self._session_factory() as db:
            order = CustomerOrder(
                tenant_id=tenant_id,
                customer_phone=customer_phone,
                order_details=order_details,
                order_state=OrderStatus.AWAITING_CONFIRMATION,
            )
            db.add(order)
            await db.commit()
            await db.refresh(order)
            return order.id

    async def update_order(self, order_id: int, **fields: Any) -> None:
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update order fields: {sorted(unknown)}")
        if not fields:
            return

        async with self._session_factory() as db:
            result = await db.execute(
                update(CustomerOrder)
                .where(
                    CustomerOrder.id == order_id,
                    CustomerOrder.order_state.in_(OPEN_ORDER_STATUSES),
                )
                .values(**fields, updated_at=datetime.utcnow())
            )
            if result.rowcount == 0:
                await _raise_not_writable(db, order_id)
            await db.commit()

    async def complete_order(self, order_id: int) -> None:
        async with self._session_factory() as db:
            now = datetime.utcnow()
            result = await db.execute(
                update(CustomerOrder)
                .where(
                    CustomerOrder.id == order_id,
                    CustomerOrder.order_state.in_(OPEN_ORDER_STATUSES),
                )
                .values(order_state=OrderStatus.COMPLETED, completed_at=now, updated_at=now)
            )
            if result.rowcount == 0:
                await _raise_not_writable(db, order_id)
            await db.commit()

    async def cancel_order(self, order_id: int) -> None:
        async with self._session_factory() as db:
            await db.execute(
                update(CustomerOrder)
                .where(
                    CustomerOrder.id == order_id,
                    CustomerOrder.order_state.in_(OPEN_ORDER_STATUSES),
                )
                .values(order_state=OrderStatus.CANCELLED, updated_at=datetime.utcnow())
            )
            await db.commit()

    async def get_order(self, order_id: int) -> CustomerOrder | None:
        async with self._session_factory() as db:
            return await db.get(CustomerOrder, order_id)


async def expire_stale_orders(db: AsyncSession, older_than_seconds: int) -> int:
    """
    Cancel open orders untouched for ``older_than_seconds``.

    The in-memory flow state does not survive a restart; without this,
    orders abandoned mid-flow would stay open in the store forever.
    """
    cutoff = datetime.utcnow() - timedelta(seconds=older_than_seconds)
    result = await db.execute(
        select(CustomerOrder).where(
            CustomerOrder.order_state.in_(OPEN_ORDER_STATUSES),
            CustomerOrder.updated_at < cutoff,
        )
    )
    stale = result.scalars().all()
    for order in stale:
        order.order_state = OrderStatus.CANCELLED
    await db.commit()

    if stale:
        logger.info("Expired stale orders", extra_data={"count": len(stale)})
    return len(stale)
