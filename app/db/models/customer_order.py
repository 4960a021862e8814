"""
Customer Order Model - Orders collected by the WhatsApp order flow
"""
import enum
from datetime import datetime
from sqlalchemy import Column, DateTime, Enum as SQLEnum, ForeignKey, Integer, String, Text

from app.db.database import Base


class OrderStatus(str, enum.Enum):
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    AWAITING_PAYMENT = "awaiting_payment"
    AWAITING_INFO = "awaiting_info"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


OPEN_ORDER_STATUSES = (
    OrderStatus.AWAITING_CONFIRMATION,
    OrderStatus.AWAITING_PAYMENT,
    OrderStatus.AWAITING_INFO,
)


class PaymentMethod(str, enum.Enum):
    BANK_TRANSFER = "BANK_TRANSFER"
    COD = "COD"


class CustomerOrder(Base):
    """One purchase, from intent to owner handoff"""

    __tablename__ = "customer_orders"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), ForeignKey("tenants.id"), nullable=False, index=True)
    customer_phone = Column(String(64), nullable=False, index=True)

    order_details = Column(Text, nullable=True)

    customer_name = Column(String(200), nullable=True)
    customer_address = Column(Text, nullable=True)
    customer_email = Column(String(255), nullable=True)

    payment_method = Column(
        SQLEnum(PaymentMethod, values_callable=lambda e: [m.value for m in e]),
        default=PaymentMethod.BANK_TRANSFER,
        nullable=False,
    )
    payment_proof_ref = Column(String(500), nullable=True)
    # טקסט שחולץ מצילום ההעברה (סכום, תאריך, אסמכתא)
    payment_details = Column(Text, nullable=True)

    order_state = Column(
        SQLEnum(OrderStatus, values_callable=lambda e: [m.value for m in e]),
        default=OrderStatus.AWAITING_CONFIRMATION,
        nullable=False,
        index=True,
    )

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)
