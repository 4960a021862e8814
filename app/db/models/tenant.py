"""
Tenant Model - Business accounts that own WhatsApp sessions
"""
import enum
from datetime import datetime
from sqlalchemy import Boolean, Column, DateTime, Enum as SQLEnum, String, Text

from app.db.database import Base


class BotModeName(str, enum.Enum):
    CONVERSATIONAL = "conversational"
    ECOMMERCE = "ecommerce"
    APPOINTMENT = "appointment"
    DELIVERY = "delivery"


class Tenant(Base):
    """Business account — configuration for its sessions' conversational pipeline"""

    __tablename__ = "tenants"

    id = Column(String(64), primary_key=True)
    display_name = Column(String(200), nullable=False)
    contact_email = Column(String(255), nullable=True)

    # מזהה WhatsApp של בעל העסק — לשם נשלח סיכום הזמנה
    owner_outward_id = Column(String(64), nullable=True)
    bank_reference = Column(Text, nullable=True)
    accept_cod = Column(Boolean, default=False, nullable=False)

    bot_mode = Column(
        SQLEnum(BotModeName, values_callable=lambda e: [m.value for m in e]),
        default=BotModeName.CONVERSATIONAL,
        nullable=False,
    )
    business_data = Column(Text, nullable=True)
    # מפתח completion ייעודי ל-tenant (אופציונלי — אחרת מפתח המערכת)
    completion_api_key = Column(String(255), nullable=True)
    booking_instructions = Column(Text, nullable=True)
    tracking_instructions = Column(Text, nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
