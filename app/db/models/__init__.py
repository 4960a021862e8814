"""
Database Models
"""
from app.db.models.tenant import Tenant, BotModeName
from app.db.models.customer_order import CustomerOrder, OrderStatus, PaymentMethod
from app.db.models.tenant_file import TenantFile

__all__ = [
    "Tenant",
    "BotModeName",
    "CustomerOrder",
    "OrderStatus",
    "PaymentMethod",
    "TenantFile",
]
