"""
Tenant File Model - Library files (catalogs, price lists) a bot can resend
"""
from datetime import datetime
from sqlalchemy import Column, DateTime, ForeignKey, Integer, String

from app.db.database import Base


class TenantFile(Base):
    """A permanent file in a tenant's library, matched to requests by label"""

    __tablename__ = "tenant_files"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), ForeignKey("tenants.id"), nullable=False, index=True)
    label = Column(String(100), nullable=False)
    file_name = Column(String(255), nullable=False)
    storage_path = Column(String(500), nullable=False)
    mime_type = Column(String(100), nullable=False)
    category = Column(String(20), nullable=False)
    size_bytes = Column(Integer, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
