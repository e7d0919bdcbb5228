"""
Payment Settings Model - per tenant, per provider gateway configuration.

Owned by the tenant settings screens; this service only reads it, on every
payment operation.
"""
from sqlalchemy import Boolean, Column, DateTime, Enum as SQLEnum, Integer, JSON, String, UniqueConstraint

from app.db.compat import utcnow
from app.db.database import Base
from app.db.models.transaction import PaymentProvider


class PaymentSettings(Base):
    """Credentials plus enabled and test-mode flags for one gateway"""

    __tablename__ = "payment_settings"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    provider = Column(SQLEnum(PaymentProvider), nullable=False)

    enabled = Column(Boolean, nullable=False, default=False)
    test_mode = Column(Boolean, nullable=False, default=True)
    credentials = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "provider", name="uq_payment_settings_tenant_provider"),
    )
