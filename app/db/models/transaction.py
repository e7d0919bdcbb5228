"""
Transaction Model - append-only ledger of money movement.

One row per payment, capture, refund or void. (provider, external_id) is the
natural key shared by the synchronous API path and the provider webhook path,
so both collapse onto the same row through an upsert.
"""
import enum
from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Enum as SQLEnum,
    Index,
    Integer,
    JSON,
    String,
    UniqueConstraint,
)

from app.db.compat import utcnow
from app.db.database import Base


class PaymentProvider(str, enum.Enum):
    STRIPE = "stripe"
    PAYPAL = "paypal"
    SQUARE = "square"
    BRAINTREE = "braintree"
    AUTHORIZE = "authorize"


class TransactionStatus(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PENDING = "pending"
    REFUNDED = "refunded"


class TransactionType(str, enum.Enum):
    PAYMENT = "payment"
    CAPTURE = "capture"
    REFUND = "refund"
    VOID = "void"


class Transaction(Base):
    """Ledger row, amounts in integer minor units"""

    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)

    provider = Column(SQLEnum(PaymentProvider), nullable=False)
    external_id = Column(String(255), nullable=False)

    amount = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(SQLEnum(TransactionStatus), nullable=False, index=True)
    type = Column(SQLEnum(TransactionType), nullable=False)

    customer_email = Column(String(255), nullable=True)
    # "metadata" is reserved on declarative classes
    extra = Column("metadata", JSON, nullable=False, default=dict)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("provider", "external_id", name="uq_transactions_provider_external_id"),
        Index("ix_transactions_tenant_created", "tenant_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Transaction {self.provider.value if self.provider else None}:{self.external_id} "
            f"{self.type.value if self.type else None} {self.status.value if self.status else None} "
            f"{self.amount} {self.currency}>"
        )
