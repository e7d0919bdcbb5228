"""
Ledger Service - idempotent transaction ledger.

Both the synchronous adapter path and the inbound webhook path write through
`record()`, an upsert keyed on (provider, external_id). The only permitted
mutation of an existing row is a status transition out of `pending`.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import LedgerConsistencyError
from app.core.logging import get_logger
from app.db.compat import dialect_insert, utcnow
from app.db.models.transaction import (
    PaymentProvider,
    Transaction,
    TransactionStatus,
    TransactionType,
)

logger = get_logger(__name__)

# Rows counted as revenue in stats
_REVENUE_TYPES = (TransactionType.PAYMENT, TransactionType.CAPTURE)


@dataclass
class LedgerEntry:
    """A money-movement event about to be written, amount in minor units"""
    tenant_id: str
    provider: PaymentProvider
    external_id: str
    amount: int
    currency: str
    status: TransactionStatus
    type: TransactionType
    customer_email: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class LedgerWriteResult:
    transaction: Transaction
    created: bool
    status_changed: bool

    @property
    def newly_succeeded(self) -> bool:
        """True when this write is the one that made the row succeeded"""
        return (
            self.transaction.status == TransactionStatus.SUCCEEDED
            and (self.created or self.status_changed)
        )


class LedgerService:
    """Service for reading and writing the transaction ledger"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_transaction(
        self, provider: PaymentProvider, external_id: str
    ) -> Transaction | None:
        result = await self.db.execute(
            select(Transaction)
            .where(
                Transaction.provider == provider,
                Transaction.external_id == external_id,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def record(self, entry: LedgerEntry) -> LedgerWriteResult:
        """
        Insert the entry, or advance an existing pending row to the entry's status.

        Safe to repeat with identical input. Does not commit. ``created`` and
        ``status_changed`` come from the affected row counts, so of two
        concurrent writers of the same row only one sees either flag.
        """
        table = Transaction.__table__
        now = utcnow()
        insert_stmt = dialect_insert(self.db, table).values(
            tenant_id=entry.tenant_id,
            provider=entry.provider,
            external_id=entry.external_id,
            amount=entry.amount,
            currency=entry.currency.upper(),
            status=entry.status,
            type=entry.type,
            customer_email=entry.customer_email,
            metadata=entry.metadata or {},
            created_at=now,
            updated_at=now,
        ).on_conflict_do_nothing(index_elements=["provider", "external_id"])
        created = (await self.db.execute(insert_stmt)).rowcount == 1

        status_changed = False
        if not created and entry.status != TransactionStatus.PENDING:
            advance = (
                update(table)
                .where(
                    table.c.provider == entry.provider,
                    table.c.external_id == entry.external_id,
                    table.c.status == TransactionStatus.PENDING,
                )
                .values(status=entry.status, updated_at=now)
            )
            status_changed = (await self.db.execute(advance)).rowcount == 1

        transaction = await self.get_transaction(entry.provider, entry.external_id)

        if not created and not status_changed and transaction.status != entry.status:
            # e.g. a late "failed" for a row already succeeded
            logger.warning(
                "Ledger ignored status change on settled transaction",
                extra_data={
                    "provider": entry.provider.value,
                    "external_id": entry.external_id,
                    "current_status": transaction.status.value,
                    "requested_status": entry.status.value,
                },
            )

        logger.info(
            "Ledger entry recorded",
            extra_data={
                "provider": entry.provider.value,
                "external_id": entry.external_id,
                "type": entry.type.value,
                "status": transaction.status.value,
                "amount": transaction.amount,
                "currency": transaction.currency,
                "created": created,
                "status_changed": status_changed,
            },
        )
        return LedgerWriteResult(
            transaction=transaction,
            created=created,
            status_changed=status_changed,
        )

    async def record_confirmed(self, entry: LedgerEntry) -> LedgerWriteResult:
        """
        Record money the provider has already moved, committing the write.

        Retried LEDGER_WRITE_MAX_ATTEMPTS times; after that the inconsistency is
        logged at CRITICAL and LedgerConsistencyError is raised.
        """
        max_attempts = settings.LEDGER_WRITE_MAX_ATTEMPTS
        last_error: Exception | None = None

        for attempt in range(1, max_attempts + 1):
            try:
                result = await self.record(entry)
                await self.db.commit()
                return result
            except SQLAlchemyError as e:
                last_error = e
                await self.db.rollback()
                logger.warning(
                    "Ledger write failed, retrying",
                    extra_data={
                        "provider": entry.provider.value,
                        "external_id": entry.external_id,
                        "attempt": attempt,
                        "max_attempts": max_attempts,
                        "error": str(e),
                    },
                )
                if attempt < max_attempts:
                    await asyncio.sleep(settings.LEDGER_WRITE_RETRY_DELAY_SECONDS)

        logger.critical(
            "Provider confirmed money movement but the ledger write failed",
            extra_data={
                "tenant_id": entry.tenant_id,
                "provider": entry.provider.value,
                "external_id": entry.external_id,
                "type": entry.type.value,
                "status": entry.status.value,
                "amount": entry.amount,
                "currency": entry.currency,
                "attempts": max_attempts,
                "error": str(last_error),
            },
        )
        raise LedgerConsistencyError(
            provider=entry.provider.value,
            external_id=entry.external_id,
            tenant_id=entry.tenant_id,
            amount=entry.amount,
            currency=entry.currency,
            attempts=max_attempts,
            cause=str(last_error),
        )

    async def list_transactions(
        self,
        tenant_id: str,
        *,
        provider: PaymentProvider | None = None,
        status: TransactionStatus | None = None,
        transaction_type: TransactionType | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Transaction], int]:
        """Newest first, with the total count for pagination"""
        conditions = [Transaction.tenant_id == tenant_id]
        if provider is not None:
            conditions.append(Transaction.provider == provider)
        if status is not None:
            conditions.append(Transaction.status == status)
        if transaction_type is not None:
            conditions.append(Transaction.type == transaction_type)

        total = await self.db.scalar(
            select(func.count()).select_from(Transaction).where(*conditions)
        )
        result = await self.db.execute(
            select(Transaction)
            .where(*conditions)
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all()), int(total or 0)

    async def get_stats(self, tenant_id: str) -> dict[str, Any]:
        """
        Revenue and outcome counters for a tenant.

        Amounts are summed per currency-agnostic minor units; tenants are
        expected to settle in one currency.
        """
        result = await self.db.execute(
            select(
                Transaction.provider,
                Transaction.type,
                Transaction.status,
                func.count(Transaction.id),
                func.coalesce(func.sum(Transaction.amount), 0),
            )
            .where(Transaction.tenant_id == tenant_id)
            .group_by(Transaction.provider, Transaction.type, Transaction.status)
        )

        stats: dict[str, Any] = {
            "total_revenue": 0,
            "refunded_amount": 0,
            "successful_payments": 0,
            "failed_payments": 0,
            "pending_payments": 0,
            "refund_count": 0,
            "by_provider": {},
        }
        for provider, tx_type, status, count, amount in result.all():
            bucket = stats["by_provider"].setdefault(
                provider.value, {"revenue": 0, "count": 0}
            )
            if tx_type in _REVENUE_TYPES:
                if status == TransactionStatus.SUCCEEDED:
                    stats["total_revenue"] += int(amount)
                    stats["successful_payments"] += count
                    bucket["revenue"] += int(amount)
                    bucket["count"] += count
                elif status == TransactionStatus.FAILED:
                    stats["failed_payments"] += count
                elif status == TransactionStatus.PENDING:
                    stats["pending_payments"] += count
            elif tx_type == TransactionType.REFUND and status == TransactionStatus.REFUNDED:
                stats["refunded_amount"] += int(amount)
                stats["refund_count"] += count

        stats["net_revenue"] = stats["total_revenue"] - stats["refunded_amount"]
        return stats
