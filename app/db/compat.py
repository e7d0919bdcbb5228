"""
Dialect-compatible SQL helpers - PostgreSQL in production, SQLite in tests.
"""
from datetime import datetime, timezone

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

_INSERT_BY_DIALECT = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the naive DateTime columns"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def dialect_insert(db: AsyncSession, table):
    """
    INSERT construct supporting ON CONFLICT for the session's dialect.

    Both PostgreSQL and SQLite (3.24+) accept
    `INSERT ... ON CONFLICT (cols) DO UPDATE SET ... WHERE ...`.
    """
    dialect_name = db.bind.dialect.name
    try:
        insert_fn = _INSERT_BY_DIALECT[dialect_name]
    except KeyError:
        raise NotImplementedError(f"Upsert is not supported on dialect '{dialect_name}'") from None
    return insert_fn(table)
