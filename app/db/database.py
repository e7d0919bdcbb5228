"""
Async engine, session factory and declarative base.

The API process shares one module-level engine. Celery tasks run each job on
a fresh event loop, and asyncpg connections cannot cross loops, so tasks
open their own short-lived engine through get_task_session().
"""
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from app.core.config import settings


class Base(DeclarativeBase):
    pass


def _make_engine(*, for_worker: bool = False) -> AsyncEngine:
    options: dict = {"echo": settings.DEBUG, "pool_pre_ping": True}
    if for_worker and not settings.DATABASE_URL.startswith("sqlite"):
        options.update(pool_size=5, max_overflow=10)
    return create_async_engine(settings.DATABASE_URL, **options)


def _session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=bind, class_=AsyncSession, expire_on_commit=False)


engine = _make_engine()
AsyncSessionLocal = _session_factory(engine)


async def get_db() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency: one session per request"""
    async with AsyncSessionLocal() as session:
        yield session


@asynccontextmanager
async def get_task_session() -> AsyncIterator[AsyncSession]:
    """Session on an engine bound to the running loop; disposed on exit"""
    task_engine = _make_engine(for_worker=True)
    try:
        async with _session_factory(task_engine)() as session:
            yield session
    finally:
        await task_engine.dispose()
