"""
Readiness checks behind GET /health/ready.

The database and the Celery broker are hard dependencies: if either is
unreachable the service reports "degraded" (HTTP 503). Provider circuit
breakers are listed for operators but never degrade readiness, since an
outage at one gateway leaves the others usable.
"""
import asyncio
from typing import Any

import redis.asyncio as aioredis
from sqlalchemy import text

from app.core.circuit_breaker import CircuitBreaker, CircuitState
from app.core.config import settings
from app.core.logging import get_logger
from app.db.database import AsyncSessionLocal

logger = get_logger(__name__)

CHECK_TIMEOUT_SECONDS = 5.0
OK = "ok"

# what callers see; the underlying error only goes to the logs
_ERROR_DB = "error: db_unavailable"
_ERROR_CELERY = "error: celery_broker_unavailable"


async def _check_db() -> str:
    try:
        async with AsyncSessionLocal() as session:
            await asyncio.wait_for(session.execute(text("SELECT 1")), CHECK_TIMEOUT_SECONDS)
    except Exception as exc:
        logger.warning("Readiness: database unreachable", extra_data={"error": repr(exc)})
        return _ERROR_DB
    return OK


async def _check_celery_broker() -> str:
    client = aioredis.from_url(settings.CELERY_BROKER_URL, socket_connect_timeout=CHECK_TIMEOUT_SECONDS)
    try:
        await client.ping()
    except Exception as exc:
        logger.warning("Readiness: Celery broker unreachable", extra_data={"error": repr(exc)})
        return _ERROR_CELERY
    finally:
        await client.aclose()
    return OK


async def check_readiness() -> dict[str, Any]:
    db, broker = await asyncio.gather(_check_db(), _check_celery_broker())
    checks = {"db": db, "celery_broker": broker}
    healthy = all(result == OK for result in checks.values())
    if not healthy:
        logger.warning("Readiness degraded", extra_data=checks)

    breakers = CircuitBreaker.snapshot()
    return {
        "status": "healthy" if healthy else "degraded",
        **checks,
        "circuit_breakers": breakers,
        "open_circuits": sorted(
            name for name, info in breakers.items() if info["state"] == CircuitState.OPEN.value
        ),
    }
