"""
X-Admin-API-Key guard for management routes.

    @router.get("/{tenant_id}/transactions", dependencies=[Depends(require_admin_api_key)])

Missing header -> 401, wrong key -> 403. When ADMIN_API_KEY is unset, DEBUG
lets every call through and production refuses every call.
"""
import hmac

from fastapi import Depends, Request
from fastapi.security import APIKeyHeader

from app.core.config import settings
from app.core.exceptions import AdminAuthError
from app.core.logging import get_logger

logger = get_logger(__name__)

ADMIN_KEY_HEADER = "X-Admin-API-Key"

_api_key_header = APIKeyHeader(name=ADMIN_KEY_HEADER, auto_error=False)


def _keys_match(presented: str, expected: str) -> bool:
    return hmac.compare_digest(presented.encode(), expected.encode())


async def require_admin_api_key(request: Request, api_key: str | None = Depends(_api_key_header)) -> None:
    expected = settings.ADMIN_API_KEY
    if not expected:
        if settings.DEBUG:
            return
        logger.warning("Management call refused: ADMIN_API_KEY is not set", extra_data={"path": request.url.path})
        raise AdminAuthError("Management API is disabled", missing=False)

    if not api_key:
        raise AdminAuthError(f"{ADMIN_KEY_HEADER} header required", missing=True)

    if not _keys_match(api_key, expected):
        logger.warning(
            "Management call refused: wrong API key",
            extra_data={"security_event": "admin_auth_failed", "path": request.url.path},
        )
        raise AdminAuthError("Invalid API key", missing=False)
