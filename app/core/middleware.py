"""
HTTP middleware and exception handlers.

Request order (outermost first):
    SecurityHeaders -> CorrelationId -> RequestLogging -> WebhookRateLimit -> routes

Inbound provider webhooks are rate limited per client and provider. Query
parameters that look like credentials are masked before they are logged.
"""
import time
from collections import deque
from typing import Callable

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.exceptions import AppException, ErrorCode
from app.core.logging import get_correlation_id, get_logger, set_correlation_id, set_tenant_id
from app.db.models.transaction import PaymentProvider

logger = get_logger(__name__)

INBOUND_WEBHOOK_PATH_PREFIX = "/api/v1/webhooks/"
CORRELATION_HEADER = "X-Correlation-ID"

# every other path segment under the webhook prefix shares one bucket per client
_KNOWN_PROVIDERS = frozenset(p.value for p in PaymentProvider)
_UNKNOWN_PROVIDER_BUCKET = "other"

_SENSITIVE_PARAM_MARKERS = ("secret", "token", "key", "signature", "password")

_PRODUCTION_HEADERS = {
    "Content-Security-Policy": "upgrade-insecure-requests",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
}


def _mask_query_params(params: dict[str, str]) -> dict[str, str]:
    masked = dict(params)
    for name in params:
        lowered = name.lower()
        if any(marker in lowered for marker in _SENSITIVE_PARAM_MARKERS):
            masked[name] = "***"
    return masked


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _error_response(status_code: int, body: dict, **headers: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=body,
        headers={CORRELATION_HEADER: get_correlation_id(), **headers},
    )


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Binds the caller's X-Correlation-ID (or a fresh one) for the request's logs"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = set_correlation_id(request.headers.get(CORRELATION_HEADER))
        set_tenant_id(None)
        request.state.correlation_id = correlation_id

        response = await call_next(request)
        response.headers[CORRELATION_HEADER] = correlation_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One log line when a request arrives, one when it completes or fails"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_info = {
            "method": request.method,
            "path": request.url.path,
            "client_host": _client_ip(request),
        }
        logger.info(
            f"{request.method} {request.url.path}",
            extra_data={**request_info, "query_params": _mask_query_params(dict(request.query_params))},
        )

        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                f"{request.method} {request.url.path} raised {type(exc).__name__}",
                extra_data={**request_info, "duration_ms": _elapsed_ms(started)},
                exc_info=True,
            )
            raise

        log = logger.info if response.status_code < 400 else logger.warning
        log(
            f"{request.method} {request.url.path} -> {response.status_code}",
            extra_data={
                **request_info,
                "status_code": response.status_code,
                "duration_ms": _elapsed_ms(started),
            },
        )
        return response


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 1)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """nosniff everywhere; CSP and HSTS only outside DEBUG so plain-HTTP local runs work"""

    def __init__(self, app: FastAPI, *, debug: bool = False) -> None:
        super().__init__(app)
        self._headers = {"X-Content-Type-Options": "nosniff"}
        if not debug:
            self._headers.update(_PRODUCTION_HEADERS)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)
        response.headers.update(self._headers)
        return response


class WebhookRateLimitMiddleware(BaseHTTPMiddleware):
    """
    Sliding-window limit on inbound provider webhooks.

    Counted per (client IP, provider), so a burst of Stripe retries from one
    address does not starve PayPal callbacks from the same address. Path
    segments that name no provider are counted together. Requests over the
    limit get 429 with Retry-After.
    """

    def __init__(self, app: FastAPI, *, max_requests: int = 300, window_seconds: int = 60) -> None:
        super().__init__(app)
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._requests: dict[tuple[str, str], deque[float]] = {}

    def _prune(self, key: tuple[str, str], now: float) -> int:
        """Forget hits older than the window; returns how many remain"""
        hits = self._requests.get(key)
        if hits is None:
            return 0
        cutoff = now - self._window_seconds
        while hits and hits[0] < cutoff:
            hits.popleft()
        if not hits:
            del self._requests[key]
            return 0
        return len(hits)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if not path.startswith(INBOUND_WEBHOOK_PATH_PREFIX):
            return await call_next(request)

        provider = path[len(INBOUND_WEBHOOK_PATH_PREFIX):].split("/", 1)[0]
        if provider not in _KNOWN_PROVIDERS:
            provider = _UNKNOWN_PROVIDER_BUCKET
        key = (_client_ip(request), provider)
        now = time.monotonic()

        if self._prune(key, now) >= self._max_requests:
            logger.warning(
                "Inbound webhook rate limit hit",
                extra_data={
                    "client_ip": key[0],
                    "provider": provider,
                    "limit": self._max_requests,
                    "window_seconds": self._window_seconds,
                },
            )
            return _error_response(
                429,
                {"error": "Too many requests. Please try again later."},
                **{"Retry-After": str(self._window_seconds)},
            )

        self._requests.setdefault(key, deque()).append(now)
        return await call_next(request)


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """AppException -> its status code and {"error": {code, message, details}}"""
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        f"{exc.error_code.value} on {request.url.path}: {exc.message}",
        extra_data={"error_code": exc.error_code.value, "details": exc.details},
    )
    return _error_response(exc.status_code, exc.to_dict())


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Anything unexpected -> 500 with a generic body; the detail stays in the logs"""
    logger.error(
        f"Unhandled {type(exc).__name__} on {request.url.path}",
        extra_data={"error": str(exc)},
        exc_info=exc,
    )
    return _error_response(
        500,
        {"error": {"code": ErrorCode.INTERNAL_ERROR.value, "message": "An unexpected error occurred", "details": {}}},
    )


def setup_middleware(app: FastAPI) -> None:
    from app.core.config import settings

    # add_middleware wraps, so the last one added runs first
    app.add_middleware(
        WebhookRateLimitMiddleware,
        max_requests=settings.WEBHOOK_RATE_LIMIT_MAX_REQUESTS,
        window_seconds=settings.WEBHOOK_RATE_LIMIT_WINDOW_SECONDS,
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)
    app.add_middleware(SecurityHeadersMiddleware, debug=settings.DEBUG)


def setup_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
