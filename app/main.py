"""
Payments Core API.

    uvicorn app.main:app
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse

from app.api.routes import router as api_router
from app.core.config import settings
from app.core.logging import get_logger, setup_logging
from app.core.middleware import setup_exception_handlers, setup_middleware
from app.db.database import Base, engine
from app.domain.services.health_service import check_readiness

setup_logging(
    level="DEBUG" if settings.DEBUG else settings.LOG_LEVEL,
    json_format=not settings.DEBUG if settings.LOG_JSON is None else settings.LOG_JSON,
    app_name=settings.APP_NAME,
)
logger = get_logger(__name__)

_DEV_ORIGINS = ["http://localhost", "http://localhost:3000", "http://127.0.0.1:3000"]

_OPENAPI_TAGS = [
    {"name": "Payments", "description": "Gateway operations for a tenant and ledger queries."},
    {"name": "Webhook Registrations", "description": "Tenant endpoints notified of events, with delivery history."},
    {"name": "Provider Webhooks", "description": "Signed callbacks from Stripe, PayPal, Square, Braintree and Authorize.net."},
    {"name": "Health", "description": "Liveness and readiness checks."},
]


def _cors_origins() -> list[str]:
    origins = [origin.strip() for origin in settings.ALLOWED_ORIGINS.split(",") if origin.strip()]
    if not origins and settings.DEBUG:
        return _DEV_ORIGINS
    return origins


@asynccontextmanager
async def lifespan(_: FastAPI):
    import app.db.models  # noqa: F401  registers the tables on Base.metadata

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Payments Core started", extra_data={"app_name": settings.APP_NAME, "debug": settings.DEBUG})
    try:
        yield
    finally:
        await engine.dispose()
        logger.info("Payments Core stopped")


def create_app() -> FastAPI:
    application = FastAPI(
        title=settings.APP_NAME,
        version="1.0.0",
        description="Multi-tenant payment gateway abstraction with signed outbound webhooks.",
        openapi_tags=_OPENAPI_TAGS,
        lifespan=lifespan,
    )
    setup_middleware(application)
    setup_exception_handlers(application)

    origins = _cors_origins()
    if origins:
        application.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
            allow_headers=["Content-Type", "X-Admin-API-Key", "X-Correlation-ID"],
        )

    application.include_router(api_router, prefix="/api/v1")

    @application.get("/health", summary="Liveness check", tags=["Health"])
    async def health_check() -> dict[str, str]:
        return {"status": "healthy"}

    @application.get(
        "/health/ready",
        summary="Readiness check",
        description="Database and Celery broker checks plus provider circuit breaker state.",
        responses={503: {"description": "Database or broker unavailable"}},
        tags=["Health"],
    )
    async def readiness_check() -> JSONResponse:
        result = await check_readiness()
        return JSONResponse(content=result, status_code=200 if result["status"] == "healthy" else 503)

    return application


app = create_app()
