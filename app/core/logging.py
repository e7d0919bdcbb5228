"""
Structured logging.

Every record carries the request's correlation id and, once a route has
resolved it, the tenant being served. Production writes one JSON object per
line; local runs use a readable single-line format.

Call sites attach structured context with ``extra_data``:

    logger.info("Charge recorded", extra_data={"provider": "stripe", "amount": 1999})
"""
import json
import logging
import logging.config
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from functools import wraps
from typing import Any

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")
tenant_id_var: ContextVar[str] = ContextVar("tenant_id", default="")

_RECORD_FIELDS = ("module", "funcName", "lineno")

# third-party loggers that are noisy at INFO
_QUIET_LOGGERS = {
    "httpx": "WARNING",
    "httpcore": "WARNING",
    "sqlalchemy.engine": "WARNING",
    "stripe": "WARNING",
    "celery": "INFO",
}


class JSONFormatter(logging.Formatter):
    """One JSON object per record"""

    def __init__(self, app_name: str | None = None):
        super().__init__()
        self.app_name = app_name

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update({field: getattr(record, field) for field in _RECORD_FIELDS})
        if self.app_name:
            entry["app"] = self.app_name

        for key, var in (("correlation_id", correlation_id_var), ("tenant_id", tenant_id_var)):
            value = var.get()
            if value:
                entry[key] = value

        extra_data = getattr(record, "extra_data", None)
        if extra_data:
            entry["extra"] = extra_data
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, ensure_ascii=False, default=str)


class ContextFilter(logging.Filter):
    """Exposes correlation_id and tenant_id to plain-text format strings"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_var.get() or "-"
        record.tenant_id = tenant_id_var.get() or "-"
        return True


class StructuredLogger(logging.Logger):
    """Logger whose methods accept an ``extra_data`` dict"""

    def _log(  # type: ignore[override]
        self,
        level: int,
        msg: object,
        args: Any,
        exc_info: Any = None,
        extra: dict[str, Any] | None = None,
        stack_info: bool = False,
        stacklevel: int = 1,
        extra_data: dict[str, Any] | None = None,
    ) -> None:
        if extra_data:
            extra = {**(extra or {}), "extra_data": extra_data}
        super()._log(
            level,
            msg,
            args,
            exc_info=exc_info,
            extra=extra,
            stack_info=stack_info,
            stacklevel=stacklevel + 1,
        )


logging.setLoggerClass(StructuredLogger)


def setup_logging(level: str = "INFO", json_format: bool = True, app_name: str = "payments-core") -> None:
    """Configure the root logger for the API process or a Celery worker"""
    level = level.upper()
    if json_format:
        formatter: dict[str, Any] = {"()": JSONFormatter, "app_name": app_name}
    else:
        formatter = {
            "format": "%(asctime)s %(levelname)-8s %(name)s [%(correlation_id)s %(tenant_id)s] %(message)s",
            "datefmt": "%H:%M:%S",
        }

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {"context": {"()": ContextFilter}},
        "formatters": {"default": formatter},
        "handlers": {
            "stdout": {
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stdout",
                "formatter": "default",
                "filters": ["context"],
                "level": level,
            },
        },
        "root": {"level": level, "handlers": ["stdout"]},
        "loggers": {name: {"level": quiet} for name, quiet in _QUIET_LOGGERS.items()},
    })


def generate_correlation_id() -> str:
    return uuid.uuid4().hex[:8]


def set_correlation_id(correlation_id: str | None = None) -> str:
    """Bind a correlation id (a fresh one when none is given) and return it"""
    cid = correlation_id or generate_correlation_id()
    correlation_id_var.set(cid)
    return cid


def get_correlation_id() -> str:
    """Current correlation id; binds a fresh one outside a request"""
    return correlation_id_var.get() or set_correlation_id()


def set_tenant_id(tenant_id: str | None) -> None:
    tenant_id_var.set(tenant_id or "")


def mask_secret(value: str | None, visible: int = 4) -> str:
    """Replace all but the last ``visible`` characters of a credential with '*'"""
    if not value:
        return ""
    if len(value) <= visible:
        return "*" * len(value)
    return "*" * (len(value) - visible) + value[-visible:]


def get_logger(name: str) -> StructuredLogger:
    return logging.getLogger(name)  # type: ignore[return-value]


def log_async_operation(operation_name: str):
    """Log the outcome and duration of a coroutine function"""
    def decorator(func):
        log = get_logger(func.__module__)

        @wraps(func)
        async def wrapper(*args, **kwargs):
            started = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception as exc:
                log.error(
                    f"{operation_name} failed",
                    extra_data={
                        "operation": operation_name,
                        "duration_ms": round((time.perf_counter() - started) * 1000, 1),
                        "error": str(exc),
                    },
                    exc_info=True,
                )
                raise
            log.info(
                f"{operation_name} finished",
                extra_data={
                    "operation": operation_name,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 1),
                },
            )
            return result

        return wrapper
    return decorator
