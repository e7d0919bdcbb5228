"""
Per-provider circuit breakers.

Every adapter call to a gateway goes through the breaker registered for that
gateway. A run of transient failures (timeouts, transport errors, 5xx answers)
trips it, after which calls are rejected with CircuitBreakerOpenError until a
cool-down passes and a few trial calls succeed.

Declines and tenant misconfiguration are ordinary provider answers. They do
not count against the breaker, so one tenant's bad credentials never block
the other tenants sharing the gateway.
"""
import asyncio
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, TypeVar

import httpx

from app.core.exceptions import (
    CircuitBreakerOpenError,
    ProviderUnavailableError,
    ServiceTimeoutError,
)
from app.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

TRANSIENT_EXCEPTIONS: tuple[type[BaseException], ...] = (
    ProviderUnavailableError,
    ServiceTimeoutError,
    httpx.TransportError,
    asyncio.TimeoutError,
)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5
    # trial calls that must succeed before a half-open breaker closes
    success_threshold: int = 2
    # cool-down after the last failure before probing
    timeout_seconds: float = 30.0
    half_open_max_calls: int = 3
    failure_exceptions: tuple[type[BaseException], ...] = TRANSIENT_EXCEPTIONS


class CircuitBreaker:
    """Three-state breaker; state is guarded by a threading lock so Celery
    tasks running on their own event loops see the same counters."""

    _registry: dict[str, "CircuitBreaker"] = {}
    _registry_lock = threading.Lock()

    def __init__(self, service_name: str, config: CircuitBreakerConfig | None = None):
        self.service_name = service_name
        self.config = config or CircuitBreakerConfig()
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self.failure_count = 0
        self._last_failure_at = 0.0
        self._trial_successes = 0
        self._trials_started = 0

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    @classmethod
    def get_instance(cls, service_name: str, config: CircuitBreakerConfig | None = None) -> "CircuitBreaker":
        with cls._registry_lock:
            breaker = cls._registry.get(service_name)
            if breaker is None:
                breaker = cls._registry[service_name] = cls(service_name, config)
            return breaker

    @classmethod
    def reset_all(cls) -> None:
        with cls._registry_lock:
            cls._registry.clear()

    @classmethod
    def snapshot(cls) -> dict[str, dict[str, Any]]:
        """State, failure streak and remaining cool-down of every registered breaker"""
        with cls._registry_lock:
            breakers = list(cls._registry.values())
        return {
            breaker.service_name: {
                "state": breaker.state.value,
                "failure_count": breaker.failure_count,
                "retry_after_seconds": round(breaker.get_retry_after(), 1),
            }
            for breaker in breakers
        }

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_closed(self) -> bool:
        return self._state is CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self._state is CircuitState.OPEN

    @property
    def is_half_open(self) -> bool:
        return self._state is CircuitState.HALF_OPEN

    def _cooled_down(self) -> bool:
        return time.monotonic() - self._last_failure_at >= self.config.timeout_seconds

    def _move(self, target: CircuitState) -> None:
        # caller holds self._lock
        previous, self._state = self._state, target
        self._trial_successes = 0
        self._trials_started = 0
        if target is CircuitState.CLOSED:
            self.failure_count = 0

        log = logger.warning if target is CircuitState.OPEN else logger.info
        log(
            f"Provider circuit {self.service_name} is now {target.value}",
            extra_data={
                "service": self.service_name,
                "from_state": previous.value,
                "to_state": target.value,
                "failure_count": self.failure_count,
            },
        )

    def get_retry_after(self) -> float:
        """Seconds left in the cool-down; 0 unless the breaker is open"""
        if self._state is not CircuitState.OPEN:
            return 0.0
        elapsed = time.monotonic() - self._last_failure_at
        return max(0.0, self.config.timeout_seconds - elapsed)

    async def can_execute(self) -> bool:
        with self._lock:
            if self._state is CircuitState.OPEN:
                if not self._cooled_down():
                    return False
                self._move(CircuitState.HALF_OPEN)

            if self._state is CircuitState.HALF_OPEN:
                if self._trials_started >= self.config.half_open_max_calls:
                    return False
                self._trials_started += 1

            return True

    async def record_success(self) -> None:
        with self._lock:
            if self._state is CircuitState.HALF_OPEN:
                self._trial_successes += 1
                if self._trial_successes >= self.config.success_threshold:
                    self._move(CircuitState.CLOSED)
            else:
                self.failure_count = 0

    async def record_failure(self, error: BaseException | None = None) -> None:
        with self._lock:
            self.failure_count += 1
            self._last_failure_at = time.monotonic()
            logger.debug(
                f"Provider call through {self.service_name} failed",
                extra_data={
                    "service": self.service_name,
                    "failure_count": self.failure_count,
                    "threshold": self.config.failure_threshold,
                    "error": repr(error) if error else None,
                },
            )
            if self._state is CircuitState.HALF_OPEN or (
                self._state is CircuitState.CLOSED
                and self.failure_count >= self.config.failure_threshold
            ):
                self._move(CircuitState.OPEN)

    async def execute(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """
        Call func (sync or async) unless the breaker is open.

        Only config.failure_exceptions count as failures. Any other exception
        means the gateway answered, so it is recorded as a success and then
        re-raised to the caller.
        """
        if not await self.can_execute():
            raise CircuitBreakerOpenError(self.service_name, self.get_retry_after())

        try:
            outcome = func(*args, **kwargs)
            if asyncio.iscoroutine(outcome):
                outcome = await outcome
        except self.config.failure_exceptions as exc:
            await self.record_failure(exc)
            raise
        except Exception:
            await self.record_success()
            raise

        await self.record_success()
        return outcome


def get_provider_circuit_breaker(provider: str) -> CircuitBreaker:
    """The shared breaker for one payment gateway, keyed payments.<provider>"""
    return CircuitBreaker.get_instance(f"payments.{provider}", CircuitBreakerConfig())
