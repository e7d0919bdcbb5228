"""
Application errors.

Every error carries an ErrorCode and an HTTP status and renders as
``{"error": {"code", "message", "details"}}`` through app_exception_handler.

Payment failures fall into four families:
- configuration (provider disabled, credentials missing): surfaced, never retried
- transient (timeouts, transport errors, 5xx): counted by the provider circuit
  breaker; outbound deliveries are retried by the sweep
- inbound webhook authentication: rejected before any processing
- ledger consistency (money moved but no local record): fatal and loud
"""
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    # general
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    UNAUTHORIZED = "ERR_1004"
    FORBIDDEN = "ERR_1005"

    # payment configuration
    PROVIDER_NOT_CONFIGURED = "ERR_2001"
    PROVIDER_UNKNOWN = "ERR_2002"
    NO_GATEWAY_ENABLED = "ERR_2003"
    UNSUPPORTED_OPERATION = "ERR_2004"

    # webhooks
    WEBHOOK_AUTH_FAILED = "ERR_3001"
    WEBHOOK_PAYLOAD_INVALID = "ERR_3002"
    WEBHOOK_NOT_FOUND = "ERR_3003"
    WEBHOOK_INVALID_EVENT = "ERR_3004"

    # ledger
    LEDGER_CONSISTENCY = "ERR_4001"

    # upstream services
    PROVIDER_ERROR = "ERR_5001"
    PROVIDER_DECLINED = "ERR_5002"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"
    EXTERNAL_SERVICE_TIMEOUT = "ERR_5004"


class AppException(Exception):
    """Base error; subclasses set error_code and status_code as class defaults"""

    error_code: ErrorCode = ErrorCode.INTERNAL_ERROR
    status_code: int = 500

    def __init__(
        self,
        message: str,
        error_code: ErrorCode | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        if status_code is not None:
            self.status_code = status_code
        self.details = dict(details or {})

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details,
            }
        }


class ValidationException(AppException):
    error_code = ErrorCode.VALIDATION_ERROR
    status_code = 400

    def __init__(self, message: str, field: str | None = None, details: dict[str, Any] | None = None):
        super().__init__(message, details=details)
        if field:
            self.details["field"] = field


class AdminAuthError(AppException):
    """Management route called without a valid X-Admin-API-Key"""

    def __init__(self, message: str, *, missing: bool):
        super().__init__(
            message,
            error_code=ErrorCode.UNAUTHORIZED if missing else ErrorCode.FORBIDDEN,
            status_code=401 if missing else 403,
        )


# ----------------------------------------------------------------------------
# Payments
# ----------------------------------------------------------------------------


class PaymentException(AppException):
    status_code = 400

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        provider: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, error_code=error_code, status_code=status_code, details=details)
        self.provider = provider
        if provider:
            self.details["provider"] = provider


class ProviderNotConfiguredError(PaymentException):
    """The tenant has the provider disabled, or some credentials are blank"""

    def __init__(self, provider: str, tenant_id: str, missing: list[str] | None = None):
        if missing:
            message = f"{provider} is missing credentials: {', '.join(missing)}"
        else:
            message = f"{provider} is not enabled for this tenant"
        super().__init__(
            message,
            ErrorCode.PROVIDER_NOT_CONFIGURED,
            provider=provider,
            details={"tenant_id": tenant_id, "missing": missing or []},
        )


class UnknownProviderError(PaymentException):

    def __init__(self, provider: str):
        super().__init__(f"Unknown payment provider: {provider}", ErrorCode.PROVIDER_UNKNOWN, provider=provider)


class UnsupportedOperationError(PaymentException):

    def __init__(self, provider: str, operation: str, reason: str | None = None):
        super().__init__(
            reason or f"{provider} does not support '{operation}'",
            ErrorCode.UNSUPPORTED_OPERATION,
            provider=provider,
            details={"operation": operation},
        )


class ProviderError(PaymentException):
    """The gateway rejected or failed a request"""

    default_code = ErrorCode.PROVIDER_ERROR
    status_code = 502

    def __init__(self, provider: str, message: str, details: dict[str, Any] | None = None):
        super().__init__(f"{provider}: {message}", self.default_code, provider=provider, details=details)

    @classmethod
    def from_response(
        cls,
        provider: str,
        operation: str,
        response: Any,
        *,
        message: str | None = None,
        max_response_chars: int = 500,
    ) -> "ProviderError":
        """
        Error for a non-success HTTP answer from a gateway.

        5xx answers become ProviderUnavailableError, which the circuit breaker
        counts; anything else is a plain ProviderError. The response text is
        truncated to ``max_response_chars`` in the details.
        """
        status_code = getattr(response, "status_code", None)
        details = {
            "operation": operation,
            "status_code": status_code,
            "response_text": (getattr(response, "text", "") or "")[:max_response_chars],
        }
        text = message or f"{operation} returned status {status_code}"
        if status_code is not None and status_code >= 500:
            return ProviderUnavailableError(provider, text, details=details)
        return cls(provider, text, details=details)


class ProviderDeclinedError(ProviderError):
    """Card declined, insufficient funds and the like"""

    default_code = ErrorCode.PROVIDER_DECLINED


class ProviderUnavailableError(ProviderError):
    """Network error, timeout or 5xx from the gateway"""

    default_code = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE
    status_code = 503


class LedgerConsistencyError(PaymentException):
    """The gateway confirmed money movement but the ledger write kept failing"""

    status_code = 500

    def __init__(
        self,
        provider: str,
        external_id: str,
        tenant_id: str,
        amount: int,
        currency: str,
        attempts: int,
        cause: str | None = None,
    ):
        super().__init__(
            f"{provider} transaction {external_id} succeeded but could not be recorded after {attempts} attempts",
            ErrorCode.LEDGER_CONSISTENCY,
            provider=provider,
            details={
                "external_id": external_id,
                "tenant_id": tenant_id,
                "amount": amount,
                "currency": currency,
                "attempts": attempts,
                "cause": cause,
            },
        )
        self.external_id = external_id


# ----------------------------------------------------------------------------
# Webhooks
# ----------------------------------------------------------------------------


class WebhookException(AppException):
    status_code = 400


class WebhookAuthenticationError(WebhookException):
    """Inbound provider webhook failed signature or token verification"""

    error_code = ErrorCode.WEBHOOK_AUTH_FAILED
    status_code = 401

    def __init__(self, provider: str, reason: str):
        super().__init__(f"Webhook authentication failed for {provider}", details={"provider": provider})
        # logged, never returned to the caller
        self.reason = reason


class WebhookPayloadError(WebhookException):
    error_code = ErrorCode.WEBHOOK_PAYLOAD_INVALID

    def __init__(self, provider: str, reason: str):
        super().__init__(f"Invalid {provider} webhook payload: {reason}", details={"provider": provider})


class WebhookNotFoundError(WebhookException):
    error_code = ErrorCode.WEBHOOK_NOT_FOUND
    status_code = 404

    def __init__(self, webhook_id: int):
        super().__init__(f"Webhook not found: {webhook_id}", details={"webhook_id": webhook_id})


class InvalidWebhookEventError(WebhookException):
    error_code = ErrorCode.WEBHOOK_INVALID_EVENT

    def __init__(self, invalid_events: list[str]):
        super().__init__(
            f"Unknown webhook events: {', '.join(invalid_events)}",
            details={"invalid_events": invalid_events},
        )


# ----------------------------------------------------------------------------
# Upstream services
# ----------------------------------------------------------------------------


class ExternalServiceException(AppException):
    error_code = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE
    status_code = 503

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, error_code=error_code, details=details)
        self.details["service"] = service_name


class ServiceTimeoutError(ExternalServiceException):

    def __init__(self, service_name: str, timeout_seconds: float):
        super().__init__(
            service_name,
            f"{service_name} request timed out after {timeout_seconds}s",
            ErrorCode.EXTERNAL_SERVICE_TIMEOUT,
            details={"timeout_seconds": timeout_seconds},
        )


class CircuitBreakerOpenError(ExternalServiceException):

    def __init__(self, service_name: str, retry_after_seconds: float):
        super().__init__(
            service_name,
            f"{service_name} is temporarily unavailable (circuit breaker open)",
            details={"retry_after_seconds": retry_after_seconds},
        )
