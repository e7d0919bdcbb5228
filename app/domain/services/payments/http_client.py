"""
HTTP transport for the REST-based gateways (PayPal, Square, Authorize.net).

Transport failures are raised as ProviderUnavailableError so the provider
circuit breaker counts them; HTTP error statuses are left to the caller,
which knows how to read its gateway's error body.
"""
import json
from typing import Any

import httpx

from app.core.config import settings
from app.core.exceptions import ProviderError, ProviderUnavailableError


async def send_provider_request(
    provider: str,
    method: str,
    url: str,
    *,
    operation: str,
    **kwargs: Any,
) -> httpx.Response:
    """Issue one request with the provider timeout"""
    timeout = settings.PROVIDER_HTTP_TIMEOUT_SECONDS
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            return await client.request(method, url, **kwargs)
    except httpx.TimeoutException as e:
        raise ProviderUnavailableError(
            provider,
            f"{operation} timed out after {timeout}s",
            details={"operation": operation},
        ) from e
    except httpx.HTTPError as e:
        raise ProviderUnavailableError(
            provider,
            f"{operation} failed: {type(e).__name__}",
            details={"operation": operation, "error": str(e)},
        ) from e


def decode_json(provider: str, operation: str, response: httpx.Response) -> dict[str, Any]:
    """Parse a JSON body; tolerates a UTF-8 BOM and empty bodies"""
    if not response.content:
        return {}
    try:
        return json.loads(response.content.decode("utf-8-sig"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ProviderError.from_response(
            provider, operation, response, message=f"{operation} returned a non-JSON body"
        ) from e
