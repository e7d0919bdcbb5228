"""
Tests for the provider HTTP transport and error mapping
"""
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from app.core.exceptions import ProviderError, ProviderUnavailableError
from app.domain.services.payments.http_client import decode_json, send_provider_request


def _response(status_code: int, content: bytes) -> httpx.Response:
    return httpx.Response(status_code, content=content, request=httpx.Request("POST", "https://provider.test"))


class TestSendProviderRequest:

    @pytest.mark.unit
    async def test_returns_response(self):
        response = _response(200, b"{}")

        with patch.object(httpx.AsyncClient, "request", AsyncMock(return_value=response)) as mock_request:
            result = await send_provider_request(
                "square", "GET", "https://connect.squareupsandbox.com/v2/locations", operation="list_locations"
            )

        assert result is response
        mock_request.assert_awaited_once_with("GET", "https://connect.squareupsandbox.com/v2/locations")

    @pytest.mark.unit
    async def test_timeout_is_unavailable(self):
        with patch.object(httpx.AsyncClient, "request", AsyncMock(side_effect=httpx.ReadTimeout("slow"))):
            with pytest.raises(ProviderUnavailableError) as exc_info:
                await send_provider_request("paypal", "POST", "https://api-m.paypal.com", operation="create_order")

        assert "timed out" in exc_info.value.message
        assert exc_info.value.details["operation"] == "create_order"
        assert exc_info.value.status_code == 503

    @pytest.mark.unit
    async def test_connection_error_is_unavailable(self):
        with patch.object(httpx.AsyncClient, "request", AsyncMock(side_effect=httpx.ConnectError("refused"))):
            with pytest.raises(ProviderUnavailableError) as exc_info:
                await send_provider_request("authorize", "POST", "https://apitest.authorize.net", operation="auth_capture")

        assert "ConnectError" in exc_info.value.message


class TestDecodeJson:

    @pytest.mark.unit
    def test_strips_bom(self):
        body = decode_json("authorize", "charge", _response(200, b'\xef\xbb\xbf{"ok": true}'))

        assert body == {"ok": True}

    @pytest.mark.unit
    def test_empty_body(self):
        assert decode_json("paypal", "void", _response(204, b"")) == {}

    @pytest.mark.unit
    def test_html_error_page(self):
        with pytest.raises(ProviderError) as exc_info:
            decode_json("square", "charge", _response(400, b"<html>Bad Request</html>"))

        assert not isinstance(exc_info.value, ProviderUnavailableError)
        assert exc_info.value.details["status_code"] == 400

    @pytest.mark.unit
    def test_gateway_html_on_5xx_is_unavailable(self):
        with pytest.raises(ProviderUnavailableError):
            decode_json("square", "charge", _response(502, b"<html>Bad Gateway</html>"))


class TestFromResponse:

    @pytest.mark.unit
    @pytest.mark.parametrize("status_code,expected", [
        (400, ProviderError),
        (404, ProviderError),
        (500, ProviderUnavailableError),
        (503, ProviderUnavailableError),
    ])
    def test_status_mapping(self, status_code, expected):
        error = ProviderError.from_response("paypal", "refund", _response(status_code, b"x" * 2000))

        assert type(error) is expected
        assert error.details["operation"] == "refund"
        assert len(error.details["response_text"]) == 500
