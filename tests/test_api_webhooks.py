"""
API tests for tenant webhook registrations and delivery history
"""
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.services.webhook_dispatcher_service import WebhookDispatcherService, _AttemptOutcome
from tests.conftest import ADMIN_HEADERS, DELIVERY_TRANSPORT, TENANT_ID

BASE = f"/api/v1/tenants/{TENANT_ID}/webhooks"


class TestRegistrationRoutes:

    @pytest.mark.integration
    async def test_requires_admin_key(self, test_client: AsyncClient):
        response = await test_client.get(BASE)

        assert response.status_code == 401

    @pytest.mark.integration
    async def test_create_returns_generated_secret_once(self, test_client: AsyncClient):
        response = await test_client.post(
            BASE,
            json={"url": "https://hooks.example.com/in", "events": ["payment.received"], "generate_secret": True},
            headers=ADMIN_HEADERS,
        )

        assert response.status_code == 201
        created = response.json()
        assert created["secret"].startswith("whsec_")
        assert created["has_secret"] is True
        assert created["tenant_id"] == TENANT_ID

        response = await test_client.get(f"{BASE}/{created['id']}", headers=ADMIN_HEADERS)
        assert response.status_code == 200
        assert "secret" not in response.json()
        assert response.json()["has_secret"] is True

    @pytest.mark.integration
    async def test_create_unknown_event(self, test_client: AsyncClient):
        response = await test_client.post(
            BASE,
            json={"url": "https://hooks.example.com/in", "events": ["payment.exploded"]},
            headers=ADMIN_HEADERS,
        )

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "ERR_3004"
        assert error["details"]["invalid_events"] == ["payment.exploded"]

    @pytest.mark.integration
    async def test_list_update_delete(self, test_client: AsyncClient, webhook_factory):
        webhook = await webhook_factory()
        await webhook_factory(tenant_id="tenant-2")

        response = await test_client.get(BASE, headers=ADMIN_HEADERS)
        assert [w["id"] for w in response.json()] == [webhook.id]

        response = await test_client.patch(
            f"{BASE}/{webhook.id}",
            json={"events": ["*"], "is_active": False},
            headers=ADMIN_HEADERS,
        )
        assert response.status_code == 200
        assert response.json()["events"] == ["*"]
        assert response.json()["is_active"] is False
        assert response.json()["secret"] is None

        response = await test_client.delete(f"{BASE}/{webhook.id}", headers=ADMIN_HEADERS)
        assert response.status_code == 204

        response = await test_client.get(f"{BASE}/{webhook.id}", headers=ADMIN_HEADERS)
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "ERR_3003"

    @pytest.mark.integration
    async def test_other_tenant_registration_is_not_found(self, test_client: AsyncClient, webhook_factory):
        webhook = await webhook_factory(tenant_id="tenant-2")

        response = await test_client.delete(f"{BASE}/{webhook.id}", headers=ADMIN_HEADERS)

        assert response.status_code == 404

    @pytest.mark.integration
    async def test_event_catalogue(self, test_client: AsyncClient):
        response = await test_client.get(f"{BASE}/events", headers=ADMIN_HEADERS)

        body = response.json()
        assert body["wildcard"] == "*"
        assert "payment.received" in {e["type"] for e in body["events"]}


class TestDeliveryRoutes:

    @pytest.mark.integration
    async def test_test_ping(self, test_client: AsyncClient, webhook_factory):
        webhook = await webhook_factory()

        with patch.object(
            WebhookDispatcherService, "_post", AsyncMock(return_value=_AttemptOutcome(status_code=200, response_excerpt="ok"))
        ) as mock_post:
            response = await test_client.post(f"{BASE}/{webhook.id}/test", headers=ADMIN_HEADERS)

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert response.json()["status_code"] == 200
        assert mock_post.await_args.args[2] == "test.ping"

    @pytest.mark.integration
    async def test_delivery_history(self, test_client: AsyncClient, db_session: AsyncSession, webhook_factory):
        webhook = await webhook_factory(secret="s3cret")
        with patch(DELIVERY_TRANSPORT, AsyncMock(side_effect=[
            httpx.Response(200, text="ok"),
            httpx.Response(500, text="down"),
        ])):
            service = WebhookDispatcherService(db_session)
            await service.dispatch(TENANT_ID, "payment.received", {"amount": 500})
            await service.dispatch(TENANT_ID, "payment.received", {"amount": 700})

        response = await test_client.get(f"{BASE}/deliveries", headers=ADMIN_HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 2
        assert {d["webhook_id"] for d in body["deliveries"]} == {webhook.id}

        response = await test_client.get(
            f"{BASE}/deliveries", params={"success": "false"}, headers=ADMIN_HEADERS
        )
        [failed] = response.json()["deliveries"]
        assert failed["success"] is False
        assert failed["status_code"] == 500
        assert failed["error"] == "HTTP 500"
        assert '"amount":700' in failed["payload"]
