"""Tests for the OSB and probe HTTP endpoints.

Requests go through the full application (auth and logging middleware,
exception handlers, lifespan) with the fake Vault standing in for the
real server.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

import httpx
import pytest
import pytest_asyncio

from vault_broker import __version__
from vault_broker.main import create_app

AUTH = ("broker-admin", "broker-secret")
PROVISION_BODY = {
    "service_id": "svc",
    "plan_id": "svc.shared",
    "organization_guid": "org-1",
    "space_guid": "space-1",
}


@pytest_asyncio.fixture
async def client(fake_vault, settings) -> AsyncGenerator[httpx.AsyncClient, None]:
    app = create_app(settings, vault_client=fake_vault)
    async with app.router.lifespan_context(app):
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test", auth=AUTH) as ac:
            yield ac


@pytest_asyncio.fixture
async def provisioned(client: httpx.AsyncClient) -> httpx.AsyncClient:
    resp = await client.put("/v2/service_instances/inst-1", json=PROVISION_BODY)
    assert resp.status_code == 201
    return client


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class TestAuth:
    @pytest.mark.asyncio
    async def test_missing_credentials(self, client: httpx.AsyncClient) -> None:
        resp = await client.get("/v2/catalog", auth=None)
        assert resp.status_code == 401
        assert resp.json() == {"description": "Not Authorized"}
        assert resp.headers["www-authenticate"].startswith("Basic")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("auth", [("broker-admin", "wrong"), ("someone", "broker-secret")])
    async def test_wrong_credentials(self, client: httpx.AsyncClient, auth: tuple[str, str]) -> None:
        resp = await client.get("/v2/catalog", auth=auth)
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_probes_are_public(self, client: httpx.AsyncClient) -> None:
        resp = await client.get("/health", auth=None)
        assert resp.status_code == 200


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


class TestCatalog:
    @pytest.mark.asyncio
    async def test_single_free_plan(self, client: httpx.AsyncClient, settings) -> None:
        resp = await client.get("/v2/catalog")

        assert resp.status_code == 200
        services = resp.json()["services"]
        assert len(services) == 1
        service = services[0]
        assert service["id"] == settings.service_id
        assert service["bindable"] is True
        assert service["plan_updateable"] is False
        assert service["plans"][0]["id"] == f"{settings.service_id}.shared"
        assert service["plans"][0]["free"] is True
        assert "imageUrl" not in service["metadata"]


# ---------------------------------------------------------------------------
# Service instances
# ---------------------------------------------------------------------------


class TestProvision:
    @pytest.mark.asyncio
    async def test_created_then_identical(self, client: httpx.AsyncClient, fake_vault) -> None:
        first = await client.put("/v2/service_instances/inst-1", json=PROVISION_BODY)
        second = await client.put("/v2/service_instances/inst-1", json=PROVISION_BODY)

        assert first.status_code == 201
        assert first.json() == {}
        assert second.status_code == 200
        assert "cf-inst-1" in fake_vault.policies

    @pytest.mark.asyncio
    async def test_conflicting_org(self, provisioned: httpx.AsyncClient) -> None:
        resp = await provisioned.put(
            "/v2/service_instances/inst-1", json={**PROVISION_BODY, "organization_guid": "org-2"}
        )
        assert resp.status_code == 409
        assert "already exists" in resp.json()["description"]

    @pytest.mark.asyncio
    async def test_missing_org(self, client: httpx.AsyncClient) -> None:
        body = {k: v for k, v in PROVISION_BODY.items() if k != "organization_guid"}
        resp = await client.put("/v2/service_instances/inst-1", json=body)

        assert resp.status_code == 400
        assert "organization_guid" in resp.json()["description"]

    @pytest.mark.asyncio
    async def test_invalid_id(self, client: httpx.AsyncClient) -> None:
        resp = await client.put(
            "/v2/service_instances/inst-1", json={**PROVISION_BODY, "space_guid": "a/b"}
        )
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_vault_failure(self, client: httpx.AsyncClient, fake_vault) -> None:
        fake_vault.fail("write_policy", status_code=500, errors=["internal error\nretry later"])

        resp = await client.put("/v2/service_instances/inst-1", json=PROVISION_BODY)

        assert resp.status_code == 500
        description = resp.json()["description"]
        assert "create policy cf-inst-1" in description
        assert "\n" not in description


class TestUpdateAndLastOperation:
    @pytest.mark.asyncio
    async def test_update_is_accepted(self, provisioned: httpx.AsyncClient) -> None:
        resp = await provisioned.patch("/v2/service_instances/inst-1", json={"service_id": "svc"})
        assert resp.status_code == 200
        assert resp.json() == {}

    @pytest.mark.asyncio
    async def test_last_operation(self, provisioned: httpx.AsyncClient) -> None:
        resp = await provisioned.get("/v2/service_instances/inst-1/last_operation")
        assert resp.status_code == 200
        assert resp.json()["state"] == "succeeded"


class TestDeprovision:
    @pytest.mark.asyncio
    async def test_then_gone(self, provisioned: httpx.AsyncClient, fake_vault) -> None:
        first = await provisioned.delete("/v2/service_instances/inst-1")
        second = await provisioned.delete("/v2/service_instances/inst-1")

        assert first.status_code == 200
        assert first.json() == {}
        assert second.status_code == 410
        assert second.json() == {}
        assert "cf-inst-1" not in fake_vault.policies


# ---------------------------------------------------------------------------
# Service bindings
# ---------------------------------------------------------------------------


class TestBind:
    @pytest.mark.asyncio
    async def test_created_then_existing(self, provisioned: httpx.AsyncClient, settings) -> None:
        url = "/v2/service_instances/inst-1/service_bindings/bind-1"
        first = await provisioned.put(url, json={"service_id": "svc", "plan_id": "svc.shared"})
        second = await provisioned.put(url, json={"service_id": "svc", "plan_id": "svc.shared"})

        assert first.status_code == 201
        assert second.status_code == 200
        credentials = first.json()["credentials"]
        assert credentials == second.json()["credentials"]
        assert credentials["address"] == settings.vault_advertise_addr
        assert credentials["auth"]["token"].startswith("s.")
        assert credentials["backends"] == {"generic": "cf/inst-1/secret", "transit": "cf/inst-1/transit"}
        assert credentials["backends_shared"] == {"organization": "cf/org-1/secret", "space": "cf/space-1/secret"}

    @pytest.mark.asyncio
    async def test_unknown_instance(self, client: httpx.AsyncClient, fake_vault) -> None:
        resp = await client.put("/v2/service_instances/nope/service_bindings/bind-1", json={})

        assert resp.status_code == 404
        assert fake_vault.count("create_token") == 0

    @pytest.mark.asyncio
    async def test_binding_under_other_instance(self, provisioned: httpx.AsyncClient) -> None:
        await provisioned.put("/v2/service_instances/inst-2", json=PROVISION_BODY)
        await provisioned.put("/v2/service_instances/inst-1/service_bindings/bind-1", json={})

        resp = await provisioned.put("/v2/service_instances/inst-2/service_bindings/bind-1", json={})

        assert resp.status_code == 409


class TestUnbind:
    @pytest.mark.asyncio
    async def test_then_gone(self, provisioned: httpx.AsyncClient, fake_vault) -> None:
        url = "/v2/service_instances/inst-1/service_bindings/bind-1"
        bound = await provisioned.put(url, json={})
        accessor = bound.json()["credentials"]["auth"]["accessor"]

        first = await provisioned.delete(url)
        second = await provisioned.delete(url)

        assert first.status_code == 200
        assert first.json() == {}
        assert second.status_code == 410
        assert accessor not in fake_vault.tokens


# ---------------------------------------------------------------------------
# Probes and middleware
# ---------------------------------------------------------------------------


class TestProbes:
    @pytest.mark.asyncio
    async def test_health(self, client: httpx.AsyncClient) -> None:
        resp = await client.get("/health")
        assert resp.json() == {"status": "healthy", "version": __version__}

    @pytest.mark.asyncio
    async def test_ready(self, client: httpx.AsyncClient) -> None:
        resp = await client.get("/ready")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ready", "broker": "running", "vault": "ok"}

    @pytest.mark.asyncio
    async def test_ready_with_vault_down(self, client: httpx.AsyncClient, fake_vault) -> None:
        fake_vault.healthy = False
        resp = await client.get("/ready")
        assert resp.status_code == 503
        assert resp.json()["vault"] == "unavailable"


class TestBeforeStartup:
    @pytest.mark.asyncio
    async def test_requests_rejected_until_started(self, fake_vault, settings) -> None:
        app = create_app(settings, vault_client=fake_vault)
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test", auth=AUTH) as ac:
            provision = await ac.put("/v2/service_instances/inst-1", json=PROVISION_BODY)
            ready = await ac.get("/ready")

        assert provision.status_code == 503
        assert provision.json() == {"description": "broker is not running"}
        assert ready.status_code == 503
        assert fake_vault.calls == []


class TestCorrelationId:
    @pytest.mark.asyncio
    async def test_echoed(self, client: httpx.AsyncClient) -> None:
        resp = await client.get("/health", headers={"X-Correlation-ID": "abc-123"})
        assert resp.headers["x-correlation-id"] == "abc-123"

    @pytest.mark.asyncio
    async def test_generated(self, client: httpx.AsyncClient) -> None:
        resp = await client.get("/v2/catalog")
        assert len(resp.headers["x-correlation-id"]) == 36

    @pytest.mark.asyncio
    async def test_authorization_not_logged(self, client: httpx.AsyncClient, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level("INFO", logger="vault_broker.access"):
            await client.get("/v2/catalog", headers={"User-Agent": "cf-cli"})

        records = [r for r in caplog.records if r.name == "vault_broker.access"]
        assert records
        logged = records[-1].request  # type: ignore[attr-defined]
        assert logged["path"] == "/v2/catalog"
        assert logged["status_code"] == 200
        assert logged["user_agent"] == "cf-cli"
        assert "broker-secret" not in str(logged)
        assert "Basic" not in str(logged)

    @pytest.mark.asyncio
    async def test_osb_ids_logged(self, provisioned: httpx.AsyncClient, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level("INFO", logger="vault_broker.access"):
            await provisioned.put(
                "/v2/service_instances/inst-1/service_bindings/bind-1",
                json={},
                headers={"X-Broker-API-Version": "2.12"},
            )

        logged = [r for r in caplog.records if r.name == "vault_broker.access"][-1].request  # type: ignore[attr-defined]
        assert logged["instance_id"] == "inst-1"
        assert logged["binding_id"] == "bind-1"
        assert logged["api_version"] == "2.12"
        assert logged["status_code"] == 201
