"""
Tests for the request dependencies (permissions, tenant connection) on real routes.
"""

from typing import Optional

import httpx
import pytest
from fastapi import APIRouter, Depends
from sqlalchemy import func, select

from storegate.core.connection_router import LEGACY_TENANT_KEY, TenantConnection
from storegate.main import create_app
from storegate.middleware.auth import get_tenant_connection
from storegate.middleware.store_context import require_permission
from storegate.models import User
from storegate.services.permissions import Action, Module

from factories import DEFAULT_PASSWORD

sample = APIRouter(prefix="/api/v1/sample")


@sample.delete("/products")
async def delete_products(
    store_id: Optional[str] = Depends(require_permission(Module.PRODUCTS, Action.DELETE, store_scoped=True)),
):
    return {"storeId": store_id}


@sample.get("/settings")
async def view_settings(_: None = Depends(require_permission(Module.SETTINGS, Action.VIEW))):
    return {"ok": True}


@sample.post("/users")
async def add_user(
    store_id: Optional[str] = Depends(require_permission(Module.USERS, Action.ADD, store_scoped=True)),
):
    return {"storeId": store_id}


@sample.get("/users/count")
async def count_users(connection: TenantConnection = Depends(get_tenant_connection)):
    async with connection.session() as session:
        total = (await session.execute(select(func.count()).select_from(User))).scalar_one()
    return {"tenantId": connection.tenant_id, "users": total}


@pytest.fixture
async def client(settings, seeder):
    app = create_app(settings)
    app.include_router(sample)
    async with app.router.lifespan_context(app):
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            yield client


@pytest.fixture
async def tenant(seeder):
    return await seeder.add_tenant("acme")


@pytest.fixture
async def setup(seeder, tenant):
    downtown = await seeder.add_store(tenant, "Downtown")
    airport = await seeder.add_store(tenant, "Airport")

    clerk = await seeder.add_account(tenant, "clerk@example.com", role="salesperson")
    await seeder.assign(tenant, clerk.user, downtown, role_override="store_manager")
    await seeder.assign(tenant, clerk.user, airport, permissions={"products": ["view", "delete"]})

    await seeder.add_account(tenant, "manager@example.com", role="company_manager")
    await seeder.add_account(tenant, "owner@example.com", role="owner")
    return downtown, airport


async def token_for(client, email):
    response = await client.post(
        "/api/v1/auth/login",
        json={"email": email, "password": DEFAULT_PASSWORD},
    )
    return {"Authorization": f"Bearer {response.json()['token']}"}


class TestStoreScopedPermission:
    async def test_denied_by_role_default(self, client, setup):
        downtown, _ = setup
        headers = await token_for(client, "clerk@example.com")

        response = await client.delete("/api/v1/sample/products", headers={**headers, "X-Store-Id": downtown.id})

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "PERM001"

    async def test_allowed_by_store_override(self, client, setup):
        _, airport = setup
        headers = await token_for(client, "clerk@example.com")

        response = await client.delete("/api/v1/sample/products", headers={**headers, "X-Store-Id": airport.id})

        assert response.status_code == 200
        assert response.json() == {"storeId": airport.id}

    async def test_company_manager_without_store(self, client, setup):
        headers = await token_for(client, "manager@example.com")

        response = await client.delete("/api/v1/sample/products", headers=headers)

        assert response.status_code == 200
        assert response.json() == {"storeId": None}


class TestGlobalPermission:
    async def test_salesperson_has_no_settings(self, client, setup):
        headers = await token_for(client, "clerk@example.com")

        response = await client.get("/api/v1/sample/settings", headers=headers)

        assert response.status_code == 403

    async def test_owner_allowed(self, client, setup):
        headers = await token_for(client, "owner@example.com")

        response = await client.get("/api/v1/sample/settings", headers=headers)

        assert response.status_code == 200


class TestUserManagement:
    async def test_store_role_override_cannot_grant_owner(self, client, seeder, tenant, setup):
        kiosk = await seeder.add_store(tenant, "Kiosk")
        clerk = await seeder.add_account(tenant, "kiosk@example.com", role="salesperson")
        await seeder.assign(tenant, clerk.user, kiosk, role_override="owner")
        headers = await token_for(client, "kiosk@example.com")

        response = await client.post("/api/v1/sample/users", headers={**headers, "X-Store-Id": kiosk.id})

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "PERM001"

    async def test_store_permissions_report_base_role(self, client, seeder, tenant, setup):
        kiosk = await seeder.add_store(tenant, "Kiosk")
        clerk = await seeder.add_account(tenant, "kiosk@example.com", role="salesperson")
        await seeder.assign(tenant, clerk.user, kiosk, role_override="owner")
        headers = await token_for(client, "kiosk@example.com")

        response = await client.get("/api/v1/auth/permissions", headers={**headers, "X-Store-Id": kiosk.id})

        assert response.json()["role"] == "salesperson"
        assert "users" not in response.json()["permissions"]

    async def test_owner_may_add_users(self, client, setup):
        headers = await token_for(client, "owner@example.com")

        response = await client.post("/api/v1/sample/users", headers=headers)

        assert response.status_code == 200


class TestTenantConnectionDependency:
    async def test_connection_is_callers_tenant(self, client, seeder, tenant, setup):
        globex = await seeder.add_tenant("globex")
        await seeder.add_account(globex, "solo@example.com")

        acme_headers = await token_for(client, "owner@example.com")
        globex_headers = await token_for(client, "solo@example.com")

        acme_response = await client.get("/api/v1/sample/users/count", headers=acme_headers)
        globex_response = await client.get("/api/v1/sample/users/count", headers=globex_headers)

        assert acme_response.json() == {"tenantId": tenant.id, "users": 3}
        assert globex_response.json() == {"tenantId": globex.id, "users": 1}

    async def test_legacy_token_gets_single_tenant_database(self, client, auth_service, seeder):
        await seeder.add_account(None, "solo@example.com")
        result = await auth_service.authenticate_legacy("solo@example.com", DEFAULT_PASSWORD)

        response = await client.get(
            "/api/v1/sample/users/count",
            headers={"Authorization": f"Bearer {result.token}"},
        )

        assert response.json() == {"tenantId": LEGACY_TENANT_KEY, "users": 1}

    async def test_requires_authentication(self, client):
        response = await client.get("/api/v1/sample/users/count")

        assert response.status_code == 401
