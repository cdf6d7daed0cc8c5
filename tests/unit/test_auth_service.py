"""
Unit tests for AuthService.

Runs the full login pipeline against temp-file Master and tenant
databases.
"""

import json
from datetime import timedelta

import pytest

from storegate.core.connection_router import ConnectionRouter
from storegate.core.exceptions import (
    AccountDisabledError,
    AccountLockedError,
    InvalidCredentialsError,
    LegacyModeDisabledError,
    SyncIntegrityError,
    TenantSuspendedError,
    TokenInvalidError,
)
from storegate.core.token_codec import LegacyClaims, TenantClaims, TokenCodec
from storegate.services.auth import AuthService
from storegate.services.credential_store import CredentialStore
from storegate.services.permissions import PermissionResolver

from factories import DEFAULT_PASSWORD, make_settings


@pytest.fixture
async def tenant(seeder):
    return await seeder.add_tenant("acme")


@pytest.fixture
async def stores(seeder, tenant):
    downtown = await seeder.add_store(tenant, "Downtown")
    airport = await seeder.add_store(tenant, "Airport")
    await seeder.add_store(tenant, "Closed", status="inactive")
    return downtown, airport


class TestAuthenticate:
    async def test_login_scenario(self, auth_service, codec, seeder, tenant, stores):
        downtown, _ = stores
        account = await seeder.add_account(tenant, "alice@example.com", role="store_manager")
        await seeder.assign(tenant, account.user, downtown)

        result = await auth_service.authenticate("alice@example.com", DEFAULT_PASSWORD)

        assert result.tenant.id == tenant.id
        assert result.tenant.slug == "acme"
        assert [s.store_id for s in result.stores] == [downtown.id]
        assert result.user.role == "store_manager"
        assert result.user.tenant_user_id == account.tenant_user.id
        assert result.user.permissions["products"] == ["view", "add", "edit"]

        claims = codec.verify(result.token)
        assert isinstance(claims, TenantClaims)
        assert claims.tenant_id == tenant.id
        assert claims.user_id == account.user.id
        assert claims.tenant_user_id == account.tenant_user.id
        assert claims.stores == (downtown.id,)
        assert claims.session_id in await seeder.session_ids(tenant, account.user.id)

    async def test_owner_gets_every_active_store(self, auth_service, seeder, tenant, stores):
        await seeder.add_account(tenant, "owner@example.com", role="owner")

        result = await auth_service.authenticate("owner@example.com", DEFAULT_PASSWORD)

        assert [s.store_name for s in result.stores] == ["Airport", "Downtown"]

    async def test_overrides_reflected_in_permissions(self, auth_service, seeder, tenant):
        await seeder.add_account(tenant, "bob@example.com", permissions={"products": []})

        result = await auth_service.authenticate("bob@example.com", DEFAULT_PASSWORD)

        assert result.user.permissions["products"] == []
        assert result.user.permissions["sales"] == ["view", "add"]

    async def test_wrong_password(self, auth_service, seeder, tenant):
        await seeder.add_account(tenant, "alice@example.com")

        with pytest.raises(InvalidCredentialsError) as exc_info:
            await auth_service.authenticate("alice@example.com", "nope")

        assert exc_info.value.attempts_remaining == 4

    async def test_locked(self, auth_service, seeder, tenant):
        await seeder.add_account(tenant, "alice@example.com")
        for _ in range(4):
            with pytest.raises(InvalidCredentialsError):
                await auth_service.authenticate("alice@example.com", "nope")

        with pytest.raises(AccountLockedError):
            await auth_service.authenticate("alice@example.com", "nope")
        with pytest.raises(AccountLockedError):
            await auth_service.authenticate("alice@example.com", DEFAULT_PASSWORD)

    async def test_tenant_suspended(self, auth_service, seeder):
        frozen = await seeder.add_tenant("frozen", status="suspended")
        await seeder.add_account(frozen, "alice@example.com")

        with pytest.raises(TenantSuspendedError):
            await auth_service.authenticate("alice@example.com", DEFAULT_PASSWORD)

    async def test_missing_tenant_user_row(self, auth_service, seeder, tenant):
        await seeder.add_account(tenant, "ghost@example.com", in_tenant=False)

        with pytest.raises(SyncIntegrityError) as exc_info:
            await auth_service.authenticate("ghost@example.com", DEFAULT_PASSWORD)

        body = exc_info.value.to_dict()
        assert exc_info.value.status_code == 500
        assert "tenant" not in body["message"].lower()

    async def test_email_case_variants_in_tenant_db(self, auth_service, seeder, tenant):
        await seeder.add_account(tenant, "bob@example.com")
        await seeder.add_account(tenant, "Bob@example.com", in_master=False)

        with pytest.raises(SyncIntegrityError) as exc_info:
            await auth_service.authenticate("bob@example.com", DEFAULT_PASSWORD)

        assert exc_info.value.status_code == 500
        assert "Bob@example.com" not in exc_info.value.to_dict()["message"]

    async def test_tenant_user_inactive(self, auth_service, seeder, tenant):
        await seeder.add_account(tenant, "alice@example.com", status="inactive")

        with pytest.raises(AccountDisabledError):
            await auth_service.authenticate("alice@example.com", DEFAULT_PASSWORD)


class TestLegacyLogin:
    async def test_legacy_login(self, auth_service, codec, seeder):
        account = await seeder.add_account(None, "solo@example.com", role="company_manager")
        store = await seeder.add_store(None, "Main")

        result = await auth_service.authenticate_legacy("solo@example.com", DEFAULT_PASSWORD)

        assert result.tenant is None
        assert [s.store_id for s in result.stores] == [store.id]
        assert codec.verify(result.token) is None
        assert codec.verify_session(result.token) == LegacyClaims(
            user_id=account.user.id,
            session_id=(await seeder.session_ids(None, account.user.id))[0],
        )

    async def test_legacy_wrong_password(self, auth_service, seeder):
        await seeder.add_account(None, "solo@example.com")

        with pytest.raises(InvalidCredentialsError):
            await auth_service.authenticate_legacy("solo@example.com", "nope")

    async def test_legacy_email_case_variants(self, auth_service, seeder):
        await seeder.add_account(None, "solo@example.com")
        await seeder.add_account(None, "SOLO@example.com")

        with pytest.raises(SyncIntegrityError):
            await auth_service.authenticate_legacy("solo@example.com", DEFAULT_PASSWORD)

    async def test_legacy_disabled(self, tmp_path, seeder):
        settings = make_settings(tmp_path, LEGACY_DATABASE_URL=None)
        router = ConnectionRouter(settings)
        await router.initialize()
        try:
            service = AuthService(
                router,
                CredentialStore(router),
                TokenCodec.from_settings(settings),
                PermissionResolver(),
                session_lifetime=timedelta(days=1),
            )
            with pytest.raises(LegacyModeDisabledError):
                await service.authenticate_legacy("solo@example.com", DEFAULT_PASSWORD)
        finally:
            await router.close()


class TestLogout:
    async def test_logout_deletes_session(self, auth_service, codec, seeder, tenant):
        account = await seeder.add_account(tenant, "alice@example.com")
        result = await auth_service.authenticate("alice@example.com", DEFAULT_PASSWORD)
        claims = codec.verify(result.token)

        await auth_service.logout(tenant.id, claims.session_id)

        assert await seeder.session_ids(tenant, account.user.id) == []

    async def test_logout_is_idempotent(self, auth_service, codec, seeder, tenant):
        await seeder.add_account(tenant, "alice@example.com")
        result = await auth_service.authenticate("alice@example.com", DEFAULT_PASSWORD)
        claims = codec.verify(result.token)

        await auth_service.logout(tenant.id, claims.session_id)
        await auth_service.logout(tenant.id, claims.session_id)
        await auth_service.logout(tenant.id, "never-existed")

    async def test_logout_keeps_other_sessions(self, auth_service, codec, seeder, tenant):
        account = await seeder.add_account(tenant, "alice@example.com")
        first = await auth_service.authenticate("alice@example.com", DEFAULT_PASSWORD)
        second = await auth_service.authenticate("alice@example.com", DEFAULT_PASSWORD)

        await auth_service.logout(tenant.id, codec.verify(first.token).session_id)

        assert await seeder.session_ids(tenant, account.user.id) == [codec.verify(second.token).session_id]


class TestCurrentUser:
    async def test_reflects_role_change(self, auth_service, seeder, tenant):
        account = await seeder.add_account(tenant, "alice@example.com", role="salesperson")
        await auth_service.authenticate("alice@example.com", DEFAULT_PASSWORD)

        await seeder.update_user(tenant, account.user.id, role="company_manager")
        current = await auth_service.get_current_user(tenant.id, account.user.id)

        assert current.user.role == "company_manager"
        assert current.user.permissions["users"] == ["view"]
        assert current.token is None
        assert current.tenant.slug == "acme"

    async def test_refresh_reflects_permission_change(self, auth_service, seeder, tenant):
        account = await seeder.add_account(tenant, "alice@example.com")

        await seeder.update_user(tenant, account.user.id, permissions=json.dumps({"pos": []}))
        refreshed = await auth_service.refresh(tenant.id, account.user.id)

        assert refreshed.user.permissions["pos"] == []

    async def test_inactive_user(self, auth_service, seeder, tenant):
        account = await seeder.add_account(tenant, "alice@example.com")
        await seeder.update_user(tenant, account.user.id, status="inactive")

        with pytest.raises(TokenInvalidError):
            await auth_service.get_current_user(tenant.id, account.user.id)

    async def test_missing_master_account(self, auth_service, seeder, tenant):
        account = await seeder.add_account(tenant, "orphan@example.com", in_master=False)

        with pytest.raises(SyncIntegrityError):
            await auth_service.get_current_user(tenant.id, account.user.id)

    async def test_legacy_user(self, auth_service, seeder):
        account = await seeder.add_account(None, "solo@example.com")

        current = await auth_service.get_current_user(None, account.user.id)

        assert current.tenant is None
        assert current.user.tenant_user_id is None
