"""
Cross-tenant isolation tests.

The same email registered in two tenants must resolve to two separate
identities, and a session issued for one tenant database is never
honored against another.
"""

import pytest

from storegate.core.exceptions import InvalidCredentialsError, TokenInvalidError
from storegate.core.token_codec import TenantClaims
from storegate.middleware.auth import RequestAuthenticator


@pytest.fixture
async def two_tenants(seeder):
    acme = await seeder.add_tenant("acme")
    globex = await seeder.add_tenant("globex")
    in_acme = await seeder.add_account(acme, "shared@example.com", password="acme-password", role="owner")
    in_globex = await seeder.add_account(globex, "shared@example.com", password="globex-password")
    return acme, globex, in_acme, in_globex


@pytest.fixture
def authenticator(codec, router):
    return RequestAuthenticator(codec, router)


class TestSameEmailInTwoTenants:
    async def test_slug_routes_to_each_tenant(self, auth_service, codec, two_tenants):
        acme, globex, in_acme, in_globex = two_tenants

        first = await auth_service.authenticate("shared@example.com", "acme-password", tenant_slug="acme")
        second = await auth_service.authenticate("shared@example.com", "globex-password", tenant_slug="globex")

        assert codec.verify(first.token).tenant_id == acme.id
        assert codec.verify(second.token).tenant_id == globex.id
        assert first.user.id == in_acme.user.id
        assert second.user.id == in_globex.user.id
        assert first.user.role == "owner"
        assert second.user.role == "salesperson"

    async def test_password_of_other_tenant_rejected(self, auth_service, two_tenants):
        with pytest.raises(InvalidCredentialsError):
            await auth_service.authenticate("shared@example.com", "globex-password", tenant_slug="acme")

    async def test_requests_see_only_their_tenant(self, auth_service, authenticator, two_tenants):
        acme, globex, _, _ = two_tenants
        first = await auth_service.authenticate("shared@example.com", "acme-password", tenant_slug="acme")
        second = await auth_service.authenticate("shared@example.com", "globex-password", tenant_slug="globex")

        acme_ctx = await authenticator.authenticate(first.token)
        globex_ctx = await authenticator.authenticate(second.token)

        assert acme_ctx.connection.tenant_id == acme.id
        assert globex_ctx.connection.tenant_id == globex.id
        assert acme_ctx.connection.engine is not globex_ctx.connection.engine

    async def test_logout_in_one_tenant_leaves_the_other(self, auth_service, authenticator, codec, two_tenants):
        acme, _, _, _ = two_tenants
        first = await auth_service.authenticate("shared@example.com", "acme-password", tenant_slug="acme")
        second = await auth_service.authenticate("shared@example.com", "globex-password", tenant_slug="globex")

        await auth_service.logout(acme.id, codec.verify(first.token).session_id)

        with pytest.raises(TokenInvalidError):
            await authenticator.authenticate(first.token)
        assert (await authenticator.authenticate(second.token)).identity.email == "shared@example.com"


class TestSessionBoundToTenantDatabase:
    async def test_session_replayed_against_other_tenant(self, auth_service, authenticator, codec, two_tenants):
        """A validly signed token pointing a real session at the wrong tenant fails."""
        acme, globex, in_acme, _ = two_tenants
        result = await auth_service.authenticate("shared@example.com", "acme-password", tenant_slug="acme")
        claims = codec.verify(result.token)

        redirected = codec.sign(TenantClaims(
            user_id=claims.user_id,
            tenant_id=globex.id,
            tenant_user_id=claims.tenant_user_id,
            session_id=claims.session_id,
        ))

        with pytest.raises(TokenInvalidError):
            await authenticator.authenticate(redirected)

    async def test_user_id_swapped_within_tenant(self, auth_service, authenticator, codec, seeder, two_tenants):
        acme, _, _, _ = two_tenants
        victim = await seeder.add_account(acme, "victim@example.com")
        result = await auth_service.authenticate("shared@example.com", "acme-password", tenant_slug="acme")
        claims = codec.verify(result.token)

        swapped = codec.sign(TenantClaims(
            user_id=victim.user.id,
            tenant_id=acme.id,
            tenant_user_id=victim.tenant_user.id,
            session_id=claims.session_id,
        ))

        with pytest.raises(TokenInvalidError):
            await authenticator.authenticate(swapped)
