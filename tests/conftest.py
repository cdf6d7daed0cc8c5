"""
Pytest configuration and fixtures.

Provides shared fixtures for all tests including:
- Settings pointing at temp-file SQLite databases
- Seeder for Master / tenant / single-tenant data
- Initialized ConnectionRouter and the services built on it
- HTTP client running the full app lifespan
"""

from datetime import timedelta
from typing import AsyncGenerator

import httpx
import pytest

from storegate.core.config import Settings
from storegate.core.connection_router import ConnectionRouter
from storegate.core.token_codec import TokenCodec
from storegate.main import create_app
from storegate.services.auth import AuthService
from storegate.services.credential_store import CredentialStore
from storegate.services.permissions import PermissionResolver

from factories import Seeder, make_settings


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
async def seeder(settings) -> AsyncGenerator[Seeder, None]:
    """Seeder with the Master and single-tenant schemas already created."""
    seeder = Seeder(settings)
    await seeder.master()
    await seeder.tenant_engine(None)
    yield seeder
    await seeder.dispose()


@pytest.fixture
async def router(settings, seeder) -> AsyncGenerator[ConnectionRouter, None]:
    router = ConnectionRouter(settings)
    await router.initialize()
    yield router
    await router.close()


@pytest.fixture
def codec(settings) -> TokenCodec:
    return TokenCodec.from_settings(settings)


@pytest.fixture
def resolver() -> PermissionResolver:
    return PermissionResolver()


@pytest.fixture
def credentials(router, settings) -> CredentialStore:
    return CredentialStore.from_settings(router, settings)


@pytest.fixture
def auth_service(router, credentials, codec, resolver, settings) -> AuthService:
    return AuthService(
        router,
        credentials,
        codec,
        resolver,
        session_lifetime=timedelta(days=settings.SESSION_LIFETIME_DAYS),
    )


@pytest.fixture
async def app(settings, seeder):
    """Application with its lifespan running (router initialized)."""
    app = create_app(settings)
    async with app.router.lifespan_context(app):
        yield app


@pytest.fixture
async def client(app) -> AsyncGenerator[httpx.AsyncClient, None]:
    """Async HTTP client talking to the app in-process."""
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
