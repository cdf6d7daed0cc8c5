"""
FastAPI application entry point.

Builds the identity core explicitly and wires it into the app:
- ConnectionRouter (Master + per-tenant pools), initialized in lifespan
- TokenCodec, PermissionResolver, CredentialStore, AuthService
- RequestAuthenticator behind SessionAuthMiddleware

Everything lives on app.state; no module-level router or signing key.
"""

import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncGenerator, Optional

import sentry_sdk
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import make_asgi_app
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from .api.v1 import api_router
from .core.config import Settings
from .core.connection_router import ConnectionRouter
from .core.exceptions import IdentityError
from .core.token_codec import TokenCodec
from .middleware.auth import RequestAuthenticator, SessionAuthMiddleware, error_response
from .services.auth import AuthService
from .services.credential_store import CredentialStore
from .services.permissions import PermissionResolver

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Settings to use (loaded from the environment if omitted)

    Returns:
        Configured FastAPI app
    """
    settings = settings or Settings()
    configure_logging(settings)

    if settings.SENTRY_DSN:
        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            environment=settings.ENVIRONMENT,
            integrations=[FastApiIntegration()],
            traces_sample_rate=0.1,
        )
        logger.info("Sentry initialized")

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator:
        """
        Application lifespan manager.

        Startup: open the Master connection and build the services.
        Shutdown: close every tenant pool and the Master connection.
        """
        logger.info("Starting identity service...")

        router = ConnectionRouter(settings)
        await router.initialize()

        codec = TokenCodec.from_settings(settings)
        resolver = PermissionResolver()
        credentials = CredentialStore.from_settings(router, settings)

        app.state.router = router
        app.state.token_codec = codec
        app.state.permission_resolver = resolver
        app.state.credential_store = credentials
        app.state.auth_service = AuthService(
            router,
            credentials,
            codec,
            resolver,
            session_lifetime=timedelta(days=settings.SESSION_LIFETIME_DAYS),
        )
        app.state.authenticator = RequestAuthenticator(codec, router)

        logger.info("Identity service started")

        try:
            yield
        finally:
            logger.info("Shutting down identity service...")
            await router.close()
            logger.info("Identity service shutdown complete")

    app = FastAPI(
        title="Storegate Identity API",
        description="Multi-tenant authentication and connection routing",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.settings = settings

    # Added first so CORS (added last) wraps it and 401s carry CORS headers
    app.add_middleware(
        SessionAuthMiddleware,
        api_prefix=settings.API_V1_PREFIX,
        cookie_name=settings.AUTH_COOKIE_NAME,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(IdentityError)
    async def identity_error_handler(request: Request, exc: IdentityError):
        if exc.status_code >= 500:
            logger.error(f"{type(exc).__name__} on {request.url.path}: {exc}")
        return error_response(exc)

    app.include_router(api_router, prefix=settings.API_V1_PREFIX)
    app.mount("/metrics", make_asgi_app())

    @app.get("/health")
    async def health_check():
        """Liveness plus router summary."""
        router: ConnectionRouter = app.state.router
        return {
            "status": "healthy",
            "environment": settings.ENVIRONMENT,
            "tenant_pools": len(router.get_active_connections()),
        }

    @app.get("/health/ready")
    async def readiness_check():
        """
        Readiness check.

        Returns 200 only when the Master database answers.
        """
        router: ConnectionRouter = app.state.router
        try:
            async with router.get_master_connection().connect() as conn:
                await conn.execute(text("SELECT 1"))
        except (IdentityError, SQLAlchemyError, OSError) as e:
            logger.warning(f"Readiness check failed: {e}")
            return error_response(IdentityError("Master database unavailable", status_code=503, code="READY001"))

        return {"status": "ready", "router": router.get_stats()}

    @app.get("/health/live")
    async def liveness_check():
        return {"status": "alive"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "storegate.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
