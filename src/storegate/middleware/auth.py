"""
Request authentication.

Every protected request goes through RequestAuthenticator:

1. Extract the token (Authorization: Bearer, or the auth cookie)
2. TokenCodec.verify_session -> TenantClaims | LegacyClaims
3. Pick the connection strategy for that claim variant (once)
4. Session row must exist, belong to the user and be unexpired
5. User row reloaded (catches deactivation since login)
6. Identity + tenant connection attached to request.state

Any token or session failure is a uniform 401 so callers cannot tell
the sub-cases apart.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple, Type

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from ..core.connection_router import ConnectionRouter, TenantConnection
from ..core.exceptions import (
    IdentityError,
    LegacyModeDisabledError,
    TenantNotFoundError,
    TokenInvalidError,
)
from ..core.token_codec import LegacyClaims, SessionClaims, TenantClaims, TokenCodec
from ..monitoring import metrics
from ..services.auth import build_overrides
from ..services.permissions import ALL_STORE_ROLES, PermissionOverrides, Role
from ..services.tenant_directory import StoreAccess, TenantDirectory

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthenticatedIdentity:
    """Who is calling, as of this request."""
    user_id: str
    email: str
    display_name: str
    role: str
    session_id: str
    tenant_id: Optional[str]
    tenant_user_id: Optional[str]
    stores: Tuple[StoreAccess, ...]
    overrides: PermissionOverrides

    @property
    def is_legacy(self) -> bool:
        return self.tenant_id is None

    @property
    def store_ids(self) -> Tuple[str, ...]:
        return tuple(s.store_id for s in self.stores)

    def role_in_store(self, store_id: Optional[str]) -> str:
        """
        Role inside a store, honoring a store-level role override.

        Only store-level roles can be granted per store; an override
        naming owner or company_manager is ignored.
        """
        if store_id is not None:
            for store in self.stores:
                if store.store_id != store_id:
                    continue
                override = Role.parse(store.role_override)
                if override is not None and override not in ALL_STORE_ROLES:
                    return override.value
        return self.role


@dataclass(frozen=True)
class AuthContext:
    identity: AuthenticatedIdentity
    connection: TenantConnection


# ============================================================================
# Connection strategies (one per claim variant)
# ============================================================================

class TenantSessionStrategy:
    """Multi-tenant token: route to the tenant's own database."""

    def __init__(self, router: ConnectionRouter):
        self._router = router

    async def connect(self, claims: TenantClaims) -> TenantConnection:
        return await self._router.get_connection(claims.tenant_id)

    @staticmethod
    def tenant_of(claims: TenantClaims) -> Tuple[Optional[str], Optional[str]]:
        return claims.tenant_id, claims.tenant_user_id or None


class LegacySessionStrategy:
    """Single-tenant token: the one configured legacy database."""

    def __init__(self, router: ConnectionRouter):
        self._router = router

    async def connect(self, claims: LegacyClaims) -> TenantConnection:
        return self._router.get_legacy_connection()

    @staticmethod
    def tenant_of(claims: LegacyClaims) -> Tuple[Optional[str], Optional[str]]:
        return None, None


class RequestAuthenticator:
    """
    Validates a session token against the server-side session store.

    The database round trip per request is deliberate: logout and
    deactivation must take effect before the token expires.
    """

    def __init__(self, codec: TokenCodec, router: ConnectionRouter):
        self._codec = codec
        self._strategies: Dict[Type[SessionClaims], object] = {
            TenantClaims: TenantSessionStrategy(router),
            LegacyClaims: LegacySessionStrategy(router),
        }

    @staticmethod
    def extract_token(authorization: Optional[str], cookie_token: Optional[str] = None) -> Optional[str]:
        """
        Token from an Authorization header, falling back to the cookie.

        Returns None when neither carries a usable token.
        """
        if authorization:
            parts = authorization.split()
            if len(parts) == 2 and parts[0].lower() == "bearer" and parts[1]:
                return parts[1]
            return None
        return cookie_token or None

    async def authenticate(self, token: Optional[str]) -> AuthContext:
        """
        Resolve a token to an identity and tenant connection.

        Raises:
            TokenInvalidError: Missing/invalid token, revoked session, gone or inactive user
            TenantSuspendedError: Tenant no longer active
            TenantUnavailableError, RouterNotInitializedError: Infrastructure failures
        """
        if not token:
            metrics.request_auth_failures_total.labels(reason="missing_token").inc()
            raise TokenInvalidError("missing token")

        claims = self._codec.verify_session(token)
        if claims is None:
            metrics.request_auth_failures_total.labels(reason="invalid_token").inc()
            raise TokenInvalidError("invalid token")

        strategy = self._strategies[type(claims)]
        try:
            connection = await strategy.connect(claims)
        except (TenantNotFoundError, LegacyModeDisabledError) as e:
            metrics.request_auth_failures_total.labels(reason="routing").inc()
            logger.warning(f"Token references unroutable database: {e}")
            raise TokenInvalidError("unroutable token") from e

        directory = TenantDirectory(connection)
        if not await directory.session_is_valid(claims.session_id, claims.user_id):
            metrics.request_auth_failures_total.labels(reason="session_revoked").inc()
            raise TokenInvalidError("session revoked or expired")

        user = await directory.get_user(claims.user_id)
        if user is None or not user.is_active():
            metrics.request_auth_failures_total.labels(reason="user_inactive").inc()
            raise TokenInvalidError("user missing or inactive")

        stores = await directory.get_stores(user.id, user.role)
        tenant_id, tenant_user_id = strategy.tenant_of(claims)

        identity = AuthenticatedIdentity(
            user_id=user.id,
            email=user.email,
            display_name=user.display_name,
            role=user.role,
            session_id=claims.session_id,
            tenant_id=tenant_id,
            tenant_user_id=tenant_user_id,
            stores=tuple(stores),
            overrides=build_overrides(user, stores),
        )
        return AuthContext(identity=identity, connection=connection)


# ============================================================================
# Middleware
# ============================================================================

def error_response(error: IdentityError) -> JSONResponse:
    """Render an IdentityError as the standard error body."""
    headers = {"WWW-Authenticate": "Bearer"} if error.status_code == 401 else None
    return JSONResponse(
        status_code=error.status_code,
        content={"error": error.to_dict()},
        headers=headers,
    )


class SessionAuthMiddleware(BaseHTTPMiddleware):
    """
    Session authentication middleware.

    Features:
    - Extracts the token from the Authorization header or auth cookie
    - Validates it through the app's RequestAuthenticator
    - Attaches identity and tenant connection to request.state
    - Lets public endpoints (health, docs, login) through
    """

    PUBLIC_PATHS = {
        "/",
        "/health",
        "/health/ready",
        "/health/live",
        "/docs",
        "/redoc",
        "/openapi.json",
    }

    PUBLIC_PREFIXES = ("/metrics",)

    def __init__(self, app, api_prefix: str = "/api/v1", cookie_name: str = "token"):
        """
        Initialize session auth middleware.

        Args:
            app: ASGI application
            api_prefix: Prefix the auth router is mounted under
            cookie_name: Cookie that may carry the token
        """
        super().__init__(app)
        self.cookie_name = cookie_name
        self.public_paths = self.PUBLIC_PATHS | {f"{api_prefix}/auth/login"}
        logger.info("Session auth middleware initialized")

    def is_public(self, path: str) -> bool:
        return path in self.public_paths or path.startswith(self.PUBLIC_PREFIXES)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.method == "OPTIONS" or self.is_public(request.url.path):
            return await call_next(request)

        authenticator: RequestAuthenticator = request.app.state.authenticator
        token = authenticator.extract_token(
            request.headers.get("Authorization"),
            request.cookies.get(self.cookie_name),
        )

        try:
            context = await authenticator.authenticate(token)
        except TokenInvalidError as e:
            logger.debug(f"Request rejected on {request.url.path}: {e.reason}")
            return error_response(e)
        except IdentityError as e:
            if e.status_code >= 500:
                logger.error(f"Authentication infrastructure failure: {e}")
            return error_response(e)

        request.state.identity = context.identity
        request.state.tenant_connection = context.connection
        request.state.user_id = context.identity.user_id
        request.state.tenant_id = context.identity.tenant_id

        return await call_next(request)


# ============================================================================
# Dependencies
# ============================================================================

def get_identity(request: Request) -> AuthenticatedIdentity:
    """
    FastAPI dependency: the authenticated identity.

    Raises:
        TokenInvalidError: If the request was not authenticated
    """
    identity = getattr(request.state, "identity", None)
    if identity is None:
        raise TokenInvalidError("request not authenticated")
    return identity


def get_tenant_connection(request: Request) -> TenantConnection:
    """FastAPI dependency: the caller's tenant database connection."""
    connection = getattr(request.state, "tenant_connection", None)
    if connection is None:
        raise TokenInvalidError("request not authenticated")
    return connection
