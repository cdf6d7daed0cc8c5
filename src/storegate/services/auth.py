"""
Authentication service.

Orchestrates the login pipeline across the Master and tenant databases:

    CredentialStore.authenticate (Master, lockout bookkeeping)
      -> ConnectionRouter.get_connection(tenant)
      -> tenant User row by email (missing -> sync-integrity error)
      -> User.status must be active
      -> accessible stores
      -> PermissionResolver.effective_permissions
      -> Session row
      -> TokenCodec.issue

Failures are raised as typed IdentityError subclasses; the API layer
renders them.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional
from uuid import uuid4

from ..core.connection_router import ConnectionRouter
from ..core.exceptions import (
    AccountDisabledError,
    AccountLockedError,
    InvalidCredentialsError,
    SyncIntegrityError,
    TokenInvalidError,
)
from ..core.security import utcnow, verify_password_async
from ..core.token_codec import ClaimNaming, LegacyClaims, TenantClaims, TokenCodec
from ..models.tenant import User
from ..monitoring import metrics
from .credential_store import CredentialStore
from .permissions import PermissionOverrides, PermissionResolver, dump_permission_map
from .tenant_directory import StoreAccess, TenantDirectory

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UserProfile:
    id: str
    email: str
    display_name: str
    role: str
    permissions: Dict[str, List[str]]
    tenant_id: Optional[str] = None
    tenant_user_id: Optional[str] = None


@dataclass(frozen=True)
class TenantSummary:
    id: str
    name: str
    slug: str


@dataclass(frozen=True)
class AuthenticationResult:
    """Login or "who am I" view of a user."""
    user: UserProfile
    tenant: Optional[TenantSummary]
    stores: List[StoreAccess] = field(default_factory=list)
    token: Optional[str] = None
    expires_at: Optional[datetime] = None


def build_overrides(user: User, stores: List[StoreAccess]) -> PermissionOverrides:
    """Parse a user's global and store-scoped override blobs."""
    return PermissionOverrides.parse(
        user.permissions,
        {s.store_id: s.permissions_override for s in stores if s.permissions_override},
    )


class AuthService:
    """
    Login, logout and "who am I".

    All collaborators are injected; the service keeps no state of its own.
    """

    def __init__(
        self,
        router: ConnectionRouter,
        credentials: CredentialStore,
        codec: TokenCodec,
        resolver: PermissionResolver,
        session_lifetime: timedelta = timedelta(days=7),
    ):
        self._router = router
        self._credentials = credentials
        self._codec = codec
        self._resolver = resolver
        self.session_lifetime = session_lifetime

    # ========================================================================
    # Login
    # ========================================================================

    async def authenticate(
        self,
        email: str,
        password: str,
        tenant_slug: Optional[str] = None,
    ) -> AuthenticationResult:
        """
        Multi-tenant login.

        Args:
            email: Login email
            password: Plain-text password
            tenant_slug: Optional tenant disambiguation

        Returns:
            AuthenticationResult with a signed token

        Raises:
            InvalidCredentialsError: Unknown email or wrong password
            AccountLockedError: Too many failed attempts
            AccountDisabledError: Master or tenant account inactive
            TenantSuspendedError: Tenant not active
            SyncIntegrityError: Master account matches no tenant User row, or several
            TenantUnavailableError: Tenant database unreachable
        """
        login = await self._credentials.authenticate(email, password, tenant_slug)
        metrics.login_attempts_total.labels(outcome=login.outcome.value).inc()
        record = login.raise_for_outcome()

        connection = await self._router.get_connection(record.tenant_id)
        directory = TenantDirectory(connection)

        user = await directory.get_user_by_email(record.email)
        if user is None:
            metrics.login_attempts_total.labels(outcome="sync_error").inc()
            logger.error(
                f"User {record.email} exists in Master DB but not in tenant DB "
                f"(tenant={record.tenant_id}, database={record.database_name})"
            )
            raise SyncIntegrityError(
                f"Tenant user {record.id} has no User row in tenant {record.tenant_id}"
            )

        if not user.is_active():
            raise AccountDisabledError()

        stores = await directory.get_stores(user.id, user.role)
        permissions = self._resolver.effective_permissions(user.role, build_overrides(user, stores))

        session_id = str(uuid4())
        await directory.create_session(session_id, user.id, utcnow() + self.session_lifetime)

        issued = self._codec.issue(
            TenantClaims(
                user_id=user.id,
                tenant_id=record.tenant_id,
                tenant_user_id=record.id,
                session_id=session_id,
                email=user.email,
                role=user.role,
                stores=tuple(s.store_id for s in stores),
            )
        )

        logger.info(f"Login succeeded for user {user.id} (tenant={record.tenant_id})")
        return AuthenticationResult(
            user=UserProfile(
                id=user.id,
                email=user.email,
                display_name=user.display_name,
                role=user.role,
                permissions=dump_permission_map(permissions),
                tenant_id=record.tenant_id,
                tenant_user_id=record.id,
            ),
            tenant=TenantSummary(id=record.tenant_id, name=record.tenant_name, slug=record.tenant_slug),
            stores=stores,
            token=issued.token,
            expires_at=issued.expires_at,
        )

    async def authenticate_legacy(self, email: str, password: str) -> AuthenticationResult:
        """
        Single-tenant login against the legacy database's Users table.

        Issues a token without tenant claims.

        Raises:
            InvalidCredentialsError, AccountLockedError, AccountDisabledError,
            LegacyModeDisabledError, SyncIntegrityError
        """
        directory = TenantDirectory(self._router.get_legacy_connection())

        user = await directory.get_user_by_email(email)
        if user is None:
            metrics.login_attempts_total.labels(outcome="invalid_credentials").inc()
            raise InvalidCredentialsError()

        now = utcnow()
        if user.locked_until is not None and user.locked_until > now:
            metrics.login_attempts_total.labels(outcome="locked").inc()
            raise AccountLockedError(
                max(1, math.ceil((user.locked_until - now).total_seconds() / 60))
            )

        if not user.is_active():
            metrics.login_attempts_total.labels(outcome="disabled").inc()
            raise AccountDisabledError()

        if not await verify_password_async(password, user.password_hash):
            metrics.login_attempts_total.labels(outcome="invalid_credentials").inc()
            raise InvalidCredentialsError()

        metrics.login_attempts_total.labels(outcome="success").inc()
        await directory.touch_last_login(user.id)

        stores = await directory.get_stores(user.id, user.role)
        permissions = self._resolver.effective_permissions(user.role, build_overrides(user, stores))

        session_id = str(uuid4())
        await directory.create_session(session_id, user.id, utcnow() + self.session_lifetime)

        issued = self._codec.issue(
            LegacyClaims(user_id=user.id, session_id=session_id),
            naming=ClaimNaming.SHORT,
        )

        logger.info(f"Single-tenant login succeeded for user {user.id}")
        return AuthenticationResult(
            user=UserProfile(
                id=user.id,
                email=user.email,
                display_name=user.display_name,
                role=user.role,
                permissions=dump_permission_map(permissions),
            ),
            tenant=None,
            stores=stores,
            token=issued.token,
            expires_at=issued.expires_at,
        )

    # ========================================================================
    # Logout
    # ========================================================================

    async def logout(self, tenant_id: Optional[str], session_id: str) -> None:
        """
        Delete the session row. Idempotent.

        Args:
            tenant_id: Tenant of the session, None for the single-tenant database
            session_id: Session to revoke
        """
        directory = await self._directory(tenant_id)
        deleted = await directory.delete_session(session_id)
        if deleted:
            logger.info(f"Session {session_id} revoked (tenant={tenant_id})")
        else:
            logger.debug(f"Logout for unknown session {session_id} (tenant={tenant_id})")

    # ========================================================================
    # Who am I
    # ========================================================================

    async def _directory(self, tenant_id: Optional[str]) -> TenantDirectory:
        if tenant_id is None:
            return TenantDirectory(self._router.get_legacy_connection())
        return TenantDirectory(await self._router.get_connection(tenant_id))

    async def get_current_user(self, tenant_id: Optional[str], user_id: str) -> AuthenticationResult:
        """
        Fresh view of a user's role, permissions and stores.

        Does not rotate the token. tenant_id None reads the single-tenant
        database.

        Raises:
            TokenInvalidError: User gone or inactive
            SyncIntegrityError: Tenant user has no Master account
        """
        directory = await self._directory(tenant_id)

        user = await directory.get_user(user_id)
        if user is None or not user.is_active():
            raise TokenInvalidError("user missing or inactive")

        tenant = None
        tenant_user_id = None
        if tenant_id is not None:
            tenant_user_id = await self._credentials.get_tenant_user_id(tenant_id, user.email)
            if tenant_user_id is None:
                logger.error(
                    f"User {user.email} exists in tenant DB {tenant_id} but not in Master DB"
                )
                raise SyncIntegrityError(
                    f"User {user.id} of tenant {tenant_id} has no Master account"
                )
            info = directory.connection.info
            tenant = TenantSummary(id=info.tenant_id, name=info.name, slug=info.slug)

        stores = await directory.get_stores(user.id, user.role)
        permissions = self._resolver.effective_permissions(user.role, build_overrides(user, stores))

        return AuthenticationResult(
            user=UserProfile(
                id=user.id,
                email=user.email,
                display_name=user.display_name,
                role=user.role,
                permissions=dump_permission_map(permissions),
                tenant_id=tenant_id,
                tenant_user_id=tenant_user_id,
            ),
            tenant=tenant,
            stores=stores,
        )

    async def refresh(self, tenant_id: Optional[str], user_id: str) -> AuthenticationResult:
        """Re-read role and permissions after an admin change. Same token."""
        return await self.get_current_user(tenant_id, user_id)
