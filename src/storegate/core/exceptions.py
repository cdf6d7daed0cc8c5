"""
Exception hierarchy for the identity and routing core.

Every error carries an HTTP status and a stable error code so the API
layer can render it without inspecting the failure. Categories:

- Credential errors: bad email/password (never says which)
- Account-state errors: locked, disabled, tenant suspended
- Sync-integrity errors: Master and tenant databases disagree
- Token errors: any token or session failure, one uniform 401
- Routing errors: router not initialized, tenant database unreachable
- Authorization errors: permission, store access, role hierarchy
"""

from typing import Any, Dict, Optional


class IdentityError(Exception):
    """Base exception for all identity-core errors."""

    status_code: int = 500
    code: str = "INTERNAL"
    public_message: Optional[str] = None

    def __init__(self, message: str, status_code: int = None, code: str = None):
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code
        super().__init__(message)

    @property
    def message(self) -> str:
        return str(self)

    def to_dict(self) -> Dict[str, Any]:
        """Client-facing error body."""
        return {
            "code": self.code,
            "message": self.public_message or self.message,
        }


# ============================================================================
# Credential / account-state errors
# ============================================================================

class InvalidCredentialsError(IdentityError):
    """Email or password is wrong. Never distinguishes the two."""

    status_code = 401
    code = "AUTH001"

    def __init__(
        self,
        message: str = "Invalid email or password",
        attempts_remaining: Optional[int] = None,
    ):
        self.attempts_remaining = attempts_remaining
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        if self.attempts_remaining is not None:
            body["attemptsRemaining"] = self.attempts_remaining
        return body


class AccountLockedError(IdentityError):
    """Too many failed attempts; the account is locked for a while."""

    status_code = 423
    code = "AUTH002"

    def __init__(self, remaining_minutes: int):
        self.remaining_minutes = remaining_minutes
        super().__init__(
            f"Account is locked. Try again in {remaining_minutes} minutes"
        )

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["remainingMinutes"] = self.remaining_minutes
        return body


class AccountDisabledError(IdentityError):
    """The user account has been deactivated."""

    status_code = 401
    code = "AUTH001"

    def __init__(self, message: str = "Account is disabled"):
        super().__init__(message)


class TenantSuspendedError(IdentityError):
    """The tenant the user belongs to is not active."""

    status_code = 403
    code = "AUTH003"

    def __init__(self, message: str = "Tenant account is suspended. Please contact support"):
        super().__init__(message)


# ============================================================================
# Sync-integrity errors
# ============================================================================

class SyncIntegrityError(IdentityError):
    """
    Master and tenant databases disagree about a user.

    The message holds full detail for server logs; clients only ever
    see the redacted public message.
    """

    status_code = 500
    code = "SYNC001"
    public_message = "Your account could not be loaded. Please contact support"


# ============================================================================
# Token errors
# ============================================================================

class TokenInvalidError(IdentityError):
    """
    Token is malformed, expired, tampered with, or its session is gone.

    All sub-cases share one status and one client message.
    """

    status_code = 401
    code = "AUTH004"
    public_message = "Authentication required. Please sign in again"

    def __init__(self, reason: str = "invalid token"):
        self.reason = reason
        super().__init__(reason)


# ============================================================================
# Connection-routing errors
# ============================================================================

class RouterNotInitializedError(IdentityError):
    """Master connection requested before ConnectionRouter.initialize()."""

    status_code = 503
    code = "ROUTER001"

    def __init__(self, message: str = "TenantRouter not initialized. Call initialize() first."):
        super().__init__(message)


class TenantNotFoundError(IdentityError):
    """No tenant record exists for the requested id."""

    status_code = 404
    code = "ROUTER002"

    def __init__(self, tenant_id: str):
        self.tenant_id = tenant_id
        super().__init__(f"Tenant not found: {tenant_id}")


class TenantUnavailableError(IdentityError):
    """The tenant database could not be reached."""

    status_code = 503
    code = "ROUTER003"
    public_message = "Service temporarily unavailable"

    def __init__(self, tenant_id: str, reason: str = ""):
        self.tenant_id = tenant_id
        super().__init__(f"Tenant database unavailable for {tenant_id}: {reason}")


class LegacyModeDisabledError(IdentityError):
    """Single-tenant connection requested but no legacy database is configured."""

    status_code = 503
    code = "ROUTER004"

    def __init__(self, message: str = "Single-tenant database is not configured"):
        super().__init__(message)


# ============================================================================
# Authorization errors
# ============================================================================

class PermissionDeniedError(IdentityError):
    """Caller lacks the action on the module."""

    status_code = 403
    code = "PERM001"

    def __init__(self, module: str, action: str):
        self.module = module
        self.action = action
        super().__init__(f"You do not have permission to {action} {module}")


class StoreAccessDeniedError(IdentityError):
    """Requested store is outside the caller's accessible stores."""

    status_code = 403
    code = "PERM002"

    def __init__(self, store_id: str):
        self.store_id = store_id
        super().__init__("You do not have access to this store")


class RoleHierarchyError(IdentityError):
    """Actor's role may not manage the target role."""

    status_code = 403
    code = "PERM003"

    def __init__(self, actor_role: str, target_role: str):
        self.actor_role = actor_role
        self.target_role = target_role
        super().__init__(f"Role {actor_role} cannot manage users with role {target_role}")


class StoreContextRequiredError(IdentityError):
    """Store-scoped request without an X-Store-Id header."""

    status_code = 400
    code = "STORE001"

    def __init__(self, message: str = "Store context required. Send the X-Store-Id header"):
        super().__init__(message)
