"""
Authentication API endpoints.

    POST /auth/login              {email, password} -> {token, expiresAt, user, tenant, stores}
    POST /auth/logout             (bearer) -> {success}
    GET  /auth/me                 (bearer) -> {user, tenant, stores}
    POST /auth/refresh            (bearer) -> {user, tenant, stores}, same token
    GET  /auth/permissions        (bearer, optional X-Store-Id) -> effective permissions
    GET  /auth/roles/assignable   (bearer) -> roles the caller may assign

Errors are IdentityError subclasses rendered by the app-level handler.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel

from ...middleware.auth import AuthenticatedIdentity, get_identity
from ...middleware.store_context import get_resolver, require_store_context
from ...services.auth import AuthenticationResult, AuthService
from ...services.permissions import PermissionResolver, dump_permission_map

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["authentication"])


class CamelModel(BaseModel):
    """Serializes field names in camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LoginRequest(CamelModel):
    """Credentials submitted by the login form."""

    email: EmailStr = Field(description="Login email")
    password: str = Field(min_length=1, description="Plain-text password")
    tenant_slug: Optional[str] = Field(
        default=None,
        description="Tenant slug, only needed when the email exists in several tenants"
    )


class StoreOut(CamelModel):
    store_id: str
    store_name: str
    store_code: str
    role_override: Optional[str] = None


class UserOut(CamelModel):
    id: str
    tenant_user_id: Optional[str] = None
    tenant_id: Optional[str] = None
    email: str
    display_name: str
    role: str
    permissions: Dict[str, List[str]]


class TenantOut(CamelModel):
    id: str
    name: str
    slug: str


class CurrentUserResponse(CamelModel):
    """Identity view returned by /me and /refresh."""

    success: bool = True
    user: UserOut
    tenant: Optional[TenantOut] = None
    stores: List[StoreOut]


class LoginResponse(CurrentUserResponse):
    token: str
    expires_at: datetime


class LogoutResponse(CamelModel):
    success: bool


class PermissionsResponse(CamelModel):
    role: str
    store_id: Optional[str] = None
    permissions: Dict[str, List[str]]


class AssignableRolesResponse(CamelModel):
    roles: List[str]


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _view(result: AuthenticationResult) -> Dict:
    return {
        "user": UserOut(
            id=result.user.id,
            tenant_user_id=result.user.tenant_user_id,
            tenant_id=result.user.tenant_id,
            email=result.user.email,
            display_name=result.user.display_name,
            role=result.user.role,
            permissions=result.user.permissions,
        ),
        "tenant": (
            TenantOut(id=result.tenant.id, name=result.tenant.name, slug=result.tenant.slug)
            if result.tenant else None
        ),
        "stores": [
            StoreOut(
                store_id=s.store_id,
                store_name=s.store_name,
                store_code=s.store_code,
                role_override=s.role_override,
            )
            for s in result.stores
        ],
    }


@router.post("/login", response_model=LoginResponse)
async def login(
    body: LoginRequest,
    request: Request,
    auth_service: AuthService = Depends(get_auth_service),
) -> LoginResponse:
    """
    Authenticate email/password and issue a session token.

    In single-tenant deployments (AUTH_MODE=single_tenant) the legacy
    database is used and the token carries no tenant claims.
    """
    settings = request.app.state.settings

    if settings.AUTH_MODE == "single_tenant":
        result = await auth_service.authenticate_legacy(body.email, body.password)
    else:
        result = await auth_service.authenticate(body.email, body.password, body.tenant_slug)

    return LoginResponse(token=result.token, expires_at=result.expires_at, **_view(result))


@router.post("/logout", response_model=LogoutResponse)
async def logout(
    identity: AuthenticatedIdentity = Depends(get_identity),
    auth_service: AuthService = Depends(get_auth_service),
) -> LogoutResponse:
    """Revoke the caller's session. The token stops working immediately."""
    await auth_service.logout(identity.tenant_id, identity.session_id)
    return LogoutResponse(success=True)


@router.get("/me", response_model=CurrentUserResponse)
async def me(
    identity: AuthenticatedIdentity = Depends(get_identity),
    auth_service: AuthService = Depends(get_auth_service),
) -> CurrentUserResponse:
    """Current user, tenant and stores."""
    result = await auth_service.get_current_user(identity.tenant_id, identity.user_id)
    return CurrentUserResponse(**_view(result))


@router.post("/refresh", response_model=CurrentUserResponse)
async def refresh(
    identity: AuthenticatedIdentity = Depends(get_identity),
    auth_service: AuthService = Depends(get_auth_service),
) -> CurrentUserResponse:
    """Re-read role and permissions (e.g. after an admin change) without a new token."""
    result = await auth_service.refresh(identity.tenant_id, identity.user_id)
    return CurrentUserResponse(**_view(result))


@router.get("/permissions", response_model=PermissionsResponse)
async def permissions(
    identity: AuthenticatedIdentity = Depends(get_identity),
    resolver: PermissionResolver = Depends(get_resolver),
    store_id: Optional[str] = Depends(require_store_context),
) -> PermissionsResponse:
    """Effective permissions of the caller, in the requested store if any."""
    role = identity.role_in_store(store_id)
    effective = resolver.effective_permissions(role, identity.overrides, store_id)
    return PermissionsResponse(role=role, store_id=store_id, permissions=dump_permission_map(effective))


@router.get("/roles/assignable", response_model=AssignableRolesResponse)
async def assignable_roles(
    identity: AuthenticatedIdentity = Depends(get_identity),
    resolver: PermissionResolver = Depends(get_resolver),
) -> AssignableRolesResponse:
    """Roles the caller may give to the users they manage."""
    return AssignableRolesResponse(roles=[r.value for r in resolver.assignable_roles(identity.role)])
