"""
Store context and permission dependencies.

Store-scoped endpoints read the target store from the X-Store-Id
header. owner and company_manager reach every store of their tenant
and may omit it; every other role must send it and the store must be
one of their assignments.

Usage:
    @router.get("/products")
    async def list_products(
        store_id: Optional[str] = Depends(require_permission(Module.PRODUCTS, Action.VIEW, store_scoped=True)),
    ):
        ...
"""

import logging
from typing import Callable, Optional

from fastapi import Depends, Request

from ..core.exceptions import StoreAccessDeniedError, StoreContextRequiredError
from ..services.permissions import Action, Module, PermissionResolver
from .auth import AuthenticatedIdentity, get_identity

logger = logging.getLogger(__name__)

STORE_HEADER = "X-Store-Id"


def get_resolver(request: Request) -> PermissionResolver:
    return request.app.state.permission_resolver


def require_store_context(
    request: Request,
    identity: AuthenticatedIdentity = Depends(get_identity),
    resolver: PermissionResolver = Depends(get_resolver),
) -> Optional[str]:
    """
    FastAPI dependency: validated store id for this request.

    Returns:
        The requested store id, or None for all-store roles that sent none

    Raises:
        StoreContextRequiredError: Header missing for a store-bound role
        StoreAccessDeniedError: Store outside the caller's accessible stores
    """
    store_id = (request.headers.get(STORE_HEADER) or "").strip() or None

    if store_id is None:
        if resolver.has_all_store_access(identity.role):
            return None
        raise StoreContextRequiredError()

    if not resolver.check_store_access(identity.role, identity.store_ids, store_id):
        logger.warning(
            f"User {identity.user_id} denied access to store {store_id} "
            f"(tenant={identity.tenant_id})"
        )
        raise StoreAccessDeniedError(store_id)

    request.state.store_id = store_id
    return store_id


def require_permission(
    module: Module,
    action: Action,
    store_scoped: bool = False,
) -> Callable:
    """
    Build a dependency that enforces one module action.

    With store_scoped=True the store context is validated first and the
    store's override layer (and role override) applies.
    """

    if store_scoped:
        def dependency(
            identity: AuthenticatedIdentity = Depends(get_identity),
            resolver: PermissionResolver = Depends(get_resolver),
            store_id: Optional[str] = Depends(require_store_context),
        ) -> Optional[str]:
            resolver.require(
                identity.role_in_store(store_id),
                identity.overrides,
                module,
                action,
                store_id=store_id,
            )
            return store_id
    else:
        def dependency(
            identity: AuthenticatedIdentity = Depends(get_identity),
            resolver: PermissionResolver = Depends(get_resolver),
        ) -> None:
            resolver.require(identity.role, identity.overrides, module, action)

    return dependency
