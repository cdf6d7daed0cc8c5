"""
Permission resolution.

Merges a role's default permission table with stored overrides and
answers allow/deny questions.

Override layers, most specific first:
1. Store layer: overrides scoped to one store (UserStores.permissions_override)
2. Global layer: per-user overrides (Users.permissions)
3. Role defaults

Within a layer an entry replaces the module's action set outright. An
entry with an empty action list revokes the module. Modules a layer does
not mention fall through to the next layer.

User management is decided by role identity alone: overrides can narrow
the users module but never widen it past the role default.
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Union

from ..core.exceptions import PermissionDeniedError, RoleHierarchyError

logger = logging.getLogger(__name__)


# ============================================================================
# Closed vocabularies
# ============================================================================

class Role(str, Enum):
    """User roles, highest first."""
    OWNER = "owner"
    COMPANY_MANAGER = "company_manager"
    STORE_MANAGER = "store_manager"
    SALESPERSON = "salesperson"

    @classmethod
    def parse(cls, value: Union[str, "Role", None]) -> Optional["Role"]:
        """Role for a stored value, or None if unknown."""
        if isinstance(value, Role):
            return value
        try:
            return cls(value)
        except ValueError:
            return None


class Action(str, Enum):
    VIEW = "view"
    ADD = "add"
    EDIT = "edit"
    DELETE = "delete"


class Module(str, Enum):
    DASHBOARD = "dashboard"
    STORES = "stores"
    USERS = "users"
    PRODUCTS = "products"
    CATEGORIES = "categories"
    UNITS = "units"
    SALES = "sales"
    PURCHASES = "purchases"
    CUSTOMERS = "customers"
    SUPPLIERS = "suppliers"
    CASH_FLOW = "cash-flow"
    REPORTS_SHIFTS = "reports_shifts"
    REPORTS_INCOME_STATEMENT = "reports_income_statement"
    REPORTS_PROFIT = "reports_profit"
    REPORTS_DEBT = "reports_debt"
    REPORTS_SUPPLIER_DEBT = "reports_supplier_debt"
    REPORTS_TRANSACTIONS = "reports_transactions"
    REPORTS_SUPPLIER_DEBT_TRACKING = "reports_supplier_debt_tracking"
    REPORTS_REVENUE = "reports_revenue"
    REPORTS_SOLD_PRODUCTS = "reports_sold_products"
    REPORTS_INVENTORY = "reports_inventory"
    REPORTS_AI_SEGMENTATION = "reports_ai_segmentation"
    REPORTS_AI_BASKET_ANALYSIS = "reports_ai_basket_analysis"
    SETTINGS = "settings"
    POS = "pos"
    AI_FORECAST = "ai_forecast"


ROLE_HIERARCHY: Dict[Role, int] = {
    Role.OWNER: 4,
    Role.COMPANY_MANAGER: 3,
    Role.STORE_MANAGER: 2,
    Role.SALESPERSON: 1,
}

# Roles that implicitly see every store of their tenant
ALL_STORE_ROLES: FrozenSet[Role] = frozenset({Role.OWNER, Role.COMPANY_MANAGER})

# Modules whose actions overrides may only narrow
ROLE_GATED_MODULES: FrozenSet[Module] = frozenset({Module.USERS})

ActionSet = FrozenSet[Action]
PermissionMap = Dict[Module, ActionSet]


# ============================================================================
# Default tables
# ============================================================================

_V = frozenset({Action.VIEW})
_VA = frozenset({Action.VIEW, Action.ADD})
_VE = frozenset({Action.VIEW, Action.EDIT})
_VAE = frozenset({Action.VIEW, Action.ADD, Action.EDIT})
_ALL = frozenset(Action)

_REPORTS_ALL = {
    Module.REPORTS_SHIFTS: _V,
    Module.REPORTS_INCOME_STATEMENT: _V,
    Module.REPORTS_PROFIT: _V,
    Module.REPORTS_DEBT: _V,
    Module.REPORTS_SUPPLIER_DEBT: _V,
    Module.REPORTS_TRANSACTIONS: _V,
    Module.REPORTS_SUPPLIER_DEBT_TRACKING: _V,
    Module.REPORTS_REVENUE: _V,
    Module.REPORTS_SOLD_PRODUCTS: _V,
    Module.REPORTS_INVENTORY: _V,
    Module.REPORTS_AI_SEGMENTATION: _V,
    Module.REPORTS_AI_BASKET_ANALYSIS: _V,
}

DEFAULT_PERMISSIONS: Dict[Role, PermissionMap] = {
    Role.OWNER: {
        Module.DASHBOARD: _V,
        Module.STORES: _ALL,
        Module.USERS: _ALL,
        Module.PRODUCTS: _ALL,
        Module.CATEGORIES: _ALL,
        Module.UNITS: _ALL,
        Module.SALES: _ALL,
        Module.PURCHASES: _ALL,
        Module.CUSTOMERS: _ALL,
        Module.SUPPLIERS: _ALL,
        Module.CASH_FLOW: _ALL,
        **_REPORTS_ALL,
        Module.SETTINGS: _VE,
        Module.POS: _VA,
        Module.AI_FORECAST: _V,
    },
    Role.COMPANY_MANAGER: {
        Module.DASHBOARD: _V,
        Module.STORES: _VE,
        Module.USERS: _V,
        Module.PRODUCTS: _ALL,
        Module.CATEGORIES: _ALL,
        Module.UNITS: _ALL,
        Module.SALES: _VAE,
        Module.PURCHASES: _VAE,
        Module.CUSTOMERS: _VAE,
        Module.SUPPLIERS: _VAE,
        Module.CASH_FLOW: _VAE,
        **_REPORTS_ALL,
        Module.SETTINGS: _V,
        Module.POS: _VA,
        Module.AI_FORECAST: _V,
    },
    Role.STORE_MANAGER: {
        Module.DASHBOARD: _V,
        Module.PRODUCTS: _VAE,
        Module.CATEGORIES: _VAE,
        Module.UNITS: _VAE,
        Module.SALES: _VAE,
        Module.PURCHASES: _VAE,
        Module.CUSTOMERS: _VAE,
        Module.SUPPLIERS: _VA,
        Module.CASH_FLOW: _VA,
        Module.REPORTS_SHIFTS: _V,
        Module.REPORTS_PROFIT: _V,
        Module.REPORTS_DEBT: _V,
        Module.REPORTS_TRANSACTIONS: _V,
        Module.REPORTS_REVENUE: _V,
        Module.REPORTS_SOLD_PRODUCTS: _V,
        Module.REPORTS_INVENTORY: _V,
        Module.POS: _VA,
    },
    Role.SALESPERSON: {
        Module.DASHBOARD: _V,
        Module.PRODUCTS: _V,
        Module.SALES: _VA,
        Module.CUSTOMERS: _VA,
        Module.POS: _VA,
    },
}


# ============================================================================
# Overrides
# ============================================================================

def parse_override_map(raw: Union[str, Mapping[str, Any], None]) -> PermissionMap:
    """
    Parse a stored override blob into a typed map.

    Accepts JSON text or an already-decoded mapping. Unknown modules are
    dropped; unknown actions are dropped from their list (so a list of
    only unknown actions revokes the module). Malformed blobs yield an
    empty map, i.e. role defaults.
    """
    if raw is None or raw == "":
        return {}

    data = raw
    if isinstance(raw, (str, bytes)):
        try:
            data = json.loads(raw)
        except ValueError as e:
            logger.warning(f"Ignoring unparseable permission overrides: {e}")
            return {}

    if not isinstance(data, Mapping):
        logger.warning(f"Ignoring permission overrides of type {type(data).__name__}")
        return {}

    parsed: PermissionMap = {}
    for key, actions in data.items():
        try:
            module = Module(key)
        except ValueError:
            logger.warning(f"Ignoring override for unknown module: {key!r}")
            continue

        if not isinstance(actions, list):
            logger.warning(f"Ignoring override for {key}: actions must be a list")
            continue

        valid = set()
        for action in actions:
            try:
                valid.add(Action(action))
            except ValueError:
                logger.warning(f"Ignoring unknown action {action!r} for module {key}")
        parsed[module] = frozenset(valid)

    return parsed


def dump_permission_map(permissions: PermissionMap) -> Dict[str, List[str]]:
    """JSON-friendly form: module -> sorted action names."""
    order = {action: i for i, action in enumerate(Action)}
    return {
        module.value: [a.value for a in sorted(actions, key=order.__getitem__)]
        for module, actions in permissions.items()
    }


@dataclass(frozen=True)
class PermissionOverrides:
    """
    A user's parsed override layers.

    Attributes:
        global_layer: Overrides applying in every store
        store_layers: Store id -> overrides applying in that store only
    """
    global_layer: PermissionMap = field(default_factory=dict)
    store_layers: Dict[str, PermissionMap] = field(default_factory=dict)

    @classmethod
    def parse(
        cls,
        global_raw: Union[str, Mapping[str, Any], None] = None,
        store_raw: Optional[Mapping[str, Union[str, Mapping[str, Any], None]]] = None,
    ) -> "PermissionOverrides":
        """Build overrides from stored blobs (global + per store)."""
        store_layers = {}
        for store_id, raw in (store_raw or {}).items():
            layer = parse_override_map(raw)
            if layer:
                store_layers[str(store_id)] = layer
        return cls(global_layer=parse_override_map(global_raw), store_layers=store_layers)

    def layer_for(self, store_id: Optional[str] = None) -> PermissionMap:
        """Overrides in effect for a store (global when store_id is None)."""
        if store_id is None or store_id not in self.store_layers:
            return self.global_layer
        merged = dict(self.global_layer)
        merged.update(self.store_layers[store_id])
        return merged


NO_OVERRIDES = PermissionOverrides()


# ============================================================================
# Resolver
# ============================================================================

class PermissionResolver:
    """
    Answers permission questions for a role plus overrides.

    Stateless apart from the default tables, so one instance is shared
    by the whole process.
    """

    def __init__(self, defaults: Optional[Dict[Role, PermissionMap]] = None):
        self._defaults = defaults or DEFAULT_PERMISSIONS

    def default_permissions(self, role: Union[str, Role]) -> PermissionMap:
        parsed = Role.parse(role)
        if parsed is None:
            return {}
        return dict(self._defaults.get(parsed, {}))

    def effective_permissions(
        self,
        role: Union[str, Role],
        overrides: Optional[PermissionOverrides] = None,
        store_id: Optional[str] = None,
    ) -> PermissionMap:
        """
        Merge role defaults with overrides.

        Args:
            role: User role
            overrides: Parsed override layers
            store_id: Apply the store layer for this store

        Returns:
            Module -> allowed actions. Revoked modules map to an empty set.
        """
        parsed = Role.parse(role)
        if parsed is None:
            logger.warning(f"Unknown role {role!r}: no permissions granted")
            return {}

        defaults = self._defaults.get(parsed, {})
        if parsed == Role.OWNER:
            return dict(defaults)

        layer = (overrides or NO_OVERRIDES).layer_for(store_id)

        merged = dict(defaults)
        for module, actions in layer.items():
            if module in ROLE_GATED_MODULES:
                actions = actions & defaults.get(module, frozenset())
            merged[module] = actions

        return merged

    def check(
        self,
        role: Union[str, Role],
        overrides: Optional[PermissionOverrides],
        module: Union[str, Module],
        action: Union[str, Action],
        store_id: Optional[str] = None,
    ) -> bool:
        """
        Allow/deny a single action on a module.

        Owner is always allowed. Unknown roles, modules or actions are
        denied.
        """
        parsed_role = Role.parse(role)
        if parsed_role is None:
            return False
        if parsed_role == Role.OWNER:
            return True

        try:
            module = Module(module)
            action = Action(action)
        except ValueError:
            return False

        effective = self.effective_permissions(parsed_role, overrides, store_id)
        return action in effective.get(module, frozenset())

    def check_all(
        self,
        role: Union[str, Role],
        overrides: Optional[PermissionOverrides],
        module: Union[str, Module],
        actions: Iterable[Union[str, Action]],
        store_id: Optional[str] = None,
    ) -> bool:
        """True if every action is allowed on the module."""
        return all(self.check(role, overrides, module, a, store_id) for a in actions)

    def check_any(
        self,
        role: Union[str, Role],
        overrides: Optional[PermissionOverrides],
        module: Union[str, Module],
        store_id: Optional[str] = None,
    ) -> bool:
        """True if at least one action is allowed on the module."""
        return any(self.check(role, overrides, module, a, store_id) for a in Action)

    def require(
        self,
        role: Union[str, Role],
        overrides: Optional[PermissionOverrides],
        module: Union[str, Module],
        action: Union[str, Action],
        store_id: Optional[str] = None,
    ) -> None:
        """
        Raise unless the action is allowed.

        Raises:
            PermissionDeniedError: If denied
        """
        if not self.check(role, overrides, module, action, store_id):
            module_name = module.value if isinstance(module, Module) else str(module)
            action_name = action.value if isinstance(action, Action) else str(action)
            raise PermissionDeniedError(module_name, action_name)

    # ========================================================================
    # Role hierarchy
    # ========================================================================

    @staticmethod
    def can_manage_role(actor_role: Union[str, Role], target_role: Union[str, Role]) -> bool:
        """
        Whether actor may create/edit/deactivate users of target's role.

        owner manages anyone, including other owners. company_manager
        manages its peers and below. Everyone else manages strictly
        lower roles only.
        """
        actor = Role.parse(actor_role)
        target = Role.parse(target_role)
        if actor is None or target is None:
            return False

        if actor == Role.OWNER:
            return True
        if actor == Role.COMPANY_MANAGER:
            return ROLE_HIERARCHY[actor] >= ROLE_HIERARCHY[target]
        return ROLE_HIERARCHY[actor] > ROLE_HIERARCHY[target]

    @staticmethod
    def can_view_role(actor_role: Union[str, Role], target_role: Union[str, Role]) -> bool:
        """
        Whether actor sees users of target's role in listings.

        Peers are visible for every role, which is broader than
        can_manage_role for store_manager and salesperson.
        """
        actor = Role.parse(actor_role)
        target = Role.parse(target_role)
        if actor is None or target is None:
            return False
        return ROLE_HIERARCHY[actor] >= ROLE_HIERARCHY[target]

    def assignable_roles(self, actor_role: Union[str, Role]) -> List[Role]:
        """Roles the actor may give to users, highest first."""
        return [role for role in Role if self.can_manage_role(actor_role, role)]

    def can_manage_user(
        self,
        actor_role: Union[str, Role],
        action: Union[str, Action],
        target_role: Union[str, Role],
    ) -> bool:
        """
        User-management decision, from role identity only.

        - view: target role visible to actor
        - add: owner only
        - edit/delete: can_manage_role
        """
        try:
            action = Action(action)
        except ValueError:
            return False

        if action == Action.VIEW:
            return self.can_view_role(actor_role, target_role)
        if action == Action.ADD:
            return Role.parse(actor_role) == Role.OWNER and Role.parse(target_role) is not None
        return self.can_manage_role(actor_role, target_role)

    def require_user_management(
        self,
        actor_role: Union[str, Role],
        action: Union[str, Action],
        target_role: Union[str, Role],
    ) -> None:
        """
        Raises:
            RoleHierarchyError: If the actor may not act on the target role
        """
        if not self.can_manage_user(actor_role, action, target_role):
            actor = actor_role.value if isinstance(actor_role, Role) else str(actor_role)
            target = target_role.value if isinstance(target_role, Role) else str(target_role)
            raise RoleHierarchyError(actor, target)

    # ========================================================================
    # Store scoping
    # ========================================================================

    @staticmethod
    def has_all_store_access(role: Union[str, Role]) -> bool:
        return Role.parse(role) in ALL_STORE_ROLES

    def check_store_access(
        self,
        role: Union[str, Role],
        accessible_stores: Iterable[str],
        store_id: str,
    ) -> bool:
        """owner/company_manager reach every store; others only their own."""
        if self.has_all_store_access(role):
            return True
        return store_id in set(accessible_stores)
