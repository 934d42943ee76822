"""
Role-based access control.

Role hierarchy (lowest → highest)::

    READ_ONLY < STAFF < ACCOUNTANT < ADMIN < OWNER

Each role holds its own grants plus every grant of the roles below it.
The resolved sets are computed once at import time.

Beyond the closed :class:`Permission` enum, feature modules may register
namespaced permissions of the form ``{module}:{entity}:{action}`` with the
:data:`module_permissions` registry; :func:`resolve_permission` dispatches
between the two without widening the core checks.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)


class Role(str, Enum):
    READ_ONLY = "READ_ONLY"
    STAFF = "STAFF"
    ACCOUNTANT = "ACCOUNTANT"
    ADMIN = "ADMIN"
    OWNER = "OWNER"


ROLE_HIERARCHY: tuple[Role, ...] = (
    Role.READ_ONLY,
    Role.STAFF,
    Role.ACCOUNTANT,
    Role.ADMIN,
    Role.OWNER,
)
_RANK = {role: rank for rank, role in enumerate(ROLE_HIERARCHY)}


class Permission(str, Enum):
    # Company
    COMPANY_READ = "company:read"
    COMPANY_UPDATE = "company:update"
    COMPANY_DELETE = "company:delete"
    # Users / team
    USERS_READ = "users:read"
    USERS_CREATE = "users:create"
    USERS_UPDATE = "users:update"
    USERS_DELETE = "users:delete"
    # Customers
    CUSTOMERS_READ = "customers:read"
    CUSTOMERS_CREATE = "customers:create"
    CUSTOMERS_UPDATE = "customers:update"
    CUSTOMERS_DELETE = "customers:delete"
    # Products
    PRODUCTS_READ = "products:read"
    PRODUCTS_CREATE = "products:create"
    PRODUCTS_UPDATE = "products:update"
    PRODUCTS_DELETE = "products:delete"
    # Invoices
    INVOICES_READ = "invoices:read"
    INVOICES_CREATE = "invoices:create"
    INVOICES_UPDATE = "invoices:update"
    INVOICES_DELETE = "invoices:delete"
    INVOICES_APPROVE = "invoices:approve"
    # Quotations
    QUOTATIONS_READ = "quotations:read"
    QUOTATIONS_CREATE = "quotations:create"
    QUOTATIONS_UPDATE = "quotations:update"
    QUOTATIONS_DELETE = "quotations:delete"
    # Expenses
    EXPENSES_READ = "expenses:read"
    EXPENSES_CREATE = "expenses:create"
    EXPENSES_UPDATE = "expenses:update"
    EXPENSES_DELETE = "expenses:delete"
    EXPENSES_APPROVE = "expenses:approve"
    # Payroll
    PAYROLL_READ = "payroll:read"
    PAYROLL_CREATE = "payroll:create"
    PAYROLL_APPROVE = "payroll:approve"
    # General ledger / journal
    GL_READ = "gl:read"
    GL_CREATE = "gl:create"
    GL_UPDATE = "gl:update"
    GL_DELETE = "gl:delete"
    JOURNAL_READ = "journal:read"
    JOURNAL_CREATE = "journal:create"
    JOURNAL_UPDATE = "journal:update"
    JOURNAL_DELETE = "journal:delete"
    JOURNAL_POST = "journal:post"
    # Banking
    BANKING_READ = "banking:read"
    BANKING_CREATE = "banking:create"
    BANKING_UPDATE = "banking:update"
    BANKING_DELETE = "banking:delete"
    BANKING_RECONCILE = "banking:reconcile"
    # Reports
    REPORTS_READ = "reports:read"
    REPORTS_EXPORT = "reports:export"
    # Settings
    SETTINGS_READ = "settings:read"
    SETTINGS_UPDATE = "settings:update"
    SETTINGS_WRITE = "settings:write"
    # Audit
    AUDIT_READ = "audit:read"
    # Tax
    TAX_READ = "tax:read"
    TAX_EXPORT = "tax:export"
    TAX_FILE = "tax:file"
    # Inventory
    INVENTORY_READ = "inventory:read"
    INVENTORY_CREATE = "inventory:create"
    INVENTORY_UPDATE = "inventory:update"
    INVENTORY_DELETE = "inventory:delete"
    # Fixed assets
    FIXED_ASSETS_READ = "fixed_assets:read"
    FIXED_ASSETS_CREATE = "fixed_assets:create"
    FIXED_ASSETS_UPDATE = "fixed_assets:update"
    FIXED_ASSETS_DELETE = "fixed_assets:delete"
    FIXED_ASSETS_DEPRECIATE = "fixed_assets:depreciate"
    # Point of sale
    POS_READ = "pos:read"
    POS_CREATE = "pos:create"
    POS_UPDATE = "pos:update"
    POS_DELETE = "pos:delete"
    POS_VOID = "pos:void"
    POS_SETTINGS = "pos:settings"


P = Permission

ROLE_PERMISSIONS: dict[Role, frozenset[Permission]] = {
    Role.READ_ONLY: frozenset(
        {
            P.COMPANY_READ, P.CUSTOMERS_READ, P.PRODUCTS_READ, P.INVOICES_READ,
            P.QUOTATIONS_READ, P.EXPENSES_READ, P.PAYROLL_READ, P.GL_READ,
            P.JOURNAL_READ, P.BANKING_READ, P.REPORTS_READ, P.SETTINGS_READ,
            P.TAX_READ, P.INVENTORY_READ, P.FIXED_ASSETS_READ, P.POS_READ,
        }
    ),
    Role.STAFF: frozenset(
        {
            P.CUSTOMERS_CREATE, P.CUSTOMERS_UPDATE,
            P.PRODUCTS_CREATE, P.PRODUCTS_UPDATE,
            P.INVOICES_CREATE, P.INVOICES_UPDATE,
            P.QUOTATIONS_CREATE, P.QUOTATIONS_UPDATE,
            P.EXPENSES_CREATE, P.EXPENSES_UPDATE,
            P.BANKING_CREATE,
            P.INVENTORY_CREATE, P.INVENTORY_UPDATE,
            P.FIXED_ASSETS_CREATE, P.FIXED_ASSETS_UPDATE,
            P.POS_CREATE, P.POS_UPDATE,
        }
    ),
    Role.ACCOUNTANT: frozenset(
        {
            P.CUSTOMERS_DELETE, P.PRODUCTS_DELETE,
            P.INVOICES_DELETE, P.INVOICES_APPROVE,
            P.QUOTATIONS_DELETE,
            P.EXPENSES_DELETE, P.EXPENSES_APPROVE,
            P.PAYROLL_CREATE, P.PAYROLL_APPROVE,
            P.GL_CREATE, P.GL_UPDATE, P.GL_DELETE,
            P.JOURNAL_CREATE, P.JOURNAL_UPDATE, P.JOURNAL_DELETE, P.JOURNAL_POST,
            P.BANKING_UPDATE, P.BANKING_DELETE, P.BANKING_RECONCILE,
            P.REPORTS_EXPORT,
            P.TAX_EXPORT, P.TAX_FILE,
            P.AUDIT_READ,
            P.INVENTORY_DELETE,
            P.FIXED_ASSETS_DELETE, P.FIXED_ASSETS_DEPRECIATE,
            P.POS_DELETE, P.POS_VOID,
        }
    ),
    Role.ADMIN: frozenset(
        {
            P.COMPANY_UPDATE,
            P.USERS_READ, P.USERS_CREATE, P.USERS_UPDATE, P.USERS_DELETE,
            P.SETTINGS_UPDATE, P.SETTINGS_WRITE,
            P.POS_SETTINGS,
        }
    ),
    Role.OWNER: frozenset({P.COMPANY_DELETE}),
}


def _resolve_hierarchy(grants: dict[Role, Iterable[str]]) -> dict[Role, frozenset]:
    """Walk the hierarchy bottom-up, accumulating grants."""
    resolved: dict[Role, frozenset] = {}
    accumulated: set = set()
    for role in ROLE_HIERARCHY:
        accumulated.update(grants.get(role, ()))
        resolved[role] = frozenset(accumulated)
    return resolved


_RESOLVED: dict[Role, frozenset[Permission]] = _resolve_hierarchy(ROLE_PERMISSIONS)


def parse_role(value: str | Role | None) -> Role | None:
    if value is None:
        return None
    try:
        return Role(value)
    except ValueError:
        return None


# ── Core checks ─────────────────────────────────────────────────────
def has_permission(role: Role | str, permission: Permission) -> bool:
    parsed = parse_role(role)
    if parsed is None:
        return False
    return permission in _RESOLVED[parsed]


def has_all_permissions(role: Role | str, permissions: Iterable[Permission]) -> bool:
    return all(has_permission(role, p) for p in permissions)


def has_any_permission(role: Role | str, permissions: Iterable[Permission]) -> bool:
    return any(has_permission(role, p) for p in permissions)


def get_permissions(role: Role | str) -> frozenset[Permission]:
    """All permissions for a role, inherited ones included."""
    parsed = parse_role(role)
    return _RESOLVED[parsed] if parsed is not None else frozenset()


def compare_roles(a: Role | str, b: Role | str) -> int:
    """Positive if ``a`` outranks ``b``, negative if below, 0 if equal."""
    return _RANK[Role(a)] - _RANK[Role(b)]


def can_manage_role(actor: Role | str, target: Role | str) -> bool:
    """An actor may only act upon, or assign, roles strictly below their own."""
    return compare_roles(target, actor) < 0


# ── Module permissions ──────────────────────────────────────────────
@dataclass(frozen=True)
class ModulePermission:
    """A permission declared by a feature module's manifest."""

    key: str  # "{module}:{entity}:{action}"
    default_roles: tuple[Role, ...]
    description: str = ""


class ModulePermissionRegistry:
    """Secondary lookup for module-namespaced permission strings."""

    def __init__(self) -> None:
        self._declared: dict[str, tuple[ModulePermission, ...]] = {}
        self._resolved: dict[str, dict[Role, frozenset[str]]] = {}

    def register(self, module_id: str, permissions: Iterable[ModulePermission]) -> None:
        perms = tuple(permissions)
        grants: dict[Role, list[str]] = {role: [] for role in ROLE_HIERARCHY}
        for perm in perms:
            parts = split_module_permission(perm.key)
            if parts is None or parts[0] != module_id:
                raise ValueError(f"Permission {perm.key!r} is not namespaced under {module_id!r}")
            for role in perm.default_roles:
                grants[Role(role)].append(perm.key)
        self._declared[module_id] = perms
        self._resolved[module_id] = _resolve_hierarchy(grants)
        logger.info("Registered %d permissions for module %s", len(perms), module_id)

    def unregister(self, module_id: str) -> None:
        self._declared.pop(module_id, None)
        self._resolved.pop(module_id, None)

    def check(self, role: Role | str, module_id: str, permission: str) -> bool:
        parsed = parse_role(role)
        role_map = self._resolved.get(module_id)
        if parsed is None or role_map is None:
            return False
        return permission in role_map[parsed]

    def declared(self, module_id: str) -> tuple[ModulePermission, ...]:
        return self._declared.get(module_id, ())

    def role_permissions(self, role: Role | str, module_id: str) -> frozenset[str]:
        parsed = parse_role(role)
        role_map = self._resolved.get(module_id)
        if parsed is None or role_map is None:
            return frozenset()
        return role_map[parsed]


module_permissions = ModulePermissionRegistry()


def split_module_permission(key: str) -> tuple[str, str, str] | None:
    parts = key.split(":")
    if len(parts) != 3 or not all(parts):
        return None
    return parts[0], parts[1], parts[2]


def resolve_permission(role: Role | str, permission: Permission | str) -> bool:
    """Check a core :class:`Permission` or a ``{module}:{entity}:{action}`` string."""
    if isinstance(permission, Permission):
        return has_permission(role, permission)
    module_key = split_module_permission(permission)
    if module_key is not None:
        return module_permissions.check(role, module_key[0], permission)
    try:
        core = Permission(permission)
    except ValueError:
        return False
    return has_permission(role, core)
