# rbac.py — Static role/permission catalog and organisation scope resolution
# - Fixed inheritance for the three system roles (owner > admin > viewer)
# - Static permission catalog keyed by "resource:action"
# - Organisation scope: owner sees every organisation, a root-org admin sees
#   its descendants, everyone else sees their own organisation
#
# Nothing here touches storage. Dynamic overrides live in permissions.py.

from collections import deque
from typing import Any, Dict, Iterable, List, Optional, Set

from models import SystemRole


# ============================================================
# ROLE CATALOG
# ============================================================

SYSTEM_ROLES = (SystemRole.OWNER.value, SystemRole.ADMIN.value, SystemRole.VIEWER.value)

# Ordered, reflexive inheritance. Custom roles are flat and never appear here.
ROLE_HIERARCHY: Dict[str, List[str]] = {
    SystemRole.OWNER.value: [SystemRole.OWNER.value, SystemRole.ADMIN.value, SystemRole.VIEWER.value],
    SystemRole.ADMIN.value: [SystemRole.ADMIN.value, SystemRole.VIEWER.value],
    SystemRole.VIEWER.value: [SystemRole.VIEWER.value],
}


def normalize_role(role: Any) -> str:
    """Trim and lowercase a role key. Non-strings normalize to ''."""
    return role.strip().lower() if isinstance(role, str) else ""


def is_system_role(role: Any) -> bool:
    return normalize_role(role) in ROLE_HIERARCHY


def inherited_roles(role: Any) -> List[str]:
    """Roles implied by ``role``, itself first. Unknown roles get []."""
    return list(ROLE_HIERARCHY.get(normalize_role(role), []))


# ============================================================
# PERMISSION CATALOG
# ============================================================

_OWNER, _ADMIN, _VIEWER = SYSTEM_ROLES

PERMISSIONS: Dict[str, frozenset] = {
    "tasks:view": frozenset({_OWNER, _ADMIN, _VIEWER}),
    "tasks:create": frozenset({_OWNER, _ADMIN}),
    "tasks:update": frozenset({_OWNER, _ADMIN}),
    "tasks:delete": frozenset({_OWNER}),
    "audit:view": frozenset({_OWNER, _ADMIN}),
    "users:view-all": frozenset({_OWNER, _ADMIN}),
    # Broad category permission kept for older clients
    "categories:manage": frozenset({_OWNER, _ADMIN}),
    "categories:create": frozenset({_OWNER, _ADMIN}),
    "categories:update": frozenset({_OWNER, _ADMIN}),
    "categories:delete": frozenset({_OWNER, _ADMIN}),
    "categories:access:configure": frozenset({_OWNER}),
    "categories:view": frozenset({_OWNER, _ADMIN, _VIEWER}),
    "roles:view": frozenset({_OWNER, _ADMIN}),
    "roles:create": frozenset({_OWNER, _ADMIN}),
    "roles:update": frozenset({_OWNER, _ADMIN}),
    "roles:delete": frozenset({_OWNER}),
}

# Granted only through dynamic rows; listed so the admin UI can toggle it.
DYNAMIC_ONLY_PERMISSIONS = ("admin:access",)


def permission_catalog() -> List[str]:
    """Every permission key an administrator can toggle, stable order."""
    return list(DYNAMIC_ONLY_PERMISSIONS) + [p for p in PERMISSIONS if p not in DYNAMIC_ONLY_PERMISSIONS]


def role_allows(role: Any, permission: str) -> bool:
    """Static layer only: does the catalog entitle ``role`` to ``permission``?"""
    allowed = PERMISSIONS.get(permission)
    if not allowed:
        return False
    return any(candidate in allowed for candidate in inherited_roles(role))


# ============================================================
# ORGANISATION SCOPE
# ============================================================

def _get(record: Any, key: str) -> Any:
    if isinstance(record, dict):
        return record.get(key)
    return getattr(record, key, None)


class OrgIndex:
    """Organisations keyed by id plus a parent -> children adjacency."""

    def __init__(self, organisations: Optional[Iterable[Any]] = None):
        self.by_id: Dict[str, Any] = {}
        self.children: Dict[Optional[str], List[str]] = {}
        for org in organisations or []:
            org_id = _get(org, "id")
            parent_id = _get(org, "parent_id") or None
            self.by_id[org_id] = org
            self.children.setdefault(parent_id, []).append(org_id)

    def is_root(self, org_id: str) -> bool:
        # An organisation missing from the index is treated as a root
        record = self.by_id.get(org_id)
        return record is None or not _get(record, "parent_id")

    def all_ids(self) -> Set[str]:
        return set(self.by_id)


def collect_descendants(org_id: str, children: Dict[Optional[str], List[str]], acc: Set[str]) -> Set[str]:
    """Breadth-first walk adding ``org_id`` and all its descendants to ``acc``."""
    queue = deque([org_id])
    while queue:
        current = queue.popleft()
        if not current or current in acc:
            continue
        acc.add(current)
        queue.extend(children.get(current, []))
    return acc


def resolve_org_scope(user: Any, organisations: Iterable[Any]) -> Set[str]:
    """Organisation ids ``user`` may act within for this request."""
    scope: Set[str] = set()
    if user is None:
        return scope
    user_org_id = _get(user, "organisation_id")
    if not user_org_id:
        return scope

    role = normalize_role(_get(user, "role"))
    index = OrgIndex(organisations)

    if role == SystemRole.OWNER.value:
        scope.update(index.all_ids())
    elif role == SystemRole.ADMIN.value and index.is_root(user_org_id):
        collect_descendants(user_org_id, index.children, scope)

    scope.add(user_org_id)
    return scope
