# permissions.py — Dynamic permission overrides and the authorization gate
#
# Overrides are rows keyed by (organisation_id or NULL, role, permission).
# The global (NULL) row is the scope every caller uses; organisation rows win
# over the global row when both exist. A missing row means "not granted".
#
# authorize() = owner short-circuit OR static catalog OR global override.

import logging
import re
from typing import Any, Dict, List, Optional

from sqlalchemy import select, or_, func
from sqlalchemy.ext.asyncio import AsyncSession

from database import atomic
from exceptions import InvalidPermission, InvalidRole, NotFound, SystemRoleImmutable
from models import Role, RolePermission, SystemRole
from rbac import normalize_role, permission_catalog, role_allows

logger = logging.getLogger("tasklane.permissions")

PERMISSION_KEY_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*(:[a-z0-9_-]+)+$")


def validate_permission_key(permission: Any) -> str:
    key = permission.strip() if isinstance(permission, str) else ""
    if not PERMISSION_KEY_PATTERN.match(key):
        raise InvalidPermission(f"Invalid permission key: {permission!r}")
    return key


# ============================================================
# STORE
# ============================================================

async def has_role_permission(
    db: AsyncSession,
    organisation_id: Optional[str],
    role: Any,
    permission: str,
) -> bool:
    """Is ``permission`` enabled for ``role`` by a stored override?

    Prefers the organisation row over the global row; absent rows deny.
    """
    normalized = normalize_role(role)
    if not normalized or not isinstance(permission, str):
        return False

    scope = RolePermission.organisation_id.is_(None)
    if organisation_id is not None:
        scope = or_(scope, RolePermission.organisation_id == organisation_id)

    stmt = select(RolePermission.organisation_id, RolePermission.enabled).where(
        RolePermission.role == normalized,
        RolePermission.permission == permission,
        scope,
    )
    rows = (await db.execute(stmt)).all()
    if not rows:
        return False
    chosen = next((r for r in rows if r.organisation_id is not None), rows[0])
    return bool(chosen.enabled)


async def set_role_permission(
    db: AsyncSession,
    organisation_id: Optional[str],
    role: Any,
    permission: str,
    enabled: bool,
    require_existing_role: bool = False,
) -> RolePermission:
    """Idempotent upsert of one override row, committed atomically.

    With ``require_existing_role`` the role is looked up again inside the
    transaction, so a grant never lands on a name that was renamed or
    deleted after the caller resolved it.
    """
    normalized = normalize_role(role)
    if not normalized:
        raise InvalidRole("Role name is required")
    if normalized == SystemRole.OWNER.value:
        raise SystemRoleImmutable("Cannot modify owner permissions")
    key = validate_permission_key(permission)

    async with atomic(db):
        if require_existing_role:
            role_stmt = select(Role.id).where(func.lower(Role.name) == normalized).with_for_update()
            if (await db.execute(role_stmt)).first() is None:
                raise NotFound("Role not found")

        org_clause = (
            RolePermission.organisation_id.is_(None)
            if organisation_id is None
            else RolePermission.organisation_id == organisation_id
        )
        stmt = select(RolePermission).where(
            org_clause,
            RolePermission.role == normalized,
            RolePermission.permission == key,
        )
        row = (await db.execute(stmt)).scalars().first()
        if row:
            row.enabled = bool(enabled)
        else:
            row = RolePermission(
                organisation_id=organisation_id,
                role=normalized,
                permission=key,
                enabled=bool(enabled),
            )
            db.add(row)

    logger.info(
        f"Permission override {normalized}:{key} -> {'on' if enabled else 'off'} "
        f"(scope={organisation_id or 'global'})"
    )
    return row


async def list_role_permissions(
    db: AsyncSession,
    organisation_id: Optional[str] = None,
) -> List[RolePermission]:
    """All override rows; with an organisation, global rows plus that organisation's."""
    stmt = select(RolePermission)
    if organisation_id is not None:
        stmt = stmt.where(
            or_(RolePermission.organisation_id.is_(None), RolePermission.organisation_id == organisation_id)
        )
    stmt = stmt.order_by(RolePermission.role, RolePermission.permission)
    return list((await db.execute(stmt)).scalars().all())


async def role_permission_matrix(db: AsyncSession, role: Any) -> List[Dict[str, Any]]:
    """Display projection of the global overrides for ``role``.

    Owner shows everything on. Admin shows absent rows as on, every other
    role shows them as off. Enforcement never reads this; see authorize().
    """
    normalized = normalize_role(role)
    stmt = select(RolePermission.permission, RolePermission.enabled).where(
        RolePermission.organisation_id.is_(None),
        RolePermission.role == normalized,
    )
    stored = {r.permission: bool(r.enabled) for r in (await db.execute(stmt)).all()}

    matrix = []
    for key in permission_catalog():
        if normalized == SystemRole.OWNER.value:
            enabled = True
        elif normalized == SystemRole.ADMIN.value:
            enabled = stored.get(key, True)
        else:
            enabled = stored.get(key, False)
        matrix.append({"permission": key, "enabled": enabled})
    return matrix


# ============================================================
# AUTHORIZATION GATE
# ============================================================

async def authorize(db: AsyncSession, user: Any, permission: str) -> bool:
    """Request-time allow/deny for ``user`` (anything with .role / .is_active).

    Re-reads overrides on every call. Unknown permission keys take the same
    path as known-but-denied ones and deny.
    """
    if user is None or getattr(user, "is_active", True) is False:
        return False
    role = normalize_role(getattr(user, "role", None))
    if role == SystemRole.OWNER.value:
        return True

    if role_allows(role, permission):
        return True
    allowed = await has_role_permission(db, None, role, permission)
    if not allowed:
        logger.debug(f"Denied {permission} for role={role or '<none>'}")
    return allowed
