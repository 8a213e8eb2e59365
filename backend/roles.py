# roles.py — Role catalog persistence and custom role lifecycle
#
# Custom role:  nonexistent -> active -> (renamed -> active) | deleted
# System roles are seeded once and never renamed or deleted. A rename moves
# users, permission overrides and category grants to the new name in the
# same transaction as the catalog row.

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update, delete, func
from sqlalchemy.ext.asyncio import AsyncSession

from database import atomic
from exceptions import InvalidRole, NotFound, RoleConflict, RoleInUse, SystemRoleImmutable
from models import CategoryRoleAccess, Role, RolePermission, SystemRole, User
from rbac import SYSTEM_ROLES, normalize_role

logger = logging.getLogger("tasklane.roles")

MAX_ROLE_NAME_LENGTH = 64

SYSTEM_ROLE_DESCRIPTIONS = {
    SystemRole.OWNER.value: "Full control of the organisation",
    SystemRole.ADMIN.value: "Manage users and settings",
    SystemRole.VIEWER.value: "Read-only access",
}


def role_to_dict(role: Role) -> Dict[str, Any]:
    return {
        "id": role.id,
        "name": role.name,
        "description": role.description,
        "is_system": bool(role.is_system),
        "created_at": role.created_at.isoformat() if role.created_at else None,
    }


def _validated_name(name: Any) -> str:
    normalized = normalize_role(name)
    if not normalized:
        raise InvalidRole("Role name is required")
    if len(normalized) > MAX_ROLE_NAME_LENGTH:
        raise InvalidRole(f"Role name must be at most {MAX_ROLE_NAME_LENGTH} characters")
    return normalized


async def ensure_system_roles(db: AsyncSession) -> None:
    """Seed owner/admin/viewer catalog rows; safe to call on every start."""
    existing = set((await db.execute(select(Role.name).where(Role.name.in_(SYSTEM_ROLES)))).scalars().all())
    async with atomic(db):
        for name in SYSTEM_ROLES:
            if name not in existing:
                db.add(Role(name=name, description=SYSTEM_ROLE_DESCRIPTIONS[name], is_system=True))


async def list_roles(db: AsyncSession) -> List[Role]:
    """System roles first, then alphabetical."""
    stmt = select(Role).order_by(Role.is_system.desc(), Role.name.asc())
    return list((await db.execute(stmt)).scalars().all())


async def get_role_by_name(db: AsyncSession, name: Any) -> Optional[Role]:
    normalized = normalize_role(name)
    if not normalized:
        return None
    stmt = select(Role).where(func.lower(Role.name) == normalized)
    return (await db.execute(stmt)).scalars().first()


async def _require_role(db: AsyncSession, name: Any) -> Role:
    role = await get_role_by_name(db, name)
    if not role:
        raise NotFound("Role not found")
    return role


async def resolve_assignable_role(db: AsyncSession, name: Any) -> str:
    """Normalized role name if it exists in the catalog, else InvalidRole."""
    normalized = normalize_role(name)
    if normalized in SYSTEM_ROLES:
        return normalized
    if not normalized or not await get_role_by_name(db, normalized):
        raise InvalidRole(f"Unknown role: {name!r}")
    return normalized


async def _delete_role_rows(db: AsyncSession, name: str) -> None:
    """Drop every override and category grant stored under ``name``."""
    await db.execute(
        delete(RolePermission).where(RolePermission.role == name)
        .execution_options(synchronize_session="fetch")
    )
    await db.execute(
        delete(CategoryRoleAccess).where(CategoryRoleAccess.role == name)
        .execution_options(synchronize_session="fetch")
    )


async def create_role(db: AsyncSession, name: Any, description: Optional[str] = None) -> Role:
    """Insert a custom role with no permission rows (everything denied)."""
    normalized = _validated_name(name)
    if normalized in SYSTEM_ROLES:
        raise SystemRoleImmutable("Cannot create system role")

    async with atomic(db):
        if await get_role_by_name(db, normalized):
            raise RoleConflict()
        await _delete_role_rows(db, normalized)
        role = Role(name=normalized, description=description or None, is_system=False)
        db.add(role)

    logger.info(f"Role created: {normalized}")
    return role


async def update_role(db: AsyncSession, name: Any, updates: Dict[str, Any]) -> Role:
    """Rename and/or re-describe a custom role.

    Only keys present in ``updates`` are applied ("name", "description").
    """
    async with atomic(db):
        role = await _require_role(db, name)
        if role.is_system:
            raise SystemRoleImmutable("Cannot modify system role")

        old_name = role.name
        new_name = old_name
        if updates.get("name") is not None:
            new_name = _validated_name(updates["name"])

        if new_name != old_name:
            if new_name in SYSTEM_ROLES or await get_role_by_name(db, new_name):
                raise RoleConflict("Role name already exists")
            await _delete_role_rows(db, new_name)
            role.name = new_name
            await db.execute(
                update(User).where(User.role == old_name).values(role=new_name)
                .execution_options(synchronize_session="fetch")
            )
            await db.execute(
                update(RolePermission).where(RolePermission.role == old_name).values(role=new_name)
                .execution_options(synchronize_session="fetch")
            )
            await db.execute(
                update(CategoryRoleAccess).where(CategoryRoleAccess.role == old_name).values(role=new_name)
                .execution_options(synchronize_session="fetch")
            )

        if "description" in updates:
            role.description = updates["description"] or None

    if new_name != old_name:
        logger.info(f"Role renamed: {old_name} -> {new_name}")
    return role


async def delete_role(db: AsyncSession, name: Any) -> None:
    """Delete a custom role and its override rows. Refused while assigned."""
    async with atomic(db):
        role = await _require_role(db, name)
        if role.is_system:
            raise SystemRoleImmutable("Cannot delete system role")

        usage_stmt = select(func.count(User.id)).where(User.role == role.name)
        usage = (await db.execute(usage_stmt)).scalar() or 0
        if usage > 0:
            raise RoleInUse(f"Role '{role.name}' is assigned to {usage} user(s)")

        await _delete_role_rows(db, role.name)
        await db.delete(role)

    logger.info(f"Role deleted: {role.name}")
