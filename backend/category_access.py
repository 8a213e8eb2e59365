# category_access.py — Category visibility by role
#
# Visibility rule per category, for every role except owner:
#   - no access rows and is_system  -> visible (default open)
#   - no access rows and custom     -> visible to nobody (default closed)
#   - access rows present           -> visible only to the listed roles
# Owner bypasses the resolver and lists every category in scope.
#
# Tasks in "Personal" ignore all of the above: only their creator sees them.

import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set

from sqlalchemy import select, delete, func, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from database import atomic
from exceptions import NotFound
from models import Category, CategoryRoleAccess, Organisation, SystemRole
from rbac import normalize_role
from roles import resolve_assignable_role

logger = logging.getLogger("tasklane.categories")

WORK_CATEGORY = "Work"
PERSONAL_CATEGORY = "Personal"
SYSTEM_CATEGORY_NAMES = (WORK_CATEGORY, PERSONAL_CATEGORY)


def category_to_dict(category: Category, organisation_name: Optional[str] = None) -> Dict[str, Any]:
    out = {
        "id": category.id,
        "organisation_id": category.organisation_id,
        "name": category.name,
        "is_system": bool(category.is_system),
        "created_at": category.created_at.isoformat() if category.created_at else None,
    }
    if organisation_name is not None:
        out["organisation_name"] = organisation_name
    return out


async def get_category(db: AsyncSession, category_id: str) -> Category:
    category = await db.get(Category, category_id)
    if not category:
        raise NotFound("Category not found")
    return category


async def find_category_by_name(db: AsyncSession, organisation_id: str, name: str) -> Optional[Category]:
    """Case-insensitive lookup within one organisation."""
    stmt = select(Category).where(
        Category.organisation_id == organisation_id,
        func.lower(Category.name) == name.strip().lower(),
    )
    return (await db.execute(stmt)).scalars().first()


# ============================================================
# LISTING
# ============================================================

async def list_categories_for_organisations(db: AsyncSession, org_ids: Sequence[str]) -> List[Category]:
    """Every category in the given organisations, unfiltered (owner path)."""
    if not org_ids:
        return []
    stmt = (
        select(Category)
        .join(Organisation, Organisation.id == Category.organisation_id)
        .where(Category.organisation_id.in_(list(org_ids)))
        .order_by(Category.name.asc(), Organisation.name.asc())
    )
    return list((await db.execute(stmt)).scalars().all())


async def list_accessible_categories_for_role(
    db: AsyncSession, org_ids: Sequence[str], role: Any
) -> List[Category]:
    """Categories in ``org_ids`` visible to ``role``. Pure read."""
    normalized = normalize_role(role)
    if not org_ids or not normalized:
        return []

    counts = (
        select(CategoryRoleAccess.category_id, func.count(CategoryRoleAccess.id).label("cnt"))
        .group_by(CategoryRoleAccess.category_id)
        .subquery()
    )
    granted = aliased(CategoryRoleAccess)
    stmt = (
        select(Category)
        .outerjoin(counts, counts.c.category_id == Category.id)
        .outerjoin(granted, and_(granted.category_id == Category.id, granted.role == normalized))
        .where(Category.organisation_id.in_(list(org_ids)))
        .where(or_(
            and_(counts.c.cnt.is_(None), Category.is_system == True),
            granted.id.is_not(None),
        ))
        .order_by(Category.name.asc())
    )
    return list((await db.execute(stmt)).scalars().all())


async def visible_category_names(db: AsyncSession, user: Any, org_ids: Sequence[str]) -> Optional[Set[str]]:
    """Names of categories ``user`` may see, or None when unrestricted (owner)."""
    if normalize_role(getattr(user, "role", None)) == SystemRole.OWNER.value:
        return None
    categories = await list_accessible_categories_for_role(db, org_ids, user.role)
    return {c.name for c in categories}


# ============================================================
# ACCESS ROWS
# ============================================================

async def list_category_role_access(db: AsyncSession, category_id: str) -> List[str]:
    stmt = (
        select(CategoryRoleAccess.role)
        .where(CategoryRoleAccess.category_id == category_id)
        .order_by(CategoryRoleAccess.role.asc())
    )
    return list((await db.execute(stmt)).scalars().all())


async def set_category_role_access(db: AsyncSession, category_id: str, roles: Iterable[Any]) -> List[str]:
    """Replace the access rows of a category in one transaction.

    An empty list removes every row, returning a system category to default
    open and a custom category to default closed.
    """
    await get_category(db, category_id)
    unique_roles: List[str] = []
    for role in roles or []:
        normalized = normalize_role(role)
        if normalized and normalized not in unique_roles:
            unique_roles.append(normalized)
    for role in unique_roles:
        await resolve_assignable_role(db, role)

    async with atomic(db):
        await db.execute(
            delete(CategoryRoleAccess).where(CategoryRoleAccess.category_id == category_id)
            .execution_options(synchronize_session="fetch")
        )
        for role in unique_roles:
            db.add(CategoryRoleAccess(category_id=category_id, role=role))

    logger.info(f"Category {category_id} access set to {sorted(unique_roles) or 'default'}")
    return await list_category_role_access(db, category_id)


# ============================================================
# SYSTEM CATEGORIES
# ============================================================

async def ensure_system_categories(db: AsyncSession, organisation_id: str) -> None:
    """Make sure Work and Personal exist, flagged and canonically named.

    Case-variant duplicates of a system name collapse into one row.
    """
    rows = (await db.execute(
        select(Category).where(Category.organisation_id == organisation_id).order_by(Category.created_at)
    )).scalars().all()

    by_lower: Dict[str, List[Category]] = {}
    for row in rows:
        by_lower.setdefault(row.name.lower(), []).append(row)

    async with atomic(db):
        for canonical in SYSTEM_CATEGORY_NAMES:
            matches = by_lower.get(canonical.lower(), [])
            if not matches:
                db.add(Category(organisation_id=organisation_id, name=canonical, is_system=True))
                continue
            keep, dupes = matches[0], matches[1:]
            for dupe in dupes:
                await db.delete(dupe)
            if dupes:
                await db.flush()
            keep.is_system = True
            keep.name = canonical


# ============================================================
# TASK VISIBILITY
# ============================================================

def is_task_visible(task: Any, user: Any, allowed_categories: Optional[Set[str]]) -> bool:
    """Personal tasks: creator only. Others: category must be allowed
    (``allowed_categories`` None means unrestricted)."""
    if task.category == PERSONAL_CATEGORY:
        return task.created_by == user.id
    return allowed_categories is None or task.category in allowed_categories


def filter_visible_tasks(tasks: Iterable[Any], user: Any, allowed_categories: Optional[Set[str]]) -> List[Any]:
    return [t for t in tasks if is_task_visible(t, user, allowed_categories)]
