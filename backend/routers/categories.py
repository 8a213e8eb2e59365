# routers/categories.py — Categories per organisation and their role access lists
from typing import Optional, List

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from audit import record_event
from auth import get_current_user, require_permission, CurrentUser
from category_access import (
    category_to_dict, find_category_by_name, get_category,
    list_accessible_categories_for_role, list_categories_for_organisations,
    list_category_role_access, set_category_role_access,
)
from database import atomic, get_db_session
from models import Category, Organisation, Task, AuditEventType

router = APIRouter(prefix="/api/v1/categories", tags=["Categories"])


# ============================================================
# SCHEMAS
# ============================================================

class CategoryCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    organisation_id: Optional[str] = None


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    organisation_id: Optional[str] = None


class CategoryOut(BaseModel):
    id: str
    organisation_id: str
    organisation_name: Optional[str] = None
    name: str
    is_system: bool
    created_at: Optional[str] = None


class CategoryAccessUpdate(BaseModel):
    roles: List[str] = Field(default_factory=list)


class CategoryAccessOut(BaseModel):
    category_id: str
    roles: List[str]


async def _organisation_names(db: AsyncSession, org_ids) -> dict:
    if not org_ids:
        return {}
    rows = (await db.execute(
        select(Organisation.id, Organisation.name).where(Organisation.id.in_(list(org_ids)))
    )).all()
    return {r.id: r.name for r in rows}


async def _category_out(db: AsyncSession, category: Category) -> CategoryOut:
    names = await _organisation_names(db, [category.organisation_id])
    return CategoryOut(**category_to_dict(category, names.get(category.organisation_id)))


async def _get_category_in_scope(db: AsyncSession, category_id: str, user: CurrentUser) -> Category:
    category = await get_category(db, category_id)
    if not user.in_scope(category.organisation_id):
        raise HTTPException(status_code=403, detail="Category outside allowed scope")
    return category


async def _ensure_name_available(
    db: AsyncSession, organisation_id: str, name: str, exclude_id: Optional[str] = None
) -> None:
    existing = await find_category_by_name(db, organisation_id, name)
    if existing and existing.id != exclude_id:
        raise HTTPException(status_code=409, detail="Category name already exists")


# ============================================================
# ROUTES
# ============================================================

@router.get("", response_model=List[CategoryOut])
async def list_categories(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Owner sees every category in scope; other roles go through the resolver"""
    if user.is_owner:
        categories = await list_categories_for_organisations(db, user.org_scope)
    else:
        categories = await list_accessible_categories_for_role(db, user.org_scope, user.role)
    names = await _organisation_names(db, {c.organisation_id for c in categories})
    return [CategoryOut(**category_to_dict(c, names.get(c.organisation_id))) for c in categories]


@router.post("", response_model=CategoryOut, status_code=201)
async def create_category(
    data: CategoryCreate,
    user: CurrentUser = Depends(require_permission("categories:create")),
    db: AsyncSession = Depends(get_db_session),
):
    organisation_id = data.organisation_id or user.organisation_id
    if not user.in_scope(organisation_id):
        raise HTTPException(status_code=403, detail="Organisation not in scope")
    name = data.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Category name is required")
    await _ensure_name_available(db, organisation_id, name)

    async with atomic(db):
        category = Category(organisation_id=organisation_id, name=name, is_system=False)
        db.add(category)

    out = await _category_out(db, category)
    await record_event(
        db, AuditEventType.CATEGORY_CREATED, entity="category", entity_id=category.id,
        actor_id=user.id, organisation_id=organisation_id, after=out.model_dump(),
    )
    return out


@router.put("/{category_id}", response_model=CategoryOut)
async def update_category(
    category_id: str,
    data: CategoryUpdate,
    user: CurrentUser = Depends(require_permission("categories:update")),
    db: AsyncSession = Depends(get_db_session),
):
    """Rename or move a custom category. Tasks filed under it follow the rename."""
    category = await _get_category_in_scope(db, category_id, user)
    before = await _category_out(db, category)

    new_name = data.name.strip() if data.name is not None else category.name
    target_org = data.organisation_id or category.organisation_id
    if not new_name:
        raise HTTPException(status_code=400, detail="Category name is required")
    if target_org != category.organisation_id and not user.in_scope(target_org):
        raise HTTPException(status_code=403, detail="Target organisation outside allowed scope")
    if category.is_system and (new_name != category.name or target_org != category.organisation_id):
        raise HTTPException(status_code=400, detail="System category cannot be renamed or moved")
    await _ensure_name_available(db, target_org, new_name, exclude_id=category.id)

    old_name, old_org = category.name, category.organisation_id
    async with atomic(db):
        category.name = new_name
        category.organisation_id = target_org
        if new_name != old_name and target_org == old_org:
            await db.execute(
                update(Task).where(Task.organisation_id == old_org, Task.category == old_name)
                .values(category=new_name)
                .execution_options(synchronize_session="fetch")
            )

    out = await _category_out(db, category)
    await record_event(
        db, AuditEventType.CATEGORY_UPDATED, entity="category", entity_id=category.id,
        actor_id=user.id, organisation_id=category.organisation_id,
        before=before.model_dump(), after=out.model_dump(),
    )
    return out


@router.delete("/{category_id}", status_code=204)
async def delete_category(
    category_id: str,
    user: CurrentUser = Depends(require_permission("categories:delete")),
    db: AsyncSession = Depends(get_db_session),
):
    category = await _get_category_in_scope(db, category_id, user)
    if category.is_system:
        raise HTTPException(status_code=400, detail="System category cannot be deleted")
    before = await _category_out(db, category)

    async with atomic(db):
        await db.delete(category)

    await record_event(
        db, AuditEventType.CATEGORY_DELETED, entity="category", entity_id=category_id,
        actor_id=user.id, organisation_id=before.organisation_id, before=before.model_dump(),
    )


@router.get("/{category_id}/access", response_model=CategoryAccessOut)
async def get_category_access(
    category_id: str,
    user: CurrentUser = Depends(require_permission("categories:view")),
    db: AsyncSession = Depends(get_db_session),
):
    await _get_category_in_scope(db, category_id, user)
    return CategoryAccessOut(category_id=category_id, roles=await list_category_role_access(db, category_id))


@router.put("/{category_id}/access", response_model=CategoryAccessOut)
async def update_category_access(
    category_id: str,
    data: CategoryAccessUpdate,
    user: CurrentUser = Depends(require_permission("categories:access:configure")),
    db: AsyncSession = Depends(get_db_session),
):
    """Replace the role access list (owner only). An empty list restores the default."""
    if not user.is_owner:
        raise HTTPException(status_code=403, detail="Only owner can modify access")
    category = await _get_category_in_scope(db, category_id, user)
    before = await list_category_role_access(db, category_id)

    roles = await set_category_role_access(db, category_id, data.roles)

    await record_event(
        db, AuditEventType.CATEGORY_ACCESS_UPDATED, entity="category", entity_id=category_id,
        actor_id=user.id, organisation_id=category.organisation_id,
        before={"roles": before}, after={"roles": roles},
    )
    return CategoryAccessOut(category_id=category_id, roles=roles)
