# routers/admin.py — Administration: users, roles and permission overrides
# Every route requires admin:access (owners always pass).
from typing import Optional, List, Dict, Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from audit import record_event
from auth import AuthService, get_current_user, require_permission, require_owner, CurrentUser
from database import atomic, get_db_session
from exceptions import NotFound, SystemRoleImmutable
from models import User, SystemRole, AuditEventType
from permissions import authorize, has_role_permission, role_permission_matrix, set_role_permission
from rbac import normalize_role, permission_catalog
from roles import (
    create_role, delete_role, get_role_by_name, list_roles,
    resolve_assignable_role, role_to_dict, update_role,
)

ADMIN_ACCESS = "admin:access"

router = APIRouter(
    prefix="/api/v1/admin",
    tags=["Administration"],
    dependencies=[Depends(require_permission(ADMIN_ACCESS))],
)


# ============================================================
# SCHEMAS
# ============================================================

class UserCreate(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=8)
    name: str = Field(..., min_length=1, max_length=200)
    role: str
    organisation_id: Optional[str] = None
    is_active: bool = True


class UserUpdate(BaseModel):
    email: Optional[EmailStr] = None
    password: Optional[str] = Field(None, min_length=8)
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    role: Optional[str] = None
    organisation_id: Optional[str] = None
    is_active: Optional[bool] = None


class UserOut(BaseModel):
    id: str
    organisation_id: str
    email: str
    name: str
    role: str
    is_active: bool
    last_login_at: Optional[str] = None
    created_at: Optional[str] = None


class RoleCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=64)
    description: Optional[str] = None


class RoleUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=64)
    description: Optional[str] = None


class RoleOut(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    is_system: bool
    created_at: Optional[str] = None


class PermissionToggle(BaseModel):
    enabled: bool


class PermissionEntry(BaseModel):
    permission: str
    enabled: bool


class RolePermissionsOut(BaseModel):
    role: str
    permissions: List[PermissionEntry]
    catalog: List[str]
    scope: str = "global"


def _user_out(user: User) -> UserOut:
    return UserOut(
        id=user.id,
        organisation_id=user.organisation_id,
        email=user.email,
        name=user.name,
        role=user.role,
        is_active=bool(user.is_active),
        last_login_at=user.last_login_at.isoformat() if user.last_login_at else None,
        created_at=user.created_at.isoformat() if user.created_at else None,
    )


async def _assignable_role(db: AsyncSession, actor: CurrentUser, requested: str) -> str:
    role = await resolve_assignable_role(db, requested)
    if role == SystemRole.OWNER.value and not actor.is_owner:
        raise HTTPException(status_code=403, detail="Only an owner can assign the owner role")
    return role


async def _get_user_in_scope(db: AsyncSession, user_id: str, actor: CurrentUser) -> User:
    user = await db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    if not actor.in_scope(user.organisation_id):
        raise HTTPException(status_code=403, detail="Organisation not in scope")
    if normalize_role(user.role) == SystemRole.OWNER.value and not actor.is_owner:
        raise HTTPException(status_code=403, detail="Only an owner can manage owner accounts")
    return user


# ============================================================
# USERS
# ============================================================

@router.get("/users", response_model=List[UserOut])
async def list_users(
    actor: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """All users with users:view-all, otherwise users in organisations within scope"""
    stmt = select(User).order_by(User.created_at.asc())
    if not await authorize(db, actor, "users:view-all"):
        if not actor.org_scope:
            return []
        stmt = stmt.where(User.organisation_id.in_(actor.org_scope))
    users = (await db.execute(stmt)).scalars().all()
    return [_user_out(u) for u in users]


@router.post("/users", response_model=UserOut, status_code=201)
async def create_user(
    data: UserCreate,
    actor: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    organisation_id = data.organisation_id or actor.organisation_id
    if not actor.in_scope(organisation_id):
        raise HTTPException(status_code=403, detail="Organisation not in scope")
    role = await _assignable_role(db, actor, data.role)

    email = data.email.strip().lower()
    if await AuthService.get_user_by_email(email, db):
        raise HTTPException(status_code=409, detail="Email already registered")

    async with atomic(db):
        user = User(
            organisation_id=organisation_id,
            email=email,
            password_hash=AuthService.hash_password(data.password),
            name=data.name.strip(),
            role=role,
            is_active=data.is_active,
        )
        db.add(user)

    out = _user_out(user)
    await record_event(
        db, AuditEventType.USER_CREATED, entity="user", entity_id=user.id,
        actor_id=actor.id, organisation_id=organisation_id, after=out.model_dump(),
    )
    return out


@router.put("/users/{user_id}", response_model=UserOut)
async def update_user(
    user_id: str,
    data: UserUpdate,
    actor: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    user = await _get_user_in_scope(db, user_id, actor)
    before = _user_out(user).model_dump()
    updates = data.model_dump(exclude_unset=True)

    if updates.get("organisation_id") and not actor.in_scope(updates["organisation_id"]):
        raise HTTPException(status_code=403, detail="Target organisation outside allowed scope")
    if updates.get("role") is not None:
        updates["role"] = await _assignable_role(db, actor, updates["role"])
    if updates.get("email") is not None:
        updates["email"] = updates["email"].strip().lower()
        existing = await AuthService.get_user_by_email(updates["email"], db)
        if existing and existing.id != user.id:
            raise HTTPException(status_code=409, detail="Email already registered")

    async with atomic(db):
        for field in ("email", "name", "role", "organisation_id", "is_active"):
            if updates.get(field) is not None:
                setattr(user, field, updates[field])
        if updates.get("password"):
            user.password_hash = AuthService.hash_password(updates["password"])

    out = _user_out(user)
    await record_event(
        db, AuditEventType.USER_UPDATED, entity="user", entity_id=user.id,
        actor_id=actor.id, organisation_id=user.organisation_id,
        before=before, after=out.model_dump(),
    )
    return out


@router.delete("/users/{user_id}", status_code=204)
async def delete_user(
    user_id: str,
    actor: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    if user_id == actor.id:
        raise HTTPException(status_code=400, detail="Cannot delete your own account")
    user = await _get_user_in_scope(db, user_id, actor)
    before = _user_out(user).model_dump()

    async with atomic(db):
        await db.delete(user)

    await record_event(
        db, AuditEventType.USER_DELETED, entity="user", entity_id=user_id,
        actor_id=actor.id, organisation_id=before["organisation_id"], before=before,
    )


# ============================================================
# ADMIN ACCESS TOGGLE
# ============================================================

@router.get("/permissions/admin-access")
async def get_admin_access(db: AsyncSession = Depends(get_db_session)):
    enabled = await has_role_permission(db, None, SystemRole.ADMIN.value, ADMIN_ACCESS)
    return {"enabled": enabled, "role": SystemRole.ADMIN.value, "permission": ADMIN_ACCESS, "scope": "global"}


@router.put("/permissions/admin-access")
async def set_admin_access(
    data: PermissionToggle,
    actor: CurrentUser = Depends(require_owner),
    db: AsyncSession = Depends(get_db_session),
):
    await set_role_permission(db, None, SystemRole.ADMIN.value, ADMIN_ACCESS, data.enabled)
    await record_event(
        db, AuditEventType.PERMISSION_UPDATED, entity="role_permission",
        entity_id=f"{SystemRole.ADMIN.value}:{ADMIN_ACCESS}",
        actor_id=actor.id, organisation_id=actor.organisation_id,
        after={"role": SystemRole.ADMIN.value, "permission": ADMIN_ACCESS, "enabled": data.enabled},
    )
    return {"enabled": data.enabled}


# ============================================================
# ROLES
# ============================================================

@router.get("/roles", response_model=List[RoleOut])
async def get_roles(
    actor: CurrentUser = Depends(require_permission("roles:view")),
    db: AsyncSession = Depends(get_db_session),
):
    return [RoleOut(**role_to_dict(r)) for r in await list_roles(db)]


@router.post("/roles", response_model=RoleOut, status_code=201)
async def post_role(
    data: RoleCreate,
    actor: CurrentUser = Depends(require_permission("roles:create")),
    db: AsyncSession = Depends(get_db_session),
):
    role = await create_role(db, data.name, data.description)
    out = RoleOut(**role_to_dict(role))
    await record_event(
        db, AuditEventType.ROLE_CREATED, entity="role", entity_id=role.id,
        actor_id=actor.id, organisation_id=actor.organisation_id, after=out.model_dump(),
    )
    return out


@router.put("/roles/{name}", response_model=RoleOut)
async def put_role(
    name: str,
    data: RoleUpdate,
    actor: CurrentUser = Depends(require_permission("roles:update")),
    db: AsyncSession = Depends(get_db_session),
):
    existing = await get_role_by_name(db, name)
    before = role_to_dict(existing) if existing else None
    role = await update_role(db, name, data.model_dump(exclude_unset=True))
    out = RoleOut(**role_to_dict(role))
    await record_event(
        db, AuditEventType.ROLE_UPDATED, entity="role", entity_id=role.id,
        actor_id=actor.id, organisation_id=actor.organisation_id,
        before=before, after=out.model_dump(),
    )
    return out


@router.delete("/roles/{name}", status_code=204)
async def remove_role(
    name: str,
    actor: CurrentUser = Depends(require_permission("roles:delete")),
    db: AsyncSession = Depends(get_db_session),
):
    await delete_role(db, name)
    await record_event(
        db, AuditEventType.ROLE_DELETED, entity="role", entity_id=normalize_role(name),
        actor_id=actor.id, organisation_id=actor.organisation_id,
    )


@router.get("/roles/{name}/permissions", response_model=RolePermissionsOut)
async def get_role_permissions(
    name: str,
    actor: CurrentUser = Depends(require_permission("roles:view")),
    db: AsyncSession = Depends(get_db_session),
):
    """Display matrix of global overrides. Enforcement does not read this."""
    role = await get_role_by_name(db, name)
    if not role:
        raise NotFound("Role not found")
    matrix = await role_permission_matrix(db, role.name)
    return RolePermissionsOut(
        role=role.name,
        permissions=[PermissionEntry(**entry) for entry in matrix],
        catalog=permission_catalog(),
    )


@router.put("/roles/{name}/permissions/{permission}")
async def put_role_permission(
    name: str,
    permission: str,
    data: PermissionToggle,
    actor: CurrentUser = Depends(require_owner),
    db: AsyncSession = Depends(get_db_session),
) -> Dict[str, Any]:
    role = await get_role_by_name(db, name)
    if not role:
        raise NotFound("Role not found")
    if role.name == SystemRole.OWNER.value:
        raise SystemRoleImmutable("Cannot modify owner permissions")

    row = await set_role_permission(db, None, role.name, permission, data.enabled, require_existing_role=True)
    await record_event(
        db, AuditEventType.PERMISSION_UPDATED, entity="role_permission",
        entity_id=f"{role.name}:{row.permission}",
        actor_id=actor.id, organisation_id=actor.organisation_id,
        after={"role": role.name, "permission": row.permission, "enabled": data.enabled},
    )
    return {"role": role.name, "permission": row.permission, "enabled": data.enabled}
