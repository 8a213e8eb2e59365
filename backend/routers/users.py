# routers/users.py — Current user profile and organisation scope
from typing import Optional, List

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, CurrentUser
from database import get_db_session
from models import Organisation

router = APIRouter(prefix="/api/v1", tags=["Users"])


class OrganisationOut(BaseModel):
    id: str
    name: str
    parent_id: Optional[str] = None


class ProfileOut(BaseModel):
    id: str
    email: str
    name: str
    role: str
    organisation_id: str
    organisation_name: Optional[str] = None
    inherited_roles: List[str]


class MeOut(BaseModel):
    user: ProfileOut
    scope: List[str]


@router.get("/me", response_model=MeOut)
async def get_me(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Current user with inherited roles and organisation scope"""
    org = await db.get(Organisation, user.organisation_id)
    return MeOut(
        user=ProfileOut(
            id=user.id,
            email=user.email,
            name=user.name,
            role=user.role,
            organisation_id=user.organisation_id,
            organisation_name=org.name if org else None,
            inherited_roles=user.inherited_roles,
        ),
        scope=user.org_scope,
    )


@router.get("/organisations", response_model=List[OrganisationOut])
async def list_scoped_organisations(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Organisations the current user may act within"""
    if not user.org_scope:
        return []
    stmt = (
        select(Organisation)
        .where(Organisation.id.in_(user.org_scope))
        .order_by(Organisation.created_at.asc())
    )
    orgs = (await db.execute(stmt)).scalars().all()
    return [OrganisationOut(id=o.id, name=o.name, parent_id=o.parent_id) for o in orgs]
