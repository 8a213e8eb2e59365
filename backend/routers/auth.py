# routers/auth.py — Login endpoint
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from audit import record_event
from auth import AuthService, UserLogin, ACCESS_TOKEN_EXPIRE_MINUTES
from database import get_db_session
from models import AuditEventType, Organisation

router = APIRouter(prefix="/api/v1/auth", tags=["Authentication"])


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: Dict[str, Any]
    scope: List[str]


async def _audit_failed_login(db: AsyncSession, email: str) -> None:
    user = await AuthService.get_user_by_email(email, db)
    await record_event(
        db,
        AuditEventType.LOGIN_FAILED,
        entity="user",
        entity_id=user.id if user else email,
        actor_id=user.id if user else None,
        organisation_id=user.organisation_id if user else None,
        metadata={"email": email},
    )


@router.post("/login", response_model=TokenResponse)
async def login(
    credentials: UserLogin,
    db: AsyncSession = Depends(get_db_session),
):
    """Authenticate and receive an access token plus the resolved scope"""
    user = await AuthService.authenticate_user(credentials.email, credentials.password, db)
    if not user:
        await _audit_failed_login(db, credentials.email)
        raise HTTPException(status_code=401, detail="Invalid credentials")

    current = await AuthService.build_current_user(user, db)
    organisation: Optional[Organisation] = await db.get(Organisation, user.organisation_id)

    await record_event(
        db,
        AuditEventType.LOGIN,
        entity="user",
        entity_id=user.id,
        actor_id=user.id,
        organisation_id=user.organisation_id,
        metadata={"email": user.email, "scope": current.org_scope},
    )

    return TokenResponse(
        access_token=AuthService.create_access_token(user),
        expires_in=ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user={
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "role": current.role,
            "organisation_id": user.organisation_id,
            "organisation_name": organisation.name if organisation else None,
        },
        scope=current.org_scope,
    )
