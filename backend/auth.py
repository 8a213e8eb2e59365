# auth.py — Authentication and request-time authorization for Tasklane
# Features:
# - bcrypt password hashing
# - HS256 JWT access tokens (sub, role, organisation_id)
# - Brute force protection on login
# - Per-request user reload + organisation scope resolution
# - Route guards backed by permissions.authorize()

import os
import uuid
import secrets
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, List
from collections import defaultdict

import bcrypt
from jose import jwt, JWTError, ExpiredSignatureError
from fastapi import HTTPException, Depends, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db_session
from models import User, Organisation, SystemRole
from permissions import authorize
from rbac import inherited_roles, normalize_role, resolve_org_scope

logger = logging.getLogger("tasklane.auth")

# ============================================================
# CONFIGURATION
# ============================================================

SECRET_KEY = os.getenv("JWT_SECRET_KEY", "")
if not SECRET_KEY:
    SECRET_KEY = secrets.token_urlsafe(64)
    logger.warning("JWT_SECRET_KEY not set. Generated ephemeral key; tokens will not survive a restart.")

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "120"))
MAX_LOGIN_ATTEMPTS = 5
LOGIN_LOCKOUT_MINUTES = 15

security = HTTPBearer()

# In-memory brute force tracker (single desktop process)
_login_attempts: Dict[str, list] = defaultdict(list)


# ============================================================
# PYDANTIC SCHEMAS
# ============================================================

class UserLogin(BaseModel):
    # Plain string: seeded accounts live on reserved domains EmailStr rejects
    email: str = Field(..., min_length=3, max_length=320)
    password: str = Field(..., min_length=1)


class CurrentUser(BaseModel):
    id: str
    email: str
    name: str
    organisation_id: str
    role: str
    is_active: bool
    org_scope: List[str] = []

    @property
    def is_owner(self) -> bool:
        return self.role == SystemRole.OWNER.value

    @property
    def inherited_roles(self) -> List[str]:
        return inherited_roles(self.role)

    def in_scope(self, organisation_id: Optional[str]) -> bool:
        return organisation_id is not None and organisation_id in self.org_scope


# ============================================================
# AUTH SERVICE
# ============================================================

class AuthService:
    """Password, token and login handling"""

    @staticmethod
    def hash_password(password: str) -> str:
        salt = bcrypt.gensalt(rounds=12)
        return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")

    @staticmethod
    def verify_password(password: str, password_hash: str) -> bool:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))

    @staticmethod
    def create_access_token(user: User, expires_delta: Optional[timedelta] = None) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": user.id,
            "role": user.role,
            "organisation_id": user.organisation_id,
            "name": user.name,
            "exp": now + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)),
            "iat": now,
            "type": "access",
            "jti": str(uuid.uuid4()),
        }
        return jwt.encode(payload, SECRET_KEY, algorithm=ALGORITHM)

    @staticmethod
    def verify_token(token: str) -> Dict[str, Any]:
        try:
            return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        except ExpiredSignatureError:
            raise HTTPException(status_code=401, detail="Token expired")
        except JWTError:
            raise HTTPException(status_code=401, detail="Invalid or expired token")

    @staticmethod
    def _check_brute_force(email: str) -> None:
        """Check if login attempts exceed threshold"""
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=LOGIN_LOCKOUT_MINUTES)
        _login_attempts[email] = [t for t in _login_attempts[email] if t > cutoff]
        if len(_login_attempts[email]) >= MAX_LOGIN_ATTEMPTS:
            raise HTTPException(
                status_code=429,
                detail=f"Too many login attempts. Try again in {LOGIN_LOCKOUT_MINUTES} minutes.",
            )

    @staticmethod
    def _record_failed_attempt(email: str) -> None:
        _login_attempts[email].append(datetime.now(timezone.utc))

    @staticmethod
    def _clear_attempts(email: str) -> None:
        _login_attempts.pop(email, None)

    @staticmethod
    async def get_user_by_email(email: str, db: AsyncSession) -> Optional[User]:
        stmt = select(User).where(User.email == email.strip().lower())
        return (await db.execute(stmt)).scalar_one_or_none()

    @staticmethod
    async def authenticate_user(email: str, password: str, db: AsyncSession) -> Optional[User]:
        """Return the user on valid credentials, None otherwise.

        Raises 403 for a deactivated account and 429 when locked out.
        """
        key = email.strip().lower()
        AuthService._check_brute_force(key)

        user = await AuthService.get_user_by_email(key, db)
        if not user or not AuthService.verify_password(password, user.password_hash):
            AuthService._record_failed_attempt(key)
            return None
        if not user.is_active:
            raise HTTPException(status_code=403, detail="User is inactive")

        AuthService._clear_attempts(key)
        user.last_login_at = datetime.now(timezone.utc)
        await db.commit()
        return user

    @staticmethod
    async def list_organisations(db: AsyncSession) -> List[Organisation]:
        stmt = select(Organisation).order_by(Organisation.created_at.asc())
        return list((await db.execute(stmt)).scalars().all())

    @staticmethod
    async def build_current_user(user: User, db: AsyncSession) -> CurrentUser:
        organisations = await AuthService.list_organisations(db)
        scope = resolve_org_scope(user, organisations)
        return CurrentUser(
            id=user.id,
            email=user.email,
            name=user.name,
            organisation_id=user.organisation_id,
            role=normalize_role(user.role),
            is_active=user.is_active,
            org_scope=sorted(scope),
        )


# ============================================================
# FASTAPI DEPENDENCIES
# ============================================================

async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db_session),
) -> CurrentUser:
    payload = AuthService.verify_token(credentials.credentials)

    if payload.get("type") != "access":
        raise HTTPException(status_code=401, detail="Invalid token type")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")

    user = await db.get(User, user_id)
    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="User is inactive or does not exist")

    return await AuthService.build_current_user(user, db)


def require_permission(*scopes: str):
    """Dependency factory: every scope must pass the authorization gate"""
    async def _check(
        user: CurrentUser = Depends(get_current_user),
        db: AsyncSession = Depends(get_db_session),
    ) -> CurrentUser:
        for scope in scopes:
            if not await authorize(db, user, scope):
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail=f"Missing required permission: {scope}",
                )
        return user
    return _check


async def require_owner(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not user.is_owner:
        raise HTTPException(status_code=403, detail="Owner required")
    return user
