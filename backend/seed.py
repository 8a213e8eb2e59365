# seed.py — First-run provisioning
# Idempotent: safe to run on every start.

import os
import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from auth import AuthService
from category_access import ensure_system_categories
from database import atomic
from exceptions import NotFound
from models import Organisation, RolePermission, SystemRole, Task, User, utcnow
from roles import ensure_system_roles

logger = logging.getLogger("tasklane.seed")

SEED_DEMO_DATA = os.getenv("SEED_DEMO_DATA", "true").lower() in ("1", "true", "yes")

DEMO_USERS = [
    {"key": "owner", "email": "owner@acme.test", "password": "Owner123!", "name": "Olivia Owner", "role": SystemRole.OWNER},
    {"key": "admin", "email": "admin@acme.test", "password": "Admin123!", "name": "Avery Admin", "role": SystemRole.ADMIN},
    {"key": "viewer", "email": "viewer@acme.test", "password": "Viewer123!", "name": "Vera Viewer", "role": SystemRole.VIEWER},
]

DEMO_TASKS = [
    {"title": "Plan quarterly objectives", "description": "Draft OKRs and circulate for review.",
     "status": "todo", "category": "Work", "priority": "high", "due_in_days": 7,
     "created_by": "owner", "assigned_to": "admin"},
    {"title": "Schedule field training", "description": "Coordinate onboarding workshop for new hires.",
     "status": "in_progress", "category": "Work", "priority": "medium", "due_in_days": 3,
     "created_by": "admin", "assigned_to": "viewer"},
    {"title": "Team social outing", "description": "Plan informal gathering to celebrate launch.",
     "status": "todo", "category": "Personal", "priority": "low", "due_in_days": 14,
     "created_by": "admin", "assigned_to": "viewer"},
]

# Global overrides granted to admin on a fresh database
DEFAULT_ADMIN_PERMISSIONS = ["admin:access", "users:view-all", "roles:view", "roles:create", "roles:update"]
# Ensured on every start, including existing databases
ENSURED_ADMIN_PERMISSIONS = ["roles:delete"]


async def create_organisation(db: AsyncSession, name: str, parent_id: Optional[str] = None) -> Organisation:
    """Provision an organisation under an existing parent (or as a root)."""
    if parent_id is not None and not await db.get(Organisation, parent_id):
        raise NotFound("Parent organisation not found")
    async with atomic(db):
        org = Organisation(name=name.strip(), parent_id=parent_id)
        db.add(org)
    await ensure_system_categories(db, org.id)
    logger.info(f"Organisation provisioned: {org.name} ({org.id})")
    return org


async def _insert_global_permission_if_missing(db: AsyncSession, role: str, permission: str) -> None:
    stmt = select(RolePermission.id).where(
        RolePermission.organisation_id.is_(None),
        RolePermission.role == role,
        RolePermission.permission == permission,
    )
    if (await db.execute(stmt)).first() is None:
        db.add(RolePermission(organisation_id=None, role=role, permission=permission, enabled=True))


async def _seed_demo_organisation(db: AsyncSession) -> None:
    org = await create_organisation(db, "Acme")

    async with atomic(db):
        users = {}
        for entry in DEMO_USERS:
            user = User(
                organisation_id=org.id,
                email=entry["email"],
                password_hash=AuthService.hash_password(entry["password"]),
                name=entry["name"],
                role=entry["role"].value,
                is_active=True,
            )
            db.add(user)
            users[entry["key"]] = user
        await db.flush()

        for position, entry in enumerate(DEMO_TASKS, start=1):
            db.add(Task(
                organisation_id=org.id,
                title=entry["title"],
                description=entry["description"],
                status=entry["status"],
                category=entry["category"],
                priority=entry["priority"],
                due_date=utcnow() + timedelta(days=entry["due_in_days"]),
                position=position,
                created_by=users[entry["created_by"]].id,
                assigned_to=users[entry["assigned_to"]].id,
            ))

        for permission in DEFAULT_ADMIN_PERMISSIONS:
            await _insert_global_permission_if_missing(db, SystemRole.ADMIN.value, permission)

    logger.info(f"Seeded demo organisation with {len(DEMO_USERS)} users and {len(DEMO_TASKS)} tasks")


async def seed_initial_data(db: AsyncSession) -> None:
    await ensure_system_roles(db)

    org_count = (await db.execute(select(func.count(Organisation.id)))).scalar() or 0
    if org_count == 0 and SEED_DEMO_DATA:
        await _seed_demo_organisation(db)

    org_ids = (await db.execute(select(Organisation.id))).scalars().all()
    for org_id in org_ids:
        await ensure_system_categories(db, org_id)

    async with atomic(db):
        for permission in ENSURED_ADMIN_PERMISSIONS:
            await _insert_global_permission_if_missing(db, SystemRole.ADMIN.value, permission)
