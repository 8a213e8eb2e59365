# models.py — Database models for the Tasklane backend
# - String UUID primary keys everywhere
# - Three seeded system roles (owner, admin, viewer) plus custom roles
# - Dynamic per-role permission overrides (global or per organisation)
# - Per-organisation categories with role-scoped visibility
# - Role names are stored lowercase; users reference roles by name

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from sqlalchemy import (
    Column, String, DateTime, JSON, Boolean, Integer,
    ForeignKey, Text, Index, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


# ============================================================
# ENUMS
# ============================================================

class SystemRole(str, PyEnum):
    OWNER = "owner"
    ADMIN = "admin"
    VIEWER = "viewer"


class TaskStatus(str, PyEnum):
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    DONE = "done"


class TaskPriority(str, PyEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class AuditEventType(str, PyEnum):
    # Auth events
    LOGIN = "auth.login"
    LOGIN_FAILED = "auth.login_failed"
    # Task events
    TASK_CREATED = "task.created"
    TASK_UPDATED = "task.updated"
    TASK_DELETED = "task.deleted"
    # Category events
    CATEGORY_CREATED = "category.created"
    CATEGORY_UPDATED = "category.updated"
    CATEGORY_DELETED = "category.deleted"
    CATEGORY_ACCESS_UPDATED = "category.access_updated"
    # Admin events
    USER_CREATED = "user.created"
    USER_UPDATED = "user.updated"
    USER_DELETED = "user.deleted"
    ROLE_CREATED = "role.created"
    ROLE_UPDATED = "role.updated"
    ROLE_DELETED = "role.deleted"
    PERMISSION_UPDATED = "permission.updated"


# ============================================================
# ORGANISATIONS & USERS
# ============================================================

class Organisation(Base):
    __tablename__ = "organisations"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String, nullable=False)
    # NULL = root of the tree
    parent_id = Column(String, ForeignKey("organisations.id", ondelete="CASCADE"), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_uuid)
    organisation_id = Column(
        String, ForeignKey("organisations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    email = Column(String, unique=True, nullable=False, index=True)
    password_hash = Column(String, nullable=False)
    name = Column(String, nullable=False)
    role = Column(String, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    last_login_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("idx_users_org_role", "organisation_id", "role"),
    )


# ============================================================
# ROLES & PERMISSIONS
# ============================================================

class Role(Base):
    """Role catalog row. System rows are seeded; custom rows are admin-defined."""
    __tablename__ = "roles"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String, unique=True, nullable=False)
    description = Column(Text, nullable=True)
    is_system = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class RolePermission(Base):
    """Dynamic permission override for one (organisation-or-global, role, permission)."""
    __tablename__ = "role_permissions"

    id = Column(String, primary_key=True, default=new_uuid)
    # NULL = global row, the scope used by every caller today
    organisation_id = Column(
        String, ForeignKey("organisations.id", ondelete="CASCADE"), nullable=True, index=True
    )
    role = Column(String, nullable=False, index=True)
    permission = Column(String, nullable=False)
    enabled = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("organisation_id", "role", "permission", name="uq_role_permission"),
        # NULL organisation ids are distinct to the constraint above
        Index(
            "uq_role_permission_global", "role", "permission", unique=True,
            sqlite_where=organisation_id.is_(None),
            postgresql_where=organisation_id.is_(None),
        ),
        Index("idx_role_permissions_lookup", "role", "permission"),
    )


# ============================================================
# CATEGORIES
# ============================================================

class Category(Base):
    __tablename__ = "categories"

    id = Column(String, primary_key=True, default=new_uuid)
    organisation_id = Column(
        String, ForeignKey("organisations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name = Column(String, nullable=False)
    is_system = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("organisation_id", "name", name="uq_category_org_name"),
    )


class CategoryRoleAccess(Base):
    """Explicit grant of category visibility to one role."""
    __tablename__ = "category_role_access"

    id = Column(String, primary_key=True, default=new_uuid)
    category_id = Column(
        String, ForeignKey("categories.id", ondelete="CASCADE"), nullable=False, index=True
    )
    role = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("category_id", "role", name="uq_category_role"),
    )


# ============================================================
# TASKS
# ============================================================

class Task(Base):
    __tablename__ = "tasks"

    id = Column(String, primary_key=True, default=new_uuid)
    organisation_id = Column(
        String, ForeignKey("organisations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    status = Column(String, nullable=False, default=TaskStatus.TODO.value)
    # Category name within the task's organisation
    category = Column(String, nullable=False, default="Work")
    priority = Column(String, nullable=False, default=TaskPriority.MEDIUM.value)
    due_date = Column(DateTime(timezone=True), nullable=True)
    position = Column(Integer, nullable=False, default=0)
    created_by = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    assigned_to = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_tasks_org_position", "organisation_id", "position"),
    )


# ============================================================
# AUDIT
# ============================================================

class AuditLog(Base):
    __tablename__ = "audit_log"

    id = Column(String, primary_key=True, default=new_uuid)
    organisation_id = Column(
        String, ForeignKey("organisations.id", ondelete="SET NULL"), nullable=True, index=True
    )
    actor_id = Column(String, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    action = Column(String, nullable=False, index=True)
    entity = Column(String, nullable=False)
    entity_id = Column(String, nullable=False)
    before = Column(JSON, nullable=True)
    after = Column(JSON, nullable=True)
    event_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)

    __table_args__ = (
        Index("idx_audit_org_created", "organisation_id", "created_at"),
    )
