# routers/tasks.py — Kanban tasks scoped by organisation, role and category
from datetime import datetime
from typing import Optional, List, Dict, Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import select, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from audit import record_event
from auth import require_permission, CurrentUser
from category_access import (
    PERSONAL_CATEGORY, WORK_CATEGORY,
    filter_visible_tasks, is_task_visible, list_accessible_categories_for_role, visible_category_names,
)
from database import get_db_session
from models import Task, TaskPriority, TaskStatus, AuditEventType

router = APIRouter(prefix="/api/v1/tasks", tags=["Tasks"])

TASK_STATUSES = {s.value for s in TaskStatus}
TASK_PRIORITIES = {p.value for p in TaskPriority}


# ============================================================
# SCHEMAS
# ============================================================

class TaskCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=500)
    description: Optional[str] = None
    status: str = TaskStatus.TODO.value
    category: str = WORK_CATEGORY
    priority: str = TaskPriority.MEDIUM.value
    due_date: Optional[datetime] = None
    assigned_to: Optional[str] = None
    organisation_id: Optional[str] = None

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, v):
        if not v.strip():
            raise ValueError("Task title is required")
        return v.strip()

    @field_validator("status")
    @classmethod
    def valid_status(cls, v):
        if v not in TASK_STATUSES:
            raise ValueError(f"Status must be one of {sorted(TASK_STATUSES)}")
        return v

    @field_validator("priority")
    @classmethod
    def valid_priority(cls, v):
        if v not in TASK_PRIORITIES:
            raise ValueError(f"Priority must be one of {sorted(TASK_PRIORITIES)}")
        return v


class TaskUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=500)
    description: Optional[str] = None
    status: Optional[str] = None
    category: Optional[str] = None
    priority: Optional[str] = None
    due_date: Optional[datetime] = None
    assigned_to: Optional[str] = None
    position: Optional[int] = None
    organisation_id: Optional[str] = None

    @field_validator("status")
    @classmethod
    def valid_status(cls, v):
        if v is not None and v not in TASK_STATUSES:
            raise ValueError(f"Status must be one of {sorted(TASK_STATUSES)}")
        return v

    @field_validator("priority")
    @classmethod
    def valid_priority(cls, v):
        if v is not None and v not in TASK_PRIORITIES:
            raise ValueError(f"Priority must be one of {sorted(TASK_PRIORITIES)}")
        return v


class TaskOut(BaseModel):
    id: str
    organisation_id: str
    title: str
    description: Optional[str] = None
    status: str
    category: str
    priority: str
    due_date: Optional[str] = None
    position: int
    created_by: Optional[str] = None
    assigned_to: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


def _task_out(task: Task) -> TaskOut:
    return TaskOut(
        id=task.id,
        organisation_id=task.organisation_id,
        title=task.title,
        description=task.description,
        status=task.status,
        category=task.category,
        priority=task.priority,
        due_date=task.due_date.isoformat() if task.due_date else None,
        position=task.position,
        created_by=task.created_by,
        assigned_to=task.assigned_to,
        created_at=task.created_at.isoformat() if task.created_at else None,
        updated_at=task.updated_at.isoformat() if task.updated_at else None,
    )


def _task_snapshot(task: Task) -> Dict[str, Any]:
    return _task_out(task).model_dump()


# ============================================================
# HELPERS
# ============================================================

async def _require_category_access(
    db: AsyncSession, user: CurrentUser, organisation_id: str, category: str
) -> None:
    """Non-owners may only file tasks under categories their role can see."""
    if category == PERSONAL_CATEGORY or user.is_owner:
        return
    categories = await list_accessible_categories_for_role(db, [organisation_id], user.role)
    if not any(c.name == category for c in categories):
        raise HTTPException(status_code=403, detail="Category access denied")


async def _get_task_in_scope(db: AsyncSession, task_id: str, user: CurrentUser) -> Task:
    task = await db.get(Task, task_id)
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    if not user.in_scope(task.organisation_id):
        raise HTTPException(status_code=403, detail="Task outside allowed scope")

    allowed = await visible_category_names(db, user, [task.organisation_id])
    if not is_task_visible(task, user, allowed):
        if task.category == PERSONAL_CATEGORY:
            raise HTTPException(status_code=403, detail="Cannot modify personal task you do not own")
        raise HTTPException(status_code=403, detail="Category access denied")
    return task


async def _next_position(db: AsyncSession, organisation_id: str) -> int:
    stmt = select(func.max(Task.position)).where(Task.organisation_id == organisation_id)
    current = (await db.execute(stmt)).scalar()
    return (current or 0) + 1


# ============================================================
# ROUTES
# ============================================================

@router.get("", response_model=List[TaskOut])
async def list_tasks(
    status: Optional[str] = Query(None),
    category: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    assigned_to: Optional[str] = Query(None),
    order_by: str = Query("position", pattern="^(position|due_date)$"),
    user: CurrentUser = Depends(require_permission("tasks:view")),
    db: AsyncSession = Depends(get_db_session),
):
    """Tasks across the caller's organisation scope, filtered by visibility"""
    if not user.org_scope:
        return []

    stmt = select(Task).where(Task.organisation_id.in_(user.org_scope))
    if status and status.strip():
        stmt = stmt.where(Task.status == status.strip())
    if category and category.strip():
        stmt = stmt.where(Task.category == category.strip())
    if assigned_to and assigned_to.strip():
        stmt = stmt.where(Task.assigned_to == assigned_to.strip())
    if search and search.strip():
        pattern = f"%{search.strip()}%"
        stmt = stmt.where(or_(Task.title.ilike(pattern), Task.description.ilike(pattern)))

    if order_by == "due_date":
        stmt = stmt.order_by(Task.due_date.is_(None), Task.due_date.asc(), Task.position.asc())
    else:
        stmt = stmt.order_by(Task.position.asc(), Task.created_at.asc())

    tasks = (await db.execute(stmt)).scalars().all()
    allowed = await visible_category_names(db, user, user.org_scope)
    return [_task_out(t) for t in filter_visible_tasks(tasks, user, allowed)]


@router.post("", response_model=TaskOut, status_code=201)
async def create_task(
    data: TaskCreate,
    user: CurrentUser = Depends(require_permission("tasks:create")),
    db: AsyncSession = Depends(get_db_session),
):
    organisation_id = data.organisation_id or user.organisation_id
    if not user.in_scope(organisation_id):
        raise HTTPException(status_code=403, detail="Organisation not in scope")

    category = (data.category or WORK_CATEGORY).strip()
    if category == PERSONAL_CATEGORY and data.assigned_to and data.assigned_to != user.id:
        raise HTTPException(status_code=400, detail="Personal task cannot be pre-assigned to another user")
    await _require_category_access(db, user, organisation_id, category)

    task = Task(
        organisation_id=organisation_id,
        title=data.title,
        description=data.description,
        status=data.status,
        category=category,
        priority=data.priority,
        due_date=data.due_date,
        position=await _next_position(db, organisation_id),
        created_by=user.id,
        assigned_to=data.assigned_to,
    )
    db.add(task)
    await db.commit()
    await db.refresh(task)

    await record_event(
        db, AuditEventType.TASK_CREATED, entity="task", entity_id=task.id,
        actor_id=user.id, organisation_id=organisation_id, after=_task_snapshot(task),
    )
    return _task_out(task)


@router.put("/{task_id}", response_model=TaskOut)
async def update_task(
    task_id: str,
    data: TaskUpdate,
    user: CurrentUser = Depends(require_permission("tasks:update")),
    db: AsyncSession = Depends(get_db_session),
):
    task = await _get_task_in_scope(db, task_id, user)
    updates = data.model_dump(exclude_unset=True)
    if not updates:
        return _task_out(task)

    if updates.get("organisation_id") and not user.in_scope(updates["organisation_id"]):
        raise HTTPException(status_code=403, detail="Target organisation outside allowed scope")

    before = _task_snapshot(task)
    target_org = updates.get("organisation_id") or task.organisation_id

    if updates.get("category") is not None:
        new_category = updates["category"].strip()
        moves_personal = (task.category == PERSONAL_CATEGORY) != (new_category == PERSONAL_CATEGORY)
        if moves_personal and task.created_by != user.id:
            raise HTTPException(status_code=403, detail="Only the creator may move a task into or out of Personal")
        await _require_category_access(db, user, target_org, new_category)
        updates["category"] = new_category
    elif "organisation_id" in updates:
        await _require_category_access(db, user, target_org, task.category)

    if "title" in updates:
        if not (updates["title"] or "").strip():
            raise HTTPException(status_code=400, detail="Task title is required")
        updates["title"] = updates["title"].strip()

    for field, value in updates.items():
        if field in ("title", "status", "priority", "organisation_id", "category", "position") and value is None:
            continue
        setattr(task, field, value)

    await db.commit()
    await db.refresh(task)

    await record_event(
        db, AuditEventType.TASK_UPDATED, entity="task", entity_id=task.id,
        actor_id=user.id, organisation_id=task.organisation_id,
        before=before, after=_task_snapshot(task),
    )
    return _task_out(task)


@router.delete("/{task_id}", status_code=204)
async def delete_task(
    task_id: str,
    user: CurrentUser = Depends(require_permission("tasks:delete")),
    db: AsyncSession = Depends(get_db_session),
):
    task = await _get_task_in_scope(db, task_id, user)
    before = _task_snapshot(task)
    organisation_id = task.organisation_id

    await db.delete(task)
    await db.commit()

    await record_event(
        db, AuditEventType.TASK_DELETED, entity="task", entity_id=task_id,
        actor_id=user.id, organisation_id=organisation_id, before=before,
    )
