# audit.py — Audit event sink for HTTP callers
# The engine modules never call this; routers record an event after a
# mutation has committed.

import logging
from datetime import datetime
from typing import Any, Dict, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from models import AuditEventType, AuditLog

logger = logging.getLogger("tasklane.audit")


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items() if k != "password_hash"}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, datetime):
        return value.isoformat()
    return value


async def record_event(
    db: AsyncSession,
    action: Union[AuditEventType, str],
    entity: str,
    entity_id: Any,
    actor_id: Optional[str] = None,
    organisation_id: Optional[str] = None,
    before: Optional[Dict[str, Any]] = None,
    after: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    action_value = action.value if isinstance(action, AuditEventType) else str(action)
    if not action_value or not entity or entity_id is None:
        raise ValueError("Invalid audit event payload")

    entry = AuditLog(
        organisation_id=organisation_id,
        actor_id=actor_id,
        action=action_value,
        entity=entity,
        entity_id=str(entity_id),
        before=_jsonable(before) if before else None,
        after=_jsonable(after) if after else None,
        event_metadata=_jsonable(metadata) if metadata else None,
    )
    db.add(entry)
    await db.commit()

    summary = [f"[AUDIT] {action_value}", f"entity={entity}", f"entity_id={entity_id}"]
    if actor_id:
        summary.append(f"actor={actor_id}")
    if organisation_id:
        summary.append(f"org={organisation_id}")
    logger.info(" ".join(summary))
    return entry
