from __future__ import annotations
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pms_automation.db.models import AuditEvent, AuditEventType

async def write_audit_event(
    session: AsyncSession,
    *,
    job_id: str,
    event_type: AuditEventType,
    payload: Optional[Dict[str, Any]] = None,
    commit: bool = True
) -> None:
    """Append one event to the job's log. Never touches the status projection."""
    session.add(AuditEvent(job_id=job_id, event_type=AuditEventType(event_type), payload=payload or {}))
    if commit:
        await session.commit()

async def list_audit_events(session: AsyncSession, job_id: str) -> List[AuditEvent]:
    res = await session.execute(
        select(AuditEvent).where(AuditEvent.job_id == job_id).order_by(AuditEvent.id.asc())
    )
    return list(res.scalars().all())
