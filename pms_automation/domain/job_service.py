from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from pms_automation.core.audit import write_audit_event
from pms_automation.db.models import Artifact, AuditEvent, AuditEventType, JobSource, PmsJob, Task
from pms_automation.domain.errors import InvalidJobInput
from pms_automation.domain.state_machine import initial_status
from pms_automation.parsing.pms_csv import MAX_REPORTED_ERRORS, validate_row
from pms_automation.runtime.locks import JobLocks
from pms_automation.runtime.store import load_job

logger = logging.getLogger(__name__)


def validate_manual_data(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    if not rows:
        raise InvalidJobInput("manualData must contain at least one row")

    records: List[Dict[str, Any]] = []
    errors: List[str] = []
    for row_number, row in enumerate(rows, start=1):
        record, row_errors = validate_row(row, row_number)
        errors.extend(row_errors)
        if record is not None:
            records.append(record)

    if errors:
        shown = "; ".join(errors[:MAX_REPORTED_ERRORS])
        raise InvalidJobInput(f"manualData validation failed ({len(errors)} errors): {shown}")
    return records


async def create_job(
    session: AsyncSession,
    *,
    source: JobSource,
    organization_id: Optional[str] = None,
    domain: Optional[str] = None,
    location_id: Optional[str] = None,
    csv_text: Optional[str] = None,
    filename: Optional[str] = None,
    pms_type: Optional[str] = None,
    manual_data: Optional[List[Dict[str, Any]]] = None,
) -> PmsJob:
    owner = organization_id or domain
    if not owner:
        raise InvalidJobInput("organization_id or domain is required")

    manual = source == JobSource.MANUAL
    response_log = None
    if manual:
        records = validate_manual_data(manual_data or [])
        response_log = {"records": records, "recordsProcessed": len(records)}
    elif csv_text is None:
        raise InvalidJobInput("csv jobs need a file")

    job = PmsJob(
        id=str(uuid.uuid4()),
        organization_id=owner,
        location_id=location_id,
        domain=domain,
        source=source,
        pms_type=pms_type,
        filename=filename,
        source_text=None if manual else csv_text,
        response_log=response_log,
    )
    detail = initial_status(manual=manual)
    job.automation_status = detail.to_json()
    job.status = detail.status
    session.add(job)
    await session.commit()
    await session.refresh(job)

    await write_audit_event(
        session,
        job_id=job.id,
        event_type=AuditEventType.JOB_CREATED,
        payload={
            "source": source.value,
            "organization_id": job.organization_id,
            "filename": job.filename,
            "records": len(response_log["records"]) if response_log else None,
        },
    )
    logger.info("job %s: created (%s) for %s", job.id, source.value, job.organization_id)
    return job


async def update_response_log(
    session: AsyncSession,
    *,
    job_id: str,
    response_log: Any,
    locks: JobLocks,
) -> PmsJob:
    async with locks.hold(job_id):
        job = await load_job(session, job_id)
        job.response_log = response_log
        await session.commit()
        await session.refresh(job)

        await write_audit_event(
            session,
            job_id=job_id,
            event_type=AuditEventType.RESPONSE_UPDATED,
            payload={"cleared": response_log is None},
        )
    return job


async def delete_job(session: AsyncSession, *, job_id: str, locks: JobLocks) -> None:
    async with locks.hold(job_id):
        job = await load_job(session, job_id)
        await session.execute(delete(Task).where(Task.job_id == job_id))
        await session.execute(delete(Artifact).where(Artifact.job_id == job_id))
        await session.execute(delete(AuditEvent).where(AuditEvent.job_id == job_id))
        await session.delete(job)
        await session.commit()
    locks.forget(job_id)
    logger.info("job %s: deleted", job_id)
