from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Boolean, String, DateTime, Enum, Text, Integer, JSON
from sqlalchemy.orm import Mapped, mapped_column

from pms_automation.db.base import Base
from pms_automation.domain.status import AutomationState


def _now() -> datetime:
    return datetime.now(timezone.utc)


class JobSource(str, enum.Enum):
    CSV = "csv"
    MANUAL = "manual"


class PmsJob(Base):
    __tablename__ = "pms_jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)  # UUID string

    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    location_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    domain: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)

    source: Mapped[JobSource] = mapped_column(Enum(JobSource), nullable=False)
    pms_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    filename: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # raw CSV text for csv jobs; parsed by the pms_parser step
    source_text: Mapped[str | None] = mapped_column(Text, nullable=True)

    # mirrors automation_status["status"] so listings can filter in SQL
    status: Mapped[AutomationState] = mapped_column(
        Enum(AutomationState), nullable=False, default=AutomationState.PENDING, index=True
    )
    is_approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_client_approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # operator-editable result payload
    response_log: Mapped[Any] = mapped_column(JSON, nullable=True)

    # whole AutomationStatusDetail value, replaced on every write
    automation_status: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    time_elapsed: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now, onupdate=_now, nullable=False)


class AuditEventType(str, enum.Enum):
    JOB_CREATED = "JOB_CREATED"
    STEP_STARTED = "STEP_STARTED"
    STEP_COMPLETED = "STEP_COMPLETED"
    STEP_FAILED = "STEP_FAILED"
    AWAITING_APPROVAL = "AWAITING_APPROVAL"
    APPROVAL_CHANGED = "APPROVAL_CHANGED"
    AGENT_RESULT = "AGENT_RESULT"
    RETRY_REQUESTED = "RETRY_REQUESTED"
    RESPONSE_UPDATED = "RESPONSE_UPDATED"
    PIPELINE_COMPLETED = "PIPELINE_COMPLETED"


class AuditEvent(Base):
    __tablename__ = "audit_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    job_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    event_type: Mapped[AuditEventType] = mapped_column(Enum(AuditEventType), nullable=False)

    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now, nullable=False)


class Artifact(Base):
    """One sub-agent invocation, kept for diagnostics and task creation."""

    __tablename__ = "artifacts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)

    name: Mapped[str] = mapped_column(String(64), nullable=False)  # MonthlyAgentKey value
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    # agent-supplied result id; falls back to the row id when absent
    result_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    # result arrived after the fan-out had already halted on another agent's failure
    after_halt: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now, nullable=False)


class TaskCategory(str, enum.Enum):
    USER = "USER"
    ALLORO = "ALLORO"


class Task(Base):
    __tablename__ = "tasks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[TaskCategory] = mapped_column(Enum(TaskCategory), nullable=False, default=TaskCategory.ALLORO)
    agent: Mapped[str] = mapped_column(String(64), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now, nullable=False)
