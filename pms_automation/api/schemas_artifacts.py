from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel

from pms_automation.db.models import AuditEventType, TaskCategory


class AgentOutputResponse(BaseModel):
    id: int
    job_id: str
    name: str
    attempt: int
    result_id: Optional[str] = None
    success: bool
    error: Optional[str] = None
    after_halt: bool = False
    payload: Optional[Any] = None
    created_at: Optional[datetime] = None


class TaskResponse(BaseModel):
    id: int
    job_id: str
    organization_id: str
    title: str
    description: Optional[str] = None
    category: TaskCategory
    agent: str
    created_at: Optional[datetime] = None


class AuditEventResponse(BaseModel):
    id: int
    job_id: str
    event_type: AuditEventType
    payload: Dict[str, Any] = {}
    created_at: datetime
