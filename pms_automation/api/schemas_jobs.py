from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from pms_automation.db.models import JobSource
from pms_automation.domain.status import AutomationState, AutomationStatusDetail


class JobCreateRequest(BaseModel):
    organization_id: Optional[str] = None
    domain: Optional[str] = None
    location_id: Optional[str] = None
    source: JobSource = JobSource.CSV
    filename: Optional[str] = None
    pms_type: Optional[str] = None
    # csv jobs
    text: Optional[str] = None
    # manual jobs
    manual_data: Optional[List[Dict[str, Any]]] = Field(default=None, alias="manualData")

    model_config = ConfigDict(populate_by_name=True)


class JobResponse(BaseModel):
    id: str
    organization_id: str
    location_id: Optional[str] = None
    domain: Optional[str] = None
    source: JobSource
    pms_type: Optional[str] = None
    filename: Optional[str] = None
    status: AutomationState
    is_approved: bool
    is_client_approved: bool
    response_log: Optional[Any] = None
    time_elapsed: Optional[int] = None
    created_at: datetime
    automation_status: Optional[AutomationStatusDetail] = None


class Pagination(BaseModel):
    page: int
    perPage: int
    total: int
    totalPages: int
    hasNextPage: bool


class JobListResponse(BaseModel):
    jobs: List[JobResponse]
    pagination: Pagination


class ApprovalRequest(BaseModel):
    isApproved: bool


class ClientApprovalRequest(BaseModel):
    isClientApproved: bool


class ResponseLogRequest(BaseModel):
    # JSON text from the operator editor, or null to clear
    responseLog: Optional[str] = None


class RetryRequest(BaseModel):
    stepToRetry: str


class RetryResponse(BaseModel):
    jobId: str
    stepRetried: str
    organization_id: Optional[str] = None


class DeleteResponse(BaseModel):
    deleted: Literal[True] = True
    jobId: str
