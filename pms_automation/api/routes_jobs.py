from __future__ import annotations

import json
from typing import List, NoReturn, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, HTTPException, Request, UploadFile
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pms_automation.api.schemas_artifacts import AgentOutputResponse, AuditEventResponse, TaskResponse
from pms_automation.api.schemas_jobs import (
    ApprovalRequest,
    ClientApprovalRequest,
    DeleteResponse,
    JobCreateRequest,
    JobListResponse,
    JobResponse,
    Pagination,
    ResponseLogRequest,
    RetryRequest,
    RetryResponse,
)
from pms_automation.core.audit import list_audit_events
from pms_automation.core.config import settings
from pms_automation.db.models import Artifact, JobSource, PmsJob, Task
from pms_automation.db.session import get_session
from pms_automation.domain.approvals import set_approval
from pms_automation.domain.errors import PipelineError, PipelineErrorKind
from pms_automation.domain.job_service import create_job, delete_job, update_response_log
from pms_automation.domain.projection import get_automation_status, list_active_jobs, list_jobs
from pms_automation.domain.retry import retry_step
from pms_automation.domain.status import ApprovalKind, AutomationState
from pms_automation.runtime.runner import PipelineRunner
from pms_automation.runtime.store import load_job

router = APIRouter(prefix="/pms", tags=["pms"])

_HTTP_STATUS = {
    PipelineErrorKind.JOB_NOT_FOUND: 404,
    PipelineErrorKind.INVALID_JOB_INPUT: 400,
    PipelineErrorKind.INVALID_RETRY_TARGET: 400,
    PipelineErrorKind.CONCURRENT_RUN_CONFLICT: 409,
}


def _raise_http(e: PipelineError) -> NoReturn:
    raise HTTPException(status_code=_HTTP_STATUS.get(e.kind, 500), detail=e.to_detail()) from e


def _bad_request(message: str) -> NoReturn:
    raise HTTPException(
        status_code=400,
        detail={"kind": PipelineErrorKind.INVALID_JOB_INPUT.value, "message": message},
    )


def get_runner(request: Request) -> PipelineRunner:
    return request.app.state.runner


def _job_response(job: PmsJob) -> JobResponse:
    return JobResponse.model_validate(job, from_attributes=True)


async def _ensure_job_exists(session: AsyncSession, job_id: str) -> None:
    try:
        await load_job(session, job_id)
    except PipelineError as e:
        _raise_http(e)


# -----------------------
# creation
# -----------------------

@router.post("/jobs", response_model=JobResponse, status_code=201)
async def create_job_endpoint(
    req: JobCreateRequest,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
    runner: PipelineRunner = Depends(get_runner),
):
    try:
        job = await create_job(
            session,
            source=req.source,
            organization_id=req.organization_id,
            domain=req.domain,
            location_id=req.location_id,
            csv_text=req.text,
            filename=req.filename,
            pms_type=req.pms_type,
            manual_data=req.manual_data,
        )
    except PipelineError as e:
        _raise_http(e)

    background_tasks.add_task(runner.run_in_background, job.id)
    return _job_response(job)


@router.post("/upload", response_model=JobResponse, status_code=201)
async def upload_csv(
    background_tasks: BackgroundTasks,
    csvFile: UploadFile = File(...),
    organizationId: str = Form(...),
    domain: Optional[str] = Form(None),
    pmsType: Optional[str] = Form(None),
    session: AsyncSession = Depends(get_session),
    runner: PipelineRunner = Depends(get_runner),
):
    filename = csvFile.filename or "upload.csv"
    if csvFile.content_type != "text/csv" and not filename.lower().endswith(".csv"):
        _bad_request("Only CSV files are allowed")

    raw = await csvFile.read()
    if len(raw) > settings.max_upload_bytes:
        raise HTTPException(
            status_code=413,
            detail={"kind": PipelineErrorKind.INVALID_JOB_INPUT.value, "message": "File too large"},
        )
    try:
        text = raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        _bad_request("CSV file must be UTF-8 encoded")

    try:
        job = await create_job(
            session,
            source=JobSource.CSV,
            organization_id=organizationId,
            domain=domain,
            csv_text=text,
            filename=filename,
            pms_type=pmsType,
        )
    except PipelineError as e:
        _raise_http(e)

    background_tasks.add_task(runner.run_in_background, job.id)
    return _job_response(job)


# -----------------------
# listings / projection
# -----------------------

def _parse_statuses(raw: Optional[str]) -> List[AutomationState]:
    statuses: List[AutomationState] = []
    for part in (raw or "").split(","):
        part = part.strip()
        if not part:
            continue
        try:
            statuses.append(AutomationState(part))
        except ValueError:
            _bad_request(f"unknown status: {part}")
    return statuses


@router.get("/jobs", response_model=JobListResponse)
async def list_jobs_endpoint(
    status: Optional[str] = None,
    isApproved: Optional[int] = None,
    organization_id: Optional[str] = None,
    domain: Optional[str] = None,
    page: int = 1,
    perPage: Optional[int] = None,
    session: AsyncSession = Depends(get_session),
):
    if isApproved not in (None, 0, 1):
        _bad_request("isApproved must be 1 or 0")

    result = await list_jobs(
        session,
        statuses=_parse_statuses(status),
        is_approved=None if isApproved is None else bool(isApproved),
        organization_id=organization_id,
        domain=domain,
        page=page,
        per_page=perPage,
    )
    return JobListResponse(
        jobs=[_job_response(j) for j in result.jobs],
        pagination=Pagination(
            page=result.page,
            perPage=result.per_page,
            total=result.total,
            totalPages=result.total_pages,
            hasNextPage=result.has_next_page,
        ),
    )


@router.get("/jobs/active", response_model=list[JobResponse])
async def list_active_jobs_endpoint(
    organization_id: Optional[str] = None,
    session: AsyncSession = Depends(get_session),
):
    jobs = await list_active_jobs(session, organization_id=organization_id)
    return [_job_response(j) for j in jobs]


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(job_id: str, session: AsyncSession = Depends(get_session)):
    try:
        job = await load_job(session, job_id)
    except PipelineError as e:
        _raise_http(e)
    return _job_response(job)


@router.get("/jobs/{job_id}/automation-status")
async def get_job_automation_status(job_id: str, session: AsyncSession = Depends(get_session)):
    try:
        detail = await get_automation_status(session, job_id)
    except PipelineError as e:
        _raise_http(e)
    return {"jobId": job_id, "automationStatus": detail.to_json()}


# -----------------------
# operator actions
# -----------------------

async def _toggle(
    *,
    job_id: str,
    which: ApprovalKind,
    value: bool,
    background_tasks: BackgroundTasks,
    session: AsyncSession,
    runner: PipelineRunner,
) -> JobResponse:
    def signal(target: str) -> None:
        background_tasks.add_task(runner.run_in_background, target)

    try:
        job = await set_approval(
            session, job_id=job_id, which=which, value=value, locks=runner.locks, signal=signal
        )
    except PipelineError as e:
        _raise_http(e)
    return _job_response(job)


@router.patch("/jobs/{job_id}/approval", response_model=JobResponse)
async def set_admin_approval(
    job_id: str,
    req: ApprovalRequest,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
    runner: PipelineRunner = Depends(get_runner),
):
    return await _toggle(
        job_id=job_id,
        which=ApprovalKind.ADMIN,
        value=req.isApproved,
        background_tasks=background_tasks,
        session=session,
        runner=runner,
    )


@router.patch("/jobs/{job_id}/client-approval", response_model=JobResponse)
async def set_client_approval(
    job_id: str,
    req: ClientApprovalRequest,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
    runner: PipelineRunner = Depends(get_runner),
):
    return await _toggle(
        job_id=job_id,
        which=ApprovalKind.CLIENT,
        value=req.isClientApproved,
        background_tasks=background_tasks,
        session=session,
        runner=runner,
    )


@router.patch("/jobs/{job_id}/response", response_model=JobResponse)
async def update_job_response(
    job_id: str,
    req: ResponseLogRequest,
    session: AsyncSession = Depends(get_session),
    runner: PipelineRunner = Depends(get_runner),
):
    value = None
    if req.responseLog is not None and req.responseLog.strip():
        try:
            value = json.loads(req.responseLog)
        except json.JSONDecodeError as e:
            _bad_request(f"responseLog must be valid JSON: {e.msg}")

    try:
        job = await update_response_log(session, job_id=job_id, response_log=value, locks=runner.locks)
    except PipelineError as e:
        _raise_http(e)
    return _job_response(job)


@router.post("/jobs/{job_id}/retry", response_model=RetryResponse)
async def retry_job_step(
    job_id: str,
    req: RetryRequest,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
    runner: PipelineRunner = Depends(get_runner),
):
    try:
        result = await retry_step(session, job_id=job_id, step=req.stepToRetry, locks=runner.locks)
    except PipelineError as e:
        _raise_http(e)

    background_tasks.add_task(runner.run_in_background, job_id)
    return RetryResponse(**result)


@router.delete("/jobs/{job_id}", response_model=DeleteResponse)
async def delete_job_endpoint(
    job_id: str,
    session: AsyncSession = Depends(get_session),
    runner: PipelineRunner = Depends(get_runner),
):
    try:
        await delete_job(session, job_id=job_id, locks=runner.locks)
    except PipelineError as e:
        _raise_http(e)
    return DeleteResponse(jobId=job_id)


# -----------------------
# diagnostics
# -----------------------

@router.get("/jobs/{job_id}/events", response_model=list[AuditEventResponse])
async def get_job_events(job_id: str, session: AsyncSession = Depends(get_session)):
    await _ensure_job_exists(session, job_id)

    events = await list_audit_events(session, job_id)
    return [AuditEventResponse.model_validate(e, from_attributes=True) for e in events]


@router.get("/jobs/{job_id}/agent-outputs", response_model=list[AgentOutputResponse])
async def get_job_agent_outputs(job_id: str, session: AsyncSession = Depends(get_session)):
    await _ensure_job_exists(session, job_id)

    res = await session.execute(
        select(Artifact).where(Artifact.job_id == job_id).order_by(Artifact.id.asc())
    )
    artifacts = res.scalars().all()
    return [AgentOutputResponse.model_validate(a, from_attributes=True) for a in artifacts]


@router.get("/jobs/{job_id}/tasks", response_model=list[TaskResponse])
async def get_job_tasks(job_id: str, session: AsyncSession = Depends(get_session)):
    await _ensure_job_exists(session, job_id)

    res = await session.execute(select(Task).where(Task.job_id == job_id).order_by(Task.id.asc()))
    tasks = res.scalars().all()
    return [TaskResponse.model_validate(t, from_attributes=True) for t in tasks]
