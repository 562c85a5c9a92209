import asyncio

import pytest
from sqlalchemy import func, select

from pms_automation.db.models import AuditEvent, AuditEventType, JobSource
from pms_automation.domain.approvals import set_approval
from pms_automation.domain.errors import (
    ConcurrentRunConflict,
    InvalidJobInput,
    InvalidRetryTarget,
    JobNotFound,
    SubAgentFailure,
)
from pms_automation.domain.job_service import create_job, delete_job, update_response_log
from pms_automation.domain.projection import get_automation_status, list_active_jobs, list_jobs
from pms_automation.domain.retry import retry_step
from pms_automation.domain.status import ApprovalKind, AutomationState, MonthlyAgentKey, StepKey, StepState


async def _set(env, job_id, which, value, signals=None):
    async with env.session_factory() as session:
        return await set_approval(
            session,
            job_id=job_id,
            which=which,
            value=value,
            locks=env.locks,
            signal=signals.append if signals is not None else None,
        )


async def _count_events(env, job_id, event_type):
    async with env.session_factory() as session:
        res = await session.execute(
            select(func.count(AuditEvent.id)).where(AuditEvent.job_id == job_id, AuditEvent.event_type == event_type)
        )
        return res.scalar_one()


def test_setting_an_approval_twice_changes_nothing(env):
    async def scenario():
        await env.setup()
        job_id = await env.create_csv()
        await env.runner.advance(job_id)

        signals = []
        await _set(env, job_id, ApprovalKind.ADMIN, True, signals)
        first = await env.job(job_id)

        await _set(env, job_id, ApprovalKind.ADMIN, True, signals)
        second = await env.job(job_id)

        assert signals == [job_id]
        assert second.updated_at == first.updated_at
        assert second.automation_status == first.automation_status
        assert await _count_events(env, job_id, AuditEventType.APPROVAL_CHANGED) == 1

    asyncio.run(scenario())


def test_revoking_after_the_gate_has_no_retroactive_effect(env):
    async def scenario():
        await env.setup()
        job_id = await env.create_csv()
        await env.runner.advance(job_id)
        await _set(env, job_id, ApprovalKind.ADMIN, True)
        await env.runner.advance(job_id)

        signals = []
        job = await _set(env, job_id, ApprovalKind.ADMIN, False, signals)
        assert job.is_approved is False
        assert signals == []

        detail = await env.status(job_id)
        assert detail.steps[StepKey.ADMIN_APPROVAL].status == StepState.COMPLETED
        assert detail.current_step == StepKey.CLIENT_APPROVAL
        assert detail.status == AutomationState.AWAITING_APPROVAL

    asyncio.run(scenario())


def test_approval_given_before_the_gate_is_reached(env):
    async def scenario():
        await env.setup()
        job_id = await env.create_csv()
        await _set(env, job_id, ApprovalKind.ADMIN, True)

        detail = await env.status(job_id)
        assert detail.steps[StepKey.ADMIN_APPROVAL].status == StepState.PENDING

        detail = await env.runner.advance(job_id)
        assert detail.steps[StepKey.ADMIN_APPROVAL].status == StepState.COMPLETED
        assert detail.current_step == StepKey.CLIENT_APPROVAL
        assert detail.status == AutomationState.AWAITING_APPROVAL

    asyncio.run(scenario())


def test_approval_during_a_run_is_left_to_the_run(env):
    async def scenario():
        await env.setup()
        job_id = await env.create_csv()
        await env.runner.advance(job_id)

        async with env.locks.hold(job_id):
            await _set(env, job_id, ApprovalKind.ADMIN, True)
            detail = await env.status(job_id)
            assert detail.status == AutomationState.AWAITING_APPROVAL
            assert detail.steps[StepKey.ADMIN_APPROVAL].status == StepState.PROCESSING

        detail = await env.runner.advance(job_id)
        assert detail.steps[StepKey.ADMIN_APPROVAL].status == StepState.COMPLETED
        assert detail.current_step == StepKey.CLIENT_APPROVAL

    asyncio.run(scenario())


def test_retry_is_refused_unless_the_job_failed(env):
    async def scenario():
        await env.setup()
        job_id = await env.create_csv()
        await env.runner.advance(job_id)

        async with env.session_factory() as session:
            with pytest.raises(InvalidRetryTarget, match="only failed jobs"):
                await retry_step(session, job_id=job_id, step="pms_parser", locks=env.locks)
            with pytest.raises(InvalidRetryTarget, match="unknown step"):
                await retry_step(session, job_id=job_id, step="publish", locks=env.locks)

    asyncio.run(scenario())


def test_retry_targets_only_the_failing_step(env, agents):
    async def scenario():
        await env.setup()
        agents.failures[MonthlyAgentKey.SUMMARY_AGENT] = "boom"
        job_id = await env.create_csv()
        await env.runner.advance(job_id)
        await _set(env, job_id, ApprovalKind.ADMIN, True)
        await _set(env, job_id, ApprovalKind.CLIENT, True)
        with pytest.raises(SubAgentFailure):
            await env.runner.advance(job_id)

        async with env.session_factory() as session:
            with pytest.raises(InvalidRetryTarget, match="not the failed step"):
                await retry_step(session, job_id=job_id, step="pms_parser", locks=env.locks)

    asyncio.run(scenario())


def test_retry_while_running_is_a_conflict(env, agents):
    async def scenario():
        await env.setup()
        agents.failures[MonthlyAgentKey.CRO_OPTIMIZER] = "boom"
        job_id = await env.create_manual()
        with pytest.raises(SubAgentFailure):
            await env.runner.advance(job_id)

        async with env.locks.hold(job_id):
            async with env.session_factory() as session:
                with pytest.raises(ConcurrentRunConflict):
                    await retry_step(session, job_id=job_id, step="monthly_agents", locks=env.locks)

        assert (await env.status(job_id)).status == AutomationState.FAILED

    asyncio.run(scenario())


def test_manual_rows_are_validated_at_creation(env):
    async def scenario():
        await env.setup()
        async with env.session_factory() as session:
            with pytest.raises(InvalidJobInput, match="Row 2: Invalid date format"):
                await create_job(
                    session,
                    source=JobSource.MANUAL,
                    organization_id="org-1",
                    manual_data=[
                        {"date": "2024-03-01", "referral_type": "other"},
                        {"date": "March", "referral_type": "other"},
                    ],
                )
            with pytest.raises(InvalidJobInput):
                await create_job(session, source=JobSource.MANUAL, organization_id="org-1", manual_data=[])
            with pytest.raises(InvalidJobInput, match="Row 1: production_amount must be a number"):
                await create_job(
                    session,
                    source=JobSource.MANUAL,
                    organization_id="org-1",
                    manual_data=[{"date": "2024-03-01", "referral_type": "other", "production_amount": float("nan")}],
                )
            with pytest.raises(InvalidJobInput, match="organization_id or domain"):
                await create_job(session, source=JobSource.CSV, csv_text="x")
            with pytest.raises(InvalidJobInput):
                await create_job(session, source=JobSource.CSV, organization_id="org-1")

        job_id = await env.create_manual(organization_id=None, domain="smile.example")
        job = await env.job(job_id)
        assert job.organization_id == "smile.example"
        assert job.response_log["recordsProcessed"] == 2
        assert await _count_events(env, job_id, AuditEventType.JOB_CREATED) == 1

    asyncio.run(scenario())


def test_response_log_edit_and_delete(env):
    async def scenario():
        await env.setup()
        job_id = await env.create_csv()

        async with env.session_factory() as session:
            job = await update_response_log(session, job_id=job_id, response_log={"note": "edited"}, locks=env.locks)
        assert job.response_log == {"note": "edited"}

        async with env.locks.hold(job_id):
            async with env.session_factory() as session:
                with pytest.raises(ConcurrentRunConflict):
                    await delete_job(session, job_id=job_id, locks=env.locks)

        async with env.session_factory() as session:
            await delete_job(session, job_id=job_id, locks=env.locks)
        with pytest.raises(JobNotFound):
            await env.job(job_id)
        assert await _count_events(env, job_id, AuditEventType.JOB_CREATED) == 0

    asyncio.run(scenario())


def test_listing_filters_and_paginates(env):
    async def scenario():
        await env.setup()
        pending = [await env.create_csv(organization_id="org-a") for _ in range(3)]
        done = await env.create_manual(organization_id="org-b", domain="b.example")
        await env.runner.advance(done)
        await env.runner.advance(pending[0])
        await _set(env, pending[0], ApprovalKind.ADMIN, True)

        async with env.session_factory() as session:
            page1 = await list_jobs(session, organization_id="org-a", per_page=2)
            assert page1.total == 3
            assert len(page1.jobs) == 2
            assert page1.total_pages == 2
            assert page1.has_next_page

            page2 = await list_jobs(session, organization_id="org-a", per_page=2, page=2)
            assert len(page2.jobs) == 1
            assert not page2.has_next_page
            assert {j.id for j in page1.jobs + page2.jobs} == set(pending)

            completed = await list_jobs(session, statuses=[AutomationState.COMPLETED])
            assert [j.id for j in completed.jobs] == [done]

            approved = await list_jobs(session, is_approved=True)
            assert [j.id for j in approved.jobs] == [pending[0]]

            by_domain = await list_jobs(session, domain="b.example")
            assert by_domain.total == 1

            empty = await list_jobs(session, organization_id="nobody")
            assert empty.total == 0
            assert empty.total_pages == 1
            assert not empty.has_next_page

            active = await list_active_jobs(session)
            assert set(j.id for j in active) == set(pending)

            detail = await get_automation_status(session, done)
            assert detail.status == AutomationState.COMPLETED

    asyncio.run(scenario())
