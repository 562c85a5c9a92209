from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from pms_automation.agents.contracts import AgentInput, AgentOutput
from pms_automation.agents.registry import AgentRegistry
from pms_automation.core.audit import write_audit_event
from pms_automation.db.models import AuditEventType, PmsJob
from pms_automation.domain.errors import SubAgentFailure
from pms_automation.domain.state_machine import agent_completed, agent_started, fail_step
from pms_automation.domain.status import AutomationStatusDetail, MonthlyAgentKey, StepKey
from pms_automation.runtime.store import add_artifact, agent_result_id, next_agent_attempt

logger = logging.getLogger(__name__)

Persist = Callable[[AutomationStatusDetail], Awaitable[AutomationStatusDetail]]

FAN_OUT_AGENTS: List[MonthlyAgentKey] = [
    MonthlyAgentKey.SUMMARY_AGENT,
    MonthlyAgentKey.REFERRAL_ENGINE,
    MonthlyAgentKey.OPPORTUNITY_AGENT,
    MonthlyAgentKey.CRO_OPTIMIZER,
]


def records_from_response_log(value: Any) -> List[Dict[str, Any]]:
    """Operators may rewrite the response log, so accept either shape."""
    if isinstance(value, dict):
        value = value.get("records")
    if isinstance(value, list):
        return [r for r in value if isinstance(r, dict)]
    return []


class MonthlyAgentOrchestrator:
    """Runs data_fetch, then the four analysis agents concurrently.

    Completions are applied one at a time by the coroutine that owns the job
    lock, so the session and the status value are never shared between tasks.
    """

    def __init__(self, *, agents: AgentRegistry, timeout_s: float, max_parallel: int = 4) -> None:
        self.agents = agents
        self.timeout_s = timeout_s
        self.max_parallel = max(1, max_parallel)

    async def _invoke(self, key: MonthlyAgentKey, inputs: Dict[str, Any], ctx: Dict[str, Any]) -> AgentOutput:
        fn = self.agents.get(key)
        try:
            raw = await asyncio.wait_for(fn(inputs, ctx), timeout=self.timeout_s)
            out = AgentOutput.model_validate(raw)
        except asyncio.TimeoutError:
            return AgentOutput(success=False, error="timeout")
        except Exception as e:
            return AgentOutput(success=False, error=f"{type(e).__name__}: {e}")

        if not out.success and not out.error:
            out.error = "agent reported failure"
        return out

    async def _record(
        self,
        session: AsyncSession,
        *,
        job_id: str,
        key: MonthlyAgentKey,
        attempt: int,
        out: AgentOutput,
        after_halt: bool = False,
    ) -> str:
        artifact = await add_artifact(
            session,
            job_id=job_id,
            name=key.value,
            attempt=attempt,
            success=out.success,
            error=out.error,
            payload=out.payload,
            result_id=out.result_id,
            after_halt=after_halt,
        )
        result_id = agent_result_id(artifact)
        await write_audit_event(
            session,
            job_id=job_id,
            event_type=AuditEventType.AGENT_RESULT,
            payload={
                "agent": key.value,
                "attempt": attempt,
                "success": out.success,
                "resultId": result_id,
                "error": out.error,
                "afterHalt": after_halt,
            },
        )
        if out.success:
            logger.info("job %s: %s succeeded (result %s)", job_id, key.value, result_id)
        else:
            logger.warning(
                "job %s: %s failed%s: %s", job_id, key.value, " after halt" if after_halt else "", out.error
            )
        return result_id

    async def run(
        self,
        session: AsyncSession,
        *,
        job: PmsJob,
        detail: AutomationStatusDetail,
        persist: Persist,
    ) -> AutomationStatusDetail:
        """Return the status with every agent completed, or raise SubAgentFailure.

        On failure the step is already marked failed and persisted when this
        raises; agents still in flight are awaited and recorded as late results.
        """
        job_id = job.id
        attempt = await next_agent_attempt(session, job_id)
        ctx = {"job_id": job_id, "attempt": attempt}
        base = AgentInput(
            job_id=job_id,
            organization_id=job.organization_id,
            records=records_from_response_log(job.response_log),
        )

        # data_fetch gates the fan-out
        detail = await persist(agent_started(detail, MonthlyAgentKey.DATA_FETCH))
        out = await self._invoke(MonthlyAgentKey.DATA_FETCH, base.model_dump(), ctx)
        await self._record(session, job_id=job_id, key=MonthlyAgentKey.DATA_FETCH, attempt=attempt, out=out)
        if not out.success:
            failure = SubAgentFailure(MonthlyAgentKey.DATA_FETCH, out.error or "", job_id=job_id)
            await persist(fail_step(detail, StepKey.MONTHLY_AGENTS, failure.error))
            raise failure
        detail = await persist(agent_completed(detail, MonthlyAgentKey.DATA_FETCH))

        inputs = base.model_copy(update={"data": out.payload}).model_dump()
        waiting = list(FAN_OUT_AGENTS)
        running: Dict[asyncio.Task, MonthlyAgentKey] = {}
        launch_order: Dict[asyncio.Task, int] = {}
        failure: Optional[SubAgentFailure] = None

        while waiting or running:
            while waiting and failure is None and len(running) < self.max_parallel:
                key = waiting.pop(0)
                detail = await persist(agent_started(detail, key))
                task = asyncio.create_task(self._invoke(key, inputs, ctx))
                running[task] = key
                launch_order[task] = len(launch_order)

            if not running:
                break

            done, _ = await asyncio.wait(list(running), return_when=asyncio.FIRST_COMPLETED)
            for task in sorted(done, key=launch_order.__getitem__):
                key = running.pop(task)
                out = task.result()
                late = failure is not None
                await self._record(session, job_id=job_id, key=key, attempt=attempt, out=out, after_halt=late)
                if late:
                    continue
                if out.success:
                    detail = await persist(agent_completed(detail, key))
                else:
                    failure = SubAgentFailure(key, out.error or "", job_id=job_id)
                    detail = await persist(fail_step(detail, StepKey.MONTHLY_AGENTS, failure.error))
                    waiting.clear()

        if failure is not None:
            raise failure
        return detail
