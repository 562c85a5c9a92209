from __future__ import annotations

import enum
from typing import Optional

from pms_automation.domain.status import MonthlyAgentKey, StepKey


class PipelineErrorKind(str, enum.Enum):
    STEP_EXECUTION_FAILED = "StepExecutionFailed"
    SUB_AGENT_FAILURE = "SubAgentFailure"
    INVALID_RETRY_TARGET = "InvalidRetryTarget"
    CONCURRENT_RUN_CONFLICT = "ConcurrentRunConflict"
    JOB_NOT_FOUND = "JobNotFound"
    INVALID_JOB_INPUT = "InvalidJobInput"


class PipelineError(Exception):
    kind: PipelineErrorKind

    def __init__(self, message: str, *, job_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.job_id = job_id

    def to_detail(self) -> dict:
        return {"kind": self.kind.value, "message": self.message}


class StepExecutionFailed(PipelineError):
    kind = PipelineErrorKind.STEP_EXECUTION_FAILED

    def __init__(self, step: StepKey, error: str, *, job_id: Optional[str] = None) -> None:
        super().__init__(error, job_id=job_id)
        self.step = step
        self.error = error


class SubAgentFailure(StepExecutionFailed):
    kind = PipelineErrorKind.SUB_AGENT_FAILURE

    def __init__(self, agent: MonthlyAgentKey, error: str, *, job_id: Optional[str] = None) -> None:
        super().__init__(StepKey.MONTHLY_AGENTS, f"{agent.value}: {error}", job_id=job_id)
        self.agent = agent
        self.agent_error = error


class InvalidRetryTarget(PipelineError):
    kind = PipelineErrorKind.INVALID_RETRY_TARGET


class ConcurrentRunConflict(PipelineError):
    kind = PipelineErrorKind.CONCURRENT_RUN_CONFLICT


class JobNotFound(PipelineError):
    kind = PipelineErrorKind.JOB_NOT_FOUND

    def __init__(self, job_id: str) -> None:
        super().__init__("job not found", job_id=job_id)


class InvalidJobInput(PipelineError):
    kind = PipelineErrorKind.INVALID_JOB_INPUT
