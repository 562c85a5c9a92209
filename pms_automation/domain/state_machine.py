"""Pure transition functions over ``AutomationStatusDetail``.

Every function returns a new value and leaves its input untouched, so a
snapshot handed to a reader can never change underneath it.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set

from pms_automation.domain.status import (
    AGENT_LABELS,
    STEP_LABELS,
    STEP_ORDER,
    AutomationState,
    AutomationStatusDetail,
    AutomationSummary,
    MonthlyAgentKey,
    StepDetail,
    StepKey,
    StepState,
)

GATE_STEPS: Set[StepKey] = {StepKey.ADMIN_APPROVAL, StepKey.CLIENT_APPROVAL}
RETRYABLE_STEPS: Set[StepKey] = {StepKey.PMS_PARSER, StepKey.MONTHLY_AGENTS}
MANUAL_SKIPPED_STEPS: List[StepKey] = [StepKey.PMS_PARSER, StepKey.ADMIN_APPROVAL, StepKey.CLIENT_APPROVAL]
DONE_STATES: Set[StepState] = {StepState.COMPLETED, StepState.SKIPPED}

_ALLOWED: Dict[StepState, Set[StepState]] = {
    StepState.PENDING: {StepState.PROCESSING, StepState.COMPLETED},
    StepState.PROCESSING: {StepState.COMPLETED, StepState.FAILED},
    # retry rewind is the only way out of FAILED
    StepState.FAILED: {StepState.PENDING},
    StepState.COMPLETED: set(),
    StepState.SKIPPED: set(),
}

_STEP_MESSAGES: Dict[StepKey, str] = {
    StepKey.FILE_UPLOAD: "Receiving uploaded file",
    StepKey.PMS_PARSER: "Parsing PMS data",
    StepKey.ADMIN_APPROVAL: "Awaiting admin approval",
    StepKey.CLIENT_APPROVAL: "Awaiting client approval",
    StepKey.MONTHLY_AGENTS: "Running monthly agents",
    StepKey.TASK_CREATION: "Creating tasks",
    StepKey.COMPLETE: "Automation complete",
}


@dataclass(frozen=True)
class TransitionError(Exception):
    step: StepKey
    from_state: StepState
    to_state: StepState
    def __str__(self) -> str:
        return f"invalid step transition for {self.step.value}: {self.from_state.value} -> {self.to_state.value}"


class InvariantViolation(ValueError):
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_transition_allowed(step: StepKey, from_state: StepState, to_state: StepState) -> None:
    allowed = _ALLOWED.get(from_state, set())
    if to_state not in allowed:
        raise TransitionError(step=step, from_state=from_state, to_state=to_state)


# -----------------------
# construction / queries
# -----------------------

def initial_status(*, manual: bool, now: Optional[datetime] = None) -> AutomationStatusDetail:
    now = now or utcnow()
    steps: Dict[StepKey, StepDetail] = {}
    for key in STEP_ORDER:
        detail = StepDetail()
        if key == StepKey.MONTHLY_AGENTS:
            detail.agents_completed = []
        steps[key] = detail

    current = StepKey.FILE_UPLOAD
    message = "Waiting to process uploaded file"
    if manual:
        # the manual entry itself is the upload
        steps[StepKey.FILE_UPLOAD] = StepDetail(status=StepState.COMPLETED, started_at=now, completed_at=now)
        for key in MANUAL_SKIPPED_STEPS:
            steps[key] = StepDetail(status=StepState.SKIPPED)
        current = StepKey.MONTHLY_AGENTS
        message = "Manual entry received, waiting for monthly agents"

    return AutomationStatusDetail(
        status=AutomationState.PENDING,
        current_step=current,
        message=message,
        progress=compute_progress(steps),
        steps=steps,
        started_at=now,
    )


def compute_progress(steps: Dict[StepKey, StepDetail]) -> int:
    done = 0
    for key in STEP_ORDER:
        detail = steps.get(key)
        if detail is None or detail.status not in DONE_STATES:
            break
        done += 1
    return round(100 * done / len(STEP_ORDER))


def next_step(detail: AutomationStatusDetail) -> Optional[StepKey]:
    for key in STEP_ORDER:
        if detail.steps[key].status not in DONE_STATES:
            return key
    return None


def failed_step(detail: AutomationStatusDetail) -> Optional[StepKey]:
    for key in STEP_ORDER:
        if detail.steps[key].status == StepState.FAILED:
            return key
    return None


def is_terminal(detail: AutomationStatusDetail) -> bool:
    return detail.status in {AutomationState.COMPLETED, AutomationState.FAILED}


# -----------------------
# transitions
# -----------------------

def _move(detail: AutomationStatusDetail, step: StepKey, to_state: StepState) -> AutomationStatusDetail:
    ensure_transition_allowed(step, detail.steps[step].status, to_state)
    new = detail.model_copy(deep=True)
    new.steps[step].status = to_state
    return new


def start_step(detail: AutomationStatusDetail, step: StepKey, *, now: Optional[datetime] = None) -> AutomationStatusDetail:
    now = now or utcnow()
    new = _move(detail, step, StepState.PROCESSING)
    new.steps[step].started_at = now
    new.steps[step].completed_at = None
    new.steps[step].error = None
    new.status = AutomationState.PROCESSING
    new.current_step = step
    new.current_sub_step = None
    new.message = _STEP_MESSAGES[step]
    new.error = None
    return new


def complete_step(
    detail: AutomationStatusDetail,
    step: StepKey,
    *,
    message: Optional[str] = None,
    now: Optional[datetime] = None,
) -> AutomationStatusDetail:
    now = now or utcnow()
    new = _move(detail, step, StepState.COMPLETED)
    new.steps[step].completed_at = now
    if new.steps[step].started_at is None:
        new.steps[step].started_at = now
    if step == StepKey.MONTHLY_AGENTS:
        new.steps[step].current_agent = None
        new.steps[step].sub_step = None
    new.status = AutomationState.PROCESSING
    new.current_step = step
    new.current_sub_step = None
    new.message = message or f"{STEP_LABELS[step]} completed"
    new.progress = compute_progress(new.steps)
    return new


def fail_step(
    detail: AutomationStatusDetail,
    step: StepKey,
    error: str,
    *,
    now: Optional[datetime] = None,
) -> AutomationStatusDetail:
    if detail.steps[step].status == StepState.PENDING:
        detail = start_step(detail, step, now=now)
    new = _move(detail, step, StepState.FAILED)
    new.steps[step].error = error
    new.status = AutomationState.FAILED
    new.current_step = step
    new.message = f"{STEP_LABELS[step]} failed"
    new.error = error
    return new


def await_approval(detail: AutomationStatusDetail, step: StepKey, *, now: Optional[datetime] = None) -> AutomationStatusDetail:
    if step not in GATE_STEPS:
        raise ValueError(f"{step.value} is not an approval step")
    new = detail.model_copy(deep=True)
    if new.steps[step].status == StepState.PENDING:
        new = start_step(new, step, now=now)
    new.status = AutomationState.AWAITING_APPROVAL
    new.current_step = step
    new.message = _STEP_MESSAGES[step]
    return new


def agent_started(detail: AutomationStatusDetail, agent: MonthlyAgentKey) -> AutomationStatusDetail:
    new = detail.model_copy(deep=True)
    step = new.steps[StepKey.MONTHLY_AGENTS]
    step.current_agent = agent
    step.sub_step = agent.value
    new.current_sub_step = agent.value
    new.message = f"Running {AGENT_LABELS[agent]}"
    return new


def agent_completed(detail: AutomationStatusDetail, agent: MonthlyAgentKey) -> AutomationStatusDetail:
    new = detail.model_copy(deep=True)
    step = new.steps[StepKey.MONTHLY_AGENTS]
    completed = list(step.agents_completed or [])
    if agent not in completed:
        completed.append(agent)
    step.agents_completed = completed
    new.message = f"{AGENT_LABELS[agent]} completed ({len(completed)}/{len(MonthlyAgentKey)})"
    return new


def finish(
    detail: AutomationStatusDetail,
    summary: AutomationSummary,
    *,
    now: Optional[datetime] = None,
) -> AutomationStatusDetail:
    now = now or utcnow()
    new = detail
    if new.steps[StepKey.COMPLETE].status == StepState.PENDING:
        new = start_step(new, StepKey.COMPLETE, now=now)
    new = complete_step(new, StepKey.COMPLETE, message=_STEP_MESSAGES[StepKey.COMPLETE], now=now)
    new.status = AutomationState.COMPLETED
    new.summary = summary
    new.completed_at = now
    new.progress = 100
    return new


def rewind(detail: AutomationStatusDetail, step: StepKey) -> AutomationStatusDetail:
    """Reset a failed step to pending so the pipeline can resume from it."""
    new = _move(detail, step, StepState.PENDING)
    target = new.steps[step]
    target.started_at = None
    target.completed_at = None
    target.error = None
    if step == StepKey.MONTHLY_AGENTS:
        target.agents_completed = []
        target.current_agent = None
        target.sub_step = None
    new.status = AutomationState.PROCESSING
    new.current_step = step
    new.current_sub_step = None
    new.error = None
    new.completed_at = None
    new.message = f"Retrying {STEP_LABELS[step]}"
    new.progress = compute_progress(new.steps)
    return new


# -----------------------
# invariants
# -----------------------

def check_invariants(detail: AutomationStatusDetail) -> List[str]:
    problems: List[str] = []

    missing = [k.value for k in STEP_ORDER if k not in detail.steps]
    if missing:
        return [f"missing steps: {', '.join(missing)}"]

    for i, later in enumerate(STEP_ORDER):
        if detail.steps[later].status != StepState.COMPLETED:
            continue
        for earlier in STEP_ORDER[:i]:
            if detail.steps[earlier].status not in DONE_STATES:
                problems.append(f"{later.value} completed before {earlier.value}")

    failed = [k for k in STEP_ORDER if detail.steps[k].status == StepState.FAILED]
    if detail.status == AutomationState.FAILED:
        if len(failed) != 1:
            problems.append(f"failed job must have exactly one failed step, found {len(failed)}")
        elif failed[0] != detail.current_step:
            problems.append("failed step is not the current step")
    elif failed:
        problems.append(f"{failed[0].value} is failed but job status is {detail.status.value}")

    if detail.status == AutomationState.AWAITING_APPROVAL and detail.current_step not in GATE_STEPS:
        problems.append("awaiting_approval outside an approval step")

    if detail.status == AutomationState.COMPLETED:
        if any(detail.steps[k].status not in DONE_STATES for k in STEP_ORDER):
            problems.append("completed job has unfinished steps")
        if detail.summary is None:
            problems.append("completed job has no summary")

    return problems


def ensure_consistent(detail: AutomationStatusDetail) -> None:
    problems = check_invariants(detail)
    if problems:
        raise InvariantViolation("; ".join(problems))
