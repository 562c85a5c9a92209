import pytest

from pms_automation.domain.state_machine import (
    InvariantViolation,
    TransitionError,
    check_invariants,
    complete_step,
    compute_progress,
    ensure_consistent,
    fail_step,
    finish,
    initial_status,
    next_step,
    rewind,
    start_step,
    await_approval,
    agent_completed,
    agent_started,
)
from pms_automation.domain.status import (
    AutomationState,
    AutomationSummary,
    MonthlyAgentKey,
    StepKey,
    StepState,
)


def test_initial_csv_status_starts_at_file_upload():
    detail = initial_status(manual=False)
    assert detail.status == AutomationState.PENDING
    assert detail.current_step == StepKey.FILE_UPLOAD
    assert detail.progress == 0
    assert all(s.status == StepState.PENDING for s in detail.steps.values())
    assert detail.steps[StepKey.MONTHLY_AGENTS].agents_completed == []
    assert check_invariants(detail) == []


def test_initial_manual_status_skips_parser_and_gates():
    detail = initial_status(manual=True)
    assert detail.steps[StepKey.FILE_UPLOAD].status == StepState.COMPLETED
    for key in (StepKey.PMS_PARSER, StepKey.ADMIN_APPROVAL, StepKey.CLIENT_APPROVAL):
        assert detail.steps[key].status == StepState.SKIPPED
    assert detail.current_step == StepKey.MONTHLY_AGENTS
    assert next_step(detail) == StepKey.MONTHLY_AGENTS
    assert detail.progress == 57


def test_progress_counts_only_the_contiguous_prefix():
    detail = initial_status(manual=False)
    steps = detail.model_copy(deep=True).steps
    steps[StepKey.FILE_UPLOAD].status = StepState.COMPLETED
    steps[StepKey.ADMIN_APPROVAL].status = StepState.COMPLETED
    assert compute_progress(steps) == 14


def test_transitions_do_not_mutate_the_input():
    before = initial_status(manual=False)
    after = start_step(before, StepKey.FILE_UPLOAD)
    assert before.steps[StepKey.FILE_UPLOAD].status == StepState.PENDING
    assert before.status == AutomationState.PENDING
    assert after.steps[StepKey.FILE_UPLOAD].status == StepState.PROCESSING
    assert after.status == AutomationState.PROCESSING


def test_completed_step_cannot_be_reentered():
    detail = complete_step(start_step(initial_status(manual=False), StepKey.FILE_UPLOAD), StepKey.FILE_UPLOAD)
    with pytest.raises(TransitionError):
        start_step(detail, StepKey.FILE_UPLOAD)


def test_skipped_steps_are_immutable():
    detail = initial_status(manual=True)
    with pytest.raises(TransitionError):
        start_step(detail, StepKey.PMS_PARSER)
    with pytest.raises(TransitionError):
        complete_step(detail, StepKey.ADMIN_APPROVAL)


def test_fail_step_from_pending_marks_job_failed():
    detail = fail_step(initial_status(manual=False), StepKey.FILE_UPLOAD, "Uploaded file is empty")
    assert detail.status == AutomationState.FAILED
    assert detail.current_step == StepKey.FILE_UPLOAD
    assert detail.error == "Uploaded file is empty"
    assert detail.steps[StepKey.FILE_UPLOAD].status == StepState.FAILED
    assert detail.steps[StepKey.FILE_UPLOAD].error == "Uploaded file is empty"
    ensure_consistent(detail)


def test_rewind_resets_monthly_agents_progress():
    detail = initial_status(manual=True)
    detail = start_step(detail, StepKey.MONTHLY_AGENTS)
    detail = agent_started(detail, MonthlyAgentKey.DATA_FETCH)
    detail = agent_completed(detail, MonthlyAgentKey.DATA_FETCH)
    detail = fail_step(detail, StepKey.MONTHLY_AGENTS, "cro_optimizer: boom")

    rewound = rewind(detail, StepKey.MONTHLY_AGENTS)
    step = rewound.steps[StepKey.MONTHLY_AGENTS]
    assert step.status == StepState.PENDING
    assert step.error is None
    assert step.agents_completed == []
    assert step.current_agent is None
    assert rewound.status == AutomationState.PROCESSING
    assert rewound.error is None
    ensure_consistent(rewound)


def test_rewind_requires_a_failed_step():
    with pytest.raises(TransitionError):
        rewind(initial_status(manual=False), StepKey.PMS_PARSER)


def test_await_approval_only_for_gate_steps():
    detail = initial_status(manual=False)
    with pytest.raises(ValueError):
        await_approval(detail, StepKey.PMS_PARSER)

    for key in (StepKey.FILE_UPLOAD, StepKey.PMS_PARSER):
        detail = complete_step(start_step(detail, key), key)
    waiting = await_approval(detail, StepKey.ADMIN_APPROVAL)
    assert waiting.status == AutomationState.AWAITING_APPROVAL
    assert waiting.steps[StepKey.ADMIN_APPROVAL].status == StepState.PROCESSING
    ensure_consistent(waiting)


def test_agent_completed_keeps_an_ordered_set():
    detail = initial_status(manual=True)
    detail = agent_completed(detail, MonthlyAgentKey.DATA_FETCH)
    detail = agent_completed(detail, MonthlyAgentKey.DATA_FETCH)
    detail = agent_completed(detail, MonthlyAgentKey.SUMMARY_AGENT)
    assert detail.steps[StepKey.MONTHLY_AGENTS].agents_completed == [
        MonthlyAgentKey.DATA_FETCH,
        MonthlyAgentKey.SUMMARY_AGENT,
    ]


def test_finish_requires_every_step_done():
    detail = initial_status(manual=True)
    for key in (StepKey.MONTHLY_AGENTS, StepKey.TASK_CREATION):
        detail = complete_step(start_step(detail, key), key)
    done = finish(detail, AutomationSummary())
    assert done.status == AutomationState.COMPLETED
    assert done.progress == 100
    assert done.completed_at is not None
    assert check_invariants(done) == []


def test_invariants_catch_inconsistent_values():
    detail = initial_status(manual=False)

    out_of_order = detail.model_copy(deep=True)
    out_of_order.steps[StepKey.TASK_CREATION].status = StepState.COMPLETED
    assert any("task_creation completed before" in p for p in check_invariants(out_of_order))

    stray_failure = detail.model_copy(deep=True)
    stray_failure.steps[StepKey.PMS_PARSER].status = StepState.FAILED
    assert check_invariants(stray_failure)

    awaiting_elsewhere = detail.model_copy(deep=True)
    awaiting_elsewhere.status = AutomationState.AWAITING_APPROVAL
    awaiting_elsewhere.current_step = StepKey.MONTHLY_AGENTS
    with pytest.raises(InvariantViolation):
        ensure_consistent(awaiting_elsewhere)

    no_summary = detail.model_copy(deep=True)
    no_summary.status = AutomationState.COMPLETED
    problems = check_invariants(no_summary)
    assert "completed job has no summary" in problems


def test_projection_serializes_camel_case():
    data = initial_status(manual=True).to_json()
    assert data["currentStep"] == "monthly_agents"
    assert data["steps"]["monthly_agents"]["agentsCompleted"] == []
    assert "startedAt" in data
    assert "summary" not in data
