"""Tests for the single-feature phase driver."""

import asyncio

import pytest

from automode import (
    AdmissionController,
    CancellationToken,
    FeatureStatus,
    ParsedTask,
    PlanApprovalGate,
    PlanningMode,
    PlanSpec,
    PlanStatus,
    RunOutcome,
    RunPhase,
    Scope,
    TaskExecutionDriver,
)
from automode.errors import AUTH_FAILURE_MESSAGE

from .conftest import ScriptedProvider, provider_error, result, text, tool, wait_until

SPEC_V1 = "Spec v1\n```tasks\n- [ ] T001: Do A\n```\n[SPEC_GENERATED] Please review"
SPEC_V2 = (
    "Spec v2\n```tasks\n"
    "## Phase 1: Setup\n- [ ] T001: Do A\n"
    "## Phase 2: Build\n- [ ] T002: Do B\n"
    "```\n[SPEC_GENERATED] Please review"
)


@pytest.fixture()
def make_driver(events, board, settings):
    def factory(provider: ScriptedProvider) -> TaskExecutionDriver:
        return TaskExecutionDriver(
            events=events,
            approvals=PlanApprovalGate(events),
            admission=AdmissionController(),
            board=board,
            provider=provider,
            settings=settings,
        )

    return factory


def admit(driver: TaskExecutionDriver, project: str, feature_id: str):
    driver.admission.try_admit(Scope(project), feature_id, CancellationToken())
    return driver.admission.get(feature_id)


async def run(driver, board, project, feature_id, resume_phase=None):
    feature = board.get(project, feature_id)
    return await driver.run(feature, admit(driver, project, feature_id), resume_phase)


# ===== SKIP MODE =====

@pytest.mark.asyncio
async def test_skip_mode_runs_action_and_verification(make_driver, board, project, recorder):
    provider = ScriptedProvider()
    driver = make_driver(provider)
    board.create(project, "Add a button", id="f1")

    outcome = await run(driver, board, project, "f1")

    assert outcome.outcome is RunOutcome.SUCCESS
    assert outcome.passes
    assert [p.phase for p in outcome.phases] == ["action", "verification"]
    assert len(provider.prompts) == 2
    assert "## Verification Pass" in provider.prompts[1]
    assert board.get(project, "f1").status is FeatureStatus.VERIFIED

    types = recorder.types("f1")
    assert types[0] == "auto_mode_feature_start"
    assert types[-1] == "auto_mode_feature_complete"
    assert recorder.of("auto_mode_feature_complete")[0]["passes"] is True
    assert [e["phase"] for e in recorder.of("auto_mode_phase")] == ["action", "verification"]
    assert "Done." in board.read_agent_output(project, "f1")


@pytest.mark.asyncio
async def test_skip_tests_goes_to_manual_review(make_driver, board, project):
    provider = ScriptedProvider()
    driver = make_driver(provider)
    board.create(project, "Add a button", id="f1", skip_tests=True)

    outcome = await run(driver, board, project, "f1")

    assert outcome.passes
    assert len(provider.prompts) == 1
    assert board.get(project, "f1").status is FeatureStatus.WAITING_APPROVAL


@pytest.mark.asyncio
async def test_failed_verification_is_not_an_error(make_driver, board, project, recorder):
    provider = ScriptedProvider(
        [text("Done."), result()],
        [text("Tests are red.\n[VERIFICATION_FAILED]")],
    )
    driver = make_driver(provider)
    board.create(project, "Add a button", id="f1")

    outcome = await run(driver, board, project, "f1")

    assert outcome.outcome is RunOutcome.SUCCESS
    assert not outcome.passes
    assert board.get(project, "f1").status is FeatureStatus.WAITING_APPROVAL
    assert recorder.of("auto_mode_feature_complete")[0]["passes"] is False
    assert recorder.of("auto_mode_error") == []


@pytest.mark.asyncio
async def test_tool_use_is_reported(make_driver, board, project, recorder):
    provider = ScriptedProvider([text("Editing"), tool("Edit", file_path="app.py"), result()])
    driver = make_driver(provider)
    board.create(project, "Add a button", id="f1")

    await run(driver, board, project, "f1")

    [event] = recorder.of("auto_mode_tool")
    assert event["tool"] == "Edit"
    assert event["input"] == {"file_path": "app.py"}
    assert "Tool: Edit" in board.read_agent_output(project, "f1")


# ===== PLANNING =====

@pytest.mark.asyncio
async def test_lite_mode_plans_and_acts_in_one_stream(make_driver, board, project, recorder):
    provider = ScriptedProvider([
        text("Goal: button\n```tasks\n- [ ] T001: Build it\n- [ ] T002: Test it\n```\n"),
        text("[PLAN_GENERATED] Planning outline complete.\n"),
        text("[TASK_START] T001: Build it\n"),
        text("[TASK_COMPLETE] T001\n"),
        result(),
    ])
    driver = make_driver(provider)
    board.create(project, "Add a button", id="f1", planning_mode=PlanningMode.LITE)

    outcome = await run(driver, board, project, "f1")

    assert outcome.outcome is RunOutcome.SUCCESS
    assert len(provider.prompts) == 2
    assert provider.prompts[0].startswith("## Planning Phase (Lite Mode)")
    assert recorder.of("plan_auto_approved")[0]["planningMode"] == "lite"

    [started] = recorder.of("auto_mode_task_started")
    assert started["taskId"] == "T001"
    assert started["taskIndex"] == 0
    [completed] = recorder.of("auto_mode_task_complete")
    assert (completed["tasksCompleted"], completed["tasksTotal"]) == (1, 2)

    plan = board.get(project, "f1").plan_spec
    assert plan.status is PlanStatus.APPROVED
    assert [t.task_id for t in plan.tasks] == ["T001", "T002"]


@pytest.mark.asyncio
async def test_missing_planning_marker_fails(make_driver, board, project, recorder):
    provider = ScriptedProvider([text("I just wrote the code."), result()])
    driver = make_driver(provider)
    board.create(project, "Add a button", id="f1", planning_mode=PlanningMode.LITE)

    outcome = await run(driver, board, project, "f1")

    assert outcome.outcome is RunOutcome.FAILED
    [error] = recorder.of("auto_mode_error")
    assert error["errorType"] == "execution"
    assert "[PLAN_GENERATED]" in error["error"]
    assert board.get(project, "f1").status is FeatureStatus.BACKLOG


@pytest.mark.asyncio
async def test_full_mode_runs_tasks_by_phase(make_driver, board, project, recorder):
    plan = (
        "```tasks\n"
        "## Phase 1: Foundation\n- [ ] T001: Models\n- [ ] T002: Storage\n"
        "## Phase 2: Core\n- [ ] T003: Service\n"
        "```\n[SPEC_GENERATED]"
    )
    provider = ScriptedProvider([text(plan)])
    driver = make_driver(provider)
    board.create(project, "Orders", id="f1", planning_mode=PlanningMode.FULL)

    outcome = await run(driver, board, project, "f1")

    assert outcome.outcome is RunOutcome.SUCCESS
    assert (outcome.tasks_completed, outcome.tasks_total) == (3, 3)
    assert [p.split("\n")[0] for p in provider.prompts[1:4]] == [
        "# Task Execution: T001",
        "# Task Execution: T002",
        "# Task Execution: T003",
    ]
    assert [e["phaseNumber"] for e in recorder.of("auto_mode_phase_complete")] == [1, 2]
    assert board.get(project, "f1").plan_spec.tasks_completed == 3


@pytest.mark.asyncio
async def test_plan_without_tasks_uses_continuation(make_driver, board, project):
    provider = ScriptedProvider([text("Just do it carefully.\n[SPEC_GENERATED]")])
    driver = make_driver(provider)
    board.create(project, "Orders", id="f1", planning_mode=PlanningMode.SPEC)

    await run(driver, board, project, "f1")

    assert provider.prompts[1].startswith("The plan/specification has been approved")
    assert "Just do it carefully." in provider.prompts[1]


# ===== APPROVAL =====

@pytest.mark.asyncio
async def test_spec_approval_with_revision(make_driver, board, project, recorder):
    provider = ScriptedProvider([text(SPEC_V1)], [text(SPEC_V2)])
    driver = make_driver(provider)
    board.create(
        project, "Orders", id="f1",
        planning_mode=PlanningMode.SPEC, require_plan_approval=True,
    )

    task = asyncio.create_task(run(driver, board, project, "f1"))
    await wait_until(lambda: len(recorder.of("plan_approval_required")) == 1)
    assert driver.admission.get("f1").phase is RunPhase.WAITING_APPROVAL

    assert driver.approvals.resolve("f1", False, feedback="split it").success
    await wait_until(lambda: len(recorder.of("plan_approval_required")) == 2)
    assert recorder.of("plan_approval_required")[1]["planVersion"] == 2
    assert "## Previous Plan (v1)" in provider.prompts[1]
    assert "split it" in provider.prompts[1]

    assert driver.approvals.resolve("f1", True).success
    outcome = await task

    assert outcome.outcome is RunOutcome.SUCCESS
    assert outcome.plan_version == 2
    assert [e["taskId"] for e in recorder.of("auto_mode_task_started")] == ["T001", "T002"]
    assert [e["phaseNumber"] for e in recorder.of("auto_mode_phase_complete")] == [1, 2]
    assert len(provider.prompts) == 5
    assert board.get(project, "f1").status is FeatureStatus.VERIFIED


@pytest.mark.asyncio
async def test_edited_plan_drives_tasks(make_driver, board, project, recorder):
    provider = ScriptedProvider([text(SPEC_V1)])
    driver = make_driver(provider)
    board.create(
        project, "Orders", id="f1",
        planning_mode=PlanningMode.LITE, require_plan_approval=True,
    )

    task = asyncio.create_task(run(driver, board, project, "f1"))
    await wait_until(lambda: driver.approvals.has_pending_approval("f1"))
    driver.approvals.resolve(
        "f1", True, edited_plan="```tasks\n- [ ] T001: Edited task\n```", feedback="keep it small",
    )
    await task

    assert provider.prompts[1].startswith("# Task Execution: T001")
    assert "Edited task" in provider.prompts[1]
    assert "keep it small" in provider.prompts[1]
    assert recorder.of("plan_approved")[0]["hasEdits"] is True


@pytest.mark.asyncio
async def test_reject_without_feedback_cancels_run(make_driver, board, project, recorder):
    provider = ScriptedProvider([text(SPEC_V1)])
    driver = make_driver(provider)
    board.create(
        project, "Orders", id="f1",
        planning_mode=PlanningMode.SPEC, require_plan_approval=True,
    )

    task = asyncio.create_task(run(driver, board, project, "f1"))
    await wait_until(lambda: driver.approvals.has_pending_approval("f1"))
    driver.approvals.resolve("f1", False)
    outcome = await task

    assert outcome.outcome is RunOutcome.CANCELLED
    complete = recorder.of("auto_mode_feature_complete")[-1]
    assert complete["passes"] is False
    assert complete["message"] == "Plan cancelled by user"
    assert recorder.of("auto_mode_error") == []
    assert board.get(project, "f1").status is FeatureStatus.BACKLOG


@pytest.mark.asyncio
async def test_approval_timeout_fails_run(make_driver, board, project, settings, recorder):
    settings.approval_timeout = 0.05
    provider = ScriptedProvider([text(SPEC_V1)])
    driver = make_driver(provider)
    board.create(
        project, "Orders", id="f1",
        planning_mode=PlanningMode.SPEC, require_plan_approval=True,
    )

    outcome = await run(driver, board, project, "f1")

    assert outcome.outcome is RunOutcome.FAILED
    assert recorder.of("auto_mode_error")[0]["errorType"] == "timeout"
    assert not driver.approvals.has_pending_approval("f1")


# ===== FAILURES =====

@pytest.mark.asyncio
async def test_authentication_failure_in_stream(make_driver, board, project, recorder):
    provider = ScriptedProvider([text("Error: Invalid API key · Fix external API key")])
    driver = make_driver(provider)
    board.create(project, "Add a button", id="f1")

    outcome = await run(driver, board, project, "f1")

    assert outcome.error_type == "authentication"
    [error] = recorder.of("auto_mode_error")
    assert error["error"] == AUTH_FAILURE_MESSAGE
    assert error["errorType"] == "authentication"


@pytest.mark.asyncio
async def test_provider_error_is_classified(make_driver, board, project, recorder):
    provider = ScriptedProvider([provider_error("429 rate limit exceeded")])
    driver = make_driver(provider)
    board.create(project, "Add a button", id="f1")

    outcome = await run(driver, board, project, "f1")

    assert outcome.outcome is RunOutcome.FAILED
    assert recorder.of("auto_mode_error")[0]["errorType"] == "rate_limit"


@pytest.mark.asyncio
async def test_action_without_result_fails(make_driver, board, project, recorder):
    provider = ScriptedProvider([text("Started but never finished")])
    driver = make_driver(provider)
    board.create(project, "Add a button", id="f1")

    outcome = await run(driver, board, project, "f1")

    assert outcome.outcome is RunOutcome.FAILED
    assert "result" in recorder.of("auto_mode_error")[0]["error"]


@pytest.mark.asyncio
async def test_phase_timeout(make_driver, board, project, settings, recorder):
    settings.phase_timeout = 0.05
    provider = ScriptedProvider([asyncio.Event()])
    driver = make_driver(provider)
    board.create(project, "Add a button", id="f1")

    outcome = await run(driver, board, project, "f1")

    assert outcome.outcome is RunOutcome.FAILED
    assert recorder.of("auto_mode_error")[0]["errorType"] == "timeout"


@pytest.mark.asyncio
async def test_token_cancel_stops_run(make_driver, board, project, recorder):
    gate = asyncio.Event()
    provider = ScriptedProvider([text("working"), gate, text("more"), result()])
    driver = make_driver(provider)
    board.create(project, "Add a button", id="f1")
    feature = board.get(project, "f1")
    running = admit(driver, project, "f1")

    task = asyncio.create_task(driver.run(feature, running))
    await wait_until(lambda: recorder.of("auto_mode_progress"))
    running.token.cancel("Feature stopped by user")
    gate.set()
    outcome = await task

    assert outcome.outcome is RunOutcome.CANCELLED
    complete = recorder.of("auto_mode_feature_complete")[-1]
    assert complete["message"] == "Feature stopped by user"
    assert complete["passes"] is False
    assert recorder.of("auto_mode_error") == []
    assert board.get(project, "f1").status is FeatureStatus.BACKLOG


# ===== RESUME =====

@pytest.mark.asyncio
async def test_resume_at_verification(make_driver, board, project, recorder):
    provider = ScriptedProvider()
    driver = make_driver(provider)
    board.create(project, "Add a button", id="f1", status=FeatureStatus.IN_PROGRESS)

    outcome = await run(driver, board, project, "f1", RunPhase.VERIFICATION)

    assert outcome.passes
    assert len(provider.prompts) == 1
    assert "## Verification Pass" in provider.prompts[0]
    assert recorder.of("auto_mode_feature_start")[0]["resumed"] is True


@pytest.mark.asyncio
async def test_resume_at_action_with_approved_plan(make_driver, board, project):
    provider = ScriptedProvider()
    driver = make_driver(provider)
    board.create(
        project, "Orders", id="f1",
        planning_mode=PlanningMode.SPEC,
        status=FeatureStatus.IN_PROGRESS,
        plan_spec=PlanSpec(
            status=PlanStatus.APPROVED,
            content="the plan",
            tasks=[ParsedTask("T001", "Do A")],
        ),
    )

    outcome = await run(driver, board, project, "f1", RunPhase.ACTION)

    assert outcome.outcome is RunOutcome.SUCCESS
    assert provider.prompts[0].startswith("# Task Execution: T001")
    assert len(provider.prompts) == 2


@pytest.mark.asyncio
async def test_context_continues_without_replanning(make_driver, board, project, recorder):
    provider = ScriptedProvider([text("Finished the export."), result()])
    driver = make_driver(provider)
    board.create(project, "Add CSV export", id="f1", planning_mode=PlanningMode.SPEC)
    board.write_agent_output(project, "f1", "Created export.py")
    previous = board.read_agent_output(project, "f1")
    feature = board.get(project, "f1")

    outcome = await driver.run(feature, admit(driver, project, "f1"), context=previous)

    assert outcome.outcome is RunOutcome.SUCCESS
    assert [p.phase for p in outcome.phases] == ["action", "verification"]
    assert provider.prompts[0].startswith("## Continuing Feature Implementation")
    assert "## Previous Context" in provider.prompts[0]
    assert "Created export.py" in provider.prompts[0]
    assert recorder.of("planning_started") == []
    assert recorder.of("auto_mode_feature_start")[0]["resumed"] is True

    saved = board.read_agent_output(project, "f1")
    assert saved.startswith("Created export.py\n\n---\n\n## Follow-up Session\n\n")
    assert "Finished the export." in saved
