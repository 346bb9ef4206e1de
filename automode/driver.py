"""
Task Execution Driver - Führt EIN Feature durch seine Phasen.

Planning -> (WaitingApproval) -> Action -> Verification -> Done,
Error / Cancelled aus jeder Phase erreichbar.

Key Features:
- Phasenwechsel nur auf erkannte Marker, fehlender Marker = Fehler der Phase
- Approval-Schleife mit Revisionen (Feedback fließt in den nächsten Prompt)
- Task-für-Task Ausführung, wenn der Plan eine Task-Liste hat
- Zeitlimit pro Provider-Call, kooperativer Abbruch über den Token
- Fehler werden hier klassifiziert und als Events gemeldet, nie weitergeworfen
"""

import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable

from .admission import AdmissionController
from .approval import PlanApprovalGate
from .board import FeatureBoard
from .config import AutoModeSettings
from .errors import (
    AUTH_FAILURE_MESSAGE,
    AuthenticationError,
    AutoModeError,
    CancellationError,
    PhaseParseError,
    PhaseTimeoutError,
    classify_error,
    is_authentication_error,
    user_friendly_message,
)
from .events import EventBus
from .markers import (
    MarkerKind,
    expected_planning_marker,
    extract_planning_marker,
    extract_task_markers,
    extract_verification_marker,
    parse_task_list,
    plan_content_before,
)
from .models import (
    Feature,
    FeatureStatus,
    ParsedTask,
    PlanningMode,
    PlanSpec,
    PlanStatus,
    RunningTask,
    RunPhase,
)
from .prompts import (
    build_continuation_prompt,
    build_implementation_prompt,
    build_planning_prompt,
    build_resume_prompt,
    build_revision_prompt,
    build_task_prompt,
    build_verification_prompt,
    extract_title,
)
from .provider import Provider

log = logging.getLogger(__name__)

STOPPED_BY_USER = "Feature stopped by user"
FOLLOW_UP_SEPARATOR = "\n\n---\n\n## Follow-up Session\n\n"


class RunOutcome(Enum):
    """Ausgang eines Driver-Laufs."""
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class PhaseResult:
    """Ergebnis einer einzelnen Phase."""
    phase: str
    success: bool
    duration_ms: int = 0
    error: str | None = None


@dataclass
class FeatureResult:
    """Ergebnis eines Driver-Laufs."""
    feature_id: str
    outcome: RunOutcome
    passes: bool = False
    phases: list[PhaseResult] = field(default_factory=list)
    plan_version: int | None = None
    tasks_completed: int = 0
    tasks_total: int = 0
    duration_ms: int = 0
    error: str | None = None
    error_type: str | None = None

    def to_dict(self) -> dict:
        """Konvertiert zu Dict für JSON."""
        return {
            "featureId": self.feature_id,
            "outcome": self.outcome.value,
            "passes": self.passes,
            "phases": [
                {
                    "phase": p.phase,
                    "success": p.success,
                    "durationMs": p.duration_ms,
                    "error": p.error,
                }
                for p in self.phases
            ],
            "planVersion": self.plan_version,
            "tasksCompleted": self.tasks_completed,
            "tasksTotal": self.tasks_total,
            "durationMs": self.duration_ms,
            "error": self.error,
            "errorType": self.error_type,
        }


@dataclass
class _StreamResult:
    text: str
    got_result: bool = False
    stopped_early: bool = False


@dataclass
class _RunContext:
    """Alles, was ein Lauf über seine Phasen mitschleppt."""
    feature: Feature
    running: RunningTask
    result: FeatureResult
    model: str
    plan_spec: PlanSpec | None = None
    feedback: str | None = None
    context: str | None = None
    output: list[str] = field(default_factory=list)

    @property
    def feature_id(self) -> str:
        return self.feature.id

    @property
    def project_path(self) -> str:
        return self.running.scope.project_path


class _TaskMarkerTracker:
    """
    Verfolgt [TASK_START] / [TASK_COMPLETE] / [PHASE_COMPLETE] im Stream.

    Scannt inkrementell ab dem Ende des letzten gefundenen Markers.
    """

    def __init__(self, driver: "TaskExecutionDriver", ctx: _RunContext, tasks: list[ParsedTask], offset: int = 0):
        self.driver = driver
        self.ctx = ctx
        self.tasks = {t.task_id: t for t in tasks}
        self.total = len(tasks)
        self.completed: set[str] = set()
        self.offset = offset

    def feed(self, text: str) -> None:
        for marker in extract_task_markers(text, self.offset):
            self.offset = marker.end
            if marker.kind == MarkerKind.TASK_START:
                task = self.tasks.get(marker.task_id)
                description = task.description if task else (marker.summary or "")
                index = list(self.tasks).index(marker.task_id) if task else len(self.completed)
                self.driver._emit(
                    self.ctx,
                    "auto_mode_task_started",
                    taskId=marker.task_id,
                    taskDescription=description,
                    taskIndex=index,
                    tasksTotal=self.total,
                )
            elif marker.kind == MarkerKind.TASK_COMPLETE:
                self.completed.add(marker.task_id)
                total = max(self.total, len(self.completed))
                self.driver._set_progress(self.ctx, len(self.completed), total, marker.task_id)
                self.driver._emit(
                    self.ctx,
                    "auto_mode_task_complete",
                    taskId=marker.task_id,
                    tasksCompleted=len(self.completed),
                    tasksTotal=total,
                )
            elif marker.kind == MarkerKind.PHASE_COMPLETE:
                self.driver._emit(self.ctx, "auto_mode_phase_complete", phaseNumber=marker.phase_number)


class TaskExecutionDriver:
    """
    Task Execution Driver - Ein Feature, alle Phasen.

    Der Driver gibt den Slot nicht selbst frei; das macht der Aufrufer
    genau einmal, nachdem run() zurückkehrt.
    """

    def __init__(
        self,
        events: EventBus,
        approvals: PlanApprovalGate,
        admission: AdmissionController,
        board: FeatureBoard,
        provider: Provider,
        settings: AutoModeSettings,
    ):
        self.events = events
        self.approvals = approvals
        self.admission = admission
        self.board = board
        self.provider = provider
        self.settings = settings

        # Callbacks
        self._on_phase_change: list[Callable[[RunningTask, RunPhase], None]] = []

    def on_phase_change(self, callback: Callable[[RunningTask, RunPhase], None]) -> None:
        """Registriert Callback für Phasenwechsel."""
        self._on_phase_change.append(callback)

    # ===== EVENTS & STATE =====

    def _emit(self, ctx: _RunContext, event_type: str, **data) -> None:
        self.events.emit(
            event_type,
            ctx.feature_id,
            projectPath=ctx.project_path,
            branchName=ctx.running.scope.branch_name,
            **data,
        )

    def _set_phase(self, ctx: _RunContext, phase: RunPhase, message: str) -> None:
        ctx.running.phase = phase
        self.admission.set_phase(ctx.feature_id, phase)
        log.info("%s -> %s", ctx.feature_id, phase.value)
        self._emit(ctx, "auto_mode_phase", phase=phase.value, message=message)
        for callback in self._on_phase_change:
            callback(ctx.running, phase)

    def _set_progress(self, ctx: _RunContext, completed: int, total: int, task_id: str | None = None) -> None:
        ctx.running.tasks_completed = completed
        ctx.running.tasks_total = total
        ctx.result.tasks_completed = completed
        ctx.result.tasks_total = total
        self.admission.set_progress(ctx.feature_id, completed, total)
        if ctx.plan_spec:
            ctx.plan_spec.tasks_completed = completed
            ctx.plan_spec.current_task_id = task_id
            self._save_plan(ctx)

    def _save_plan(self, ctx: _RunContext) -> None:
        if ctx.plan_spec:
            self.board.update_plan_spec(ctx.project_path, ctx.feature_id, ctx.plan_spec)

    def _save_output(self, ctx: _RunContext) -> None:
        # Mit Kontext bleibt der alte Output vorn stehen
        if ctx.output:
            prefix = ctx.context + FOLLOW_UP_SEPARATOR if ctx.context else ""
            self.board.write_agent_output(ctx.project_path, ctx.feature_id, prefix + "".join(ctx.output))

    # ===== ENTRY POINT =====

    async def run(
        self,
        feature: Feature,
        running: RunningTask,
        resume_phase: RunPhase | None = None,
        context: str | None = None,
    ) -> FeatureResult:
        """
        Führt das Feature aus. Wirft nie, außer bei Task-Abbruch ohne Token (Shutdown).

        Args:
            feature: Feature vom Board
            running: Vom Admission Controller vergebener RunningTask
            resume_phase: Phase, ab der nach einem Neustart wieder aufgesetzt wird
            context: Agent-Output eines früheren Laufs; der Lauf setzt dort fort
        """
        start_time = datetime.now()
        ctx = _RunContext(
            feature=feature,
            running=running,
            result=FeatureResult(feature_id=feature.id, outcome=RunOutcome.SUCCESS),
            model=running.model or feature.model or self.settings.default_model,
            plan_spec=feature.plan_spec,
            context=context,
        )

        self._emit(
            ctx,
            "auto_mode_feature_start",
            message=f"Starting work on feature: {feature.title or extract_title(feature.description)}",
            feature={
                "id": feature.id,
                "title": feature.title or extract_title(feature.description),
                "description": feature.description,
            },
            resumed=resume_phase is not None or context is not None,
        )
        self.board.update_status(ctx.project_path, feature.id, FeatureStatus.IN_PROGRESS)

        try:
            verified = await self._execute(ctx, resume_phase)
            passes = verified is not False
            ctx.result.passes = passes
            final_status = FeatureStatus.VERIFIED if verified else FeatureStatus.WAITING_APPROVAL
            self.board.update_status(ctx.project_path, feature.id, final_status)
            ctx.result.duration_ms = int((datetime.now() - start_time).total_seconds() * 1000)
            self._emit(
                ctx,
                "auto_mode_feature_complete",
                passes=passes,
                message=f"Feature completed in {round(ctx.result.duration_ms / 1000)}s",
            )

        except asyncio.CancelledError as e:
            if not running.token.cancelled:
                # Shutdown ohne Token: Abbruch nicht verschlucken
                self._handle_cancel(ctx, e)
                raise
            self._handle_cancel(ctx, e)

        except Exception as e:
            info = classify_error(e)
            if info.is_abort:
                self._handle_cancel(ctx, e)
            else:
                self._handle_error(ctx, e)

        finally:
            self.approvals.cancel(feature.id)
            self._save_output(ctx)
            ctx.result.duration_ms = int((datetime.now() - start_time).total_seconds() * 1000)

        return ctx.result

    def _handle_cancel(self, ctx: _RunContext, error: BaseException) -> None:
        """Abbruch ist kein Fehler: neutrale Completion, Feature zurück ins Backlog."""
        if ctx.running.token.cancelled:
            reason = ctx.running.token.reason or STOPPED_BY_USER
        elif isinstance(error, CancellationError):
            reason = str(error)
        else:
            reason = STOPPED_BY_USER
        log.info("%s cancelled: %s", ctx.feature_id, reason)
        ctx.result.outcome = RunOutcome.CANCELLED
        ctx.result.error_type = "abort"
        self.board.update_status(ctx.project_path, ctx.feature_id, FeatureStatus.BACKLOG)
        self._emit(ctx, "auto_mode_feature_complete", passes=False, message=reason)

    def _handle_error(self, ctx: _RunContext, error: Exception) -> None:
        info = classify_error(error)
        message = user_friendly_message(error)
        if info.is_auth:
            message = AUTH_FAILURE_MESSAGE
        log.error("%s failed (%s): %s", ctx.feature_id, info.type.value, info.message)
        ctx.result.outcome = RunOutcome.FAILED
        ctx.result.error = message
        ctx.result.error_type = info.type.value
        ctx.result.phases.append(PhaseResult(phase=ctx.running.phase.value, success=False, error=message))
        self.board.update_status(ctx.project_path, ctx.feature_id, FeatureStatus.BACKLOG)
        self._emit(ctx, "auto_mode_error", error=message, errorType=info.type.value)

    # ===== PHASE SEQUENCE =====

    async def _execute(self, ctx: _RunContext, resume_phase: RunPhase | None) -> bool | None:
        """Phasenfolge. Returns: Ergebnis der Verifikation, None wenn übersprungen."""
        feature = ctx.feature
        plan = ctx.plan_spec

        if resume_phase == RunPhase.VERIFICATION:
            return await self._verify(ctx)

        if ctx.context:
            await self._act_with_context(ctx)
        elif resume_phase == RunPhase.ACTION and plan and plan.status == PlanStatus.APPROVED:
            log.info("Resuming %s at action with approved plan v%d", feature.id, plan.version)
            await self._act_on_plan(ctx, plan.content, plan.tasks)
        elif feature.planning_mode == PlanningMode.SKIP:
            await self._act_directly(ctx)
        else:
            await self._plan_and_act(ctx)

        return await self._verify(ctx)

    async def _plan_and_act(self, ctx: _RunContext) -> None:
        feature = ctx.feature
        mode = feature.planning_mode
        require_approval = feature.require_plan_approval
        expected = expected_planning_marker(mode, require_approval)

        ctx.plan_spec = PlanSpec(status=PlanStatus.GENERATING, version=1)
        self._save_plan(ctx)
        self._emit(
            ctx,
            "planning_started",
            mode=mode.value,
            message=f"Starting {mode.value} planning phase",
        )

        prompt = build_planning_prompt(feature)
        while True:
            self._set_phase(ctx, RunPhase.PLANNING, f"Planning ({mode.value}, v{ctx.plan_spec.version})")

            if mode == PlanningMode.LITE and not require_approval:
                # Lite ohne Approval: Plan und Umsetzung in EINEM Stream
                await self._run_lite_stream(ctx, prompt)
                return

            phase_start = datetime.now()
            stream = await self._stream(
                ctx,
                prompt,
                stop_when=lambda text: extract_planning_marker(text, mode, True).found,
            )
            marker = extract_planning_marker(stream.text, mode, True)
            if not marker.found:
                raise PhaseParseError("Planning", expected)
            self._record_phase(ctx, "planning", phase_start)

            plan_content = plan_content_before(stream.text, marker)
            tasks = parse_task_list(plan_content)
            ctx.plan_spec.status = PlanStatus.GENERATED
            ctx.plan_spec.content = plan_content
            ctx.plan_spec.tasks = tasks
            self._save_plan(ctx)
            self._set_progress(ctx, 0, len(tasks))

            if not require_approval:
                ctx.plan_spec.status = PlanStatus.APPROVED
                ctx.plan_spec.approved_at = datetime.now().isoformat()
                self._save_plan(ctx)
                self._emit(ctx, "plan_auto_approved", planContent=plan_content, planningMode=mode.value)
                await self._act_on_plan(ctx, plan_content, tasks)
                return

            # ===== WAITING APPROVAL =====
            self._set_phase(ctx, RunPhase.WAITING_APPROVAL, "Waiting for plan approval")
            self.approvals.request_approval(feature.id, ctx.project_path, plan_content, mode)
            decision = await self.approvals.wait_for_decision(
                feature.id, timeout=self.settings.approval_timeout or None
            )
            ctx.result.plan_version = decision.plan_version

            if decision.model:
                ctx.model = decision.model
                ctx.running.model = decision.model

            if decision.approved:
                if decision.has_edits:
                    tasks = parse_task_list(decision.plan_content)
                ctx.feedback = decision.feedback
                ctx.plan_spec.status = PlanStatus.APPROVED
                ctx.plan_spec.content = decision.plan_content
                ctx.plan_spec.tasks = tasks
                ctx.plan_spec.approved_at = datetime.now().isoformat()
                self._save_plan(ctx)
                await self._act_on_plan(ctx, decision.plan_content, tasks)
                return

            # Revision: zurück in die Planung mit Feedback
            ctx.plan_spec.status = PlanStatus.REJECTED
            ctx.plan_spec.version = decision.plan_version
            self._save_plan(ctx)
            prompt = build_revision_prompt(
                decision.plan_content,
                decision.plan_version - 1,
                decision.feedback or "",
            )
            ctx.plan_spec.status = PlanStatus.GENERATING

    async def _run_lite_stream(self, ctx: _RunContext, prompt: str) -> None:
        """Lite ohne Approval: nach [PLAN_GENERATED] läuft derselbe Stream als Action weiter."""
        state = {"tracker": None}
        phase_start = datetime.now()

        def on_text(text: str) -> bool:
            tracker = state["tracker"]
            if tracker is None:
                marker = extract_planning_marker(text, PlanningMode.LITE, False)
                if not marker.found:
                    return False
                plan_content = plan_content_before(text, marker)
                tasks = parse_task_list(plan_content)
                ctx.plan_spec.status = PlanStatus.APPROVED
                ctx.plan_spec.content = plan_content
                ctx.plan_spec.tasks = tasks
                ctx.plan_spec.approved_at = datetime.now().isoformat()
                self._save_plan(ctx)
                self._record_phase(ctx, "planning", phase_start)
                self._emit(ctx, "plan_auto_approved", planContent=plan_content, planningMode="lite")
                self._set_phase(ctx, RunPhase.ACTION, "Implementing planned changes")
                tracker = _TaskMarkerTracker(self, ctx, tasks, offset=marker.end)
                state["tracker"] = tracker
            tracker.feed(text)
            return False

        stream = await self._stream(ctx, prompt, on_text=on_text)
        if state["tracker"] is None:
            raise PhaseParseError("Planning", "[PLAN_GENERATED]")
        if not stream.got_result:
            raise PhaseParseError("Action", "result")
        self._record_phase(ctx, "action", phase_start)

    async def _act_directly(self, ctx: _RunContext) -> None:
        """Skip-Modus: direkte Umsetzung ohne Plan."""
        self._set_phase(ctx, RunPhase.ACTION, "Implementing feature")
        phase_start = datetime.now()
        prompt = build_implementation_prompt(ctx.feature, playwright=self._use_playwright(ctx))
        tracker = _TaskMarkerTracker(self, ctx, [])
        stream = await self._stream(ctx, prompt, on_text=lambda text: tracker.feed(text) or False)
        if not stream.got_result:
            raise PhaseParseError("Action", "result")
        self._record_phase(ctx, "action", phase_start)

    async def _act_with_context(self, ctx: _RunContext) -> None:
        """Fortsetzung: ein Call mit dem Output des letzten Laufs im Prompt, ohne neue Planung."""
        log.info("Continuing %s with %d chars of previous output", ctx.feature_id, len(ctx.context))
        self._set_phase(ctx, RunPhase.ACTION, "Continuing previous work")
        phase_start = datetime.now()
        plan = ctx.plan_spec
        tasks = plan.tasks if plan and plan.status == PlanStatus.APPROVED else []
        tracker = _TaskMarkerTracker(self, ctx, tasks)
        stream = await self._stream(
            ctx,
            build_resume_prompt(ctx.feature, ctx.context),
            on_text=lambda text: tracker.feed(text) or False,
        )
        if not stream.got_result:
            raise PhaseParseError("Action", "result")
        self._record_phase(ctx, "action", phase_start)

    async def _act_on_plan(self, ctx: _RunContext, plan_content: str, tasks: list[ParsedTask]) -> None:
        """
        Umsetzung eines freigegebenen Plans.

        Mit Task-Liste: ein fokussierter Call pro Task. Ohne: ein Continuation-Call,
        dessen Task-Marker den Fortschritt treiben.
        """
        self._set_phase(ctx, RunPhase.ACTION, "Implementing approved plan")
        phase_start = datetime.now()

        if not tasks:
            prompt = build_continuation_prompt(plan_content, ctx.feedback)
            tracker = _TaskMarkerTracker(self, ctx, [])
            stream = await self._stream(ctx, prompt, on_text=lambda text: tracker.feed(text) or False)
            if not stream.got_result:
                raise PhaseParseError("Action", "result")
            self._record_phase(ctx, "action", phase_start)
            return

        total = len(tasks)
        self._set_progress(ctx, 0, total)
        for index, task in enumerate(tasks):
            ctx.running.token.raise_if_cancelled()

            previous = tasks[index - 1] if index > 0 else None
            if previous and previous.phase_number is not None and previous.phase_number != task.phase_number:
                self._emit(ctx, "auto_mode_phase_complete", phaseNumber=previous.phase_number)

            self._emit(
                ctx,
                "auto_mode_task_started",
                taskId=task.task_id,
                taskDescription=task.description,
                taskIndex=index,
                tasksTotal=total,
            )
            if ctx.plan_spec:
                ctx.plan_spec.current_task_id = task.task_id
                self._save_plan(ctx)

            prompt = build_task_prompt(task, tasks, index, plan_content, ctx.feedback)
            stream = await self._stream(ctx, prompt)
            if not stream.got_result:
                raise PhaseParseError(f"Task {task.task_id}", "result")

            self._set_progress(ctx, index + 1, total, task.task_id)
            self._emit(
                ctx,
                "auto_mode_task_complete",
                taskId=task.task_id,
                tasksCompleted=index + 1,
                tasksTotal=total,
            )

        if tasks[-1].phase_number is not None:
            self._emit(ctx, "auto_mode_phase_complete", phaseNumber=tasks[-1].phase_number)
        self._record_phase(ctx, "action", phase_start)

    async def _verify(self, ctx: _RunContext) -> bool | None:
        """Verifikations-Pass. None = übersprungen, Feature geht ins manuelle Review."""
        if self.settings.skip_verification_in_auto_mode or ctx.feature.skip_tests:
            log.info("Skipping verification for %s", ctx.feature_id)
            return None

        self._set_phase(ctx, RunPhase.VERIFICATION, "Verifying implementation")
        phase_start = datetime.now()
        stream = await self._stream(
            ctx,
            build_verification_prompt(ctx.feature),
            stop_when=lambda text: extract_verification_marker(text).found,
        )
        marker = extract_verification_marker(stream.text)
        if not marker.found:
            raise PhaseParseError("Verification", "[VERIFICATION_PASSED] or [VERIFICATION_FAILED]")

        passed = marker.kind == MarkerKind.VERIFICATION_PASSED
        self._record_phase(ctx, "verification", phase_start, success=passed)
        return passed

    def _record_phase(self, ctx: _RunContext, phase: str, started: datetime, success: bool = True) -> None:
        duration = int((datetime.now() - started).total_seconds() * 1000)
        ctx.result.phases.append(PhaseResult(phase=phase, success=success, duration_ms=duration))
        self._save_output(ctx)

    def _use_playwright(self, ctx: _RunContext) -> bool:
        return self.settings.playwright_verification and not ctx.feature.skip_tests

    # ===== STREAMING =====

    async def _stream(
        self,
        ctx: _RunContext,
        prompt: str,
        on_text: Callable[[str], bool] | None = None,
        stop_when: Callable[[str], bool] | None = None,
    ) -> _StreamResult:
        """Ein Provider-Call mit Zeitlimit."""
        timeout = self.settings.phase_timeout or None
        try:
            return await asyncio.wait_for(self._consume(ctx, prompt, on_text, stop_when), timeout)
        except asyncio.TimeoutError:
            raise PhaseTimeoutError(ctx.running.phase.value, timeout) from None

    async def _consume(
        self,
        ctx: _RunContext,
        prompt: str,
        on_text: Callable[[str], bool] | None,
        stop_when: Callable[[str], bool] | None,
    ) -> _StreamResult:
        token = ctx.running.token
        token.raise_if_cancelled()
        result = _StreamResult(text="")
        parts: list[str] = []

        messages = self.provider.execute_query(
            prompt,
            model=ctx.model,
            cwd=ctx.project_path,
            token=token,
        )
        async with aclosing(messages) as stream:
            async for message in stream:
                token.raise_if_cancelled()

                if message.type == "text":
                    if is_authentication_error(message.text):
                        raise AuthenticationError()
                    parts.append(message.text)
                    ctx.output.append(message.text)
                    result.text = "".join(parts)
                    self._emit(ctx, "auto_mode_progress", content=message.text)
                    log.debug("%s: %d chars streamed", ctx.feature_id, len(result.text))

                    stop = on_text(result.text) if on_text else False
                    if stop or (stop_when and stop_when(result.text)):
                        result.stopped_early = True
                        break

                elif message.type == "tool_use":
                    ctx.output.append(f"\n🔧 Tool: {message.tool}\n")
                    self._emit(ctx, "auto_mode_tool", tool=message.tool, input=message.tool_input)

                elif message.type == "error":
                    error_text = message.text or "Provider returned an error"
                    if is_authentication_error(error_text):
                        raise AuthenticationError()
                    raise AutoModeError(error_text)

                elif message.type == "result":
                    result.got_result = True

        return result
