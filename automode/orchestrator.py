"""
Auto-Mode Orchestrator - Start/Stop pro Scope, Admission und Supervision.

Verwaltet pro (Projekt, Branch) einen Auto-Loop, der startbare Features
vom Board holt, Slots über den Admission Controller vergibt und für jedes
admittete Feature einen Task Execution Driver als eigene asyncio Task startet.

Key Features:
- stop() stoppt nur neue Admissions, laufende Features laufen zu Ende
- stop_feature() bricht genau einen Lauf kooperativ ab; das Feature bleibt
  danach aus dem Auto-Loop, bis es manuell gestartet oder geändert wird
- resume_feature() setzt mit dem gespeicherten Agent-Output fort
- Slot-Freigabe genau einmal pro Lauf (finally im Run-Wrapper)
- Pause nach gehäuften Fehlern oder Rate-Limit / Quota
- Persistenz des Laufzustands und Resume nach Neustart
"""

import asyncio
import functools
import logging
import time
from collections import deque
from dataclasses import dataclass, field

from .admission import AdmissionController
from .approval import PlanApprovalGate
from .board import FeatureBoard
from .cancellation import CancellationToken
from .config import AutoModeSettings
from .driver import FeatureResult, RunOutcome, STOPPED_BY_USER, TaskExecutionDriver
from .errors import ErrorType
from .events import EventBus
from .models import (
    CommandResult,
    Feature,
    FeatureStatus,
    PendingPlanApproval,
    RunningTask,
    RunPhase,
    Scope,
    ScopeStatus,
)
from .provider import Provider
from .state import ExecutionStateStore, PersistedFeature, PersistedScope

log = logging.getLogger(__name__)

STOP_WAIT_SECONDS = 10.0

# Phase beim Absturz -> Phase, ab der neu gestartet wird (None = Planung)
RESUME_POLICY: dict[RunPhase, RunPhase | None] = {
    RunPhase.PLANNING: None,
    RunPhase.WAITING_APPROVAL: None,
    RunPhase.ACTION: RunPhase.ACTION,
    RunPhase.VERIFICATION: RunPhase.VERIFICATION,
}

PAUSE_ERROR_TYPES = {ErrorType.RATE_LIMIT.value, ErrorType.QUOTA_EXHAUSTED.value}


@dataclass
class _ScopeLoop:
    """Laufzeit-Zustand des Auto-Loops eines Scopes."""
    task: asyncio.Task | None = None
    wake: asyncio.Event = field(default_factory=asyncio.Event)
    failures: deque = field(default_factory=deque)
    idle_emitted: bool = False


class AutoModeOrchestrator:
    """
    Fassade der Auto-Mode Engine.

    Alle geteilten Tabellen (Running-Set, Tokens, Pending Approvals) gehören
    Admission Controller und Approval Gate dieser Instanz.
    """

    def __init__(
        self,
        events: EventBus,
        board: FeatureBoard,
        provider: Provider,
        settings: AutoModeSettings | None = None,
        state_store: ExecutionStateStore | None = None,
    ):
        self.settings = settings or AutoModeSettings()
        self.events = events
        self.board = board
        self.admission = AdmissionController(self.settings.default_max_concurrency)
        self.approvals = PlanApprovalGate(events)
        self.state_store = state_store or ExecutionStateStore(self.settings.state_file)
        self.driver = TaskExecutionDriver(
            events=events,
            approvals=self.approvals,
            admission=self.admission,
            board=board,
            provider=provider,
            settings=self.settings,
        )
        self.driver.on_phase_change(self._on_phase_change)

        self._loops: dict[Scope, _ScopeLoop] = {}
        self._runs: dict[str, asyncio.Task] = {}
        # Gestoppte / abgelehnte Features: feature_id -> updated_at beim Abbruch
        self._held: dict[str, str | None] = {}
        self._shutting_down = False

    # ===== COMMAND API =====

    def start(
        self,
        project_path: str,
        branch_name: str | None = None,
        max_concurrency: int | None = None,
    ) -> CommandResult:
        """
        Auto-Loop für den Scope starten. Kehrt sofort zurück.

        Ein schon laufender Scope ist kein Fehler (alreadyRunning).
        """
        scope = Scope(project_path, branch_name)
        if max_concurrency is not None and max_concurrency < 1:
            return CommandResult(success=False, error="maxConcurrency must be at least 1")

        if max_concurrency is not None:
            self.admission.set_max_concurrency(scope, max_concurrency)

        if self.admission.is_scope_running(scope):
            return CommandResult(success=True, data={"alreadyRunning": True})

        self._start_loop(scope)
        status = self.admission.status(scope)
        self._persist()

        log.info("Auto mode started for %s (max %d)", scope, status.max_concurrency)
        self.events.emit(
            "auto_mode_started",
            message=f"Auto mode started with max {status.max_concurrency} concurrent features",
            projectPath=project_path,
            branchName=branch_name,
            maxConcurrency=status.max_concurrency,
        )
        return CommandResult(success=True, data={"maxConcurrency": status.max_concurrency})

    def stop(self, project_path: str, branch_name: str | None = None) -> CommandResult:
        """Keine neuen Admissions mehr. Laufende Features werden NICHT abgebrochen."""
        scope = Scope(project_path, branch_name)
        was_running = self.admission.is_scope_running(scope)
        self.admission.set_running(scope, False)

        loop = self._loops.get(scope)
        if loop and loop.task and not loop.task.done():
            loop.task.cancel()

        running_count = len(self.admission.running_tasks(scope))
        self._persist()

        if was_running:
            log.info("Auto mode stopped for %s (%d still running)", scope, running_count)
            self.events.emit(
                "auto_mode_stopped",
                message="Auto mode stopped",
                projectPath=project_path,
                branchName=branch_name,
                runningCount=running_count,
            )
        return CommandResult(success=True, data={"runningCount": running_count})

    async def stop_feature(self, feature_id: str) -> CommandResult:
        """
        Einen laufenden Feature-Lauf abbrechen und auf das Abwickeln warten.

        Der Abbruch erscheint als neutrale "stopped by user" Completion.
        """
        self.approvals.cancel(feature_id)
        if not self.admission.cancel(feature_id, STOPPED_BY_USER):
            return CommandResult(success=False, error=f"Feature {feature_id} is not running")

        task = self._runs.get(feature_id)
        if task is not None and not task.done():
            await asyncio.wait({task}, timeout=STOP_WAIT_SECONDS)
        return CommandResult(success=True)

    def status(self, project_path: str, branch_name: str | None = None) -> ScopeStatus:
        return self.admission.status(Scope(project_path, branch_name))

    def set_max_concurrency(self, project_path: str, branch_name: str | None, max_concurrency: int) -> CommandResult:
        try:
            self.admission.set_max_concurrency(Scope(project_path, branch_name), max_concurrency)
        except ValueError as e:
            return CommandResult(success=False, error=str(e))
        self._persist()
        self._wake(Scope(project_path, branch_name))
        return CommandResult(success=True)

    def resolve_plan_approval(
        self,
        feature_id: str,
        approve: bool,
        edited_plan: str | None = None,
        feedback: str | None = None,
        model: str | None = None,
    ) -> CommandResult:
        return self.approvals.resolve(feature_id, approve, edited_plan, feedback, model)

    def has_pending_approval(self, feature_id: str) -> bool:
        return self.approvals.has_pending_approval(feature_id)

    def get_pending_approval(self, feature_id: str) -> PendingPlanApproval | None:
        return self.approvals.get_pending(feature_id)

    def cancel_plan_approval(self, feature_id: str) -> None:
        """Wirft nie, auch nicht für unbekannte Features."""
        self.approvals.cancel(feature_id)

    def run_feature(self, project_path: str, feature_id: str) -> CommandResult:
        """Ein einzelnes Feature manuell starten, außerhalb des Auto-Loops."""
        feature = self.board.get(project_path, feature_id)
        if feature is None:
            return CommandResult(success=False, error=f"Feature {feature_id} not found")
        if self.admission.is_running(feature_id):
            return CommandResult(success=False, error=f"Feature {feature_id} is already running")

        scope = Scope(project_path, feature.branch_name)
        if not self._spawn(scope, feature, is_auto_mode=False):
            return CommandResult(success=False, error=f"No free slot in {scope}")
        self._held.pop(feature_id, None)
        return CommandResult(success=True)

    def resume_feature(self, project_path: str, feature_id: str) -> CommandResult:
        """
        Feature mit dem Output des letzten Laufs als Kontext fortsetzen.

        Ohne gespeicherten Output startet ein normaler Lauf wie run_feature().
        """
        feature = self.board.get(project_path, feature_id)
        if feature is None:
            return CommandResult(success=False, error=f"Feature {feature_id} not found")
        if self.admission.is_running(feature_id):
            return CommandResult(success=False, error=f"Feature {feature_id} is already running")

        context = self.board.read_agent_output(project_path, feature_id)
        if not context:
            log.info("No previous output for %s, starting fresh", feature_id)
            return self.run_feature(project_path, feature_id)

        scope = Scope(project_path, feature.branch_name)
        if not self._spawn(scope, feature, is_auto_mode=False, context=context):
            return CommandResult(success=False, error=f"No free slot in {scope}")
        self._held.pop(feature_id, None)
        return CommandResult(success=True, data={"resumedWithContext": True})

    def running_tasks(self) -> list[RunningTask]:
        return self.admission.running_tasks()

    # ===== SCOPE LOOP =====

    def _start_loop(self, scope: Scope) -> None:
        self.admission.set_running(scope, True)
        loop = self._loops.get(scope)
        if loop is None:
            loop = _ScopeLoop()
            self._loops[scope] = loop
        loop.failures.clear()
        loop.idle_emitted = False
        loop.wake = asyncio.Event()
        loop.task = asyncio.create_task(self._scope_loop(scope, loop), name=f"automode-loop-{scope.key}")

    def _wake(self, scope: Scope) -> None:
        loop = self._loops.get(scope)
        if loop:
            loop.wake.set()

    async def _scope_loop(self, scope: Scope, loop: _ScopeLoop) -> None:
        """Scannt das Board bis der Scope gestoppt wird oder der Prozess endet."""
        # Ein cancel() kann in wait_for verloren gehen, darum zusätzlich das Flag
        while not self._shutting_down and self.admission.is_scope_running(scope):
            loop.wake.clear()
            try:
                found = self._admit_eligible(scope, loop)
            except Exception:
                # Board-Fehler dürfen den Loop nicht beenden
                log.exception("Board scan failed for %s", scope)
                found = False

            interval = self.settings.poll_interval if found else self.settings.idle_interval
            try:
                await asyncio.wait_for(loop.wake.wait(), interval)
            except asyncio.TimeoutError:
                pass

    def _admit_eligible(self, scope: Scope, loop: _ScopeLoop) -> bool:
        """
        Admittiert startbare Features in Board-Reihenfolge bis keine Slots mehr frei sind.

        Returns:
            True wenn es startbare oder laufende Features gab
        """
        features = self.board.list_eligible(
            scope, include_waiting_approval=self.settings.skip_verification_in_auto_mode
        )
        candidates = [
            f for f in features
            if not self.admission.is_running(f.id) and not self._is_held(f)
        ]

        if not candidates:
            if not self.admission.running_tasks(scope) and not loop.idle_emitted:
                loop.idle_emitted = True
                self.events.emit(
                    "auto_mode_idle",
                    message="No pending features - auto mode idle",
                    projectPath=scope.project_path,
                    branchName=scope.branch_name,
                )
            return bool(self.admission.running_tasks(scope))

        loop.idle_emitted = False
        for feature in candidates:
            if self.admission.free_slots(scope) == 0:
                break
            self._spawn(scope, feature)
        return True

    def _is_held(self, feature: Feature) -> bool:
        """
        Gestoppte Features bleiben aus dem Auto-Loop, bis sie manuell gestartet
        werden oder sich ihr Board-Eintrag ändert.
        """
        if feature.id not in self._held:
            return False
        if self._held[feature.id] == feature.updated_at:
            return True
        log.info("Hold on %s released: board entry changed", feature.id)
        del self._held[feature.id]
        return False

    def _hold(self, project_path: str, feature_id: str) -> None:
        feature = self.board.get(project_path, feature_id)
        self._held[feature_id] = feature.updated_at if feature else None
        log.info("Holding %s back from auto mode", feature_id)

    # ===== RUNS =====

    def _spawn(
        self,
        scope: Scope,
        feature: Feature,
        resume_phase: RunPhase | None = None,
        is_auto_mode: bool = True,
        context: str | None = None,
    ) -> bool:
        """Slot holen und den Driver als eigene Task starten."""
        if self._shutting_down:
            return False
        token = CancellationToken()
        model = feature.model or self.settings.default_model
        if not self.admission.try_admit(scope, feature.id, token, model=model, is_auto_mode=is_auto_mode):
            return False

        running = self.admission.get(feature.id)
        if running is None or running.token is not token:
            return False
        if resume_phase is not None:
            running.phase = resume_phase

        task = asyncio.create_task(
            self._run(feature, running, resume_phase, context),
            name=f"automode-{feature.id}",
        )
        self._runs[feature.id] = task
        task.add_done_callback(functools.partial(self._on_run_done, feature.id))

        event_loop = asyncio.get_running_loop()
        token.on_cancel(lambda _reason: event_loop.call_soon_threadsafe(self._cancel_task, task))

        self._persist()
        return True

    @staticmethod
    def _cancel_task(task: asyncio.Task) -> None:
        if not task.done():
            task.cancel()

    def _on_run_done(self, feature_id: str, task: asyncio.Task) -> None:
        if self._runs.get(feature_id) is task:
            del self._runs[feature_id]

    async def _run(
        self,
        feature: Feature,
        running: RunningTask,
        resume_phase: RunPhase | None,
        context: str | None = None,
    ) -> FeatureResult:
        """Driver-Lauf. Gibt den Slot genau einmal frei, egal wie der Lauf endet."""
        try:
            result = await self.driver.run(feature, running, resume_phase, context=context)
            if result.outcome == RunOutcome.CANCELLED:
                self._hold(running.scope.project_path, feature.id)
        finally:
            self.admission.release(running.scope, feature.id, running.token)
            self._persist()
            self._wake(running.scope)

        if running.is_auto_mode:
            self._record_outcome(running.scope, result)
        return result

    def _record_outcome(self, scope: Scope, result: FeatureResult) -> None:
        """Fehler-Fenster pflegen und den Scope bei gehäuften Fehlern pausieren."""
        loop = self._loops.get(scope)
        if loop is None:
            return

        if result.outcome == RunOutcome.SUCCESS:
            loop.failures.clear()
            return
        if result.outcome != RunOutcome.FAILED:
            return

        now = time.monotonic()
        loop.failures.append(now)
        while loop.failures and now - loop.failures[0] > self.settings.failure_window:
            loop.failures.popleft()

        if result.error_type in PAUSE_ERROR_TYPES or len(loop.failures) >= self.settings.failure_threshold:
            self._pause(scope, result)

    def _pause(self, scope: Scope, result: FeatureResult) -> None:
        if not self.admission.is_scope_running(scope):
            return
        failure_count = len(self._loops[scope].failures)
        if result.error_type in PAUSE_ERROR_TYPES:
            message = "Auto mode paused: usage limit or rate limit reached. Resume once the limit resets."
        else:
            message = f"Auto mode paused after {failure_count} consecutive failures. Check the errors before resuming."

        log.warning("Pausing %s: %s", scope, message)
        self.events.emit(
            "auto_mode_paused_failures",
            message=message,
            projectPath=scope.project_path,
            branchName=scope.branch_name,
            errorType=result.error_type,
            failureCount=failure_count,
            lastError=result.error,
        )
        self.stop(scope.project_path, scope.branch_name)

    def _on_phase_change(self, running: RunningTask, phase: RunPhase) -> None:
        self._persist()

    # ===== PERSISTENCE & RESUME =====

    def _persist(self) -> None:
        if self._shutting_down:
            return

        scopes = []
        for scope in self.admission.scopes():
            status = self.admission.status(scope)
            running = [
                PersistedFeature(feature_id=t.feature_id, phase=t.phase)
                for t in self.admission.running_tasks(scope)
                if t.is_auto_mode
            ]
            scopes.append(PersistedScope(
                scope=scope,
                is_running=status.is_running,
                max_concurrency=status.max_concurrency,
                running_features=running,
            ))

        try:
            self.state_store.save(scopes)
        except OSError:
            log.exception("Failed to persist execution state")

    async def resume_interrupted(self) -> list[str]:
        """
        Scopes, die beim letzten Prozessende liefen, wieder starten.

        Unterbrochene Features starten ihre gespeicherte Phase von vorn
        (siehe RESUME_POLICY). Returns: IDs der wieder admitteten Features.
        """
        resumed: list[str] = []

        for persisted in self.state_store.load():
            if not persisted.is_running:
                continue
            scope = persisted.scope
            if self.admission.is_scope_running(scope):
                continue

            self.admission.set_max_concurrency(scope, max(1, persisted.max_concurrency))

            features: list[tuple[Feature, RunPhase]] = []
            for item in persisted.running_features:
                feature = self.board.get(scope.project_path, item.feature_id)
                if feature is None:
                    log.warning("Cannot resume %s: feature no longer exists", item.feature_id)
                    continue
                if feature.status in (FeatureStatus.DONE, FeatureStatus.VERIFIED):
                    continue
                features.append((feature, item.phase))

            if features:
                self.events.emit(
                    "auto_mode_resuming_features",
                    message=f"Resuming {len(features)} interrupted feature(s)",
                    projectPath=scope.project_path,
                    branchName=scope.branch_name,
                    featureIds=[f.id for f, _ in features],
                    features=[
                        {"id": f.id, "title": f.title, "phase": phase.value}
                        for f, phase in features
                    ],
                )

            # Resumte Features zuerst, dann der Loop
            self.admission.set_running(scope, True)
            for feature, phase in features:
                if self._spawn(scope, feature, resume_phase=RESUME_POLICY[phase]):
                    resumed.append(feature.id)
            self._start_loop(scope)
            log.info("Resumed auto mode for %s with %d feature(s)", scope, len(features))

        self._persist()
        return resumed

    # ===== LIFECYCLE =====

    async def wait_idle(self, timeout: float | None = None) -> bool:
        """Warten bis keine Feature-Läufe mehr aktiv sind. Returns: False bei Timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while self._runs:
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                return False
            await asyncio.wait(set(self._runs.values()), timeout=remaining)
        return True

    async def shutdown(self) -> None:
        """
        Prozessende: Zustand einfrieren, dann alle Tasks abbrechen.

        Der zuletzt geschriebene Zustand bleibt für resume_interrupted() erhalten.
        """
        self._persist()
        self._shutting_down = True
        for loop in self._loops.values():
            loop.wake.set()

        tasks = [loop.task for loop in self._loops.values() if loop.task and not loop.task.done()]
        tasks += [task for task in self._runs.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        log.info("Auto mode shut down (%d task(s) cancelled)", len(tasks))
