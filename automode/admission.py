"""
Admission Controller - Begrenzter Run-Pool pro Scope (Projekt x Branch).

Key Features:
- try_admit prüft Kapazität und Single-Run atomar unter einem Lock
- release ist idempotent und optional an den Token gebunden
- Die Token-Map liegt unter demselben Lock wie das Running-Set,
  damit ein Stop nie einen schon wiedervergebenen Slot trifft
"""

import logging
import threading
from dataclasses import dataclass, field

from .cancellation import CancellationToken
from .models import RunPhase, RunningTask, Scope, ScopeStatus

log = logging.getLogger(__name__)


@dataclass
class _ScopeState:
    max_concurrency: int
    is_running: bool = False
    running: dict[str, RunningTask] = field(default_factory=dict)


class AdmissionController:
    """
    Verwaltet Running-Set und Cancellation-Tokens aller Scopes.

    Jede Instanz ist unabhängig; es gibt keinen globalen Zustand.
    """

    def __init__(self, default_max_concurrency: int = 3):
        if default_max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.default_max_concurrency = default_max_concurrency
        self._lock = threading.Lock()
        self._scopes: dict[Scope, _ScopeState] = {}
        # feature_id -> RunningTask, systemweit
        self._tasks: dict[str, RunningTask] = {}

    def _state(self, scope: Scope) -> _ScopeState:
        state = self._scopes.get(scope)
        if state is None:
            state = _ScopeState(max_concurrency=self.default_max_concurrency)
            self._scopes[scope] = state
        return state

    # ===== ADMISSION =====

    def try_admit(
        self,
        scope: Scope,
        feature_id: str,
        token: CancellationToken | None = None,
        *,
        model: str | None = None,
        is_auto_mode: bool = True,
    ) -> bool:
        """
        Slot vergeben, falls frei und das Feature nirgends läuft.

        Returns:
            False ohne Seiteneffekte, wenn der Scope voll ist oder das Feature schon läuft
        """
        with self._lock:
            if feature_id in self._tasks:
                return False
            state = self._state(scope)
            if len(state.running) >= state.max_concurrency:
                return False

            task = RunningTask(
                feature_id=feature_id,
                scope=scope,
                token=token or CancellationToken(),
                model=model,
                is_auto_mode=is_auto_mode,
            )
            state.running[feature_id] = task
            self._tasks[feature_id] = task

        log.info("Admitted %s in %s", feature_id, scope)
        return True

    def release(
        self,
        scope: Scope,
        feature_id: str,
        token: CancellationToken | None = None,
    ) -> bool:
        """
        Slot freigeben. Unbekannte Features sind ein No-op.

        Mit token wird nur freigegeben, wenn der Slot noch zu diesem Token gehört.
        """
        with self._lock:
            task = self._tasks.get(feature_id)
            if task is None or task.scope != scope:
                return False
            if token is not None and task.token is not token:
                return False
            del self._tasks[feature_id]
            self._scopes[scope].running.pop(feature_id, None)

        log.info("Released %s in %s", feature_id, scope)
        return True

    def cancel(self, feature_id: str, reason: str = "Feature stopped by user") -> bool:
        """Token des laufenden Features abbrechen. False wenn es nicht läuft."""
        with self._lock:
            task = self._tasks.get(feature_id)
            if task is None:
                return False
            task.token.cancel(reason)
        return True

    # ===== SCOPE CONFIG =====

    def set_max_concurrency(self, scope: Scope, max_concurrency: int) -> None:
        """Neues Limit. Laufende Tasks werden nie verdrängt."""
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        with self._lock:
            self._state(scope).max_concurrency = max_concurrency

    def set_running(self, scope: Scope, is_running: bool) -> None:
        with self._lock:
            self._state(scope).is_running = is_running

    def is_scope_running(self, scope: Scope) -> bool:
        with self._lock:
            state = self._scopes.get(scope)
            return state.is_running if state else False

    # ===== RUNNING TASKS =====

    def get(self, feature_id: str) -> RunningTask | None:
        with self._lock:
            return self._tasks.get(feature_id)

    def is_running(self, feature_id: str) -> bool:
        with self._lock:
            return feature_id in self._tasks

    def scope_of(self, feature_id: str) -> Scope | None:
        with self._lock:
            task = self._tasks.get(feature_id)
            return task.scope if task else None

    def set_phase(self, feature_id: str, phase: RunPhase) -> None:
        with self._lock:
            task = self._tasks.get(feature_id)
            if task:
                task.phase = phase

    def set_progress(self, feature_id: str, tasks_completed: int, tasks_total: int) -> None:
        with self._lock:
            task = self._tasks.get(feature_id)
            if task:
                task.tasks_completed = tasks_completed
                task.tasks_total = tasks_total

    def running_tasks(self, scope: Scope | None = None) -> list[RunningTask]:
        """Snapshot aller (oder eines Scopes) laufenden Tasks."""
        with self._lock:
            tasks = list(self._tasks.values())
        if scope is not None:
            tasks = [t for t in tasks if t.scope == scope]
        return tasks

    def free_slots(self, scope: Scope) -> int:
        with self._lock:
            state = self._state(scope)
            return max(0, state.max_concurrency - len(state.running))

    # ===== STATUS =====

    def status(self, scope: Scope) -> ScopeStatus:
        with self._lock:
            state = self._scopes.get(scope)
            if state is None:
                return ScopeStatus(
                    is_running=False,
                    running_feature_ids=[],
                    max_concurrency=self.default_max_concurrency,
                    project_path=scope.project_path,
                    branch_name=scope.branch_name,
                )
            return ScopeStatus(
                is_running=state.is_running,
                running_feature_ids=list(state.running),
                max_concurrency=state.max_concurrency,
                project_path=scope.project_path,
                branch_name=scope.branch_name,
            )

    def scopes(self) -> list[Scope]:
        with self._lock:
            return list(self._scopes)

