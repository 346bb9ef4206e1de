"""
Plan Approval Gate - Human-in-the-Loop Checkpoint zwischen Planung und Umsetzung.

Key Features:
- Höchstens ein Pending Approval pro Feature
- Approve / Revise (Version + 1) / Reject ohne Feedback (= Abbruch)
- Der wartende Driver blockiert nur seine eigene Coroutine
- cancel() wirft nie, auch nicht für unbekannte Features
"""

import asyncio
import logging
import threading
from dataclasses import dataclass, replace

from .errors import ApprovalNotFoundError, ApprovalTimeoutError, CancellationError
from .events import EventBus
from .models import CommandResult, PendingPlanApproval, PlanDecision, PlanningMode

log = logging.getLogger(__name__)

PLAN_CANCELLED_MESSAGE = "Plan cancelled by user"
APPROVAL_CANCELLED_MESSAGE = "Plan approval cancelled - feature was stopped"


@dataclass
class _Entry:
    approval: PendingPlanApproval
    future: asyncio.Future | None = None


def _settle(future: asyncio.Future | None, result=None, error: BaseException | None = None) -> None:
    """Future threadsafe im eigenen Loop auflösen."""
    if future is None or future.done():
        return

    def apply() -> None:
        if future.done():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(result)

    future.get_loop().call_soon_threadsafe(apply)


class PlanApprovalGate:
    """Registry aller Pläne, die auf Freigabe warten."""

    def __init__(self, events: EventBus):
        self.events = events
        self._lock = threading.Lock()
        self._pending: dict[str, _Entry] = {}

    def request_approval(
        self,
        feature_id: str,
        project_path: str,
        plan_content: str,
        planning_mode: PlanningMode,
    ) -> PendingPlanApproval:
        """
        Plan zur Freigabe registrieren und plan_approval_required emittieren.

        Neuer Eintrag startet bei Version 1. Nach einer Revision bleibt die
        beim Reject erhöhte Version erhalten.
        """
        future = asyncio.get_running_loop().create_future()

        with self._lock:
            entry = self._pending.get(feature_id)
            if entry is not None:
                _settle(entry.future, error=CancellationError(APPROVAL_CANCELLED_MESSAGE))
                approval = replace(
                    entry.approval,
                    plan_content=plan_content,
                    planning_mode=planning_mode,
                    awaiting_revision=False,
                )
            else:
                approval = PendingPlanApproval(
                    feature_id=feature_id,
                    project_path=project_path,
                    plan_content=plan_content,
                    planning_mode=planning_mode,
                )
            self._pending[feature_id] = _Entry(approval=approval, future=future)

        log.info("Plan v%d for %s awaits approval", approval.plan_version, feature_id)
        self.events.emit(
            "plan_approval_required",
            feature_id,
            projectPath=project_path,
            planContent=plan_content,
            planningMode=planning_mode.value,
            planVersion=approval.plan_version,
        )
        return replace(approval)

    async def wait_for_decision(self, feature_id: str, timeout: float | None = None) -> PlanDecision:
        """
        Auf resolve() warten.

        Raises:
            ApprovalNotFoundError: Kein Eintrag für das Feature
            ApprovalTimeoutError: Keine Entscheidung innerhalb von timeout
            CancellationError: Reject ohne Feedback oder cancel()
        """
        with self._lock:
            entry = self._pending.get(feature_id)
            future = entry.future if entry else None
        if future is None:
            raise ApprovalNotFoundError(feature_id)

        try:
            if timeout:
                return await asyncio.wait_for(future, timeout)
            return await future
        except asyncio.TimeoutError:
            with self._lock:
                current = self._pending.get(feature_id)
                if current is not None and current.future is future:
                    del self._pending[feature_id]
            log.warning("Plan approval for %s timed out", feature_id)
            raise ApprovalTimeoutError(timeout) from None

    def resolve(
        self,
        feature_id: str,
        approve: bool,
        edited_plan: str | None = None,
        feedback: str | None = None,
        model: str | None = None,
    ) -> CommandResult:
        """Entscheidung des Users anwenden. Fehler kommen als CommandResult zurück."""
        with self._lock:
            entry = self._pending.get(feature_id)
            if entry is None:
                return CommandResult(success=False, error=str(ApprovalNotFoundError(feature_id)))
            if entry.approval.awaiting_revision:
                return CommandResult(
                    success=False,
                    error=f"Plan for feature {feature_id} is being revised",
                )

            approval = entry.approval
            future = entry.future
            if approve:
                del self._pending[feature_id]
                content = edited_plan if edited_plan is not None else approval.plan_content
                has_edits = edited_plan is not None and edited_plan != approval.plan_content
                decision = PlanDecision(
                    approved=True,
                    plan_content=content,
                    plan_version=approval.plan_version,
                    has_edits=has_edits,
                    feedback=feedback,
                    model=model,
                )
            elif feedback or edited_plan:
                approval.plan_version += 1
                approval.awaiting_revision = True
                approval.feedback = feedback
                if edited_plan:
                    approval.plan_content = edited_plan
                decision = PlanDecision(
                    approved=False,
                    plan_content=approval.plan_content,
                    plan_version=approval.plan_version,
                    has_edits=bool(edited_plan),
                    feedback=feedback,
                    model=model,
                )
                entry.future = None
            else:
                del self._pending[feature_id]
                decision = None

        if decision is None:
            log.info("Plan for %s rejected", feature_id)
            self.events.emit("plan_rejected", feature_id, projectPath=approval.project_path)
            _settle(future, error=CancellationError(PLAN_CANCELLED_MESSAGE))
        elif decision.approved:
            log.info("Plan v%d for %s approved", decision.plan_version, feature_id)
            self.events.emit(
                "plan_approved",
                feature_id,
                projectPath=approval.project_path,
                hasEdits=decision.has_edits,
                planVersion=decision.plan_version,
            )
            _settle(future, result=decision)
        else:
            log.info("Revision v%d requested for %s", decision.plan_version, feature_id)
            self.events.emit(
                "plan_revision_requested",
                feature_id,
                projectPath=approval.project_path,
                feedback=feedback,
                hasEdits=decision.has_edits,
                planVersion=decision.plan_version,
            )
            _settle(future, result=decision)

        return CommandResult(success=True)

    def has_pending_approval(self, feature_id: str) -> bool:
        with self._lock:
            return feature_id in self._pending

    def get_pending(self, feature_id: str) -> PendingPlanApproval | None:
        with self._lock:
            entry = self._pending.get(feature_id)
            return replace(entry.approval) if entry else None

    def pending_feature_ids(self) -> list[str]:
        with self._lock:
            return list(self._pending)

    def cancel(self, feature_id: str) -> None:
        """Pending Approval verwerfen. No-op wenn keins existiert."""
        with self._lock:
            entry = self._pending.pop(feature_id, None)
        if entry is None:
            return
        log.info("Plan approval for %s cancelled", feature_id)
        _settle(entry.future, error=CancellationError(APPROVAL_CANCELLED_MESSAGE))
