"""
Models - Datenmodell der Auto-Mode Engine.

Key Features:
- Scope: (Projekt, Branch) als eigene Concurrency-Domäne
- Feature: Board-Eintrag, nur orchestrierungsrelevante Felder
- RunningTask / PendingPlanApproval: Engine-eigener, flüchtiger Zustand
- ActivityEvent: UI-Events mit camelCase JSON
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .cancellation import CancellationToken


class PlanningMode(str, Enum):
    """Planungsmodus eines Features."""
    SKIP = "skip"
    LITE = "lite"
    SPEC = "spec"
    FULL = "full"


class FeatureStatus(str, Enum):
    """Board-Status eines Features."""
    BACKLOG = "backlog"
    IN_PROGRESS = "in_progress"
    WAITING_APPROVAL = "waiting_approval"
    VERIFIED = "verified"
    DONE = "done"
    FAILED = "failed"


class RunPhase(str, Enum):
    """Phase eines laufenden Features."""
    PLANNING = "planning"
    WAITING_APPROVAL = "waiting_approval"
    ACTION = "action"
    VERIFICATION = "verification"


class PlanStatus(str, Enum):
    """Status des gespeicherten Plans."""
    PENDING = "pending"
    GENERATING = "generating"
    GENERATED = "generated"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass(frozen=True)
class Scope:
    """Concurrency-Domäne. branch_name None = Haupt-Worktree."""
    project_path: str
    branch_name: str | None = None

    @property
    def key(self) -> str:
        return f"{self.project_path}::{self.branch_name or '__main__'}"

    def to_dict(self) -> dict:
        return {"projectPath": self.project_path, "branchName": self.branch_name}

    def __str__(self) -> str:
        return f"{self.project_path} [{self.branch_name or 'main'}]"


@dataclass
class ParsedTask:
    """Eine Task aus dem ```tasks Block eines Plans."""
    task_id: str
    description: str
    file_path: str | None = None
    phase: str | None = None
    phase_number: int | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.task_id,
            "description": self.description,
            "filePath": self.file_path,
            "phase": self.phase,
            "phaseNumber": self.phase_number,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ParsedTask":
        return cls(
            task_id=data["id"],
            description=data.get("description", ""),
            file_path=data.get("filePath"),
            phase=data.get("phase"),
            phase_number=data.get("phaseNumber"),
        )


@dataclass
class PlanSpec:
    """Plan eines Features, wie er am Feature gespeichert wird."""
    status: PlanStatus = PlanStatus.PENDING
    content: str = ""
    version: int = 1
    tasks: list[ParsedTask] = field(default_factory=list)
    tasks_completed: int = 0
    current_task_id: str | None = None
    approved_at: str | None = None

    @property
    def tasks_total(self) -> int:
        return len(self.tasks)

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "content": self.content,
            "version": self.version,
            "tasks": [t.to_dict() for t in self.tasks],
            "tasksCompleted": self.tasks_completed,
            "tasksTotal": self.tasks_total,
            "currentTaskId": self.current_task_id,
            "approvedAt": self.approved_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PlanSpec":
        return cls(
            status=PlanStatus(data.get("status", PlanStatus.PENDING.value)),
            content=data.get("content", ""),
            version=data.get("version", 1),
            tasks=[ParsedTask.from_dict(t) for t in data.get("tasks", [])],
            tasks_completed=data.get("tasksCompleted", 0),
            current_task_id=data.get("currentTaskId"),
            approved_at=data.get("approvedAt"),
        )


@dataclass
class Feature:
    """Feature-Eintrag vom Board."""
    id: str
    description: str
    title: str = ""
    spec: str | None = None
    planning_mode: PlanningMode = PlanningMode.SKIP
    require_plan_approval: bool = False
    model: str | None = None
    thinking_level: str | None = None
    branch_name: str | None = None
    status: FeatureStatus = FeatureStatus.BACKLOG
    priority: int = 0
    dependencies: list[str] = field(default_factory=list)
    image_paths: list[str] = field(default_factory=list)
    skip_tests: bool = False
    plan_spec: PlanSpec | None = None
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())
    updated_at: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> dict:
        """Konvertiert zu Dict für JSON (Board-Format)."""
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "spec": self.spec,
            "planningMode": self.planning_mode.value,
            "requirePlanApproval": self.require_plan_approval,
            "model": self.model,
            "thinkingLevel": self.thinking_level,
            "branchName": self.branch_name,
            "status": self.status.value,
            "priority": self.priority,
            "dependencies": list(self.dependencies),
            "imagePaths": list(self.image_paths),
            "skipTests": self.skip_tests,
            "planSpec": self.plan_spec.to_dict() if self.plan_spec else None,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Feature":
        plan_spec = data.get("planSpec")
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            description=data.get("description", ""),
            spec=data.get("spec"),
            planning_mode=PlanningMode(data.get("planningMode", PlanningMode.SKIP.value)),
            require_plan_approval=bool(data.get("requirePlanApproval", False)),
            model=data.get("model"),
            thinking_level=data.get("thinkingLevel"),
            branch_name=data.get("branchName"),
            status=FeatureStatus(data.get("status", FeatureStatus.BACKLOG.value)),
            priority=data.get("priority", 0),
            dependencies=list(data.get("dependencies", [])),
            image_paths=list(data.get("imagePaths", [])),
            skip_tests=bool(data.get("skipTests", False)),
            plan_spec=PlanSpec.from_dict(plan_spec) if plan_spec else None,
            created_at=data.get("createdAt") or datetime.now().isoformat(),
            updated_at=data.get("updatedAt") or datetime.now().isoformat(),
        )


@dataclass
class RunningTask:
    """Flüchtiger Laufzeit-Zustand eines admitteten Features."""
    feature_id: str
    scope: Scope
    token: CancellationToken
    phase: RunPhase = RunPhase.PLANNING
    started_at: datetime = field(default_factory=datetime.now)
    tasks_completed: int = 0
    tasks_total: int = 0
    model: str | None = None
    is_auto_mode: bool = True

    def to_dict(self) -> dict:
        return {
            "featureId": self.feature_id,
            "projectPath": self.scope.project_path,
            "branchName": self.scope.branch_name,
            "phase": self.phase.value,
            "startedAt": self.started_at.isoformat(),
            "tasksCompleted": self.tasks_completed,
            "tasksTotal": self.tasks_total,
            "model": self.model,
            "isAutoMode": self.is_auto_mode,
        }


@dataclass
class PendingPlanApproval:
    """Plan, der auf eine menschliche Entscheidung wartet."""
    feature_id: str
    project_path: str
    plan_content: str
    planning_mode: PlanningMode
    plan_version: int = 1
    created_at: datetime = field(default_factory=datetime.now)
    feedback: str | None = None
    awaiting_revision: bool = False

    def to_dict(self) -> dict:
        return {
            "featureId": self.feature_id,
            "projectPath": self.project_path,
            "planContent": self.plan_content,
            "planningMode": self.planning_mode.value,
            "planVersion": self.plan_version,
            "createdAt": self.created_at.isoformat(),
            "feedback": self.feedback,
            "awaitingRevision": self.awaiting_revision,
        }


@dataclass
class PlanDecision:
    """Entscheidung, die resolve() an den wartenden Driver übergibt."""
    approved: bool
    plan_content: str
    plan_version: int
    has_edits: bool = False
    feedback: str | None = None
    model: str | None = None


@dataclass
class ActivityEvent:
    """Append-only Event für die UI."""
    type: str
    feature_id: str | None = None
    message: str | None = None
    phase: str | None = None
    tool: str | None = None
    passes: bool | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        result: dict[str, Any] = {"type": self.type}
        if self.feature_id is not None:
            result["featureId"] = self.feature_id
        if self.message is not None:
            result["message"] = self.message
        if self.phase is not None:
            result["phase"] = self.phase
        if self.tool is not None:
            result["tool"] = self.tool
        if self.passes is not None:
            result["passes"] = self.passes
        result.update(self.data)
        result["timestamp"] = self.timestamp.isoformat()
        return result


@dataclass
class ScopeStatus:
    """Snapshot eines Scopes."""
    is_running: bool
    running_feature_ids: list[str]
    max_concurrency: int
    project_path: str | None = None
    branch_name: str | None = None

    def to_dict(self) -> dict:
        return {
            "isRunning": self.is_running,
            "runningFeatureIds": list(self.running_feature_ids),
            "runningCount": len(self.running_feature_ids),
            "maxConcurrency": self.max_concurrency,
            "projectPath": self.project_path,
            "branchName": self.branch_name,
        }


@dataclass
class CommandResult:
    """Ergebnis eines Command-API Aufrufs."""
    success: bool
    error: str | None = None
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        result: dict[str, Any] = {"success": self.success}
        if self.error is not None:
            result["error"] = self.error
        result.update(self.data)
        return result
