"""
Auto Mode - Autonome Orchestrierung von Feature-Läufen.

Key Features:
- Scopes: Projekt x Branch mit eigenem Concurrency-Limit
- Phasen: Planning → (Plan Approval) → Action → Verification
- Plan Approval mit Revisionen und Versionierung
- Kooperativer Abbruch einzelner Features
- Resume nach Neustart aus persistiertem Laufzustand

Flow:
  Orchestrator.start(scope) → Board-Scan → AdmissionController.try_admit
       → TaskExecutionDriver.run → Events → Slot frei → nächstes Feature
"""

from .admission import AdmissionController
from .approval import PlanApprovalGate
from .board import FeatureBoard, FileFeatureBoard
from .cancellation import CancellationToken
from .config import AutoModeSettings
from .driver import FeatureResult, PhaseResult, RunOutcome, TaskExecutionDriver
from .errors import (
    ApprovalNotFoundError, ApprovalTimeoutError, AuthenticationError, AutoModeError,
    CancellationError, ErrorInfo, ErrorType, PhaseParseError, PhaseTimeoutError,
    classify_error, user_friendly_message,
)
from .events import EventBus
from .markers import (
    Marker, MarkerKind, extract_planning_marker, extract_task_markers, parse_task_list,
)
from .models import (
    ActivityEvent, CommandResult, Feature, FeatureStatus, ParsedTask, PendingPlanApproval,
    PlanDecision, PlanningMode, PlanSpec, PlanStatus, RunningTask, RunPhase, Scope, ScopeStatus,
)
from .orchestrator import AutoModeOrchestrator
from .prompts import extract_title, planning_prefix
from .provider import ClaudeProvider, Provider, ProviderMessage
from .state import ExecutionStateStore

__all__ = [
    # Orchestrierung
    "AutoModeOrchestrator",
    "AdmissionController",
    "PlanApprovalGate",
    "TaskExecutionDriver",
    "FeatureResult",
    "PhaseResult",
    "RunOutcome",
    # Kollaborateure
    "EventBus",
    "FeatureBoard",
    "FileFeatureBoard",
    "Provider",
    "ClaudeProvider",
    "ProviderMessage",
    "ExecutionStateStore",
    "AutoModeSettings",
    "CancellationToken",
    # Parser & Prompts
    "Marker",
    "MarkerKind",
    "extract_planning_marker",
    "extract_task_markers",
    "parse_task_list",
    "planning_prefix",
    "extract_title",
    # Types
    "ActivityEvent",
    "CommandResult",
    "Feature",
    "FeatureStatus",
    "ParsedTask",
    "PendingPlanApproval",
    "PlanDecision",
    "PlanningMode",
    "PlanSpec",
    "PlanStatus",
    "RunningTask",
    "RunPhase",
    "Scope",
    "ScopeStatus",
    # Errors
    "AutoModeError",
    "CancellationError",
    "AuthenticationError",
    "PhaseParseError",
    "PhaseTimeoutError",
    "ApprovalNotFoundError",
    "ApprovalTimeoutError",
    "ErrorInfo",
    "ErrorType",
    "classify_error",
    "user_friendly_message",
]
