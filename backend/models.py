"""
Pydantic Models für die Auto-Mode API.
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any

from automode import RunPhase


# ==================== Auto Mode Models ====================

class StartAutoModeRequest(BaseModel):
    """Auto-Loop für einen Scope starten."""
    projectPath: str
    branchName: Optional[str] = None
    maxConcurrency: Optional[int] = Field(default=None, ge=1)


class StopAutoModeRequest(BaseModel):
    """Auto-Loop für einen Scope stoppen."""
    projectPath: str
    branchName: Optional[str] = None


class StopFeatureRequest(BaseModel):
    """Einen laufenden Feature-Lauf abbrechen."""
    featureId: str


class RunFeatureRequest(BaseModel):
    """Ein Feature manuell starten."""
    projectPath: str
    featureId: str


class CommandResponse(BaseModel):
    """Generisches Ergebnis eines Commands."""
    success: bool
    error: Optional[str] = None
    alreadyRunning: Optional[bool] = None
    runningCount: Optional[int] = None
    maxConcurrency: Optional[int] = None
    resumedWithContext: Optional[bool] = None


class AutoModeStatusResponse(BaseModel):
    """Status eines Scopes."""
    isRunning: bool
    runningFeatureIds: List[str] = []
    runningCount: int = 0
    maxConcurrency: int
    projectPath: Optional[str] = None
    branchName: Optional[str] = None


# ==================== Running Agent Models ====================

class RunningAgentModel(BaseModel):
    """Ein laufendes Feature."""
    featureId: str
    projectPath: str
    branchName: Optional[str] = None
    phase: RunPhase
    startedAt: str
    tasksCompleted: int = 0
    tasksTotal: int = 0
    model: Optional[str] = None
    isAutoMode: bool = True


class RunningAgentsResponse(BaseModel):
    """Alle laufenden Features."""
    success: bool = True
    runningAgents: List[RunningAgentModel] = []
    totalCount: int = 0


# ==================== Plan Approval Models ====================

class ApprovePlanRequest(BaseModel):
    """Entscheidung über einen Plan."""
    featureId: str
    approved: bool
    editedPlan: Optional[str] = None
    feedback: Optional[str] = None
    model: Optional[str] = None


class PendingApprovalResponse(BaseModel):
    """Pending Approval eines Features (oder keins)."""
    hasPendingApproval: bool
    approval: Optional[Dict[str, Any]] = None
