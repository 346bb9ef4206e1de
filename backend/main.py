"""
FastAPI Backend für die Auto-Mode Engine.

Features:
- Command API: Start/Stop pro Scope, Stop/Run einzelner Features
- Plan Approval: Freigeben, Revision anfordern, Abbrechen
- Real-time WebSocket Updates aller Engine-Events
- Resume unterbrochener Läufe beim Start

Usage:
    uv run python -m backend.main
"""

import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import APIRouter, FastAPI, Request, WebSocket, WebSocketDisconnect
import uvicorn

from automode import (
    AutoModeOrchestrator,
    AutoModeSettings,
    ClaudeProvider,
    EventBus,
    FileFeatureBoard,
)
from automode.log import setup_logging

from .models import (
    StartAutoModeRequest, StopAutoModeRequest, StopFeatureRequest, RunFeatureRequest,
    CommandResponse, AutoModeStatusResponse,
    RunningAgentModel, RunningAgentsResponse,
    ApprovePlanRequest, PendingApprovalResponse,
)
from .websocket import ConnectionManager

# Load environment variables
load_dotenv()

log = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auto-mode", tags=["auto-mode"])


def get_orchestrator(request: Request) -> AutoModeOrchestrator:
    return request.app.state.orchestrator


def build_orchestrator(settings: AutoModeSettings) -> AutoModeOrchestrator:
    """Engine mit Standard-Kollaborateuren (Datei-Board, Claude Provider)."""
    return AutoModeOrchestrator(
        events=EventBus(),
        board=FileFeatureBoard(),
        provider=ClaudeProvider(),
        settings=settings,
    )


# ==================== Auto Mode API ====================

@router.post("/start", response_model=CommandResponse, response_model_exclude_none=True)
async def start_auto_mode(body: StartAutoModeRequest, request: Request):
    """Auto-Loop für (Projekt, Branch) starten."""
    result = get_orchestrator(request).start(body.projectPath, body.branchName, body.maxConcurrency)
    return CommandResponse(**result.to_dict())


@router.post("/stop", response_model=CommandResponse, response_model_exclude_none=True)
async def stop_auto_mode(body: StopAutoModeRequest, request: Request):
    """Keine neuen Features mehr starten. Laufende laufen zu Ende."""
    result = get_orchestrator(request).stop(body.projectPath, body.branchName)
    return CommandResponse(**result.to_dict())


@router.post("/stop-feature", response_model=CommandResponse, response_model_exclude_none=True)
async def stop_feature(body: StopFeatureRequest, request: Request):
    """Einen laufenden Feature-Lauf abbrechen."""
    result = await get_orchestrator(request).stop_feature(body.featureId)
    return CommandResponse(**result.to_dict())


@router.get("/status", response_model=AutoModeStatusResponse)
async def auto_mode_status(request: Request, projectPath: str, branchName: str | None = None):
    """Status eines Scopes."""
    status = get_orchestrator(request).status(projectPath, branchName)
    return AutoModeStatusResponse(**status.to_dict())


@router.post("/run-feature", response_model=CommandResponse, response_model_exclude_none=True)
async def run_feature(body: RunFeatureRequest, request: Request):
    """Ein Feature manuell starten."""
    result = get_orchestrator(request).run_feature(body.projectPath, body.featureId)
    return CommandResponse(**result.to_dict())


@router.post("/resume-feature", response_model=CommandResponse, response_model_exclude_none=True)
async def resume_feature(body: RunFeatureRequest, request: Request):
    """Ein Feature mit dem Output des letzten Laufs fortsetzen."""
    result = get_orchestrator(request).resume_feature(body.projectPath, body.featureId)
    return CommandResponse(**result.to_dict())


@router.get("/running-agents", response_model=RunningAgentsResponse)
async def running_agents(request: Request):
    """Alle laufenden Features über alle Scopes."""
    tasks = get_orchestrator(request).running_tasks()
    agents = [RunningAgentModel(**t.to_dict()) for t in tasks]
    return RunningAgentsResponse(runningAgents=agents, totalCount=len(agents))


# ==================== Plan Approval API ====================

@router.post("/approve-plan", response_model=CommandResponse, response_model_exclude_none=True)
async def approve_plan(body: ApprovePlanRequest, request: Request):
    """Plan freigeben oder mit Feedback zurückweisen."""
    result = get_orchestrator(request).resolve_plan_approval(
        body.featureId,
        body.approved,
        edited_plan=body.editedPlan,
        feedback=body.feedback,
        model=body.model,
    )
    return CommandResponse(**result.to_dict())


@router.get("/pending-approval/{feature_id}", response_model=PendingApprovalResponse)
async def get_pending_approval(feature_id: str, request: Request):
    """Pending Approval eines Features abrufen."""
    approval = get_orchestrator(request).get_pending_approval(feature_id)
    return PendingApprovalResponse(
        hasPendingApproval=approval is not None,
        approval=approval.to_dict() if approval else None,
    )


@router.delete("/pending-approval/{feature_id}", response_model=CommandResponse, response_model_exclude_none=True)
async def cancel_pending_approval(feature_id: str, request: Request):
    """Pending Approval verwerfen. Auch für unbekannte Features erfolgreich."""
    get_orchestrator(request).cancel_plan_approval(feature_id)
    return CommandResponse(success=True)


def create_app(
    orchestrator: AutoModeOrchestrator | None = None,
    settings: AutoModeSettings | None = None,
) -> FastAPI:
    """App Factory. Ohne Argumente wird die Engine aus dem Environment gebaut."""
    settings = settings or (orchestrator.settings if orchestrator else AutoModeSettings.from_env())
    orchestrator = orchestrator or build_orchestrator(settings)
    manager = ConnectionManager()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application Lifecycle."""
        setup_logging(settings.log_level)
        manager.attach(orchestrator.events)
        log.info("🚀 Auto Mode backend starting (data dir: %s)", settings.data_dir)

        resumed = await orchestrator.resume_interrupted()
        if resumed:
            log.info("Resumed %d interrupted feature(s)", len(resumed))

        yield

        log.info("👋 Shutting down...")
        await orchestrator.shutdown()
        await manager.detach()

    app = FastAPI(
        title="Auto Mode",
        description="Autonomous feature orchestration for AI coding agents",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator
    app.state.manager = manager
    app.include_router(router)

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """WebSocket für Real-time Updates."""
        await manager.connect(websocket)

        # Initial State senden
        await manager.send_to(websocket, {
            "type": "init",
            "runningAgents": [t.to_dict() for t in orchestrator.running_tasks()],
            "connection_count": manager.connection_count,
        })

        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            await manager.disconnect(websocket)

    @app.get("/health")
    async def health():
        """Health Check."""
        return {
            "status": "healthy",
            "connections": manager.connection_count,
            "running_features": len(orchestrator.running_tasks()),
        }

    return app


def main():
    """Entry Point."""
    settings = AutoModeSettings.from_env()
    uvicorn.run(
        "backend.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        reload=settings.reload,
    )


if __name__ == "__main__":
    main()
