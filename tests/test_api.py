"""Tests for the HTTP and WebSocket surface."""

import pytest
from fastapi.testclient import TestClient

import backend.main
from automode import RunPhase
from backend.main import create_app
from backend.models import RunningAgentModel

API = "/api/auto-mode"


@pytest.fixture()
def client(make_orchestrator):
    app = create_app(make_orchestrator())
    with TestClient(app) as test_client:
        yield test_client


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_start_status_stop(client, project):
    response = client.post(f"{API}/start", json={"projectPath": project, "maxConcurrency": 2})
    assert response.json() == {"success": True, "maxConcurrency": 2}

    again = client.post(f"{API}/start", json={"projectPath": project})
    assert again.json() == {"success": True, "alreadyRunning": True}

    status = client.get(f"{API}/status", params={"projectPath": project}).json()
    assert status["isRunning"] is True
    assert status["maxConcurrency"] == 2
    assert status["runningCount"] == 0

    stopped = client.post(f"{API}/stop", json={"projectPath": project})
    assert stopped.json() == {"success": True, "runningCount": 0}
    status = client.get(f"{API}/status", params={"projectPath": project}).json()
    assert status["isRunning"] is False


def test_invalid_requests_are_rejected(client, project):
    assert client.post(f"{API}/start", json={"projectPath": project, "maxConcurrency": 0}).status_code == 422
    assert client.post(f"{API}/start", json={}).status_code == 422
    assert client.get(f"{API}/status").status_code == 422


def test_feature_commands_for_unknown_features(client, project):
    stopped = client.post(f"{API}/stop-feature", json={"featureId": "ghost"}).json()
    assert stopped == {"success": False, "error": "Feature ghost is not running"}

    run = client.post(f"{API}/run-feature", json={"projectPath": project, "featureId": "ghost"}).json()
    assert run["success"] is False

    approve = client.post(f"{API}/approve-plan", json={"featureId": "ghost", "approved": True}).json()
    assert approve == {"success": False, "error": "No pending approval found for feature ghost"}


def test_pending_approval_endpoints(client):
    pending = client.get(f"{API}/pending-approval/ghost").json()
    assert pending == {"hasPendingApproval": False, "approval": None}

    cancelled = client.delete(f"{API}/pending-approval/ghost").json()
    assert cancelled == {"success": True}


def test_running_agents_empty(client):
    body = client.get(f"{API}/running-agents").json()
    assert body == {"success": True, "runningAgents": [], "totalCount": 0}


def test_websocket_streams_events(client, project):
    with client.websocket_connect("/ws") as websocket:
        init = websocket.receive_json()
        assert init["type"] == "init"
        assert init["runningAgents"] == []

        client.post(f"{API}/start", json={"projectPath": project})
        message = websocket.receive_json()
        assert message["type"] == "auto-mode:event"
        assert message["event"]["type"] == "auto_mode_started"
        assert message["event"]["projectPath"] == project


def test_resume_feature_with_stored_output(client, board, project):
    board.create(project, "Export", id="f1")
    board.write_agent_output(project, "f1", "Created export.py")

    resumed = client.post(f"{API}/resume-feature", json={"projectPath": project, "featureId": "f1"}).json()
    assert resumed == {"success": True, "resumedWithContext": True}

    missing = client.post(f"{API}/resume-feature", json={"projectPath": project, "featureId": "ghost"}).json()
    assert missing == {"success": False, "error": "Feature ghost not found"}


def test_running_agent_phase_uses_engine_enum():
    agent = RunningAgentModel(featureId="f1", projectPath="/p", phase="action", startedAt="now")
    assert agent.phase is RunPhase.ACTION


def test_main_reload_is_opt_in(monkeypatch):
    calls = []
    monkeypatch.setattr(backend.main.uvicorn, "run", lambda *args, **kwargs: calls.append(kwargs))
    monkeypatch.delenv("AUTOMODE_RELOAD", raising=False)
    backend.main.main()
    monkeypatch.setenv("AUTOMODE_RELOAD", "true")
    backend.main.main()

    assert [c["reload"] for c in calls] == [False, True]
    assert calls[0]["factory"] is True
