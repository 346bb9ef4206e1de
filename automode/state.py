"""
Execution State - Persistiert laufende Scopes für Resume nach Neustart.

Format (Version 1):
    {"version": 1, "savedAt": "...", "scopes": [
        {"projectPath": "...", "branchName": null, "isRunning": true,
         "maxConcurrency": 3, "runningFeatures": [{"featureId": "...", "phase": "action"}],
         "savedAt": "..."}]}
"""

import json
import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from .models import RunPhase, Scope

log = logging.getLogger(__name__)

STATE_VERSION = 1


@dataclass
class PersistedFeature:
    feature_id: str
    phase: RunPhase = RunPhase.PLANNING

    def to_dict(self) -> dict:
        return {"featureId": self.feature_id, "phase": self.phase.value}


@dataclass
class PersistedScope:
    """Gespeicherter Zustand eines Scopes."""
    scope: Scope
    is_running: bool
    max_concurrency: int
    running_features: list[PersistedFeature] = field(default_factory=list)
    saved_at: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> dict:
        return {
            "projectPath": self.scope.project_path,
            "branchName": self.scope.branch_name,
            "isRunning": self.is_running,
            "maxConcurrency": self.max_concurrency,
            "runningFeatures": [f.to_dict() for f in self.running_features],
            "savedAt": self.saved_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PersistedScope":
        features = []
        items = data.get("runningFeatures") or []
        if not isinstance(items, list):
            raise TypeError("runningFeatures must be a list")
        for item in items:
            if not isinstance(item, dict) or "featureId" not in item:
                log.warning("Skipping malformed running feature: %r", item)
                continue
            try:
                phase = RunPhase(item.get("phase", RunPhase.PLANNING.value))
            except ValueError:
                phase = RunPhase.PLANNING
            features.append(PersistedFeature(feature_id=item["featureId"], phase=phase))
        return cls(
            scope=Scope(data["projectPath"], data.get("branchName")),
            is_running=bool(data.get("isRunning", False)),
            max_concurrency=int(data.get("maxConcurrency", 3)),
            running_features=features,
            saved_at=data.get("savedAt", ""),
        )


class ExecutionStateStore:
    """JSON-Datei mit atomarem Schreiben (temp + os.replace)."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def load(self) -> list[PersistedScope]:
        """Alle gespeicherten Scopes. Fehlende oder kaputte Datei = leer."""
        with self._lock:
            if not self.path.exists():
                return []
            try:
                data = json.loads(self.path.read_text())
            except (OSError, json.JSONDecodeError) as e:
                log.warning("Ignoring unreadable execution state %s: %s", self.path, e)
                return []

        if not isinstance(data, dict):
            log.warning("Ignoring execution state %s: not a JSON object", self.path)
            return []
        if data.get("version") != STATE_VERSION:
            log.warning("Ignoring execution state with version %s", data.get("version"))
            return []

        items = data.get("scopes")
        if not isinstance(items, list):
            log.warning("Ignoring execution state %s: scopes is not a list", self.path)
            return []

        scopes = []
        for item in items:
            if not isinstance(item, dict):
                log.warning("Skipping malformed scope entry: %r", item)
                continue
            try:
                scopes.append(PersistedScope.from_dict(item))
            except (KeyError, TypeError, ValueError) as e:
                log.warning("Skipping malformed scope entry: %s", e)
        return scopes

    def save(self, scopes: list[PersistedScope]) -> None:
        """Nur Scopes behalten, die laufen oder noch Features haben."""
        kept = [s for s in scopes if s.is_running or s.running_features]
        payload = {
            "version": STATE_VERSION,
            "savedAt": datetime.now().isoformat(),
            "scopes": [s.to_dict() for s in kept],
        }

        with self._lock:
            if not kept:
                self.path.unlink(missing_ok=True)
                return
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(".tmp")
            tmp_path.write_text(json.dumps(payload, indent=2))
            os.replace(tmp_path, self.path)

    def clear(self) -> None:
        with self._lock:
            self.path.unlink(missing_ok=True)
