"""
Feature Board - Zugriff auf die Feature-Einträge eines Projekts.

Die Engine spricht nur über das FeatureBoard Protocol mit dem Board.
FileFeatureBoard speichert jedes Feature als JSON unter
<project>/.automaker/features/<id>/feature.json.
"""

import json
import logging
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Protocol
from uuid import uuid4

from .models import Feature, FeatureStatus, PlanSpec, Scope
from .prompts import extract_title

log = logging.getLogger(__name__)

FEATURES_DIR = Path(".automaker") / "features"
FEATURE_FILE = "feature.json"
AGENT_OUTPUT_FILE = "agent-output.md"

# Status, in denen Abhängigkeiten als erfüllt gelten
DEPENDENCY_DONE = {FeatureStatus.DONE, FeatureStatus.VERIFIED}


class FeatureBoard(Protocol):
    """Was die Engine vom Board braucht."""

    def list_eligible(self, scope: Scope, include_waiting_approval: bool = False) -> list[Feature]: ...

    def get(self, project_path: str, feature_id: str) -> Feature | None: ...

    def update_status(self, project_path: str, feature_id: str, status: FeatureStatus) -> Feature | None: ...

    def update_plan_spec(self, project_path: str, feature_id: str, plan_spec: PlanSpec) -> Feature | None: ...

    def write_agent_output(self, project_path: str, feature_id: str, content: str) -> None: ...

    def read_agent_output(self, project_path: str, feature_id: str) -> str | None: ...


class FileFeatureBoard:
    """Board auf Basis von JSON-Dateien im Projekt."""

    def __init__(self):
        self._lock = threading.Lock()

    def _features_dir(self, project_path: str) -> Path:
        return Path(project_path) / FEATURES_DIR

    def _feature_dir(self, project_path: str, feature_id: str) -> Path:
        return self._features_dir(project_path) / feature_id

    def _write_json(self, path: Path, data: dict) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(data, indent=2))
        os.replace(tmp_path, path)

    # ===== READ =====

    def get(self, project_path: str, feature_id: str) -> Feature | None:
        path = self._feature_dir(project_path, feature_id) / FEATURE_FILE
        if not path.exists():
            return None
        try:
            return Feature.from_dict(json.loads(path.read_text()))
        except (OSError, json.JSONDecodeError, KeyError, ValueError) as e:
            log.warning("Skipping unreadable feature %s: %s", path, e)
            return None

    def list_features(self, project_path: str) -> list[Feature]:
        """Alle Features in Board-Reihenfolge (Priorität, dann Erstellzeit)."""
        features_dir = self._features_dir(project_path)
        if not features_dir.exists():
            return []

        features = []
        for entry in features_dir.iterdir():
            if not entry.is_dir():
                continue
            feature = self.get(project_path, entry.name)
            if feature:
                features.append(feature)

        features.sort(key=lambda f: (-f.priority, f.created_at))
        return features

    def list_eligible(self, scope: Scope, include_waiting_approval: bool = False) -> list[Feature]:
        """
        Startbare Features eines Scopes.

        Backlog und verwaiste in_progress Features des Branches, deren
        Abhängigkeiten erledigt sind.
        """
        features = self.list_features(scope.project_path)
        done_status = set(DEPENDENCY_DONE)
        if include_waiting_approval:
            done_status.add(FeatureStatus.WAITING_APPROVAL)
        status_by_id = {f.id: f.status for f in features}

        eligible = []
        for feature in features:
            if feature.status not in (FeatureStatus.BACKLOG, FeatureStatus.IN_PROGRESS):
                continue
            if feature.branch_name != scope.branch_name:
                continue
            if any(status_by_id.get(dep) not in done_status for dep in feature.dependencies):
                continue
            eligible.append(feature)
        return eligible

    # ===== WRITE =====

    def save(self, project_path: str, feature: Feature) -> Feature:
        with self._lock:
            feature.updated_at = datetime.now().isoformat()
            path = self._feature_dir(project_path, feature.id) / FEATURE_FILE
            self._write_json(path, feature.to_dict())
        return feature

    def create(self, project_path: str, description: str, **fields) -> Feature:
        """Neues Feature anlegen. Ohne Titel wird er aus der Beschreibung abgeleitet."""
        feature_id = fields.pop("id", None) or f"feature-{str(uuid4())[:8]}"
        feature = Feature(id=feature_id, description=description, **fields)
        if not feature.title:
            feature.title = extract_title(description)
        return self.save(project_path, feature)

    def update_status(self, project_path: str, feature_id: str, status: FeatureStatus) -> Feature | None:
        feature = self.get(project_path, feature_id)
        if feature is None:
            log.warning("Cannot update status of unknown feature %s", feature_id)
            return None
        feature.status = status
        return self.save(project_path, feature)

    def update_plan_spec(self, project_path: str, feature_id: str, plan_spec: PlanSpec) -> Feature | None:
        feature = self.get(project_path, feature_id)
        if feature is None:
            return None
        feature.plan_spec = plan_spec
        return self.save(project_path, feature)

    def write_agent_output(self, project_path: str, feature_id: str, content: str) -> None:
        path = self._feature_dir(project_path, feature_id) / AGENT_OUTPUT_FILE
        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content)

    def read_agent_output(self, project_path: str, feature_id: str) -> str | None:
        path = self._feature_dir(project_path, feature_id) / AGENT_OUTPUT_FILE
        if not path.exists():
            return None
        return path.read_text()
