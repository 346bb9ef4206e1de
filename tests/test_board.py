"""Tests for the file based feature board."""

import json
from pathlib import Path

from automode import FeatureStatus, PlanSpec, PlanStatus, Scope


def test_create_and_get(board, project):
    feature = board.create(project, "Add a login form\nwith validation", id="f1", priority=2)

    assert feature.title == "Add a login form"
    loaded = board.get(project, "f1")
    assert loaded.description.startswith("Add a login form")
    assert loaded.priority == 2
    assert loaded.status is FeatureStatus.BACKLOG
    assert (Path(project) / ".automaker" / "features" / "f1" / "feature.json").exists()


def test_generated_ids(board, project):
    feature = board.create(project, "Something")
    assert feature.id.startswith("feature-")
    assert board.get(project, feature.id) is not None


def test_missing_and_unreadable_features(board, project):
    assert board.get(project, "missing") is None

    broken = Path(project) / ".automaker" / "features" / "broken"
    broken.mkdir(parents=True)
    (broken / "feature.json").write_text("{oops")

    assert board.get(project, "broken") is None
    assert board.list_features(project) == []


def test_list_features_order(board, project):
    board.create(project, "low", id="low", priority=0, created_at="2024-01-01T00:00:00")
    board.create(project, "old", id="old", priority=1, created_at="2024-01-01T00:00:00")
    board.create(project, "new", id="new", priority=1, created_at="2024-02-01T00:00:00")

    assert [f.id for f in board.list_features(project)] == ["old", "new", "low"]


def test_list_eligible_filters_status_and_branch(board, project):
    board.create(project, "a", id="a")
    board.create(project, "b", id="b", status=FeatureStatus.IN_PROGRESS)
    board.create(project, "c", id="c", status=FeatureStatus.VERIFIED)
    board.create(project, "d", id="d", branch_name="feat/x")

    main_ids = {f.id for f in board.list_eligible(Scope(project))}
    assert main_ids == {"a", "b"}
    assert [f.id for f in board.list_eligible(Scope(project, "feat/x"))] == ["d"]


def test_list_eligible_waits_for_dependencies(board, project):
    board.create(project, "base", id="base", status=FeatureStatus.WAITING_APPROVAL)
    board.create(project, "child", id="child", dependencies=["base"])
    board.create(project, "orphan", id="orphan", dependencies=["ghost"])

    assert [f.id for f in board.list_eligible(Scope(project))] == []
    eligible = board.list_eligible(Scope(project), include_waiting_approval=True)
    assert [f.id for f in eligible] == ["child"]

    board.update_status(project, "base", FeatureStatus.DONE)
    assert [f.id for f in board.list_eligible(Scope(project))] == ["child"]


def test_update_status_and_plan_spec(board, project):
    board.create(project, "a", id="a")

    board.update_status(project, "a", FeatureStatus.IN_PROGRESS)
    board.update_plan_spec(project, "a", PlanSpec(status=PlanStatus.GENERATED, content="PLAN"))

    stored = json.loads(
        (Path(project) / ".automaker" / "features" / "a" / "feature.json").read_text()
    )
    assert stored["status"] == "in_progress"
    assert stored["planSpec"]["status"] == "generated"
    assert stored["planSpec"]["content"] == "PLAN"
    assert board.update_status(project, "ghost", FeatureStatus.DONE) is None


def test_agent_output(board, project):
    assert board.read_agent_output(project, "a") is None
    board.write_agent_output(project, "a", "hello")
    assert board.read_agent_output(project, "a") == "hello"
