"""Tests for the per-scope admission controller."""

from concurrent.futures import ThreadPoolExecutor

import pytest

from automode import AdmissionController, CancellationToken, RunPhase, Scope

SCOPE = Scope("/proj", "feature/x")
OTHER = Scope("/proj", None)


def make_controller(max_concurrency: int) -> AdmissionController:
    controller = AdmissionController()
    controller.set_max_concurrency(SCOPE, max_concurrency)
    return controller


def test_admission_is_bounded():
    controller = make_controller(2)
    assert controller.try_admit(SCOPE, "a")
    assert controller.try_admit(SCOPE, "b")
    assert not controller.try_admit(SCOPE, "c")

    status = controller.status(SCOPE)
    assert status.running_feature_ids == ["a", "b"]
    assert status.max_concurrency == 2
    assert not controller.is_running("c")


def test_feature_runs_in_one_scope_only():
    controller = AdmissionController()
    assert controller.try_admit(SCOPE, "f1")
    assert not controller.try_admit(OTHER, "f1")
    assert not controller.try_admit(SCOPE, "f1")
    assert controller.status(OTHER).running_feature_ids == []
    assert controller.scope_of("f1") == SCOPE


def test_release_is_idempotent():
    controller = make_controller(2)
    controller.try_admit(SCOPE, "a")
    controller.try_admit(SCOPE, "b")

    assert controller.release(SCOPE, "a")
    assert not controller.release(SCOPE, "a")
    assert not controller.release(SCOPE, "unknown")
    assert controller.status(SCOPE).running_feature_ids == ["b"]


def test_release_with_stale_token_is_ignored():
    controller = make_controller(1)
    first = CancellationToken()
    controller.try_admit(SCOPE, "a", first)
    controller.release(SCOPE, "a", first)

    second = CancellationToken()
    controller.try_admit(SCOPE, "a", second)
    assert not controller.release(SCOPE, "a", first)
    assert controller.is_running("a")
    assert controller.release(SCOPE, "a", second)


def test_end_to_end_single_slot_scenario():
    controller = make_controller(1)
    assert controller.try_admit(SCOPE, "F1")
    assert not controller.try_admit(SCOPE, "F2")
    controller.release(SCOPE, "F1")
    assert controller.try_admit(SCOPE, "F2")


def test_lowering_limit_does_not_preempt():
    controller = make_controller(2)
    controller.try_admit(SCOPE, "a")
    controller.try_admit(SCOPE, "b")

    controller.set_max_concurrency(SCOPE, 1)
    assert controller.status(SCOPE).running_feature_ids == ["a", "b"]
    assert not controller.try_admit(SCOPE, "c")

    controller.release(SCOPE, "a")
    assert not controller.try_admit(SCOPE, "c")
    controller.release(SCOPE, "b")
    assert controller.try_admit(SCOPE, "c")


def test_invalid_limit_is_rejected():
    controller = AdmissionController()
    with pytest.raises(ValueError):
        controller.set_max_concurrency(SCOPE, 0)
    with pytest.raises(ValueError):
        AdmissionController(default_max_concurrency=0)


def test_cancel_targets_the_running_token():
    controller = AdmissionController()
    token = CancellationToken()
    controller.try_admit(SCOPE, "a", token)

    assert controller.cancel("a", "Feature stopped by user")
    assert token.cancelled
    assert token.reason == "Feature stopped by user"
    assert not controller.cancel("missing")


def test_phase_and_progress_tracking():
    controller = AdmissionController()
    controller.try_admit(SCOPE, "a", model="claude-opus")
    controller.set_phase("a", RunPhase.ACTION)
    controller.set_progress("a", 2, 5)

    task = controller.get("a")
    assert task.phase is RunPhase.ACTION
    assert (task.tasks_completed, task.tasks_total) == (2, 5)
    assert task.to_dict()["model"] == "claude-opus"


def test_unknown_scope_status():
    status = AdmissionController(default_max_concurrency=4).status(Scope("/elsewhere"))
    assert not status.is_running
    assert status.running_feature_ids == []
    assert status.max_concurrency == 4


def test_concurrent_admission_respects_limit():
    controller = make_controller(3)
    with ThreadPoolExecutor(max_workers=16) as pool:
        results = list(pool.map(lambda i: controller.try_admit(SCOPE, f"f{i}"), range(50)))
    assert sum(results) == 3
    assert len(controller.status(SCOPE).running_feature_ids) == 3
