import pytest

from stepflow.compiler import compile_manifest
from stepflow.errors import ResumeError
from stepflow.manifest import ManifestTree
from stepflow.order import (
    SKIP_BEFORE_START,
    SKIP_COMPLETED,
    SKIP_INACTIVE,
    SKIP_REQUESTED,
    plan_execution,
    resume_start,
)


def manifest(*orders):
    return {
        f"step{i}": {"Execution Order": str(order), "Program Name": "echo", "0": str(i)}
        for i, order in enumerate(orders, start=1)
    }


def queue_of(*orders):
    return compile_manifest(ManifestTree.from_json(manifest(*orders)))


def test_everything_runs_by_default():
    plan = plan_execution(queue_of(3, 1, 2))

    assert [r.order for r in plan.to_run] == [1, 2, 3]
    assert plan.skipped == []


def test_start_at_skips_earlier_steps():
    plan = plan_execution(queue_of(1, 2, 3, 4), start_at=3)

    assert [r.order for r in plan.to_run] == [3, 4]
    assert [(r.order, why) for r, why in plan.skipped] == [
        (1, SKIP_BEFORE_START),
        (2, SKIP_BEFORE_START),
    ]


def test_completed_steps_never_rerun():
    plan = plan_execution(queue_of(-1, 2, -3, 4))

    assert [r.order for r in plan.to_run] == [2, 4]
    assert [(r.position, why) for r, why in plan.skipped] == [
        (1, SKIP_COMPLETED),
        (3, SKIP_COMPLETED),
    ]


def test_skip_steps():
    plan = plan_execution(queue_of(1, 2, 3, 4), start_at=2, skip_steps=[3, 99])

    assert [r.order for r in plan.to_run] == [2, 4]
    assert (plan.skipped[1][0].order, plan.skipped[1][1]) == (3, SKIP_REQUESTED)


def test_resume_starts_after_highest_completed():
    previous = ManifestTree.from_json(manifest(-1, -2, 3, 4))

    assert resume_start(previous) == 3


def test_resume_with_nothing_completed_starts_at_one():
    assert resume_start(ManifestTree.from_json(manifest(1, 2))) == 1


def test_resume_of_finished_run_is_an_error():
    with pytest.raises(ResumeError):
        resume_start(ManifestTree.from_json(manifest(-1, -2)))


def test_inactive_steps_are_skipped():
    doc = manifest(1, 2, 3)
    doc["step2"]["Active"] = False
    plan = plan_execution(compile_manifest(ManifestTree.from_json(doc)))

    assert [r.order for r in plan.to_run] == [1, 3]
    assert [(r.order, why) for r, why in plan.skipped] == [(2, SKIP_INACTIVE)]


def test_inactive_steps_do_not_count_as_pending_on_resume():
    doc = manifest(-1, 2)
    doc["step2"]["Active"] = False

    with pytest.raises(ResumeError):
        resume_start(ManifestTree.from_json(doc))


def test_unparseable_order_in_previous_log():
    doc = manifest(-1, 2)
    doc["step2"]["Execution Order"] = "abc"

    with pytest.raises(ResumeError) as exc_info:
        resume_start(ManifestTree.from_json(doc))
    assert "step2" in str(exc_info.value)
