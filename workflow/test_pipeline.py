"""Tests for the task pipeline and its transition rules."""

from __future__ import annotations

import sys
from pathlib import Path

_ROOT = Path(__file__).resolve().parent.parent
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

from shared.schemas import Task, TaskStatus
from workflow.pipeline import TaskPipeline


def _pipeline(*ids: str) -> TaskPipeline:
    pipeline = TaskPipeline()
    pipeline.plan(
        Task(id=i, description=f"check {i}", expected_result="ok", related_files=("src/a.ts",))
        for i in ids
    )
    return pipeline


class TestTaskPipeline:

    def test_plan_resets_every_task_to_pending(self):
        pipeline = TaskPipeline()
        pipeline.plan([Task(id="t1", description="d", status=TaskStatus.FAILED, fix_suggestion="x")])
        (task,) = pipeline.tasks
        assert task.status == TaskStatus.PENDING
        assert task.fix_suggestion is None

    def test_legal_transitions(self):
        pipeline = _pipeline("t1")
        assert pipeline.transition("t1", status=TaskStatus.RUNNING).status == TaskStatus.RUNNING
        done = pipeline.transition("t1", status=TaskStatus.FAILED, failure_reason="boom")
        assert done.status == TaskStatus.FAILED
        assert done.failure_reason == "boom"

    def test_illegal_transition_is_dropped(self):
        pipeline = _pipeline("t1")
        assert pipeline.transition("t1", status=TaskStatus.PASSED) is None
        assert pipeline.get("t1").status == TaskStatus.PENDING

    def test_unknown_id_is_a_no_op(self):
        pipeline = _pipeline("t1")
        before = pipeline.tasks
        assert pipeline.transition("nope", status=TaskStatus.RUNNING) is None
        assert pipeline.tasks == before

    def test_fix_only_on_failed_and_link_only_after_fix(self):
        pipeline = _pipeline("t1")
        pipeline.transition("t1", status=TaskStatus.RUNNING)
        assert pipeline.transition("t1", fix_suggestion="patch") is None
        pipeline.transition("t1", status=TaskStatus.FAILED)
        assert pipeline.transition("t1", remediation_link="https://x/pr/1") is None
        assert pipeline.transition("t1", fix_suggestion="patch").fix_suggestion == "patch"
        assert pipeline.transition("t1", remediation_link="https://x/pr/1") is not None

    def test_reset_for_regression_keeps_identity_fields(self):
        pipeline = _pipeline("t1", "t2")
        for tid in ("t1", "t2"):
            pipeline.transition(tid, status=TaskStatus.RUNNING)
        pipeline.transition("t1", status=TaskStatus.FAILED, failure_reason="bad")
        pipeline.transition("t2", status=TaskStatus.PASSED, result_log="good")

        pipeline.reset_for_regression()

        t1, t2 = pipeline.tasks
        assert (t1.status, t2.status) == (TaskStatus.PENDING, TaskStatus.PENDING)
        assert t1.failure_reason is None and t2.result_log is None
        assert t1.description == "check t1"
        assert t1.related_files == ("src/a.ts",)

    def test_release_running(self):
        pipeline = _pipeline("t1", "t2")
        pipeline.transition("t1", status=TaskStatus.RUNNING)
        assert pipeline.release_running() == 1
        assert all(t.status == TaskStatus.PENDING for t in pipeline)

    def test_counts(self):
        pipeline = _pipeline("t1", "t2", "t3")
        pipeline.transition("t1", status=TaskStatus.RUNNING)
        pipeline.transition("t1", status=TaskStatus.FAILED)
        counts = pipeline.counts()
        assert counts == {"PENDING": 2, "RUNNING": 0, "PASSED": 0, "FAILED": 1}
        assert [t.id for t in pipeline.failed()] == ["t1"]

    def test_unknown_status_string_is_dropped(self):
        pipeline = _pipeline("t1")
        assert pipeline.transition("t1", status="DONE") is None
        assert pipeline.get("t1").status == TaskStatus.PENDING

    def test_repeating_an_update_changes_nothing(self):
        pipeline = _pipeline("t1")
        updates = [
            {"status": TaskStatus.RUNNING},
            {"status": TaskStatus.FAILED, "failure_reason": "empty password accepted"},
            {"fix_suggestion": "FILENAME: src/a.ts\nexport const a = 1;"},
        ]
        for update in updates:
            pipeline.transition("t1", **dict(update))
            once = pipeline.tasks
            pipeline.transition("t1", **dict(update))
            assert pipeline.tasks == once
