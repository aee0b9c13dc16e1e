"""Task pipeline – the ordered test scenarios of one planning pass.

The pipeline owns every status transition and annotation of its tasks.
Tasks are frozen; each update swaps in a new instance, so a tuple handed
out by ``tasks`` is a stable snapshot.

Rules enforced on ``transition``:
  • status moves PENDING → RUNNING → PASSED | FAILED (re-applying the
    current status is allowed, which keeps updates idempotent)
  • ``fix_suggestion`` is only attached to a FAILED task
  • ``remediation_link`` is only attached once a fix suggestion exists
An update breaking a rule is dropped with a warning, never raised.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import replace
from typing import Any, Iterable

from shared.schemas import Task, TaskStatus

logger = logging.getLogger(__name__)

_ALLOWED_STATUS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.PENDING, TaskStatus.RUNNING}),
    TaskStatus.RUNNING: frozenset({TaskStatus.RUNNING, TaskStatus.PASSED, TaskStatus.FAILED}),
    TaskStatus.PASSED: frozenset({TaskStatus.PASSED}),
    TaskStatus.FAILED: frozenset({TaskStatus.FAILED}),
}


class TaskPipeline:
    """Ordered collection of tasks with guarded per-task updates."""

    def __init__(self, tasks: Iterable[Task] = ()) -> None:
        self._tasks: list[Task] = list(tasks)

    # ── Read-only access ─────────────────────────────────────────────

    @property
    def tasks(self) -> tuple[Task, ...]:
        return tuple(self._tasks)

    def get(self, task_id: str) -> Task | None:
        for task in self._tasks:
            if task.id == task_id:
                return task
        return None

    def failed(self) -> list[Task]:
        return [t for t in self._tasks if t.status == TaskStatus.FAILED]

    def counts(self) -> dict[str, int]:
        tally = Counter(t.status for t in self._tasks)
        return {status.value: tally.get(status, 0) for status in TaskStatus}

    def __len__(self) -> int:
        return len(self._tasks)

    def __iter__(self):
        return iter(tuple(self._tasks))

    # ── Mutations ────────────────────────────────────────────────────

    def plan(self, tasks: Iterable[Task]) -> None:
        """Replace the pipeline wholesale; every task starts PENDING."""
        self._tasks = [
            replace(
                t,
                status=TaskStatus.PENDING,
                result_log=None,
                failure_reason=None,
                fix_suggestion=None,
                remediation_link=None,
                execution_log=(),
            )
            for t in tasks
        ]

    def clear(self) -> None:
        self._tasks = []

    def transition(self, task_id: str, **changes: Any) -> Task | None:
        """Apply a partial update to the task with *task_id*.

        Returns the updated task, or ``None`` when the id is unknown or
        the update was rejected.
        """
        for index, task in enumerate(self._tasks):
            if task.id != task_id:
                continue
            problem = _rule_violation(task, changes)
            if problem:
                logger.warning("Dropped update for task %s: %s", task_id, problem)
                return None
            if "related_files" in changes:
                changes["related_files"] = tuple(changes["related_files"] or ())
            if "execution_log" in changes:
                changes["execution_log"] = tuple(changes["execution_log"] or ())
            updated = replace(task, **changes)
            self._tasks[index] = updated
            return updated

        logger.debug("Ignoring update for unknown task id %s", task_id)
        return None

    def reset_for_regression(self) -> None:
        """Rerun the same scenarios: back to PENDING, outcome fields cleared."""
        self._tasks = [
            replace(t, status=TaskStatus.PENDING, result_log=None, failure_reason=None)
            for t in self._tasks
        ]

    def release_running(self) -> int:
        """Put interrupted RUNNING tasks back to PENDING. Returns how many."""
        released = 0
        for index, task in enumerate(self._tasks):
            if task.status == TaskStatus.RUNNING:
                self._tasks[index] = replace(task, status=TaskStatus.PENDING)
                released += 1
        return released


def _rule_violation(task: Task, changes: dict[str, Any]) -> str:
    new_status = changes.get("status", task.status)
    if not isinstance(new_status, TaskStatus):
        try:
            new_status = TaskStatus(new_status)
        except ValueError:
            return f"unknown status {new_status!r}"
        changes["status"] = new_status
    if new_status not in _ALLOWED_STATUS[task.status]:
        return f"illegal status change {task.status.value} -> {new_status.value}"

    if changes.get("fix_suggestion") is not None and new_status != TaskStatus.FAILED:
        return "fix suggestions only attach to FAILED tasks"

    if changes.get("remediation_link") is not None:
        fix = changes.get("fix_suggestion", task.fix_suggestion)
        if not fix:
            return "remediation link requires a fix suggestion"
    return ""
