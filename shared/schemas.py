"""Shared schemas used across the workflow engine, agents and backend.

Records that leave the process (archive blobs, the durable session record,
API payloads) serialize through ``to_dict()`` / ``from_dict()`` with the
camelCase field names of the wire format.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ── Enums ────────────────────────────────────────────────────────────

class TaskStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    PASSED = "PASSED"
    FAILED = "FAILED"


class AgentRole(str, Enum):
    ARCHITECT = "ARCHITECT"   # reads code, summarizes logic
    QA_LEAD = "QA_LEAD"       # breaks the summary down into tasks
    TESTER = "TESTER"         # simulates execution and validates
    FIXER = "FIXER"           # proposes fixes
    SYSTEM = "SYSTEM"


class WorkflowStep(str, Enum):
    IDLE = "IDLE"
    ANALYZING = "ANALYZING"
    PLANNING = "PLANNING"
    TESTING = "TESTING"
    FIXING = "FIXING"
    REGRESSION_CHECK = "REGRESSION_CHECK"
    COMPLETED = "COMPLETED"


RESTING_STEPS = frozenset({WorkflowStep.IDLE, WorkflowStep.COMPLETED})

INITIAL_REPORT_TEMPLATE = "# QA Progress Report\n----------------------------------\n"


# ── Task ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Task:
    """One verifiable test scenario."""

    id: str
    description: str
    expected_result: str = ""
    status: TaskStatus = TaskStatus.PENDING
    result_log: str | None = None
    failure_reason: str | None = None
    fix_suggestion: str | None = None
    related_files: tuple[str, ...] = ()
    remediation_link: str | None = None
    execution_log: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "expectedResult": self.expected_result,
            "status": self.status.value,
            "resultLog": self.result_log,
            "failureReason": self.failure_reason,
            "fixSuggestion": self.fix_suggestion,
            "relatedFiles": list(self.related_files),
            "remediationLink": self.remediation_link,
            "executionLog": list(self.execution_log),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        return cls(
            id=str(data["id"]),
            description=data.get("description", ""),
            expected_result=data.get("expectedResult", ""),
            status=TaskStatus(data.get("status", TaskStatus.PENDING.value)),
            result_log=data.get("resultLog"),
            failure_reason=data.get("failureReason"),
            fix_suggestion=data.get("fixSuggestion"),
            related_files=tuple(data.get("relatedFiles") or ()),
            remediation_link=data.get("remediationLink"),
            execution_log=tuple(data.get("executionLog") or ()),
        )


# ── Log stream ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class LogEntry:
    """A single entry of the session's log stream."""

    role: AgentRole
    message: str
    level: str = "info"       # info | success | warning | error
    source: str | None = None
    details: dict[str, Any] | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:9])
    timestamp: str = field(default_factory=utcnow_iso)

    def format_line(self) -> str:
        return f"[{self.timestamp}] [{self.role.value}] {self.level.upper()}: {self.message}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "role": self.role.value,
            "message": self.message,
            "type": self.level,
            "source": self.source,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LogEntry:
        return cls(
            id=data.get("id") or uuid.uuid4().hex[:9],
            timestamp=data.get("timestamp") or utcnow_iso(),
            role=AgentRole(data.get("role", AgentRole.SYSTEM.value)),
            message=data.get("message", ""),
            level=data.get("type", "info"),
            source=data.get("source"),
            details=data.get("details"),
        )


# ── Cycle history ────────────────────────────────────────────────────

@dataclass(frozen=True)
class CycleHistoryItem:
    """Archival pointer for one completed test cycle.

    ``tasks`` only lives in memory; it is stripped from every durable write
    and can be dropped once ``storage_url`` is set.
    """

    cycle_number: int
    defect_count: int
    timestamp: str = field(default_factory=utcnow_iso)
    storage_url: str | None = None
    tasks: tuple[Task, ...] | None = None

    def lightweight(self) -> CycleHistoryItem:
        return replace(self, tasks=None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "cycleNumber": self.cycle_number,
            "defectCount": self.defect_count,
            "timestamp": self.timestamp,
            "storageUrl": self.storage_url,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CycleHistoryItem:
        tasks = data.get("tasks")
        return cls(
            cycle_number=int(data["cycleNumber"]),
            defect_count=int(data.get("defectCount", 0)),
            timestamp=data.get("timestamp") or utcnow_iso(),
            storage_url=data.get("storageUrl"),
            tasks=tuple(Task.from_dict(t) for t in tasks) if tasks is not None else None,
        )


@dataclass(frozen=True)
class CycleView:
    """Read-only projection of an archived cycle."""

    cycle_number: int
    tasks: tuple[Task, ...]
    logs: tuple[LogEntry, ...] = ()
    report: str | None = None
    partial: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "cycleNumber": self.cycle_number,
            "tasks": [t.to_dict() for t in self.tasks],
            "logs": [entry.to_dict() for entry in self.logs],
            "report": self.report,
            "partial": self.partial,
        }


# ── Catalog ──────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SessionSnapshot:
    """Structural snapshot of a session, sufficient to resume it."""

    repo_name: str
    code_context: str = ""
    function_summary: str = ""
    tasks: tuple[Task, ...] = ()
    logs: tuple[LogEntry, ...] = ()
    progress_report: str = INITIAL_REPORT_TEMPLATE
    current_cycle: int = 0
    workflow_step: WorkflowStep = WorkflowStep.IDLE
    cycle_history: tuple[CycleHistoryItem, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "currentRepoName": self.repo_name,
            "codeContext": self.code_context,
            "functionSummary": self.function_summary,
            "tasks": [t.to_dict() for t in self.tasks],
            "logs": [entry.to_dict() for entry in self.logs],
            "progressReport": self.progress_report,
            "currentCycle": self.current_cycle,
            "workflowStep": self.workflow_step.value,
            # Per-cycle task arrays live in the archive, never in the record.
            "cycleHistory": [item.to_dict() for item in self.cycle_history],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionSnapshot:
        return cls(
            repo_name=data.get("currentRepoName", ""),
            code_context=data.get("codeContext", ""),
            function_summary=data.get("functionSummary", ""),
            tasks=tuple(Task.from_dict(t) for t in data.get("tasks") or ()),
            logs=tuple(LogEntry.from_dict(e) for e in data.get("logs") or ()),
            progress_report=data.get("progressReport", INITIAL_REPORT_TEMPLATE),
            current_cycle=int(data.get("currentCycle", 0)),
            workflow_step=WorkflowStep(data.get("workflowStep", WorkflowStep.IDLE.value)),
            cycle_history=tuple(
                CycleHistoryItem.from_dict(h) for h in data.get("cycleHistory") or ()
            ),
        )


@dataclass(frozen=True)
class RepoCatalogItem:
    """One remembered project."""

    id: str
    name: str
    description: str = ""
    last_analyzed: str = field(default_factory=utcnow_iso)
    summary_snippet: str = ""
    saved_state: SessionSnapshot | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "lastAnalyzed": self.last_analyzed,
            "summarySnippet": self.summary_snippet,
            "savedState": self.saved_state.to_dict() if self.saved_state else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RepoCatalogItem:
        saved = data.get("savedState")
        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            description=data.get("description", ""),
            last_analyzed=data.get("lastAnalyzed") or utcnow_iso(),
            summary_snippet=data.get("summarySnippet", ""),
            saved_state=SessionSnapshot.from_dict(saved) if saved else None,
        )

