"""Session and catalog store.

Holds the live ``SessionState`` of the single working session, the catalog
of previously analyzed projects and the standing provider configuration,
and mirrors all three into one durable record through an injected
``KeyValueStore``::

    {version, sessionId, providerConfig, catalog, session}

Per-cycle task arrays are never part of that record; they live in the
archive and are rehydrated on demand.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable

from shared.errors import PreconditionError
from shared.schemas import (
    INITIAL_REPORT_TEMPLATE,
    RESTING_STEPS,
    AgentRole,
    CycleHistoryItem,
    CycleView,
    LogEntry,
    RepoCatalogItem,
    SessionSnapshot,
    TaskStatus,
    WorkflowStep,
    utcnow_iso,
)
from workflow.persistence import DebouncedWriter, KeyValueStore
from workflow.pipeline import TaskPipeline

logger = logging.getLogger(__name__)

RECORD_VERSION = 1

_LOG_LEVELS = {
    "info": logging.INFO,
    "success": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def new_session_id(prefix: str = "qa_session_") -> str:
    return f"{prefix}{int(time.time() * 1000)}"


def report_line(action: str, detail: str) -> str:
    """One ``[time] [ACTION] detail`` progress-report line."""
    return f"[{datetime.now():%H:%M:%S}] [{action}] {detail}\n"


# ── Live session ─────────────────────────────────────────────────────

@dataclass
class SessionState:
    """The live working set of the current session."""

    session_id: str
    repo_name: str = ""
    code_context: str = ""
    function_summary: str = ""
    pipeline: TaskPipeline = field(default_factory=TaskPipeline)
    logs: list[LogEntry] = field(default_factory=list)
    progress_report: str = INITIAL_REPORT_TEMPLATE
    current_cycle: int = 0
    max_cycles: int = 3
    step: WorkflowStep = WorkflowStep.IDLE
    cycle_history: list[CycleHistoryItem] = field(default_factory=list)
    viewing_cycle: CycleView | None = None

    @property
    def is_processing(self) -> bool:
        return self.step not in RESTING_STEPS

    def add_log(
        self,
        role: AgentRole,
        message: str,
        level: str = "info",
        source: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> LogEntry:
        entry = LogEntry(role=role, message=message, level=level, source=source, details=details)
        self.logs.append(entry)
        logger.log(_LOG_LEVELS.get(level, logging.INFO), "[%s] %s", role.value, message)
        return entry

    def record_cycle(self, item: CycleHistoryItem) -> None:
        """Add a history pointer, replacing any earlier one with the same number."""
        self.cycle_history = [h for h in self.cycle_history if h.cycle_number != item.cycle_number]
        self.cycle_history.append(item)
        self.cycle_history.sort(key=lambda h: h.cycle_number)

    def find_cycle(self, cycle_number: int) -> CycleHistoryItem | None:
        for item in self.cycle_history:
            if item.cycle_number == cycle_number:
                return item
        return None

    def reset_run(self) -> None:
        """Drop everything derived from a previous analysis."""
        self.function_summary = ""
        self.pipeline.clear()
        self.logs = []
        self.progress_report = INITIAL_REPORT_TEMPLATE
        self.current_cycle = 0
        self.cycle_history = []
        self.viewing_cycle = None

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            repo_name=self.repo_name,
            code_context=self.code_context,
            function_summary=self.function_summary,
            tasks=self.pipeline.tasks,
            logs=tuple(self.logs),
            progress_report=self.progress_report,
            current_cycle=self.current_cycle,
            workflow_step=self.step,
            cycle_history=tuple(h.lightweight() for h in self.cycle_history),
        )

    def to_status(self) -> dict[str, Any]:
        """Status payload for API consumers."""
        return {
            "sessionId": self.session_id,
            "repoName": self.repo_name,
            "workflowStep": self.step.value,
            "isProcessing": self.is_processing,
            "currentCycle": self.current_cycle,
            "maxCycles": self.max_cycles,
            "hasSource": bool(self.code_context.strip()),
            "functionSummary": self.function_summary,
            "taskCounts": self.pipeline.counts(),
            "tasks": [t.to_dict() for t in self.pipeline.tasks],
            "progressReport": self.progress_report,
            "cycleHistory": [h.to_dict() for h in self.cycle_history],
            "viewingCycle": self.viewing_cycle.cycle_number if self.viewing_cycle else None,
            "logCount": len(self.logs),
        }


def normalize_snapshot(snapshot: SessionSnapshot) -> SessionSnapshot:
    """Make a saved snapshot safe to resume.

    A step that was in flight when the snapshot was taken becomes IDLE,
    and RUNNING tasks go back to PENDING.
    """
    step = snapshot.workflow_step
    if step not in RESTING_STEPS:
        step = WorkflowStep.IDLE
    tasks = tuple(
        replace(t, status=TaskStatus.PENDING) if t.status == TaskStatus.RUNNING else t
        for t in snapshot.tasks
    )
    history = tuple(h.lightweight() for h in snapshot.cycle_history)
    return replace(snapshot, workflow_step=step, tasks=tasks, cycle_history=history)


# ── Store ────────────────────────────────────────────────────────────

class SessionStore:
    """Owns the live session, the project catalog and provider config."""

    def __init__(
        self,
        kv: KeyValueStore,
        key: str = "QA_APP_STATE_V1",
        debounce_s: float = 1.0,
        max_cycles: int = 3,
        session_id_prefix: str = "qa_session_",
    ) -> None:
        self.kv = kv
        self.key = key
        self.max_cycles = max_cycles
        self.session_id_prefix = session_id_prefix
        self.state = SessionState(session_id=new_session_id(session_id_prefix), max_cycles=max_cycles)
        self.catalog: list[RepoCatalogItem] = []
        self.provider_config: dict[str, str] = {}
        self._writer = DebouncedWriter(kv, key, debounce_s)
        self._listeners: list[Callable[[SessionState], None]] = []

    # ── Listeners / persistence ──────────────────────────────────────

    def add_listener(self, listener: Callable[[SessionState], None]) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[SessionState], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def touch(self) -> None:
        """Mark the session changed: schedule a write and wake listeners."""
        self._writer.schedule(self._render)
        for listener in list(self._listeners):
            listener(self.state)

    def flush(self) -> None:
        self._writer.flush()

    def to_record(self) -> dict[str, Any]:
        return {
            "version": RECORD_VERSION,
            "sessionId": self.state.session_id,
            "providerConfig": dict(self.provider_config),
            "catalog": [item.to_dict() for item in self.catalog],
            "session": self.state.snapshot().to_dict(),
        }

    def _render(self) -> bytes:
        return json.dumps(self.to_record(), ensure_ascii=False).encode("utf-8")

    def load(self) -> bool:
        """Restore the durable record. Returns ``False`` when none is usable."""
        raw = self.kv.load(self.key)
        if raw is None:
            return False
        try:
            record = json.loads(raw.decode("utf-8"))
            catalog = [RepoCatalogItem.from_dict(c) for c in record.get("catalog") or ()]
            session = record.get("session")
            snapshot = SessionSnapshot.from_dict(session) if session else None
        except (UnicodeDecodeError, json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            logger.warning("Ignoring unreadable session record %s: %s", self.key, exc)
            return False

        self.catalog = catalog
        self.provider_config = {
            str(k): str(v) for k, v in (record.get("providerConfig") or {}).items()
        }
        session_id = record.get("sessionId") or self.state.session_id
        if snapshot is not None:
            self._install(snapshot, session_id)
        else:
            self.state.session_id = session_id
        logger.info(
            "Restored session %s (%d catalog entries)", self.state.session_id, len(self.catalog)
        )
        return True

    # ── Source text ──────────────────────────────────────────────────

    def set_source(self, code: str, repo_name: str | None = None) -> None:
        self.state.code_context = code
        if repo_name is not None:
            self.state.repo_name = repo_name
        self.touch()

    def append_source(self, text: str) -> None:
        self.state.code_context += text
        self.touch()

    def set_provider_config(self, **values: str) -> None:
        self.provider_config.update({k: v for k, v in values.items() if v is not None})
        self.touch()

    # ── Catalog ──────────────────────────────────────────────────────

    def get_entry(self, identity: str) -> RepoCatalogItem | None:
        for item in self.catalog:
            if item.id == identity:
                return item
        return None

    def save(
        self,
        identity: str,
        name: str | None = None,
        description: str | None = None,
        summary_snippet: str | None = None,
        saved_state: SessionSnapshot | None = None,
    ) -> RepoCatalogItem:
        """Insert or update the catalog entry for *identity*.

        New entries go to the front. Fields passed as ``None`` keep their
        previous value, ``saved_state`` included.
        """
        for index, item in enumerate(self.catalog):
            if item.id != identity:
                continue
            updated = replace(
                item,
                name=name if name is not None else item.name,
                description=description if description is not None else item.description,
                summary_snippet=summary_snippet if summary_snippet is not None else item.summary_snippet,
                saved_state=saved_state if saved_state is not None else item.saved_state,
                last_analyzed=utcnow_iso(),
            )
            self.catalog[index] = updated
            break
        else:
            updated = RepoCatalogItem(
                id=identity,
                name=name or identity,
                description=description or "",
                summary_snippet=summary_snippet or "",
                saved_state=saved_state,
            )
            self.catalog.insert(0, updated)
        self.touch()
        return updated

    def snapshot_current(self) -> RepoCatalogItem | None:
        """Save the live session under its repo name, if it has one."""
        if not self.state.repo_name:
            return None
        return self.save(self.state.repo_name, saved_state=self.state.snapshot())

    def resume(self, identity: str) -> SessionSnapshot:
        entry = self.get_entry(identity)
        if entry is None:
            raise PreconditionError(f"No catalog entry for {identity}", "session_store")
        if entry.saved_state is None:
            raise PreconditionError(f"No saved session for {identity}", "session_store")
        return normalize_snapshot(entry.saved_state)

    def install(self, snapshot: SessionSnapshot) -> SessionState:
        """Make *snapshot* the live session."""
        if self.state.is_processing:
            raise PreconditionError("Cannot switch sessions while a run is in progress", "session_store")
        self._install(snapshot, self.state.session_id)
        self.touch()
        return self.state

    def _install(self, snapshot: SessionSnapshot, session_id: str) -> None:
        snapshot = normalize_snapshot(snapshot)
        self.state = SessionState(
            session_id=session_id,
            repo_name=snapshot.repo_name,
            code_context=snapshot.code_context,
            function_summary=snapshot.function_summary,
            pipeline=TaskPipeline(snapshot.tasks),
            logs=list(snapshot.logs),
            progress_report=snapshot.progress_report,
            current_cycle=min(snapshot.current_cycle, self.max_cycles),
            max_cycles=self.max_cycles,
            step=snapshot.workflow_step,
            cycle_history=list(snapshot.cycle_history),
        )

    def clear(self) -> SessionState:
        """Start a fresh session; catalog and provider config are kept."""
        if self.state.is_processing:
            raise PreconditionError("Cannot clear the session while a run is in progress", "session_store")
        self.state = SessionState(
            session_id=new_session_id(self.session_id_prefix), max_cycles=self.max_cycles
        )
        self.touch()
        return self.state
