"""Cycle state machine – analyze → plan → test → fix → regress.

The mission (PLANNING onward) is a **LangGraph StateGraph**::

    plan ──▶ test ──┬─(all passed)──────────────────▶ END
                    └─(defects)──▶ fix ──▶ regression ─┬─▶ test
                                                       └─(cycle bound)─▶ END

Graph state carries the step-local inputs (source text, summary,
cumulative report, task tuple, cycle counters, outcome). Nodes read
only from it and hand their results forward as return values; the
session record is a mirror for observers and persistence, never an
input.

Error policy:
  • configuration and precondition errors raise before any state change
  • analysis / planning provider errors end the run (COMPLETED) and re-raise
  • an execution error fails that one task; a fix error skips that one task
  • reaching the cycle bound is a normal outcome, not an error
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, Awaitable, Callable, TypedDict

from langgraph.graph import END, StateGraph

from agents.base import ExecutionVerdict, ReasoningService
from agents.fixer import parse_fix
from shared.errors import (
    ArchiveNotFoundError,
    ConfigurationError,
    PreconditionError,
    ProviderError,
    QAWorkflowError,
    WorkflowAborted,
)
from shared.schemas import AgentRole, CycleView, Task, TaskStatus, WorkflowStep
from workflow.context_scoper import frame_file, scope
from workflow.history import BlobStorage, HistoryArchiver
from workflow.session_store import SessionState, SessionStore, report_line

logger = logging.getLogger(__name__)

SNIPPET_LENGTH = 150


class CycleOutcome(str, Enum):
    ALL_PASSED = "ALL_PASSED"
    CYCLE_LIMIT = "CYCLE_LIMIT"
    ABORTED = "ABORTED"


@dataclass(frozen=True)
class MachineTiming:
    """Pacing between provider calls. Zero disables a delay."""

    task_delay_s: float = 0.2
    regression_delay_s: float = 1.5


@dataclass(frozen=True)
class MissionResult:
    outcome: CycleOutcome
    cycle: int
    tasks: tuple[Task, ...]
    report: str

    @property
    def exit_code(self) -> int:
        return 0 if self.outcome == CycleOutcome.ALL_PASSED else 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "cycle": self.cycle,
            "tasks": [t.to_dict() for t in self.tasks],
            "report": self.report,
        }


# ── LangGraph state schema ───────────────────────────────────────────

class CycleGraphState(TypedDict, total=False):
    """Step-local context passed from node to node."""
    code_context: str
    summary: str
    report: str
    tasks: tuple
    cycle: int
    max_cycles: int
    outcome: str | None


# ── Helpers ──────────────────────────────────────────────────────────

def friendly_name(summary: str, identity: str) -> str:
    """Project name from the summary's first ``# `` title line."""
    for line in summary.splitlines():
        stripped = line.strip()
        if stripped.startswith("# "):
            name = re.sub(r"^#\s+", "", stripped)
            name = re.sub(r"Technical Structural Summary:?\s*", "", name, flags=re.IGNORECASE).strip()
            if name:
                return name
    return identity.rstrip("/").rsplit("/", 1)[-1] or identity


def summary_snippet(summary: str) -> str:
    if len(summary) <= SNIPPET_LENGTH:
        return summary
    return summary[:SNIPPET_LENGTH] + "..."


def fix_block(task_id: str, fix_text: str, cycle: int, code: str = "") -> str:
    """Text appended to the source bundle for one proposed fix.

    A fix that names its file becomes a framed segment of its own, so
    later scoping for that path picks it up.
    """
    proposal = parse_fix(fix_text)
    lead = "" if not code or code.endswith("\n") else "\n"
    if proposal.named:
        return lead + frame_file(f"{proposal.path} (FIX FOR {task_id}, Cycle {cycle})", proposal.content)
    return f"{lead}\n// FIX FOR {task_id} (Cycle {cycle}):\n{fix_text}\n"


async def _task_call(call: Awaitable[Any], component: str) -> Any:
    """Await a per-task reasoning call; any failure surfaces as ``ProviderError``."""
    try:
        return await call
    except (ProviderError, WorkflowAborted):
        raise
    except Exception as exc:
        raise ProviderError(str(exc) or type(exc).__name__, component, exc) from exc


# ── State machine ────────────────────────────────────────────────────

class CycleStateMachine:
    """Drives one session through the QA cycle."""

    def __init__(
        self,
        reasoning: ReasoningService,
        store: SessionStore,
        archiver: HistoryArchiver,
        timing: MachineTiming | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
        source_host: Any = None,
        export_storage: BlobStorage | None = None,
    ) -> None:
        self.reasoning = reasoning
        self.store = store
        self.archiver = archiver
        self.timing = timing or MachineTiming()
        self._sleep = sleep or asyncio.sleep
        self.source_host = source_host
        self.export_storage = export_storage if export_storage is not None else archiver.storage
        self._running = False
        self._abort_requested = False
        self._graph = self._build_graph()

    @property
    def state(self) -> SessionState:
        return self.store.state

    @property
    def running(self) -> bool:
        return self._running

    # ── Mirroring into the session record ───────────────────────────

    def _set_step(self, step: WorkflowStep) -> None:
        self.state.step = step
        self.store.touch()

    def _log(self, role: AgentRole, message: str, level: str = "info", **kwargs: Any) -> None:
        self.state.add_log(role, message, level, **kwargs)
        self.store.touch()

    def _log_error(self, role: AgentRole, message: str, exc: QAWorkflowError) -> None:
        self._log(
            role, f"{message}: {exc.message}", "error",
            source=exc.component or None, details=exc.to_record(),
        )

    def _transition(self, task_id: str, **changes: Any) -> Task | None:
        updated = self.state.pipeline.transition(task_id, **changes)
        self.store.touch()
        return updated

    def _fail(self, role: AgentRole, message: str, exc: QAWorkflowError) -> None:
        self._log_error(role, message, exc)
        self.state.pipeline.release_running()
        self._set_step(WorkflowStep.COMPLETED)

    # ── Cancellation ─────────────────────────────────────────────────

    def abort(self) -> bool:
        """Ask the running workflow to stop at its next suspension point."""
        if not self._running:
            return False
        self._abort_requested = True
        logger.info("Abort requested for session %s", self.state.session_id)
        return True

    def _check_abort(self) -> None:
        if self._abort_requested:
            raise WorkflowAborted("Run aborted by user", "cycle_machine")

    def _finish_aborted(self) -> None:
        released = self.state.pipeline.release_running()
        if released:
            logger.debug("Released %d running task(s)", released)
        self._log(AgentRole.SYSTEM, "Run aborted. Progress so far is kept.", "warning")
        self._set_step(WorkflowStep.COMPLETED)

    def _begin(self) -> None:
        self._ensure_idle()
        self._running = True
        self._abort_requested = False

    def check_analysis_ready(self, code: str | None = None) -> str:
        """Raise unless analysis could start now; returns the source to analyze."""
        self.reasoning.check_configured()
        source = code if code is not None else self.state.code_context
        if not source.strip():
            raise PreconditionError("No source text to analyze", "cycle_machine")
        self._ensure_idle()
        return source

    def check_mission_ready(self) -> None:
        self.reasoning.check_configured()
        if not self.state.function_summary.strip():
            raise PreconditionError("Run analysis before starting a mission", "cycle_machine")
        self._ensure_idle()

    def _ensure_idle(self) -> None:
        if self._running or self.state.is_processing:
            raise PreconditionError("A run is already in progress", "cycle_machine")

    # ── Analysis ─────────────────────────────────────────────────────

    async def analyze(self, code: str | None = None, repo_name: str | None = None) -> str:
        """ANALYZING: summarize the source and record the project in the catalog."""
        source = self.check_analysis_ready(code)
        self._begin()
        identity = repo_name or self.state.repo_name or "Unknown Repository"

        try:
            state = self.state
            state.code_context = source
            state.repo_name = identity
            state.reset_run()
            self._set_step(WorkflowStep.ANALYZING)
            self._log(AgentRole.ARCHITECT, f"Initiating analysis for {identity}...")

            self._check_abort()
            try:
                summary = await self.reasoning.analyze(source)
            except ProviderError as exc:
                self._fail(AgentRole.ARCHITECT, "Analysis failed", exc)
                raise

            state.function_summary = summary
            self._log(AgentRole.ARCHITECT, "Structural summary completed.", "success")
            self.store.save(
                identity,
                name=friendly_name(summary, identity),
                description=f"Analyzed on {date.today():%Y-%m-%d}",
                summary_snippet=summary_snippet(summary),
            )
            self._set_step(WorkflowStep.IDLE)
            return summary
        except WorkflowAborted:
            self._finish_aborted()
            raise
        except asyncio.CancelledError:
            self._finish_aborted()
            raise
        finally:
            self._running = False

    # ── Mission ──────────────────────────────────────────────────────

    async def run_mission(self) -> MissionResult:
        """PLANNING → TESTING → (FIXING → REGRESSION_CHECK)* → COMPLETED.

        Returns the outcome; an abort is an outcome too. Raises on
        planning failure.
        """
        self.check_mission_ready()
        self._begin()

        state = self.state
        initial: CycleGraphState = {
            "code_context": state.code_context,
            "summary": state.function_summary,
            "report": state.progress_report,
            "tasks": (),
            "cycle": state.current_cycle,
            "max_cycles": state.max_cycles,
            "outcome": None,
        }
        try:
            final = await self._graph.ainvoke(initial, {"recursion_limit": self._recursion_limit()})
            outcome = CycleOutcome(final["outcome"])
        except WorkflowAborted:
            self._finish_aborted()
            outcome = CycleOutcome.ABORTED
        except asyncio.CancelledError:
            self._finish_aborted()
            raise
        except QAWorkflowError:
            raise
        except Exception as exc:
            logger.exception("Mission crashed: %s", exc)
            if self.state.is_processing:
                self._fail(AgentRole.SYSTEM, "Mission crashed", QAWorkflowError(str(exc), "cycle_machine", exc))
            raise
        finally:
            self._running = False
            self.store.touch()

        logger.info("Mission finished | outcome=%s | cycle=%d", outcome.value, self.state.current_cycle)
        return MissionResult(
            outcome=outcome,
            cycle=self.state.current_cycle,
            tasks=self.state.pipeline.tasks,
            report=self.state.progress_report,
        )

    def _recursion_limit(self) -> int:
        return 4 * (self.state.max_cycles + 2) + 5

    def _build_graph(self):
        graph = StateGraph(CycleGraphState)
        graph.add_node("plan", self._plan_node)
        graph.add_node("test", self._test_node)
        graph.add_node("fix", self._fix_node)
        graph.add_node("regression", self._regression_node)

        graph.set_entry_point("plan")
        graph.add_edge("plan", "test")
        graph.add_conditional_edges("test", _edge_after_test, {"fix": "fix", END: END})
        graph.add_edge("fix", "regression")
        graph.add_conditional_edges("regression", _edge_after_regression, {"test": "test", END: END})
        return graph.compile()

    # ── Nodes ────────────────────────────────────────────────────────

    async def _plan_node(self, gs: CycleGraphState) -> dict[str, Any]:
        self._check_abort()
        self._set_step(WorkflowStep.PLANNING)
        self._log(AgentRole.QA_LEAD, "Mission started. Generating test matrix...")
        try:
            plan = await self.reasoning.plan(gs["code_context"], gs["summary"], gs["report"])
        except ProviderError as exc:
            self._fail(AgentRole.QA_LEAD, "Mission aborted during planning", exc)
            raise

        self._log(AgentRole.QA_LEAD, f"Strategy: {plan.reasoning}")
        self.state.pipeline.plan(plan.tasks)
        self.store.touch()
        if not plan.tasks:
            self._log(AgentRole.QA_LEAD, "Planner returned no test scenarios.", "warning")
        else:
            self._log(AgentRole.QA_LEAD, f"Plan approved: {len(plan.tasks)} test scenarios.", "success")
        return {"tasks": self.state.pipeline.tasks}

    async def _test_node(self, gs: CycleGraphState) -> dict[str, Any]:
        self._set_step(WorkflowStep.TESTING)
        code = gs["code_context"]
        report = gs["report"]
        cycle = gs["cycle"]
        self._log(AgentRole.TESTER, f"Executing test protocol (cycle {cycle})...")

        for task in gs["tasks"]:
            self._check_abort()
            self._transition(task.id, status=TaskStatus.RUNNING)
            try:
                verdict = await _task_call(
                    self.reasoning.execute(scope(code, task.related_files), task, report), "tester"
                )
            except ProviderError as exc:
                self._log_error(AgentRole.TESTER, f"Task {task.id}: execution error", exc)
                verdict = ExecutionVerdict(
                    passed=False,
                    reason=f"System error during execution: {exc.message}",
                    execution_log=(f"ERROR: {type(exc).__name__}",),
                )

            if verdict.passed:
                self._transition(
                    task.id,
                    status=TaskStatus.PASSED,
                    result_log=verdict.reason,
                    execution_log=verdict.execution_log,
                )
                self._log(AgentRole.TESTER, f"[PASSED] {task.id}", "success")
                report += report_line("TEST_PASS", f"Task {task.id}: {verdict.reason}")
            else:
                self._transition(
                    task.id,
                    status=TaskStatus.FAILED,
                    failure_reason=verdict.reason,
                    execution_log=verdict.execution_log,
                )
                self._log(AgentRole.TESTER, f"[FAILED] {task.id}", "error")
                report += report_line("TEST_FAIL", f"Task {task.id}: {verdict.reason}")
            self.state.progress_report = report
            self.store.touch()

            if self.timing.task_delay_s > 0:
                await self._sleep(self.timing.task_delay_s)

        tasks = self.state.pipeline.tasks
        pointer = await self.archiver.archive(
            cycle, tasks, list(self.state.logs), report, self.state.repo_name or "Unknown Repository"
        )
        self.state.record_cycle(pointer)
        self.store.touch()

        defects = sum(1 for t in tasks if t.status == TaskStatus.FAILED)
        if defects:
            self._log(
                AgentRole.QA_LEAD, f"{defects} defects detected. Engaging fixer agent.", "warning"
            )
            return {"report": report, "tasks": tasks, "outcome": None}

        self._log(AgentRole.QA_LEAD, "All systems green. Mission accomplished.", "success")
        self._set_step(WorkflowStep.COMPLETED)
        return {"report": report, "tasks": tasks, "outcome": CycleOutcome.ALL_PASSED.value}

    async def _fix_node(self, gs: CycleGraphState) -> dict[str, Any]:
        self._set_step(WorkflowStep.FIXING)
        code = gs["code_context"]
        report = gs["report"]
        cycle = gs["cycle"]

        for task in gs["tasks"]:
            if task.status != TaskStatus.FAILED:
                continue
            self._check_abort()
            self._log(AgentRole.FIXER, f"Analyzing defect in {task.id}...")
            try:
                fix_text = await _task_call(
                    self.reasoning.fix(scope(code, task.related_files), task, report), "fixer"
                )
            except ProviderError as exc:
                self._log_error(AgentRole.FIXER, f"Fix generation failed for {task.id}", exc)
                continue

            self._transition(task.id, fix_suggestion=fix_text)
            self._log(AgentRole.FIXER, f"Patch generated for {task.id}", "success")
            report += report_line("FIX_PROPOSED", f"Fix for {task.id}.")
            code += fix_block(task.id, fix_text, cycle, code)
            self.state.progress_report = report
            self.state.code_context = code
            self.store.touch()

        return {"code_context": code, "report": report, "tasks": self.state.pipeline.tasks}

    async def _regression_node(self, gs: CycleGraphState) -> dict[str, Any]:
        self._set_step(WorkflowStep.REGRESSION_CHECK)
        cycle = gs["cycle"]
        if cycle >= gs["max_cycles"]:
            self._log(
                AgentRole.QA_LEAD,
                f"Maximum fix cycles reached ({cycle}/{gs['max_cycles']}). Manual intervention required.",
                "warning",
            )
            self._set_step(WorkflowStep.COMPLETED)
            return {"outcome": CycleOutcome.CYCLE_LIMIT.value}

        self._check_abort()
        cycle += 1
        self.state.current_cycle = cycle
        self.state.pipeline.reset_for_regression()
        self._log(AgentRole.QA_LEAD, f"Starting regression cycle {cycle}...", "warning")

        if self.timing.regression_delay_s > 0:
            await self._sleep(self.timing.regression_delay_s)
        return {"cycle": cycle, "tasks": self.state.pipeline.tasks}

    # ── History view ─────────────────────────────────────────────────

    async def view_cycle(self, cycle_number: int) -> CycleView:
        """Rehydrate a past cycle into the viewing projection."""
        pointer = self.state.find_cycle(cycle_number)
        if pointer is None:
            raise ArchiveNotFoundError(f"Cycle {cycle_number} is not in the history", "cycle_machine")
        view = await self.archiver.rehydrate(pointer)
        self.state.viewing_cycle = view
        self.store.touch()
        return view

    def view_live(self) -> None:
        self.state.viewing_cycle = None
        self.store.touch()

    # ── Remediation and exports ──────────────────────────────────────

    async def open_fix_pull_request(self, task_id: str, source_host: Any = None) -> str:
        """Open a pull request carrying a task's proposed fix."""
        host = source_host or self.source_host
        if host is None:
            raise ConfigurationError("No source host configured", "cycle_machine")
        task = self.state.pipeline.get(task_id)
        if task is None or not task.fix_suggestion:
            raise PreconditionError(f"No fix available for {task_id}", "cycle_machine")
        if not self.state.repo_name:
            raise PreconditionError("No repository selected", "cycle_machine")

        fallback = task.related_files[0] if task.related_files else None
        proposal = parse_fix(task.fix_suggestion, fallback)
        self._log(AgentRole.FIXER, f"Initiating PR workflow for {task_id}...")
        try:
            url = await asyncio.to_thread(
                host.create_fix_pull_request,
                self.state.repo_name,
                proposal.path,
                proposal.content,
                task.description,
            )
        except QAWorkflowError as exc:
            self._log_error(AgentRole.FIXER, "PR failed", exc)
            raise

        self._transition(task_id, remediation_link=url)
        self._log(AgentRole.FIXER, f"PR created successfully: {url}", "success")
        return url

    async def export_report(self, storage: BlobStorage | None = None) -> str:
        report = self.state.progress_report
        if not report.strip():
            raise PreconditionError("No report to upload", "cycle_machine")
        self._log(AgentRole.QA_LEAD, "Uploading progress report...")
        path = f"qa_report_{int(time.time() * 1000)}.md"
        return await self._export(storage, path, report, "text/markdown", "Report")

    async def export_logs(self, storage: BlobStorage | None = None) -> str:
        if not self.state.logs:
            raise PreconditionError("No logs to export", "cycle_machine")
        content = "\n".join(entry.format_line() for entry in self.state.logs)
        path = f"qa_logs_{int(time.time() * 1000)}.txt"
        return await self._export(storage, path, content, "text/plain", "Logs")

    async def _export(
        self, storage: BlobStorage | None, path: str, content: str, content_type: str, label: str
    ) -> str:
        target = storage or self.export_storage
        if target is None:
            raise ConfigurationError("No blob storage configured for exports", "cycle_machine")
        try:
            url = await target.upload_text(path, content, content_type)
        except QAWorkflowError as exc:
            self._log_error(AgentRole.QA_LEAD, f"{label} export failed", exc)
            raise
        self._log(AgentRole.QA_LEAD, f"{label} exported successfully: {url}", "success")
        return url


# ── Conditional edges ────────────────────────────────────────────────

def _edge_after_test(gs: CycleGraphState) -> str:
    return END if gs.get("outcome") else "fix"


def _edge_after_regression(gs: CycleGraphState) -> str:
    return END if gs.get("outcome") else "test"
