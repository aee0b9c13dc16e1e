"""Background jobs – run analysis and missions off the request path.

Only one job runs at a time. Preconditions are checked synchronously so
the caller gets an immediate error instead of a failed background task.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from shared.errors import PreconditionError, QAWorkflowError

from app.store import Workspace

logger = logging.getLogger(__name__)

# Keep strong references so background tasks aren't garbage-collected.
_background_tasks: dict[str, asyncio.Task] = {}


def active_job() -> str | None:
    for name, task in _background_tasks.items():
        if not task.done():
            return name
    return None


def _handle_task_done(task: asyncio.Task, name: str, ws: Workspace) -> None:
    """Callback invoked when a job finishes (success or crash)."""
    _background_tasks.pop(name, None)
    if task.cancelled():
        logger.warning("Job %s was cancelled", name)
        return
    exc = task.exception()
    if exc is None:
        ws.last_error = None
    elif isinstance(exc, QAWorkflowError):
        logger.warning("Job %s ended with %s: %s", name, type(exc).__name__, exc.message)
        ws.last_error = exc.to_record()
    else:
        logger.error("Job %s crashed: %s", name, exc, exc_info=exc)
        ws.last_error = {"error": type(exc).__name__, "message": str(exc), "component": name, "cause": None}


def _launch(ws: Workspace, name: str, factory: Callable[[], Awaitable[Any]]) -> asyncio.Task:
    if active_job() is not None:
        raise PreconditionError("A run is already in progress", "orchestrator")
    task = asyncio.create_task(factory(), name=name)
    _background_tasks[name] = task
    task.add_done_callback(lambda t: _handle_task_done(t, name, ws))
    return task


def start_analysis(ws: Workspace, code: str | None = None, repo_name: str | None = None) -> asyncio.Task:
    ws.machine.check_analysis_ready(code)
    return _launch(ws, "analysis", lambda: ws.machine.analyze(code, repo_name))


def start_mission(ws: Workspace) -> asyncio.Task:
    ws.machine.check_mission_ready()
    return _launch(ws, "mission", ws.machine.run_mission)


async def cancel_all() -> None:
    """Cancel outstanding jobs (used on shutdown)."""
    tasks = list(_background_tasks.values())
    for task in tasks:
        task.cancel()
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)
