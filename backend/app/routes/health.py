"""Health check and application log endpoints."""

from pathlib import Path

from fastapi import APIRouter, Query
from fastapi.responses import PlainTextResponse

from shared.config import settings
from shared.errors import ConfigurationError

from app.store import get_workspace

router = APIRouter()


@router.get("/health")
async def health_check():
    ws = get_workspace()
    try:
        ws.machine.reasoning.check_configured()
        reasoning_ready = True
    except ConfigurationError:
        reasoning_ready = False
    storage = ws.machine.archiver.storage
    return {
        "status": "healthy",
        "service": "qa-cycle-orchestrator",
        "sessionId": ws.store.state.session_id,
        "workflowStep": ws.store.state.step.value,
        "reasoningConfigured": reasoning_ready,
        "storage": getattr(storage, "name", None),
    }


def _read_log_lines() -> list[str] | None:
    log_path = Path(settings.LOG_FILE)
    if not settings.LOG_FILE or not log_path.exists():
        return None
    return log_path.read_text(encoding="utf-8", errors="replace").splitlines()


@router.get("/logs", response_class=PlainTextResponse)
async def get_logs(
    tail: int = Query(200, ge=1, le=5000, description="Number of lines from the end"),
    q: str | None = Query(None, description="Only lines containing this term"),
):
    """Last *tail* lines of the application log, optionally filtered by *q*."""
    lines = _read_log_lines()
    if lines is None:
        return "No log file found yet."
    selected = lines[-tail:]
    if q:
        needle = q.lower()
        selected = [ln for ln in selected if needle in ln.lower()]
        if not selected:
            return f"No matches for '{q}' in last {tail} lines."
    return "\n".join(selected)
