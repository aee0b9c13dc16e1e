"""FastAPI application entry point."""

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from shared.config import settings
from shared.errors import (
    ArchiveNotFoundError,
    ConfigurationError,
    PreconditionError,
    ProviderError,
    QAWorkflowError,
    ResponseParseError,
    WorkflowAborted,
)
from shared.logging_setup import configure_logging

from app import orchestrator
from app.routes import catalog, health, sessions
from app.store import get_workspace

configure_logging(settings.LOG_LEVEL, settings.LOG_FILE or None)
_logger = logging.getLogger(__name__)

# ── FastAPI application ──────────────────────────────────────────────

app = FastAPI(
    title="QA Cycle Orchestrator",
    description="Analyze, plan, test, fix and regress a codebase through a reasoning service.",
    version="0.1.0",
    debug=settings.APP_DEBUG,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Error mapping ────────────────────────────────────────────────────

_STATUS_BY_ERROR: list[tuple[type[QAWorkflowError], int]] = [
    (ConfigurationError, 400),
    (PreconditionError, 409),
    (WorkflowAborted, 409),
    (ArchiveNotFoundError, 404),
    (ResponseParseError, 502),
    (ProviderError, 502),
]


@app.exception_handler(QAWorkflowError)
async def workflow_error_handler(request: Request, exc: QAWorkflowError):
    status = next((code for cls, code in _STATUS_BY_ERROR if isinstance(exc, cls)), 500)
    _logger.warning("%s %s -> %d %s", request.method, request.url.path, status, exc.to_record())
    return JSONResponse(status_code=status, content={"detail": exc.message, **exc.to_record()})


# ── Routes ───────────────────────────────────────────────────────────
app.include_router(health.router, tags=["health"])
app.include_router(sessions.router, tags=["session"])
app.include_router(catalog.router, tags=["catalog"])


@app.on_event("startup")
async def startup_event():
    ws = get_workspace()
    _logger.info(
        "Starting QA Cycle Orchestrator | env=%s | session=%s | log_file=%s",
        settings.APP_ENV, ws.store.state.session_id, settings.LOG_FILE,
    )


@app.on_event("shutdown")
async def shutdown_event():
    await orchestrator.cancel_all()
    get_workspace().store.flush()
