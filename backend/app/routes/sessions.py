"""Live session endpoints.

GET    /session                         – JSON snapshot of the live session
GET    /session/stream                  – SSE stream of session snapshots
GET    /session/logs                    – the session's log stream
PUT    /session/source                  – replace (or append to) the source text
POST   /session/analyze                 – start analysis in the background
POST   /session/mission                 – start plan/test/fix cycles in the background
POST   /session/abort                   – stop the running job at its next step
GET    /session/history/{cycle}         – rehydrate a past cycle into the view
POST   /session/history/live            – return to the live view
POST   /session/tasks/{task_id}/pull-request – open a PR for a task's fix
POST   /session/export/{kind}           – upload the report or the logs
PUT    /session/provider-config         – set the Cloudinary account
DELETE /session                         – start a fresh session
"""

from __future__ import annotations

import json
import logging
from typing import Literal

from fastapi import APIRouter, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from shared.config import settings

from app import orchestrator
from app.store import Workspace, get_workspace

router = APIRouter(prefix="/session")
logger = logging.getLogger(__name__)


# ── Request schemas ──────────────────────────────────────────────────

class SourceRequest(BaseModel):
    code: str
    repo_name: str | None = None
    append: bool = False


class AnalyzeRequest(BaseModel):
    code: str | None = None
    repo_name: str | None = None


class ProviderConfigRequest(BaseModel):
    cloud_name: str
    upload_preset: str


# ── Snapshot / stream ────────────────────────────────────────────────

@router.get("")
async def get_session():
    return get_workspace().status()


@router.get("/stream")
async def stream_session():
    """Stream session snapshots as Server-Sent Events (SSE).

    The stream closes once the session is at rest and no job is running.
    """
    return StreamingResponse(
        _event_generator(get_workspace()),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


async def _event_generator(ws: Workspace):
    while True:
        yield f"data: {json.dumps(ws.status())}\n\n"
        if not ws.store.state.is_processing and orchestrator.active_job() is None:
            return
        await ws.wait_for_change(timeout=2.0)


@router.get("/logs")
async def get_session_logs(tail: int = Query(200, ge=1, le=5000)):
    logs = get_workspace().store.state.logs[-tail:]
    return {"logs": [entry.to_dict() for entry in logs]}


# ── Source and jobs ──────────────────────────────────────────────────

@router.put("/source")
async def put_source(request: SourceRequest):
    store = get_workspace().store
    if request.append:
        store.append_source(request.code)
    else:
        store.set_source(request.code, request.repo_name)
    return {"repoName": store.state.repo_name, "chars": len(store.state.code_context)}


@router.post("/analyze", status_code=202)
async def analyze(request: AnalyzeRequest, wait: bool = False):
    ws = get_workspace()
    task = orchestrator.start_analysis(ws, request.code, request.repo_name)
    if wait:
        summary = await task
        return {"status": "completed", "functionSummary": summary}
    return {"status": "queued", "job": task.get_name()}


@router.post("/mission", status_code=202)
async def mission(wait: bool = False):
    ws = get_workspace()
    task = orchestrator.start_mission(ws)
    if wait:
        result = await task
        return {"status": "completed", **result.to_dict()}
    return {"status": "queued", "job": task.get_name()}


@router.post("/abort")
async def abort():
    accepted = get_workspace().machine.abort()
    return {"aborting": accepted}


# ── History view ─────────────────────────────────────────────────────

@router.get("/history/{cycle}")
async def view_cycle(cycle: int):
    view = await get_workspace().machine.view_cycle(cycle)
    return view.to_dict()


@router.post("/history/live")
async def view_live():
    get_workspace().machine.view_live()
    return {"viewingCycle": None}


# ── Remediation / exports / config ───────────────────────────────────

@router.post("/tasks/{task_id}/pull-request")
async def open_pull_request(task_id: str):
    url = await get_workspace().machine.open_fix_pull_request(task_id)
    return {"taskId": task_id, "remediationLink": url}


@router.post("/export/{kind}")
async def export(kind: Literal["report", "logs"]):
    machine = get_workspace().machine
    url = await (machine.export_report() if kind == "report" else machine.export_logs())
    return {"kind": kind, "url": url}


@router.put("/provider-config")
async def put_provider_config(request: ProviderConfigRequest):
    ws = get_workspace()
    ws.configure_storage(settings, request.cloud_name, request.upload_preset)
    return {"providerConfig": ws.store.provider_config}


@router.delete("")
async def clear_session():
    state = get_workspace().store.clear()
    return {"sessionId": state.session_id}
