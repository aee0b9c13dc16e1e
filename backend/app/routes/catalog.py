"""Project catalog and GitHub import endpoints.

GET  /catalog                        – remembered projects
POST /catalog/snapshot               – save the live session under its repo name
POST /catalog/resume                 – make a saved session the live one
GET  /github/repos                   – the token owner's repositories
POST /github/import                  – download a repository as the session source
"""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from app.store import get_workspace

router = APIRouter()
logger = logging.getLogger(__name__)


class ResumeRequest(BaseModel):
    identity: str


class ImportRequest(BaseModel):
    full_name: str


@router.get("/catalog")
async def list_catalog():
    catalog = get_workspace().store.catalog
    # Saved states can be large; the list carries metadata only.
    return {
        "catalog": [
            {**item.to_dict(), "savedState": None, "hasSavedState": item.saved_state is not None}
            for item in catalog
        ]
    }


@router.post("/catalog/snapshot")
async def snapshot_session():
    item = get_workspace().store.snapshot_current()
    if item is None:
        raise HTTPException(status_code=409, detail="The live session has no repository name")
    return {"id": item.id, "name": item.name, "lastAnalyzed": item.last_analyzed}


@router.post("/catalog/resume")
async def resume_session(request: ResumeRequest):
    store = get_workspace().store
    snapshot = store.resume(request.identity)
    state = store.install(snapshot)
    return state.to_status()


@router.get("/github/repos")
async def list_repositories():
    repos = await asyncio.to_thread(get_workspace().github.list_repositories)
    return {"repositories": repos}


@router.post("/github/import")
async def import_repository(request: ImportRequest):
    ws = get_workspace()
    code = await asyncio.to_thread(
        ws.github.import_repository,
        request.full_name,
        lambda msg: logger.info("[import %s] %s", request.full_name, msg),
    )
    ws.store.set_source(code, request.full_name)
    return {"repoName": request.full_name, "chars": len(code)}
