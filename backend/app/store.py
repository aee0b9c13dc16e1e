"""Process-wide workspace: the one live session and the services around it."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from agents import build_default_team
from agents.base import ReasoningService
from providers.cloudinary_service import CloudinaryStorage
from providers.github_service import GitHubService
from shared.config import Settings
from workflow.cycle_machine import CycleStateMachine, MachineTiming
from workflow.history import BlobStorage, HistoryArchiver, LocalBlobStorage
from workflow.persistence import FileKeyValueStore, KeyValueStore
from workflow.session_store import SessionState, SessionStore

logger = logging.getLogger(__name__)


@dataclass
class Workspace:
    """Live session plus the collaborators an API request may need."""

    store: SessionStore
    machine: CycleStateMachine
    github: GitHubService
    last_error: dict[str, Any] | None = None

    # Async event fired every time the session changes so SSE listeners wake up
    _event: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    def __post_init__(self) -> None:
        self.store.add_listener(self._on_change)

    def _on_change(self, _state: SessionState) -> None:
        # The waiting listener clears the event after waking.
        self._event.set()

    async def wait_for_change(self, timeout: float) -> None:
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
            self._event.clear()
        except asyncio.TimeoutError:
            pass  # heartbeat: caller re-sends current snapshot

    def status(self) -> dict[str, Any]:
        data = self.store.state.to_status()
        data["running"] = self.machine.running
        data["lastError"] = self.last_error
        data["providerConfig"] = self.store.provider_config
        return data

    def configure_storage(self, cfg: Settings, cloud_name: str, upload_preset: str) -> None:
        """Switch archive and export storage to a new Cloudinary account."""
        self.store.set_provider_config(cloudName=cloud_name, uploadPreset=upload_preset)
        storage = _storage_for(cfg, self.store.provider_config)
        self.machine.archiver.storage = storage
        self.machine.export_storage = storage
        logger.info("Blob storage switched to %s", type(storage).__name__)


def _storage_for(cfg: Settings, provider_config: dict[str, str]) -> BlobStorage:
    cloud = provider_config.get("cloudName") or cfg.CLOUDINARY_CLOUD_NAME
    preset = provider_config.get("uploadPreset") or cfg.CLOUDINARY_UPLOAD_PRESET
    if cloud and preset:
        return CloudinaryStorage(cloud, preset)
    return LocalBlobStorage(cfg.ARCHIVE_DIR or str(Path(cfg.STATE_DIR) / "archive"))


def build_workspace(
    cfg: Settings,
    reasoning: ReasoningService | None = None,
    kv: KeyValueStore | None = None,
    storage: BlobStorage | None = None,
    github: GitHubService | None = None,
    timing: MachineTiming | None = None,
) -> Workspace:
    store = SessionStore(
        kv or FileKeyValueStore(cfg.STATE_DIR),
        key=cfg.STORAGE_KEY,
        debounce_s=cfg.PERSIST_DEBOUNCE_S,
        max_cycles=cfg.MAX_CYCLES,
        session_id_prefix=cfg.SESSION_ID_PREFIX,
    )
    store.load()
    github = github or GitHubService(cfg.GITHUB_TOKEN, cfg.GITHUB_MAX_FILES)
    machine = CycleStateMachine(
        reasoning=reasoning or build_default_team(cfg),
        store=store,
        archiver=HistoryArchiver(storage or _storage_for(cfg, store.provider_config)),
        timing=timing or MachineTiming(cfg.TASK_DELAY_S, cfg.REGRESSION_DELAY_S),
        source_host=github,
    )
    logger.info("Workspace ready | session=%s | storage=%s", store.state.session_id,
                type(machine.archiver.storage).__name__)
    return Workspace(store=store, machine=machine, github=github)


# ── Global workspace ────────────────────────────────────────────────
_workspace: Workspace | None = None


def get_workspace() -> Workspace:
    global _workspace
    if _workspace is None:
        from shared.config import settings

        _workspace = build_workspace(settings)
    return _workspace


def set_workspace(workspace: Workspace | None) -> None:
    global _workspace
    _workspace = workspace
