"""History archiver – offload finished cycles to blob storage.

Each completed test pass is serialized into one JSON blob::

    <YYYY-MM-DD>/<project-identity>/Cycle_<n>.json
    {cycleNumber, timestamp, tasks, logs, report, projectIdentity}

and the session keeps only a ``CycleHistoryItem`` pointer to it. When the
upload fails the pointer still carries the in-memory tasks, so the cycle
remains viewable for the rest of the session but cannot be rehydrated
after a restart.
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Iterable
from urllib.parse import unquote, urlparse

from shared.errors import ArchiveNotFoundError, ProviderError, ResponseParseError
from shared.schemas import CycleHistoryItem, CycleView, LogEntry, Task, TaskStatus

logger = logging.getLogger(__name__)


# ── Blob storage port ────────────────────────────────────────────────

class BlobStorage(ABC):
    """Remote storage for opaque text/JSON blobs."""

    name: str = "blob_storage"

    @abstractmethod
    async def upload_json(self, path: str, payload: dict[str, Any]) -> str:
        """Store *payload* under *path* and return its retrieval URL."""
        ...

    @abstractmethod
    async def fetch_json(self, url: str) -> dict[str, Any]:
        ...

    @abstractmethod
    async def upload_text(self, path: str, content: str, content_type: str = "text/plain") -> str:
        ...


class LocalBlobStorage(BlobStorage):
    """Filesystem-backed blob storage returning ``file://`` URLs."""

    name = "local_blob_storage"

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).resolve()

    def _write(self, path: str, data: str) -> str:
        target = (self.root / path).resolve()
        if self.root not in target.parents:
            raise ProviderError(f"Refusing to write outside archive root: {path}", self.name)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(data, encoding="utf-8")
        except OSError as exc:
            raise ProviderError(f"Write failed for {path}: {exc}", self.name, exc) from exc
        return target.as_uri()

    async def upload_json(self, path: str, payload: dict[str, Any]) -> str:
        return self._write(path, json.dumps(payload, ensure_ascii=False, indent=2))

    async def upload_text(self, path: str, content: str, content_type: str = "text/plain") -> str:
        return self._write(path, content)

    async def fetch_json(self, url: str) -> dict[str, Any]:
        parsed = urlparse(url)
        if parsed.scheme != "file":
            raise ProviderError(f"Unsupported URL for local storage: {url}", self.name)
        try:
            text = Path(unquote(parsed.path)).read_text(encoding="utf-8")
        except OSError as exc:
            raise ProviderError(f"Archive read failed: {exc}", self.name, exc) from exc
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise ResponseParseError(f"Archive at {url} is not valid JSON", self.name, exc) from exc


# ── Paths ────────────────────────────────────────────────────────────

def safe_identity(identity: str) -> str:
    """Make a project identity usable as one path segment (``a/b`` → ``a__b``)."""
    cleaned = identity.strip().replace("/", "__")
    cleaned = re.sub(r"[^A-Za-z0-9._-]", "_", cleaned)
    return cleaned.strip(".") or "unknown_project"


def archive_path(day: date, identity: str, cycle_number: int) -> str:
    return f"{day:%Y-%m-%d}/{safe_identity(identity)}/Cycle_{cycle_number}.json"


# ── Archiver ─────────────────────────────────────────────────────────

class HistoryArchiver:
    """Snapshot completed cycles to blob storage and load them back."""

    def __init__(self, storage: BlobStorage | None) -> None:
        self.storage = storage

    async def archive(
        self,
        cycle_number: int,
        tasks: Iterable[Task],
        logs: Iterable[LogEntry],
        report: str,
        project_identity: str,
    ) -> CycleHistoryItem:
        """Upload one cycle and return its pointer.

        Never raises on upload trouble: the pointer simply comes back
        without ``storage_url``.
        """
        task_snapshot = tuple(tasks)
        now = datetime.now(timezone.utc)
        payload = {
            "cycleNumber": cycle_number,
            "timestamp": now.isoformat(),
            "tasks": [t.to_dict() for t in task_snapshot],
            "logs": [entry.to_dict() for entry in logs],
            "report": report,
            "projectIdentity": project_identity,
        }
        defects = sum(1 for t in task_snapshot if t.status == TaskStatus.FAILED)

        storage_url: str | None = None
        if self.storage is None:
            logger.warning(
                "No blob storage configured; cycle %d kept in memory only", cycle_number
            )
        else:
            path = archive_path(now.date(), project_identity, cycle_number)
            try:
                storage_url = await self.storage.upload_json(path, payload)
                logger.info("Archived cycle %d → %s", cycle_number, storage_url)
            except ProviderError as exc:
                logger.warning(
                    "Archive upload for cycle %d failed (%s); kept in memory only",
                    cycle_number, exc,
                )

        return CycleHistoryItem(
            cycle_number=cycle_number,
            defect_count=defects,
            timestamp=payload["timestamp"],
            storage_url=storage_url,
            tasks=task_snapshot,
        )

    async def rehydrate(self, pointer: CycleHistoryItem) -> CycleView:
        """Load a cycle's payload for read-only viewing.

        Raises:
            ArchiveNotFoundError: no remote copy and no in-memory tasks.
            ResponseParseError:   the remote payload has the wrong shape.
        """
        if pointer.storage_url and self.storage is not None:
            try:
                payload = await self.storage.fetch_json(pointer.storage_url)
            except ResponseParseError:
                raise
            except ProviderError as exc:
                if pointer.tasks is None:
                    raise ArchiveNotFoundError(
                        f"Cycle {pointer.cycle_number} could not be fetched from storage",
                        "history_archiver",
                        exc,
                    ) from exc
                logger.warning(
                    "Fetching cycle %d failed (%s); showing in-memory tasks",
                    pointer.cycle_number, exc,
                )
            else:
                return _view_from_payload(pointer.cycle_number, payload)

        if pointer.tasks is not None:
            return CycleView(cycle_number=pointer.cycle_number, tasks=pointer.tasks, partial=True)

        raise ArchiveNotFoundError(
            f"Cycle {pointer.cycle_number} has no archived payload", "history_archiver"
        )


def _view_from_payload(cycle_number: int, payload: dict[str, Any]) -> CycleView:
    try:
        return CycleView(
            cycle_number=int(payload.get("cycleNumber", cycle_number)),
            tasks=tuple(Task.from_dict(t) for t in payload["tasks"]),
            logs=tuple(LogEntry.from_dict(e) for e in payload.get("logs", [])),
            report=payload.get("report"),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise ResponseParseError(
            f"Archived payload for cycle {cycle_number} is malformed", "history_archiver", exc
        ) from exc
