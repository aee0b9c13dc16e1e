"""Local persistence port and a debounced writer on top of it.

The session store never talks to a disk or database directly; it is
handed a ``KeyValueStore`` and an explicit debounce interval.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """Opaque byte storage keyed by name."""

    @abstractmethod
    def load(self, key: str) -> bytes | None:
        """Return the stored bytes, or ``None`` if *key* was never saved."""
        ...

    @abstractmethod
    def save(self, key: str, data: bytes) -> None:
        ...


class MemoryKeyValueStore(KeyValueStore):
    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}
        self.write_count = 0

    def load(self, key: str) -> bytes | None:
        return self._data.get(key)

    def save(self, key: str, data: bytes) -> None:
        self._data[key] = bytes(data)
        self.write_count += 1


class FileKeyValueStore(KeyValueStore):
    """One file per key under *root*, replaced atomically on every save."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9._-]", "_", key)
        return self.root / f"{safe}.json"

    def load(self, key: str) -> bytes | None:
        path = self._path(key)
        if not path.is_file():
            return None
        return path.read_bytes()

    def save(self, key: str, data: bytes) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise


class DebouncedWriter:
    """Coalesce writes to at most one flush per *delay_s* of quiescence.

    ``schedule()`` takes a render callable instead of bytes so the record
    is serialized once, at flush time, from the latest state. Without a
    running event loop (or with ``delay_s <= 0``) writes happen at once.
    """

    def __init__(self, store: KeyValueStore, key: str, delay_s: float = 1.0) -> None:
        self.store = store
        self.key = key
        self.delay_s = delay_s
        self._render: Callable[[], bytes] | None = None
        self._timer: asyncio.TimerHandle | None = None

    @property
    def pending(self) -> bool:
        return self._render is not None

    def schedule(self, render: Callable[[], bytes]) -> None:
        self._render = render
        if self.delay_s <= 0:
            self.flush()
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.flush()
            return
        if self._timer is not None:
            self._timer.cancel()
        self._timer = loop.call_later(self.delay_s, self.flush)

    def flush(self) -> None:
        """Write the pending record now, if any."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        render, self._render = self._render, None
        if render is None:
            return
        try:
            self.store.save(self.key, render())
        except OSError as exc:
            logger.error("Persisting %s failed: %s", self.key, exc)
