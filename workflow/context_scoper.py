"""Context scoping over a framed multi-file source bundle.

A bundle is the concatenation of files, each preceded by a marker line::

    // === FILE: src/App.tsx ===
    <raw file content>

``scope()`` cuts a bundle down to the files a task cares about so each
reasoning call only carries the relevant code.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable

FILE_MARKER_PREFIX = "// === FILE: "
FILE_MARKER_SUFFIX = " ==="

_MARKER_RE = re.compile(r"^// === FILE: (?P<path>.*?) ===[ \t]*$", re.MULTILINE)

# Import filter shared by the GitHub import and the local directory import
RELEVANT_EXTENSIONS = (
    ".ts", ".tsx", ".js", ".jsx", ".css", ".html", ".json", ".md",
    ".py", ".go", ".rs",
)
IGNORED_PATH_PARTS = (
    "node_modules", "dist", "build", ".git", "package-lock.json", "yarn.lock",
    "__pycache__",
)


@dataclass(frozen=True)
class SourceSegment:
    """One framed file: its declared path and its verbatim text (marker included)."""

    path: str
    text: str


def file_marker(path: str) -> str:
    return f"{FILE_MARKER_PREFIX}{path}{FILE_MARKER_SUFFIX}"


def frame_file(path: str, content: str) -> str:
    return f"{file_marker(path)}\n{content}\n\n"


def bundle_files(files: Iterable[tuple[str, str]]) -> str:
    """Concatenate ``(path, content)`` pairs into one framed bundle."""
    return "".join(frame_file(path, content) for path, content in files)


def is_relevant_source(path: str) -> bool:
    if any(part in path for part in IGNORED_PATH_PARTS):
        return False
    return path.endswith(RELEVANT_EXTENSIONS)


def split_segments(full_text: str) -> list[SourceSegment]:
    """Split a bundle into segments, in order.

    Text before the first marker belongs to no segment. Joining the
    segment texts gives back the bundle from the first marker onward.
    """
    matches = list(_MARKER_RE.finditer(full_text))
    segments: list[SourceSegment] = []
    for i, match in enumerate(matches):
        end = matches[i + 1].start() if i + 1 < len(matches) else len(full_text)
        segments.append(
            SourceSegment(path=match.group("path").strip(), text=full_text[match.start():end])
        )
    return segments


def scope(full_text: str, paths: Iterable[str] | None) -> str:
    """Return only the segments whose path contains one of *paths*.

    Matching is a plain substring test so ``"utils.ts"`` selects
    ``"src/utils.ts"``. When nothing matches (or *paths* is empty, or
    the planner invented paths) the full text comes back unchanged.
    """
    fragments = [p.strip() for p in (paths or ()) if p and p.strip()]
    if not fragments:
        return full_text

    kept = [
        seg.text
        for seg in split_segments(full_text)
        if seg.path and any(fragment in seg.path for fragment in fragments)
    ]
    scoped = "".join(kept)
    return scoped if scoped.strip() else full_text
