"""Fixer Agent – proposes a fix for a FAILED task.

The fix is returned as raw text. When the first line reads
``FILENAME: <path>`` the rest is the full new content of that file, which
is what the pull-request flow needs.
"""

from __future__ import annotations

import logging
import textwrap
from dataclasses import dataclass

from agents.base import ReasoningAgent
from agents.llm_client import strip_fences
from shared.errors import ResponseParseError
from shared.schemas import AgentRole, Task

logger = logging.getLogger(__name__)

FILENAME_PREFIX = "FILENAME:"
UNKNOWN_FILE = "unknown_file.ts"


@dataclass(frozen=True)
class FixProposal:
    """A fix split into its target file and new content."""

    path: str
    content: str
    named: bool  # True when the path came from a FILENAME header


def parse_fix(text: str, fallback_path: str | None = None) -> FixProposal:
    """Split fix text into ``(path, content)``.

    Without a ``FILENAME:`` header the whole text is the content and the
    path falls back to *fallback_path* (usually the task's first related
    file).
    """
    body = strip_fences(text)
    first, _, rest = body.partition("\n")
    header = first.strip().strip("*").strip()
    if header.upper().startswith(FILENAME_PREFIX):
        path = header[len(FILENAME_PREFIX):].strip(" `*")
        if path:
            return FixProposal(path=path, content=strip_fences(rest), named=True)
    return FixProposal(path=fallback_path or UNKNOWN_FILE, content=body, named=False)


class FixerAgent(ReasoningAgent):
    name = "fixer"
    role = AgentRole.FIXER
    system_prompt = (
        "You are a senior developer fixing code after a failed test. "
        "No explanations outside the requested format."
    )

    def build_prompt(self, code: str, task: Task, report: str) -> str:
        return textwrap.dedent("""\
        Fix the code based on the FAILED test result.

        - Return the FULL CONTENT of the file that needs changing.
        - If several files need changes, choose the most critical one.
        - Start the response with the file name on the first line, like
          "FILENAME: src/App.tsx", then the code.

        """) + (
            f"Failed task: {task.description}\n"
            f"Failure log: {task.failure_reason}\n\n"
            f"Progress report:\n{report}\n\n"
            f"Relevant code:\n{code}"
        )

    async def fix(self, code: str, task: Task, report: str) -> str:
        text = await self._complete(self.build_prompt(code, task, report))
        if not text.strip():
            raise ResponseParseError(f"Fixer returned nothing for {task.id}", self.name)
        return text
