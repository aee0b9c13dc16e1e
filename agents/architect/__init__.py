"""Architect Agent – reads the source bundle and writes a structural summary."""

from __future__ import annotations

import logging
import textwrap

from agents.base import ReasoningAgent
from agents.llm_client import ReasoningClient
from shared.errors import ResponseParseError
from shared.schemas import AgentRole

logger = logging.getLogger(__name__)

DEFAULT_CHAR_LIMIT = 70_000


class ArchitectAgent(ReasoningAgent):
    name = "architect"
    role = AgentRole.ARCHITECT
    system_prompt = (
        "You are a senior software architect. You write concise, technical, "
        "Markdown-formatted structural summaries of codebases."
    )

    def __init__(self, client: ReasoningClient, model: str, char_limit: int = DEFAULT_CHAR_LIMIT) -> None:
        super().__init__(client, model)
        self.char_limit = char_limit

    def build_prompt(self, code: str) -> str:
        return textwrap.dedent("""\
        Analyze the provided code and produce a "Technical Structural Summary".
        Start with a single "# <Project name>" title line.

        Cover:
        1. Modules & logic: key functions and their dependencies.
        2. Data flow: critical INPUTS required and OUTPUTS expected.
        3. Risk assessment: security risks (injection, sensitive data) and logic gaps.
        4. Negative scenarios: where invalid input or edge cases could break the app.
        5. Error handling: how errors are surfaced to the user.

        Code:
        """) + code[: self.char_limit]

    async def analyze(self, code: str) -> str:
        if len(code) > self.char_limit:
            logger.info("Source truncated from %d to %d chars for analysis", len(code), self.char_limit)
        summary = await self._complete(self.build_prompt(code))
        if not summary:
            raise ResponseParseError("Architect returned an empty summary", self.name)
        return summary
