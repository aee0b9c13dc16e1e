"""Agents package – the reasoning roles behind the QA cycle."""

from __future__ import annotations

from typing import TYPE_CHECKING

from agents.architect import ArchitectAgent
from agents.base import ExecutionVerdict, ReasoningAgent, ReasoningService, TestPlan
from agents.fixer import FixerAgent, FixProposal, parse_fix
from agents.llm_client import ReasoningClient
from agents.qa_lead import QALeadAgent
from agents.tester import TesterAgent
from shared.schemas import Task

if TYPE_CHECKING:
    from shared.config import Settings


class AgentTeam(ReasoningService):
    """``ReasoningService`` backed by the four role agents."""

    def __init__(
        self,
        client: ReasoningClient,
        architect: ArchitectAgent,
        qa_lead: QALeadAgent,
        tester: TesterAgent,
        fixer: FixerAgent,
    ) -> None:
        self.client = client
        self.architect = architect
        self.qa_lead = qa_lead
        self.tester = tester
        self.fixer = fixer

    def check_configured(self) -> None:
        self.client.check_configured()

    async def analyze(self, code: str) -> str:
        return await self.architect.analyze(code)

    async def plan(self, code: str, summary: str, report: str) -> TestPlan:
        return await self.qa_lead.plan(code, summary, report)

    async def execute(self, code: str, task: Task, report: str) -> ExecutionVerdict:
        return await self.tester.execute(code, task, report)

    async def fix(self, code: str, task: Task, report: str) -> str:
        return await self.fixer.fix(code, task, report)


def build_default_team(settings: Settings, client: ReasoningClient | None = None) -> AgentTeam:
    """Wire the team from settings: pro model for analysis/planning, flash for the rest."""
    client = client or ReasoningClient(
        api_key=settings.GEMINI_API_KEY,
        base_url=settings.GEMINI_API_BASE,
        timeout=settings.LLM_TIMEOUT,
    )
    return AgentTeam(
        client=client,
        architect=ArchitectAgent(client, settings.GEMINI_MODEL_PRO, settings.ANALYSIS_CHAR_LIMIT),
        qa_lead=QALeadAgent(client, settings.GEMINI_MODEL_PRO),
        tester=TesterAgent(client, settings.GEMINI_MODEL_FLASH),
        fixer=FixerAgent(client, settings.GEMINI_MODEL_FLASH),
    )


__all__ = [
    "AgentTeam",
    "ArchitectAgent",
    "ExecutionVerdict",
    "FixProposal",
    "FixerAgent",
    "QALeadAgent",
    "ReasoningAgent",
    "ReasoningClient",
    "ReasoningService",
    "TestPlan",
    "TesterAgent",
    "build_default_team",
    "parse_fix",
]
