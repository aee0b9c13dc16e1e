"""Base interfaces for the reasoning service and the agents behind it."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from shared.schemas import AgentRole, Task

if TYPE_CHECKING:
    from agents.llm_client import ReasoningClient


@dataclass(frozen=True)
class TestPlan:
    """Output of the planning call."""

    __test__ = False  # not a pytest class

    reasoning: str
    tasks: tuple[Task, ...] = ()


@dataclass(frozen=True)
class ExecutionVerdict:
    """Output of one simulated test execution."""

    passed: bool
    reason: str = ""
    execution_log: tuple[str, ...] = field(default_factory=tuple)


class ReasoningService(ABC):
    """The four reasoning calls the cycle state machine depends on.

    Implementations raise ``ProviderError`` on transport failure and
    ``ResponseParseError`` when a response does not have the expected shape.
    """

    def check_configured(self) -> None:
        """Raise ``ConfigurationError`` if the service cannot be called at all."""

    @abstractmethod
    async def analyze(self, code: str) -> str:
        ...

    @abstractmethod
    async def plan(self, code: str, summary: str, report: str) -> TestPlan:
        ...

    @abstractmethod
    async def execute(self, code: str, task: Task, report: str) -> ExecutionVerdict:
        """Simulate *task* against the (already scoped) *code*."""
        ...

    @abstractmethod
    async def fix(self, code: str, task: Task, report: str) -> str:
        """Return raw fix text; a leading ``FILENAME: <path>`` names the file."""
        ...


class ReasoningAgent(ABC):
    """One role of the agent team, bound to a model on a shared client."""

    name: str = "base"
    role: AgentRole = AgentRole.SYSTEM
    system_prompt: str = ""

    def __init__(self, client: ReasoningClient, model: str) -> None:
        self.client = client
        self.model = model

    async def _complete(self, prompt: str, json_mode: bool = False) -> str:
        return await self.client.complete(
            self.model, self.system_prompt, prompt, json_mode=json_mode, component=self.name
        )

    async def _complete_json(self, prompt: str) -> Any:
        return await self.client.complete_json(
            self.model, self.system_prompt, prompt, component=self.name
        )

    def __repr__(self) -> str:
        return f"<Agent: {self.name} ({self.model})>"
