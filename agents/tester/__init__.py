"""Tester Agent – mentally simulates one task against the scoped source."""

from __future__ import annotations

import textwrap

from pydantic import AliasChoices, BaseModel, Field, ValidationError

from agents.base import ExecutionVerdict, ReasoningAgent
from shared.errors import ResponseParseError
from shared.schemas import AgentRole, Task


class ExecutionResponse(BaseModel):
    passed: bool
    reason: str = ""
    execution_log: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("executionLog", "executionLogs", "execution_log"),
    )


class TesterAgent(ReasoningAgent):
    name = "tester"
    role = AgentRole.TESTER
    system_prompt = (
        "You are a QA tester. You trace code paths step by step with concrete "
        "mock inputs and answer with a single JSON object."
    )

    def build_prompt(self, code: str, task: Task, report: str) -> str:
        return textwrap.dedent("""\
        Simulate the test below against the code.

        1. Define specific mock inputs.
        2. Trace the code flow with these inputs step by step.
        3. Compare the observed output with the expected result.
        4. Record each step in "executionLog" as "INPUT: ...",
           "ACTION: ..." and "OBSERVED OUTPUT: ...".

        Answer with JSON:
        {"passed": true, "reason": "<technical explanation>", "executionLog": ["..."]}

        """) + (
            f"Task: {task.description}\n"
            f"Expected result: {task.expected_result}\n\n"
            f"History:\n{report}\n\n"
            f"Relevant code:\n{code}"
        )

    async def execute(self, code: str, task: Task, report: str) -> ExecutionVerdict:
        raw = await self._complete_json(self.build_prompt(code, task, report))
        try:
            parsed = ExecutionResponse.model_validate(raw)
        except ValidationError as exc:
            raise ResponseParseError(
                f"Execution result for {task.id} has the wrong shape", self.name, exc
            ) from exc
        return ExecutionVerdict(
            passed=parsed.passed,
            reason=parsed.reason,
            execution_log=tuple(parsed.execution_log),
        )
