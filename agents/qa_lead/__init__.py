"""QA Lead Agent – turns the structural summary into a test matrix.

The model answers with ``{reasoning, tasks[]}``; the payload is validated
with pydantic and every task comes back PENDING with a unique id.
"""

from __future__ import annotations

import logging
import textwrap
from typing import Any

from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator

from agents.base import ReasoningAgent, TestPlan
from shared.errors import ResponseParseError
from shared.schemas import AgentRole, Task

logger = logging.getLogger(__name__)


class PlannedTask(BaseModel):
    id: str | None = None
    description: str
    expected_result: str = Field(
        default="", validation_alias=AliasChoices("expectedResult", "expected_result")
    )
    related_files: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("relatedFiles", "related_files")
    )

    @field_validator("related_files", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return value

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        if value is None:
            return None
        return str(value).strip() or None


class PlanResponse(BaseModel):
    reasoning: str = "Analyzing requirements..."
    tasks: list[PlannedTask] = Field(default_factory=list)


def unique_task_ids(planned: list[PlannedTask]) -> list[Task]:
    """Build tasks, filling in missing ids and suffixing duplicates."""
    seen: set[str] = set()
    tasks: list[Task] = []
    for index, item in enumerate(planned, start=1):
        base = item.id or f"task_{index}"
        task_id = base
        suffix = 2
        while task_id in seen:
            task_id = f"{base}_{suffix}"
            suffix += 1
        seen.add(task_id)
        tasks.append(
            Task(
                id=task_id,
                description=item.description,
                expected_result=item.expected_result,
                related_files=tuple(p for p in item.related_files if p),
            )
        )
    return tasks


class QALeadAgent(ReasoningAgent):
    name = "qa_lead"
    role = AgentRole.QA_LEAD
    system_prompt = (
        "You are a professional QA lead. You design deterministic, independent "
        "test scenarios and answer with a single JSON object."
    )

    def build_prompt(self, code: str, summary: str, report: str) -> str:
        return textwrap.dedent("""\
        Create a comprehensive test matrix for the code below.

        Rules:
        1. One scenario, one objective.
        2. Deterministic, measurable expected results.
        3. Scenarios are independent of each other.
        4. Written from the end user's perspective.
        5. Traceable to the purpose being verified.

        Coverage: positive (happy path), negative (error handling) and
        boundary/edge cases.

        Answer with JSON:
        {
          "reasoning": "<testing strategy>",
          "tasks": [
            {"id": "task_1", "description": "[POSITIVE|NEGATIVE|EDGE] ...",
             "expectedResult": "...", "relatedFiles": ["src/App.tsx"]}
          ]
        }

        """) + (
            f"Structural summary:\n{summary}\n\n"
            f"Previous progress report:\n{report}\n\n"
            f"Code:\n{code}"
        )

    async def plan(self, code: str, summary: str, report: str) -> TestPlan:
        raw = await self._complete_json(self.build_prompt(code, summary, report))
        try:
            parsed = PlanResponse.model_validate(raw)
        except ValidationError as exc:
            raise ResponseParseError(
                f"Test plan has the wrong shape ({exc.error_count()} errors)", self.name, exc
            ) from exc
        tasks = unique_task_ids(parsed.tasks)
        logger.info("QA lead planned %d task(s)", len(tasks))
        return TestPlan(reasoning=parsed.reasoning, tasks=tuple(tasks))
