"""Tests for the reasoning client and the four role agents.

The HTTP layer is replaced by ``httpx.MockTransport`` so the real request
building, status handling and response parsing are exercised.

Run:
    python3 -m pytest agents/test_agents.py -v
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

import httpx
import pytest

_ROOT = Path(__file__).resolve().parent.parent
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

from agents import AgentTeam, build_default_team
from agents.architect import ArchitectAgent
from agents.fixer import UNKNOWN_FILE, FixerAgent, parse_fix
from agents.llm_client import ReasoningClient, strip_fences
from agents.qa_lead import PlannedTask, QALeadAgent, unique_task_ids
from agents.tester import TesterAgent
from shared.config import Settings
from shared.errors import ConfigurationError, ProviderError, ResponseParseError
from shared.schemas import Task, TaskStatus


# ── Helpers ──────────────────────────────────────────────────────────

def _completion(content: str) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


def _client(handler, api_key: str = "test-key") -> tuple[ReasoningClient, list[dict]]:
    """Client whose transport records each request body and answers via *handler*."""
    seen: list[dict] = []

    def _handle(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return handler(request)

    client = ReasoningClient(api_key, base_url="https://llm.test/v1", transport=httpx.MockTransport(_handle))
    return client, seen


def _answer(content):
    text = content if isinstance(content, str) else json.dumps(content)
    return lambda request: httpx.Response(200, json=_completion(text))


TASK = Task(id="t1", description="[NEGATIVE] empty password", expected_result="rejected",
            status=TaskStatus.FAILED, failure_reason="accepted")


# ── Client ───────────────────────────────────────────────────────────

class TestReasoningClient:

    def test_request_shape(self):
        client, seen = _client(_answer("hello"))

        text = asyncio.run(client.complete("gemini-x", "be brief", "hi", json_mode=True))

        assert text == "hello"
        body = seen[0]
        assert body["model"] == "gemini-x"
        assert body["temperature"] == 0.0
        assert body["response_format"] == {"type": "json_object"}
        assert body["messages"][0] == {"role": "system", "content": "be brief"}

    def test_missing_key(self):
        client, seen = _client(_answer("x"), api_key="")
        with pytest.raises(ConfigurationError):
            asyncio.run(client.complete("m", "", "hi"))
        assert seen == []

    def test_http_error_status(self):
        client, _ = _client(lambda r: httpx.Response(503, text="overloaded"))
        with pytest.raises(ProviderError) as info:
            asyncio.run(client.complete("m", "", "hi"))
        assert not isinstance(info.value, ResponseParseError)
        assert "503" in info.value.message

    def test_transport_failure(self):
        def boom(request):
            raise httpx.ConnectError("refused", request=request)

        client, _ = _client(boom)
        with pytest.raises(ProviderError):
            asyncio.run(client.complete("m", "", "hi"))

    def test_unexpected_payload(self):
        client, _ = _client(lambda r: httpx.Response(200, json={"candidates": []}))
        with pytest.raises(ResponseParseError):
            asyncio.run(client.complete("m", "", "hi"))

    def test_complete_json_strips_fences(self):
        client, _ = _client(_answer('```json\n{"ok": true}\n```'))
        assert asyncio.run(client.complete_json("m", "", "hi")) == {"ok": True}

    def test_complete_json_rejects_prose(self):
        client, _ = _client(_answer("Sure! Here is the plan."))
        with pytest.raises(ResponseParseError):
            asyncio.run(client.complete_json("m", "", "hi"))

    def test_strip_fences_leaves_plain_text(self):
        assert strip_fences("  plain  ") == "plain"


# ── Agents ───────────────────────────────────────────────────────────

class TestArchitect:

    def test_truncates_source(self):
        client, seen = _client(_answer("# Technical Structural Summary: App"))
        agent = ArchitectAgent(client, "pro", char_limit=10)

        summary = asyncio.run(agent.analyze("0123456789ABCDEF"))

        assert summary.startswith("# Technical")
        prompt = seen[0]["messages"][-1]["content"]
        assert prompt.endswith("0123456789")
        assert "ABCDEF" not in prompt

    def test_empty_summary(self):
        client, _ = _client(_answer("   "))
        with pytest.raises(ResponseParseError):
            asyncio.run(ArchitectAgent(client, "pro").analyze("code"))


class TestQALead:

    def test_plan_normalizes_tasks(self):
        client, _ = _client(_answer({
            "reasoning": "Cover auth.",
            "tasks": [
                {"id": "login", "description": "valid login", "expectedResult": "dashboard",
                 "relatedFiles": "src/auth.ts"},
                {"id": "login", "description": "duplicate id"},
                {"description": "no id", "relatedFiles": None},
            ],
        }))

        plan = asyncio.run(QALeadAgent(client, "pro").plan("code", "summary", "report"))

        assert plan.reasoning == "Cover auth."
        assert [t.id for t in plan.tasks] == ["login", "login_2", "task_3"]
        assert plan.tasks[0].related_files == ("src/auth.ts",)
        assert plan.tasks[0].expected_result == "dashboard"
        assert plan.tasks[2].related_files == ()
        assert all(t.status == TaskStatus.PENDING for t in plan.tasks)

    def test_plan_defaults_reasoning(self):
        client, _ = _client(_answer({"tasks": []}))
        plan = asyncio.run(QALeadAgent(client, "pro").plan("c", "s", "r"))
        assert plan.reasoning == "Analyzing requirements..."
        assert plan.tasks == ()

    def test_plan_wrong_shape(self):
        client, _ = _client(_answer({"tasks": [{"id": "x"}]}))
        with pytest.raises(ResponseParseError):
            asyncio.run(QALeadAgent(client, "pro").plan("c", "s", "r"))

    def test_unique_task_ids_handles_collision_with_generated_id(self):
        planned = [PlannedTask(description="a"), PlannedTask(id="task_1", description="b")]
        assert [t.id for t in unique_task_ids(planned)] == ["task_1", "task_1_2"]


class TestTester:

    def test_execute_accepts_log_aliases(self):
        client, seen = _client(_answer(
            {"passed": False, "reason": "no validation", "executionLogs": ["INPUT: ''", "OBSERVED OUTPUT: 200"]}
        ))

        verdict = asyncio.run(TesterAgent(client, "flash").execute("code", TASK, "report"))

        assert not verdict.passed
        assert verdict.execution_log == ("INPUT: ''", "OBSERVED OUTPUT: 200")
        assert "[NEGATIVE] empty password" in seen[0]["messages"][-1]["content"]

    def test_execute_missing_passed(self):
        client, _ = _client(_answer({"reason": "?"}))
        with pytest.raises(ResponseParseError):
            asyncio.run(TesterAgent(client, "flash").execute("code", TASK, ""))


class TestFixer:

    def test_fix_returns_raw_text(self):
        client, _ = _client(_answer("FILENAME: src/auth.ts\nexport const x = 1;"))
        text = asyncio.run(FixerAgent(client, "flash").fix("code", TASK, ""))
        assert text.startswith("FILENAME: src/auth.ts")

    def test_parse_fix_with_header(self):
        proposal = parse_fix("```ts\n**FILENAME:** `src/auth.ts`\nexport const x = 1;\n```")
        assert proposal.named
        assert proposal.path == "src/auth.ts"
        assert proposal.content == "export const x = 1;"

    def test_parse_fix_without_header(self):
        proposal = parse_fix("change the check", "src/login.ts")
        assert (proposal.path, proposal.content, proposal.named) == ("src/login.ts", "change the check", False)
        assert parse_fix("x").path == UNKNOWN_FILE


class TestTeam:

    def test_default_team_models(self):
        cfg = Settings(GEMINI_API_KEY="k", GEMINI_MODEL_PRO="pro-model", GEMINI_MODEL_FLASH="flash-model")
        team = build_default_team(cfg)
        assert isinstance(team, AgentTeam)
        assert team.architect.model == team.qa_lead.model == "pro-model"
        assert team.tester.model == team.fixer.model == "flash-model"
        team.check_configured()

    def test_team_unconfigured(self):
        team = build_default_team(Settings(GEMINI_API_KEY=""))
        with pytest.raises(ConfigurationError):
            team.check_configured()
