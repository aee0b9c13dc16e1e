"""Async client for the OpenAI-compatible Gemini chat completions endpoint."""

from __future__ import annotations

import json
import logging
import re
from typing import Any

import httpx

from shared.errors import ConfigurationError, ProviderError, ResponseParseError

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://generativelanguage.googleapis.com/v1beta/openai"

# Gemini's OpenAI-compatible API rejects top_p=0.0 and ignores ``seed``.
LLM_PARAMS: dict[str, object] = {
    "temperature": 0.0,
    "top_p": 1.0,
}

_FENCE_OPEN_RE = re.compile(r"^```[\w-]*\n?")
_FENCE_CLOSE_RE = re.compile(r"\n?```$")


def strip_fences(content: str) -> str:
    """Remove a markdown fence the model wrapped around its answer."""
    content = content.strip()
    if content.startswith("```"):
        content = _FENCE_OPEN_RE.sub("", content)
        content = _FENCE_CLOSE_RE.sub("", content)
    return content


class ReasoningClient:
    """Thin wrapper over ``POST {base}/chat/completions``.

    No retries: a failed call surfaces as ``ProviderError`` and the caller
    decides whether it ends the run or degrades one task.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_API_BASE,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def check_configured(self) -> None:
        if not self.api_key:
            raise ConfigurationError("GEMINI_API_KEY is not set", "reasoning_client")

    async def complete(
        self,
        model: str,
        system: str,
        prompt: str,
        json_mode: bool = False,
        component: str = "reasoning_client",
    ) -> str:
        self.check_configured()
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        payload: dict[str, Any] = {"model": model, **LLM_PARAMS, "messages": messages}
        if json_mode:
            payload["response_format"] = {"type": "json_object"}

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(
                    f"{self.base_url}/chat/completions",
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
        except httpx.HTTPError as exc:
            raise ProviderError(f"Reasoning call failed: {exc}", component, exc) from exc

        if resp.status_code != 200:
            logger.error(
                "LLM HTTP %d from %s: %s", resp.status_code, self.base_url, resp.text[:500]
            )
            raise ProviderError(f"Reasoning service returned HTTP {resp.status_code}", component)

        try:
            content = resp.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise ResponseParseError("Unexpected completion payload", component, exc) from exc
        content = (content or "").strip()
        logger.info("LLM returned %d chars from %s/%s", len(content), self.base_url, model)
        return content

    async def complete_json(
        self, model: str, system: str, prompt: str, component: str = "reasoning_client"
    ) -> Any:
        content = strip_fences(
            await self.complete(model, system, prompt, json_mode=True, component=component)
        )
        try:
            return json.loads(content)
        except json.JSONDecodeError as exc:
            raise ResponseParseError(
                f"Response is not valid JSON: {content[:120]!r}", component, exc
            ) from exc
