"""Cloudinary blob storage – unsigned ``raw`` uploads over httpx.

Used for cycle archives and for report / log exports. Uploads go to::

    https://api.cloudinary.com/v1_1/<cloud_name>/raw/upload

with an upload preset, and return the asset's ``secure_url``.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from shared.errors import ConfigurationError, ProviderError, ResponseParseError
from workflow.history import BlobStorage

logger = logging.getLogger(__name__)

API_BASE = "https://api.cloudinary.com/v1_1"


class CloudinaryStorage(BlobStorage):
    name = "cloudinary"

    def __init__(
        self,
        cloud_name: str,
        upload_preset: str,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.cloud_name = cloud_name
        self.upload_preset = upload_preset
        self.timeout = timeout
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.cloud_name and self.upload_preset)

    @property
    def upload_url(self) -> str:
        return f"{API_BASE}/{self.cloud_name}/raw/upload"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def upload_text(self, path: str, content: str, content_type: str = "text/plain") -> str:
        if not self.configured:
            raise ConfigurationError("Missing Cloudinary configuration", self.name)

        filename = path.rsplit("/", 1)[-1]
        files = {"file": (filename, content.encode("utf-8"), content_type)}
        data = {"upload_preset": self.upload_preset, "public_id": path}
        try:
            async with self._client() as client:
                resp = await client.post(self.upload_url, data=data, files=files)
        except httpx.HTTPError as exc:
            raise ProviderError(f"Upload of {path} failed: {exc}", self.name, exc) from exc

        if resp.status_code >= 400:
            raise ProviderError(
                f"Upload of {path} rejected (HTTP {resp.status_code}): {_error_message(resp)}",
                self.name,
            )
        try:
            url = resp.json()["secure_url"]
        except (ValueError, KeyError, TypeError) as exc:
            raise ResponseParseError("Upload response has no secure_url", self.name, exc) from exc
        logger.info("Uploaded %s (%d bytes) → %s", path, len(content), url)
        return url

    async def upload_json(self, path: str, payload: dict[str, Any]) -> str:
        return await self.upload_text(path, json.dumps(payload, ensure_ascii=False), "application/json")

    async def fetch_json(self, url: str) -> dict[str, Any]:
        try:
            async with self._client() as client:
                resp = await client.get(url)
                resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise ProviderError(f"Fetching {url} failed: {exc}", self.name, exc) from exc
        try:
            payload = resp.json()
        except ValueError as exc:
            raise ResponseParseError(f"Archive at {url} is not valid JSON", self.name, exc) from exc
        if not isinstance(payload, dict):
            raise ResponseParseError(f"Archive at {url} is not a JSON object", self.name)
        return payload


def _error_message(resp: httpx.Response) -> str:
    try:
        return resp.json().get("error", {}).get("message") or "Upload failed"
    except (ValueError, AttributeError):
        return resp.text[:200] or "Upload failed"
