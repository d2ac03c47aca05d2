"""Async client for the team memory API."""
from __future__ import annotations

import logging
from typing import Any, Literal, Optional

import httpx
from pydantic import ValidationError

from memproxy import config
from memproxy.models import TeamMemory

logger = logging.getLogger("memproxy.sync")

CaptureSource = Literal["cursor", "antigravity"]


class ApiError(Exception):
    """Team memory API call failed; ``status_code`` is 0 for transport errors."""

    def __init__(self, status_code: int, message: str):
        super().__init__(f"HTTP {status_code}: {message}" if status_code else message)
        self.status_code = status_code
        self.message = message


class MemoryApiClient:
    def __init__(
        self,
        access_token: Optional[str],
        base_url: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float | None = None,
    ):
        self.access_token = access_token
        self.base_url = (base_url or config.API_URL).rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(float(timeout_seconds or config.API_TIMEOUT_SECONDS)),
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        if not self.access_token:
            raise ApiError(401, "Not authenticated")
        url = f"{self.base_url}{path}"
        try:
            response = await self._client.request(method, url, json=payload, params=params, headers=self._headers())
        except httpx.HTTPError as exc:
            raise ApiError(0, f"Request to {path} failed: {exc}") from exc

        if response.status_code >= 400:
            try:
                detail = response.json().get("error") or response.text
            except ValueError:
                detail = response.text
            raise ApiError(response.status_code, str(detail)[:500])

        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    async def sync_memories(self, team_id: str, memories: list[dict[str, Any]]) -> dict[str, Any]:
        """POST a batch of memories; returns ``{synced, failed, errors}``."""
        data = await self._request("POST", f"/teams/{team_id}/memories/sync", {"memories": memories})
        return {
            "synced": int(data.get("synced") or 0),
            "failed": int(data.get("failed") or 0),
            "errors": [str(e) for e in data.get("errors") or []],
        }

    async def post_capture(self, team_id: str, source: CaptureSource, payload: dict[str, Any]) -> dict[str, Any]:
        """Send one captured conversation turn or session to the server-side extractor."""
        return await self._request("POST", f"/teams/{team_id}/{source}/extract", payload)

    async def fetch_team_memories(
        self,
        team_id: str,
        project_path: str,
        *,
        context: str | None = None,
        current_files: list[str] | None = None,
        status: str = "complete",
        limit: int | None = None,
    ) -> list[TeamMemory]:
        """Search the team's shared memories for a project.

        Returns an empty list on any failure so injection never blocks a request.
        """
        params: dict[str, Any] = {
            "project_path": project_path,
            "status": status,
            "limit": limit or config.TEAM_MEMORY_LIMIT,
        }
        if context:
            params["context"] = context[: config.TEAM_MEMORY_CONTEXT_CHARS]
        if current_files:
            params["current_files"] = ",".join(current_files[: config.TEAM_MEMORY_MAX_FILES])
        try:
            data = await self._request("GET", f"/teams/{team_id}/memories", params=params)
        except ApiError as exc:
            logger.warning("Team memory search failed: %s", exc)
            return []

        raw = data.get("memories")
        if not isinstance(raw, list):
            return []
        memories = []
        for item in raw:
            try:
                memories.append(TeamMemory.model_validate(item))
            except ValidationError:
                logger.debug("Skipping malformed team memory entry")
        return memories
