"""Upstream relay built on one shared httpx client."""
from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Mapping

import httpx

from memproxy import config
from memproxy.agents.base import AgentAdapter
from memproxy.observability import record_forward

logger = logging.getLogger("memproxy.proxy")


class ForwardError(Exception):
    """Upstream could not be reached; carries the status the client should see."""

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message

    def to_payload(self) -> dict[str, Any]:
        return {"error": {"type": "proxy_error", "message": self.message}}


def _is_sse(headers: Mapping[str, str]) -> bool:
    return "text/event-stream" in (headers.get("content-type") or "").lower()


@dataclass
class UpstreamResponse:
    status_code: int
    headers: dict[str, str]
    content: bytes
    was_sse: bool = False

    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")


@dataclass
class UpstreamStream:
    """An open streamed upstream response.

    ``iter_bytes`` yields the upstream bytes unchanged and keeps a copy in
    ``buffer`` for post-processing once the stream is drained.
    """

    status_code: int
    headers: dict[str, str]
    response: httpx.Response
    agent: str = ""
    started: float = 0.0
    buffer: bytearray = field(default_factory=bytearray)
    completed: bool = False

    @property
    def was_sse(self) -> bool:
        return _is_sse(self.headers)

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self.response.aiter_bytes():
                self.buffer.extend(chunk)
                yield chunk
            self.completed = True
        except httpx.HTTPError as exc:
            # Status is already on the wire; the client sees a truncated stream.
            logger.warning("Upstream stream for %s broke after %s bytes: %s", self.agent, len(self.buffer), exc)
        finally:
            await self.response.aclose()
            record_forward(self.agent, self.status_code, (time.monotonic() - self.started) * 1000)

    def text(self) -> str:
        return bytes(self.buffer).decode("utf-8", errors="replace")

    async def aclose(self) -> None:
        await self.response.aclose()


class Forwarder:
    def __init__(self, client: httpx.AsyncClient | None = None, timeout_seconds: float | None = None):
        timeout = float(timeout_seconds or config.REQUEST_TIMEOUT_SECONDS)
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout, connect=30.0))

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    def _build_request(self, adapter: AgentAdapter, body: Any, headers: Mapping[str, str]) -> httpx.Request:
        outbound = adapter.forward_headers(headers)
        # Decoded bytes are what the client receives, so never negotiate compression.
        outbound["accept-encoding"] = "identity"
        return self.client.build_request(
            "POST",
            adapter.upstream_url,
            content=json.dumps(body).encode("utf-8"),
            headers=outbound,
        )

    async def _open(
        self,
        adapter: AgentAdapter,
        body: Any,
        headers: Mapping[str, str],
        stream: bool,
    ) -> tuple[httpx.Response, float]:
        request = self._build_request(adapter, body, headers)
        started = time.monotonic()
        try:
            response = await self.client.send(request, stream=stream)
        except httpx.TimeoutException as exc:
            logger.error("Upstream timeout for %s: %s", adapter.name, exc)
            record_forward(adapter.name, 504, (time.monotonic() - started) * 1000)
            raise ForwardError(504, "Gateway timeout") from exc
        except httpx.HTTPError as exc:
            logger.error("Upstream unreachable for %s: %s", adapter.name, exc)
            record_forward(adapter.name, 502, (time.monotonic() - started) * 1000)
            raise ForwardError(502, "Bad gateway") from exc
        return response, started

    async def send(self, adapter: AgentAdapter, body: Any, headers: Mapping[str, str]) -> UpstreamResponse:
        """Forward one request and return the complete response."""
        response, started = await self._open(adapter, body, headers, stream=False)
        response_headers = {k.lower(): v for k, v in response.headers.items()}
        record_forward(adapter.name, response.status_code, (time.monotonic() - started) * 1000)
        return UpstreamResponse(
            status_code=response.status_code,
            headers=response_headers,
            content=response.content,
            was_sse=_is_sse(response_headers),
        )

    async def stream(self, adapter: AgentAdapter, body: Any, headers: Mapping[str, str]) -> UpstreamStream:
        """Forward one request and return the open stream.

        The caller must drain it with ``iter_bytes`` or close it.
        """
        response, started = await self._open(adapter, body, headers, stream=True)
        return UpstreamStream(
            status_code=response.status_code,
            headers={k.lower(): v for k, v in response.headers.items()},
            response=response,
            agent=adapter.name,
            started=started,
        )
