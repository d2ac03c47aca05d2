"""HTTP surface of the proxy: agent endpoints plus health, status and sync retry."""
from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel

from memproxy.proxy.forwarder import ForwardError

logger = logging.getLogger("memproxy.proxy")

proxy_router = APIRouter(tags=["proxy"])


class SyncRetryRequest(BaseModel):
    background: bool = False
    trigger: str = "api"


def _get_context(request: Request):
    ctx = getattr(request.app.state, "ctx", None)
    if ctx is None:
        raise HTTPException(status_code=503, detail="Proxy not initialized")
    return ctx


def _error(status_code: int, error_type: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": {"type": error_type, "message": message}})


async def _proxy(request: Request) -> Response:
    ctx = _get_context(request)
    path = request.url.path
    if request.url.query:
        path = f"{path}?{request.url.query}"
    adapter = ctx.registry.resolve(path)
    if adapter is None:
        return _error(404, "not_found_error", f"No agent handles {request.url.path}")

    raw = await request.body()
    try:
        body: Any = json.loads(raw) if raw else {}
    except ValueError:
        return _error(400, "invalid_request_error", "Request body is not valid JSON")

    try:
        reply = await ctx.orchestrator.handle(adapter, body, request.headers)
    except ForwardError as exc:
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())
    except Exception:
        logger.exception("Unexpected proxy failure on %s", request.url.path)
        return _error(500, "internal_error", "Internal proxy error")

    if reply.stream is not None:
        return StreamingResponse(
            reply.stream,
            status_code=reply.status_code,
            headers={k: v for k, v in reply.headers.items() if k != "content-type"},
            media_type=reply.media_type,
        )
    return Response(
        content=reply.content,
        status_code=reply.status_code,
        headers={k: v for k, v in reply.headers.items() if k != "content-type"},
        media_type=reply.media_type,
    )


@proxy_router.post("/v1/messages")
async def claude_messages(request: Request):
    return await _proxy(request)


@proxy_router.post("/v1/responses")
async def codex_responses(request: Request):
    return await _proxy(request)


@proxy_router.post("/responses")
async def codex_responses_unversioned(request: Request):
    return await _proxy(request)


@proxy_router.get("/health")
async def health(request: Request):
    ctx = getattr(request.app.state, "ctx", None)
    return {
        "status": "ok",
        "db": "connected" if ctx is not None and ctx.db is not None else "disconnected",
        "agents": [a.name for a in ctx.registry.adapters] if ctx is not None else [],
    }


@proxy_router.get("/status")
async def status(request: Request):
    """Local store counts plus sync and scanner observability."""
    ctx = _get_context(request)
    return {
        "sync": {
            "summary": ctx.sync_engine.status_summary(),
            "tasks": await ctx.tasks.status_counts(),
            **(await ctx.sync_engine.get_observability_snapshot()),
        },
        "scanner": {
            "running": ctx.scanner.is_running if ctx.scanner is not None else False,
            "lastResult": ctx.scanner.last_result.model_dump() if ctx.scanner and ctx.scanner.last_result else None,
        },
    }


@proxy_router.post("/sync/retry")
async def retry_failed_sync(request: Request, background_tasks: BackgroundTasks, body: SyncRetryRequest | None = None):
    """Move failed tasks back to pending and upload them again."""
    ctx = _get_context(request)
    if ctx.sync_engine is None:
        raise HTTPException(status_code=503, detail="Sync engine not initialized")
    body = body or SyncRetryRequest()

    if body.background:
        background_tasks.add_task(ctx.sync_engine.retry_failed, body.trigger)
        return {"status": "ok", "mode": "background", "message": "Retry triggered in background"}

    requeued, result = await ctx.sync_engine.retry_failed(body.trigger)
    return {
        "status": "ok",
        "mode": "foreground",
        "requeued": requeued,
        "synced": result.synced,
        "failed": result.failed,
        "errors": result.errors,
    }


@proxy_router.api_route("/{path:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE"], include_in_schema=False)
async def unmatched(path: str):
    return _error(404, "not_found_error", f"Unknown endpoint /{path}")
