import json
import types
import unittest
from unittest import mock

import aiosqlite
import httpx
from fastapi import FastAPI

from memproxy.agents.base import INTERNAL_TOOL_NAME
from memproxy.agents.claude.adapter import ClaudeAdapter
from memproxy.agents.registry import AdapterRegistry
from memproxy.config import SyncSettings
from memproxy.db.repositories import (
    SqliteDriftRepository,
    SqliteSessionRepository,
    SqliteStepRepository,
    SqliteTaskRepository,
)
from memproxy.db.sqlite_migrations import run_migrations
from memproxy.models import DriftResult, SessionState, StepRecord, Task
from memproxy.proxy.forwarder import Forwarder
from memproxy.proxy.orchestrator import ProxyOrchestrator
from memproxy.proxy.router import proxy_router
from memproxy.proxy.scoring import TurnAnalysis
from memproxy.sync.api_client import MemoryApiClient
from memproxy.sync.cloud_sync import CloudSyncEngine

SYSTEM = "You are a coding agent.\nWorking directory: /repo\n"
FINAL_TEXT = "I updated the login form so the email field is validated before submit. " * 3


def _claude_body(text: str = "Fix the login form validation", **extra) -> dict:
    body = {
        "model": "claude-sonnet-4",
        "max_tokens": 1024,
        "system": SYSTEM,
        "messages": [{"role": "user", "content": text}],
    }
    body.update(extra)
    return body


def _claude_message(content: list, stop_reason: str = "end_turn") -> dict:
    return {
        "id": "msg_1",
        "type": "message",
        "role": "assistant",
        "model": "claude-sonnet-4",
        "content": content,
        "stop_reason": stop_reason,
        "usage": {"input_tokens": 50, "output_tokens": 20, "cache_read_input_tokens": 10},
    }


EDIT_RESPONSE = _claude_message(
    [
        {"type": "text", "text": "Editing the form."},
        {"type": "tool_use", "id": "tu_1", "name": "Edit", "input": {"file_path": "/repo/src/login.ts"}},
    ],
    stop_reason="tool_use",
)
END_RESPONSE = _claude_message([{"type": "text", "text": FINAL_TEXT}])


def _sse(*events: dict) -> bytes:
    return "".join(f"event: {e['type']}\ndata: {json.dumps(e)}\n\n" for e in events).encode()


class _ContinueScorer:
    def __init__(self, drift: DriftResult | None = None) -> None:
        self.drift = drift
        self.scored = 0

    async def score(self, session, recent_steps, latest_message):
        self.scored += 1
        return self.drift

    async def analyze_turn(self, session, latest_message, response_text):
        return TurnAnalysis(action="continue")


class ProxyTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.sessions = SqliteSessionRepository(self.db)
        self.steps = SqliteStepRepository(self.db)
        self.drift = SqliteDriftRepository(self.db)
        self.tasks = SqliteTaskRepository(self.db)

        self.upstream_requests: list[httpx.Request] = []
        self.upstream_replies: list = []
        self.upstream = httpx.AsyncClient(transport=httpx.MockTransport(self._upstream))
        self.forwarder = Forwarder(client=self.upstream)
        self.orchestrator = self._orchestrator()

        self.app = FastAPI()
        self.app.include_router(proxy_router)
        self.app.state.ctx = types.SimpleNamespace(
            registry=AdapterRegistry(),
            orchestrator=self.orchestrator,
            db=self.db,
            tasks=self.tasks,
            sync_engine=None,
            scanner=None,
        )
        self.client = httpx.AsyncClient(transport=httpx.ASGITransport(app=self.app), base_url="http://proxy")

    async def asyncTearDown(self) -> None:
        await self.orchestrator.drain()
        await self.client.aclose()
        await self.upstream.aclose()
        await self.db.close()

    def _orchestrator(self, scorer=None, sync_engine=None) -> ProxyOrchestrator:
        return ProxyOrchestrator(
            forwarder=self.forwarder,
            sessions=self.sessions,
            steps=self.steps,
            drift=self.drift,
            tasks=self.tasks,
            sync_engine=sync_engine,
            scorer=scorer,
            eager_sync=False,
        )

    def _upstream(self, request: httpx.Request) -> httpx.Response:
        self.upstream_requests.append(request)
        reply = self.upstream_replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, httpx.Response):
            return reply
        return httpx.Response(200, json=reply, headers={"x-request-id": "req-1", "set-cookie": "nope"})

    def _sync_engine(self, handler) -> CloudSyncEngine:
        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        self.addAsyncCleanup(http.aclose)
        api = MemoryApiClient("tok-1", base_url="https://memory.test", client=http)
        return CloudSyncEngine(self.tasks, api, SyncSettings(enabled=True, team_id="team-1", access_token="tok-1"))

    def _sent_body(self, index: int = -1) -> dict:
        return json.loads(self.upstream_requests[index].content)

    async def _post(self, path: str, body) -> httpx.Response:
        response = await self.client.post(path, json=body, headers={"x-api-key": "sk-test", "anthropic-version": "2023-06-01"})
        await self.orchestrator.drain()
        return response

    async def _only_session(self):
        async with self.db.execute("SELECT session_id FROM session_states") as cur:
            rows = await cur.fetchall()
        self.assertEqual(len(rows), 1)
        return await self.sessions.get(rows[0][0])

    async def test_buffered_end_turn_closes_session_into_task(self) -> None:
        self.upstream_replies = [END_RESPONSE]

        response = await self._post("/v1/messages", _claude_body())

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["id"], "msg_1")
        self.assertEqual(response.headers["x-request-id"], "req-1")
        self.assertNotIn("set-cookie", response.headers)
        sent = self.upstream_requests[0]
        self.assertEqual(sent.url, "https://api.anthropic.com/v1/messages")
        self.assertEqual(sent.headers["x-api-key"], "sk-test")
        self.assertEqual(sent.headers["accept-encoding"], "identity")

        session = await self._only_session()
        self.assertEqual(session.status, "completed")
        self.assertEqual(session.project_path, "/repo")
        self.assertEqual(session.token_count, 10)

        pending = await self.tasks.list_pending()
        self.assertEqual(len(pending), 1)
        self.assertEqual(pending[0].original_query, "Fix the login form validation")
        self.assertEqual(pending[0].summary, FINAL_TEXT[:500])

    async def test_tool_use_records_steps_and_keeps_session_active(self) -> None:
        self.upstream_replies = [EDIT_RESPONSE]

        await self._post("/v1/messages", _claude_body())

        session = await self._only_session()
        self.assertEqual(session.status, "active")
        steps = await self.steps.get_validated(session.session_id)
        self.assertEqual([(s.action_type, s.files) for s in steps], [("edit", ["/repo/src/login.ts"])])
        self.assertTrue(steps[0].is_key_decision)
        self.assertEqual(steps[0].reasoning, "Editing the form.")

    async def test_follow_up_request_reuses_session(self) -> None:
        self.upstream_replies = [EDIT_RESPONSE, EDIT_RESPONSE]

        await self._post("/v1/messages", _claude_body())
        await self._post("/v1/messages", _claude_body("continue with the tests please"))

        session = await self._only_session()
        self.assertEqual(await self.steps.count(session.session_id), 2)

    async def test_requests_without_project_are_relayed_untouched(self) -> None:
        self.upstream_replies = [END_RESPONSE]
        body = {"model": "claude-sonnet-4", "messages": [{"role": "user", "content": "hello there"}]}

        response = await self._post("/v1/messages", body)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(self._sent_body(), body)
        async with self.db.execute("SELECT COUNT(*) FROM session_states") as cur:
            self.assertEqual((await cur.fetchone())[0], 0)

    async def test_subagent_model_is_not_captured(self) -> None:
        self.upstream_replies = [END_RESPONSE]
        body = _claude_body(model="claude-3-5-haiku-latest")

        await self._post("/v1/messages", body)

        self.assertEqual(self._sent_body(), body)
        async with self.db.execute("SELECT COUNT(*) FROM session_states") as cur:
            self.assertEqual((await cur.fetchone())[0], 0)

    async def test_memory_injection_and_internal_tool_loop(self) -> None:
        stored = await self.tasks.create(
            Task(project_path="/repo", original_query="Add signup form", goal="Add signup form",
                 summary="Signup form with server validation", files_touched=["src/signup.ts"])
        )
        expand = _claude_message(
            [{"type": "tool_use", "id": "tu_mem", "name": INTERNAL_TOOL_NAME, "input": {"ids": [stored.id, "missing"]}}],
            stop_reason="tool_use",
        )
        self.upstream_replies = [expand, END_RESPONSE]

        response = await self._post("/v1/messages", _claude_body())

        self.assertEqual(response.json()["content"][0]["text"], FINAL_TEXT)
        self.assertEqual(len(self.upstream_requests), 2)

        first = self._sent_body(0)
        self.assertIn("[memproxy] Verified project knowledge", first["system"])
        self.assertIn(f"#{stored.id} Add signup form", first["system"])
        self.assertEqual([t["name"] for t in first["tools"]], [INTERNAL_TOOL_NAME])

        second = self._sent_body(1)
        tool_result = second["messages"][-1]["content"][0]
        self.assertEqual(tool_result["tool_use_id"], "tu_mem")
        self.assertIn("Summary: Signup form with server validation", tool_result["content"])
        self.assertIn("Memory #missing not found", tool_result["content"])

    async def test_streaming_passthrough_then_capture(self) -> None:
        events = [
            {"type": "message_start", "message": {"id": "msg_s", "type": "message", "content": [],
                                                  "usage": {"input_tokens": 5}}},
            {"type": "content_block_start", "index": 0,
             "content_block": {"type": "tool_use", "id": "tu_1", "name": "Write", "input": {}}},
            {"type": "content_block_delta", "index": 0,
             "delta": {"type": "input_json_delta", "partial_json": "{\"file_path\": \"/repo/new.ts\"}"}},
            {"type": "content_block_stop", "index": 0},
            {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 3}},
            {"type": "message_stop"},
        ]
        raw = "".join(f"event: {e['type']}\ndata: {json.dumps(e)}\n\n" for e in events).encode()
        self.upstream_replies = [httpx.Response(200, headers={"content-type": "text/event-stream"}, content=raw)]

        response = await self._post("/v1/messages", _claude_body(stream=True))

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.headers["content-type"].startswith("text/event-stream"))
        self.assertEqual(response.content, raw)
        session = await self._only_session()
        steps = await self.steps.get_validated(session.session_id)
        self.assertEqual([(s.action_type, s.files) for s in steps], [("write", ["/repo/new.ts"])])

    async def test_upstream_error_status_is_relayed_without_capture(self) -> None:
        self.upstream_replies = [httpx.Response(429, json={"type": "error", "error": {"type": "rate_limit_error"}},
                                                headers={"retry-after": "3"})]

        response = await self._post("/v1/messages", _claude_body())

        self.assertEqual(response.status_code, 429)
        self.assertEqual(response.headers["retry-after"], "3")
        self.assertEqual(response.json()["error"]["type"], "rate_limit_error")
        session = await self._only_session()
        self.assertEqual(session.status, "active")
        self.assertEqual(await self.tasks.list_pending(), [])

    async def test_unreachable_upstream_is_502(self) -> None:
        self.upstream_replies = [httpx.ConnectError("connection refused")]

        response = await self._post("/v1/messages", _claude_body())

        self.assertEqual(response.status_code, 502)
        self.assertEqual(response.json(), {"error": {"type": "proxy_error", "message": "Bad gateway"}})

    async def test_upstream_timeout_is_504(self) -> None:
        self.upstream_replies = [httpx.ReadTimeout("too slow")]

        response = await self._post("/v1/responses", {"model": "gpt-5-codex", "input": "hi"})

        self.assertEqual(response.status_code, 504)
        self.assertEqual(response.json()["error"]["message"], "Gateway timeout")

    async def test_unknown_path_and_bad_json(self) -> None:
        response = await self.client.post("/v1/embeddings", json={})
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error"]["type"], "not_found_error")

        response = await self.client.post("/v1/messages", content=b"{oops", headers={"content-type": "application/json"})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["type"], "invalid_request_error")
        self.assertEqual(self.upstream_requests, [])

    async def test_health(self) -> None:
        response = await self.client.get("/health")
        self.assertEqual(response.json(), {"status": "ok", "db": "connected", "agents": ["claude", "codex"]})

    async def test_codex_unversioned_path(self) -> None:
        self.upstream_replies = [{
            "id": "resp_1",
            "status": "completed",
            "output": [{"type": "message", "role": "assistant", "content": [{"type": "output_text", "text": "ok"}]}],
        }]

        response = await self._post("/responses", {"model": "gpt-5-codex", "input": "hi"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(str(self.upstream_requests[0].url), "https://api.openai.com/v1/responses")

    async def test_drift_check_logs_off_goal_actions_and_queues_correction(self) -> None:
        scorer = _ContinueScorer(DriftResult(score=3, level="correct", drift_type="major",
                                             reason="editing billing", correction="Return to the login form."))
        self.orchestrator = self._orchestrator(scorer)
        self.app.state.ctx.orchestrator = self.orchestrator
        self.upstream_replies = [EDIT_RESPONSE, EDIT_RESPONSE, EDIT_RESPONSE, END_RESPONSE]

        for _ in range(3):
            await self._post("/v1/messages", _claude_body())

        session = await self._only_session()
        self.assertEqual(scorer.scored, 1)
        self.assertEqual(session.escalation_count, 1)
        self.assertEqual(session.pending_correction, "Return to the login form.")
        self.assertEqual(await self.steps.count(session.session_id), 2)
        self.assertEqual(len(await self.drift.list_drift_log(session.session_id)), 1)

        await self._post("/v1/messages", _claude_body())

        delivered = self._sent_body()["messages"][-1]["content"]
        self.assertTrue(delivered.endswith("Return to the login form."))
        self.assertIsNone((await self.sessions.get(session.session_id)).pending_correction)

    async def test_malformed_buffered_event_stream_is_relayed(self) -> None:
        raw = b'data: {"type":"content_block_delta","index":0,"delta":"oops"}\n\n'
        self.upstream_replies = [httpx.Response(200, headers={"content-type": "text/event-stream"}, content=raw)]

        response = await self._post("/v1/messages", _claude_body())

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.content, raw)
        session = await self._only_session()
        self.assertEqual(await self.steps.count(session.session_id), 0)

    async def test_streaming_with_null_start_usage_is_captured(self) -> None:
        raw = _sse(
            {"type": "message_start", "message": {"id": "msg_s", "type": "message", "content": [], "usage": None}},
            {"type": "content_block_start", "index": 0,
             "content_block": {"type": "tool_use", "id": "tu_1", "name": "Write", "input": {}}},
            {"type": "content_block_delta", "index": 0,
             "delta": {"type": "input_json_delta", "partial_json": "{\"file_path\": \"/repo/new.ts\"}"}},
            {"type": "content_block_stop", "index": 0},
            {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 3}},
        )
        self.upstream_replies = [httpx.Response(200, headers={"content-type": "text/event-stream"}, content=raw)]

        response = await self._post("/v1/messages", _claude_body(stream=True))

        self.assertEqual(response.content, raw)
        session = await self._only_session()
        steps = await self.steps.get_validated(session.session_id)
        self.assertEqual([(s.action_type, s.files) for s in steps], [("write", ["/repo/new.ts"])])

    async def test_stream_decode_failure_skips_capture_only(self) -> None:
        raw = _sse({"type": "message_start", "message": {"id": "msg_s", "type": "message", "content": []}})
        self.upstream_replies = [httpx.Response(200, headers={"content-type": "text/event-stream"}, content=raw)]

        with mock.patch.object(ClaudeAdapter, "parse_sse", side_effect=ValueError("bad stream")):
            response = await self._post("/v1/messages", _claude_body(stream=True))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.content, raw)
        session = await self._only_session()
        self.assertEqual(await self.steps.count(session.session_id), 0)

    async def test_locked_store_during_expand_yields_unavailable_result(self) -> None:
        stored = await self.tasks.create(
            Task(project_path="/repo", original_query="Add signup form", goal="Add signup form")
        )
        expand = _claude_message(
            [{"type": "tool_use", "id": "tu_mem", "name": INTERNAL_TOOL_NAME, "input": {"ids": [stored.id]}}],
            stop_reason="tool_use",
        )
        self.upstream_replies = [expand, END_RESPONSE]

        async def locked(ids):
            raise aiosqlite.OperationalError("database is locked")

        with mock.patch.object(self.tasks, "get_many", side_effect=locked):
            response = await self._post("/v1/messages", _claude_body())

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["content"][0]["text"], FINAL_TEXT)
        tool_result = self._sent_body(1)["messages"][-1]["content"][0]
        self.assertEqual(tool_result["tool_use_id"], "tu_mem")
        self.assertIn(f"Memory #{stored.id} is unavailable right now", tool_result["content"])

    async def test_failing_continue_body_relays_last_response(self) -> None:
        await self.tasks.create(Task(project_path="/repo", original_query="Add signup form"))
        expand = _claude_message(
            [{"type": "tool_use", "id": "tu_mem", "name": INTERNAL_TOOL_NAME, "input": {"ids": ["x"]}}],
            stop_reason="tool_use",
        )
        self.upstream_replies = [expand]

        with mock.patch.object(ClaudeAdapter, "build_continue_body", side_effect=KeyError("messages")):
            response = await self._post("/v1/messages", _claude_body())

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["content"][0]["id"], "tu_mem")
        self.assertEqual(len(self.upstream_requests), 1)

    async def test_team_memories_are_injected_and_expanded(self) -> None:
        api_requests: list[httpx.Request] = []

        def api(request: httpx.Request) -> httpx.Response:
            api_requests.append(request)
            return httpx.Response(200, json={"memories": [{
                "id": "abcdef12-3456-7890-abcd-ef1234567890",
                "goal": "Team signup flow",
                "summary": "Shared signup flow with email checks",
                "files_touched": ["src/signup.ts"],
            }]})

        await self.tasks.create(Task(project_path="/repo", original_query="Local only work", goal="Local only work"))
        self.orchestrator = self._orchestrator(sync_engine=self._sync_engine(api))
        self.app.state.ctx.orchestrator = self.orchestrator
        expand = _claude_message(
            [{"type": "tool_use", "id": "tu_mem", "name": INTERNAL_TOOL_NAME, "input": {"ids": ["abcdef12"]}}],
            stop_reason="tool_use",
        )
        self.upstream_replies = [expand, END_RESPONSE]

        await self._post("/v1/messages", _claude_body("Fix the login form in src/login.ts"))

        search = api_requests[0]
        self.assertEqual(search.url.path, "/teams/team-1/memories")
        self.assertEqual(search.url.params["project_path"], "/repo")
        self.assertEqual(search.url.params["context"], "Fix the login form in src/login.ts")
        self.assertEqual(search.url.params["current_files"], "src/login.ts")

        system = self._sent_body(0)["system"]
        self.assertIn("#abcdef12 Team signup flow (files: src/signup.ts)", system)
        self.assertNotIn("Local only work", system)

        tool_result = self._sent_body(1)["messages"][-1]["content"][0]["content"]
        self.assertIn("Memory #abcdef12-3456-7890-abcd-ef1234567890", tool_result)
        self.assertIn("Summary: Shared signup flow with email checks", tool_result)

    async def test_team_search_failure_falls_back_to_local_tasks(self) -> None:
        def api(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, json={"error": "search offline"})

        stored = await self.tasks.create(Task(project_path="/repo", original_query="Local work", goal="Local work"))
        self.orchestrator = self._orchestrator(sync_engine=self._sync_engine(api))
        self.app.state.ctx.orchestrator = self.orchestrator
        self.upstream_replies = [EDIT_RESPONSE]

        await self._post("/v1/messages", _claude_body())

        self.assertIn(f"#{stored.id} Local work", self._sent_body(0)["system"])

    async def test_sync_retry_endpoint(self) -> None:
        response = await self.client.post("/sync/retry", json={})
        self.assertEqual(response.status_code, 503)

        uploaded: list[str] = []

        def api(request: httpx.Request) -> httpx.Response:
            memories = json.loads(request.content)["memories"]
            uploaded.extend(m["client_task_id"] for m in memories)
            return httpx.Response(200, json={"synced": len(memories)})

        self.app.state.ctx.sync_engine = self._sync_engine(api)
        task = await self.tasks.create(Task(project_path="/repo", original_query="Add signup form"))
        await self.tasks.mark_syncing([task.id])
        await self.tasks.mark_error([task.id], "HTTP 500: boom")

        response = await self.client.post("/sync/retry", json={"trigger": "test"})

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["mode"], "foreground")
        self.assertEqual(payload["requeued"], 1)
        self.assertEqual(payload["synced"], 1)
        self.assertEqual(uploaded, [task.id])
        self.assertEqual((await self.tasks.get(task.id)).sync_status, "synced")


class AbandonSweepTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.sessions = SqliteSessionRepository(self.db)
        self.steps = SqliteStepRepository(self.db)
        self.tasks = SqliteTaskRepository(self.db)
        self.orchestrator = ProxyOrchestrator(
            forwarder=types.SimpleNamespace(),
            sessions=self.sessions,
            steps=self.steps,
            drift=SqliteDriftRepository(self.db),
            tasks=self.tasks,
        )

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def test_idle_sessions_with_work_become_abandoned_tasks(self) -> None:
        for session_id in ("worked", "empty"):
            await self.sessions.create(SessionState(session_id=session_id, project_path="/repo", original_goal="Refactor auth"))
        await self.steps.create(StepRecord(session_id="worked", action_type="edit", files=["/repo/auth.py"]))
        await self.db.execute("UPDATE session_states SET last_update = '2020-01-01T00:00:00.000Z'")
        await self.db.commit()

        self.assertEqual(await self.orchestrator.abandon_stale_sessions(3600), 2)

        pending = await self.tasks.list_pending()
        self.assertEqual(len(pending), 1)
        self.assertEqual(pending[0].status, "abandoned")
        self.assertEqual(pending[0].files_touched, ["/repo/auth.py"])
        self.assertEqual((await self.sessions.get("empty")).status, "abandoned")


if __name__ == "__main__":
    unittest.main()
