"""Per-request flow: session lookup, injection, forwarding and capture."""
from __future__ import annotations

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Mapping, Optional

from memproxy import config
from memproxy.agents.base import INTERNAL_TOOL_NAME, AgentAdapter
from memproxy.db.repositories import (
    SqliteDriftRepository,
    SqliteSessionRepository,
    SqliteStepRepository,
    SqliteTaskRepository,
)
from memproxy.models import DriftLogEntry, NormalizedAction, SessionState, StepRecord, Task, TeamMemory
from memproxy.observability import record_capture_failure, record_tokens, start_span
from memproxy.proxy.forwarder import Forwarder, UpstreamResponse, UpstreamStream
from memproxy.proxy.scoring import DriftScorer, NullDriftScorer
from memproxy.proxy.task_builder import build_task, is_key_decision, mentioned_files

logger = logging.getLogger("memproxy.proxy")

WARMUP_GOAL = "warmup"


@dataclass
class CaptureContext:
    """What capture needs to know about the request that produced a response."""

    adapter: AgentAdapter
    session: SessionState
    project_path: str
    latest_message: str
    model: str
    prompt_count: int


@dataclass
class ProxyReply:
    status_code: int
    headers: dict[str, str]
    media_type: str
    content: bytes = b""
    stream: Optional[AsyncIterator[bytes]] = None


@dataclass
class _LoopState:
    iterations: int = 0
    expanded_ids: list[str] = field(default_factory=list)


def _decode_response(adapter: AgentAdapter, raw: str, was_sse: bool) -> Any:
    """Decoded upstream body, or None when it cannot be read."""
    try:
        if was_sse:
            return adapter.parse_sse(raw)
        return json.loads(raw)
    except Exception:
        logger.warning("Unreadable %s response body; capture skipped", adapter.name, exc_info=True)
        record_capture_failure("decode")
        return None


def _preview_line(label_id: str, entry: Task | TeamMemory) -> str:
    files = ", ".join(entry.files_touched[:5])
    line = f"- #{label_id} {entry.goal or entry.original_query}"
    return f"{line} (files: {files})" if files else line


def _format_memory(entry: Task | TeamMemory) -> str:
    sections = [f"Memory #{entry.id}"]
    if entry.goal:
        sections.append(f"Goal: {entry.goal}")
    if entry.summary:
        sections.append(f"Summary: {entry.summary}")
    if entry.reasoning_trace:
        sections.append("Reasoning:\n" + "\n".join(f"- {r}" for r in entry.reasoning_trace))
    if entry.decisions:
        sections.append("Decisions:\n" + "\n".join(f"- {d.choice}: {d.reason}" for d in entry.decisions))
    if entry.files_touched:
        sections.append(f"Files: {', '.join(entry.files_touched)}")
    return "\n".join(sections)


def _match_team_memory(memories: list[TeamMemory], memory_id: str) -> Optional[TeamMemory]:
    """Resolve a full id or the short id shown in the preview."""
    if not memory_id:
        return None
    for memory in memories:
        if memory.id.startswith(memory_id) or memory_id.startswith(memory.id[:8]):
            return memory
    return None


class ProxyOrchestrator:
    def __init__(
        self,
        *,
        forwarder: Forwarder,
        sessions: SqliteSessionRepository,
        steps: SqliteStepRepository,
        drift: SqliteDriftRepository,
        tasks: SqliteTaskRepository,
        sync_engine: Any = None,
        scorer: DriftScorer | None = None,
        user_id: str | None = None,
        eager_sync: bool | None = None,
        memory_injection: bool | None = None,
    ):
        self.forwarder = forwarder
        self.sessions = sessions
        self.steps = steps
        self.drift = drift
        self.tasks = tasks
        self.sync_engine = sync_engine
        self.scorer: DriftScorer = scorer or NullDriftScorer()
        self.user_id = user_id
        self.eager_sync = config.EAGER_SYNC if eager_sync is None else eager_sync
        self.memory_injection = config.MEMORY_INJECTION_ENABLED if memory_injection is None else memory_injection
        self._prompt_counts: dict[str, int] = {}
        self._memory_cache: dict[str, list[TeamMemory]] = {}
        self._background: set[asyncio.Task] = set()

    # ── Request handling ────────────────────────────────────────────

    async def handle(self, adapter: AgentAdapter, body: Any, headers: Mapping[str, str]) -> ProxyReply:
        """Forward one request. Raises ForwardError when upstream is unreachable."""
        model = adapter.get_model(body)
        streaming = adapter.wants_stream(body)

        if adapter.is_subagent_model(model):
            logger.debug("Subagent model %s forwarded without capture", model)
            return await self._relay(adapter, body, headers, streaming, capture=None)

        capture = await self._prepare(adapter, body, model)
        outbound = body
        if capture is not None and not streaming and isinstance(body, dict):
            outbound = await self._inject(adapter, body, capture)

        with start_span("memproxy.forward", {"agent": adapter.name, "model": model, "stream": streaming}):
            return await self._relay(adapter, outbound, headers, streaming, capture)

    async def _relay(
        self,
        adapter: AgentAdapter,
        body: Any,
        headers: Mapping[str, str],
        streaming: bool,
        capture: Optional[CaptureContext],
    ) -> ProxyReply:
        if streaming:
            upstream = await self.forwarder.stream(adapter, body, headers)
            return ProxyReply(
                status_code=upstream.status_code,
                headers=adapter.filter_response_headers(upstream.headers),
                media_type=adapter.response_content_type(upstream.was_sse),
                stream=self._stream_and_capture(upstream, capture),
            )

        result = await self.forwarder.send(adapter, body, headers)
        response = _decode_response(adapter, result.text(), result.was_sse)
        if capture is not None:
            result, response = await self._run_internal_tool_loop(adapter, body, headers, result, response, capture)
            if result.status_code == 200 and adapter.is_valid_response(response):
                self._schedule_capture(capture, response)

        return ProxyReply(
            status_code=result.status_code,
            headers=adapter.filter_response_headers(result.headers),
            media_type=adapter.response_content_type(result.was_sse),
            content=result.content,
        )

    async def _stream_and_capture(
        self,
        upstream: UpstreamStream,
        capture: Optional[CaptureContext],
    ) -> AsyncIterator[bytes]:
        try:
            async for chunk in upstream.iter_bytes():
                yield chunk
        finally:
            await upstream.aclose()
        if capture is None or upstream.status_code != 200 or not upstream.completed:
            return
        adapter = capture.adapter
        response = _decode_response(adapter, upstream.text(), upstream.was_sse)
        if adapter.is_valid_response(response):
            self._schedule_capture(capture, response)

    async def _run_internal_tool_loop(
        self,
        adapter: AgentAdapter,
        body: Any,
        headers: Mapping[str, str],
        result: UpstreamResponse,
        response: Any,
        capture: CaptureContext,
    ) -> tuple[UpstreamResponse, Any]:
        """Answer internal tool calls until the model stops asking.

        Upstream failures propagate as ForwardError. Any local failure ends
        the loop and relays the last upstream response received.
        """
        state = _LoopState()
        current_body = body
        while (
            result.status_code == 200
            and adapter.is_valid_response(response)
            and adapter.is_tool_use(response)
            and state.iterations < config.MAX_INTERNAL_TOOL_ITERATIONS
        ):
            try:
                tool_use = adapter.find_internal_tool_use(response, INTERNAL_TOOL_NAME)
                if tool_use is None:
                    break
                state.iterations += 1
                ids = tool_use.input.get("ids") or []
                ids = [str(i) for i in ids] if isinstance(ids, list) else []
                state.expanded_ids.extend(ids)
                tool_result = await self._expand_memories(capture, ids)
                current_body = adapter.build_continue_body(current_body, response, tool_use, tool_result)
            except Exception:
                logger.exception("Internal tool loop failed for session %s", capture.session.session_id[:8])
                record_capture_failure("internal_tool")
                break
            result = await self.forwarder.send(adapter, current_body, headers)
            response = _decode_response(adapter, result.text(), result.was_sse)

        if state.iterations:
            logger.info(
                "Answered %s %s call(s) for session %s (ids=%s)",
                state.iterations,
                INTERNAL_TOOL_NAME,
                capture.session.session_id[:8],
                ",".join(state.expanded_ids),
            )
        return result, response

    # ── Session and injection ───────────────────────────────────────

    async def _prepare(self, adapter: AgentAdapter, body: Any, model: str) -> Optional[CaptureContext]:
        try:
            project_path = adapter.extract_project_path(body)
            if not project_path:
                logger.debug("No project path in %s request; capture skipped", adapter.name)
                return None
            latest = adapter.extract_goal(body) or ""
            if latest.strip().lower() == WARMUP_GOAL:
                return None

            session = await self.sessions.get_active_for_project(project_path, self.user_id)
            if session is None:
                session = await self.sessions.create(
                    SessionState(
                        session_id=str(uuid.uuid4()),
                        user_id=self.user_id,
                        project_path=project_path,
                        original_goal=latest or None,
                    )
                )
                logger.info("Started session %s for %s", session.session_id[:8], project_path)

            count = self._prompt_counts.get(session.session_id, 0) + 1
            self._prompt_counts[session.session_id] = count
            return CaptureContext(
                adapter=adapter,
                session=session,
                project_path=project_path,
                latest_message=latest,
                model=model,
                prompt_count=count,
            )
        except Exception:
            logger.exception("Session lookup failed; forwarding without capture")
            record_capture_failure("prepare")
            return None

    async def _inject(self, adapter: AgentAdapter, body: dict[str, Any], capture: CaptureContext) -> dict[str, Any]:
        try:
            outbound = body
            session = capture.session
            if session.pending_correction:
                outbound = adapter.inject_delta(outbound, session.pending_correction)
                await self.sessions.update_fields(session.session_id, pending_correction=None)
            if not self.memory_injection:
                return outbound
            memory, has_tasks = await self._build_memory_block(capture)
            if memory:
                outbound = adapter.inject_memory(outbound, memory)
            if has_tasks:
                outbound = adapter.inject_tool(outbound)
            return outbound
        except Exception:
            logger.exception("Memory injection failed; forwarding original body")
            record_capture_failure("inject")
            return body

    async def _team_memories(self, capture: CaptureContext) -> list[TeamMemory]:
        """Team search results for this prompt, kept per session for the expand tool."""
        engine = self.sync_engine
        if engine is None or not engine.is_ready or not capture.latest_message.strip():
            return []
        memories = await engine.api.fetch_team_memories(
            engine.settings.team_id,
            capture.project_path,
            context=capture.latest_message,
            current_files=mentioned_files(capture.latest_message) or None,
        )
        self._memory_cache[capture.session.session_id] = memories
        if memories:
            logger.info(
                "Found %s team memories for session %s: [%s]",
                len(memories),
                capture.session.session_id[:8],
                ", ".join(m.id[:8] for m in memories),
            )
        return memories

    async def _build_memory_block(self, capture: CaptureContext) -> tuple[str, bool]:
        team = await self._team_memories(capture)
        # local tasks stand in while the team store is unreachable or empty
        recent: list[Task] = [] if team else await self.tasks.list_recent(capture.project_path, limit=5)
        decisions = await self.steps.get_key_decisions(capture.session.session_id)
        if not team and not recent and not decisions:
            return "", False

        lines = ["[memproxy] Verified project knowledge"]
        if capture.session.original_goal:
            lines.append(f"Current goal: {capture.session.original_goal}")
        if team:
            lines.append("Team knowledge for this project:")
            for memory in team:
                lines.append(_preview_line(memory.id[:8], memory))
        elif recent:
            lines.append("Earlier work on this project:")
            for task in recent:
                lines.append(_preview_line(task.id, task))
        if decisions:
            lines.append("Key decisions in this session:")
            for step in decisions:
                reason = (step.reasoning or "").replace("\n", " ")[:150]
                lines.append(f"- {step.action_type}: {', '.join(step.files) or '-'}: {reason}")
        has_entries = bool(team or recent)
        if has_entries:
            lines.append(f"Call {INTERNAL_TOOL_NAME} with ids to read the full entry.")
        return "\n".join(lines), has_entries

    async def _expand_memories(self, capture: CaptureContext, ids: list[str]) -> str:
        cached = self._memory_cache.get(capture.session.session_id, [])
        team = {memory_id: _match_team_memory(cached, memory_id) for memory_id in ids}
        unresolved = [memory_id for memory_id, memory in team.items() if memory is None]

        local: Optional[dict[str, Task]] = {}
        if unresolved:
            try:
                local = {task.id: task for task in await self.tasks.get_many(unresolved)}
            except Exception:
                logger.exception("Local memory lookup failed for session %s", capture.session.session_id[:8])
                record_capture_failure("internal_tool")
                local = None

        parts = []
        for memory_id in ids:
            entry = team.get(memory_id) or (local or {}).get(memory_id)
            if entry is not None:
                parts.append(_format_memory(entry))
            elif local is None:
                parts.append(f"Memory #{memory_id} is unavailable right now. Continue without it.")
            else:
                parts.append(f"Memory #{memory_id} not found. Only expand ids from the current knowledge base.")
        return "\n\n".join(parts)

    # ── Capture ─────────────────────────────────────────────────────

    def _schedule_capture(self, capture: CaptureContext, response: Any) -> None:
        task = asyncio.create_task(self.capture_response(capture, response))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        """Wait for in-flight capture tasks; used at shutdown and in tests."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def capture_response(self, capture: CaptureContext, response: Any) -> None:
        try:
            await self._capture(capture, response)
        except Exception:
            logger.exception("Capture failed for session %s", capture.session.session_id[:8])
            record_capture_failure("post_process")

    async def _capture(self, capture: CaptureContext, response: Any) -> None:
        adapter = capture.adapter
        session_id = capture.session.session_id
        actions = adapter.parse_actions(response)
        text = adapter.extract_text_content(response)
        usage = adapter.extract_usage(response)

        record_tokens(adapter.name, capture.model, usage.input_tokens, usage.output_tokens)
        await self.sessions.add_tokens(session_id, usage.cache_creation + usage.cache_read)

        drift_score: Optional[float] = None
        skip_steps = False
        if actions:
            drift_score, skip_steps = await self._check_drift(capture, actions)

        if actions and not skip_steps:
            await self._record_steps(session_id, actions, text, drift_score)

        if adapter.is_end_turn(response):
            await self._finish_turn(capture, text)

    async def _check_drift(
        self,
        capture: CaptureContext,
        actions: list[NormalizedAction],
    ) -> tuple[Optional[float], bool]:
        session = capture.session
        if capture.prompt_count % max(1, config.DRIFT_CHECK_INTERVAL) != 0:
            return None, False
        if not session.original_goal or len(session.original_goal) <= 10:
            return None, False
        recent = await self.steps.get_recent(session.session_id, limit=10)
        modifies = any(a.modifies_files for a in actions) or any(s.action_type in ("edit", "write") for s in recent)
        if not modifies:
            return None, False

        result = await self.scorer.score(session, recent, capture.latest_message)
        if result is None:
            return None, False

        plan = result.recovery_plan.model_dump() if result.recovery_plan else None
        escalation = await self.drift.update_session_drift(
            session.session_id,
            result.score,
            result.level,
            prompt_summary=capture.latest_message,
            recovery_plan=plan,
        )
        if result.correction and result.level:
            await self.sessions.update_fields(session.session_id, pending_correction=result.correction)
        logger.info(
            "Drift check session=%s score=%s level=%s escalation=%s",
            session.session_id[:8],
            result.score,
            result.level or "none",
            escalation,
        )

        skip = result.score < config.DRIFT_SKIP_THRESHOLD
        if skip:
            for action in actions:
                await self.drift.log_drift_event(
                    DriftLogEntry(
                        session_id=session.session_id,
                        action_type=action.action_type,
                        files=action.files,
                        folders=action.folders,
                        command=action.command,
                        drift_score=result.score,
                        drift_type=result.drift_type,
                        drift_reason=result.reason,
                        correction_given=result.correction,
                        correction_level=result.level,
                        recovery_plan=plan,
                    )
                )
            logger.info("Logged %s off-goal action(s) to drift_log", len(actions))
        return result.score, skip

    async def _record_steps(
        self,
        session_id: str,
        actions: list[NormalizedAction],
        text: str,
        drift_score: Optional[float],
    ) -> None:
        reasoning = text[:1000]
        previous: Optional[str] = None
        for action in actions:
            duplicate = reasoning == previous
            await self.steps.create(
                StepRecord(
                    session_id=session_id,
                    action_type=action.action_type,
                    files=action.files,
                    folders=action.folders,
                    command=action.command,
                    reasoning=None if duplicate or not reasoning else reasoning,
                    drift_score=drift_score,
                    is_key_decision=not duplicate and is_key_decision(action.action_type, text),
                )
            )
            previous = reasoning

    async def _finish_turn(self, capture: CaptureContext, text: str) -> None:
        session_id = capture.session.session_id
        if text:
            await self.steps.update_recent_reasoning(session_id, text[:1000])
        if len(text) > 100:
            await self.sessions.update_fields(session_id, final_response=text[:10000])

        session = await self.sessions.get(session_id) or capture.session
        analysis = await self.scorer.analyze_turn(session, capture.latest_message, text)
        if analysis.goal and analysis.goal != session.original_goal:
            await self.sessions.update_fields(session_id, original_goal=analysis.goal)
            session = session.model_copy(update={"original_goal": analysis.goal})
        if analysis.action != "task_complete":
            return

        task = await self.close_session(session, "complete", summary=analysis.summary)
        if task is not None and self.eager_sync and self.sync_engine is not None:
            await self.sync_engine.sync_task(task)

    async def close_session(
        self,
        session: SessionState,
        trigger_reason: str,
        summary: Optional[str] = None,
    ) -> Optional[Task]:
        """Complete a session and enqueue its Task as pending."""
        steps = await self.steps.get_validated(session.session_id)
        draft = build_task(session, steps, trigger_reason)
        task = None
        if draft is not None:
            if summary:
                draft.summary = summary
            task = await self.tasks.create(draft)
            logger.info("Queued task %s from session %s", task.id, session.session_id[:8])
        await self.sessions.mark_completed(session.session_id)
        self._forget(session.session_id)
        return task

    async def abandon_stale_sessions(self, max_idle_seconds: int | None = None) -> int:
        """Queue idle sessions as ``abandoned`` tasks, then abandon them."""
        max_idle = config.STALE_SESSION_SECONDS if max_idle_seconds is None else max_idle_seconds
        for session in await self.sessions.list_stale(max_idle):
            steps = await self.steps.get_validated(session.session_id)
            if not steps and not session.final_response:
                self._forget(session.session_id)
                continue
            draft = build_task(session, steps, "abandoned")
            if draft is not None:
                task = await self.tasks.create(draft)
                logger.info("Queued abandoned task %s from session %s", task.id, session.session_id[:8])
            self._forget(session.session_id)
        return await self.sessions.abandon_stale(max_idle)

    def _forget(self, session_id: str) -> None:
        self._prompt_counts.pop(session_id, None)
        self._memory_cache.pop(session_id, None)
