"""Push locally queued tasks to the team memory API.

Tasks move pending -> syncing -> synced | error. Batches are retried as a
whole with exponential backoff; a batch that exhausts its attempts fails
every task in it.
"""
from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from memproxy import config
from memproxy.config import SyncSettings
from memproxy.db.repositories import SqliteTaskRepository
from memproxy.models import SyncResult, Task
from memproxy.observability import record_sync, start_span
from memproxy.sync.api_client import ApiError, MemoryApiClient

logger = logging.getLogger("memproxy.sync")

SleepFn = Callable[[float], Awaitable[Any]]


def task_to_memory(task: Task) -> dict[str, Any]:
    memory: dict[str, Any] = {
        "client_task_id": task.id,
        "project_path": task.project_path,
        "original_query": task.original_query,
        "goal": task.goal,
        "summary": task.summary,
        "reasoning_trace": list(task.reasoning_trace),
        "decisions": [d.model_dump() for d in task.decisions],
        "files_touched": list(task.files_touched),
        "constraints": list(task.constraints),
        "tags": list(task.tags),
        "status": task.status,
        "linked_commit": task.linked_commit,
    }
    if task.match_id:
        memory["memory_id"] = task.match_id
    return memory


class CloudSyncEngine:
    def __init__(
        self,
        tasks: SqliteTaskRepository,
        api: MemoryApiClient | None,
        settings: SyncSettings,
        *,
        batch_size: int | None = None,
        retry_attempts: int | None = None,
        retry_delay_ms: int | None = None,
        sleep: SleepFn | None = None,
    ):
        self.tasks = tasks
        self.api = api
        self.settings = settings
        self.batch_size = max(1, batch_size or config.SYNC_BATCH_SIZE)
        self.retry_attempts = max(1, retry_attempts or config.SYNC_RETRY_ATTEMPTS)
        self.retry_delay_ms = config.SYNC_RETRY_DELAY_MS if retry_delay_ms is None else retry_delay_ms
        self._sleep: SleepFn = sleep or asyncio.sleep
        self._sync_lock = asyncio.Lock()
        self._ops_lock = asyncio.Lock()
        self._operations: dict[str, dict[str, Any]] = {}
        self._operation_order: list[str] = []
        self._active_operation_ids: set[str] = set()
        self._max_operation_history = 40

    # ── Readiness ───────────────────────────────────────────────────

    def _not_ready_reason(self) -> Optional[str]:
        api_hint = f"(API: {self.api.base_url if self.api else config.API_URL})"
        if not self.settings.enabled:
            return f"Sync is not enabled. Enable sync and set a team first. {api_hint}"
        if not self.settings.team_id:
            return f"No team configured. Set a team id first. {api_hint}"
        if not self.settings.access_token or self.api is None:
            return f"Not authenticated. Log in first. {api_hint}"
        return None

    @property
    def is_ready(self) -> bool:
        return self._not_ready_reason() is None

    def status_summary(self) -> str:
        if not self.settings.enabled:
            return "Sync disabled"
        if not self.settings.team_id:
            return "No team configured"
        if not self.settings.access_token:
            return "Not authenticated"
        return f"Syncing to team: {self.settings.team_id}"

    # ── Core sync ───────────────────────────────────────────────────

    async def sync_tasks(self, tasks: list[Task]) -> SyncResult:
        """Upload tasks in batches. Does not touch local sync state."""
        reason = self._not_ready_reason()
        if reason:
            return SyncResult(
                synced=0,
                failed=len(tasks),
                errors=[reason],
                failed_ids=[t.id for t in tasks],
            )

        result = SyncResult()
        for start in range(0, len(tasks), self.batch_size):
            batch = tasks[start:start + self.batch_size]
            outcome = await self._sync_batch_with_retry([task_to_memory(t) for t in batch])
            result.synced += outcome["synced"]
            result.failed += outcome["failed"]
            result.errors.extend(outcome["errors"])
            ids = [t.id for t in batch]
            if outcome["synced"] == len(batch):
                result.synced_ids.extend(ids)
            else:
                result.failed_ids.extend(ids)
        return result

    async def _sync_batch_with_retry(self, memories: list[dict[str, Any]]) -> dict[str, Any]:
        last_error = "Sync failed after retries"
        for attempt in range(self.retry_attempts):
            try:
                return await self.api.sync_memories(self.settings.team_id, memories)
            except ApiError as exc:
                last_error = str(exc)
                logger.warning(
                    "Batch of %s failed (attempt %s/%s): %s",
                    len(memories),
                    attempt + 1,
                    self.retry_attempts,
                    last_error,
                )
                if attempt < self.retry_attempts - 1:
                    await self._sleep(self.retry_delay_ms * (2 ** attempt) / 1000)
        return {"synced": 0, "failed": len(memories), "errors": [last_error]}

    async def _sync_and_mark(self, tasks: list[Task], operation_id: str | None = None) -> SyncResult:
        async with self._sync_lock:
            ids = [t.id for t in tasks]
            await self.tasks.mark_syncing(ids)
            await self._update_operation(operation_id, phase="uploading", progress={"total": len(tasks)})
            try:
                result = await self.sync_tasks(tasks)
            except Exception as exc:
                logger.exception("Unexpected sync failure")
                result = SyncResult(failed=len(tasks), errors=[str(exc)], failed_ids=ids)

            if result.synced_ids:
                await self.tasks.mark_synced(result.synced_ids)
            if result.failed_ids:
                await self.tasks.mark_error(result.failed_ids, "; ".join(result.errors) or "Sync failed")
            record_sync("synced", len(result.synced_ids))
            record_sync("failed", len(result.failed_ids))
            return result

    async def sync_pending(self, trigger: str = "manual", limit: int = 100) -> SyncResult:
        """Upload every pending task and record the outcome per task."""
        pending = await self.tasks.list_pending(limit=limit)
        if not pending:
            return SyncResult()
        if not self.is_ready:
            return await self.sync_tasks(pending)

        op_id = await self._start_operation("sync_pending", trigger, {"pending": len(pending)})
        with start_span("memproxy.sync_pending", {"count": len(pending), "trigger": trigger}):
            result = await self._sync_and_mark(pending, op_id)
        stats = {"synced": result.synced, "failed": result.failed}
        if result.failed_ids:
            await self._finish_operation(op_id, status="failed", stats=stats, error="; ".join(result.errors))
        else:
            await self._finish_operation(op_id, status="completed", stats=stats)
        logger.info("Synced %s task(s), %s failed (trigger=%s)", result.synced, result.failed, trigger)
        return result

    async def retry_failed(self, trigger: str = "manual") -> tuple[int, SyncResult]:
        """Requeue tasks in ``error`` and upload them again when sync is ready."""
        requeued = await self.tasks.reset_errors()
        if requeued:
            logger.info("Requeued %s failed task(s) (trigger=%s)", requeued, trigger)
        if not requeued or not self.is_ready:
            return requeued, SyncResult()
        return requeued, await self.sync_pending(trigger=trigger)

    async def sync_task(self, task: Task) -> bool:
        """Eager upload of one freshly queued task. Never raises."""
        if not self.is_ready:
            return False
        result = await self._sync_and_mark([task])
        return task.id in result.synced_ids

    # ── Operation tracking ──────────────────────────────────────────

    async def get_observability_snapshot(self) -> dict[str, Any]:
        async with self._ops_lock:
            active = [
                copy.deepcopy(self._operations[op_id])
                for op_id in self._operation_order
                if op_id in self._active_operation_ids and op_id in self._operations
            ]
            latest = [
                copy.deepcopy(self._operations[op_id])
                for op_id in self._operation_order[:5]
                if op_id in self._operations
            ]
            return {
                "activeOperationCount": len(active),
                "activeOperations": active,
                "recentOperations": latest,
                "trackedOperationCount": len(self._operations),
            }

    async def _start_operation(self, kind: str, trigger: str, metadata: dict[str, Any]) -> str:
        op_id = f"OP-{uuid.uuid4()}"
        now = datetime.now(timezone.utc).isoformat()
        payload = {
            "id": op_id,
            "kind": kind,
            "trigger": trigger,
            "status": "running",
            "phase": "queued",
            "startedAt": now,
            "updatedAt": now,
            "finishedAt": "",
            "durationMs": 0,
            "progress": {},
            "stats": {},
            "metadata": metadata,
            "error": "",
        }
        async with self._ops_lock:
            self._operations[op_id] = payload
            self._operation_order.insert(0, op_id)
            self._active_operation_ids.add(op_id)
            if len(self._operation_order) > self._max_operation_history:
                stale_ids = self._operation_order[self._max_operation_history:]
                self._operation_order = self._operation_order[: self._max_operation_history]
                for stale_id in stale_ids:
                    self._operations.pop(stale_id, None)
                    self._active_operation_ids.discard(stale_id)
        logger.info("Operation started [%s] %s (trigger=%s)", op_id, kind, trigger)
        return op_id

    async def _update_operation(
        self,
        operation_id: str | None,
        *,
        phase: str | None = None,
        progress: dict[str, Any] | None = None,
    ) -> None:
        if not operation_id:
            return
        async with self._ops_lock:
            operation = self._operations.get(operation_id)
            if not operation:
                return
            if phase:
                operation["phase"] = phase
            if progress:
                operation.setdefault("progress", {}).update(progress)
            operation["updatedAt"] = datetime.now(timezone.utc).isoformat()

    async def _finish_operation(
        self,
        operation_id: str | None,
        *,
        status: str,
        stats: dict[str, Any] | None = None,
        error: str = "",
    ) -> None:
        if not operation_id:
            return
        now = datetime.now(timezone.utc)
        async with self._ops_lock:
            operation = self._operations.get(operation_id)
            if not operation:
                return
            operation["status"] = status
            operation["updatedAt"] = now.isoformat()
            operation["finishedAt"] = now.isoformat()
            if stats:
                operation.setdefault("stats", {}).update(stats)
            if error:
                operation["error"] = error
            started_at = datetime.fromisoformat(operation["startedAt"])
            operation["durationMs"] = max(0, int((now - started_at).total_seconds() * 1000))
            self._active_operation_ids.discard(operation_id)

        if status == "failed":
            logger.error("Operation failed [%s]: %s", operation_id, error)
        else:
            logger.info("Operation finished [%s] status=%s", operation_id, status)
