"""SQLite implementation of the local task queue."""
from __future__ import annotations

import json
import uuid

import aiosqlite

from memproxy.date_utils import utc_now_iso
from memproxy.db.repositories._rows import safe_json_list
from memproxy.models import Task


def row_to_task(row: aiosqlite.Row | dict) -> Task:
    data = dict(row)
    for column in ("reasoning_trace", "files_touched", "decisions", "constraints", "tags"):
        data[column] = safe_json_list(data.get(column))
    return Task(**data)


def _placeholders(values: list) -> str:
    return ", ".join("?" for _ in values)


class SqliteTaskRepository:
    """Captured units of work waiting for upload.

    Sync state only moves pending -> syncing -> synced | error; error rows
    go back to pending only through :meth:`reset_errors`.
    """

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def create(self, task: Task) -> Task:
        task_id = task.id or str(uuid.uuid4())
        created_at = task.created_at or utc_now_iso()
        await self.db.execute(
            """INSERT INTO tasks (
                id, project_path, user, original_query, goal, summary,
                reasoning_trace, files_touched, decisions, constraints, tags,
                status, trigger_reason, linked_commit, parent_task_id,
                turn_number, sync_status, match_id, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending', ?, ?)""",
            (
                task_id,
                task.project_path,
                task.user,
                task.original_query,
                task.goal,
                task.summary,
                json.dumps(task.reasoning_trace),
                json.dumps(task.files_touched),
                json.dumps([d.model_dump() for d in task.decisions]),
                json.dumps(task.constraints),
                json.dumps(task.tags),
                task.status,
                task.trigger_reason,
                task.linked_commit,
                task.parent_task_id,
                task.turn_number,
                task.match_id,
                created_at,
            ),
        )
        await self.db.commit()
        return task.model_copy(update={"id": task_id, "created_at": created_at, "sync_status": "pending"})

    async def get(self, task_id: str) -> Task | None:
        async with self.db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)) as cur:
            row = await cur.fetchone()
            return row_to_task(row) if row else None

    async def get_many(self, task_ids: list[str]) -> list[Task]:
        if not task_ids:
            return []
        async with self.db.execute(
            f"SELECT * FROM tasks WHERE id IN ({_placeholders(task_ids)}) ORDER BY created_at",
            task_ids,
        ) as cur:
            return [row_to_task(r) for r in await cur.fetchall()]

    async def list_pending(self, limit: int = 100) -> list[Task]:
        async with self.db.execute(
            "SELECT * FROM tasks WHERE sync_status = 'pending' ORDER BY created_at ASC, rowid ASC LIMIT ?",
            (limit,),
        ) as cur:
            return [row_to_task(r) for r in await cur.fetchall()]

    async def list_recent(self, project_path: str, limit: int = 10) -> list[Task]:
        async with self.db.execute(
            "SELECT * FROM tasks WHERE project_path = ? ORDER BY created_at DESC LIMIT ?",
            (project_path, limit),
        ) as cur:
            return [row_to_task(r) for r in await cur.fetchall()]

    async def mark_syncing(self, task_ids: list[str]) -> int:
        """Claim tasks for upload. Re-running it on claimed rows changes nothing."""
        if not task_ids:
            return 0
        async with self.db.execute(
            f"""UPDATE tasks SET sync_status = 'syncing'
                WHERE sync_status = 'pending' AND id IN ({_placeholders(task_ids)})""",
            task_ids,
        ) as cur:
            changed = cur.rowcount
        await self.db.commit()
        return changed

    async def mark_synced(self, task_ids: list[str]) -> int:
        if not task_ids:
            return 0
        async with self.db.execute(
            f"""UPDATE tasks SET sync_status = 'synced', synced_at = ?, sync_error = NULL
                WHERE sync_status IN ('pending', 'syncing') AND id IN ({_placeholders(task_ids)})""",
            [utc_now_iso(), *task_ids],
        ) as cur:
            changed = cur.rowcount
        await self.db.commit()
        return changed

    async def mark_error(self, task_ids: list[str], error: str) -> int:
        if not task_ids:
            return 0
        async with self.db.execute(
            f"""UPDATE tasks SET sync_status = 'error', sync_error = ?
                WHERE sync_status IN ('pending', 'syncing') AND id IN ({_placeholders(task_ids)})""",
            [error[:1000], *task_ids],
        ) as cur:
            changed = cur.rowcount
        await self.db.commit()
        return changed

    async def reset_errors(self) -> int:
        """Resubmit failed tasks by moving them back to pending."""
        async with self.db.execute(
            "UPDATE tasks SET sync_status = 'pending', sync_error = NULL WHERE sync_status = 'error'"
        ) as cur:
            changed = cur.rowcount
        await self.db.commit()
        return changed

    async def release_stuck_syncing(self) -> int:
        """Return rows left in syncing by a crashed process to pending."""
        async with self.db.execute(
            "UPDATE tasks SET sync_status = 'pending' WHERE sync_status = 'syncing'"
        ) as cur:
            changed = cur.rowcount
        await self.db.commit()
        return changed

    async def prune_synced(self, keep: int = 500) -> int:
        async with self.db.execute(
            """DELETE FROM tasks WHERE sync_status = 'synced' AND id NOT IN (
                   SELECT id FROM tasks WHERE sync_status = 'synced'
                   ORDER BY synced_at DESC LIMIT ?
               )""",
            (keep,),
        ) as cur:
            changed = cur.rowcount
        await self.db.commit()
        return changed

    async def status_counts(self) -> dict[str, int]:
        counts = {"pending": 0, "syncing": 0, "synced": 0, "error": 0}
        async with self.db.execute(
            "SELECT sync_status, COUNT(*) FROM tasks GROUP BY sync_status"
        ) as cur:
            for status, count in await cur.fetchall():
                counts[status] = count
        return counts
