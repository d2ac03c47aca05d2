"""SQLite implementation of the step store."""
from __future__ import annotations

import json
import uuid

import aiosqlite

from memproxy.date_utils import now_ms
from memproxy.db.repositories._rows import safe_json_list
from memproxy.models import StepRecord


def row_to_step(row: aiosqlite.Row | dict) -> StepRecord:
    data = dict(row)
    for column in ("files", "folders", "keywords"):
        data[column] = safe_json_list(data.get(column))
    data["is_key_decision"] = bool(data.get("is_key_decision"))
    data["is_validated"] = bool(data.get("is_validated"))
    return StepRecord(**data)


class SqliteStepRepository:
    """Per-session action history."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def create(self, step: StepRecord) -> StepRecord:
        step_id = step.id or str(uuid.uuid4())
        timestamp = step.timestamp or now_ms()
        await self.db.execute(
            """INSERT INTO steps (
                id, session_id, action_type, files, folders, command,
                reasoning, drift_score, drift_type, is_key_decision,
                is_validated, correction_given, correction_level,
                keywords, timestamp
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                step_id,
                step.session_id,
                step.action_type,
                json.dumps(step.files),
                json.dumps(step.folders),
                step.command,
                step.reasoning,
                step.drift_score,
                step.drift_type,
                int(step.is_key_decision),
                int(step.is_validated),
                step.correction_given,
                step.correction_level,
                json.dumps(step.keywords),
                timestamp,
            ),
        )
        await self.db.commit()
        return step.model_copy(update={"id": step_id, "timestamp": timestamp})

    async def get_recent(self, session_id: str, limit: int = 10) -> list[StepRecord]:
        """Newest first."""
        async with self.db.execute(
            "SELECT * FROM steps WHERE session_id = ? ORDER BY timestamp DESC, rowid DESC LIMIT ?",
            (session_id, limit),
        ) as cur:
            return [row_to_step(r) for r in await cur.fetchall()]

    async def get_validated(self, session_id: str) -> list[StepRecord]:
        """Validated steps in insertion order."""
        async with self.db.execute(
            "SELECT * FROM steps WHERE session_id = ? AND is_validated = 1 ORDER BY timestamp ASC, rowid ASC",
            (session_id,),
        ) as cur:
            return [row_to_step(r) for r in await cur.fetchall()]

    async def count(self, session_id: str) -> int:
        async with self.db.execute("SELECT COUNT(*) FROM steps WHERE session_id = ?", (session_id,)) as cur:
            row = await cur.fetchone()
            return int(row[0]) if row else 0

    async def update_recent_reasoning(self, session_id: str, reasoning: str, limit: int = 10) -> int:
        """Backfill reasoning onto the latest steps that do not have any yet."""
        async with self.db.execute(
            """UPDATE steps SET reasoning = ?
               WHERE id IN (
                   SELECT id FROM steps
                   WHERE session_id = ?
                   ORDER BY timestamp DESC, rowid DESC
                   LIMIT ?
               ) AND (reasoning IS NULL OR reasoning = '')""",
            (reasoning, session_id, limit),
        ) as cur:
            changed = cur.rowcount
        await self.db.commit()
        return changed

    async def get_edited_files(self, session_id: str) -> list[str]:
        files: list[str] = []
        seen: set[str] = set()
        for step in await self.get_validated(session_id):
            if step.action_type not in ("edit", "write"):
                continue
            for path in step.files:
                if path not in seen:
                    seen.add(path)
                    files.append(path)
        return files

    async def get_key_decisions(self, session_id: str, limit: int = 5) -> list[StepRecord]:
        async with self.db.execute(
            """SELECT * FROM steps
               WHERE session_id = ? AND is_key_decision = 1 AND reasoning IS NOT NULL AND reasoning != ''
               ORDER BY timestamp DESC, rowid DESC LIMIT ?""",
            (session_id, limit),
        ) as cur:
            return [row_to_step(r) for r in await cur.fetchall()]
