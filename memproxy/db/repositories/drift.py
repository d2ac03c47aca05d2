"""Drift bookkeeping on top of session_states and drift_log."""
from __future__ import annotations

import json
import logging
import uuid
from typing import Any

import aiosqlite

from memproxy.date_utils import now_ms, utc_now_iso
from memproxy.db.repositories._rows import dump_json, safe_json_list
from memproxy.models import MAX_ESCALATION, DriftLogEntry

logger = logging.getLogger("memproxy.db")

RECOVERY_SCORE = 8
_MILDEST_LEVEL = "nudge"


def next_escalation(current: int, score: float, level: str | None) -> int:
    """Escalation after one drift check, always inside [0, MAX_ESCALATION]."""
    current = min(MAX_ESCALATION, max(0, int(current or 0)))
    if score >= RECOVERY_SCORE:
        return max(0, current - 1)
    if level and level != _MILDEST_LEVEL:
        return min(MAX_ESCALATION, current + 1)
    return current


class SqliteDriftRepository:
    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def update_session_drift(
        self,
        session_id: str,
        score: float,
        level: str | None,
        prompt_summary: str = "",
        recovery_plan: dict[str, Any] | None = None,
    ) -> int | None:
        """Apply one drift check to a session.

        Returns the new escalation count, or None when the session is unknown.
        """
        async with self.db.execute(
            "SELECT escalation_count, drift_history, drift_warnings FROM session_states WHERE session_id = ?",
            (session_id,),
        ) as cur:
            row = await cur.fetchone()
        if row is None:
            logger.warning("Drift update for unknown session %s", session_id)
            return None

        escalation = next_escalation(row["escalation_count"], score, level)
        now = utc_now_iso()
        history = safe_json_list(row["drift_history"])
        history.append(
            {
                "timestamp": now,
                "score": score,
                "level": level or "none",
                "prompt_summary": (prompt_summary or "")[:100],
            }
        )
        warnings = safe_json_list(row["drift_warnings"])
        if level:
            warnings.append(f"[{now}] {level}: score {score}")

        await self.db.execute(
            """UPDATE session_states SET
                escalation_count = ?,
                drift_history = ?,
                drift_warnings = ?,
                last_drift_score = ?,
                pending_recovery_plan = ?,
                last_checked_at = ?,
                last_update = ?
               WHERE session_id = ?""",
            (
                escalation,
                json.dumps(history),
                json.dumps(warnings),
                score,
                dump_json(recovery_plan),
                now_ms(),
                now,
                session_id,
            ),
        )
        await self.db.commit()
        return escalation

    async def log_drift_event(self, entry: DriftLogEntry) -> str:
        entry_id = entry.id or str(uuid.uuid4())
        await self.db.execute(
            """INSERT INTO drift_log (
                id, session_id, timestamp, action_type, files, folders,
                command, reasoning, drift_score, drift_type, drift_reason,
                correction_given, correction_level, recovery_plan
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                entry_id,
                entry.session_id,
                entry.timestamp or now_ms(),
                entry.action_type,
                json.dumps(entry.files),
                json.dumps(entry.folders),
                entry.command,
                entry.reasoning,
                entry.drift_score,
                entry.drift_type,
                entry.drift_reason,
                entry.correction_given,
                entry.correction_level,
                dump_json(entry.recovery_plan),
            ),
        )
        await self.db.commit()
        return entry_id

    async def list_drift_log(self, session_id: str) -> list[dict]:
        async with self.db.execute(
            "SELECT * FROM drift_log WHERE session_id = ? ORDER BY timestamp ASC, rowid ASC",
            (session_id,),
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]
