"""SQLite implementation of the session state store."""
from __future__ import annotations

import json
import logging

import aiosqlite

from memproxy.date_utils import iso_seconds_ago, utc_now_iso
from memproxy.db.repositories._rows import dump_json, safe_json_dict, safe_json_list
from memproxy.models import TERMINAL_SESSION_STATUSES, SessionState

logger = logging.getLogger("memproxy.db")

_JSON_LIST_COLUMNS = ("expected_scope", "constraints", "keywords", "drift_history", "drift_warnings")


def row_to_session(row: aiosqlite.Row | dict) -> SessionState:
    data = dict(row)
    for column in _JSON_LIST_COLUMNS:
        data[column] = safe_json_list(data.get(column))
    data["pending_recovery_plan"] = safe_json_dict(data.get("pending_recovery_plan"))
    data["waiting_for_recovery"] = bool(data.get("waiting_for_recovery"))
    return SessionState(**data)


class SqliteSessionRepository:
    """SQLite-backed session lifecycle: create, touch, complete, abandon, purge."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def create(self, state: SessionState) -> SessionState:
        """Insert a new session row; an existing id is left untouched."""
        now = utc_now_iso()
        await self.db.execute(
            """INSERT OR IGNORE INTO session_states (
                session_id, user_id, project_path, original_goal,
                expected_scope, constraints, keywords,
                token_count, escalation_count, session_mode,
                waiting_for_recovery, last_checked_at,
                created_at, last_update, status,
                parent_session_id, task_type
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'active', ?, ?)
            """,
            (
                state.session_id,
                state.user_id,
                state.project_path,
                state.original_goal,
                json.dumps(state.expected_scope),
                json.dumps(state.constraints),
                json.dumps(state.keywords),
                state.token_count,
                min(3, max(0, state.escalation_count)),
                state.session_mode,
                int(state.waiting_for_recovery),
                state.last_checked_at,
                state.created_at or now,
                now,
                state.parent_session_id,
                state.task_type,
            ),
        )
        await self.db.commit()
        created = await self.get(state.session_id)
        return created or state

    async def get(self, session_id: str) -> SessionState | None:
        async with self.db.execute(
            "SELECT * FROM session_states WHERE session_id = ?", (session_id,)
        ) as cur:
            row = await cur.fetchone()
            return row_to_session(row) if row else None

    async def get_active_for_project(self, project_path: str, user_id: str | None = None) -> SessionState | None:
        """Most recently updated active main session for a (user, project)."""
        query = (
            "SELECT * FROM session_states"
            " WHERE project_path = ? AND status = 'active' AND task_type = 'main'"
        )
        params: list = [project_path]
        if user_id:
            query += " AND user_id = ?"
            params.append(user_id)
        query += " ORDER BY last_update DESC LIMIT 1"
        async with self.db.execute(query, params) as cur:
            row = await cur.fetchone()
            return row_to_session(row) if row else None

    async def list_children(self, session_id: str) -> list[SessionState]:
        async with self.db.execute(
            "SELECT * FROM session_states WHERE parent_session_id = ? ORDER BY created_at",
            (session_id,),
        ) as cur:
            return [row_to_session(r) for r in await cur.fetchall()]

    async def update_fields(self, session_id: str, **fields) -> None:
        """Patch mutable columns on an active session."""
        if not fields:
            return
        assignments = []
        params: list = []
        for column, value in fields.items():
            if column in _JSON_LIST_COLUMNS or column == "pending_recovery_plan":
                value = dump_json(value)
            elif isinstance(value, bool):
                value = int(value)
            assignments.append(f"{column} = ?")
            params.append(value)
        assignments.append("last_update = ?")
        params.append(utc_now_iso())
        params.append(session_id)
        await self.db.execute(
            f"UPDATE session_states SET {', '.join(assignments)}"
            " WHERE session_id = ? AND status = 'active'",
            params,
        )
        await self.db.commit()

    async def add_tokens(self, session_id: str, tokens: int) -> None:
        if tokens <= 0:
            return
        await self.db.execute(
            """UPDATE session_states
               SET token_count = token_count + ?, last_update = ?
               WHERE session_id = ?""",
            (tokens, utc_now_iso(), session_id),
        )
        await self.db.commit()

    async def mark_completed(self, session_id: str) -> bool:
        """Move an active session to completed. Terminal rows are never reopened."""
        now = utc_now_iso()
        async with self.db.execute(
            """UPDATE session_states
               SET status = 'completed', completed_at = ?, last_update = ?
               WHERE session_id = ? AND status = 'active'""",
            (now, now, session_id),
        ) as cur:
            changed = cur.rowcount
        await self.db.commit()
        return changed > 0

    async def list_stale(self, max_idle_seconds: int) -> list[SessionState]:
        async with self.db.execute(
            "SELECT * FROM session_states WHERE status = 'active' AND last_update < ? ORDER BY last_update",
            (iso_seconds_ago(max_idle_seconds),),
        ) as cur:
            return [row_to_session(r) for r in await cur.fetchall()]

    async def abandon_stale(self, max_idle_seconds: int) -> int:
        """Mark active sessions with no activity inside the window as abandoned."""
        now = utc_now_iso()
        async with self.db.execute(
            """UPDATE session_states
               SET status = 'abandoned', completed_at = ?
               WHERE status = 'active' AND last_update < ?""",
            (now, iso_seconds_ago(max_idle_seconds)),
        ) as cur:
            changed = cur.rowcount
        await self.db.commit()
        if changed:
            logger.info("Abandoned %s stale sessions", changed)
        return changed

    async def clear_stale_pending_corrections(self) -> int:
        """Drop corrections queued by a previous process; they target requests that are gone."""
        async with self.db.execute(
            "UPDATE session_states SET pending_correction = NULL WHERE pending_correction IS NOT NULL"
        ) as cur:
            changed = cur.rowcount
        await self.db.commit()
        return changed

    async def purge_terminal(self, older_than_seconds: int) -> list[str]:
        """Delete terminal sessions past retention, children before parents.

        Eligible sessions are peeled leaves-first: a session is deleted only
        once every child row referencing it is gone. A parent that still has a
        non-eligible child stays. All deletes share one transaction.
        """
        cutoff = iso_seconds_ago(older_than_seconds)
        placeholders = ", ".join("?" for _ in TERMINAL_SESSION_STATUSES)
        async with self.db.execute(
            f"""SELECT session_id, parent_session_id FROM session_states
                WHERE status IN ({placeholders}) AND completed_at IS NOT NULL AND completed_at < ?""",
            (*TERMINAL_SESSION_STATUSES, cutoff),
        ) as cur:
            eligible = {row[0]: row[1] for row in await cur.fetchall()}
        if not eligible:
            return []

        child_counts: dict[str, int] = {}
        async with self.db.execute(
            "SELECT parent_session_id, COUNT(*) FROM session_states"
            " WHERE parent_session_id IS NOT NULL GROUP BY parent_session_id"
        ) as cur:
            for parent_id, count in await cur.fetchall():
                child_counts[parent_id] = count

        layer = sorted(sid for sid in eligible if child_counts.get(sid, 0) == 0)
        purged: list[str] = []
        try:
            while layer:
                next_layer: list[str] = []
                for session_id in layer:
                    await self.db.execute("DELETE FROM drift_log WHERE session_id = ?", (session_id,))
                    await self.db.execute("DELETE FROM steps WHERE session_id = ?", (session_id,))
                    await self.db.execute("DELETE FROM session_states WHERE session_id = ?", (session_id,))
                    purged.append(session_id)
                    parent_id = eligible.get(session_id)
                    if parent_id is None:
                        continue
                    child_counts[parent_id] = child_counts.get(parent_id, 1) - 1
                    if child_counts[parent_id] == 0 and parent_id in eligible:
                        next_layer.append(parent_id)
                layer = sorted(next_layer)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        blocked = len(eligible) - len(purged)
        logger.info("Purged %s terminal sessions (%s held by live children)", len(purged), blocked)
        return purged
