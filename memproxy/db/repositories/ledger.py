"""Persistent sync ledgers for the capture scanners."""
from __future__ import annotations

import json
import time

import aiosqlite

from memproxy.date_utils import utc_now_iso
from memproxy.db.repositories._rows import safe_json_list


class SqliteCaptureLedgerRepository:
    """Upload guard, plan buffer and scanner fingerprints.

    Every claim is a single compare-and-set statement, so two processes
    racing on the same (composer, turn) cannot both win.
    """

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    # ── Turn claims ─────────────────────────────────────────────────

    async def claim(self, source: str, composer_id: str, turn_id: str) -> bool:
        """Take ownership of a turn before any side effect.

        A fresh turn is claimed by inserting its row. A turn whose earlier
        upload failed can be reclaimed once. Synced, skipped and in-flight
        turns are never handed out again.
        """
        now = utc_now_iso()
        async with self.db.execute(
            """INSERT INTO capture_ledger (source, composer_id, turn_id, status, claimed_at)
               VALUES (?, ?, ?, 'claimed', ?)
               ON CONFLICT(source, composer_id, turn_id) DO NOTHING""",
            (source, composer_id, turn_id, now),
        ) as cur:
            inserted = cur.rowcount
        if inserted != 1:
            async with self.db.execute(
                """UPDATE capture_ledger SET status = 'claimed', claimed_at = ?, error = NULL
                   WHERE source = ? AND composer_id = ? AND turn_id = ? AND status = 'error'""",
                (now, source, composer_id, turn_id),
            ) as cur:
                inserted = cur.rowcount
        await self.db.commit()
        return inserted == 1

    async def is_settled(self, source: str, composer_id: str, turn_id: str) -> bool:
        """True once a turn was uploaded or deliberately skipped."""
        async with self.db.execute(
            """SELECT status FROM capture_ledger
               WHERE source = ? AND composer_id = ? AND turn_id = ?""",
            (source, composer_id, turn_id),
        ) as cur:
            row = await cur.fetchone()
        return bool(row) and row[0] in ("synced", "skipped")

    async def mark(
        self,
        source: str,
        composer_id: str,
        turn_id: str,
        status: str,
        error: str | None = None,
    ) -> None:
        synced_at = utc_now_iso() if status in ("synced", "skipped") else None
        await self.db.execute(
            """UPDATE capture_ledger SET status = ?, synced_at = ?, error = ?
               WHERE source = ? AND composer_id = ? AND turn_id = ?""",
            (status, synced_at, error, source, composer_id, turn_id),
        )
        await self.db.commit()

    async def get_entry(self, source: str, composer_id: str, turn_id: str) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM capture_ledger WHERE source = ? AND composer_id = ? AND turn_id = ?",
            (source, composer_id, turn_id),
        ) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    # ── Plan buffer ─────────────────────────────────────────────────

    async def get_plan_buffer(self) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM plan_buffer ORDER BY last_activity DESC LIMIT 1"
        ) as cur:
            row = await cur.fetchone()
        if not row:
            return None
        data = dict(row)
        data["turn_ids"] = safe_json_list(data.get("turn_ids"))
        return data

    async def add_to_plan_buffer(self, composer_id: str, turn_id: str, now: float | None = None) -> None:
        """Append a plan turn; a buffer held by another composer is replaced."""
        now = time.time() if now is None else now
        current = await self.get_plan_buffer()
        turn_ids: list[str] = []
        if current and current["composer_id"] == composer_id:
            turn_ids = list(current["turn_ids"])
        if turn_id not in turn_ids:
            turn_ids.append(turn_id)
        await self.db.execute("DELETE FROM plan_buffer WHERE composer_id != ?", (composer_id,))
        await self.db.execute(
            """INSERT INTO plan_buffer (composer_id, turn_ids, last_activity) VALUES (?, ?, ?)
               ON CONFLICT(composer_id) DO UPDATE SET
                   turn_ids = excluded.turn_ids, last_activity = excluded.last_activity""",
            (composer_id, json.dumps(turn_ids), now),
        )
        await self.db.commit()

    async def clear_plan_buffer(self, composer_id: str | None = None) -> None:
        if composer_id is None:
            await self.db.execute("DELETE FROM plan_buffer")
        else:
            await self.db.execute("DELETE FROM plan_buffer WHERE composer_id = ?", (composer_id,))
        await self.db.commit()

    # ── Scanner fingerprints ────────────────────────────────────────

    async def get_fingerprint(self, source: str, session_id: str) -> str | None:
        async with self.db.execute(
            "SELECT fingerprint FROM scan_ledger WHERE source = ? AND session_id = ?",
            (source, session_id),
        ) as cur:
            row = await cur.fetchone()
            return row[0] if row else None

    async def record_fingerprint(self, source: str, session_id: str, fingerprint: str) -> None:
        await self.db.execute(
            """INSERT INTO scan_ledger (source, session_id, fingerprint, synced_at) VALUES (?, ?, ?, ?)
               ON CONFLICT(source, session_id) DO UPDATE SET
                   fingerprint = excluded.fingerprint, synced_at = excluded.synced_at""",
            (source, session_id, fingerprint, utc_now_iso()),
        )
        await self.db.commit()

    async def prune_missing(self, source: str, present_ids: set[str]) -> int:
        """Forget fingerprints for sessions that no longer exist on disk."""
        async with self.db.execute(
            "SELECT session_id FROM scan_ledger WHERE source = ?", (source,)
        ) as cur:
            known = [row[0] for row in await cur.fetchall()]
        stale = [sid for sid in known if sid not in present_ids]
        for session_id in stale:
            await self.db.execute(
                "DELETE FROM scan_ledger WHERE source = ? AND session_id = ?",
                (source, session_id),
            )
        if stale:
            await self.db.commit()
        return len(stale)
