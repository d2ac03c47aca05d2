"""Background scanner for planning-agent session directories.

Each pass uploads sessions whose content changed since the last upload.
Change detection uses a sha256 fingerprint of plan and task content kept
in the scan ledger.
"""
from __future__ import annotations

import asyncio
import hashlib
import logging
from typing import Optional

from memproxy import config
from memproxy.capture.session_parser import SessionDirectoryParser, build_session_payload
from memproxy.config import SyncSettings
from memproxy.db.repositories import SqliteCaptureLedgerRepository
from memproxy.models import DirectorySession, ScanResult
from memproxy.observability import record_capture_failure
from memproxy.sync.api_client import ApiError, MemoryApiClient

logger = logging.getLogger("memproxy.capture")

ANTIGRAVITY_SOURCE = "antigravity"


def session_fingerprint(session: DirectorySession) -> str:
    return hashlib.sha256((session.plan_content + session.task_content).encode("utf-8")).hexdigest()


class PeriodicScanner:
    """Runs :meth:`scan_once` now and then every ``interval`` seconds."""

    def __init__(
        self,
        ledger: SqliteCaptureLedgerRepository,
        parser: SessionDirectoryParser,
        api: MemoryApiClient | None,
        settings: SyncSettings,
        interval: float | None = None,
    ):
        self.ledger = ledger
        self.parser = parser
        self.api = api
        self.settings = settings
        self.interval = config.SCAN_INTERVAL_SECONDS if interval is None else interval
        self.last_result: Optional[ScanResult] = None
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._scan_lock = asyncio.Lock()

    def _missing_prerequisite(self) -> Optional[str]:
        if not self.parser.exists():
            return f"session directory not found at {self.parser.brain_dir}"
        if not self.settings.enabled:
            return "sync disabled"
        if not self.settings.team_id:
            return "no team configured"
        if not self.settings.access_token or self.api is None:
            return "not authenticated"
        return None

    async def scan_once(self) -> ScanResult:
        result = ScanResult()
        missing = self._missing_prerequisite()
        if missing:
            logger.debug("Scan skipped: %s", missing)
            self.last_result = result
            return result

        async with self._scan_lock:
            session_ids = self.parser.session_ids()
            for session_id in session_ids:
                session = self.parser.parse(session_id)
                if session is None:
                    continue
                result.scanned += 1
                await self._sync_session(session, result)

            pruned = await self.ledger.prune_missing(ANTIGRAVITY_SOURCE, set(session_ids))
            if pruned:
                logger.info("Pruned %s vanished session(s) from the scan ledger", pruned)

        if result.synced or result.updated or result.failed:
            logger.info(
                "Scan finished: %s scanned, %s new, %s updated, %s skipped, %s failed",
                result.scanned,
                result.synced,
                result.updated,
                result.skipped,
                result.failed,
            )
        self.last_result = result
        return result

    async def _sync_session(self, session: DirectorySession, result: ScanResult) -> None:
        fingerprint = session_fingerprint(session)
        if await self.ledger.get_fingerprint(ANTIGRAVITY_SOURCE, session.session_id) == fingerprint:
            result.skipped += 1
            return

        try:
            response = await self.api.post_capture(
                self.settings.team_id, ANTIGRAVITY_SOURCE, build_session_payload(session)
            )
        except ApiError as exc:
            result.failed += 1
            result.errors.append(f"Session {session.session_id[:8]}: {exc}")
            record_capture_failure("scan_upload")
            return

        await self.ledger.record_fingerprint(ANTIGRAVITY_SOURCE, session.session_id, fingerprint)
        action = response.get("action")
        if action == "insert":
            result.synced += 1
        elif action == "update":
            result.updated += 1
        else:
            result.skipped += 1

    # ── Lifecycle ───────────────────────────────────────────────────

    async def start(self) -> None:
        if self._running:
            logger.warning("Scanner already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Scanner started (interval=%ss)", self.interval)

    async def stop(self) -> None:
        if not self._running and self._task is None:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Scanner stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.scan_once()
            except Exception:
                logger.exception("Scan failed")
                record_capture_failure("scan")
            await asyncio.sleep(self.interval)
