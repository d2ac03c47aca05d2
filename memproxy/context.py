"""Service wiring for one proxy process."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import aiosqlite

from memproxy import config
from memproxy.agents.registry import AdapterRegistry
from memproxy.capture.scanner import PeriodicScanner
from memproxy.capture.session_parser import SessionDirectoryParser
from memproxy.config import SyncSettings
from memproxy.db.connection import close_connection, open_connection
from memproxy.db.repositories import (
    SqliteCaptureLedgerRepository,
    SqliteDriftRepository,
    SqliteSessionRepository,
    SqliteStepRepository,
    SqliteTaskRepository,
)
from memproxy.db.sqlite_migrations import run_migrations
from memproxy.proxy.forwarder import Forwarder
from memproxy.proxy.orchestrator import ProxyOrchestrator
from memproxy.sync.api_client import MemoryApiClient
from memproxy.sync.cloud_sync import CloudSyncEngine

logger = logging.getLogger("memproxy")


@dataclass
class AppContext:
    db: aiosqlite.Connection
    settings: SyncSettings
    sessions: SqliteSessionRepository
    steps: SqliteStepRepository
    drift: SqliteDriftRepository
    tasks: SqliteTaskRepository
    ledger: SqliteCaptureLedgerRepository
    registry: AdapterRegistry
    forwarder: Forwarder
    api: Optional[MemoryApiClient]
    sync_engine: CloudSyncEngine
    orchestrator: ProxyOrchestrator
    scanner: PeriodicScanner

    @classmethod
    async def create(
        cls,
        db_path: Path | str | None = None,
        settings: SyncSettings | None = None,
        forwarder: Forwarder | None = None,
        api: MemoryApiClient | None = None,
    ) -> "AppContext":
        settings = settings or config.load_sync_settings()
        db = await open_connection(db_path)
        await run_migrations(db)

        sessions = SqliteSessionRepository(db)
        steps = SqliteStepRepository(db)
        drift = SqliteDriftRepository(db)
        tasks = SqliteTaskRepository(db)
        ledger = SqliteCaptureLedgerRepository(db)

        # leftovers from a previous process that exited mid-request
        cleared = await sessions.clear_stale_pending_corrections()
        released = await tasks.release_stuck_syncing()
        if cleared or released:
            logger.info("Startup cleanup: %s correction(s) cleared, %s task(s) requeued", cleared, released)

        if api is None and settings.access_token:
            api = MemoryApiClient(settings.access_token)
        forwarder = forwarder or Forwarder()
        sync_engine = CloudSyncEngine(tasks, api, settings)
        orchestrator = ProxyOrchestrator(
            forwarder=forwarder,
            sessions=sessions,
            steps=steps,
            drift=drift,
            tasks=tasks,
            sync_engine=sync_engine,
            user_id=settings.user_id,
        )
        scanner = PeriodicScanner(ledger, SessionDirectoryParser(), api, settings)

        logger.info("Sync: %s (token %s)", sync_engine.status_summary(), config.mask_secret(settings.access_token))
        return cls(
            db=db,
            settings=settings,
            sessions=sessions,
            steps=steps,
            drift=drift,
            tasks=tasks,
            ledger=ledger,
            registry=AdapterRegistry(),
            forwarder=forwarder,
            api=api,
            sync_engine=sync_engine,
            orchestrator=orchestrator,
            scanner=scanner,
        )

    async def run_maintenance(self) -> None:
        """One sweep: abandon idle sessions, purge old ones, trim and sync tasks.

        With ``MEMPROXY_RETRY_FAILED_SYNC`` set, failed tasks are requeued first.
        """
        await self.orchestrator.abandon_stale_sessions(config.STALE_SESSION_SECONDS)
        purged = await self.sessions.purge_terminal(config.PURGE_AFTER_SECONDS)
        if purged:
            logger.info("Purged %s terminal session(s)", len(purged))
        await self.tasks.prune_synced(keep=config.SYNCED_TASK_RETENTION)
        if config.RETRY_FAILED_SYNC:
            await self.tasks.reset_errors()
        if self.sync_engine.is_ready:
            await self.sync_engine.sync_pending(trigger="maintenance")

    async def shutdown(self) -> None:
        await self.scanner.stop()
        await self.orchestrator.drain()
        await self.forwarder.aclose()
        if self.api is not None:
            await self.api.aclose()
        await close_connection(self.db)
