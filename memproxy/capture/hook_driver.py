"""IDE stop-hook driver.

The IDE runs this once per assistant response as a short-lived process.
It reads the newest turn from the IDE store and uploads it to the
server-side extractor, guarded by the capture ledger so that any
(composer, turn) is uploaded at most once across concurrent invocations.
"""
from __future__ import annotations

import asyncio
import logging
import sys
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

import aiosqlite

from memproxy import config
from memproxy.capture.ide_reader import IdeStateReader
from memproxy.config import SyncSettings
from memproxy.db.connection import close_connection, open_connection
from memproxy.db.repositories import SqliteCaptureLedgerRepository
from memproxy.db.sqlite_migrations import run_migrations
from memproxy.models import ConversationPair
from memproxy.observability import record_capture_failure
from memproxy.sync.api_client import ApiError, MemoryApiClient

logger = logging.getLogger("memproxy.capture")

CURSOR_SOURCE = "cursor"

T = TypeVar("T")


class StorageError(Exception):
    """The local store rejected a read or write; the hook must exit non-zero."""


def build_payload(pair: ConversationPair, project_path: str) -> dict[str, Any]:
    return {
        "composerId": pair.composer_id,
        "usageUuid": pair.turn_id,
        "mode": pair.mode,
        "projectPath": project_path,
        "original_query": pair.user_text,
        "text": pair.text,
        "thinking": pair.thinking,
        "toolCalls": [call.model_dump() for call in pair.tool_calls],
    }


class HookDriver:
    def __init__(
        self,
        ledger: SqliteCaptureLedgerRepository,
        reader: IdeStateReader,
        api: MemoryApiClient | None,
        settings: SyncSettings,
        *,
        settle_seconds: float | None = None,
        plan_timeout_seconds: float | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
        clock: Callable[[], float] | None = None,
    ):
        self.ledger = ledger
        self.reader = reader
        self.api = api
        self.settings = settings
        self.settle_seconds = config.HOOK_SETTLE_SECONDS if settle_seconds is None else settle_seconds
        self.plan_timeout_seconds = (
            config.PLAN_TIMEOUT_SECONDS if plan_timeout_seconds is None else plan_timeout_seconds
        )
        self._sleep = sleep or asyncio.sleep
        self._clock = clock or time.time

    async def _store(self, op: Awaitable[T]) -> T:
        try:
            return await op
        except aiosqlite.Error as exc:
            raise StorageError(str(exc)) from exc

    def _missing_prerequisite(self) -> Optional[str]:
        if not self.reader.exists():
            return f"IDE store not found at {self.reader.db_path}"
        if not self.settings.enabled:
            return "sync disabled"
        if not self.settings.team_id:
            return "no team configured"
        if not self.settings.access_token or self.api is None:
            return "not authenticated"
        return None

    async def run(self) -> int:
        """Capture the newest turn. Returns the process exit code."""
        # the IDE flushes the finished turn to disk shortly after the hook fires
        await self._sleep(self.settle_seconds)

        missing = self._missing_prerequisite()
        if missing:
            logger.info("Hook exiting: %s", missing)
            return 0

        async with self.reader:
            await self._flush_timed_out_plan()
            composer_id = await self.reader.latest_composer_id()
            if not composer_id:
                logger.info("No composer with messages")
                return 0

            turn_id = await self.reader.latest_turn_id(composer_id)
            if not turn_id:
                logger.info("No turn with content in composer %s", composer_id[:8])
                return 0

            project_path = (
                await self.reader.current_workspace()
                or await self.reader.composer_project_path(composer_id)
            )
            await self._handle_turn(composer_id, turn_id, project_path)
        return 0

    async def _handle_turn(self, composer_id: str, turn_id: str, project_path: str) -> None:
        if await self._store(self.ledger.is_settled(CURSOR_SOURCE, composer_id, turn_id)):
            logger.info("Turn %s already captured", turn_id[:8])
            return

        pair = await self.reader.conversation_pair(composer_id, turn_id)
        if pair is None:
            logger.info("Turn %s has no user message", turn_id[:8])
            return

        if pair.mode == "ask":
            if await self._store(self.ledger.claim(CURSOR_SOURCE, composer_id, turn_id)):
                await self._store(self.ledger.mark(CURSOR_SOURCE, composer_id, turn_id, "synced"))
            logger.info("Ask turn %s marked without upload", turn_id[:8])
            return

        if pair.mode == "plan":
            await self._store(self.ledger.add_to_plan_buffer(composer_id, turn_id, now=self._clock()))
            logger.info("Plan turn %s buffered", turn_id[:8])
            return

        buffer = await self._store(self.ledger.get_plan_buffer())
        if buffer and buffer["composer_id"] == composer_id:
            logger.info("Plan finished, flushing %s buffered turn(s)", len(buffer["turn_ids"]))
            await self._flush_plan(buffer, project_path)

        await self._upload(pair, project_path)

    async def _flush_timed_out_plan(self) -> None:
        buffer = await self._store(self.ledger.get_plan_buffer())
        if not buffer:
            return
        if self._clock() - float(buffer["last_activity"]) <= self.plan_timeout_seconds:
            return
        logger.info("Plan buffer for %s timed out", buffer["composer_id"][:8])
        project_path = await self.reader.composer_project_path(buffer["composer_id"])
        await self._flush_plan(buffer, project_path)

    async def _flush_plan(self, buffer: dict[str, Any], project_path: str) -> None:
        composer_id = buffer["composer_id"]
        for turn_id in buffer["turn_ids"]:
            if await self._store(self.ledger.is_settled(CURSOR_SOURCE, composer_id, turn_id)):
                continue
            pair = await self.reader.conversation_pair(composer_id, turn_id)
            if pair is not None:
                await self._upload(pair, project_path)
        await self._store(self.ledger.clear_plan_buffer(composer_id))

    async def _upload(self, pair: ConversationPair, project_path: str) -> bool:
        composer_id, turn_id = pair.composer_id, pair.turn_id
        if not await self._store(self.ledger.claim(CURSOR_SOURCE, composer_id, turn_id)):
            logger.info("Turn %s claimed elsewhere, skipping upload", turn_id[:8])
            return False
        try:
            await self.api.post_capture(self.settings.team_id, CURSOR_SOURCE, build_payload(pair, project_path))
        except ApiError as exc:
            logger.warning("Upload of turn %s failed: %s", turn_id[:8], exc)
            record_capture_failure("hook_upload")
            await self._store(self.ledger.mark(CURSOR_SOURCE, composer_id, turn_id, "error", error=str(exc)[:1000]))
            return False
        await self._store(self.ledger.mark(CURSOR_SOURCE, composer_id, turn_id, "synced"))
        logger.info("Uploaded %s turn %s", pair.mode, turn_id[:8])
        return True


async def run_hook() -> int:
    settings = config.load_sync_settings()
    try:
        db = await open_connection()
        await run_migrations(db)
    except (aiosqlite.Error, OSError) as exc:
        logger.error("Local store unavailable: %s", exc)
        return 1

    api = MemoryApiClient(settings.access_token) if settings.access_token else None
    try:
        driver = HookDriver(
            SqliteCaptureLedgerRepository(db),
            IdeStateReader(config.IDE_STATE_DB),
            api,
            settings,
        )
        return await driver.run()
    except StorageError:
        logger.exception("Local store write failed")
        return 1
    finally:
        if api is not None:
            await api.aclose()
        await close_connection(db)


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    sys.exit(asyncio.run(run_hook()))


if __name__ == "__main__":
    main()
