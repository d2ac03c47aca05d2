import asyncio
import json
import tempfile
import unittest
from pathlib import Path

import aiosqlite

from memproxy.capture.hook_driver import CURSOR_SOURCE, HookDriver, StorageError, build_payload
from memproxy.capture.ide_reader import IdeStateReader, mode_from_unified
from memproxy.config import SyncSettings
from memproxy.db.repositories import SqliteCaptureLedgerRepository
from memproxy.db.sqlite_migrations import run_migrations
from memproxy.models import ConversationPair, IdeToolCall
from memproxy.sync.api_client import ApiError

SETTINGS = SyncSettings(enabled=True, team_id="team-1", access_token="tok-1")


def _pair(composer: str, turn: str, mode: str = "agent") -> ConversationPair:
    return ConversationPair(
        composer_id=composer,
        turn_id=turn,
        mode=mode,
        user_text=f"question {turn}",
        text=f"answer {turn}",
        tool_calls=[IdeToolCall(name="edit_file", params={"targetFile": "/proj/src/a.ts"})],
    )


class _FakeReader:
    def __init__(self) -> None:
        self.db_path = Path("/nonexistent/state.vscdb")
        self.present = True
        self.composer = "c1"
        self.turn = "t1"
        self.project = "/proj"
        self.pairs: dict[tuple[str, str], ConversationPair] = {}

    def add(self, pair: ConversationPair) -> None:
        self.pairs[(pair.composer_id, pair.turn_id)] = pair
        self.composer, self.turn = pair.composer_id, pair.turn_id

    def exists(self) -> bool:
        return self.present

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        return None

    async def latest_composer_id(self):
        return self.composer

    async def latest_turn_id(self, composer_id):
        return self.turn

    async def current_workspace(self):
        return self.project

    async def composer_project_path(self, composer_id):
        return self.project

    async def conversation_pair(self, composer_id, turn_id):
        return self.pairs.get((composer_id, turn_id))


class _FakeApi:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str, dict]] = []
        self.fail = False

    async def post_capture(self, team_id, source, payload):
        await asyncio.sleep(0)
        if self.fail:
            raise ApiError(503, "extractor unavailable")
        self.calls.append((team_id, source, payload))
        return {"success": True}

    def uploaded_turns(self) -> list[str]:
        return [payload["usageUuid"] for _, _, payload in self.calls]


class HookDriverTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.ledger = SqliteCaptureLedgerRepository(self.db)
        self.reader = _FakeReader()
        self.api = _FakeApi()
        self.now = 1_000.0
        self.sleeps: list[float] = []

    async def asyncTearDown(self) -> None:
        await self.db.close()

    def _driver(self, settings: SyncSettings = SETTINGS, ledger=None) -> HookDriver:
        async def fake_sleep(seconds: float) -> None:
            self.sleeps.append(seconds)

        return HookDriver(
            ledger or self.ledger,
            self.reader,
            self.api,
            settings,
            settle_seconds=3,
            plan_timeout_seconds=300,
            sleep=fake_sleep,
            clock=lambda: self.now,
        )

    async def test_agent_turn_uploads_once(self) -> None:
        self.reader.add(_pair("c1", "t1"))

        self.assertEqual(await self._driver().run(), 0)
        self.assertEqual(await self._driver().run(), 0)

        self.assertEqual(self.sleeps, [3, 3])
        self.assertEqual(self.api.uploaded_turns(), ["t1"])
        team, source, payload = self.api.calls[0]
        self.assertEqual((team, source), ("team-1", CURSOR_SOURCE))
        self.assertEqual(payload["projectPath"], "/proj")
        self.assertEqual(payload["original_query"], "question t1")
        entry = await self.ledger.get_entry(CURSOR_SOURCE, "c1", "t1")
        self.assertEqual(entry["status"], "synced")

    async def test_missing_prerequisites_exit_quietly(self) -> None:
        self.reader.add(_pair("c1", "t1"))
        cases = [
            SyncSettings(enabled=False, team_id="team-1", access_token="tok"),
            SyncSettings(enabled=True, team_id=None, access_token="tok"),
            SyncSettings(enabled=True, team_id="team-1", access_token=None),
        ]
        for settings in cases:
            self.assertEqual(await self._driver(settings).run(), 0)

        self.reader.present = False
        self.assertEqual(await self._driver().run(), 0)
        self.assertEqual(self.api.calls, [])

    async def test_ask_turn_is_marked_without_upload(self) -> None:
        self.reader.add(_pair("c1", "t1", mode="ask"))

        await self._driver().run()

        self.assertEqual(self.api.calls, [])
        self.assertTrue(await self.ledger.is_settled(CURSOR_SOURCE, "c1", "t1"))

    async def test_plan_turns_flush_before_agent_turn(self) -> None:
        self.reader.add(_pair("c1", "p1", mode="plan"))
        await self._driver().run()
        self.reader.add(_pair("c1", "p2", mode="plan"))
        await self._driver().run()

        self.assertEqual(self.api.calls, [])
        buffer = await self.ledger.get_plan_buffer()
        self.assertEqual(buffer["turn_ids"], ["p1", "p2"])

        self.reader.add(_pair("c1", "a1"))
        await self._driver().run()

        self.assertEqual(self.api.uploaded_turns(), ["p1", "p2", "a1"])
        self.assertIsNone(await self.ledger.get_plan_buffer())

    async def test_stale_plan_of_other_composer_is_flushed(self) -> None:
        self.reader.add(_pair("c1", "p1", mode="plan"))
        await self._driver().run()

        self.now += 100
        self.reader.add(_pair("c2", "a1"))
        await self._driver().run()
        self.assertEqual(self.api.uploaded_turns(), ["a1"])
        self.assertIsNotNone(await self.ledger.get_plan_buffer())

        self.now += 301
        self.reader.add(_pair("c2", "a2"))
        await self._driver().run()
        self.assertEqual(self.api.uploaded_turns(), ["a1", "p1", "a2"])
        self.assertIsNone(await self.ledger.get_plan_buffer())

    async def test_idle_plan_is_flushed_by_next_invocation(self) -> None:
        self.reader.add(_pair("c1", "p1", mode="plan"))
        await self._driver().run()

        self.now += 301
        self.reader.add(_pair("c1", "p2", mode="plan"))
        await self._driver().run()

        self.assertEqual(self.api.uploaded_turns(), ["p1"])
        buffer = await self.ledger.get_plan_buffer()
        self.assertEqual(buffer["turn_ids"], ["p2"])

    async def test_failed_upload_is_retried_by_next_invocation(self) -> None:
        self.reader.add(_pair("c1", "t1"))
        self.api.fail = True

        self.assertEqual(await self._driver().run(), 0)
        entry = await self.ledger.get_entry(CURSOR_SOURCE, "c1", "t1")
        self.assertEqual(entry["status"], "error")
        self.assertIn("extractor unavailable", entry["error"])

        self.api.fail = False
        await self._driver().run()
        self.assertEqual(self.api.uploaded_turns(), ["t1"])
        self.assertEqual((await self.ledger.get_entry(CURSOR_SOURCE, "c1", "t1"))["status"], "synced")

    async def test_concurrent_invocations_upload_once(self) -> None:
        self.reader.add(_pair("c1", "t1"))

        results = await asyncio.gather(*(self._driver().run() for _ in range(4)))

        self.assertEqual(results, [0, 0, 0, 0])
        self.assertEqual(self.api.uploaded_turns(), ["t1"])

    async def test_storage_failure_raises(self) -> None:
        class _BrokenLedger:
            async def get_plan_buffer(self):
                raise aiosqlite.OperationalError("database is locked")

        self.reader.add(_pair("c1", "t1"))
        with self.assertRaises(StorageError):
            await self._driver(ledger=_BrokenLedger()).run()
        self.assertEqual(self.api.calls, [])


class LedgerClaimTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.ledger = SqliteCaptureLedgerRepository(self.db)

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def test_claim_is_compare_and_set(self) -> None:
        self.assertTrue(await self.ledger.claim("cursor", "c1", "t1"))
        self.assertFalse(await self.ledger.claim("cursor", "c1", "t1"))

        await self.ledger.mark("cursor", "c1", "t1", "error", error="timeout")
        self.assertTrue(await self.ledger.claim("cursor", "c1", "t1"))
        self.assertFalse(await self.ledger.claim("cursor", "c1", "t1"))

        await self.ledger.mark("cursor", "c1", "t1", "synced")
        self.assertFalse(await self.ledger.claim("cursor", "c1", "t1"))
        self.assertTrue(await self.ledger.claim("antigravity", "c1", "t1"))

    async def test_plan_buffer_switches_composer(self) -> None:
        await self.ledger.add_to_plan_buffer("c1", "p1", now=10)
        await self.ledger.add_to_plan_buffer("c1", "p1", now=11)
        await self.ledger.add_to_plan_buffer("c2", "q1", now=12)

        buffer = await self.ledger.get_plan_buffer()
        self.assertEqual((buffer["composer_id"], buffer["turn_ids"]), ("c2", ["q1"]))

        await self.ledger.clear_plan_buffer("c1")
        self.assertIsNotNone(await self.ledger.get_plan_buffer())
        await self.ledger.clear_plan_buffer()
        self.assertIsNone(await self.ledger.get_plan_buffer())


class IdeStateReaderTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.path = Path(self.tmpdir.name) / "state.vscdb"
        async with aiosqlite.connect(self.path) as db:
            await db.execute("CREATE TABLE cursorDiskKV (key TEXT UNIQUE ON CONFLICT REPLACE, value BLOB)")
            await db.execute("CREATE TABLE ItemTable (key TEXT UNIQUE ON CONFLICT REPLACE, value BLOB)")
            rows = {
                "composerData:c-old": {"createdAt": 1_000},
                "composerData:c-empty": {"createdAt": 3_000},
                "composerData:c-new": {"createdAt": 2_000},
                "bubbleId:c-old:x1": {"type": 1, "requestId": "old-turn", "text": "old", "createdAt": 1_100},
                "bubbleId:c-new:b1": {"type": 1, "requestId": "turn-1", "text": "Add tests", "createdAt": "2026-01-01T00:00:00Z"},
                "bubbleId:c-new:b2": {"type": 2, "usageUuid": "turn-1", "text": "", "unifiedMode": 5,
                                      "thinking": {"text": "Plan it"}, "createdAt": "2026-01-01T00:00:01Z"},
                "bubbleId:c-new:b3": {"type": 2, "usageUuid": "turn-1", "text": "Done",
                                      "toolFormerData": {"name": "edit_file",
                                                         "params": json.dumps({"targetFile": "/home/u/proj/src/a.ts"})},
                                      "createdAt": "2026-01-01T00:00:02Z"},
                "messageRequestContext:c-new:b1": {"ideEditorsState": json.dumps(
                    {"visibleFiles": [{"relativePath": "src/a.ts", "absolutePath": "/home/u/proj/src/a.ts"}]}
                )},
            }
            await db.executemany(
                "INSERT INTO cursorDiskKV (key, value) VALUES (?, ?)",
                [(key, json.dumps(value)) for key, value in rows.items()],
            )
            await db.execute(
                "INSERT INTO ItemTable (key, value) VALUES (?, ?)",
                ("history.recentlyOpenedPathsList", json.dumps({"entries": [{"folderUri": "file:///home/u/proj"}]})),
            )
            await db.commit()

    async def asyncTearDown(self) -> None:
        self.tmpdir.cleanup()

    def test_mode_mapping(self) -> None:
        self.assertEqual(mode_from_unified(1), "ask")
        self.assertEqual(mode_from_unified(5), "plan")
        self.assertEqual(mode_from_unified(2), "agent")
        self.assertEqual(mode_from_unified(None), "agent")

    async def test_reads_latest_turn(self) -> None:
        reader = IdeStateReader(self.path)
        self.assertTrue(reader.exists())
        async with reader:
            composer = await reader.latest_composer_id()
            turn = await reader.latest_turn_id(composer)
            pair = await reader.conversation_pair(composer, turn)
            project = await reader.composer_project_path(composer)
            workspace = await reader.current_workspace()

        self.assertEqual(composer, "c-new")
        self.assertEqual(turn, "turn-1")
        self.assertEqual(pair.mode, "plan")
        self.assertEqual(pair.user_text, "Add tests")
        self.assertEqual(pair.text, "Done")
        self.assertEqual(pair.thinking, "Plan it")
        self.assertEqual(pair.bubble_count, 2)
        self.assertEqual(pair.tool_calls, [IdeToolCall(name="edit_file", params={"targetFile": "/home/u/proj/src/a.ts"})])
        self.assertEqual(project, "/home/u/proj")
        self.assertEqual(workspace, "/home/u/proj")

        payload = build_payload(pair, workspace)
        self.assertEqual(payload["composerId"], "c-new")
        self.assertEqual(payload["usageUuid"], "turn-1")
        self.assertEqual(payload["toolCalls"][0]["name"], "edit_file")

    async def test_unknown_turn_has_no_pair(self) -> None:
        async with IdeStateReader(self.path) as reader:
            self.assertIsNone(await reader.conversation_pair("c-new", "missing"))
            self.assertIsNone(await reader.latest_turn_id("c-empty"))

    async def test_hook_runs_against_real_store(self) -> None:
        db = await aiosqlite.connect(":memory:")
        db.row_factory = aiosqlite.Row
        await run_migrations(db)
        api = _FakeApi()

        async def no_sleep(_seconds: float) -> None:
            return None

        try:
            driver = HookDriver(
                SqliteCaptureLedgerRepository(db), IdeStateReader(self.path), api, SETTINGS, sleep=no_sleep
            )
            self.assertEqual(await driver.run(), 0)
            # plan-mode turn waits in the buffer
            self.assertEqual(api.calls, [])
            buffer = await SqliteCaptureLedgerRepository(db).get_plan_buffer()
            self.assertEqual(buffer["turn_ids"], ["turn-1"])
        finally:
            await db.close()


if __name__ == "__main__":
    unittest.main()
