import asyncio
import json
import os
import tempfile
import unittest
from pathlib import Path

import aiosqlite
import httpx

from memproxy.capture.scanner import ANTIGRAVITY_SOURCE, PeriodicScanner, session_fingerprint
from memproxy.capture.session_parser import (
    SessionDirectoryParser,
    build_session_payload,
    completion_status,
    files_from_plan,
    parse_task_title,
)
from memproxy.config import SyncSettings
from memproxy.db.repositories import SqliteCaptureLedgerRepository
from memproxy.db.sqlite_migrations import run_migrations
from memproxy.sync.api_client import MemoryApiClient

SETTINGS = SyncSettings(enabled=True, team_id="team-1", access_token="tok-1")

SESSION_A = "0a1b2c3d-0000-4000-8000-00000000000a"
SESSION_B = "0a1b2c3d-0000-4000-8000-00000000000b"
SESSION_C = "0a1b2c3d-0000-4000-8000-00000000000c"

PLAN = """# Rework login

[MODIFY] [login.ts]
See [hooks](file:///home/u/web/src/hooks.ts) for the shared hook.
"""


class ParsingHelperTests(unittest.TestCase):
    def test_title(self) -> None:
        self.assertEqual(parse_task_title("intro\n# Fix the form\n- [ ] a"), "Fix the form")
        self.assertEqual(parse_task_title("no heading here"), "Untitled Task")
        self.assertEqual(parse_task_title("## Sub heading only"), "Untitled Task")

    def test_completion(self) -> None:
        self.assertEqual(completion_status("- [x] a\n- [X] b"), "complete")
        self.assertEqual(completion_status("- [x] a\n- [ ] b"), "partial")
        self.assertEqual(completion_status("plain notes"), "complete")

    def test_files_from_plan(self) -> None:
        self.assertEqual(files_from_plan(PLAN), ["login.ts", "hooks.ts"])
        self.assertEqual(files_from_plan(""), [])


class SessionDirectoryParserTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        root = Path(self.tmpdir.name)
        self.brain = root / "brain"
        self.tracker = root / "code_tracker"
        self.brain.mkdir()
        self.tracker.mkdir()
        self.parser = SessionDirectoryParser(self.brain, self.tracker)

    def tearDown(self) -> None:
        self.tmpdir.cleanup()

    def _session(self, session_id: str, task: str | None, **files: str) -> Path:
        folder = self.brain / session_id
        folder.mkdir()
        if task is not None:
            (folder / "task.md").write_text(task, encoding="utf-8")
        for name, content in files.items():
            (folder / name.replace("__", ".")).write_text(content, encoding="utf-8")
        return folder

    def test_lists_only_uuid_directories(self) -> None:
        self._session(SESSION_B, "# B")
        self._session(SESSION_A, "# A")
        (self.brain / "scratch").mkdir()
        (self.brain / "notes.txt").write_text("x", encoding="utf-8")

        self.assertEqual(self.parser.session_ids(), [SESSION_A, SESSION_B])

    def test_missing_task_file_is_not_a_session(self) -> None:
        self._session(SESSION_A, None, implementation_plan__md=PLAN)
        self.assertIsNone(self.parser.parse(SESSION_A))
        self.assertIsNone(self.parser.parse(SESSION_B))

    def test_parses_session_with_tracker_and_metadata(self) -> None:
        older = self.tracker / "legacy_deadbeef"
        older.mkdir()
        os.utime(older, (1_000, 1_000))
        latest = self.tracker / "my_web_app_cafe1234"
        latest.mkdir()
        (latest / "9f8e_login.ts").write_text("", encoding="utf-8")
        (latest / "7a6b_api.ts").write_text("", encoding="utf-8")

        self._session(
            SESSION_A,
            "# Rework login\n- [x] plan\n- [ ] build",
            implementation_plan__md=PLAN,
            implementation_plan__md__metadata__json=json.dumps({"summary": "Plan summary", "updatedAt": "2026-02-01T00:00:00Z"}),
            task__md__metadata__json=json.dumps({"summary": "Task summary", "updatedAt": "2026-01-01T00:00:00Z"}),
        )

        session = self.parser.parse(SESSION_A)

        self.assertEqual(session.title, "Rework login")
        self.assertEqual(session.project_path, "my_web_app")
        self.assertEqual(session.linked_commit, "cafe1234")
        self.assertEqual(session.metadata_summary, "Plan summary")
        self.assertEqual(session.updated_at, "2026-02-01T00:00:00Z")
        self.assertEqual(session.completion_status, "partial")
        self.assertEqual(session.files_touched, ["api.ts", "login.ts", "hooks.ts"])

        payload = build_session_payload(session)
        self.assertEqual(payload["sessionId"], SESSION_A)
        self.assertEqual(payload["linkedCommit"], "cafe1234")
        self.assertEqual(payload["completionStatus"], "partial")

    def test_defaults_without_tracker_or_metadata(self) -> None:
        self._session(SESSION_A, "- [x] done", task__md__metadata__json="{not json")

        session = SessionDirectoryParser(self.brain, Path(self.tmpdir.name) / "absent").parse(SESSION_A)

        self.assertEqual(session.title, "Untitled Task")
        self.assertEqual(session.metadata_summary, "Untitled Task")
        self.assertEqual(session.project_path, "unknown")
        self.assertIsNone(session.linked_commit)
        self.assertEqual(session.completion_status, "complete")
        self.assertTrue(session.updated_at)


class PeriodicScannerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.brain = Path(self.tmpdir.name) / "brain"
        self.brain.mkdir()
        self.parser = SessionDirectoryParser(self.brain, Path(self.tmpdir.name) / "code_tracker")

        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.ledger = SqliteCaptureLedgerRepository(self.db)

        self.requests: list[dict] = []
        self.actions: dict[str, str] = {}
        self.failing: set[str] = set()

        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            self.requests.append({"path": request.url.path, "body": body})
            if body["sessionId"] in self.failing:
                return httpx.Response(502, json={"error": "extractor offline"})
            return httpx.Response(200, json={"action": self.actions.get(body["sessionId"], "insert")})

        self.http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        self.api = MemoryApiClient("tok-1", base_url="https://memory.test/api", client=self.http)

    async def asyncTearDown(self) -> None:
        await self.http.aclose()
        await self.db.close()
        self.tmpdir.cleanup()

    def _write(self, session_id: str, task: str, plan: str = "") -> None:
        folder = self.brain / session_id
        folder.mkdir(exist_ok=True)
        (folder / "task.md").write_text(task, encoding="utf-8")
        if plan:
            (folder / "implementation_plan.md").write_text(plan, encoding="utf-8")

    def _scanner(self, settings: SyncSettings = SETTINGS, api=None, interval: float = 180) -> PeriodicScanner:
        return PeriodicScanner(self.ledger, self.parser, api or self.api, settings, interval=interval)

    async def test_uploads_new_sessions_then_skips_unchanged(self) -> None:
        self._write(SESSION_A, "# A\n- [ ] one", PLAN)
        self._write(SESSION_B, "# B")
        self.actions[SESSION_B] = "update"
        scanner = self._scanner()

        first = await scanner.scan_once()
        self.assertEqual((first.scanned, first.synced, first.updated, first.skipped, first.failed), (2, 1, 1, 0, 0))
        self.assertEqual(self.requests[0]["path"], "/api/teams/team-1/antigravity/extract")
        self.assertEqual(self.requests[0]["body"]["title"], "A")

        second = await scanner.scan_once()
        self.assertEqual((second.scanned, second.skipped), (2, 2))
        self.assertEqual(len(self.requests), 2)
        self.assertIs(scanner.last_result, second)

        self._write(SESSION_A, "# A\n- [x] one", PLAN)
        third = await scanner.scan_once()
        self.assertEqual((third.synced, third.skipped), (1, 1))
        self.assertEqual(len(self.requests), 3)

    async def test_failures_are_counted_and_retried(self) -> None:
        self._write(SESSION_A, "# A")
        self._write(SESSION_B, "# B")
        self.failing.add(SESSION_B)
        scanner = self._scanner()

        result = await scanner.scan_once()

        self.assertEqual((result.synced, result.failed), (1, 1))
        self.assertEqual(len(result.errors), 1)
        self.assertTrue(result.errors[0].startswith(f"Session {SESSION_B[:8]}: "))
        self.assertIn("extractor offline", result.errors[0])
        self.assertIsNone(await self.ledger.get_fingerprint(ANTIGRAVITY_SOURCE, SESSION_B))

        self.failing.clear()
        retry = await scanner.scan_once()
        self.assertEqual((retry.synced, retry.skipped, retry.failed), (1, 1, 0))

    async def test_records_fingerprint_and_prunes_vanished_sessions(self) -> None:
        self._write(SESSION_A, "# A", PLAN)
        self._write(SESSION_C, "# C")
        scanner = self._scanner()
        await scanner.scan_once()

        session = self.parser.parse(SESSION_A)
        self.assertEqual(
            await self.ledger.get_fingerprint(ANTIGRAVITY_SOURCE, SESSION_A), session_fingerprint(session)
        )

        (self.brain / SESSION_C / "task.md").unlink()
        (self.brain / SESSION_C).rmdir()
        await scanner.scan_once()
        self.assertIsNone(await self.ledger.get_fingerprint(ANTIGRAVITY_SOURCE, SESSION_C))
        self.assertIsNotNone(await self.ledger.get_fingerprint(ANTIGRAVITY_SOURCE, SESSION_A))

    async def test_not_ready_returns_empty_result(self) -> None:
        self._write(SESSION_A, "# A")
        cases = [
            self._scanner(SyncSettings(enabled=False, team_id="team-1", access_token="tok-1")),
            self._scanner(SyncSettings(enabled=True, team_id=None, access_token="tok-1")),
            self._scanner(SyncSettings(enabled=True, team_id="team-1", access_token=None)),
            PeriodicScanner(self.ledger, self.parser, None, SETTINGS),
            PeriodicScanner(self.ledger, SessionDirectoryParser(Path(self.tmpdir.name) / "missing"), self.api, SETTINGS),
        ]
        for scanner in cases:
            result = await scanner.scan_once()
            self.assertEqual(result.scanned, 0)
            self.assertEqual(result.errors, [])
        self.assertEqual(self.requests, [])

    async def test_start_and_stop_are_idempotent(self) -> None:
        self._write(SESSION_A, "# A")
        scanner = self._scanner(interval=0.01)

        await scanner.stop()
        await scanner.start()
        with self.assertLogs("memproxy.capture", level="WARNING"):
            await scanner.start()
        self.assertTrue(scanner.is_running)

        for _ in range(100):
            if scanner.last_result is not None:
                break
            await asyncio.sleep(0.01)

        await scanner.stop()
        await scanner.stop()
        self.assertFalse(scanner.is_running)
        self.assertIsNone(scanner._task)
        self.assertEqual(scanner.last_result.scanned, 1)
        self.assertEqual(len(self.requests), 1)


if __name__ == "__main__":
    unittest.main()
