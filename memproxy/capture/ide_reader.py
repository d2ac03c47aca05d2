"""Read-only access to the IDE's ``state.vscdb`` conversation store.

Conversations live in the ``cursorDiskKV`` key/value table:

* ``composerData:{composer}``: composer metadata (``createdAt``)
* ``bubbleId:{composer}:{bubble}``: one message; ``type`` 1 is the user,
  2 the assistant. User bubbles carry ``requestId`` and assistant bubbles
  carry the same value as ``usageUuid``, which identifies a turn.
* ``messageRequestContext:{composer}:{bubble}``: editor state at send time
"""
from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Optional

import aiosqlite

from memproxy.date_utils import iso_to_epoch
from memproxy.models import ConversationPair, IdeToolCall, SessionMode

logger = logging.getLogger("memproxy.capture")

KV_TABLE = "cursorDiskKV"
USER_BUBBLE = 1
ASSISTANT_BUBBLE = 2

_PROJECT_ROOT_RE = re.compile(r"^(/[^/]+(?:/[^/]+)*?)/(?:src|lib|test|tests|app|packages|node_modules)/")


def mode_from_unified(value: Any) -> SessionMode:
    if value == 1:
        return "ask"
    if value == 5:
        return "plan"
    return "agent"


def _timestamp(value: Any) -> int:
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str) and value.strip():
        if value.strip().isdigit():
            return int(value.strip())
        return int(iso_to_epoch(value) * 1000)
    return 0


def _loads(raw: Any) -> Any:
    if isinstance(raw, (dict, list)):
        return raw
    if not isinstance(raw, (str, bytes)) or not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return None


class IdeStateReader:
    """Usage::

        async with IdeStateReader(path) as reader:
            composer = await reader.latest_composer_id()
    """

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)
        self._db: Optional[aiosqlite.Connection] = None

    def exists(self) -> bool:
        return self.db_path.exists()

    async def __aenter__(self) -> "IdeStateReader":
        self._db = await aiosqlite.connect(f"file:{self.db_path}?mode=ro", uri=True)
        self._db.row_factory = aiosqlite.Row
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("IdeStateReader used outside 'async with'")
        return self._db

    async def _get_value(self, key: str) -> Any:
        async with self.db.execute(f"SELECT value FROM {KV_TABLE} WHERE key = ?", (key,)) as cur:
            row = await cur.fetchone()
        return _loads(row["value"]) if row else None

    async def _bubbles(self, composer_id: str) -> list[dict[str, Any]]:
        async with self.db.execute(
            f"SELECT key, value FROM {KV_TABLE} WHERE key LIKE ?",
            (f"bubbleId:{composer_id}:%",),
        ) as cur:
            rows = await cur.fetchall()
        bubbles = []
        for row in rows:
            data = _loads(row["value"])
            if isinstance(data, dict):
                data.setdefault("bubbleId", row["key"].rsplit(":", 1)[-1])
                bubbles.append(data)
        bubbles.sort(key=lambda b: _timestamp(b.get("createdAt")))
        return bubbles

    async def _bubble_count(self, composer_id: str) -> int:
        async with self.db.execute(
            f"SELECT COUNT(*) AS count FROM {KV_TABLE} WHERE key LIKE ?",
            (f"bubbleId:{composer_id}:%",),
        ) as cur:
            row = await cur.fetchone()
        return int(row["count"]) if row else 0

    async def latest_composer_id(self) -> Optional[str]:
        """Newest composer (by ``createdAt``) that has at least one bubble."""
        async with self.db.execute(
            f"SELECT key, value FROM {KV_TABLE} WHERE key LIKE 'composerData:%'"
        ) as cur:
            rows = await cur.fetchall()
        composers = []
        for row in rows:
            data = _loads(row["value"])
            created = _timestamp(data.get("createdAt")) if isinstance(data, dict) else 0
            if created:
                composers.append((created, row["key"].split(":", 1)[1]))
        for _, composer_id in sorted(composers, reverse=True):
            if await self._bubble_count(composer_id) > 0:
                return composer_id
        return None

    async def composer_project_path(self, composer_id: str) -> str:
        """Project root from editor state, falling back to tool file paths."""
        bubbles = await self._bubbles(composer_id)
        user = next((b for b in bubbles if b.get("type") == USER_BUBBLE), None)
        if user is not None:
            context = await self._get_value(f"messageRequestContext:{composer_id}:{user['bubbleId']}")
            editors = _loads(context.get("ideEditorsState")) if isinstance(context, dict) else None
            visible = editors.get("visibleFiles") if isinstance(editors, dict) else None
            first = visible[0] if isinstance(visible, list) and visible else None
            if isinstance(first, dict):
                relative = first.get("relativePath") or ""
                absolute = first.get("absolutePath") or ""
                if relative and absolute.endswith(relative):
                    return absolute[: -(len(relative) + 1)]

        for bubble in bubbles:
            tool = _loads(bubble.get("toolFormerData"))
            params = _loads(tool.get("params")) if isinstance(tool, dict) else None
            if not isinstance(params, dict):
                continue
            for key in ("targetFile", "relativeWorkspacePath", "file_path", "path"):
                value = params.get(key)
                if isinstance(value, str) and value.startswith("/"):
                    match = _PROJECT_ROOT_RE.match(value)
                    if match:
                        return match.group(1)
        return ""

    async def latest_turn_id(self, composer_id: str) -> Optional[str]:
        """Newest turn id that has a user bubble and some assistant content."""
        bubbles = await self._bubbles(composer_id)
        with_user = {
            b["requestId"] for b in bubbles
            if b.get("type") == USER_BUBBLE and b.get("requestId")
        }
        latest: dict[str, tuple[int, bool]] = {}
        for bubble in bubbles:
            turn = bubble.get("usageUuid") or bubble.get("requestId")
            if not turn or turn not in with_user:
                continue
            thinking = bubble.get("thinking")
            has_content = bool(bubble.get("text")) or (
                isinstance(thinking, dict) and bool(thinking.get("text"))
            )
            stamp = _timestamp(bubble.get("createdAt"))
            prev_stamp, prev_content = latest.get(turn, (0, False))
            latest[turn] = (max(prev_stamp, stamp), prev_content or has_content)

        best: Optional[str] = None
        best_time = 0
        for turn, (stamp, has_content) in latest.items():
            if has_content and stamp > best_time:
                best, best_time = turn, stamp
        return best

    async def conversation_pair(self, composer_id: str, turn_id: str) -> Optional[ConversationPair]:
        bubbles = [
            b for b in await self._bubbles(composer_id)
            if b.get("usageUuid") == turn_id or b.get("requestId") == turn_id
        ]
        user = next((b for b in bubbles if b.get("type") == USER_BUBBLE), None)
        if user is None:
            return None
        assistant = [b for b in bubbles if b.get("type") == ASSISTANT_BUBBLE]

        thinking_parts = []
        for bubble in assistant:
            thinking = bubble.get("thinking")
            if isinstance(thinking, dict) and thinking.get("text"):
                thinking_parts.append(thinking["text"])

        final_text = next((b["text"] for b in reversed(assistant) if b.get("text")), "")

        tool_calls = []
        for bubble in assistant:
            tool = _loads(bubble.get("toolFormerData"))
            if isinstance(tool, dict) and tool.get("name"):
                params = _loads(tool.get("params"))
                tool_calls.append(IdeToolCall(name=tool["name"], params=params if isinstance(params, dict) else {}))

        return ConversationPair(
            composer_id=composer_id,
            turn_id=turn_id,
            mode=mode_from_unified(assistant[0].get("unifiedMode") if assistant else None),
            user_text=user.get("text") or "",
            user_timestamp=_timestamp(user.get("createdAt")),
            text=final_text,
            thinking="\n\n".join(thinking_parts),
            tool_calls=tool_calls,
            bubble_count=len(assistant),
        )

    async def current_workspace(self) -> Optional[str]:
        """Most recently opened folder, index 0 of the recent list."""
        try:
            async with self.db.execute(
                "SELECT value FROM ItemTable WHERE key = ?", ("history.recentlyOpenedPathsList",)
            ) as cur:
                row = await cur.fetchone()
        except aiosqlite.OperationalError as exc:
            logger.debug("No recent workspace list: %s", exc)
            return None
        data = _loads(row["value"]) if row else None
        entries = data.get("entries") if isinstance(data, dict) else None
        if not isinstance(entries, list) or not entries or not isinstance(entries[0], dict):
            return None
        folder = entries[0].get("folderUri")
        if not isinstance(folder, str) or not folder:
            return None
        return folder.replace("file://", "", 1)
