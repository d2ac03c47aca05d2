"""Parse planning-agent session directories into :class:`DirectorySession`.

Layout under the brain directory, one folder per session UUID:

* ``task.md``: checklist with a ``# Title`` heading (required)
* ``implementation_plan.md``: optional plan with ``[MODIFY] [file]`` markers
* ``*.metadata.json``: ``{summary, updatedAt}`` sidecars for either file

The code tracker directory holds ``{project}_{commit}/`` folders whose
entries are named ``{hash}_{filename}``.
"""
from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Optional

from memproxy import config
from memproxy.date_utils import utc_now_iso
from memproxy.models import DirectorySession

logger = logging.getLogger("memproxy.capture")

_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)
_CHECKED_RE = re.compile(r"- \[x\]", re.IGNORECASE)
_UNCHECKED_RE = re.compile(r"- \[ \]")
_MODIFY_RE = re.compile(r"\[MODIFY\]\s*\[([^\]]+)\]")
_FILE_URL_RE = re.compile(r"file://[^\s)]+/([^/\s)]+\.[a-z]+)", re.IGNORECASE)


def _read_text(path: Path) -> Optional[str]:
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return None


def _read_json(path: Path) -> dict[str, Any]:
    text = _read_text(path)
    if not text:
        return {}
    try:
        data = json.loads(text)
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def parse_task_title(content: str) -> str:
    for line in content.split("\n"):
        if line.startswith("# "):
            title = line[2:].strip()
            if title:
                return title
            break
    return "Untitled Task"


def completion_status(content: str) -> str:
    """``complete`` when there are no checkboxes or every box is ticked."""
    checked = len(_CHECKED_RE.findall(content))
    total = checked + len(_UNCHECKED_RE.findall(content))
    return "complete" if total == 0 or checked == total else "partial"


def files_from_plan(content: str) -> list[str]:
    files = _MODIFY_RE.findall(content)
    for name in _FILE_URL_RE.findall(content):
        if name not in files:
            files.append(name)
    return files


def build_session_payload(session: DirectorySession) -> dict[str, Any]:
    return {
        "sessionId": session.session_id,
        "projectPath": session.project_path,
        "linkedCommit": session.linked_commit,
        "title": session.title,
        "metadataSummary": session.metadata_summary,
        "planContent": session.plan_content,
        "taskContent": session.task_content,
        "filesTouched": list(session.files_touched),
        "completionStatus": session.completion_status,
        "updatedAt": session.updated_at,
    }


class SessionDirectoryParser:
    def __init__(self, brain_dir: Path | str | None = None, code_tracker_dir: Path | str | None = None):
        self.brain_dir = Path(brain_dir or config.BRAIN_DIR)
        self.code_tracker_dir = Path(code_tracker_dir or config.CODE_TRACKER_DIR)

    def exists(self) -> bool:
        return self.brain_dir.is_dir()

    def session_ids(self) -> list[str]:
        if not self.exists():
            return []
        try:
            return sorted(
                entry.name
                for entry in self.brain_dir.iterdir()
                if entry.is_dir() and _UUID_RE.match(entry.name)
            )
        except OSError as exc:
            logger.warning("Cannot list %s: %s", self.brain_dir, exc)
            return []

    def _latest_tracker(self) -> Optional[tuple[str, Optional[str], list[str]]]:
        """(project, commit, files) from the most recently modified tracker folder."""
        if not self.code_tracker_dir.is_dir():
            return None
        try:
            folders = [p for p in self.code_tracker_dir.iterdir() if p.is_dir()]
            if not folders:
                return None
            latest = max(folders, key=lambda p: p.stat().st_mtime)
            project, sep, commit = latest.name.rpartition("_")
            if not sep:
                return None
            files = []
            for entry in sorted(latest.iterdir()):
                idx = entry.name.find("_")
                if idx > 0:
                    files.append(entry.name[idx + 1:])
        except OSError as exc:
            logger.debug("Code tracker unreadable: %s", exc)
            return None
        return project, commit or None, files

    def parse(self, session_id: str) -> Optional[DirectorySession]:
        session_dir = self.brain_dir / session_id
        if not session_dir.is_dir():
            return None
        task_content = _read_text(session_dir / "task.md")
        if not task_content:
            return None

        title = parse_task_title(task_content)
        plan_content = _read_text(session_dir / "implementation_plan.md") or ""
        task_meta = _read_json(session_dir / "task.md.metadata.json")
        plan_meta = _read_json(session_dir / "implementation_plan.md.metadata.json")

        tracker = self._latest_tracker()
        project_path, linked_commit, tracked_files = tracker or ("unknown", None, [])

        files: list[str] = []
        for name in [*tracked_files, *files_from_plan(plan_content)]:
            if name not in files:
                files.append(name)

        return DirectorySession(
            session_id=session_id,
            project_path=project_path or "unknown",
            linked_commit=linked_commit,
            title=title,
            metadata_summary=plan_meta.get("summary") or task_meta.get("summary") or title,
            plan_content=plan_content,
            task_content=task_content,
            files_touched=files,
            completion_status=completion_status(task_content),
            updated_at=plan_meta.get("updatedAt") or task_meta.get("updatedAt") or utc_now_iso(),
        )
