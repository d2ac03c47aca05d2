"""Map Claude tool_use blocks onto normalized actions."""
from __future__ import annotations

import re
from typing import Any, Optional

from memproxy.agents.base import dedupe
from memproxy.models import NormalizedAction

TOOL_ACTION_MAP = {
    "Edit": "edit",
    "Write": "write",
    "Read": "read",
    "Bash": "bash",
    "Glob": "glob",
    "Grep": "grep",
    "Task": "task",
    "MultiEdit": "edit",
    "NotebookEdit": "edit",
}

_ABSOLUTE_PATH_RE = re.compile(r"(?:^|\s)(/[^\s\"']+)")
_QUOTED_PATH_RE = re.compile(r"[\"'](/[^\"']+)[\"']")
_PSEUDO_FS_PREFIXES = ("/dev/", "/proc/", "/sys/")

_MODIFYING_BASH_PATTERNS = [
    re.compile(p)
    for p in (
        r"\brm\b",
        r"\bmv\b",
        r"\bcp\b",
        r"\bmkdir\b",
        r"\btouch\b",
        r"\bchmod\b",
        r"\bsed\b.*-i",
        r"\btee\b",
        r">",
        r"\bgit\s+(add|commit|push|checkout|reset)",
    )
]


def files_from_bash_command(command: str) -> list[str]:
    files = [
        path
        for path in _ABSOLUTE_PATH_RE.findall(command)
        if not path.startswith(_PSEUDO_FS_PREFIXES)
    ]
    files.extend(_QUOTED_PATH_RE.findall(command))
    return files


def glob_base_path(pattern: str) -> Optional[str]:
    """Leading non-wildcard segments of a glob pattern."""
    parts: list[str] = []
    for part in pattern.split("/"):
        if any(ch in part for ch in "*?["):
            break
        parts.append(part)
    joined = "/".join(parts)
    return joined or None


def is_modifying_bash(command: str | None) -> bool:
    return bool(command) and any(p.search(command) for p in _MODIFYING_BASH_PATTERNS)


def parse_tool_use(block: dict[str, Any]) -> NormalizedAction:
    name = str(block.get("name") or "")
    tool_input = block.get("input") if isinstance(block.get("input"), dict) else {}
    files: list[str] = []
    folders: list[str] = []
    command: Optional[str] = None

    if name in ("Edit", "Write", "Read", "NotebookEdit"):
        for key in ("file_path", "notebook_path"):
            if isinstance(tool_input.get(key), str):
                files.append(tool_input[key])
    elif name == "MultiEdit":
        if isinstance(tool_input.get("file_path"), str):
            files.append(tool_input["file_path"])
        for edit in tool_input.get("edits") or []:
            if isinstance(edit, dict) and isinstance(edit.get("file_path"), str):
                files.append(edit["file_path"])
    elif name == "Bash":
        if isinstance(tool_input.get("command"), str):
            command = tool_input["command"]
            files.extend(files_from_bash_command(command))
    elif name == "Glob":
        if isinstance(tool_input.get("path"), str):
            folders.append(tool_input["path"])
        if isinstance(tool_input.get("pattern"), str):
            base = glob_base_path(tool_input["pattern"])
            if base:
                folders.append(base)
    elif name == "Grep":
        if isinstance(tool_input.get("path"), str):
            folders.append(tool_input["path"])

    return NormalizedAction(
        tool_name=name or "unknown",
        action_type=TOOL_ACTION_MAP.get(name, "other"),
        source_agent="claude",
        files=dedupe(files),
        folders=dedupe(folders),
        command=command,
        raw_input=tool_input,
    )


def parse_response_actions(response: Any) -> list[NormalizedAction]:
    if not isinstance(response, dict) or not isinstance(response.get("content"), list):
        return []
    return [
        parse_tool_use(block)
        for block in response["content"]
        if isinstance(block, dict) and block.get("type") == "tool_use"
    ]
