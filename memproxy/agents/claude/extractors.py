"""Claude (Anthropic Messages) request extractors."""
from __future__ import annotations

import re
from typing import Any, Optional

from memproxy.agents.base import content_text, scan_goal, scan_history

_WORKING_DIR_RE = re.compile(r"Working directory:\s*([^\n]+)")
_REMINDER_PATTERNS = [
    re.compile(r"<system-reminder>[\s\S]*?</system-reminder>"),
    re.compile(r"</system-reminder>"),
    re.compile(r"<system-reminder>[^<]*"),
]


def system_text(body: Any) -> str:
    if not isinstance(body, dict):
        return ""
    return content_text(body.get("system"))


def extract_project_path(body: Any) -> Optional[str]:
    match = _WORKING_DIR_RE.search(system_text(body))
    if not match:
        return None
    return match.group(1).strip() or None


def extract_goal(messages: list[Any]) -> Optional[str]:
    return scan_goal(messages, _REMINDER_PATTERNS)


def extract_history(messages: list[Any]) -> list[dict[str, str]]:
    return scan_history(messages, _REMINDER_PATTERNS)
