"""Codex (OpenAI Responses) request extractors."""
from __future__ import annotations

import re
from typing import Any, Optional

from memproxy.agents.base import content_text, scan_goal, scan_history

_CWD_RE = re.compile(r"<cwd>(.+?)</cwd>")
_WRAPPER_RE = re.compile(r"<[^>]+>[^<]*</[^>]+>")


def input_items(body: Any) -> list[Any]:
    if not isinstance(body, dict):
        return []
    items = body.get("input")
    if isinstance(items, list):
        return items
    if isinstance(items, str):
        return [{"role": "user", "content": items}]
    return []


def extract_project_path(body: Any) -> Optional[str]:
    for item in input_items(body):
        if not isinstance(item, dict) or "content" not in item:
            continue
        match = _CWD_RE.search(content_text(item.get("content")))
        if match:
            return match.group(1).strip() or None
    return None


def extract_goal(items: list[Any]) -> Optional[str]:
    return scan_goal(items, _WRAPPER_RE)


def extract_history(items: list[Any]) -> list[dict[str, str]]:
    return scan_history(items, _WRAPPER_RE)
