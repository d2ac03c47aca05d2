"""Row decoding helpers shared by the SQLite repositories."""
from __future__ import annotations

import json
from typing import Any


def safe_json_list(raw: str | list | None) -> list:
    if not raw:
        return []
    if isinstance(raw, list):
        return raw
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return []
    return parsed if isinstance(parsed, list) else []


def safe_json_dict(raw: str | dict | None) -> dict | None:
    if not raw:
        return None
    if isinstance(raw, dict):
        return raw
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return None
    return parsed if isinstance(parsed, dict) else None


def dump_json(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value)
