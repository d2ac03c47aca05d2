"""Shared timestamp helpers."""
from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone
from typing import Any


def _format_datetime_utc(value: datetime) -> str:
    dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def utc_now_iso() -> str:
    return _format_datetime_utc(datetime.now(timezone.utc))


def iso_seconds_ago(seconds: float) -> str:
    """ISO cutoff usable in string comparisons against stored timestamps."""
    return _format_datetime_utc(datetime.now(timezone.utc) - timedelta(seconds=seconds))


def now_ms() -> int:
    return int(time.time() * 1000)


def iso_to_epoch(value: Any) -> float:
    """Parse an ISO timestamp into epoch seconds; unparseable input maps to 0."""
    if not isinstance(value, str) or not value.strip():
        return 0.0
    try:
        dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return 0.0
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()
