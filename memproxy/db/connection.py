"""Database connection factory.

Opens aiosqlite connections in WAL mode. The service context owns the
connection; nothing here is cached at module level.
"""
from __future__ import annotations

import logging
from pathlib import Path

import aiosqlite

from memproxy import config

logger = logging.getLogger("memproxy.db")


async def open_connection(db_path: Path | str | None = None) -> aiosqlite.Connection:
    """Open a connection with the pragmas every memproxy process relies on."""
    target = str(db_path or config.DB_PATH)
    if target != ":memory:":
        Path(target).parent.mkdir(parents=True, exist_ok=True)
    conn = await aiosqlite.connect(target)
    conn.row_factory = aiosqlite.Row
    # WAL lets the hook process read while the proxy writes
    await conn.execute("PRAGMA journal_mode=WAL")
    await conn.execute("PRAGMA foreign_keys=ON")
    await conn.execute("PRAGMA busy_timeout=5000")
    logger.info("Database connection established: %s", target)
    return conn


async def close_connection(conn: aiosqlite.Connection | None) -> None:
    """Close a connection opened by :func:`open_connection`."""
    if conn is None:
        return
    await conn.close()
    logger.info("Database connection closed")
