"""Database schema creation and versioning.

All CREATE TABLE statements for the local store.
Uses IF NOT EXISTS for idempotent runs.
"""
from __future__ import annotations

import logging

import aiosqlite

logger = logging.getLogger("memproxy.db")

SCHEMA_VERSION = 3

_TABLES = """
-- ── Schema version tracking ────────────────────────────────────────
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TEXT NOT NULL DEFAULT (datetime('now'))
);

-- ── 1. Session state ───────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS session_states (
    session_id            TEXT PRIMARY KEY,
    user_id               TEXT,
    project_path          TEXT NOT NULL DEFAULT '',
    original_goal         TEXT,
    expected_scope        TEXT NOT NULL DEFAULT '[]',
    constraints           TEXT NOT NULL DEFAULT '[]',
    keywords              TEXT NOT NULL DEFAULT '[]',
    token_count           INTEGER NOT NULL DEFAULT 0,
    escalation_count      INTEGER NOT NULL DEFAULT 0
                          CHECK (escalation_count BETWEEN 0 AND 3),
    session_mode          TEXT NOT NULL DEFAULT 'agent'
                          CHECK (session_mode IN ('agent', 'plan', 'ask')),
    waiting_for_recovery  INTEGER NOT NULL DEFAULT 0,
    last_checked_at       INTEGER NOT NULL DEFAULT 0,
    created_at            TEXT NOT NULL,
    last_update           TEXT NOT NULL,
    status                TEXT NOT NULL DEFAULT 'active'
                          CHECK (status IN ('active', 'completed', 'abandoned')),
    completed_at          TEXT,
    parent_session_id     TEXT REFERENCES session_states(session_id),
    task_type             TEXT NOT NULL DEFAULT 'main'
                          CHECK (task_type IN ('main', 'subtask', 'parallel')),
    last_drift_score      REAL,
    pending_recovery_plan TEXT,
    drift_history         TEXT NOT NULL DEFAULT '[]',
    drift_warnings        TEXT NOT NULL DEFAULT '[]',
    pending_correction    TEXT
);

CREATE INDEX IF NOT EXISTS idx_session_states_project ON session_states(project_path, status, last_update DESC);
CREATE INDEX IF NOT EXISTS idx_session_states_parent  ON session_states(parent_session_id);

-- ── 2. Steps ───────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS steps (
    id                TEXT PRIMARY KEY,
    session_id        TEXT NOT NULL REFERENCES session_states(session_id),
    action_type       TEXT NOT NULL
                      CHECK (action_type IN ('edit', 'write', 'bash', 'read', 'glob', 'grep', 'task', 'other')),
    files             TEXT NOT NULL DEFAULT '[]',
    folders           TEXT NOT NULL DEFAULT '[]',
    command           TEXT,
    reasoning         TEXT,
    drift_score       REAL,
    drift_type        TEXT CHECK (drift_type IN ('none', 'minor', 'major', 'critical')),
    is_key_decision   INTEGER NOT NULL DEFAULT 0,
    is_validated      INTEGER NOT NULL DEFAULT 1,
    correction_given  TEXT,
    correction_level  TEXT CHECK (correction_level IN ('nudge', 'correct', 'intervene', 'halt')),
    keywords          TEXT NOT NULL DEFAULT '[]',
    timestamp         INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_steps_session ON steps(session_id, timestamp);

-- ── 3. Drift log ───────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS drift_log (
    id                TEXT PRIMARY KEY,
    session_id        TEXT NOT NULL REFERENCES session_states(session_id),
    timestamp         INTEGER NOT NULL,
    action_type       TEXT,
    files             TEXT NOT NULL DEFAULT '[]',
    folders           TEXT NOT NULL DEFAULT '[]',
    command           TEXT,
    reasoning         TEXT,
    drift_score       REAL NOT NULL DEFAULT 0,
    drift_type        TEXT,
    drift_reason      TEXT NOT NULL DEFAULT '',
    correction_given  TEXT,
    correction_level  TEXT,
    recovery_plan     TEXT
);

CREATE INDEX IF NOT EXISTS idx_drift_log_session ON drift_log(session_id, timestamp);

-- ── 4. Pending tasks ───────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS tasks (
    id               TEXT PRIMARY KEY,
    project_path     TEXT NOT NULL,
    user             TEXT,
    original_query   TEXT NOT NULL,
    goal             TEXT,
    summary          TEXT,
    reasoning_trace  TEXT NOT NULL DEFAULT '[]',
    files_touched    TEXT NOT NULL DEFAULT '[]',
    decisions        TEXT NOT NULL DEFAULT '[]',
    constraints      TEXT NOT NULL DEFAULT '[]',
    tags             TEXT NOT NULL DEFAULT '[]',
    status           TEXT NOT NULL DEFAULT 'complete'
                     CHECK (status IN ('complete', 'question', 'partial', 'abandoned')),
    trigger_reason   TEXT,
    linked_commit    TEXT,
    parent_task_id   TEXT,
    turn_number      INTEGER,
    sync_status      TEXT NOT NULL DEFAULT 'pending'
                     CHECK (sync_status IN ('pending', 'syncing', 'synced', 'error')),
    sync_error       TEXT,
    created_at       TEXT NOT NULL,
    synced_at        TEXT
);

CREATE INDEX IF NOT EXISTS idx_tasks_sync ON tasks(sync_status, created_at);
CREATE INDEX IF NOT EXISTS idx_tasks_project ON tasks(project_path, created_at DESC);

-- ── 5. Capture ledgers ─────────────────────────────────────────────
-- One row per (source, composer, turn); the unique key is the upload guard
CREATE TABLE IF NOT EXISTS capture_ledger (
    source       TEXT NOT NULL,
    composer_id  TEXT NOT NULL,
    turn_id      TEXT NOT NULL,
    status       TEXT NOT NULL DEFAULT 'claimed'
                 CHECK (status IN ('claimed', 'synced', 'skipped', 'error')),
    claimed_at   TEXT NOT NULL,
    synced_at    TEXT,
    error        TEXT,
    UNIQUE (source, composer_id, turn_id)
);

CREATE TABLE IF NOT EXISTS plan_buffer (
    composer_id    TEXT PRIMARY KEY,
    turn_ids       TEXT NOT NULL DEFAULT '[]',
    last_activity  REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS scan_ledger (
    source       TEXT NOT NULL,
    session_id   TEXT NOT NULL,
    fingerprint  TEXT NOT NULL,
    synced_at    TEXT NOT NULL,
    PRIMARY KEY (source, session_id)
);
"""


async def _column_exists(db: aiosqlite.Connection, table: str, column: str) -> bool:
    async with db.execute(f"PRAGMA table_info({table})") as cur:
        rows = await cur.fetchall()
    return any(row[1] == column for row in rows)


async def _ensure_column(db: aiosqlite.Connection, table: str, column: str, definition: str) -> None:
    if await _column_exists(db, table, column):
        return
    await db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")


async def run_migrations(db: aiosqlite.Connection) -> None:
    """Create all tables. Idempotent."""
    try:
        async with db.execute("SELECT MAX(version) FROM schema_version") as cur:
            row = await cur.fetchone()
            current_version = row[0] if row and row[0] else 0
    except aiosqlite.OperationalError:
        current_version = 0

    if current_version >= SCHEMA_VERSION:
        logger.info("Schema is up to date (version %s)", current_version)
        return

    logger.info("Running migrations: %s -> %s", current_version, SCHEMA_VERSION)
    await db.executescript(_TABLES)

    # v2: final assistant text kept for task summaries
    await _ensure_column(db, "session_states", "final_response", "TEXT")
    # v3: server-assigned dedup target for memory updates
    await _ensure_column(db, "tasks", "match_id", "TEXT")

    await db.execute(
        "INSERT INTO schema_version (version) VALUES (?)",
        (SCHEMA_VERSION,),
    )
    await db.commit()
    logger.info("Migrations complete, schema version %s", SCHEMA_VERSION)
