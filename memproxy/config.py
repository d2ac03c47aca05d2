"""memproxy configuration."""
import json
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger("memproxy.config")


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


HOME_DIR = Path(os.getenv("MEMPROXY_HOME", str(Path.home() / ".memproxy")))

# Database
DB_PATH = Path(os.getenv("MEMPROXY_DB_PATH", str(HOME_DIR / "memory.db")))

# Server settings
HOST = os.getenv("MEMPROXY_HOST", "127.0.0.1")
PORT = _env_int("MEMPROXY_PORT", 8080)

# Upstream providers
ANTHROPIC_TARGET = os.getenv("ANTHROPIC_TARGET", "https://api.anthropic.com")
OPENAI_TARGET = os.getenv("OPENAI_TARGET", "https://api.openai.com")
REQUEST_TIMEOUT_SECONDS = _env_int("MEMPROXY_REQUEST_TIMEOUT_SECONDS", 300)

# Team memory API
API_URL = os.getenv("MEMPROXY_API_URL", "https://api.memproxy.dev").rstrip("/")
CREDENTIALS_PATH = Path(os.getenv("MEMPROXY_CREDENTIALS_PATH", str(HOME_DIR / "credentials.json")))
API_TIMEOUT_SECONDS = _env_int("MEMPROXY_API_TIMEOUT_SECONDS", 30)

# Cloud sync tuning
SYNC_BATCH_SIZE = _env_int("MEMPROXY_SYNC_BATCH_SIZE", 10)
SYNC_RETRY_ATTEMPTS = _env_int("MEMPROXY_SYNC_RETRY_ATTEMPTS", 3)
SYNC_RETRY_DELAY_MS = _env_int("MEMPROXY_SYNC_RETRY_DELAY_MS", 1000)
EAGER_SYNC = _env_bool("MEMPROXY_EAGER_SYNC", True)
SYNCED_TASK_RETENTION = _env_int("MEMPROXY_SYNCED_TASK_RETENTION", 500)
RETRY_FAILED_SYNC = _env_bool("MEMPROXY_RETRY_FAILED_SYNC", False)

# Session lifecycle
STALE_SESSION_SECONDS = _env_int("MEMPROXY_STALE_SESSION_SECONDS", 3600)
PURGE_AFTER_SECONDS = _env_int("MEMPROXY_PURGE_AFTER_SECONDS", 86400)
MAINTENANCE_INTERVAL_SECONDS = _env_int("MEMPROXY_MAINTENANCE_INTERVAL_SECONDS", 300)

# Capture pipeline
DRIFT_CHECK_INTERVAL = _env_int("MEMPROXY_DRIFT_CHECK_INTERVAL", 3)
DRIFT_SKIP_THRESHOLD = _env_int("MEMPROXY_DRIFT_SKIP_THRESHOLD", 5)
MAX_INTERNAL_TOOL_ITERATIONS = _env_int("MEMPROXY_MAX_INTERNAL_TOOL_ITERATIONS", 5)
MEMORY_INJECTION_ENABLED = _env_bool("MEMPROXY_MEMORY_INJECTION_ENABLED", True)
TEAM_MEMORY_LIMIT = _env_int("MEMPROXY_TEAM_MEMORY_LIMIT", 3)
TEAM_MEMORY_CONTEXT_CHARS = 2000
TEAM_MEMORY_MAX_FILES = 20

# Capture scanners
HOOK_SETTLE_SECONDS = _env_int("MEMPROXY_HOOK_SETTLE_SECONDS", 3)
PLAN_TIMEOUT_SECONDS = _env_int("MEMPROXY_PLAN_TIMEOUT_SECONDS", 300)
SCAN_INTERVAL_SECONDS = _env_int("MEMPROXY_SCAN_INTERVAL_SECONDS", 180)
SCANNER_ENABLED = _env_bool("MEMPROXY_SCANNER_ENABLED", True)
BRAIN_DIR = Path(os.getenv("MEMPROXY_BRAIN_DIR", str(Path.home() / ".gemini" / "antigravity" / "brain")))
CODE_TRACKER_DIR = Path(
    os.getenv(
        "MEMPROXY_CODE_TRACKER_DIR",
        str(Path.home() / ".gemini" / "antigravity" / "code_tracker" / "active"),
    )
)


def _default_ide_state_db() -> Path:
    home = Path.home()
    if sys.platform == "darwin":
        return home / "Library" / "Application Support" / "Cursor" / "User" / "globalStorage" / "state.vscdb"
    if sys.platform == "win32":
        appdata = Path(os.getenv("APPDATA", str(home / "AppData" / "Roaming")))
        return appdata / "Cursor" / "User" / "globalStorage" / "state.vscdb"
    return home / ".config" / "Cursor" / "User" / "globalStorage" / "state.vscdb"


IDE_STATE_DB = Path(os.getenv("MEMPROXY_IDE_STATE_DB", str(_default_ide_state_db())))

# Observability
OTEL_ENABLED = _env_bool("MEMPROXY_OTEL_ENABLED", False)
OTEL_ENDPOINT = os.getenv("MEMPROXY_OTEL_ENDPOINT", "http://localhost:4318")
OTEL_SERVICE_NAME = os.getenv("MEMPROXY_OTEL_SERVICE_NAME", "memproxy")
PROM_PORT = _env_int("MEMPROXY_PROM_PORT", 9464)


@dataclass
class SyncSettings:
    """Read-only view of the sync credentials written by the login flow."""

    enabled: bool = False
    team_id: Optional[str] = None
    access_token: Optional[str] = None
    user_id: Optional[str] = None


def load_sync_settings(path: Path | None = None) -> SyncSettings:
    """Load sync settings from the credentials file, then apply env overrides."""
    path = path or CREDENTIALS_PATH
    data: dict = {}
    if path.exists():
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            if isinstance(raw, dict):
                data = raw
        except (OSError, ValueError) as exc:
            logger.warning("Unreadable credentials file %s: %s", path, exc)

    settings = SyncSettings(
        enabled=bool(data.get("sync_enabled", False)),
        team_id=data.get("team_id") or None,
        access_token=data.get("access_token") or None,
        user_id=data.get("user_id") or None,
    )
    if os.getenv("MEMPROXY_SYNC_ENABLED") is not None:
        settings.enabled = _env_bool("MEMPROXY_SYNC_ENABLED")
    settings.team_id = os.getenv("MEMPROXY_TEAM_ID", settings.team_id or "") or None
    settings.access_token = os.getenv("MEMPROXY_ACCESS_TOKEN", settings.access_token or "") or None
    return settings


def mask_secret(value: str | None) -> str:
    """Keep the first 7 and last 4 characters of a secret for logging."""
    if not value:
        return "<none>"
    if len(value) <= 10:
        return "***"
    return f"{value[:7]}...{value[-4:]}"
