"""Pydantic models shared by the proxy, the stores and the sync pipeline."""
from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

AgentName = Literal["claude", "codex", "gemini"]
ActionType = Literal["edit", "write", "read", "bash", "glob", "grep", "task", "other"]
SessionStatus = Literal["active", "completed", "abandoned"]
SessionMode = Literal["agent", "plan", "ask"]
TaskType = Literal["main", "subtask", "parallel"]
DriftType = Literal["none", "minor", "major", "critical"]
CorrectionLevel = Literal["nudge", "correct", "intervene", "halt"]
TaskStatus = Literal["complete", "question", "partial", "abandoned"]
SyncStatus = Literal["pending", "syncing", "synced", "error"]

TERMINAL_SESSION_STATUSES = ("completed", "abandoned")
MAX_ESCALATION = 3


# ── Wire-level models ───────────────────────────────────────────────

class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cache_creation: int = 0
    cache_read: int = 0


class ToolUseBlock(BaseModel):
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class NormalizedAction(BaseModel):
    """Provider-agnostic view of one tool, file or command operation."""

    tool_name: str
    action_type: ActionType = "other"
    source_agent: AgentName = "claude"
    files: list[str] = Field(default_factory=list)
    folders: list[str] = Field(default_factory=list)
    command: Optional[str] = None
    raw_input: Any = None

    @property
    def modifies_files(self) -> bool:
        return self.action_type in ("edit", "write")


class PatchSummary(BaseModel):
    files: list[str] = Field(default_factory=list)
    operations: list[dict[str, str]] = Field(default_factory=list)
    has_add: bool = False
    has_delete: bool = False


# ── Session & drift models ──────────────────────────────────────────

class DriftHistoryEntry(BaseModel):
    timestamp: str
    score: float
    level: str = "none"
    prompt_summary: str = ""


class RecoveryPlan(BaseModel):
    steps: list[str] = Field(default_factory=list)
    reason: str = ""


class DriftResult(BaseModel):
    """Outcome returned by the external drift scorer."""

    score: float
    level: Optional[CorrectionLevel] = None
    drift_type: DriftType = "none"
    reason: str = ""
    correction: Optional[str] = None
    recovery_plan: Optional[RecoveryPlan] = None


class SessionState(BaseModel):
    session_id: str
    user_id: Optional[str] = None
    project_path: str = ""
    original_goal: Optional[str] = None
    expected_scope: list[str] = Field(default_factory=list)
    constraints: list[str] = Field(default_factory=list)
    keywords: list[str] = Field(default_factory=list)
    token_count: int = 0
    escalation_count: int = 0
    session_mode: SessionMode = "agent"
    waiting_for_recovery: bool = False
    last_checked_at: int = 0
    created_at: str = ""
    last_update: str = ""
    status: SessionStatus = "active"
    completed_at: Optional[str] = None
    parent_session_id: Optional[str] = None
    task_type: TaskType = "main"
    last_drift_score: Optional[float] = None
    pending_recovery_plan: Optional[dict[str, Any]] = None
    drift_history: list[DriftHistoryEntry] = Field(default_factory=list)
    drift_warnings: list[str] = Field(default_factory=list)
    pending_correction: Optional[str] = None
    final_response: Optional[str] = None


class StepRecord(BaseModel):
    id: str = ""
    session_id: str
    action_type: ActionType = "other"
    files: list[str] = Field(default_factory=list)
    folders: list[str] = Field(default_factory=list)
    command: Optional[str] = None
    reasoning: Optional[str] = None
    drift_score: Optional[float] = None
    drift_type: Optional[DriftType] = None
    is_key_decision: bool = False
    is_validated: bool = True
    correction_given: Optional[str] = None
    correction_level: Optional[CorrectionLevel] = None
    keywords: list[str] = Field(default_factory=list)
    timestamp: int = 0


class DriftLogEntry(BaseModel):
    id: str = ""
    session_id: str
    timestamp: int = 0
    action_type: Optional[ActionType] = None
    files: list[str] = Field(default_factory=list)
    folders: list[str] = Field(default_factory=list)
    command: Optional[str] = None
    reasoning: Optional[str] = None
    drift_score: float = 0
    drift_type: Optional[DriftType] = None
    drift_reason: str = ""
    correction_given: Optional[str] = None
    correction_level: Optional[CorrectionLevel] = None
    recovery_plan: Optional[dict[str, Any]] = None


# ── Tasks & sync ────────────────────────────────────────────────────

class Decision(BaseModel):
    choice: str
    reason: str = ""


class Task(BaseModel):
    id: str = ""
    project_path: str
    user: Optional[str] = None
    original_query: str
    goal: Optional[str] = None
    summary: Optional[str] = None
    reasoning_trace: list[str] = Field(default_factory=list)
    files_touched: list[str] = Field(default_factory=list)
    decisions: list[Decision] = Field(default_factory=list)
    constraints: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    status: TaskStatus = "complete"
    trigger_reason: Optional[str] = None
    linked_commit: Optional[str] = None
    parent_task_id: Optional[str] = None
    turn_number: Optional[int] = None
    sync_status: SyncStatus = "pending"
    match_id: Optional[str] = None
    sync_error: Optional[str] = None
    created_at: str = ""
    synced_at: Optional[str] = None


class TeamMemory(BaseModel):
    """A memory as returned by the team memory API search."""

    id: str
    project_path: str = ""
    user_id: Optional[str] = None
    original_query: str = ""
    goal: Optional[str] = None
    summary: Optional[str] = None
    reasoning_trace: list[str] = Field(default_factory=list)
    files_touched: list[str] = Field(default_factory=list)
    decisions: list[Decision] = Field(default_factory=list)
    constraints: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    status: str = "complete"
    linked_commit: Optional[str] = None
    created_at: str = ""


class SyncResult(BaseModel):
    synced: int = 0
    failed: int = 0
    errors: list[str] = Field(default_factory=list)
    synced_ids: list[str] = Field(default_factory=list)
    failed_ids: list[str] = Field(default_factory=list)


class ScanResult(BaseModel):
    scanned: int = 0
    synced: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[str] = Field(default_factory=list)


# ── Capture payloads ────────────────────────────────────────────────

class IdeToolCall(BaseModel):
    name: str
    params: dict[str, Any] = Field(default_factory=dict)


class ConversationPair(BaseModel):
    composer_id: str
    turn_id: str
    mode: SessionMode = "agent"
    user_text: str = ""
    user_timestamp: int = 0
    text: str = ""
    thinking: str = ""
    tool_calls: list[IdeToolCall] = Field(default_factory=list)
    bubble_count: int = 0


class DirectorySession(BaseModel):
    session_id: str
    project_path: str = "unknown"
    linked_commit: Optional[str] = None
    title: str = ""
    metadata_summary: str = ""
    plan_content: str = ""
    task_content: str = ""
    files_touched: list[str] = Field(default_factory=list)
    completion_status: Literal["complete", "partial"] = "complete"
    updated_at: str = ""
