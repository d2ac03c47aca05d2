"""Fold a finished session and its steps into a Task row."""
from __future__ import annotations

import re
from typing import Optional

from memproxy.agents.base import dedupe
from memproxy.models import Decision, SessionState, StepRecord, Task

_FILE_MENTION_RE = re.compile(r"[\w/.-]+\.(?:ts|js|tsx|jsx|py|go|rs|java|css|html|md|json|yaml|yml)\b")
_VERSION_RE = re.compile(r"^\d+\.\d+")

DECISION_KEYWORDS = (
    "decision", "decided", "chose", "chosen", "selected", "picked",
    "approach", "strategy", "solution", "implementation",
    "because", "reason", "rationale", "trade-off", "tradeoff",
    "instead of", "rather than", "prefer", "opted",
    "conclusion", "determined", "resolved",
)


def is_key_decision(action_type: str, reasoning: str) -> bool:
    if action_type in ("edit", "write"):
        return True
    lowered = (reasoning or "").lower()
    return len(reasoning or "") > 200 and any(keyword in lowered for keyword in DECISION_KEYWORDS)


def mentioned_files(text: Optional[str]) -> list[str]:
    if not text:
        return []
    return [
        match.group(0)
        for match in _FILE_MENTION_RE.finditer(text)
        if "://" not in match.group(0) and not _VERSION_RE.match(match.group(0))
    ]


def _trace_line(step: StepRecord) -> str:
    if step.action_type in ("edit", "write"):
        return f"{step.action_type}: {', '.join(step.files)}"
    if step.action_type == "bash" and step.command:
        return f"bash: {step.command[:50]}"
    return f"{step.action_type}: {len(step.files)} files"


def build_task(
    session: SessionState,
    steps: list[StepRecord],
    trigger_reason: str = "complete",
) -> Optional[Task]:
    """Return None when the session holds nothing worth remembering."""
    final_response = session.final_response or ""
    if not steps and len(final_response) <= 100 and trigger_reason != "abandoned":
        return None

    files: list[str] = []
    for step in steps:
        files.extend(step.files)
        files.extend(mentioned_files(step.reasoning))

    notable = [s for s in steps if s.is_key_decision or s.action_type in ("edit", "write")]
    decisions = [
        Decision(choice=_trace_line(step), reason=(step.reasoning or "")[:200])
        for step in notable
        if step.reasoning
    ][-5:]

    return Task(
        project_path=session.project_path,
        user=session.user_id,
        original_query=session.original_goal or "Unknown task",
        goal=session.original_goal,
        summary=final_response[:500] or None,
        reasoning_trace=[_trace_line(step) for step in notable[-10:]],
        files_touched=dedupe(files),
        decisions=decisions,
        constraints=list(session.constraints),
        status="abandoned" if trigger_reason == "abandoned" else "complete",
        trigger_reason=trigger_reason,
    )
