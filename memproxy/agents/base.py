"""Adapter interface shared by every supported agent wire format."""
from __future__ import annotations

import json
import re
from abc import ABC, abstractmethod
from typing import Any, Mapping, Optional

from memproxy.models import AgentName, NormalizedAction, TokenUsage, ToolUseBlock

INTERNAL_TOOL_NAME = "memproxy_expand"
INTERNAL_TOOL_DESCRIPTION = (
    "Get verified project knowledge captured from earlier sessions. Returns the goal, "
    "reasoning and decisions for the given memory ids."
)

SSE_CONTENT_TYPE = "text/event-stream; charset=utf-8"
JSON_CONTENT_TYPE = "application/json"


def content_text(content: Any, separator: str = "\n") -> str:
    """Flatten string or block-list message content into plain text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and isinstance(block.get("text"), str):
                if block.get("type") in (None, "text", "input_text", "output_text"):
                    parts.append(block["text"])
        return separator.join(parts)
    return ""


def scan_goal(messages: list[Any], strip: re.Pattern | list[re.Pattern], min_length: int = 5) -> Optional[str]:
    """Newest user turn whose cleaned text is long enough, truncated to 500 chars."""
    patterns = strip if isinstance(strip, list) else [strip]
    for message in reversed(messages or []):
        if not isinstance(message, dict) or message.get("role") != "user":
            continue
        text = content_text(message.get("content"))
        for pattern in patterns:
            text = pattern.sub("", text)
        text = text.strip()
        if len(text) >= min_length:
            return text[:500]
    return None


def scan_history(messages: list[Any], strip: re.Pattern | list[re.Pattern], limit: int = 10) -> list[dict[str, str]]:
    patterns = strip if isinstance(strip, list) else [strip]
    turns = [
        m for m in (messages or [])
        if isinstance(m, dict) and m.get("role") in ("user", "assistant")
    ]
    history: list[dict[str, str]] = []
    for message in turns[-limit:]:
        text = content_text(message.get("content"))
        for pattern in patterns:
            text = pattern.sub("", text)
        text = text.strip()
        if text:
            history.append({"role": message["role"], "content": text})
    return history


def dedupe(values: list[str]) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for value in values:
        if value and value not in seen:
            seen.add(value)
            ordered.append(value)
    return ordered


def parse_json_object(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, str) or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


class AgentAdapter(ABC):
    """One agent wire protocol.

    Extraction methods are total: malformed input yields empty values and
    never raises. Injection methods return a new body and leave the caller's
    dict untouched.
    """

    name: AgentName
    endpoint: str
    upstream_url: str
    forward_header_names: tuple[str, ...] = ()
    response_header_names: tuple[str, ...] = ()

    def can_handle(self, path: str) -> bool:
        return path == self.endpoint or path.startswith(self.endpoint + "?")

    def forward_headers(self, headers: Mapping[str, str]) -> dict[str, str]:
        lowered = {k.lower(): v for k, v in headers.items()}
        result = {name: lowered[name] for name in self.forward_header_names if lowered.get(name)}
        result["content-type"] = JSON_CONTENT_TYPE
        return result

    def filter_response_headers(self, headers: Mapping[str, str]) -> dict[str, str]:
        lowered = {k.lower(): v for k, v in headers.items()}
        return {name: lowered[name] for name in self.response_header_names if lowered.get(name)}

    def response_content_type(self, was_sse: bool) -> str:
        return SSE_CONTENT_TYPE if was_sse else JSON_CONTENT_TYPE

    def get_model(self, body: Any) -> str:
        if isinstance(body, dict) and isinstance(body.get("model"), str):
            return body["model"]
        return ""

    def wants_stream(self, body: Any) -> bool:
        return isinstance(body, dict) and bool(body.get("stream"))

    def find_internal_tool_use(self, response: Any, tool_name: str = INTERNAL_TOOL_NAME) -> Optional[ToolUseBlock]:
        for block in self.get_tool_use_blocks(response):
            if block.name == tool_name:
                return block
        return None

    # ── Request-side extraction ─────────────────────────────────────

    @abstractmethod
    def get_messages(self, body: Any) -> list[Any]: ...

    @abstractmethod
    def extract_project_path(self, body: Any) -> Optional[str]: ...

    @abstractmethod
    def extract_goal(self, body: Any) -> Optional[str]: ...

    @abstractmethod
    def extract_history(self, body: Any) -> list[dict[str, str]]: ...

    # ── Response-side extraction ────────────────────────────────────

    @abstractmethod
    def extract_session_id(self, response: Any) -> Optional[str]: ...

    @abstractmethod
    def extract_text_content(self, response: Any) -> str: ...

    @abstractmethod
    def extract_usage(self, response: Any) -> TokenUsage: ...

    @abstractmethod
    def is_valid_response(self, response: Any) -> bool: ...

    @abstractmethod
    def is_subagent_model(self, model: str) -> bool: ...

    @abstractmethod
    def is_end_turn(self, response: Any) -> bool: ...

    @abstractmethod
    def is_tool_use(self, response: Any) -> bool: ...

    @abstractmethod
    def parse_actions(self, response: Any) -> list[NormalizedAction]: ...

    @abstractmethod
    def get_tool_use_blocks(self, response: Any) -> list[ToolUseBlock]: ...

    @abstractmethod
    def parse_sse(self, raw: str) -> Optional[dict[str, Any]]: ...

    # ── Outbound mutation ───────────────────────────────────────────

    @abstractmethod
    def inject_memory(self, body: dict[str, Any], memory: str) -> dict[str, Any]: ...

    @abstractmethod
    def inject_delta(self, body: dict[str, Any], delta: str) -> dict[str, Any]: ...

    @abstractmethod
    def inject_tool(self, body: dict[str, Any]) -> dict[str, Any]: ...

    @abstractmethod
    def build_continue_body(
        self,
        body: dict[str, Any],
        response: dict[str, Any],
        tool_use: ToolUseBlock,
        result: str,
    ) -> dict[str, Any]: ...
