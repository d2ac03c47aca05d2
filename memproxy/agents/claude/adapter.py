"""Adapter for the Anthropic Messages wire format."""
from __future__ import annotations

import copy
from typing import Any, Optional

from memproxy import config
from memproxy.agents.base import (
    INTERNAL_TOOL_DESCRIPTION,
    INTERNAL_TOOL_NAME,
    AgentAdapter,
    content_text,
)
from memproxy.agents.claude import extractors
from memproxy.agents.claude.tools import parse_response_actions
from memproxy.agents.sse import reassemble_messages_stream
from memproxy.models import NormalizedAction, TokenUsage, ToolUseBlock


def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


class ClaudeAdapter(AgentAdapter):
    name = "claude"
    endpoint = "/v1/messages"
    forward_header_names = (
        "x-api-key",
        "authorization",
        "anthropic-version",
        "anthropic-beta",
    )
    response_header_names = (
        "content-type",
        "x-request-id",
        "request-id",
        "x-should-retry",
        "retry-after",
        "retry-after-ms",
        "anthropic-ratelimit-requests-limit",
        "anthropic-ratelimit-requests-remaining",
        "anthropic-ratelimit-requests-reset",
        "anthropic-ratelimit-tokens-limit",
        "anthropic-ratelimit-tokens-remaining",
        "anthropic-ratelimit-tokens-reset",
    )

    def __init__(self, upstream_base: str | None = None):
        self.upstream_url = f"{(upstream_base or config.ANTHROPIC_TARGET).rstrip('/')}/v1/messages"

    def get_messages(self, body: Any) -> list[Any]:
        if isinstance(body, dict) and isinstance(body.get("messages"), list):
            return body["messages"]
        return []

    def extract_project_path(self, body: Any) -> Optional[str]:
        return extractors.extract_project_path(body)

    def extract_goal(self, body: Any) -> Optional[str]:
        return extractors.extract_goal(self.get_messages(body))

    def extract_history(self, body: Any) -> list[dict[str, str]]:
        return extractors.extract_history(self.get_messages(body))

    def extract_session_id(self, response: Any) -> Optional[str]:
        if isinstance(response, dict) and isinstance(response.get("id"), str):
            return response["id"]
        return None

    def extract_text_content(self, response: Any) -> str:
        if not isinstance(response, dict):
            return ""
        return content_text(response.get("content"))

    def extract_usage(self, response: Any) -> TokenUsage:
        usage = response.get("usage") if isinstance(response, dict) else None
        if not isinstance(usage, dict):
            return TokenUsage()
        input_tokens = _as_int(usage.get("input_tokens"))
        output_tokens = _as_int(usage.get("output_tokens"))
        return TokenUsage(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
            cache_creation=_as_int(usage.get("cache_creation_input_tokens")),
            cache_read=_as_int(usage.get("cache_read_input_tokens")),
        )

    def is_valid_response(self, response: Any) -> bool:
        return (
            isinstance(response, dict)
            and response.get("type") == "message"
            and "content" in response
            and "usage" in response
        )

    def is_subagent_model(self, model: str) -> bool:
        return "haiku" in (model or "").lower()

    def is_end_turn(self, response: Any) -> bool:
        return isinstance(response, dict) and response.get("stop_reason") == "end_turn"

    def is_tool_use(self, response: Any) -> bool:
        return isinstance(response, dict) and response.get("stop_reason") == "tool_use"

    def parse_actions(self, response: Any) -> list[NormalizedAction]:
        return parse_response_actions(response)

    def get_tool_use_blocks(self, response: Any) -> list[ToolUseBlock]:
        if not isinstance(response, dict) or not isinstance(response.get("content"), list):
            return []
        blocks = []
        for block in response["content"]:
            if isinstance(block, dict) and block.get("type") == "tool_use":
                blocks.append(
                    ToolUseBlock(
                        id=str(block.get("id") or ""),
                        name=str(block.get("name") or ""),
                        input=block.get("input") if isinstance(block.get("input"), dict) else {},
                    )
                )
        return blocks

    def parse_sse(self, raw: str) -> Optional[dict[str, Any]]:
        return reassemble_messages_stream(raw)

    def inject_memory(self, body: dict[str, Any], memory: str) -> dict[str, Any]:
        result = copy.deepcopy(body)
        system = result.get("system")
        if isinstance(system, str) and system:
            result["system"] = f"{system}\n\n{memory}"
        elif isinstance(system, list):
            result["system"] = [*system, {"type": "text", "text": memory}]
        else:
            result["system"] = memory
        return result

    def inject_delta(self, body: dict[str, Any], delta: str) -> dict[str, Any]:
        result = copy.deepcopy(body)
        messages = self.get_messages(result)
        for message in reversed(messages):
            if not isinstance(message, dict) or message.get("role") != "user":
                continue
            content = message.get("content")
            if isinstance(content, str):
                message["content"] = f"{content}\n\n{delta}"
            elif isinstance(content, list):
                message["content"] = [*content, {"type": "text", "text": delta}]
            break
        return result

    def inject_tool(self, body: dict[str, Any]) -> dict[str, Any]:
        result = copy.deepcopy(body)
        tools = list(result.get("tools") or [])
        if any(isinstance(t, dict) and t.get("name") == INTERNAL_TOOL_NAME for t in tools):
            return result
        tools.append(
            {
                "name": INTERNAL_TOOL_NAME,
                "description": INTERNAL_TOOL_DESCRIPTION,
                "input_schema": {
                    "type": "object",
                    "properties": {
                        "ids": {"type": "array", "items": {"type": "string"}},
                    },
                    "required": ["ids"],
                },
            }
        )
        result["tools"] = tools
        return result

    def build_continue_body(
        self,
        body: dict[str, Any],
        response: dict[str, Any],
        tool_use: ToolUseBlock,
        result: str,
    ) -> dict[str, Any]:
        continued = copy.deepcopy(body)
        messages = list(self.get_messages(continued))
        messages.append({"role": "assistant", "content": response.get("content") or []})
        messages.append(
            {
                "role": "user",
                "content": [
                    {"type": "tool_result", "tool_use_id": tool_use.id, "content": result},
                ],
            }
        )
        continued["messages"] = messages
        return continued
