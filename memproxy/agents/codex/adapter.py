"""Adapter for the OpenAI Responses wire format used by Codex."""
from __future__ import annotations

import copy
from typing import Any, Optional

from memproxy import config
from memproxy.agents.base import (
    INTERNAL_TOOL_DESCRIPTION,
    INTERNAL_TOOL_NAME,
    AgentAdapter,
    content_text,
    parse_json_object,
)
from memproxy.agents.codex import extractors
from memproxy.agents.codex.parser import parse_output_actions
from memproxy.agents.sse import reassemble_responses_stream
from memproxy.models import NormalizedAction, TokenUsage, ToolUseBlock


def _output_items(response: Any) -> list[dict[str, Any]]:
    if isinstance(response, dict) and isinstance(response.get("output"), list):
        return [item for item in response["output"] if isinstance(item, dict)]
    return []


class CodexAdapter(AgentAdapter):
    name = "codex"
    endpoint = "/v1/responses"
    forward_header_names = (
        "authorization",
        "openai-organization",
        "openai-project",
        "openai-beta",
        "chatgpt-account-id",
    )
    response_header_names = (
        "content-type",
        "x-request-id",
        "request-id",
        "x-ratelimit-limit-requests",
        "x-ratelimit-limit-tokens",
        "x-ratelimit-remaining-requests",
        "x-ratelimit-remaining-tokens",
        "x-ratelimit-reset-requests",
        "x-ratelimit-reset-tokens",
    )

    def __init__(self, upstream_base: str | None = None):
        self.upstream_url = f"{(upstream_base or config.OPENAI_TARGET).rstrip('/')}/v1/responses"

    def can_handle(self, path: str) -> bool:
        # Codex drops the /v1 prefix when its base URL already ends in /v1
        return super().can_handle(path) or path == "/responses" or path.startswith("/responses?")

    def get_messages(self, body: Any) -> list[Any]:
        return extractors.input_items(body)

    def extract_project_path(self, body: Any) -> Optional[str]:
        return extractors.extract_project_path(body)

    def extract_goal(self, body: Any) -> Optional[str]:
        return extractors.extract_goal(self.get_messages(body))

    def extract_history(self, body: Any) -> list[dict[str, str]]:
        return extractors.extract_history(self.get_messages(body))

    def extract_session_id(self, response: Any) -> Optional[str]:
        if isinstance(response, dict) and isinstance(response.get("id"), str) and response["id"]:
            return response["id"]
        return None

    def extract_text_content(self, response: Any) -> str:
        parts = [
            content_text(item.get("content"))
            for item in _output_items(response)
            if item.get("type") == "message"
        ]
        return "\n".join(p for p in parts if p)

    def extract_usage(self, response: Any) -> TokenUsage:
        usage = response.get("usage") if isinstance(response, dict) else None
        if not isinstance(usage, dict):
            return TokenUsage()
        try:
            input_tokens = int(usage.get("input_tokens") or 0)
            output_tokens = int(usage.get("output_tokens") or 0)
            total = int(usage.get("total_tokens") or 0) or input_tokens + output_tokens
        except (TypeError, ValueError):
            return TokenUsage()
        return TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens, total_tokens=total)

    def is_valid_response(self, response: Any) -> bool:
        return isinstance(response, dict) and all(key in response for key in ("id", "status", "output"))

    def is_subagent_model(self, model: str) -> bool:
        return "mini" in (model or "").lower()

    def is_end_turn(self, response: Any) -> bool:
        if not isinstance(response, dict) or response.get("status") != "completed":
            return False
        return not self.is_tool_use(response)

    def is_tool_use(self, response: Any) -> bool:
        return any(item.get("type") == "function_call" for item in _output_items(response))

    def parse_actions(self, response: Any) -> list[NormalizedAction]:
        return parse_output_actions(response)

    def get_tool_use_blocks(self, response: Any) -> list[ToolUseBlock]:
        return [
            ToolUseBlock(
                id=str(item.get("call_id") or item.get("id") or ""),
                name=str(item.get("name") or ""),
                input=parse_json_object(item.get("arguments")),
            )
            for item in _output_items(response)
            if item.get("type") == "function_call"
        ]

    def parse_sse(self, raw: str) -> Optional[dict[str, Any]]:
        return reassemble_responses_stream(raw)

    def inject_memory(self, body: dict[str, Any], memory: str) -> dict[str, Any]:
        result = copy.deepcopy(body)
        instructions = result.get("instructions")
        result["instructions"] = f"{instructions}\n\n{memory}" if instructions else memory
        return result

    def inject_delta(self, body: dict[str, Any], delta: str) -> dict[str, Any]:
        result = copy.deepcopy(body)
        items = result.get("input")
        if not isinstance(items, list):
            return result
        for item in reversed(items):
            if not isinstance(item, dict) or item.get("role") != "user":
                continue
            content = item.get("content")
            if isinstance(content, str):
                item["content"] = f"{content}\n\n{delta}"
            elif isinstance(content, list):
                item["content"] = [*content, {"type": "input_text", "text": delta}]
            break
        return result

    def inject_tool(self, body: dict[str, Any]) -> dict[str, Any]:
        result = copy.deepcopy(body)
        tools = list(result.get("tools") or [])
        if any(isinstance(t, dict) and t.get("name") == INTERNAL_TOOL_NAME for t in tools):
            return result
        tools.append(
            {
                "type": "function",
                "name": INTERNAL_TOOL_NAME,
                "description": INTERNAL_TOOL_DESCRIPTION,
                "parameters": {
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
        items = list(extractors.input_items(continued))
        items.extend(item for item in _output_items(response) if item.get("type") != "reasoning")
        items.append({"type": "function_call_output", "call_id": tool_use.id, "output": result})
        continued["input"] = items
        return continued
