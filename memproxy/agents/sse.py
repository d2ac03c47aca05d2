"""Server-Sent-Events reassembly for the supported wire formats.

Both functions read a fully buffered stream copy and never raise: chunks
that fail to decode are skipped so the relay path stays untouched.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Iterator, Optional

logger = logging.getLogger("memproxy.proxy")


def iter_sse_events(raw: str) -> Iterator[dict[str, Any]]:
    """Yield decoded JSON payloads of every ``data:`` line."""
    for line in raw.splitlines():
        if not line.startswith("data:"):
            continue
        data = line[5:].strip()
        if not data or data == "[DONE]":
            continue
        try:
            payload = json.loads(data)
        except ValueError:
            logger.debug("Skipping undecodable SSE chunk (%s bytes)", len(data))
            continue
        if isinstance(payload, dict):
            yield payload


def _index(event: dict[str, Any], default: int) -> int:
    index = event.get("index")
    if isinstance(index, int) and not isinstance(index, bool):
        return index
    return default


def _dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _append_text(block: dict[str, Any], key: str, piece: Any) -> None:
    if not isinstance(piece, str):
        return
    current = block.get(key)
    block[key] = (current if isinstance(current, str) else "") + piece


def reassemble_messages_stream(raw: str) -> Optional[dict[str, Any]]:
    """Rebuild an Anthropic Messages response from its event stream."""
    message: Optional[dict[str, Any]] = None
    blocks: dict[int, dict[str, Any]] = {}
    partial_json: dict[int, list[str]] = {}

    for event in iter_sse_events(raw):
        kind = event.get("type")
        if kind == "message_start" and isinstance(event.get("message"), dict):
            message = dict(event["message"])
            message["content"] = []
            message["usage"] = dict(_dict(message.get("usage")))
        elif kind == "content_block_start":
            index = _index(event, len(blocks))
            block = dict(_dict(event.get("content_block")))
            if block.get("type") == "tool_use":
                block["input"] = {}
                partial_json[index] = []
            blocks[index] = block
        elif kind == "content_block_delta":
            index = _index(event, 0)
            delta = _dict(event.get("delta"))
            block = blocks.setdefault(index, {"type": "text", "text": ""})
            delta_type = delta.get("type")
            if delta_type == "text_delta":
                _append_text(block, "text", delta.get("text", ""))
            elif delta_type == "thinking_delta":
                _append_text(block, "thinking", delta.get("thinking", ""))
            elif delta_type == "input_json_delta" and isinstance(delta.get("partial_json"), str):
                partial_json.setdefault(index, []).append(delta["partial_json"])
        elif kind == "content_block_stop":
            index = _index(event, 0)
            if index in partial_json and index in blocks:
                joined = "".join(partial_json.pop(index))
                try:
                    blocks[index]["input"] = json.loads(joined) if joined else {}
                except ValueError:
                    blocks[index]["input"] = {}
        elif kind == "message_delta" and message is not None:
            delta = _dict(event.get("delta"))
            if "stop_reason" in delta:
                message["stop_reason"] = delta["stop_reason"]
            message["usage"].update(_dict(event.get("usage")))

    if message is None:
        return None
    message["content"] = [blocks[i] for i in sorted(blocks)]
    return message


def reassemble_responses_stream(raw: str) -> Optional[dict[str, Any]]:
    """Rebuild an OpenAI Responses object from its event stream."""
    response_id: Optional[str] = None
    output: list[dict[str, Any]] = []
    seen_created = False

    for event in iter_sse_events(raw):
        kind = event.get("type")
        if kind == "response.created":
            seen_created = True
            created_id = _dict(event.get("response")).get("id")
            response_id = created_id if isinstance(created_id, str) else None
        elif kind == "response.output_item.done" and isinstance(event.get("item"), dict):
            output.append(event["item"])
        elif kind == "response.completed" and isinstance(event.get("response"), dict):
            final = event["response"]
            final_output = final.get("output")
            return {
                "id": final.get("id") or response_id or "",
                "status": final.get("status", "completed"),
                "model": final.get("model"),
                "output": final_output if isinstance(final_output, list) and final_output else output,
                "usage": final.get("usage"),
            }

    if not seen_created:
        return None
    return {"id": response_id or "", "status": "completed", "output": output, "usage": None}
