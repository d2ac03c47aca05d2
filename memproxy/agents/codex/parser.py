"""Turn Codex function calls into normalized actions.

Every ``shell`` call produces exactly one action. Commands without a
dedicated rule fall back to a ``bash`` action carrying the full command
line, so nothing is dropped.
"""
from __future__ import annotations

import shlex
from typing import Any

from memproxy.agents.base import parse_json_object
from memproxy.agents.codex.patch import parse_patch_content
from memproxy.models import NormalizedAction

SHELL_FUNCTION_NAMES = ("shell", "container.exec", "local_shell")


def _file_args(args: list[str]) -> list[str]:
    return [a for a in args if not a.startswith("-") and ("/" in a or "." in a)]


def _path_args(args: list[str]) -> list[str]:
    return [a for a in args if a and not a.startswith("-")]


def _command_list(raw: Any) -> list[str]:
    if isinstance(raw, list):
        return [str(part) for part in raw]
    if isinstance(raw, str) and raw.strip():
        try:
            return shlex.split(raw)
        except ValueError:
            return [raw]
    return []


def parse_shell_command(arguments: dict[str, Any]) -> NormalizedAction:
    command = _command_list(arguments.get("command"))

    def action(tool_name: str, action_type: str, **fields: Any) -> NormalizedAction:
        return NormalizedAction(
            tool_name=tool_name,
            action_type=action_type,
            source_agent="codex",
            raw_input=arguments,
            **fields,
        )

    if not command:
        return action("shell", "bash", command="")

    cmd, args = command[0], command[1:]

    if cmd in ("cat", "head", "tail"):
        return action(f"shell:{cmd}", "read", files=_file_args(args))

    if cmd == "apply_patch":
        patch = parse_patch_content(args[0] if args else "")
        return action(
            "shell:apply_patch",
            "write" if patch.has_add else "edit",
            files=patch.files,
        )

    if cmd == "rg":
        action_type = "glob" if "--files" in args else "grep"
        return action("shell:rg", action_type, folders=_path_args(args))

    if cmd == "ls":
        return action("shell:ls", "glob", folders=_path_args(args))

    if cmd == "bash":
        if "-lc" in args and args.index("-lc") + 1 < len(args):
            inner = args[args.index("-lc") + 1]
        else:
            inner = " ".join(args)
        return action("shell:bash", "bash", command=inner)

    return action("shell", "bash", command=" ".join(command))


def parse_output_actions(response: Any) -> list[NormalizedAction]:
    if not isinstance(response, dict) or not isinstance(response.get("output"), list):
        return []
    actions: list[NormalizedAction] = []
    for item in response["output"]:
        if not isinstance(item, dict) or item.get("type") != "function_call":
            continue
        name = str(item.get("name") or "")
        arguments = parse_json_object(item.get("arguments"))
        if name in SHELL_FUNCTION_NAMES:
            actions.append(parse_shell_command(arguments))
        else:
            actions.append(
                NormalizedAction(
                    tool_name=name or "unknown",
                    action_type="other",
                    source_agent="codex",
                    raw_input=arguments,
                )
            )
    return actions
