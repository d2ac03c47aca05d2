"""Adapter registry for the supported agent wire formats."""
from __future__ import annotations

from typing import Optional

from memproxy.agents.base import AgentAdapter
from memproxy.agents.claude.adapter import ClaudeAdapter
from memproxy.agents.codex.adapter import CodexAdapter


class AdapterRegistry:
    """Ordered adapter lookup, resolved once per inbound request.

    Adapters are checked in registration order and the first match wins.
    """

    def __init__(self, adapters: list[AgentAdapter] | None = None):
        self._adapters: list[AgentAdapter] = list(adapters) if adapters is not None else [
            ClaudeAdapter(),
            CodexAdapter(),
        ]

    @property
    def adapters(self) -> list[AgentAdapter]:
        return list(self._adapters)

    def resolve(self, path: str) -> Optional[AgentAdapter]:
        for adapter in self._adapters:
            if adapter.can_handle(path):
                return adapter
        return None

    def get(self, name: str) -> Optional[AgentAdapter]:
        for adapter in self._adapters:
            if adapter.name == name:
                return adapter
        return None
