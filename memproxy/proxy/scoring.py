"""Seams for the external drift scorer and turn analyzer.

Scoring and correction text are produced elsewhere; the proxy only stores
what a scorer returns. ``NullDriftScorer`` is used when nothing is wired.
"""
from __future__ import annotations

from typing import Literal, Optional, Protocol

from pydantic import BaseModel

from memproxy.models import DriftResult, SessionState, StepRecord

TurnAction = Literal["continue", "task_complete"]


class TurnAnalysis(BaseModel):
    action: TurnAction = "task_complete"
    goal: Optional[str] = None
    summary: Optional[str] = None


class DriftScorer(Protocol):
    async def score(
        self,
        session: SessionState,
        recent_steps: list[StepRecord],
        latest_message: str,
    ) -> Optional[DriftResult]: ...

    async def analyze_turn(
        self,
        session: SessionState,
        latest_message: str,
        response_text: str,
    ) -> TurnAnalysis: ...


class NullDriftScorer:
    """Never scores; every end turn closes the current unit of work."""

    async def score(self, session, recent_steps, latest_message):
        return None

    async def analyze_turn(self, session, latest_message, response_text):
        return TurnAnalysis(action="task_complete")
