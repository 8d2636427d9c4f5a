"""Continuation record persisted between a suspension and its resume."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Literal

from pydantic import BaseModel, Field

from .agent import Budget, LoopState, TranscriptMessage

CONTINUATION_VERSION = 1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Continuation(BaseModel):
    """Plain-data snapshot of a suspended run.

    Repeat-detection counters are not stored; a resumed run starts with a
    fresh stuck-loop detector.
    """

    version: Literal[1] = CONTINUATION_VERSION
    transcript: List[TranscriptMessage] = Field(..., min_length=1)
    pending_tool_call_id: str = Field(..., min_length=1)
    skipped_tool_call_ids: List[str] = Field(
        default_factory=list,
        description="Calls issued after ask_user in the same round; answered on resume",
    )
    directive_pending: bool = Field(
        False, description="A stuck-loop directive was queued in the suspending round"
    )
    question: str
    choices: List[str] = Field(default_factory=list)
    state: LoopState
    budget: Budget
    created_at: datetime = Field(default_factory=_utcnow)


__all__ = ["CONTINUATION_VERSION", "Continuation"]
