"""Assembles terminal and suspended outcomes from accumulated loop state."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from ..models.agent import AgentResult, LoopState, SuspendedResult

logger = logging.getLogger(__name__)

SUMMARY_PREVIEW_LENGTH = 100
ARG_PREVIEW_LENGTH = 50


def synthesize_summary(state: LoopState) -> str:
    """Summary for a run that used up its rounds without finishing."""
    if state.edit_count > 0:
        return f"Completed {state.edit_count} edit(s)."
    return "Finished processing (max iterations reached)."


def summarize_args(arguments: Dict[str, Any]) -> str:
    """Compact one-line rendering of tool arguments for progress events."""
    parts: List[str] = []
    for key, value in arguments.items():
        if isinstance(value, str):
            preview = value[:ARG_PREVIEW_LENGTH] + "..." if len(value) > ARG_PREVIEW_LENGTH else value
            parts.append(f'{key}: "{preview}"')
        elif isinstance(value, (list, tuple)):
            parts.append(f"{key}: [{len(value)} items]")
        elif value is not None:
            parts.append(f"{key}: {value}")
    return ", ".join(parts)


def build_result(
    state: LoopState,
    *,
    status: str = "completed",
    error: Optional[str] = None,
) -> AgentResult:
    """Build the terminal result; partial side effects are kept for every status."""
    success = status == "completed"
    summary = state.summary
    if not success and not summary:
        summary = error or ("Cancelled by user" if status == "cancelled" else "")
    return AgentResult(
        status=status,
        success=success,
        summary=summary,
        edits_proposed=list(state.edits_proposed),
        notes_read=list(state.notes_read),
        notes_copied=list(state.notes_copied),
        notes_created=list(state.notes_created),
        web_sources_used=list(state.web_sources),
        token_usage=state.usage.model_copy(deep=True),
        iterations_used=state.iteration,
        error=None if success else (error or summary),
    )


def build_suspended(
    state: LoopState, *, question: str, choices: List[str], resume_token: str
) -> SuspendedResult:
    return SuspendedResult(
        question=question,
        choices=list(choices),
        resume_token=resume_token,
        iterations_used=state.iteration,
        token_usage=state.usage.model_copy(deep=True),
        edits_proposed=list(state.edits_proposed),
    )


def completion_message(summary: str) -> str:
    return summary[:SUMMARY_PREVIEW_LENGTH]


__all__ = [
    "build_result",
    "build_suspended",
    "completion_message",
    "summarize_args",
    "synthesize_summary",
]
