"""Loop guards: repeated-call detection and budget tracking for the agent loop."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import json
import logging
from typing import Any, Dict

from ..models.agent import Budget, TokenUsage

logger = logging.getLogger(__name__)

WARN_AT = 3
DIRECTIVE_AT = 4


def repeat_key(name: str, arguments: Dict[str, Any]) -> str:
    """Tool name plus canonical (sorted, compact) JSON of its arguments."""
    canonical = json.dumps(arguments, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)
    return f"{name}:{canonical}"


class RepeatVerdict(str, Enum):
    OK = "ok"
    WARN = "warn"
    STUCK = "stuck"


@dataclass(frozen=True)
class RepeatCheck:
    count: int
    verdict: RepeatVerdict

    @property
    def blocked(self) -> bool:
        """Flagged calls are answered with a warning instead of executing."""
        return self.verdict is not RepeatVerdict.OK

    @property
    def inject_directive(self) -> bool:
        return self.verdict is RepeatVerdict.STUCK


class StuckLoopDetector:
    """Counts identical tool invocations over one loop run.

    Counts are kept per repeat key for the whole run (not only consecutive
    calls) and are never persisted; a resumed run starts from zero.
    """

    def __init__(self, warn_at: int = WARN_AT, directive_at: int = DIRECTIVE_AT) -> None:
        if directive_at < warn_at:
            raise ValueError("directive_at must be >= warn_at")
        self.warn_at = warn_at
        self.directive_at = directive_at
        self._counts: Dict[str, int] = {}

    def record(self, name: str, arguments: Dict[str, Any]) -> RepeatCheck:
        key = repeat_key(name, arguments)
        count = self._counts.get(key, 0) + 1
        self._counts[key] = count
        if count >= self.directive_at:
            verdict = RepeatVerdict.STUCK
        elif count >= self.warn_at:
            verdict = RepeatVerdict.WARN
        else:
            verdict = RepeatVerdict.OK
        if verdict is not RepeatVerdict.OK:
            logger.warning(
                f"Repeated tool call {name} x{count}",
                extra={"tool": name, "count": count, "verdict": verdict.value},
            )
        return RepeatCheck(count=count, verdict=verdict)

    def count(self, name: str, arguments: Dict[str, Any]) -> int:
        return self._counts.get(repeat_key(name, arguments), 0)

    def reset(self) -> None:
        self._counts.clear()


class BudgetTracker:
    """Accumulates token usage and decides when to restrict to finalization tools."""

    def __init__(self, budget: Budget, usage: TokenUsage | None = None) -> None:
        self.budget = budget
        self.usage = usage if usage is not None else TokenUsage()

    def record_round(self, prompt_tokens: int, completion_tokens: int, total_tokens: int | None = None) -> None:
        total = total_tokens if total_tokens is not None else prompt_tokens + completion_tokens
        self.usage.prompt_tokens += prompt_tokens
        self.usage.completion_tokens += completion_tokens
        self.usage.total_tokens += total
        self.usage.per_round.append(total)

    @property
    def tokens_exhausted(self) -> bool:
        return self.usage.total_tokens >= self.budget.max_total_tokens

    def is_last_round(self, iteration: int) -> bool:
        return iteration >= self.budget.max_iterations

    def should_finalize(self, iteration: int) -> bool:
        """True on the last allowed round or once the token ceiling is reached."""
        return self.is_last_round(iteration) or self.tokens_exhausted

    def remaining_tokens(self) -> int:
        return max(0, self.budget.max_total_tokens - self.usage.total_tokens)


__all__ = [
    "BudgetTracker",
    "DIRECTIVE_AT",
    "RepeatCheck",
    "RepeatVerdict",
    "StuckLoopDetector",
    "WARN_AT",
    "repeat_key",
]
