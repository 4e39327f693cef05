from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from conductor.core.errors import ContextOverflow, TaskCancelled
from conductor.core.transcript import Transcript
from conductor.core.types import ContextBudget, Turn
from conductor.runtime.tokens import estimate_prompt_tokens

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "...[truncated]"
SUMMARY_PREFIX = "[Summary of the earlier conversation]\n"

Summarizer = Callable[[list[Turn]], str]


@dataclass(slots=True)
class ContextPolicy:
    max_input_tokens: int = 128_000
    reserved_output_tokens: int = 8_192
    keep_recent_turns: int = 4
    keep_goal_turn: bool = True
    max_summary_chars: int = 8_000


@dataclass(slots=True)
class ContextReport:
    prompt: list[Turn]
    budget: ContextBudget
    action: str = "none"
    before_tokens: int = 0
    removed_turns: int = 0
    degraded: bool = False
    summary_error: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return self.action != "none"


def truncate_text(text: str, max_chars: int) -> str:
    if max_chars <= 0:
        return ""
    if len(text) <= max_chars:
        return text
    if max_chars < len(TRUNCATION_MARKER):
        return TRUNCATION_MARKER[:max_chars]
    available = max_chars - len(TRUNCATION_MARKER)
    return f"{text[:available]}{TRUNCATION_MARKER}"


def _units(turns: list[Turn]) -> list[list[Turn]]:
    units: list[list[Turn]] = []
    for turn in turns:
        if turn.role == "tool_result" and units and units[-1][-1].role == "tool_call":
            units[-1].append(turn)
        else:
            units.append([turn])
    return units


def _flatten(units: Iterable[list[Turn]]) -> list[Turn]:
    return [turn for unit in units for turn in unit]


class ContextWindowManager:
    def __init__(self, policy: ContextPolicy | None = None) -> None:
        self.policy = policy or ContextPolicy()

    def budget(self, estimate: int = 0) -> ContextBudget:
        return ContextBudget(
            max_input_tokens=self.policy.max_input_tokens,
            reserved_output_tokens=self.policy.reserved_output_tokens,
            current_estimate=estimate,
        )

    def partition(self, turns: list[Turn]) -> tuple[list[Turn], list[Turn], list[Turn]]:
        if not turns:
            return [], [], []
        head_len = 1
        if (
            self.policy.keep_goal_turn
            and len(turns) > 1
            and turns[1].role == "user"
            and turns[1].summary_of is None
        ):
            head_len = 2
        tail_start = max(head_len, len(turns) - max(0, self.policy.keep_recent_turns))
        while tail_start > head_len and turns[tail_start - 1].role == "tool_call":
            tail_start -= 1
        while tail_start < len(turns) and turns[tail_start].role == "tool_result":
            tail_start -= 1
        tail_start = max(head_len, tail_start)
        return turns[:head_len], turns[head_len:tail_start], turns[tail_start:]

    def prepare(
        self,
        transcript: Transcript,
        tool_schemas: list[dict[str, Any]] | None = None,
        summarize: Summarizer | None = None,
    ) -> ContextReport:
        turns = list(transcript.turns)
        before = estimate_prompt_tokens(turns, tool_schemas)
        budget = self.budget(before)
        if budget.fits:
            return ContextReport(prompt=turns, budget=budget, before_tokens=before)

        head, middle, tail = self.partition(turns)
        if not middle:
            raise ContextOverflow(
                f"prompt needs ~{before} tokens but the limit is {budget.limit} "
                "and nothing is compressible"
            )

        summary_error: str | None = None
        if summarize is not None:
            text: str | None = None
            try:
                text = summarize(middle)
            except TaskCancelled:
                raise
            except Exception as exc:  # noqa: BLE001
                summary_error = str(exc) or exc.__class__.__name__
                logger.warning("context summarization failed: %s", summary_error)
            if text is not None and not text.strip():
                summary_error = "empty summary"
                text = None
            if text:
                body = truncate_text(text.strip(), self.policy.max_summary_chars)
                summary = transcript.make_summary_turn(middle, SUMMARY_PREFIX + body)
                candidate = head + [summary] + tail
                estimate = estimate_prompt_tokens(candidate, tool_schemas)
                if estimate <= budget.limit:
                    transcript.rewrite(candidate)
                    return ContextReport(
                        prompt=list(candidate),
                        budget=self.budget(estimate),
                        action="compressed",
                        before_tokens=before,
                        removed_turns=len(middle),
                        details={"summary_seq": summary.seq},
                    )
                summary_error = "summary does not fit the budget"

        units = _units(middle)
        for dropped in range(1, len(units) + 1):
            candidate = head + _flatten(units[dropped:]) + tail
            estimate = estimate_prompt_tokens(candidate, tool_schemas)
            if estimate <= budget.limit:
                removed = len(middle) - (len(candidate) - len(head) - len(tail))
                transcript.rewrite(candidate)
                logger.warning(
                    "context truncated: dropped %d turns (%d -> %d tokens)",
                    removed,
                    before,
                    estimate,
                )
                return ContextReport(
                    prompt=list(candidate),
                    budget=self.budget(estimate),
                    action="truncated",
                    before_tokens=before,
                    removed_turns=removed,
                    degraded=True,
                    summary_error=summary_error,
                )

        raise ContextOverflow(
            f"prompt needs ~{estimate_prompt_tokens(head + tail, tool_schemas)} tokens "
            f"after dropping all compressible turns; the limit is {budget.limit}"
        )
