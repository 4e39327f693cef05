"""Token budget estimation.

A character heuristic (about four characters per token) plus fixed
per-turn and per-image overheads. Estimates are deliberately pessimistic
so a prompt that passes the budget check also fits the real tokenizer.
"""

from __future__ import annotations

import json
from typing import Any, Iterable

from conductor.core.types import Block, Turn

CHARS_PER_TOKEN = 4
TURN_OVERHEAD_TOKENS = 4
IMAGE_TOKENS = 1000


def estimate_text_tokens(text: str) -> int:
    if not text:
        return 0
    return (len(text) // CHARS_PER_TOKEN) + 1


def _dump(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)


def estimate_block_tokens(block: Block) -> int:
    if block.kind == "text":
        return estimate_text_tokens(block.text or "")
    if block.kind == "tool_call" and block.call is not None:
        return estimate_text_tokens(block.call.name) + estimate_text_tokens(
            _dump(block.call.arguments)
        )
    if block.kind == "tool_result" and block.result is not None:
        result = block.result
        body = _dump(result.payload) if result.ok else f"{result.error_kind}: {result.message}"
        return estimate_text_tokens(result.name) + estimate_text_tokens(body)
    if block.kind == "image":
        return IMAGE_TOKENS
    return 0


def estimate_turn_tokens(turn: Turn) -> int:
    return TURN_OVERHEAD_TOKENS + sum(estimate_block_tokens(block) for block in turn.blocks)


def estimate_schema_tokens(tool_schemas: Iterable[dict[str, Any]] | None) -> int:
    if not tool_schemas:
        return 0
    return sum(estimate_text_tokens(_dump(schema)) for schema in tool_schemas)


def estimate_prompt_tokens(
    turns: Iterable[Turn],
    tool_schemas: Iterable[dict[str, Any]] | None = None,
    pending: str = "",
) -> int:
    total = sum(estimate_turn_tokens(turn) for turn in turns)
    total += estimate_schema_tokens(tool_schemas)
    total += estimate_text_tokens(pending)
    return total
