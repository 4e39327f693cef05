from __future__ import annotations

from conductor.core.types import Block, ToolCall, Turn
from conductor.runtime.tokens import (
    IMAGE_TOKENS,
    TURN_OVERHEAD_TOKENS,
    estimate_prompt_tokens,
    estimate_text_tokens,
    estimate_turn_tokens,
)


def test_text_estimate_rounds_up() -> None:
    assert estimate_text_tokens("") == 0
    assert estimate_text_tokens("abc") == 1
    assert estimate_text_tokens("a" * 400) == 101


def test_turn_estimate_counts_blocks_and_overhead() -> None:
    turn = Turn(seq=0, role="user", blocks=[Block.of_text("a" * 40), Block.of_image("img://1")])
    assert estimate_turn_tokens(turn) == TURN_OVERHEAD_TOKENS + 11 + IMAGE_TOKENS


def test_prompt_estimate_includes_tool_schemas() -> None:
    call = ToolCall(id="c1", name="read_file", arguments={"path": "a.txt"})
    turns = [Turn(seq=0, role="tool_call", blocks=[Block.of_call(call)])]
    schemas = [{"type": "function", "function": {"name": "read_file", "parameters": {}}}]
    without = estimate_prompt_tokens(turns)
    with_schemas = estimate_prompt_tokens(turns, schemas)
    assert with_schemas > without > TURN_OVERHEAD_TOKENS
