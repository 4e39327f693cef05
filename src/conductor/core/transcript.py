from __future__ import annotations

import time
from dataclasses import asdict
from typing import Any, Iterable, Iterator

from conductor.core.types import ROLES, Block, ToolCall, ToolResult, Turn


class Transcript:
    """Ordered turn log owned by a single task.

    ``turns`` is the working view sent to the provider. Turns removed by
    compression move to ``archive`` so checkpoints captured before the
    compression can still rebuild their exact view.
    """

    def __init__(
        self,
        turns: Iterable[Turn] | None = None,
        archive: dict[int, Turn] | None = None,
        next_seq: int | None = None,
    ) -> None:
        self.turns: list[Turn] = list(turns or [])
        self.archive: dict[int, Turn] = dict(archive or {})
        known = [turn.seq for turn in self.turns] + list(self.archive)
        floor = max(known) + 1 if known else 0
        self.next_seq = max(floor, next_seq or 0)

    def __len__(self) -> int:
        return len(self.turns)

    def __iter__(self) -> Iterator[Turn]:
        return iter(self.turns)

    @property
    def position(self) -> int:
        return self.next_seq

    def last(self) -> Turn | None:
        return self.turns[-1] if self.turns else None

    def seqs(self) -> tuple[int, ...]:
        return tuple(turn.seq for turn in self.turns)

    def append(self, role: str, blocks: Iterable[Block]) -> Turn:
        if role not in ROLES:
            raise ValueError(f"unknown turn role: {role}")
        block_list = list(blocks)
        if role == "system" and self.turns:
            raise ValueError("system turn must be first")
        if role != "system" and not self.turns:
            raise ValueError("transcript must start with a system turn")
        pending = self.pending_call()
        if pending is not None:
            if role != "tool_result":
                raise ValueError(f"tool call {pending.id} is still awaiting its result")
            result = _first_result(block_list)
            if result is None or result.tool_call_id != pending.id:
                raise ValueError(f"tool result does not match pending call {pending.id}")
        elif role == "tool_result":
            raise ValueError("tool result without a preceding tool call")
        turn = Turn(seq=self.next_seq, role=role, blocks=block_list, ts=time.time())
        self.next_seq += 1
        self.turns.append(turn)
        return turn

    def append_text(self, role: str, text: str) -> Turn:
        return self.append(role, [Block.of_text(text)])

    def append_call(self, call: ToolCall) -> Turn:
        return self.append("tool_call", [Block.of_call(call)])

    def append_result(self, result: ToolResult) -> Turn:
        return self.append("tool_result", [Block.of_result(result)])

    def reserve_position(self) -> int:
        position = self.next_seq
        self.next_seq += 1
        return position

    def pending_call(self) -> ToolCall | None:
        last = self.last()
        if last is None or last.role != "tool_call":
            return None
        return last.call

    def make_summary_turn(self, replaced: list[Turn], text: str) -> Turn:
        covered = sorted(
            {seq for turn in replaced for seq in (turn.summary_of or [turn.seq])}
        )
        return Turn(
            seq=self.next_seq,
            role="user",
            blocks=[Block.of_text(text)],
            ts=time.time(),
            summary_of=covered,
        )

    def rewrite(self, turns: list[Turn]) -> None:
        """Replace the working view; removed turns are archived."""
        check_invariants(turns)
        kept = {turn.seq for turn in turns}
        if kept:
            self.next_seq = max(self.next_seq, max(kept) + 1)
        for turn in self.turns:
            if turn.seq not in kept:
                self.archive[turn.seq] = turn
        for turn in turns:
            self.archive.pop(turn.seq, None)
        self.turns = list(turns)

    def restore(self, seqs: Iterable[int]) -> None:
        pool = {turn.seq: turn for turn in self.turns}
        pool.update(self.archive)
        restored: list[Turn] = []
        for seq in seqs:
            turn = pool.get(seq)
            if turn is None:
                raise KeyError(f"turn {seq} is no longer available")
            restored.append(turn)
        kept = {turn.seq for turn in restored}
        for turn in self.turns:
            if turn.seq not in kept:
                self.archive[turn.seq] = turn
        for seq in kept:
            self.archive.pop(seq, None)
        self.turns = restored

    def prune_archive(self, referenced: set[int]) -> int:
        stale = [seq for seq in self.archive if seq not in referenced]
        for seq in stale:
            del self.archive[seq]
        return len(stale)


def _first_result(blocks: list[Block]) -> ToolResult | None:
    for block in blocks:
        if block.kind == "tool_result" and block.result is not None:
            return block.result
    return None


def check_invariants(turns: list[Turn]) -> None:
    if not turns:
        return
    if turns[0].role != "system":
        raise ValueError("system turn must be first")
    for index, turn in enumerate(turns):
        if index and turn.role == "system":
            raise ValueError("only the first turn may be a system turn")
        if turn.role == "tool_call":
            call = turn.call
            if call is None:
                raise ValueError(f"tool call turn {turn.seq} has no call block")
            if index + 1 == len(turns):
                continue
            following = turns[index + 1]
            result = following.result
            if following.role != "tool_result" or result is None or result.tool_call_id != call.id:
                raise ValueError(f"tool call {call.id} is not followed by its result")
        elif turn.role == "tool_result":
            previous = turns[index - 1] if index else None
            if previous is None or previous.role != "tool_call":
                raise ValueError(f"tool result turn {turn.seq} has no originating call")


def turn_to_dict(turn: Turn) -> dict[str, Any]:
    return asdict(turn)


def coerce_call(payload: Any) -> ToolCall:
    if not isinstance(payload, dict):
        raise ValueError("tool call must be an object")
    call_id = payload.get("id")
    name = payload.get("name")
    arguments = payload.get("arguments")
    if not isinstance(call_id, str) or not isinstance(name, str):
        raise ValueError("tool call must include id/name strings")
    if not isinstance(arguments, dict):
        raise ValueError("tool call arguments must be an object")
    return ToolCall(id=call_id, name=name, arguments=arguments)


def _coerce_result(payload: Any) -> ToolResult:
    if not isinstance(payload, dict):
        raise ValueError("tool result must be an object")
    call_id = payload.get("tool_call_id")
    name = payload.get("name")
    ok = payload.get("ok")
    if not isinstance(call_id, str) or not isinstance(name, str) or not isinstance(ok, bool):
        raise ValueError("tool result must include tool_call_id/name/ok")
    return ToolResult(
        tool_call_id=call_id,
        name=name,
        ok=ok,
        payload=payload.get("payload"),
        error_kind=payload.get("error_kind"),
        message=payload.get("message"),
    )


def _coerce_block(payload: Any) -> Block:
    if not isinstance(payload, dict) or not isinstance(payload.get("kind"), str):
        raise ValueError("turn blocks must be objects with a kind")
    kind = payload["kind"]
    call = coerce_call(payload["call"]) if payload.get("call") is not None else None
    result = _coerce_result(payload["result"]) if payload.get("result") is not None else None
    return Block(kind=kind, text=payload.get("text"), call=call, result=result, ref=payload.get("ref"))


def turn_from_dict(payload: Any) -> Turn:
    if not isinstance(payload, dict):
        raise ValueError("turn must be an object")
    seq = payload.get("seq")
    role = payload.get("role")
    blocks = payload.get("blocks")
    if not isinstance(seq, int) or role not in ROLES:
        raise ValueError("turn must include integer seq and a known role")
    if not isinstance(blocks, list):
        raise ValueError("turn blocks must be a list")
    summary_of = payload.get("summary_of")
    if summary_of is not None and not (
        isinstance(summary_of, list) and all(isinstance(item, int) for item in summary_of)
    ):
        raise ValueError("turn summary_of must be list[int]")
    return Turn(
        seq=seq,
        role=role,
        blocks=[_coerce_block(block) for block in blocks],
        ts=float(payload.get("ts") or 0.0),
        summary_of=summary_of,
    )


def transcript_to_dict(transcript: Transcript) -> dict[str, Any]:
    return {
        "next_seq": transcript.next_seq,
        "turns": [turn_to_dict(turn) for turn in transcript.turns],
        "archive": [turn_to_dict(turn) for turn in transcript.archive.values()],
    }


def transcript_from_dict(payload: Any) -> Transcript:
    if not isinstance(payload, dict):
        raise ValueError("transcript must be an object")
    turns = payload.get("turns") or []
    archive = payload.get("archive") or []
    if not isinstance(turns, list) or not isinstance(archive, list):
        raise ValueError("transcript turns/archive must be lists")
    next_seq = payload.get("next_seq")
    if next_seq is not None and not isinstance(next_seq, int):
        raise ValueError("transcript next_seq must be int")
    archived = [turn_from_dict(item) for item in archive]
    return Transcript(
        turns=[turn_from_dict(item) for item in turns],
        archive={turn.seq: turn for turn in archived},
        next_seq=next_seq,
    )
