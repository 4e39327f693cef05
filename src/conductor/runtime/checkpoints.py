from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from dataclasses import asdict
from pathlib import Path
from typing import Any

from conductor.core.errors import CheckpointNotFound
from conductor.core.transcript import Transcript
from conductor.core.types import ChangeSet, Checkpoint
from conductor.runtime.store import write_json_atomic
from conductor.tools.workspace import WorkspaceStorage

logger = logging.getLogger(__name__)

DEFAULT_MAX_CHECKPOINTS = 20


def checkpoint_to_dict(checkpoint: Checkpoint) -> dict[str, Any]:
    payload = asdict(checkpoint)
    payload["turn_seqs"] = list(checkpoint.turn_seqs)
    return payload


def _ensure_str(value: Any, field_name: str) -> str:
    if isinstance(value, str):
        return value
    raise ValueError(f"checkpoint field '{field_name}' must be str")


def _coerce_checkpoint(payload: Any) -> Checkpoint:
    if not isinstance(payload, dict):
        raise ValueError("checkpoint entry must be an object")
    position = payload.get("sequence_position")
    if not isinstance(position, int):
        raise ValueError("checkpoint sequence_position must be int")
    seqs = payload.get("turn_seqs")
    if not isinstance(seqs, list) or not all(isinstance(item, int) for item in seqs):
        raise ValueError("checkpoint turn_seqs must be list[int]")
    label = payload.get("label")
    if label is not None and not isinstance(label, str):
        raise ValueError("checkpoint label must be str")
    created = payload.get("created_ts")
    if not isinstance(created, (int, float)):
        raise ValueError("checkpoint created_ts must be float")
    return Checkpoint(
        checkpoint_id=_ensure_str(payload.get("checkpoint_id"), "checkpoint_id"),
        task_id=_ensure_str(payload.get("task_id"), "task_id"),
        sequence_position=position,
        turn_seqs=tuple(seqs),
        snapshot=_ensure_str(payload.get("snapshot"), "snapshot"),
        label=label,
        created_ts=float(created),
    )


class CheckpointStore:
    """Per-task checkpoint index over a shared ``WorkspaceStorage``.

    The snapshot is written before the index entry that points at it, so an
    interrupted capture leaves at most an unreferenced snapshot behind.
    """

    def __init__(
        self,
        index_dir: Path,
        storage: WorkspaceStorage,
        max_checkpoints: int = DEFAULT_MAX_CHECKPOINTS,
    ) -> None:
        self.index_dir = Path(index_dir)
        self.storage = storage
        self.max_checkpoints = max(1, max_checkpoints)
        self._lock = threading.RLock()

    def _index_path(self, task_id: str) -> Path:
        return self.index_dir / f"{task_id}.json"

    def _load(self, task_id: str) -> list[Checkpoint]:
        path = self._index_path(task_id)
        if not path.exists():
            return []
        payload = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(payload, list):
            raise ValueError("checkpoint index must be a list")
        entries = [_coerce_checkpoint(item) for item in payload]
        entries.sort(key=lambda item: item.sequence_position)
        return entries

    def _save(self, task_id: str, entries: list[Checkpoint]) -> None:
        write_json_atomic(
            self._index_path(task_id), [checkpoint_to_dict(entry) for entry in entries]
        )

    def list_checkpoints(self, task_id: str) -> list[Checkpoint]:
        with self._lock:
            return self._load(task_id)

    def get(self, task_id: str, checkpoint_id: str) -> Checkpoint:
        for entry in self.list_checkpoints(task_id):
            if entry.checkpoint_id == checkpoint_id:
                return entry
        raise CheckpointNotFound(f"checkpoint {checkpoint_id} not found for task {task_id}")

    def referenced_seqs(self, task_id: str) -> set[int]:
        return {seq for entry in self.list_checkpoints(task_id) for seq in entry.turn_seqs}

    def capture(self, task_id: str, transcript: Transcript, label: str | None = None) -> Checkpoint:
        with self._lock:
            entries = self._load(task_id)
            seqs = list(transcript.seqs())
            if transcript.pending_call() is not None:
                seqs = seqs[:-1]
            snapshot = self.storage.snapshot()
            position = transcript.reserve_position()
            if entries and position <= entries[-1].sequence_position:
                position = entries[-1].sequence_position + 1
                transcript.next_seq = position + 1
            checkpoint = Checkpoint(
                checkpoint_id=uuid.uuid4().hex[:12],
                task_id=task_id,
                sequence_position=position,
                turn_seqs=tuple(seqs),
                snapshot=snapshot,
                label=label,
                created_ts=time.time(),
            )
            entries.append(checkpoint)
            evicted = self._apply_retention(entries)
            self._save(task_id, entries)
            for entry in evicted:
                self.storage.delete(entry.snapshot)
            if evicted:
                self.storage.collect_garbage()
            logger.debug(
                "checkpoint %s captured for %s at %d (%d evicted)",
                checkpoint.checkpoint_id,
                task_id,
                position,
                len(evicted),
            )
            return checkpoint

    def _apply_retention(self, entries: list[Checkpoint]) -> list[Checkpoint]:
        evicted: list[Checkpoint] = []
        while len(entries) > self.max_checkpoints:
            victim = next((entry for entry in entries if entry.label is None), None)
            if victim is None:
                break
            entries.remove(victim)
            evicted.append(victim)
        return evicted

    def restore(self, task_id: str, checkpoint_id: str, transcript: Transcript) -> Checkpoint:
        """Revert workspace and transcript, dropping checkpoints taken later."""
        with self._lock:
            entries = self._load(task_id)
            target = next((entry for entry in entries if entry.checkpoint_id == checkpoint_id), None)
            if target is None:
                raise CheckpointNotFound(
                    f"checkpoint {checkpoint_id} not found for task {task_id}"
                )
            available = set(transcript.seqs()) | set(transcript.archive)
            missing = [seq for seq in target.turn_seqs if seq not in available]
            if missing:
                raise CheckpointNotFound(
                    f"checkpoint {checkpoint_id} references turns that no longer exist"
                )
            self.storage.restore(target.snapshot)
            transcript.restore(target.turn_seqs)
            later = [entry for entry in entries if entry.sequence_position > target.sequence_position]
            kept = [entry for entry in entries if entry.sequence_position <= target.sequence_position]
            self._save(task_id, kept)
            for entry in later:
                self.storage.delete(entry.snapshot)
            referenced = {seq for entry in kept for seq in entry.turn_seqs}
            transcript.prune_archive(referenced)
            if later:
                self.storage.collect_garbage()
            return target

    def diff(self, task_id: str, a: str, b: str | None = None) -> ChangeSet:
        first = self.get(task_id, a)
        second = self.get(task_id, b) if b is not None else None
        return self.storage.diff(first.snapshot, second.snapshot if second else None)

    def discard(self, task_id: str, checkpoint_id: str) -> bool:
        with self._lock:
            entries = self._load(task_id)
            remaining = [entry for entry in entries if entry.checkpoint_id != checkpoint_id]
            if len(remaining) == len(entries):
                return False
            self._save(task_id, remaining)
            for entry in entries:
                if entry.checkpoint_id == checkpoint_id:
                    self.storage.delete(entry.snapshot)
            return True

    def purge(self, task_id: str) -> int:
        with self._lock:
            entries = self._load(task_id)
            for entry in entries:
                self.storage.delete(entry.snapshot)
            self._index_path(task_id).unlink(missing_ok=True)
            self.storage.collect_garbage()
            return len(entries)
