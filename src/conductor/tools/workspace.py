from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
import uuid
from pathlib import Path
from typing import Iterable, Iterator

from conductor.core.types import ChangeSet
from conductor.runtime.store import write_json_atomic

logger = logging.getLogger(__name__)

DEFAULT_IGNORE = (".git", "__pycache__")
_CHUNK = 1024 * 1024

# Blob directories are shared by every workspace stored under the same root.
_STORAGE_LOCKS: dict[str, threading.RLock] = {}
_STORAGE_LOCKS_GUARD = threading.Lock()


def _storage_lock(storage_dir: Path) -> threading.RLock:
    key = str(Path(storage_dir).resolve())
    with _STORAGE_LOCKS_GUARD:
        lock = _STORAGE_LOCKS.get(key)
        if lock is None:
            lock = threading.RLock()
            _STORAGE_LOCKS[key] = lock
        return lock


def _hash_file(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()


class WorkspaceStorage:
    """Content-addressed snapshots of a workspace directory.

    File contents live once under ``blobs/<sha256>``; each snapshot is a
    manifest mapping relative paths to blob digests.
    """

    def __init__(
        self,
        root: Path,
        storage_dir: Path,
        ignore: Iterable[str] = DEFAULT_IGNORE,
        exclude: Iterable[Path] = (),
    ) -> None:
        self.root = Path(root).resolve()
        self.storage_dir = Path(storage_dir)
        self.blob_dir = self.storage_dir / "blobs"
        self.manifest_dir = self.storage_dir / "manifests"
        self.ignore = set(ignore)
        excluded = [Path(item).resolve() for item in exclude]
        excluded.append(self.storage_dir.resolve())
        self.exclude = excluded
        self._lock = _storage_lock(self.storage_dir)

    def _excluded(self, path: Path) -> bool:
        for item in self.exclude:
            if path == item or item in path.parents:
                return True
        return False

    def iter_files(self) -> Iterator[tuple[str, Path]]:
        if not self.root.exists():
            return
        for dirpath, dirnames, filenames in os.walk(self.root):
            current = Path(dirpath)
            dirnames[:] = sorted(
                name
                for name in dirnames
                if name not in self.ignore and not self._excluded(current / name)
            )
            for name in sorted(filenames):
                if name in self.ignore:
                    continue
                path = current / name
                if path.is_symlink() or not path.is_file() or self._excluded(path):
                    continue
                yield path.relative_to(self.root).as_posix(), path

    def live_manifest(self) -> dict[str, str]:
        return {rel: _hash_file(path) for rel, path in self.iter_files()}

    def _manifest_path(self, handle: str) -> Path:
        if not handle or "/" in handle or "\\" in handle or handle.startswith("."):
            raise ValueError(f"invalid snapshot handle: {handle!r}")
        return self.manifest_dir / f"{handle}.json"

    def _store_blob(self, path: Path) -> str:
        data = path.read_bytes()
        digest = hashlib.sha256(data).hexdigest()
        blob_path = self.blob_dir / digest
        if not blob_path.exists():
            self.blob_dir.mkdir(parents=True, exist_ok=True)
            tmp_path = blob_path.with_name(f"{digest}.{uuid.uuid4().hex[:8]}.tmp")
            with tmp_path.open("wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            tmp_path.replace(blob_path)
        return digest

    def snapshot(self) -> str:
        with self._lock:
            manifest = {rel: self._store_blob(path) for rel, path in self.iter_files()}
            handle = uuid.uuid4().hex
            write_json_atomic(self._manifest_path(handle), manifest)
            logger.debug("snapshot %s captured %d files", handle, len(manifest))
            return handle

    def manifest(self, handle: str) -> dict[str, str]:
        path = self._manifest_path(handle)
        if not path.exists():
            raise KeyError(f"snapshot {handle} not found")
        payload = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(payload, dict) or not all(
            isinstance(key, str) and isinstance(value, str) for key, value in payload.items()
        ):
            raise ValueError(f"snapshot {handle} manifest is malformed")
        return payload

    def exists(self, handle: str) -> bool:
        return self._manifest_path(handle).exists()

    def restore(self, handle: str) -> ChangeSet:
        with self._lock:
            target = self.manifest(handle)
            live = self.live_manifest()
            changes = _compare(live, target)
            touched_dirs: set[Path] = set()
            for rel in changes.added:
                # "added" relative to live: present in the snapshot only.
                self._write_from_blob(rel, target[rel])
            for rel in changes.modified:
                self._write_from_blob(rel, target[rel])
            for rel in changes.removed:
                path = self.root / rel
                path.unlink(missing_ok=True)
                touched_dirs.add(path.parent)
            self._prune_dirs(touched_dirs)
            return changes

    def _write_from_blob(self, rel: str, digest: str) -> None:
        blob_path = self.blob_dir / digest
        if not blob_path.exists():
            raise FileNotFoundError(f"snapshot blob {digest} is missing")
        dest = self.root / rel
        dest.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = dest.with_name(f".{dest.name}.{uuid.uuid4().hex[:8]}.tmp")
        tmp_path.write_bytes(blob_path.read_bytes())
        tmp_path.replace(dest)

    def _prune_dirs(self, candidates: set[Path]) -> None:
        for directory in sorted(candidates, key=lambda item: len(item.parts), reverse=True):
            current = directory
            while current != self.root and self.root in current.parents:
                try:
                    current.rmdir()
                except OSError:
                    break
                current = current.parent

    def diff(self, a: str, b: str | None = None) -> ChangeSet:
        before = self.manifest(a)
        after = self.manifest(b) if b is not None else self.live_manifest()
        return _compare(before, after)

    def delete(self, handle: str) -> bool:
        path = self._manifest_path(handle)
        if not path.exists():
            return False
        path.unlink()
        return True

    def handles(self) -> list[str]:
        if not self.manifest_dir.exists():
            return []
        return sorted(path.stem for path in self.manifest_dir.glob("*.json"))

    def collect_garbage(self) -> int:
        """Delete blobs no manifest references. Returns the number removed."""
        with self._lock:
            referenced: set[str] = set()
            for handle in self.handles():
                try:
                    referenced.update(self.manifest(handle).values())
                except (ValueError, KeyError, OSError):
                    logger.warning("unreadable snapshot %s; skipping garbage collection", handle)
                    return 0
            removed = 0
            if not self.blob_dir.exists():
                return 0
            for blob in self.blob_dir.iterdir():
                if blob.name not in referenced and not blob.name.endswith(".tmp"):
                    blob.unlink(missing_ok=True)
                    removed += 1
            return removed


def _compare(before: dict[str, str], after: dict[str, str]) -> ChangeSet:
    return ChangeSet(
        added=sorted(rel for rel in after if rel not in before),
        removed=sorted(rel for rel in before if rel not in after),
        modified=sorted(rel for rel in after if rel in before and before[rel] != after[rel]),
    )
