from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path

from conductor.core.errors import WorkspaceBusy

logger = logging.getLogger(__name__)


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
        return True
    except OSError:
        return False


def workspace_key(workspace: Path) -> str:
    resolved = str(Path(workspace).resolve())
    return hashlib.sha1(resolved.encode("utf-8")).hexdigest()


@dataclass(slots=True)
class LockOwner:
    task_id: str
    pid: int
    workspace: str


class WorkspaceLock:
    """Exclusive per-workspace ownership backed by a lock file.

    The file is created with ``O_EXCL`` and records the owning task and
    process. A lock whose process is gone is considered stale and reclaimed.
    """

    def __init__(self, lock_dir: Path, workspace: Path) -> None:
        self.lock_dir = Path(lock_dir)
        self.workspace = Path(workspace).resolve()
        self.path = self.lock_dir / f"{workspace_key(self.workspace)}.lock"
        self._guard = threading.Lock()

    def owner(self) -> LockOwner | None:
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError):
            logger.warning("unreadable workspace lock %s", self.path)
            return LockOwner(task_id="", pid=-1, workspace=str(self.workspace))
        if not isinstance(payload, dict):
            return LockOwner(task_id="", pid=-1, workspace=str(self.workspace))
        pid = payload.get("pid")
        return LockOwner(
            task_id=str(payload.get("task_id") or ""),
            pid=pid if isinstance(pid, int) else -1,
            workspace=str(payload.get("workspace") or self.workspace),
        )

    def acquire(self, task_id: str) -> None:
        with self._guard:
            self.lock_dir.mkdir(parents=True, exist_ok=True)
            for _ in range(2):
                if self._try_create(task_id):
                    return
                owner = self.owner()
                if owner is None:
                    continue
                if owner.task_id == task_id:
                    if owner.pid != os.getpid():
                        self._write(task_id)
                    return
                if owner.pid > 0 and _pid_alive(owner.pid):
                    raise WorkspaceBusy(
                        f"workspace {self.workspace} is held by task {owner.task_id}"
                    )
                logger.info("reclaiming stale workspace lock held by %s", owner.task_id or "?")
                self.path.unlink(missing_ok=True)
            raise WorkspaceBusy(f"workspace {self.workspace} could not be locked")

    def release(self, task_id: str) -> bool:
        with self._guard:
            owner = self.owner()
            if owner is None or owner.task_id != task_id:
                return False
            self.path.unlink(missing_ok=True)
            return True

    def held_by(self, task_id: str) -> bool:
        owner = self.owner()
        return owner is not None and owner.task_id == task_id

    def _try_create(self, task_id: str) -> bool:
        # The payload is complete before the lock path appears; readers never
        # see an empty lock file.
        tmp_path = self.lock_dir / f".{self.path.name}.{os.getpid()}.{threading.get_ident()}.tmp"
        tmp_path.write_text(json.dumps(self._payload(task_id)), encoding="utf-8")
        try:
            os.link(tmp_path, self.path)
        except FileExistsError:
            return False
        finally:
            tmp_path.unlink(missing_ok=True)
        return True

    def _write(self, task_id: str) -> None:
        tmp_path = self.path.with_suffix(".lock.tmp")
        tmp_path.write_text(json.dumps(self._payload(task_id)), encoding="utf-8")
        tmp_path.replace(self.path)

    def _payload(self, task_id: str) -> dict[str, object]:
        return {"task_id": task_id, "pid": os.getpid(), "workspace": str(self.workspace)}
