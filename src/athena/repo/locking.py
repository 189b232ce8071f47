"""Shared/exclusive locking for repositories.

Backups, restores, prunes and checks take a shared lock; garbage collection
and index rebuilds take an exclusive one. ``SharedExclusiveLock`` enforces this between
threads of one process, ``RepositoryLock`` between processes through lock
files stored in the repository itself.
"""

from __future__ import annotations

import json
import logging
import os
import socket
import threading
import time
import uuid
from contextlib import contextmanager
from typing import Iterator, Optional

from fsspec.spec import AbstractFileSystem

from athena.errors import RepositoryLockedError, StorageIOError

logger = logging.getLogger(__name__)

LOCKS_DIR = "locks"
SHARED = "shared"
EXCLUSIVE = "exclusive"


class SharedExclusiveLock:
    """Readers/writer lock: many shared holders or one exclusive holder."""

    def __init__(self):
        self._cond = threading.Condition()
        self._shared = 0
        self._exclusive = False

    def acquire_shared(self, timeout: Optional[float] = None) -> bool:
        with self._cond:
            if not self._cond.wait_for(lambda: not self._exclusive, timeout=timeout):
                return False
            self._shared += 1
            return True

    def release_shared(self) -> None:
        with self._cond:
            if self._shared <= 0:
                raise RuntimeError("release_shared() without a matching acquire")
            self._shared -= 1
            if self._shared == 0:
                self._cond.notify_all()

    def acquire_exclusive(self, timeout: Optional[float] = None) -> bool:
        with self._cond:
            ok = self._cond.wait_for(
                lambda: not self._exclusive and self._shared == 0, timeout=timeout
            )
            if ok:
                self._exclusive = True
            return ok

    def release_exclusive(self) -> None:
        with self._cond:
            if not self._exclusive:
                raise RuntimeError("release_exclusive() without a matching acquire")
            self._exclusive = False
            self._cond.notify_all()

    @contextmanager
    def shared(self, timeout: Optional[float] = None) -> Iterator[None]:
        if not self.acquire_shared(timeout):
            raise RepositoryLockedError("Repository is locked for garbage collection")
        try:
            yield
        finally:
            self.release_shared()

    @contextmanager
    def exclusive(self, timeout: Optional[float] = None) -> Iterator[None]:
        if not self.acquire_exclusive(timeout):
            raise RepositoryLockedError("Repository is in use by a backup or restore")
        try:
            yield
        finally:
            self.release_exclusive()

    @property
    def shared_holders(self) -> int:
        return self._shared

    @property
    def exclusive_held(self) -> bool:
        return self._exclusive


class RepositoryLock:
    """Lock file in ``locks/`` visible to every process using the repository."""

    def __init__(self, fs: AbstractFileSystem, root: str, kind: str = SHARED):
        if kind not in (SHARED, EXCLUSIVE):
            raise ValueError(f"Unknown lock kind: {kind}")
        self.fs = fs
        self.root = root
        self.kind = kind
        self.lock_id = uuid.uuid4().hex
        self.path = self.root + f"{LOCKS_DIR}/{self.lock_id}.{kind}"
        self._held = False

    def _conflicts(self) -> list[str]:
        conflicts = []
        for path in list_lock_files(self.fs, self.root):
            if path.rstrip("/").split("/")[-1] == f"{self.lock_id}.{self.kind}":
                continue
            if self.kind == EXCLUSIVE or path.endswith("." + EXCLUSIVE):
                conflicts.append(path)
        return conflicts

    def acquire(self) -> None:
        """
        Create the lock file.

        Raises:
            RepositoryLockedError: If a conflicting lock exists.
        """
        if self._conflicts():
            raise RepositoryLockedError(self._describe_conflict())
        info = {
            "kind": self.kind,
            "hostname": socket.gethostname(),
            "pid": os.getpid(),
            "time": time.time(),
        }
        try:
            self.fs.makedirs(self.root + LOCKS_DIR, exist_ok=True)
            with self.fs.open(self.path, "w") as f:
                json.dump(info, f)
        except OSError as e:
            raise StorageIOError(f"Could not create lock file: {e}") from e
        # Two processes may have passed the first check at the same time.
        if self._conflicts():
            self._remove()
            raise RepositoryLockedError(self._describe_conflict())
        self._held = True

    def _describe_conflict(self) -> str:
        if self.kind == EXCLUSIVE:
            return "Repository is in use by another process; run 'unlock' if it is stale"
        return "Repository is exclusively locked by another process; run 'unlock' if it is stale"

    def _remove(self) -> None:
        try:
            self.fs.rm(self.path)
        except FileNotFoundError:
            logger.warning("Lock file %s already removed", self.path)

    def release(self) -> None:
        if self._held:
            self._remove()
            self._held = False

    def __enter__(self) -> "RepositoryLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()


def list_lock_files(fs: AbstractFileSystem, root: str) -> list[str]:
    locks_dir = root + LOCKS_DIR
    try:
        if not fs.exists(locks_dir):
            return []
        return [p for p in fs.ls(locks_dir, detail=False) if p.endswith((SHARED, EXCLUSIVE))]
    except OSError as e:
        raise StorageIOError(f"Could not list lock files: {e}") from e


def remove_all_locks(fs: AbstractFileSystem, root: str) -> int:
    """Remove every lock file, e.g. after a crashed process. Returns the count."""
    removed = 0
    for path in list_lock_files(fs, root):
        fs.rm(path)
        removed += 1
    return removed
