"""Backup runs: chunk submitted files on a worker pool and commit a manifest."""

from __future__ import annotations

import logging
import os
import socket
import stat
import threading
import time
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from contextlib import ExitStack
from dataclasses import dataclass, field
from enum import Enum
from typing import BinaryIO, Callable, Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from athena.errors import BackupFailedError, CommitError, PartialRunError, StorageIOError
from athena.repo.manifest import (
    KIND_DIR,
    KIND_FILE,
    KIND_SYMLINK,
    FileEntry,
    Manifest,
    new_snapshot_id,
)
from athena.repo.repository import Repository

logger = logging.getLogger(__name__)

Source = Union[BinaryIO, Callable[[], BinaryIO], None]


class BackupState(str, Enum):
    TRAVERSING = "traversing"
    CHUNKING = "chunking"
    COMMITTING = "committing"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RunStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class FileMetadata:
    mode: int = stat.S_IFREG | 0o644
    mtime_ns: int = 0
    kind: str = KIND_FILE
    link_target: Optional[str] = None

    @staticmethod
    def from_stat(st: os.stat_result, link_target: Optional[str] = None) -> "FileMetadata":
        if stat.S_ISLNK(st.st_mode):
            kind = KIND_SYMLINK
        elif stat.S_ISDIR(st.st_mode):
            kind = KIND_DIR
        else:
            kind = KIND_FILE
        return FileMetadata(
            mode=st.st_mode,
            mtime_ns=int(st.st_mtime_ns),
            kind=kind,
            link_target=link_target,
        )


@dataclass(frozen=True)
class SkippedFile:
    path: str
    reason: str


@dataclass
class BackupResult:
    status: RunStatus
    snapshot_id: Optional[str] = None
    manifest: Optional[Manifest] = None
    skipped: list[SkippedFile] = field(default_factory=list)
    chunks_total: int = 0
    chunks_new: int = 0
    bytes_read: int = 0

    def raise_for_status(self) -> None:
        """Raise PartialRunError if any file was skipped."""
        if self.status == RunStatus.PARTIAL:
            raise PartialRunError(self.skipped)


class _Cancelled(Exception):
    pass


class BackupSession:
    """One backup run.

    A traversal collaborator calls submit() once per path and then finish().
    Files are chunked concurrently; the chunks of a single file are processed
    in order by one worker. The session holds the repository's shared lock
    from creation until it finishes, so garbage collection cannot run
    meanwhile.
    """

    def __init__(
        self,
        repo: Repository,
        sources: tuple[str, ...] = (),
        parent_snapshot_id: Optional[str] = None,
        workers: Optional[int] = None,
        hostname: Optional[str] = None,
        lock_timeout: Optional[float] = None,
    ):
        self.repo = repo
        self.sources = tuple(sources)
        self.parent_snapshot_id = parent_snapshot_id
        self.hostname = hostname or socket.gethostname()
        self.snapshot_id = new_snapshot_id()
        self.state = BackupState.TRAVERSING

        self._hold = ExitStack()
        self._hold.enter_context(repo.shared(lock_timeout))
        try:
            if parent_snapshot_id:
                self.parent_snapshot_id = repo.load_manifest(parent_snapshot_id).snapshot_id
            self._chunker = repo.chunker
            self._index = repo.index
        except BaseException:
            self._hold.close()
            raise

        self._executor = ThreadPoolExecutor(
            max_workers=workers or repo.settings.workers,
            thread_name_prefix="athena-backup",
        )
        self._cancel = threading.Event()
        self._lock = threading.Lock()
        self._pending: list[Union[FileEntry, SkippedFile, Future]] = []
        self._references: list[str] = []
        self._chunks_total = 0
        self._chunks_new = 0
        self._bytes_read = 0

    # -- traversal side ----------------------------------------------------

    def submit(self, path: str, source: Source = None, metadata: Optional[FileMetadata] = None) -> None:
        """
        Queue one path for archiving.

        Args:
            path: Path recorded in the manifest (relative to the backup root).
            source: Open binary stream, or a zero-argument callable returning
                one. Callables are invoked (and the stream closed) by the
                worker, so open errors are recorded as skipped files.
                Ignored for directories and symlinks.
            metadata: Mode, mtime and kind. Defaults to a regular file.
        """
        if self.state not in (BackupState.TRAVERSING, BackupState.CHUNKING):
            raise RuntimeError(f"Cannot submit files to a {self.state.value} backup")
        metadata = metadata or FileMetadata(mtime_ns=time.time_ns())
        if metadata.kind != KIND_FILE:
            self._pending.append(
                FileEntry(
                    path=path,
                    size=0,
                    mode=metadata.mode,
                    mtime_ns=metadata.mtime_ns,
                    kind=metadata.kind,
                    link_target=metadata.link_target,
                )
            )
            return
        if source is None:
            raise ValueError(f"No data source given for file {path}")
        self.state = BackupState.CHUNKING
        self._pending.append(self._executor.submit(self._process, path, source, metadata))

    def skip(self, path: str, reason: str) -> None:
        """Record a path the traversal could not archive (unreadable, special file)."""
        if self.state not in (BackupState.TRAVERSING, BackupState.CHUNKING):
            raise RuntimeError(f"Cannot skip files in a {self.state.value} backup")
        logger.warning("Skipped %s: %s", path, reason)
        self._pending.append(SkippedFile(path, reason))

    def cancel(self) -> None:
        """Stop at the next file or chunk boundary; finish() then commits nothing."""
        if self.state in (BackupState.TRAVERSING, BackupState.CHUNKING):
            logger.info("Cancelling backup %s", self.snapshot_id)
            self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    # -- workers -----------------------------------------------------------

    def _process(self, path: str, source: Source, metadata: FileMetadata):
        if self._cancel.is_set():
            raise _Cancelled()
        taken: list[str] = []
        size = 0
        new = 0
        try:
            if callable(source):
                with source() as stream:
                    size, new = self._chunk_stream(path, stream, taken)
            else:
                size, new = self._chunk_stream(path, source, taken)
        except _Cancelled:
            self._release(taken)
            raise
        except Exception as e:
            self._release(taken)
            logger.warning("Skipped %s: %s", path, e, exc_info=not isinstance(e, OSError))
            return SkippedFile(path, str(e) or e.__class__.__name__)
        except BaseException:
            self._release(taken)
            raise

        with self._lock:
            self._references.extend(taken)
            self._chunks_total += len(taken)
            self._chunks_new += new
            self._bytes_read += size
        logger.debug("Chunked %s into %d chunks (%d new)", path, len(taken), new)
        return FileEntry(
            path=path,
            size=size,
            mode=metadata.mode,
            mtime_ns=metadata.mtime_ns,
            chunks=tuple(taken),
        )

    def _chunk_stream(self, path: str, stream: BinaryIO, taken: list[str]) -> tuple[int, int]:
        size = 0
        new = 0
        for chunk in self._chunker.chunk(stream):
            if self._cancel.is_set():
                raise _Cancelled()
            previous, _ = self.repo.store_chunk(chunk.fingerprint, chunk.data)
            taken.append(chunk.fingerprint)
            size += chunk.size
            if previous == 0:
                new += 1
        return size, new

    def _release(self, fingerprints: list[str]) -> None:
        for fp in fingerprints:
            self._index.release(fp)

    def _rollback(self) -> None:
        with self._lock:
            taken, self._references = self._references, []
        self._release(taken)

    # -- completion --------------------------------------------------------

    def _collect(self) -> tuple[list[FileEntry], list[SkippedFile]]:
        entries: list[FileEntry] = []
        skipped: list[SkippedFile] = []
        for item in self._pending:
            if isinstance(item, FileEntry):
                entries.append(item)
                continue
            if isinstance(item, SkippedFile):
                skipped.append(item)
                continue
            try:
                outcome = item.result()
            except (_Cancelled, CancelledError):
                continue
            if isinstance(outcome, SkippedFile):
                skipped.append(outcome)
            else:
                entries.append(outcome)
        return entries, skipped

    def _close(self) -> None:
        self._executor.shutdown(wait=True, cancel_futures=True)
        self._hold.close()

    def finish(self) -> BackupResult:
        """
        Wait for all files and commit the manifest.

        Returns:
            BackupResult with status SUCCESS, PARTIAL (some files skipped) or
            CANCELLED (nothing committed).

        Raises:
            BackupFailedError: If files were submitted but none could be read.
            CommitError: If the manifest could not be persisted.
        """
        if self.state not in (BackupState.TRAVERSING, BackupState.CHUNKING):
            raise RuntimeError(f"Backup already {self.state.value}")
        try:
            if self._cancel.is_set():
                self._executor.shutdown(wait=True, cancel_futures=True)
            entries, skipped = self._collect()
        except BaseException:
            self._rollback()
            self.state = BackupState.FAILED
            self._close()
            raise

        if self._cancel.is_set():
            self._rollback()
            self.state = BackupState.CANCELLED
            self._close()
            logger.info("Backup %s cancelled; nothing committed", self.snapshot_id)
            return BackupResult(status=RunStatus.CANCELLED, skipped=skipped)

        if self._pending and not entries:
            self._rollback()
            self.state = BackupState.FAILED
            self._close()
            raise BackupFailedError("No files were processed")

        self.state = BackupState.COMMITTING
        manifest = Manifest(
            snapshot_id=self.snapshot_id,
            creation_time=time.time(),
            parent_snapshot_id=self.parent_snapshot_id,
            hostname=self.hostname,
            sources=self.sources,
            files=tuple(entries),
        )
        try:
            self.repo.store.flush()
            self.repo.write_manifest(manifest)
        except (CommitError, StorageIOError) as e:
            self._rollback()
            self.state = BackupState.FAILED
            self._close()
            logger.error("Backup %s failed to commit: %s", self.snapshot_id, e)
            if isinstance(e, CommitError):
                raise
            raise CommitError(f"Could not commit snapshot {self.snapshot_id}: {e}") from e

        self.state = BackupState.COMPLETE
        try:
            self.repo.save_index()
        except (OSError, SQLAlchemyError) as e:
            logger.warning("Index cache not saved, it will be rebuilt: %s", e)
        self._close()

        status = RunStatus.PARTIAL if skipped else RunStatus.SUCCESS
        logger.info(
            "Snapshot %s committed: %d entries, %d skipped, %d/%d chunks new",
            self.snapshot_id,
            len(entries),
            len(skipped),
            self._chunks_new,
            self._chunks_total,
        )
        return BackupResult(
            status=status,
            snapshot_id=self.snapshot_id,
            manifest=manifest,
            skipped=skipped,
            chunks_total=self._chunks_total,
            chunks_new=self._chunks_new,
            bytes_read=self._bytes_read,
        )

    def __enter__(self) -> "BackupSession":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self.state in (BackupState.TRAVERSING, BackupState.CHUNKING):
            self.cancel()
            self.finish()
