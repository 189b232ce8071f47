"""Restore snapshots from a repository to the local filesystem."""

from __future__ import annotations

import logging
import os
import stat
import tempfile
from dataclasses import dataclass
from typing import Iterable, Optional

from athena.errors import ManifestFormatError, MissingChunkError, NotFoundError
from athena.repo.manifest import KIND_DIR, KIND_FILE, KIND_SYMLINK, FileEntry, Manifest
from athena.repo.repository import Repository

logger = logging.getLogger(__name__)


@dataclass
class RestoreReport:
    snapshot_id: str
    files_restored: int = 0
    dirs_restored: int = 0
    symlinks_restored: int = 0
    bytes_written: int = 0


def select_entries(manifest: Manifest, paths: Optional[Iterable[str]]) -> list[FileEntry]:
    """
    Pick the entries named by ``paths``, or every entry if paths is None.

    A path selects the entry itself and, for directories, everything below it.

    Raises:
        NotFoundError: If a requested path is not in the manifest.
    """
    if paths is None:
        return list(manifest.files)
    wanted = [p.strip("/") for p in paths]
    selected = []
    matched: set[str] = set()
    for entry in manifest.files:
        for p in wanted:
            if entry.path == p or entry.path.startswith(p + "/"):
                selected.append(entry)
                matched.add(p)
                break
    unknown = [p for p in wanted if p not in matched]
    if unknown:
        raise NotFoundError(
            f"Not in snapshot {manifest.snapshot_id}: {', '.join(sorted(unknown))}"
        )
    return selected


def _destination(target_root: str, entry: FileEntry) -> str:
    parts = entry.path.replace("\\", "/").split("/")
    if os.path.isabs(entry.path) or ".." in parts:
        raise ManifestFormatError(f"Refusing to restore unsafe path {entry.path!r}")
    return os.path.join(target_root, *parts)


def _apply_metadata(path: str, entry: FileEntry) -> None:
    try:
        os.chmod(path, stat.S_IMODE(entry.mode))
    except OSError as e:
        logger.warning("Could not set mode on %s: %s", path, e)
    try:
        os.utime(path, ns=(entry.mtime_ns, entry.mtime_ns))
    except OSError as e:
        logger.warning("Could not set mtime on %s: %s", path, e)


class Restorer:
    """Reassembles files from a manifest, verifying every chunk on the way."""

    def __init__(self, repo: Repository, lock_timeout: Optional[float] = None):
        self.repo = repo
        self.lock_timeout = lock_timeout

    def restore(
        self,
        manifest: Manifest,
        target_root: str,
        paths: Optional[Iterable[str]] = None,
    ) -> RestoreReport:
        """
        Restore a snapshot (or part of it) below target_root.

        Args:
            manifest: Snapshot to restore.
            target_root: Destination directory. Created if missing.
            paths: Optional manifest paths to restore instead of everything.

        Returns:
            RestoreReport with counts of restored entries.

        Raises:
            NotFoundError: If a requested path is not in the manifest.
            MissingChunkError: If a referenced chunk is not in the repository.
            CorruptChunkError: If a chunk fails verification. The file being
                restored is not created.
        """
        entries = select_entries(manifest, paths)
        report = RestoreReport(snapshot_id=manifest.snapshot_id)
        os.makedirs(target_root, exist_ok=True)

        with self.repo.shared(self.lock_timeout):
            dirs = [e for e in entries if e.kind == KIND_DIR]
            for entry in dirs:
                os.makedirs(_destination(target_root, entry), exist_ok=True)
                report.dirs_restored += 1

            for entry in entries:
                if entry.kind == KIND_FILE:
                    report.bytes_written += self._restore_file(entry, target_root)
                    report.files_restored += 1
                elif entry.kind == KIND_SYMLINK:
                    self._restore_symlink(entry, target_root)
                    report.symlinks_restored += 1

            # Deepest first, so restoring children does not reset a parent's mtime.
            for entry in sorted(dirs, key=lambda e: e.path.count("/"), reverse=True):
                _apply_metadata(_destination(target_root, entry), entry)

        logger.info(
            "Restored snapshot %s: %d files, %d bytes",
            manifest.snapshot_id,
            report.files_restored,
            report.bytes_written,
        )
        return report

    def _restore_file(self, entry: FileEntry, target_root: str) -> int:
        dest = _destination(target_root, entry)
        dest_dir = os.path.dirname(dest)
        os.makedirs(dest_dir, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(dir=dest_dir, prefix=".athena-restore-")
        try:
            written = 0
            with os.fdopen(fd, "wb") as f:
                for fp in entry.chunks:
                    try:
                        data = self.repo.read_chunk(fp)
                    except MissingChunkError as e:
                        raise MissingChunkError(fp, entry.path) from e
                    f.write(data)
                    written += len(data)
            if written != entry.size:
                raise ManifestFormatError(
                    f"{entry.path}: reassembled {written} bytes, manifest records {entry.size}"
                )
            os.replace(tmp_path, dest)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except FileNotFoundError:
                pass
            raise

        _apply_metadata(dest, entry)
        logger.debug("Restored %s (%d bytes)", entry.path, written)
        return written

    def _restore_symlink(self, entry: FileEntry, target_root: str) -> None:
        dest = _destination(target_root, entry)
        os.makedirs(os.path.dirname(dest), exist_ok=True)
        if os.path.lexists(dest):
            os.unlink(dest)
        os.symlink(entry.link_target or "", dest)
        try:
            os.utime(dest, ns=(entry.mtime_ns, entry.mtime_ns), follow_symlinks=False)
        except (OSError, NotImplementedError) as e:
            logger.debug("Could not set mtime on symlink %s: %s", dest, e)
