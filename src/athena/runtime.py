"""Runtime functions behind the CLI: one call per user-level operation."""

import functools
import logging
import os
import stat
from typing import Optional

from athena.config import EngineSettings, RepositoryConfig
from athena.engine.backup import BackupResult, BackupSession, FileMetadata
from athena.engine.restore import RestoreReport, Restorer
from athena.errors import NotFoundError
from athena.repo.repository import (
    CheckReport,
    GcReport,
    PruneReport,
    Repository,
    SnapshotSummary,
)

logger = logging.getLogger(__name__)


def open_repo(url: str, settings: Optional[EngineSettings] = None) -> Repository:
    return Repository(url, settings or EngineSettings.from_env())


def init_repo(
    url: str,
    config: Optional[RepositoryConfig] = None,
    settings: Optional[EngineSettings] = None,
) -> RepositoryConfig:
    """
    Initialize a new repository.

    Args:
        url: fsspec URL for the repository.
        config: Chunking, hashing and compression settings. Defaults apply if None.

    Raises:
        ConfigError: If a repository already exists at url.
    """
    repo = open_repo(url, settings)
    return repo.init(config)


def _manifest_path(path: str) -> str:
    return path.replace(os.sep, "/")


def _submit_tree(session: BackupSession, source_root: str) -> None:
    """Walk one source and hand every entry to the session. Symlinks are not followed."""
    base = os.path.dirname(source_root)

    def submit(path: str) -> None:
        rel = _manifest_path(os.path.relpath(path, base))
        try:
            st = os.lstat(path)
            if stat.S_ISLNK(st.st_mode):
                session.submit(rel, metadata=FileMetadata.from_stat(st, os.readlink(path)))
            elif stat.S_ISDIR(st.st_mode):
                session.submit(rel, metadata=FileMetadata.from_stat(st))
            elif stat.S_ISREG(st.st_mode):
                opener = functools.partial(open, path, "rb")
                session.submit(rel, opener, FileMetadata.from_stat(st))
            else:
                session.skip(rel, "not a regular file, directory or symlink")
        except OSError as e:
            session.skip(rel, str(e))

    def on_error(error: OSError) -> None:
        path = error.filename or source_root
        session.skip(_manifest_path(os.path.relpath(path, base)), str(error))

    if os.path.islink(source_root) or not os.path.isdir(source_root):
        submit(source_root)
        return

    for dirpath, dirnames, filenames in os.walk(source_root, onerror=on_error):
        if session.cancelled:
            return
        submit(dirpath)
        for name in filenames:
            submit(os.path.join(dirpath, name))
        # Symlinked directories are listed in dirnames but never entered.
        for name in dirnames:
            full = os.path.join(dirpath, name)
            if os.path.islink(full):
                submit(full)


def run_backup(
    repo_url: str,
    sources: list[str],
    parent: Optional[str] = None,
    workers: Optional[int] = None,
    settings: Optional[EngineSettings] = None,
) -> BackupResult:
    """
    Back up one or more local files or directories as a new snapshot.

    Entries are recorded relative to each source's parent directory, so
    backing up ``/home/me/docs`` stores ``docs/...``.

    Args:
        repo_url: fsspec URL for the repository.
        sources: Local file/directory paths.
        parent: Parent snapshot id (or prefix). Defaults to the latest
            snapshot of the same sources.
        workers: Worker threads. Defaults to the configured setting.

    Returns:
        The BackupResult; its snapshot_id names the new snapshot.

    Raises:
        NotFoundError: If a source does not exist.
        BackupFailedError: If no file could be read.
        CommitError: If the snapshot could not be written.
    """
    roots = [os.path.abspath(s) for s in sources]
    for source, root in zip(sources, roots):
        if not os.path.lexists(root):
            raise NotFoundError(f"Specified file or directory does not exist: {source}")

    with open_repo(repo_url, settings) as repo:
        repo._ensure_initialized()
        if parent is None:
            latest = repo.latest_snapshot(roots)
            if latest is not None:
                parent = latest.snapshot_id
                logger.info("Using snapshot %s as parent", parent)

        session = BackupSession(repo, sources=tuple(roots), parent_snapshot_id=parent, workers=workers)
        with session:
            for root in roots:
                _submit_tree(session, root)
            return session.finish()


def list_snapshots(repo_url: str, settings: Optional[EngineSettings] = None) -> list[SnapshotSummary]:
    """List snapshots, newest first."""
    repo = open_repo(repo_url, settings)
    repo._ensure_initialized()
    return repo.list_snapshots()


def run_restore(
    repo_url: str,
    dest: str,
    snapshot_id: Optional[str] = None,
    paths: Optional[list[str]] = None,
    settings: Optional[EngineSettings] = None,
) -> RestoreReport:
    """
    Restore a snapshot to a destination directory.

    Args:
        repo_url: fsspec URL for the repository.
        dest: Destination directory for restored files.
        snapshot_id: Snapshot id or unique prefix. If None, restores the latest.
        paths: Restore only these manifest paths (and anything below them).

    Raises:
        NotFoundError: If the snapshot or a requested path does not exist.
        ManifestFormatError: If the snapshot's parent chain loops or runs backwards in time.
    """
    with open_repo(repo_url, settings) as repo:
        repo._ensure_initialized()
        if snapshot_id:
            manifest = repo.load_manifest(snapshot_id)
        else:
            latest = repo.latest_snapshot()
            if latest is None:
                raise NotFoundError("No snapshots found")
            manifest = repo.load_manifest(latest.snapshot_id)
        return Restorer(repo).restore(manifest, dest, paths)


def run_prune(repo_url: str, snapshot_id: str, settings: Optional[EngineSettings] = None) -> PruneReport:
    """Delete a snapshot; its chunks become collectible by run_gc()."""
    with open_repo(repo_url, settings) as repo:
        return repo.prune(snapshot_id)


def run_gc(repo_url: str, settings: Optional[EngineSettings] = None) -> GcReport:
    with open_repo(repo_url, settings) as repo:
        return repo.gc()


def run_check(
    repo_url: str,
    read_data: bool = True,
    settings: Optional[EngineSettings] = None,
) -> CheckReport:
    with open_repo(repo_url, settings) as repo:
        return repo.check(read_data=read_data)


def run_rebuild_index(repo_url: str, settings: Optional[EngineSettings] = None) -> int:
    """Rebuild the index from container footers and manifests. Returns the chunk count."""
    with open_repo(repo_url, settings) as repo:
        repo._ensure_initialized()
        return len(repo.rebuild_index())


def run_unlock(repo_url: str, settings: Optional[EngineSettings] = None) -> int:
    return open_repo(repo_url, settings).unlock()

