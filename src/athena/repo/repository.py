"""Repository management using fsspec."""

import hashlib
import json
import logging
import threading
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator, Optional

import fsspec
from fsspec.spec import AbstractFileSystem

from athena.config import EngineSettings, RepositoryConfig
from athena.errors import (
    ConfigError,
    CorruptChunkError,
    ManifestFormatError,
    MissingChunkError,
    NotFoundError,
    RepositoryNotInitializedError,
)
from athena.pipeline.chunking import ContentDefinedChunker
from athena.repo.chunk_store import PACKS_DIR, ChunkLocation, ChunkStore
from athena.repo.index import ChunkIndex
from athena.repo.locking import (
    EXCLUSIVE,
    LOCKS_DIR,
    SHARED,
    RepositoryLock,
    SharedExclusiveLock,
    remove_all_locks,
)
from athena.repo.manifest import SNAPSHOTS_DIR, Manifest, ManifestStore

logger = logging.getLogger(__name__)

CONFIG_FILE = "config.json"

# (container ids, snapshot ids)
RepoState = tuple[frozenset, frozenset]


@dataclass(frozen=True)
class SnapshotSummary:
    snapshot_id: str
    creation_time: float
    file_count: int
    total_size: int = 0
    parent_snapshot_id: Optional[str] = None
    hostname: str = ""


@dataclass
class PruneReport:
    snapshot_id: str
    references_released: int = 0
    collectible: int = 0


@dataclass
class GcReport:
    chunks_removed: int = 0
    containers_removed: int = 0
    containers_rewritten: int = 0
    chunks_relocated: int = 0
    bytes_freed: int = 0
    missing: list[str] = field(default_factory=list)


@dataclass
class DamagedChunk:
    fingerprint: str
    reason: str
    affected: list[tuple[str, str]] = field(default_factory=list)  # (snapshot_id, path)


@dataclass
class CheckReport:
    chunks_checked: int = 0
    corrupt: list[DamagedChunk] = field(default_factory=list)
    missing: list[DamagedChunk] = field(default_factory=list)
    damaged_containers: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not (self.corrupt or self.missing or self.damaged_containers)


class Repository:
    """Manages a deduplicating backup repository using fsspec."""

    def __init__(
        self,
        url: str,
        settings: Optional[EngineSettings] = None,
        **storage_options,
    ):
        """
        Initialize a repository handle.

        Args:
            url: fsspec URL (e.g., 'file:///path', 's3://bucket/prefix', 'memory://repo').
            settings: Runtime settings. Defaults to EngineSettings() (no env lookup).
            storage_options: Passed through to the fsspec filesystem.
        """
        self.url = url
        self.fs: AbstractFileSystem
        self.fs, self.root = fsspec.core.url_to_fs(url, **storage_options)
        self.settings = settings or EngineSettings()

        # Normalize root path for the filesystem
        if not self.root.endswith("/"):
            self.root = self.root + "/"

        self.lock = SharedExclusiveLock()
        self.manifests = ManifestStore(self.fs, self.root)
        self._config: Optional[RepositoryConfig] = None
        self._store: Optional[ChunkStore] = None
        self._index: Optional[ChunkIndex] = None
        self._index_state: RepoState = (frozenset(), frozenset())
        self._snapshots_added: set[str] = set()
        self._snapshots_removed: set[str] = set()
        self._setup_lock = threading.RLock()

    # -- lifecycle ---------------------------------------------------------

    def exists(self) -> bool:
        """Check if repository exists and is initialized."""
        return self.fs.exists(self.root + CONFIG_FILE)

    def _ensure_initialized(self) -> None:
        """Check if repository is initialized; raise if not."""
        if not self.exists():
            raise RepositoryNotInitializedError(
                f"Repository not initialized at {self.url}. Run init first."
            )

    def init(self, config: Optional[RepositoryConfig] = None) -> RepositoryConfig:
        """
        Initialize a new repository.

        Raises:
            ConfigError: If a repository already exists at this URL.
        """
        if self.exists():
            raise ConfigError(f"Repository already exists at {self.url}")
        config = config or RepositoryConfig()
        for subdir in [PACKS_DIR, SNAPSHOTS_DIR, LOCKS_DIR]:
            self.fs.makedirs(self.root + subdir, exist_ok=True)
        with self.fs.open(self.root + CONFIG_FILE, "w") as f:
            json.dump(config.to_dict(), f, indent=2)
        self._config = config
        logger.info("Initialized repository %s at %s", config.repository_id, self.url)
        return config

    @property
    def config(self) -> RepositoryConfig:
        if self._config is None:
            self._ensure_initialized()
            with self.fs.open(self.root + CONFIG_FILE, "r") as f:
                try:
                    data = json.load(f)
                except ValueError as e:
                    raise ConfigError(f"Repository config is not valid JSON: {e}") from e
            self._config = RepositoryConfig.from_dict(data)
        return self._config

    @property
    def chunker(self) -> ContentDefinedChunker:
        return self.config.make_chunker()

    @property
    def store(self) -> ChunkStore:
        with self._setup_lock:
            if self._store is None:
                cfg = self.config
                self._store = ChunkStore(
                    self.fs,
                    self.root,
                    compressor=cfg.make_compressor(),
                    hasher=cfg.make_hasher(),
                    container_size=cfg.container_size,
                )
            return self._store

    @property
    def index(self) -> ChunkIndex:
        store = self.store
        with self._setup_lock:
            if self._index is None:
                self._index = self._load_or_rebuild_index(store)
            return self._index

    def _cache_path(self) -> Optional[str]:
        return self.settings.index_cache_path(self.config.repository_id)

    def _repo_state(self) -> RepoState:
        return frozenset(self.store.container_ids()), frozenset(self.manifests.ids())

    @staticmethod
    def _token_for(state: RepoState) -> str:
        containers, snapshots = state
        h = hashlib.sha256()
        for cid in sorted(containers):
            h.update(b"c" + cid.encode())
        for sid in sorted(snapshots):
            h.update(b"s" + sid.encode())
        return h.hexdigest()

    def state_token(self) -> str:
        """Digest of the container and snapshot ids currently in the repository."""
        return self._token_for(self._repo_state())

    def _load_or_rebuild_index(self, store: ChunkStore) -> ChunkIndex:
        state = self._repo_state()
        path = self._cache_path()
        index = ChunkIndex.load(path, self._token_for(state)) if path else None
        if index is None:
            index, _ = self._build_index(store)
        self._index_state = state
        return index

    def _build_index(self, store: ChunkStore) -> tuple[ChunkIndex, list[str]]:
        found, damaged = store.scan()
        index = ChunkIndex()
        for fp, location in found.items():
            index.record(fp, location)
        missing = index.reconcile(self.reference_counts())
        if missing:
            logger.warning("%d referenced chunk(s) are missing from the store", len(missing))
        if damaged:
            logger.warning("%d container(s) could not be read", len(damaged))
        logger.info("Rebuilt index with %d chunks", len(index))
        return index, missing

    def _reload_index(self) -> tuple[ChunkIndex, list[str]]:
        # Caller holds the exclusive lock.
        store = self.store
        store.flush()
        state = self._repo_state()
        index, missing = self._build_index(store)
        with self._setup_lock:
            self._index = index
            self._index_state = state
        return index, missing

    def rebuild_index(self, timeout: Optional[float] = None) -> ChunkIndex:
        """Discard the index and rebuild it from container footers and manifests."""
        with self.exclusive(timeout):
            index, _ = self._reload_index()
            self.save_index()
            return index

    def _expected_state(self) -> RepoState:
        """Repository state as seen when the index was loaded, plus this handle's own changes."""
        containers, snapshots = self._index_state
        written, removed = self.store.container_changes()
        return (
            (containers | written) - removed,
            (snapshots | self._snapshots_added) - self._snapshots_removed,
        )

    def save_index(self) -> None:
        """
        Write the index cache, if a cache directory is configured.

        The cache is only written when every container and snapshot in the
        repository is accounted for by the index. If another handle changed
        the repository meanwhile, the cache is discarded instead.
        """
        if self._index is None:
            return
        path = self._cache_path()
        if not path:
            return
        self.store.flush()
        current = self._repo_state()
        if current != self._expected_state():
            logger.warning("Repository changed by another writer, discarding index cache")
            ChunkIndex.discard(path)
            return
        self._index.save(path, self._token_for(current))

    def close(self) -> None:
        if self._store is not None:
            self._store.flush()
        self.save_index()

    def __enter__(self) -> "Repository":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # -- locking -----------------------------------------------------------

    @contextmanager
    def shared(self, timeout: Optional[float] = None) -> Iterator[None]:
        """Hold the repository for a backup, restore or prune."""
        with self.lock.shared(timeout):
            with RepositoryLock(self.fs, self.root, SHARED):
                yield

    @contextmanager
    def exclusive(self, timeout: Optional[float] = None) -> Iterator[None]:
        """Hold the repository alone, for garbage collection and index rebuilds."""
        with self.lock.exclusive(timeout):
            with RepositoryLock(self.fs, self.root, EXCLUSIVE):
                yield

    def unlock(self) -> int:
        """Remove stale lock files left behind by crashed processes."""
        self._ensure_initialized()
        removed = remove_all_locks(self.fs, self.root)
        logger.info("Removed %d lock file(s)", removed)
        return removed

    # -- chunks ------------------------------------------------------------

    def store_chunk(self, fingerprint: str, data: bytes) -> tuple[int, ChunkLocation]:
        """
        Reference a chunk, writing it only if no copy is indexed yet.

        Returns:
            (previous reference count, location).
        """
        store = self.store
        return self.index.add_reference(fingerprint, lambda: store.put(fingerprint, data))

    def read_chunk(self, fingerprint: str) -> bytes:
        """
        Fetch and verify a chunk.

        Raises:
            MissingChunkError: If the chunk is not indexed or its container is gone.
            CorruptChunkError: If the stored bytes fail verification.
        """
        location = self.index.lookup(fingerprint)
        if location is None:
            raise MissingChunkError(fingerprint)
        try:
            return self.store.get(location, fingerprint)
        except NotFoundError as e:
            raise MissingChunkError(fingerprint) from e

    # -- snapshots ---------------------------------------------------------

    def write_manifest(self, manifest: Manifest) -> str:
        self._ensure_initialized()
        path = self.manifests.write(manifest)
        self._snapshots_added.add(manifest.snapshot_id)
        return path

    def load_manifest(self, snapshot_id: str, verify_lineage: bool = True) -> Manifest:
        """
        Load a manifest by id or unique prefix.

        Args:
            snapshot_id: Full snapshot id or unique prefix.
            verify_lineage: Also walk the parent chain (see lineage()).

        Raises:
            NotFoundError: If the snapshot does not exist.
            ManifestFormatError: If the manifest is unreadable, or its parent
                chain loops or has a parent newer than its child.
        """
        self._ensure_initialized()
        manifest = self.manifests.load(snapshot_id)
        if verify_lineage:
            self._walk_lineage(manifest)
        return manifest

    def list_manifests(self) -> list[Manifest]:
        """
        List all manifests, sorted by creation_time descending.

        Unreadable manifests are logged and left out.
        """
        self._ensure_initialized()
        manifests = []
        for sid in self.manifests.ids():
            try:
                manifests.append(self.manifests.load(sid))
            except (ManifestFormatError, NotFoundError) as e:
                logger.warning("Could not load snapshot %s: %s", sid, e)
        manifests.sort(key=lambda m: m.creation_time, reverse=True)
        return manifests

    def list_snapshots(self) -> list[SnapshotSummary]:
        return [
            SnapshotSummary(
                snapshot_id=m.snapshot_id,
                creation_time=m.creation_time,
                file_count=m.file_count,
                total_size=m.total_size,
                parent_snapshot_id=m.parent_snapshot_id,
                hostname=m.hostname,
            )
            for m in self.list_manifests()
        ]

    def latest_snapshot(self, sources: Optional[list[str]] = None) -> Optional[Manifest]:
        """Most recent snapshot, optionally restricted to one set of sources."""
        for manifest in self.list_manifests():
            if sources is None or sorted(manifest.sources) == sorted(sources):
                return manifest
        return None

    def lineage(self, snapshot_id: str) -> list[Manifest]:
        """
        Follow parent links from a snapshot back to its oldest surviving ancestor.

        Raises:
            ManifestFormatError: If the chain loops or a parent is newer than its child.
        """
        return self._walk_lineage(self.load_manifest(snapshot_id, verify_lineage=False))

    def _walk_lineage(self, manifest: Manifest) -> list[Manifest]:
        chain = [manifest]
        seen = {chain[0].snapshot_id}
        while chain[-1].parent_snapshot_id:
            child = chain[-1]
            parent_id = child.parent_snapshot_id
            if parent_id in seen:
                raise ManifestFormatError(f"Snapshot lineage loops at {parent_id}")
            try:
                parent = self.manifests.load(parent_id)
            except NotFoundError:
                logger.warning(
                    "Parent %s of snapshot %s no longer exists", parent_id, child.snapshot_id
                )
                break
            if parent.creation_time > child.creation_time:
                raise ManifestFormatError(
                    f"Snapshot {child.snapshot_id} is older than its parent {parent_id}"
                )
            seen.add(parent_id)
            chain.append(parent)
        return chain

    def reference_counts(self) -> Counter:
        """
        Count chunk references across all manifests.

        Raises:
            ManifestFormatError: If any manifest is unreadable, since every
                manifest must be accounted for before chunks are reclaimed.
        """
        counts: Counter = Counter()
        for sid in self.manifests.ids():
            counts.update(self.manifests.load(sid).fingerprints())
        return counts

    def prune(self, snapshot_id: str, timeout: Optional[float] = None) -> PruneReport:
        """
        Delete a snapshot after releasing every chunk reference it holds.

        Chunks are reclaimed later by gc().
        """
        self._ensure_initialized()
        with self.shared(timeout):
            manifest = self.manifests.load(snapshot_id)
            report = PruneReport(snapshot_id=manifest.snapshot_id)
            index = self.index
            # Only the caller whose delete succeeds releases the references.
            self.manifests.delete(manifest.snapshot_id)
            self._snapshots_removed.add(manifest.snapshot_id)
            for fp in manifest.fingerprints():
                try:
                    remaining = index.release(fp)
                except NotFoundError:
                    logger.warning("Snapshot %s references unindexed chunk %s", manifest.snapshot_id, fp)
                    continue
                report.references_released += 1
                if remaining == 0:
                    report.collectible += 1
            logger.info(
                "Pruned snapshot %s (%d references released, %d chunks collectible)",
                manifest.snapshot_id,
                report.references_released,
                report.collectible,
            )
            self.save_index()
            return report

    def gc(self, timeout: Optional[float] = None) -> GcReport:
        """
        Reclaim every chunk not referenced by a surviving manifest.

        Requires exclusive access: no backup or restore may run meanwhile.
        """
        self._ensure_initialized()
        with self.exclusive(timeout):
            # Counts and locations come from a fresh scan, never a cached index.
            index, missing = self._reload_index()
            store = self.store
            report = GcReport(missing=missing)
            if report.missing:
                logger.error(
                    "%d referenced chunk(s) are missing from the store", len(report.missing)
                )
            removed = index.garbage_collect(
                e.fingerprint for e in index.entries() if e.reference_count > 0
            )
            for entry in removed:
                store.delete(entry.location)
            compacted = store.compact(e.location for e in index.entries())
            for fp, location in compacted.relocated.items():
                if fp in index:
                    index.relocate(fp, location)
            report.chunks_removed = len(removed)
            report.containers_removed = len(compacted.removed_containers)
            report.containers_rewritten = len(compacted.rewritten_containers)
            report.chunks_relocated = len(compacted.relocated)
            report.bytes_freed = compacted.bytes_freed
            self.save_index()
            logger.info(
                "Garbage collection removed %d chunks, freed %d bytes",
                report.chunks_removed,
                report.bytes_freed,
            )
            return report

    def check(self, read_data: bool = True) -> CheckReport:
        """
        Verify that every referenced chunk exists and matches its fingerprint.

        Args:
            read_data: Read and hash every chunk. If False only presence is checked.
        """
        self._ensure_initialized()
        with self.shared():
            report = CheckReport()
            store = self.store
            store.flush()
            index = self.index
            _, report.damaged_containers = store.scan()
            manifests = [self.manifests.load(sid) for sid in self.manifests.ids()]
            users: dict[str, list[tuple[str, str]]] = {}
            for m in manifests:
                for entry in m.files:
                    for fp in entry.chunks:
                        users.setdefault(fp, []).append((m.snapshot_id, entry.path))

            for fp, affected in users.items():
                location = index.lookup(fp)
                if location is None:
                    report.missing.append(DamagedChunk(fp, "not in index", affected))
                    continue
                report.chunks_checked += 1
                if not read_data:
                    continue
                try:
                    store.get(location, fp)
                except CorruptChunkError as e:
                    report.corrupt.append(DamagedChunk(fp, str(e), affected))
                except NotFoundError as e:
                    report.missing.append(DamagedChunk(fp, str(e), affected))
            return report
