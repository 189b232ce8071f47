__version__ = "0.1.0"

from athena.errors import (
    AthenaError,
    BackupFailedError,
    CommitError,
    ConfigError,
    CorruptChunkError,
    ManifestFormatError,
    MissingChunkError,
    NotFoundError,
    PartialRunError,
    RepositoryLockedError,
    RepositoryNotInitializedError,
    StorageIOError,
)
from athena.config import EngineSettings, RepositoryConfig, ChunkerParams, CompressionParams
from athena.pipeline.chunking import Chunk, ChunkingStrategy, ContentDefinedChunker
from athena.pipeline.hashing import Hasher
from athena.repo.manifest import FileEntry, Manifest
from athena.repo.repository import Repository
from athena.engine.backup import BackupResult, BackupSession, FileMetadata, RunStatus
from athena.engine.restore import Restorer
from athena.runtime import (
    init_repo,
    run_backup,
    list_snapshots,
    run_restore,
    run_prune,
    run_gc,
    run_check,
    run_rebuild_index,
    run_unlock,
)

__all__ = [
    # Errors
    "AthenaError",
    "BackupFailedError",
    "CommitError",
    "ConfigError",
    "CorruptChunkError",
    "ManifestFormatError",
    "MissingChunkError",
    "NotFoundError",
    "PartialRunError",
    "RepositoryLockedError",
    "RepositoryNotInitializedError",
    "StorageIOError",
    # Engine
    "EngineSettings",
    "RepositoryConfig",
    "ChunkerParams",
    "CompressionParams",
    "Chunk",
    "ChunkingStrategy",
    "ContentDefinedChunker",
    "Hasher",
    "FileEntry",
    "Manifest",
    "Repository",
    "BackupResult",
    "BackupSession",
    "FileMetadata",
    "RunStatus",
    "Restorer",
    # Runtime
    "init_repo",
    "run_backup",
    "list_snapshots",
    "run_restore",
    "run_prune",
    "run_gc",
    "run_check",
    "run_rebuild_index",
    "run_unlock",
]
