"""Exception hierarchy for the archive engine."""

from __future__ import annotations


class AthenaError(Exception):
    """Base class for every error raised by athena."""


class ConfigError(AthenaError):
    """Invalid repository or runtime configuration."""


class RepositoryNotInitializedError(AthenaError):
    pass


class RepositoryLockedError(AthenaError):
    """Another backup, restore or garbage collection holds a conflicting lock."""


class StorageIOError(AthenaError, OSError):
    """Transient storage failure. Callers may retry the affected file."""


class NotFoundError(AthenaError, LookupError):
    """A requested snapshot, path, container or index entry does not exist."""


class CorruptChunkError(AthenaError):
    """Stored bytes no longer match their fingerprint. Never repaired."""

    def __init__(self, fingerprint: str, message: str | None = None):
        self.fingerprint = fingerprint
        super().__init__(message or f"Chunk {fingerprint} is corrupt")


class MissingChunkError(AthenaError):
    """A manifest references a chunk that the store does not hold."""

    def __init__(self, fingerprint: str, path: str | None = None):
        self.fingerprint = fingerprint
        self.path = path
        where = f" (needed by {path})" if path else ""
        super().__init__(f"Chunk {fingerprint} is missing{where}")


class ManifestFormatError(AthenaError):
    """A manifest could not be parsed, has an unknown version, or breaks lineage rules."""


class CommitError(AthenaError):
    """The manifest of a backup run could not be persisted."""


class BackupFailedError(AthenaError):
    pass


class PartialRunError(AthenaError):
    """A backup completed but one or more files were skipped."""

    def __init__(self, skipped):
        self.skipped = list(skipped)
        super().__init__(f"{len(self.skipped)} file(s) skipped during backup")
