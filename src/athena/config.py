"""Repository configuration and runtime settings."""

from __future__ import annotations

import os
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Optional

from athena.errors import ConfigError
from athena.pipeline.chunking import (
    DEFAULT_AVG_SIZE,
    DEFAULT_MAX_SIZE,
    DEFAULT_MIN_SIZE,
    ContentDefinedChunker,
)
from athena.pipeline.compression import DEFAULT_CODEC, DEFAULT_LEVEL, Compressor
from athena.pipeline.hashing import DEFAULT_ALGORITHM, Hasher

CONFIG_VERSION = 1
DEFAULT_CONTAINER_SIZE = 16 * 1024 * 1024
DEFAULT_CACHE_DIR = os.path.join(os.path.expanduser("~"), ".cache", "athena")


@dataclass(frozen=True)
class ChunkerParams:
    min_size: int = DEFAULT_MIN_SIZE
    avg_size: int = DEFAULT_AVG_SIZE
    max_size: int = DEFAULT_MAX_SIZE


@dataclass(frozen=True)
class CompressionParams:
    codec: str = DEFAULT_CODEC
    level: int = DEFAULT_LEVEL


@dataclass(frozen=True)
class RepositoryConfig:
    """Settings fixed when a repository is initialized (config.json)."""

    repository_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: int = field(
        default_factory=lambda: int(datetime.now(timezone.utc).timestamp())
    )
    chunker: ChunkerParams = field(default_factory=ChunkerParams)
    hash_algorithm: str = DEFAULT_ALGORITHM
    compression: CompressionParams = field(default_factory=CompressionParams)
    container_size: int = DEFAULT_CONTAINER_SIZE
    version: int = CONFIG_VERSION

    def __post_init__(self):
        if self.container_size <= 0:
            raise ConfigError("container_size must be positive")
        # Build once to validate chunk sizes, algorithm and codec.
        self.make_chunker()
        self.make_compressor()

    def make_hasher(self) -> Hasher:
        return Hasher(self.hash_algorithm)

    def make_chunker(self) -> ContentDefinedChunker:
        return ContentDefinedChunker(
            min_size=self.chunker.min_size,
            avg_size=self.chunker.avg_size,
            max_size=self.chunker.max_size,
            hasher=self.make_hasher(),
        )

    def make_compressor(self) -> Compressor:
        return Compressor(self.compression.codec, self.compression.level)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "RepositoryConfig":
        """
        Create from the decoded config.json.

        Raises:
            ConfigError: If the version is unknown or a field is malformed.
        """
        version = data.get("version")
        if version != CONFIG_VERSION:
            raise ConfigError(f"Unsupported repository config version: {version!r}")
        try:
            return RepositoryConfig(
                repository_id=data["repository_id"],
                created_at=int(data["created_at"]),
                chunker=ChunkerParams(**data.get("chunker", {})),
                hash_algorithm=data.get("hash_algorithm", DEFAULT_ALGORITHM),
                compression=CompressionParams(**data.get("compression", {})),
                container_size=int(data.get("container_size", DEFAULT_CONTAINER_SIZE)),
                version=version,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigError(f"Malformed repository config: {e}") from e


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {value}")
    return value


@dataclass
class EngineSettings:
    """Per-process settings; none of these affect the repository format."""

    workers: int = field(default_factory=lambda: min(8, os.cpu_count() or 1))
    # None keeps the index in memory only; from_env() enables the default cache.
    cache_dir: Optional[str] = None
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls) -> "EngineSettings":
        defaults = cls()
        cache_dir = os.environ.get("ATHENA_CACHE_DIR", DEFAULT_CACHE_DIR)
        return cls(
            workers=_env_int("ATHENA_WORKERS", defaults.workers),
            # An empty ATHENA_CACHE_DIR disables the on-disk index cache.
            cache_dir=cache_dir or None,
            log_level=os.environ.get("ATHENA_LOG_LEVEL", defaults.log_level).upper(),
        )

    def index_cache_path(self, repository_id: str) -> Optional[str]:
        if not self.cache_dir:
            return None
        return os.path.join(self.cache_dir, f"{repository_id}.sqlite")
