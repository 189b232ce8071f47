"""Content-defined chunking strategies."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import BinaryIO, Iterator, Optional

from fastcdc import fastcdc

from athena.errors import ConfigError
from athena.pipeline.hashing import Fingerprint, Hasher

# Limits accepted by the FastCDC implementation.
MINIMUM_MIN = 64
AVERAGE_MIN = 256
MAXIMUM_MIN = 1024

DEFAULT_MIN_SIZE = 4 * 1024
DEFAULT_AVG_SIZE = 64 * 1024
DEFAULT_MAX_SIZE = 1024 * 1024

# Stream read size, in multiples of max_size.
WINDOW_BLOCKS = 4


@dataclass(frozen=True)
class Chunk:
    """A chunk cut from a stream, with its offset and fingerprint."""

    offset: int
    data: bytes
    fingerprint: Fingerprint

    @property
    def size(self) -> int:
        return len(self.data)


class ChunkingStrategy(ABC):
    """Base class for chunking strategies."""

    @abstractmethod
    def chunk(self, file_obj: BinaryIO) -> Iterator[Chunk]:
        """
        Chunk a stream and yield Chunk objects in stream order.

        Args:
            file_obj: Open file object in binary mode.

        Yields:
            Chunk instances covering the stream without gaps.
        """
        pass

    def params(self) -> dict:
        return {}


class ContentDefinedChunker(ChunkingStrategy):
    """FastCDC chunking: boundaries follow content, not offsets."""

    def __init__(
        self,
        min_size: int = DEFAULT_MIN_SIZE,
        avg_size: int = DEFAULT_AVG_SIZE,
        max_size: int = DEFAULT_MAX_SIZE,
        hasher: Optional[Hasher] = None,
    ):
        """
        Initialize with chunk size bounds.

        Args:
            min_size: Smallest chunk cut (the last chunk of a stream may be shorter).
            avg_size: Target average chunk size.
            max_size: Forced cut point; no chunk is ever longer.
            hasher: Fingerprinting function. Defaults to SHA-256.

        Raises:
            ConfigError: If the bounds are inconsistent.
        """
        if min_size < MINIMUM_MIN or avg_size < AVERAGE_MIN or max_size < MAXIMUM_MIN:
            raise ConfigError(
                f"Chunk sizes too small: min>={MINIMUM_MIN}, avg>={AVERAGE_MIN}, "
                f"max>={MAXIMUM_MIN} required"
            )
        if not min_size <= avg_size <= max_size:
            raise ConfigError(
                f"Chunk sizes must satisfy min <= avg <= max, "
                f"got {min_size}/{avg_size}/{max_size}"
            )
        self.min_size = min_size
        self.avg_size = avg_size
        self.max_size = max_size
        self.hasher = hasher or Hasher()

    def chunk(self, file_obj: BinaryIO) -> Iterator[Chunk]:
        """
        Split a stream into content-defined chunks.

        The stream is read in windows of a few max_size blocks, so any object
        with read() works and memory stays bounded. A cut is only kept once
        max_size bytes past its start are buffered (or the stream ended),
        which makes the boundaries identical to chunking the whole stream at
        once. The rolling hash state lives in the generator, so independent
        streams can be chunked from different threads.

        Args:
            file_obj: Binary stream.

        Yields:
            Chunk instances. An empty stream yields nothing.
        """
        window = WINDOW_BLOCKS * self.max_size
        buffer = b""
        offset = 0
        eof = False
        while True:
            while not eof and len(buffer) < window:
                block = file_obj.read(window - len(buffer))
                if not block:
                    eof = True
                else:
                    buffer += bytes(block)
            if not buffer:
                return

            consumed = 0
            for cut in fastcdc(
                buffer,
                min_size=self.min_size,
                avg_size=self.avg_size,
                max_size=self.max_size,
            ):
                if not eof and cut.offset + self.max_size > len(buffer):
                    break
                data = buffer[cut.offset : cut.offset + cut.length]
                yield Chunk(offset=offset, data=data, fingerprint=self.hasher.digest(data))
                offset += cut.length
                consumed = cut.offset + cut.length
            buffer = buffer[consumed:]

    def params(self) -> dict:
        return {
            "min_size": self.min_size,
            "avg_size": self.avg_size,
            "max_size": self.max_size,
        }

    def __repr__(self) -> str:
        return (
            f"ContentDefinedChunker(min_size={self.min_size}, "
            f"avg_size={self.avg_size}, max_size={self.max_size})"
        )
