"""Container-based chunk storage on an fsspec filesystem.

A container holds many chunk blobs::

    ATHPACK1 | blob | blob | ... | footer (JSON) | footer length (8 bytes, big-endian)

Each blob is a codec tag byte followed by the (possibly compressed) chunk. The
footer lists ``{fingerprint, offset, length, raw_size}`` for every blob, which
makes the store self-describing: the index can always be rebuilt from it.
Containers are written to a temporary name and promoted with ``fs.mv`` once
complete, and are never modified afterwards.
"""

from __future__ import annotations

import json
import logging
import struct
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

import zstandard
from fsspec.spec import AbstractFileSystem

from athena.errors import CorruptChunkError, NotFoundError, StorageIOError
from athena.pipeline.compression import Compressor, UnknownCodecTag
from athena.pipeline.hashing import Fingerprint, Hasher

logger = logging.getLogger(__name__)

PACK_MAGIC = b"ATHPACK1"
_FOOTER_LEN = struct.Struct(">Q")
PACKS_DIR = "packs"
TMP_PREFIX = ".tmp-"


@dataclass(frozen=True)
class ChunkLocation:
    """Where a chunk lives: container id plus byte range of its blob."""

    container_id: str
    offset: int
    length: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "container_id": self.container_id,
            "offset": self.offset,
            "length": self.length,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "ChunkLocation":
        return ChunkLocation(
            container_id=data["container_id"],
            offset=int(data["offset"]),
            length=int(data["length"]),
        )


@dataclass
class StoreStats:
    blobs_written: int = 0
    bytes_written: int = 0
    raw_bytes_written: int = 0
    containers_written: int = 0


@dataclass
class CompactReport:
    removed_containers: list[str] = field(default_factory=list)
    rewritten_containers: list[str] = field(default_factory=list)
    relocated: dict[str, ChunkLocation] = field(default_factory=dict)
    bytes_freed: int = 0


class _OpenContainer:
    def __init__(self):
        self.container_id = uuid.uuid4().hex
        self.buffer = bytearray(PACK_MAGIC)
        self.entries: list[dict[str, Any]] = []

    def append(self, fingerprint: str, blob: bytes, raw_size: int) -> ChunkLocation:
        location = ChunkLocation(self.container_id, len(self.buffer), len(blob))
        self.buffer += blob
        self.entries.append(
            {
                "fingerprint": fingerprint,
                "offset": location.offset,
                "length": location.length,
                "raw_size": raw_size,
            }
        )
        return location

    def read(self, location: ChunkLocation) -> bytes:
        return bytes(self.buffer[location.offset : location.offset + location.length])

    def serialize(self) -> bytes:
        footer = json.dumps({"version": 1, "entries": self.entries}).encode("utf-8")
        return bytes(self.buffer) + footer + _FOOTER_LEN.pack(len(footer))

    @property
    def size(self) -> int:
        return len(self.buffer)


class ChunkStore:
    """Persists unique chunks in immutable containers."""

    def __init__(
        self,
        fs: AbstractFileSystem,
        root: str,
        compressor: Optional[Compressor] = None,
        hasher: Optional[Hasher] = None,
        container_size: int = 16 * 1024 * 1024,
    ):
        """
        Initialize a chunk store.

        Args:
            fs: fsspec filesystem holding the repository.
            root: Repository root path on fs, with trailing slash.
            compressor: Codec applied per chunk. Defaults to zstd.
            hasher: Used to verify chunks on read.
            container_size: Seal the open container once it reaches this many bytes.
        """
        self.fs = fs
        self.root = root
        self.compressor = compressor or Compressor()
        self.hasher = hasher or Hasher()
        self.container_size = container_size
        self._lock = threading.Lock()
        self._open: Optional[_OpenContainer] = None
        self._known: dict[str, ChunkLocation] = {}
        self._dead: set[ChunkLocation] = set()
        self._written: set[str] = set()
        self._removed: set[str] = set()
        self._stats = StoreStats()

    # -- paths -------------------------------------------------------------

    def _container_path(self, container_id: str) -> str:
        return self.root + f"{PACKS_DIR}/{container_id[:2]}/{container_id}"

    def container_ids(self) -> list[str]:
        """Ids of all sealed containers, sorted."""
        packs = self.root + PACKS_DIR
        try:
            if not self.fs.exists(packs):
                return []
            paths = self.fs.find(packs)
        except OSError as e:
            raise StorageIOError(f"Could not list containers: {e}") from e
        ids = []
        for p in paths:
            name = p.rstrip("/").split("/")[-1]
            if not name.startswith(TMP_PREFIX):
                ids.append(name)
        return sorted(ids)

    # -- writing -----------------------------------------------------------

    def put(self, fingerprint: Fingerprint, data: bytes) -> ChunkLocation:
        """
        Store a chunk unless this store already holds it.

        Args:
            fingerprint: Fingerprint of data.
            data: Raw chunk bytes.

        Returns:
            Location of the stored (or already present) chunk.

        Raises:
            StorageIOError: If sealing a full container fails.
        """
        blob = self.compressor.encode(data)
        with self._lock:
            existing = self._known.get(fingerprint)
            if existing is not None and existing not in self._dead:
                return existing
            if self._open is None:
                self._open = _OpenContainer()
            location = self._open.append(fingerprint, blob, len(data))
            self._known[fingerprint] = location
            self._stats.blobs_written += 1
            self._stats.bytes_written += len(blob)
            self._stats.raw_bytes_written += len(data)
            if self._open.size >= self.container_size:
                self._seal_locked()
            return location

    def _write_container(self, container: _OpenContainer) -> None:
        cid = container.container_id
        directory = self.root + f"{PACKS_DIR}/{cid[:2]}"
        tmp_path = f"{directory}/{TMP_PREFIX}{cid}"
        try:
            self.fs.makedirs(directory, exist_ok=True)
            with self.fs.open(tmp_path, "wb") as f:
                f.write(container.serialize())
            self.fs.mv(tmp_path, self._container_path(cid))
        except OSError as e:
            raise StorageIOError(f"Could not write container {cid}: {e}") from e
        self._written.add(cid)
        self._stats.containers_written += 1
        logger.debug(
            "Sealed container %s (%d chunks, %d bytes)",
            cid,
            len(container.entries),
            container.size,
        )

    def _seal_locked(self) -> None:
        if self._open is None or not self._open.entries:
            return
        # On failure the container stays open and the next flush retries.
        self._write_container(self._open)
        self._open = None

    def flush(self) -> None:
        """Seal the open container so every returned location is durable."""
        with self._lock:
            self._seal_locked()

    # -- reading -----------------------------------------------------------

    def _read_range(self, container_id: str, start: int, end: int) -> bytes:
        path = self._container_path(container_id)
        try:
            return self.fs.cat_file(path, start=start, end=end)
        except FileNotFoundError as e:
            raise NotFoundError(f"Container {container_id} does not exist") from e
        except OSError as e:
            raise StorageIOError(f"Could not read container {container_id}: {e}") from e

    def get(self, location: ChunkLocation, fingerprint: Optional[str] = None) -> bytes:
        """
        Read a chunk back in its original (uncompressed) form.

        Args:
            location: Location returned by put() or the index.
            fingerprint: Expected fingerprint; when given the bytes are verified.

        Returns:
            The original chunk bytes.

        Raises:
            NotFoundError: If the container or byte range does not exist.
            CorruptChunkError: If the blob cannot be decoded or fails verification.
            StorageIOError: On transient read failures.
        """
        if location.offset < len(PACK_MAGIC) or location.length <= 0:
            raise NotFoundError(f"Invalid chunk location {location}")
        with self._lock:
            pending = self._open
            if pending is not None and pending.container_id == location.container_id:
                blob = pending.read(location)
            else:
                pending = None
        if pending is None:
            blob = self._read_range(
                location.container_id, location.offset, location.offset + location.length
            )
        if len(blob) != location.length:
            raise NotFoundError(f"Chunk range {location} lies outside its container")

        label = fingerprint or f"{location.container_id}@{location.offset}"
        try:
            data = self.compressor.decode(blob)
        except (UnknownCodecTag, zstandard.ZstdError) as e:
            raise CorruptChunkError(label, f"Chunk {label} cannot be decoded: {e}") from e
        if fingerprint is not None and self.hasher.digest(data) != fingerprint:
            raise CorruptChunkError(fingerprint)
        return data

    def read_footer(self, container_id: str) -> list[dict[str, Any]]:
        """
        Read the blob listing of a sealed container.

        Raises:
            NotFoundError: If the container does not exist.
            CorruptChunkError: If the container framing is damaged.
        """
        path = self._container_path(container_id)
        try:
            size = self.fs.size(path)
        except FileNotFoundError as e:
            raise NotFoundError(f"Container {container_id} does not exist") from e
        except OSError as e:
            raise StorageIOError(f"Could not stat container {container_id}: {e}") from e
        if size is None or size < len(PACK_MAGIC) + _FOOTER_LEN.size:
            raise CorruptChunkError(container_id, f"Container {container_id} is truncated")
        if self._read_range(container_id, 0, len(PACK_MAGIC)) != PACK_MAGIC:
            raise CorruptChunkError(container_id, f"Container {container_id} has a bad header")
        (footer_len,) = _FOOTER_LEN.unpack(
            self._read_range(container_id, size - _FOOTER_LEN.size, size)
        )
        footer_start = size - _FOOTER_LEN.size - footer_len
        if footer_start < len(PACK_MAGIC):
            raise CorruptChunkError(container_id, f"Container {container_id} has a bad footer")
        raw = self._read_range(container_id, footer_start, size - _FOOTER_LEN.size)
        try:
            footer = json.loads(raw.decode("utf-8"))
            return list(footer["entries"])
        except (UnicodeDecodeError, ValueError, KeyError, TypeError) as e:
            raise CorruptChunkError(
                container_id, f"Container {container_id} footer is unreadable: {e}"
            ) from e

    def scan(self) -> tuple[dict[str, ChunkLocation], list[str]]:
        """
        Rebuild the fingerprint map from every container footer.

        Returns:
            (fingerprint -> location, ids of containers whose footer is damaged)
        """
        found: dict[str, ChunkLocation] = {}
        damaged: list[str] = []
        for cid in self.container_ids():
            try:
                entries = self.read_footer(cid)
            except (CorruptChunkError, NotFoundError) as e:
                logger.error("Skipping container %s: %s", cid, e)
                damaged.append(cid)
                continue
            for entry in entries:
                location = ChunkLocation(cid, int(entry["offset"]), int(entry["length"]))
                found.setdefault(entry["fingerprint"], location)
        with self._lock:
            for fp, location in found.items():
                self._known.setdefault(fp, location)
        return found, damaged

    # -- deletion ----------------------------------------------------------

    def delete(self, location: ChunkLocation) -> None:
        """Mark a blob dead. Space is reclaimed by compact()."""
        with self._lock:
            self._dead.add(location)
            for fp, known in list(self._known.items()):
                if known == location:
                    del self._known[fp]

    def compact(self, live: Iterable[ChunkLocation]) -> CompactReport:
        """
        Drop every blob that is not live.

        Containers without live blobs are removed; containers with some dead
        blobs are rewritten into a new container and then removed. Callers
        must hold exclusive access to the repository.

        Args:
            live: Locations still referenced by the index.

        Returns:
            CompactReport with the new location of every moved chunk.
        """
        self.flush()
        live_set = set(live)
        report = CompactReport()
        for cid in self.container_ids():
            try:
                entries = self.read_footer(cid)
            except CorruptChunkError as e:
                logger.error("Not compacting damaged container %s: %s", cid, e)
                continue
            keep = []
            dead_bytes = 0
            for entry in entries:
                location = ChunkLocation(cid, int(entry["offset"]), int(entry["length"]))
                if location in live_set and location not in self._dead:
                    keep.append((entry, location))
                else:
                    dead_bytes += location.length
            if not dead_bytes:
                continue
            if keep:
                fresh = _OpenContainer()
                for entry, location in keep:
                    blob = self._read_range(cid, location.offset, location.offset + location.length)
                    moved = fresh.append(entry["fingerprint"], blob, int(entry["raw_size"]))
                    report.relocated[entry["fingerprint"]] = moved
                self._write_container(fresh)
                report.rewritten_containers.append(cid)
            else:
                report.removed_containers.append(cid)
            try:
                self.fs.rm(self._container_path(cid))
            except OSError as e:
                raise StorageIOError(f"Could not remove container {cid}: {e}") from e
            self._removed.add(cid)
            report.bytes_freed += dead_bytes
        with self._lock:
            self._dead.clear()
            self._known = {
                fp: loc
                for fp, loc in self._known.items()
                if loc.container_id not in report.removed_containers
                and loc.container_id not in report.rewritten_containers
            }
            self._known.update(report.relocated)
        return report

    def container_changes(self) -> tuple[frozenset, frozenset]:
        """Ids of the containers this store has written and removed."""
        with self._lock:
            return frozenset(self._written), frozenset(self._removed)

    def stats(self) -> StoreStats:
        with self._lock:
            return StoreStats(**vars(self._stats))
