"""Fingerprint index: chunk locations and reference counts.

The index is a derived structure. It can always be rebuilt from container
footers and manifests, so the on-disk copy is only a cache, keyed by a state
token that changes whenever containers or snapshots change.
"""

from __future__ import annotations

import logging
import os
import threading
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, replace
from typing import Callable, Iterable, Iterator, Mapping, Optional

from sqlalchemy import BigInteger, Integer, String, create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Field, Session, SQLModel, select, Column as SQLModelColumn

from athena.errors import NotFoundError
from athena.repo.chunk_store import ChunkLocation

logger = logging.getLogger(__name__)

_STRIPES = 64


@dataclass
class IndexEntry:
    fingerprint: str
    location: ChunkLocation
    compressed_size: int
    reference_count: int


class IndexRecord(SQLModel, table=True):
    __tablename__ = "index_entry"

    fingerprint: str = Field(
        sa_column=SQLModelColumn(String(64), primary_key=True, nullable=False)
    )
    container_id: str = Field(
        sa_column=SQLModelColumn(
            String(32),
            nullable=False,
        )
    )
    offset: int = Field(
        sa_column=SQLModelColumn(
            BigInteger,
            nullable=False,
        )
    )
    length: int = Field(
        sa_column=SQLModelColumn(
            Integer,
            nullable=False,
        )
    )
    reference_count: int = Field(
        default=0,
        sa_column=SQLModelColumn(
            Integer,
            nullable=False,
        ),
    )


class IndexState(SQLModel, table=True):
    __tablename__ = "index_state"

    key: str = Field(
        sa_column=SQLModelColumn(String(32), primary_key=True, nullable=False)
    )
    value: str = Field(
        sa_column=SQLModelColumn(
            String(128),
            nullable=False,
        )
    )


class ChunkIndex:
    """Thread-safe map from fingerprint to location and reference count.

    Mutations of a single fingerprint are serialized by a striped lock, which
    makes ``add_reference`` a compare-and-increment: the first caller for an
    unknown fingerprint performs the physical write, every later or concurrent
    caller only bumps the count.
    """

    def __init__(self):
        self._entries: dict[str, IndexEntry] = {}
        self._stripes = [threading.Lock() for _ in range(_STRIPES)]

    def _stripe(self, fingerprint: str) -> threading.Lock:
        return self._stripes[hash(fingerprint) % _STRIPES]

    @contextmanager
    def _all_locked(self) -> Iterator[None]:
        with ExitStack() as stack:
            for lock in self._stripes:
                stack.enter_context(lock)
            yield

    def lookup(self, fingerprint: str) -> Optional[ChunkLocation]:
        entry = self._entries.get(fingerprint)
        return entry.location if entry is not None else None

    def get(self, fingerprint: str) -> Optional[IndexEntry]:
        with self._stripe(fingerprint):
            entry = self._entries.get(fingerprint)
            return replace(entry) if entry is not None else None

    def record(self, fingerprint: str, location: ChunkLocation) -> int:
        """
        Add one reference, inserting the entry if needed.

        Returns:
            The reference count before this call (0 for a new entry).
        """
        with self._stripe(fingerprint):
            return self._record_locked(fingerprint, location)

    def _record_locked(self, fingerprint: str, location: ChunkLocation) -> int:
        entry = self._entries.get(fingerprint)
        if entry is None:
            self._entries[fingerprint] = IndexEntry(
                fingerprint=fingerprint,
                location=location,
                compressed_size=location.length,
                reference_count=1,
            )
            return 0
        previous = entry.reference_count
        entry.reference_count += 1
        return previous

    def add_reference(
        self, fingerprint: str, write: Callable[[], ChunkLocation]
    ) -> tuple[int, ChunkLocation]:
        """
        Reference a chunk, calling write() only if it is not stored yet.

        Args:
            fingerprint: Chunk fingerprint.
            write: Stores the chunk and returns its location. Called at most
                once per fingerprint across all concurrent callers.

        Returns:
            (previous reference count, location). A previous count of 0 with an
            existing entry means an unreferenced chunk was reused.
        """
        with self._stripe(fingerprint):
            entry = self._entries.get(fingerprint)
            if entry is not None:
                previous = entry.reference_count
                entry.reference_count += 1
                return previous, entry.location
            location = write()
            self._record_locked(fingerprint, location)
            return 0, location

    def release(self, fingerprint: str) -> int:
        """
        Drop one reference.

        Returns:
            The new reference count. Zero marks the chunk collectible.

        Raises:
            NotFoundError: If the fingerprint is not indexed.
        """
        with self._stripe(fingerprint):
            entry = self._entries.get(fingerprint)
            if entry is None:
                raise NotFoundError(f"Fingerprint {fingerprint} is not indexed")
            if entry.reference_count == 0:
                logger.warning("Release of unreferenced chunk %s ignored", fingerprint)
                return 0
            entry.reference_count -= 1
            return entry.reference_count

    def relocate(self, fingerprint: str, location: ChunkLocation) -> None:
        with self._stripe(fingerprint):
            entry = self._entries.get(fingerprint)
            if entry is None:
                raise NotFoundError(f"Fingerprint {fingerprint} is not indexed")
            entry.location = location
            entry.compressed_size = location.length

    def reconcile(self, counts: Mapping[str, int]) -> list[str]:
        """
        Overwrite reference counts with counts derived from manifests.

        Entries missing from counts drop to zero.

        Returns:
            Fingerprints present in counts but absent from the index.
        """
        missing = []
        with self._all_locked():
            for fp, entry in self._entries.items():
                entry.reference_count = counts.get(fp, 0)
            for fp in counts:
                if fp not in self._entries:
                    missing.append(fp)
        return missing

    def garbage_collect(self, live_fingerprints: Iterable[str]) -> list[IndexEntry]:
        """
        Remove every entry not in live_fingerprints.

        Must be called with exclusive access to the repository, since the
        removed locations are then physically reclaimed.

        Returns:
            The removed entries.
        """
        live = set(live_fingerprints)
        with self._all_locked():
            removed = [e for fp, e in self._entries.items() if fp not in live]
            for entry in removed:
                del self._entries[entry.fingerprint]
        return removed

    def entries(self) -> list[IndexEntry]:
        with self._all_locked():
            return [replace(e) for e in self._entries.values()]

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, fingerprint: object) -> bool:
        return fingerprint in self._entries

    # -- cache persistence -------------------------------------------------

    def save(self, path: str, state_token: str) -> None:
        """
        Write the index to a SQLite cache file, replacing any previous one.

        Args:
            path: Cache file path.
            state_token: Repository state the index corresponds to.
        """
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = path + ".tmp"
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        engine = create_engine(f"sqlite:///{tmp_path}")
        try:
            SQLModel.metadata.create_all(
                engine, tables=[IndexRecord.__table__, IndexState.__table__]
            )
            with Session(engine) as session:
                session.add_all(
                    IndexRecord(
                        fingerprint=e.fingerprint,
                        container_id=e.location.container_id,
                        offset=e.location.offset,
                        length=e.location.length,
                        reference_count=e.reference_count,
                    )
                    for e in self.entries()
                )
                session.add(IndexState(key="state_token", value=state_token))
                session.commit()
        finally:
            engine.dispose()
        os.replace(tmp_path, path)
        logger.debug("Saved index cache with %d entries to %s", len(self), path)

    @staticmethod
    def discard(path: str) -> None:
        """Remove a cache file; the next load() finds nothing and the index is rebuilt."""
        if os.path.exists(path):
            os.unlink(path)
            logger.info("Discarded index cache %s", path)

    @classmethod
    def load(cls, path: str, state_token: str) -> Optional["ChunkIndex"]:
        """
        Load a cached index.

        Returns:
            The index, or None if the cache is missing, unreadable or was
            written for a different repository state.
        """
        if not os.path.exists(path):
            return None
        engine = create_engine(f"sqlite:///{path}")
        try:
            with Session(engine) as session:
                state = session.get(IndexState, "state_token")
                if state is None or state.value != state_token:
                    logger.info("Index cache %s is stale", path)
                    return None
                records = session.exec(select(IndexRecord)).all()
        except SQLAlchemyError as e:
            logger.warning("Ignoring unreadable index cache %s: %s", path, e)
            return None
        finally:
            engine.dispose()

        index = cls()
        for r in records:
            index._entries[r.fingerprint] = IndexEntry(
                fingerprint=r.fingerprint,
                location=ChunkLocation(r.container_id, r.offset, r.length),
                compressed_size=r.length,
                reference_count=r.reference_count,
            )
        logger.debug("Loaded index cache with %d entries from %s", len(index), path)
        return index
