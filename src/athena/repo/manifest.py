"""Snapshot manifests and their persistence."""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

from fsspec.spec import AbstractFileSystem

from athena.errors import CommitError, ManifestFormatError, NotFoundError, StorageIOError
from athena.pipeline.hashing import is_fingerprint

logger = logging.getLogger(__name__)

MANIFEST_FORMAT = "athena-manifest"
MANIFEST_VERSION = 1
SNAPSHOTS_DIR = "snapshots"

KIND_FILE = "file"
KIND_DIR = "dir"
KIND_SYMLINK = "symlink"
KINDS = (KIND_FILE, KIND_DIR, KIND_SYMLINK)


@dataclass(frozen=True)
class FileEntry:
    """Reconstruction recipe for one archived path."""

    path: str
    size: int
    mode: int
    mtime_ns: int
    chunks: tuple[str, ...] = ()
    kind: str = KIND_FILE
    link_target: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "path": self.path,
            "kind": self.kind,
            "size": self.size,
            "mode": self.mode,
            "mtime_ns": self.mtime_ns,
            "chunks": list(self.chunks),
        }
        if self.link_target is not None:
            data["link_target"] = self.link_target
        return data

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "FileEntry":
        entry = FileEntry(
            path=data["path"],
            kind=data.get("kind", KIND_FILE),
            size=int(data["size"]),
            mode=int(data["mode"]),
            mtime_ns=int(data["mtime_ns"]),
            chunks=tuple(data.get("chunks", ())),
            link_target=data.get("link_target"),
        )
        if entry.kind not in KINDS:
            raise ManifestFormatError(f"Unknown entry kind {entry.kind!r} for {entry.path}")
        for fp in entry.chunks:
            if not is_fingerprint(fp):
                raise ManifestFormatError(f"Malformed fingerprint {fp!r} in {entry.path}")
        return entry


@dataclass(frozen=True)
class Manifest:
    """One snapshot: an ordered list of file entries."""

    snapshot_id: str
    creation_time: float
    files: tuple[FileEntry, ...] = ()
    parent_snapshot_id: Optional[str] = None
    hostname: str = ""
    sources: tuple[str, ...] = ()

    def fingerprints(self) -> list[str]:
        """Every chunk reference, in order, including repeats."""
        return [fp for f in self.files for fp in f.chunks]

    @property
    def file_count(self) -> int:
        return sum(1 for f in self.files if f.kind != KIND_DIR)

    @property
    def total_size(self) -> int:
        return sum(f.size for f in self.files if f.kind == KIND_FILE)

    def to_dict(self) -> dict[str, Any]:
        """Versioned, self-describing representation."""
        return {
            "format": MANIFEST_FORMAT,
            "version": MANIFEST_VERSION,
            "manifest": {
                "snapshot_id": self.snapshot_id,
                "creation_time": self.creation_time,
                "parent_snapshot_id": self.parent_snapshot_id,
                "hostname": self.hostname,
                "sources": list(self.sources),
                "files": [f.to_dict() for f in self.files],
            },
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "Manifest":
        """
        Create from a decoded manifest document.

        Raises:
            ManifestFormatError: If the document is not a manifest, has an
                unsupported version, or is malformed.
        """
        if not isinstance(data, dict) or data.get("format") != MANIFEST_FORMAT:
            raise ManifestFormatError("Not an athena manifest")
        version = data.get("version")
        if version != MANIFEST_VERSION:
            raise ManifestFormatError(
                f"Unsupported manifest version {version!r} (expected {MANIFEST_VERSION})"
            )
        body = data.get("manifest")
        try:
            manifest = Manifest(
                snapshot_id=body["snapshot_id"],
                creation_time=float(body["creation_time"]),
                parent_snapshot_id=body.get("parent_snapshot_id"),
                hostname=body.get("hostname", ""),
                sources=tuple(body.get("sources", ())),
                files=tuple(FileEntry.from_dict(f) for f in body["files"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ManifestFormatError(f"Malformed manifest: {e}") from e
        if manifest.parent_snapshot_id == manifest.snapshot_id:
            raise ManifestFormatError(f"Snapshot {manifest.snapshot_id} is its own parent")
        return manifest


def new_snapshot_id() -> str:
    return uuid.uuid4().hex


class ManifestStore:
    """Reads and atomically writes manifests under ``snapshots/``."""

    def __init__(self, fs: AbstractFileSystem, root: str):
        self.fs = fs
        self.root = root

    def _path(self, snapshot_id: str) -> str:
        return self.root + f"{SNAPSHOTS_DIR}/{snapshot_id}.json"

    def write(self, manifest: Manifest) -> str:
        """
        Persist a manifest.

        The document is written to a temporary name and promoted with a move,
        so a manifest is either fully visible or absent.

        Returns:
            Path of the written manifest.

        Raises:
            CommitError: If the manifest already exists or cannot be written.
        """
        final_path = self._path(manifest.snapshot_id)
        tmp_path = self.root + f"{SNAPSHOTS_DIR}/.tmp-{manifest.snapshot_id}"
        payload = json.dumps(manifest.to_dict(), indent=2)
        try:
            if self.fs.exists(final_path):
                raise CommitError(f"Snapshot {manifest.snapshot_id} already exists")
            self.fs.makedirs(self.root + SNAPSHOTS_DIR, exist_ok=True)
            with self.fs.open(tmp_path, "w") as f:
                f.write(payload)
            self.fs.mv(tmp_path, final_path)
        except OSError as e:
            try:
                if self.fs.exists(tmp_path):
                    self.fs.rm(tmp_path)
            except OSError as cleanup_error:
                logger.warning("Could not remove %s: %s", tmp_path, cleanup_error)
            raise CommitError(
                f"Could not write manifest {manifest.snapshot_id}: {e}"
            ) from e
        return final_path

    def ids(self) -> list[str]:
        snap_dir = self.root + SNAPSHOTS_DIR
        try:
            if not self.fs.exists(snap_dir):
                return []
            items = self.fs.ls(snap_dir, detail=False)
        except OSError as e:
            raise StorageIOError(f"Could not list snapshots: {e}") from e
        ids = []
        for item in items:
            filename = item.rstrip("/").split("/")[-1]
            if filename.endswith(".json") and not filename.startswith("."):
                ids.append(filename[: -len(".json")])
        return sorted(ids)

    def resolve(self, snapshot_id: str) -> str:
        """
        Expand a unique id prefix to a full snapshot id.

        Raises:
            NotFoundError: If no snapshot or more than one snapshot matches.
        """
        matches = [sid for sid in self.ids() if sid.startswith(snapshot_id)]
        if snapshot_id in matches:
            return snapshot_id
        if not matches:
            raise NotFoundError(f"Snapshot not found: {snapshot_id}")
        if len(matches) > 1:
            raise NotFoundError(f"Snapshot id prefix {snapshot_id!r} is ambiguous")
        return matches[0]

    def load(self, snapshot_id: str) -> Manifest:
        """
        Load a manifest by full id or unique prefix.

        Raises:
            NotFoundError: If the snapshot does not exist.
            ManifestFormatError: If the manifest cannot be parsed.
        """
        full_id = self.resolve(snapshot_id)
        try:
            with self.fs.open(self._path(full_id), "r") as f:
                data = json.load(f)
        except FileNotFoundError as e:
            raise NotFoundError(f"Snapshot not found: {snapshot_id}") from e
        except ValueError as e:
            raise ManifestFormatError(f"Snapshot {full_id} is not valid JSON: {e}") from e
        except OSError as e:
            raise StorageIOError(f"Could not read snapshot {full_id}: {e}") from e
        manifest = Manifest.from_dict(data)
        if manifest.snapshot_id != full_id:
            raise ManifestFormatError(
                f"Snapshot file {full_id} contains snapshot {manifest.snapshot_id}"
            )
        return manifest

    def delete(self, snapshot_id: str) -> None:
        try:
            self.fs.rm(self._path(snapshot_id))
        except FileNotFoundError as e:
            raise NotFoundError(f"Snapshot not found: {snapshot_id}") from e
        except OSError as e:
            raise StorageIOError(f"Could not delete snapshot {snapshot_id}: {e}") from e
