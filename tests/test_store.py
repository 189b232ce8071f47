"""Tests for the chunk store, index and manifests."""

import json
import os
import threading
import time

import fsspec
import pytest

from athena.errors import CommitError, CorruptChunkError, ManifestFormatError, NotFoundError
from athena.pipeline.hashing import Hasher
from athena.repo.chunk_store import PACK_MAGIC, ChunkLocation, ChunkStore
from athena.repo.index import ChunkIndex
from athena.repo.manifest import FileEntry, Manifest, ManifestStore, new_snapshot_id

from conftest import random_bytes


@pytest.fixture
def store(repo_url):
    fs, root = fsspec.core.url_to_fs(repo_url)
    return ChunkStore(fs, root.rstrip("/") + "/", container_size=32 * 1024)


def put(store, data):
    fp = Hasher().digest(data)
    return fp, store.put(fp, data)


class TestChunkStore:
    def test_put_get_before_and_after_flush(self, store):
        data = random_bytes(5000, seed=1)
        fp, location = put(store, data)
        assert store.get(location, fp) == data
        store.flush()
        assert store.container_ids() == [location.container_id]
        assert store.get(location, fp) == data

    def test_put_is_idempotent(self, store):
        data = b"same chunk" * 100
        _, first = put(store, data)
        _, second = put(store, data)
        assert first == second
        assert store.stats().blobs_written == 1

    def test_container_sealed_when_full(self, store):
        for seed in range(10):
            put(store, random_bytes(8000, seed=seed))
        store.flush()
        assert len(store.container_ids()) >= 2
        assert store.stats().containers_written == len(store.container_ids())

    def test_container_layout(self, store):
        fp, location = put(store, b"x" * 3000)
        store.flush()
        raw = store.fs.cat_file(store._container_path(location.container_id))
        assert raw.startswith(PACK_MAGIC)
        footer = store.read_footer(location.container_id)
        assert footer[0]["fingerprint"] == fp
        assert footer[0]["offset"] == location.offset
        assert footer[0]["raw_size"] == 3000

    def test_corrupted_bytes_detected(self, store):
        data = random_bytes(4000, seed=2)
        fp, location = put(store, data)
        store.flush()
        path = store._container_path(location.container_id)
        raw = bytearray(store.fs.cat_file(path))
        raw[location.offset + location.length - 1] ^= 0xFF
        store.fs.pipe_file(path, bytes(raw))

        with pytest.raises(CorruptChunkError) as exc_info:
            store.get(location, fp)
        assert exc_info.value.fingerprint == fp

    def test_missing_container(self, store):
        with pytest.raises(NotFoundError):
            store.get(ChunkLocation("0" * 32, len(PACK_MAGIC), 10))

    def test_scan_rebuilds_locations(self, store):
        stored = dict(put(store, random_bytes(6000, seed=s)) for s in range(8))
        store.flush()
        fresh = ChunkStore(store.fs, store.root)
        found, damaged = fresh.scan()
        assert damaged == []
        assert found == stored

    def test_scan_reports_damaged_container(self, store):
        _, location = put(store, b"payload" * 100)
        store.flush()
        store.fs.pipe_file(store._container_path(location.container_id), b"garbage")
        found, damaged = store.scan()
        assert found == {}
        assert damaged == [location.container_id]

    def test_compact_rewrites_partially_dead_container(self, store):
        keep_fp, keep_loc = put(store, random_bytes(3000, seed=3))
        _, dead_loc = put(store, random_bytes(3000, seed=4))
        store.flush()
        store.delete(dead_loc)

        report = store.compact([keep_loc])

        assert report.rewritten_containers == [keep_loc.container_id]
        assert report.bytes_freed == dead_loc.length
        moved = report.relocated[keep_fp]
        assert moved.container_id != keep_loc.container_id
        assert store.get(moved, keep_fp) == random_bytes(3000, seed=3)
        assert keep_loc.container_id not in store.container_ids()

    def test_compact_removes_fully_dead_container(self, store):
        _, location = put(store, b"dead" * 500)
        store.flush()
        store.delete(location)
        report = store.compact([])
        assert report.removed_containers == [location.container_id]
        assert store.container_ids() == []


LOC = ChunkLocation("c" * 32, 8, 100)


class TestChunkIndex:
    def test_add_reference_writes_once(self):
        index = ChunkIndex()
        calls = []

        def write():
            calls.append(1)
            return LOC

        assert index.add_reference("a" * 64, write) == (0, LOC)
        assert index.add_reference("a" * 64, write) == (1, LOC)
        assert len(calls) == 1
        assert index.get("a" * 64).reference_count == 2

    def test_concurrent_add_reference_single_write(self):
        index = ChunkIndex()
        writes = []
        barrier = threading.Barrier(8)

        def write():
            writes.append(1)
            time.sleep(0.01)
            return LOC

        def worker():
            barrier.wait()
            index.add_reference("b" * 64, write)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(writes) == 1
        assert index.get("b" * 64).reference_count == 8

    def test_release_never_goes_negative(self):
        index = ChunkIndex()
        index.record("c" * 64, LOC)
        assert index.release("c" * 64) == 0
        assert index.release("c" * 64) == 0

    def test_release_unknown(self):
        with pytest.raises(NotFoundError):
            ChunkIndex().release("d" * 64)

    def test_zero_count_chunk_is_reused(self):
        index = ChunkIndex()
        index.record("e" * 64, LOC)
        index.release("e" * 64)
        previous, location = index.add_reference("e" * 64, lambda: pytest.fail("rewritten"))
        assert (previous, location) == (0, LOC)

    def test_reconcile_and_garbage_collect(self):
        index = ChunkIndex()
        index.record("1" * 64, LOC)
        index.record("2" * 64, ChunkLocation("c" * 32, 108, 50))
        missing = index.reconcile({"1" * 64: 3, "3" * 64: 1})
        assert missing == ["3" * 64]
        assert index.get("1" * 64).reference_count == 3
        assert index.get("2" * 64).reference_count == 0

        removed = index.garbage_collect(["1" * 64])
        assert [e.fingerprint for e in removed] == ["2" * 64]
        assert "2" * 64 not in index
        assert len(index) == 1

    def test_cache_round_trip(self, tmp_path):
        index = ChunkIndex()
        index.record("1" * 64, LOC)
        index.record("1" * 64, LOC)
        path = str(tmp_path / "cache" / "index.sqlite")
        index.save(path, "token-1")

        loaded = ChunkIndex.load(path, "token-1")
        assert loaded is not None
        entry = loaded.get("1" * 64)
        assert entry.location == LOC
        assert entry.reference_count == 2

    def test_stale_cache_ignored(self, tmp_path):
        path = str(tmp_path / "index.sqlite")
        ChunkIndex().save(path, "old")
        assert ChunkIndex.load(path, "new") is None

    def test_unreadable_cache_ignored(self, tmp_path):
        path = tmp_path / "index.sqlite"
        path.write_bytes(b"not a database" * 100)
        assert ChunkIndex.load(str(path), "token") is None

    def test_missing_cache(self, tmp_path):
        assert ChunkIndex.load(str(tmp_path / "absent.sqlite"), "token") is None


def make_manifest(snapshot_id=None, parent=None, files=()):
    return Manifest(
        snapshot_id=snapshot_id or new_snapshot_id(),
        creation_time=time.time(),
        parent_snapshot_id=parent,
        hostname="host",
        sources=("/data",),
        files=tuple(files),
    )


class TestManifest:
    def test_round_trip(self):
        entry = FileEntry("data/a.txt", 5, 0o100644, 123, chunks=("a" * 64, "a" * 64))
        link = FileEntry("data/l", 0, 0o120777, 123, kind="symlink", link_target="a.txt")
        manifest = make_manifest(files=[entry, link])
        data = json.loads(json.dumps(manifest.to_dict()))
        assert Manifest.from_dict(data) == manifest
        assert manifest.fingerprints() == ["a" * 64, "a" * 64]
        assert manifest.file_count == 2
        assert manifest.total_size == 5

    def test_rejects_unknown_version(self):
        data = make_manifest().to_dict()
        data["version"] = 99
        with pytest.raises(ManifestFormatError, match="version"):
            Manifest.from_dict(data)

    def test_rejects_foreign_document(self):
        with pytest.raises(ManifestFormatError):
            Manifest.from_dict({"snapshot_id": "x"})

    def test_rejects_bad_fingerprint(self):
        data = make_manifest(files=[FileEntry("a", 1, 0o644, 0, chunks=("a" * 64,))]).to_dict()
        data["manifest"]["files"][0]["chunks"] = ["xyz"]
        with pytest.raises(ManifestFormatError):
            Manifest.from_dict(data)

    def test_rejects_self_parent(self):
        data = make_manifest(snapshot_id="f" * 32).to_dict()
        data["manifest"]["parent_snapshot_id"] = "f" * 32
        with pytest.raises(ManifestFormatError):
            Manifest.from_dict(data)


class TestManifestStore:
    @pytest.fixture
    def manifests(self, repo_url):
        fs, root = fsspec.core.url_to_fs(repo_url)
        return ManifestStore(fs, root.rstrip("/") + "/")

    def test_write_and_load(self, manifests):
        manifest = make_manifest()
        manifests.write(manifest)
        assert manifests.ids() == [manifest.snapshot_id]
        assert manifests.load(manifest.snapshot_id) == manifest

    def test_no_temporary_files_left(self, manifests):
        manifests.write(make_manifest())
        names = [os.path.basename(p) for p in manifests.fs.ls(manifests.root + "snapshots", detail=False)]
        assert all(not n.startswith(".tmp-") for n in names)

    def test_prefix_resolution(self, manifests):
        manifests.write(make_manifest("abc111" + "0" * 26))
        manifests.write(make_manifest("abc222" + "0" * 26))
        assert manifests.resolve("abc1") == "abc111" + "0" * 26
        with pytest.raises(NotFoundError, match="ambiguous"):
            manifests.resolve("abc")
        with pytest.raises(NotFoundError):
            manifests.resolve("zzz")

    def test_duplicate_write_rejected(self, manifests):
        manifest = make_manifest()
        manifests.write(manifest)
        with pytest.raises(CommitError):
            manifests.write(manifest)
