"""Tests for chunking, hashing and compression."""

import hashlib
import io

import pytest
import zstandard
from fastcdc import fastcdc

from athena.errors import ConfigError
from athena.pipeline.chunking import ContentDefinedChunker
from athena.pipeline.compression import TAG_NONE, TAG_ZSTD, Compressor, UnknownCodecTag
from athena.pipeline.hashing import Hasher, is_fingerprint

from conftest import random_bytes


class TrickleStream:
    """A pipe-like stream: no file descriptor, short reads."""

    def __init__(self, data, step=1000):
        self._data = data
        self._step = step
        self._pos = 0

    def read(self, size=-1):
        if size is None or size < 0 or size > self._step:
            size = self._step
        block = self._data[self._pos : self._pos + size]
        self._pos += len(block)
        return block


def make_chunker(**kwargs):
    params = {"min_size": 1024, "avg_size": 4096, "max_size": 16384}
    params.update(kwargs)
    return ContentDefinedChunker(**params)


class TestChunking:
    """Tests for content-defined chunking."""

    def test_empty_stream_yields_nothing(self):
        assert list(make_chunker().chunk(io.BytesIO(b""))) == []

    def test_empty_file_yields_nothing(self, tmp_path):
        path = tmp_path / "empty"
        path.write_bytes(b"")
        with open(path, "rb") as f:
            assert list(make_chunker().chunk(f)) == []

    def test_stream_without_file_descriptor(self):
        data = random_bytes(200_000, seed=7)
        chunks = list(make_chunker().chunk(TrickleStream(data)))

        assert b"".join(c.data for c in chunks) == data
        whole = fastcdc(data, min_size=1024, avg_size=4096, max_size=16384)
        assert [(c.offset, c.size) for c in chunks] == [(c.offset, c.length) for c in whole]

    def test_chunks_cover_stream_in_order(self):
        data = random_bytes(200_000, seed=1)
        chunks = list(make_chunker().chunk(io.BytesIO(data)))

        assert b"".join(c.data for c in chunks) == data
        offset = 0
        for c in chunks:
            assert c.offset == offset
            offset += c.size

    def test_chunk_size_bounds(self):
        data = random_bytes(300_000, seed=2)
        chunks = list(make_chunker().chunk(io.BytesIO(data)))

        assert len(chunks) > 1
        for c in chunks[:-1]:
            assert 1024 <= c.size <= 16384
        assert 0 < chunks[-1].size <= 16384

    def test_small_stream_is_one_chunk(self):
        chunks = list(make_chunker().chunk(io.BytesIO(b"small file")))
        assert len(chunks) == 1
        assert chunks[0].data == b"small file"

    def test_fingerprints_are_sha256(self):
        chunks = list(make_chunker().chunk(io.BytesIO(random_bytes(50_000, seed=3))))
        for c in chunks:
            assert c.fingerprint == hashlib.sha256(c.data).hexdigest()

    def test_deterministic_after_seek(self):
        f = io.BytesIO(random_bytes(120_000, seed=4))
        chunker = make_chunker()
        first = [c.fingerprint for c in chunker.chunk(f)]
        f.seek(0)
        second = [c.fingerprint for c in chunker.chunk(f)]
        assert first == second

    def test_append_keeps_earlier_boundaries(self):
        data = random_bytes(256 * 1024, seed=5)
        chunker = make_chunker()
        original = [c.fingerprint for c in chunker.chunk(io.BytesIO(data))]
        appended = [
            c.fingerprint for c in chunker.chunk(io.BytesIO(data + random_bytes(10_000, seed=6)))
        ]
        assert appended[: len(original) - 1] == original[:-1]

    def test_insert_in_middle_keeps_most_chunks(self):
        data = random_bytes(256 * 1024, seed=7)
        edited = data[:100_000] + b"inserted bytes" + data[100_000:]
        chunker = make_chunker()
        original = [c.fingerprint for c in chunker.chunk(io.BytesIO(data))]
        changed = {c.fingerprint for c in chunker.chunk(io.BytesIO(edited))}
        shared = sum(1 for fp in original if fp in changed)
        assert shared >= len(original) // 2

    def test_rejects_inconsistent_bounds(self):
        with pytest.raises(ConfigError):
            ContentDefinedChunker(min_size=8192, avg_size=4096, max_size=16384)

    def test_rejects_sizes_below_limits(self):
        with pytest.raises(ConfigError):
            ContentDefinedChunker(min_size=16, avg_size=64, max_size=128)


class TestHashing:
    def test_sha256_default(self):
        assert Hasher().digest(b"abc") == hashlib.sha256(b"abc").hexdigest()

    def test_blake2b(self):
        fp = Hasher("blake2b")(b"abc")
        assert fp == hashlib.blake2b(b"abc", digest_size=32).hexdigest()
        assert is_fingerprint(fp)

    def test_unknown_algorithm(self):
        with pytest.raises(ConfigError):
            Hasher("md5")

    def test_is_fingerprint(self):
        assert is_fingerprint("a" * 64)
        assert not is_fingerprint("A" * 64)
        assert not is_fingerprint("a" * 63)
        assert not is_fingerprint(None)


class TestCompression:
    def test_compressible_data_uses_zstd(self):
        c = Compressor()
        data = b"abc" * 10_000
        blob = c.encode(data)
        assert blob[0] == TAG_ZSTD
        assert len(blob) < len(data)
        assert c.decode(blob) == data

    def test_incompressible_data_stored_raw(self):
        c = Compressor()
        data = random_bytes(4096, seed=8)
        blob = c.encode(data)
        assert blob[0] == TAG_NONE
        assert c.decode(blob) == data

    def test_codec_none(self):
        c = Compressor("none")
        assert c.encode(b"aaaa" * 100)[0] == TAG_NONE

    def test_unknown_tag(self):
        with pytest.raises(UnknownCodecTag):
            Compressor().decode(b"\x07payload")

    def test_damaged_zstd_payload(self):
        c = Compressor()
        blob = bytearray(c.encode(b"abc" * 10_000))
        blob[5:15] = b"\xff" * 10
        with pytest.raises(zstandard.ZstdError):
            c.decode(bytes(blob))

    def test_unknown_codec(self):
        with pytest.raises(ConfigError):
            Compressor("lz4")
