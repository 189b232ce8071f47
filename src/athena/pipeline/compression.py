"""Per-chunk compression codecs.

Every stored blob starts with a one-byte codec tag so that readers can decode
it without consulting the repository configuration. A chunk is stored
uncompressed whenever compression would not make it smaller.
"""

import threading

import zstandard

from athena.errors import ConfigError

TAG_NONE = 0
TAG_ZSTD = 1

CODECS = ("zstd", "none")
DEFAULT_CODEC = "zstd"
DEFAULT_LEVEL = 3


class UnknownCodecTag(ValueError):
    pass


class Compressor:
    """Encodes chunks into tagged blobs and decodes them back."""

    def __init__(self, codec: str = DEFAULT_CODEC, level: int = DEFAULT_LEVEL):
        if codec not in CODECS:
            raise ConfigError(
                f"Unsupported compression codec {codec!r}; expected one of {', '.join(CODECS)}"
            )
        self.codec = codec
        self.level = level
        # zstandard contexts are not safe to share between threads.
        self._local = threading.local()

    def _compressor(self) -> zstandard.ZstdCompressor:
        cctx = getattr(self._local, "cctx", None)
        if cctx is None:
            cctx = zstandard.ZstdCompressor(level=self.level)
            self._local.cctx = cctx
        return cctx

    def _decompressor(self) -> zstandard.ZstdDecompressor:
        dctx = getattr(self._local, "dctx", None)
        if dctx is None:
            dctx = zstandard.ZstdDecompressor()
            self._local.dctx = dctx
        return dctx

    def encode(self, data: bytes) -> bytes:
        if self.codec == "zstd" and data:
            packed = self._compressor().compress(data)
            if len(packed) < len(data):
                return bytes([TAG_ZSTD]) + packed
        return bytes([TAG_NONE]) + data

    def decode(self, blob: bytes) -> bytes:
        """
        Decode a tagged blob.

        Raises:
            UnknownCodecTag: If the blob is empty or carries an unknown tag.
            zstandard.ZstdError: If a zstd payload is damaged.
        """
        if not blob:
            raise UnknownCodecTag("empty blob")
        tag, payload = blob[0], blob[1:]
        if tag == TAG_NONE:
            return bytes(payload)
        if tag == TAG_ZSTD:
            return self._decompressor().decompress(payload)
        raise UnknownCodecTag(f"unknown codec tag {tag}")
