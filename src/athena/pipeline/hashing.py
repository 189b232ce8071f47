"""Chunk fingerprinting."""

import hashlib
import re
from typing import NewType

from athena.errors import ConfigError

Fingerprint = NewType("Fingerprint", str)

SUPPORTED_ALGORITHMS = ("sha256", "blake2b")
DEFAULT_ALGORITHM = "sha256"

_FINGERPRINT_RE = re.compile(r"^[0-9a-f]{64}$")


def is_fingerprint(value: object) -> bool:
    """Return True if value looks like a 256-bit hex fingerprint."""
    return isinstance(value, str) and bool(_FINGERPRINT_RE.match(value))


class Hasher:
    """Deterministic content hasher producing 256-bit hex fingerprints."""

    def __init__(self, algorithm: str = DEFAULT_ALGORITHM):
        """
        Initialize with a hash algorithm.

        Args:
            algorithm: One of SUPPORTED_ALGORITHMS. Fixed per repository.

        Raises:
            ConfigError: If the algorithm is not supported.
        """
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise ConfigError(
                f"Unsupported hash algorithm {algorithm!r}; "
                f"expected one of {', '.join(SUPPORTED_ALGORITHMS)}"
            )
        self.algorithm = algorithm

    def digest(self, data: bytes) -> Fingerprint:
        if self.algorithm == "blake2b":
            h = hashlib.blake2b(data, digest_size=32)
        else:
            h = hashlib.sha256(data)
        return Fingerprint(h.hexdigest())

    def __call__(self, data: bytes) -> Fingerprint:
        return self.digest(data)

    def __repr__(self) -> str:
        return f"Hasher({self.algorithm!r})"
