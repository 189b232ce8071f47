import io
import logging
import random
import uuid

import pytest

from athena.config import ChunkerParams, EngineSettings, RepositoryConfig
from athena.logging_config import LOGGER_NAME
from athena.repo.repository import Repository

# Small chunks so that test files span many chunks and several containers.
SMALL_CHUNKS = ChunkerParams(min_size=1024, avg_size=4096, max_size=16384)


def random_bytes(size: int, seed: int = 0) -> bytes:
    return random.Random(seed).randbytes(size)


def small_config(**kwargs) -> RepositoryConfig:
    kwargs.setdefault("chunker", SMALL_CHUNKS)
    kwargs.setdefault("container_size", 64 * 1024)
    return RepositoryConfig(**kwargs)


def count_blobs(repo: Repository) -> int:
    """Count chunk blobs in sealed containers."""
    repo.store.flush()
    return sum(len(repo.store.read_footer(cid)) for cid in repo.store.container_ids())


def stream(data: bytes) -> io.BytesIO:
    return io.BytesIO(data)


@pytest.fixture
def repo_url():
    return f"memory://athena-test-{uuid.uuid4().hex}"


@pytest.fixture
def settings():
    return EngineSettings(workers=4, cache_dir=None)


@pytest.fixture
def repo(repo_url, settings):
    repo = Repository(repo_url, settings)
    repo.init(small_config())
    return repo


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
