# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Pytest configuration and shared fixtures for hybridgrep tests.
"""

import shutil
import tempfile
from pathlib import Path

import numpy as np
import pytest

from hybridgrep.analysis.producer import ChunkProducer, RepositorySource
from hybridgrep.ingest import commit, ingest_repository
from hybridgrep.storage.lexical import LexicalIndex

from helpers import TEST_DIMENSION, FakeEmbeddingProvider, FakeVectorBackend


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    tmpdir = tempfile.mkdtemp()
    yield Path(tmpdir)
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
def test_repo_path(temp_dir):
    """Create a temporary repository with sample files."""
    repo_path = temp_dir / "test_repo"
    repo_path.mkdir(parents=True, exist_ok=True)

    (repo_path / "main.py").write_text('''
def hello_world():
    """Say hello to the world."""
    print("Hello, World!")


class Calculator:
    """Simple calculator class."""

    def add(self, a, b):
        return a + b

    def subtract(self, a, b):
        return a - b


if __name__ == "__main__":
    hello_world()
''')

    (repo_path / "utils.py").write_text('''
def process_data(data):
    """Process input data."""
    result = []
    for item in data:
        result.append(item.strip())
    return result


def pipeline_test(stages):
    """Run every stage of the pipeline in order."""
    for stage in stages:
        stage()
''')

    subdir = repo_path / "lib"
    subdir.mkdir()
    (subdir / "helper.py").write_text('''
def format_output(text):
    """Format text for output."""
    return text.upper()


class Logger:
    def __init__(self, name):
        self.name = name

    def log(self, message):
        print(f"[{self.name}] {message}")
''')

    (repo_path / "README.md").write_text(
        "# Test repo\n\nA small repository used by the test suite.\n\n"
        "## Usage\n\nCall the calculator to add numbers.\n"
    )

    yield repo_path


@pytest.fixture
def index_path(temp_dir):
    return temp_dir / "lexical"


@pytest.fixture
def indexed_repo(test_repo_path, index_path):
    """Ingest ``test_repo_path`` and yield an open handle on the commit."""
    index = LexicalIndex.create(index_path)
    source = RepositorySource(test_repo_path, repository_id=1)
    producer = ChunkProducer(max_lines=40, overlap=10)
    with index.open_writer() as writer:
        stats = ingest_repository(source, writer, batch_size=2, producer=producer)
        handle = commit(writer)
    try:
        yield {"index": index, "handle": handle, "stats": stats, "repo_path": test_repo_path}
    finally:
        handle.close()


@pytest.fixture
def dummy_embed_fn():
    """Create a deterministic embedding function for testing."""
    import hashlib

    from numpy.random import default_rng

    def embed_fn(texts):
        embeddings = np.empty((len(texts), TEST_DIMENSION), dtype="float32")
        for i, text in enumerate(texts):
            digest = hashlib.sha256(text.encode("utf-8")).digest()
            # Seed a local RNG from the digest; avoid global np.random state
            rng = default_rng(int.from_bytes(digest[:8], "big", signed=False))
            embeddings[i] = rng.standard_normal(TEST_DIMENSION).astype("float32")
        norms = np.linalg.norm(embeddings, axis=1, keepdims=True)
        return embeddings / (norms + 1e-8)

    return embed_fn


@pytest.fixture
def fake_provider():
    return FakeEmbeddingProvider()


@pytest.fixture
def fake_backend():
    return FakeVectorBackend()
