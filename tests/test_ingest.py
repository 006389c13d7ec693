import numpy as np
import pytest

from hybridgrep.analysis.producer import ChunkProducer, RepositorySource
from hybridgrep.errors import EmbeddingError, IngestionError
from hybridgrep.fallback import FallbackArtifactsBuilder
from hybridgrep.ingest import (build_fallback_artifacts, commit, index_vectors,
                              ingest_repository)
from hybridgrep.storage.lexical import LexicalIndex


class RecordingWriter:
    def __init__(self, fail_on_batch=None):
        self.batches = []
        self.fail_on_batch = fail_on_batch

    def add_chunks(self, chunks):
        if self.fail_on_batch is not None and len(self.batches) == self.fail_on_batch:
            raise IngestionError("disk full")
        self.batches.append(list(chunks))
        return len(chunks)

    def commit(self):
        return "handle"


class RecordingVectorIndex:
    table_name = "code_chunks"

    def __init__(self):
        self.rows = {}

    def add_chunks(self, chunks, vectors):
        for chunk, vec in zip(chunks, vectors):
            self.rows[chunk.chunk_id] = vec
        return len(chunks)


def test_batches_preserve_producer_order(test_repo_path):
    writer = RecordingWriter()
    source = RepositorySource(test_repo_path)

    stats = ingest_repository(source, writer, batch_size=3, producer=ChunkProducer())

    flat = [c for batch in writer.batches for c in batch]
    expected = list(ChunkProducer().produce(RepositorySource(test_repo_path)))
    assert [c.chunk_id for c in flat] == [c.chunk_id for c in expected]
    assert all(len(b) <= 3 for b in writer.batches)
    assert stats.batches == len(writer.batches)
    assert stats.chunks_indexed == len(flat)
    assert stats.duration_seconds >= 0


def test_file_errors_do_not_abort_ingestion(test_repo_path, index_path):
    (test_repo_path / "bad.py").write_text("def nope(:\n")
    index = LexicalIndex.create(index_path)

    with index.open_writer() as writer:
        stats = ingest_repository(RepositorySource(test_repo_path), writer, batch_size=4)
        handle = commit(writer)
    try:
        assert stats.errors == 1
        assert stats.chunks_indexed > 0
        assert handle.search("pipeline_test", 5)
    finally:
        handle.close()


def test_progress_callback(test_repo_path):
    seen = []
    stats = ingest_repository(
        RepositorySource(test_repo_path),
        RecordingWriter(),
        batch_size=1,
        progress_interval=2,
        on_progress=lambda s: seen.append(s.chunks_indexed),
    )
    assert seen
    assert seen == sorted(seen)
    assert all(count % 2 == 0 for count in seen)
    assert seen[-1] <= stats.chunks_indexed


def test_hard_writer_failure_propagates(test_repo_path):
    with pytest.raises(IngestionError):
        ingest_repository(
            RepositorySource(test_repo_path), RecordingWriter(fail_on_batch=1), batch_size=1
        )


def test_artifacts_record_every_chunk(test_repo_path):
    builder = FallbackArtifactsBuilder()
    stats = ingest_repository(
        RepositorySource(test_repo_path), RecordingWriter(), artifacts=builder
    )
    artifacts = builder.build()
    assert len(artifacts) == stats.chunks_indexed
    assert artifacts.pmi.documents == stats.chunks_indexed



def test_rebuilt_artifacts_drop_superseded_chunks(tmp_path):
    repo = tmp_path / "repo"
    repo.mkdir()
    target = repo / "mod.py"
    target.write_text("def alpha_marker():\n    return 1\n")
    (repo / "other.py").write_text("def steady_helper():\n    return 2\n")
    index = LexicalIndex.create(tmp_path / "idx")

    def reindex():
        with index.open_writer() as writer:
            ingest_repository(RepositorySource(repo), writer, producer=ChunkProducer())
            return commit(writer)

    handle = reindex()
    try:
        old_ids = {c.chunk_id for c in handle.iter_chunks() if c.file_path == "mod.py"}
        first = build_fallback_artifacts(handle)
    finally:
        handle.close()
    assert "alpha_marker" in first.pmi.marginals

    target.write_text("def beta_marker():\n    value = 2\n    return value\n")
    handle = reindex()
    try:
        artifacts = build_fallback_artifacts(handle)
        assert artifacts.pmi.documents == handle.doc_count
        assert len(artifacts) == handle.doc_count
    finally:
        handle.close()

    assert old_ids
    for chunk_id in old_ids:
        assert artifacts.identifier(chunk_id) is None
        assert artifacts.ngram(chunk_id) is None
    assert "alpha_marker" not in artifacts.pmi.marginals
    assert "beta_marker" in artifacts.pmi.marginals
    assert "steady_helper" in artifacts.pmi.marginals

def test_index_vectors_batches(test_repo_path, dummy_embed_fn):
    chunks = list(ChunkProducer().produce(RepositorySource(test_repo_path)))
    calls = []

    def embed(texts):
        calls.append(len(texts))
        return dummy_embed_fn(texts)

    target = RecordingVectorIndex()
    written = index_vectors(chunks, embed, target, batch_size=2)

    assert written == len(chunks)
    assert set(target.rows) == {c.chunk_id for c in chunks}
    assert max(calls) <= 2
    assert np.isclose(np.linalg.norm(next(iter(target.rows.values()))), 1.0, atol=1e-4)


def test_index_vectors_wraps_embedding_failures(test_repo_path):
    chunks = list(ChunkProducer().produce(RepositorySource(test_repo_path)))

    def broken(texts):
        raise RuntimeError("model crashed")

    with pytest.raises(EmbeddingError):
        index_vectors(chunks, broken, RecordingVectorIndex())
