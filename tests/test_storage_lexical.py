import os

import pytest

from hybridgrep.analysis.producer import (ChunkProducer, RepositorySource,
                                          content_checksum)
from hybridgrep.errors import IndexBackendError, IndexLockedError
from hybridgrep.ingest import commit, ingest_repository
from hybridgrep.models import SearchFilters
from hybridgrep.storage.lexical import (LOCK_NAME, MANIFEST_NAME, SEGMENTS_DIR,
                                        LexicalIndex)

from helpers import make_chunk


def test_round_trip_finds_distinctive_token(indexed_repo):
    handle = indexed_repo["handle"]
    hits = handle.search("pipeline_test", 5)

    assert hits
    assert hits[0].file_path.endswith("utils.py")
    assert "pipeline_test" in hits[0].matched_terms
    assert hits[0].content.startswith("def pipeline_test")
    scores = [h.score for h in hits]
    assert scores == sorted(scores, reverse=True)
    assert len({h.chunk_id for h in hits}) == len(hits)


def test_ingest_stats(indexed_repo):
    stats = indexed_repo["stats"]
    assert stats.chunks_indexed == indexed_repo["handle"].doc_count
    assert stats.errors == 0
    assert stats.batches >= 2


def test_open_missing_index_raises(tmp_path):
    with pytest.raises(IndexBackendError) as excinfo:
        LexicalIndex.open(tmp_path / "does-not-exist")
    assert excinfo.value.operation == "open_index"
    assert excinfo.value.category == "backend"


def test_open_corrupt_manifest_raises(tmp_path):
    index = LexicalIndex.create(tmp_path / "idx")
    (index.path / MANIFEST_NAME).write_text("{not json")
    with pytest.raises(IndexBackendError):
        LexicalIndex.open(index.path)


def test_removed_segment_raises_on_handle(tmp_path):
    import shutil

    index = LexicalIndex.create(tmp_path / "idx")
    with index.open_writer() as writer:
        writer.add_chunks([make_chunk("a.py", "alpha = 1")])
        writer.commit().close()
    shutil.rmtree(index.path / SEGMENTS_DIR)
    with pytest.raises(IndexBackendError):
        index.open_handle()


def test_single_writer(tmp_path):
    index = LexicalIndex.create(tmp_path / "idx")
    writer = index.open_writer()
    try:
        with pytest.raises(IndexLockedError):
            index.open_writer()
    finally:
        writer.close()
    # Lock is released on close.
    index.open_writer().close()


def test_lock_left_by_exited_process_is_recovered(tmp_path, monkeypatch):
    index = LexicalIndex.create(tmp_path / "idx")
    (index.path / LOCK_NAME).write_text("424242")
    monkeypatch.setattr("hybridgrep.storage.lexical._pid_alive", lambda pid: False)

    with index.open_writer() as writer:
        writer.add_chunks([make_chunk("a.py", "def alpha(): pass")])
        handle = writer.commit()
    try:
        assert handle.doc_count == 1
    finally:
        handle.close()
    assert not (index.path / LOCK_NAME).exists()


def test_lock_held_by_live_process_is_kept(tmp_path):
    index = LexicalIndex.create(tmp_path / "idx")
    (index.path / LOCK_NAME).write_text(str(os.getpid()))
    with pytest.raises(IndexLockedError):
        index.open_writer()
    assert (index.path / LOCK_NAME).read_text() == str(os.getpid())


def test_snapshot_isolation(tmp_path):
    index = LexicalIndex.create(tmp_path / "idx")
    with index.open_writer() as writer:
        writer.add_chunks([make_chunk("a.py", "def alpha(): pass")])
        first = writer.commit()

    with index.open_writer() as writer:
        writer.add_chunks([make_chunk("b.py", "def zebrafish(): pass")])
        # Staged but uncommitted data is invisible to readers.
        assert first.search("zebrafish", 5) == []
        with index.open_handle() as current:
            assert current.search("zebrafish", 5) == []
        second = writer.commit()

    try:
        assert [h.file_path for h in second.search("zebrafish", 5)] == ["b.py"]
        assert first.search("zebrafish", 5) == []
        assert first.search("alpha", 5)[0].file_path == "a.py"
        assert second.generation == first.generation + 1
    finally:
        first.close()
        second.close()


def test_uncommitted_segments_are_discarded(tmp_path):
    index = LexicalIndex.create(tmp_path / "idx")
    with index.open_writer() as writer:
        writer.add_chunks([make_chunk("a.py", "def alpha(): pass")])
    assert list((index.path / SEGMENTS_DIR).iterdir()) == []
    with index.open_handle() as handle:
        assert handle.doc_count == 0
        assert handle.search("alpha", 5) == []


def test_reingest_supersedes_previous_chunks(tmp_path):
    repo = tmp_path / "repo"
    repo.mkdir()
    target = repo / "mod.py"
    target.write_text("def alpha_token():\n    return 1\n")
    (repo / "other.py").write_text("def unrelated():\n    return 2\n")
    index = LexicalIndex.create(tmp_path / "idx")

    def run(paths_source):
        with index.open_writer() as writer:
            ingest_repository(paths_source, writer, batch_size=10, producer=ChunkProducer())
            return commit(writer)

    run(RepositorySource(repo)).close()
    target.write_text("def beta_token():\n    return 1\n\n\ndef gamma():\n    return 3\n")
    handle = run(RepositorySource(repo))
    try:
        # "alpha_token" also indexes "token", which still matches the new chunk.
        assert all("alpha_token" not in h.content for h in handle.search("alpha_token", 5))
        assert handle.search("beta_token", 5)[0].file_path == "mod.py"
        assert handle.search("unrelated", 5)[0].file_path == "other.py"
        # other.py (1 chunk) + mod.py (2 chunks); old mod.py chunk is masked.
        assert handle.doc_count == 3
    finally:
        handle.close()


def test_delete_file_retires_chunks(tmp_path):
    index = LexicalIndex.create(tmp_path / "idx")
    with index.open_writer() as writer:
        writer.add_chunks([make_chunk("a.py", "def alpha(): pass"), make_chunk("b.py", "alpha beta")])
        writer.commit().close()
    with index.open_writer() as writer:
        writer.delete_file("a.py")
        handle = writer.commit()
    try:
        assert [h.file_path for h in handle.search("alpha", 5)] == ["b.py"]
        assert handle.doc_count == 1
    finally:
        handle.close()


def test_same_path_in_two_repositories(tmp_path):
    index = LexicalIndex.create(tmp_path / "idx")
    with index.open_writer() as writer:
        writer.add_chunks([make_chunk("README.md", "alphaunique notes", repository_id=1)])
        writer.commit().close()
    with index.open_writer() as writer:
        writer.add_chunks([make_chunk("README.md", "betaunique notes", repository_id=2)])
        handle = writer.commit()
    try:
        assert handle.doc_count == 2
        assert [h.repository_id for h in handle.search("alphaunique", 5)] == [1]
        assert [h.repository_id for h in handle.search("betaunique", 5)] == [2]
    finally:
        handle.close()

    with index.open_writer() as writer:
        writer.delete_file("README.md", repository_id=1)
        handle = writer.commit()
    try:
        assert handle.doc_count == 1
        assert handle.search("alphaunique", 5) == []
        assert [h.repository_id for h in handle.search("notes", 5)] == [2]
    finally:
        handle.close()


def test_iter_chunks_yields_live_chunks_once(tmp_path):
    index = LexicalIndex.create(tmp_path / "idx")
    with index.open_writer() as writer:
        writer.add_chunks([make_chunk("a.py", "old = 1"), make_chunk("b.py", "keep = 2")])
        writer.commit().close()
    with index.open_writer() as writer:
        writer.add_chunks([make_chunk("a.py", "new = 1")])
        handle = writer.commit()
    try:
        chunks = list(handle.iter_chunks())
        assert sorted(c.content for c in chunks) == ["keep = 2", "new = 1"]
        assert len(chunks) == handle.doc_count
    finally:
        handle.close()


def test_filters(indexed_repo):
    handle = indexed_repo["handle"]

    md = handle.search("calculator", 10, SearchFilters(language="markdown"))
    assert md and all(h.language == "markdown" for h in md)

    lib = handle.search("def", 10, SearchFilters(file_path_pattern="lib/*"))
    assert lib and all(h.file_path.startswith("lib/") for h in lib)

    sub = handle.search("def", 10, SearchFilters(file_path_pattern="helper"))
    assert sub and all("helper" in h.file_path for h in sub)

    assert handle.search("def", 10, SearchFilters(repository_id=99)) == []
    assert handle.search("def", 10, SearchFilters(repository_id=1))


def test_bm25_prefers_denser_matches(tmp_path):
    index = LexicalIndex.create(tmp_path / "idx")
    with index.open_writer() as writer:
        writer.add_chunks([
            make_chunk("dense.py", "cache cache cache"),
            make_chunk("sparse.py", "cache plus many other unrelated words in this chunk"),
            make_chunk("none.py", "nothing relevant"),
        ])
        handle = writer.commit()
    try:
        hits = handle.search("cache", 10)
        assert [h.file_path for h in hits] == ["dense.py", "sparse.py"]
        assert handle.search("", 10) == []
        assert handle.search("cache", 0) == []
    finally:
        handle.close()


def test_get_chunk(indexed_repo):
    handle = indexed_repo["handle"]
    hit = handle.search("pipeline_test", 1)[0]
    chunk = handle.get_chunk(hit.chunk_id)
    assert chunk is not None
    assert chunk.file_path == hit.file_path
    assert chunk.checksum == content_checksum(chunk.content)
    assert handle.get_chunk(12345) is None
