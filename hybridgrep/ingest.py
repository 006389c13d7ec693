# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Ingestion pipeline: chunk production into the lexical index, plus the
separate vector ingestion path.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Sequence

from .analysis.producer import ChunkProducer, RepositorySource
from .embeddings import EmbeddingFn
from .errors import EmbeddingError
from .fallback import FallbackArtifacts, FallbackArtifactsBuilder
from .models import Chunk, IngestStats
from .storage.lexical import IndexHandle, IndexWriter
from .storage.vector import VectorIndex

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[IngestStats], None]


def ingest_repository(
    source: RepositorySource,
    writer: IndexWriter,
    batch_size: int = 256,
    progress_interval: int = 1000,
    producer: ChunkProducer | None = None,
    artifacts: FallbackArtifactsBuilder | None = None,
    on_progress: ProgressCallback | None = None,
    on_batch: Callable[[Sequence[Chunk]], None] | None = None,
) -> IngestStats:
    """Stream chunks from ``source`` into ``writer`` in batches.

    Per-file failures are counted in ``errors``; a failed segment write
    raises ``IngestionError`` and leaves earlier commits untouched. Nothing is
    visible to readers until ``commit(writer)``.
    """
    producer = producer or ChunkProducer()
    batch_size = max(1, batch_size)
    progress_interval = max(1, progress_interval)
    stats = IngestStats()
    start = time.perf_counter()
    next_report = progress_interval
    batch: list[Chunk] = []

    logger.info("Ingesting repository %s (repository_id=%s)", source.root, source.repository_id)

    def flush() -> None:
        nonlocal next_report
        writer.add_chunks(batch)
        if on_batch is not None:
            on_batch(list(batch))
        stats.chunks_indexed += len(batch)
        stats.batches += 1
        batch.clear()
        if stats.chunks_indexed >= next_report:
            _sync_counters(stats, producer, start)
            logger.info(
                "Progress: %s chunks indexed from %s files (%s errors)",
                stats.chunks_indexed,
                stats.files_scanned,
                stats.errors,
            )
            if on_progress is not None:
                on_progress(stats)
            while next_report <= stats.chunks_indexed:
                next_report += progress_interval

    for chunk in producer.produce(source):
        if artifacts is not None:
            artifacts.record_chunk(chunk)
        batch.append(chunk)
        if len(batch) >= batch_size:
            flush()
    if batch:
        flush()

    _sync_counters(stats, producer, start)
    logger.info(
        "Ingestion of %s finished: %s chunks in %s batches, %s files scanned, "
        "%s skipped, %s errors (%.2fs)",
        source.root,
        stats.chunks_indexed,
        stats.batches,
        stats.files_scanned,
        stats.files_skipped,
        stats.errors,
        stats.duration_seconds,
    )
    return stats


def _sync_counters(stats: IngestStats, producer: ChunkProducer, start: float) -> None:
    stats.errors = producer.errors
    stats.files_scanned = producer.files_scanned
    stats.files_skipped = producer.files_skipped
    stats.duration_seconds = time.perf_counter() - start


def commit(writer: IndexWriter) -> IndexHandle:
    """Publish everything staged on ``writer`` as a new immutable snapshot."""
    return writer.commit()


def build_fallback_artifacts(handle: IndexHandle) -> FallbackArtifacts:
    """Build reranking artifacts from the live chunks of ``handle``.

    Superseded and deleted chunks are not in the snapshot, so their profiles
    and co-occurrence counts drop out of the result.
    """
    builder = FallbackArtifactsBuilder()
    for chunk in handle.iter_chunks():
        builder.record_chunk(chunk)
    logger.info(
        "Built fallback artifacts for %s chunks at generation %s", len(builder), handle.generation
    )
    return builder.build()


def index_vectors(
    chunks: Iterable[Chunk],
    embed_fn: EmbeddingFn,
    vector_index: VectorIndex,
    batch_size: int = 64,
) -> int:
    """Embed chunk content in batches and upsert it into ``vector_index``."""
    batch_size = max(1, batch_size)
    written = 0
    batch: list[Chunk] = []

    def flush() -> int:
        try:
            vectors = embed_fn([c.content for c in batch])
        except Exception as exc:
            raise EmbeddingError(str(exc), operation="embed_chunks") from exc
        count = vector_index.add_chunks(batch, vectors)
        batch.clear()
        return count

    for chunk in chunks:
        batch.append(chunk)
        if len(batch) >= batch_size:
            written += flush()
    if batch:
        written += flush()
    logger.info("Indexed %s chunk vectors into %s", written, vector_index.table_name)
    return written
