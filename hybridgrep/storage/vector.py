"""Vector index wrapper around LanceDB.

``VectorIndex`` is the write/read helper used by vector ingestion;
``LanceVectorBackend`` adapts it to the async ``VectorSearchBackend``
protocol consumed by the hybrid query engine.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import lancedb
import numpy as np
import pyarrow as pa

from ..errors import VectorBackendError
from ..models import Chunk, SearchFilters, VectorHit
from ..schema import get_chunk_model

logger = logging.getLogger(__name__)

# LanceDB columns are non-nullable ints; chunks without a repository use this.
NO_REPOSITORY = -1


def _quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _glob_to_like(pattern: str) -> str:
    """Translate a shell glob (or bare substring) into a SQL LIKE pattern.

    LIKE has no character classes, so ``[...]`` becomes ``_``; literal ``%``
    and ``_`` also become ``_``. The result admits a superset of the paths
    ``fnmatch`` accepts, and callers re-check hits with ``SearchFilters.matches``.
    """
    if not any(c in pattern for c in "*?["):
        return "%" + pattern.replace("%", "_") + "%"
    out = []
    i, n = 0, len(pattern)
    while i < n:
        c = pattern[i]
        i += 1
        if c == "*":
            out.append("%")
        elif c in "?%_":
            out.append("_")
        elif c == "[":
            j = i
            if j < n and pattern[j] == "!":
                j += 1
            if j < n and pattern[j] == "]":
                j += 1
            j = pattern.find("]", j)
            if j < 0:
                out.append(c)
            else:
                out.append("_")
                i = j + 1
        else:
            out.append(c)
    return "".join(out)


def build_where_clause(filters: SearchFilters | None) -> str | None:
    """Translate SearchFilters into a LanceDB SQL predicate (None = no filter)."""
    if filters is None or filters.is_empty():
        return None
    clauses = []
    if filters.repository_id is not None:
        clauses.append(f"repository_id = {int(filters.repository_id)}")
    if filters.language is not None:
        clauses.append(f"language = {_quote(filters.language.lower())}")
    if filters.file_path_pattern:
        clauses.append(f"file_path LIKE {_quote(_glob_to_like(filters.file_path_pattern))}")
    return " AND ".join(clauses)


class VectorIndex:
    def __init__(self, base_path: Path, dimension: int, table_name: str = "code_chunks"):
        self.base_path = Path(base_path)
        self.dimension = dimension
        self.table_name = table_name
        self.base_path.mkdir(parents=True, exist_ok=True)
        try:
            self._db = lancedb.connect(str(self.base_path))
            self._table = self._open_or_create()
        except Exception as exc:
            raise VectorBackendError(
                str(exc), operation="connect", target=str(self.base_path)
            ) from exc

    def _open_or_create(self) -> Any:
        if self.table_name in set(self._db.table_names()):
            table = self._db.open_table(self.table_name)
            actual = self._table_dimension(table)
            if actual is not None and actual != self.dimension:
                logger.warning(
                    "Vector table %s has dimension %s but %s was configured",
                    self.table_name,
                    actual,
                    self.dimension,
                )
                self.dimension = actual
            return table
        logger.info(
            "Creating vector table %s (dimension=%s) in %s",
            self.table_name,
            self.dimension,
            self.base_path,
        )
        return self._db.create_table(
            self.table_name, schema=get_chunk_model(self.dimension)
        )

    @staticmethod
    def _table_dimension(table: Any) -> int | None:
        try:
            vector_type = table.schema.field("vector").type
        except (AttributeError, KeyError):
            logger.debug("Could not read vector column from table schema", exc_info=True)
            return None
        if not isinstance(vector_type, pa.FixedSizeListType):
            logger.debug("Vector column has type %s, not a fixed-size list", vector_type)
            return None
        return int(vector_type.list_size)

    @property
    def table(self) -> Any:
        return self._table

    def add_chunks(self, chunks: Sequence[Chunk], vectors: np.ndarray) -> int:
        """Upsert ``chunks`` with their embeddings (replacing rows with the same ids)."""
        if len(chunks) == 0:
            return 0
        vectors = np.asarray(vectors, dtype="float32")
        if vectors.ndim != 2 or vectors.shape[0] != len(chunks):
            raise VectorBackendError(
                f"expected {len(chunks)} vectors, got shape {vectors.shape}",
                operation="add",
                target=self.table_name,
            )
        if vectors.shape[1] != self.dimension:
            raise VectorBackendError(
                f"embedding dimension {vectors.shape[1]} != table dimension {self.dimension}",
                operation="add",
                target=self.table_name,
            )
        records = [
            {
                "vector": vec.tolist(),
                "chunk_id": chunk.chunk_id,
                "repository_id": (
                    chunk.repository_id if chunk.repository_id is not None else NO_REPOSITORY
                ),
                "file_path": chunk.file_path,
                "language": chunk.language,
                "start_line": chunk.start_line,
                "end_line": chunk.end_line,
                "content": chunk.content,
                "checksum": chunk.checksum,
            }
            for chunk, vec in zip(chunks, vectors)
        ]
        ids = ", ".join(str(chunk.chunk_id) for chunk in chunks)
        try:
            self._table.delete(f"chunk_id IN ({ids})")
            self._table.add(records)
        except Exception as exc:
            raise VectorBackendError(str(exc), operation="add", target=self.table_name) from exc
        return len(records)

    def delete_file(self, file_path: str, repository_id: int | None = None) -> None:
        where = f"file_path = {_quote(file_path)}"
        if repository_id is not None:
            where += f" AND repository_id = {int(repository_id)}"
        try:
            self._table.delete(where)
        except Exception as exc:
            raise VectorBackendError(
                str(exc), operation="delete", target=self.table_name
            ) from exc

    def count(self) -> int:
        try:
            return int(self._table.count_rows())
        except Exception as exc:
            raise VectorBackendError(
                str(exc), operation="count", target=self.table_name
            ) from exc

    def search(self, vector: Sequence[float], limit: int, where: str | None = None) -> list[dict]:
        """Nearest-neighbour rows by cosine distance (``_distance`` column)."""
        try:
            q = self._table.search(np.asarray(vector, dtype="float32"))
            if hasattr(q, "distance_type"):
                q = q.distance_type("cosine")
            elif hasattr(q, "metric"):
                q = q.metric("cosine")
            if where:
                q = q.where(where, prefilter=True)
            return q.limit(limit).to_list()
        except Exception as exc:
            raise VectorBackendError(
                str(exc), operation="search", target=self.table_name
            ) from exc


def _row_to_hit(row: dict) -> VectorHit:
    repository_id = row.get("repository_id")
    return VectorHit(
        chunk_id=int(row["chunk_id"]),
        score=1.0 - float(row.get("_distance", 1.0)),
        file_path=row["file_path"],
        language=row["language"],
        repository_id=None if repository_id in (None, NO_REPOSITORY) else int(repository_id),
        content=row.get("content"),
        start_line=row.get("start_line"),
        end_line=row.get("end_line"),
    )


class LanceVectorBackend:
    """``VectorSearchBackend`` implementation over a ``VectorIndex``."""

    def __init__(self, index: VectorIndex):
        self.index = index

    def dimension(self) -> int:
        return self.index.dimension

    async def search_vectors(
        self, embedding: Sequence[float], limit: int, filters: SearchFilters | None = None
    ) -> list[VectorHit]:
        where = build_where_clause(filters)
        rows = await asyncio.to_thread(self.index.search, embedding, limit, where)
        hits = [_row_to_hit(row) for row in rows]
        if where is not None:
            hits = [h for h in hits if filters.matches(h.file_path, h.language, h.repository_id)]
        hits.sort(key=lambda hit: -hit.score)
        return hits
