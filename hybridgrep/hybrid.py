"""Semantic-first query orchestration: embed, vector search, rerank."""

from __future__ import annotations

import logging

from .errors import (BackendError, ConfigurationError, DimensionMismatchError,
                     EmbeddingError, VectorBackendError)
from .fallback import FallbackEngine
from .models import FallbackResult, SearchFilters
from .protocols import EmbeddingProvider, VectorSearchBackend

logger = logging.getLogger(__name__)


class HybridQueryEngine:
    def __init__(
        self,
        embedder: EmbeddingProvider,
        backend: VectorSearchBackend,
        fallback: FallbackEngine | None = None,
    ):
        self.embedder = embedder
        self.backend = backend
        self.fallback = fallback or FallbackEngine()

    def validate_dimensions(self) -> int:
        """Return the shared dimension or raise before any collaborator call."""
        embedding_dimension = self.embedder.dimension()
        if embedding_dimension == 0:
            raise ConfigurationError("Embedding provider reports dimension 0")
        backend_dimension = self.backend.dimension()
        if embedding_dimension != backend_dimension:
            raise DimensionMismatchError(embedding_dimension, backend_dimension)
        return embedding_dimension

    async def search(
        self, query_text: str, limit: int, filters: SearchFilters | None = None
    ) -> FallbackResult:
        dimension = self.validate_dimensions()

        try:
            embedding = await self.embedder.embed_text(query_text)
        except BackendError:
            raise
        except Exception as exc:
            raise EmbeddingError(str(exc), operation="embed_text") from exc
        if len(embedding) != dimension:
            raise DimensionMismatchError(len(embedding), dimension)

        try:
            vector_hits = await self.backend.search_vectors(embedding, limit, filters)
        except BackendError:
            raise
        except Exception as exc:
            raise VectorBackendError(str(exc), operation="search_vectors") from exc

        logger.debug("Vector search returned %s hits", len(vector_hits))
        hits = [hit.to_search_hit() for hit in vector_hits]
        return self.fallback.rerank(query_text, hits, limit)
