"""Collaborator protocols consumed by the hybrid query engine."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol, runtime_checkable

from .models import SearchFilters, VectorHit


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Maps query text to a fixed-dimension vector."""

    def dimension(self) -> int:
        """Length of every vector returned by ``embed_text``."""
        ...

    async def embed_text(self, text: str) -> Sequence[float]:
        """Embed a single text.

        Raises:
            EmbeddingError: on model or input failure.
        """
        ...


@runtime_checkable
class VectorSearchBackend(Protocol):
    """Nearest-neighbour lookup over chunk embeddings."""

    def dimension(self) -> int:
        ...

    async def search_vectors(
        self, embedding: Sequence[float], limit: int, filters: SearchFilters | None = None
    ) -> list[VectorHit]:
        """Return hits ordered by score descending.

        Raises:
            VectorBackendError: on backend or network failure.
        """
        ...
