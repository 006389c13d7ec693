# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Embedding providers.

An ``EmbeddingFn`` embeds a batch of texts into a ``(n, dimension)`` numpy
array. It is what vector ingestion consumes; ``CallableEmbeddingProvider``
adapts one to the async ``EmbeddingProvider`` protocol used at query time.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from functools import cached_property
from typing import Any

import numpy as np

from .errors import ConfigurationError, EmbeddingError

logger = logging.getLogger(__name__)

EmbeddingFn = Callable[[Sequence[str]], np.ndarray]


class CallableEmbeddingProvider:
    """Wrap a batch ``EmbeddingFn`` as an ``EmbeddingProvider``."""

    def __init__(self, embed_fn: EmbeddingFn, dimension: int):
        self._embed_fn = embed_fn
        self._dimension = int(dimension)

    @property
    def embed_fn(self) -> EmbeddingFn:
        return self._embed_fn

    def dimension(self) -> int:
        return self._dimension

    def embed_batch(self, texts: Sequence[str]) -> np.ndarray:
        try:
            vectors = np.asarray(self._embed_fn(list(texts)), dtype="float32")
        except Exception as exc:
            raise EmbeddingError(str(exc), operation="embed") from exc
        if vectors.ndim != 2 or vectors.shape[0] != len(texts):
            raise EmbeddingError(
                f"embedding function returned shape {vectors.shape} for {len(texts)} texts",
                operation="embed",
            )
        return vectors

    async def embed_text(self, text: str) -> list[float]:
        vectors = await asyncio.to_thread(self.embed_batch, [text])
        return vectors[0].tolist()


class SentenceTransformerEmbedder:
    """Lazily loaded sentence-transformers model producing normalised vectors."""

    def __init__(self, model_name: str, **model_kwargs: Any):
        self._model_name = model_name
        self._model_kwargs = model_kwargs

    @cached_property
    def model(self) -> Any:
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError as exc:
            raise ConfigurationError(
                "sentence-transformers is not installed; "
                "install with: pip install 'hybridgrep[embeddings]'"
            ) from exc
        logger.info("Loading embedding model: %s", self._model_name)
        return SentenceTransformer(self._model_name, **self._model_kwargs)

    def __call__(self, texts: Sequence[str]) -> np.ndarray:
        return self.model.encode(
            list(texts), convert_to_numpy=True, normalize_embeddings=True
        )


def create_embedding_provider(config) -> CallableEmbeddingProvider:
    """Build the provider selected by ``embeddings.provider``."""
    provider = (config.embeddings_provider or "").lower()
    dimension = config.embeddings_dimension
    if dimension <= 0:
        raise ConfigurationError("embeddings.dimension must be positive")
    if provider in {"sentence-transformers", "sentence_transformers"}:
        embedder = SentenceTransformerEmbedder(
            config.embeddings_model, **config.embeddings_kwargs
        )
        logger.info(
            "Using sentence-transformers provider (model=%s, dimension=%s)",
            config.embeddings_model,
            dimension,
        )
        return CallableEmbeddingProvider(embedder, dimension)
    raise ConfigurationError(f"Unknown embeddings provider: {config.embeddings_provider!r}")
