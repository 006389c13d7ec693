# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Exception hierarchy for the hybrid search core.

Every error carries a ``category`` so callers can tell "fix your query"
(validation) apart from deployment problems (configuration) and from the
search service being unavailable (backend, timeout).
"""

from __future__ import annotations

from enum import Enum


class HybridGrepError(Exception):
    """Base class for all search-core errors."""

    category = "internal"


class ValidationReason(str, Enum):
    EMPTY = "empty"
    TOO_LONG = "too_long"
    INVALID_CHARACTERS = "invalid_characters"


class QueryValidationError(HybridGrepError):
    """The query text was rejected before any search was issued."""

    category = "validation"

    def __init__(self, reason: ValidationReason, message: str):
        super().__init__(message)
        self.reason = reason


class ConfigurationError(HybridGrepError):
    """Deployment or configuration problem; retrying will not help."""

    category = "configuration"


class DimensionMismatchError(ConfigurationError):
    def __init__(self, embedding_dimension: int, backend_dimension: int):
        super().__init__(
            f"Embedding dimension {embedding_dimension} does not match "
            f"vector backend dimension {backend_dimension}"
        )
        self.embedding_dimension = embedding_dimension
        self.backend_dimension = backend_dimension


class BackendError(HybridGrepError):
    """I/O or network failure in a collaborator.

    ``operation`` and ``target`` identify what failed so the caller can
    decide whether to retry; the core never retries on its own.
    """

    category = "backend"

    def __init__(self, message: str, *, operation: str, target: str | None = None):
        detail = f"{operation} failed"
        if target:
            detail += f" for {target}"
        super().__init__(f"{detail}: {message}")
        self.operation = operation
        self.target = target


class IndexBackendError(BackendError):
    """Lexical index could not be opened or read."""


class VectorBackendError(BackendError):
    """Vector store call failed."""


class EmbeddingError(BackendError):
    """Embedding provider failed to embed the input."""


class IndexLockedError(BackendError):
    """Another writer already holds the index."""


class IngestionError(HybridGrepError):
    """Hard ingestion failure (writer flush or commit)."""

    category = "backend"


class QueryTimeoutError(HybridGrepError):
    category = "timeout"

    def __init__(self, timeout: float):
        super().__init__(f"Query exceeded timeout of {timeout:.3f}s")
        self.timeout = timeout
