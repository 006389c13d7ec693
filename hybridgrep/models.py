# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""Data model shared by ingestion, indexing and query components."""

from __future__ import annotations

import fnmatch
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from enum import Enum, IntEnum
from types import MappingProxyType

from .errors import ConfigurationError

_GLOB_CHARS = set("*?[")


def make_metadata(
    *,
    chunk_id: int,
    file_path: str,
    language: str,
    repository_id: int | None,
    start_line: int | None = None,
    end_line: int | None = None,
    token_count: int | None = None,
    checksum: str | None = None,
) -> Mapping[str, object]:
    """Read-only metadata view attached to search hits."""
    return MappingProxyType(
        {
            "chunk_id": chunk_id,
            "repository_id": repository_id,
            "file_path": file_path,
            "language": language,
            "start_line": start_line,
            "end_line": end_line,
            "token_count": token_count,
            "checksum": checksum,
        }
    )


@dataclass(frozen=True)
class Chunk:
    """An indexable unit of source text."""

    chunk_id: int
    file_path: str
    language: str
    start_line: int
    end_line: int
    token_count: int
    checksum: str
    content: str
    repository_id: int | None = None

    def __post_init__(self):
        if self.start_line < 1 or self.start_line > self.end_line:
            raise ValueError(
                f"Invalid line range {self.start_line}-{self.end_line} for {self.file_path}"
            )

    def metadata(self) -> Mapping[str, object]:
        return make_metadata(
            chunk_id=self.chunk_id,
            file_path=self.file_path,
            language=self.language,
            repository_id=self.repository_id,
            start_line=self.start_line,
            end_line=self.end_line,
            token_count=self.token_count,
            checksum=self.checksum,
        )


@dataclass(frozen=True)
class SearchFilters:
    """Optional predicates; ``None`` means no constraint on that dimension."""

    repository_id: int | None = None
    language: str | None = None
    file_path_pattern: str | None = None

    def is_empty(self) -> bool:
        return (
            self.repository_id is None
            and self.language is None
            and not self.file_path_pattern
        )

    def matches(self, file_path: str, language: str | None, repository_id: int | None) -> bool:
        if self.repository_id is not None and repository_id != self.repository_id:
            return False
        if self.language is not None and (language or "").lower() != self.language.lower():
            return False
        pattern = self.file_path_pattern
        if pattern:
            if _GLOB_CHARS & set(pattern):
                return fnmatch.fnmatchcase(file_path, pattern)
            return pattern in file_path
        return True


@dataclass(frozen=True)
class RankingConfig:
    """Fusion tuning for combining lexical and semantic rankings."""

    lexical_weight: float = 0.4
    semantic_weight: float = 0.6
    rrf_k: int = 60

    def __post_init__(self):
        if self.lexical_weight < 0 or self.semantic_weight < 0:
            raise ConfigurationError("Ranking weights must be non-negative")
        if int(self.rrf_k) < 1:
            raise ConfigurationError("rrf_k must be >= 1")


class QueryComplexity(IntEnum):
    SIMPLE = 1
    MODERATE = 2
    COMPLEX = 3
    VERY_COMPLEX = 4


class QueryIntent(str, Enum):
    CODE_SEARCH = "code_search"
    API_SEARCH = "api_search"
    DOCUMENTATION_SEARCH = "documentation_search"
    BUG_REPORT_SEARCH = "bug_report_search"
    GENERAL_SEARCH = "general_search"


@dataclass(frozen=True)
class ParsedQuery:
    original: str
    normalized: str
    tokens: tuple[str, ...]
    language: str
    complexity: QueryComplexity


@dataclass(frozen=True)
class SearchHit:
    """One ranked result."""

    chunk_id: int
    score: float
    content: str
    metadata: Mapping[str, object]
    highlights: tuple[str, ...] = ()
    signals: Mapping[str, float] = field(default_factory=dict)

    @property
    def file_path(self) -> str:
        return str(self.metadata.get("file_path") or "")

    @property
    def language(self) -> str:
        return str(self.metadata.get("language") or "")

    def to_dict(self) -> dict[str, object]:
        return {
            "chunk_id": self.chunk_id,
            "score": self.score,
            "content": self.content,
            "metadata": dict(self.metadata),
            "highlights": list(self.highlights),
            "signals": dict(self.signals),
        }


@dataclass(frozen=True)
class LexicalHit:
    chunk_id: int
    file_path: str
    language: str
    repository_id: int | None
    score: float
    start_line: int = 0
    end_line: int = 0
    content: str = ""
    matched_terms: tuple[str, ...] = ()

    def to_search_hit(self) -> SearchHit:
        return SearchHit(
            chunk_id=self.chunk_id,
            score=self.score,
            content=self.content,
            metadata=make_metadata(
                chunk_id=self.chunk_id,
                file_path=self.file_path,
                language=self.language,
                repository_id=self.repository_id,
                start_line=self.start_line or None,
                end_line=self.end_line or None,
            ),
            highlights=self.matched_terms,
        )


@dataclass(frozen=True)
class VectorHit:
    chunk_id: int
    score: float
    file_path: str
    language: str
    repository_id: int | None
    content: str | None = None
    start_line: int | None = None
    end_line: int | None = None

    def to_search_hit(self) -> SearchHit:
        return SearchHit(
            chunk_id=self.chunk_id,
            score=self.score,
            content=self.content or "",
            metadata=make_metadata(
                chunk_id=self.chunk_id,
                file_path=self.file_path,
                language=self.language,
                repository_id=self.repository_id,
                start_line=self.start_line,
                end_line=self.end_line,
            ),
        )


@dataclass(frozen=True)
class FallbackTelemetry:
    """Per-stage reranking latency in milliseconds."""

    pmi_latency_ms: float = 0.0
    ngram_latency_ms: float = 0.0
    total_latency_ms: float = 0.0


@dataclass(frozen=True)
class FallbackResult:
    hits: list[SearchHit]
    telemetry: FallbackTelemetry = field(default_factory=FallbackTelemetry)


@dataclass
class IngestStats:
    chunks_indexed: int = 0
    errors: int = 0
    files_scanned: int = 0
    files_skipped: int = 0
    batches: int = 0
    duration_seconds: float = 0.0

    def as_dict(self) -> dict[str, object]:
        return asdict(self)


@dataclass(frozen=True)
class QueryRequest:
    query: str
    limit: int | None = None
    filters: SearchFilters | None = None
    ranking: RankingConfig | None = None
    timeout: float | None = None


@dataclass(frozen=True)
class QueryResponse:
    hits: list[SearchHit]
    total_found: int
    query_time_ms: float
    request_id: str
    intent: QueryIntent

    def to_dict(self) -> dict[str, object]:
        return {
            "hits": [hit.to_dict() for hit in self.hits],
            "total_found": self.total_found,
            "query_time_ms": self.query_time_ms,
            "request_id": self.request_id,
            "intent": self.intent.value,
        }
