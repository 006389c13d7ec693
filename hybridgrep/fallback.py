# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Fallback reranking: PMI term expansion, identifier overlap and character
n-gram similarity layered on top of a primary ranker's scores.

Corpus statistics are accumulated at ingestion time with
``FallbackArtifactsBuilder`` and frozen into an immutable
``FallbackArtifacts`` that any number of concurrent ``rerank`` calls share.
"""

from __future__ import annotations

import json
import logging
import math
import time
from collections import Counter, defaultdict
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, fields, replace
from pathlib import Path
from types import MappingProxyType
from typing import Any

from .analysis.tokens import highlight_terms, unique_terms
from .errors import IndexBackendError, IngestionError
from .models import Chunk, FallbackResult, FallbackTelemetry, SearchHit

logger = logging.getLogger(__name__)

PMI_FILE = "pmi_graph.json"
NGRAMS_FILE = "ngrams.json"
IDENTIFIERS_FILE = "identifiers.json"

# Upper bound on distinct terms per document fed into co-occurrence counts.
MAX_PMI_TERMS = 128


def _pmi_terms(text: str) -> list[str]:
    terms = [t for t in unique_terms(text) if len(t) >= 3 and not t.isdigit()]
    return terms[:MAX_PMI_TERMS]


def _pair(a: str, b: str) -> tuple[str, str]:
    return (a, b) if a <= b else (b, a)


class PmiGraph:
    """Read-only document co-occurrence graph.

    PMI(a, b) = ln(count(a, b) * N / (count(a) * count(b))) where counts are
    numbers of documents and N is the number of recorded documents.
    """

    __slots__ = ("_documents", "_marginals", "_pairs", "_neighbors")

    def __init__(
        self,
        documents: int = 0,
        marginals: Mapping[str, int] | None = None,
        pairs: Mapping[tuple[str, str], int] | None = None,
    ):
        self._documents = int(documents)
        self._marginals = MappingProxyType(dict(marginals or {}))
        self._pairs = MappingProxyType(dict(pairs or {}))
        neighbors: dict[str, list[tuple[str, int]]] = defaultdict(list)
        for (a, b), count in self._pairs.items():
            neighbors[a].append((b, count))
            neighbors[b].append((a, count))
        self._neighbors = MappingProxyType(
            {term: tuple(items) for term, items in neighbors.items()}
        )

    @property
    def documents(self) -> int:
        return self._documents

    @property
    def marginals(self) -> Mapping[str, int]:
        return self._marginals

    @property
    def pairs(self) -> Mapping[tuple[str, str], int]:
        return self._pairs

    def __len__(self) -> int:
        return len(self._pairs)

    def pmi(self, a: str, b: str) -> float | None:
        count = self._pairs.get(_pair(a, b), 0)
        ca = self._marginals.get(a, 0)
        cb = self._marginals.get(b, 0)
        if not count or not ca or not cb:
            return None
        return math.log(count * self._documents / (ca * cb))

    def expand(self, term: str, threshold: float, limit: int) -> list[tuple[str, float]]:
        """Neighbours of ``term`` with PMI above ``threshold``, strongest first."""
        term_count = self._marginals.get(term, 0)
        if not term_count or limit < 1:
            return []
        expansions: list[tuple[str, float]] = []
        for neighbor, count in self._neighbors.get(term, ()):
            neighbor_count = self._marginals.get(neighbor, 0)
            if not neighbor_count:
                continue
            value = math.log(count * self._documents / (term_count * neighbor_count))
            if value > threshold:
                expansions.append((neighbor, value))
        expansions.sort(key=lambda item: (-item[1], item[0]))
        return expansions[:limit]

    def to_snapshot(self) -> dict[str, Any]:
        return {
            "documents": self._documents,
            "marginals": dict(self._marginals),
            "edges": [
                {"term": a, "neighbor": b, "count": count}
                for (a, b), count in sorted(self._pairs.items())
            ],
        }

    @classmethod
    def from_snapshot(cls, snapshot: Mapping[str, Any]) -> "PmiGraph":
        pairs = {
            _pair(edge["term"], edge["neighbor"]): int(edge["count"])
            for edge in snapshot.get("edges", [])
        }
        return cls(
            documents=int(snapshot.get("documents", 0)),
            marginals={k: int(v) for k, v in snapshot.get("marginals", {}).items()},
            pairs=pairs,
        )


class PmiGraphBuilder:
    """Mutable accumulator used only on the ingestion path."""

    def __init__(self, graph: PmiGraph | None = None):
        self.documents = graph.documents if graph else 0
        self.marginals: Counter[str] = Counter(graph.marginals if graph else {})
        self.pairs: Counter[tuple[str, str]] = Counter(graph.pairs if graph else {})

    def update(self, tokens: Iterable[str]) -> None:
        """Record one document's tokens (duplicates within a document count once)."""
        distinct = sorted(set(tokens))
        self.documents += 1
        for i, a in enumerate(distinct):
            self.marginals[a] += 1
            for b in distinct[i + 1 :]:
                self.pairs[(a, b)] += 1

    def freeze(self) -> PmiGraph:
        return PmiGraph(self.documents, self.marginals, self.pairs)


def _l2_normalize(counts: Mapping[str, float]) -> dict[str, float]:
    norm = math.sqrt(sum(v * v for v in counts.values()))
    if norm == 0.0:
        return dict(counts)
    return {k: v / norm for k, v in counts.items()}


def _dot(a: Mapping[str, float], b: Mapping[str, float]) -> float:
    if len(b) < len(a):
        a, b = b, a
    return sum(v * b[k] for k, v in a.items() if k in b)


@dataclass(frozen=True)
class NGramVector:
    """L2-normalised character trigram and quadgram profile of a text."""

    trigrams: Mapping[str, float]
    quadgrams: Mapping[str, float]

    @classmethod
    def from_text(cls, text: str) -> "NGramVector":
        text = text.lower()
        trigrams = Counter(text[i : i + 3] for i in range(len(text) - 2))
        quadgrams = Counter(text[i : i + 4] for i in range(len(text) - 3))
        return cls(_l2_normalize(trigrams), _l2_normalize(quadgrams))

    def similarity(self, other: "NGramVector") -> float:
        """Sum of trigram and quadgram cosine similarities (0..2)."""
        return _dot(self.trigrams, other.trigrams) + _dot(self.quadgrams, other.quadgrams)

    def to_dict(self) -> dict[str, dict[str, float]]:
        return {"trigrams": dict(self.trigrams), "quadgrams": dict(self.quadgrams)}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "NGramVector":
        return cls(dict(data.get("trigrams", {})), dict(data.get("quadgrams", {})))


@dataclass(frozen=True)
class IdentifierProfile:
    tokens: frozenset[str] = frozenset()

    @classmethod
    def from_text(cls, text: str) -> "IdentifierProfile":
        return cls(frozenset(unique_terms(text)))

    def score_overlap(self, query_terms: Sequence[str]) -> float:
        """Fraction of distinct query terms present in this profile."""
        query = set(query_terms)
        if not query or not self.tokens:
            return 0.0
        return len(query & self.tokens) / len(query)


@dataclass(frozen=True)
class FallbackWeights:
    bm25: float = 1.0
    identifier: float = 0.5
    pmi: float = 0.35
    ngram: float = 0.3
    pmi_threshold: float = 0.5
    expansion_limit: int = 5

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> "FallbackWeights":
        """Build weights from a config mapping, ignoring unrelated keys."""
        if not data:
            return cls()
        values: dict[str, Any] = {}
        for f in fields(cls):
            if data.get(f.name) is not None:
                values[f.name] = int(data[f.name]) if f.name == "expansion_limit" else float(
                    data[f.name]
                )
        return cls(**values)


class FallbackArtifacts:
    """Immutable corpus statistics shared by concurrent rerank calls."""

    __slots__ = ("_pmi", "_ngrams", "_identifiers")

    def __init__(
        self,
        pmi: PmiGraph | None = None,
        ngrams: Mapping[int, NGramVector] | None = None,
        identifiers: Mapping[int, IdentifierProfile] | None = None,
    ):
        self._pmi = pmi or PmiGraph()
        self._ngrams = MappingProxyType(dict(ngrams or {}))
        self._identifiers = MappingProxyType(dict(identifiers or {}))

    @property
    def pmi(self) -> PmiGraph:
        return self._pmi

    def ngram(self, chunk_id: int) -> NGramVector | None:
        return self._ngrams.get(chunk_id)

    def identifier(self, chunk_id: int) -> IdentifierProfile | None:
        return self._identifiers.get(chunk_id)

    def __len__(self) -> int:
        return len(self._identifiers)

    def persist(self, directory: Path) -> None:
        """Write the artifacts as three JSON files under ``directory``."""
        directory = Path(directory)
        try:
            directory.mkdir(parents=True, exist_ok=True)
            with open(directory / PMI_FILE, "w", encoding="utf-8") as f:
                json.dump(self._pmi.to_snapshot(), f)
            with open(directory / NGRAMS_FILE, "w", encoding="utf-8") as f:
                json.dump(
                    [
                        {"chunk_id": cid, "vector": vec.to_dict()}
                        for cid, vec in self._ngrams.items()
                    ],
                    f,
                )
            with open(directory / IDENTIFIERS_FILE, "w", encoding="utf-8") as f:
                json.dump(
                    [
                        {"chunk_id": cid, "tokens": sorted(profile.tokens)}
                        for cid, profile in self._identifiers.items()
                    ],
                    f,
                )
        except OSError as exc:
            raise IngestionError(f"Failed to persist fallback artifacts to {directory}: {exc}") from exc
        logger.info(
            "Persisted fallback artifacts (%s chunks, %s PMI edges) to %s",
            len(self._identifiers),
            len(self._pmi),
            directory,
        )

    @classmethod
    def load(cls, directory: Path) -> "FallbackArtifacts":
        """Load artifacts written by ``persist``; missing files load as empty."""
        directory = Path(directory)

        def read(name: str, default: Any) -> Any:
            path = directory / name
            if not path.exists():
                return default
            try:
                with open(path, "r", encoding="utf-8") as f:
                    return json.load(f)
            except (OSError, ValueError) as exc:
                raise IndexBackendError(
                    str(exc), operation="load_fallback_artifacts", target=str(path)
                ) from exc

        try:
            pmi = PmiGraph.from_snapshot(read(PMI_FILE, {}))
            ngrams = {
                int(record["chunk_id"]): NGramVector.from_dict(record["vector"])
                for record in read(NGRAMS_FILE, [])
            }
            identifiers = {
                int(record["chunk_id"]): IdentifierProfile(frozenset(record["tokens"]))
                for record in read(IDENTIFIERS_FILE, [])
            }
        except (KeyError, TypeError, AttributeError) as exc:
            raise IndexBackendError(
                f"malformed artifacts: {exc}",
                operation="load_fallback_artifacts",
                target=str(directory),
            ) from exc
        return cls(pmi, ngrams, identifiers)


class FallbackArtifactsBuilder:
    """Collects per-chunk profiles and co-occurrence counts during ingestion."""

    def __init__(self, base: FallbackArtifacts | None = None):
        self._pmi = PmiGraphBuilder(base.pmi if base else None)
        self._ngrams: dict[int, NGramVector] = dict(base._ngrams) if base else {}
        self._identifiers: dict[int, IdentifierProfile] = dict(base._identifiers) if base else {}

    def record_chunk(self, chunk: Chunk) -> None:
        self._pmi.update(_pmi_terms(chunk.content))
        self._ngrams[chunk.chunk_id] = NGramVector.from_text(chunk.content)
        self._identifiers[chunk.chunk_id] = IdentifierProfile.from_text(chunk.content)

    def __len__(self) -> int:
        return len(self._identifiers)

    def build(self) -> FallbackArtifacts:
        return FallbackArtifacts(self._pmi.freeze(), self._ngrams, self._identifiers)


class FallbackEngine:
    """Deterministic reranker; safe to call concurrently."""

    def __init__(
        self,
        artifacts: FallbackArtifacts | None = None,
        weights: FallbackWeights | None = None,
    ):
        self.artifacts = artifacts or FallbackArtifacts()
        self.weights = weights or FallbackWeights()

    def expand_terms(self, query_terms: Sequence[str]) -> list[tuple[str, float]]:
        """PMI expansions of the query terms, excluding the terms themselves."""
        seen = set(query_terms)
        expanded: list[tuple[str, float]] = []
        for term in query_terms:
            for neighbor, value in self.artifacts.pmi.expand(
                term, self.weights.pmi_threshold, self.weights.expansion_limit
            ):
                if neighbor not in seen:
                    expanded.append((neighbor, value))
        return expanded

    @staticmethod
    def score_pmi(profile: IdentifierProfile, expansions: Sequence[tuple[str, float]]) -> float:
        if not expansions:
            return 0.0
        total = sum(value for term, value in expansions if term in profile.tokens)
        return total / len(expansions)

    def rerank(self, query_text: str, hits: Sequence[SearchHit], limit: int) -> FallbackResult:
        if not hits:
            return FallbackResult(hits=[], telemetry=FallbackTelemetry())

        overall_start = time.perf_counter()
        query_terms = unique_terms(query_text)

        pmi_start = time.perf_counter()
        expansions = self.expand_terms(query_terms)
        pmi_latency_ms = (time.perf_counter() - pmi_start) * 1000.0

        ngram_start = time.perf_counter()
        query_ngrams = NGramVector.from_text(query_text)
        best: dict[int, SearchHit] = {}
        for hit in hits:
            profile = self.artifacts.identifier(hit.chunk_id)
            if profile is None:
                profile = IdentifierProfile.from_text(hit.content)
            chunk_ngrams = self.artifacts.ngram(hit.chunk_id)
            if chunk_ngrams is None and hit.content:
                chunk_ngrams = NGramVector.from_text(hit.content)

            identifier_score = profile.score_overlap(query_terms)
            pmi_score = self.score_pmi(profile, expansions)
            ngram_score = chunk_ngrams.similarity(query_ngrams) if chunk_ngrams else 0.0
            total = (
                self.weights.bm25 * hit.score
                + self.weights.identifier * identifier_score
                + self.weights.pmi * pmi_score
                + self.weights.ngram * ngram_score
            )
            rescored = replace(
                hit,
                score=total,
                highlights=hit.highlights or highlight_terms(hit.content, query_terms),
                signals={
                    "base": hit.score,
                    "identifier": identifier_score,
                    "pmi": pmi_score,
                    "ngram": ngram_score,
                },
            )
            current = best.get(hit.chunk_id)
            if current is None or rescored.score > current.score:
                best[hit.chunk_id] = rescored
        ngram_latency_ms = (time.perf_counter() - ngram_start) * 1000.0

        ranked = sorted(best.values(), key=lambda h: (-h.score, h.file_path, h.chunk_id))
        ranked = ranked[: max(0, limit)]
        total_latency_ms = (time.perf_counter() - overall_start) * 1000.0
        telemetry = FallbackTelemetry(
            pmi_latency_ms=pmi_latency_ms,
            ngram_latency_ms=ngram_latency_ms,
            total_latency_ms=max(total_latency_ms, pmi_latency_ms, ngram_latency_ms),
        )
        logger.debug(
            "Reranked %s hits (%s expansions): pmi=%.3fms ngram=%.3fms total=%.3fms",
            len(hits),
            len(expansions),
            telemetry.pmi_latency_ms,
            telemetry.ngram_latency_ms,
            telemetry.total_latency_ms,
        )
        return FallbackResult(hits=ranked, telemetry=telemetry)
