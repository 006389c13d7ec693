# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Query entrypoint.

``SearchService.query`` parses and classifies the query, runs the lexical
path (BM25 + fallback rerank) and the hybrid semantic path concurrently,
and fuses both rankings with weighted Reciprocal Rank Fusion.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Sequence
from dataclasses import replace

from .errors import ConfigurationError, QueryTimeoutError
from .fallback import FallbackEngine
from .hybrid import HybridQueryEngine
from .models import (ParsedQuery, QueryComplexity, QueryIntent, QueryRequest,
                     QueryResponse, RankingConfig, SearchFilters, SearchHit)
from .nlq import IntentClassifier, QueryParser
from .storage.lexical import IndexHandle

logger = logging.getLogger(__name__)

_LEXICAL_INTENTS = {
    QueryIntent.CODE_SEARCH,
    QueryIntent.API_SEARCH,
    QueryIntent.BUG_REPORT_SEARCH,
}
_INTENT_BOOST = 1.5


def intent_ranking(
    base: RankingConfig, intent: QueryIntent, parsed: ParsedQuery
) -> RankingConfig:
    """Tune fusion weights for the query's intent and complexity."""
    lexical, semantic = base.lexical_weight, base.semantic_weight
    if intent in _LEXICAL_INTENTS:
        lexical *= _INTENT_BOOST
    elif intent is QueryIntent.DOCUMENTATION_SEARCH:
        semantic *= _INTENT_BOOST
    if parsed.complexity >= QueryComplexity.COMPLEX:
        semantic *= _INTENT_BOOST
    return RankingConfig(lexical_weight=lexical, semantic_weight=semantic, rrf_k=base.rrf_k)


def reciprocal_rank_fusion(
    rankings: Sequence[tuple[Sequence[SearchHit], float]], rrf_k: int
) -> list[SearchHit]:
    """Fuse ranked lists: each hit scores ``sum(weight / (rrf_k + rank))``.

    Ranks are 1-based. A chunk present in several lists keeps the
    representative with the most content and the union of highlights.
    """
    scores: dict[int, float] = {}
    representatives: dict[int, SearchHit] = {}
    for hits, weight in rankings:
        if weight <= 0:
            continue
        seen: set[int] = set()
        for rank, hit in enumerate(hits, start=1):
            if hit.chunk_id in seen:
                continue
            seen.add(hit.chunk_id)
            scores[hit.chunk_id] = scores.get(hit.chunk_id, 0.0) + weight / (rrf_k + rank)
            current = representatives.get(hit.chunk_id)
            if current is None:
                representatives[hit.chunk_id] = hit
            else:
                highlights = tuple(dict.fromkeys(current.highlights + hit.highlights))
                keep = current if len(current.content) >= len(hit.content) else hit
                representatives[hit.chunk_id] = replace(keep, highlights=highlights)

    fused = [replace(representatives[cid], score=score) for cid, score in scores.items()]
    fused.sort(key=lambda h: (-h.score, h.file_path, h.chunk_id))
    return fused


class SearchService:
    def __init__(
        self,
        parser: QueryParser,
        classifier: IntentClassifier,
        fallback: FallbackEngine,
        hybrid_engine: HybridQueryEngine | None = None,
        lexical_handle: IndexHandle | None = None,
        ranking: RankingConfig | None = None,
        default_limit: int = 20,
        default_timeout: float | None = 10.0,
    ):
        if hybrid_engine is None and lexical_handle is None:
            raise ConfigurationError("SearchService needs a lexical index or a hybrid engine")
        self.parser = parser
        self.classifier = classifier
        self.fallback = fallback
        self.hybrid_engine = hybrid_engine
        self.lexical_handle = lexical_handle
        self.ranking = ranking or RankingConfig()
        self.default_limit = default_limit
        self.default_timeout = default_timeout

    def set_lexical_handle(self, handle: IndexHandle | None) -> None:
        """Swap in a newer snapshot; in-flight queries keep the old one."""
        self.lexical_handle = handle

    async def _lexical(
        self, text: str, limit: int, filters: SearchFilters | None
    ) -> list[SearchHit]:
        handle = self.lexical_handle
        if handle is None:
            return []
        lexical_hits = await asyncio.to_thread(handle.search, text, limit, filters)
        hits = [hit.to_search_hit() for hit in lexical_hits]
        return self.fallback.rerank(text, hits, limit).hits

    async def _semantic(
        self, text: str, limit: int, filters: SearchFilters | None
    ) -> list[SearchHit]:
        if self.hybrid_engine is None:
            return []
        result = await self.hybrid_engine.search(text, limit, filters)
        return result.hits

    async def _run(
        self, request: QueryRequest, request_id: str, started: float
    ) -> QueryResponse:
        parsed = self.parser.parse(request.query)
        self.parser.validate(parsed)
        intent = self.classifier.classify(parsed)

        limit = request.limit if request.limit is not None else self.default_limit
        if limit < 1:
            limit = self.default_limit
        ranking = intent_ranking(request.ranking or self.ranking, intent, parsed)
        # Over-fetch so fusion has candidates beyond each ranker's top ``limit``.
        candidates = limit * 2

        lexical_hits, semantic_hits = await asyncio.gather(
            self._lexical(parsed.normalized, candidates, request.filters),
            self._semantic(parsed.normalized, candidates, request.filters),
        )
        fused = reciprocal_rank_fusion(
            [
                (lexical_hits, ranking.lexical_weight),
                (semantic_hits, ranking.semantic_weight),
            ],
            ranking.rrf_k,
        )
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        return QueryResponse(
            hits=fused[:limit],
            total_found=len(fused),
            query_time_ms=elapsed_ms,
            request_id=request_id,
            intent=intent,
        )

    async def query(self, request: QueryRequest) -> QueryResponse:
        request_id = str(uuid.uuid4())
        started = time.perf_counter()
        timeout = request.timeout if request.timeout is not None else self.default_timeout
        try:
            if timeout is None:
                response = await self._run(request, request_id, started)
            else:
                response = await asyncio.wait_for(
                    self._run(request, request_id, started), timeout
                )
        except asyncio.TimeoutError as exc:
            logger.warning("Query %s timed out after %.3fs", request_id, timeout)
            raise QueryTimeoutError(timeout) from exc
        logger.info(
            "Query %s intent=%s hits=%s total=%s took %.1fms",
            request_id,
            response.intent.value,
            len(response.hits),
            response.total_found,
            response.query_time_ms,
        )
        return response
