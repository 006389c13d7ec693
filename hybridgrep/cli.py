# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Command line entrypoint.

    hybridgrep index <path> [--repo-id N] [--batch-size N] [--vectors]
    hybridgrep search <query> [--limit N] [--language L] [--path-pattern P] [--repo-id N]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Optional

from .analysis.producer import ChunkProducer, RepositorySource
from .config import Config, load_config
from .embeddings import create_embedding_provider
from .errors import HybridGrepError
from .fallback import FallbackArtifacts, FallbackEngine, FallbackWeights
from .hybrid import HybridQueryEngine
from .ingest import (build_fallback_artifacts, commit, index_vectors,
                     ingest_repository)
from .models import QueryRequest, SearchFilters
from .nlq import IntentClassifier, QueryParser
from .service import SearchService
from .storage.lexical import LexicalIndex
from .storage.vector import LanceVectorBackend, VectorIndex

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


def _load_artifacts(config: Config) -> FallbackArtifacts:
    directory = config.fallback_artifacts_dir
    if directory.exists():
        return FallbackArtifacts.load(directory)
    return FallbackArtifacts()


def _vector_index(config: Config, dimension: int) -> VectorIndex:
    return VectorIndex(config.lance_dir, dimension, config.embeddings_table)


def cmd_index(args: argparse.Namespace, config: Config) -> dict:
    source = RepositorySource.from_config(Path(args.path).resolve(), args.repo_id, config)
    producer = ChunkProducer.from_config(config)
    on_batch = None
    vectors_written = 0
    if args.vectors:
        provider = create_embedding_provider(config)
        vector_index = _vector_index(config, provider.dimension())

        def on_batch(chunks):
            nonlocal vectors_written
            vectors_written += index_vectors(
                chunks, provider.embed_fn, vector_index, batch_size=len(chunks)
            )

    index = LexicalIndex.create(config.lexical_dir)
    with index.open_writer() as writer:
        stats = ingest_repository(
            source,
            writer,
            batch_size=args.batch_size or config.batch_size,
            progress_interval=config.progress_interval,
            producer=producer,
            on_batch=on_batch,
        )
        handle = commit(writer)
    try:
        doc_count = handle.doc_count
        generation = handle.generation
        build_fallback_artifacts(handle).persist(config.fallback_artifacts_dir)
    finally:
        handle.close()

    result = stats.as_dict()
    result.update(
        {"generation": generation, "documents": doc_count, "vectors_indexed": vectors_written}
    )
    return result


def build_service(config: Config) -> SearchService:
    fallback = FallbackEngine(
        _load_artifacts(config), FallbackWeights.from_mapping(config.fallback_settings)
    )
    handle = LexicalIndex.open(config.lexical_dir).open_handle()
    hybrid = None
    if config.embeddings_enabled:
        provider = create_embedding_provider(config)
        backend = LanceVectorBackend(_vector_index(config, provider.dimension()))
        hybrid = HybridQueryEngine(provider, backend, fallback)
    return SearchService(
        parser=QueryParser(config.nlq_max_length),
        classifier=IntentClassifier(),
        fallback=fallback,
        hybrid_engine=hybrid,
        lexical_handle=handle,
        ranking=config.ranking_config,
        default_limit=config.default_limit,
        default_timeout=config.query_timeout,
    )


def cmd_search(args: argparse.Namespace, config: Config) -> dict:
    service = build_service(config)
    filters = SearchFilters(
        repository_id=args.repo_id,
        language=args.language,
        file_path_pattern=args.path_pattern,
    )
    request = QueryRequest(
        query=args.query,
        limit=args.limit,
        filters=None if filters.is_empty() else filters,
    )
    try:
        response = asyncio.run(service.query(request))
    finally:
        if service.lexical_handle is not None:
            service.lexical_handle.close()
    return response.to_dict()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="hybridgrep", description="Hybrid code search")
    parser.add_argument("--config", type=Path, default=None, help="Path to JSON config")
    sub = parser.add_subparsers(dest="command", required=True)

    p_index = sub.add_parser("index", help="Ingest a repository into the index")
    p_index.add_argument("path")
    p_index.add_argument("--repo-id", type=int, default=None)
    p_index.add_argument("--batch-size", type=int, default=None)
    p_index.add_argument("--vectors", action="store_true", help="Also embed chunks into LanceDB")
    p_index.set_defaults(func=cmd_index)

    p_search = sub.add_parser("search", help="Query the index")
    p_search.add_argument("query")
    p_search.add_argument("--limit", type=int, default=None)
    p_search.add_argument("--language", default=None)
    p_search.add_argument("--path-pattern", default=None)
    p_search.add_argument("--repo-id", type=int, default=None)
    p_search.set_defaults(func=cmd_search)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    config = load_config(args.config)
    setup_logging(config.log_level, config.log_file)
    try:
        result = args.func(args, config)
    except HybridGrepError as exc:
        logger.error("%s failed: %s", args.command, exc)
        print(json.dumps({"error": str(exc), "category": exc.category}), file=sys.stderr)
        return 2 if exc.category == "validation" else 1
    print(json.dumps(result, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
