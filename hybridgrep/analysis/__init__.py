"""Pure analysis helpers for chunking, tokenization and language classification."""

from .chunking import (TextSpan, chunk_text, count_tokens, split_for_language,
                       split_paragraphs, split_python)
from .languages import classify_path, detect_language
from .producer import (ChunkProducer, RepositorySource, content_checksum,
                       make_chunk_id)
from .tokens import highlight_terms, index_terms, split_identifier, unique_terms

__all__ = [
    "ChunkProducer",
    "RepositorySource",
    "TextSpan",
    "chunk_text",
    "classify_path",
    "content_checksum",
    "count_tokens",
    "detect_language",
    "highlight_terms",
    "index_terms",
    "make_chunk_id",
    "split_for_language",
    "split_identifier",
    "split_paragraphs",
    "split_python",
    "unique_terms",
]
