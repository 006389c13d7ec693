# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""Term normalisation shared by lexical ingestion, lexical queries and reranking."""

from __future__ import annotations

import re
from collections.abc import Iterable

WORD_PATTERN = re.compile(r"\w+")
_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")


def split_identifier(word: str) -> list[str]:
    """Split ``snake_case`` and ``camelCase`` identifiers into their parts."""
    parts: list[str] = []
    for piece in word.split("_"):
        if piece:
            parts.extend(p for p in _CAMEL_BOUNDARY.split(piece) if p)
    return parts


def index_terms(text: str) -> list[str]:
    """Lowercased terms for ``text``: each word plus its identifier parts.

    ``parseHttpRequest`` yields ``parsehttprequest``, ``parse``, ``http`` and
    ``request`` so both the whole identifier and its parts are searchable.
    """
    terms: list[str] = []
    for match in WORD_PATTERN.finditer(text):
        word = match.group(0)
        terms.append(word.lower())
        parts = split_identifier(word)
        if len(parts) > 1:
            terms.extend(p.lower() for p in parts)
    return terms


def unique_terms(text: str) -> list[str]:
    """Distinct terms of ``text`` in first-seen order."""
    return list(dict.fromkeys(index_terms(text)))


def highlight_terms(content: str, terms: Iterable[str]) -> tuple[str, ...]:
    """Return the query terms that occur in ``content``, in query order."""
    present = set(index_terms(content))
    return tuple(t for t in dict.fromkeys(terms) if t in present)
