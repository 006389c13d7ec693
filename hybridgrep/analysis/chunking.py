# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""Stateless text splitting and token counting utilities."""

from __future__ import annotations

import ast
import logging
from functools import lru_cache
from typing import Any, NamedTuple

import tiktoken

logger = logging.getLogger(__name__)

_DEFINITION_NODES = (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)


class TextSpan(NamedTuple):
    """A 1-based inclusive line range and its text."""

    start_line: int
    end_line: int
    text: str


@lru_cache(maxsize=8)
def _encoding_for(model: str) -> Any:
    try:
        return tiktoken.encoding_for_model(model)
    except KeyError:
        return tiktoken.get_encoding("cl100k_base")


def count_tokens(s: str, model: str | None = None) -> int:
    """Count tokens with tiktoken when a model is configured, else whitespace words."""
    if model:
        try:
            return len(_encoding_for(model).encode(s))
        except Exception:
            # Encoding files may be unavailable offline.
            logger.debug("tiktoken unavailable for model %s", model, exc_info=True)
    return max(1, len(s.split()))


def _window(
    lines: list[str], start: int, end: int, max_lines: int, overlap: int
) -> list[TextSpan]:
    """Split lines ``start..end`` (1-based, inclusive) into overlapping windows."""
    spans: list[TextSpan] = []
    step = max(1, max_lines - max(0, overlap))
    i = start
    while i <= end:
        stop = min(i + max_lines - 1, end)
        text = "\n".join(lines[i - 1 : stop])
        if text.strip():
            spans.append(TextSpan(i, stop, text))
        if stop >= end:
            break
        i += step
    return spans


def chunk_text(text: str, max_lines: int = 80, overlap: int = 20) -> list[TextSpan]:
    """Split text into overlapping fixed-size line windows."""
    lines = text.splitlines()
    if not lines:
        return []
    return _window(lines, 1, len(lines), max(1, max_lines), overlap)


def split_python(text: str, max_lines: int = 80, overlap: int = 20) -> list[TextSpan]:
    """Split Python source into one span per top-level function or class.

    Module-level code between definitions becomes its own span. Definitions
    longer than ``max_lines`` are window-split. Raises ``SyntaxError`` when
    the source does not parse.
    """
    tree = ast.parse(text)
    lines = text.splitlines()
    max_lines = max(1, max_lines)
    spans: list[TextSpan] = []
    cursor = 1

    for node in tree.body:
        if not isinstance(node, _DEFINITION_NODES):
            continue
        start = min([node.lineno] + [d.lineno for d in node.decorator_list])
        end = node.end_lineno or node.lineno
        if start > cursor:
            spans.extend(_window(lines, cursor, start - 1, max_lines, overlap))
        if end - start + 1 <= max_lines:
            spans.append(TextSpan(start, end, "\n".join(lines[start - 1 : end])))
        else:
            spans.extend(_window(lines, start, end, max_lines, overlap))
        cursor = end + 1

    if cursor <= len(lines):
        spans.extend(_window(lines, cursor, len(lines), max_lines, overlap))
    return spans


def split_paragraphs(text: str, max_lines: int = 80, overlap: int = 20) -> list[TextSpan]:
    """Split prose into blank-line separated paragraphs merged up to ``max_lines``.

    A Markdown heading always starts a new span.
    """
    lines = text.splitlines()
    max_lines = max(1, max_lines)
    blocks: list[tuple[int, int]] = []
    block_start: int | None = None
    for idx, line in enumerate(lines, start=1):
        if not line.strip():
            if block_start is not None:
                blocks.append((block_start, idx - 1))
                block_start = None
            continue
        if line.lstrip().startswith("#") and block_start is not None:
            blocks.append((block_start, idx - 1))
            block_start = None
        if block_start is None:
            block_start = idx
    if block_start is not None:
        blocks.append((block_start, len(lines)))

    spans: list[TextSpan] = []
    group: tuple[int, int] | None = None

    def flush(rng: tuple[int, int]) -> None:
        start, end = rng
        if end - start + 1 <= max_lines:
            spans.append(TextSpan(start, end, "\n".join(lines[start - 1 : end])))
        else:
            spans.extend(_window(lines, start, end, max_lines, overlap))

    for start, end in blocks:
        is_heading = lines[start - 1].lstrip().startswith("#")
        if group is None:
            group = (start, end)
        elif not is_heading and end - group[0] + 1 <= max_lines:
            group = (group[0], end)
        else:
            flush(group)
            group = (start, end)
    if group is not None:
        flush(group)
    return spans


def split_for_language(
    text: str, language: str, max_lines: int = 80, overlap: int = 20
) -> list[TextSpan]:
    """Pick the splitting strategy for ``language``."""
    if language == "python":
        return split_python(text, max_lines, overlap)
    if language in {"markdown", "restructuredtext", "text"}:
        return split_paragraphs(text, max_lines, overlap)
    return chunk_text(text, max_lines, overlap)
