# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Repository walking and chunk production.

``ChunkProducer.produce`` is a one-pass generator: it reads files lazily,
yields chunks in file order and records per-file failures in its counters
instead of raising.
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Iterable, Iterator
from pathlib import Path

from ..models import Chunk
from .chunking import count_tokens, split_for_language
from .languages import detect_language

logger = logging.getLogger(__name__)

_BINARY_SNIFF_BYTES = 8192
_CHUNK_ID_MASK = (1 << 63) - 1


def make_chunk_id(
    repository_id: int | None, file_path: str, start_line: int, end_line: int
) -> int:
    """Stable 63-bit id for a chunk location."""
    key = f"{repository_id if repository_id is not None else ''}:{file_path}:{start_line}:{end_line}"
    digest = hashlib.blake2b(key.encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big") & _CHUNK_ID_MASK


def content_checksum(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


class RepositorySource:
    """Read-only view of a repository root with file-walk capability."""

    def __init__(
        self,
        root: Path,
        repository_id: int | None = None,
        *,
        ignore_dirs: Iterable[str] = (),
        ignore_extensions: Iterable[str] = (),
        max_file_bytes: int | None = None,
    ):
        self.root = Path(root)
        self.repository_id = repository_id
        self.ignore_dirs = set(ignore_dirs)
        self.ignore_extensions = {e.lower() for e in ignore_extensions}
        self.max_file_bytes = max_file_bytes

    @classmethod
    def from_config(cls, root: Path, repository_id: int | None, config) -> "RepositorySource":
        return cls(
            root,
            repository_id,
            ignore_dirs=config.ignore_dirs,
            ignore_extensions=config.ignore_extensions,
            max_file_bytes=config.max_file_bytes,
        )

    def relative_path(self, path: Path) -> str:
        return path.relative_to(self.root).as_posix()

    def should_skip(self, path: Path) -> bool:
        """Return True for files that are not indexable (never counted as errors)."""
        rel_parts = path.relative_to(self.root).parts
        if any(part in self.ignore_dirs for part in rel_parts[:-1]):
            return True
        if path.suffix.lower() in self.ignore_extensions:
            return True
        if self.max_file_bytes is not None:
            try:
                if path.stat().st_size > self.max_file_bytes:
                    return True
            except OSError:
                return False
        return False

    def iter_files(self) -> Iterator[Path]:
        """Yield indexable files under the root in sorted order."""
        if not self.root.is_dir():
            logger.warning("Repository root %s is not a directory", self.root)
            return
        for path in sorted(self.root.rglob("*")):
            if path.is_file():
                yield path


class ChunkProducer:
    """Deterministically split a repository's files into chunks."""

    def __init__(
        self,
        max_lines: int = 80,
        overlap: int = 20,
        tokenizer_model: str | None = None,
    ):
        self.max_lines = max_lines
        self.overlap = overlap
        self.tokenizer_model = tokenizer_model
        self.files_scanned = 0
        self.files_skipped = 0
        self.errors = 0

    @classmethod
    def from_config(cls, config) -> "ChunkProducer":
        return cls(
            max_lines=config.chunk_max_lines,
            overlap=config.chunk_overlap,
            tokenizer_model=config.tokenizer_model,
        )

    def produce(self, source: RepositorySource) -> Iterator[Chunk]:
        for path in source.iter_files():
            self.files_scanned += 1
            if source.should_skip(path):
                self.files_skipped += 1
                continue
            rel_path = source.relative_path(path)
            try:
                raw = path.read_bytes()
            except OSError as exc:
                self.errors += 1
                logger.warning("Failed to read %s: %s", rel_path, exc)
                continue
            if b"\x00" in raw[:_BINARY_SNIFF_BYTES]:
                self.files_skipped += 1
                continue
            try:
                text = raw.decode("utf-8")
            except UnicodeDecodeError as exc:
                self.errors += 1
                logger.warning("Failed to decode %s as UTF-8: %s", rel_path, exc)
                continue

            language = detect_language(rel_path, text[:2048])
            try:
                spans = split_for_language(text, language, self.max_lines, self.overlap)
            except (SyntaxError, ValueError) as exc:
                self.errors += 1
                logger.warning("Failed to parse %s (%s): %s", rel_path, language, exc)
                continue

            for span in spans:
                yield Chunk(
                    chunk_id=make_chunk_id(
                        source.repository_id, rel_path, span.start_line, span.end_line
                    ),
                    repository_id=source.repository_id,
                    file_path=rel_path,
                    language=language,
                    start_line=span.start_line,
                    end_line=span.end_line,
                    token_count=count_tokens(span.text, self.tokenizer_model),
                    checksum=content_checksum(span.text),
                    content=span.text,
                )
