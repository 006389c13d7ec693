# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Segmented BM25 inverted index backed by rocksdict.

Layout under the index directory:

    meta.json              committed manifest (replaced atomically on commit)
    writer.lock            present while an IndexWriter is open
    segments/<name>/       one immutable RocksDB store per flushed batch

Each segment holds ``t:<term>`` postings (``[[chunk_id, tf], ...]``) and
``d:<chunk_id>`` document records, zlib-compressed JSON. Segments are never
modified after the writer closes them, so an ``IndexHandle`` built from a
manifest keeps serving that manifest's view after later commits.

A file re-ingested (or deleted) in a later commit masks its chunks in all
segments from earlier generations. Files are identified by
``(repository_id, file_path)`` so repositories sharing relative paths never
mask each other.

If a writer process dies without closing, ``writer.lock`` is left behind;
the next ``open_writer`` removes it when the recorded pid is no longer
running on this host.
"""

from __future__ import annotations

import json
import logging
import math
import os
import shutil
import uuid
import zlib
from collections import Counter, defaultdict
from collections.abc import Iterator, Sequence
from datetime import datetime
from pathlib import Path
from typing import Any

from rocksdict import AccessType, Rdict

from ..analysis.tokens import index_terms, unique_terms
from ..errors import IndexBackendError, IndexLockedError, IngestionError
from ..models import Chunk, LexicalHit, SearchFilters

logger = logging.getLogger(__name__)

FORMAT_VERSION = 2
MANIFEST_NAME = "meta.json"
LOCK_NAME = "writer.lock"
SEGMENTS_DIR = "segments"

BM25_K1 = 1.2
BM25_B = 0.75

_TERM_PREFIX = "t:"
_DOC_PREFIX = "d:"


def _encode(obj: Any) -> bytes:
    return zlib.compress(
        json.dumps(obj, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    )


def _decode(blob: bytes) -> Any:
    return json.loads(zlib.decompress(blob).decode("utf-8"))


def _empty_manifest() -> dict[str, Any]:
    return {"format": FORMAT_VERSION, "generation": 0, "segments": []}


def file_key(repository_id: int | None, file_path: str) -> str:
    """Manifest key for one file of one repository (``"<repo>:<path>"``)."""
    return f"{'' if repository_id is None else int(repository_id)}:{file_path}"


def _doc_key(doc: dict[str, Any]) -> str:
    return file_key(doc.get("repository_id"), doc["file_path"])


def _write_segment(seg_dir: Path, chunks: Sequence[Chunk]) -> dict[str, Any]:
    """Write one immutable segment and return its manifest entry (sans name)."""
    unique: dict[int, Chunk] = {}
    for chunk in chunks:
        unique[chunk.chunk_id] = chunk

    postings: dict[str, dict[int, int]] = defaultdict(dict)
    files: dict[str, dict[str, int]] = {}
    total_length = 0

    seg_dir.parent.mkdir(parents=True, exist_ok=True)
    db = Rdict(str(seg_dir))
    try:
        for chunk in unique.values():
            counts = Counter(index_terms(chunk.content))
            length = sum(counts.values())
            total_length += length
            db[f"{_DOC_PREFIX}{chunk.chunk_id}".encode()] = _encode(
                {
                    "chunk_id": chunk.chunk_id,
                    "repository_id": chunk.repository_id,
                    "file_path": chunk.file_path,
                    "language": chunk.language,
                    "start_line": chunk.start_line,
                    "end_line": chunk.end_line,
                    "token_count": chunk.token_count,
                    "checksum": chunk.checksum,
                    "content": chunk.content,
                    "length": length,
                }
            )
            for term, tf in counts.items():
                postings[term][chunk.chunk_id] = tf
            entry = files.setdefault(
                file_key(chunk.repository_id, chunk.file_path), {"docs": 0, "length": 0}
            )
            entry["docs"] += 1
            entry["length"] += length

        for term, plist in postings.items():
            db[f"{_TERM_PREFIX}{term}".encode()] = _encode(
                [[cid, tf] for cid, tf in plist.items()]
            )
        db.flush()
    finally:
        db.close()

    return {
        "doc_count": len(unique),
        "total_length": total_length,
        "files": files,
        "retired": [],
    }


def _lock_owner(lock_path: Path) -> int | None:
    """Pid recorded in a writer lock, or None if it cannot be read yet."""
    try:
        return int(lock_path.read_text(encoding="utf-8").strip())
    except (OSError, ValueError):
        return None


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _masked_files(entry: dict[str, Any], segments: Sequence[dict[str, Any]]) -> frozenset[str]:
    """File keys superseded for ``entry`` by segments of a later generation."""
    masked: set[str] = set()
    generation = entry["generation"]
    for other in segments:
        if other["generation"] > generation:
            masked.update(other.get("files", {}))
            masked.update(other.get("retired", []))
    return frozenset(masked)


class LexicalIndex:
    """Entry point for opening writers and read handles on one index directory."""

    def __init__(self, path: Path):
        self.path = Path(path)

    @property
    def manifest_path(self) -> Path:
        return self.path / MANIFEST_NAME

    @property
    def segments_dir(self) -> Path:
        return self.path / SEGMENTS_DIR

    @classmethod
    def create(cls, path: Path) -> "LexicalIndex":
        """Open the index at ``path``, creating an empty one if needed."""
        index = cls(path)
        try:
            index.segments_dir.mkdir(parents=True, exist_ok=True)
            if not index.manifest_path.exists():
                index._write_manifest(_empty_manifest())
        except OSError as exc:
            raise IndexBackendError(
                str(exc), operation="create_index", target=str(path)
            ) from exc
        return index

    @classmethod
    def open(cls, path: Path) -> "LexicalIndex":
        """Open an existing index; missing or corrupt indexes raise IndexBackendError."""
        index = cls(path)
        index.read_manifest()
        return index

    def read_manifest(self) -> dict[str, Any]:
        try:
            with open(self.manifest_path, "r", encoding="utf-8") as f:
                manifest = json.load(f)
        except FileNotFoundError as exc:
            raise IndexBackendError(
                "index not found", operation="open_index", target=str(self.path)
            ) from exc
        except (OSError, ValueError) as exc:
            raise IndexBackendError(
                f"unreadable manifest: {exc}", operation="open_index", target=str(self.path)
            ) from exc
        if not isinstance(manifest, dict) or manifest.get("format") != FORMAT_VERSION:
            raise IndexBackendError(
                "unsupported or corrupt manifest", operation="open_index", target=str(self.path)
            )
        return manifest

    def _write_manifest(self, manifest: dict[str, Any]) -> None:
        tmp_path = self.manifest_path.with_suffix(".json.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(manifest, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.manifest_path)

    def open_writer(self) -> "IndexWriter":
        self.read_manifest()
        return IndexWriter(self)

    def open_handle(self) -> "IndexHandle":
        return IndexHandle(self.path, self.read_manifest())


class IndexWriter:
    """Exclusive writer; ``commit`` is the only way to publish new data."""

    def __init__(self, index: LexicalIndex):
        self._index = index
        self._lock_path = index.path / LOCK_NAME
        try:
            fd = self._acquire_lock()
        except FileExistsError as exc:
            raise IndexLockedError(
                "another writer holds the index", operation="open_writer", target=str(index.path)
            ) from exc
        except OSError as exc:
            raise IndexBackendError(
                str(exc), operation="open_writer", target=str(index.path)
            ) from exc
        with os.fdopen(fd, "w") as f:
            f.write(str(os.getpid()))
        self._staged: list[dict[str, Any]] = []
        self._retired: set[str] = set()
        self._closed = False

    def _acquire_lock(self) -> int:
        flags = os.O_CREAT | os.O_EXCL | os.O_WRONLY
        try:
            return os.open(self._lock_path, flags)
        except FileExistsError:
            pid = _lock_owner(self._lock_path)
            if pid is None or _pid_alive(pid):
                raise
        logger.warning(
            "Removing stale writer lock %s left by exited process %s", self._lock_path, pid
        )
        try:
            self._lock_path.unlink()
        except FileNotFoundError:
            pass
        return os.open(self._lock_path, flags)

    @property
    def index(self) -> LexicalIndex:
        return self._index

    @property
    def pending_segments(self) -> int:
        return len(self._staged)

    def _ensure_open(self) -> None:
        if self._closed:
            raise IngestionError("Index writer is closed")

    def add_chunks(self, chunks: Sequence[Chunk]) -> int:
        """Flush ``chunks`` into a new staged segment; returns the number written."""
        self._ensure_open()
        if not chunks:
            return 0
        name = f"seg-{uuid.uuid4().hex[:16]}"
        seg_dir = self._index.segments_dir / name
        try:
            entry = _write_segment(seg_dir, chunks)
        except Exception as exc:
            shutil.rmtree(seg_dir, ignore_errors=True)
            raise IngestionError(f"Failed to write segment {name}: {exc}") from exc
        entry["name"] = name
        self._staged.append(entry)
        logger.debug("Staged segment %s with %s chunks", name, entry["doc_count"])
        return entry["doc_count"]

    def delete_file(self, file_path: str, repository_id: int | None = None) -> None:
        """Retire every chunk of ``file_path`` in ``repository_id`` from earlier commits."""
        self._ensure_open()
        self._retired.add(file_key(repository_id, file_path))

    def commit(self) -> "IndexHandle":
        """Publish staged segments and return a handle on the new snapshot."""
        self._ensure_open()
        manifest = self._index.read_manifest()
        if self._staged or self._retired:
            generation = int(manifest["generation"]) + 1
            segments = list(manifest["segments"])
            for entry in self._staged:
                entry["generation"] = generation
                segments.append(entry)
            if self._retired:
                segments.append(
                    {
                        "name": None,
                        "generation": generation,
                        "doc_count": 0,
                        "total_length": 0,
                        "files": {},
                        "retired": sorted(self._retired),
                    }
                )
            manifest = {
                "format": FORMAT_VERSION,
                "generation": generation,
                "segments": segments,
                "committed_at": datetime.now().isoformat(),
            }
            try:
                self._index._write_manifest(manifest)
            except OSError as exc:
                raise IngestionError(f"Failed to commit index {self._index.path}: {exc}") from exc
            logger.info(
                "Committed generation %s (%s new segments, %s retired files)",
                generation,
                len(self._staged),
                len(self._retired),
            )
            self._staged = []
            self._retired = set()
        return IndexHandle(self._index.path, manifest)

    def rollback(self) -> None:
        """Discard staged segments that were never committed."""
        for entry in self._staged:
            shutil.rmtree(self._index.segments_dir / entry["name"], ignore_errors=True)
        self._staged = []
        self._retired = set()

    def close(self) -> None:
        if self._closed:
            return
        self.rollback()
        try:
            self._lock_path.unlink()
        except FileNotFoundError:
            pass
        self._closed = True

    def __enter__(self) -> "IndexWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class _Segment:
    __slots__ = ("name", "generation", "db", "masked")

    def __init__(self, name: str, generation: int, db: Any, masked: frozenset[str]):
        self.name = name
        self.generation = generation
        self.db = db
        self.masked = masked

    def get(self, key: str) -> Any:
        blob = self.db.get(key.encode())
        return None if blob is None else _decode(blob)


class IndexHandle:
    """Immutable, point-in-time view of a committed index; safe for concurrent reads."""

    def __init__(self, path: Path, manifest: dict[str, Any]):
        self.path = Path(path)
        self.generation = int(manifest.get("generation", 0))
        self._segments: list[_Segment] = []
        self.doc_count = 0
        self.total_length = 0
        self._closed = False

        entries = manifest.get("segments", [])
        try:
            for entry in entries:
                masked = _masked_files(entry, entries)
                for key, stats in entry.get("files", {}).items():
                    if key not in masked:
                        self.doc_count += int(stats["docs"])
                        self.total_length += int(stats["length"])
                if not entry.get("name"):
                    continue
                seg_dir = self.path / SEGMENTS_DIR / entry["name"]
                if not seg_dir.is_dir():
                    raise IndexBackendError(
                        "segment missing", operation="open_handle", target=str(seg_dir)
                    )
                db = Rdict(str(seg_dir), access_type=AccessType.read_only(False))
                self._segments.append(_Segment(entry["name"], entry["generation"], db, masked))
        except IndexBackendError:
            self.close()
            raise
        except Exception as exc:
            self.close()
            raise IndexBackendError(
                str(exc), operation="open_handle", target=str(self.path)
            ) from exc

    def _ensure_open(self) -> None:
        if self._closed:
            raise IndexBackendError(
                "handle is closed", operation="search", target=str(self.path)
            )

    def _doc(self, seg: _Segment, chunk_id: int, cache: dict) -> dict | None:
        key = (seg.name, chunk_id)
        if key not in cache:
            cache[key] = seg.get(f"{_DOC_PREFIX}{chunk_id}")
        return cache[key]

    @staticmethod
    def _to_chunk(doc: dict[str, Any]) -> Chunk:
        return Chunk(
            chunk_id=doc["chunk_id"],
            repository_id=doc.get("repository_id"),
            file_path=doc["file_path"],
            language=doc["language"],
            start_line=doc["start_line"],
            end_line=doc["end_line"],
            token_count=doc["token_count"],
            checksum=doc["checksum"],
            content=doc["content"],
        )

    def get_chunk(self, chunk_id: int) -> Chunk | None:
        """Return the live chunk with ``chunk_id`` as of this snapshot."""
        self._ensure_open()
        for seg in reversed(self._segments):
            doc = seg.get(f"{_DOC_PREFIX}{chunk_id}")
            if doc is not None and _doc_key(doc) not in seg.masked:
                return self._to_chunk(doc)
        return None

    def iter_chunks(self) -> Iterator[Chunk]:
        """Yield every live chunk of this snapshot once, newest segments first."""
        self._ensure_open()
        seen: set[int] = set()
        prefix = _DOC_PREFIX.encode()
        try:
            for seg in reversed(self._segments):
                for key, blob in seg.db.items():
                    if not bytes(key).startswith(prefix):
                        continue
                    doc = _decode(blob)
                    if doc["chunk_id"] in seen or _doc_key(doc) in seg.masked:
                        continue
                    seen.add(doc["chunk_id"])
                    yield self._to_chunk(doc)
        except (KeyError, ValueError, zlib.error) as exc:
            raise IndexBackendError(
                str(exc), operation="iter_chunks", target=str(self.path)
            ) from exc

    def search(
        self, query_text: str, limit: int = 10, filters: SearchFilters | None = None
    ) -> list[LexicalHit]:
        """Score live chunks against ``query_text`` with BM25, best first."""
        self._ensure_open()
        terms = unique_terms(query_text)
        if not terms or limit < 1 or self.doc_count == 0:
            return []

        avgdl = self.total_length / self.doc_count if self.total_length else 1.0
        cache: dict = {}
        docs: dict[int, dict] = {}
        term_postings: dict[str, dict[int, int]] = {}
        try:
            for term in terms:
                postings: dict[int, int] = {}
                for seg in reversed(self._segments):
                    plist = seg.get(f"{_TERM_PREFIX}{term}")
                    if not plist:
                        continue
                    for cid, tf in plist:
                        if cid in postings:
                            continue
                        doc = self._doc(seg, cid, cache)
                        if doc is None or _doc_key(doc) in seg.masked:
                            continue
                        postings[cid] = tf
                        docs.setdefault(cid, doc)
                term_postings[term] = postings
        except Exception as exc:
            raise IndexBackendError(str(exc), operation="search", target=str(self.path)) from exc

        total_docs = self.doc_count
        scores: dict[int, float] = defaultdict(float)
        matched: dict[int, list[str]] = defaultdict(list)
        for term in terms:
            postings = term_postings[term]
            n_qi = len(postings)
            if n_qi == 0:
                continue
            idf = math.log(1.0 + (max(total_docs, n_qi) - n_qi + 0.5) / (n_qi + 0.5))
            for cid, tf in postings.items():
                doc_len = docs[cid]["length"]
                denom = tf + BM25_K1 * (1.0 - BM25_B + BM25_B * (doc_len / avgdl))
                scores[cid] += idf * ((tf * (BM25_K1 + 1.0)) / denom)
                matched[cid].append(term)

        hits: list[LexicalHit] = []
        for cid, score in scores.items():
            doc = docs[cid]
            if filters is not None and not filters.matches(
                doc["file_path"], doc["language"], doc.get("repository_id")
            ):
                continue
            hits.append(
                LexicalHit(
                    chunk_id=cid,
                    file_path=doc["file_path"],
                    language=doc["language"],
                    repository_id=doc.get("repository_id"),
                    score=score,
                    start_line=doc["start_line"],
                    end_line=doc["end_line"],
                    content=doc["content"],
                    matched_terms=tuple(matched[cid]),
                )
            )

        hits.sort(key=lambda hit: (-hit.score, hit.file_path, hit.start_line))
        return hits[:limit]

    def close(self) -> None:
        for seg in self._segments:
            try:
                seg.db.close()
            except Exception:
                logger.debug("Error closing segment %s", seg.name, exc_info=True)
        self._segments = []
        self._closed = True

    def __enter__(self) -> "IndexHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
