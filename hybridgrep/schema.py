from __future__ import annotations

from functools import lru_cache

from lancedb.pydantic import LanceModel, Vector


@lru_cache(maxsize=None)
def get_chunk_model(dimension: int) -> type[LanceModel]:
    """LanceDB row model for chunks embedded at ``dimension``."""

    class CodeChunk(LanceModel):
        vector: Vector(dimension)  # type: ignore[valid-type]
        chunk_id: int
        repository_id: int
        file_path: str
        language: str
        start_line: int
        end_line: int
        content: str
        checksum: str

    return CodeChunk
