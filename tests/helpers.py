import asyncio

from hybridgrep.analysis.producer import content_checksum, make_chunk_id
from hybridgrep.models import Chunk, VectorHit

TEST_DIMENSION = 16


def make_chunk(path, content, start=1, language="python", repository_id=None):
    """Build a Chunk spanning ``content``'s lines starting at ``start``."""
    end = start + max(0, content.count("\n"))
    return Chunk(
        chunk_id=make_chunk_id(repository_id, path, start, end),
        repository_id=repository_id,
        file_path=path,
        language=language,
        start_line=start,
        end_line=end,
        token_count=len(content.split()),
        checksum=content_checksum(content),
        content=content,
    )


class FakeEmbeddingProvider:
    """In-memory provider returning a constant vector; counts calls."""

    def __init__(self, dimension=TEST_DIMENSION, fail=False):
        self._dimension = dimension
        self.fail = fail
        self.calls = 0

    def dimension(self):
        return self._dimension

    async def embed_text(self, text):
        self.calls += 1
        if self.fail:
            raise RuntimeError("model unavailable")
        return [0.1] * self._dimension


class FakeVectorBackend:
    """In-memory backend returning synthetic hits scored ``1/(i+1)``."""

    def __init__(self, dimension=TEST_DIMENSION, hits=3, delay=0.0, fail=False):
        self._dimension = dimension
        self.hit_count = hits
        self.delay = delay
        self.fail = fail
        self.calls = 0
        self.last_filters = None

    def dimension(self):
        return self._dimension

    async def search_vectors(self, embedding, limit, filters=None):
        self.calls += 1
        self.last_filters = filters
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ConnectionError("backend unreachable")
        return [
            VectorHit(
                chunk_id=1000 + i,
                score=1.0 / (i + 1),
                file_path=f"src/file_{i}.py",
                language="python",
                repository_id=None,
                content=f"def handler_{i}(): return {i}",
                start_line=1,
                end_line=1,
            )
            for i in range(min(self.hit_count, limit))
        ]
