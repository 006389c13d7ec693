"""Storage layer: rocksdict-backed lexical segments and the LanceDB vector store."""

from .lexical import IndexHandle, IndexWriter, LexicalIndex

__all__ = ["IndexHandle", "IndexWriter", "LexicalIndex"]
