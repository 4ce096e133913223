from __future__ import annotations

from dataclasses import replace
from typing import Callable, Protocol

import numpy as np

from .errors import DuplicateChunkError
from .retrieval import bm25_search, build_bm25, dense_search
from .schema import ChunkId, ScoredChunk


class ChunkStore(Protocol):
    """Source of stored chunks and per-signal retrieval candidates."""

    def fetch_candidates(self, query: str, top_k: int) -> dict[str, list[ScoredChunk]]: ...

    def fetch_by_id(self, chunk_id: ChunkId) -> ScoredChunk | None: ...


class InMemoryChunkStore:
    """Chunk store over an in-process list with BM25 and optional dense signals."""

    def __init__(
        self,
        chunks: list[ScoredChunk],
        embeddings: np.ndarray | None = None,
        embed_query: Callable[[str], np.ndarray] | None = None,
    ):
        """Index chunks for lexical and, when vectors are given, dense lookup.

        Args:
            chunks: Stored chunks; ids must be unique.
            embeddings: Optional matrix with one row per chunk.
            embed_query: Callable turning a query into a vector; required for
                the dense signal.
        """
        self._by_id: dict[ChunkId, ScoredChunk] = {}
        for chunk in chunks:
            if chunk.chunk_id in self._by_id:
                raise DuplicateChunkError(chunk.chunk_id, "stored twice")
            self._by_id[chunk.chunk_id] = chunk

        if embeddings is not None and len(embeddings) != len(chunks):
            raise ValueError(f"Got {len(embeddings)} embeddings for {len(chunks)} chunks")

        if embeddings is not None:
            chunks = [replace(chunk, embedding=vector) for chunk, vector in zip(chunks, embeddings)]
            self._by_id = {chunk.chunk_id: chunk for chunk in chunks}

        self.chunks = list(chunks)
        self.embeddings = embeddings
        self.embed_query = embed_query
        self._bm25 = build_bm25(self.chunks) if self.chunks else None

    def fetch_by_id(self, chunk_id: ChunkId) -> ScoredChunk | None:
        return self._by_id.get(chunk_id)

    def fetch_candidates(self, query: str, top_k: int) -> dict[str, list[ScoredChunk]]:
        if self._bm25 is None:
            return {}

        signals = {"bm25": bm25_search(self._bm25, query, self.chunks, top_k=top_k)}
        if self.embeddings is not None and self.embed_query is not None:
            signals["dense"] = dense_search(self.embed_query(query), self.embeddings, self.chunks, top_k=top_k)
        return signals
