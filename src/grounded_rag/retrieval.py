from __future__ import annotations

from dataclasses import replace
import re

import numpy as np
from openai import OpenAI
from rank_bm25 import BM25Okapi

from .schema import ScoredChunk

_TOKEN_PATTERN = re.compile(r"\w[\w/+-]*")


def tokenize(text: str) -> list[str]:
    """Lowercase word tokens; keeps article-number punctuation such as `16x2` or `PE-Xa`."""
    return _TOKEN_PATTERN.findall(text.lower())


def build_bm25(chunks: list[ScoredChunk]) -> BM25Okapi:
    """Create a BM25 index over chunk contents, aligned with `chunks` order.

    Args:
        chunks: Non-empty chunk list used as the keyword-retrieval corpus.

    Returns:
        BM25 index whose document positions match `chunks`.
    """
    return BM25Okapi([tokenize(chunk.content) for chunk in chunks])


def bm25_search(index: BM25Okapi, query: str, chunks: list[ScoredChunk], top_k: int = 5) -> list[ScoredChunk]:
    """Run BM25 keyword retrieval and return the top-scoring chunks.

    Chunks with no positive term overlap are left out.

    Args:
        index: Index built by `build_bm25` from the same `chunks`.
        query: User query string.
        chunks: Corpus chunks aligned with the index.
        top_k: Maximum number of results.

    Returns:
        Lexical candidates sorted by BM25 score, carrying it as `relevance`.
    """
    scores = index.get_scores(tokenize(query))
    ranked = sorted(range(len(scores)), key=lambda idx: (-scores[idx], chunks[idx].chunk_index))[:top_k]
    return [
        replace(chunks[idx], relevance=float(scores[idx]), source="bm25")
        for idx in ranked
        if scores[idx] > 0
    ]


def embed_query(text: str, model: str = "text-embedding-3-small") -> np.ndarray:
    """Embed one query string with the OpenAI embeddings API."""
    client = OpenAI()
    response = client.embeddings.create(model=model, input=[text])
    return np.array(response.data[0].embedding, dtype=np.float32)


def cosine_similarity(query_vector: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Compute cosine similarity between one query vector and many vectors.

    Args:
        query_vector: Query embedding vector.
        matrix: Candidate embedding matrix where each row is one vector.

    Returns:
        A 1D array of cosine similarity scores aligned to matrix rows.
    """
    query_norm = np.linalg.norm(query_vector)
    matrix_norm = np.linalg.norm(matrix, axis=1)
    denominator = np.maximum(query_norm * matrix_norm, 1e-12)
    return (matrix @ query_vector) / denominator


def dense_search(
    query_vector: np.ndarray,
    vectors: np.ndarray,
    chunks: list[ScoredChunk],
    top_k: int = 5,
) -> list[ScoredChunk]:
    """Rank chunks by cosine similarity of precomputed embeddings to the query.

    Args:
        query_vector: Embedded query.
        vectors: Chunk embedding matrix aligned with `chunks`.
        chunks: Corpus chunks.
        top_k: Maximum number of results.

    Returns:
        Dense candidates carrying cosine similarity as `relevance`.
    """
    scores = cosine_similarity(query_vector, vectors)
    ranked = sorted(range(len(chunks)), key=lambda idx: (-scores[idx], chunks[idx].chunk_index))[:top_k]
    return [replace(chunks[idx], relevance=float(scores[idx]), source="dense") for idx in ranked]
