from __future__ import annotations

from collections import defaultdict
from dataclasses import replace
import math
from typing import Mapping, Sequence

import numpy as np

from .errors import DuplicateChunkError
from .retrieval import cosine_similarity
from .schema import ChunkId, ScoredChunk
from .settings import MergeConfig


def ranking_key(chunk: ScoredChunk) -> tuple:
    """Sort key: relevance descending, then lower chunk index, document id and id."""
    return (-chunk.relevance, chunk.chunk_index, chunk.document_id, str(chunk.chunk_id))


def _index_signal(name: str, candidates: Sequence[ScoredChunk]) -> dict[ChunkId, ScoredChunk]:
    indexed: dict[ChunkId, ScoredChunk] = {}
    for chunk in candidates:
        if chunk.chunk_id in indexed:
            raise DuplicateChunkError(chunk.chunk_id, f"appears twice in signal {name!r}")
        indexed[chunk.chunk_id] = chunk
    return indexed


def min_max_scale(scores: Mapping[ChunkId, float]) -> dict[ChunkId, float]:
    """Rescale one signal's scores to [0, 1]; a flat signal maps to 1.0."""
    if not scores:
        return {}
    low = min(scores.values())
    high = max(scores.values())
    if high == low:
        return {chunk_id: 1.0 for chunk_id in scores}
    span = high - low
    return {chunk_id: (score - low) / span for chunk_id, score in scores.items()}


def reciprocal_rank_scores(candidates: Sequence[ScoredChunk], k: int = 60) -> dict[ChunkId, float]:
    """Score one signal by Reciprocal Rank Fusion contribution `1 / (k + rank)`."""
    ordered = sorted(candidates, key=ranking_key)
    return {chunk.chunk_id: 1 / (k + rank) for rank, chunk in enumerate(ordered, start=1)}


def _signal_weights(names: Sequence[str], config: MergeConfig) -> dict[str, float]:
    raw = {name: config.signal_weights.get(name, config.default_weight) for name in names}
    total = sum(raw.values())
    if total <= 0:
        return {name: 1 / len(names) for name in names}
    return {name: weight / total for name, weight in raw.items()}


def merge_candidates(
    signals: Mapping[str, Sequence[ScoredChunk]],
    config: MergeConfig,
) -> list[ScoredChunk]:
    """Combine per-signal candidate lists into one deduplicated ranking.

    Chunks sharing an id across signals are merged into a single entry whose
    relevance is the configured aggregation of its per-signal scores. A
    signal that does not contain a chunk contributes nothing for it.

    Args:
        signals: Mapping of signal name (e.g. `dense`, `bm25`) to candidates.
        config: Aggregation strategy, weights and normalisation.

    Returns:
        New `ScoredChunk` instances sorted by merged relevance descending,
        ties broken by lower `chunk_index`.

    Raises:
        DuplicateChunkError: An id repeats inside one signal, or two signals
            disagree on the content stored under one id.
    """
    indexed = {name: _index_signal(name, candidates) for name, candidates in signals.items() if candidates}
    if not indexed:
        return []

    representatives: dict[ChunkId, ScoredChunk] = {}
    contributors: dict[ChunkId, list[str]] = defaultdict(list)
    for name, chunks in indexed.items():
        for chunk_id, chunk in chunks.items():
            first = representatives.setdefault(chunk_id, chunk)
            if first.content != chunk.content:
                raise DuplicateChunkError(chunk_id, f"signal {name!r} carries different content")
            contributors[chunk_id].append(name)

    per_signal: dict[str, dict[ChunkId, float]] = {}
    for name, chunks in indexed.items():
        if config.strategy == "rrf":
            per_signal[name] = reciprocal_rank_scores(list(chunks.values()), k=config.rrf_k)
        else:
            scores = {chunk_id: chunk.relevance for chunk_id, chunk in chunks.items()}
            per_signal[name] = min_max_scale(scores) if config.normalize else scores

    weights = _signal_weights(list(indexed), config)
    merged: list[ScoredChunk] = []
    for chunk_id, chunk in representatives.items():
        signal_scores = {name: per_signal[name][chunk_id] for name in contributors[chunk_id]}
        if config.strategy == "max":
            relevance = max(signal_scores.values())
        elif config.strategy == "weighted_sum":
            relevance = sum(weights[name] * score for name, score in signal_scores.items())
        elif config.strategy == "rrf":
            relevance = sum(signal_scores.values())
        else:
            raise ValueError(f"Unknown merge strategy: {config.strategy!r}")
        merged.append(replace(chunk, relevance=float(relevance), source="+".join(sorted(signal_scores))))

    return sorted(merged, key=ranking_key)


def _embedding_similarity(first: ScoredChunk, second: ScoredChunk) -> float:
    if first.embedding is None or second.embedding is None:
        return 0.0
    if len(first.embedding) == 0 or len(first.embedding) != len(second.embedding):
        return 0.0
    query_vector = np.asarray(first.embedding, dtype=np.float32)
    matrix = np.asarray([second.embedding], dtype=np.float32)
    return float(cosine_similarity(query_vector, matrix)[0])


def apply_mmr(chunks: Sequence[ScoredChunk], lambda_: float, target: int) -> list[ScoredChunk]:
    """Greedy maximal marginal relevance selection.

    Each step picks the candidate maximising
    `lambda_ * relevance - (1 - lambda_) * max_similarity_to_selected`.
    Chunks without an embedding count as dissimilar to everything, so a
    pool with no vectors keeps its ranked order.

    Args:
        chunks: Ranked candidates.
        lambda_: Relevance/diversity trade-off in [0, 1].
        target: Maximum number of chunks to select.

    Returns:
        Selected chunks in selection order.
    """
    selected: list[ScoredChunk] = []
    remaining = list(chunks)

    while len(selected) < target and remaining:
        best_index = 0
        best_score = -math.inf
        for index, candidate in enumerate(remaining):
            diversity = max((_embedding_similarity(candidate, chosen) for chosen in selected), default=0.0)
            score = lambda_ * candidate.relevance - (1 - lambda_) * diversity
            if score > best_score:
                best_score = score
                best_index = index
        selected.append(remaining.pop(best_index))

    return selected
