from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Protocol

import requests

from .errors import RerankResponseError
from .schema import RerankResult, ScoredChunk
from .settings import RerankerConfig, RetrievalConfig

logger = logging.getLogger(__name__)


class Reranker(Protocol):
    """Second-stage ordering of already retrieved candidates.

    Implementations must always return a structurally valid result and
    never raise for environment problems.
    """

    def rerank(self, query: str, candidates: list[ScoredChunk], config: RetrievalConfig) -> RerankResult: ...


@dataclass(frozen=True, slots=True)
class KeyedScores:
    """`{"results": [{"id": ..., "score": ...}]}` response, keyed by chunk id."""

    scores: dict[str, float]


@dataclass(frozen=True, slots=True)
class PositionalScores:
    """`{"scores": [...]}` response, aligned with the request document order."""

    scores: list[float | None]


RerankResponse = KeyedScores | PositionalScores


def _as_score(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        score = float(value)
    except OverflowError:
        return None
    return score if math.isfinite(score) else None


def parse_rerank_response(payload: Any) -> RerankResponse:
    """Resolve a decoded reranker body into one of the two supported shapes.

    Items with a missing id or a non-numeric score are dropped here so a
    single bad entry cannot invalidate the batch.

    Raises:
        RerankResponseError: The body matches neither shape.
    """
    if isinstance(payload, dict):
        results = payload.get("results")
        if isinstance(results, list):
            keyed: dict[str, float] = {}
            for item in results:
                if not isinstance(item, dict):
                    continue
                chunk_id = item.get("id")
                score = _as_score(item.get("score"))
                if isinstance(chunk_id, (int, str)) and not isinstance(chunk_id, bool) and score is not None:
                    keyed[str(chunk_id)] = score
            return KeyedScores(scores=keyed)

        scores = payload.get("scores")
        if isinstance(scores, list):
            return PositionalScores(scores=[_as_score(score) for score in scores])

    raise RerankResponseError("Unsupported reranker response format")


def resolve_scores(response: RerankResponse, candidates: list[ScoredChunk]) -> dict[str, float]:
    """Map a parsed response onto candidate ids (as strings)."""
    if isinstance(response, KeyedScores):
        known = {str(chunk.chunk_id) for chunk in candidates}
        return {chunk_id: score for chunk_id, score in response.scores.items() if chunk_id in known}

    # Extra positional scores past the candidate list are ignored.
    return {
        str(chunk.chunk_id): score
        for chunk, score in zip(candidates, response.scores)
        if score is not None
    }


def apply_scores(candidates: list[ScoredChunk], scores: dict[str, float]) -> list[ScoredChunk]:
    """Reorder candidates by resolved score; unscored ones sort by their own relevance."""
    return sorted(
        candidates,
        key=lambda chunk: scores.get(str(chunk.chunk_id), chunk.relevance),
        reverse=True,
    )


def build_rerank_payload(
    query: str,
    candidates: list[ScoredChunk],
    model: str,
    max_text_chars: int,
) -> dict[str, Any]:
    return {
        "model": model,
        "query": query,
        "documents": [
            {"id": chunk.chunk_id, "text": chunk.content[:max_text_chars]}
            for chunk in candidates
        ],
    }


@dataclass(slots=True)
class _ScoreFetch:
    scores: dict[str, float] = field(default_factory=dict)
    error: str | None = None


class HttpReranker:
    """Reranker client for a JSON-over-HTTP cross-encoder service."""

    def __init__(self, session: requests.Session | None = None):
        """Initialize the client.

        Args:
            session: Optional `requests.Session` for connection reuse. The
                module-level `requests.post` is used when omitted.
        """
        self.session = session

    def rerank(self, query: str, candidates: list[ScoredChunk], config: RetrievalConfig) -> RerankResult:
        """Reorder candidates by remote relevance scores, falling back to input order.

        Args:
            query: User query string.
            candidates: Ranked candidates; never mutated.
            config: Retrieval config whose `reranker` section gates the call.

        Returns:
            `applied=True` with a permutation of `candidates` on success,
            otherwise `applied=False` with `candidates` itself.
        """
        settings = config.reranker
        if not (settings.enabled and settings.url and candidates and settings.model):
            logger.debug(
                "Reranking skipped (enabled=%s, url=%s, candidates=%d, model=%s)",
                settings.enabled,
                bool(settings.url),
                len(candidates),
                settings.model,
            )
            return RerankResult(chunks=candidates, applied=False, model=settings.model)

        fetched = self._fetch_scores(query, candidates, settings)
        if fetched.error is not None:
            logger.warning("Reranker unavailable, falling back to retrieval order: %s", fetched.error)
            return RerankResult(chunks=candidates, applied=False, model=settings.model)

        return RerankResult(
            chunks=apply_scores(candidates, fetched.scores),
            applied=True,
            model=settings.model,
        )

    def _fetch_scores(self, query: str, candidates: list[ScoredChunk], settings: RerankerConfig) -> _ScoreFetch:
        payload = build_rerank_payload(query, candidates, settings.model, settings.max_text_chars)
        client = self.session or requests
        try:
            response = client.post(settings.url, json=payload, timeout=settings.timeout_seconds)
            if not 200 <= response.status_code < 300:
                raise RerankResponseError(f"Reranker request failed: {response.status_code} {response.reason}")
            parsed = parse_rerank_response(response.json())
        # Any transport or decoding failure becomes a fallback, including
        # RecursionError from deeply nested bodies.
        except (
            requests.RequestException,
            ValueError,
            TypeError,
            OverflowError,
            RecursionError,
            RerankResponseError,
        ) as exc:
            return _ScoreFetch(error=f"{type(exc).__name__}: {exc}")
        return _ScoreFetch(scores=resolve_scores(parsed, candidates))
