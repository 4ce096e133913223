"""Additive relevance boosts for structural matches between a query and chunks.

Boosts are applied to merged candidates before thresholds and MMR, and the
names of the boosts a chunk received are kept on `ScoredChunk.boosts` for
diagnostics.
"""
from __future__ import annotations

from dataclasses import replace
import logging
from pathlib import PurePath
import re

from .merging import ranking_key
from .retrieval import tokenize
from .schema import ScoredChunk
from .settings import BoostConfig

logger = logging.getLogger(__name__)

MAX_OVERLAP_TERMS = 4
MIN_SKU_LENGTH = 4
VARIANT_MATCH = "variant_match"

STOPWORDS = frozenset(
    {
        "a", "an", "and", "are", "at", "be", "by", "can", "do", "does", "for", "from",
        "how", "i", "in", "is", "it", "of", "on", "or", "the", "to", "what", "which",
        "with",
    }
)

_SKU_SEPARATORS = re.compile(r"[-–/]")


def query_terms(query: str) -> set[str]:
    return set(tokenize(query)) - STOPWORDS


def normalize_sku(text: str) -> str:
    return _SKU_SEPARATORS.sub("", text).upper()


def extract_sku_candidates(query: str) -> list[str]:
    """Article-number-like query tokens: at least four characters and one digit."""
    candidates: list[str] = []
    for token in tokenize(query):
        sku = normalize_sku(token)
        if len(sku) >= MIN_SKU_LENGTH and any(ch.isdigit() for ch in sku) and sku not in candidates:
            candidates.append(sku)
    return candidates


def compute_boosts(
    chunk: ScoredChunk,
    terms: set[str],
    skus: list[str],
    config: BoostConfig,
) -> tuple[float, tuple[str, ...]]:
    """Total boost for one chunk and the names of the matches that produced it."""
    total = 0.0
    reasons: list[str] = []

    if config.section_match and chunk.section_path and terms & set(tokenize(chunk.section_path)):
        total += config.section_match
        reasons.append("section_match")

    if config.title_match and chunk.filename and terms & set(tokenize(PurePath(chunk.filename).stem)):
        total += config.title_match
        reasons.append("title_match")

    if config.variant_match and chunk.product_variant and terms & set(tokenize(chunk.product_variant)):
        total += config.variant_match
        reasons.append(VARIANT_MATCH)

    if config.sku_match and skus:
        content = normalize_sku(chunk.content)
        if any(sku in content for sku in skus):
            total += config.sku_match
            reasons.append("sku_match")

    if config.term_overlap:
        overlap = terms & set(tokenize(chunk.content))
        if overlap:
            total += config.term_overlap * min(len(overlap), MAX_OVERLAP_TERMS)
            reasons.append("term_overlap")

    return total, tuple(reasons)


def apply_boosts(query: str, chunks: list[ScoredChunk], config: BoostConfig) -> list[ScoredChunk]:
    """Add query-match boosts to merged candidates and re-sort them.

    When any chunk matches the product variant named in the query, only the
    variant matches are kept.

    Args:
        query: User query string.
        chunks: Merged candidates; never mutated.
        config: Boost weights.

    Returns:
        New list sorted by boosted relevance with the usual tie-breaking.
    """
    terms = query_terms(query)
    skus = extract_sku_candidates(query)

    boosted: list[ScoredChunk] = []
    for chunk in chunks:
        total, reasons = compute_boosts(chunk, terms, skus, config)
        if reasons:
            chunk = replace(chunk, relevance=chunk.relevance + total, boosts=chunk.boosts + reasons)
        boosted.append(chunk)

    variant_matches = [chunk for chunk in boosted if VARIANT_MATCH in chunk.boosts]
    if variant_matches:
        logger.debug("Keeping %d variant-matched chunk(s) of %d", len(variant_matches), len(boosted))
        boosted = variant_matches

    return sorted(boosted, key=ranking_key)
