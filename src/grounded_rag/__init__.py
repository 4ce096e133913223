"""Retrieval, scoring and reranking pipeline for grounded question answering."""

from .schema import BuiltContext, ChunkAnnotation, ContextSource, RerankResult, ScoredChunk

__all__ = ["ScoredChunk", "ChunkAnnotation", "RerankResult", "ContextSource", "BuiltContext"]
