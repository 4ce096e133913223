"""Shared pytest fixtures for grounded_rag unit tests."""
from __future__ import annotations

import pytest

from grounded_rag.schema import ChunkAnnotation, ScoredChunk
from grounded_rag.settings import RerankerConfig, RetrievalConfig


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    """Keep real .env files and reranker variables out of every test."""
    monkeypatch.chdir(tmp_path)
    for name in (
        "RERANKER_URL",
        "RERANK_MODEL",
        "RERANK_ENABLED",
        "RAG_RERANK_ENABLED",
        "RERANK_TIMEOUT_SECONDS",
        "RAG_CONFIG_PATH",
        "RAG_SYSTEM_PROMPT_PATH",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def sample_chunk() -> ScoredChunk:
    return ScoredChunk(
        chunk_id=1,
        content="Before installation, pressure-test the system to 10 bar.",
        relevance=0.82,
        document_id=10,
        chunk_index=0,
        filename="Installation manual.pdf",
        document_type="instruction",
        section_path="1.1",
        page_number=5,
        page_end=6,
    )


@pytest.fixture()
def sample_chunks() -> list[ScoredChunk]:
    return [
        ScoredChunk(
            chunk_id=1,
            content="Before installation, pressure-test the system to 10 bar and check every joint.",
            relevance=0.82,
            document_id=10,
            chunk_index=0,
            filename="Installation manual.pdf",
            document_type="instruction",
            section_path="1.1",
            page_number=5,
            page_end=6,
        ),
        ScoredChunk(
            chunk_id=2,
            content="Fitting 16x2 has a working pressure of 10 bar and ships with an EVOH ring.",
            relevance=0.74,
            document_id=20,
            chunk_index=1,
            filename="Fittings catalog.xlsx",
            document_type="catalog",
            section_path="A.2",
            page_number=12,
            element_type="table",
            has_table=True,
            annotation=ChunkAnnotation(
                is_nomenclature_table=True,
                product_group_id=7,
                product_group_name="Fitting 16x2",
            ),
        ),
        ScoredChunk(
            chunk_id=3,
            content="Manifold blocks are mounted on the wall bracket with two screws.",
            relevance=0.61,
            document_id=10,
            chunk_index=4,
            filename="Installation manual.pdf",
            document_type="instruction",
            section_path="2.3",
            page_number=14,
        ),
    ]


@pytest.fixture()
def retrieval_config() -> RetrievalConfig:
    """Config with a reranker endpoint configured and enabled."""
    return RetrievalConfig(
        reranker=RerankerConfig(
            enabled=True,
            model="bge-reranker-v2-m3",
            url="http://localhost:9000/rerank",
            timeout_seconds=5.0,
        )
    )
