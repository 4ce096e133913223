from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Sequence

ElementType = Literal["text", "table", "table_with_articles", "figure", "list"]
ChunkId = int | str


@dataclass(frozen=True, slots=True)
class ChunkAnnotation:
    """Manual annotation attached to a chunk by the annotation subsystem."""

    annotation_type: str | None = None
    is_nomenclature_table: bool = False
    product_group_id: int | None = None
    product_group_name: str | None = None


@dataclass(frozen=True, slots=True)
class ScoredChunk:
    """Retrieval candidate carrying one relevance score plus provenance metadata."""

    chunk_id: ChunkId
    content: str
    relevance: float
    document_id: int
    chunk_index: int
    filename: str = ""
    document_type: str = "general"
    section_path: str | None = None
    page_number: int | None = None
    page_end: int | None = None
    element_type: ElementType = "text"
    has_table: bool = False
    token_count: int | None = None
    table_rows: tuple[tuple[str, ...], ...] | None = None
    annotation: ChunkAnnotation | None = None
    product_variant: str | None = None
    source: str = "unknown"
    embedding: Sequence[float] | None = field(default=None, compare=False, repr=False)
    boosts: tuple[str, ...] = ()

    @property
    def product_group_id(self) -> int | None:
        return self.annotation.product_group_id if self.annotation else None

    @property
    def is_nomenclature_table(self) -> bool:
        return bool(self.annotation and self.annotation.is_nomenclature_table)


@dataclass(frozen=True, slots=True)
class RerankResult:
    """Reranker output; `applied=False` means `chunks` is the untouched input."""

    chunks: list[ScoredChunk]
    applied: bool
    model: str | None


@dataclass(frozen=True, slots=True)
class ContextSource:
    """One rendered context block as shown to the user in the sources list."""

    index: int
    chunk_id: ChunkId
    document_id: int
    filename: str
    chunk_index: int
    relevance: float
    element_type: str
    type_label: str
    section_path: str | None
    page_start: int | None
    page_end: int | None
    has_table: bool
    content: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "chunkId": self.chunk_id,
            "documentId": self.document_id,
            "filename": self.filename,
            "chunkIndex": self.chunk_index,
            "relevance": self.relevance,
            "pageNumber": self.page_start,
            "sectionPath": self.section_path,
            "elementType": self.element_type,
            "hasTable": self.has_table,
            "chunkContent": self.content,
        }


@dataclass(slots=True)
class BuiltContext:
    """Rendered prompt fragment together with its parallel sources list."""

    context: str
    sources: list[ContextSource] = field(default_factory=list)
    total_tokens: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.sources
