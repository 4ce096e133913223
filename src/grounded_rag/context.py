"""Context assembly: turn a ranked chunk list into a budgeted prompt fragment.

Selection walks the ranking top-down and never truncates a chunk: a block
that would overflow the token budget is skipped and the walk continues, so
a smaller, lower-ranked chunk may still fit. Selected blocks keep their
ranked order in the rendered output. Optional per-document limits let the
best-scoring document take most of the slots.
"""
from __future__ import annotations

import logging
import math
from typing import Sequence

from .schema import BuiltContext, ContextSource, ScoredChunk
from .settings import ContextCaps

logger = logging.getLogger(__name__)

TOKEN_CHAR_RATIO = 4
BLOCK_SEPARATOR = "\n\n"
NO_CONTEXT_MARKER = "[No grounding context: the documents contain no information relevant to this question.]"

ELEMENT_TYPE_LABELS = {
    "text": "Text",
    "table": "Table",
    "table_with_articles": "Table with article numbers",
    "figure": "Figure",
    "list": "List",
}
NOMENCLATURE_LABEL = "Nomenclature table"


def estimate_tokens(text: str) -> int:
    """Approximate token count from character length."""
    if not text:
        return 0
    return max(1, math.ceil(len(text) / TOKEN_CHAR_RATIO))


def type_label(chunk: ScoredChunk) -> str:
    if chunk.is_nomenclature_table:
        return NOMENCLATURE_LABEL
    return ELEMENT_TYPE_LABELS.get(chunk.element_type, chunk.element_type)


def page_line(chunk: ScoredChunk) -> str | None:
    start = chunk.page_number
    end = chunk.page_end if chunk.page_end is not None else start
    if start is None and end is None:
        return None
    if start is not None and end is not None and start != end:
        return f"Pages: {start}–{end}"
    return f"Page: {start if start is not None else end}"


def _cell(value: str) -> str:
    return str(value).replace("|", "\\|").replace("\n", " ").strip()


def render_table_rows(rows: Sequence[Sequence[str]]) -> str:
    """Render a table payload (first row is the header) as a Markdown table."""
    if not rows:
        return ""
    header, *body = rows
    width = len(header)
    lines = [
        "| " + " | ".join(_cell(value) for value in header) + " |",
        "|" + "---|" * width,
    ]
    for row in body:
        cells = [_cell(value) for value in row][:width]
        cells += [""] * (width - len(cells))
        lines.append("| " + " | ".join(cells) + " |")
    return "\n".join(lines)


def render_source_block(chunk: ScoredChunk, index: int) -> str:
    """Render one labeled source block; chunk content is copied verbatim."""
    lines = [
        f"[Source #{index}]",
        f"Document: {chunk.filename or f'document {chunk.document_id}'}",
        f"Type: {type_label(chunk)}",
    ]
    if chunk.section_path:
        lines.append(f"Section: {chunk.section_path}")
    if chunk.annotation and chunk.annotation.product_group_name:
        lines.append(f"Product: {chunk.annotation.product_group_name}")
    pages = page_line(chunk)
    if pages:
        lines.append(pages)
    lines.append("Fragment:")
    lines.append(chunk.content)
    if chunk.table_rows:
        lines.append(render_table_rows(chunk.table_rows))
    return "\n".join(lines)


def _to_source(chunk: ScoredChunk, index: int) -> ContextSource:
    return ContextSource(
        index=index,
        chunk_id=chunk.chunk_id,
        document_id=chunk.document_id,
        filename=chunk.filename,
        chunk_index=chunk.chunk_index,
        relevance=chunk.relevance,
        element_type=chunk.element_type,
        type_label=type_label(chunk),
        section_path=chunk.section_path,
        page_start=chunk.page_number,
        page_end=chunk.page_end if chunk.page_end is not None else chunk.page_number,
        has_table=chunk.has_table or bool(chunk.table_rows),
        content=chunk.content,
    )


def document_allocation(chunks: Sequence[ScoredChunk], caps: ContextCaps) -> dict[int, int] | None:
    """Per-document chunk limits favouring the best-scoring document.

    The document with the highest mean relevance may take
    `primary_document_share` of `max_chunks`. Every other document gets the
    remainder (at least one chunk) when its mean relevance is within
    `document_relevance_window` of the primary one, and nothing otherwise.

    Returns:
        Mapping of document id to its limit, or `None` when allocation is off.
    """
    if caps.primary_document_share is None or not chunks:
        return None

    scores: dict[int, list[float]] = {}
    for chunk in chunks:
        scores.setdefault(chunk.document_id, []).append(chunk.relevance)
    averages = sorted(
        ((document_id, sum(values) / len(values)) for document_id, values in scores.items()),
        key=lambda item: -item[1],
    )

    primary_id, primary_average = averages[0]
    primary_limit = min(caps.max_chunks_per_doc, max(1, int(caps.max_chunks * caps.primary_document_share + 0.5)))
    secondary_limit = min(caps.max_chunks_per_doc, max(1, caps.max_chunks - primary_limit))

    limits = {primary_id: primary_limit}
    for document_id, average in averages[1:]:
        within_window = abs(primary_average - average) <= caps.document_relevance_window
        limits[document_id] = secondary_limit if within_window else 0
    return limits


def build_context(chunks: Sequence[ScoredChunk], caps: ContextCaps) -> BuiltContext:
    """Select and render a budget-bounded context from ranked chunks.

    Args:
        chunks: Candidates in ranked order, most relevant first.
        caps: Chunk count, per-document and token limits plus the
            section-diversity switch for product-group deduplication.

    Returns:
        Rendered context and the matching sources list. When nothing is
        selected the context is `NO_CONTEXT_MARKER`.
    """
    blocks: list[str] = []
    sources: list[ContextSource] = []
    total_tokens = 0
    per_document: dict[int, int] = {}
    allocation = document_allocation(chunks, caps)
    seen_groups: dict[tuple, set[str | None]] = {}

    for chunk in chunks:
        if len(sources) >= caps.max_chunks:
            break
        if not chunk.content.strip():
            continue
        limit = caps.max_chunks_per_doc if allocation is None else allocation[chunk.document_id]
        if per_document.get(chunk.document_id, 0) >= limit:
            continue

        group_key = None
        if chunk.product_group_id is not None:
            group_key = (chunk.product_group_id, chunk.element_type)
            sections = seen_groups.get(group_key)
            if sections is not None and (not caps.diversify_sections or chunk.section_path in sections):
                logger.debug("Skipping chunk %s: product group %s already represented", chunk.chunk_id, group_key)
                continue

        index = len(sources) + 1
        block = render_source_block(chunk, index)
        block_tokens = estimate_tokens(block + BLOCK_SEPARATOR)
        if total_tokens + block_tokens > caps.max_tokens:
            logger.debug("Skipping chunk %s: %d tokens would exceed budget", chunk.chunk_id, block_tokens)
            continue

        blocks.append(block)
        sources.append(_to_source(chunk, index))
        total_tokens += block_tokens
        per_document[chunk.document_id] = per_document.get(chunk.document_id, 0) + 1
        if group_key is not None:
            seen_groups.setdefault(group_key, set()).add(chunk.section_path)

    if not blocks:
        return BuiltContext(context=NO_CONTEXT_MARKER, sources=[], total_tokens=0)
    return BuiltContext(context=BLOCK_SEPARATOR.join(blocks), sources=sources, total_tokens=total_tokens)
