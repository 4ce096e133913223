from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field, replace
import logging
from typing import Any, Callable

from opentelemetry import trace

from .boosting import apply_boosts
from .context import build_context
from .errors import EmptyQueryError, PipelineInvariantError
from .merging import apply_mmr, merge_candidates
from .prompting import (
    DEFAULT_SYSTEM_PROMPT,
    PromptTemplateSource,
    build_user_message,
    compose_system_prompt,
)
from .qa import answer_with_context, no_answer_message
from .reranking import HttpReranker, Reranker
from .schema import BuiltContext, RerankResult, ScoredChunk
from .settings import LLMSettings, RetrievalConfig
from .store import ChunkStore
from .tracing import (
    ATTR_CONTEXT_SOURCES,
    ATTR_CONTEXT_TOKENS,
    ATTR_INPUT_VALUE,
    ATTR_RETRIEVAL_DOCUMENTS,
    get_tracer,
    traced_generation,
    traced_reranker,
)

logger = logging.getLogger(__name__)


class _StaticPrompt:
    def __init__(self, template: str = DEFAULT_SYSTEM_PROMPT):
        self.template = template

    def load(self) -> str:
        return self.template

    def invalidate(self) -> None:
        pass


@dataclass(slots=True)
class PipelineResult:
    """Everything one pipeline run produced, ready for the language model."""

    query: str
    system_prompt: str
    user_message: str
    context: BuiltContext
    rerank: RerankResult
    diagnostics: dict[str, Any] = field(default_factory=dict)

    @property
    def sources(self) -> list[dict[str, Any]]:
        return [source.to_dict() for source in self.context.sources]


def filter_by_relevance(chunks: list[ScoredChunk], config: RetrievalConfig) -> list[ScoredChunk]:
    """Drop weak candidates, relaxing to the fallback threshold when nothing passes.

    Args:
        chunks: Merged candidates.
        config: Supplies `relevance_threshold` and the fallback threshold,
            which defaults to a fraction of the relevance threshold;
            `None` disables filtering.

    Returns:
        New list of the surviving chunks in their original order.
    """
    if config.relevance_threshold is None:
        return list(chunks)

    kept = [chunk for chunk in chunks if chunk.relevance >= config.relevance_threshold]
    fallback = config.effective_fallback_threshold
    if kept or not chunks or fallback is None:
        return kept

    relaxed = [chunk for chunk in chunks if chunk.relevance >= fallback]
    if relaxed:
        logger.warning(
            "Relevance fallback triggered: using %d chunk(s) at threshold %.2f",
            len(relaxed),
            fallback,
        )
    return relaxed


def _check_permutation(before: list[ScoredChunk], after: list[ScoredChunk]) -> None:
    if Counter(chunk.chunk_id for chunk in before) != Counter(chunk.chunk_id for chunk in after):
        raise PipelineInvariantError("Reranker changed the candidate set instead of reordering it")


def meets_answer_threshold(context: BuiltContext, config: RetrievalConfig) -> bool:
    """Whether the best selected source is relevant enough to ask the language model.

    A top relevance below `answer_threshold` is still accepted when it clears
    the fallback threshold, with a warning.
    """
    if context.is_empty:
        return False
    if config.answer_threshold is None:
        return True

    top = max(source.relevance for source in context.sources)
    if top >= config.answer_threshold:
        return True

    fallback = config.effective_fallback_threshold
    if fallback is not None and top >= fallback:
        logger.warning(
            "Answer threshold fallback used: top relevance %.2f below answer threshold %.2f",
            top,
            config.answer_threshold,
        )
        return True
    return False


class RetrievalPipeline:
    """Sequential merge, rerank, assemble and prompt-build run for one query."""

    def __init__(
        self,
        store: ChunkStore,
        reranker: Reranker | None = None,
        prompt_templates: PromptTemplateSource | None = None,
        tracer: trace.Tracer | None = None,
        llm_settings: LLMSettings | None = None,
    ):
        self.store = store
        self.tracer = tracer or get_tracer("grounded_rag.pipeline")
        self.reranker = traced_reranker(reranker or HttpReranker(), self.tracer)
        self.prompt_templates = prompt_templates or _StaticPrompt()
        self.llm_settings = llm_settings or LLMSettings()

    def run(
        self,
        query: str,
        config: RetrievalConfig,
        disable_reranker: bool = False,
        active_prompt: str | None = None,
    ) -> PipelineResult:
        """Build the grounded prompt for `query`.

        Args:
            query: User question.
            config: Read-only configuration for this run.
            disable_reranker: Skip the remote reranker for this run only.
            active_prompt: Operator prompt prepended to the system template.

        Returns:
            Prompt pieces, rendered context, sources and diagnostics.

        Raises:
            EmptyQueryError: `query` is blank.
        """
        if not query or not query.strip():
            raise EmptyQueryError("Cannot run retrieval for an empty query")

        with self.tracer.start_as_current_span("rag-pipeline") as span:
            span.set_attribute(ATTR_INPUT_VALUE, query)

            with self.tracer.start_as_current_span("merge") as merge_span:
                signals = self.store.fetch_candidates(query, config.candidate_pool_size)
                merged = apply_boosts(query, merge_candidates(signals, config.merge), config.boosts)
                pool = filter_by_relevance(merged, config)[: config.candidate_pool_size]
                if config.mmr.enabled:
                    candidates = apply_mmr(pool, config.mmr.lambda_, config.top_k)
                else:
                    candidates = pool[: config.top_k]
                merge_span.set_attribute(ATTR_RETRIEVAL_DOCUMENTS, len(candidates))

            rerank_config = config
            if disable_reranker:
                rerank_config = replace(config, reranker=replace(config.reranker, enabled=False))
            rerank_result = self.reranker.rerank(query, candidates, rerank_config)
            _check_permutation(candidates, rerank_result.chunks)

            with self.tracer.start_as_current_span("assemble-context") as context_span:
                built = build_context(rerank_result.chunks, config.context)
                context_span.set_attribute(ATTR_CONTEXT_SOURCES, len(built.sources))
                context_span.set_attribute(ATTR_CONTEXT_TOKENS, built.total_tokens)

            with self.tracer.start_as_current_span("build-prompt"):
                user_message = build_user_message(built.context, query)
                system_prompt = compose_system_prompt(self.prompt_templates.load(), active_prompt)

        if config.log_retrieval:
            logger.info(
                "Query %r: %d signals, %d merged, %d reranked (applied=%s), %d sources, %d tokens",
                query,
                len(signals),
                len(merged),
                len(candidates),
                rerank_result.applied,
                len(built.sources),
                built.total_tokens,
            )
            for source in built.sources:
                logger.info(
                    "Source #%d: %s chunk %d relevance %.3f",
                    source.index,
                    source.filename,
                    source.chunk_index,
                    source.relevance,
                )

        diagnostics = {
            "signals": sorted(signals),
            "top_merged": [(chunk.chunk_id, chunk.relevance) for chunk in merged[:10]],
            "top_after_mmr": [(chunk.chunk_id, chunk.relevance) for chunk in candidates[:10]],
            "boosts": {chunk.chunk_id: list(chunk.boosts) for chunk in candidates if chunk.boosts},
            "reranker_applied": rerank_result.applied,
            "reranker_model": rerank_result.model,
            "selected": [source.chunk_id for source in built.sources],
        }
        return PipelineResult(
            query=query,
            system_prompt=system_prompt,
            user_message=user_message,
            context=built,
            rerank=rerank_result,
            diagnostics=diagnostics,
        )

    def answer(
        self,
        query: str,
        config: RetrievalConfig,
        model: str | None = None,
        answer_fn: Callable[..., str] = answer_with_context,
        **run_options,
    ) -> tuple[str, PipelineResult]:
        """Run the pipeline and ask the language model.

        The model is skipped, and a clarifying message returned instead, when
        the context is empty or too weak for the answer threshold.

        Args:
            query: User question.
            config: Read-only configuration for this run.
            model: Chat model; defaults to `LLMSettings.chat_model`.
            answer_fn: Callable taking `(system_prompt, user_message, model=...)`.
            **run_options: Forwarded to `run`.

        Returns:
            Answer text and the pipeline result it was built from.
        """
        result = self.run(query, config, **run_options)
        if not meets_answer_threshold(result.context, config):
            return no_answer_message(query), result

        model = model or self.llm_settings.chat_model
        generate = traced_generation(answer_fn, self.tracer, model_name=model)
        return generate(result.system_prompt, result.user_message, model=model), result
