"""OpenTelemetry tracing helpers for the retrieval pipeline.

The pipeline records one parent span per query (``rag-pipeline``) with a
child span per stage: ``merge``, ``rerank``, ``assemble-context`` and
``build-prompt``. Rerank spans carry whether the remote reranker was
applied, so fallbacks are visible in the trace even though they never
surface as errors.

Usage with an OTLP backend such as Arize Phoenix:

    from grounded_rag.tracing import configure_tracing, get_tracer

    configure_tracing(
        endpoint="http://localhost:6006/v1/traces",
        service_name="grounded-rag",
    )
    pipeline = RetrievalPipeline(store, tracer=get_tracer("grounded-rag"))

Usage without a backend (development / testing):

    configure_tracing()   # uses ConsoleSpanExporter by default
"""
from __future__ import annotations

from typing import Callable

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource, SERVICE_NAME
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    ConsoleSpanExporter,
    SimpleSpanProcessor,
    SpanExporter,
)

from .reranking import Reranker
from .schema import RerankResult, ScoredChunk
from .settings import RetrievalConfig

# ---------------------------------------------------------------------------
# OpenInference semantic-convention attribute names plus pipeline extras
# ---------------------------------------------------------------------------

ATTR_INPUT_VALUE = "input.value"
ATTR_OUTPUT_VALUE = "output.value"
ATTR_LLM_MODEL_NAME = "llm.model_name"
ATTR_RETRIEVAL_DOCUMENTS = "retrieval.documents"
ATTR_RERANK_APPLIED = "rerank.applied"
ATTR_RERANK_MODEL = "rerank.model"
ATTR_CONTEXT_SOURCES = "context.sources"
ATTR_CONTEXT_TOKENS = "context.tokens"

# ---------------------------------------------------------------------------
# Provider lifecycle helpers
# ---------------------------------------------------------------------------

_provider: TracerProvider | None = None


def configure_tracing(
    endpoint: str | None = None,
    service_name: str = "grounded-rag",
    exporter: SpanExporter | None = None,
) -> TracerProvider:
    """Create and register a global TracerProvider.

    Args:
        endpoint: OTLP HTTP endpoint URL to send traces to. When *None* and
            no custom *exporter* is given, spans are printed to stdout.
        service_name: Label identifying this application in the backend.
        exporter: An already-constructed exporter, e.g. an
            ``InMemorySpanExporter`` in tests. When provided, *endpoint* is
            ignored.

    Returns:
        The configured provider, also registered as the global one.
    """
    global _provider

    resource = Resource(attributes={SERVICE_NAME: service_name})
    provider = TracerProvider(resource=resource)

    if exporter is not None:
        chosen_exporter: SpanExporter = exporter
    elif endpoint is not None:
        try:
            from opentelemetry.exporter.otlp.proto.http.trace_exporter import (
                OTLPSpanExporter,
            )
        except ImportError as exc:  # pragma: no cover
            raise ImportError(
                "opentelemetry-exporter-otlp-proto-http is required to export "
                "traces to an OTLP endpoint.  Install it with:\n"
                "  pip install 'grounded-rag[otlp]'"
            ) from exc
        chosen_exporter = OTLPSpanExporter(endpoint=endpoint)
    else:
        chosen_exporter = ConsoleSpanExporter()

    # Synchronous export so spans are readable right after a call returns.
    provider.add_span_processor(SimpleSpanProcessor(chosen_exporter))
    trace.set_tracer_provider(provider)
    _provider = provider
    return provider


def get_tracer(name: str) -> trace.Tracer:
    """Return a tracer from the provider set by :func:`configure_tracing`.

    Falls back to the global (no-op by default) provider when tracing was
    never configured, so spans are silently discarded.
    """
    if _provider is not None:
        return _provider.get_tracer(name)
    return trace.get_tracer(name)


# ---------------------------------------------------------------------------
# Span-wrapping helpers
# ---------------------------------------------------------------------------


class TracedReranker:
    """Reranker wrapper that records every call as a ``rerank`` span."""

    def __init__(self, reranker: Reranker, tracer: trace.Tracer):
        self.reranker = reranker
        self.tracer = tracer

    def rerank(self, query: str, candidates: list[ScoredChunk], config: RetrievalConfig) -> RerankResult:
        with self.tracer.start_as_current_span("rerank") as span:
            span.set_attribute(ATTR_INPUT_VALUE, query)
            span.set_attribute(ATTR_RETRIEVAL_DOCUMENTS, len(candidates))
            result = self.reranker.rerank(query, candidates, config)
            span.set_attribute(ATTR_RERANK_APPLIED, result.applied)
            if result.model:
                span.set_attribute(ATTR_RERANK_MODEL, result.model)
            return result


def traced_reranker(reranker: Reranker, tracer: trace.Tracer) -> TracedReranker:
    return TracedReranker(reranker, tracer)


def traced_generation(
    answer_fn: Callable[..., str],
    tracer: trace.Tracer,
    model_name: str = "",
) -> Callable[..., str]:
    """Wrap an answer-generation callable so every call is recorded as a span.

    The wrapped callable takes ``(system_prompt, user_message)`` and records
    the user message as input, the model name, and the first 500 characters
    of the answer. Exceptions are recorded and re-raised.
    """

    def _wrapped(system_prompt: str, user_message: str, **kwargs) -> str:
        with tracer.start_as_current_span("generation") as span:
            span.set_attribute(ATTR_INPUT_VALUE, user_message)
            if model_name:
                span.set_attribute(ATTR_LLM_MODEL_NAME, model_name)
            try:
                answer = answer_fn(system_prompt, user_message, **kwargs)
                span.set_attribute(ATTR_OUTPUT_VALUE, answer[:500])
                span.set_status(trace.StatusCode.OK)
                return answer
            except Exception as exc:
                span.set_status(trace.StatusCode.ERROR, str(exc))
                span.record_exception(exc)
                raise

    return _wrapped
