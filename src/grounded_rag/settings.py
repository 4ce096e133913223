from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from types import MappingProxyType
from typing import Any, Literal, Mapping, get_args

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

MergeStrategy = Literal["max", "weighted_sum", "rrf"]

DEFAULT_SIGNAL_WEIGHTS = {"dense": 0.6, "bm25": 0.4}
FALLBACK_THRESHOLD_RATIO = 0.7


@dataclass(frozen=True, slots=True)
class LLMSettings:
    """Runtime model configuration for embedding and generation calls."""

    embedding_model: str = "text-embedding-3-small"
    chat_model: str = "gpt-4.1-mini"


@dataclass(frozen=True, slots=True)
class Paths:
    """Locations of the hot-reloadable configuration files."""

    config_path: str = "config/rag.json"
    system_prompt_path: str = "prompts/system.txt"


@dataclass(frozen=True, slots=True)
class RerankerConfig:
    """Remote reranker settings; a missing `url` or `model` disables reranking."""

    enabled: bool = True
    model: str | None = "bge-reranker-v2-m3"
    url: str | None = None
    timeout_seconds: float = 10.0
    max_text_chars: int = 2048


@dataclass(frozen=True, slots=True)
class MergeConfig:
    """How candidates from several retrieval signals are combined.

    Attributes:
        strategy: `max`, `weighted_sum` or `rrf`.
        signal_weights: Per-signal weights for `weighted_sum`; renormalised
            over the signals present in one merge call.
        default_weight: Weight for signals missing from `signal_weights`.
        normalize: Min-max scale every signal to [0, 1] before aggregating.
        rrf_k: Smoothing constant for reciprocal rank fusion.
    """

    strategy: MergeStrategy = "weighted_sum"
    signal_weights: Mapping[str, float] = field(
        default_factory=lambda: MappingProxyType(dict(DEFAULT_SIGNAL_WEIGHTS))
    )
    default_weight: float = 1.0
    normalize: bool = False
    rrf_k: int = 60


@dataclass(frozen=True, slots=True)
class ContextCaps:
    """Selection limits applied while assembling the prompt context.

    Attributes:
        primary_document_share: When set, the best-scoring document may take
            this share of `max_chunks`; other documents share the rest and
            are admitted only if their mean relevance is within
            `document_relevance_window` of the primary one.
    """

    max_chunks: int = 20
    max_chunks_per_doc: int = 15
    max_tokens: int = 10000
    diversify_sections: bool = False
    primary_document_share: float | None = None
    document_relevance_window: float = 0.15


@dataclass(frozen=True, slots=True)
class MMRConfig:
    """Maximal marginal relevance re-selection of the candidate pool."""

    enabled: bool = True
    lambda_: float = 0.7


@dataclass(frozen=True, slots=True)
class BoostConfig:
    """Additive relevance boosts for structural query matches; 0 disables one."""

    section_match: float = 0.1
    title_match: float = 0.08
    sku_match: float = 0.12
    variant_match: float = 0.35
    term_overlap: float = 0.05


@dataclass(frozen=True, slots=True)
class RetrievalConfig:
    """Immutable configuration for one retrieval invocation."""

    reranker: RerankerConfig = field(default_factory=RerankerConfig)
    merge: MergeConfig = field(default_factory=MergeConfig)
    context: ContextCaps = field(default_factory=ContextCaps)
    mmr: MMRConfig = field(default_factory=MMRConfig)
    boosts: BoostConfig = field(default_factory=BoostConfig)
    top_k: int = 12
    candidate_pool_size: int = 40
    relevance_threshold: float | None = None
    fallback_threshold: float | None = None
    answer_threshold: float | None = None
    log_retrieval: bool = False

    @property
    def effective_fallback_threshold(self) -> float | None:
        """Configured fallback threshold, or a fixed fraction of the relevance threshold."""
        if self.fallback_threshold is not None:
            return self.fallback_threshold
        if self.relevance_threshold is None:
            return None
        return self.relevance_threshold * FALLBACK_THRESHOLD_RATIO


def load_settings() -> tuple[LLMSettings, Paths]:
    """Load environment-backed settings and return typed config objects.

    Returns:
        Tuple containing model settings and config file locations.
    """
    load_dotenv()
    return (
        LLMSettings(
            embedding_model=os.getenv("OPENAI_EMBEDDING_MODEL", "text-embedding-3-small"),
            chat_model=os.getenv("OPENAI_CHAT_MODEL", "gpt-4.1-mini"),
        ),
        Paths(
            config_path=os.getenv("RAG_CONFIG_PATH", "config/rag.json"),
            system_prompt_path=os.getenv("RAG_SYSTEM_PROMPT_PATH", "prompts/system.txt"),
        ),
    )


def _read_config_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.warning("Failed to load retrieval config from %s: %s", path, exc)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring retrieval config %s: top level must be an object", path)
        return {}
    return data


def _known_fields(cls, data: Any) -> dict[str, Any]:
    if not isinstance(data, dict):
        return {}
    names = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - names)
    if unknown:
        logger.warning("Ignoring unknown %s keys: %s", cls.__name__, ", ".join(unknown))
    return {key: value for key, value in data.items() if key in names}


def normalize_weights(weights: Mapping[str, float]) -> Mapping[str, float]:
    """Scale weights so they sum to 1, falling back to the defaults on a zero sum."""
    total = sum(weights.values())
    if total <= 0:
        return MappingProxyType(dict(DEFAULT_SIGNAL_WEIGHTS))
    return MappingProxyType({name: value / total for name, value in weights.items()})


def _env_float(name: str) -> float | None:
    value = os.getenv(name)
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r", name, value)
        return None


def _apply_env_overrides(config: RetrievalConfig) -> RetrievalConfig:
    reranker = config.reranker

    url = os.getenv("RERANKER_URL")
    if url is not None:
        reranker = replace(reranker, url=url.strip() or None)

    model = os.getenv("RERANK_MODEL", "").strip()
    if model:
        reranker = replace(reranker, model=model)

    if os.getenv("RERANK_ENABLED") == "false" or os.getenv("RAG_RERANK_ENABLED") == "false":
        reranker = replace(reranker, enabled=False)

    timeout = _env_float("RERANK_TIMEOUT_SECONDS")
    if timeout is not None:
        reranker = replace(reranker, timeout_seconds=timeout)

    return replace(config, reranker=reranker)


def _merge_config(data: Any) -> MergeConfig:
    values = _known_fields(MergeConfig, data)

    strategy = values.get("strategy")
    if strategy is not None and strategy not in get_args(MergeStrategy):
        logger.warning("Unknown merge strategy %r, using the default", strategy)
        values.pop("strategy")

    weights = values.pop("signal_weights", None)
    if weights is not None and not _valid_weights(weights):
        logger.warning("Ignoring malformed merge signal_weights: %r", weights)
        weights = None
    return MergeConfig(**values, signal_weights=normalize_weights(weights or DEFAULT_SIGNAL_WEIGHTS))


def _valid_weights(weights: Any) -> bool:
    if not isinstance(weights, dict):
        return False
    return all(
        isinstance(value, (int, float)) and not isinstance(value, bool) and value >= 0
        for value in weights.values()
    )


def load_retrieval_config(path: str | Path | None = None) -> RetrievalConfig:
    """Build a retrieval config from defaults, an optional JSON file and env overrides.

    Args:
        path: JSON config file. Defaults to `RAG_CONFIG_PATH` or `config/rag.json`.
            A missing or unreadable file leaves the defaults in place.

    Returns:
        Fully merged, immutable retrieval configuration.
    """
    load_dotenv()
    config_path = Path(path) if path is not None else Path(os.getenv("RAG_CONFIG_PATH", "config/rag.json"))
    raw = _read_config_file(config_path)

    mmr_values = dict(raw["mmr"]) if isinstance(raw.get("mmr"), dict) else {}
    if "lambda" in mmr_values:
        mmr_values["lambda_"] = mmr_values.pop("lambda")

    sections = ("reranker", "merge", "context", "mmr", "boosts")
    top_level = _known_fields(RetrievalConfig, {k: v for k, v in raw.items() if k not in sections})
    config = RetrievalConfig(
        reranker=RerankerConfig(**_known_fields(RerankerConfig, raw.get("reranker"))),
        merge=_merge_config(raw.get("merge")),
        context=ContextCaps(**_known_fields(ContextCaps, raw.get("context"))),
        mmr=MMRConfig(**_known_fields(MMRConfig, mmr_values)),
        boosts=BoostConfig(**_known_fields(BoostConfig, raw.get("boosts"))),
        **top_level,
    )
    return _apply_env_overrides(config)


class RetrievalConfigCache:
    """Process-scoped retrieval config, cached until `reload` is called."""

    def __init__(self, path: str | Path | None = None):
        self._path = path
        self._lock = threading.Lock()
        self._config: RetrievalConfig | None = None

    def get(self) -> RetrievalConfig:
        with self._lock:
            if self._config is None:
                self._config = load_retrieval_config(self._path)
            return self._config

    def reload(self) -> RetrievalConfig:
        with self._lock:
            self._config = None
        return self.get()
