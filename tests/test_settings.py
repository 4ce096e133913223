"""Tests for settings.py — defaults, JSON config file, env overrides and caching."""
from __future__ import annotations

import json
import logging

import pytest

from grounded_rag.merging import merge_candidates
from grounded_rag.settings import (
    DEFAULT_SIGNAL_WEIGHTS,
    LLMSettings,
    Paths,
    RetrievalConfig,
    RetrievalConfigCache,
    load_retrieval_config,
    load_settings,
    normalize_weights,
)


def _write_config(path, data) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data), encoding="utf-8")


class TestLoadSettings:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("OPENAI_EMBEDDING_MODEL", raising=False)
        monkeypatch.delenv("OPENAI_CHAT_MODEL", raising=False)
        settings, paths = load_settings()
        assert settings == LLMSettings()
        assert paths == Paths()

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("OPENAI_CHAT_MODEL", "gpt-4o")
        monkeypatch.setenv("RAG_SYSTEM_PROMPT_PATH", "/etc/prompt.txt")
        settings, paths = load_settings()
        assert settings.chat_model == "gpt-4o"
        assert paths.system_prompt_path == "/etc/prompt.txt"


class TestNormalizeWeights:
    def test_sums_to_one(self):
        weights = normalize_weights({"dense": 3.0, "bm25": 1.0})
        assert weights["dense"] == pytest.approx(0.75)
        assert weights["bm25"] == pytest.approx(0.25)

    def test_zero_sum_falls_back_to_defaults(self):
        assert dict(normalize_weights({"dense": 0.0, "bm25": 0.0})) == DEFAULT_SIGNAL_WEIGHTS


class TestLoadRetrievalConfig:
    def test_missing_file_gives_defaults(self, tmp_path):
        config = load_retrieval_config(tmp_path / "absent.json")
        assert config.top_k == RetrievalConfig().top_k
        assert config.reranker.url is None
        assert config.reranker.model == "bge-reranker-v2-m3"
        assert dict(config.merge.signal_weights) == DEFAULT_SIGNAL_WEIGHTS

    def test_reads_json_file(self, tmp_path):
        path = tmp_path / "rag.json"
        _write_config(
            path,
            {
                "top_k": 8,
                "relevance_threshold": 0.45,
                "reranker": {"url": "http://reranker:8080/rerank", "timeout_seconds": 3},
                "merge": {"strategy": "rrf", "rrf_k": 30},
                "context": {"max_tokens": 2000, "diversify_sections": True},
            },
        )
        config = load_retrieval_config(path)
        assert config.top_k == 8
        assert config.relevance_threshold == 0.45
        assert config.reranker.url == "http://reranker:8080/rerank"
        assert config.reranker.timeout_seconds == 3
        assert config.merge.strategy == "rrf"
        assert config.merge.rrf_k == 30
        assert config.context.max_tokens == 2000
        assert config.context.diversify_sections is True

    def test_signal_weights_normalized(self, tmp_path):
        path = tmp_path / "rag.json"
        _write_config(path, {"merge": {"signal_weights": {"dense": 2, "bm25": 2}}})
        config = load_retrieval_config(path)
        assert config.merge.signal_weights["dense"] == pytest.approx(0.5)
        assert config.merge.signal_weights["bm25"] == pytest.approx(0.5)

    def test_default_path_from_env(self, tmp_path, monkeypatch):
        path = tmp_path / "custom.json"
        _write_config(path, {"top_k": 3})
        monkeypatch.setenv("RAG_CONFIG_PATH", str(path))
        assert load_retrieval_config().top_k == 3

    def test_unknown_keys_are_ignored_with_warning(self, tmp_path, caplog):
        path = tmp_path / "rag.json"
        _write_config(path, {"top_k": 5, "retries": 3, "reranker": {"api_key": "x"}})
        with caplog.at_level(logging.WARNING, logger="grounded_rag.settings"):
            config = load_retrieval_config(path)
        assert config.top_k == 5
        assert "retries" in caplog.text
        assert "api_key" in caplog.text

    def test_invalid_json_falls_back_to_defaults(self, tmp_path, caplog):
        path = tmp_path / "rag.json"
        path.write_text("{not json", encoding="utf-8")
        with caplog.at_level(logging.WARNING, logger="grounded_rag.settings"):
            config = load_retrieval_config(path)
        assert config == load_retrieval_config(tmp_path / "absent.json")
        assert "Failed to load retrieval config" in caplog.text

    def test_non_object_json_is_ignored(self, tmp_path):
        path = tmp_path / "rag.json"
        path.write_text("[1, 2, 3]", encoding="utf-8")
        assert load_retrieval_config(path).top_k == RetrievalConfig().top_k


class TestEnvOverrides:
    def test_reranker_url_and_model(self, tmp_path, monkeypatch):
        monkeypatch.setenv("RERANKER_URL", "http://env-reranker/rerank")
        monkeypatch.setenv("RERANK_MODEL", "bge-reranker-base")
        config = load_retrieval_config(tmp_path / "absent.json")
        assert config.reranker.url == "http://env-reranker/rerank"
        assert config.reranker.model == "bge-reranker-base"

    def test_env_beats_file(self, tmp_path, monkeypatch):
        path = tmp_path / "rag.json"
        _write_config(path, {"reranker": {"url": "http://file/rerank"}})
        monkeypatch.setenv("RERANKER_URL", "http://env/rerank")
        assert load_retrieval_config(path).reranker.url == "http://env/rerank"

    def test_blank_url_clears_file_value(self, tmp_path, monkeypatch):
        path = tmp_path / "rag.json"
        _write_config(path, {"reranker": {"url": "http://file/rerank"}})
        monkeypatch.setenv("RERANKER_URL", "  ")
        assert load_retrieval_config(path).reranker.url is None

    @pytest.mark.parametrize("name", ["RERANK_ENABLED", "RAG_RERANK_ENABLED"])
    def test_disable_switches(self, name, tmp_path, monkeypatch):
        monkeypatch.setenv(name, "false")
        assert load_retrieval_config(tmp_path / "absent.json").reranker.enabled is False

    def test_other_values_keep_reranker_enabled(self, tmp_path, monkeypatch):
        monkeypatch.setenv("RERANK_ENABLED", "0")
        assert load_retrieval_config(tmp_path / "absent.json").reranker.enabled is True

    def test_timeout_override(self, tmp_path, monkeypatch):
        monkeypatch.setenv("RERANK_TIMEOUT_SECONDS", "2.5")
        assert load_retrieval_config(tmp_path / "absent.json").reranker.timeout_seconds == 2.5

    def test_non_numeric_timeout_ignored(self, tmp_path, monkeypatch):
        monkeypatch.setenv("RERANK_TIMEOUT_SECONDS", "soon")
        assert load_retrieval_config(tmp_path / "absent.json").reranker.timeout_seconds == 10.0


class TestRetrievalConfigCache:
    def test_cached_until_reload(self, tmp_path):
        path = tmp_path / "rag.json"
        _write_config(path, {"top_k": 4})
        cache = RetrievalConfigCache(path)
        first = cache.get()
        assert first.top_k == 4

        _write_config(path, {"top_k": 9})
        assert cache.get() is first

        assert cache.reload().top_k == 9
        assert cache.get().top_k == 9

    def test_config_is_immutable(self, tmp_path):
        config = RetrievalConfigCache(tmp_path / "absent.json").get()
        with pytest.raises(AttributeError):
            config.top_k = 100


class TestScoringSections:
    def test_mmr_lambda_key(self, tmp_path):
        path = tmp_path / "rag.json"
        _write_config(path, {"mmr": {"lambda": 0.5, "enabled": False}})
        config = load_retrieval_config(path)
        assert config.mmr.lambda_ == 0.5
        assert config.mmr.enabled is False

    def test_boosts_and_answer_threshold(self, tmp_path):
        path = tmp_path / "rag.json"
        _write_config(path, {"boosts": {"sku_match": 0.3}, "answer_threshold": 0.52})
        config = load_retrieval_config(path)
        assert config.boosts.sku_match == 0.3
        assert config.boosts.title_match == 0.08
        assert config.answer_threshold == 0.52

    def test_primary_document_share(self, tmp_path):
        path = tmp_path / "rag.json"
        _write_config(path, {"context": {"primary_document_share": 0.8}})
        assert load_retrieval_config(path).context.primary_document_share == 0.8


class TestEffectiveFallbackThreshold:
    def test_explicit_value_wins(self):
        config = RetrievalConfig(relevance_threshold=0.45, fallback_threshold=0.2)
        assert config.effective_fallback_threshold == 0.2

    def test_derived_from_relevance_threshold(self):
        config = RetrievalConfig(relevance_threshold=0.5)
        assert config.effective_fallback_threshold == pytest.approx(0.35)

    def test_none_without_thresholds(self):
        assert RetrievalConfig().effective_fallback_threshold is None


class TestMergeValidation:
    def test_unknown_strategy_falls_back_with_warning(self, tmp_path, caplog):
        path = tmp_path / "rag.json"
        _write_config(path, {"merge": {"strategy": "weighted-sum", "rrf_k": 10}})
        with caplog.at_level(logging.WARNING, logger="grounded_rag.settings"):
            config = load_retrieval_config(path)
        assert config.merge.strategy == "weighted_sum"
        assert config.merge.rrf_k == 10
        assert "Unknown merge strategy" in caplog.text

    @pytest.mark.parametrize("weights", [[0.6, 0.4], {"dense": "high"}, {"dense": -1}, {"dense": True}])
    def test_malformed_weights_use_defaults(self, weights, tmp_path, caplog):
        path = tmp_path / "rag.json"
        _write_config(path, {"merge": {"signal_weights": weights}})
        with caplog.at_level(logging.WARNING, logger="grounded_rag.settings"):
            config = load_retrieval_config(path)
        assert dict(config.merge.signal_weights) == DEFAULT_SIGNAL_WEIGHTS
        assert "malformed merge signal_weights" in caplog.text

    def test_loaded_strategy_accepted_by_merge(self, tmp_path):
        path = tmp_path / "rag.json"
        _write_config(path, {"merge": {"strategy": "median"}})
        merge_candidates({"dense": []}, load_retrieval_config(path).merge)
