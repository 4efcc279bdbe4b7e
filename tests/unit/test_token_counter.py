"""
Tests for token_counter.py
"""

import pytest

from core.token_counter import (
    CharacterRatioEstimator,
    TiktokenEstimator,
    TokenEstimatorRegistry,
    normalize_model_id,
)


class TestCharacterRatioEstimator:
    def test_empty_text_is_zero(self):
        assert CharacterRatioEstimator(4.0).count("") == 0

    def test_rounds_up(self):
        estimator = CharacterRatioEstimator(4.0)
        assert estimator.count("abcd") == 1
        assert estimator.count("abcde") == 2

    def test_fractional_ratio(self):
        estimator = CharacterRatioEstimator(3.5)
        assert estimator.name == "approx-3.5"
        assert estimator.count("a" * 7) == 2

    def test_invalid_ratio(self):
        with pytest.raises(ValueError):
            CharacterRatioEstimator(0)


class TestNormalizeModelId:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("GPT-4o-mini", "gpt-4o-mini"),
            ("openai/gpt-4o", "gpt-4o"),
            ("llama3.2:latest", "llama3.2"),
            ("  Mistral:7b ", "mistral"),
            (None, ""),
        ],
    )
    def test_normalization(self, raw, expected):
        assert normalize_model_id(raw) == expected


class TestTokenEstimatorRegistry:
    def test_family_prefixes(self):
        registry = TokenEstimatorRegistry(default_key="approx-4")
        assert registry.resolve_key("gpt-4o-mini") == "o200k_base"
        assert registry.resolve_key("gpt-4-turbo") == "cl100k_base"
        assert registry.resolve_key("gpt-3.5-turbo") == "cl100k_base"
        assert registry.resolve_key("llama3.2") == "approx-4"
        assert registry.resolve_key("claude-3-haiku") == "approx-3.5"

    def test_longest_prefix_wins(self):
        registry = TokenEstimatorRegistry(families=[("gpt", "approx-3.5"), ("gpt-4", "cl100k_base")])
        assert registry.resolve_key("gpt-4") == "cl100k_base"
        assert registry.resolve_key("gpt-5") == "approx-3.5"

    def test_unknown_model_uses_default(self):
        registry = TokenEstimatorRegistry(default_key="approx-3.5")
        assert registry.resolve_key("some-new-model") == "approx-3.5"
        assert registry.resolve_key("") == "approx-3.5"
        assert registry.resolve_key(None) == "approx-3.5"

    def test_invalid_default_falls_back(self):
        registry = TokenEstimatorRegistry(default_key="nonsense")
        assert registry.default_key == "approx-4"

    def test_family_members_share_one_instance(self):
        registry = TokenEstimatorRegistry()
        assert registry.resolve("llama3.2") is registry.resolve("mistral:7b")
        assert registry.resolve("llama3.2") is registry.resolve("LLAMA3.1:latest")

    def test_tiktoken_estimators_are_built_lazily(self):
        registry = TokenEstimatorRegistry()
        estimator = registry.resolve("gpt-4o")
        assert isinstance(estimator, TiktokenEstimator)
        assert estimator.encoding_name == "o200k_base"
        # no encoder is loaded until the first count
        assert estimator._encoder is None

    def test_estimate_is_deterministic(self):
        registry = TokenEstimatorRegistry()
        text = "The system shall export reports as PDF."
        assert registry.estimate(text, "llama3.2") == registry.estimate(text, "llama3.2")
        assert registry.estimate(text, "llama3.2") == 10
        assert registry.estimate("", "llama3.2") == 0


class TestTiktokenFallback:
    def test_unloadable_encoding_falls_back_to_approximation(self, monkeypatch):
        import core.token_counter as token_counter

        def _boom(name):
            raise RuntimeError("offline")

        monkeypatch.setattr(token_counter.tiktoken, "get_encoding", _boom)
        estimator = TiktokenEstimator("cl100k_base")
        assert estimator.count("abcdefgh") == 2
        assert estimator.count("") == 0
