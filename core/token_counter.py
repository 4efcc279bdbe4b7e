"""
Token estimation for chunking and prompt accounting.

Model identifiers are resolved through a table of model-family prefixes to a
small set of estimators. Resolution is total: any identifier maps to some
estimator, unknown ones to the configured default.
"""

from __future__ import annotations

import logging
import math
import threading
from typing import Dict, List, Optional, Tuple

import tiktoken

from config.settings import settings

logger = logging.getLogger(__name__)


class CharacterRatioEstimator:
    """Approximate token count from character length."""

    def __init__(self, chars_per_token: float = 4.0) -> None:
        if chars_per_token <= 0:
            raise ValueError("chars_per_token must be > 0")
        self.chars_per_token = chars_per_token
        self.name = f"approx-{chars_per_token:g}"

    def count(self, text: str) -> int:
        if not text:
            return 0
        return math.ceil(len(text) / self.chars_per_token)

    def __repr__(self) -> str:
        return f"CharacterRatioEstimator({self.chars_per_token:g})"


class TiktokenEstimator:
    """Count tokens with a tiktoken encoding, loaded on first use."""

    def __init__(self, encoding_name: str = "cl100k_base") -> None:
        self.encoding_name = encoding_name
        self.name = encoding_name
        self._encoder = None
        self._fallback: Optional[CharacterRatioEstimator] = None
        self._lock = threading.Lock()

    def _get_encoder(self):
        if self._encoder is not None or self._fallback is not None:
            return self._encoder
        with self._lock:
            if self._encoder is None and self._fallback is None:
                try:
                    self._encoder = tiktoken.get_encoding(self.encoding_name)
                except Exception as exc:
                    logger.warning(
                        "Failed to load tokenizer '%s': %s; using character approximation",
                        self.encoding_name,
                        exc,
                    )
                    self._fallback = CharacterRatioEstimator(4.0)
        return self._encoder

    def count(self, text: str) -> int:
        if not text:
            return 0
        encoder = self._get_encoder()
        if encoder is None:
            return self._fallback.count(text)
        return len(encoder.encode(text, disallowed_special=()))

    def __repr__(self) -> str:
        return f"TiktokenEstimator({self.encoding_name!r})"


# Estimator keys understood by TokenEstimatorRegistry._build
ESTIMATOR_KEYS = ("o200k_base", "cl100k_base", "approx-4", "approx-3.5")

# (model id prefix, estimator key); longest prefix wins
MODEL_FAMILIES: List[Tuple[str, str]] = [
    ("gpt-4o", "o200k_base"),
    ("gpt-4.1", "o200k_base"),
    ("o1", "o200k_base"),
    ("o3", "o200k_base"),
    ("gpt-4", "cl100k_base"),
    ("gpt-3.5", "cl100k_base"),
    ("text-embedding", "cl100k_base"),
    ("llama", "approx-4"),
    ("mistral", "approx-4"),
    ("mixtral", "approx-4"),
    ("qwen", "approx-4"),
    ("gemma", "approx-4"),
    ("phi", "approx-4"),
    ("claude", "approx-3.5"),
]


def normalize_model_id(model_id: Optional[str]) -> str:
    """Lower-case a model id and strip provider prefixes and Ollama tags.

    ``"openai/GPT-4o-mini"`` -> ``"gpt-4o-mini"``, ``"llama3.2:latest"`` -> ``"llama3.2"``
    """
    value = (model_id or "").strip().lower()
    if "/" in value:
        value = value.rsplit("/", 1)[1]
    if ":" in value:
        value = value.split(":", 1)[0]
    return value


class TokenEstimatorRegistry:
    """Resolve model identifiers to cached estimator instances."""

    def __init__(
        self,
        families: Optional[List[Tuple[str, str]]] = None,
        default_key: Optional[str] = None,
    ) -> None:
        self.families = sorted(
            families if families is not None else MODEL_FAMILIES,
            key=lambda item: len(item[0]),
            reverse=True,
        )
        self.default_key = default_key or settings.default_token_estimator
        if self.default_key not in ESTIMATOR_KEYS:
            logger.warning(
                f"Unknown default token estimator '{self.default_key}', using 'approx-4'"
            )
            self.default_key = "approx-4"
        self._instances: Dict[str, object] = {}
        self._lock = threading.Lock()

    def resolve_key(self, model_id: Optional[str]) -> str:
        normalized = normalize_model_id(model_id)
        for prefix, key in self.families:
            if normalized.startswith(prefix) and key in ESTIMATOR_KEYS:
                return key
        return self.default_key

    def resolve(self, model_id: Optional[str]):
        key = self.resolve_key(model_id)
        with self._lock:
            estimator = self._instances.get(key)
            if estimator is None:
                estimator = self._build(key)
                self._instances[key] = estimator
        return estimator

    @staticmethod
    def _build(key: str):
        if key.startswith("approx-"):
            return CharacterRatioEstimator(float(key[len("approx-"):]))
        return TiktokenEstimator(key)

    def estimate(self, text: str, model_id: Optional[str]) -> int:
        return self.resolve(model_id).count(text)


# Global registry instance
token_estimator = TokenEstimatorRegistry()


def estimate_tokens(text: str, model_id: Optional[str] = None) -> int:
    """Estimate the token length of ``text`` for ``model_id``."""
    return token_estimator.estimate(text, model_id or settings.default_model)
