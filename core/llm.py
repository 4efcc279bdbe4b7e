"""
Model inference collaborator used for per-chunk extraction.
"""

import logging
from typing import Any, Dict, Optional, Protocol, runtime_checkable

import requests

from config.settings import settings
from core.exceptions import (
    InvalidModelError,
    ModelTimeoutError,
    ModelUnavailableError,
)

logger = logging.getLogger(__name__)


@runtime_checkable
class ModelService(Protocol):
    """Anything that turns a prompt into a completion."""

    def invoke(self, prompt: str, model_id: str, options: Optional[Dict[str, Any]] = None) -> str:
        """Return the model's raw text response.

        ``options`` may carry ``system``, ``temperature`` and ``max_tokens``.
        Implementations raise ``TransientExternalError`` subclasses for
        failures worth retrying and ``InvalidModelError`` for unknown models.
        """
        ...


class OllamaModelService:
    """Calls a local Ollama server through ``/api/generate``."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = (base_url or settings.ollama_base_url).rstrip("/")
        self.timeout = timeout or settings.llm_timeout
        self.session = session or requests.Session()
        self.last_usage: Dict[str, int] = {}

    def invoke(self, prompt: str, model_id: str, options: Optional[Dict[str, Any]] = None) -> str:
        options = options or {}
        payload = {
            "model": model_id,
            "prompt": prompt,
            "options": {
                "temperature": options.get("temperature", settings.llm_temperature),
                "num_predict": options.get("max_tokens", settings.llm_max_tokens),
            },
            "stream": False,
        }
        if options.get("system"):
            payload["system"] = options["system"]

        try:
            response = self.session.post(
                f"{self.base_url}/api/generate",
                json=payload,
                timeout=self.timeout,
            )
        except requests.Timeout as e:
            raise ModelTimeoutError(f"Ollama did not answer within {self.timeout}s") from e
        except requests.ConnectionError as e:
            raise ModelUnavailableError(f"Cannot reach Ollama at {self.base_url}: {e}") from e

        if response.status_code == 404:
            raise InvalidModelError(f"Model '{model_id}' is not available on {self.base_url}")
        if response.status_code == 429 or response.status_code >= 500:
            raise ModelUnavailableError(
                f"Ollama returned HTTP {response.status_code} for model '{model_id}'"
            )
        response.raise_for_status()

        data = response.json()
        self.last_usage = {
            "input": data.get("prompt_eval_count", 0),
            "output": data.get("eval_count", 0),
        }
        content = data.get("response", "")
        logger.debug(
            f"Ollama {model_id}: {len(content)} chars "
            f"(prompt_eval={self.last_usage['input']}, eval={self.last_usage['output']})"
        )
        return content
