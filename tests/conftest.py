import os
import threading
from typing import Any, Dict, List, Optional

import pytest


def pytest_configure(config):
    """Keep test runs offline: in-memory job store, no graph persistence."""
    os.environ.setdefault("JOB_STORE_BACKEND", "memory")
    os.environ.setdefault("PERSIST_TO_GRAPH", "false")
    os.environ.setdefault("DEFAULT_MODEL", "llama3.2")


class ScriptedModelService:
    """Model service returning canned responses.

    ``responses`` maps a marker to a response; the first marker found in the
    prompt selects it, ``default`` is used otherwise. A response may be a
    string, an exception instance to raise, or a list consumed one item per
    call (the last item repeats).
    """

    def __init__(self, responses: Optional[Dict[str, Any]] = None, default: Any = ""):
        self.responses = responses or {}
        self.default = default
        self.calls: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def invoke(self, prompt: str, model_id: str, options: Optional[Dict[str, Any]] = None) -> str:
        with self._lock:
            self.calls.append({"prompt": prompt, "model_id": model_id, "options": options or {}})
            item = self.default
            for marker, response in self.responses.items():
                if marker in prompt:
                    item = response
                    break
            if isinstance(item, list):
                item = item.pop(0) if len(item) > 1 else item[0]
        if isinstance(item, BaseException):
            raise item
        return item


class StaticTextExtractor:
    """Text extraction service backed by a dict of document texts."""

    def __init__(self, documents: Dict[str, Any]):
        self.documents = documents
        self.calls: List[str] = []

    def extract(self, document_ref: str) -> str:
        self.calls.append(document_ref)
        item = self.documents[document_ref]
        if isinstance(item, list):
            item = item.pop(0) if len(item) > 1 else item[0]
        if isinstance(item, BaseException):
            raise item
        return item


async def no_sleep(_delay: float) -> None:
    return None


@pytest.fixture
def scripted_model():
    return ScriptedModelService


@pytest.fixture
def static_extractor():
    return StaticTextExtractor


@pytest.fixture
def fast_options() -> Dict[str, Any]:
    """Small chunks, no overlap, no backoff delays."""
    return {
        "model": "llama3.2",
        "chunk_target_tokens": 50,
        "chunk_overlap_tokens": 0,
        "concurrency": 2,
        "max_retries": 2,
        "retry_base_delay": 0.0,
        "retry_max_delay": 0.0,
        "persist": False,
    }


@pytest.fixture
def two_part_document() -> str:
    """Two ~150 char paragraphs that chunk into exactly two chunks at 50 tokens."""
    alpha = (
        "ALPHA-PART The portal shall let every registered customer log in with a password. "
        "The security team owns all authentication rules for the portal."
    )
    beta = (
        "BETA-PART Customers log in from the web portal and the mobile app every day. "
        "An administrator role approves changes to the sign in workflow."
    )
    return alpha + "\n\n" + beta
