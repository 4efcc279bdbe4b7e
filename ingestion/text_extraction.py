"""
Text extraction collaborators: turn a document reference (a file path) into
plain text for chunking.
"""

import csv
import io
import json
import logging
import mimetypes
import re
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

import requests

from config.settings import settings
from core.exceptions import (
    TextExtractionFailedError,
    TextExtractionUnavailableError,
    UnsupportedFormatError,
)

logger = logging.getLogger(__name__)

ENCODINGS = ["utf-8", "latin-1", "cp1252"]

_SMART_DOUBLE_QUOTES = re.compile("[“”„«»]")
_SMART_SINGLE_QUOTES = re.compile("[‘’‚‛]")

# (pattern, replacement) applied in order by clean_extracted_text
_CLEANUP_RULES = [
    # whitespace
    (re.compile(r"[ \t\f\v\xa0]+"), " "),
    (re.compile(r"^ +| +$", re.MULTILINE), ""),
    (re.compile(r"\n{3,}"), "\n\n"),
    # page furniture
    (re.compile(r"^\d+\n", re.MULTILINE), ""),
    (re.compile(r"^page\s*\d+.*$", re.MULTILINE | re.IGNORECASE), ""),
    (re.compile(r"^chapter\s*\d+.*$", re.MULTILINE | re.IGNORECASE), ""),
    # code fragments
    (re.compile(r"<\?php.*?\?>", re.DOTALL), ""),
    (re.compile(r"```.*?```", re.DOTALL), ""),
    (re.compile(r"^[ \t]*[A-Za-z0-9_]+\s*\(.*\)\s*\{.*$", re.MULTILINE), ""),
    (re.compile(r"[;{}<>]{2,}"), ""),
    # markup
    (re.compile(r"<style.*?>.*?</style>", re.DOTALL | re.IGNORECASE), ""),
    (re.compile(r"<script.*?>.*?</script>", re.DOTALL | re.IGNORECASE), ""),
    (re.compile(r"<[^>\n]+>"), ""),
    (re.compile(r"&[a-z]+;"), ""),
    # technical noise
    (re.compile(r"[A-Z]:\\\S+"), ""),
    (re.compile(r"(?<!\S)/[^\s/]+(?:/[^\s/]+)+"), ""),
    (re.compile(r"\b[A-Fa-f0-9]{32,}\b"), ""),
    # punctuation
    (re.compile(r"\.(?:[ \t]*\.)+"), "."),
]


def clean_extracted_text(text: Optional[str]) -> str:
    """
    Remove extraction noise from document text.

    Collapses runs of spaces and blank lines (paragraph breaks are kept),
    drops isolated page numbers and "Page N" / "Chapter N" lines, code blocks,
    syntax remnants, markup, file paths and hashes, and normalizes typographic
    quotes.
    """
    if not text:
        return ""
    cleaned = text.replace("\r\n", "\n").replace("\r", "\n")
    cleaned = _SMART_DOUBLE_QUOTES.sub('"', cleaned)
    cleaned = _SMART_SINGLE_QUOTES.sub("'", cleaned)
    for pattern, replacement in _CLEANUP_RULES:
        cleaned = pattern.sub(replacement, cleaned)
    # rules above can leave double spaces, trailing spaces and blank runs behind
    cleaned = re.sub(r"[ \t]{2,}", " ", cleaned)
    cleaned = re.sub(r"[ \t]+\n", "\n", cleaned)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    return cleaned.strip()


@runtime_checkable
class TextExtractionService(Protocol):
    def extract(self, document_ref: str) -> str:
        """Return the plain text of the referenced document."""
        ...


def _read_text(file_path: Path) -> str:
    for encoding in ENCODINGS:
        try:
            return file_path.read_text(encoding=encoding)
        except UnicodeDecodeError:
            continue
    raise TextExtractionFailedError(f"Cannot decode {file_path} as text")


class FileTextExtractor:
    """Reads plain-text formats straight from disk."""

    SUPPORTED_EXTENSIONS = {".txt", ".text", ".md", ".markdown", ".csv", ".json"}

    def __init__(self, clean: bool = True):
        self.clean = clean

    def supports(self, document_ref: str) -> bool:
        return Path(document_ref).suffix.lower() in self.SUPPORTED_EXTENSIONS

    def extract(self, document_ref: str) -> str:
        file_path = Path(document_ref)
        ext = file_path.suffix.lower()
        if ext not in self.SUPPORTED_EXTENSIONS:
            raise UnsupportedFormatError(f"Unsupported file type '{ext or file_path.name}'")
        if not file_path.is_file():
            raise TextExtractionFailedError(f"File not accessible: {document_ref}")

        raw = _read_text(file_path)
        if ext == ".csv":
            text = self._csv_to_text(raw)
        elif ext == ".json":
            text = self._json_to_text(raw, document_ref)
        else:
            text = raw
        logger.debug(f"Read {len(text)} chars from {file_path.name}")
        return clean_extracted_text(text) if self.clean and ext in (".txt", ".text") else text.strip()

    @staticmethod
    def _csv_to_text(raw: str) -> str:
        rows = csv.reader(io.StringIO(raw))
        lines = [" | ".join(cell.strip() for cell in row) for row in rows if any(c.strip() for c in row)]
        return "\n".join(lines)

    @staticmethod
    def _json_to_text(raw: str, document_ref: str) -> str:
        try:
            data = json.loads(raw)
        except ValueError as e:
            raise TextExtractionFailedError(f"Invalid JSON in {document_ref}: {e}") from e
        return json.dumps(data, indent=2, ensure_ascii=False)


class TikaTextExtractor:
    """Extracts text through an Apache Tika server (``PUT /rmeta/text``)."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
        clean: bool = True,
    ):
        self.base_url = (base_url or settings.tika_url).rstrip("/")
        self.timeout = timeout or settings.tika_timeout
        self.session = session or requests.Session()
        self.clean = clean

    def is_available(self) -> bool:
        try:
            response = self.session.get(f"{self.base_url}/tika", timeout=5)
            return response.status_code == 200
        except requests.RequestException as e:
            logger.warning(f"Tika health check failed: {e}")
            return False

    def extract(self, document_ref: str) -> str:
        file_path = Path(document_ref)
        if not file_path.is_file():
            raise TextExtractionFailedError(f"File not accessible: {document_ref}")
        mime_type = mimetypes.guess_type(file_path.name)[0] or "application/octet-stream"

        try:
            with open(file_path, "rb") as body:
                response = self.session.put(
                    f"{self.base_url}/rmeta/text",
                    data=body,
                    headers={"Content-Type": mime_type, "Accept": "application/json"},
                    timeout=self.timeout,
                )
        except requests.Timeout as e:
            raise TextExtractionUnavailableError(f"Tika timed out on {file_path.name}") from e
        except requests.ConnectionError as e:
            raise TextExtractionUnavailableError(f"Cannot reach Tika at {self.base_url}: {e}") from e

        if response.status_code in (415, 422):
            raise UnsupportedFormatError(f"Tika cannot parse {file_path.name} ({mime_type})")
        if response.status_code >= 500:
            raise TextExtractionUnavailableError(
                f"Tika returned HTTP {response.status_code} for {file_path.name}"
            )
        if response.status_code >= 400:
            raise TextExtractionFailedError(
                f"Tika returned HTTP {response.status_code} for {file_path.name}"
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise TextExtractionFailedError(f"Invalid JSON content from Tika: {e}") from e

        content = ""
        if isinstance(payload, list) and payload and isinstance(payload[0], dict):
            content = payload[0].get("X-TIKA:content") or ""
        logger.info(f"Tika extracted {len(content)} chars from {file_path.name} ({mime_type})")
        return clean_extracted_text(content) if self.clean else content.strip()


class DocumentTextExtractor:
    """Reads plain-text formats locally and sends everything else to Tika."""

    def __init__(self, file_extractor: Optional[FileTextExtractor] = None,
                 tika_extractor: Optional[TikaTextExtractor] = None):
        self.file_extractor = file_extractor or FileTextExtractor()
        self.tika_extractor = tika_extractor or TikaTextExtractor()

    def extract(self, document_ref: str) -> str:
        if self.file_extractor.supports(document_ref):
            return self.file_extractor.extract(document_ref)
        return self.tika_extractor.extract(document_ref)
