"""
Token-bounded document chunking.

Each chunk is a span of the source text with its character offsets, its
estimated token count and the number of characters it shares with the
previous chunk. Spans are measured with the token estimator of the target
model, so both the size bound and the overlap are expressed in tokens.
Re-chunking the same text with the same parameters yields the same chunks.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterator, List, Optional

from config.settings import settings
from core.exceptions import InvalidConfigurationError
from core.token_counter import TokenEstimatorRegistry, token_estimator

logger = logging.getLogger(__name__)

# Break candidates, strongest first
_BREAK_SEPARATORS = ("\n\n", "\n", ". ", "! ", "? ", " ")


@dataclass(frozen=True)
class Chunk:
    """A token-bounded slice of the source text."""

    index: int
    text: str
    token_count: int
    start_offset: int
    end_offset: int
    overlap_with_previous: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Chunk":
        return cls(**data)


def validate_chunk_parameters(target_size: int, overlap: int) -> None:
    if not isinstance(target_size, int) or target_size <= 0:
        raise InvalidConfigurationError(
            f"chunk target size must be an integer > 0 (got {target_size!r})"
        )
    if not isinstance(overlap, int) or overlap < 0:
        raise InvalidConfigurationError(
            f"chunk overlap must be an integer >= 0 (got {overlap!r})"
        )
    if overlap >= target_size:
        raise InvalidConfigurationError(
            f"chunk overlap ({overlap}) must be smaller than the target size ({target_size})"
        )


def reconstruct_text(chunks: List[Chunk]) -> str:
    """Join chunks back together, dropping each declared overlap."""
    if not chunks:
        return ""
    parts = [chunks[0].text]
    parts.extend(chunk.text[chunk.overlap_with_previous:] for chunk in chunks[1:])
    return "".join(parts)


class TokenChunker:
    """Split text into overlapping spans bounded by an estimated token count."""

    def __init__(self, registry: Optional[TokenEstimatorRegistry] = None):
        self.registry = registry or token_estimator

    def chunk(
        self,
        text: str,
        target_size: Optional[int] = None,
        overlap: Optional[int] = None,
        model_id: Optional[str] = None,
    ) -> List[Chunk]:
        """
        Split text into token-bounded chunks.

        Args:
            text: Source text
            target_size: Maximum estimated tokens per chunk
            overlap: Tokens of the previous chunk repeated at the start of the next
            model_id: Model whose token estimator measures the spans

        Returns:
            Ordered list of chunks; empty for empty or whitespace-only text.

        Raises:
            InvalidConfigurationError: if target_size <= 0 or overlap is out of range
        """
        chunks = list(self.iter_chunks(text, target_size, overlap, model_id))
        if len(chunks) > 1:
            logger.info(
                f"Chunked text of {len(text)} chars into {len(chunks)} chunks "
                f"(target={target_size or settings.chunk_target_tokens} tokens, "
                f"overlap={overlap if overlap is not None else settings.chunk_overlap_tokens})"
            )
        return chunks

    def iter_chunks(
        self,
        text: str,
        target_size: Optional[int] = None,
        overlap: Optional[int] = None,
        model_id: Optional[str] = None,
    ) -> Iterator[Chunk]:
        target_size = settings.chunk_target_tokens if target_size is None else target_size
        overlap = settings.chunk_overlap_tokens if overlap is None else overlap
        validate_chunk_parameters(target_size, overlap)

        if not text or not text.strip():
            return

        estimator = self.registry.resolve(model_id or settings.default_model)
        count = estimator.count

        total_tokens = count(text)
        if total_tokens <= target_size:
            stripped = text.strip()
            start = text.find(stripped)
            yield Chunk(
                index=0,
                text=stripped,
                token_count=count(stripped),
                start_offset=start,
                end_offset=start + len(stripped),
            )
            return

        length = len(text)
        start = 0
        previous_end = 0
        index = 0
        while start < length:
            end = self._find_end(text, start, target_size, count)
            if end < length:
                end = self._natural_break(text, start, end, overlap, count)

            span = text[start:end]
            yield Chunk(
                index=index,
                text=span,
                token_count=count(span),
                start_offset=start,
                end_offset=end,
                overlap_with_previous=max(0, previous_end - start) if index else 0,
            )
            logger.debug(
                f"Chunk {index}: chars {start}-{end}, ~{count(span)} tokens"
            )

            if end >= length:
                break
            next_start = self._overlap_start(text, start, end, overlap, count)
            previous_end = end
            start = next_start
            index += 1

    def estimate_chunk_count(
        self,
        text: str,
        target_size: Optional[int] = None,
        overlap: Optional[int] = None,
        model_id: Optional[str] = None,
    ) -> int:
        """Cheap upper-level estimate of how many chunks ``text`` will produce."""
        target_size = settings.chunk_target_tokens if target_size is None else target_size
        overlap = settings.chunk_overlap_tokens if overlap is None else overlap
        validate_chunk_parameters(target_size, overlap)
        if not text or not text.strip():
            return 0
        total = self.registry.estimate(text, model_id or settings.default_model)
        if total <= target_size:
            return 1
        stride = target_size - overlap
        return 1 + -(-(total - target_size) // stride)

    @staticmethod
    def _find_end(text: str, start: int, budget: int, count) -> int:
        """Largest end such that text[start:end] fits the budget (at least one char)."""
        length = len(text)
        lo = start + 1
        if count(text[start:lo]) > budget:
            logger.warning(
                f"Single character at offset {start} exceeds the chunk budget of {budget} tokens"
            )
            return lo

        # Gallop forward until the span no longer fits, then bisect.
        step = max(1, budget * 4)
        hi = min(length, start + step)
        while hi < length and count(text[start:hi]) <= budget:
            lo = hi
            step *= 2
            hi = min(length, start + step)
        if count(text[start:hi]) <= budget:
            return hi

        while hi - lo > 1:
            mid = (lo + hi) // 2
            if count(text[start:mid]) <= budget:
                lo = mid
            else:
                hi = mid
        return lo

    @staticmethod
    def _natural_break(text: str, start: int, end: int, overlap: int, count) -> int:
        """Pull ``end`` back to a paragraph, line, sentence or word break if one
        exists in the second half of the span."""
        floor = start + (end - start) // 2
        window = text[floor:end]
        for separator in _BREAK_SEPARATORS:
            position = window.rfind(separator)
            if position == -1:
                continue
            candidate = floor + position + len(separator)
            if candidate <= start or candidate >= end:
                continue
            if count(text[start:candidate]) > overlap:
                return candidate
        return end

    @staticmethod
    def _overlap_start(text: str, start: int, end: int, overlap: int, count) -> int:
        """Start of the next chunk: the longest suffix of text[start:end] that
        fits in ``overlap`` tokens, moved forward to a word start."""
        if overlap <= 0:
            return end

        lo, hi = start, end
        # smallest p in [start, end] with count(text[p:end]) <= overlap
        while lo < hi:
            mid = (lo + hi) // 2
            if count(text[mid:end]) <= overlap:
                hi = mid
            else:
                lo = mid + 1
        candidate = lo

        if start < candidate < end and not text[candidate - 1].isspace():
            for position in range(candidate, end):
                if text[position].isspace():
                    if position + 1 < end:
                        candidate = position + 1
                    break

        if candidate <= start:
            return end
        return candidate


# Global chunker instance
document_chunker = TokenChunker()
