"""
Error taxonomy for the extraction pipeline.

Exceptions are raised at the collaborator seams and inside the codec; the
orchestrator converts them into structured ``JobError`` records so callers can
tell "retry the whole job" apart from "this chunk was unparsable".
"""

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    INVALID_CONFIGURATION = "invalid_configuration"
    TRANSIENT_EXTERNAL_FAILURE = "transient_external_failure"
    MODEL_INVOCATION = "model_invocation"
    DECODE_FAILURE = "decode_failure"
    TEXT_EXTRACTION = "text_extraction"
    MERGE_CONFLICT = "merge_conflict"
    DANGLING_RELATIONSHIP = "dangling_relationship"
    PERSISTENCE = "persistence"
    CANCELLED = "cancelled"
    INTERNAL = "internal"


@dataclass(frozen=True)
class JobError:
    """Structured error or warning surfaced on a job."""

    kind: ErrorKind
    message: str
    chunk_index: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobError":
        return cls(
            kind=ErrorKind(data["kind"]),
            message=data.get("message", ""),
            chunk_index=data.get("chunk_index"),
        )


class ExtractionError(Exception):
    """Base class for all pipeline errors."""

    kind = ErrorKind.INTERNAL


class InvalidConfigurationError(ExtractionError, ValueError):
    """Bad chunk size / overlap or job options. Fatal, the job never starts."""

    kind = ErrorKind.INVALID_CONFIGURATION


class TransientExternalError(ExtractionError):
    """External call failed in a way that may succeed when retried."""

    kind = ErrorKind.TRANSIENT_EXTERNAL_FAILURE


class ModelTimeoutError(TransientExternalError):
    pass


class ModelUnavailableError(TransientExternalError):
    pass


class TextExtractionUnavailableError(TransientExternalError):
    pass


class InvalidModelError(ExtractionError):
    """The model service does not know the requested model."""

    kind = ErrorKind.MODEL_INVOCATION


class UnsupportedFormatError(ExtractionError):
    kind = ErrorKind.TEXT_EXTRACTION


class TextExtractionFailedError(ExtractionError):
    kind = ErrorKind.TEXT_EXTRACTION


class DecodeError(ExtractionError):
    """A model response could not be decoded, not even via the fallback path."""

    kind = ErrorKind.DECODE_FAILURE


class PersistenceError(ExtractionError):
    kind = ErrorKind.PERSISTENCE


class ConstraintViolationError(PersistenceError):
    pass


class PersistenceUnavailableError(PersistenceError):
    pass


class JobNotFoundError(ExtractionError, KeyError):
    pass


class JobAlreadyRunningError(ExtractionError):
    pass


class InvalidJobStateError(ExtractionError):
    pass
