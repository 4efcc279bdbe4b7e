"""
Extraction job records and the stores that keep them.

Every status change goes through ``Job.transition`` which validates it
against ``ALLOWED_TRANSITIONS`` and timestamps it. Stores keep serialized
snapshots, so a job read back from a store never shares state with the
orchestrator's working copy.
"""

from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

import redis

from config.settings import settings
from core.chunking import Chunk
from core.entity_graph import MergeConflict
from core.entity_models import ExtractionGraph
from core.exceptions import InvalidJobStateError, JobError, JobNotFoundError

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    PENDING = "pending"
    TEXT_EXTRACTED = "text_extracted"
    CHUNKED = "chunked"
    PROMPTING = "prompting"
    MERGING = "merging"
    COMPLETED = "completed"
    COMPLETED_WITH_WARNINGS = "completed_with_warnings"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.COMPLETED_WITH_WARNINGS, JobStatus.FAILED, JobStatus.CANCELLED}
)

ALLOWED_TRANSITIONS: Dict[JobStatus, frozenset] = {
    JobStatus.PENDING: frozenset({JobStatus.TEXT_EXTRACTED, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.TEXT_EXTRACTED: frozenset({JobStatus.CHUNKED, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.CHUNKED: frozenset({JobStatus.PROMPTING, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.PROMPTING: frozenset({JobStatus.MERGING, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.MERGING: frozenset(
        {JobStatus.COMPLETED, JobStatus.COMPLETED_WITH_WARNINGS, JobStatus.FAILED}
    ),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.COMPLETED_WITH_WARNINGS: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def new_token_stats() -> Dict[str, int]:
    return {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0, "chunks_processed": 0}


@dataclass
class Job:
    document_ref: str
    project_name: str = ""
    options: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: JobStatus = JobStatus.PENDING
    text_length: int = 0
    chunks: List[Chunk] = field(default_factory=list)
    partial_graphs: List[ExtractionGraph] = field(default_factory=list)
    final_graph: Optional[ExtractionGraph] = None
    conflicts: List[MergeConflict] = field(default_factory=list)
    errors: List[JobError] = field(default_factory=list)
    warnings: List[JobError] = field(default_factory=list)
    token_stats: Dict[str, int] = field(default_factory=new_token_stats)
    merge_stats: Dict[str, int] = field(default_factory=dict)
    persisted: Dict[str, int] = field(default_factory=dict)
    cancel_requested: bool = False
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    history: List[Dict[str, Any]] = field(default_factory=list)

    def __post_init__(self):
        if not self.history:
            self.history.append({"status": self.status.value, "at": self.created_at})

    def transition(self, status: JobStatus) -> None:
        """Move to ``status``; raises InvalidJobStateError if the table forbids it."""
        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidJobStateError(
                f"Job {self.id}: cannot move from {self.status.value} to {status.value}"
            )
        now = time.time()
        self.status = status
        self.updated_at = now
        if status == JobStatus.TEXT_EXTRACTED and self.started_at is None:
            self.started_at = now
        if status.is_terminal:
            self.finished_at = now
        self.history.append({"status": status.value, "at": now})
        logger.debug(f"Job {self.id} -> {status.value}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "document_ref": self.document_ref,
            "project_name": self.project_name,
            "options": dict(self.options),
            "status": self.status.value,
            "text_length": self.text_length,
            "chunks": [c.to_dict() for c in self.chunks],
            "partial_graphs": [g.to_dict() for g in self.partial_graphs],
            "final_graph": self.final_graph.to_dict() if self.final_graph else None,
            "conflicts": [c.to_dict() for c in self.conflicts],
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
            "token_stats": dict(self.token_stats),
            "merge_stats": dict(self.merge_stats),
            "persisted": dict(self.persisted),
            "cancel_requested": self.cancel_requested,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "history": [dict(h) for h in self.history],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        final_graph = data.get("final_graph")
        return cls(
            id=data["id"],
            document_ref=data["document_ref"],
            project_name=data.get("project_name", ""),
            options=dict(data.get("options") or {}),
            status=JobStatus(data["status"]),
            text_length=data.get("text_length", 0),
            chunks=[Chunk.from_dict(c) for c in data.get("chunks", [])],
            partial_graphs=[ExtractionGraph.from_dict(g) for g in data.get("partial_graphs", [])],
            final_graph=ExtractionGraph.from_dict(final_graph) if final_graph else None,
            conflicts=[MergeConflict.from_dict(c) for c in data.get("conflicts", [])],
            errors=[JobError.from_dict(e) for e in data.get("errors", [])],
            warnings=[JobError.from_dict(w) for w in data.get("warnings", [])],
            token_stats=dict(data.get("token_stats") or new_token_stats()),
            merge_stats=dict(data.get("merge_stats") or {}),
            persisted=dict(data.get("persisted") or {}),
            cancel_requested=bool(data.get("cancel_requested", False)),
            created_at=data.get("created_at", time.time()),
            updated_at=data.get("updated_at", time.time()),
            started_at=data.get("started_at"),
            finished_at=data.get("finished_at"),
            history=list(data.get("history") or []),
        )

    def summary(self) -> Dict[str, Any]:
        """Short view without chunks and graphs, for listings and logs."""
        graph = self.final_graph
        return {
            "id": self.id,
            "document_ref": self.document_ref,
            "project_name": self.project_name,
            "status": self.status.value,
            "chunks": len(self.chunks),
            "entities": len(graph.entities) if graph else 0,
            "relationships": len(graph.relationships) if graph else 0,
            "unresolved": len(graph.unresolved) if graph else 0,
            "errors": len(self.errors),
            "warnings": len(self.warnings),
            "token_stats": dict(self.token_stats),
            "created_at": self.created_at,
            "finished_at": self.finished_at,
        }


@runtime_checkable
class JobStore(Protocol):
    def put(self, job: Job) -> None:
        ...

    def get(self, job_id: str) -> Job:
        """Raises JobNotFoundError for unknown ids."""
        ...

    def list(self, limit: Optional[int] = None, offset: int = 0) -> List[Job]:
        """Jobs newest first."""
        ...


class InMemoryJobStore:
    """Lock-protected dictionary of serialized jobs."""

    def __init__(self):
        self._jobs: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def put(self, job: Job) -> None:
        snapshot = job.to_dict()
        with self._lock:
            self._jobs[job.id] = snapshot

    def get(self, job_id: str) -> Job:
        with self._lock:
            snapshot = self._jobs.get(job_id)
        if snapshot is None:
            raise JobNotFoundError(job_id)
        return Job.from_dict(snapshot)

    def list(self, limit: Optional[int] = None, offset: int = 0) -> List[Job]:
        with self._lock:
            items = list(self._jobs.values())
        items.sort(key=lambda x: x.get("created_at", 0), reverse=True)
        if limit is None:
            items = items[offset:]
        else:
            items = items[offset : offset + limit]
        return [Job.from_dict(item) for item in items]

    def count(self) -> int:
        with self._lock:
            return len(self._jobs)


class RedisJobStore:
    """Jobs as JSON documents in Redis hashes, indexed by a sorted set."""

    def __init__(self, client: Optional[redis.Redis] = None, url: Optional[str] = None, prefix: str = "extraction"):
        self.prefix = prefix
        self._client = client
        self._url = url or settings.redis_url

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            if not self._url:
                raise RuntimeError("REDIS_URL is not configured")
            self._client = redis.from_url(self._url)
        return self._client

    def _job_key(self, job_id: str) -> str:
        return f"{self.prefix}:jobs:{job_id}"

    @property
    def _index_key(self) -> str:
        return f"{self.prefix}:jobs:zset"

    def put(self, job: Job) -> None:
        r = self.client
        r.hset(
            self._job_key(job.id),
            mapping={"status": job.status.value, "data": json.dumps(job.to_dict())},
        )
        r.zadd(self._index_key, {job.id: float(job.created_at)})

    def get(self, job_id: str) -> Job:
        raw = self.client.hget(self._job_key(job_id), "data")
        if raw is None:
            raise JobNotFoundError(job_id)
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode()
        return Job.from_dict(json.loads(raw))

    def list(self, limit: Optional[int] = None, offset: int = 0) -> List[Job]:
        end = -1 if limit is None else offset + limit - 1
        jobs = []
        for idb in self.client.zrevrange(self._index_key, offset, end):
            job_id = idb.decode() if isinstance(idb, (bytes, bytearray)) else str(idb)
            try:
                jobs.append(self.get(job_id))
            except JobNotFoundError:
                logger.warning(f"Job {job_id} is indexed but missing; skipping")
        return jobs

    def count(self) -> int:
        return int(self.client.zcard(self._index_key))


def create_job_store(backend: Optional[str] = None):
    """Build the store selected by ``settings.job_store_backend``."""
    backend = (backend or settings.job_store_backend).lower()
    if backend == "redis":
        return RedisJobStore()
    if backend != "memory":
        logger.warning(f"Unknown job store backend '{backend}', using in-memory store")
    return InMemoryJobStore()
