"""
Tests for job records and job stores (job_store.py).
"""

import json
from unittest.mock import MagicMock

import pytest

from core.chunking import Chunk
from core.entity_graph import MergeConflict
from core.entity_models import EntityKind, ExtractionGraph, Relationship, RelationshipType, Requirement, Role
from core.exceptions import ErrorKind, InvalidJobStateError, JobError, JobNotFoundError
from core.job_store import (
    InMemoryJobStore,
    Job,
    JobStatus,
    JobStore,
    RedisJobStore,
    create_job_store,
)


class FakeRedis:
    """Just enough of the redis client for RedisJobStore."""

    def __init__(self):
        self.hashes = {}
        self.zsets = {}

    def hset(self, key, mapping):
        self.hashes.setdefault(key, {}).update({k: v.encode() for k, v in mapping.items()})

    def hget(self, key, field):
        return self.hashes.get(key, {}).get(field)

    def zadd(self, key, mapping):
        self.zsets.setdefault(key, {}).update(mapping)

    def zrevrange(self, key, start, end):
        members = sorted(self.zsets.get(key, {}).items(), key=lambda item: item[1], reverse=True)
        ids = [member.encode() for member, _ in members]
        return ids[start:] if end == -1 else ids[start : end + 1]

    def zcard(self, key):
        return len(self.zsets.get(key, {}))


def _full_job(created_at=100.0):
    graph = ExtractionGraph(chunk_index=0)
    graph.add_entity(Requirement(id="r1", name="Login", aliases=["r2"]))
    graph.add_entity(Role(id="role-x", name="Admin"))
    graph.add_relationship(Relationship(RelationshipType.OWNED_BY, "r1", "role-x"))
    job = Job(document_ref="docs/portal.txt", project_name="portal", options={"model": "llama3.2"}, created_at=created_at)
    job.text_length = 42
    job.chunks = [Chunk(index=0, text="Login.", token_count=2, start_offset=0, end_offset=6)]
    job.partial_graphs = [graph]
    job.final_graph = graph
    job.conflicts = [MergeConflict(EntityKind.REQUIREMENT, "r1", "priority", "high", "low", 1)]
    job.errors = [JobError(ErrorKind.DECODE_FAILURE, "bad table", chunk_index=1)]
    job.warnings = [JobError(ErrorKind.DANGLING_RELATIONSHIP, "1 unresolved")]
    return job


class TestJobTransitions:
    def test_happy_path(self):
        job = Job(document_ref="a.txt")
        for status in (
            JobStatus.TEXT_EXTRACTED,
            JobStatus.CHUNKED,
            JobStatus.PROMPTING,
            JobStatus.MERGING,
            JobStatus.COMPLETED,
        ):
            job.transition(status)
        assert job.status == JobStatus.COMPLETED
        assert job.started_at is not None
        assert job.finished_at is not None
        assert [h["status"] for h in job.history][0] == "pending"
        assert len(job.history) == 6

    def test_skipping_a_stage_is_rejected(self):
        job = Job(document_ref="a.txt")
        with pytest.raises(InvalidJobStateError):
            job.transition(JobStatus.PROMPTING)
        assert job.status == JobStatus.PENDING

    def test_terminal_states_are_final(self):
        job = Job(document_ref="a.txt")
        job.transition(JobStatus.FAILED)
        with pytest.raises(InvalidJobStateError):
            job.transition(JobStatus.TEXT_EXTRACTED)

    def test_merging_cannot_be_cancelled(self):
        job = Job(document_ref="a.txt")
        for status in (JobStatus.TEXT_EXTRACTED, JobStatus.CHUNKED, JobStatus.PROMPTING, JobStatus.MERGING):
            job.transition(status)
        with pytest.raises(InvalidJobStateError):
            job.transition(JobStatus.CANCELLED)

    def test_terminal_flags(self):
        assert JobStatus.COMPLETED_WITH_WARNINGS.is_terminal
        assert JobStatus.CANCELLED.is_terminal
        assert not JobStatus.MERGING.is_terminal


class TestJobSerialization:
    def test_round_trip(self):
        job = _full_job()
        restored = Job.from_dict(json.loads(json.dumps(job.to_dict())))

        assert restored.id == job.id
        assert restored.status == job.status
        assert restored.chunks == job.chunks
        assert restored.final_graph.entities == job.final_graph.entities
        assert restored.final_graph.relationships == job.final_graph.relationships
        assert restored.conflicts == job.conflicts
        assert restored.errors == job.errors
        assert restored.warnings == job.warnings
        assert restored.history == job.history

    def test_summary(self):
        summary = _full_job().summary()
        assert summary["entities"] == 2
        assert summary["relationships"] == 1
        assert summary["errors"] == 1
        assert summary["warnings"] == 1
        assert "chunks" in summary and summary["chunks"] == 1


class TestInMemoryJobStore:
    def test_put_and_get(self):
        store = InMemoryJobStore()
        job = _full_job()
        store.put(job)
        assert store.get(job.id).final_graph.entities == job.final_graph.entities

    def test_reads_are_snapshots(self):
        store = InMemoryJobStore()
        job = Job(document_ref="a.txt")
        store.put(job)
        job.transition(JobStatus.TEXT_EXTRACTED)
        assert store.get(job.id).status == JobStatus.PENDING

        fetched = store.get(job.id)
        fetched.project_name = "changed"
        assert store.get(job.id).project_name == ""

    def test_unknown_id(self):
        with pytest.raises(JobNotFoundError):
            InMemoryJobStore().get("missing")

    def test_list_newest_first_with_paging(self):
        store = InMemoryJobStore()
        jobs = [Job(document_ref=f"{i}.txt", created_at=float(i)) for i in range(5)]
        for job in jobs:
            store.put(job)

        assert [j.document_ref for j in store.list()] == ["4.txt", "3.txt", "2.txt", "1.txt", "0.txt"]
        assert [j.document_ref for j in store.list(limit=2, offset=1)] == ["3.txt", "2.txt"]
        assert store.count() == 5

    def test_satisfies_protocol(self):
        assert isinstance(InMemoryJobStore(), JobStore)


class TestRedisJobStore:
    def test_put_get_and_list(self):
        fake = FakeRedis()
        store = RedisJobStore(client=fake, prefix="test")
        older = _full_job(created_at=1.0)
        newer = Job(document_ref="b.txt", created_at=2.0)
        store.put(older)
        store.put(newer)

        assert f"test:jobs:{older.id}" in fake.hashes
        assert fake.hashes[f"test:jobs:{older.id}"]["status"] == b"pending"

        restored = store.get(older.id)
        assert restored.final_graph.entities == older.final_graph.entities
        assert [j.id for j in store.list()] == [newer.id, older.id]
        assert [j.id for j in store.list(limit=1)] == [newer.id]
        assert store.count() == 2

    def test_missing_indexed_job_is_skipped(self):
        fake = FakeRedis()
        store = RedisJobStore(client=fake)
        job = Job(document_ref="a.txt")
        store.put(job)
        fake.zadd("extraction:jobs:zset", {"ghost": 99999999999.0})

        assert [j.id for j in store.list()] == [job.id]
        with pytest.raises(JobNotFoundError):
            store.get("ghost")

    def test_client_is_built_lazily_from_url(self, monkeypatch):
        client = MagicMock()
        from_url = MagicMock(return_value=client)
        monkeypatch.setattr("core.job_store.redis.from_url", from_url)

        store = RedisJobStore(url="redis://localhost:6379/0")
        from_url.assert_not_called()
        assert store.client is client
        from_url.assert_called_once_with("redis://localhost:6379/0")

    def test_missing_url(self, monkeypatch):
        monkeypatch.setattr("core.job_store.settings.redis_url", None, raising=False)
        store = RedisJobStore()
        with pytest.raises(RuntimeError):
            _ = store.client


class TestCreateJobStore:
    def test_backends(self):
        assert isinstance(create_job_store("memory"), InMemoryJobStore)
        assert isinstance(create_job_store("redis"), RedisJobStore)
        assert isinstance(create_job_store("something-else"), InMemoryJobStore)
