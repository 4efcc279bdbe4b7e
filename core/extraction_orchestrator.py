"""
Extraction job orchestration.

A job moves PENDING -> TEXT_EXTRACTED -> CHUNKED -> PROMPTING -> MERGING ->
COMPLETED / COMPLETED_WITH_WARNINGS, or ends FAILED / CANCELLED. Chunks are
prompted concurrently, bounded by ``options.concurrency``. A failing chunk is
recorded on the job and never aborts it; the job fails only when text
extraction fails, the document is empty, or no chunk produced a graph.
"""

import asyncio
import logging
import threading
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError

from config.settings import ExtractionOptions
from core.chunking import Chunk, TokenChunker, document_chunker, validate_chunk_parameters
from core.entity_extraction import ChunkExtraction, ChunkExtractor, retry_async
from core.entity_graph import MergeEngine, merge_engine
from core.exceptions import (
    ErrorKind,
    ExtractionError,
    InvalidConfigurationError,
    InvalidJobStateError,
    JobAlreadyRunningError,
    JobError,
    PersistenceError,
)
from core.id_generator import IdGenerator
from core.job_store import InMemoryJobStore, Job, JobStatus

logger = logging.getLogger(__name__)

OptionsLike = Union[ExtractionOptions, Mapping[str, Any], None]


class ExtractionOrchestrator:
    """Runs extraction jobs against the configured collaborators."""

    def __init__(
        self,
        text_extractor,
        model_service,
        job_store=None,
        persistence=None,
        chunker: Optional[TokenChunker] = None,
        merger: Optional[MergeEngine] = None,
        chunk_extractor: Optional[ChunkExtractor] = None,
        sleep=asyncio.sleep,
    ):
        self.text_extractor = text_extractor
        self.model_service = model_service
        self.job_store = job_store or InMemoryJobStore()
        self.persistence = persistence
        self.chunker = chunker or document_chunker
        self.merger = merger or merge_engine
        self.chunk_extractor = chunk_extractor or ChunkExtractor(model_service, sleep=sleep)
        self.sleep = sleep
        self._running: set = set()
        self._cancelled: set = set()
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Job API
    # ------------------------------------------------------------------

    def create_job(self, document_ref: str, project_name: str = "", options: OptionsLike = None) -> Job:
        """
        Validate options and store a new PENDING job.

        Raises:
            InvalidConfigurationError: invalid options; no job is created
        """
        resolved = self._resolve_options(options)
        job = Job(document_ref=document_ref, project_name=project_name, options=resolved.model_dump())
        self.job_store.put(job)
        logger.info(f"Created extraction job {job.id} for '{document_ref}' (model={resolved.model})")
        return job

    async def run(self, job_id: str) -> Job:
        """
        Run a PENDING job to a terminal state and return it.

        Raises:
            JobNotFoundError: unknown job id
            JobAlreadyRunningError: the job is being run already
            InvalidJobStateError: the job is not PENDING
        """
        job = self.job_store.get(job_id)
        with self._lock:
            if job_id in self._running:
                raise JobAlreadyRunningError(f"Job {job_id} is already running")
            if job.status != JobStatus.PENDING:
                raise InvalidJobStateError(
                    f"Job {job_id} is {job.status.value}; only pending jobs can be run"
                )
            self._running.add(job_id)

        try:
            await self._execute(job)
        except Exception as e:
            logger.exception(f"Job {job.id} crashed: {e}")
            if not job.status.is_terminal:
                job.errors.append(JobError(ErrorKind.INTERNAL, f"{type(e).__name__}: {e}"))
                job.transition(JobStatus.FAILED)
                self.job_store.put(job)
        finally:
            with self._lock:
                self._running.discard(job_id)
                self._cancelled.discard(job_id)
        return job

    async def extract(self, document_ref: str, project_name: str = "", options: OptionsLike = None) -> Job:
        """Create a job and run it."""
        job = self.create_job(document_ref, project_name, options)
        return await self.run(job.id)

    def cancel(self, job_id: str) -> Job:
        """
        Request cancellation of a job.

        A pending job is cancelled at once. A running job stops at the next
        chunk boundary: chunks not yet started are skipped and the graphs of
        finished chunks are merged but not persisted. Terminal jobs are
        returned unchanged.
        """
        job = self.job_store.get(job_id)
        if job.status.is_terminal:
            return job
        with self._lock:
            self._cancelled.add(job_id)
            running = job_id in self._running
        if not running:
            job.cancel_requested = True
            job.transition(JobStatus.CANCELLED)
            self.job_store.put(job)
            with self._lock:
                self._cancelled.discard(job_id)
        logger.info(f"Cancellation requested for job {job_id} (running={running})")
        return job

    def get_job(self, job_id: str) -> Job:
        return self.job_store.get(job_id)

    def list_jobs(self, limit: Optional[int] = None, offset: int = 0) -> List[Job]:
        return self.job_store.list(limit=limit, offset=offset)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    @staticmethod
    def _resolve_options(options: OptionsLike) -> ExtractionOptions:
        if isinstance(options, ExtractionOptions):
            resolved = options
        else:
            try:
                resolved = ExtractionOptions(**dict(options or {}))
            except ValidationError as e:
                raise InvalidConfigurationError(f"Invalid extraction options: {e}") from e
        validate_chunk_parameters(resolved.chunk_target_tokens, resolved.chunk_overlap_tokens)
        return resolved

    def _is_cancelled(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._cancelled

    def _fail(self, job: Job, kind: ErrorKind, message: str) -> None:
        logger.error(f"Job {job.id} failed: {message}")
        job.errors.append(JobError(kind, message))
        job.transition(JobStatus.FAILED)
        self.job_store.put(job)

    def _finish_cancelled(self, job: Job) -> None:
        job.cancel_requested = True
        if job.partial_graphs:
            result = self.merger.merge(job.partial_graphs)
            job.final_graph = result.graph
            job.conflicts = result.conflicts
            job.merge_stats = result.stats.to_dict()
        job.transition(JobStatus.CANCELLED)
        self.job_store.put(job)
        logger.info(
            f"Job {job.id} cancelled after {len(job.partial_graphs)}/{len(job.chunks)} chunks"
        )

    async def _execute(self, job: Job) -> None:
        options = ExtractionOptions(**job.options)
        loop = asyncio.get_running_loop()
        logger.info(f"Starting extraction job {job.id} for '{job.document_ref}'")

        if self._is_cancelled(job.id):
            self._finish_cancelled(job)
            return

        try:
            text = await retry_async(
                lambda: loop.run_in_executor(None, self.text_extractor.extract, job.document_ref),
                max_retries=options.max_retries,
                base_delay=options.retry_base_delay,
                max_delay=options.retry_max_delay,
                description=f"text extraction of '{job.document_ref}'",
                sleep=self.sleep,
            )
        except ExtractionError as e:
            self._fail(job, e.kind, f"Text extraction failed: {e}")
            return

        job.text_length = len(text or "")
        job.transition(JobStatus.TEXT_EXTRACTED)
        self.job_store.put(job)
        if not text or not text.strip():
            self._fail(job, ErrorKind.TEXT_EXTRACTION, "Document contains no text")
            return
        if self._is_cancelled(job.id):
            self._finish_cancelled(job)
            return

        chunks = self.chunker.chunk(
            text,
            target_size=options.chunk_target_tokens,
            overlap=options.chunk_overlap_tokens,
            model_id=options.model,
        )
        job.chunks = chunks
        job.transition(JobStatus.CHUNKED)
        self.job_store.put(job)
        logger.info(f"Job {job.id}: {len(text)} chars in {len(chunks)} chunks")
        if self._is_cancelled(job.id):
            self._finish_cancelled(job)
            return

        job.transition(JobStatus.PROMPTING)
        self.job_store.put(job)
        await self._prompt_chunks(job, chunks, options)

        if self._is_cancelled(job.id):
            self._finish_cancelled(job)
            return

        if not job.partial_graphs:
            kind = job.errors[0].kind if job.errors else ErrorKind.INTERNAL
            self._fail(job, kind, f"No chunk produced a graph ({len(chunks)} chunks failed)")
            return

        job.transition(JobStatus.MERGING)
        self.job_store.put(job)
        result = self.merger.merge(job.partial_graphs)
        job.final_graph = result.graph
        job.conflicts = result.conflicts
        job.merge_stats = result.stats.to_dict()
        if result.graph.unresolved:
            job.warnings.append(
                JobError(
                    ErrorKind.DANGLING_RELATIONSHIP,
                    f"{len(result.graph.unresolved)} relationships reference unknown entities",
                )
            )

        if options.persist:
            await self._persist(job, loop)

        final_status = (
            JobStatus.COMPLETED_WITH_WARNINGS if job.errors or job.warnings else JobStatus.COMPLETED
        )
        job.transition(final_status)
        self.job_store.put(job)
        logger.info(
            f"Job {job.id} {final_status.value}: {len(result.graph.entities)} entities, "
            f"{len(result.graph.relationships)} relationships, {len(job.errors)} errors, "
            f"{len(job.warnings)} warnings"
        )

    async def _prompt_chunks(self, job: Job, chunks: List[Chunk], options: ExtractionOptions) -> None:
        sem = asyncio.Semaphore(options.concurrency)
        lock = asyncio.Lock()
        id_generator = IdGenerator(scope=job.id[:8])
        total = len(chunks)

        async def _sem_extract(chunk: Chunk) -> None:
            async with sem:
                if self._is_cancelled(job.id):
                    async with lock:
                        job.errors.append(
                            JobError(ErrorKind.CANCELLED, "Chunk skipped: job cancelled", chunk.index)
                        )
                    return
                try:
                    result = await self.chunk_extractor.extract(chunk, total, options, id_generator)
                except ExtractionError as e:
                    logger.error(f"Extraction failed for chunk {chunk.index}: {e}")
                    async with lock:
                        job.errors.append(JobError(e.kind, str(e), chunk.index))
                        self.job_store.put(job)
                    return
                except Exception as e:
                    logger.exception(f"Unexpected error in chunk {chunk.index}: {e}")
                    async with lock:
                        job.errors.append(
                            JobError(ErrorKind.INTERNAL, f"{type(e).__name__}: {e}", chunk.index)
                        )
                        self.job_store.put(job)
                    return

                async with lock:
                    self._record_chunk(job, result)
                    self.job_store.put(job)

        await asyncio.gather(*(_sem_extract(chunk) for chunk in chunks))
        job.partial_graphs.sort(key=lambda g: g.chunk_index if g.chunk_index is not None else total)

    @staticmethod
    def _record_chunk(job: Job, result: ChunkExtraction) -> None:
        job.partial_graphs.append(result.graph)
        for kind, message in result.warnings:
            job.warnings.append(JobError(kind, message, result.chunk_index))
        stats = job.token_stats
        stats["prompt_tokens"] += result.prompt_tokens
        stats["completion_tokens"] += result.completion_tokens
        stats["total_tokens"] = stats["prompt_tokens"] + stats["completion_tokens"]
        stats["chunks_processed"] += 1
        logger.debug(
            f"Job {job.id}: chunk {result.chunk_index} done "
            f"({stats['chunks_processed']}/{len(job.chunks)})"
        )

    async def _persist(self, job: Job, loop: asyncio.AbstractEventLoop) -> None:
        if self.persistence is None:
            job.warnings.append(
                JobError(ErrorKind.PERSISTENCE, "Persistence requested but no graph store is configured")
            )
            return
        graph = job.final_graph
        try:
            entities = await loop.run_in_executor(
                None, self.persistence.merge_entities, graph.entities, job.project_name
            )
            relationships = await loop.run_in_executor(
                None, self.persistence.merge_relationships, graph.relationships, job.project_name
            )
        except PersistenceError as e:
            logger.warning(f"Job {job.id}: persisting the graph failed: {e}")
            job.warnings.append(JobError(e.kind, f"Graph not persisted: {e}"))
            return
        job.persisted = {"entities": entities, "relationships": relationships}
        logger.info(f"Job {job.id}: persisted {entities} entities and {relationships} relationships")
