"""PipelineManager: coordinates background processing jobs per document."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from case_rag.config import AppConfig
from case_rag.db.repository import Repository
from case_rag.exceptions import (
    CaseRagError,
    DocumentNotFoundError,
    JobCancelledError,
)
from case_rag.generation.orchestrator import GenerationOrchestrator
from case_rag.indexing.chunker import normalize_text
from case_rag.indexing.embedder import EmbeddingAdapter
from case_rag.indexing.store import VectorStore
from case_rag.jobs.tracker import JobTracker, JobWriter
from case_rag.llm.backend import LLMBackend
from case_rag.models import Document, DocumentStatus, JobType, ProcessingJob, TestCase
from case_rag.parsers.registry import extract_text, file_type_from_name
from case_rag.retry import RetryPolicy

logger = logging.getLogger(__name__)


class PipelineManager:
    """Runs one asyncio task per submitted job.

    Documents are processed concurrently; each job has exactly one writer
    (its task).  The server creates a single instance and stores it on
    ``app.state``.
    """

    def __init__(
        self,
        config: AppConfig,
        repository: Repository,
        store: VectorStore,
        embedder: EmbeddingAdapter,
        llm: LLMBackend,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.config = config
        self.repository = repository
        self.store = store
        self._embedder = embedder
        self._llm = llm
        self.tracker = JobTracker(repository)
        self.orchestrator = GenerationOrchestrator(
            config, embedder, store, llm, repository, retry_policy=retry_policy,
        )
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._cancel_events: dict[str, asyncio.Event] = {}
        # Writers whose task has not started running yet.
        self._idle_writers: dict[str, JobWriter] = {}

    # ── Documents ─────────────────────────────────────────────

    async def ingest(self, data: bytes, filename: str, file_type: str | None = None) -> Document:
        """Extract the text of an upload and register the document.

        Runs synchronously under a ``text_extraction`` job so the outcome
        is recorded like any other job.

        Raises:
            UnsupportedFormatError: unknown file type.
            TextExtractionError: the file could not be read.
        """
        ftype = file_type or file_type_from_name(filename)
        document = Document(text="", filename=filename, byte_size=len(data))
        await self.repository.save_document(document)
        job = await self.tracker.create(document.document_id, JobType.text_extraction)

        async with await self.tracker.writer(job.job_id) as writer:
            await writer.start(total_items=1)
            try:
                text = normalize_text(extract_text(data, ftype))
            except CaseRagError as exc:
                await writer.fail(str(exc))
                await self.repository.update_document_status(document.document_id, DocumentStatus.failed)
                raise
            document.text = text
            await self.repository.save_document(document)
            await writer.complete({"characters": len(text), "file_type": ftype})

        logger.info("Ingested %s (%d bytes, %d chars) as %s", filename, len(data), len(text), document.document_id)
        return document

    async def _resolve_document(self, document: Document | str) -> Document:
        if isinstance(document, Document):
            if await self.repository.get_document(document.document_id) is None:
                await self.repository.save_document(document)
            return document
        stored = await self.repository.get_document(document)
        if stored is None:
            raise DocumentNotFoundError(document)
        return stored

    # ── Submit / Cancel ───────────────────────────────────────

    async def submit_document(
        self,
        document: Document | str,
        job_type: JobType = JobType.test_generation,
    ) -> str:
        """Start processing *document* in the background and return the job id.

        Raises:
            ConcurrencyViolationError: the document already has a
                non-terminal job of this type.
            DocumentNotFoundError: unknown document id.
        """
        doc = await self._resolve_document(document)
        job = await self.tracker.create(doc.document_id, job_type)
        writer = await self.tracker.writer(job.job_id)
        cancel_event = asyncio.Event()
        self._cancel_events[job.job_id] = cancel_event
        self._idle_writers[job.job_id] = writer
        self._tasks[job.job_id] = asyncio.create_task(
            self._run(writer, doc, cancel_event), name=f"job-{job.job_id}",
        )
        return job.job_id

    async def cancel(self, job_id: str) -> bool:
        """Request cancellation; observed at the next phase boundary.

        Returns False when the job is already terminal.
        """
        job = await self.tracker.get(job_id)
        event = self._cancel_events.get(job_id)
        if job.is_terminal or event is None:
            return False
        event.set()
        logger.info("Cancellation requested for job %s", job_id)
        return True

    # ── Status ────────────────────────────────────────────────

    async def get_job(self, job_id: str) -> ProcessingJob:
        return await self.tracker.get(job_id)

    async def get_job_status(self, job_id: str) -> dict[str, Any]:
        """Return ``{status, progress, error}`` for *job_id*."""
        job = await self.tracker.get(job_id)
        return {
            "job_id": job.job_id,
            "document_id": job.document_id,
            "job_type": job.job_type.value,
            "status": job.status.value,
            "progress": job.progress,
            "error": job.error_message,
        }

    async def list_jobs(self, document_id: str) -> list[ProcessingJob]:
        return await self.repository.list_jobs(document_id)

    async def get_test_cases(self, document_id: str) -> list[TestCase]:
        """Stored test cases of a document, including the subset of a failed run."""
        if await self.repository.get_document(document_id) is None:
            raise DocumentNotFoundError(document_id)
        return await self.repository.list_test_cases(document_id)

    async def wait(self, job_id: str, timeout: float | None = None) -> ProcessingJob:
        """Wait for the job's task to finish and return the final job."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        return await self.tracker.get(job_id)

    # ── Job body ──────────────────────────────────────────────

    async def _run(self, writer: JobWriter, document: Document, cancel_event: asyncio.Event) -> None:
        doc_id = document.document_id
        job_type = writer.job.job_type
        self._idle_writers.pop(writer.job_id, None)
        async with writer:
            try:
                await writer.start()
                await self.repository.update_document_status(doc_id, DocumentStatus.processing)
                if job_type is JobType.embedding:
                    extraction = await self.orchestrator.extract(
                        document, writer.set_progress, cancel_event,
                    )
                    result = {
                        "chunks_embedded": len(extraction.chunks),
                        "chunks_skipped": len(extraction.skipped),
                        "reused": extraction.reused,
                    }
                else:
                    result = (await self.orchestrator.run(document, writer.set_progress, cancel_event)).to_dict()
                await writer.complete(result)
                await self.repository.update_document_status(doc_id, DocumentStatus.completed)
            except CaseRagError as exc:
                # QuotaShortfallError carries the partial run summary.
                await writer.fail(str(exc), result=exc.details.get("result"))
                await self.repository.update_document_status(doc_id, DocumentStatus.failed)
            except asyncio.CancelledError:
                await writer.fail(JobCancelledError().message)
                await self.repository.update_document_status(doc_id, DocumentStatus.failed)
                raise
            except Exception as exc:
                logger.exception("Job %s crashed", writer.job_id)
                await writer.fail(f"Unexpected error: {exc}")
                await self.repository.update_document_status(doc_id, DocumentStatus.failed)
            finally:
                self._cancel_events.pop(writer.job_id, None)
                self._tasks.pop(writer.job_id, None)

    # ── Shutdown ──────────────────────────────────────────────

    async def close(self) -> None:
        """Cancel running jobs and release backends."""
        tasks = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        # A task cancelled before its first step never reaches _run's handlers.
        for job_id, writer in list(self._idle_writers.items()):
            await writer.fail(JobCancelledError().message)
            writer.release()
            await self.repository.update_document_status(writer.job.document_id, DocumentStatus.failed)
            self._idle_writers.pop(job_id, None)
        self._tasks.clear()
        await self._embedder.close()
        await self._llm.close()
        await self.repository.close()
