"""Job state machine with a single writer per job.

States::

    pending ──► processing ──► completed
       │             │
       └─────────────┴───────► failed

Terminal states are final.  Progress never decreases while a job runs and
the first recorded error is the one the job reports.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from datetime import datetime, timezone
from typing import Any

from case_rag.db.repository import Repository
from case_rag.exceptions import ConcurrencyViolationError, InvalidTransitionError, JobNotFoundError
from case_rag.models import JobStatus, JobType, ProcessingJob

logger = logging.getLogger(__name__)

_ALLOWED: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.pending: frozenset({JobStatus.processing, JobStatus.failed}),
    JobStatus.processing: frozenset({JobStatus.completed, JobStatus.failed}),
    JobStatus.completed: frozenset(),
    JobStatus.failed: frozenset(),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobWriter:
    """Exclusive handle for mutating one job.

    Obtain it from :meth:`JobTracker.writer`; use as an async context
    manager or call :meth:`release` when done.
    """

    def __init__(self, tracker: JobTracker, job: ProcessingJob) -> None:
        self._tracker = tracker
        self._job = job
        self._lock = asyncio.Lock()
        self._released = False

    @property
    def job(self) -> ProcessingJob:
        """Snapshot of the job as last written."""
        return dataclasses.replace(self._job)

    @property
    def job_id(self) -> str:
        return self._job.job_id

    async def __aenter__(self) -> JobWriter:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.release()

    def release(self) -> None:
        if not self._released:
            self._released = True
            self._tracker._release(self._job.job_id, self)

    def _check_usable(self) -> None:
        if self._released:
            raise ConcurrencyViolationError(
                f"Writer for job {self._job.job_id} has been released",
                {"job_id": self._job.job_id},
            )

    def _transition(self, target: JobStatus) -> None:
        current = self._job.status
        if target not in _ALLOWED[current]:
            raise InvalidTransitionError(self._job.job_id, current.value, target.value)
        self._job.status = target

    async def _persist(self) -> None:
        await self._tracker.repository.update_job(self._job)

    # ── Transitions ───────────────────────────────────────────

    async def start(self, total_items: int | None = None) -> None:
        """pending → processing."""
        async with self._lock:
            self._check_usable()
            self._transition(JobStatus.processing)
            self._job.started_at = _utcnow()
            if total_items is not None:
                self._job.total_items = total_items
            await self._persist()
        logger.info("Job %s started (%s).", self._job.job_id, self._job.job_type.value)

    async def set_progress(self, progress: int, total_items: int | None = None) -> None:
        """Record progress.  Raises ValueError if it would decrease."""
        async with self._lock:
            self._check_usable()
            if self._job.status is not JobStatus.processing:
                raise InvalidTransitionError(
                    self._job.job_id, self._job.status.value, "progress update",
                )
            progress = min(int(progress), 100)
            if progress < self._job.progress:
                raise ValueError(
                    f"Progress of job {self._job.job_id} cannot go from "
                    f"{self._job.progress} to {progress}"
                )
            self._job.progress = progress
            if total_items is not None:
                self._job.total_items = total_items
            await self._persist()

    def record_error(self, message: str) -> bool:
        """Remember *message* as the root cause unless one is already set."""
        if self._job.error_message is None:
            self._job.error_message = message
            return True
        logger.debug("Job %s: ignoring later error %r", self._job.job_id, message)
        return False

    async def complete(self, result: dict[str, Any] | None = None) -> None:
        """processing → completed; progress becomes 100."""
        async with self._lock:
            self._check_usable()
            self._transition(JobStatus.completed)
            self._job.progress = 100
            self._job.result = result
            self._job.completed_at = _utcnow()
            await self._persist()
        logger.info("Job %s completed.", self._job.job_id)

    async def fail(self, message: str, result: dict[str, Any] | None = None) -> None:
        """→ failed.  The job keeps the first error recorded on it."""
        async with self._lock:
            self._check_usable()
            self._transition(JobStatus.failed)
            self.record_error(message)
            if result is not None:
                self._job.result = result
            self._job.completed_at = _utcnow()
            await self._persist()
        logger.warning("Job %s failed: %s", self._job.job_id, self._job.error_message)


class JobTracker:
    """Creates jobs and hands out single-writer handles."""

    def __init__(self, repository: Repository) -> None:
        self.repository = repository
        self._writers: dict[str, JobWriter] = {}

    async def create(self, document_id: str, job_type: JobType) -> ProcessingJob:
        """Insert a pending job.  Raises ConcurrencyViolationError on duplicates."""
        job = ProcessingJob(document_id=document_id, job_type=job_type)
        await self.repository.create_job(job)
        logger.info("Created %s job %s for document %s", job_type.value, job.job_id, document_id)
        return job

    async def get(self, job_id: str) -> ProcessingJob:
        writer = self._writers.get(job_id)
        if writer is not None:
            return writer.job
        job = await self.repository.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def writer(self, job_id: str) -> JobWriter:
        """Claim the write handle for *job_id*.

        Raises ConcurrencyViolationError while another writer holds it.
        """
        if job_id in self._writers:
            raise ConcurrencyViolationError(
                f"Job {job_id} already has an active writer", {"job_id": job_id},
            )
        # Reserve before the lookup await so a concurrent claim sees it.
        self._writers[job_id] = None  # type: ignore[assignment]
        try:
            job = await self.repository.get_job(job_id)
        except BaseException:
            del self._writers[job_id]
            raise
        if job is None:
            del self._writers[job_id]
            raise JobNotFoundError(job_id)
        writer = JobWriter(self, job)
        self._writers[job_id] = writer
        return writer

    def has_writer(self, job_id: str) -> bool:
        return job_id in self._writers

    def _release(self, job_id: str, writer: JobWriter) -> None:
        if self._writers.get(job_id) is writer:
            del self._writers[job_id]
