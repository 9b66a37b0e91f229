"""Persistence for documents, processing jobs and test cases.

Two implementations share the :class:`Repository` contract:

- :class:`MemoryRepository` for the CLI and tests,
- :class:`SqlRepository` on async SQLAlchemy (PostgreSQL or SQLite).

Both enforce "at most one non-terminal job per (document, job type)" at
insert time, raising :class:`ConcurrencyViolationError`.
"""

from __future__ import annotations

import abc
import dataclasses
import logging
from typing import Any, Callable, Sequence

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from case_rag.db.engine import get_session
from case_rag.db.models import DocumentRow, ProcessingJobRow, TestCaseRow
from case_rag.exceptions import (
    ConcurrencyViolationError,
    DocumentNotFoundError,
    JobNotFoundError,
    TestCaseNotFoundError,
)
from case_rag.models import (
    CATEGORY_ORDER,
    Document,
    DocumentStatus,
    JobStatus,
    JobType,
    ProcessingJob,
    Source,
    TestCase,
)

logger = logging.getLogger(__name__)

_ACTIVE = (JobStatus.pending.value, JobStatus.processing.value)


def _display_order(cases: Sequence[TestCase]) -> list[TestCase]:
    """Category order first, then creation time (stable)."""
    rank = {cat: i for i, cat in enumerate(CATEGORY_ORDER)}
    return sorted(cases, key=lambda tc: (rank[tc.category], tc.created_at))


def _duplicate_job_error(document_id: str, job_type: JobType, existing: str | None) -> ConcurrencyViolationError:
    return ConcurrencyViolationError(
        f"Document {document_id} already has an active {job_type.value} job",
        {"document_id": document_id, "job_type": job_type.value, "existing_job_id": existing},
    )


# Fields a person may edit after creation; identity and provenance stay fixed.
_EDITABLE_FIELDS = frozenset({
    "title", "description", "category", "priority", "severity",
    "persona", "steps", "expected_result", "tags", "execution_status",
})


def _apply_updates(tc: TestCase, updates: dict[str, Any]) -> TestCase:
    rejected = set(updates) - _EDITABLE_FIELDS
    if rejected:
        raise ValueError(f"Fields cannot be updated: {', '.join(sorted(rejected))}")
    # __post_init__ re-validates the enum fields.
    return dataclasses.replace(tc, **updates)


class Repository(abc.ABC):
    """Storage contract used by the job tracker and the pipeline manager."""

    # ── Documents ────────────────────────────────────────────────

    @abc.abstractmethod
    async def save_document(self, document: Document) -> Document: ...

    @abc.abstractmethod
    async def get_document(self, document_id: str) -> Document | None: ...

    @abc.abstractmethod
    async def update_document_status(self, document_id: str, status: DocumentStatus) -> None: ...

    @abc.abstractmethod
    async def list_documents(self) -> list[Document]:
        """All documents, newest first."""

    # ── Jobs ─────────────────────────────────────────────────────

    @abc.abstractmethod
    async def create_job(self, job: ProcessingJob) -> ProcessingJob:
        """Insert a new job.

        Raises ConcurrencyViolationError when the document already has a
        non-terminal job of the same type.
        """

    @abc.abstractmethod
    async def update_job(self, job: ProcessingJob) -> None: ...

    @abc.abstractmethod
    async def get_job(self, job_id: str) -> ProcessingJob | None: ...

    @abc.abstractmethod
    async def list_jobs(self, document_id: str) -> list[ProcessingJob]:
        """Jobs of a document, oldest first."""

    @abc.abstractmethod
    async def active_job(self, document_id: str, job_type: JobType) -> ProcessingJob | None: ...

    # ── Test cases ───────────────────────────────────────────────

    @abc.abstractmethod
    async def add_test_cases(self, cases: Sequence[TestCase]) -> int: ...

    @abc.abstractmethod
    async def replace_generated_test_cases(self, document_id: str, cases: Sequence[TestCase]) -> int:
        """Drop the document's generated test cases, then store *cases*."""

    @abc.abstractmethod
    async def list_test_cases(self, document_id: str) -> list[TestCase]:
        """Stored test cases in category order, then creation order."""

    @abc.abstractmethod
    async def get_test_case(self, test_case_id: str) -> TestCase | None: ...

    @abc.abstractmethod
    async def update_test_case(self, test_case_id: str, updates: dict[str, Any]) -> TestCase:
        """Apply field *updates* and return the stored result.

        Identity fields (id, document, source, creation time) cannot change.

        Raises:
            TestCaseNotFoundError: unknown id.
            ValueError: an update names an immutable field or an unknown
                enum value.
        """

    @abc.abstractmethod
    async def delete_test_case(self, test_case_id: str) -> None:
        """Raises :class:`TestCaseNotFoundError` for an unknown id."""

    async def close(self) -> None:
        """Release resources."""


class MemoryRepository(Repository):
    """Dict-backed repository.  Returned records are copies."""

    def __init__(self) -> None:
        self._documents: dict[str, Document] = {}
        self._jobs: dict[str, ProcessingJob] = {}
        self._cases: dict[str, list[TestCase]] = {}

    async def save_document(self, document: Document) -> Document:
        self._documents[document.document_id] = dataclasses.replace(document)
        return document

    async def get_document(self, document_id: str) -> Document | None:
        doc = self._documents.get(document_id)
        return dataclasses.replace(doc) if doc is not None else None

    async def update_document_status(self, document_id: str, status: DocumentStatus) -> None:
        doc = self._documents.get(document_id)
        if doc is None:
            raise DocumentNotFoundError(document_id)
        doc.status = status

    async def list_documents(self) -> list[Document]:
        docs = sorted(self._documents.values(), key=lambda d: d.created_at, reverse=True)
        return [dataclasses.replace(d) for d in docs]

    async def create_job(self, job: ProcessingJob) -> ProcessingJob:
        # No await between the check and the insert: atomic on the event loop.
        existing = self._find_active(job.document_id, job.job_type)
        if existing is not None:
            raise _duplicate_job_error(job.document_id, job.job_type, existing.job_id)
        self._jobs[job.job_id] = dataclasses.replace(job)
        return job

    async def update_job(self, job: ProcessingJob) -> None:
        if job.job_id not in self._jobs:
            raise JobNotFoundError(job.job_id)
        self._jobs[job.job_id] = dataclasses.replace(job)

    async def get_job(self, job_id: str) -> ProcessingJob | None:
        job = self._jobs.get(job_id)
        return dataclasses.replace(job) if job is not None else None

    async def list_jobs(self, document_id: str) -> list[ProcessingJob]:
        jobs = [j for j in self._jobs.values() if j.document_id == document_id]
        return [dataclasses.replace(j) for j in sorted(jobs, key=lambda j: j.created_at)]

    async def active_job(self, document_id: str, job_type: JobType) -> ProcessingJob | None:
        job = self._find_active(document_id, job_type)
        return dataclasses.replace(job) if job is not None else None

    def _find_active(self, document_id: str, job_type: JobType) -> ProcessingJob | None:
        for job in self._jobs.values():
            if job.document_id == document_id and job.job_type == job_type and not job.is_terminal:
                return job
        return None

    async def add_test_cases(self, cases: Sequence[TestCase]) -> int:
        for tc in cases:
            self._cases.setdefault(tc.document_id, []).append(dataclasses.replace(tc))
        return len(cases)

    async def replace_generated_test_cases(self, document_id: str, cases: Sequence[TestCase]) -> int:
        kept = [tc for tc in self._cases.get(document_id, []) if tc.source is not Source.generated]
        self._cases[document_id] = kept + [dataclasses.replace(tc) for tc in cases]
        return len(cases)

    async def list_test_cases(self, document_id: str) -> list[TestCase]:
        return [dataclasses.replace(tc) for tc in _display_order(self._cases.get(document_id, []))]

    def _locate(self, test_case_id: str) -> tuple[list[TestCase], int]:
        for cases in self._cases.values():
            for i, tc in enumerate(cases):
                if tc.test_case_id == test_case_id:
                    return cases, i
        raise TestCaseNotFoundError(test_case_id)

    async def get_test_case(self, test_case_id: str) -> TestCase | None:
        try:
            cases, i = self._locate(test_case_id)
        except TestCaseNotFoundError:
            return None
        return dataclasses.replace(cases[i])

    async def update_test_case(self, test_case_id: str, updates: dict[str, Any]) -> TestCase:
        cases, i = self._locate(test_case_id)
        cases[i] = _apply_updates(cases[i], updates)
        return dataclasses.replace(cases[i])

    async def delete_test_case(self, test_case_id: str) -> None:
        cases, i = self._locate(test_case_id)
        del cases[i]


class SqlRepository(Repository):
    """Repository on async SQLAlchemy sessions.

    The partial unique index ``uq_jobs_active_per_document`` makes
    duplicate-job detection atomic across processes; the pre-insert
    lookup only produces a friendlier error.
    """

    def __init__(self, session_factory: Callable[[], AsyncSession] | None = None) -> None:
        self._session = session_factory or get_session

    async def save_document(self, document: Document) -> Document:
        async with self._session() as session:
            await session.merge(DocumentRow.from_domain(document))
            await session.commit()
        return document

    async def get_document(self, document_id: str) -> Document | None:
        async with self._session() as session:
            row = await session.get(DocumentRow, document_id)
            return row.to_domain() if row is not None else None

    async def update_document_status(self, document_id: str, status: DocumentStatus) -> None:
        async with self._session() as session:
            row = await session.get(DocumentRow, document_id)
            if row is None:
                raise DocumentNotFoundError(document_id)
            row.status = status.value
            await session.commit()

    async def list_documents(self) -> list[Document]:
        async with self._session() as session:
            result = await session.execute(select(DocumentRow).order_by(DocumentRow.created_at.desc()))
            return [row.to_domain() for row in result.scalars().all()]

    async def create_job(self, job: ProcessingJob) -> ProcessingJob:
        async with self._session() as session:
            existing = await self._find_active(session, job.document_id, job.job_type)
            if existing is not None:
                raise _duplicate_job_error(job.document_id, job.job_type, existing.id)
            session.add(ProcessingJobRow.from_domain(job))
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                logger.info("Concurrent job insert rejected for document %s", job.document_id)
                raise _duplicate_job_error(job.document_id, job.job_type, None) from exc
        return job

    async def update_job(self, job: ProcessingJob) -> None:
        async with self._session() as session:
            row = await session.get(ProcessingJobRow, job.job_id)
            if row is None:
                raise JobNotFoundError(job.job_id)
            row.apply(job)
            await session.commit()

    async def get_job(self, job_id: str) -> ProcessingJob | None:
        async with self._session() as session:
            row = await session.get(ProcessingJobRow, job_id)
            return row.to_domain() if row is not None else None

    async def list_jobs(self, document_id: str) -> list[ProcessingJob]:
        async with self._session() as session:
            result = await session.execute(
                select(ProcessingJobRow)
                .where(ProcessingJobRow.document_id == document_id)
                .order_by(ProcessingJobRow.created_at)
            )
            return [row.to_domain() for row in result.scalars().all()]

    async def active_job(self, document_id: str, job_type: JobType) -> ProcessingJob | None:
        async with self._session() as session:
            row = await self._find_active(session, document_id, job_type)
            return row.to_domain() if row is not None else None

    @staticmethod
    async def _find_active(
        session: AsyncSession, document_id: str, job_type: JobType
    ) -> ProcessingJobRow | None:
        result = await session.execute(
            select(ProcessingJobRow).where(
                ProcessingJobRow.document_id == document_id,
                ProcessingJobRow.job_type == job_type.value,
                ProcessingJobRow.status.in_(_ACTIVE),
            )
        )
        return result.scalars().first()

    async def add_test_cases(self, cases: Sequence[TestCase]) -> int:
        if not cases:
            return 0
        async with self._session() as session:
            session.add_all([TestCaseRow.from_domain(tc) for tc in cases])
            await session.commit()
        logger.debug("Persisted %d test cases.", len(cases))
        return len(cases)

    async def replace_generated_test_cases(self, document_id: str, cases: Sequence[TestCase]) -> int:
        async with self._session() as session:
            await session.execute(
                delete(TestCaseRow).where(
                    TestCaseRow.document_id == document_id,
                    TestCaseRow.source == Source.generated.value,
                )
            )
            session.add_all([TestCaseRow.from_domain(tc) for tc in cases])
            await session.commit()
        logger.debug("Replaced generated test cases of %s with %d.", document_id, len(cases))
        return len(cases)

    async def list_test_cases(self, document_id: str) -> list[TestCase]:
        async with self._session() as session:
            result = await session.execute(
                select(TestCaseRow)
                .where(TestCaseRow.document_id == document_id)
                .order_by(TestCaseRow.created_at)
            )
            return _display_order([row.to_domain() for row in result.scalars().all()])

    async def get_test_case(self, test_case_id: str) -> TestCase | None:
        async with self._session() as session:
            row = await session.get(TestCaseRow, test_case_id)
            return row.to_domain() if row is not None else None

    async def update_test_case(self, test_case_id: str, updates: dict[str, Any]) -> TestCase:
        async with self._session() as session:
            row = await session.get(TestCaseRow, test_case_id)
            if row is None:
                raise TestCaseNotFoundError(test_case_id)
            updated = _apply_updates(row.to_domain(), updates)
            await session.merge(TestCaseRow.from_domain(updated))
            await session.commit()
        return updated

    async def delete_test_case(self, test_case_id: str) -> None:
        async with self._session() as session:
            row = await session.get(TestCaseRow, test_case_id)
            if row is None:
                raise TestCaseNotFoundError(test_case_id)
            await session.delete(row)
            await session.commit()
