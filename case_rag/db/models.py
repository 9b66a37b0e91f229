"""SQLAlchemy 2.x ORM models for pipeline persistence."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import JSON, DateTime, Float, ForeignKey, Index, Integer, String, Text, func, text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from case_rag.models import (
    Chunk,
    Document,
    DocumentStatus,
    ExecutionStatus,
    JobStatus,
    JobType,
    ProcessingJob,
    TestCase,
)

# Non-terminal states; at most one such row per (document_id, job_type).
_ACTIVE_JOB_FILTER = text("status IN ('pending', 'processing')")


def _aware(value: datetime | None) -> datetime | None:
    """SQLite drops tzinfo; all stored timestamps are UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Base(DeclarativeBase):
    pass


class DocumentRow(Base):
    __tablename__ = "documents"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    filename: Mapped[str] = mapped_column(String(512), default="", server_default="")
    content: Mapped[str] = mapped_column(Text)
    byte_size: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(20), default=DocumentStatus.uploaded.value)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    @classmethod
    def from_domain(cls, doc: Document) -> DocumentRow:
        return cls(
            id=doc.document_id,
            filename=doc.filename,
            content=doc.text,
            byte_size=doc.byte_size,
            status=doc.status.value,
            created_at=doc.created_at,
        )

    def to_domain(self) -> Document:
        return Document(
            document_id=self.id,
            filename=self.filename,
            text=self.content,
            byte_size=self.byte_size,
            status=DocumentStatus(self.status),
            created_at=_aware(self.created_at),
        )


class ChunkRow(Base):
    __tablename__ = "chunks"

    id: Mapped[str] = mapped_column(String(80), primary_key=True)
    document_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("documents.id", ondelete="CASCADE"), index=True
    )
    ordinal: Mapped[int] = mapped_column(Integer)
    text: Mapped[str] = mapped_column(Text)
    start: Mapped[int] = mapped_column(Integer)
    end: Mapped[int] = mapped_column(Integer)
    embedding: Mapped[list[float]] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (Index("idx_chunks_doc_ordinal", "document_id", "ordinal"),)

    @classmethod
    def from_domain(cls, chunk: Chunk) -> ChunkRow:
        return cls(
            id=chunk.chunk_id,
            document_id=chunk.document_id,
            ordinal=chunk.ordinal,
            text=chunk.text,
            start=chunk.start,
            end=chunk.end,
            embedding=list(chunk.embedding or ()),
        )

    def to_domain(self) -> Chunk:
        return Chunk(
            chunk_id=self.id,
            document_id=self.document_id,
            ordinal=self.ordinal,
            text=self.text,
            start=self.start,
            end=self.end,
            embedding=tuple(self.embedding),
        )


class ProcessingJobRow(Base):
    __tablename__ = "processing_jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    document_id: Mapped[str] = mapped_column(String(36), index=True)
    job_type: Mapped[str] = mapped_column(String(30))
    status: Mapped[str] = mapped_column(String(20), default=JobStatus.pending.value)
    progress: Mapped[int] = mapped_column(Integer, default=0)
    total_items: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    result: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index(
            "uq_jobs_active_per_document",
            "document_id",
            "job_type",
            unique=True,
            postgresql_where=_ACTIVE_JOB_FILTER,
            sqlite_where=_ACTIVE_JOB_FILTER,
        ),
    )

    @classmethod
    def from_domain(cls, job: ProcessingJob) -> ProcessingJobRow:
        row = cls(id=job.job_id)
        row.apply(job)
        return row

    def apply(self, job: ProcessingJob) -> None:
        self.document_id = job.document_id
        self.job_type = job.job_type.value
        self.status = job.status.value
        self.progress = job.progress
        self.total_items = job.total_items
        self.error_message = job.error_message
        self.result = job.result
        self.created_at = job.created_at
        self.started_at = job.started_at
        self.completed_at = job.completed_at

    def to_domain(self) -> ProcessingJob:
        return ProcessingJob(
            job_id=self.id,
            document_id=self.document_id,
            job_type=JobType(self.job_type),
            status=JobStatus(self.status),
            progress=self.progress,
            total_items=self.total_items,
            error_message=self.error_message,
            result=self.result,
            created_at=_aware(self.created_at),
            started_at=_aware(self.started_at),
            completed_at=_aware(self.completed_at),
        )


class TestCaseRow(Base):
    __tablename__ = "test_cases"
    __test__ = False

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    document_id: Mapped[str] = mapped_column(String(36), index=True)
    title: Mapped[str] = mapped_column(String(500))
    description: Mapped[str] = mapped_column(Text, default="")
    steps: Mapped[list[str]] = mapped_column(JSON)
    expected_result: Mapped[str] = mapped_column(Text, default="")
    tags: Mapped[list[str]] = mapped_column(JSON)
    category: Mapped[str] = mapped_column(String(20))
    priority: Mapped[str] = mapped_column(String(10))
    severity: Mapped[str] = mapped_column(String(10))
    persona: Mapped[str] = mapped_column(String(100), default="Other")
    source: Mapped[str] = mapped_column(String(20), default="generated")
    confidence_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    context_used: Mapped[list[str]] = mapped_column(JSON)
    execution_status: Mapped[str] = mapped_column(
        String(20), default=ExecutionStatus.ready.value
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    @classmethod
    def from_domain(cls, tc: TestCase) -> TestCaseRow:
        return cls(
            id=tc.test_case_id,
            document_id=tc.document_id,
            title=tc.title,
            description=tc.description,
            steps=list(tc.steps),
            expected_result=tc.expected_result,
            tags=list(tc.tags),
            category=tc.category.value,
            priority=tc.priority.value,
            severity=tc.severity.value,
            persona=tc.persona,
            source=tc.source.value,
            confidence_score=tc.confidence_score,
            context_used=list(tc.context_used),
            execution_status=tc.execution_status.value,
            created_at=tc.created_at,
        )

    def to_domain(self) -> TestCase:
        data = {
            "id": self.id,
            "document_id": self.document_id,
            "title": self.title,
            "description": self.description,
            "steps": self.steps,
            "expected_result": self.expected_result,
            "tags": self.tags,
            "category": self.category,
            "priority": self.priority,
            "severity": self.severity,
            "persona": self.persona,
            "source": self.source,
            "confidence_score": self.confidence_score,
            "context_used": self.context_used,
            "execution_status": self.execution_status,
        }
        tc = TestCase.from_dict(data)
        tc.created_at = _aware(self.created_at)
        return tc
