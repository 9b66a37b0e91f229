"""Domain records shared by the pipeline, the job tracker and persistence."""

from __future__ import annotations

import dataclasses
import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


# ── Enumerations ─────────────────────────────────────────────────


class DocumentStatus(str, enum.Enum):
    uploaded = "uploaded"
    processing = "processing"
    completed = "completed"
    failed = "failed"


class JobType(str, enum.Enum):
    text_extraction = "text_extraction"
    embedding = "embedding"
    test_generation = "test_generation"


class JobStatus(str, enum.Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"


TERMINAL_JOB_STATES = frozenset({JobStatus.completed, JobStatus.failed})


class Category(str, enum.Enum):
    functional = "functional"
    edge_case = "edge_case"
    compliance = "compliance"
    integration = "integration"


# Generation order; also the display order for get_test_cases.
CATEGORY_ORDER: tuple[Category, ...] = (
    Category.functional,
    Category.edge_case,
    Category.compliance,
    Category.integration,
)


class Priority(str, enum.Enum):
    high = "high"
    medium = "medium"
    low = "low"


class Severity(str, enum.Enum):
    High = "High"
    Medium = "Medium"
    Low = "Low"


class Source(str, enum.Enum):
    generated = "generated"
    manual = "manual"
    uploaded = "uploaded"


class ExecutionStatus(str, enum.Enum):
    ready = "ready"
    in_progress = "in_progress"
    complete = "complete"


# ── Records ──────────────────────────────────────────────────────


@dataclass
class Document:
    """An uploaded document after text extraction."""

    text: str
    filename: str = ""
    document_id: str = field(default_factory=_new_id)
    byte_size: int = 0
    status: DocumentStatus = DocumentStatus.uploaded
    created_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self) -> None:
        if not self.byte_size:
            self.byte_size = len(self.text.encode("utf-8"))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.document_id,
            "filename": self.filename,
            "byte_size": self.byte_size,
            "status": self.status.value,
            "created_at": _iso(self.created_at),
        }


@dataclass(frozen=True)
class Chunk:
    """A contiguous text window of a document.

    ``start``/``end`` are character offsets into the normalized text.
    Frozen: attaching an embedding produces a new instance.
    """

    chunk_id: str
    document_id: str
    ordinal: int
    text: str
    start: int
    end: int
    embedding: tuple[float, ...] | None = None

    def with_embedding(self, vector: list[float] | tuple[float, ...]) -> Chunk:
        if self.embedding is not None:
            raise ValueError(f"Chunk {self.chunk_id} is already embedded")
        return dataclasses.replace(self, embedding=tuple(float(v) for v in vector))

    def to_dict(self, include_embedding: bool = False) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.chunk_id,
            "document_id": self.document_id,
            "ordinal": self.ordinal,
            "text": self.text,
            "start": self.start,
            "end": self.end,
        }
        if include_embedding:
            data["embedding"] = list(self.embedding) if self.embedding is not None else None
        return data


@dataclass
class ProcessingJob:
    """Tracked unit of asynchronous work for one document."""

    document_id: str
    job_type: JobType
    job_id: str = field(default_factory=_new_id)
    status: JobStatus = JobStatus.pending
    progress: int = 0
    total_items: int | None = None
    error_message: str | None = None
    result: dict[str, Any] | None = None
    created_at: datetime = field(default_factory=_utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATES

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.job_id,
            "document_id": self.document_id,
            "job_type": self.job_type.value,
            "status": self.status.value,
            "progress": self.progress,
            "total_items": self.total_items,
            "error_message": self.error_message,
            "result": self.result,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProcessingJob:
        return cls(
            job_id=data["id"],
            document_id=data["document_id"],
            job_type=JobType(data["job_type"]),
            status=JobStatus(data["status"]),
            progress=int(data.get("progress", 0)),
            total_items=data.get("total_items"),
            error_message=data.get("error_message"),
            result=data.get("result"),
            created_at=_parse_dt(data.get("created_at")) or _utcnow(),
            started_at=_parse_dt(data.get("started_at")),
            completed_at=_parse_dt(data.get("completed_at")),
        )


@dataclass
class TestCase:
    """A validated, schema-correct test case."""

    __test__ = False  # not a pytest class

    document_id: str
    title: str
    category: Category
    priority: Priority
    severity: Severity
    description: str = ""
    steps: list[str] = field(default_factory=list)
    expected_result: str = ""
    tags: list[str] = field(default_factory=list)
    persona: str = "Other"
    source: Source = Source.generated
    confidence_score: float | None = None
    context_used: list[str] = field(default_factory=list)
    execution_status: ExecutionStatus = ExecutionStatus.ready
    test_case_id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self) -> None:
        # Enum fields are coerced from their exact string values only;
        # anything else raises ValueError.
        self.category = Category(self.category)
        self.priority = Priority(self.priority)
        self.severity = Severity(self.severity)
        self.source = Source(self.source)
        self.execution_status = ExecutionStatus(self.execution_status)
        if self.source is not Source.generated:
            self.confidence_score = None
        elif self.confidence_score is not None:
            self.confidence_score = min(1.0, max(0.0, float(self.confidence_score)))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.test_case_id,
            "document_id": self.document_id,
            "title": self.title,
            "description": self.description,
            "steps": list(self.steps),
            "expected_result": self.expected_result,
            "tags": list(self.tags),
            "category": self.category.value,
            "priority": self.priority.value,
            "severity": self.severity.value,
            "persona": self.persona,
            "source": self.source.value,
            "confidence_score": self.confidence_score,
            "context_used": list(self.context_used),
            "execution_status": self.execution_status.value,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TestCase:
        return cls(
            test_case_id=data["id"],
            document_id=data["document_id"],
            title=data["title"],
            description=data.get("description", ""),
            steps=list(data.get("steps") or []),
            expected_result=data.get("expected_result", ""),
            tags=list(data.get("tags") or []),
            category=Category(data["category"]),
            priority=Priority(data["priority"]),
            severity=Severity(data["severity"]),
            persona=data.get("persona", "Other"),
            source=Source(data.get("source", Source.generated.value)),
            confidence_score=data.get("confidence_score"),
            context_used=list(data.get("context_used") or []),
            execution_status=ExecutionStatus(
                data.get("execution_status", ExecutionStatus.ready.value)
            ),
            created_at=_parse_dt(data.get("created_at")) or _utcnow(),
        )
