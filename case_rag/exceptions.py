"""Exception hierarchy for the test-case generation pipeline.

Every error carries a human-readable message plus an optional ``details``
dict for logging.  Transient vs. permanent service errors drive the retry
behaviour of the adapters; the remaining classes surface to callers.
"""

from __future__ import annotations

from typing import Any


class CaseRagError(Exception):
    """Base class for all pipeline errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        return self.message


class UnsupportedFormatError(CaseRagError):
    """Raised by the text extractor for file types it cannot decode."""

    def __init__(self, file_type: str) -> None:
        super().__init__(f"Unsupported file format: {file_type}", {"file_type": file_type})
        self.file_type = file_type


class TransientServiceError(CaseRagError):
    """Timeout, 5xx, rate limit or connection failure; safe to retry."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        details = details or {}
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, details)
        self.status_code = status_code


class PermanentServiceError(CaseRagError):
    """4xx or malformed input/output; retrying the same call will not help."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        details = details or {}
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, details)
        self.status_code = status_code


class QuotaShortfallError(CaseRagError):
    """Fewer validated test cases than required after all attempts."""

    def __init__(self, produced: int, required: int) -> None:
        super().__init__(
            f"quota shortfall: {produced}/{required}",
            {"produced": produced, "required": required, "missing": required - produced},
        )
        self.produced = produced
        self.required = required

    @property
    def missing(self) -> int:
        return self.required - self.produced


class ConcurrencyViolationError(CaseRagError):
    """A second writer or a duplicate non-terminal job was attempted."""


class InvalidTransitionError(CaseRagError):
    """A job state change that the state machine does not allow."""

    def __init__(self, job_id: str, current: str, target: str) -> None:
        super().__init__(
            f"Job {job_id} cannot move from {current} to {target}",
            {"job_id": job_id, "current": current, "target": target},
        )


class JobNotFoundError(CaseRagError):
    """Lookup of an unknown job id."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}", {"job_id": job_id})
        self.job_id = job_id


class DocumentNotFoundError(CaseRagError):
    """Lookup of an unknown document id."""

    def __init__(self, document_id: str) -> None:
        super().__init__(f"Document not found: {document_id}", {"document_id": document_id})
        self.document_id = document_id


class TestCaseNotFoundError(CaseRagError):
    """Lookup of an unknown test case id."""

    __test__ = False  # not a pytest class

    def __init__(self, test_case_id: str) -> None:
        super().__init__(f"Test case not found: {test_case_id}", {"test_case_id": test_case_id})
        self.test_case_id = test_case_id


class JobCancelledError(CaseRagError):
    """Raised at a phase boundary when cancellation was requested."""

    def __init__(self) -> None:
        super().__init__("cancelled")


class TextExtractionError(CaseRagError):
    """A supported file could not be decoded (corrupt, encrypted, not UTF-8)."""

    def __init__(self, file_type: str, reason: str) -> None:
        super().__init__(
            f"Could not extract text from {file_type} file: {reason}",
            {"file_type": file_type, "reason": reason},
        )
        self.file_type = file_type
