"""FastAPI server for the test case generation pipeline."""

from __future__ import annotations

import logging
import secrets
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, File, HTTPException, Request, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from case_rag.config import AppConfig, config_to_dict, load_config, resolve_secret
from case_rag.exceptions import (
    ConcurrencyViolationError,
    DocumentNotFoundError,
    JobNotFoundError,
    TestCaseNotFoundError,
    TextExtractionError,
    UnsupportedFormatError,
)
from case_rag.jobs.manager import PipelineManager
from case_rag.models import (
    Category,
    ExecutionStatus,
    JobType,
    Priority,
    Severity,
    Source,
    TestCase,
)

logger = logging.getLogger(__name__)

# ── Request / Response models ────────────────────────────────────────


class GenerateRequest(BaseModel):
    job_type: JobType = JobType.test_generation


class JobAccepted(BaseModel):
    job_id: str
    document_id: str
    status: str


class JobStatusResponse(BaseModel):
    job_id: str
    document_id: str
    job_type: str
    status: str
    progress: int
    error: str | None = None


class ManualTestCase(BaseModel):
    """A test case written by a person; enum fields take exact values only."""

    model_config = ConfigDict(extra="forbid")

    title: str = Field(min_length=1, max_length=500)
    description: str = ""
    category: Category
    priority: Priority
    severity: Severity
    persona: str = "Other"
    steps: list[str] = Field(default_factory=list)
    expected_result: str = ""
    tags: list[str] = Field(default_factory=list)
    source: Source = Source.manual
    execution_status: ExecutionStatus = ExecutionStatus.ready


class ManualTestCasesRequest(BaseModel):
    test_cases: list[ManualTestCase] = Field(min_length=1, max_length=500)


class TestCaseUpdate(BaseModel):
    """Partial edit of a stored test case; omitted fields keep their value."""

    model_config = ConfigDict(extra="forbid")

    title: str | None = Field(default=None, min_length=1, max_length=500)
    description: str | None = None
    category: Category | None = None
    priority: Priority | None = None
    severity: Severity | None = None
    persona: str | None = None
    steps: list[str] | None = None
    expected_result: str | None = None
    tags: list[str] | None = None
    execution_status: ExecutionStatus | None = None


# ── App factory ──────────────────────────────────────────────────────


def _build_manager(config: AppConfig, db_url: str | None) -> PipelineManager:
    """Wire the default components from configuration."""
    from case_rag.db.repository import MemoryRepository, SqlRepository
    from case_rag.db.vector_store import SqlVectorStore
    from case_rag.indexing.embedder import create_embedding_adapter
    from case_rag.indexing.store import MemoryVectorStore
    from case_rag.llm.backend import create_backend

    if db_url:
        repository = SqlRepository()
        store = SqlVectorStore(config.embedding.dimension)
    else:
        logger.warning("No database configured; documents and jobs are kept in memory only.")
        repository = MemoryRepository()
        store = MemoryVectorStore(config.embedding.dimension)
    return PipelineManager(
        config=config,
        repository=repository,
        store=store,
        embedder=create_embedding_adapter(config),
        llm=create_backend(config),
    )


def create_app(
    config: AppConfig | None = None,
    manager: PipelineManager | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        config: Optional AppConfig (loaded from config.yaml if None).
        manager: Pre-built pipeline manager (tests inject fakes here).

    Returns:
        Configured FastAPI app.
    """
    if config is None:
        config = load_config()

    db_url: str | None = None
    if config.database and config.database.url:
        from case_rag.db.engine import get_database_url

        db_url = get_database_url(config.database.url)

    if manager is None:
        manager = _build_manager(config, db_url)

    # ── Lifespan ─────────────────────────────────────────────────────

    @asynccontextmanager
    async def lifespan(application: FastAPI):
        if db_url:
            from case_rag.db.engine import create_schema, init_engine

            init_engine(db_url)
            if db_url.startswith("sqlite"):
                await create_schema()
            logger.info("Database persistence enabled")

        yield

        await application.state.manager.close()
        if db_url:
            from case_rag.db.engine import close_engine

            await close_engine()

    # ── Build FastAPI app ────────────────────────────────────────────

    app = FastAPI(
        title="Case RAG",
        description="Business documents to classified test cases via RAG",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.api.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Auth ─────────────────────────────────────────────────────────

    async def require_token(request: Request) -> None:
        """Bearer capability token, enforced only when one is configured."""
        expected = resolve_secret(app.state.config.api.token_env)
        if not expected:
            return
        header = request.headers.get("Authorization", "")
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not secrets.compare_digest(token.strip(), expected):
            raise HTTPException(
                status_code=401,
                detail="Missing or invalid bearer token",
                headers={"WWW-Authenticate": "Bearer"},
            )

    auth = [Depends(require_token)]

    def _manager() -> PipelineManager:
        return app.state.manager

    # ── Routes ───────────────────────────────────────────────────────

    @app.get("/api/health")
    async def health() -> dict:
        store_ok = False
        chunk_count = 0
        try:
            chunk_count = await _manager().store.count()
            store_ok = True
        except Exception:
            logger.warning("Vector store health check failed", exc_info=True)

        return {
            "status": "ok",
            "components": {
                "vector_store": {"ok": store_ok, "chunks": chunk_count},
                "database": {"enabled": db_url is not None},
            },
        }

    @app.get("/api/config", dependencies=auth)
    async def get_config() -> dict:
        """Return the active configuration with secrets redacted."""
        cfg = app.state.config
        data = config_to_dict(cfg)
        data["llm"]["_api_key_is_set"] = bool(resolve_secret(cfg.llm.api_key_env))
        data["embedding"]["_api_key_is_set"] = bool(resolve_secret(cfg.embedding.api_key_env))
        return data

    @app.post("/api/documents", status_code=201, dependencies=auth)
    async def upload_document(file: UploadFile = File(...)) -> dict:
        data = await file.read()
        limit = app.state.config.api.max_upload_bytes
        if len(data) > limit:
            raise HTTPException(status_code=413, detail=f"File exceeds {limit} bytes")
        try:
            document = await _manager().ingest(data, file.filename or "upload")
        except UnsupportedFormatError as exc:
            raise HTTPException(status_code=415, detail=str(exc))
        except TextExtractionError as exc:
            raise HTTPException(status_code=422, detail=str(exc))
        return document.to_dict()

    @app.get("/api/documents", dependencies=auth)
    async def list_documents() -> dict[str, Any]:
        documents = await _manager().repository.list_documents()
        return {"count": len(documents), "documents": [d.to_dict() for d in documents]}

    @app.get("/api/documents/{document_id}", dependencies=auth)
    async def get_document(document_id: str) -> dict:
        document = await _manager().repository.get_document(document_id)
        if document is None:
            raise HTTPException(status_code=404, detail="Document not found")
        return document.to_dict()

    @app.post(
        "/api/documents/{document_id}/generate",
        status_code=202,
        response_model=JobAccepted,
        dependencies=auth,
    )
    async def generate(document_id: str, req: GenerateRequest | None = None) -> JobAccepted:
        job_type = req.job_type if req is not None else JobType.test_generation
        if job_type is JobType.text_extraction:
            raise HTTPException(status_code=400, detail="Text extraction runs on upload")
        try:
            job_id = await _manager().submit_document(document_id, job_type)
        except DocumentNotFoundError:
            raise HTTPException(status_code=404, detail="Document not found")
        except ConcurrencyViolationError as exc:
            raise HTTPException(status_code=409, detail=str(exc))
        return JobAccepted(job_id=job_id, document_id=document_id, status="pending")

    @app.get("/api/jobs/{job_id}", response_model=JobStatusResponse, dependencies=auth)
    async def job_status(job_id: str) -> dict:
        try:
            return await _manager().get_job_status(job_id)
        except JobNotFoundError:
            raise HTTPException(status_code=404, detail="Job not found")

    @app.post("/api/jobs/{job_id}/cancel", dependencies=auth)
    async def cancel_job(job_id: str) -> dict:
        try:
            cancelled = await _manager().cancel(job_id)
        except JobNotFoundError:
            raise HTTPException(status_code=404, detail="Job not found")
        if not cancelled:
            raise HTTPException(status_code=409, detail="Job is not running")
        return {"ok": True, "job_id": job_id}

    @app.get("/api/documents/{document_id}/jobs", dependencies=auth)
    async def document_jobs(document_id: str) -> list[dict]:
        jobs = await _manager().list_jobs(document_id)
        return [job.to_dict() for job in jobs]

    @app.get("/api/documents/{document_id}/test-cases", dependencies=auth)
    async def document_test_cases(document_id: str) -> dict[str, Any]:
        try:
            cases = await _manager().get_test_cases(document_id)
        except DocumentNotFoundError:
            raise HTTPException(status_code=404, detail="Document not found")
        return {
            "document_id": document_id,
            "count": len(cases),
            "test_cases": [tc.to_dict() for tc in cases],
        }

    @app.post("/api/documents/{document_id}/test-cases", status_code=201, dependencies=auth)
    async def add_manual_test_cases(document_id: str, req: ManualTestCasesRequest) -> dict:
        if req.test_cases and any(tc.source is Source.generated for tc in req.test_cases):
            raise HTTPException(status_code=400, detail="source must be 'manual' or 'uploaded'")
        repository = _manager().repository
        if await repository.get_document(document_id) is None:
            raise HTTPException(status_code=404, detail="Document not found")
        cases = [
            TestCase(document_id=document_id, **tc.model_dump())
            for tc in req.test_cases
        ]
        added = await repository.add_test_cases(cases)
        return {"ok": True, "added": added, "ids": [tc.test_case_id for tc in cases]}

    @app.get("/api/test-cases/{test_case_id}", dependencies=auth)
    async def get_test_case(test_case_id: str) -> dict:
        tc = await _manager().repository.get_test_case(test_case_id)
        if tc is None:
            raise HTTPException(status_code=404, detail="Test case not found")
        return tc.to_dict()

    @app.put("/api/test-cases/{test_case_id}", dependencies=auth)
    async def update_test_case(test_case_id: str, req: TestCaseUpdate) -> dict:
        """Edit a test case, e.g. to move its execution status forward."""
        updates = req.model_dump(exclude_none=True)
        try:
            tc = await _manager().repository.update_test_case(test_case_id, updates)
        except TestCaseNotFoundError:
            raise HTTPException(status_code=404, detail="Test case not found")
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        return tc.to_dict()

    @app.delete("/api/test-cases/{test_case_id}", status_code=204, dependencies=auth)
    async def delete_test_case(test_case_id: str) -> Response:
        try:
            await _manager().repository.delete_test_case(test_case_id)
        except TestCaseNotFoundError:
            raise HTTPException(status_code=404, detail="Test case not found")
        return Response(status_code=204)

    # Store references for testing
    app.state.config = config
    app.state.manager = manager
    app.state.db_enabled = db_url is not None

    return app
