"""Tests for the repositories and the SQL vector store (SQLite via aiosqlite)."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from case_rag.db.engine import get_database_url
from case_rag.db.models import Base
from case_rag.db.repository import MemoryRepository, SqlRepository
from case_rag.db.vector_store import SqlVectorStore
from case_rag.exceptions import ConcurrencyViolationError, DocumentNotFoundError, TestCaseNotFoundError
from case_rag.models import (
    Chunk,
    Document,
    DocumentStatus,
    ExecutionStatus,
    JobStatus,
    JobType,
    ProcessingJob,
    Source,
    TestCase,
)
from case_rag.retrieval.retriever import Retriever


async def _sqlite(tmp_path: Path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'cases.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine, async_sessionmaker(engine, expire_on_commit=False)


def _case(doc_id: str, title: str, category: str, source: str = "generated") -> TestCase:
    return TestCase(
        document_id=doc_id, title=title, category=category,
        priority="medium", severity="Medium", source=source,
        steps=["step"], context_used=[f"{doc_id}#0"], confidence_score=0.5,
    )


class TestDatabaseUrl:
    def test_driver_prefixes(self, monkeypatch) -> None:
        monkeypatch.delenv("CASE_RAG_DATABASE_URL", raising=False)
        assert get_database_url("postgresql://u@h/db") == "postgresql+asyncpg://u@h/db"
        assert get_database_url("sqlite:///x.db") == "sqlite+aiosqlite:///x.db"
        assert get_database_url(None) is None


class TestSqlRepository:
    @pytest.mark.asyncio
    async def test_document_round_trip(self, tmp_path: Path) -> None:
        engine, factory = await _sqlite(tmp_path)
        repo = SqlRepository(factory)
        doc = Document(text="Employees must complete onboarding.", filename="p.txt")
        await repo.save_document(doc)
        await repo.update_document_status(doc.document_id, DocumentStatus.processing)

        loaded = await repo.get_document(doc.document_id)
        assert loaded.text == doc.text
        assert loaded.status is DocumentStatus.processing
        assert loaded.created_at.tzinfo is not None
        assert await repo.get_document("missing") is None
        with pytest.raises(DocumentNotFoundError):
            await repo.update_document_status("missing", DocumentStatus.failed)
        await engine.dispose()

    @pytest.mark.asyncio
    async def test_job_lifecycle_and_unique_active_job(self, tmp_path: Path) -> None:
        engine, factory = await _sqlite(tmp_path)
        repo = SqlRepository(factory)
        job = ProcessingJob(document_id="doc", job_type=JobType.test_generation)
        await repo.create_job(job)

        with pytest.raises(ConcurrencyViolationError):
            await repo.create_job(ProcessingJob(document_id="doc", job_type=JobType.test_generation))
        await repo.create_job(ProcessingJob(document_id="doc", job_type=JobType.embedding))

        job.status = JobStatus.failed
        job.error_message = "quota shortfall: 12/15"
        job.result = {"produced": 12}
        await repo.update_job(job)
        loaded = await repo.get_job(job.job_id)
        assert loaded.status is JobStatus.failed
        assert loaded.result == {"produced": 12}
        assert await repo.active_job("doc", JobType.test_generation) is None

        await repo.create_job(ProcessingJob(document_id="doc", job_type=JobType.test_generation))
        assert len(await repo.list_jobs("doc")) == 3
        await engine.dispose()

    @pytest.mark.asyncio
    async def test_partial_index_rejects_racing_insert(self, tmp_path: Path) -> None:
        engine, factory = await _sqlite(tmp_path)
        repo = SqlRepository(factory)
        await repo.create_job(ProcessingJob(document_id="doc", job_type=JobType.embedding))

        # Skip the friendly pre-check to hit the index itself.
        async def _nothing_active(*args, **kwargs):
            return None

        repo._find_active = _nothing_active
        with pytest.raises(ConcurrencyViolationError):
            await repo.create_job(ProcessingJob(document_id="doc", job_type=JobType.embedding))
        await engine.dispose()

    @pytest.mark.asyncio
    async def test_test_cases_ordered_and_replaced(self, tmp_path: Path) -> None:
        engine, factory = await _sqlite(tmp_path)
        repo = SqlRepository(factory)
        await repo.add_test_cases([
            _case("doc", "integration one", "integration"),
            _case("doc", "functional one", "functional"),
            _case("doc", "manual compliance", "compliance", source="manual"),
            _case("other", "elsewhere", "functional"),
        ])
        titles = [tc.title for tc in await repo.list_test_cases("doc")]
        assert titles == ["functional one", "manual compliance", "integration one"]

        await repo.replace_generated_test_cases("doc", [_case("doc", "edge one", "edge_case")])
        stored = await repo.list_test_cases("doc")
        assert [tc.title for tc in stored] == ["edge one", "manual compliance"]
        assert stored[1].source is Source.manual
        assert stored[1].confidence_score is None
        assert stored[0].context_used == ["doc#0"]
        assert len(await repo.list_test_cases("other")) == 1
        await engine.dispose()


class TestMemoryRepository:
    @pytest.mark.asyncio
    async def test_returns_copies(self) -> None:
        repo = MemoryRepository()
        job = ProcessingJob(document_id="doc", job_type=JobType.embedding)
        await repo.create_job(job)
        loaded = await repo.get_job(job.job_id)
        loaded.progress = 99
        assert (await repo.get_job(job.job_id)).progress == 0


class TestSqlVectorStore:
    @pytest.mark.asyncio
    async def test_add_query_count(self, tmp_path: Path) -> None:
        engine, factory = await _sqlite(tmp_path)
        repo = SqlRepository(factory)
        await repo.save_document(Document(text="abc", document_id="doc"))
        store = SqlVectorStore(2, factory)
        chunks = [
            Chunk("doc#0", "doc", 0, "a", 0, 1, embedding=(1.0, 0.0)),
            Chunk("doc#1", "doc", 1, "b", 1, 2, embedding=(0.0, 1.0)),
        ]
        assert await store.add(chunks) == 2
        assert await store.count() == 2
        assert await store.count("doc") == 2
        assert [c.chunk_id for c in await store.chunks_for("doc")] == ["doc#0", "doc#1"]

        results = await Retriever(store).retrieve([0.1, 1.0], k=1, scope="doc")
        assert [r.chunk_id for r in results] == ["doc#1"]

        with pytest.raises(ValueError):
            await store.add(chunks[:1])
        await engine.dispose()


async def _memory(tmp_path: Path):
    return None, MemoryRepository()


async def _sql(tmp_path: Path):
    engine, factory = await _sqlite(tmp_path)
    return engine, SqlRepository(factory)


@pytest.mark.parametrize("make_repo", [_memory, _sql], ids=["memory", "sql"])
class TestTestCaseEditing:
    @pytest.mark.asyncio
    async def test_update_execution_status_and_fields(self, tmp_path: Path, make_repo) -> None:
        engine, repo = await make_repo(tmp_path)
        tc = _case("doc", "Deadline enforced", "functional")
        await repo.add_test_cases([tc])

        updated = await repo.update_test_case(tc.test_case_id, {
            "execution_status": ExecutionStatus.in_progress,
            "title": "Deadline of 5 days enforced",
            "steps": ["Start onboarding", "Wait 6 days"],
        })
        assert updated.execution_status is ExecutionStatus.in_progress
        stored = await repo.get_test_case(tc.test_case_id)
        assert stored.title == "Deadline of 5 days enforced"
        assert stored.steps == ["Start onboarding", "Wait 6 days"]
        assert stored.execution_status is ExecutionStatus.in_progress
        assert stored.confidence_score == 0.5
        assert stored.created_at == updated.created_at
        if engine is not None:
            await engine.dispose()

    @pytest.mark.asyncio
    async def test_update_rejects_bad_values(self, tmp_path: Path, make_repo) -> None:
        engine, repo = await make_repo(tmp_path)
        tc = _case("doc", "t", "functional")
        await repo.add_test_cases([tc])

        with pytest.raises(ValueError):
            await repo.update_test_case(tc.test_case_id, {"priority": "High"})
        with pytest.raises(ValueError):
            await repo.update_test_case(tc.test_case_id, {"source": "manual"})
        with pytest.raises(TestCaseNotFoundError):
            await repo.update_test_case("missing", {"title": "x"})
        assert (await repo.get_test_case(tc.test_case_id)).priority.value == "medium"
        if engine is not None:
            await engine.dispose()

    @pytest.mark.asyncio
    async def test_delete(self, tmp_path: Path, make_repo) -> None:
        engine, repo = await make_repo(tmp_path)
        keep, drop = _case("doc", "keep", "functional"), _case("doc", "drop", "edge_case")
        await repo.add_test_cases([keep, drop])

        await repo.delete_test_case(drop.test_case_id)
        assert [tc.title for tc in await repo.list_test_cases("doc")] == ["keep"]
        assert await repo.get_test_case(drop.test_case_id) is None
        with pytest.raises(TestCaseNotFoundError):
            await repo.delete_test_case(drop.test_case_id)
        if engine is not None:
            await engine.dispose()

    @pytest.mark.asyncio
    async def test_list_documents_newest_first(self, tmp_path: Path, make_repo) -> None:
        engine, repo = await make_repo(tmp_path)
        older = Document(text="a", filename="old.txt", created_at=datetime(2024, 1, 1, tzinfo=timezone.utc))
        newer = Document(text="b", filename="new.txt", created_at=datetime(2024, 6, 1, tzinfo=timezone.utc))
        await repo.save_document(older)
        await repo.save_document(newer)
        assert [d.filename for d in await repo.list_documents()] == ["new.txt", "old.txt"]
        if engine is not None:
            await engine.dispose()
