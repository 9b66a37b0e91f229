"""Tests for the FastAPI server."""

from __future__ import annotations

import asyncio
import time

import pytest
from fastapi.testclient import TestClient

from case_rag.api.server import create_app
from case_rag.db.repository import MemoryRepository
from case_rag.indexing.store import MemoryVectorStore
from case_rag.jobs.manager import PipelineManager

from fakes import DIM, POLICY_TEXT, FakeLLM, fake_embedder, fast_policy, small_config


class _SlowLLM(FakeLLM):
    """Keeps jobs running long enough to observe them mid-flight."""

    async def generate(self, prompt: str, context: str = "") -> str:
        await asyncio.sleep(0.1)
        return await super().generate(prompt, context)


def _app(llm: FakeLLM | None = None, **config_overrides):
    config = small_config()
    for key, value in config_overrides.items():
        setattr(config.api, key, value)
    manager = PipelineManager(
        config=config,
        repository=MemoryRepository(),
        store=MemoryVectorStore(DIM),
        embedder=fake_embedder(),
        llm=llm or FakeLLM(),
        retry_policy=fast_policy(),
    )
    return create_app(config=config, manager=manager)


def _upload(client: TestClient, name: str = "policy.txt", data: bytes | None = None):
    payload = POLICY_TEXT.encode("utf-8") if data is None else data
    return client.post("/api/documents", files={"file": (name, payload, "application/octet-stream")})


def _wait_for_job(client: TestClient, job_id: str, timeout: float = 10.0) -> dict:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        status = client.get(f"/api/jobs/{job_id}").json()
        if status["status"] in ("completed", "failed"):
            return status
        time.sleep(0.05)
    raise AssertionError(f"job {job_id} did not finish")


@pytest.fixture(autouse=True)
def _no_token(monkeypatch) -> None:
    monkeypatch.delenv("CASE_RAG_TOKEN", raising=False)
    monkeypatch.delenv("CASE_RAG_DATABASE_URL", raising=False)


class TestHealthEndpoint:
    def test_health_returns_ok(self) -> None:
        with TestClient(_app()) as client:
            resp = client.get("/api/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["components"]["vector_store"] == {"ok": True, "chunks": 0}
        assert data["components"]["database"]["enabled"] is False


class TestConfigEndpoint:
    def test_config_has_no_secrets(self, monkeypatch) -> None:
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        with TestClient(_app()) as client:
            data = client.get("/api/config").json()
        assert data["generation"]["total_test_cases"] == 15
        assert data["llm"]["_api_key_is_set"] is True
        assert "sk-test" not in str(data)


class TestDocuments:
    def test_upload_text(self) -> None:
        with TestClient(_app()) as client:
            resp = _upload(client)
            assert resp.status_code == 201
            doc = resp.json()
            assert doc["filename"] == "policy.txt"
            assert doc["status"] == "uploaded"
            assert client.get(f"/api/documents/{doc['id']}").json()["id"] == doc["id"]
            jobs = client.get(f"/api/documents/{doc['id']}/jobs").json()
            assert [j["job_type"] for j in jobs] == ["text_extraction"]

    def test_unsupported_format(self) -> None:
        with TestClient(_app()) as client:
            assert _upload(client, "sheet.xlsx").status_code == 415

    def test_unreadable_file(self) -> None:
        with TestClient(_app()) as client:
            assert _upload(client, "policy.docx", b"not a docx").status_code == 422

    def test_too_large(self) -> None:
        with TestClient(_app(max_upload_bytes=10)) as client:
            assert _upload(client).status_code == 413

    def test_unknown_document(self) -> None:
        with TestClient(_app()) as client:
            assert client.get("/api/documents/missing").status_code == 404
            assert client.get("/api/documents/missing/test-cases").status_code == 404
            assert client.post("/api/documents/missing/generate").status_code == 404


class TestGeneration:
    def test_generate_and_fetch_test_cases(self) -> None:
        with TestClient(_app()) as client:
            doc_id = _upload(client).json()["id"]
            resp = client.post(f"/api/documents/{doc_id}/generate")
            assert resp.status_code == 202
            job = resp.json()
            assert job["status"] == "pending"

            status = _wait_for_job(client, job["job_id"])
            assert status["status"] == "completed"
            assert status["progress"] == 100
            assert status["error"] is None

            data = client.get(f"/api/documents/{doc_id}/test-cases").json()
            assert data["count"] == 15
            categories = [tc["category"] for tc in data["test_cases"]]
            assert categories == ["functional"] * 6 + ["edge_case"] * 5 + ["compliance"] * 3 + ["integration"]
            assert all(tc["source"] == "generated" for tc in data["test_cases"])

    def test_second_submission_conflicts(self) -> None:
        with TestClient(_app(_SlowLLM())) as client:
            doc_id = _upload(client).json()["id"]
            first = client.post(f"/api/documents/{doc_id}/generate")
            assert first.status_code == 202
            second = client.post(f"/api/documents/{doc_id}/generate")
            assert second.status_code == 409
            _wait_for_job(client, first.json()["job_id"])

    def test_shortfall_reported(self) -> None:
        with TestClient(_app(FakeLLM(caps={"compliance": 1, "integration": 0}))) as client:
            doc_id = _upload(client).json()["id"]
            job_id = client.post(f"/api/documents/{doc_id}/generate").json()["job_id"]
            status = _wait_for_job(client, job_id)
            assert status["status"] == "failed"
            assert status["error"] == "quota shortfall: 12/15"
            assert client.get(f"/api/documents/{doc_id}/test-cases").json()["count"] == 12

    def test_text_extraction_job_type_rejected(self) -> None:
        with TestClient(_app()) as client:
            doc_id = _upload(client).json()["id"]
            resp = client.post(f"/api/documents/{doc_id}/generate", json={"job_type": "text_extraction"})
            assert resp.status_code == 400

    def test_cancel(self) -> None:
        with TestClient(_app(_SlowLLM())) as client:
            doc_id = _upload(client).json()["id"]
            job_id = client.post(f"/api/documents/{doc_id}/generate").json()["job_id"]
            assert client.post(f"/api/jobs/{job_id}/cancel").status_code == 200
            status = _wait_for_job(client, job_id)
            assert status["status"] == "failed"
            assert status["error"] == "cancelled"
            assert client.post(f"/api/jobs/{job_id}/cancel").status_code == 409

    def test_unknown_job(self) -> None:
        with TestClient(_app()) as client:
            assert client.get("/api/jobs/missing").status_code == 404
            assert client.post("/api/jobs/missing/cancel").status_code == 404


class TestManualTestCases:
    def _payload(self, **overrides) -> dict:
        case = {
            "title": "Manager approval required",
            "category": "compliance",
            "priority": "high",
            "severity": "High",
            "steps": ["Submit checklist without approval"],
            "expected_result": "Payroll access is denied",
        }
        case.update(overrides)
        return {"test_cases": [case]}

    def test_add_manual_case(self) -> None:
        with TestClient(_app()) as client:
            doc_id = _upload(client).json()["id"]
            resp = client.post(f"/api/documents/{doc_id}/test-cases", json=self._payload())
            assert resp.status_code == 201
            assert resp.json()["added"] == 1
            cases = client.get(f"/api/documents/{doc_id}/test-cases").json()["test_cases"]
            assert cases[0]["source"] == "manual"
            assert cases[0]["confidence_score"] is None

    @pytest.mark.parametrize("field,value", [
        ("priority", "High"),
        ("severity", "high"),
        ("category", "security"),
    ])
    def test_strict_enums(self, field: str, value: str) -> None:
        with TestClient(_app()) as client:
            doc_id = _upload(client).json()["id"]
            resp = client.post(f"/api/documents/{doc_id}/test-cases", json=self._payload(**{field: value}))
            assert resp.status_code == 422

    def test_generated_source_rejected(self) -> None:
        with TestClient(_app()) as client:
            doc_id = _upload(client).json()["id"]
            resp = client.post(f"/api/documents/{doc_id}/test-cases", json=self._payload(source="generated"))
            assert resp.status_code == 400

    def test_unknown_document(self) -> None:
        with TestClient(_app()) as client:
            assert client.post("/api/documents/missing/test-cases", json=self._payload()).status_code == 404


class TestTestCaseEditing:
    def _manual_case(self, client: TestClient) -> tuple[str, str]:
        doc_id = _upload(client).json()["id"]
        resp = client.post(f"/api/documents/{doc_id}/test-cases", json={"test_cases": [{
            "title": "Manager approval required",
            "category": "compliance",
            "priority": "high",
            "severity": "High",
        }]})
        return doc_id, resp.json()["ids"][0]

    def test_update_execution_status(self) -> None:
        with TestClient(_app()) as client:
            _, tc_id = self._manual_case(client)
            resp = client.put(f"/api/test-cases/{tc_id}", json={"execution_status": "in_progress"})
            assert resp.status_code == 200
            assert resp.json()["execution_status"] == "in_progress"
            resp = client.put(f"/api/test-cases/{tc_id}", json={"execution_status": "complete", "priority": "low"})
            data = client.get(f"/api/test-cases/{tc_id}").json()
            assert data["execution_status"] == "complete"
            assert data["priority"] == "low"
            assert data["title"] == "Manager approval required"

    @pytest.mark.parametrize("body", [
        {"execution_status": "done"},
        {"severity": "high"},
        {"source": "generated"},
        {"title": ""},
    ])
    def test_update_validation(self, body: dict) -> None:
        with TestClient(_app()) as client:
            _, tc_id = self._manual_case(client)
            assert client.put(f"/api/test-cases/{tc_id}", json=body).status_code == 422

    def test_delete(self) -> None:
        with TestClient(_app()) as client:
            doc_id, tc_id = self._manual_case(client)
            assert client.delete(f"/api/test-cases/{tc_id}").status_code == 204
            assert client.get(f"/api/documents/{doc_id}/test-cases").json()["count"] == 0
            assert client.delete(f"/api/test-cases/{tc_id}").status_code == 404

    def test_unknown_test_case(self) -> None:
        with TestClient(_app()) as client:
            assert client.get("/api/test-cases/missing").status_code == 404
            assert client.put("/api/test-cases/missing", json={"title": "x"}).status_code == 404
            assert client.delete("/api/test-cases/missing").status_code == 404


class TestDocumentList:
    def test_lists_uploaded_documents(self) -> None:
        with TestClient(_app()) as client:
            assert client.get("/api/documents").json() == {"count": 0, "documents": []}
            first = _upload(client, "a.txt").json()["id"]
            second = _upload(client, "b.txt").json()["id"]
            data = client.get("/api/documents").json()
            assert data["count"] == 2
            assert {d["id"] for d in data["documents"]} == {first, second}


class TestAuth:
    def test_token_required_when_configured(self, monkeypatch) -> None:
        monkeypatch.setenv("CASE_RAG_TOKEN", "letmein")
        with TestClient(_app()) as client:
            assert client.get("/api/jobs/x").status_code == 401
            assert client.get("/api/jobs/x", headers={"Authorization": "Bearer wrong"}).status_code == 401
            ok = client.get("/api/jobs/x", headers={"Authorization": "Bearer letmein"})
            assert ok.status_code == 404
            # health stays open
            assert client.get("/api/health").status_code == 200
