"""Tests for the vector store and the similarity retriever."""

from __future__ import annotations

import numpy as np
import pytest

from case_rag.indexing.store import MemoryVectorStore, cosine_distances, rank_chunks
from case_rag.models import Chunk
from case_rag.retrieval.retriever import RetrievedChunk, Retriever, format_context


def _chunk(doc: str, ordinal: int, vector: list[float], text: str = "") -> Chunk:
    return Chunk(
        chunk_id=f"{doc}#{ordinal}",
        document_id=doc,
        ordinal=ordinal,
        text=text or f"chunk {ordinal} of {doc}",
        start=ordinal * 10,
        end=ordinal * 10 + 10,
        embedding=tuple(vector),
    )


class TestCosineDistances:
    def test_identical_and_orthogonal(self) -> None:
        matrix = np.array([[1.0, 0.0], [0.0, 1.0], [-1.0, 0.0]])
        d = cosine_distances(matrix, np.array([1.0, 0.0]))
        assert d[0] == pytest.approx(0.0)
        assert d[1] == pytest.approx(1.0)
        assert d[2] == pytest.approx(2.0)

    def test_zero_query(self) -> None:
        d = cosine_distances(np.array([[1.0, 2.0]]), np.zeros(2))
        assert d.tolist() == [1.0]


class TestRankChunks:
    def test_ties_broken_by_ordinal(self) -> None:
        chunks = [_chunk("d", 2, [1, 0]), _chunk("d", 0, [1, 0]), _chunk("d", 1, [1, 0])]
        ranked = rank_chunks(chunks, [1, 0], k=3)
        assert [c.ordinal for c, _ in ranked] == [0, 1, 2]

    def test_k_zero(self) -> None:
        assert rank_chunks([_chunk("d", 0, [1, 0])], [1, 0], k=0) == []


class TestMemoryVectorStore:
    @pytest.mark.asyncio
    async def test_add_and_count(self) -> None:
        store = MemoryVectorStore(2)
        await store.add([_chunk("a", 0, [1, 0]), _chunk("a", 1, [0, 1]), _chunk("b", 0, [1, 1])])
        assert await store.count() == 3
        assert await store.count("a") == 2
        assert [c.ordinal for c in await store.chunks_for("a")] == [0, 1]

    @pytest.mark.asyncio
    async def test_duplicate_ids_rejected(self) -> None:
        store = MemoryVectorStore(2)
        await store.add([_chunk("a", 0, [1, 0])])
        with pytest.raises(ValueError, match="already stored"):
            await store.add([_chunk("a", 0, [1, 0])])
        assert await store.count() == 1

    @pytest.mark.asyncio
    async def test_unembedded_chunk_rejected(self) -> None:
        store = MemoryVectorStore(2)
        bare = Chunk("a#0", "a", 0, "text", 0, 4)
        with pytest.raises(ValueError, match="no embedding"):
            await store.add([bare])

    @pytest.mark.asyncio
    async def test_wrong_dimension_rejected(self) -> None:
        store = MemoryVectorStore(3)
        with pytest.raises(ValueError, match="dimension"):
            await store.add([_chunk("a", 0, [1, 0])])


class TestRetriever:
    async def _store(self) -> MemoryVectorStore:
        store = MemoryVectorStore(2)
        await store.add([
            _chunk("a", 0, [1.0, 0.0]),
            _chunk("a", 1, [0.7, 0.7]),
            _chunk("a", 2, [0.0, 1.0]),
            _chunk("b", 0, [1.0, 0.01]),
        ])
        return store

    @pytest.mark.asyncio
    async def test_sorted_by_distance(self) -> None:
        retriever = Retriever(await self._store())
        results = await retriever.retrieve([1.0, 0.0], k=4)
        distances = [r.distance for r in results]
        assert distances == sorted(distances)
        assert results[0].chunk_id == "a#0"

    @pytest.mark.asyncio
    async def test_scope_limits_to_document(self) -> None:
        retriever = Retriever(await self._store())
        results = await retriever.retrieve([1.0, 0.0], k=10, scope="a")
        assert {r.chunk.document_id for r in results} == {"a"}
        assert len(results) == 3

    @pytest.mark.asyncio
    async def test_k_larger_than_store(self) -> None:
        retriever = Retriever(await self._store())
        assert len(await retriever.retrieve([0.0, 1.0], k=50)) == 4

    @pytest.mark.asyncio
    async def test_k_non_positive_returns_empty(self) -> None:
        retriever = Retriever(await self._store())
        assert await retriever.retrieve([1.0, 0.0], k=0) == []
        assert await retriever.retrieve([1.0, 0.0], k=-1) == []

    @pytest.mark.asyncio
    async def test_zero_query_vector_falls_back_to_ordinal(self) -> None:
        retriever = Retriever(await self._store())
        results = await retriever.retrieve([0.0, 0.0], k=4, scope="a")
        assert [r.chunk.ordinal for r in results] == [0, 1, 2]
        assert all(r.distance == 1.0 for r in results)

    @pytest.mark.asyncio
    async def test_query_dimension_checked(self) -> None:
        retriever = Retriever(await self._store())
        with pytest.raises(ValueError):
            await retriever.retrieve([1.0, 0.0, 0.0], k=2)

    @pytest.mark.asyncio
    async def test_empty_store(self) -> None:
        assert await Retriever(MemoryVectorStore(2)).retrieve([1.0, 0.0], k=3) == []


class TestFormatContext:
    def test_labels_and_truncation(self) -> None:
        rc = RetrievedChunk(chunk=_chunk("d", 0, [1, 0], text="x" * 20), distance=0.25)
        rendered = format_context([rc], max_chars=5)
        assert rendered == "[d#0]\nxxxxx..."
        assert rc.similarity == pytest.approx(0.75)
