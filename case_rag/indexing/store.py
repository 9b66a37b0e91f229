"""Append-only vector store for embedded chunks.

Rows are never updated after insert, so concurrent pipelines can add and
query without coordination: a query sees every row added before it started.
Ranking is brute-force cosine distance in numpy, which is adequate for the
few hundred chunks a business document produces.
"""

from __future__ import annotations

import abc
import logging
from typing import Sequence

import numpy as np

from case_rag.models import Chunk

logger = logging.getLogger(__name__)


def cosine_distances(matrix: np.ndarray, vector: np.ndarray) -> np.ndarray:
    """Return ``1 - cos(row, vector)`` for every row of *matrix*.

    Rows (or a query) with zero norm get distance 1.0.
    """
    if matrix.size == 0:
        return np.zeros(0, dtype=np.float64)
    row_norms = np.linalg.norm(matrix, axis=1)
    q_norm = float(np.linalg.norm(vector))
    if q_norm == 0.0:
        return np.ones(matrix.shape[0], dtype=np.float64)
    denom = row_norms * q_norm
    sims = np.zeros(matrix.shape[0], dtype=np.float64)
    nonzero = denom > 0
    sims[nonzero] = (matrix[nonzero] @ vector) / denom[nonzero]
    return np.clip(1.0 - sims, 0.0, 2.0)


def rank_chunks(
    chunks: Sequence[Chunk],
    vector: Sequence[float],
    k: int,
) -> list[tuple[Chunk, float]]:
    """Return the *k* closest chunks as ``(chunk, distance)`` pairs.

    Ordered by distance, then ordinal, then document id, so equal
    distances always come back in the same order.
    """
    if k <= 0 or not chunks:
        return []
    matrix = np.asarray([c.embedding for c in chunks], dtype=np.float64)
    query = np.asarray(vector, dtype=np.float64)
    distances = cosine_distances(matrix, query)
    order = sorted(
        range(len(chunks)),
        key=lambda i: (float(distances[i]), chunks[i].ordinal, chunks[i].document_id),
    )
    return [(chunks[i], float(distances[i])) for i in order[:k]]


class VectorStore(abc.ABC):
    """Storage contract used by the pipeline and the retriever."""

    def __init__(self, dimension: int) -> None:
        self.dimension = dimension

    def _check_insertable(self, chunk: Chunk) -> None:
        if chunk.embedding is None:
            raise ValueError(f"Chunk {chunk.chunk_id} has no embedding")
        if len(chunk.embedding) != self.dimension:
            raise ValueError(
                f"Chunk {chunk.chunk_id} embedding has dimension "
                f"{len(chunk.embedding)}, expected {self.dimension}"
            )

    @abc.abstractmethod
    async def add(self, chunks: Sequence[Chunk]) -> int:
        """Insert embedded chunks.  Duplicate ids raise ValueError."""

    @abc.abstractmethod
    async def query(
        self,
        vector: Sequence[float],
        k: int,
        document_id: str | None = None,
    ) -> list[tuple[Chunk, float]]:
        """Nearest neighbours by ascending cosine distance."""

    @abc.abstractmethod
    async def count(self, document_id: str | None = None) -> int:
        """Number of stored chunks, optionally for one document."""

    @abc.abstractmethod
    async def chunks_for(self, document_id: str) -> list[Chunk]:
        """All chunks of a document in ordinal order."""


class MemoryVectorStore(VectorStore):
    """Process-local store keyed by document id."""

    def __init__(self, dimension: int) -> None:
        super().__init__(dimension)
        self._by_doc: dict[str, list[Chunk]] = {}
        self._ids: set[str] = set()

    async def add(self, chunks: Sequence[Chunk]) -> int:
        for chunk in chunks:
            self._check_insertable(chunk)
        ids = [c.chunk_id for c in chunks]
        dupes = (set(ids) & self._ids) | {i for i in ids if ids.count(i) > 1}
        if dupes:
            raise ValueError(f"Chunks already stored: {sorted(dupes)}")
        for chunk in chunks:
            # Rebinding a new list keeps readers holding the old one consistent.
            self._by_doc[chunk.document_id] = [*self._by_doc.get(chunk.document_id, []), chunk]
            self._ids.add(chunk.chunk_id)
        logger.debug("Stored %d chunks.", len(chunks))
        return len(chunks)

    async def query(
        self,
        vector: Sequence[float],
        k: int,
        document_id: str | None = None,
    ) -> list[tuple[Chunk, float]]:
        if document_id is not None:
            candidates = list(self._by_doc.get(document_id, []))
        else:
            candidates = [c for doc_chunks in list(self._by_doc.values()) for c in doc_chunks]
        return rank_chunks(candidates, vector, k)

    async def count(self, document_id: str | None = None) -> int:
        if document_id is not None:
            return len(self._by_doc.get(document_id, []))
        return len(self._ids)

    async def chunks_for(self, document_id: str) -> list[Chunk]:
        return sorted(self._by_doc.get(document_id, []), key=lambda c: c.ordinal)
