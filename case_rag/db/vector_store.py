"""Vector store on the ``chunks`` table.

Embeddings are stored as JSON arrays so the same schema works on SQLite
and PostgreSQL; ranking reuses the numpy cosine ranking of the in-memory
store.
"""

from __future__ import annotations

import logging
from typing import Callable, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from case_rag.db.engine import get_session
from case_rag.db.models import ChunkRow
from case_rag.indexing.store import VectorStore, rank_chunks
from case_rag.models import Chunk

logger = logging.getLogger(__name__)


class SqlVectorStore(VectorStore):
    """Append-only chunk store backed by SQLAlchemy."""

    def __init__(
        self,
        dimension: int,
        session_factory: Callable[[], AsyncSession] | None = None,
    ) -> None:
        super().__init__(dimension)
        self._session = session_factory or get_session

    async def add(self, chunks: Sequence[Chunk]) -> int:
        if not chunks:
            return 0
        for chunk in chunks:
            self._check_insertable(chunk)
        async with self._session() as session:
            session.add_all([ChunkRow.from_domain(c) for c in chunks])
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise ValueError(f"Chunks already stored: {exc.orig}") from exc
        logger.debug("Stored %d chunks.", len(chunks))
        return len(chunks)

    async def query(
        self,
        vector: Sequence[float],
        k: int,
        document_id: str | None = None,
    ) -> list[tuple[Chunk, float]]:
        stmt = select(ChunkRow)
        if document_id is not None:
            stmt = stmt.where(ChunkRow.document_id == document_id)
        async with self._session() as session:
            result = await session.execute(stmt)
            candidates = [row.to_domain() for row in result.scalars().all()]
        return rank_chunks(candidates, vector, k)

    async def count(self, document_id: str | None = None) -> int:
        stmt = select(func.count()).select_from(ChunkRow)
        if document_id is not None:
            stmt = stmt.where(ChunkRow.document_id == document_id)
        async with self._session() as session:
            return int((await session.execute(stmt)).scalar_one())

    async def chunks_for(self, document_id: str) -> list[Chunk]:
        async with self._session() as session:
            result = await session.execute(
                select(ChunkRow)
                .where(ChunkRow.document_id == document_id)
                .order_by(ChunkRow.ordinal)
            )
            return [row.to_domain() for row in result.scalars().all()]
