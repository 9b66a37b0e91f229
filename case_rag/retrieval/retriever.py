"""Similarity retriever over the vector store."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

from case_rag.indexing.store import VectorStore
from case_rag.models import Chunk

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetrievedChunk:
    """A stored chunk with its cosine distance to the query."""

    chunk: Chunk
    distance: float

    @property
    def similarity(self) -> float:
        return 1.0 - self.distance

    @property
    def chunk_id(self) -> str:
        return self.chunk.chunk_id

    @property
    def text(self) -> str:
        return self.chunk.text


class Retriever:
    """Read-only k-nearest-neighbour lookup.

    Results are sorted by non-decreasing distance with ties broken by
    ascending chunk ordinal.  When *scope* is given, only chunks of that
    document are considered.
    """

    def __init__(self, store: VectorStore) -> None:
        self._store = store

    async def retrieve(
        self,
        query_vector: Sequence[float],
        k: int,
        scope: str | None = None,
    ) -> list[RetrievedChunk]:
        if k <= 0:
            return []
        if len(query_vector) != self._store.dimension:
            raise ValueError(
                f"Query vector has dimension {len(query_vector)}, "
                f"expected {self._store.dimension}"
            )
        matches = await self._store.query(query_vector, k, document_id=scope)
        results = [RetrievedChunk(chunk=c, distance=d) for c, d in matches]
        if scope is not None:
            results = [r for r in results if r.chunk.document_id == scope]
        logger.debug("Retrieved %d/%d chunks (scope=%s).", len(results), k, scope)
        return results[:k]


def format_context(chunks: list[RetrievedChunk], max_chars: int = 1200) -> str:
    """Render retrieved chunks as a labelled context block for prompts.

    Each chunk is introduced by its id so the model can cite it.
    """
    parts: list[str] = []
    for rc in chunks:
        text = rc.text[:max_chars]
        if len(rc.text) > max_chars:
            text += "..."
        parts.append(f"[{rc.chunk_id}]\n{text}")
    return "\n\n".join(parts)
