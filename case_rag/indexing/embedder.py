"""Embedding adapter over a remote embedding model.

The adapter owns three concerns:

- mapping HTTP / transport failures onto :class:`TransientServiceError`
  (timeout, 429, 5xx, connection) and :class:`PermanentServiceError`
  (other 4xx, malformed payloads),
- retrying transient failures through an injected :class:`RetryPolicy`,
- checking every returned vector against the configured dimension.

A failed batch call falls back to one call per text so a single bad input
only costs its own chunk.
"""

from __future__ import annotations

import abc
import logging
import math
from dataclasses import dataclass, field
from typing import Any

import httpx

from case_rag.config import AppConfig, resolve_secret
from case_rag.exceptions import PermanentServiceError, TransientServiceError
from case_rag.retry import RetryPolicy

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = frozenset({408, 409, 425, 429})


def classify_http_error(exc: httpx.HTTPError, service: str) -> Exception:
    """Translate an httpx error into the pipeline's error taxonomy."""
    if isinstance(exc, httpx.TimeoutException):
        return TransientServiceError(f"{service} request timed out")
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status >= 500 or status in _RETRYABLE_STATUS:
            return TransientServiceError(f"{service} HTTP error: {status}", status_code=status)
        return PermanentServiceError(f"{service} HTTP error: {status}", status_code=status)
    # ConnectError, ReadError, RemoteProtocolError ...
    return TransientServiceError(f"{service} transport error: {exc}")


# ── Clients ──────────────────────────────────────────────────────


class EmbeddingClient(abc.ABC):
    """Raw call to an embedding model.  No retries, no validation."""

    supports_batching: bool = True

    @abc.abstractmethod
    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Return one vector per input text, in input order."""

    async def close(self) -> None:
        """Release resources."""


class OpenAIEmbeddingClient(EmbeddingClient):
    """OpenAI-compatible ``POST {base_url}/embeddings``."""

    def __init__(
        self,
        model: str = "text-embedding-3-small",
        base_url: str = "https://api.openai.com/v1",
        api_key: str | None = None,
        timeout: float = 30.0,
        dimensions: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._model = model
        self._base_url = base_url.rstrip("/")
        self._dimensions = dimensions
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = httpx.AsyncClient(timeout=timeout, headers=headers, transport=transport)

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        payload: dict[str, Any] = {
            "model": self._model,
            "input": texts,
            "encoding_format": "float",
        }
        if self._dimensions:
            payload["dimensions"] = self._dimensions
        try:
            resp = await self._client.post(f"{self._base_url}/embeddings", json=payload)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPError as exc:
            raise classify_http_error(exc, "Embedding API") from exc
        except ValueError as exc:
            raise PermanentServiceError(f"Embedding API returned invalid JSON: {exc}") from exc

        try:
            items = sorted(data["data"], key=lambda item: item.get("index", 0))
            return [item["embedding"] for item in items]
        except (KeyError, TypeError, AttributeError) as exc:
            raise PermanentServiceError("Embedding API response missing 'data'") from exc

    async def close(self) -> None:
        await self._client.aclose()


class OllamaEmbeddingClient(EmbeddingClient):
    """Local Ollama ``POST {host}/api/embed``."""

    def __init__(
        self,
        host: str = "http://localhost:11434",
        model: str = "nomic-embed-text",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._host = host.rstrip("/")
        self._model = model
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        try:
            resp = await self._client.post(
                f"{self._host}/api/embed",
                json={"model": self._model, "input": texts},
            )
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPError as exc:
            raise classify_http_error(exc, "Ollama embed") from exc
        except ValueError as exc:
            raise PermanentServiceError(f"Ollama returned invalid JSON: {exc}") from exc

        vectors = data.get("embeddings") if isinstance(data, dict) else None
        if not isinstance(vectors, list):
            raise PermanentServiceError("Ollama response missing 'embeddings'")
        return vectors

    async def close(self) -> None:
        await self._client.aclose()


# ── Adapter ──────────────────────────────────────────────────────


@dataclass
class BatchOutcome:
    """Per-item result of an isolated batch embedding.

    ``vectors[i]`` is ``None`` exactly when ``errors`` has key ``i``.
    """

    vectors: list[list[float] | None]
    errors: dict[int, PermanentServiceError] = field(default_factory=dict)

    @property
    def ok_count(self) -> int:
        return len(self.vectors) - len(self.errors)


class EmbeddingAdapter:
    """Validated, retried embedding calls."""

    def __init__(
        self,
        client: EmbeddingClient,
        dimension: int,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._client = client
        self.dimension = dimension
        self._retry = retry_policy or RetryPolicy()

    def _check_vector(self, vector: Any) -> list[float]:
        if not isinstance(vector, (list, tuple)):
            raise PermanentServiceError("Embedding is not a list of numbers")
        if len(vector) != self.dimension:
            raise PermanentServiceError(
                f"Embedding has dimension {len(vector)}, expected {self.dimension}",
                details={"dimension": len(vector)},
            )
        try:
            values = [float(v) for v in vector]
        except (TypeError, ValueError) as exc:
            raise PermanentServiceError("Embedding contains non-numeric values") from exc
        if not all(math.isfinite(v) for v in values):
            raise PermanentServiceError("Embedding contains NaN or infinite values")
        return values

    async def _call(self, texts: list[str]) -> list[list[float]]:
        vectors = await self._retry.call(self._client.embed_batch, texts)
        if len(vectors) != len(texts):
            raise PermanentServiceError(
                f"Embedding API returned {len(vectors)} vectors for {len(texts)} inputs"
            )
        return [self._check_vector(v) for v in vectors]

    async def embed(self, text: str) -> list[float]:
        """Embed one text.  Raises Transient/PermanentServiceError."""
        if not text.strip():
            raise PermanentServiceError("Cannot embed empty text")
        return (await self._call([text]))[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed many texts; raises the first per-item permanent error."""
        outcome = await self.embed_batch_isolated(texts)
        if outcome.errors:
            first = min(outcome.errors)
            raise outcome.errors[first]
        return [v for v in outcome.vectors if v is not None]

    async def embed_batch_isolated(self, texts: list[str]) -> BatchOutcome:
        """Embed many texts, isolating permanently failing items.

        Transient errors that survive the retry policy propagate: the
        upstream service is unavailable and the caller should stop.
        """
        if not texts:
            return BatchOutcome(vectors=[])

        if self._client.supports_batching and len(texts) > 1:
            try:
                return BatchOutcome(vectors=list(await self._call(texts)))
            except PermanentServiceError as exc:
                logger.warning(
                    "Batch of %d embeddings failed (%s); retrying per item.", len(texts), exc,
                )
            except TransientServiceError as exc:
                logger.warning(
                    "Batch of %d embeddings exhausted retries (%s); retrying per item.",
                    len(texts), exc,
                )

        outcome = BatchOutcome(vectors=[None] * len(texts))
        for i, text in enumerate(texts):
            try:
                outcome.vectors[i] = await self.embed(text)
            except PermanentServiceError as exc:
                logger.warning("Embedding item %d failed permanently: %s", i, exc)
                outcome.errors[i] = exc
        return outcome

    async def close(self) -> None:
        await self._client.close()


def create_embedding_adapter(
    config: AppConfig,
    retry_policy: RetryPolicy | None = None,
) -> EmbeddingAdapter:
    """Build the configured embedding adapter."""
    emb = config.embedding
    client: EmbeddingClient
    if emb.provider == "ollama":
        client = OllamaEmbeddingClient(
            host=config.ollama.host,
            model=config.ollama.embedding_model,
            timeout=emb.timeout,
        )
    else:
        client = OpenAIEmbeddingClient(
            model=emb.model,
            base_url=emb.base_url,
            api_key=resolve_secret(emb.api_key_env),
            timeout=emb.timeout,
        )
    return EmbeddingAdapter(
        client=client,
        dimension=emb.dimension,
        retry_policy=retry_policy or RetryPolicy.from_config(config.retry),
    )
