"""Generative model backends: OpenAI-compatible chat API and local Ollama.

A backend maps ``{prompt, context}`` to the raw completion text.  It does
not parse or retry; transport failures are translated into the pipeline's
error taxonomy so the caller's :class:`~case_rag.retry.RetryPolicy` can
decide what to do with them.
"""

from __future__ import annotations

import abc
import logging
from typing import Any

import httpx

from case_rag.config import AppConfig, resolve_secret
from case_rag.exceptions import PermanentServiceError
from case_rag.indexing.embedder import classify_http_error
from case_rag.llm.prompt_templates import SYSTEM_PROMPT

logger = logging.getLogger(__name__)


class LLMBackend(abc.ABC):
    """Abstract base class for generative model backends."""

    model: str = ""

    @abc.abstractmethod
    async def generate(self, prompt: str, context: str = "") -> str:
        """Send an instruction plus retrieved context; return the completion.

        Raises:
            TransientServiceError: timeout, 5xx, 429 or connection failure.
            PermanentServiceError: other 4xx or an unusable response body.
        """

    @abc.abstractmethod
    async def close(self) -> None:
        """Clean up resources."""

    @staticmethod
    def _build_messages(prompt: str, context: str) -> list[dict[str, str]]:
        user_msg = ""
        if context:
            user_msg += f"## Context\n\n{context}\n\n"
        user_msg += f"## Task\n\n{prompt}"
        return [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": user_msg},
        ]


class OpenAIChatBackend(LLMBackend):
    """OpenAI-compatible ``POST {base_url}/chat/completions`` in JSON mode."""

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        api_key: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 3000,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.model = model
        self._base_url = base_url.rstrip("/")
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._timeout = timeout
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = httpx.AsyncClient(timeout=timeout, headers=headers, transport=transport)

    async def generate(self, prompt: str, context: str = "") -> str:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": self._build_messages(prompt, context),
            "temperature": self._temperature,
            "max_tokens": self._max_tokens,
            "response_format": {"type": "json_object"},
        }
        try:
            resp = await self._client.post(f"{self._base_url}/chat/completions", json=payload)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPError as exc:
            raise classify_http_error(exc, "Chat API") from exc
        except ValueError as exc:
            raise PermanentServiceError(f"Chat API returned invalid JSON: {exc}") from exc

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise PermanentServiceError("Chat API response has no message content") from exc
        if not content:
            raise PermanentServiceError("Chat API returned an empty completion")
        return content

    async def close(self) -> None:
        await self._client.aclose()


class OllamaBackend(LLMBackend):
    """LLM backend using a local Ollama instance via its REST API.

    Ollama must be running at the configured host and the model must be
    pulled beforehand (e.g. ``ollama pull qwen2.5:7b``).
    """

    def __init__(
        self,
        host: str = "http://localhost:11434",
        model: str = "qwen2.5:7b",
        temperature: float = 0.7,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._host = host.rstrip("/")
        self.model = model
        self._temperature = temperature
        self._timeout = timeout
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def generate(self, prompt: str, context: str = "") -> str:
        payload = {
            "model": self.model,
            "messages": self._build_messages(prompt, context),
            "stream": False,
            "format": "json",
            "options": {"temperature": self._temperature},
        }
        try:
            resp = await self._client.post(f"{self._host}/api/chat", json=payload)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPError as exc:
            raise classify_http_error(exc, f"Ollama at {self._host}") from exc
        except ValueError as exc:
            raise PermanentServiceError(f"Ollama returned invalid JSON: {exc}") from exc

        text = (data.get("message") or {}).get("content", "") if isinstance(data, dict) else ""
        if not text:
            raise PermanentServiceError("Ollama returned an empty completion")
        return text

    async def close(self) -> None:
        await self._client.aclose()


def create_backend(config: AppConfig) -> LLMBackend:
    """Create the configured generative model backend."""
    llm = config.llm
    if llm.provider == "ollama":
        logger.info("Using Ollama backend (%s @ %s)", config.ollama.model, config.ollama.host)
        return OllamaBackend(
            host=config.ollama.host,
            model=config.ollama.model,
            temperature=llm.temperature,
            timeout=llm.timeout,
        )
    logger.info("Using OpenAI-compatible backend (%s)", llm.model)
    return OpenAIChatBackend(
        model=llm.model,
        base_url=llm.base_url,
        api_key=resolve_secret(llm.api_key_env),
        temperature=llm.temperature,
        max_tokens=llm.max_tokens,
        timeout=llm.timeout,
    )
