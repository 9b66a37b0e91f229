"""Tests for generative model backends."""

from __future__ import annotations

import json

import httpx
import pytest

from case_rag.config import AppConfig
from case_rag.exceptions import PermanentServiceError, TransientServiceError
from case_rag.llm.backend import LLMBackend, OllamaBackend, OpenAIChatBackend, create_backend
from case_rag.llm.prompt_templates import SYSTEM_PROMPT


def _chat_reply(content: str | None) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


# --- Factory ---


class TestCreateBackend:
    def test_default_is_openai(self) -> None:
        backend = create_backend(AppConfig())
        assert isinstance(backend, OpenAIChatBackend)
        assert backend.model == "gpt-4o-mini"

    def test_ollama(self) -> None:
        config = AppConfig()
        config.llm.provider = "ollama"
        config.ollama.host = "http://myhost:9999/"
        backend = create_backend(config)
        assert isinstance(backend, OllamaBackend)
        assert backend._host == "http://myhost:9999"


# --- Messages ---


class TestBuildMessages:
    def test_context_then_task(self) -> None:
        messages = LLMBackend._build_messages("Do it", "[d#0]\ntext")
        assert messages[0] == {"role": "system", "content": SYSTEM_PROMPT}
        user = messages[1]["content"]
        assert user.index("## Context") < user.index("## Task")
        assert user.endswith("Do it")

    def test_no_context(self) -> None:
        messages = LLMBackend._build_messages("Do it", "")
        assert "## Context" not in messages[1]["content"]


# --- OpenAIChatBackend ---


class TestOpenAIChatBackend:
    @pytest.mark.asyncio
    async def test_generate(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=_chat_reply('{"testCases": []}'))

        backend = OpenAIChatBackend(
            model="m", base_url="http://llm/v1", api_key="k", transport=httpx.MockTransport(handler),
        )
        assert await backend.generate("prompt", "ctx") == '{"testCases": []}'
        await backend.close()

        body = json.loads(seen[0].content)
        assert seen[0].url.path == "/v1/chat/completions"
        assert seen[0].headers["Authorization"] == "Bearer k"
        assert body["response_format"] == {"type": "json_object"}
        assert body["messages"][1]["content"].startswith("## Context")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,error", [
        (429, TransientServiceError),
        (500, TransientServiceError),
        (400, PermanentServiceError),
        (401, PermanentServiceError),
    ])
    async def test_http_errors(self, status: int, error: type) -> None:
        backend = OpenAIChatBackend(
            transport=httpx.MockTransport(lambda r: httpx.Response(status, json={})),
        )
        with pytest.raises(error):
            await backend.generate("prompt")
        await backend.close()

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        backend = OpenAIChatBackend(transport=httpx.MockTransport(handler))
        with pytest.raises(TransientServiceError):
            await backend.generate("prompt")
        await backend.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [_chat_reply(""), _chat_reply(None), {"choices": []}])
    async def test_unusable_body_is_permanent(self, payload: dict) -> None:
        backend = OpenAIChatBackend(
            transport=httpx.MockTransport(lambda r: httpx.Response(200, json=payload)),
        )
        with pytest.raises(PermanentServiceError):
            await backend.generate("prompt")
        await backend.close()


# --- OllamaBackend ---


class TestOllamaBackend:
    @pytest.mark.asyncio
    async def test_generate(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            assert request.url.path == "/api/chat"
            assert body["format"] == "json"
            assert body["stream"] is False
            return httpx.Response(200, json={"message": {"content": '{"rules": []}'}})

        backend = OllamaBackend(transport=httpx.MockTransport(handler))
        assert await backend.generate("prompt") == '{"rules": []}'
        await backend.close()

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        backend = OllamaBackend(transport=httpx.MockTransport(handler))
        with pytest.raises(TransientServiceError):
            await backend.generate("prompt")
        await backend.close()

    @pytest.mark.asyncio
    async def test_empty_reply_is_permanent(self) -> None:
        backend = OllamaBackend(
            transport=httpx.MockTransport(lambda r: httpx.Response(200, json={"message": {}})),
        )
        with pytest.raises(PermanentServiceError):
            await backend.generate("prompt")
        await backend.close()
