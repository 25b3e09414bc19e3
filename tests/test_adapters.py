import json
from typing import Any, Dict

import httpx
import pytest

# Ensure 'src' is importable
import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from providers.anthropic import AnthropicAdapter
from providers.base import ProviderError
from providers.google import GoogleAdapter
from providers.openai import OpenAIAdapter


class _MockTransport(httpx.AsyncBaseTransport):
    """A simple mock transport for httpx.AsyncClient."""

    def __init__(self, handlers: Dict[str, Any]):
        self.handlers = handlers

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:  # type: ignore[override]
        key = f"{request.method} {request.url.path}"
        handler = self.handlers.get(key)
        if handler is None:
            return httpx.Response(404, request=request, json={"error": "not found"})
        return await handler(request)


def _client(base_url: str, handlers: Dict[str, Any]) -> httpx.AsyncClient:
    return httpx.AsyncClient(base_url=base_url, transport=_MockTransport(handlers))


@pytest.mark.asyncio
async def test_openai_completion_mapping():
    async def chat_handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["authorization"] == "Bearer sk-test"
        payload = json.loads(request.content)
        assert payload["model"] == "gpt-3.5-turbo"
        assert payload["messages"] == [{"role": "user", "content": "Hello"}]
        assert payload["max_tokens"] == 1000
        assert payload["temperature"] == 0.7
        assert "top_p" not in payload
        return httpx.Response(
            200,
            json={
                "id": "chatcmpl-1",
                "model": "gpt-3.5-turbo-0125",
                "choices": [{"index": 0, "message": {"role": "assistant", "content": "Hi there"}, "finish_reason": "stop"}],
                "usage": {"prompt_tokens": 2, "completion_tokens": 3, "total_tokens": 5},
            },
        )

    client = _client("https://api.openai.com/v1", {"POST /v1/chat/completions": chat_handler})
    adapter = OpenAIAdapter(client=client)

    completion = await adapter.complete("sk-test", "gpt-3.5-turbo", "Hello", {})

    assert completion.text == "Hi there"
    assert completion.finish_reason == "stop"
    assert completion.model == "gpt-3.5-turbo-0125"
    assert completion.usage.total_tokens == 5

    await client.aclose()


@pytest.mark.asyncio
async def test_openai_passes_generation_options():
    async def chat_handler(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        assert payload["max_tokens"] == 50
        assert payload["temperature"] == 0.0
        assert payload["top_p"] == 0.9
        assert payload["stop"] == ["\n"]
        return httpx.Response(
            200, json={"choices": [{"message": {"content": "ok"}, "finish_reason": "length"}]}
        )

    client = _client("https://api.openai.com/v1", {"POST /v1/chat/completions": chat_handler})
    adapter = OpenAIAdapter(client=client)

    completion = await adapter.complete(
        "sk-test", "gpt-4", "Hello", {"max_tokens": 50, "temperature": 0.0, "top_p": 0.9, "stop": ["\n"]}
    )

    assert completion.finish_reason == "length"
    assert completion.model == "gpt-4"
    assert completion.usage is None

    await client.aclose()


@pytest.mark.asyncio
async def test_anthropic_completion_mapping():
    async def messages_handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["x-api-key"] == "ant-key"
        assert request.headers["anthropic-version"] == "2023-06-01"
        payload = json.loads(request.content)
        assert payload["stop_sequences"] == ["END"]
        assert payload["messages"][0]["content"] == "Hello"
        return httpx.Response(
            200,
            json={
                "model": "claude-3-haiku-20240307",
                "content": [{"type": "text", "text": "Hi "}, {"type": "text", "text": "there"}],
                "stop_reason": "end_turn",
                "usage": {"input_tokens": 4, "output_tokens": 6},
            },
        )

    client = _client("https://api.anthropic.com/v1", {"POST /v1/messages": messages_handler})
    adapter = AnthropicAdapter(client=client)

    completion = await adapter.complete("ant-key", "claude-3-haiku-20240307", "Hello", {"stop": "END"})

    assert completion.text == "Hi there"
    assert completion.finish_reason == "end_turn"
    assert completion.usage.total_tokens == 10

    await client.aclose()


@pytest.mark.asyncio
async def test_google_completion_mapping():
    async def generate_handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["key"] == "g-key"
        payload = json.loads(request.content)
        assert payload["contents"][0]["parts"][0]["text"] == "Hello"
        assert payload["generationConfig"] == {"maxOutputTokens": 1000, "temperature": 0.7}
        return httpx.Response(
            200,
            json={
                "candidates": [
                    {"content": {"parts": [{"text": "Hi there"}]}, "finishReason": "STOP"}
                ],
                "usageMetadata": {"promptTokenCount": 2, "candidatesTokenCount": 3, "totalTokenCount": 5},
            },
        )

    client = _client(
        "https://generativelanguage.googleapis.com/v1beta",
        {"POST /v1beta/models/gemini-pro:generateContent": generate_handler},
    )
    adapter = GoogleAdapter(client=client)

    completion = await adapter.complete("g-key", "gemini-pro", "Hello")

    assert completion.text == "Hi there"
    assert completion.finish_reason == "STOP"
    assert completion.usage.prompt_tokens == 2

    await client.aclose()


@pytest.mark.asyncio
async def test_http_error_keeps_provider_message():
    async def chat_handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": {"message": "Incorrect API key provided", "type": "invalid_request_error"}})

    client = _client("https://api.openai.com/v1", {"POST /v1/chat/completions": chat_handler})
    adapter = OpenAIAdapter(client=client)

    with pytest.raises(ProviderError) as exc:
        await adapter.complete("bad", "gpt-4", "Hello")
    assert exc.value.status_code == 401
    assert exc.value.provider == "openai"
    assert exc.value.message == "Incorrect API key provided"
    assert str(exc.value) == "openai API error: Incorrect API key provided"

    await client.aclose()


@pytest.mark.asyncio
async def test_transport_errors_become_provider_errors():
    async def timeout_handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    async def connect_handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    for handler, fragment in ((timeout_handler, "timed out"), (connect_handler, "network error")):
        client = _client("https://api.anthropic.com/v1", {"POST /v1/messages": handler})
        adapter = AnthropicAdapter(client=client)
        with pytest.raises(ProviderError) as exc:
            await adapter.complete("key", "claude-3-haiku-20240307", "Hello")
        assert fragment in exc.value.message
        assert exc.value.status_code is None
        await client.aclose()


@pytest.mark.asyncio
async def test_malformed_body_becomes_provider_error():
    async def generate_handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"candidates": []})

    client = _client(
        "https://generativelanguage.googleapis.com/v1beta",
        {"POST /v1beta/models/gemini-pro:generateContent": generate_handler},
    )
    adapter = GoogleAdapter(client=client)

    with pytest.raises(ProviderError) as exc:
        await adapter.complete("g-key", "gemini-pro", "Hello")
    assert "malformed response" in exc.value.message

    await client.aclose()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "adapter_cls,base_url,route,model,body",
    [
        (OpenAIAdapter, "https://api.openai.com/v1", "POST /v1/chat/completions", "gpt-4", {"choices": [{"message": None}]}),
        (OpenAIAdapter, "https://api.openai.com/v1", "POST /v1/chat/completions", "gpt-4", {"choices": ["hello"]}),
        (AnthropicAdapter, "https://api.anthropic.com/v1", "POST /v1/messages", "claude-3-haiku-20240307", {"content": ["hello"]}),
        (AnthropicAdapter, "https://api.anthropic.com/v1", "POST /v1/messages", "claude-3-haiku-20240307", {"content": None}),
        (
            GoogleAdapter,
            "https://generativelanguage.googleapis.com/v1beta",
            "POST /v1beta/models/gemini-pro:generateContent",
            "gemini-pro",
            {"candidates": ["hello"]},
        ),
        (
            GoogleAdapter,
            "https://generativelanguage.googleapis.com/v1beta",
            "POST /v1beta/models/gemini-pro:generateContent",
            "gemini-pro",
            {"candidates": [{"content": {"parts": [None]}}]},
        ),
    ],
)
async def test_null_or_non_object_fields_become_provider_errors(adapter_cls, base_url, route, model, body):
    async def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=body)

    client = _client(base_url, {route: handler})
    adapter = adapter_cls(client=client)

    with pytest.raises(ProviderError) as exc:
        await adapter.complete("key-1234567890", model, "Hello")
    assert "malformed response" in exc.value.message
    assert exc.value.provider == adapter.name

    await client.aclose()


@pytest.mark.asyncio
async def test_models_listing_and_override():
    adapter = OpenAIAdapter(models=["gpt-4o"])
    assert await adapter.models() == [{"id": "gpt-4o", "name": "gpt-4o", "description": "OpenAI gpt-4o"}]

    google = GoogleAdapter()
    assert [m["id"] for m in await google.models()] == ["gemini-pro", "gemini-pro-vision"]
