"""Tests for the streaming HTTP client."""

from __future__ import annotations

import json

import httpx
import pytest

from loremaster.ai.client import AIClient, ClientSettings, TransportError
from loremaster.ai.orchestration.types import Message
from tests.helpers import anthropic_stream


def _client(handler, **overrides) -> AIClient:
    options = {
        "base_url": "https://api.test",
        "api_key": "sk-test",
        "model": "claude-test",
        "retry_min_seconds": 0.0,
        "retry_max_seconds": 0.0,
    }
    options.update(overrides)
    settings = ClientSettings(**options)
    http_client = httpx.AsyncClient(base_url=settings.base_url, transport=httpx.MockTransport(handler))
    return AIClient(settings, http_client=http_client)


async def _collect(client: AIClient, messages: list[Message] | None = None) -> bytes:
    chunks = []
    async for chunk in client.stream_chat(messages or [Message.user("hi")], max_tokens=256):
        chunks.append(chunk)
    return b"".join(chunks)


@pytest.mark.asyncio
async def test_streams_body_bytes_with_anthropic_headers() -> None:
    body = b"".join(anthropic_stream(text=["hello"]))
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

    client = _client(handler)

    assert await _collect(client, [Message.system("sys"), Message.user("hi")]) == body
    request = seen[0]
    assert request.url.path == "/v1/messages"
    assert request.headers["x-api-key"] == "sk-test"
    assert request.headers["anthropic-version"] == "2023-06-01"
    payload = json.loads(request.content)
    assert payload["system"] == "sys"
    assert payload["max_tokens"] == 256
    assert payload["stream"] is True


@pytest.mark.asyncio
async def test_base_url_ending_in_v1_is_not_doubled() -> None:
    paths: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        return httpx.Response(200, content=b"")

    await _collect(_client(handler, base_url="https://api.test/v1"))

    assert paths == ["/v1/messages"]


@pytest.mark.asyncio
async def test_openai_protocol_uses_bearer_auth() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, content=b"data: [DONE]\n\n")

    await _collect(_client(handler, protocol="openai", base_url="https://llm.test/v1"))

    assert seen[0].url.path == "/v1/chat/completions"
    assert seen[0].headers["authorization"] == "Bearer sk-test"
    assert "x-api-key" not in seen[0].headers


@pytest.mark.asyncio
async def test_overloaded_backend_is_retried() -> None:
    statuses = iter([529, 429, 200])
    attempts: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        status = next(statuses)
        attempts.append(status)
        if status != 200:
            return httpx.Response(status, json={"error": {"message": "Overloaded"}})
        return httpx.Response(200, content=b"ok")

    assert await _collect(_client(handler, max_retries=3)) == b"ok"
    assert attempts == [529, 429, 200]


@pytest.mark.asyncio
async def test_retries_stop_after_max_attempts() -> None:
    attempts: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(529)
        return httpx.Response(529, json={"error": {"message": "Overloaded"}})

    with pytest.raises(TransportError) as excinfo:
        await _collect(_client(handler, max_retries=2))

    assert len(attempts) == 2
    assert excinfo.value.status_code == 529
    assert excinfo.value.retryable


@pytest.mark.asyncio
async def test_server_errors_are_not_retried() -> None:
    attempts: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(500)
        return httpx.Response(500, json={"error": {"type": "api_error", "message": "Internal failure"}})

    with pytest.raises(TransportError) as excinfo:
        await _collect(_client(handler))

    assert attempts == [500]
    assert str(excinfo.value) == "backend returned HTTP 500: Internal failure"
    assert not excinfo.value.retryable


@pytest.mark.asyncio
async def test_default_headers_and_metadata() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, content=b"")

    client = _client(handler, default_headers={"x-team": "design"}, metadata={"user_id": "u-9"})
    await _collect(client)

    assert seen[0].headers["x-team"] == "design"
    assert json.loads(seen[0].content)["metadata"] == {"user_id": "u-9"}


def test_transport_error_detail_falls_back_to_body() -> None:
    assert str(TransportError(502, "<html>Bad gateway</html>")) == "backend returned HTTP 502: <html>Bad gateway</html>"
    assert str(TransportError(503)) == "backend returned HTTP 503"


@pytest.mark.asyncio
async def test_aclose_leaves_injected_client_open() -> None:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
    client = AIClient(ClientSettings(base_url="https://api.test", api_key="", model="m"), http_client=http_client)

    await client.aclose()

    assert not http_client.is_closed
    await http_client.aclose()
