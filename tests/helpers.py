"""Shared test helpers and stub classes.

Builders for the two streaming wire formats plus a scripted model client, so
orchestrator tests can describe each request cycle as a list of raw chunks.
"""

from __future__ import annotations

import asyncio
import inspect
import json
from typing import Any, Callable, Iterable, Mapping, Sequence

from loremaster.ai.orchestration.types import Message

# A scripted cycle is a list of chunks; an exception in place of the list (or
# in place of a chunk) is raised at that point, and a callable is awaited.
CycleScript = Sequence[Any] | BaseException


# =============================================================================
# Anthropic Messages SSE
# =============================================================================


def sse_event(event: str, payload: Mapping[str, Any]) -> bytes:
    return f"event: {event}\ndata: {json.dumps(payload)}\n\n".encode("utf-8")


def anthropic_stream(
    *,
    text: Sequence[str] = (),
    tools: Sequence[tuple[str, str, Sequence[str]]] = (),
    stop_reason: str = "end_turn",
) -> list[bytes]:
    """Build an Anthropic event stream.

    ``text`` is streamed as deltas of one text block; each entry of ``tools``
    is ``(tool_id, name, argument_fragments)`` streamed as its own block.
    """

    chunks = [sse_event("message_start", {"type": "message_start", "message": {"id": "msg_1", "role": "assistant"}})]
    index = 0
    if text:
        chunks.append(
            sse_event(
                "content_block_start",
                {"type": "content_block_start", "index": index, "content_block": {"type": "text", "text": ""}},
            )
        )
        for piece in text:
            chunks.append(
                sse_event(
                    "content_block_delta",
                    {"type": "content_block_delta", "index": index, "delta": {"type": "text_delta", "text": piece}},
                )
            )
        chunks.append(sse_event("content_block_stop", {"type": "content_block_stop", "index": index}))
        index += 1
    for tool_id, name, fragments in tools:
        chunks.append(
            sse_event(
                "content_block_start",
                {
                    "type": "content_block_start",
                    "index": index,
                    "content_block": {"type": "tool_use", "id": tool_id, "name": name, "input": {}},
                },
            )
        )
        for fragment in fragments:
            chunks.append(
                sse_event(
                    "content_block_delta",
                    {
                        "type": "content_block_delta",
                        "index": index,
                        "delta": {"type": "input_json_delta", "partial_json": fragment},
                    },
                )
            )
        chunks.append(sse_event("content_block_stop", {"type": "content_block_stop", "index": index}))
        index += 1
    chunks.append(
        sse_event("message_delta", {"type": "message_delta", "delta": {"stop_reason": stop_reason}, "usage": {}})
    )
    chunks.append(sse_event("message_stop", {"type": "message_stop"}))
    return chunks


def tool_use(tool_id: str, name: str, arguments: Mapping[str, Any], *, text: Sequence[str] = ()) -> list[bytes]:
    """A cycle that calls one tool with complete arguments."""

    return anthropic_stream(text=text, tools=[(tool_id, name, [json.dumps(arguments)])], stop_reason="tool_use")


# =============================================================================
# OpenAI chat-completions SSE
# =============================================================================


def openai_chunk(
    *,
    content: str | None = None,
    tool_calls: Sequence[Mapping[str, Any]] | None = None,
    finish_reason: str | None = None,
) -> bytes:
    delta: dict[str, Any] = {}
    if content is not None:
        delta["content"] = content
    if tool_calls is not None:
        delta["tool_calls"] = list(tool_calls)
    payload = {
        "id": "chatcmpl-1",
        "object": "chat.completion.chunk",
        "created": 0,
        "model": "test-model",
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    }
    return f"data: {json.dumps(payload)}\n\n".encode("utf-8")


OPENAI_DONE = b"data: [DONE]\n\n"


# =============================================================================
# Scripted model client
# =============================================================================


class FakeModelClient:
    """Stands in for :class:`AIClient`, replaying one script per request cycle."""

    def __init__(self, cycles: Iterable[CycleScript], *, protocol: str = "anthropic") -> None:
        self.protocol = protocol
        self._cycles = list(cycles)
        self.requests: list[dict[str, Any]] = []
        self.closed = False

    @property
    def messages(self) -> list[list[Message]]:
        return [request["messages"] for request in self.requests]

    async def stream_chat(
        self,
        messages: Sequence[Message],
        *,
        tools: Sequence[Mapping[str, Any]] | None = None,
        max_tokens: int = 8192,
        temperature: float | None = None,
    ):
        self.requests.append(
            {
                "messages": list(messages),
                "tools": list(tools or ()),
                "max_tokens": max_tokens,
                "temperature": temperature,
            }
        )
        index = len(self.requests) - 1
        if index >= len(self._cycles):
            raise AssertionError(f"unexpected request cycle #{index + 1}")
        script = self._cycles[index]
        if isinstance(script, BaseException):
            raise script
        for chunk in script:
            if isinstance(chunk, BaseException):
                raise chunk
            if callable(chunk):
                outcome = chunk()
                if inspect.isawaitable(outcome):
                    await outcome
                continue
            yield chunk
            await asyncio.sleep(0)

    async def aclose(self) -> None:
        self.closed = True


def split_bytes(data: bytes, size: int) -> list[bytes]:
    """Cut ``data`` into ``size``-byte pieces, ignoring UTF-8 boundaries."""

    return [data[offset : offset + size] for offset in range(0, len(data), size)]


def recorder() -> tuple[list[Any], Callable[[Any], None]]:
    """Return a list and a callback appending to it."""

    received: list[Any] = []
    return received, received.append
