"""Incremental decoder turning raw response bytes into stream events.

The decoder is fed one network chunk at a time and keeps whatever it cannot
interpret yet (a split UTF-8 sequence, half an SSE line, an unterminated
event) until the next chunk arrives. Two wire protocols are understood:

* ``anthropic``: Messages API server-sent events, or a buffered message body.
* ``openai``: chat-completions chunks, or a buffered completion body.

A body whose first non-blank character is ``{`` is treated as a single
buffered JSON response and decoded when :meth:`StreamDecoder.finish` is
called. Malformed input never raises; it ends the cycle with
``TurnStop(StopReason.ERROR)``.
"""

from __future__ import annotations

import codecs
import json
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Literal, Mapping, Union

from openai.types.chat import ChatCompletion, ChatCompletionChunk

from .types import StopReason

__all__ = [
    "TextDelta",
    "ToolStart",
    "ToolArgDelta",
    "ToolStop",
    "TurnStop",
    "StreamEvent",
    "StreamDecoder",
    "WireProtocol",
    "decode_all",
]

LOGGER = logging.getLogger(__name__)

WireProtocol = Literal["anthropic", "openai"]


# -----------------------------------------------------------------------------
# Events
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class TextDelta:
    text: str


@dataclass(slots=True, frozen=True)
class ToolStart:
    id: str
    name: str


@dataclass(slots=True, frozen=True)
class ToolArgDelta:
    id: str
    fragment: str


@dataclass(slots=True, frozen=True)
class ToolStop:
    id: str


@dataclass(slots=True, frozen=True)
class TurnStop:
    reason: StopReason
    detail: str | None = None


StreamEvent = Union[TextDelta, ToolStart, ToolArgDelta, ToolStop, TurnStop]


_ANTHROPIC_STOP_REASONS: Mapping[str, StopReason] = {
    "end_turn": StopReason.END_TURN,
    "stop_sequence": StopReason.END_TURN,
    "pause_turn": StopReason.END_TURN,
    "refusal": StopReason.END_TURN,
    "max_tokens": StopReason.MAX_TOKENS,
    "tool_use": StopReason.TOOL_USE,
}

_OPENAI_STOP_REASONS: Mapping[str, StopReason] = {
    "stop": StopReason.END_TURN,
    "content_filter": StopReason.END_TURN,
    "length": StopReason.MAX_TOKENS,
    "tool_calls": StopReason.TOOL_USE,
    "function_call": StopReason.TOOL_USE,
}


# -----------------------------------------------------------------------------
# Decoder
# -----------------------------------------------------------------------------


class StreamDecoder:
    """Stateful decoder for one request cycle.

    Use a fresh instance per cycle. After the terminal :class:`TurnStop` has
    been emitted every further call returns an empty list.
    """

    def __init__(self, protocol: WireProtocol = "anthropic") -> None:
        if protocol not in ("anthropic", "openai"):
            raise ValueError(f"Unsupported wire protocol: {protocol!r}")
        self._protocol = protocol
        self._utf8 = codecs.getincrementaldecoder("utf-8")("strict")
        self._mode: Literal["sse", "json"] | None = None
        self._pending = ""
        self._body: list[str] = []
        self._event_name: str | None = None
        self._data_lines: list[str] = []
        self._finished = False
        self._stop_reason: StopReason | None = None
        # Open tool ids in the order they were started.
        self._open_tools: list[str] = []
        # Anthropic content block index -> tool id.
        self._blocks: dict[int, str] = {}
        # OpenAI tool call index -> tool id.
        self._indexed_tools: dict[int, str] = {}

    @property
    def protocol(self) -> WireProtocol:
        return self._protocol

    @property
    def finished(self) -> bool:
        return self._finished

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def decode(self, chunk: bytes | str) -> list[StreamEvent]:
        """Decode one raw chunk and return the events it completes."""

        if self._finished or not chunk:
            return []
        events: list[StreamEvent] = []
        if isinstance(chunk, str):
            text = chunk
        else:
            try:
                text = self._utf8.decode(chunk)
            except UnicodeDecodeError as exc:
                self._fail(f"invalid UTF-8 in response stream: {exc.reason}", events)
                return events
        self._feed(text, events)
        return events

    def finish(self) -> list[StreamEvent]:
        """Flush buffered input at end of stream and emit the terminal event."""

        if self._finished:
            return []
        events: list[StreamEvent] = []
        try:
            tail = self._utf8.decode(b"", final=True)
        except UnicodeDecodeError as exc:
            self._fail(f"truncated UTF-8 sequence at end of stream: {exc.reason}", events)
            return events
        self._feed(tail, events)
        if self._finished:
            return events

        if self._mode == "json":
            self._decode_body("".join(self._body), events)
        elif self._mode == "sse":
            if self._pending:
                line, self._pending = self._pending, ""
                self._process_line(line.rstrip("\r"), events)
            self._dispatch_event(events)
        if not self._finished:
            self._complete(events)
        return events

    # ------------------------------------------------------------------
    # Framing
    # ------------------------------------------------------------------
    def _feed(self, text: str, events: list[StreamEvent]) -> None:
        if not text:
            return
        if self._mode is None:
            self._pending += text
            stripped = self._pending.lstrip()
            if not stripped:
                return
            if stripped.startswith("{"):
                self._mode = "json"
                self._body.append(stripped)
                self._pending = ""
                return
            self._mode = "sse"
            text, self._pending = self._pending, ""
        if self._mode == "json":
            self._body.append(text)
            return

        self._pending += text
        while not self._finished:
            newline = self._pending.find("\n")
            if newline < 0:
                break
            line = self._pending[:newline].rstrip("\r")
            self._pending = self._pending[newline + 1 :]
            self._process_line(line, events)

    def _process_line(self, line: str, events: list[StreamEvent]) -> None:
        if line == "":
            self._dispatch_event(events)
            return
        if line.startswith(":"):
            return
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            self._event_name = value.strip()
        elif field == "data":
            self._data_lines.append(value)

    def _dispatch_event(self, events: list[StreamEvent]) -> None:
        if not self._data_lines:
            self._event_name = None
            return
        data = "\n".join(self._data_lines)
        name = self._event_name
        self._data_lines = []
        self._event_name = None

        if data.strip() == "[DONE]":
            self._complete(events)
            return
        try:
            payload = json.loads(data)
        except ValueError as exc:
            self._fail(f"undecodable stream payload: {exc}", events)
            return
        if not isinstance(payload, dict):
            self._fail("stream payload is not a JSON object", events)
            return
        if self._protocol == "anthropic":
            self._handle_anthropic_event(name, payload, events)
        else:
            self._handle_openai_chunk(payload, events)

    # ------------------------------------------------------------------
    # Anthropic Messages protocol
    # ------------------------------------------------------------------
    def _handle_anthropic_event(self, name: str | None, payload: Mapping[str, Any], events: list[StreamEvent]) -> None:
        event_type = payload.get("type") or name
        if event_type == "error" or name == "error":
            self._fail(f"backend error: {_error_message(payload)}", events)
            return

        if event_type == "content_block_start":
            index = _as_index(payload.get("index"))
            block = payload.get("content_block") or {}
            block_type = block.get("type")
            if block_type == "tool_use":
                tool_id = str(block.get("id") or f"toolu_{index}")
                self._blocks[index] = tool_id
                self._start_tool(tool_id, str(block.get("name") or ""), events)
                initial = block.get("input")
                if isinstance(initial, dict) and initial:
                    events.append(ToolArgDelta(tool_id, json.dumps(initial, ensure_ascii=False)))
            elif block_type == "text" and block.get("text"):
                events.append(TextDelta(str(block["text"])))
        elif event_type == "content_block_delta":
            index = _as_index(payload.get("index"))
            delta = payload.get("delta") or {}
            delta_type = delta.get("type")
            if delta_type == "text_delta":
                text = delta.get("text")
                if text:
                    events.append(TextDelta(str(text)))
            elif delta_type == "input_json_delta":
                tool_id = self._blocks.get(index)
                fragment = delta.get("partial_json")
                if tool_id is not None and fragment:
                    events.append(ToolArgDelta(tool_id, str(fragment)))
        elif event_type == "content_block_stop":
            tool_id = self._blocks.pop(_as_index(payload.get("index")), None)
            if tool_id is not None:
                self._stop_tool(tool_id, events)
        elif event_type == "message_delta":
            delta = payload.get("delta") or {}
            reason = delta.get("stop_reason")
            if reason:
                self._stop_reason = _map_reason(reason, _ANTHROPIC_STOP_REASONS)
        elif event_type == "message_stop":
            self._complete(events)
        # message_start and ping carry nothing the orchestrator consumes.

    def _decode_anthropic_message(self, payload: Mapping[str, Any], events: list[StreamEvent]) -> None:
        for block in payload.get("content") or ():
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text" and block.get("text"):
                events.append(TextDelta(str(block["text"])))
            elif block.get("type") == "tool_use":
                tool_id = str(block.get("id") or f"toolu_{len(events)}")
                self._start_tool(tool_id, str(block.get("name") or ""), events)
                events.append(ToolArgDelta(tool_id, json.dumps(block.get("input") or {}, ensure_ascii=False)))
                self._stop_tool(tool_id, events)
        reason = payload.get("stop_reason")
        if reason:
            self._stop_reason = _map_reason(reason, _ANTHROPIC_STOP_REASONS)

    # ------------------------------------------------------------------
    # OpenAI chat-completions protocol
    # ------------------------------------------------------------------
    def _handle_openai_chunk(self, payload: dict[str, Any], events: list[StreamEvent]) -> None:
        if payload.get("error"):
            self._fail(f"backend error: {_error_message(payload)}", events)
            return
        payload.setdefault("id", "")
        payload.setdefault("created", 0)
        payload.setdefault("model", "")
        payload.setdefault("object", "chat.completion.chunk")
        try:
            chunk = ChatCompletionChunk.model_validate(payload)
        except ValueError as exc:
            self._fail(f"unexpected completion chunk: {exc}", events)
            return

        for choice in chunk.choices:
            if choice.index != 0:
                continue
            delta = choice.delta
            if delta.content:
                events.append(TextDelta(delta.content))
            for tool_delta in delta.tool_calls or ():
                index = tool_delta.index
                tool_id = self._indexed_tools.get(index)
                if tool_id is None:
                    # Indices may interleave; calls close at finish_reason or end of stream.
                    tool_id = tool_delta.id or f"call_{index}"
                    self._indexed_tools[index] = tool_id
                    name = tool_delta.function.name if tool_delta.function else None
                    self._start_tool(tool_id, name or "", events)
                elif tool_id not in self._open_tools:
                    LOGGER.debug("Dropping tool call delta for closed index %d (%s)", index, tool_id)
                    continue
                arguments = tool_delta.function.arguments if tool_delta.function else None
                if arguments:
                    events.append(ToolArgDelta(tool_id, arguments))
            if choice.finish_reason:
                self._stop_reason = _map_reason(choice.finish_reason, _OPENAI_STOP_REASONS)
                for open_id in list(self._open_tools):
                    self._stop_tool(open_id, events)

    def _decode_openai_completion(self, payload: dict[str, Any], events: list[StreamEvent]) -> None:
        payload.setdefault("id", "")
        payload.setdefault("created", 0)
        payload.setdefault("model", "")
        payload.setdefault("object", "chat.completion")
        try:
            completion = ChatCompletion.model_validate(payload)
        except ValueError as exc:
            self._fail(f"unexpected completion body: {exc}", events)
            return
        if not completion.choices:
            return
        choice = completion.choices[0]
        message = choice.message
        if message.content:
            events.append(TextDelta(message.content))
        for tool_call in message.tool_calls or ():
            function = getattr(tool_call, "function", None)
            if function is None:
                continue
            self._start_tool(tool_call.id, function.name, events)
            if function.arguments:
                events.append(ToolArgDelta(tool_call.id, function.arguments))
            self._stop_tool(tool_call.id, events)
        if choice.finish_reason:
            self._stop_reason = _map_reason(choice.finish_reason, _OPENAI_STOP_REASONS)

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------
    def _decode_body(self, body: str, events: list[StreamEvent]) -> None:
        try:
            payload = json.loads(body)
        except ValueError as exc:
            self._fail(f"undecodable response body: {exc}", events)
            return
        if not isinstance(payload, dict):
            self._fail("response body is not a JSON object", events)
            return
        if payload.get("type") == "error" or payload.get("error"):
            self._fail(f"backend error: {_error_message(payload)}", events)
            return
        if self._protocol == "anthropic":
            self._decode_anthropic_message(payload, events)
        else:
            self._decode_openai_completion(payload, events)

    def _start_tool(self, tool_id: str, name: str, events: list[StreamEvent]) -> None:
        self._open_tools.append(tool_id)
        events.append(ToolStart(tool_id, name))

    def _stop_tool(self, tool_id: str, events: list[StreamEvent]) -> None:
        if tool_id in self._open_tools:
            self._open_tools.remove(tool_id)
            events.append(ToolStop(tool_id))

    def _complete(self, events: list[StreamEvent]) -> None:
        if self._finished:
            return
        for tool_id in list(self._open_tools):
            self._stop_tool(tool_id, events)
        self._blocks.clear()
        events.append(TurnStop(self._stop_reason or StopReason.END_TURN))
        self._finished = True

    def _fail(self, detail: str, events: list[StreamEvent]) -> None:
        LOGGER.warning("Stream decoding failed: %s", detail)
        events.append(TurnStop(StopReason.ERROR, detail))
        self._finished = True


def decode_all(chunks: Iterable[bytes | str], protocol: WireProtocol = "anthropic") -> list[StreamEvent]:
    """Decode a complete sequence of chunks, including the final flush."""

    decoder = StreamDecoder(protocol)
    events: list[StreamEvent] = []
    for chunk in chunks:
        events.extend(decoder.decode(chunk))
    events.extend(decoder.finish())
    return events


def _as_index(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _map_reason(reason: str, table: Mapping[str, StopReason]) -> StopReason:
    mapped = table.get(reason)
    if mapped is None:
        LOGGER.debug("Unknown stop reason %r treated as end_turn", reason)
        return StopReason.END_TURN
    return mapped


def _error_message(payload: Mapping[str, Any]) -> str:
    error = payload.get("error")
    if isinstance(error, Mapping):
        message = error.get("message") or error.get("type")
        if message:
            return str(message)
    if isinstance(error, str) and error:
        return error
    return "unknown error"
