"""Request payload encoders for the supported backend protocols."""

from __future__ import annotations

import json
import logging
from typing import Any, Iterable, Literal, Mapping, Sequence

from .orchestration.types import Message

__all__ = [
    "WireProtocol",
    "to_anthropic_messages",
    "to_openai_messages",
    "build_request_payload",
]

LOGGER = logging.getLogger(__name__)

WireProtocol = Literal["anthropic", "openai"]


def _tool_call_parts(call: Mapping[str, Any]) -> tuple[str, str, str]:
    function = call.get("function") or {}
    call_id = str(call.get("id") or "")
    name = str(function.get("name") or call.get("name") or "")
    arguments = function.get("arguments", call.get("arguments", ""))
    if not isinstance(arguments, str):
        arguments = json.dumps(arguments, ensure_ascii=False)
    return call_id, name, arguments


def _parse_input(arguments: str) -> dict[str, Any]:
    if not arguments.strip():
        return {}
    try:
        parsed = json.loads(arguments)
    except ValueError:
        # Truncated arguments still have to be sent back as an object.
        return {}
    return parsed if isinstance(parsed, dict) else {}


# -----------------------------------------------------------------------------
# Anthropic Messages
# -----------------------------------------------------------------------------


def to_anthropic_messages(messages: Iterable[Message]) -> tuple[str, list[dict[str, Any]]]:
    """Split ``messages`` into a system prompt and Messages API turns.

    Tool results become ``tool_result`` blocks on a user turn and consecutive
    turns of the same role are merged, as the API requires alternation.
    """

    system_parts: list[str] = []
    turns: list[dict[str, Any]] = []

    def _append(role: str, blocks: list[dict[str, Any]]) -> None:
        if not blocks:
            return
        if turns and turns[-1]["role"] == role:
            turns[-1]["content"].extend(blocks)
        else:
            turns.append({"role": role, "content": blocks})

    for message in messages:
        if message.role == "system":
            if message.content:
                system_parts.append(message.content)
        elif message.role == "user":
            if message.content:
                _append("user", [{"type": "text", "text": message.content}])
        elif message.role == "assistant":
            blocks: list[dict[str, Any]] = []
            if message.content:
                blocks.append({"type": "text", "text": message.content})
            for call in message.tool_calls or ():
                call_id, name, arguments = _tool_call_parts(call)
                blocks.append({"type": "tool_use", "id": call_id, "name": name, "input": _parse_input(arguments)})
            _append("assistant", blocks)
        elif message.role == "tool":
            block: dict[str, Any] = {
                "type": "tool_result",
                "tool_use_id": message.tool_call_id or "",
                "content": message.content,
            }
            if message.metadata.get("is_error"):
                block["is_error"] = True
            _append("user", [block])
    return "\n\n".join(system_parts), turns


# -----------------------------------------------------------------------------
# OpenAI chat completions
# -----------------------------------------------------------------------------


def to_openai_messages(messages: Iterable[Message]) -> list[dict[str, Any]]:
    payload: list[dict[str, Any]] = []
    for message in messages:
        param = dict(message.to_chat_param())
        if message.role == "assistant" and message.tool_calls and not message.content:
            param["content"] = None
        if message.role == "assistant" and not message.tool_calls and not message.content:
            continue
        payload.append(param)
    return payload


# -----------------------------------------------------------------------------
# Payload
# -----------------------------------------------------------------------------


def build_request_payload(
    protocol: WireProtocol,
    messages: Sequence[Message],
    *,
    model: str,
    max_tokens: int,
    tools: Sequence[Mapping[str, Any]] | None = None,
    temperature: float | None = None,
    metadata: Mapping[str, str] | None = None,
    stream: bool = True,
) -> dict[str, Any]:
    if not messages:
        raise ValueError("At least one message is required to start a chat")

    if protocol == "anthropic":
        system, turns = to_anthropic_messages(messages)
        payload: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "messages": turns,
            "stream": stream,
        }
        if system:
            payload["system"] = system
        if metadata and metadata.get("user_id"):
            payload["metadata"] = {"user_id": metadata["user_id"]}
    elif protocol == "openai":
        payload = {
            "model": model,
            "max_tokens": max_tokens,
            "messages": to_openai_messages(messages),
            "stream": stream,
        }
        if metadata:
            payload["metadata"] = dict(metadata)
    else:
        raise ValueError(f"Unsupported wire protocol: {protocol!r}")

    if tools:
        payload["tools"] = [dict(tool) for tool in tools]
    if temperature is not None:
        payload["temperature"] = temperature
    return payload
