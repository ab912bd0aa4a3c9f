"""Core type definitions for conversation orchestration.

Messages and turns are frozen dataclasses so a sealed turn can be handed to
the caller's history store without the orchestrator ever reaching back into
it. :class:`ToolCall` is the one mutable type: it accumulates streamed
argument fragments until the model marks the call complete.
"""

from __future__ import annotations

import enum
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Literal, Mapping, Sequence

from openai.types.chat import ChatCompletionMessageParam

from .progress import ThinkingStep

if TYPE_CHECKING:  # pragma: no cover - import for typing only
    from ...services.settings import Settings
    from .tools.results import ToolResult

__all__ = [
    "Message",
    "MessageRole",
    "StopReason",
    "ToolCall",
    "ToolCallStatus",
    "TurnConfig",
    "ConversationTurn",
    "DocumentPreview",
]


def _utcnow() -> datetime:
    """Return current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def new_turn_id() -> str:
    return f"turn-{uuid.uuid4().hex[:12]}"


# -----------------------------------------------------------------------------
# Message Type
# -----------------------------------------------------------------------------

MessageRole = Literal["system", "user", "assistant", "tool"]


@dataclass(slots=True, frozen=True)
class Message:
    """Immutable chat message.

    This is the canonical message type used by the orchestrator. The wire
    encoders translate it into whatever the configured backend expects.

    Attributes:
        role: The role of the message sender.
        content: The text content of the message.
        name: Optional tool name for tool messages.
        tool_call_id: ID linking a tool result to its call.
        tool_calls: Tool calls made by the assistant, in OpenAI function format.
        metadata: Additional metadata (not sent to the model).
    """

    role: MessageRole
    content: str
    name: str | None = None
    tool_call_id: str | None = None
    tool_calls: tuple[Mapping[str, Any], ...] | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def to_chat_param(self) -> ChatCompletionMessageParam:
        """Convert to OpenAI's ChatCompletionMessageParam format."""
        payload: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.name is not None and self.role != "tool":
            payload["name"] = self.name
        if self.tool_call_id is not None:
            payload["tool_call_id"] = self.tool_call_id
        if self.tool_calls:
            payload["tool_calls"] = [dict(call) for call in self.tool_calls]
        return payload  # type: ignore[return-value]

    @classmethod
    def from_chat_param(cls, param: Mapping[str, Any]) -> Message:
        tool_calls = param.get("tool_calls")
        if tool_calls is not None:
            tool_calls = tuple(tool_calls)
        return cls(
            role=param.get("role", "user"),  # type: ignore[arg-type]
            content=str(param.get("content") or ""),
            name=param.get("name"),
            tool_call_id=param.get("tool_call_id"),
            tool_calls=tool_calls,
        )

    @classmethod
    def system(cls, content: str, **metadata: Any) -> Message:
        return cls(role="system", content=content, metadata=metadata)

    @classmethod
    def user(cls, content: str, **metadata: Any) -> Message:
        return cls(role="user", content=content, metadata=metadata)

    @classmethod
    def assistant(
        cls,
        content: str,
        tool_calls: Sequence[Mapping[str, Any]] | None = None,
        **metadata: Any,
    ) -> Message:
        return cls(
            role="assistant",
            content=content,
            tool_calls=tuple(tool_calls) if tool_calls else None,
            metadata=metadata,
        )

    @classmethod
    def tool(
        cls,
        content: str,
        tool_call_id: str,
        name: str | None = None,
        **metadata: Any,
    ) -> Message:
        return cls(
            role="tool",
            content=content,
            tool_call_id=tool_call_id,
            name=name,
            metadata=metadata,
        )


# -----------------------------------------------------------------------------
# Stream vocabulary
# -----------------------------------------------------------------------------


class StopReason(str, enum.Enum):
    """Why a request cycle ended."""

    END_TURN = "end_turn"
    MAX_TOKENS = "max_tokens"
    TOOL_USE = "tool_use"
    ERROR = "error"


class ToolCallStatus(str, enum.Enum):
    PENDING = "pending"
    READY = "ready"
    ERROR = "error"


@dataclass(slots=True)
class ToolCall:
    """A tool invocation being assembled from the stream.

    ``arguments`` accumulates raw JSON fragments in arrival order. The call is
    dispatched only once it is ``READY``.
    """

    id: str
    name: str
    arguments: str = ""
    status: ToolCallStatus = ToolCallStatus.PENDING

    def append(self, fragment: str) -> None:
        if self.status is not ToolCallStatus.PENDING:
            raise RuntimeError(f"tool call {self.id} is already {self.status.value}")
        self.arguments += fragment

    def mark_ready(self) -> None:
        self.status = ToolCallStatus.READY

    def mark_error(self) -> None:
        self.status = ToolCallStatus.ERROR

    @property
    def is_ready(self) -> bool:
        return self.status is ToolCallStatus.READY

    def to_chat_param(self) -> dict[str, Any]:
        """Render the call the way an assistant message carries it."""
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments or "{}"},
        }


@dataclass(slots=True, frozen=True)
class DocumentPreview:
    """Partial or patched document surfaced while a turn is running."""

    call_id: str
    tool_name: str
    title: str
    html: str
    complete: bool = False

    @property
    def char_count(self) -> int:
        return len(self.html)


# -----------------------------------------------------------------------------
# Turn Configuration
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class TurnConfig:
    """Configuration for a single turn execution.

    Attributes:
        max_iterations: Maximum tool-use request cycles per turn.
        max_continuations: Maximum continuation cycles after ``max_tokens``.
        max_output_tokens: Output token limit sent with every request.
        temperature: Sampling temperature, ``None`` to use the backend default.
        tool_timeout_seconds: Timeout for an individual tool dispatch.
        system_prompt: Optional system prompt prepended to every request.
        replay_raw_history: Replay earlier turns' tool traffic instead of text only.
    """

    max_iterations: int = 8
    max_continuations: int = 5
    max_output_tokens: int = 8192
    temperature: float | None = None
    tool_timeout_seconds: float = 30.0
    system_prompt: str | None = None
    replay_raw_history: bool = False

    def with_updates(self, **kwargs: Any) -> TurnConfig:
        """Return a new TurnConfig with updated values."""
        current = {
            "max_iterations": self.max_iterations,
            "max_continuations": self.max_continuations,
            "max_output_tokens": self.max_output_tokens,
            "temperature": self.temperature,
            "tool_timeout_seconds": self.tool_timeout_seconds,
            "system_prompt": self.system_prompt,
            "replay_raw_history": self.replay_raw_history,
        }
        current.update(kwargs)
        return TurnConfig(**current)

    @classmethod
    def from_settings(cls, settings: "Settings", **overrides: Any) -> TurnConfig:
        config = cls(
            max_iterations=max(1, int(settings.max_tool_iterations)),
            max_continuations=max(0, int(settings.max_continuations)),
            max_output_tokens=max(1, int(settings.max_output_tokens)),
            temperature=settings.temperature,
            tool_timeout_seconds=float(settings.tool_timeout),
        )
        return config.with_updates(**overrides) if overrides else config


# -----------------------------------------------------------------------------
# Conversation Turn
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ConversationTurn:
    """A sealed request/response exchange.

    Attributes:
        id: Unique turn identifier.
        role: ``user`` for submitted input, ``assistant`` for orchestrator output.
        text: Full text, merged across tool iterations and continuations.
        tool_results: One result per completed tool call, in resolution order.
        raw_messages: Protocol-level transcript of this turn (assistant tool
            calls and tool results) for replaying in later requests.
        created_at: When the turn was created.
        error: Transport or stream failure, ``None`` on success.
        truncated: Output was still cut off after the continuation limit.
        cancelled: The caller cancelled the run.
        continuation_count: Continuation cycles issued.
        iteration_count: Tool-use request cycles issued.
        thinking_steps: Progress log recorded during the run.
        metadata: Additional flags such as ``max_iterations_reached``.
    """

    id: str
    role: Literal["user", "assistant"]
    text: str
    tool_results: tuple[ToolResult, ...] = ()
    raw_messages: tuple[Message, ...] = ()
    created_at: datetime = field(default_factory=_utcnow)
    error: str | None = None
    truncated: bool = False
    cancelled: bool = False
    continuation_count: int = 0
    iteration_count: int = 0
    thinking_steps: tuple[ThinkingStep, ...] = ()
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def user(cls, text: str) -> ConversationTurn:
        return cls(id=new_turn_id(), role="user", text=text)

    @property
    def succeeded(self) -> bool:
        return self.error is None and not self.cancelled

    def history_messages(self, *, replay_raw: bool = False) -> list[Message]:
        """Messages this turn contributes to a later request."""
        if self.role == "user":
            return [Message.user(self.text)] if self.text else []
        if replay_raw and self.raw_messages:
            return list(self.raw_messages)
        return [Message.assistant(self.text)] if self.text else []

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "text": self.text,
            "tool_results": [result.to_dict() for result in self.tool_results],
            "created_at": self.created_at.isoformat(),
            "error": self.error,
            "truncated": self.truncated,
            "cancelled": self.cancelled,
            "continuation_count": self.continuation_count,
            "iteration_count": self.iteration_count,
            "thinking_steps": [step.to_dict() for step in self.thinking_steps],
            "metadata": json.loads(json.dumps(dict(self.metadata), default=str)),
        }
