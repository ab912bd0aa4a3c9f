"""Tool system types for the orchestration engine.

This module defines the contract between the dispatcher and the tool
collaborators: a :class:`ToolSpec` describing the tool to the model, a
handler receiving parsed arguments plus a :class:`ToolInvocation`, and the
:class:`CancelToken` used to stop in-flight work.
"""

from __future__ import annotations

import asyncio
import inspect
import threading
from dataclasses import dataclass, field
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Mapping,
    Protocol,
    runtime_checkable,
)

from .results import ToolResult

if TYPE_CHECKING:  # pragma: no cover - import for typing only
    from ....editor.documents import DocumentStore

__all__ = [
    "CancelToken",
    "ToolCategory",
    "ToolContext",
    "ToolInvocation",
    "ToolSpec",
    "ToolHandler",
    "PreviewExtractor",
    "ArgumentRecovery",
    "Tool",
    "SimpleTool",
]


# -----------------------------------------------------------------------------
# Tool Categories
# -----------------------------------------------------------------------------


class ToolCategory:
    """Standard tool categories for organization."""

    DATA = "data"
    SCHEMA = "schema"
    HISTORY = "history"
    SEARCH = "search"
    DOCUMENT = "document"
    TRACKER = "tracker"
    UTILITY = "utility"


# -----------------------------------------------------------------------------
# Cancellation
# -----------------------------------------------------------------------------


class CancelToken:
    """Thread-safe, one-shot cancellation signal.

    Handlers may poll :attr:`cancelled`, register a callback, or ``await``
    :meth:`wait` from any event loop.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._reason: str | None = None
        self._callbacks: list[Callable[[], Any]] = []
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str | None = None) -> bool:
        """Signal cancellation. Returns ``False`` if already cancelled."""
        with self._lock:
            if self._cancelled:
                return False
            self._cancelled = True
            self._reason = reason
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()
        return True

    def add_callback(self, callback: Callable[[], Any]) -> Callable[[], None]:
        """Run ``callback`` on cancellation; returns a function that unregisters it."""
        with self._lock:
            if not self._cancelled:
                self._callbacks.append(callback)

                def _remove() -> None:
                    with self._lock:
                        if callback in self._callbacks:
                            self._callbacks.remove(callback)

                return _remove
        callback()
        return lambda: None

    async def wait(self) -> None:
        """Block until the token is cancelled."""
        if self._cancelled:
            return
        loop = asyncio.get_running_loop()
        future: asyncio.Future[None] = loop.create_future()

        def _wake() -> None:
            loop.call_soon_threadsafe(_resolve, future)

        remove = self.add_callback(_wake)
        try:
            await future
        finally:
            remove()

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise asyncio.CancelledError(self._reason or "cancelled")


def _resolve(future: asyncio.Future[None]) -> None:
    if not future.done():
        future.set_result(None)


# -----------------------------------------------------------------------------
# Invocation context
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class ToolContext:
    """Per-conversation collaborators handed to every tool call.

    Attributes:
        documents: Store of generated documents, shared across turns.
        conversation_id: Identifier of the conversation, if the caller has one.
        values: Free-form extras for custom tools.
    """

    documents: "DocumentStore | None" = None
    conversation_id: str | None = None
    values: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class ToolInvocation:
    """What a handler knows about the call it is serving.

    ``arguments_recovered`` is set when the streamed arguments were cut off and
    the tool's ``recover_arguments`` salvaged them.
    """

    call_id: str
    tool_name: str
    cancel_token: CancelToken
    context: ToolContext
    arguments_recovered: bool = False


# -----------------------------------------------------------------------------
# Tool Specification
# -----------------------------------------------------------------------------

ToolHandler = Callable[[Mapping[str, Any], ToolInvocation], Awaitable[ToolResult]]

# Given the partial argument text of a streaming call, return (title, html) to preview.
PreviewExtractor = Callable[[str], "tuple[str, str] | None"]

# Given argument text that failed to parse, return salvaged arguments or None.
ArgumentRecovery = Callable[[str], "Mapping[str, Any] | None"]


@dataclass(slots=True, frozen=True)
class ToolSpec:
    """Specification for a tool's interface.

    Attributes:
        name: Unique identifier for the tool.
        description: Description shown to the model.
        parameters: JSON Schema for the tool's arguments.
        category: Tool category for organization.
        preview: Optional extractor for live previews of streaming arguments.
        recover_arguments: Optional salvage routine for truncated arguments.
    """

    name: str
    description: str
    parameters: Mapping[str, Any] = field(default_factory=dict)
    category: str = ToolCategory.UTILITY
    preview: PreviewExtractor | None = None
    recover_arguments: ArgumentRecovery | None = None

    def input_schema(self) -> dict[str, Any]:
        if self.parameters:
            return dict(self.parameters)
        return {"type": "object", "properties": {}}

    def to_openai_tool(self) -> dict[str, Any]:
        """Convert to OpenAI tool definition format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema(),
            },
        }

    def to_anthropic_tool(self) -> dict[str, Any]:
        """Convert to Anthropic Messages tool definition format."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema(),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": dict(self.parameters) if self.parameters else {},
            "category": self.category,
        }


# -----------------------------------------------------------------------------
# Tool Protocol
# -----------------------------------------------------------------------------


@runtime_checkable
class Tool(Protocol):
    """Protocol for tool implementations."""

    @property
    def name(self) -> str:
        ...

    @property
    def spec(self) -> ToolSpec:
        ...

    async def execute(self, arguments: Mapping[str, Any], invocation: ToolInvocation) -> ToolResult:
        ...


@dataclass
class SimpleTool:
    """Tool implementation wrapping a handler callable.

    Sync handlers are called inline; async handlers are awaited.
    """

    spec: ToolSpec
    handler: Callable[[Mapping[str, Any], ToolInvocation], Any]

    @property
    def name(self) -> str:
        return self.spec.name

    async def execute(self, arguments: Mapping[str, Any], invocation: ToolInvocation) -> ToolResult:
        result = self.handler(arguments, invocation)
        if inspect.isawaitable(result):
            result = await result
        return result
