"""Tool registry for the orchestration engine.

Tools are registered while the application wires itself up; the registry is
then frozen and shared read-only by every conversation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Literal, Mapping, Sequence

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

from .types import SimpleTool, Tool, ToolInvocation, ToolSpec

__all__ = [
    "ToolRegistry",
    "ToolRegistration",
    "DuplicateToolError",
    "ToolNotFoundError",
    "RegistryFrozenError",
]

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Exceptions
# -----------------------------------------------------------------------------


class DuplicateToolError(Exception):
    """Raised when attempting to register a tool with a name that already exists."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' is already registered")


class ToolNotFoundError(Exception):
    """Raised when a requested tool is not found in the registry."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' not found")


class RegistryFrozenError(RuntimeError):
    """Raised when a frozen registry is modified."""


# -----------------------------------------------------------------------------
# Tool Registration
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class ToolRegistration:
    """Record of a registered tool.

    Attributes:
        name: Tool name.
        tool: The tool implementation.
        spec: Tool specification.
        validator: Compiled argument schema, ``None`` when the tool declares none.
        metadata: Additional registration metadata.
    """

    name: str
    tool: Tool
    spec: ToolSpec
    validator: Draft202012Validator | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


# -----------------------------------------------------------------------------
# Tool Registry
# -----------------------------------------------------------------------------


class ToolRegistry:
    """Registry mapping tool names to implementations.

    Example:
        registry = ToolRegistry()
        registry.register_function(
            spec=ToolSpec(name="echo", description="Echo the input"),
            handler=echo_handler,
        )
        registry.freeze()
    """

    def __init__(self) -> None:
        self._tools: dict[str, ToolRegistration] = {}
        self._frozen = False

    def register(
        self,
        tool: Tool,
        *,
        allow_override: bool = False,
        metadata: Mapping[str, Any] | None = None,
    ) -> ToolRegistration:
        """Register a tool implementation.

        Raises:
            RegistryFrozenError: If the registry has been frozen.
            DuplicateToolError: If the name is taken and ``allow_override`` is False.
            jsonschema.exceptions.SchemaError: If the tool's parameter schema is invalid.
        """
        self._ensure_mutable()
        name = tool.name
        if name in self._tools and not allow_override:
            raise DuplicateToolError(name)

        registration = ToolRegistration(
            name=name,
            tool=tool,
            spec=tool.spec,
            validator=_compile_schema(tool.spec),
            metadata=dict(metadata) if metadata else {},
        )
        self._tools[name] = registration
        LOGGER.debug("Registered tool: %s", name)
        return registration

    def register_function(
        self,
        spec: ToolSpec,
        handler: Callable[[Mapping[str, Any], ToolInvocation], Any],
        *,
        allow_override: bool = False,
        metadata: Mapping[str, Any] | None = None,
    ) -> ToolRegistration:
        """Register a plain function (sync or async) as a tool."""
        tool = SimpleTool(spec=spec, handler=handler)
        return self.register(tool, allow_override=allow_override, metadata=metadata)

    def unregister(self, name: str) -> bool:
        self._ensure_mutable()
        if name in self._tools:
            del self._tools[name]
            LOGGER.debug("Unregistered tool: %s", name)
            return True
        return False

    def freeze(self) -> "ToolRegistry":
        """Make the registry read-only. Returns ``self`` for chaining."""
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, name: str) -> Tool | None:
        registration = self._tools.get(name)
        return registration.tool if registration is not None else None

    def get_required(self, name: str) -> Tool:
        tool = self.get(name)
        if tool is None:
            raise ToolNotFoundError(name)
        return tool

    def get_registration(self, name: str) -> ToolRegistration | None:
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        return name in self._tools

    def list_tools(self) -> list[ToolSpec]:
        return [registration.spec for registration in self._tools.values()]

    def list_names(self) -> list[str]:
        return list(self._tools)

    def get_wire_tools(
        self,
        protocol: Literal["anthropic", "openai"] = "anthropic",
        *,
        filter_names: Sequence[str] | None = None,
    ) -> list[dict[str, Any]]:
        """Get tool definitions in the format the backend protocol expects."""
        tools: list[dict[str, Any]] = []
        for registration in self._tools.values():
            if filter_names is not None and registration.name not in filter_names:
                continue
            spec = registration.spec
            tools.append(spec.to_openai_tool() if protocol == "openai" else spec.to_anthropic_tool())
        return tools

    def _ensure_mutable(self) -> None:
        if self._frozen:
            raise RegistryFrozenError("Tool registry is frozen; register tools before sharing it")

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[ToolSpec]:
        return iter(self.list_tools())


def _compile_schema(spec: ToolSpec) -> Draft202012Validator | None:
    if not spec.parameters:
        return None
    schema = dict(spec.parameters)
    try:
        Draft202012Validator.check_schema(schema)
    except SchemaError:
        LOGGER.error("Tool %s declares an invalid parameter schema", spec.name)
        raise
    return Draft202012Validator(schema)
