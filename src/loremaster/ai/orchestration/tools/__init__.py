"""Tool system for the orchestration engine.

Example:
    from loremaster.ai.orchestration.tools import ToolDispatcher, ToolRegistry, ToolSpec

    registry = ToolRegistry()
    registry.register_function(spec=ToolSpec(name="echo", description="Echo"), handler=echo)
    dispatcher = ToolDispatcher(registry.freeze())
    result = await dispatcher.dispatch(call)
"""

from .types import (
    ArgumentRecovery,
    CancelToken,
    PreviewExtractor,
    SimpleTool,
    Tool,
    ToolCategory,
    ToolContext,
    ToolHandler,
    ToolInvocation,
    ToolSpec,
)

from .registry import (
    DuplicateToolError,
    RegistryFrozenError,
    ToolNotFoundError,
    ToolRegistration,
    ToolRegistry,
)

from .results import (
    RESULT_KINDS,
    DataQueryResult,
    DiffLookupResult,
    DocumentCreateResult,
    DocumentPatchResult,
    DocumentSearchResult,
    EntityProfileResult,
    HistoryLookupResult,
    IssueSearchResult,
    SchemaLookupResult,
    ToolFailure,
    ToolResult,
    WikiSearchResult,
)

from .dispatcher import ToolDispatcher, parse_tool_arguments

__all__ = [
    # types.py
    "ArgumentRecovery",
    "CancelToken",
    "PreviewExtractor",
    "SimpleTool",
    "Tool",
    "ToolCategory",
    "ToolContext",
    "ToolHandler",
    "ToolInvocation",
    "ToolSpec",
    # registry.py
    "DuplicateToolError",
    "RegistryFrozenError",
    "ToolNotFoundError",
    "ToolRegistration",
    "ToolRegistry",
    # results.py
    "RESULT_KINDS",
    "DataQueryResult",
    "DiffLookupResult",
    "DocumentCreateResult",
    "DocumentPatchResult",
    "DocumentSearchResult",
    "EntityProfileResult",
    "HistoryLookupResult",
    "IssueSearchResult",
    "SchemaLookupResult",
    "ToolFailure",
    "ToolResult",
    "WikiSearchResult",
    # dispatcher.py
    "ToolDispatcher",
    "parse_tool_arguments",
]
