"""Tabular data query tool.

The query language and the engine executing it live outside this package.
This module only adapts a :class:`QueryEngine` to the tool contract.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Mapping, Protocol, Sequence, Tuple, runtime_checkable

from ..orchestration.tools import DataQueryResult, SimpleTool, ToolCategory, ToolInvocation, ToolSpec

__all__ = ["QueryOutput", "QueryEngine", "QUERY_DATA_SPEC", "create_query_data_tool"]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class QueryOutput:
    """Rows produced by a query engine.

    ``error`` carries the engine's own complaint (syntax error, unknown
    table) and is shown to the model so it can correct the query.
    """

    columns: Tuple[str, ...] = ()
    rows: Tuple[Tuple[Any, ...], ...] = ()
    error: str | None = None

    @classmethod
    def from_records(cls, records: Sequence[Mapping[str, Any]]) -> "QueryOutput":
        """Build an output from dict rows, keeping first-seen column order."""
        columns: list[str] = []
        for record in records:
            for key in record:
                if key not in columns:
                    columns.append(key)
        rows = tuple(tuple(record.get(column) for column in columns) for record in records)
        return cls(columns=tuple(columns), rows=rows)


@runtime_checkable
class QueryEngine(Protocol):
    """Executes a query string against the game data tables."""

    def execute(self, query: str) -> QueryOutput | Awaitable[QueryOutput]:
        ...


QUERY_DATA_SPEC = ToolSpec(
    name="query_data",
    description=(
        "Run a read-only SQL-style query against the game data tables and return the "
        "matching rows. Prefer selecting only the columns you need; at most 100 rows "
        "are shown to you."
    ),
    parameters={
        "type": "object",
        "properties": {
            "sql": {"type": "string", "description": "The SELECT statement to run."},
            "reason": {"type": "string", "description": "Why this query is needed, shown to the user."},
        },
        "required": ["sql"],
    },
    category=ToolCategory.DATA,
)


def create_query_data_tool(engine: QueryEngine) -> SimpleTool:
    async def handler(arguments: Mapping[str, Any], invocation: ToolInvocation) -> DataQueryResult:
        query = str(arguments.get("sql") or "").strip()
        if not query:
            return DataQueryResult(
                call_id=invocation.call_id,
                tool_name=invocation.tool_name,
                error="sql must not be empty",
            )
        output = engine.execute(query)
        if inspect.isawaitable(output):
            output = await output
        if output.error:
            LOGGER.debug("Query rejected by engine: %s", output.error)
        rows = tuple(tuple(row) for row in output.rows)
        return DataQueryResult(
            call_id=invocation.call_id,
            tool_name=invocation.tool_name,
            error=output.error,
            query=query,
            columns=tuple(output.columns),
            rows=rows,
            row_count=len(rows),
        )

    return SimpleTool(spec=QUERY_DATA_SPEC, handler=handler)
