"""Schema lookup tool and a simple in-memory schema catalog."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Protocol, Sequence, Tuple, runtime_checkable

from ..orchestration.tools import SchemaLookupResult, SimpleTool, ToolCategory, ToolInvocation, ToolSpec

__all__ = [
    "ColumnInfo",
    "Relationship",
    "TableSchema",
    "SchemaCatalog",
    "StaticSchemaCatalog",
    "SHOW_TABLE_SCHEMA_SPEC",
    "create_schema_lookup_tool",
]

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Schema model
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ColumnInfo:
    name: str
    type: str = ""
    primary_key: bool = False
    foreign_key: bool = False
    not_null: bool = False
    unique: bool = False
    note: str = ""

    def to_dict(self) -> dict[str, Any]:
        flags = [
            label
            for label, enabled in (
                ("PK", self.primary_key),
                ("FK", self.foreign_key),
                ("NOT NULL", self.not_null),
                ("UNIQUE", self.unique),
            )
            if enabled
        ]
        payload: dict[str, Any] = {"name": self.name, "type": self.type}
        if flags:
            payload["flags"] = flags
        if self.note:
            payload["note"] = self.note
        return payload


@dataclass(slots=True, frozen=True)
class Relationship:
    """A foreign-key style link, seen from the table that owns it.

    ``direction`` is ``"out"`` when this table references ``table`` and
    ``"in"`` when ``table`` references this one.
    """

    direction: str
    table: str
    from_columns: str
    to_columns: str
    kind: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "direction": self.direction,
            "table": self.table,
            "from": self.from_columns,
            "to": self.to_columns,
            "type": self.kind,
        }


@dataclass(slots=True, frozen=True)
class TableSchema:
    name: str
    description: str = ""
    group: str | None = None
    columns: Tuple[ColumnInfo, ...] = ()
    relationships: Tuple[Relationship, ...] = ()

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "TableSchema":
        columns = tuple(
            ColumnInfo(
                name=str(column.get("name", "")),
                type=str(column.get("type", "")),
                primary_key=bool(column.get("primary_key", False)),
                foreign_key=bool(column.get("foreign_key", False)),
                not_null=bool(column.get("not_null", False)),
                unique=bool(column.get("unique", False)),
                note=str(column.get("note") or ""),
            )
            for column in data.get("columns", ())
        )
        relationships = tuple(
            Relationship(
                direction=str(rel.get("direction", "out")),
                table=str(rel.get("table", "")),
                from_columns=str(rel.get("from", "")),
                to_columns=str(rel.get("to", "")),
                kind=str(rel.get("type", "")),
            )
            for rel in data.get("relationships", ())
        )
        return cls(
            name=str(data["name"]),
            description=str(data.get("description") or ""),
            group=data.get("group"),
            columns=columns,
            relationships=relationships,
        )


# -----------------------------------------------------------------------------
# Catalog
# -----------------------------------------------------------------------------


@runtime_checkable
class SchemaCatalog(Protocol):
    """Source of table metadata for schema lookups and the system prompt."""

    def list_tables(self) -> Sequence[str]:
        ...

    def describe_table(self, name: str) -> TableSchema | None:
        ...


@dataclass(slots=True)
class StaticSchemaCatalog:
    """Catalog over a fixed set of tables; lookups ignore case."""

    tables: dict[str, TableSchema] = field(default_factory=dict)

    @classmethod
    def from_tables(cls, tables: Iterable[TableSchema]) -> "StaticSchemaCatalog":
        return cls(tables={table.name: table for table in tables})

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "StaticSchemaCatalog":
        """Load ``{"tables": [{"name": ..., "columns": [...]}, ...]}``."""
        return cls.from_tables(TableSchema.from_mapping(item) for item in data.get("tables", ()))

    def list_tables(self) -> list[str]:
        return sorted(self.tables)

    def describe_table(self, name: str) -> TableSchema | None:
        if name in self.tables:
            return self.tables[name]
        wanted = name.strip().lower()
        for table_name, table in self.tables.items():
            if table_name.lower() == wanted:
                return table
        return None


# -----------------------------------------------------------------------------
# Tool
# -----------------------------------------------------------------------------


SHOW_TABLE_SCHEMA_SPEC = ToolSpec(
    name="show_table_schema",
    description=(
        "Show the columns, keys, and relationships of one game data table. Use it before "
        "writing a query against a table you have not inspected yet."
    ),
    parameters={
        "type": "object",
        "properties": {
            "table_name": {"type": "string", "description": "Table name (case-insensitive)."},
            "reason": {"type": "string", "description": "Why the schema is needed, shown to the user."},
        },
        "required": ["table_name"],
    },
    category=ToolCategory.SCHEMA,
)


def create_schema_lookup_tool(catalog: SchemaCatalog) -> SimpleTool:
    def handler(arguments: Mapping[str, Any], invocation: ToolInvocation) -> SchemaLookupResult:
        table_name = str(arguments.get("table_name") or "").strip()
        table = catalog.describe_table(table_name) if table_name else None
        if table is None:
            known = ", ".join(catalog.list_tables()[:20])
            error = f"table '{table_name}' not found"
            if known:
                error = f"{error}; known tables: {known}"
            return SchemaLookupResult(
                call_id=invocation.call_id,
                tool_name=invocation.tool_name,
                error=error,
                table_name=table_name,
            )
        return SchemaLookupResult(
            call_id=invocation.call_id,
            tool_name=invocation.tool_name,
            table_name=table.name,
            description=table.description,
            columns=tuple(column.to_dict() for column in table.columns),
            relationships=tuple(rel.to_dict() for rel in table.relationships),
        )

    return SimpleTool(spec=SHOW_TABLE_SCHEMA_SPEC, handler=handler)
