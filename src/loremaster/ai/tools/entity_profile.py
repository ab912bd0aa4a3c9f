"""Entity profile tool.

Finds one row of an entity table (characters, unless told otherwise) by name
or primary key, then follows the foreign keys that point at that table to
collect the linked rows. Tables one more hop out are only counted. Queries
go through the same :class:`QueryEngine` as ``query_data``; relationships
come from the :class:`SchemaCatalog`.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import re
from dataclasses import dataclass
from typing import Any, Mapping, Sequence

from ..orchestration.tools import EntityProfileResult, SimpleTool, ToolCategory, ToolInvocation, ToolSpec
from .data_query import QueryEngine
from .schema_lookup import SchemaCatalog, TableSchema

__all__ = [
    "DEFAULT_ENTITY_KEYWORDS",
    "ENTITY_PROFILE_SPEC",
    "create_entity_profile_tool",
    "find_entity_table",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_ENTITY_KEYWORDS: tuple[str, ...] = ("character",)

SAMPLE_ROWS = 5
SCAN_ROWS = 500
CANDIDATE_ROWS = 100
CANDIDATE_FIELDS = 6
MAX_NESTED_REFERENCES = 6

_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")


@dataclass(slots=True, frozen=True)
class _Reference:
    """``table.column`` references ``target`` of the profiled table."""

    table: str
    column: str
    target: str | None = None


# -----------------------------------------------------------------------------
# SQL helpers
# -----------------------------------------------------------------------------


def _ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def _text_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _literal(value: Any) -> str:
    text = str(value).strip()
    if not isinstance(value, bool) and _NUMBER_RE.fullmatch(text):
        return text
    return _text_literal(str(value))


def _first_column(columns: str) -> str:
    return columns.split(",")[0].strip()


# -----------------------------------------------------------------------------
# Schema helpers
# -----------------------------------------------------------------------------


def find_entity_table(
    catalog: SchemaCatalog,
    table_name: str | None = None,
    *,
    keywords: Sequence[str] = DEFAULT_ENTITY_KEYWORDS,
) -> TableSchema | None:
    """Resolve the table to profile.

    An explicit ``table_name`` wins. Otherwise a table named exactly after a
    keyword (or its plural) is preferred over one merely containing it.
    """

    if table_name:
        return catalog.describe_table(table_name)
    for keyword in keywords:
        for candidate in (keyword, f"{keyword}s"):
            table = catalog.describe_table(candidate)
            if table is not None:
                return table
    for name in catalog.list_tables():
        if any(keyword.lower() in name.lower() for keyword in keywords):
            return catalog.describe_table(name)
    return None


def _primary_key(table: TableSchema) -> str:
    for column in table.columns:
        if column.primary_key:
            return column.name
    return "id"


def _incoming_references(catalog: SchemaCatalog, table: TableSchema) -> list[_Reference]:
    """Foreign keys of other tables pointing at ``table``.

    Both sides of the catalog are consulted since an export may only record
    the outgoing half of a relationship.
    """

    references: list[_Reference] = []
    seen: set[tuple[str, str]] = set()

    def add(owner: str, columns: str, target: str) -> None:
        column = _first_column(columns)
        key = (owner.lower(), column.lower())
        if owner and column and key not in seen:
            seen.add(key)
            references.append(_Reference(owner, column, _first_column(target) or None))

    for rel in table.relationships:
        if rel.direction == "in":
            add(rel.table, rel.from_columns, rel.to_columns)
    wanted = table.name.lower()
    for name in catalog.list_tables():
        other = catalog.describe_table(name)
        if other is None:
            continue
        for rel in other.relationships:
            if rel.direction == "out" and rel.table.lower() == wanted:
                add(other.name, rel.from_columns, rel.to_columns)
    return references


# -----------------------------------------------------------------------------
# Profile collection
# -----------------------------------------------------------------------------


class _ProfileBuilder:
    def __init__(self, catalog: SchemaCatalog, engine: QueryEngine) -> None:
        self._catalog = catalog
        self._engine = engine

    async def records(self, query: str) -> list[dict[str, Any]]:
        output = self._engine.execute(query)
        if inspect.isawaitable(output):
            output = await output
        if output.error:
            LOGGER.debug("Profile query failed (%s): %s", query, output.error)
            return []
        return [dict(zip(output.columns, row)) for row in output.rows]

    async def find(self, table: TableSchema, key: str, *, entity_id: str, name: str) -> dict[str, Any] | None:
        source = _ident(table.name)
        scan: list[dict[str, Any]] | None = None

        async def scan_rows() -> list[dict[str, Any]]:
            nonlocal scan
            if scan is None:
                scan = await self.records(f"SELECT * FROM {source} LIMIT {SCAN_ROWS}")
            return scan

        if entity_id:
            queries = []
            if _NUMBER_RE.fullmatch(entity_id):
                queries.append(f"SELECT * FROM {source} WHERE {_ident(key)} = {entity_id} LIMIT 1")
            queries.append(f"SELECT * FROM {source} WHERE {_ident(key)} = {_text_literal(entity_id)} LIMIT 1")
            for query in queries:
                rows = await self.records(query)
                if rows:
                    return rows[0]
            # Key types can disagree with the literal; compare as text.
            for row in await scan_rows():
                if any(str(value) == entity_id for value in row.values()):
                    return row

        if name:
            columns = [column.name for column in table.columns if "name" in column.name.lower()] or ["name"]
            pattern = _text_literal(f"%{name.lower()}%")
            for column in columns:
                rows = await self.records(
                    f"SELECT * FROM {source} WHERE LOWER({_ident(column)}) LIKE {pattern} LIMIT 1"
                )
                if rows:
                    return rows[0]
            wanted = name.lower()
            for row in await scan_rows():
                if any(isinstance(value, str) and wanted in value.lower() for value in row.values()):
                    return row
        return None

    async def connections(self, table: TableSchema, entity: Mapping[str, Any], key: str) -> list[dict[str, Any]]:
        references = _incoming_references(self._catalog, table)
        found = await asyncio.gather(
            *(
                self._connection(reference, entity.get(reference.target or key, entity.get(key)))
                for reference in references
            )
        )
        connections = [connection for connection in found if connection is not None]
        connections.sort(key=lambda connection: connection["row_count"], reverse=True)
        return connections

    async def _connection(self, reference: _Reference, value: Any) -> dict[str, Any] | None:
        if value is None:
            return None
        rows = await self.records(
            f"SELECT * FROM {_ident(reference.table)} WHERE {_ident(reference.column)} = {_literal(value)} "
            f"LIMIT {SAMPLE_ROWS}"
        )
        if not rows:
            return None
        children: list[dict[str, Any]] = []
        related = self._catalog.describe_table(reference.table)
        if related is not None:
            key = _primary_key(related)
            ids = [row[key] for row in rows if row.get(key) is not None]
            if ids:
                nested = _incoming_references(self._catalog, related)[:MAX_NESTED_REFERENCES]
                counts = await asyncio.gather(*(self._count(item, ids) for item in nested))
                children = [
                    {"table": item.table, "fk_column": item.column, "row_count": count}
                    for item, count in zip(nested, counts)
                    if count
                ]
        columns: list[str] = []
        for row in rows:
            columns.extend(column for column in row if column not in columns)
        return {
            "table": reference.table,
            "fk_column": reference.column,
            "row_count": len(rows),
            "columns": columns,
            "sample_rows": rows,
            "children": children,
        }

    async def _count(self, reference: _Reference, ids: Sequence[Any]) -> int:
        values = ", ".join(_literal(value) for value in ids)
        rows = await self.records(
            f"SELECT COUNT(*) AS cnt FROM {_ident(reference.table)} WHERE {_ident(reference.column)} IN ({values})"
        )
        if not rows:
            return 0
        row = rows[0]
        value = row.get("cnt", next(iter(row.values()), 0))
        try:
            return int(value)
        except (TypeError, ValueError):
            return 0


def _candidate_listing(rows: Sequence[Mapping[str, Any]]) -> str:
    lines = []
    for position, row in enumerate(rows, start=1):
        fields = ", ".join(f"{column}={value}" for column, value in list(row.items())[:CANDIDATE_FIELDS])
        lines.append(f"[{position}] {fields}")
    return "\n".join(lines)


# -----------------------------------------------------------------------------
# Tool
# -----------------------------------------------------------------------------


ENTITY_PROFILE_SPEC = ToolSpec(
    name="build_entity_profile",
    description=(
        "Collect everything linked to one game entity (a character by default) by following "
        "foreign keys from its row. Call this first when writing a profile, card, or overview "
        "of a character. If the name is not found the tool lists the table's rows; call it "
        "again with entity_id taken from that list."
    ),
    parameters={
        "type": "object",
        "properties": {
            "name": {"type": "string", "description": "Entity name; partial, case-insensitive match."},
            "entity_id": {"type": "string", "description": "Primary key value, e.g. \"1001\"."},
            "table_name": {"type": "string", "description": "Entity table; defaults to the character table."},
        },
    },
    category=ToolCategory.DATA,
)


def create_entity_profile_tool(
    catalog: SchemaCatalog,
    engine: QueryEngine,
    *,
    keywords: Sequence[str] = DEFAULT_ENTITY_KEYWORDS,
) -> SimpleTool:
    async def handler(arguments: Mapping[str, Any], invocation: ToolInvocation) -> EntityProfileResult:
        name = str(arguments.get("name") or "").strip()
        entity_id = str(arguments.get("entity_id") or "").strip()
        requested = str(arguments.get("table_name") or "").strip()
        lookup = name or entity_id

        table = find_entity_table(catalog, requested or None, keywords=keywords)
        if table is None:
            error = f"table '{requested}' not found" if requested else "no entity table found; pass table_name"
            return EntityProfileResult(
                call_id=invocation.call_id,
                tool_name=invocation.tool_name,
                error=error,
                lookup=lookup,
            )

        key = _primary_key(table)
        builder = _ProfileBuilder(catalog, engine)
        entity = await builder.find(table, key, entity_id=entity_id, name=name) if lookup else None
        if entity is None:
            candidates = await builder.records(f"SELECT * FROM {_ident(table.name)} LIMIT {CANDIDATE_ROWS}")
            error = f"no {table.name} row matches '{lookup}'" if lookup else "name or entity_id is required"
            if candidates:
                error = (
                    f"{error}; call again with entity_id from these {len(candidates)} row(s):\n"
                    f"{_candidate_listing(candidates)}"
                )
            return EntityProfileResult(
                call_id=invocation.call_id,
                tool_name=invocation.tool_name,
                error=error,
                lookup=lookup,
                table_name=table.name,
                primary_key=key,
                candidates=tuple(candidates),
            )

        connections = await builder.connections(table, entity, key)
        LOGGER.debug("Profiled %s %r: %d linked table(s)", table.name, lookup, len(connections))
        return EntityProfileResult(
            call_id=invocation.call_id,
            tool_name=invocation.tool_name,
            lookup=lookup,
            table_name=table.name,
            primary_key=key,
            entity=entity,
            connections=tuple(connections),
            total_related_rows=sum(connection["row_count"] for connection in connections),
        )

    return SimpleTool(spec=ENTITY_PROFILE_SPEC, handler=handler)
