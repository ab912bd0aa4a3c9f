"""System prompt for the game data assistant."""

from __future__ import annotations

from collections import defaultdict
from typing import Iterable, Sequence

from ..orchestration.tools import ToolSpec
from .schema_lookup import SchemaCatalog, TableSchema

__all__ = ["build_system_prompt", "MAX_PROMPT_RELATIONSHIPS"]

MAX_PROMPT_RELATIONSHIPS = 40
UNGROUPED = "(ungrouped)"


def build_system_prompt(
    catalog: SchemaCatalog | None = None,
    tool_specs: Iterable[ToolSpec] = (),
    *,
    language: str | None = None,
) -> str:
    """Assemble the system prompt.

    The prompt lists the registered tools and, when a catalog is available,
    a compact table overview (names, primary keys, and the first few
    relationships) so the model can write queries without a schema lookup
    for every table.
    """

    sections = [_personality_section(), _tools_section(list(tool_specs)), _documents_section()]
    if catalog is not None:
        overview = _schema_section(catalog)
        if overview:
            sections.append(overview)
    sections.append(_response_section(language))
    return "\n\n".join(section for section in sections if section).strip()


def _personality_section() -> str:
    return (
        "You are a game data assistant who knows every table, value, and revision of this "
        "game's data. Answer with real data gathered through your tools, and explain what "
        "the numbers mean rather than just listing them."
    )


def _tools_section(specs: Sequence[ToolSpec]) -> str:
    if not specs:
        return ""
    lines = ["## Available Tools"]
    for spec in specs:
        summary = spec.description.split(". ")[0].rstrip(".")
        lines.append(f"- **{spec.name}** - {summary}")
    return "\n".join(lines)


def _documents_section() -> str:
    return """## Documents

- When the user asks for a summary, report, or sheet, gather the data first and then call create_document.
- Never announce that you are about to create a document and stop. Call the tool directly.
- The html argument holds only the body content, no <!DOCTYPE>. Keep it compact.
- To change an existing document, call patch_document with find strings copied exactly from it.
- Resource URLs returned by find_resource can be used directly in <img> tags."""


def _schema_section(catalog: SchemaCatalog) -> str:
    tables: list[TableSchema] = []
    for name in catalog.list_tables():
        table = catalog.describe_table(name)
        if table is not None:
            tables.append(table)
    if not tables:
        return ""

    column_total = sum(len(table.columns) for table in tables)
    lines = ["## Database Overview", f"{len(tables)} tables | {column_total} columns", "", "## Tables"]

    groups: dict[str, list[str]] = defaultdict(list)
    for table in tables:
        primary = next((column.name for column in table.columns if column.primary_key), "")
        groups[table.group or UNGROUPED].append(f"{table.name}(pk:{primary})" if primary else table.name)
    for group, names in groups.items():
        lines.append(f"[{group}] {', '.join(names)}")

    outgoing = [
        (table.name, rel) for table in tables for rel in table.relationships if rel.direction == "out"
    ]
    if outgoing:
        lines.extend(["", "## Key Relationships"])
        for table_name, rel in outgoing[:MAX_PROMPT_RELATIONSHIPS]:
            lines.append(f"{table_name}.{rel.from_columns} -> {rel.table}.{rel.to_columns}")
        if len(outgoing) > MAX_PROMPT_RELATIONSHIPS:
            lines.append(f"... and {len(outgoing) - MAX_PROMPT_RELATIONSHIPS} more")
    return "\n".join(lines)


def _response_section(language: str | None) -> str:
    lines = [
        "## Answering",
        "- When asked for a relationship diagram, call show_table_schema for the one central table only.",
        "- If a query fails, read the error, fix the query, and try again.",
    ]
    if language:
        lines.append(f"- Always answer in {language}.")
    return "\n".join(lines)
