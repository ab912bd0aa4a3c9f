"""Tagged union of tool results.

Each tool returns exactly one variant, discriminated by ``kind``. Variants
carry the structured data the UI needs plus a ``to_model_content`` rendering
that is fed back to the model on the next request cycle. Failures that happen
before a tool-specific variant can be built (unknown tool, malformed
arguments, handler exceptions) are reported as :class:`ToolFailure`.
"""

from __future__ import annotations

import dataclasses
import json
from dataclasses import dataclass, field
from typing import Any, ClassVar, Mapping, Tuple

__all__ = [
    "MODEL_ROW_LIMIT",
    "MODEL_DIFF_FILE_LIMIT",
    "MODEL_HISTORY_FILE_LIMIT",
    "ToolResult",
    "DataQueryResult",
    "SchemaLookupResult",
    "HistoryLookupResult",
    "DiffLookupResult",
    "DocumentSearchResult",
    "DocumentCreateResult",
    "DocumentPatchResult",
    "IssueSearchResult",
    "WikiSearchResult",
    "EntityProfileResult",
    "ToolFailure",
    "RESULT_KINDS",
]

# Query results fed back to the model are capped to keep the context small.
MODEL_ROW_LIMIT = 100
MODEL_DIFF_FILE_LIMIT = 5
MODEL_HISTORY_FILE_LIMIT = 10
MODEL_PATCH_CHAR_LIMIT = 4000
MODEL_PROFILE_SAMPLE_ROWS = 3


def _dump(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, default=str)


# -----------------------------------------------------------------------------
# Base
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True, kw_only=True)
class ToolResult:
    """Fields shared by every tool result variant.

    Attributes:
        call_id: Identifier of the tool call this result answers.
        tool_name: Registered tool name.
        error: Failure description, ``None`` on success.
        duration_ms: Wall time spent dispatching the call.
    """

    kind: ClassVar[str] = "tool_result"

    call_id: str
    tool_name: str
    error: str | None = None
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return not self.error

    def with_duration(self, duration_ms: float) -> "ToolResult":
        return dataclasses.replace(self, duration_ms=duration_ms)

    def to_model_content(self) -> str:
        """Render the result as the text the model sees."""

        if self.error:
            return _dump({"error": self.error})
        return _dump(self._model_payload())

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "kind": self.kind,
            "call_id": self.call_id,
            "tool_name": self.tool_name,
            "error": self.error,
            "duration_ms": round(self.duration_ms, 3),
        }
        payload.update(self._payload())
        return payload

    def _payload(self) -> dict[str, Any]:
        return {}

    def _model_payload(self) -> dict[str, Any]:
        return self._payload()


# -----------------------------------------------------------------------------
# Variants
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True, kw_only=True)
class DataQueryResult(ToolResult):
    kind: ClassVar[str] = "data_query"

    query: str = ""
    columns: Tuple[str, ...] = ()
    rows: Tuple[Tuple[Any, ...], ...] = ()
    row_count: int = 0

    def _payload(self) -> dict[str, Any]:
        return {
            "query": self.query,
            "columns": list(self.columns),
            "rows": [list(row) for row in self.rows],
            "row_count": self.row_count,
        }

    def _model_payload(self) -> dict[str, Any]:
        shown = self.rows[:MODEL_ROW_LIMIT]
        payload: dict[str, Any] = {
            "columns": list(self.columns),
            "rows": [list(row) for row in shown],
            "row_count": self.row_count,
        }
        if len(self.rows) > len(shown):
            payload["note"] = f"showing first {len(shown)} of {len(self.rows)} rows"
        return payload


@dataclass(slots=True, frozen=True, kw_only=True)
class SchemaLookupResult(ToolResult):
    kind: ClassVar[str] = "schema_lookup"

    table_name: str = ""
    description: str = ""
    columns: Tuple[Mapping[str, Any], ...] = ()
    relationships: Tuple[Mapping[str, Any], ...] = ()

    def _payload(self) -> dict[str, Any]:
        return {
            "table_name": self.table_name,
            "description": self.description,
            "columns": [dict(column) for column in self.columns],
            "relationships": [dict(rel) for rel in self.relationships],
        }


@dataclass(slots=True, frozen=True, kw_only=True)
class HistoryLookupResult(ToolResult):
    kind: ClassVar[str] = "history_lookup"

    filter_path: str | None = None
    commits: Tuple[Mapping[str, Any], ...] = ()

    def _payload(self) -> dict[str, Any]:
        return {
            "filter_path": self.filter_path,
            "commits": [dict(commit) for commit in self.commits],
        }

    def _model_payload(self) -> dict[str, Any]:
        commits = []
        for commit in self.commits:
            entry = dict(commit)
            files = entry.get("files")
            if isinstance(files, (list, tuple)) and len(files) > MODEL_HISTORY_FILE_LIMIT:
                entry["files"] = list(files[:MODEL_HISTORY_FILE_LIMIT])
                entry["more_files"] = len(files) - MODEL_HISTORY_FILE_LIMIT
            commits.append(entry)
        return {"count": len(commits), "commits": commits}


@dataclass(slots=True, frozen=True, kw_only=True)
class DiffLookupResult(ToolResult):
    kind: ClassVar[str] = "diff_lookup"

    commit: str = ""
    file_path: str | None = None
    files: Tuple[Mapping[str, Any], ...] = ()

    def _payload(self) -> dict[str, Any]:
        return {
            "commit": self.commit,
            "file_path": self.file_path,
            "files": [dict(item) for item in self.files],
        }

    def _model_payload(self) -> dict[str, Any]:
        shown = []
        for item in self.files[:MODEL_DIFF_FILE_LIMIT]:
            entry = dict(item)
            patch = entry.get("patch")
            if isinstance(patch, str) and len(patch) > MODEL_PATCH_CHAR_LIMIT:
                entry["patch"] = patch[:MODEL_PATCH_CHAR_LIMIT] + "\n... (truncated)"
            shown.append(entry)
        payload: dict[str, Any] = {"commit": self.commit, "files": shown}
        if len(self.files) > len(shown):
            payload["note"] = f"showing {len(shown)} of {len(self.files)} changed files"
        return payload


@dataclass(slots=True, frozen=True, kw_only=True)
class DocumentSearchResult(ToolResult):
    kind: ClassVar[str] = "document_search"

    query: str = ""
    matches: Tuple[Mapping[str, Any], ...] = ()
    total: int = 0

    def _payload(self) -> dict[str, Any]:
        return {
            "query": self.query,
            "matches": [dict(match) for match in self.matches],
            "total": self.total,
        }


@dataclass(slots=True, frozen=True, kw_only=True)
class DocumentCreateResult(ToolResult):
    kind: ClassVar[str] = "document_create"

    document_id: str = ""
    title: str = ""
    description: str = ""
    html: str = ""
    recovered: bool = False

    def _payload(self) -> dict[str, Any]:
        return {
            "document_id": self.document_id,
            "title": self.title,
            "description": self.description,
            "html": self.html,
            "recovered": self.recovered,
        }

    def _model_payload(self) -> dict[str, Any]:
        # The model already wrote the html; echoing it back only burns context.
        payload: dict[str, Any] = {
            "document_id": self.document_id,
            "title": self.title,
            "char_count": len(self.html),
        }
        if self.recovered:
            payload["note"] = "arguments were truncated; the partial document was saved"
        return payload


@dataclass(slots=True, frozen=True, kw_only=True)
class DocumentPatchResult(ToolResult):
    kind: ClassVar[str] = "document_patch"

    document_id: str = ""
    title: str = ""
    html: str = ""
    applied_count: int = 0
    failed: Tuple[str, ...] = ()

    def _payload(self) -> dict[str, Any]:
        return {
            "document_id": self.document_id,
            "title": self.title,
            "html": self.html,
            "applied_count": self.applied_count,
            "failed": list(self.failed),
        }

    def _model_payload(self) -> dict[str, Any]:
        return {
            "document_id": self.document_id,
            "applied_count": self.applied_count,
            "failed": list(self.failed),
            "char_count": len(self.html),
        }


@dataclass(slots=True, frozen=True, kw_only=True)
class IssueSearchResult(ToolResult):
    kind: ClassVar[str] = "issue_search"

    query: str = ""
    issues: Tuple[Mapping[str, Any], ...] = ()

    def _payload(self) -> dict[str, Any]:
        return {"query": self.query, "issues": [dict(issue) for issue in self.issues]}


@dataclass(slots=True, frozen=True, kw_only=True)
class WikiSearchResult(ToolResult):
    kind: ClassVar[str] = "wiki_search"

    query: str = ""
    pages: Tuple[Mapping[str, Any], ...] = ()

    def _payload(self) -> dict[str, Any]:
        return {"query": self.query, "pages": [dict(page) for page in self.pages]}


@dataclass(slots=True, frozen=True, kw_only=True)
class EntityProfileResult(ToolResult):
    """One entity row plus the rows of other tables that reference it.

    Each connection maps ``table``, ``fk_column``, ``row_count`` (capped at the
    sample size), ``columns``, ``sample_rows`` and ``children``, the tables one
    more hop out with their row counts. ``candidates`` lists rows of the entity
    table when no row matched, so the model can retry with an id.
    """

    kind: ClassVar[str] = "entity_profile"

    lookup: str = ""
    table_name: str = ""
    primary_key: str = ""
    entity: Mapping[str, Any] = field(default_factory=dict)
    connections: Tuple[Mapping[str, Any], ...] = ()
    total_related_rows: int = 0
    candidates: Tuple[Mapping[str, Any], ...] = ()

    def _payload(self) -> dict[str, Any]:
        return {
            "lookup": self.lookup,
            "table_name": self.table_name,
            "primary_key": self.primary_key,
            "entity": dict(self.entity),
            "connections": [dict(connection) for connection in self.connections],
            "total_related_rows": self.total_related_rows,
            "candidates": [dict(row) for row in self.candidates],
        }

    def _model_payload(self) -> dict[str, Any]:
        connections = []
        for connection in self.connections:
            entry = dict(connection)
            entry.pop("columns", None)
            samples = entry.get("sample_rows")
            if isinstance(samples, (list, tuple)):
                entry["sample_rows"] = list(samples[:MODEL_PROFILE_SAMPLE_ROWS])
            connections.append(entry)
        return {
            "table_name": self.table_name,
            "primary_key": self.primary_key,
            "entity": dict(self.entity),
            "connections": connections,
            "total_related_rows": self.total_related_rows,
        }


@dataclass(slots=True, frozen=True, kw_only=True)
class ToolFailure(ToolResult):
    """Result produced when the dispatcher could not obtain a tool's own result."""

    kind: ClassVar[str] = "tool_error"

    details: Mapping[str, Any] = field(default_factory=dict)

    def _payload(self) -> dict[str, Any]:
        return {"details": dict(self.details)} if self.details else {}


RESULT_KINDS: dict[str, type[ToolResult]] = {
    cls.kind: cls
    for cls in (
        DataQueryResult,
        SchemaLookupResult,
        HistoryLookupResult,
        DiffLookupResult,
        DocumentSearchResult,
        DocumentCreateResult,
        DocumentPatchResult,
        IssueSearchResult,
        WikiSearchResult,
        EntityProfileResult,
        ToolFailure,
    )
}
