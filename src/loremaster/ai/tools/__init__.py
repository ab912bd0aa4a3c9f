"""Tool collaborators wired into the conversation orchestrator."""

from .data_query import QueryEngine, QueryOutput, create_query_data_tool
from .documents import (
    TRUNCATION_MARKER,
    create_document_tool,
    create_patch_document_tool,
    preview_document,
    recover_document_arguments,
)
from .entity_profile import create_entity_profile_tool, find_entity_table
from .history import HttpVersionHistory, VersionHistory, create_history_tool, create_revision_diff_tool
from .http import BackendError, HttpBackend
from .prompts import build_system_prompt
from .resource_search import (
    HttpResourceIndex,
    ResourceIndex,
    ResourceMatch,
    ResourceMatches,
    create_find_resource_tool,
)
from .schema_lookup import (
    ColumnInfo,
    Relationship,
    SchemaCatalog,
    StaticSchemaCatalog,
    TableSchema,
    create_schema_lookup_tool,
)
from .tracker import HttpSearchBackend, SearchBackend, create_issue_search_tool, create_wiki_search_tool
from .wiring import ToolBackends, backends_from_integrations, build_registry

__all__ = [
    "BackendError",
    "ColumnInfo",
    "HttpBackend",
    "HttpResourceIndex",
    "HttpSearchBackend",
    "HttpVersionHistory",
    "QueryEngine",
    "QueryOutput",
    "Relationship",
    "ResourceIndex",
    "ResourceMatch",
    "ResourceMatches",
    "SchemaCatalog",
    "SearchBackend",
    "StaticSchemaCatalog",
    "TRUNCATION_MARKER",
    "TableSchema",
    "ToolBackends",
    "VersionHistory",
    "backends_from_integrations",
    "build_registry",
    "build_system_prompt",
    "create_document_tool",
    "create_entity_profile_tool",
    "create_find_resource_tool",
    "create_history_tool",
    "create_issue_search_tool",
    "create_patch_document_tool",
    "create_query_data_tool",
    "create_revision_diff_tool",
    "create_schema_lookup_tool",
    "create_wiki_search_tool",
    "find_entity_table",
    "preview_document",
    "recover_document_arguments",
]
