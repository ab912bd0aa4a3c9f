"""Tool registration.

Collects whichever backends the application has configured and registers the
matching tools, so the orchestrator only ever sees a frozen registry.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from ..orchestration.tools import ToolRegistry
from .data_query import QueryEngine, create_query_data_tool
from .documents import create_document_tool, create_patch_document_tool
from .entity_profile import create_entity_profile_tool
from .history import HttpVersionHistory, VersionHistory, create_history_tool, create_revision_diff_tool
from .http import HttpBackend
from .resource_search import HttpResourceIndex, ResourceIndex, create_find_resource_tool
from .schema_lookup import SchemaCatalog, create_schema_lookup_tool
from .tracker import HttpSearchBackend, SearchBackend, create_issue_search_tool, create_wiki_search_tool

__all__ = ["ToolBackends", "build_registry", "backends_from_integrations"]

LOGGER = logging.getLogger(__name__)

# Keys of ``Settings.integrations`` naming the base URL of each HTTP backend.
INTEGRATION_VERSION_HISTORY = "version_history"
INTEGRATION_RESOURCES = "resources"
INTEGRATION_TRACKER = "tracker"


@dataclass
class ToolBackends:
    """Everything tool registration needs from the application.

    Backends left as ``None`` simply leave their tools unregistered.
    """

    query_engine: QueryEngine | None = None
    schema_catalog: SchemaCatalog | None = None
    version_history: VersionHistory | None = None
    resource_index: ResourceIndex | None = None
    search_backend: SearchBackend | None = None
    documents: bool = True

    async def aclose(self) -> None:
        """Close HTTP clients owned by the configured backends."""
        seen: set[int] = set()
        for backend in (self.version_history, self.resource_index, self.search_backend):
            if isinstance(backend, HttpBackend) and id(backend) not in seen:
                seen.add(id(backend))
                await backend.aclose()


def build_registry(
    backends: ToolBackends,
    *,
    registry: ToolRegistry | None = None,
    freeze: bool = True,
) -> ToolRegistry:
    """Register the tools ``backends`` can serve and (by default) freeze the registry."""

    target = registry if registry is not None else ToolRegistry()
    registrations: list[tuple[bool, Callable[[], Any]]] = [
        (backends.query_engine is not None, lambda: create_query_data_tool(backends.query_engine)),
        (backends.schema_catalog is not None, lambda: create_schema_lookup_tool(backends.schema_catalog)),
        (
            backends.schema_catalog is not None and backends.query_engine is not None,
            lambda: create_entity_profile_tool(backends.schema_catalog, backends.query_engine),
        ),
        (backends.version_history is not None, lambda: create_history_tool(backends.version_history)),
        (backends.version_history is not None, lambda: create_revision_diff_tool(backends.version_history)),
        (backends.resource_index is not None, lambda: create_find_resource_tool(backends.resource_index)),
        (backends.documents, create_document_tool),
        (backends.documents, create_patch_document_tool),
        (backends.search_backend is not None, lambda: create_issue_search_tool(backends.search_backend)),
        (backends.search_backend is not None, lambda: create_wiki_search_tool(backends.search_backend)),
    ]
    for enabled, factory in registrations:
        if enabled:
            target.register(factory())
    LOGGER.debug("Registered %d tool(s): %s", len(target), ", ".join(target.list_names()))
    return target.freeze() if freeze else target


def backends_from_integrations(
    integrations: Mapping[str, str],
    *,
    query_engine: QueryEngine | None = None,
    schema_catalog: SchemaCatalog | None = None,
    timeout: float = 30.0,
) -> ToolBackends:
    """Create HTTP backends for every integration URL present in settings."""

    def _url(key: str) -> str | None:
        value = integrations.get(key)
        return value.strip() if isinstance(value, str) and value.strip() else None

    history_url = _url(INTEGRATION_VERSION_HISTORY)
    resources_url = _url(INTEGRATION_RESOURCES)
    tracker_url = _url(INTEGRATION_TRACKER)
    return ToolBackends(
        query_engine=query_engine,
        schema_catalog=schema_catalog,
        version_history=HttpVersionHistory(history_url, timeout=timeout) if history_url else None,
        resource_index=HttpResourceIndex(resources_url, timeout=timeout) if resources_url else None,
        search_backend=HttpSearchBackend(tracker_url, timeout=timeout) if tracker_url else None,
    )
