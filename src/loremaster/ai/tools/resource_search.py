"""Resource lookup tool (images, atlases, and other project assets)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Protocol, Tuple, runtime_checkable
from urllib.parse import quote

import httpx

from ...services.cache import CacheConfig, LookupCache
from ..orchestration.tools import DocumentSearchResult, SimpleTool, ToolCategory, ToolInvocation, ToolSpec
from .http import BackendError, HttpBackend

__all__ = [
    "ResourceMatch",
    "ResourceMatches",
    "ResourceIndex",
    "HttpResourceIndex",
    "FIND_RESOURCE_SPEC",
    "create_find_resource_tool",
]

LOGGER = logging.getLogger(__name__)

MAX_MATCHES = 20


@dataclass(slots=True, frozen=True)
class ResourceMatch:
    name: str
    path: str
    url: str = ""
    is_atlas: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "path": self.path, "url": self.url, "is_atlas": self.is_atlas}


@dataclass(slots=True, frozen=True)
class ResourceMatches:
    items: Tuple[ResourceMatch, ...] = ()
    total: int = 0


@runtime_checkable
class ResourceIndex(Protocol):
    async def search(self, query: str) -> ResourceMatches:
        ...


class HttpResourceIndex(HttpBackend):
    """:class:`ResourceIndex` backed by the asset server's image listing.

    Responses are cached per query for the lifetime of the index.
    """

    def __init__(
        self,
        base_url: str,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        cache: LookupCache[ResourceMatches] | None = None,
    ) -> None:
        super().__init__(base_url, http_client=http_client, timeout=timeout)
        if cache is None:
            cache = LookupCache(CacheConfig(max_entries=64))
        self._cache: LookupCache[ResourceMatches] = cache

    @property
    def cache(self) -> LookupCache[ResourceMatches]:
        return self._cache

    async def search(self, query: str) -> ResourceMatches:
        key = query.strip().lower()
        cached = self._cache.get(key)
        if cached is not None:
            LOGGER.debug("Resource lookup cache hit for %r", key)
            return cached
        data = await self._get_json("/api/images/list", {"q": query})
        matches = self._parse(data)
        self._cache.set(key, matches)
        return matches

    def _parse(self, data: Any) -> ResourceMatches:
        if not isinstance(data, Mapping):
            return ResourceMatches()
        items = []
        for entry in data.get("results") or ():
            if not isinstance(entry, Mapping):
                continue
            rel_path = str(entry.get("relPath") or entry.get("path") or "")
            items.append(
                ResourceMatch(
                    name=str(entry.get("name") or rel_path),
                    path=rel_path,
                    url=f"{self.base_url}/api/images/file?path={quote(rel_path, safe='')}",
                    is_atlas=bool(entry.get("isAtlas", False)),
                )
            )
        total = data.get("total")
        return ResourceMatches(items=tuple(items), total=total if isinstance(total, int) else len(items))


FIND_RESOURCE_SPEC = ToolSpec(
    name="find_resource",
    description=(
        "Search the project's resource files (character art, icons, atlases) by name. Returns "
        "matching files with URLs that can be embedded in generated documents."
    ),
    parameters={
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": "Name or keyword to search for."},
            "reason": {"type": "string", "description": "Why the resource is needed, shown to the user."},
        },
        "required": ["query"],
    },
    category=ToolCategory.SEARCH,
)


def create_find_resource_tool(index: ResourceIndex) -> SimpleTool:
    async def handler(arguments: Mapping[str, Any], invocation: ToolInvocation) -> DocumentSearchResult:
        query = str(arguments.get("query") or "").strip()
        if not query:
            return DocumentSearchResult(
                call_id=invocation.call_id,
                tool_name=invocation.tool_name,
                error="query must not be empty",
            )
        try:
            found = await index.search(query)
        except BackendError as exc:
            LOGGER.warning("Resource search for %r failed: %s", query, exc)
            return DocumentSearchResult(
                call_id=invocation.call_id,
                tool_name=invocation.tool_name,
                error=f"resource search failed: {exc}",
                query=query,
            )
        return DocumentSearchResult(
            call_id=invocation.call_id,
            tool_name=invocation.tool_name,
            query=query,
            matches=tuple(item.to_dict() for item in found.items[:MAX_MATCHES]),
            total=found.total,
        )

    return SimpleTool(spec=FIND_RESOURCE_SPEC, handler=handler)
