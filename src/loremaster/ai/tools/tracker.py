"""Issue tracker and wiki search tools.

Both go through the development server's Jira/Confluence proxy, which adds
credentials and forwards ``jql``/``cql`` queries unchanged.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Mapping, Protocol, Sequence, runtime_checkable

import httpx

from ...services.cache import CacheConfig, LookupCache
from ..orchestration.tools import (
    IssueSearchResult,
    SimpleTool,
    ToolCategory,
    ToolInvocation,
    ToolSpec,
    WikiSearchResult,
)
from .http import BackendError, HttpBackend

__all__ = [
    "SearchBackend",
    "HttpSearchBackend",
    "SEARCH_ISSUES_SPEC",
    "SEARCH_WIKI_SPEC",
    "create_issue_search_tool",
    "create_wiki_search_tool",
    "build_issue_query",
    "build_wiki_query",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_LIMIT = 20
MAX_LIMIT = 50
EXCERPT_CHARS = 300

_HIGHLIGHT_RE = re.compile(r"@@@(?:end)?hl@@@")


def _quote(text: str) -> str:
    return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'


def build_issue_query(text: str) -> str:
    """JQL for a free-text issue search, most recently updated first."""
    return f"text ~ {_quote(text)} ORDER BY updated DESC"


def build_wiki_query(text: str) -> str:
    """CQL for a free-text page search."""
    return f"type = page AND text ~ {_quote(text)}"


@runtime_checkable
class SearchBackend(Protocol):
    """Issue tracker and wiki search.

    Both methods take an already built query (JQL/CQL) and return flat
    mappings ready to show the model.
    """

    async def search_issues(self, jql: str, *, limit: int = DEFAULT_LIMIT) -> Sequence[Mapping[str, Any]]:
        ...

    async def search_wiki(self, cql: str, *, limit: int = DEFAULT_LIMIT) -> Sequence[Mapping[str, Any]]:
        ...


class HttpSearchBackend(HttpBackend):
    """:class:`SearchBackend` over the ``/api/jira`` and ``/api/confluence`` proxy."""

    def __init__(
        self,
        base_url: str,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        cache: LookupCache[list[dict[str, Any]]] | None = None,
    ) -> None:
        super().__init__(base_url, http_client=http_client, timeout=timeout)
        if cache is None:
            cache = LookupCache(CacheConfig(ttl_seconds=60.0))
        self._cache: LookupCache[list[dict[str, Any]]] = cache

    async def search_issues(self, jql: str, *, limit: int = DEFAULT_LIMIT) -> list[dict[str, Any]]:
        key = ("issues", jql, limit)
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        data = await self._get_json("/api/jira/search", {"jql": jql, "maxResults": limit})
        if isinstance(data, Mapping) and data.get("error"):
            raise BackendError(str(data["error"]))
        issues = [_issue_summary(item) for item in _items(data, "issues")]
        self._cache.set(key, issues)
        return issues

    async def search_wiki(self, cql: str, *, limit: int = DEFAULT_LIMIT) -> list[dict[str, Any]]:
        key = ("wiki", cql, limit)
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        data = await self._get_json("/api/confluence/search", {"cql": cql, "limit": limit})
        if isinstance(data, Mapping) and data.get("error"):
            raise BackendError(str(data["error"]))
        pages = [_page_summary(item) for item in _items(data, "results")]
        self._cache.set(key, pages)
        return pages


def _items(data: Any, key: str) -> list[Mapping[str, Any]]:
    if not isinstance(data, Mapping):
        return []
    return [item for item in data.get(key) or () if isinstance(item, Mapping)]


def _name(value: Any, field: str = "name") -> str | None:
    if isinstance(value, Mapping):
        found = value.get(field)
        return str(found) if found else None
    return None


def _issue_summary(issue: Mapping[str, Any]) -> dict[str, Any]:
    fields = issue.get("fields") if isinstance(issue.get("fields"), Mapping) else {}
    summary = {
        "key": issue.get("key"),
        "summary": fields.get("summary"),
        "status": _name(fields.get("status")),
        "type": _name(fields.get("issuetype")),
        "priority": _name(fields.get("priority")),
        "assignee": _name(fields.get("assignee"), "displayName"),
        "updated": fields.get("updated"),
    }
    return {key: value for key, value in summary.items() if value is not None}


def _page_summary(result: Mapping[str, Any]) -> dict[str, Any]:
    content = result.get("content") if isinstance(result.get("content"), Mapping) else result
    excerpt = _HIGHLIGHT_RE.sub("", str(result.get("excerpt") or "")).strip()
    summary = {
        "id": content.get("id"),
        "title": _HIGHLIGHT_RE.sub("", str(result.get("title") or content.get("title") or "")),
        "space": _name(result.get("resultGlobalContainer"), "title") or _name(content.get("space")),
        "url": result.get("url"),
        "last_modified": result.get("lastModified"),
        "excerpt": excerpt[:EXCERPT_CHARS] or None,
    }
    return {key: value for key, value in summary.items() if value}


# -----------------------------------------------------------------------------
# Tools
# -----------------------------------------------------------------------------


SEARCH_ISSUES_SPEC = ToolSpec(
    name="search_issues",
    description=(
        "Search the issue tracker for bugs, tasks, and feature requests. Give free text in "
        "query, or a full JQL expression in jql."
    ),
    parameters={
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": "Free-text search terms."},
            "jql": {"type": "string", "description": "Raw JQL; overrides query."},
            "limit": {"type": "integer", "minimum": 1, "maximum": MAX_LIMIT},
            "reason": {"type": "string", "description": "Why the search is needed, shown to the user."},
        },
    },
    category=ToolCategory.TRACKER,
)

SEARCH_WIKI_SPEC = ToolSpec(
    name="search_wiki",
    description=(
        "Search design documents and specifications in the team wiki. Give free text in "
        "query, or a full CQL expression in cql."
    ),
    parameters={
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": "Free-text search terms."},
            "cql": {"type": "string", "description": "Raw CQL; overrides query."},
            "limit": {"type": "integer", "minimum": 1, "maximum": MAX_LIMIT},
            "reason": {"type": "string", "description": "Why the search is needed, shown to the user."},
        },
    },
    category=ToolCategory.TRACKER,
)


def _limit(arguments: Mapping[str, Any]) -> int:
    value = arguments.get("limit")
    if not isinstance(value, int) or isinstance(value, bool):
        return DEFAULT_LIMIT
    return max(1, min(value, MAX_LIMIT))


def create_issue_search_tool(backend: SearchBackend) -> SimpleTool:
    async def handler(arguments: Mapping[str, Any], invocation: ToolInvocation) -> IssueSearchResult:
        text = str(arguments.get("query") or "").strip()
        jql = str(arguments.get("jql") or "").strip() or (build_issue_query(text) if text else "")
        if not jql:
            return IssueSearchResult(
                call_id=invocation.call_id,
                tool_name=invocation.tool_name,
                error="either query or jql is required",
            )
        try:
            issues = await backend.search_issues(jql, limit=_limit(arguments))
        except BackendError as exc:
            LOGGER.warning("Issue search failed: %s", exc)
            return IssueSearchResult(
                call_id=invocation.call_id,
                tool_name=invocation.tool_name,
                error=f"issue search failed: {exc}",
                query=jql,
            )
        return IssueSearchResult(
            call_id=invocation.call_id,
            tool_name=invocation.tool_name,
            query=jql,
            issues=tuple(issues),
        )

    return SimpleTool(spec=SEARCH_ISSUES_SPEC, handler=handler)


def create_wiki_search_tool(backend: SearchBackend) -> SimpleTool:
    async def handler(arguments: Mapping[str, Any], invocation: ToolInvocation) -> WikiSearchResult:
        text = str(arguments.get("query") or "").strip()
        cql = str(arguments.get("cql") or "").strip() or (build_wiki_query(text) if text else "")
        if not cql:
            return WikiSearchResult(
                call_id=invocation.call_id,
                tool_name=invocation.tool_name,
                error="either query or cql is required",
            )
        try:
            pages = await backend.search_wiki(cql, limit=_limit(arguments))
        except BackendError as exc:
            LOGGER.warning("Wiki search failed: %s", exc)
            return WikiSearchResult(
                call_id=invocation.call_id,
                tool_name=invocation.tool_name,
                error=f"wiki search failed: {exc}",
                query=cql,
            )
        return WikiSearchResult(
            call_id=invocation.call_id,
            tool_name=invocation.tool_name,
            query=cql,
            pages=tuple(pages),
        )

    return SimpleTool(spec=SEARCH_WIKI_SPEC, handler=handler)
