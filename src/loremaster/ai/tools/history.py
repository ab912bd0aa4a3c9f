"""Version-history tools: commit log and per-commit diffs."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Protocol, Sequence, runtime_checkable

from ..orchestration.tools import (
    DiffLookupResult,
    HistoryLookupResult,
    SimpleTool,
    ToolCategory,
    ToolInvocation,
    ToolSpec,
)
from .http import BackendError, HttpBackend

__all__ = [
    "VersionHistory",
    "HttpVersionHistory",
    "QUERY_VERSION_HISTORY_SPEC",
    "SHOW_REVISION_DIFF_SPEC",
    "create_history_tool",
    "create_revision_diff_tool",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_COMMIT_COUNT = 30
MAX_COMMIT_COUNT = 200


@runtime_checkable
class VersionHistory(Protocol):
    """Read access to the version history of the data files.

    ``log`` returns commit mappings (``hash``, ``short``, ``date``,
    ``author``, ``message``, ``files``). ``commit_diff`` returns
    ``{"commit": {...}, "files": [...]}`` where each file carries ``path``,
    ``status``, ``additions``, ``deletions`` and optionally ``patch``.
    Failures raise :class:`~loremaster.ai.tools.http.BackendError`.
    """

    async def log(self, *, count: int, path: str | None = None) -> Sequence[Mapping[str, Any]]:
        ...

    async def commit_diff(self, commit_hash: str, *, file_path: str | None = None) -> Mapping[str, Any]:
        ...


class HttpVersionHistory(HttpBackend):
    """:class:`VersionHistory` served by the local git bridge."""

    async def log(self, *, count: int, path: str | None = None) -> list[Mapping[str, Any]]:
        data = await self._get_json(
            "/api/git/log",
            {"count": count, "include_files": "true", "path": path or None},
        )
        commits = data.get("commits") if isinstance(data, Mapping) else None
        return [commit for commit in commits or () if isinstance(commit, Mapping)]

    async def commit_diff(self, commit_hash: str, *, file_path: str | None = None) -> Mapping[str, Any]:
        data = await self._get_json("/api/git/commit-diff", {"hash": commit_hash, "file": file_path or None})
        if not isinstance(data, Mapping):
            raise BackendError("unexpected commit-diff response")
        return data


# -----------------------------------------------------------------------------
# Tools
# -----------------------------------------------------------------------------


QUERY_VERSION_HISTORY_SPEC = ToolSpec(
    name="query_version_history",
    description=(
        "List recent commits to the game data, newest first, with the files each commit "
        "touched. Narrow it with filter_path to see changes to one file or folder."
    ),
    parameters={
        "type": "object",
        "properties": {
            "count": {
                "type": "integer",
                "minimum": 1,
                "maximum": MAX_COMMIT_COUNT,
                "description": f"Number of commits to return (default {DEFAULT_COMMIT_COUNT}).",
            },
            "filter_path": {"type": "string", "description": "Only commits touching this path."},
            "reason": {"type": "string", "description": "Why the history is needed, shown to the user."},
        },
    },
    category=ToolCategory.HISTORY,
)

SHOW_REVISION_DIFF_SPEC = ToolSpec(
    name="show_revision_diff",
    description=(
        "Show what changed in one commit: the files touched and their diffs. Pass file_path "
        "to limit the diff to a single file."
    ),
    parameters={
        "type": "object",
        "properties": {
            "commit_hash": {"type": "string", "description": "Full or abbreviated commit hash."},
            "file_path": {"type": "string", "description": "Restrict the diff to this file."},
            "reason": {"type": "string", "description": "Why the diff is needed, shown to the user."},
        },
        "required": ["commit_hash"],
    },
    category=ToolCategory.HISTORY,
)


def create_history_tool(history: VersionHistory) -> SimpleTool:
    async def handler(arguments: Mapping[str, Any], invocation: ToolInvocation) -> HistoryLookupResult:
        count = arguments.get("count")
        if not isinstance(count, int) or isinstance(count, bool):
            count = DEFAULT_COMMIT_COUNT
        count = max(1, min(count, MAX_COMMIT_COUNT))
        filter_path = str(arguments.get("filter_path") or "").strip() or None
        try:
            commits = await history.log(count=count, path=filter_path)
        except BackendError as exc:
            LOGGER.warning("Version history lookup failed: %s", exc)
            return HistoryLookupResult(
                call_id=invocation.call_id,
                tool_name=invocation.tool_name,
                error=f"version history unavailable: {exc}",
                filter_path=filter_path,
            )
        return HistoryLookupResult(
            call_id=invocation.call_id,
            tool_name=invocation.tool_name,
            filter_path=filter_path,
            commits=tuple(_summarize_commit(commit) for commit in commits),
        )

    return SimpleTool(spec=QUERY_VERSION_HISTORY_SPEC, handler=handler)


def create_revision_diff_tool(history: VersionHistory) -> SimpleTool:
    async def handler(arguments: Mapping[str, Any], invocation: ToolInvocation) -> DiffLookupResult:
        commit_hash = str(arguments.get("commit_hash") or "").strip()
        file_path = str(arguments.get("file_path") or "").strip() or None
        if not commit_hash:
            return DiffLookupResult(
                call_id=invocation.call_id,
                tool_name=invocation.tool_name,
                error="commit_hash is required",
                file_path=file_path,
            )
        try:
            data = await history.commit_diff(commit_hash, file_path=file_path)
        except BackendError as exc:
            LOGGER.warning("Diff lookup for %s failed: %s", commit_hash, exc)
            return DiffLookupResult(
                call_id=invocation.call_id,
                tool_name=invocation.tool_name,
                error=f"diff unavailable: {exc}",
                commit=commit_hash,
                file_path=file_path,
            )
        commit = data.get("commit")
        label = commit_hash
        if isinstance(commit, Mapping):
            label = str(commit.get("short") or commit.get("hash") or commit_hash)
        files = tuple(item for item in data.get("files") or () if isinstance(item, Mapping))
        return DiffLookupResult(
            call_id=invocation.call_id,
            tool_name=invocation.tool_name,
            commit=label,
            file_path=file_path,
            files=files,
        )

    return SimpleTool(spec=SHOW_REVISION_DIFF_SPEC, handler=handler)


def _summarize_commit(commit: Mapping[str, Any]) -> dict[str, Any]:
    summary = {
        key: commit.get(key)
        for key in ("hash", "short", "date", "author", "message")
        if commit.get(key) is not None
    }
    files = commit.get("files")
    if isinstance(files, (list, tuple)):
        summary["files"] = list(files)
    return summary
