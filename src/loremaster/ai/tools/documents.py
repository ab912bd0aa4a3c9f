"""Document generation tools.

``create_document`` stores a new HTML document written by the model, and
``patch_document`` edits a stored one with find/replace operations instead of
regenerating it. Documents are usually long, so ``create_document`` also
knows how to read its own arguments before they finish streaming: for the
live preview, and to salvage a document whose arguments were cut off by the
output token limit.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Mapping

from ...editor.documents import DocumentStore
from ...editor.patches import PatchEngine
from ..orchestration.tools import (
    DocumentCreateResult,
    DocumentPatchResult,
    SimpleTool,
    ToolCategory,
    ToolInvocation,
    ToolSpec,
)

__all__ = [
    "TRUNCATION_MARKER",
    "DEFAULT_DOCUMENT_TITLE",
    "CREATE_DOCUMENT_SPEC",
    "PATCH_DOCUMENT_SPEC",
    "create_document_tool",
    "create_patch_document_tool",
    "preview_document",
    "recover_document_arguments",
]

LOGGER = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n<!-- (truncated) -->"
DEFAULT_DOCUMENT_TITLE = "Document"

_TITLE_RE = re.compile(r'"title"\s*:\s*"((?:[^"\\]|\\.)*)"', re.DOTALL)
_PARTIAL_TITLE_RE = re.compile(r'"title"\s*:\s*"((?:[^"\\]|\\.)*)', re.DOTALL)
_DESCRIPTION_RE = re.compile(r'"description"\s*:\s*"((?:[^"\\]|\\.)*)"', re.DOTALL)
_HTML_START_RE = re.compile(r'"html"\s*:\s*"')

_ESCAPES = {
    '"': '"',
    "\\": "\\",
    "/": "/",
    "n": "\n",
    "t": "\t",
    "r": "\r",
    "b": "\b",
    "f": "\f",
}


# -----------------------------------------------------------------------------
# Partial argument parsing
# -----------------------------------------------------------------------------


def _read_json_string(text: str, start: int) -> tuple[str, bool]:
    """Decode a JSON string body beginning at ``start``.

    Returns the decoded text and whether the closing quote was reached. A
    dangling escape at the end of ``text`` is dropped.
    """

    out: list[str] = []
    index = start
    length = len(text)
    while index < length:
        char = text[index]
        if char == '"':
            return "".join(out), True
        if char != "\\":
            out.append(char)
            index += 1
            continue
        if index + 1 >= length:
            break
        code = text[index + 1]
        if code == "u":
            digits = text[index + 2 : index + 6]
            if len(digits) < 4:
                break
            try:
                out.append(chr(int(digits, 16)))
            except ValueError:
                out.append(digits)
            index += 6
            continue
        out.append(_ESCAPES.get(code, code))
        index += 2
    return "".join(out), False


def _unescape(value: str) -> str:
    decoded, _ = _read_json_string(value + '"', 0)
    return decoded


def _extract_html(text: str) -> tuple[str, bool] | None:
    match = _HTML_START_RE.search(text)
    if match is None:
        return None
    return _read_json_string(text, match.end())


def preview_document(partial_arguments: str) -> tuple[str, str] | None:
    """Return ``(title, html)`` visible so far in streaming arguments."""

    extracted = _extract_html(partial_arguments)
    if extracted is None:
        return None
    html, _ = extracted
    title_match = _PARTIAL_TITLE_RE.search(partial_arguments)
    title = _unescape(title_match.group(1)) if title_match else ""
    return title or DEFAULT_DOCUMENT_TITLE, html


def recover_document_arguments(arguments: str) -> dict[str, Any] | None:
    """Salvage ``create_document`` arguments that are not valid JSON.

    The html found so far is kept and marked as truncated. Returns ``None``
    when the html field had not started yet.
    """

    extracted = _extract_html(arguments)
    if extracted is None:
        return None
    html, complete = extracted
    if not html.strip():
        return None
    title_match = _TITLE_RE.search(arguments)
    description_match = _DESCRIPTION_RE.search(arguments)
    return {
        "title": _unescape(title_match.group(1)) if title_match else DEFAULT_DOCUMENT_TITLE,
        "description": _unescape(description_match.group(1)) if description_match else "",
        "html": html if complete else html + TRUNCATION_MARKER,
    }


# -----------------------------------------------------------------------------
# Tools
# -----------------------------------------------------------------------------


CREATE_DOCUMENT_SPEC = ToolSpec(
    name="create_document",
    description=(
        "Create a standalone HTML document (report, comparison sheet, character profile) for "
        "the user. Write complete, self-contained HTML with inline styles. Call this tool "
        "directly instead of announcing that you will."
    ),
    parameters={
        "type": "object",
        "properties": {
            "title": {"type": "string", "description": "Document title."},
            "description": {"type": "string", "description": "One-line summary of the document."},
            "html": {"type": "string", "description": "Full HTML body of the document."},
        },
        "required": ["title", "description", "html"],
    },
    category=ToolCategory.DOCUMENT,
    preview=preview_document,
    recover_arguments=recover_document_arguments,
)

PATCH_DOCUMENT_SPEC = ToolSpec(
    name="patch_document",
    description=(
        "Edit a document created earlier in this conversation with find/replace patches "
        "instead of regenerating it. Each find must be copied verbatim from the document; "
        "patches are applied in order. Omit document_id to edit the most recent document."
    ),
    parameters={
        "type": "object",
        "properties": {
            "document_id": {"type": "string", "description": "Identifier returned by create_document."},
            "patches": {
                "type": "array",
                "minItems": 1,
                "items": {
                    "type": "object",
                    "properties": {
                        "find": {"type": "string"},
                        "replace": {"type": "string"},
                    },
                    "required": ["find"],
                },
            },
        },
        "required": ["patches"],
    },
    category=ToolCategory.DOCUMENT,
)


def _store_for(invocation: ToolInvocation) -> DocumentStore | None:
    return invocation.context.documents


def create_document_tool() -> SimpleTool:
    def handler(arguments: Mapping[str, Any], invocation: ToolInvocation) -> DocumentCreateResult:
        title = str(arguments.get("title") or "").strip() or DEFAULT_DOCUMENT_TITLE
        description = str(arguments.get("description") or "")
        html = str(arguments.get("html") or "")
        store = _store_for(invocation)
        if store is None:
            return DocumentCreateResult(
                call_id=invocation.call_id,
                tool_name=invocation.tool_name,
                error="no document store is available in this conversation",
                title=title,
            )
        if not html.strip():
            return DocumentCreateResult(
                call_id=invocation.call_id,
                tool_name=invocation.tool_name,
                error="html is empty; write the full document body in html",
                title=title,
            )
        document = store.create(title, html, description=description)
        if invocation.arguments_recovered:
            LOGGER.info("Saved truncated document %s (%d chars)", document.document_id, len(html))
        return DocumentCreateResult(
            call_id=invocation.call_id,
            tool_name=invocation.tool_name,
            document_id=document.document_id,
            title=document.title,
            description=document.description,
            html=document.html,
            recovered=invocation.arguments_recovered,
        )

    return SimpleTool(spec=CREATE_DOCUMENT_SPEC, handler=handler)


def create_patch_document_tool() -> SimpleTool:
    def handler(arguments: Mapping[str, Any], invocation: ToolInvocation) -> DocumentPatchResult:
        store = _store_for(invocation)
        requested = str(arguments.get("document_id") or "").strip()
        if store is None:
            return DocumentPatchResult(
                call_id=invocation.call_id,
                tool_name=invocation.tool_name,
                error="no document store is available in this conversation",
                document_id=requested,
            )
        document = store.get(requested) if requested else store.latest()
        if document is None:
            error = f"document '{requested}' not found" if requested else "no document has been created yet"
            return DocumentPatchResult(
                call_id=invocation.call_id,
                tool_name=invocation.tool_name,
                error=error,
                document_id=requested,
            )

        outcome = PatchEngine.apply(document.html, arguments.get("patches") or ())
        if outcome.applied_count:
            document = store.update(document.document_id, outcome.document)
        LOGGER.debug(
            "Patched %s: %d applied, %d failed",
            document.document_id,
            outcome.applied_count,
            len(outcome.failed),
        )
        return DocumentPatchResult(
            call_id=invocation.call_id,
            tool_name=invocation.tool_name,
            document_id=document.document_id,
            title=document.title,
            html=document.html,
            applied_count=outcome.applied_count,
            failed=outcome.failed,
        )

    return SimpleTool(spec=PATCH_DOCUMENT_SPEC, handler=handler)
