"""Find/replace patch application for generated documents."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Sequence, Tuple

__all__ = ["PatchOp", "PatchOutcome", "PatchEngine", "apply_patches", "coerce_patch_ops"]

LOGGER = logging.getLogger(__name__)

FAILED_FIND_PREVIEW = 80


@dataclass(slots=True, frozen=True)
class PatchOp:
    """A single find/replace edit applied against a document."""

    find: str
    replace: str = ""


@dataclass(slots=True, frozen=True)
class PatchOutcome:
    """Result of applying a sequence of :class:`PatchOp` objects."""

    document: str
    applied_count: int
    failed: Tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict[str, Any]:
        return {
            "applied_count": self.applied_count,
            "failed": list(self.failed),
            "length": len(self.document),
        }


class PatchEngine:
    """Applies find/replace operations with a whitespace-tolerant fallback.

    Every op is tried first as an exact replace-all. When the exact text is
    absent, the ``find`` string is reduced to its whitespace-separated tokens
    and matched against the document with any run of whitespace standing in
    for the gaps between tokens. Matches are replaced in the original
    document, so formatting outside the matched spans is preserved. Ops that
    still do not match are reported in :attr:`PatchOutcome.failed`.
    """

    @staticmethod
    def apply(document: str, ops: Iterable[PatchOp | Mapping[str, Any]]) -> PatchOutcome:
        text = document or ""
        applied = 0
        failed: list[str] = []
        for op in coerce_patch_ops(ops):
            updated = _apply_one(text, op)
            if updated is None:
                failed.append(_preview_find(op.find))
                continue
            text = updated
            applied += 1
        if failed:
            LOGGER.debug("Patch application left %d op(s) unmatched", len(failed))
        return PatchOutcome(document=text, applied_count=applied, failed=tuple(failed))


def apply_patches(document: str, ops: Iterable[PatchOp | Mapping[str, Any]]) -> PatchOutcome:
    """Module-level shortcut for :meth:`PatchEngine.apply`."""

    return PatchEngine.apply(document, ops)


def coerce_patch_ops(ops: Iterable[PatchOp | Mapping[str, Any]] | None) -> list[PatchOp]:
    """Normalize mappings such as ``{"find": ..., "replace": ...}`` into ops."""

    result: list[PatchOp] = []
    for op in ops or ():
        if isinstance(op, PatchOp):
            result.append(op)
            continue
        if isinstance(op, Mapping):
            find = op.get("find")
            replace = op.get("replace")
            result.append(
                PatchOp(
                    find=find if isinstance(find, str) else "",
                    replace=replace if isinstance(replace, str) else "",
                )
            )
            continue
        # Unrecognized entries still count as ops so the totals line up.
        result.append(PatchOp(find=""))
    return result


def _apply_one(document: str, op: PatchOp) -> str | None:
    find = op.find
    if not find or not find.strip():
        return None
    if find in document:
        return document.replace(find, op.replace)
    pattern = _whitespace_pattern(find)
    if pattern is None:
        return None
    replacement = op.replace
    updated, count = pattern.subn(lambda _match: replacement, document)
    if count == 0:
        return None
    return updated


def _whitespace_pattern(find: str) -> re.Pattern[str] | None:
    tokens: Sequence[str] = find.split()
    if not tokens:
        return None
    return re.compile(r"\s+".join(re.escape(token) for token in tokens))


def _preview_find(find: str) -> str:
    if len(find) <= FAILED_FIND_PREVIEW:
        return find
    return find[:FAILED_FIND_PREVIEW] + "..."
