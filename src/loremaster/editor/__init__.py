"""Document storage and patch helpers."""

from .documents import DocumentNotFoundError, DocumentStore, GeneratedDocument
from .patches import PatchEngine, PatchOp, PatchOutcome, apply_patches

__all__ = [
    "DocumentNotFoundError",
    "DocumentStore",
    "GeneratedDocument",
    "PatchEngine",
    "PatchOp",
    "PatchOutcome",
    "apply_patches",
]
