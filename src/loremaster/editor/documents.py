"""In-memory store for documents generated during a conversation."""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

__all__ = ["GeneratedDocument", "DocumentStore", "DocumentNotFoundError"]

LOGGER = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DocumentNotFoundError(KeyError):
    """Raised when a document id is not present in the store."""

    def __init__(self, document_id: str) -> None:
        self.document_id = document_id
        super().__init__(document_id)

    def __str__(self) -> str:
        return f"document '{self.document_id}' not found"


@dataclass(slots=True, frozen=True)
class GeneratedDocument:
    """Snapshot of a generated HTML document.

    Each update produces a new snapshot with an incremented ``revision``.
    """

    document_id: str
    title: str
    html: str
    description: str = ""
    revision: int = 1
    updated_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "document_id": self.document_id,
            "title": self.title,
            "description": self.description,
            "revision": self.revision,
            "char_count": len(self.html),
            "updated_at": self.updated_at.isoformat(),
        }


class DocumentStore:
    """Thread-safe registry of generated documents.

    The store is owned by the caller and handed to tool handlers through the
    tool context, so documents survive across turns of the same conversation.
    """

    def __init__(self, *, id_prefix: str = "doc") -> None:
        self._documents: dict[str, GeneratedDocument] = {}
        self._order: list[str] = []
        self._lock = threading.RLock()
        self._counter = itertools.count(1)
        self._id_prefix = id_prefix

    def create(self, title: str, html: str, *, description: str = "") -> GeneratedDocument:
        with self._lock:
            document_id = f"{self._id_prefix}-{next(self._counter)}"
            document = GeneratedDocument(
                document_id=document_id,
                title=title,
                html=html,
                description=description,
            )
            self._documents[document_id] = document
            self._order.append(document_id)
        LOGGER.debug("Created document %s (%d chars)", document_id, len(html))
        return document

    def update(self, document_id: str, html: str, *, title: str | None = None) -> GeneratedDocument:
        with self._lock:
            current = self.get_required(document_id)
            document = GeneratedDocument(
                document_id=document_id,
                title=title if title is not None else current.title,
                html=html,
                description=current.description,
                revision=current.revision + 1,
            )
            self._documents[document_id] = document
        return document

    def get(self, document_id: str) -> GeneratedDocument | None:
        with self._lock:
            return self._documents.get(document_id)

    def get_required(self, document_id: str) -> GeneratedDocument:
        document = self.get(document_id)
        if document is None:
            raise DocumentNotFoundError(document_id)
        return document

    def latest(self) -> GeneratedDocument | None:
        with self._lock:
            if not self._order:
                return None
            return self._documents[self._order[-1]]

    def list_documents(self) -> list[GeneratedDocument]:
        with self._lock:
            return [self._documents[doc_id] for doc_id in self._order]

    def __len__(self) -> int:
        with self._lock:
            return len(self._documents)

    def __contains__(self, document_id: object) -> bool:
        with self._lock:
            return document_id in self._documents
