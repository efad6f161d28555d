# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Storage backend contract for the state adapter.

The adapter talks to an abstract document store: documents are plain dicts
grouped by a type name and addressed by id. ``InMemoryStorage`` implements
the contract for tests and single-process use.
"""

from __future__ import annotations

import copy
import logging
import uuid
from collections.abc import Mapping
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class StorageBackend(Protocol):
    """Async document store used by WorkflowStateAdapter.

    Implementations must return copies (never live references) from reads,
    and ``delete`` must report whether a document was removed.
    """

    async def get(self, type: str, id: str) -> dict[str, Any] | None:
        """Return the document, or None if it does not exist."""
        ...

    async def create(
        self, type: str, data: Mapping[str, Any], id: str | None = None
    ) -> dict[str, Any]:
        """Store a new document and return it with its ``id``."""
        ...

    async def update(self, type: str, id: str, data: Mapping[str, Any]) -> dict[str, Any]:
        """Replace an existing document and return it."""
        ...

    async def delete(self, type: str, id: str) -> bool:
        """Delete a document. Returns True if it existed."""
        ...

    async def list(
        self,
        type: str,
        limit: int | None = None,
        offset: int | None = None,
        where: Mapping[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """List documents of a type, optionally filtered by field equality."""
        ...

    async def emit(self, event: str, data: Mapping[str, Any]) -> None:
        """Publish a change event."""
        ...


class InMemoryStorage:
    """Dict-backed StorageBackend.

    Documents are deep-copied on the way in and out so callers can never
    mutate stored state by accident. Emitted events are kept in ``events``
    in emission order.

    Example:
        >>> storage = InMemoryStorage()
        >>> adapter = WorkflowStateAdapter(storage)
    """

    def __init__(self) -> None:
        self._documents: dict[str, dict[str, dict[str, Any]]] = {}
        self.events: list[tuple[str, dict[str, Any]]] = []

    def _bucket(self, type: str) -> dict[str, dict[str, Any]]:
        return self._documents.setdefault(type, {})

    async def get(self, type: str, id: str) -> dict[str, Any] | None:
        document = self._bucket(type).get(id)
        return copy.deepcopy(document) if document is not None else None

    async def create(
        self, type: str, data: Mapping[str, Any], id: str | None = None
    ) -> dict[str, Any]:
        document_id = id or data.get("id") or str(uuid.uuid4())
        bucket = self._bucket(type)
        if document_id in bucket:
            raise KeyError(f"{type} document {document_id!r} already exists")
        document = {**copy.deepcopy(dict(data)), "id": document_id}
        bucket[document_id] = document
        return copy.deepcopy(document)

    async def update(self, type: str, id: str, data: Mapping[str, Any]) -> dict[str, Any]:
        bucket = self._bucket(type)
        if id not in bucket:
            raise KeyError(f"{type} document {id!r} does not exist")
        document = {**copy.deepcopy(dict(data)), "id": id}
        bucket[id] = document
        return copy.deepcopy(document)

    async def delete(self, type: str, id: str) -> bool:
        return self._bucket(type).pop(id, None) is not None

    async def list(
        self,
        type: str,
        limit: int | None = None,
        offset: int | None = None,
        where: Mapping[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        documents = [
            document
            for document in self._bucket(type).values()
            if not where or all(document.get(key) == value for key, value in where.items())
        ]
        start = offset or 0
        end = start + limit if limit is not None else None
        return copy.deepcopy(documents[start:end])

    async def emit(self, event: str, data: Mapping[str, Any]) -> None:
        logger.debug("Storage event %s: %s", event, data)
        self.events.append((event, dict(data)))
