"""
In-memory document store for testing.

This module provides a simple in-memory DocumentStore for:
- Unit tests
- Integration tests
- Local development without a database file

Invariants:
    - All data is lost on process exit
    - Commits are all-or-nothing: the new state is built on a copy and swapped in
    - Reads and writes deep-copy data so callers never alias stored state

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep query semantics in store.base.select_page
    - Add features to help with testing scenarios
"""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from collections.abc import Sequence
from typing import Any

from ..errors import PreconditionFailedError
from .base import (
    ID_FIELD,
    BaseDocumentStore,
    Cursor,
    Document,
    FieldFilter,
    MutationKind,
    QueryPage,
    WriteGroup,
    apply_update,
    precondition_holds,
    select_page,
)

logger = logging.getLogger(__name__)

# collection -> doc_id -> (data, update_time)
_State = dict[str, dict[str, tuple[dict[str, Any], float]]]


class InMemoryDocumentStore(BaseDocumentStore):
    """In-memory implementation of DocumentStore.

    Thread safety:
        Commits are serialized with an asyncio lock. Safe to use from
        multiple coroutines.

    Example:
        >>> store = InMemoryDocumentStore()
        >>> await store.seed("panels", {"p1": {"power": 4.2}})
        >>> doc = await store.get("panels", "p1")
    """

    def __init__(self, max_group_size: int = 500) -> None:
        super().__init__(max_group_size)
        self._data: _State = {}
        self._lock = asyncio.Lock()
        self._clock = time.time
        self.group_sizes: list[int] = []

    async def get(self, collection: str, doc_id: str) -> Document | None:
        entry = self._data.get(collection, {}).get(doc_id)
        if entry is None:
            return None
        data, updated = entry
        return Document(collection, doc_id, copy.deepcopy(data), updated)

    async def query(
        self,
        collection: str,
        filters: Sequence[FieldFilter] = (),
        order_by: str = ID_FIELD,
        limit: int | None = None,
        start_after: Cursor | None = None,
        descending: bool = False,
    ) -> QueryPage:
        documents = (
            Document(collection, doc_id, copy.deepcopy(data), updated)
            for doc_id, (data, updated) in self._data.get(collection, {}).items()
        )
        return select_page(documents, filters, order_by, limit, start_after, descending)

    async def count(self, collection: str, filters: Sequence[FieldFilter] = ()) -> int:
        if not filters:
            return len(self._data.get(collection, {}))
        return await super().count(collection, filters)

    async def list_collections(self) -> list[str]:
        return sorted(name for name, docs in self._data.items() if docs)

    async def _apply(self, group: WriteGroup) -> None:
        async with self._lock:
            for precondition in group.preconditions:
                entry = self._data.get(precondition.collection, {}).get(precondition.doc_id)
                if not precondition_holds(precondition, entry[0] if entry else None):
                    raise PreconditionFailedError(
                        f"Precondition failed for {precondition.collection}/{precondition.doc_id}",
                        details={
                            "collection": precondition.collection,
                            "doc_id": precondition.doc_id,
                        },
                    )

            now = self._clock()
            touched = {m.collection for m in group.mutations}
            staged = {name: dict(self._data.get(name, {})) for name in touched}

            for mutation in group.mutations:
                docs = staged[mutation.collection]
                if mutation.kind == MutationKind.SET:
                    docs[mutation.doc_id] = (copy.deepcopy(mutation.data or {}), now)
                elif mutation.kind == MutationKind.UPDATE:
                    current = docs.get(mutation.doc_id)
                    base = current[0] if current else {}
                    docs[mutation.doc_id] = (apply_update(base, mutation.data or {}), now)
                elif mutation.kind == MutationKind.DELETE:
                    docs.pop(mutation.doc_id, None)

            self._data.update(staged)
            self.group_sizes.append(len(group))

    # ---------------------------------------------------------------------
    # Testing helpers
    # ---------------------------------------------------------------------

    async def seed(self, collection: str, documents: dict[str, dict[str, Any]]) -> None:
        """Insert documents directly, bypassing write group limits."""
        now = self._clock()
        docs = self._data.setdefault(collection, {})
        for doc_id, data in documents.items():
            docs[doc_id] = (copy.deepcopy(data), now)

    def snapshot(self, collection: str) -> dict[str, dict[str, Any]]:
        """Copy of a collection's documents keyed by id."""
        return {
            doc_id: copy.deepcopy(data)
            for doc_id, (data, _) in self._data.get(collection, {}).items()
        }

    def clear(self) -> None:
        self._data.clear()
        self.group_sizes.clear()
