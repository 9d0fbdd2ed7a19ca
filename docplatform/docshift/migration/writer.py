"""
Capacity-bounded write batching.

BatchWriter hides the store's write group limit from the engine and from
custom executors: mutations accumulate in one open group, and the group
is committed as soon as the next mutation set would not fit. Callers
never see WriteGroupFullError unless a single document needs more
mutations than a group can hold.

Invariants:
    - At most one group is open at a time
    - A group never exceeds min(cap, store.max_group_size) mutations
    - Mutations added through write_all() land in the same group
    - In dry-run mode groups are built identically but never committed
    - A document id is reported as committed only after the group holding
      its mutations has committed
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from ..errors import WriteGroupFullError
from ..store.base import DocumentStore, Mutation, MutationKind, WriteGroup

logger = logging.getLogger(__name__)


class BatchWriter:
    """Accumulates mutations and commits them in bounded groups.

    Example:
        >>> writer = BatchWriter(store)
        >>> await writer.update("panels", "p1", {"power": 4200})
        >>> await writer.flush()
    """

    def __init__(
        self,
        store: DocumentStore,
        cap: int | None = None,
        dry_run: bool = False,
    ) -> None:
        self.store = store
        self.cap = min(cap or store.max_group_size, store.max_group_size)
        self.dry_run = dry_run
        self._group: WriteGroup | None = None
        self._owners: list[str] = []
        self._committed_owners: set[str] = set()
        self.groups_committed = 0
        self.mutations_committed = 0
        self.intended_mutations = 0
        self.largest_group = 0

    @property
    def pending(self) -> int:
        return len(self._group) if self._group else 0

    def _open(self) -> WriteGroup:
        if self._group is None:
            self._group = WriteGroup(self.cap)
        return self._group

    async def _reserve(self, count: int) -> WriteGroup:
        if count > self.cap:
            raise WriteGroupFullError(
                f"{count} mutations cannot fit in one write group (cap {self.cap})",
                details={"count": count, "cap": self.cap},
            )
        if self._group is not None and self._group.remaining < count:
            await self.flush()
        return self._open()

    async def set(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        group = await self._reserve(1)
        group.set(collection, doc_id, data)

    async def update(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        group = await self._reserve(1)
        group.update(collection, doc_id, data)

    async def delete(self, collection: str, doc_id: str) -> None:
        group = await self._reserve(1)
        group.delete(collection, doc_id)

    async def write_all(self, mutations: Sequence[Mutation], owner: str | None = None) -> None:
        """Add mutations that must commit together.

        Args:
            mutations: Mutations for one document
            owner: Document id reported by take_committed() once they commit
        """
        if not mutations:
            return
        group = await self._reserve(len(mutations))
        if owner is not None:
            self._owners.append(owner)
        for mutation in mutations:
            if mutation.kind == MutationKind.SET:
                group.set(mutation.collection, mutation.doc_id, mutation.data or {})
            elif mutation.kind == MutationKind.UPDATE:
                group.update(mutation.collection, mutation.doc_id, mutation.data or {})
            else:
                group.delete(mutation.collection, mutation.doc_id)

    async def flush(self) -> int:
        """Commit the open group, if any.

        Returns:
            Number of mutations flushed
        """
        group, self._group = self._group, None
        owners, self._owners = self._owners, []
        if group is None or len(group) == 0:
            return 0

        size = len(group)
        self.largest_group = max(self.largest_group, size)
        if self.dry_run:
            self.intended_mutations += size
            return size

        try:
            await self.store.commit(group)
        except Exception:
            logger.warning("Write group commit failed", extra={"mutations": size})
            raise
        self.groups_committed += 1
        self.mutations_committed += size
        self._committed_owners.update(owners)
        return size

    def discard(self) -> int:
        """Drop the open group without committing it."""
        group, self._group = self._group, None
        self._owners = []
        return len(group) if group else 0

    def take_committed(self) -> set[str]:
        """Return and reset the ids of documents whose writes have committed."""
        committed, self._committed_owners = self._committed_owners, set()
        return committed
