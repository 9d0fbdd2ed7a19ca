"""
Base protocol and types for the document store abstraction.

DocShift runs against any store that offers four primitives:
    (a) fetch a document by id
    (b) query with simple field predicates, ordered by a caller-chosen
        field, with cursor pagination
    (c) an atomic write group bounded by a fixed mutation count that either
        fully applies or fully fails
    (d) subscribe to the latest document of a query (live-update triggers)

Invariants:
    - A WriteGroup never holds more than max_mutations mutations
    - commit() applies every mutation of a group or none of them
    - Preconditions are checked inside the same atomic commit
    - Documents returned by a store are copies; mutating them has no effect
    - Documents missing the order_by field are excluded from ordered queries

How to change safely:
    - Protocol changes require updating every backend
    - Keep select_page() the single definition of query semantics so that
      backends cannot drift apart
"""

from __future__ import annotations

import asyncio
import copy
import inspect
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from ..errors import StoreError, WriteGroupFullError

logger = logging.getLogger(__name__)

ID_FIELD = "__id__"
DEFAULT_MAX_GROUP_SIZE = 500


class _DeleteField:
    """Sentinel removing a field in WriteGroup.update()."""

    _instance: _DeleteField | None = None

    def __new__(cls) -> _DeleteField:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "DELETE_FIELD"


DELETE_FIELD = _DeleteField()


@dataclass(frozen=True)
class Document:
    """A stored document.

    Attributes:
        collection: Collection name
        id: Document id, unique within the collection
        data: Field values
        update_time: Last commit time (Unix seconds), assigned by the store
    """

    collection: str
    id: str
    data: dict[str, Any]
    update_time: float = 0.0

    def get(self, name: str, default: Any = None) -> Any:
        if name == ID_FIELD:
            return self.id
        return self.data.get(name, default)

    def has(self, name: str) -> bool:
        return name in self.data


class FilterOp(Enum):
    """Supported predicate operators."""

    EQ = "=="
    NE = "!="
    LT = "<"
    LTE = "<="
    GT = ">"
    GTE = ">="
    IN = "in"
    NOT_IN = "not-in"
    ARRAY_CONTAINS = "array-contains"
    EXISTS = "exists"
    MISSING = "missing"

    @classmethod
    def from_str(cls, value: str) -> FilterOp:
        """Convert operator string to FilterOp.

        Raises:
            ValueError: If value is not a supported operator
        """
        for op in cls:
            if op.value == value:
                return op
        valid = [o.value for o in cls]
        raise ValueError(f"Invalid filter operator '{value}'. Valid operators: {valid}")


@dataclass(frozen=True)
class FieldFilter:
    """A single field predicate.

    Example:
        >>> FieldFilter("status", "==", "active")
        >>> FieldFilter("legacyId", "exists")
    """

    field: str
    op: FilterOp | str
    value: Any = None

    def __post_init__(self) -> None:
        if isinstance(self.op, str):
            object.__setattr__(self, "op", FilterOp.from_str(self.op))

    def matches(self, document: Document) -> bool:
        """Whether the document satisfies this predicate."""
        present = self.field == ID_FIELD or document.has(self.field)
        if self.op == FilterOp.EXISTS:
            return present
        if self.op == FilterOp.MISSING:
            return not present
        if not present:
            return False

        actual = document.get(self.field)
        try:
            if self.op == FilterOp.EQ:
                return actual == self.value
            if self.op == FilterOp.NE:
                return actual != self.value
            if self.op == FilterOp.IN:
                return actual in self.value
            if self.op == FilterOp.NOT_IN:
                return actual not in self.value
            if self.op == FilterOp.ARRAY_CONTAINS:
                return isinstance(actual, list) and self.value in actual
            if self.op == FilterOp.LT:
                return order_key(actual) < order_key(self.value)
            if self.op == FilterOp.LTE:
                return order_key(actual) <= order_key(self.value)
            if self.op == FilterOp.GT:
                return order_key(actual) > order_key(self.value)
            if self.op == FilterOp.GTE:
                return order_key(actual) >= order_key(self.value)
        except TypeError:
            return False
        return False

    def to_dict(self) -> dict[str, Any]:
        return {"field": self.field, "op": self.op.value, "value": self.value}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FieldFilter:
        return cls(field=data["field"], op=data["op"], value=data.get("value"))


@dataclass(frozen=True)
class Cursor:
    """Position after the last document of a page."""

    value: Any
    doc_id: str


@dataclass
class QueryPage:
    """One page of query results.

    Attributes:
        documents: Documents on this page
        cursor: Pass as start_after to get the next page; None on the last page
    """

    documents: list[Document]
    cursor: Cursor | None = None


def order_key(value: Any) -> tuple[int, Any]:
    """Total order across value types: null < bool < number < string < other."""
    if value is None:
        return (0, 0)
    if isinstance(value, bool):
        return (1, value)
    if isinstance(value, (int, float)):
        return (2, value)
    if isinstance(value, str):
        return (3, value)
    return (4, repr(value))


def matches_all(document: Document, filters: Sequence[FieldFilter]) -> bool:
    return all(f.matches(document) for f in filters)


def select_page(
    documents: Iterable[Document],
    filters: Sequence[FieldFilter] = (),
    order_by: str = ID_FIELD,
    limit: int | None = None,
    start_after: Cursor | None = None,
    descending: bool = False,
) -> QueryPage:
    """Apply query semantics to an iterable of documents.

    Used by every backend that cannot push the query down natively.
    """
    candidates = [
        d
        for d in documents
        if matches_all(d, filters) and (order_by == ID_FIELD or d.has(order_by))
    ]

    def sort_key(doc: Document) -> tuple[tuple[int, Any], str]:
        return (order_key(doc.get(order_by)), doc.id)

    candidates.sort(key=sort_key, reverse=descending)

    if start_after is not None:
        boundary = (order_key(start_after.value), start_after.doc_id)
        if descending:
            candidates = [d for d in candidates if sort_key(d) < boundary]
        else:
            candidates = [d for d in candidates if sort_key(d) > boundary]

    if limit is not None and len(candidates) > limit:
        page = candidates[:limit]
        last = page[-1]
        return QueryPage(documents=page, cursor=Cursor(last.get(order_by), last.id))
    return QueryPage(documents=candidates, cursor=None)


def apply_update(data: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    """Merge updates into data; DELETE_FIELD removes the key."""
    merged = dict(data)
    for key, value in updates.items():
        if value is DELETE_FIELD:
            merged.pop(key, None)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class MutationKind(Enum):
    """Write group mutation kinds."""

    SET = "set"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class Mutation:
    """One pending write."""

    kind: MutationKind
    collection: str
    doc_id: str
    data: dict[str, Any] | None = None


@dataclass(frozen=True)
class Precondition:
    """Commit-time expectation about a document.

    Attributes:
        expected: None requires the document to be absent; otherwise every
            listed field must hold the listed value
    """

    collection: str
    doc_id: str
    expected: dict[str, Any] | None


class WriteGroup:
    """A bounded set of mutations that commit together or not at all.

    Attributes:
        max_mutations: Capacity of the group

    Example:
        >>> group = store.write_group()
        >>> group.update("users", "u1", {"plan": "pro"})
        >>> group.delete("sessions", "s9")
        >>> await store.commit(group)
    """

    def __init__(self, max_mutations: int = DEFAULT_MAX_GROUP_SIZE) -> None:
        if max_mutations <= 0:
            raise ValueError(f"max_mutations must be positive, got {max_mutations}")
        self.max_mutations = max_mutations
        self.mutations: list[Mutation] = []
        self.preconditions: list[Precondition] = []
        self.committed = False

    def __len__(self) -> int:
        return len(self.mutations)

    @property
    def remaining(self) -> int:
        return self.max_mutations - len(self.mutations)

    @property
    def is_full(self) -> bool:
        return self.remaining <= 0

    def _add(self, mutation: Mutation) -> None:
        if self.committed:
            raise StoreError("Write group already committed")
        if self.is_full:
            raise WriteGroupFullError(
                f"Write group is full ({self.max_mutations} mutations)",
                details={"max_mutations": self.max_mutations},
            )
        self.mutations.append(mutation)

    def set(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        """Create or replace a document."""
        self._add(Mutation(MutationKind.SET, collection, doc_id, copy.deepcopy(data)))

    def update(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        """Merge fields into an existing document (DELETE_FIELD removes a field)."""
        self._add(Mutation(MutationKind.UPDATE, collection, doc_id, dict(data)))

    def delete(self, collection: str, doc_id: str) -> None:
        """Delete a document (no-op if absent)."""
        self._add(Mutation(MutationKind.DELETE, collection, doc_id))

    def require(self, collection: str, doc_id: str, expected: dict[str, Any] | None) -> None:
        """Add a precondition checked atomically at commit time."""
        if self.committed:
            raise StoreError("Write group already committed")
        self.preconditions.append(Precondition(collection, doc_id, copy.deepcopy(expected)))


def precondition_holds(precondition: Precondition, current: dict[str, Any] | None) -> bool:
    if precondition.expected is None:
        return current is None
    if current is None:
        return False
    return all(current.get(k) == v for k, v in precondition.expected.items())


SubscriptionCallback = Callable[[Document | None], Awaitable[None] | None]


@dataclass
class StoreSubscription:
    """Handle for a latest-document subscription."""

    collection: str
    filters: tuple[FieldFilter, ...]
    order_by: str
    callback: SubscriptionCallback
    active: bool = True
    last_id: str | None = field(default=None, repr=False)
    last_update: float | None = field(default=None, repr=False)

    def cancel(self) -> None:
        self.active = False


@runtime_checkable
class DocumentStore(Protocol):
    """Protocol every document store backend implements."""

    @property
    def max_group_size(self) -> int:
        """Maximum mutations in one write group."""
        ...

    async def get(self, collection: str, doc_id: str) -> Document | None:
        """Fetch a document by id, or None."""
        ...

    async def query(
        self,
        collection: str,
        filters: Sequence[FieldFilter] = (),
        order_by: str = ID_FIELD,
        limit: int | None = None,
        start_after: Cursor | None = None,
        descending: bool = False,
    ) -> QueryPage:
        """Run a filtered, ordered, cursor-paginated query."""
        ...

    async def count(self, collection: str, filters: Sequence[FieldFilter] = ()) -> int:
        """Count matching documents."""
        ...

    async def list_collections(self) -> list[str]:
        """Names of collections holding at least one document."""
        ...

    def write_group(self) -> WriteGroup:
        """Open a write group bounded by max_group_size."""
        ...

    async def commit(self, group: WriteGroup) -> None:
        """Atomically apply a write group."""
        ...

    def subscribe_latest(
        self,
        collection: str,
        callback: SubscriptionCallback,
        filters: Sequence[FieldFilter] = (),
        order_by: str = ID_FIELD,
    ) -> StoreSubscription:
        """Call back with the latest matching document after each change."""
        ...


class BaseDocumentStore(ABC):
    """Shared behaviour for the bundled backends.

    Subclasses implement the storage primitives; this class provides write
    group construction, fault injection for tests, and latest-document
    subscriptions fired after each successful commit.
    """

    def __init__(self, max_group_size: int = DEFAULT_MAX_GROUP_SIZE) -> None:
        if max_group_size <= 0:
            raise ValueError(f"max_group_size must be positive, got {max_group_size}")
        self._max_group_size = max_group_size
        self._subscriptions: list[StoreSubscription] = []
        self._commit_failures: list[Exception | None] = []
        self._commit_count = 0
        self._largest_group = 0
        self._background: set[asyncio.Task[Any]] = set()

    @property
    def max_group_size(self) -> int:
        return self._max_group_size

    def write_group(self) -> WriteGroup:
        return WriteGroup(self._max_group_size)

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Document | None: ...

    @abstractmethod
    async def query(
        self,
        collection: str,
        filters: Sequence[FieldFilter] = (),
        order_by: str = ID_FIELD,
        limit: int | None = None,
        start_after: Cursor | None = None,
        descending: bool = False,
    ) -> QueryPage: ...

    @abstractmethod
    async def list_collections(self) -> list[str]: ...

    @abstractmethod
    async def _apply(self, group: WriteGroup) -> None:
        """Atomically apply the group (preconditions included)."""

    async def count(self, collection: str, filters: Sequence[FieldFilter] = ()) -> int:
        page = await self.query(collection, filters)
        return len(page.documents)

    async def commit(self, group: WriteGroup) -> None:
        """Atomically apply a write group and notify subscribers."""
        if group.committed:
            raise StoreError("Write group already committed")
        if len(group) > self._max_group_size:
            raise WriteGroupFullError(
                f"Write group holds {len(group)} mutations, cap is {self._max_group_size}",
                details={"size": len(group), "max": self._max_group_size},
            )
        if self._commit_failures:
            failure = self._commit_failures.pop(0)
            if failure is not None:
                raise failure

        await self._apply(group)
        group.committed = True
        self._commit_count += 1
        self._largest_group = max(self._largest_group, len(group))

        touched = {m.collection for m in group.mutations}
        if touched and self._subscriptions:
            await self._notify(touched)

    def inject_commit_failures(
        self, count: int = 1, error: Exception | None = None, after: int = 0
    ) -> None:
        """Make ``count`` commits fail without applying anything.

        The first ``after`` commits still succeed.
        """
        self._commit_failures.extend([None] * after)
        for _ in range(count):
            self._commit_failures.append(error or StoreError("Injected commit failure"))

    def subscribe_latest(
        self,
        collection: str,
        callback: SubscriptionCallback,
        filters: Sequence[FieldFilter] = (),
        order_by: str = ID_FIELD,
    ) -> StoreSubscription:
        subscription = StoreSubscription(collection, tuple(filters), order_by, callback)
        self._subscriptions.append(subscription)
        return subscription

    async def _notify(self, collections: set[str]) -> None:
        self._subscriptions = [s for s in self._subscriptions if s.active]
        for subscription in self._subscriptions:
            if subscription.collection not in collections:
                continue
            page = await self.query(
                subscription.collection,
                subscription.filters,
                order_by=subscription.order_by,
                limit=1,
                descending=True,
            )
            latest = page.documents[0] if page.documents else None
            marker = (latest.id, latest.update_time) if latest else (None, None)
            if marker == (subscription.last_id, subscription.last_update):
                continue
            subscription.last_id, subscription.last_update = marker

            try:
                result = subscription.callback(latest)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._background.add(task)
                    task.add_done_callback(self._background.discard)
            except Exception as e:
                logger.error(f"Subscription callback failed: {e}", exc_info=True)

    @property
    def stats(self) -> dict[str, Any]:
        """Commit statistics."""
        return {
            "commits": self._commit_count,
            "largest_group": self._largest_group,
            "max_group_size": self._max_group_size,
            "subscriptions": len([s for s in self._subscriptions if s.active]),
        }
