"""
Migration operation types.

A migration is a set of operations, each a tagged variant:

    add_field          set a field to a default where it is missing
    remove_field       delete a field, optionally archiving the old value
    rename_field       move a value to a new field name
    change_field_type  convert a field's value to another type
    transform_data     apply an arbitrary document transformer
    custom             caller-supplied logic run against each page

Every operation names its target collection, a priority (ordering
tie-break) and the ids of operations that must complete first.

Dispatch goes through OperationVisitor: a visitor subclass that misses
a kind cannot be instantiated, so adding a kind forces every consumer
to handle it.

Invariants:
    - Operation ids are unique within one run
    - add/remove/rename are idempotent per document
    - Converters, transformers, validators and executors may be sync or async

How to change safely:
    - A new kind needs an OperationKind member, a dataclass with
      accept(), and an abstract visit_* method on OperationVisitor
"""

from __future__ import annotations

import inspect
import json
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar, Generic, TypeVar

from ..errors import OperationFailedError
from ..registry.types import FieldType
from ..store.base import FieldFilter

if TYPE_CHECKING:
    from ..store.base import Document
    from .context import MigrationContext
    from .writer import BatchWriter

T = TypeVar("T")

Converter = Callable[[Any], Any]
DocumentTransform = Callable[[dict[str, Any]], Any]
DocumentValidator = Callable[[dict[str, Any]], Any]
CustomExecutor = Callable[["list[Document]", "BatchWriter", "MigrationContext"], Any]


async def resolve(value: Any) -> Any:
    """Await the value if a hook returned an awaitable."""
    if inspect.isawaitable(value):
        return await value
    return value


class OperationKind(Enum):
    """Operation variants."""

    ADD_FIELD = "add_field"
    REMOVE_FIELD = "remove_field"
    RENAME_FIELD = "rename_field"
    CHANGE_FIELD_TYPE = "change_field_type"
    TRANSFORM_DATA = "transform_data"
    CUSTOM = "custom"


@dataclass(frozen=True, kw_only=True)
class MigrationOperation(ABC):
    """Fields shared by every operation.

    Attributes:
        id: Unique id within the run
        collection: Target collection
        description: Human-readable description
        priority: Lower runs first among operations with satisfied dependencies
        dependencies: Ids of operations that must complete first
        filters: Restrict the operation to matching documents
    """

    kind: ClassVar[OperationKind]

    id: str
    collection: str
    description: str = ""
    priority: int = 100
    dependencies: tuple[str, ...] = ()
    filters: tuple[FieldFilter, ...] = ()

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("Operation id cannot be empty")
        if not self.collection:
            raise ValueError(f"Operation '{self.id}' must name a collection")
        if isinstance(self.dependencies, list):
            object.__setattr__(self, "dependencies", tuple(self.dependencies))
        if isinstance(self.filters, list):
            object.__setattr__(self, "filters", tuple(self.filters))

    @abstractmethod
    def accept(self, visitor: OperationVisitor[T], *args: Any) -> T:
        """Dispatch to the visitor method for this kind."""

    def summary(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "collection": self.collection,
            "description": self.description,
            "priority": self.priority,
            "dependencies": list(self.dependencies),
        }


@dataclass(frozen=True, kw_only=True)
class AddFieldOperation(MigrationOperation):
    """Set ``field`` to ``default_value`` on documents that lack it."""

    kind: ClassVar[OperationKind] = OperationKind.ADD_FIELD

    field: str
    default_value: Any = None

    def accept(self, visitor: OperationVisitor[T], *args: Any) -> T:
        return visitor.visit_add_field(self, *args)


@dataclass(frozen=True, kw_only=True)
class RemoveFieldOperation(MigrationOperation):
    """Delete ``field``; archive removed values to ``backup_location`` if set."""

    kind: ClassVar[OperationKind] = OperationKind.REMOVE_FIELD

    field: str
    backup_location: str | None = None

    def accept(self, visitor: OperationVisitor[T], *args: Any) -> T:
        return visitor.visit_remove_field(self, *args)


@dataclass(frozen=True, kw_only=True)
class RenameFieldOperation(MigrationOperation):
    """Move ``old_field`` to ``new_field``."""

    kind: ClassVar[OperationKind] = OperationKind.RENAME_FIELD

    old_field: str
    new_field: str
    preserve_old_field: bool = False

    def accept(self, visitor: OperationVisitor[T], *args: Any) -> T:
        return visitor.visit_rename_field(self, *args)


@dataclass(frozen=True, kw_only=True)
class ChangeFieldTypeOperation(MigrationOperation):
    """Convert ``field`` to ``to_type`` with ``converter`` or the default coercion."""

    kind: ClassVar[OperationKind] = OperationKind.CHANGE_FIELD_TYPE

    field: str
    to_type: FieldType
    from_type: FieldType | None = None
    converter: Converter | None = None

    def accept(self, visitor: OperationVisitor[T], *args: Any) -> T:
        return visitor.visit_change_field_type(self, *args)


@dataclass(frozen=True)
class DataTransformer:
    """An arbitrary document transformation.

    Attributes:
        name: Transformer name
        transform: Receives a copy of the document data; returns the new
            data, or None to leave the document unchanged
        description: Human-readable description
        validate: Optional check of the transformed data; a falsy result
            skips the document with a warning
    """

    name: str
    transform: DocumentTransform
    description: str = ""
    validate: DocumentValidator | None = None


@dataclass(frozen=True, kw_only=True)
class TransformDataOperation(MigrationOperation):
    """Apply ``transformer`` to every document."""

    kind: ClassVar[OperationKind] = OperationKind.TRANSFORM_DATA

    transformer: DataTransformer

    def accept(self, visitor: OperationVisitor[T], *args: Any) -> T:
        return visitor.visit_transform_data(self, *args)


@dataclass(frozen=True, kw_only=True)
class CustomOperation(MigrationOperation):
    """Run ``executor(documents, writer, context)`` for each page.

    The executor writes through the BatchWriter and may return the number
    of documents it updated.
    """

    kind: ClassVar[OperationKind] = OperationKind.CUSTOM

    executor: CustomExecutor

    def accept(self, visitor: OperationVisitor[T], *args: Any) -> T:
        return visitor.visit_custom(self, *args)


class OperationVisitor(ABC, Generic[T]):
    """One method per operation kind."""

    @abstractmethod
    def visit_add_field(self, op: AddFieldOperation, *args: Any) -> T: ...

    @abstractmethod
    def visit_remove_field(self, op: RemoveFieldOperation, *args: Any) -> T: ...

    @abstractmethod
    def visit_rename_field(self, op: RenameFieldOperation, *args: Any) -> T: ...

    @abstractmethod
    def visit_change_field_type(self, op: ChangeFieldTypeOperation, *args: Any) -> T: ...

    @abstractmethod
    def visit_transform_data(self, op: TransformDataOperation, *args: Any) -> T: ...

    @abstractmethod
    def visit_custom(self, op: CustomOperation, *args: Any) -> T: ...


_TRUE_STRINGS = {"true", "1", "yes", "y", "on"}
_FALSE_STRINGS = {"false", "0", "no", "n", "off", ""}


def convert_value(value: Any, to_type: FieldType) -> Any:
    """Default coercion used by change_field_type.

    Raises:
        OperationFailedError: If the value cannot be represented as to_type
    """
    if value is None:
        return None

    if to_type == FieldType.STRING:
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (dict, list)):
            return json.dumps(value, sort_keys=True)
        if isinstance(value, float) and value.is_integer():
            return str(int(value))
        return str(value)

    if to_type == FieldType.NUMBER:
        if isinstance(value, bool):
            return 1 if value else 0
        if isinstance(value, (int, float)):
            return value
        if isinstance(value, str):
            try:
                number = float(value.strip())
            except ValueError:
                raise OperationFailedError(f"Cannot convert {value!r} to number") from None
            return int(number) if number.is_integer() else number
        raise OperationFailedError(f"Cannot convert {type(value).__name__} to number")

    if to_type == FieldType.BOOLEAN:
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float)):
            return value != 0
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in _TRUE_STRINGS:
                return True
            if lowered in _FALSE_STRINGS:
                return False
            raise OperationFailedError(f"Cannot convert {value!r} to boolean")
        return bool(value)

    if to_type == FieldType.ARRAY:
        return value if isinstance(value, list) else [value]

    if to_type == FieldType.TIMESTAMP:
        if isinstance(value, bool):
            raise OperationFailedError("Cannot convert boolean to timestamp")
        if isinstance(value, (int, float)):
            # Values this large are epoch milliseconds.
            seconds = value / 1000 if abs(value) > 1e11 else value
            return datetime.fromtimestamp(seconds, tz=timezone.utc).isoformat()
        if isinstance(value, str):
            try:
                parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
            except ValueError:
                raise OperationFailedError(f"Cannot convert {value!r} to timestamp") from None
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed.isoformat()
        raise OperationFailedError(f"Cannot convert {type(value).__name__} to timestamp")

    if to_type == FieldType.MAP and isinstance(value, dict):
        return value

    raise OperationFailedError(f"No default conversion to {to_type.value}")
