"""
Schema compatibility checking for DocShift.

Compares two schema definitions collection by collection and field by
field, classifying every difference as breaking or non-breaking.

The result feeds two consumers:
    - The dry-run engine reports breaking changes as compatibility and
      data-loss issues
    - The migration engine derives default operations (add, remove,
      change type) when no explicit operations are registered for a version

Invariants:
    - check_compatibility() is pure and deterministic (sorted output)
    - A breaking change means existing documents or readers may stop working

How to change safely:
    - Add new ChangeKind members and classify them in is_breaking
    - Keep path formats stable; dry-run reports quote them

Example:
    >>> changes = check_compatibility(schema_v1, schema_v2)
    >>> breaking = [c for c in changes if c.is_breaking]
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any

from .types import CollectionSchemaDefinition, FieldDefinition, SchemaDefinition

logger = logging.getLogger(__name__)


class ChangeKind(Enum):
    """Types of schema changes."""

    # Non-breaking changes
    COLLECTION_ADDED = auto()
    FIELD_ADDED = auto()
    FIELD_DEPRECATED = auto()
    FIELD_REQUIREMENT_RELAXED = auto()
    DESCRIPTION_CHANGED = auto()
    ENUM_VALUE_ADDED = auto()
    INDEX_ADDED = auto()
    INDEX_REMOVED = auto()
    RULE_ADDED = auto()
    RULE_REMOVED = auto()

    # Breaking changes
    COLLECTION_REMOVED = auto()
    FIELD_REMOVED = auto()
    FIELD_TYPE_CHANGED = auto()
    REQUIRED_ADDED = auto()
    REQUIRED_FIELD_WITHOUT_DEFAULT = auto()
    ENUM_VALUE_REMOVED = auto()
    REFERENCE_TARGET_CHANGED = auto()

    @property
    def is_breaking(self) -> bool:
        """Whether this change kind is a breaking change."""
        breaking_kinds = {
            ChangeKind.COLLECTION_REMOVED,
            ChangeKind.FIELD_REMOVED,
            ChangeKind.FIELD_TYPE_CHANGED,
            ChangeKind.REQUIRED_ADDED,
            ChangeKind.REQUIRED_FIELD_WITHOUT_DEFAULT,
            ChangeKind.ENUM_VALUE_REMOVED,
            ChangeKind.REFERENCE_TARGET_CHANGED,
        }
        return self in breaking_kinds


@dataclass
class SchemaChange:
    """A single difference between two schema versions.

    Attributes:
        kind: The type of change
        collection: Collection the change belongs to
        field: Field name, for field-level changes
        old_value: Previous value (if applicable)
        new_value: New value (if applicable)
        message: Human-readable description of the change
    """

    kind: ChangeKind
    collection: str
    field: str | None = None
    old_value: Any | None = None
    new_value: Any | None = None
    message: str = ""

    @property
    def is_breaking(self) -> bool:
        """Whether this is a breaking change."""
        return self.kind.is_breaking

    @property
    def path(self) -> str:
        if self.field:
            return f"{self.collection}.{self.field}"
        return self.collection

    def __str__(self) -> str:
        status = "BREAKING" if self.is_breaking else "OK"
        return f"[{status}] {self.kind.name}: {self.path} - {self.message}"


def check_compatibility(old: SchemaDefinition, new: SchemaDefinition) -> list[SchemaChange]:
    """Compare two schema definitions.

    Args:
        old: The baseline (currently applied) schema
        new: The schema to be applied

    Returns:
        List of SchemaChange objects describing all differences
    """
    changes: list[SchemaChange] = []
    old_collections = {c.name: c for c in old.collections}
    new_collections = {c.name: c for c in new.collections}

    for name in sorted(old_collections):
        if name not in new_collections:
            changes.append(
                SchemaChange(
                    kind=ChangeKind.COLLECTION_REMOVED,
                    collection=name,
                    message=f"Collection '{name}' was removed",
                )
            )

    for name in sorted(new_collections):
        if name not in old_collections:
            changes.append(
                SchemaChange(
                    kind=ChangeKind.COLLECTION_ADDED,
                    collection=name,
                    message=f"Collection '{name}' added",
                )
            )
        else:
            changes.extend(_check_collection(old_collections[name], new_collections[name]))

    breaking = sum(1 for c in changes if c.is_breaking)
    logger.debug(
        "Compared schemas",
        extra={
            "old_version": str(old.version),
            "new_version": str(new.version),
            "changes": len(changes),
            "breaking": breaking,
        },
    )
    return changes


def _check_collection(
    old: CollectionSchemaDefinition,
    new: CollectionSchemaDefinition,
) -> list[SchemaChange]:
    changes: list[SchemaChange] = []

    if old.description != new.description:
        changes.append(
            SchemaChange(
                kind=ChangeKind.DESCRIPTION_CHANGED,
                collection=old.name,
                old_value=old.description,
                new_value=new.description,
                message="Description changed",
            )
        )

    old_fields = {f.name: f for f in old.fields}
    new_fields = {f.name: f for f in new.fields}

    for name in sorted(old_fields):
        if name not in new_fields:
            changes.append(
                SchemaChange(
                    kind=ChangeKind.FIELD_REMOVED,
                    collection=old.name,
                    field=name,
                    old_value=old_fields[name],
                    message=f"Field '{name}' was removed",
                )
            )

    for name in sorted(new_fields):
        new_field = new_fields[name]
        if name not in old_fields:
            kind = ChangeKind.FIELD_ADDED
            message = f"Field '{name}' added"
            if new_field.required and new_field.default_value is None:
                kind = ChangeKind.REQUIRED_FIELD_WITHOUT_DEFAULT
                message = f"Required field '{name}' added without a default value"
            changes.append(
                SchemaChange(
                    kind=kind,
                    collection=old.name,
                    field=name,
                    new_value=new_field,
                    message=message,
                )
            )
        else:
            changes.extend(_check_field(old.name, old_fields[name], new_field))

    old_indexes = {i.name for i in old.indexes}
    new_indexes = {i.name for i in new.indexes}
    for name in sorted(new_indexes - old_indexes):
        changes.append(
            SchemaChange(
                kind=ChangeKind.INDEX_ADDED,
                collection=old.name,
                new_value=name,
                message=f"Index '{name}' added",
            )
        )
    for name in sorted(old_indexes - new_indexes):
        changes.append(
            SchemaChange(
                kind=ChangeKind.INDEX_REMOVED,
                collection=old.name,
                old_value=name,
                message=f"Index '{name}' removed",
            )
        )

    old_rules = {r.name for r in old.validation_rules}
    new_rules = {r.name for r in new.validation_rules}
    for name in sorted(new_rules - old_rules):
        changes.append(
            SchemaChange(
                kind=ChangeKind.RULE_ADDED,
                collection=old.name,
                new_value=name,
                message=f"Validation rule '{name}' added",
            )
        )
    for name in sorted(old_rules - new_rules):
        changes.append(
            SchemaChange(
                kind=ChangeKind.RULE_REMOVED,
                collection=old.name,
                old_value=name,
                message=f"Validation rule '{name}' removed",
            )
        )

    return changes


def _check_field(
    collection: str,
    old: FieldDefinition,
    new: FieldDefinition,
) -> list[SchemaChange]:
    changes: list[SchemaChange] = []

    def change(kind: ChangeKind, message: str, old_value: Any = None, new_value: Any = None):
        changes.append(
            SchemaChange(
                kind=kind,
                collection=collection,
                field=old.name,
                old_value=old_value,
                new_value=new_value,
                message=message,
            )
        )

    if old.type != new.type:
        change(
            ChangeKind.FIELD_TYPE_CHANGED,
            f"Field type changed from {old.type.value} to {new.type.value}",
            old.type,
            new.type,
        )

    if not old.required and new.required:
        change(ChangeKind.REQUIRED_ADDED, f"Field '{old.name}' became required")
    elif old.required and not new.required:
        change(ChangeKind.FIELD_REQUIREMENT_RELAXED, f"Field '{old.name}' became optional")

    if not old.deprecated and new.deprecated:
        change(ChangeKind.FIELD_DEPRECATED, f"Field '{old.name}' deprecated")

    if old.reference_collection != new.reference_collection and old.reference_collection:
        change(
            ChangeKind.REFERENCE_TARGET_CHANGED,
            f"Reference target changed from '{old.reference_collection}' "
            f"to '{new.reference_collection}'",
            old.reference_collection,
            new.reference_collection,
        )

    old_enum = list(old.validation.enum) if old.validation and old.validation.enum else []
    new_enum = list(new.validation.enum) if new.validation and new.validation.enum else []
    if old_enum and new_enum:
        for value in old_enum:
            if value not in new_enum:
                change(
                    ChangeKind.ENUM_VALUE_REMOVED,
                    f"Enum value {value!r} removed",
                    old_value=value,
                )
        for value in new_enum:
            if value not in old_enum:
                change(
                    ChangeKind.ENUM_VALUE_ADDED,
                    f"Enum value {value!r} added",
                    new_value=value,
                )

    return changes
