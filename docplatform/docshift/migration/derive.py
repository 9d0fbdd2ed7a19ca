"""
Default operations derived from a schema diff.

When no operations are registered for a version, the engine falls back
to the compatibility diff between consecutive schemas:

    FIELD_ADDED with a default      -> add_field
    FIELD_TYPE_CHANGED              -> change_field_type (default coercion)
    FIELD_REMOVED                   -> remove_field, archived to _removed_field_archive

Additions run before conversions, conversions before removals. Removed
collections are reported by the dry run and never dropped automatically.
"""

from __future__ import annotations

from ..registry.compat import ChangeKind, check_compatibility
from ..registry.types import FieldDefinition, FieldType, SchemaDefinition
from .operations import (
    AddFieldOperation,
    ChangeFieldTypeOperation,
    MigrationOperation,
    RemoveFieldOperation,
)

REMOVED_FIELD_ARCHIVE = "_removed_field_archive"

ADD_PRIORITY = 10
CONVERT_PRIORITY = 20
REMOVE_PRIORITY = 30


def derive_operations(old: SchemaDefinition, new: SchemaDefinition) -> list[MigrationOperation]:
    """Operations moving documents from ``old`` to ``new``."""
    operations: list[MigrationOperation] = []
    prefix = str(new.version)

    for change in check_compatibility(old, new):
        if change.field is None:
            continue
        op_id = f"{prefix}:{change.kind.name.lower()}:{change.collection}.{change.field}"

        if change.kind == ChangeKind.FIELD_ADDED:
            definition: FieldDefinition = change.new_value
            if definition.default_value is None:
                continue
            operations.append(
                AddFieldOperation(
                    id=op_id,
                    collection=change.collection,
                    description=f"Add {change.field} (default {definition.default_value!r})",
                    priority=ADD_PRIORITY,
                    field=change.field,
                    default_value=definition.default_value,
                )
            )
        elif change.kind == ChangeKind.FIELD_TYPE_CHANGED:
            old_type: FieldType = change.old_value
            new_type: FieldType = change.new_value
            operations.append(
                ChangeFieldTypeOperation(
                    id=op_id,
                    collection=change.collection,
                    description=f"Convert {change.field} from {old_type.value} to {new_type.value}",
                    priority=CONVERT_PRIORITY,
                    field=change.field,
                    from_type=old_type,
                    to_type=new_type,
                )
            )
        elif change.kind == ChangeKind.FIELD_REMOVED:
            operations.append(
                RemoveFieldOperation(
                    id=op_id,
                    collection=change.collection,
                    description=f"Remove {change.field}",
                    priority=REMOVE_PRIORITY,
                    field=change.field,
                    backup_location=REMOVED_FIELD_ARCHIVE,
                )
            )

    return operations
