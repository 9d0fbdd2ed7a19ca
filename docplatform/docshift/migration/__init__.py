"""
Migration engine: operations, ordering, batching and execution.
"""

from .context import (
    LOGS_COLLECTION,
    MigrationContext,
    MigrationLogEntry,
    MigrationLogger,
    MigrationOptions,
    MigrationPhase,
    MigrationProgress,
    MigrationResult,
    MigrationStats,
    SampleChange,
)
from .derive import REMOVED_FIELD_ARCHIVE, derive_operations
from .engine import DocumentDispatcher, DocumentResult, MigrationEngine, new_migration_id
from .operations import (
    AddFieldOperation,
    ChangeFieldTypeOperation,
    CustomOperation,
    DataTransformer,
    MigrationOperation,
    OperationKind,
    OperationVisitor,
    RemoveFieldOperation,
    RenameFieldOperation,
    TransformDataOperation,
    convert_value,
)
from .ordering import order_operations
from .transformers import BUILTIN_TRANSFORMERS, migrate_address_format, normalize_power_units
from .writer import BatchWriter

__all__ = [
    "LOGS_COLLECTION",
    "REMOVED_FIELD_ARCHIVE",
    "BUILTIN_TRANSFORMERS",
    "AddFieldOperation",
    "BatchWriter",
    "ChangeFieldTypeOperation",
    "CustomOperation",
    "DataTransformer",
    "DocumentDispatcher",
    "DocumentResult",
    "MigrationContext",
    "MigrationEngine",
    "MigrationLogEntry",
    "MigrationLogger",
    "MigrationOperation",
    "MigrationOptions",
    "MigrationPhase",
    "MigrationProgress",
    "MigrationResult",
    "MigrationStats",
    "OperationKind",
    "OperationVisitor",
    "RemoveFieldOperation",
    "RenameFieldOperation",
    "TransformDataOperation",
    "convert_value",
    "derive_operations",
    "migrate_address_format",
    "new_migration_id",
    "normalize_power_units",
    "order_operations",
]
