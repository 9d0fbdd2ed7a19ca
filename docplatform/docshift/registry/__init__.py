"""
Version registry: schema types, validation, compatibility and the store-backed catalogue.
"""

from .catalog import load_catalog, load_schema_file
from .compat import ChangeKind, SchemaChange, check_compatibility
from .registry import MigrationPlan, VersionApplication, VersionRegistry
from .types import (
    ChangeType,
    CollectionSchemaDefinition,
    CompatibilityBounds,
    FieldDefinition,
    FieldType,
    FieldValidation,
    IndexDefinition,
    IndexField,
    IndexKind,
    IndexOrder,
    RuleCondition,
    SchemaDefinition,
    SchemaMetadata,
    SchemaStatus,
    ValidationRule,
)
from .validation import ValidationReport, validate_schema_definition
from .versions import SchemaVersion, VersionBump, is_breaking_change, version_range

__all__ = [
    "ChangeKind",
    "ChangeType",
    "CollectionSchemaDefinition",
    "CompatibilityBounds",
    "FieldDefinition",
    "FieldType",
    "FieldValidation",
    "IndexDefinition",
    "IndexField",
    "IndexKind",
    "IndexOrder",
    "MigrationPlan",
    "RuleCondition",
    "SchemaChange",
    "SchemaDefinition",
    "SchemaMetadata",
    "SchemaStatus",
    "SchemaVersion",
    "ValidationReport",
    "ValidationRule",
    "VersionApplication",
    "VersionBump",
    "VersionRegistry",
    "check_compatibility",
    "is_breaking_change",
    "load_catalog",
    "load_schema_file",
    "validate_schema_definition",
    "version_range",
]
