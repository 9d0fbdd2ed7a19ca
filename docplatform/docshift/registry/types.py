"""
Schema definition types for DocShift.

This module defines the shape of a versioned document schema:
- FieldDefinition: One field of a collection
- IndexDefinition: A single-field or composite index
- ValidationRule: A declarative business rule evaluated against documents
- CollectionSchemaDefinition: One collection's fields, indexes and rules
- SchemaDefinition: A versioned set of collections with lifecycle metadata

Invariants:
    - Definitions are immutable once registered; new versions supersede them
    - to_dict()/from_dict() round-trip exactly (persisted registry format)
    - fingerprint() depends only on the canonical dict form

How to change safely:
    - Add new attributes with defaults and omit them from to_dict() when unset
    - Never rename persisted keys
    - Structural validation lives in registry.validation, not in __post_init__

Example:
    >>> panels = CollectionSchemaDefinition(
    ...     name="solarPanels",
    ...     fields=(
    ...         FieldDefinition("serial", FieldType.STRING, required=True),
    ...         FieldDefinition("degradationRate", FieldType.NUMBER, default_value=0.5),
    ...     ),
    ... )
    >>> schema = SchemaDefinition(id="energy_v1_1", version="1.1.0",
    ...                           name="Energy", collections=(panels,))
"""

from __future__ import annotations

import hashlib
import json
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .versions import SchemaVersion


class FieldType(Enum):
    """Primitive field types of a document."""

    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ARRAY = "array"
    MAP = "map"
    TIMESTAMP = "timestamp"
    GEOPOINT = "geopoint"
    REFERENCE = "reference"
    BYTES = "bytes"
    NULL = "null"

    @classmethod
    def from_str(cls, value: str) -> FieldType:
        """Convert string representation to FieldType.

        Raises:
            ValueError: If value is not a valid field type
        """
        for kind in cls:
            if kind.value == value:
                return kind
        valid = [k.value for k in cls]
        raise ValueError(f"Invalid field type '{value}'. Valid types: {valid}")


class SchemaStatus(Enum):
    """Lifecycle status of a registered schema."""

    DRAFT = "draft"
    ACTIVE = "active"
    DEPRECATED = "deprecated"
    ARCHIVED = "archived"


class ChangeType(Enum):
    """Size of the change a schema introduces."""

    MAJOR = "major"
    MINOR = "minor"
    PATCH = "patch"


class IndexKind(Enum):
    """Index shape."""

    SINGLE = "single"
    COMPOSITE = "composite"


class IndexOrder(Enum):
    """Per-field index ordering."""

    ASCENDING = "asc"
    DESCENDING = "desc"
    ARRAY_CONTAINS = "array-contains"


@dataclass(frozen=True)
class FieldValidation:
    """Optional value constraints of a field.

    Attributes:
        min: Minimum numeric value
        max: Maximum numeric value
        min_length: Minimum string/array length
        max_length: Maximum string/array length
        pattern: Regular expression a string must match
        enum: Allowed values
    """

    min: float | None = None
    max: float | None = None
    min_length: int | None = None
    max_length: int | None = None
    pattern: str | None = None
    enum: tuple[Any, ...] | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for key in ("min", "max", "min_length", "max_length", "pattern"):
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.enum is not None:
            result["enum"] = list(self.enum)
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FieldValidation:
        return cls(
            min=data.get("min"),
            max=data.get("max"),
            min_length=data.get("min_length"),
            max_length=data.get("max_length"),
            pattern=data.get("pattern"),
            enum=tuple(data["enum"]) if data.get("enum") is not None else None,
        )


@dataclass(frozen=True)
class FieldDefinition:
    """Definition of a single field within a collection.

    Attributes:
        name: Field name (unique within its collection)
        type: Primitive type tag
        required: Whether every document must carry the field
        description: Human-readable description
        default_value: Value assigned when the field is introduced
        validation: Optional value constraints
        reference_collection: Target collection for REFERENCE fields
        item_type: Element type for ARRAY fields
        added_in_version: Version that introduced the field
        removed_in_version: Version that removes a deprecated field
        deprecated: Whether the field is deprecated
    """

    name: str
    type: FieldType
    required: bool = False
    description: str = ""
    default_value: Any = None
    validation: FieldValidation | None = None
    reference_collection: str | None = None
    item_type: FieldType | None = None
    added_in_version: str | None = None
    removed_in_version: str | None = None
    deprecated: bool = False

    def validate_value(self, value: Any) -> tuple[bool, str | None]:
        """Validate a document value against this field.

        Returns:
            Tuple of (is_valid, error_message)
        """
        if value is None:
            if self.required:
                return False, f"Field '{self.name}' is required"
            return True, None

        validators = {
            FieldType.STRING: lambda v: isinstance(v, str),
            FieldType.NUMBER: lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
            FieldType.BOOLEAN: lambda v: isinstance(v, bool),
            FieldType.ARRAY: lambda v: isinstance(v, list),
            FieldType.MAP: lambda v: isinstance(v, dict),
            FieldType.TIMESTAMP: lambda v: isinstance(v, (int, float, str))
            and not isinstance(v, bool),
            FieldType.GEOPOINT: lambda v: isinstance(v, dict)
            and "latitude" in v
            and "longitude" in v,
            FieldType.REFERENCE: lambda v: isinstance(v, str),
            FieldType.BYTES: lambda v: isinstance(v, (str, bytes)),
            FieldType.NULL: lambda _: False,
        }
        if not validators[self.type](value):
            return False, (
                f"Field '{self.name}' has invalid type for {self.type.value}, "
                f"got {type(value).__name__}"
            )

        rules = self.validation
        if rules is None:
            return True, None
        if rules.enum is not None and value not in rules.enum:
            return False, f"Field '{self.name}' must be one of {list(rules.enum)}, got {value!r}"
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            if rules.min is not None and value < rules.min:
                return False, f"Field '{self.name}' must be >= {rules.min}"
            if rules.max is not None and value > rules.max:
                return False, f"Field '{self.name}' must be <= {rules.max}"
        if isinstance(value, (str, list)):
            if rules.min_length is not None and len(value) < rules.min_length:
                return False, f"Field '{self.name}' must have length >= {rules.min_length}"
            if rules.max_length is not None and len(value) > rules.max_length:
                return False, f"Field '{self.name}' must have length <= {rules.max_length}"
        if isinstance(value, str) and rules.pattern:
            try:
                if not re.search(rules.pattern, value):
                    return False, f"Field '{self.name}' does not match pattern {rules.pattern}"
            except re.error:
                return False, f"Field '{self.name}' has an invalid pattern"
        return True, None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation for serialization."""
        result: dict[str, Any] = {"name": self.name, "type": self.type.value}
        if self.required:
            result["required"] = True
        if self.description:
            result["description"] = self.description
        if self.default_value is not None:
            result["default_value"] = self.default_value
        if self.validation is not None:
            result["validation"] = self.validation.to_dict()
        if self.reference_collection:
            result["reference_collection"] = self.reference_collection
        if self.item_type is not None:
            result["item_type"] = self.item_type.value
        if self.added_in_version:
            result["added_in_version"] = self.added_in_version
        if self.removed_in_version:
            result["removed_in_version"] = self.removed_in_version
        if self.deprecated:
            result["deprecated"] = True
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FieldDefinition:
        """Create from dictionary representation."""
        return cls(
            name=data["name"],
            type=FieldType.from_str(data["type"]),
            required=data.get("required", False),
            description=data.get("description", ""),
            default_value=data.get("default_value"),
            validation=FieldValidation.from_dict(data["validation"])
            if data.get("validation")
            else None,
            reference_collection=data.get("reference_collection"),
            item_type=FieldType.from_str(data["item_type"]) if data.get("item_type") else None,
            added_in_version=data.get("added_in_version"),
            removed_in_version=data.get("removed_in_version"),
            deprecated=data.get("deprecated", False),
        )


@dataclass(frozen=True)
class IndexField:
    """One field of an index."""

    field: str
    order: IndexOrder = IndexOrder.ASCENDING

    def to_dict(self) -> dict[str, Any]:
        return {"field": self.field, "order": self.order.value}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IndexField:
        return cls(field=data["field"], order=IndexOrder(data.get("order", "asc")))


@dataclass(frozen=True)
class IndexDefinition:
    """A single-field or composite index."""

    name: str
    fields: tuple[IndexField, ...]
    kind: IndexKind = IndexKind.SINGLE

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "fields": [f.to_dict() for f in self.fields],
            "kind": self.kind.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IndexDefinition:
        return cls(
            name=data["name"],
            fields=tuple(IndexField.from_dict(f) for f in data.get("fields", [])),
            kind=IndexKind(data.get("kind", "single")),
        )


class RuleCondition(Enum):
    """Conditions a ValidationRule can assert about a field."""

    REQUIRED = "required"
    NOT_EMPTY = "not_empty"
    MIN = "min"
    MAX = "max"
    PATTERN = "pattern"
    ONE_OF = "one_of"


@dataclass(frozen=True)
class ValidationRule:
    """Declarative business rule checked against stored documents.

    Attributes:
        name: Rule identifier
        field: Field the rule applies to
        condition: What must hold
        value: Operand for MIN/MAX/PATTERN/ONE_OF
        message: Message reported when the rule fails
        severity: Issue severity when violated (low, medium, high, critical)
    """

    name: str
    field: str
    condition: RuleCondition
    value: Any = None
    message: str = ""
    severity: str = "medium"

    def check(self, data: dict[str, Any]) -> bool:
        """Whether a document's data satisfies the rule."""
        present = self.field in data and data[self.field] is not None
        actual = data.get(self.field)
        if self.condition == RuleCondition.REQUIRED:
            return present
        if not present:
            return self.condition != RuleCondition.NOT_EMPTY
        try:
            if self.condition == RuleCondition.NOT_EMPTY:
                return actual not in ("", [], {})
            if self.condition == RuleCondition.MIN:
                return actual >= self.value
            if self.condition == RuleCondition.MAX:
                return actual <= self.value
            if self.condition == RuleCondition.PATTERN:
                return isinstance(actual, str) and re.search(self.value, actual) is not None
            if self.condition == RuleCondition.ONE_OF:
                return actual in self.value
        except (TypeError, re.error):
            return False
        return True

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "name": self.name,
            "field": self.field,
            "condition": self.condition.value,
            "severity": self.severity,
        }
        if self.value is not None:
            result["value"] = list(self.value) if isinstance(self.value, tuple) else self.value
        if self.message:
            result["message"] = self.message
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ValidationRule:
        value = data.get("value")
        return cls(
            name=data["name"],
            field=data["field"],
            condition=RuleCondition(data["condition"]),
            value=tuple(value) if isinstance(value, list) else value,
            message=data.get("message", ""),
            severity=data.get("severity", "medium"),
        )


@dataclass(frozen=True)
class CollectionSchemaDefinition:
    """Schema of one collection."""

    name: str
    fields: tuple[FieldDefinition, ...] = ()
    indexes: tuple[IndexDefinition, ...] = ()
    validation_rules: tuple[ValidationRule, ...] = ()
    description: str = ""

    def get_field(self, name: str) -> FieldDefinition | None:
        for f in self.fields:
            if f.name == name:
                return f
        return None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "name": self.name,
            "fields": [f.to_dict() for f in self.fields],
            "indexes": [i.to_dict() for i in self.indexes],
        }
        if self.validation_rules:
            result["validation_rules"] = [r.to_dict() for r in self.validation_rules]
        if self.description:
            result["description"] = self.description
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CollectionSchemaDefinition:
        return cls(
            name=data["name"],
            fields=tuple(FieldDefinition.from_dict(f) for f in data.get("fields", [])),
            indexes=tuple(IndexDefinition.from_dict(i) for i in data.get("indexes", [])),
            validation_rules=tuple(
                ValidationRule.from_dict(r) for r in data.get("validation_rules", [])
            ),
            description=data.get("description", ""),
        )


@dataclass(frozen=True)
class CompatibilityBounds:
    """Which running versions a schema can be applied on top of."""

    backwards: bool = True
    forwards: bool = False
    minimum_version: str | None = None
    maximum_version: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "backwards": self.backwards,
            "forwards": self.forwards,
            "minimum_version": self.minimum_version,
            "maximum_version": self.maximum_version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CompatibilityBounds:
        return cls(
            backwards=data.get("backwards", True),
            forwards=data.get("forwards", False),
            minimum_version=data.get("minimum_version"),
            maximum_version=data.get("maximum_version"),
        )


@dataclass(frozen=True)
class SchemaMetadata:
    """Migration-relevant facts about a schema version."""

    change_type: ChangeType = ChangeType.MINOR
    breaking: bool = False
    rollback_supported: bool = True
    migration_required: bool = True
    estimated_migration_minutes: float = 5.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "change_type": self.change_type.value,
            "breaking": self.breaking,
            "rollback_supported": self.rollback_supported,
            "migration_required": self.migration_required,
            "estimated_migration_minutes": self.estimated_migration_minutes,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SchemaMetadata:
        return cls(
            change_type=ChangeType(data.get("change_type", "minor")),
            breaking=data.get("breaking", False),
            rollback_supported=data.get("rollback_supported", True),
            migration_required=data.get("migration_required", True),
            estimated_migration_minutes=data.get("estimated_migration_minutes", 5.0),
        )


@dataclass(frozen=True)
class SchemaDefinition:
    """A versioned schema.

    Attributes:
        id: Stable identifier of this definition
        version: Schema version (a string is parsed on construction)
        name: Human-readable name
        collections: Collection schemas
        status: Lifecycle status
        description: Human-readable description
        created_at: Creation time (Unix seconds)
        created_by: Author
        environment: Environment the definition was authored for
        compatibility: Version bounds it can be applied on top of
        metadata: Change classification and migration estimate
    """

    id: str
    version: SchemaVersion
    name: str
    collections: tuple[CollectionSchemaDefinition, ...] = ()
    status: SchemaStatus = SchemaStatus.DRAFT
    description: str = ""
    created_at: float = field(default_factory=time.time)
    created_by: str = ""
    environment: str = "development"
    compatibility: CompatibilityBounds = field(default_factory=CompatibilityBounds)
    metadata: SchemaMetadata = field(default_factory=SchemaMetadata)

    def __post_init__(self) -> None:
        if isinstance(self.version, str):
            object.__setattr__(self, "version", SchemaVersion.parse(self.version))
        if isinstance(self.status, str):
            object.__setattr__(self, "status", SchemaStatus(self.status))
        if isinstance(self.collections, list):
            object.__setattr__(self, "collections", tuple(self.collections))

    def get_collection(self, name: str) -> CollectionSchemaDefinition | None:
        for collection in self.collections:
            if collection.name == name:
                return collection
        return None

    @property
    def collection_names(self) -> list[str]:
        return [c.name for c in self.collections]

    def with_status(self, status: SchemaStatus) -> SchemaDefinition:
        """Copy of this definition with a different lifecycle status."""
        return SchemaDefinition.from_dict({**self.to_dict(), "status": status.value})

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation for persistence."""
        return {
            "id": self.id,
            "version": str(self.version),
            "name": self.name,
            "description": self.description,
            "collections": [c.to_dict() for c in self.collections],
            "status": self.status.value,
            "created_at": self.created_at,
            "created_by": self.created_by,
            "environment": self.environment,
            "compatibility": self.compatibility.to_dict(),
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SchemaDefinition:
        """Create from dictionary representation."""
        return cls(
            id=data["id"],
            version=SchemaVersion.parse(data["version"]),
            name=data.get("name", ""),
            description=data.get("description", ""),
            collections=tuple(
                CollectionSchemaDefinition.from_dict(c) for c in data.get("collections", [])
            ),
            status=SchemaStatus(data.get("status", "draft")),
            created_at=data.get("created_at", time.time()),
            created_by=data.get("created_by", ""),
            environment=data.get("environment", "development"),
            compatibility=CompatibilityBounds.from_dict(data.get("compatibility", {})),
            metadata=SchemaMetadata.from_dict(data.get("metadata", {})),
        )

    def fingerprint(self) -> str:
        """SHA-256 over the canonical shape (collections and version only)."""
        shape = {"version": str(self.version), "collections": self.to_dict()["collections"]}
        canonical = json.dumps(shape, sort_keys=True, separators=(",", ":"), default=str)
        return f"sha256:{hashlib.sha256(canonical.encode()).hexdigest()}"
