"""
Structural validation of schema definitions.

Validation is pure: it reads a definition and returns a report without
touching any store, so it can back a "validate before create" workflow
as well as registration.

Errors block registration; warnings are advisory.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from ..errors import InvalidVersionError
from .types import (
    CollectionSchemaDefinition,
    FieldDefinition,
    FieldType,
    IndexDefinition,
    IndexKind,
    IndexOrder,
    SchemaDefinition,
)
from .versions import SchemaVersion, is_breaking_change

NAME_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9_]*$")
MIN_SCHEMA_NAME_LENGTH = 3
MIN_DESCRIPTION_LENGTH = 10


@dataclass
class ValidationReport:
    """Outcome of validating a schema definition."""

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def merge(self, other: ValidationReport) -> None:
        self.errors.extend(other.errors)
        self.warnings.extend(other.warnings)

    def to_dict(self) -> dict[str, Any]:
        return {"is_valid": self.is_valid, "errors": self.errors, "warnings": self.warnings}


def validate_schema_definition(
    schema: SchemaDefinition | dict[str, Any],
    previous_version: SchemaVersion | None = None,
) -> ValidationReport:
    """Validate a schema definition.

    Args:
        schema: Definition, or its dict form (malformed dicts are reported,
            not raised)
        previous_version: Version the definition follows; a major bump over
            it must be flagged breaking

    Returns:
        ValidationReport with errors and warnings
    """
    report = ValidationReport()

    if isinstance(schema, dict):
        try:
            schema = SchemaDefinition.from_dict(schema)
        except InvalidVersionError as e:
            report.errors.append(f"Invalid version format: {e.details.get('value')}")
            return report
        except (KeyError, ValueError, TypeError) as e:
            report.errors.append(f"Malformed schema definition: {e}")
            return report

    if not schema.id:
        report.errors.append("Schema id is required")
    if len(schema.name.strip()) < MIN_SCHEMA_NAME_LENGTH:
        report.errors.append(
            f"Schema name must be at least {MIN_SCHEMA_NAME_LENGTH} characters long"
        )
    if len(schema.description.strip()) < MIN_DESCRIPTION_LENGTH:
        report.warnings.append("Schema description should be more descriptive")
    if not schema.collections:
        report.errors.append("Schema must have at least one collection")

    seen: set[str] = set()
    for collection in schema.collections:
        if collection.name in seen:
            report.errors.append(f"Duplicate collection name: {collection.name}")
        seen.add(collection.name)
        report.merge(validate_collection(collection))

    report.merge(_validate_compatibility(schema))

    if previous_version is not None and is_breaking_change(previous_version, schema.version):
        if not schema.metadata.breaking:
            report.errors.append(
                f"Version {schema.version} is a major bump over {previous_version} "
                "and must be marked breaking"
            )

    return report


def validate_collection(collection: CollectionSchemaDefinition) -> ValidationReport:
    """Validate one collection's name, fields, indexes and rules."""
    report = ValidationReport()
    prefix = f"Collection '{collection.name}'"

    if not NAME_PATTERN.match(collection.name):
        report.errors.append(
            f"{prefix}: name must start with a letter and contain only letters, "
            "numbers and underscores"
        )

    names: set[str] = set()
    for field_def in collection.fields:
        if field_def.name in names:
            report.errors.append(f"{prefix}: duplicate field name '{field_def.name}'")
        names.add(field_def.name)
        report.merge(validate_field(field_def, prefix))

    by_name = {f.name: f for f in collection.fields}
    for index in collection.indexes:
        report.merge(validate_index(index, by_name, prefix))

    for rule in collection.validation_rules:
        if not rule.name:
            report.errors.append(f"{prefix}: validation rule name is required")
        if rule.field not in by_name:
            report.warnings.append(
                f"{prefix}: validation rule '{rule.name}' references unknown field "
                f"'{rule.field}'"
            )

    return report


def validate_field(field_def: FieldDefinition, prefix: str = "") -> ValidationReport:
    """Validate one field definition."""
    report = ValidationReport()
    label = f"{prefix}: field '{field_def.name}'" if prefix else f"Field '{field_def.name}'"

    if not NAME_PATTERN.match(field_def.name):
        report.errors.append(
            f"{label}: name must start with a letter and contain only letters, "
            "numbers and underscores"
        )

    rules = field_def.validation
    if rules is not None:
        if field_def.type == FieldType.STRING and rules.min_length is not None:
            if rules.min_length < 0:
                report.errors.append(f"{label}: minimum length cannot be negative")
        if rules.min is not None and rules.max is not None and rules.min > rules.max:
            report.errors.append(f"{label}: minimum value cannot be greater than maximum")
        if (
            rules.min_length is not None
            and rules.max_length is not None
            and rules.min_length > rules.max_length
        ):
            report.errors.append(f"{label}: minimum length cannot be greater than maximum")
        if rules.pattern is not None:
            try:
                re.compile(rules.pattern)
            except re.error:
                report.errors.append(f"{label}: invalid regex pattern '{rules.pattern}'")

    if field_def.type == FieldType.REFERENCE and not field_def.reference_collection:
        report.errors.append(f"{label}: reference fields must specify a target collection")

    for marker in (field_def.added_in_version, field_def.removed_in_version):
        if marker is not None and not SchemaVersion.is_valid(marker):
            report.errors.append(f"{label}: invalid version marker '{marker}'")

    if field_def.deprecated and not field_def.removed_in_version:
        report.warnings.append(f"{label}: deprecated fields should specify removed_in_version")

    return report


def validate_index(
    index: IndexDefinition,
    fields: dict[str, FieldDefinition],
    prefix: str = "",
) -> ValidationReport:
    """Validate one index against the collection's fields."""
    report = ValidationReport()
    label = f"{prefix}: index '{index.name}'" if prefix else f"Index '{index.name}'"

    if not NAME_PATTERN.match(index.name or ""):
        report.errors.append(f"{label}: invalid index name")
    if not index.fields:
        report.errors.append(f"{label}: index must specify at least one field")

    array_fields = 0
    for index_field in index.fields:
        definition = fields.get(index_field.field)
        if definition is None:
            report.errors.append(f"{label}: references non-existent field '{index_field.field}'")
            continue
        if definition.type == FieldType.ARRAY or index_field.order == IndexOrder.ARRAY_CONTAINS:
            array_fields += 1

    if array_fields > 1:
        report.errors.append(f"{label}: at most one array field may participate in an index")
    if len(index.fields) > 1 and index.kind != IndexKind.COMPOSITE:
        report.warnings.append(f"{label}: multi-field index should be marked composite")

    return report


def _validate_compatibility(schema: SchemaDefinition) -> ValidationReport:
    report = ValidationReport()
    bounds = schema.compatibility
    parsed: dict[str, SchemaVersion] = {}
    for label, value in (("minimum", bounds.minimum_version), ("maximum", bounds.maximum_version)):
        if value is None:
            continue
        if not SchemaVersion.is_valid(value):
            report.errors.append(f"Invalid {label} compatible version: '{value}'")
        else:
            parsed[label] = SchemaVersion.parse(value)
    if "minimum" in parsed and "maximum" in parsed and parsed["minimum"] > parsed["maximum"]:
        report.errors.append("Minimum compatible version cannot exceed maximum")
    if schema.metadata.change_type.value == "major" and not schema.metadata.breaking:
        report.warnings.append("Major change type without breaking flag")
    return report
