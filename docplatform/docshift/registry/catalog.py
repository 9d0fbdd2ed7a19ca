"""
Schema catalogue loader.

Reads schema definitions authored as YAML or JSON files. A file holds
either one definition or a list under a top-level ``schemas`` key.

Example file (YAML):
    id: energy_v1_1
    version: 1.1.0
    name: Energy platform
    description: Adds panel degradation tracking
    metadata:
      change_type: minor
    collections:
      - name: solarPanels
        fields:
          - {name: serial, type: string, required: true}
          - {name: degradationRate, type: number, default_value: 0.5}
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import yaml

from .types import SchemaDefinition

logger = logging.getLogger(__name__)

SUPPORTED_SUFFIXES = (".yaml", ".yml", ".json")


def parse_schema_document(data: Any) -> list[SchemaDefinition]:
    """Turn a parsed YAML/JSON document into definitions.

    Raises:
        ValueError: If the document has neither a schema nor a schemas list
    """
    if isinstance(data, dict) and "schemas" in data:
        entries = data["schemas"]
    elif isinstance(data, dict):
        entries = [data]
    elif isinstance(data, list):
        entries = data
    else:
        raise ValueError("Schema document must be a mapping or a list of mappings")

    schemas = []
    for entry in entries:
        if not isinstance(entry, dict):
            raise ValueError(f"Schema entry must be a mapping, got {type(entry).__name__}")
        # YAML reads bare 1.0 as a float; versions are always strings.
        if "version" in entry and not isinstance(entry["version"], str):
            entry = {**entry, "version": str(entry["version"])}
        schemas.append(SchemaDefinition.from_dict(entry))
    return schemas


def load_schema_file(path: str | Path) -> list[SchemaDefinition]:
    """Load the definitions in one YAML or JSON file."""
    path = Path(path)
    text = path.read_text(encoding="utf-8")
    if path.suffix == ".json":
        data = json.loads(text)
    else:
        data = yaml.safe_load(text)
    schemas = parse_schema_document(data)
    logger.debug("Loaded schema file", extra={"path": str(path), "schemas": len(schemas)})
    return schemas


def load_catalog(directory: str | Path) -> list[SchemaDefinition]:
    """Load every schema file in a directory, ascending by version."""
    directory = Path(directory)
    schemas: list[SchemaDefinition] = []
    for path in sorted(directory.iterdir()):
        if path.suffix in SUPPORTED_SUFFIXES and path.is_file():
            schemas.extend(load_schema_file(path))
    logger.info(
        "Loaded schema catalogue",
        extra={"directory": str(directory), "schemas": len(schemas)},
    )
    return sorted(schemas, key=lambda s: s.version)


def dump_schema(schema: SchemaDefinition) -> str:
    """Serialize a definition as YAML."""
    return yaml.safe_dump(schema.to_dict(), sort_keys=False)
