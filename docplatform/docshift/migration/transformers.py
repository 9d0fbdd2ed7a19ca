"""
Built-in data transformers.

Ready-made DataTransformer instances for recurring energy-platform
migrations. Each returns None when a document needs no change, so
re-running a transformer over migrated data is a no-op.
"""

from __future__ import annotations

from typing import Any

from .operations import DataTransformer

WATTS_PER_KILOWATT = 1000


def _normalize_power(data: dict[str, Any]) -> dict[str, Any] | None:
    if data.get("powerUnit") != "kW" or not isinstance(data.get("power"), (int, float)):
        return None
    return {**data, "power": data["power"] * WATTS_PER_KILOWATT, "powerUnit": "W"}


def _valid_power(data: dict[str, Any]) -> bool:
    power = data.get("power")
    return isinstance(power, (int, float)) and power >= 0 and data.get("powerUnit") == "W"


normalize_power_units = DataTransformer(
    name="normalize_power_units",
    description="Convert panel power ratings from kilowatts to watts",
    transform=_normalize_power,
    validate=_valid_power,
)


ADDRESS_FIELDS = ("street", "city", "state", "postalCode", "country")


def _migrate_address(data: dict[str, Any]) -> dict[str, Any] | None:
    flat = {k: data[k] for k in ADDRESS_FIELDS if k in data}
    if not flat:
        return None
    migrated = {k: v for k, v in data.items() if k not in ADDRESS_FIELDS}
    migrated["address"] = {**(data.get("address") or {}), **flat}
    return migrated


migrate_address_format = DataTransformer(
    name="migrate_address_format",
    description="Move flat street/city/state/postalCode/country fields into an address map",
    transform=_migrate_address,
    validate=lambda data: isinstance(data.get("address"), dict),
)


BUILTIN_TRANSFORMERS = {
    t.name: t for t in (normalize_power_units, migrate_address_format)
}
