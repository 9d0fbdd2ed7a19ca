"""
Version registry for DocShift.

The registry is the authoritative record of:
- Every registered schema definition (the catalogue)
- The current-version pointer (newest registered version)
- Version-application history (which version was applied, when, by whom)

All state lives in the injected DocumentStore, so independent registry
instances over different stores never share state.

Storage layout:
    _schema_registry/current_registry   pointer {current_version, current_schema_id, revision}
    _schema_versions/<schema_id>        SchemaDefinition.to_dict() + fingerprint
    _schema_history/<application_id>    VersionApplication.to_dict()

Invariants:
    - The pointer only advances: registering an older version never regresses it
    - The advance is a compare-and-set on the pointer revision inside the same
      write group that stores the definition
    - Registered definitions are never edited except for lifecycle status
    - Validation never touches the store

How to change safely:
    - Keep persisted keys stable; add new ones with defaults
    - Planning rules must stay in plan_migration_path so every caller agrees
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from ..errors import ConfigurationError, PreconditionFailedError, SchemaValidationError
from ..store.base import DocumentStore, FieldFilter
from .types import SchemaDefinition, SchemaStatus
from .validation import ValidationReport, validate_schema_definition
from .versions import SchemaVersion, is_breaking_change

logger = logging.getLogger(__name__)

REGISTRY_COLLECTION = "_schema_registry"
VERSIONS_COLLECTION = "_schema_versions"
HISTORY_COLLECTION = "_schema_history"
POINTER_DOC_ID = "current_registry"


@dataclass
class MigrationPlan:
    """A resolved path between two versions.

    Attributes:
        from_version: Source version
        to_version: Target version
        path: Schemas to apply, ascending by version
        is_valid: False when any error-level problem was found
        warnings: Non-blocking findings
        errors: Blocking findings
        estimated_minutes: Sum of per-schema migration estimates
        breaking_changes: Whether any schema on the path is breaking
    """

    from_version: SchemaVersion
    to_version: SchemaVersion
    path: list[SchemaDefinition] = field(default_factory=list)
    is_valid: bool = True
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    estimated_minutes: float = 0.0
    breaking_changes: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "from_version": str(self.from_version),
            "to_version": str(self.to_version),
            "path": [{"id": s.id, "version": str(s.version)} for s in self.path],
            "is_valid": self.is_valid,
            "warnings": self.warnings,
            "errors": self.errors,
            "estimated_minutes": self.estimated_minutes,
            "breaking_changes": self.breaking_changes,
        }


@dataclass
class VersionApplication:
    """One entry of version-application history."""

    id: str
    version: str
    schema_id: str | None
    applied_at: float
    applied_by: str
    environment: str
    migration_id: str | None = None
    backup_id: str | None = None
    stats: dict[str, Any] = field(default_factory=dict)
    rollback_info: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "version": self.version,
            "schema_id": self.schema_id,
            "applied_at": self.applied_at,
            "applied_by": self.applied_by,
            "environment": self.environment,
            "migration_id": self.migration_id,
            "backup_id": self.backup_id,
            "stats": self.stats,
            "rollback_info": self.rollback_info,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VersionApplication:
        return cls(
            id=data["id"],
            version=data["version"],
            schema_id=data.get("schema_id"),
            applied_at=data["applied_at"],
            applied_by=data.get("applied_by", ""),
            environment=data.get("environment", ""),
            migration_id=data.get("migration_id"),
            backup_id=data.get("backup_id"),
            stats=data.get("stats") or {},
            rollback_info=data.get("rollback_info"),
        )


class VersionRegistry:
    """Store-backed catalogue of schema versions.

    Attributes:
        store: Document store holding registry state
        cas_attempts: Retries of the pointer compare-and-set under contention

    Example:
        >>> registry = VersionRegistry(store)
        >>> await registry.register_schema(schema_v1)
        >>> plan = await registry.plan_migration_path("1.0.0", "2.0.0")
    """

    def __init__(self, store: DocumentStore, cas_attempts: int = 5) -> None:
        self.store = store
        self.cas_attempts = cas_attempts

    # ---------------------------------------------------------------------
    # Pointer
    # ---------------------------------------------------------------------

    async def _read_pointer(self) -> dict[str, Any] | None:
        doc = await self.store.get(REGISTRY_COLLECTION, POINTER_DOC_ID)
        return doc.data if doc else None

    async def get_current_version(self) -> SchemaVersion | None:
        """Newest registered version, or None for an empty registry."""
        pointer = await self._read_pointer()
        if not pointer or not pointer.get("current_version"):
            return None
        return SchemaVersion.parse(pointer["current_version"])

    async def get_current_schema(self) -> SchemaDefinition | None:
        pointer = await self._read_pointer()
        if not pointer or not pointer.get("current_schema_id"):
            return None
        return await self.get_schema(pointer["current_schema_id"])

    # ---------------------------------------------------------------------
    # Catalogue
    # ---------------------------------------------------------------------

    async def validate_schema(self, schema: SchemaDefinition | dict[str, Any]) -> ValidationReport:
        """Validate without registering (reads the catalogue, never writes)."""
        previous = None
        if isinstance(schema, SchemaDefinition):
            previous = await self._previous_version(schema.version)
        return validate_schema_definition(schema, previous)

    async def _previous_version(self, version: SchemaVersion) -> SchemaVersion | None:
        earlier = [s.version for s in await self.list_schemas() if s.version < version]
        return max(earlier) if earlier else None

    async def register_schema(self, schema: SchemaDefinition) -> ValidationReport:
        """Validate and register a schema definition.

        Returns:
            The validation report (warnings only; errors raise)

        Raises:
            SchemaValidationError: If structural validation fails
            ConfigurationError: If the id or version is already registered
        """
        report = await self.validate_schema(schema)
        if not report.is_valid:
            logger.warning(
                "Schema rejected",
                extra={"schema_id": schema.id, "version": str(schema.version)},
            )
            raise SchemaValidationError(report.errors, report.warnings)

        if await self.get_schema_by_version(schema.version) is not None:
            raise ConfigurationError(
                f"Version {schema.version} is already registered",
                details={"version": str(schema.version)},
            )

        record = {
            **schema.to_dict(),
            "fingerprint": schema.fingerprint(),
            "registered_at": time.time(),
        }

        for attempt in range(self.cas_attempts):
            pointer = await self._read_pointer()
            group = self.store.write_group()
            group.require(VERSIONS_COLLECTION, schema.id, None)
            group.set(VERSIONS_COLLECTION, schema.id, record)

            current = SchemaVersion.parse(pointer["current_version"]) if pointer else None
            advanced = current is None or schema.version > current
            if advanced:
                revision = pointer.get("revision", 0) if pointer else 0
                group.require(
                    REGISTRY_COLLECTION,
                    POINTER_DOC_ID,
                    {"revision": revision} if pointer else None,
                )
                group.set(
                    REGISTRY_COLLECTION,
                    POINTER_DOC_ID,
                    {
                        "current_version": str(schema.version),
                        "current_schema_id": schema.id,
                        "revision": revision + 1,
                        "updated_at": time.time(),
                    },
                )
            else:
                # Pin the pointer so a concurrent advance is observed on retry.
                group.require(
                    REGISTRY_COLLECTION,
                    POINTER_DOC_ID,
                    {"revision": pointer.get("revision", 0)} if pointer else None,
                )

            try:
                await self.store.commit(group)
            except PreconditionFailedError:
                if await self.get_schema(schema.id) is not None:
                    raise ConfigurationError(
                        f"Schema id '{schema.id}' is already registered",
                        details={"schema_id": schema.id},
                    ) from None
                logger.debug(
                    "Registry pointer moved, retrying",
                    extra={"schema_id": schema.id, "attempt": attempt + 1},
                )
                continue

            logger.info(
                "Registered schema",
                extra={
                    "schema_id": schema.id,
                    "version": str(schema.version),
                    "advanced_current": advanced,
                    "warnings": len(report.warnings),
                },
            )
            return report

        raise ConfigurationError(
            f"Could not register schema '{schema.id}': registry pointer contention",
            details={"attempts": self.cas_attempts},
        )

    async def get_schema(self, schema_id: str) -> SchemaDefinition | None:
        doc = await self.store.get(VERSIONS_COLLECTION, schema_id)
        return SchemaDefinition.from_dict(doc.data) if doc else None

    async def get_schema_by_version(self, version: str | SchemaVersion) -> SchemaDefinition | None:
        wanted = str(SchemaVersion.parse(version))
        page = await self.store.query(VERSIONS_COLLECTION, [FieldFilter("version", "==", wanted)])
        return SchemaDefinition.from_dict(page.documents[0].data) if page.documents else None

    async def list_schemas(self, status: SchemaStatus | None = None) -> list[SchemaDefinition]:
        """All registered schemas ascending by version."""
        filters = [FieldFilter("status", "==", status.value)] if status else []
        page = await self.store.query(VERSIONS_COLLECTION, filters)
        schemas = [SchemaDefinition.from_dict(d.data) for d in page.documents]
        return sorted(schemas, key=lambda s: s.version)

    async def update_schema_status(self, schema_id: str, status: SchemaStatus) -> SchemaDefinition:
        """Move a schema through its lifecycle (draft, active, deprecated, archived)."""
        schema = await self.get_schema(schema_id)
        if schema is None:
            raise ConfigurationError(f"Schema not found: {schema_id}")
        group = self.store.write_group()
        group.update(VERSIONS_COLLECTION, schema_id, {"status": status.value})
        await self.store.commit(group)
        logger.info("Schema status changed", extra={"schema_id": schema_id, "status": status.value})
        return schema.with_status(status)

    # ---------------------------------------------------------------------
    # Planning
    # ---------------------------------------------------------------------

    async def plan_migration_path(
        self,
        from_version: str | SchemaVersion,
        to_version: str | SchemaVersion,
    ) -> MigrationPlan:
        """Resolve the schemas between two versions.

        Selects every registered schema with from < version <= to, checks
        each against the running version's compatibility bounds, flags
        breaking schemas and sums the migration estimates.

        Raises:
            InvalidVersionError: If either version string is malformed
        """
        source = SchemaVersion.parse(from_version)
        target = SchemaVersion.parse(to_version)
        plan = MigrationPlan(from_version=source, to_version=target)

        if target <= source:
            plan.errors.append(f"Target version {target} must be greater than source {source}")
            plan.is_valid = False
            return plan

        plan.path = [s for s in await self.list_schemas() if source < s.version <= target]
        if not plan.path:
            plan.errors.append(f"No registered schemas between {source} and {target}")
            plan.is_valid = False
            return plan
        if plan.path[-1].version != target:
            plan.errors.append(f"Target version {target} is not registered")

        running = source
        for schema in plan.path:
            bounds = schema.compatibility
            if bounds.minimum_version and running < SchemaVersion.parse(bounds.minimum_version):
                plan.errors.append(
                    f"Schema {schema.id} ({schema.version}) requires at least "
                    f"{bounds.minimum_version}, path is at {running}"
                )
            if bounds.maximum_version and running > SchemaVersion.parse(bounds.maximum_version):
                plan.errors.append(
                    f"Schema {schema.id} ({schema.version}) supports at most "
                    f"{bounds.maximum_version}, path is at {running}"
                )
            if schema.metadata.breaking or is_breaking_change(running, schema.version):
                plan.breaking_changes = True
                plan.warnings.append(
                    f"Schema {schema.id} ({schema.version}) contains breaking changes"
                )
            if schema.status in (SchemaStatus.DEPRECATED, SchemaStatus.ARCHIVED):
                plan.warnings.append(
                    f"Schema {schema.id} ({schema.version}) is {schema.status.value}"
                )
            plan.estimated_minutes += schema.metadata.estimated_migration_minutes
            running = schema.version

        plan.is_valid = not plan.errors
        logger.info(
            "Planned migration path",
            extra={
                "from_version": str(source),
                "to_version": str(target),
                "steps": len(plan.path),
                "is_valid": plan.is_valid,
                "breaking": plan.breaking_changes,
            },
        )
        return plan

    # ---------------------------------------------------------------------
    # History
    # ---------------------------------------------------------------------

    async def record_version_application(
        self,
        version: str | SchemaVersion,
        schema_id: str | None = None,
        applied_by: str = "docshift",
        environment: str = "development",
        migration_id: str | None = None,
        backup_id: str | None = None,
        stats: dict[str, Any] | None = None,
        rollback_info: dict[str, Any] | None = None,
    ) -> VersionApplication:
        """Append an entry to version-application history."""
        now = time.time()
        application = VersionApplication(
            id=f"{int(now * 1000):013d}_{uuid.uuid4().hex[:8]}",
            version=str(SchemaVersion.parse(version)),
            schema_id=schema_id,
            applied_at=now,
            applied_by=applied_by,
            environment=environment,
            migration_id=migration_id,
            backup_id=backup_id,
            stats=stats or {},
            rollback_info=rollback_info,
        )
        group = self.store.write_group()
        group.set(HISTORY_COLLECTION, application.id, application.to_dict())
        await self.store.commit(group)

        logger.info(
            "Recorded version application",
            extra={
                "version": application.version,
                "migration_id": migration_id,
                "rollback": rollback_info is not None,
            },
        )
        return application

    async def get_version_history(self, limit: int = 50) -> list[VersionApplication]:
        """History entries, newest first."""
        page = await self.store.query(HISTORY_COLLECTION, order_by="applied_at", descending=True)
        entries = [VersionApplication.from_dict(d.data) for d in page.documents]
        return entries[:limit]

    async def get_applied_version(self) -> SchemaVersion | None:
        """Version of the most recent history entry."""
        history = await self.get_version_history(limit=1)
        return SchemaVersion.parse(history[0].version) if history else None
