"""
Error types for DocShift.

Every exception raised by the package derives from DocShiftError and
carries a stable ``code`` for programmatic handling plus a ``details``
dict with debugging context.

Taxonomy:
    - Configuration errors: invalid versions, cyclic or unknown operation
      dependencies, invalid migration paths. Raised before any mutation
      and never retried.
    - Validation errors: structural schema problems.
    - Store errors: write group overflow, failed preconditions.
    - Migration errors: per-operation failures, cancellation.
    - Safety errors: backup, restore, monitoring and rollback failures.
    - Deployment errors: failed safety checks, canary threshold breaches.

Invariants:
    - All errors inherit from DocShiftError
    - Result-returning entry points convert these into result objects
    - Unexpected exceptions are never wrapped
"""

from __future__ import annotations

from typing import Any


class DocShiftError(Exception):
    """Base exception for all DocShift errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "DOCSHIFT_ERROR"
        self.details = details or {}


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class ConfigurationError(DocShiftError):
    """Invalid configuration detected before any mutation."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, code="CONFIGURATION_ERROR", details=details)


class InvalidVersionError(ConfigurationError):
    """A version string is not of the form major.minor.patch."""

    def __init__(self, value: str) -> None:
        super().__init__(f"Invalid version format: {value!r}", details={"value": value})
        self.code = "INVALID_VERSION"
        self.value = value


class CyclicDependencyError(ConfigurationError):
    """Migration operations depend on each other in a cycle.

    Attributes:
        cycle: Operation ids forming the cycle, first id repeated at the end
    """

    def __init__(self, cycle: list[str]) -> None:
        super().__init__(
            f"Circular dependency detected: {' -> '.join(cycle)}",
            details={"cycle": cycle},
        )
        self.code = "CYCLIC_DEPENDENCY"
        self.cycle = cycle


class UnknownDependencyError(ConfigurationError):
    """An operation depends on an id that is not part of the run."""

    def __init__(self, operation_id: str, dependency: str) -> None:
        super().__init__(
            f"Operation '{operation_id}' depends on unknown operation '{dependency}'",
            details={"operation_id": operation_id, "dependency": dependency},
        )
        self.code = "UNKNOWN_DEPENDENCY"


class InvalidMigrationPathError(ConfigurationError):
    """The registry could not produce a valid path between two versions."""

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message, details={"errors": errors or []})
        self.code = "INVALID_MIGRATION_PATH"
        self.errors = errors or []


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class SchemaValidationError(DocShiftError):
    """A schema definition failed structural validation.

    Attributes:
        errors: Blocking problems
        warnings: Non-blocking findings
    """

    def __init__(self, errors: list[str], warnings: list[str] | None = None) -> None:
        super().__init__(
            f"Schema validation failed: {'; '.join(errors)}",
            code="SCHEMA_VALIDATION_ERROR",
            details={"errors": errors, "warnings": warnings or []},
        )
        self.errors = errors
        self.warnings = warnings or []


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class StoreError(DocShiftError):
    """Document store operation failed."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, code="STORE_ERROR", details=details)


class DocumentNotFoundError(StoreError):
    """A document expected to exist was not found."""

    pass


class WriteGroupFullError(StoreError):
    """A mutation was added to a write group that is already at capacity."""

    pass


class PreconditionFailedError(StoreError):
    """A write group precondition did not hold at commit time."""

    pass


# ---------------------------------------------------------------------------
# Migration
# ---------------------------------------------------------------------------


class MigrationError(DocShiftError):
    """Migration run failed."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, code="MIGRATION_ERROR", details=details)


class OperationFailedError(MigrationError):
    """A migration operation failed for a document or a whole batch.

    Attributes:
        operation_id: Operation being executed
        document_id: Document being processed, if any
    """

    def __init__(
        self,
        message: str,
        operation_id: str | None = None,
        document_id: str | None = None,
    ) -> None:
        super().__init__(
            message,
            details={"operation_id": operation_id, "document_id": document_id},
        )
        self.code = "OPERATION_FAILED"
        self.operation_id = operation_id
        self.document_id = document_id


class MigrationCancelledError(MigrationError):
    """The migration stopped at a batch boundary because it was cancelled."""

    pass


# ---------------------------------------------------------------------------
# Safety
# ---------------------------------------------------------------------------


class BackupError(DocShiftError):
    """Backup creation or maintenance failed."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, code="BACKUP_ERROR", details=details)


class BackupNotFoundError(BackupError):
    """No backup record exists for the given id."""

    pass


class RestoreError(BackupError):
    """Restoring a backup failed."""

    pass


class ArchiveError(BackupError):
    """Exporting a backup to object storage failed."""

    pass


class MonitorNotFoundError(DocShiftError):
    """No monitor is registered for the migration id."""

    def __init__(self, migration_id: str) -> None:
        super().__init__(
            f"Monitor not found for migration: {migration_id}",
            code="MONITOR_NOT_FOUND",
            details={"migration_id": migration_id},
        )


class ResumeError(DocShiftError):
    """A paused migration has no checkpoint it can resume from."""

    def __init__(self, migration_id: str) -> None:
        super().__init__(
            f"No valid checkpoint found for resume: {migration_id}",
            code="RESUME_ERROR",
            details={"migration_id": migration_id},
        )


class RollbackError(DocShiftError):
    """Rollback failed. Not retried automatically."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, code="ROLLBACK_ERROR", details=details)


# ---------------------------------------------------------------------------
# Deployment
# ---------------------------------------------------------------------------


class DeploymentError(DocShiftError):
    """Deployment failed."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, code="DEPLOYMENT_ERROR", details=details)


class DeploymentNotFoundError(DeploymentError):
    """No deployment record exists for the given id."""

    pass


class SafetyCheckFailedError(DeploymentError):
    """A critical safety check failed.

    Attributes:
        check_name: Name of the failing check
    """

    def __init__(self, check_name: str, message: str) -> None:
        super().__init__(
            f"Critical safety check failed: {check_name}: {message}",
            details={"check": check_name},
        )
        self.code = "SAFETY_CHECK_FAILED"
        self.check_name = check_name


class CanaryThresholdError(DeploymentError):
    """The canary slice fell below its success-rate threshold."""

    def __init__(self, observed: float, threshold: float) -> None:
        super().__init__(
            f"Canary success rate {observed:.2f}% below threshold {threshold:.2f}%",
            details={"observed": observed, "threshold": threshold},
        )
        self.code = "CANARY_THRESHOLD"
        self.observed = observed
        self.threshold = threshold
