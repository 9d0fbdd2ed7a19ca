"""
Run state for one migration.

MigrationContext is created by the engine at the start of a run, threaded
through every operation, and discarded when the run returns its
MigrationResult. Nothing else holds a reference to it.

Invariants:
    - Statistics only grow during a run
    - MigrationLogger entries are appended in emission order
    - The context is never shared between runs
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, MutableMapping
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from ..config import MigrationConfig
from ..store.base import Document, DocumentStore

if TYPE_CHECKING:
    from ..registry.registry import MigrationPlan

logger = logging.getLogger(__name__)

LOGS_COLLECTION = "_migration_logs"
LOG_ENTRIES_PER_DOCUMENT = 500


class MigrationPhase(Enum):
    """Coarse phases reported through progress messages."""

    PREPARATION = "preparation"
    EXECUTION = "execution"
    VALIDATION = "validation"
    CLEANUP = "cleanup"
    ROLLBACK = "rollback"
    COMPLETED = "completed"


@dataclass
class MigrationProgress:
    """Progress snapshot handed to progress callbacks."""

    migration_id: str
    phase: MigrationPhase
    operation_index: int
    total_operations: int
    operation_id: str | None
    documents_processed: int
    message: str = ""
    timestamp: float = field(default_factory=time.time)

    @property
    def percent(self) -> float:
        if self.total_operations == 0:
            return 100.0 if self.phase == MigrationPhase.COMPLETED else 0.0
        done = min(self.operation_index, self.total_operations)
        return round(100.0 * done / self.total_operations, 1)

    def to_dict(self) -> dict[str, Any]:
        return {
            "migration_id": self.migration_id,
            "phase": self.phase.value,
            "operation_index": self.operation_index,
            "total_operations": self.total_operations,
            "operation_id": self.operation_id,
            "documents_processed": self.documents_processed,
            "percent": self.percent,
            "message": self.message,
            "timestamp": self.timestamp,
        }


ProgressCallback = Callable[[MigrationProgress], Any]
DocumentSelector = Callable[[Document], bool]


@dataclass
class MigrationOptions:
    """Tunable behaviour of one run.

    Attributes:
        batch_size: Documents per page
        concurrency: Pages prefetched ahead and documents evaluated in parallel
        retry_attempts: Attempts per page (including the first)
        retry_delay_ms: Base backoff, doubled on each retry
        timeout_ms: Bound on the whole run
        continue_on_error: Record failures and continue instead of aborting
        backup_before_migration: Back up target collections first (needs a backup manager)
        validate_after_migration: Spot-check migrated documents against the target schema
        progress_callback: Fire-and-forget progress hook (sync or async)
        sample_size: Before/after samples kept for reporting
        document_selector: Only documents it accepts are migrated
        collection_map: Physical collection to use for a logical one
        record_version: Record the version application on success
        applied_by: Actor recorded in version history
        environment: Environment recorded in version history
    """

    batch_size: int = 100
    concurrency: int = 5
    retry_attempts: int = 3
    retry_delay_ms: int = 1000
    timeout_ms: int = 600_000
    continue_on_error: bool = False
    backup_before_migration: bool = True
    validate_after_migration: bool = True
    progress_callback: ProgressCallback | None = None
    sample_size: int = 5
    document_selector: DocumentSelector | None = None
    collection_map: dict[str, str] = field(default_factory=dict)
    record_version: bool = True
    applied_by: str = "migration-engine"
    environment: str = "development"

    def __post_init__(self) -> None:
        if self.batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {self.batch_size}")
        if self.concurrency <= 0:
            raise ValueError(f"concurrency must be positive, got {self.concurrency}")
        if self.retry_attempts < 1:
            raise ValueError(f"retry_attempts must be at least 1, got {self.retry_attempts}")

    @classmethod
    def from_config(cls, config: MigrationConfig, **overrides: Any) -> MigrationOptions:
        """Defaults from configuration, with per-run overrides."""
        values: dict[str, Any] = {
            "batch_size": config.batch_size,
            "concurrency": config.concurrency,
            "retry_attempts": config.retry_attempts,
            "retry_delay_ms": config.retry_delay_ms,
            "timeout_ms": config.timeout_ms,
            "continue_on_error": config.continue_on_error,
        }
        values.update(overrides)
        return cls(**values)

    def physical_collection(self, collection: str) -> str:
        return self.collection_map.get(collection, collection)


@dataclass
class MigrationStats:
    """Counters for one run."""

    documents_processed: int = 0
    documents_updated: int = 0
    documents_skipped: int = 0
    documents_deleted: int = 0
    errors_encountered: int = 0
    retries: int = 0
    warnings: int = 0
    operations_completed: int = 0
    total_operations: int = 0
    write_groups_committed: int = 0
    largest_write_group: int = 0
    start_time: float = field(default_factory=time.time)
    end_time: float | None = None

    @property
    def elapsed_seconds(self) -> float:
        return (self.end_time or time.time()) - self.start_time

    @property
    def error_rate(self) -> float:
        if self.documents_processed == 0:
            return 0.0
        return self.errors_encountered / self.documents_processed

    @property
    def success_rate(self) -> float:
        """Percentage of processed documents that did not fail."""
        if self.documents_processed == 0:
            return 100.0
        failed = min(self.errors_encountered, self.documents_processed)
        return 100.0 * (self.documents_processed - failed) / self.documents_processed

    def to_dict(self) -> dict[str, Any]:
        return {
            "documents_processed": self.documents_processed,
            "documents_updated": self.documents_updated,
            "documents_skipped": self.documents_skipped,
            "documents_deleted": self.documents_deleted,
            "errors_encountered": self.errors_encountered,
            "retries": self.retries,
            "warnings": self.warnings,
            "operations_completed": self.operations_completed,
            "total_operations": self.total_operations,
            "write_groups_committed": self.write_groups_committed,
            "largest_write_group": self.largest_write_group,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
        }


@dataclass
class MigrationLogEntry:
    level: str
    message: str
    timestamp: float
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "level": self.level,
            "message": self.message,
            "timestamp": self.timestamp,
            "data": self.data,
        }


class MigrationLogger(logging.LoggerAdapter):
    """Logger bound to one migration run.

    Forwards to the module logger with the migration id in ``extra`` and
    keeps every entry so the run log can be persisted.
    """

    def __init__(self, migration_id: str, base: logging.Logger | None = None) -> None:
        super().__init__(base or logger, {"migration_id": migration_id})
        self.migration_id = migration_id
        self.entries: list[MigrationLogEntry] = []

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        kwargs["extra"] = {**(kwargs.get("extra") or {}), "migration_id": self.migration_id}
        return msg, kwargs

    def log(self, level: int, msg: Any, *args: Any, **kwargs: Any) -> None:
        data = {k: v for k, v in (kwargs.get("extra") or {}).items() if k != "migration_id"}
        self.entries.append(
            MigrationLogEntry(
                level=logging.getLevelName(level),
                message=str(msg) % args if args else str(msg),
                timestamp=time.time(),
                data=data,
            )
        )
        super().log(level, msg, *args, **kwargs)

    async def save(self, store: DocumentStore) -> int:
        """Persist entries to the migration log collection.

        Returns:
            Number of log documents written
        """
        chunks = [
            self.entries[i : i + LOG_ENTRIES_PER_DOCUMENT]
            for i in range(0, len(self.entries), LOG_ENTRIES_PER_DOCUMENT)
        ] or [[]]
        for number, chunk in enumerate(chunks):
            group = store.write_group()
            group.set(
                LOGS_COLLECTION,
                f"{self.migration_id}_{number:04d}",
                {
                    "migration_id": self.migration_id,
                    "part": number,
                    "entries": [e.to_dict() for e in chunk],
                    "saved_at": time.time(),
                },
            )
            await store.commit(group)
        return len(chunks)


@dataclass
class SampleChange:
    """Before/after view of one changed document."""

    collection: str
    document_id: str
    operation_id: str
    before: dict[str, Any]
    after: dict[str, Any] | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "collection": self.collection,
            "document_id": self.document_id,
            "operation_id": self.operation_id,
            "before": self.before,
            "after": self.after,
        }


@dataclass
class MigrationContext:
    """Mutable state of one run."""

    migration_id: str
    from_version: str | None
    to_version: str | None
    dry_run: bool
    options: MigrationOptions
    logger: MigrationLogger
    stats: MigrationStats = field(default_factory=MigrationStats)
    cancel_event: asyncio.Event | None = None
    plan: MigrationPlan | None = None
    backup_id: str | None = None
    operation_index: int = 0
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    samples: list[SampleChange] = field(default_factory=list)
    collections_touched: set[str] = field(default_factory=set)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def warn(self, message: str, **data: Any) -> None:
        self.warnings.append(message)
        self.stats.warnings += 1
        self.logger.warning(message, extra=data)

    def error(self, message: str, **data: Any) -> None:
        self.errors.append(message)
        self.logger.error(message, extra=data)


@dataclass
class MigrationResult:
    """Outcome of a migration run.

    Attributes:
        migration_id: Run id
        success: False if the run aborted
        from_version: Source version (None for ad-hoc operation runs)
        to_version: Target version
        dry_run: Whether writes were suppressed
        stats: Final counters
        errors: Error messages (recorded or fatal)
        warnings: Non-blocking findings
        operations: Operation ids in execution order
        collections_touched: Physical collections the run visited
        backup_id: Pre-migration backup, if one was taken
        samples: Before/after samples
        cancelled: The run stopped because it was cancelled
    """

    migration_id: str
    success: bool
    from_version: str | None
    to_version: str | None
    dry_run: bool
    stats: MigrationStats
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    operations: list[str] = field(default_factory=list)
    collections_touched: list[str] = field(default_factory=list)
    backup_id: str | None = None
    samples: list[SampleChange] = field(default_factory=list)
    cancelled: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "migration_id": self.migration_id,
            "success": self.success,
            "from_version": self.from_version,
            "to_version": self.to_version,
            "dry_run": self.dry_run,
            "stats": self.stats.to_dict(),
            "errors": self.errors,
            "warnings": self.warnings,
            "operations": self.operations,
            "collections_touched": self.collections_touched,
            "backup_id": self.backup_id,
            "samples": [s.to_dict() for s in self.samples],
            "cancelled": self.cancelled,
        }
