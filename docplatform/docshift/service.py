"""
DocShift service container.

Builds every component from one DocShiftConfig and owns their
lifecycle:
- Document store (in-memory or SQLite)
- Version registry
- Backup manager, with an S3 archiver when backups leave the store
- Monitoring, rollback and dry-run engines
- Migration engine and deployment orchestrator

Usage:
    >>> shift = DocShift(DocShiftConfig.from_env())
    >>> await shift.start()
    >>> result = await shift.engine.execute_migration("1.0.0", "1.1.0")
    >>> await shift.stop()

Invariants:
    - All components share one store and one event channel
    - No module-level singletons; each DocShift is independent
    - stop() cancels every background sampler

How to change safely:
    - Add components here, never as globals
    - Keep start() idempotent
"""

from __future__ import annotations

import logging
from typing import Any

import json_log_formatter

from .config import DocShiftConfig, StorageLocation, StoreBackend
from .deployment import DeploymentOrchestrator, TrafficRouter
from .events import EventChannel
from .migration import MigrationEngine
from .registry import VersionRegistry
from .safety import (
    BackupArchiver,
    BackupManager,
    DryRunEngine,
    MigrationMonitoringSystem,
    RollbackSystem,
)
from .store import DocumentStore, InMemoryDocumentStore, SqliteDocumentStore

logger = logging.getLogger(__name__)


def setup_logging(config: DocShiftConfig) -> None:
    """Configure root logging from the observability section.

    Args:
        config: DocShift configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("aiobotocore").setLevel(logging.WARNING)


def create_store(config: DocShiftConfig) -> DocumentStore:
    """Build the configured document store backend."""
    if config.store.backend == StoreBackend.SQLITE:
        return SqliteDocumentStore(
            data_dir=config.store.data_dir,
            max_group_size=config.store.max_write_group,
            wal_mode=config.store.wal_mode,
            busy_timeout_ms=config.store.busy_timeout_ms,
        )
    return InMemoryDocumentStore(max_group_size=config.store.max_write_group)


class DocShift:
    """Schema evolution service.

    Attributes:
        config: DocShift configuration
        store: Shared document store
        events: Shared event channel
        registry: Version registry
        archiver: S3 exporter, when backups go to cloud storage
        backups: Backup manager
        monitoring: Migration monitoring system
        engine: Migration engine
        rollback: Rollback system
        dry_run: Dry-run engine
        deployments: Deployment orchestrator
    """

    def __init__(
        self,
        config: DocShiftConfig | None = None,
        store: DocumentStore | None = None,
        events: EventChannel | None = None,
    ) -> None:
        self.config = config or DocShiftConfig.from_env()
        self.store = store or create_store(self.config)
        self.events = events or EventChannel()
        self._running = False

        self.registry = VersionRegistry(self.store)
        self.archiver: BackupArchiver | None = None
        if self.config.backup.storage_location != StorageLocation.STORE and self.config.s3.bucket:
            self.archiver = BackupArchiver(
                self.config.s3, compression=self.config.backup.compression
            )
        self.backups = BackupManager(
            self.store, self.config.backup, archiver=self.archiver, events=self.events
        )
        self.monitoring = MigrationMonitoringSystem(
            self.store, self.config.monitoring, events=self.events
        )
        self.engine = MigrationEngine(
            self.store,
            self.registry,
            backup_manager=self.backups,
            monitoring=self.monitoring,
            events=self.events,
            config=self.config.migration,
        )
        self.rollback = RollbackSystem(
            self.backups, self.registry, monitoring=self.monitoring, events=self.events
        )
        self.dry_run = DryRunEngine(self.engine)
        self.deployments = DeploymentOrchestrator(
            self.store,
            self.registry,
            self.engine,
            self.backups,
            self.rollback,
            events=self.events,
            router=TrafficRouter(self.store),
        )

    async def start(self) -> None:
        """Validate configuration, prepare the store and expire old backups."""
        if self._running:
            logger.warning("DocShift already running")
            return

        self.config.validate()
        self.config.log_config()
        if isinstance(self.store, SqliteDocumentStore):
            await self.store.initialize()

        expired = await self.backups.delete_expired_backups()
        if expired:
            logger.info("Expired backups removed", extra={"count": len(expired)})
        self._running = True
        logger.info("DocShift started", extra={"environment": self.config.environment})

    async def stop(self) -> None:
        """Stop background monitoring."""
        if not self._running:
            return
        await self.monitoring.shutdown()
        self._running = False
        logger.info("DocShift stopped")

    @property
    def running(self) -> bool:
        return self._running

    @property
    def stats(self) -> dict[str, Any]:
        """Statistics of every component."""
        return {
            "store": self.store.stats if hasattr(self.store, "stats") else {},
            "events": self.events.stats,
            "engine": self.engine.stats,
            "backups": self.backups.stats,
            "monitoring": self.monitoring.stats,
            "rollback": self.rollback.stats,
            "deployments": self.deployments.stats,
        }
