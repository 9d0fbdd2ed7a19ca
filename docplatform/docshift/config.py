"""
Configuration management for DocShift.

All configuration is done via environment variables. This module provides
typed, frozen configuration classes with defaults suitable for local
development.

Invariants:
    - All settings have sensible defaults for local development
    - Production deployments MUST set explicit values for critical settings
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep environment variable names stable once released
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class StoreBackend(Enum):
    """Supported document store backends."""

    MEMORY = "memory"
    SQLITE = "sqlite"


class StorageLocation(Enum):
    """Where backup data is kept."""

    STORE = "store"
    CLOUD_STORAGE = "cloud_storage"
    BOTH = "both"


@dataclass(frozen=True)
class StoreConfig:
    """Document store configuration.

    Attributes:
        backend: Store backend
        data_dir: Directory for the SQLite database file
        max_write_group: Maximum mutations per atomic write group
        busy_timeout_ms: SQLite busy timeout
        wal_mode: Enable SQLite WAL journal mode
    """

    backend: StoreBackend = StoreBackend.MEMORY
    data_dir: str = "./data"
    max_write_group: int = 500
    busy_timeout_ms: int = 5000
    wal_mode: bool = True

    @classmethod
    def from_env(cls) -> StoreConfig:
        """Load configuration from environment variables."""
        return cls(
            backend=StoreBackend(os.getenv("DOCSHIFT_STORE_BACKEND", "memory")),
            data_dir=os.getenv("DOCSHIFT_DATA_DIR", "./data"),
            max_write_group=int(os.getenv("DOCSHIFT_MAX_WRITE_GROUP", "500")),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            wal_mode=_env_bool("SQLITE_WAL_MODE", "true"),
        )


@dataclass(frozen=True)
class MigrationConfig:
    """Default migration execution options.

    Attributes:
        batch_size: Documents per page
        concurrency: Pages prefetched ahead and documents evaluated in parallel
        retry_attempts: Attempts per page before giving up
        retry_delay_ms: Base delay between attempts (doubles each retry)
        timeout_ms: Upper bound for a whole migration run
        continue_on_error: Record failures and keep going instead of aborting
    """

    batch_size: int = 100
    concurrency: int = 5
    retry_attempts: int = 3
    retry_delay_ms: int = 1000
    timeout_ms: int = 600_000
    continue_on_error: bool = False

    @classmethod
    def from_env(cls) -> MigrationConfig:
        """Load configuration from environment variables."""
        return cls(
            batch_size=int(os.getenv("MIGRATION_BATCH_SIZE", "100")),
            concurrency=int(os.getenv("MIGRATION_CONCURRENCY", "5")),
            retry_attempts=int(os.getenv("MIGRATION_RETRY_ATTEMPTS", "3")),
            retry_delay_ms=int(os.getenv("MIGRATION_RETRY_DELAY_MS", "1000")),
            timeout_ms=int(os.getenv("MIGRATION_TIMEOUT_MS", "600000")),
            continue_on_error=_env_bool("MIGRATION_CONTINUE_ON_ERROR", "false"),
        )


@dataclass(frozen=True)
class BackupConfig:
    """Backup retention and placement.

    Attributes:
        retention_days: Days before a backup expires
        storage_location: Where backup data is written
        compression: Gzip archives exported to object storage
    """

    retention_days: int = 30
    storage_location: StorageLocation = StorageLocation.STORE
    compression: bool = True

    @classmethod
    def from_env(cls) -> BackupConfig:
        """Load configuration from environment variables."""
        return cls(
            retention_days=int(os.getenv("BACKUP_RETENTION_DAYS", "30")),
            storage_location=StorageLocation(os.getenv("BACKUP_STORAGE_LOCATION", "store")),
            compression=_env_bool("BACKUP_COMPRESSION", "true"),
        )


@dataclass(frozen=True)
class MonitoringConfig:
    """Migration monitoring thresholds.

    Attributes:
        sample_interval_seconds: Period of the background metric sampler
        expected_docs_per_second: Throughput baseline for the performance rule
        stuck_after_seconds: Checkpoint silence before a "stuck" alert
        memory_warning_mb: Soft memory threshold
        memory_critical_mb: Hard memory threshold
        error_rate_threshold: Error fraction above which an error alert fires
    """

    sample_interval_seconds: float = 5.0
    expected_docs_per_second: float = 100.0
    stuck_after_seconds: float = 300.0
    memory_warning_mb: float = 1000.0
    memory_critical_mb: float = 2000.0
    error_rate_threshold: float = 0.05

    @classmethod
    def from_env(cls) -> MonitoringConfig:
        """Load configuration from environment variables."""
        return cls(
            sample_interval_seconds=float(os.getenv("MONITOR_SAMPLE_INTERVAL_SECONDS", "5")),
            expected_docs_per_second=float(os.getenv("MONITOR_EXPECTED_DOCS_PER_SECOND", "100")),
            stuck_after_seconds=float(os.getenv("MONITOR_STUCK_AFTER_SECONDS", "300")),
            memory_warning_mb=float(os.getenv("MONITOR_MEMORY_WARNING_MB", "1000")),
            memory_critical_mb=float(os.getenv("MONITOR_MEMORY_CRITICAL_MB", "2000")),
            error_rate_threshold=float(os.getenv("MONITOR_ERROR_RATE_THRESHOLD", "0.05")),
        )


@dataclass(frozen=True)
class S3Config:
    """S3 configuration for exported backup archives.

    Attributes:
        bucket: S3 bucket name (empty disables export)
        region: AWS region
        endpoint_url: Custom endpoint URL (for MinIO)
        backup_prefix: Key prefix for exported backups
        access_key_id: AWS access key ID (optional, uses AWS credential chain)
        secret_access_key: AWS secret access key (optional)
    """

    bucket: str = ""
    region: str = "us-east-1"
    endpoint_url: str | None = None
    backup_prefix: str = "backups"
    access_key_id: str | None = None
    secret_access_key: str | None = None

    @classmethod
    def from_env(cls) -> S3Config:
        """Load configuration from environment variables."""
        return cls(
            bucket=os.getenv("S3_BUCKET", ""),
            region=os.getenv("S3_REGION", os.getenv("AWS_REGION", "us-east-1")),
            endpoint_url=os.getenv("S3_ENDPOINT"),
            backup_prefix=os.getenv("S3_BACKUP_PREFIX", "backups"),
            access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
            secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class DocShiftConfig:
    """Complete DocShift configuration.

    Aggregates all configuration sections.

    Example:
        >>> config = DocShiftConfig.from_env()
        >>> config.validate()
        >>> config.log_config()
    """

    environment: str = "development"
    actor: str = "docshift"
    store: StoreConfig = field(default_factory=StoreConfig)
    migration: MigrationConfig = field(default_factory=MigrationConfig)
    backup: BackupConfig = field(default_factory=BackupConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    s3: S3Config = field(default_factory=S3Config)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> DocShiftConfig:
        """Load complete configuration from environment variables."""
        return cls(
            environment=os.getenv("DOCSHIFT_ENVIRONMENT", "development"),
            actor=os.getenv("DOCSHIFT_ACTOR", "docshift"),
            store=StoreConfig.from_env(),
            migration=MigrationConfig.from_env(),
            backup=BackupConfig.from_env(),
            monitoring=MonitoringConfig.from_env(),
            s3=S3Config.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.environment not in ("development", "staging", "production"):
            raise ValueError(
                f"DOCSHIFT_ENVIRONMENT must be development, staging or production, "
                f"got '{self.environment}'"
            )
        if self.store.max_write_group <= 0:
            raise ValueError("DOCSHIFT_MAX_WRITE_GROUP must be positive")
        if self.migration.batch_size <= 0:
            raise ValueError("MIGRATION_BATCH_SIZE must be positive")
        if self.migration.concurrency <= 0:
            raise ValueError("MIGRATION_CONCURRENCY must be positive")
        if self.migration.retry_attempts < 1:
            raise ValueError("MIGRATION_RETRY_ATTEMPTS must be at least 1")
        if self.monitoring.memory_warning_mb >= self.monitoring.memory_critical_mb:
            raise ValueError("MONITOR_MEMORY_WARNING_MB must be below MONITOR_MEMORY_CRITICAL_MB")

        if self.backup.storage_location != StorageLocation.STORE and not self.s3.bucket:
            raise ValueError(
                "S3_BUCKET is required when BACKUP_STORAGE_LOCATION is cloud_storage or both"
            )

        if self.store.backend == StoreBackend.SQLITE and not os.path.exists(self.store.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.store.data_dir}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "DocShift configuration loaded",
            extra={
                "environment": self.environment,
                "store_backend": self.store.backend.value,
                "data_dir": self.store.data_dir,
                "max_write_group": self.store.max_write_group,
                "batch_size": self.migration.batch_size,
                "concurrency": self.migration.concurrency,
                "backup_location": self.backup.storage_location.value,
                "s3_bucket": self.s3.bucket or None,
                "log_level": self.observability.log_level,
            },
        )
