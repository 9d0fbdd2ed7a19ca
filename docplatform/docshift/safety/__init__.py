"""
Safety system: backups, dry runs, monitoring and rollback.
"""

from .archive import BackupArchiver
from .backup import (
    BACKUPS_COLLECTION,
    BackupCollectionInfo,
    BackupConfiguration,
    BackupManager,
    BackupRecord,
    BackupStatus,
    BackupType,
    RestoreOptions,
    RestoreResult,
    compute_checksum,
    data_collection,
)
from .monitoring import (
    AlertSeverity,
    AlertType,
    MigrationAlert,
    MigrationCheckpoint,
    MigrationMetrics,
    MigrationMonitor,
    MigrationMonitoringSystem,
    MonitorStatus,
    evaluate_alert_rules,
)
from .rollback import (
    RiskLevel,
    RollbackPlan,
    RollbackResult,
    RollbackStep,
    RollbackStepType,
    RollbackSystem,
    StepStatus,
)
from .dry_run import (  # imports the migration package; keep last
    DryRunEngine,
    DryRunIssue,
    DryRunOptions,
    DryRunResult,
    IssueSeverity,
    IssueType,
)

__all__ = [
    "BACKUPS_COLLECTION",
    "AlertSeverity",
    "AlertType",
    "BackupArchiver",
    "BackupCollectionInfo",
    "BackupConfiguration",
    "BackupManager",
    "BackupRecord",
    "BackupStatus",
    "BackupType",
    "DryRunEngine",
    "DryRunIssue",
    "DryRunOptions",
    "DryRunResult",
    "IssueSeverity",
    "IssueType",
    "MigrationAlert",
    "MigrationCheckpoint",
    "MigrationMetrics",
    "MigrationMonitor",
    "MigrationMonitoringSystem",
    "MonitorStatus",
    "RestoreOptions",
    "RestoreResult",
    "RiskLevel",
    "RollbackPlan",
    "RollbackResult",
    "RollbackStep",
    "RollbackStepType",
    "RollbackSystem",
    "StepStatus",
    "compute_checksum",
    "data_collection",
    "evaluate_alert_rules",
]
