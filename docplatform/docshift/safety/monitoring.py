"""
Live monitoring of migration runs.

One MigrationMonitor exists per migration run. The engine feeds it
progress between pages and a checkpoint after every completed operation;
a background sampler evaluates the alert rules on a fixed interval.

Built-in alert rules (evaluate_alert_rules):
    throughput below 50% of the expected baseline   -> performance / warning
    error rate above the threshold                  -> error_rate / error
    no progress for stuck_after_seconds             -> timeout / critical
    process memory above soft / hard limits         -> memory / warning, critical

Storage layout:
    _migration_monitoring/<migration_id>      MigrationMonitor.to_dict()
    _migration_checkpoints/<checkpoint_id>    MigrationCheckpoint.to_dict()

Invariants:
    - alerts and checkpoints are append-only
    - An unacknowledged alert of the same type and severity is never duplicated
    - A paused run blocks in wait_until_runnable() until resumed or stopped
    - Resume requires a checkpoint flagged can_resume_from

How to change safely:
    - Alert rules stay pure functions of metrics, timestamps and config
    - Keep persisted keys stable; add new ones with defaults
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

import psutil

from ..config import MonitoringConfig
from ..errors import MigrationCancelledError, MonitorNotFoundError, ResumeError
from ..events import EventChannel, EventKind, Severity
from ..store.base import DocumentStore

logger = logging.getLogger(__name__)

MONITORING_COLLECTION = "_migration_monitoring"
CHECKPOINTS_COLLECTION = "_migration_checkpoints"
THROUGHPUT_ALERT_RATIO = 0.5
BYTES_PER_MB = 1024 * 1024


class MonitorStatus(Enum):
    PREPARING = "preparing"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"

    @property
    def is_terminal(self) -> bool:
        return self in (MonitorStatus.COMPLETED, MonitorStatus.FAILED, MonitorStatus.ROLLED_BACK)


class AlertSeverity(Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AlertType(Enum):
    PERFORMANCE = "performance"
    ERROR_RATE = "error_rate"
    MEMORY = "memory"
    TIMEOUT = "timeout"
    DATA_INTEGRITY = "data_integrity"


_EVENT_SEVERITY = {
    AlertSeverity.INFO: Severity.INFO,
    AlertSeverity.WARNING: Severity.WARNING,
    AlertSeverity.ERROR: Severity.ERROR,
    AlertSeverity.CRITICAL: Severity.CRITICAL,
}


class ProgressSource(Protocol):
    """Anything carrying run counters (MigrationStats satisfies it)."""

    documents_processed: int
    errors_encountered: int


@dataclass
class MigrationMetrics:
    """Live metrics of one run."""

    documents_processed: int = 0
    errors_encountered: int = 0
    documents_per_second: float = 0.0
    error_rate: float = 0.0
    memory_mb: float = 0.0
    elapsed_seconds: float = 0.0
    sampled_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "documents_processed": self.documents_processed,
            "errors_encountered": self.errors_encountered,
            "documents_per_second": self.documents_per_second,
            "error_rate": self.error_rate,
            "memory_mb": self.memory_mb,
            "elapsed_seconds": self.elapsed_seconds,
            "sampled_at": self.sampled_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MigrationMetrics:
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class MigrationAlert:
    """One alert raised for a run."""

    id: str
    type: AlertType
    severity: AlertSeverity
    message: str
    timestamp: float
    acknowledged: bool = False
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "severity": self.severity.value,
            "message": self.message,
            "timestamp": self.timestamp,
            "acknowledged": self.acknowledged,
            "data": self.data,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MigrationAlert:
        return cls(
            id=data["id"],
            type=AlertType(data["type"]),
            severity=AlertSeverity(data["severity"]),
            message=data["message"],
            timestamp=data["timestamp"],
            acknowledged=data.get("acknowledged", False),
            data=data.get("data", {}),
        )


@dataclass
class MigrationCheckpoint:
    """A resume point recorded after a completed operation.

    Attributes:
        id: checkpoint_<migration_id>_<operation_index>
        migration_id: Owning run
        operation_index: Index of the completed operation
        documents_processed: Documents processed so far
        timestamp: Unix seconds
        backup_id: Backup that covers the state before the run
        can_resume_from: Whether the run may resume after this point
    """

    id: str
    migration_id: str
    operation_index: int
    documents_processed: int
    timestamp: float
    backup_id: str | None = None
    can_resume_from: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "migration_id": self.migration_id,
            "operation_index": self.operation_index,
            "documents_processed": self.documents_processed,
            "timestamp": self.timestamp,
            "backup_id": self.backup_id,
            "can_resume_from": self.can_resume_from,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MigrationCheckpoint:
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class MigrationMonitor:
    """Monitoring state of one run."""

    migration_id: str
    status: MonitorStatus
    started_at: float
    last_progress_at: float
    metrics: MigrationMetrics = field(default_factory=MigrationMetrics)
    alerts: list[MigrationAlert] = field(default_factory=list)
    checkpoints: list[MigrationCheckpoint] = field(default_factory=list)
    ended_at: float | None = None

    @property
    def active_alerts(self) -> list[MigrationAlert]:
        return [a for a in self.alerts if not a.acknowledged]

    @property
    def resumable(self) -> bool:
        return any(c.can_resume_from for c in self.checkpoints)

    def to_dict(self) -> dict[str, Any]:
        return {
            "migration_id": self.migration_id,
            "status": self.status.value,
            "started_at": self.started_at,
            "last_progress_at": self.last_progress_at,
            "metrics": self.metrics.to_dict(),
            "alerts": [a.to_dict() for a in self.alerts],
            "checkpoints": [c.to_dict() for c in self.checkpoints],
            "ended_at": self.ended_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MigrationMonitor:
        return cls(
            migration_id=data["migration_id"],
            status=MonitorStatus(data["status"]),
            started_at=data["started_at"],
            last_progress_at=data["last_progress_at"],
            metrics=MigrationMetrics.from_dict(data.get("metrics", {})),
            alerts=[MigrationAlert.from_dict(a) for a in data.get("alerts", [])],
            checkpoints=[MigrationCheckpoint.from_dict(c) for c in data.get("checkpoints", [])],
            ended_at=data.get("ended_at"),
        )


def current_memory_mb() -> float:
    """Resident memory of this process."""
    return psutil.Process().memory_info().rss / BYTES_PER_MB


def evaluate_alert_rules(
    metrics: MigrationMetrics,
    last_progress_at: float,
    now: float,
    config: MonitoringConfig,
) -> list[tuple[AlertType, AlertSeverity, str]]:
    """Alerts the built-in rules would raise for a metrics snapshot."""
    findings = []

    baseline = config.expected_docs_per_second * THROUGHPUT_ALERT_RATIO
    if metrics.documents_processed > 0 and metrics.documents_per_second < baseline:
        findings.append(
            (
                AlertType.PERFORMANCE,
                AlertSeverity.WARNING,
                f"Throughput {metrics.documents_per_second:.1f} docs/s is below "
                f"{baseline:.1f} docs/s",
            )
        )

    if metrics.error_rate > config.error_rate_threshold:
        findings.append(
            (
                AlertType.ERROR_RATE,
                AlertSeverity.ERROR,
                f"Error rate {metrics.error_rate:.1%} exceeds {config.error_rate_threshold:.1%}",
            )
        )

    silent = now - last_progress_at
    if silent > config.stuck_after_seconds:
        findings.append(
            (
                AlertType.TIMEOUT,
                AlertSeverity.CRITICAL,
                f"Migration appears stuck: no progress for {silent:.0f}s",
            )
        )

    if metrics.memory_mb > config.memory_critical_mb:
        findings.append(
            (
                AlertType.MEMORY,
                AlertSeverity.CRITICAL,
                f"Memory {metrics.memory_mb:.0f} MB exceeds {config.memory_critical_mb:.0f} MB",
            )
        )
    elif metrics.memory_mb > config.memory_warning_mb:
        findings.append(
            (
                AlertType.MEMORY,
                AlertSeverity.WARNING,
                f"Memory {metrics.memory_mb:.0f} MB exceeds {config.memory_warning_mb:.0f} MB",
            )
        )

    return findings


class MigrationMonitoringSystem:
    """Tracks metrics, checkpoints and alerts for running migrations.

    Attributes:
        store: Document store monitors are persisted to
        config: Alert thresholds and sampling interval
        events: Optional channel for alerts and pause/resume

    Example:
        >>> monitoring = MigrationMonitoringSystem(store)
        >>> await monitoring.start_monitoring("migration_1")
        >>> await monitoring.pause_migration("migration_1")
    """

    def __init__(
        self,
        store: DocumentStore,
        config: MonitoringConfig | None = None,
        events: EventChannel | None = None,
        clock: Callable[[], float] = time.time,
        memory_reader: Callable[[], float] = current_memory_mb,
    ) -> None:
        self.store = store
        self.config = config or MonitoringConfig()
        self.events = events
        self.clock = clock
        self.memory_reader = memory_reader
        self._monitors: dict[str, MigrationMonitor] = {}
        self._runnable: dict[str, asyncio.Event] = {}
        self._samplers: dict[str, asyncio.Task[None]] = {}
        self._alert_count = 0

    def _require(self, migration_id: str) -> MigrationMonitor:
        monitor = self._monitors.get(migration_id)
        if monitor is None:
            raise MonitorNotFoundError(migration_id)
        return monitor

    async def _persist(self, monitor: MigrationMonitor) -> None:
        group = self.store.write_group()
        group.set(MONITORING_COLLECTION, monitor.migration_id, monitor.to_dict())
        await self.store.commit(group)

    # ---------------------------------------------------------------------
    # Lifecycle
    # ---------------------------------------------------------------------

    async def start_monitoring(self, migration_id: str) -> MigrationMonitor:
        """Create the monitor and begin periodic sampling.

        Calling it again for a live monitor returns the existing one.
        """
        existing = self._monitors.get(migration_id)
        if existing is not None and not existing.status.is_terminal:
            return existing

        now = self.clock()
        monitor = MigrationMonitor(
            migration_id=migration_id,
            status=MonitorStatus.RUNNING,
            started_at=now,
            last_progress_at=now,
        )
        self._monitors[migration_id] = monitor
        runnable = asyncio.Event()
        runnable.set()
        self._runnable[migration_id] = runnable
        await self._persist(monitor)

        if self.config.sample_interval_seconds > 0:
            self._samplers[migration_id] = asyncio.create_task(self._sample_loop(migration_id))

        logger.info("Monitoring started", extra={"migration_id": migration_id})
        return monitor

    async def stop_monitoring(
        self, migration_id: str, final_status: MonitorStatus = MonitorStatus.COMPLETED
    ) -> MigrationMonitor:
        """End monitoring with a terminal status and release paused waiters.

        The monitor is persisted and dropped from memory. A monitor that
        already ended is updated in the store. A rolled-back monitor keeps
        that status.
        """
        monitor = self._monitors.get(migration_id)
        if monitor is None:
            return await self._stop_persisted(migration_id, final_status)
        monitor.status = final_status
        monitor.ended_at = self.clock()

        sampler = self._samplers.pop(migration_id, None)
        if sampler is not None and sampler is not asyncio.current_task():
            sampler.cancel()
            await asyncio.gather(sampler, return_exceptions=True)
        await self._persist(monitor)
        del self._monitors[migration_id]
        self._runnable.pop(migration_id).set()
        logger.info(
            "Monitoring stopped",
            extra={"migration_id": migration_id, "status": final_status.value},
        )
        return monitor

    async def _stop_persisted(
        self, migration_id: str, final_status: MonitorStatus
    ) -> MigrationMonitor:
        doc = await self.store.get(MONITORING_COLLECTION, migration_id)
        if doc is None:
            raise MonitorNotFoundError(migration_id)
        monitor = MigrationMonitor.from_dict(doc.data)
        if monitor.status in (MonitorStatus.ROLLED_BACK, final_status):
            return monitor
        monitor.status = final_status
        monitor.ended_at = monitor.ended_at or self.clock()
        await self._persist(monitor)
        logger.info(
            "Stored monitor updated",
            extra={"migration_id": migration_id, "status": final_status.value},
        )
        return monitor

    async def shutdown(self) -> None:
        """Cancel every sampler."""
        samplers = list(self._samplers.values())
        self._samplers.clear()
        for task in samplers:
            task.cancel()
        await asyncio.gather(*samplers, return_exceptions=True)

    async def _sample_loop(self, migration_id: str) -> None:
        try:
            while True:
                await asyncio.sleep(self.config.sample_interval_seconds)
                monitor = self._monitors.get(migration_id)
                if monitor is None or monitor.status.is_terminal:
                    return
                await self.sample(migration_id)
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Metric sampler failed: {e}", exc_info=True)

    async def sample(self, migration_id: str) -> list[MigrationAlert]:
        """Take one metrics sample and apply the alert rules.

        Returns:
            Alerts newly raised by this sample
        """
        monitor = self._require(migration_id)
        now = self.clock()
        monitor.metrics.memory_mb = round(self.memory_reader(), 1)
        monitor.metrics.sampled_at = now

        if monitor.status == MonitorStatus.PAUSED:
            await self._persist(monitor)
            return []

        raised = []
        for alert_type, severity, message in evaluate_alert_rules(
            monitor.metrics, monitor.last_progress_at, now, self.config
        ):
            alert = await self.add_alert(migration_id, alert_type, severity, message)
            if alert is not None:
                raised.append(alert)
        if not raised:
            await self._persist(monitor)
        return raised

    # ---------------------------------------------------------------------
    # Progress
    # ---------------------------------------------------------------------

    async def update_progress(
        self, migration_id: str, progress: ProgressSource
    ) -> MigrationMetrics:
        """Fold run counters into the live metrics."""
        monitor = self._require(migration_id)
        now = self.clock()
        metrics = monitor.metrics

        if progress.documents_processed > metrics.documents_processed:
            monitor.last_progress_at = now
        metrics.documents_processed = progress.documents_processed
        metrics.errors_encountered = progress.errors_encountered
        metrics.elapsed_seconds = max(now - monitor.started_at, 0.0)
        if metrics.elapsed_seconds > 0:
            metrics.documents_per_second = round(
                metrics.documents_processed / metrics.elapsed_seconds, 2
            )
        if metrics.documents_processed:
            metrics.error_rate = metrics.errors_encountered / metrics.documents_processed

        await self._persist(monitor)
        return metrics

    async def create_checkpoint(
        self,
        migration_id: str,
        operation_index: int,
        documents_processed: int,
        backup_id: str | None = None,
        can_resume_from: bool = True,
    ) -> MigrationCheckpoint:
        """Record a resume point after a completed operation."""
        monitor = self._require(migration_id)
        now = self.clock()
        checkpoint = MigrationCheckpoint(
            id=f"checkpoint_{migration_id}_{operation_index}",
            migration_id=migration_id,
            operation_index=operation_index,
            documents_processed=documents_processed,
            timestamp=now,
            backup_id=backup_id,
            can_resume_from=can_resume_from,
        )
        monitor.checkpoints.append(checkpoint)
        monitor.last_progress_at = now

        group = self.store.write_group()
        group.set(CHECKPOINTS_COLLECTION, checkpoint.id, checkpoint.to_dict())
        group.set(MONITORING_COLLECTION, migration_id, monitor.to_dict())
        await self.store.commit(group)

        logger.debug(
            "Checkpoint created",
            extra={"migration_id": migration_id, "operation_index": operation_index},
        )
        return checkpoint

    # ---------------------------------------------------------------------
    # Alerts
    # ---------------------------------------------------------------------

    async def add_alert(
        self,
        migration_id: str,
        alert_type: AlertType,
        severity: AlertSeverity,
        message: str,
        **data: Any,
    ) -> MigrationAlert | None:
        """Append an alert unless an identical one is still unacknowledged.

        Returns:
            The new alert, or None if it was a duplicate
        """
        monitor = self._require(migration_id)
        for alert in monitor.active_alerts:
            if alert.type == alert_type and alert.severity == severity:
                return None

        self._alert_count += 1
        alert = MigrationAlert(
            id=f"alert_{migration_id}_{len(monitor.alerts) + 1}",
            type=alert_type,
            severity=severity,
            message=message,
            timestamp=self.clock(),
            data=data,
        )
        monitor.alerts.append(alert)
        await self._persist(monitor)

        logger.warning(
            "Migration alert",
            extra={
                "migration_id": migration_id,
                "alert_type": alert_type.value,
                "severity": severity.value,
                "alert": message,
            },
        )
        if self.events is not None:
            self.events.emit(
                EventKind.ALERT_RAISED,
                migration_id,
                message,
                _EVENT_SEVERITY[severity],
                alert_id=alert.id,
                alert_type=alert_type.value,
            )
        return alert

    async def acknowledge_alert(self, migration_id: str, alert_id: str) -> bool:
        monitor = self._require(migration_id)
        for alert in monitor.alerts:
            if alert.id == alert_id and not alert.acknowledged:
                alert.acknowledged = True
                await self._persist(monitor)
                return True
        return False

    # ---------------------------------------------------------------------
    # Pause / resume
    # ---------------------------------------------------------------------

    async def pause_migration(self, migration_id: str, reason: str = "") -> MigrationMonitor:
        """Hold the run at its next page boundary."""
        monitor = self._require(migration_id)
        if monitor.status.is_terminal or monitor.status == MonitorStatus.PAUSED:
            return monitor

        monitor.status = MonitorStatus.PAUSED
        self._runnable[migration_id].clear()
        await self._persist(monitor)

        logger.info("Migration paused", extra={"migration_id": migration_id, "reason": reason})
        if self.events is not None:
            self.events.emit(
                EventKind.MIGRATION_PAUSED,
                migration_id,
                f"Migration {migration_id} paused" + (f": {reason}" if reason else ""),
                Severity.WARNING,
            )
        return monitor

    async def resume_migration(self, migration_id: str) -> MigrationMonitor:
        """Let a paused run continue.

        Raises:
            ResumeError: If no checkpoint allows resuming
        """
        monitor = self._require(migration_id)
        if monitor.status != MonitorStatus.PAUSED:
            return monitor
        if not monitor.resumable:
            raise ResumeError(migration_id)

        monitor.status = MonitorStatus.RUNNING
        monitor.last_progress_at = self.clock()
        self._runnable[migration_id].set()
        await self._persist(monitor)

        logger.info("Migration resumed", extra={"migration_id": migration_id})
        if self.events is not None:
            self.events.emit(
                EventKind.MIGRATION_RESUMED, migration_id, f"Migration {migration_id} resumed"
            )
        return monitor

    async def wait_until_runnable(self, migration_id: str) -> None:
        """Block while the run is paused.

        Raises:
            MigrationCancelledError: If monitoring ended while the run was paused
        """
        runnable = self._runnable.get(migration_id)
        if runnable is None or runnable.is_set():
            return
        monitor = self._monitors[migration_id]
        await runnable.wait()
        if monitor.status.is_terminal:
            raise MigrationCancelledError(
                f"Migration {migration_id} ended ({monitor.status.value}) while paused"
            )

    # ---------------------------------------------------------------------
    # Queries
    # ---------------------------------------------------------------------

    async def get_monitor(self, migration_id: str) -> MigrationMonitor | None:
        """Live monitor, or the persisted one for runs of other processes."""
        monitor = self._monitors.get(migration_id)
        if monitor is not None:
            return monitor
        doc = await self.store.get(MONITORING_COLLECTION, migration_id)
        return MigrationMonitor.from_dict(doc.data) if doc else None

    async def list_monitors(self, status: MonitorStatus | None = None) -> list[MigrationMonitor]:
        """Persisted monitors, newest first."""
        page = await self.store.query(MONITORING_COLLECTION)
        monitors = [
            self._monitors.get(doc.id) or MigrationMonitor.from_dict(doc.data)
            for doc in page.documents
        ]
        if status is not None:
            monitors = [m for m in monitors if m.status == status]
        return sorted(monitors, key=lambda m: m.started_at, reverse=True)

    @property
    def stats(self) -> dict[str, Any]:
        """Monitoring statistics."""
        return {
            "monitors": len(self._monitors),
            "active": len([m for m in self._monitors.values() if not m.status.is_terminal]),
            "samplers": len(self._samplers),
            "alerts": self._alert_count,
        }
