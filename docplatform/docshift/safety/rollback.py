"""
Rollback planning and execution.

A rollback reverses a migration with the backup taken before it:

    1. pause_migration        hold the run at its next page boundary
    2. restore_from_backup    replay the backup over the touched collections
    3. update_schema_version  record the prior version as applied again

Steps run strictly in order. A failed restore halts the rollback and is
reported as non-recoverable: the collections may be partly restored and
need an operator.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..errors import DocShiftError, MonitorNotFoundError, RollbackError
from ..events import EventChannel, EventKind, Severity
from ..registry.registry import VersionRegistry
from .backup import BackupManager, BackupStatus, RestoreOptions, RestoreResult
from .monitoring import MigrationMonitoringSystem, MonitorStatus

logger = logging.getLogger(__name__)

RESTORE_DOCS_PER_SECOND = 1000
LARGE_ROLLBACK_DOCUMENTS = 10_000


class RollbackStepType(Enum):
    PAUSE_MIGRATION = "pause_migration"
    RESTORE_FROM_BACKUP = "restore_from_backup"
    UPDATE_SCHEMA_VERSION = "update_schema_version"


class StepStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class RiskLevel(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass
class RollbackStep:
    type: RollbackStepType
    description: str
    estimated_seconds: float
    risk_level: RiskLevel
    status: StepStatus = StepStatus.PENDING
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "description": self.description,
            "estimated_seconds": self.estimated_seconds,
            "risk_level": self.risk_level.value,
            "status": self.status.value,
            "error": self.error,
        }


@dataclass
class RollbackPlan:
    """Ordered steps reversing one migration.

    Attributes:
        id: Rollback id
        migration_id: Migration being reversed
        target_version: Version to record as applied afterwards (None to skip)
        backup_id: Backup to restore
        collections: Collections to restore
        steps: Steps in execution order
        prerequisites: Conditions an operator should confirm
        estimated_seconds: Sum of step estimates
        risk_level: Highest step risk, raised for large restores
    """

    id: str
    migration_id: str
    target_version: str | None
    backup_id: str
    collections: list[str]
    steps: list[RollbackStep] = field(default_factory=list)
    prerequisites: list[str] = field(default_factory=list)
    estimated_seconds: float = 0.0
    risk_level: RiskLevel = RiskLevel.MEDIUM
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "migration_id": self.migration_id,
            "target_version": self.target_version,
            "backup_id": self.backup_id,
            "collections": self.collections,
            "steps": [s.to_dict() for s in self.steps],
            "prerequisites": self.prerequisites,
            "estimated_seconds": self.estimated_seconds,
            "risk_level": self.risk_level.value,
            "reason": self.reason,
        }


@dataclass
class RollbackResult:
    """Outcome of a rollback.

    Attributes:
        success: Every step completed or was skipped
        rollback_id: Plan id
        steps: Steps with their final status
        restore: Result of the restore step, if it ran
        error: First failure
        recoverable: False when the restore failed
    """

    success: bool
    rollback_id: str
    steps: list[RollbackStep] = field(default_factory=list)
    restore: RestoreResult | None = None
    error: str | None = None
    recoverable: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "rollback_id": self.rollback_id,
            "steps": [s.to_dict() for s in self.steps],
            "restore": self.restore.to_dict() if self.restore else None,
            "error": self.error,
            "recoverable": self.recoverable,
        }


class RollbackSystem:
    """Plans and executes rollbacks from backups.

    Example:
        >>> rollback = RollbackSystem(backups, registry, monitoring)
        >>> plan = await rollback.create_rollback_plan(mid, "1.0.0", backup_id)
        >>> result = await rollback.execute_rollback(plan)
    """

    def __init__(
        self,
        backup_manager: BackupManager,
        registry: VersionRegistry,
        monitoring: MigrationMonitoringSystem | None = None,
        events: EventChannel | None = None,
    ) -> None:
        self.backup_manager = backup_manager
        self.registry = registry
        self.monitoring = monitoring
        self.events = events
        self._executed = 0
        self._failed = 0

    async def create_rollback_plan(
        self,
        migration_id: str,
        target_version: str | None,
        backup_id: str,
        collections: list[str] | None = None,
        reason: str = "",
    ) -> RollbackPlan:
        """Build the step list for reversing a migration.

        Raises:
            RollbackError: If the backup is missing or not completed
        """
        record = await self.backup_manager.get_backup(backup_id)
        if record is None:
            raise RollbackError(f"Backup {backup_id} not found", details={"backup_id": backup_id})
        if record.status != BackupStatus.COMPLETED:
            raise RollbackError(
                f"Backup {backup_id} is {record.status.value} and cannot be restored",
                details={"backup_id": backup_id},
            )

        names = [c for c in record.collection_names if collections is None or c in collections]
        documents = sum(record.get_collection(c).document_count for c in names)

        steps = [
            RollbackStep(
                RollbackStepType.PAUSE_MIGRATION,
                f"Pause migration {migration_id}",
                estimated_seconds=1,
                risk_level=RiskLevel.LOW,
            ),
            RollbackStep(
                RollbackStepType.RESTORE_FROM_BACKUP,
                f"Restore {documents} documents in {', '.join(names) or 'no collections'} "
                f"from {backup_id}",
                estimated_seconds=max(1.0, documents / RESTORE_DOCS_PER_SECOND),
                risk_level=RiskLevel.HIGH,
            ),
            RollbackStep(
                RollbackStepType.UPDATE_SCHEMA_VERSION,
                f"Record {target_version} as the applied version"
                if target_version
                else "Keep the applied version unchanged",
                estimated_seconds=1,
                risk_level=RiskLevel.MEDIUM,
            ),
        ]
        plan = RollbackPlan(
            id=f"rollback_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}",
            migration_id=migration_id,
            target_version=target_version,
            backup_id=backup_id,
            collections=names,
            steps=steps,
            prerequisites=[
                f"Backup {backup_id} is completed and verified",
                "No other writer is changing the restored collections",
            ],
            estimated_seconds=sum(s.estimated_seconds for s in steps),
            risk_level=RiskLevel.HIGH if documents > LARGE_ROLLBACK_DOCUMENTS else RiskLevel.MEDIUM,
            reason=reason,
        )
        logger.info(
            "Rollback planned",
            extra={
                "rollback_id": plan.id,
                "migration_id": migration_id,
                "backup_id": backup_id,
                "documents": documents,
            },
        )
        return plan

    async def execute_rollback(self, plan: RollbackPlan) -> RollbackResult:
        """Run the plan's steps in order, halting on a failed restore."""
        result = RollbackResult(success=False, rollback_id=plan.id, steps=plan.steps)
        self._emit(
            EventKind.ROLLBACK_STARTED,
            plan,
            f"Rollback {plan.id} of {plan.migration_id} started",
            Severity.WARNING,
        )

        for step in plan.steps:
            try:
                if step.type == RollbackStepType.PAUSE_MIGRATION:
                    await self._pause(plan, step)
                elif step.type == RollbackStepType.RESTORE_FROM_BACKUP:
                    result.restore = await self._restore(plan, step)
                    if step.status == StepStatus.FAILED:
                        result.error = step.error
                        result.recoverable = False
                        break
                else:
                    await self._record_version(plan, step)
            except DocShiftError as e:
                step.status = StepStatus.FAILED
                step.error = e.message
                result.error = e.message
                break

        result.success = all(
            s.status in (StepStatus.COMPLETED, StepStatus.SKIPPED) for s in plan.steps
        )
        if result.success:
            self._executed += 1
            await self._finish_monitor(plan)
        else:
            self._failed += 1

        logger.log(
            logging.INFO if result.success else logging.CRITICAL,
            "Rollback finished",
            extra={
                "rollback_id": plan.id,
                "migration_id": plan.migration_id,
                "success": result.success,
                "recoverable": result.recoverable,
            },
        )
        self._emit(
            EventKind.ROLLBACK_COMPLETED,
            plan,
            f"Rollback {plan.id} {'completed' if result.success else 'failed'}",
            Severity.WARNING if result.success else Severity.CRITICAL,
            success=result.success,
            recoverable=result.recoverable,
        )
        return result

    async def rollback(
        self,
        migration_id: str,
        target_version: str | None,
        backup_id: str,
        collections: list[str] | None = None,
        reason: str = "",
    ) -> RollbackResult:
        """Plan and execute in one call."""
        try:
            plan = await self.create_rollback_plan(
                migration_id, target_version, backup_id, collections, reason
            )
        except RollbackError as e:
            return RollbackResult(
                success=False, rollback_id="", error=e.message, recoverable=False
            )
        return await self.execute_rollback(plan)

    async def _pause(self, plan: RollbackPlan, step: RollbackStep) -> None:
        if self.monitoring is None:
            step.status = StepStatus.SKIPPED
            return
        try:
            await self.monitoring.pause_migration(plan.migration_id, reason=f"rollback {plan.id}")
        except MonitorNotFoundError:
            step.status = StepStatus.SKIPPED
            return
        step.status = StepStatus.COMPLETED

    async def _restore(self, plan: RollbackPlan, step: RollbackStep) -> RestoreResult:
        restore = await self.backup_manager.restore_backup(
            plan.backup_id,
            RestoreOptions(
                overwrite_existing=True,
                remove_extraneous=True,
                specific_collections=plan.collections,
            ),
        )
        if restore.success:
            step.status = StepStatus.COMPLETED
        else:
            step.status = StepStatus.FAILED
            step.error = "; ".join(restore.errors) or "Restore failed"
        return restore

    async def _record_version(self, plan: RollbackPlan, step: RollbackStep) -> None:
        if plan.target_version is None:
            step.status = StepStatus.SKIPPED
            return
        await self.registry.record_version_application(
            plan.target_version,
            applied_by="rollback",
            migration_id=plan.migration_id,
            backup_id=plan.backup_id,
            rollback_info={"rollback_id": plan.id, "reason": plan.reason},
        )
        step.status = StepStatus.COMPLETED

    async def _finish_monitor(self, plan: RollbackPlan) -> None:
        if self.monitoring is None:
            return
        try:
            await self.monitoring.stop_monitoring(plan.migration_id, MonitorStatus.ROLLED_BACK)
        except MonitorNotFoundError:
            logger.debug("No monitor to close", extra={"migration_id": plan.migration_id})

    def _emit(
        self,
        kind: EventKind,
        plan: RollbackPlan,
        message: str,
        severity: Severity,
        **data: Any,
    ) -> None:
        if self.events is not None:
            self.events.emit(
                kind, plan.migration_id, message, severity, rollback_id=plan.id, **data
            )

    @property
    def stats(self) -> dict[str, Any]:
        """Rollback statistics."""
        return {"executed": self._executed, "failed": self._failed}
