"""
Unit tests for the rollback system.

Tests cover:
- Plan construction and risk levels
- Restoring collections to their backed-up state
- Version history entries written by rollbacks
- Monitor status after a rollback
- Failures that leave the system unrecoverable
"""

import pytest

from docplatform.docshift.config import MonitoringConfig
from docplatform.docshift.errors import RollbackError
from docplatform.docshift.events import EventChannel, EventKind
from docplatform.docshift.registry import VersionRegistry
from docplatform.docshift.safety import (
    BackupManager,
    MigrationMonitoringSystem,
    MonitorStatus,
    RiskLevel,
    RollbackStepType,
    RollbackSystem,
    StepStatus,
    data_collection,
)
from docplatform.docshift.store import InMemoryDocumentStore

PANELS = {
    "p1": {"serial": "A", "power": 4.2},
    "p2": {"serial": "B", "power": 5.0},
}


class TestRollbackSystem:
    """Tests for RollbackSystem."""

    @pytest.fixture
    async def store(self):
        store = InMemoryDocumentStore()
        await store.seed("panels", PANELS)
        return store

    @pytest.fixture
    def backups(self, store):
        return BackupManager(store)

    @pytest.fixture
    def registry(self, store):
        return VersionRegistry(store)

    @pytest.fixture
    def monitoring(self, store):
        return MigrationMonitoringSystem(store, MonitoringConfig(sample_interval_seconds=0))

    @pytest.fixture
    def events(self):
        return EventChannel()

    @pytest.fixture
    def rollback(self, backups, registry, monitoring, events):
        """Create rollback system with every collaborator."""
        return RollbackSystem(backups, registry, monitoring, events)

    async def damage(self, store):
        """Simulate a migration that changed, added and removed documents."""
        group = store.write_group()
        group.update("panels", "p1", {"power": 4200, "powerUnit": "W"})
        group.delete("panels", "p2")
        group.set("panels", "p3", {"serial": "C"})
        await store.commit(group)

    @pytest.mark.asyncio
    async def test_plan_steps(self, backups, rollback):
        """Plans pause, restore, then record the version."""
        backup_id = await backups.create_backup("m1", ["panels"])

        plan = await rollback.create_rollback_plan("m1", "1.0.0", backup_id, reason="bad data")

        assert [s.type for s in plan.steps] == [
            RollbackStepType.PAUSE_MIGRATION,
            RollbackStepType.RESTORE_FROM_BACKUP,
            RollbackStepType.UPDATE_SCHEMA_VERSION,
        ]
        assert plan.collections == ["panels"]
        assert plan.risk_level == RiskLevel.MEDIUM
        assert "Restore 2 documents in panels" in plan.steps[1].description
        assert plan.estimated_seconds == 3

    @pytest.mark.asyncio
    async def test_large_restore_is_high_risk(self, store, backups, rollback):
        """More than 10,000 documents makes the plan high risk."""
        await store.seed("readings", {f"r{i}": {"v": i} for i in range(10_001)})
        backup_id = await backups.create_backup("m1", ["readings"])

        plan = await rollback.create_rollback_plan("m1", None, backup_id)

        assert plan.risk_level == RiskLevel.HIGH

    @pytest.mark.asyncio
    async def test_plan_missing_backup(self, rollback):
        """Planning against a missing backup raises RollbackError."""
        with pytest.raises(RollbackError, match="not found"):
            await rollback.create_rollback_plan("m1", "1.0.0", "nope")

    @pytest.mark.asyncio
    async def test_rollback_restores_state(self, store, backups, registry, rollback, events):
        """A rollback returns the collections to the backup exactly."""
        backup_id = await backups.create_backup("m1", ["panels"])
        await self.damage(store)

        result = await rollback.rollback("m1", "1.0.0", backup_id, reason="bad data")

        assert result.success
        assert result.recoverable
        assert store.snapshot("panels") == PANELS
        assert result.restore.removed_documents == 1

        [entry] = await registry.get_version_history()
        assert entry.version == "1.0.0"
        assert entry.applied_by == "rollback"
        assert entry.rollback_info == {"rollback_id": result.rollback_id, "reason": "bad data"}

        kinds = [e.kind for e in events.recent(source="m1")]
        assert EventKind.ROLLBACK_STARTED in kinds
        assert kinds[-1] == EventKind.ROLLBACK_COMPLETED
        assert rollback.stats == {"executed": 1, "failed": 0}

    @pytest.mark.asyncio
    async def test_pause_skipped_without_monitor(self, backups, rollback):
        """With no live monitor the pause step is skipped."""
        backup_id = await backups.create_backup("m1", ["panels"])

        result = await rollback.rollback("m1", "1.0.0", backup_id)

        assert result.success
        assert result.steps[0].status == StepStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_monitor_marked_rolled_back(self, backups, monitoring, rollback):
        """A live monitor is paused, then ends ROLLED_BACK."""
        await monitoring.start_monitoring("m1")
        backup_id = await backups.create_backup("m1", ["panels"])

        result = await rollback.rollback("m1", "1.0.0", backup_id)

        assert result.steps[0].status == StepStatus.COMPLETED
        monitor = await monitoring.get_monitor("m1")
        assert monitor.status == MonitorStatus.ROLLED_BACK

    @pytest.mark.asyncio
    async def test_completed_monitor_marked_rolled_back(self, store, backups, monitoring, rollback):
        """Rolling back a finished run updates its stored monitor."""
        await monitoring.start_monitoring("m1")
        await monitoring.stop_monitoring("m1", MonitorStatus.COMPLETED)
        backup_id = await backups.create_backup("m1", ["panels"])

        result = await rollback.rollback("m1", "1.0.0", backup_id)

        assert result.success
        assert result.steps[0].status == StepStatus.SKIPPED
        assert monitoring.stats["monitors"] == 0
        assert store.snapshot("_migration_monitoring")["m1"]["status"] == "rolled_back"

    @pytest.mark.asyncio
    async def test_no_target_version_keeps_history(self, backups, registry, rollback):
        """A None target version skips the record step."""
        backup_id = await backups.create_backup("m1", ["panels"])

        result = await rollback.rollback("m1", None, backup_id)

        assert result.success
        assert result.steps[2].status == StepStatus.SKIPPED
        assert await registry.get_version_history() == []

    @pytest.mark.asyncio
    async def test_failed_restore_is_unrecoverable(self, store, backups, registry, rollback):
        """A restore that fails halts the rollback before the version step."""
        backup_id = await backups.create_backup("m1", ["panels"])
        group = store.write_group()
        group.delete(data_collection(backup_id, "panels"), "p1")
        await store.commit(group)

        result = await rollback.rollback("m1", "1.0.0", backup_id)

        assert not result.success
        assert not result.recoverable
        assert "failed verification" in result.error
        assert result.steps[2].status == StepStatus.PENDING
        assert await registry.get_version_history() == []
        assert rollback.stats["failed"] == 1

    @pytest.mark.asyncio
    async def test_rollback_with_missing_backup(self, rollback):
        """rollback() reports a planning failure instead of raising."""
        result = await rollback.rollback("m1", "1.0.0", "nope")

        assert not result.success
        assert not result.recoverable
        assert result.rollback_id == ""
