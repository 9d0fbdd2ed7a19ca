"""
Unit tests for the deployment orchestrator.

Tests cover:
- Phase sequences of every strategy
- Blue-green traffic switching and switch back
- Canary thresholds and automatic rollback
- Rollback triggers, cancellation and notifications
- Deployment records and lookup errors
"""

import asyncio
import time

import pytest

from docplatform.docshift.config import MigrationConfig
from docplatform.docshift.deployment import (
    CheckSeverity,
    DeploymentConfiguration,
    DeploymentContext,
    DeploymentOrchestrator,
    DeploymentStatus,
    NotificationConfiguration,
    PhaseStatus,
    RollbackConfiguration,
    RollbackTrigger,
    RolloutConfiguration,
    SafetyCheck,
    SafetyCheckConfiguration,
    SafetyCheckResult,
    TriggerAction,
    canary_bucket,
    canary_selector,
    canary_success_rate,
    green_collection,
)
from docplatform.docshift.errors import (
    ConfigurationError,
    DeploymentError,
    DeploymentNotFoundError,
)
from docplatform.docshift.events import EventChannel, EventKind
from docplatform.docshift.migration import (
    AddFieldOperation,
    ChangeFieldTypeOperation,
    MigrationEngine,
)
from docplatform.docshift.registry import (
    CollectionSchemaDefinition,
    FieldDefinition,
    FieldType,
    SchemaDefinition,
    VersionRegistry,
)
from docplatform.docshift.safety import BackupManager, BackupType, RollbackSystem
from docplatform.docshift.store import Document, InMemoryDocumentStore

PANELS = "solarPanels"
SEED = {
    "p1": {"serial": "A", "power": "1"},
    "p2": {"serial": "B", "power": "2"},
    "p3": {"serial": "C", "power": "abc"},
}

ROLLING_PHASES = [
    "pre_deployment_checks",
    "backup_creation",
    "migration_execution",
    "post_deployment_validation",
    "monitoring",
]


def make_schema(version, *extra_fields):
    """Helper to build a schema for the panels collection."""
    fields = (FieldDefinition("serial", FieldType.STRING, required=True), *extra_fields)
    return SchemaDefinition(
        id=f"energy_{version.replace('.', '_')}",
        version=version,
        name="Energy platform",
        description=f"Energy schema at {version}",
        collections=(CollectionSchemaDefinition(name=PANELS, fields=fields),),
    )


def deployment(strategy, environment="staging", rollout=None, **kwargs):
    """Helper for a 1.1.0 deployment with an instant canary window."""
    return DeploymentConfiguration(
        strategy=strategy,
        environment=environment,
        target_version="1.1.0",
        rollout=rollout or RolloutConfiguration(canary_duration_seconds=0),
        **kwargs,
    )


def check(fn, name="gate", **kwargs):
    return SafetyCheck(name=name, description=f"{name} check", check=fn, **kwargs)


async def failing(ctx):
    return SafetyCheckResult(False, "not ok")


def phase(result, name):
    return next(p for p in result.phases if p.name == name)


class TestDeploymentOrchestrator:
    """Tests for DeploymentOrchestrator."""

    @pytest.fixture
    async def store(self):
        store = InMemoryDocumentStore()
        await store.seed(PANELS, SEED)
        return store

    @pytest.fixture
    async def registry(self, store):
        """Create registry with 1.0.0 applied and 1.1.0 registered."""
        registry = VersionRegistry(store)
        await registry.register_schema(make_schema("1.0.0"))
        await registry.register_schema(
            make_schema("1.1.0", FieldDefinition("rate", FieldType.NUMBER))
        )
        await registry.record_version_application("1.0.0", applied_by="setup")
        return registry

    @pytest.fixture
    def engine(self, store, registry):
        engine = MigrationEngine(
            store, registry, config=MigrationConfig(retry_attempts=1, retry_delay_ms=1)
        )
        engine.register_operations(
            "1.1.0",
            [AddFieldOperation(id="add_rate", collection=PANELS, field="rate", default_value=0.5)],
        )
        return engine

    @pytest.fixture
    def backups(self, store):
        return BackupManager(store)

    @pytest.fixture
    def events(self):
        return EventChannel()

    @pytest.fixture
    def orchestrator(self, store, registry, engine, backups, events):
        rollback = RollbackSystem(backups, registry, events=events)
        return DeploymentOrchestrator(store, registry, engine, backups, rollback, events=events)

    def break_migration(self, engine):
        """Register a 1.1.0 operation that cannot convert p3."""
        engine.register_operations(
            "1.1.0",
            [
                ChangeFieldTypeOperation(
                    id="power_number", collection=PANELS, field="power", to_type=FieldType.NUMBER
                )
            ],
        )

    # ---------------------------------------------------------------------
    # Rolling update
    # ---------------------------------------------------------------------

    @pytest.mark.asyncio
    async def test_rolling_update(self, store, registry, backups, orchestrator):
        """A rolling update migrates every document and records the version."""
        result = await orchestrator.deploy(deployment("rolling_update"))

        assert result.success
        assert result.status == DeploymentStatus.COMPLETED
        assert result.phase_names == ROLLING_PHASES
        assert all(p.status == PhaseStatus.COMPLETED for p in result.phases)
        assert result.final_version == "1.1.0"
        assert result.metrics.documents_migrated == 3
        assert all(d["rate"] == 0.5 for d in store.snapshot(PANELS).values())

        [entry, _] = await registry.get_version_history()
        assert entry.version == "1.1.0"
        assert entry.applied_by == "deployment-orchestrator"
        assert entry.environment == "staging"

        backup = await backups.get_backup(phase(result, "backup_creation").output["backup_id"])
        assert backup.backup_type == BackupType.ROLLBACK_POINT
        assert backup.migration_id == result.deployment_id

    @pytest.mark.asyncio
    async def test_failed_migration_rolls_back(self, store, engine, registry, orchestrator):
        """A failing migration restores the backup and records the source version."""
        self.break_migration(engine)

        result = await orchestrator.deploy(deployment("rolling_update"))

        assert not result.success
        assert result.status == DeploymentStatus.FAILED
        assert result.final_version == "1.0.0"
        assert result.phase_names == ROLLING_PHASES[:3]
        assert phase(result, "migration_execution").status == PhaseStatus.FAILED
        assert result.errors[0].startswith("Migration ")

        info = result.rollback_info
        assert info.triggered
        assert info.success
        assert info.recoverable
        assert result.metrics.rollback_count == 1
        assert store.snapshot(PANELS) == SEED

        [entry, *_] = await registry.get_version_history()
        assert entry.version == "1.0.0"
        assert entry.applied_by == "rollback"
        assert orchestrator.stats["rollbacks"] == 1
        assert orchestrator.stats["failed"] == 1

    @pytest.mark.asyncio
    async def test_manual_rollback_policy(self, engine, orchestrator):
        """With automatic rollback off nothing is restored."""
        self.break_migration(engine)

        result = await orchestrator.deploy(
            deployment("rolling_update", rollback=RollbackConfiguration(automatic=False))
        )

        assert not result.success
        assert result.rollback_info is None
        assert result.metrics.rollback_count == 0

    @pytest.mark.asyncio
    async def test_critical_pre_check_blocks(self, store, orchestrator):
        """A failing critical pre-deployment check stops before any write."""
        checks = SafetyCheckConfiguration(pre_deployment=[check(failing)])

        result = await orchestrator.deploy(deployment("rolling_update", safety_checks=checks))

        assert not result.success
        assert result.phase_names == ["pre_deployment_checks"]
        assert result.errors == ["Critical safety check failed: gate: not ok"]
        assert not result.rollback_info.triggered
        assert result.rollback_info.reason == "Critical safety check failed: gate: not ok"
        assert result.metrics.rollback_count == 0
        assert store.snapshot(PANELS) == SEED

    @pytest.mark.asyncio
    async def test_warning_check_does_not_block(self, orchestrator):
        """Warning checks only add warnings."""
        checks = SafetyCheckConfiguration(
            post_deployment=[check(failing, name="latency", severity=CheckSeverity.WARNING)]
        )

        result = await orchestrator.deploy(deployment("rolling_update", safety_checks=checks))

        assert result.success
        assert "Safety check latency failed: not ok" in result.warnings

    @pytest.mark.asyncio
    async def test_rollback_trigger(self, store, orchestrator):
        """A ROLLBACK trigger above its threshold fails and restores the deployment."""
        policy = RollbackConfiguration(triggers=[RollbackTrigger("documents_migrated", 0.0)])

        result = await orchestrator.deploy(deployment("rolling_update", rollback=policy))

        assert not result.success
        assert phase(result, "monitoring").status == PhaseStatus.FAILED
        assert "documents_migrated=3 exceeded threshold 0.0" in result.errors[0]
        assert result.rollback_info.success
        assert store.snapshot(PANELS) == SEED

    @pytest.mark.asyncio
    async def test_alert_trigger(self, events, orchestrator):
        """An ALERT trigger warns without failing."""
        policy = RollbackConfiguration(
            triggers=[RollbackTrigger("documents_migrated", 0.0, TriggerAction.ALERT)]
        )

        result = await orchestrator.deploy(deployment("rolling_update", rollback=policy))

        assert result.success
        assert any("documents_migrated=3" in w for w in result.warnings)
        [alert] = events.recent(EventKind.ALERT_RAISED, source=result.deployment_id)
        assert alert.data["metric"] == "documents_migrated"

    @pytest.mark.asyncio
    async def test_unknown_trigger_metric(self, orchestrator):
        """Triggers must name a deployment metric."""
        policy = RollbackConfiguration(triggers=[RollbackTrigger("latency_p99", 1.0)])

        with pytest.raises(ConfigurationError, match="not a deployment metric"):
            await orchestrator.create_deployment(deployment("rolling_update", rollback=policy))

    @pytest.mark.asyncio
    async def test_missing_source_version(self):
        """Without history or an explicit source the deployment fails."""
        store = InMemoryDocumentStore()
        registry = VersionRegistry(store)
        backups = BackupManager(store)
        orchestrator = DeploymentOrchestrator(
            store,
            registry,
            MigrationEngine(store, registry),
            backups,
            RollbackSystem(backups, registry),
        )

        result = await orchestrator.deploy(deployment("rolling_update"))

        assert not result.success
        assert result.phases == []
        assert "No applied schema version recorded" in result.errors[0]

    # ---------------------------------------------------------------------
    # Immediate and scheduled
    # ---------------------------------------------------------------------

    @pytest.mark.asyncio
    async def test_immediate(self, orchestrator):
        """Immediate deployments skip validation and monitoring."""
        result = await orchestrator.deploy(deployment("immediate", environment="development"))

        assert result.success
        assert result.phase_names == [
            "pre_deployment_checks",
            "backup_creation",
            "immediate_migration",
        ]

    @pytest.mark.asyncio
    async def test_immediate_refused_in_production(self, store, orchestrator):
        """Production never takes an immediate deployment."""
        result = await orchestrator.deploy(deployment("immediate", environment="production"))

        assert not result.success
        assert result.phases == []
        assert "not allowed in production" in result.errors[0]
        assert not result.rollback_info.triggered
        assert store.snapshot(PANELS) == SEED

    @pytest.mark.asyncio
    async def test_scheduled(self, orchestrator):
        """Scheduled deployments wait, then run a rolling update."""
        rollout = RolloutConfiguration(scheduled_time=time.time() - 1)

        result = await orchestrator.deploy(deployment("scheduled", rollout=rollout))

        assert result.success
        assert result.phase_names == ["scheduled_wait", *ROLLING_PHASES]

    @pytest.mark.asyncio
    async def test_scheduled_requires_time(self, orchestrator):
        """A scheduled deployment without a start time is rejected."""
        with pytest.raises(ConfigurationError, match="scheduled_time"):
            await orchestrator.create_deployment(deployment("scheduled"))

    # ---------------------------------------------------------------------
    # Blue-green
    # ---------------------------------------------------------------------

    @pytest.mark.asyncio
    async def test_blue_green(self, store, registry, orchestrator):
        """The green copy is migrated and traffic switched to it."""
        result = await orchestrator.deploy(deployment("blue_green"))

        assert result.success
        assert result.phase_names == [
            "pre_deployment_checks",
            "green_environment_setup",
            "green_migration",
            "green_warmup",
            "traffic_switch",
            "post_switch_monitoring",
        ]
        green = green_collection(PANELS, result.deployment_id)
        assert store.snapshot(PANELS) == SEED
        assert all(d["rate"] == 0.5 for d in store.snapshot(green).values())
        assert await orchestrator.router.resolve(PANELS) == green
        assert str(await registry.get_applied_version()) == "1.1.0"
        assert phase(result, "green_environment_setup").output["copied"] == {green: 3}

    @pytest.mark.asyncio
    async def test_blue_green_switch_back(self, registry, orchestrator):
        """A failure after the switch points traffic back at blue."""
        policy = RollbackConfiguration(triggers=[RollbackTrigger("documents_migrated", 0.0)])

        result = await orchestrator.deploy(deployment("blue_green", rollback=policy))

        assert not result.success
        assert result.rollback_info.success
        assert result.rollback_info.rollback_id == f"switchback_{result.deployment_id}"
        assert await orchestrator.router.resolve(PANELS) == PANELS
        [entry, *_] = await registry.get_version_history()
        assert entry.version == "1.0.0"
        assert entry.applied_by == "rollback"

    @pytest.mark.asyncio
    async def test_blue_green_failure_before_switch(self, engine, registry, orchestrator):
        """A green migration failure leaves blue serving and history untouched."""
        self.break_migration(engine)

        result = await orchestrator.deploy(deployment("blue_green"))

        assert not result.success
        assert phase(result, "green_migration").status == PhaseStatus.FAILED
        assert result.rollback_info.success
        assert await orchestrator.router.resolve(PANELS) == PANELS
        assert str(await registry.get_applied_version()) == "1.0.0"

    # ---------------------------------------------------------------------
    # Canary
    # ---------------------------------------------------------------------

    def test_canary_buckets(self):
        """Buckets are stable and the selector honours the percentage."""
        assert canary_bucket("p1") == canary_bucket("p1")
        assert all(0 <= canary_bucket(f"p{i}") < 100 for i in range(200))
        doc = Document(PANELS, "p1", {})
        assert canary_selector(100)(doc)
        assert not canary_selector(0)(doc)

    @pytest.mark.asyncio
    async def test_default_probe(self):
        """Without a migration the default probe reports full health."""
        ctx = DeploymentContext(deployment_id="d1", configuration=deployment("canary"))

        assert await canary_success_rate(ctx) == 100.0

    @pytest.mark.asyncio
    async def test_canary(self, store, orchestrator):
        """A healthy canary rolls out to every document."""
        result = await orchestrator.deploy(deployment("canary"))

        assert result.success
        assert result.phase_names == [
            "pre_deployment_checks",
            "backup_creation",
            "canary_deployment",
            "canary_monitoring",
            "full_rollout",
            "final_validation",
        ]
        assert phase(result, "canary_monitoring").output["observations"] == [100.0]
        assert all(d["rate"] == 0.5 for d in store.snapshot(PANELS).values())

    @pytest.mark.asyncio
    async def test_canary_below_threshold(self, store, orchestrator):
        """A canary below threshold never reaches full rollout and is rolled back."""

        async def degraded(ctx):
            return 98.0

        orchestrator.health_probe = degraded

        result = await orchestrator.deploy(deployment("canary"))

        assert not result.success
        assert "full_rollout" not in result.phase_names
        assert result.errors[0] == "Canary success rate 98.00% below threshold 99.50%"
        assert result.rollback_info.triggered
        assert result.rollback_info.success
        assert store.snapshot(PANELS) == SEED

    # ---------------------------------------------------------------------
    # Cancellation and lookup
    # ---------------------------------------------------------------------

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, orchestrator):
        """A created deployment cancelled before execution never runs."""
        deployment_id = await orchestrator.create_deployment(deployment("rolling_update"))

        assert await orchestrator.cancel_deployment(deployment_id)
        result = await orchestrator.execute_deployment(deployment_id)

        assert result.status == DeploymentStatus.CANCELLED
        assert result.phases == []
        assert orchestrator.stats["cancelled"] == 1
        record = await orchestrator.get_deployment_status(deployment_id)
        assert record["status"] == "cancelled"

    @pytest.mark.asyncio
    async def test_cancel_while_running(self, store, events, orchestrator):
        """Cancellation is honoured at the next phase boundary without rollback."""

        async def cancel_self(ctx):
            await orchestrator.cancel_deployment(ctx.deployment_id)
            return SafetyCheckResult(True, "ok")

        checks = SafetyCheckConfiguration(pre_deployment=[check(cancel_self)])

        result = await orchestrator.deploy(deployment("rolling_update", safety_checks=checks))

        assert result.status == DeploymentStatus.CANCELLED
        assert result.phase_names == ["pre_deployment_checks"]
        expected = f"Deployment {result.deployment_id} cancelled before backup_creation"
        assert result.errors == [expected]
        assert result.rollback_info is None
        assert store.snapshot(PANELS) == SEED
        kinds = [e.kind for e in events.recent(source=result.deployment_id)]
        assert kinds[-1] == EventKind.DEPLOYMENT_CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_unknown(self, orchestrator):
        """Cancelling an unknown deployment raises."""
        with pytest.raises(DeploymentNotFoundError):
            await orchestrator.cancel_deployment("deployment_missing")

    @pytest.mark.asyncio
    async def test_cancel_finished(self, orchestrator):
        """A finished deployment cannot be cancelled."""
        result = await orchestrator.deploy(deployment("rolling_update"))

        assert not await orchestrator.cancel_deployment(result.deployment_id)

    @pytest.mark.asyncio
    async def test_execute_unknown(self, orchestrator):
        """Executing an unknown id raises DeploymentNotFoundError."""
        with pytest.raises(DeploymentNotFoundError, match="not found"):
            await orchestrator.execute_deployment("deployment_missing")

    @pytest.mark.asyncio
    async def test_execute_twice(self, orchestrator):
        """A running deployment cannot be executed again."""
        started = asyncio.Event()
        release = asyncio.Event()

        async def hold(ctx):
            started.set()
            await release.wait()
            return SafetyCheckResult(True, "ok")

        checks = SafetyCheckConfiguration(pre_deployment=[check(hold)])
        deployment_id = await orchestrator.create_deployment(
            deployment("rolling_update", safety_checks=checks)
        )
        task = asyncio.create_task(orchestrator.execute_deployment(deployment_id))
        await asyncio.wait_for(started.wait(), timeout=1)

        with pytest.raises(DeploymentError, match="already running"):
            await orchestrator.execute_deployment(deployment_id)

        release.set()
        result = await asyncio.wait_for(task, timeout=5)
        assert result.success

    # ---------------------------------------------------------------------
    # Records and notifications
    # ---------------------------------------------------------------------

    @pytest.mark.asyncio
    async def test_deployment_records(self, orchestrator):
        """Records are persisted and listed newest first."""
        first = await orchestrator.deploy(deployment("rolling_update"))
        second = await orchestrator.deploy(deployment("immediate", environment="development"))

        record = await orchestrator.get_deployment_status(first.deployment_id)
        assert record["status"] == "completed"
        assert record["result"]["final_version"] == "1.1.0"
        assert record["configuration"]["strategy"] == "rolling_update"

        listed = await orchestrator.list_deployments()
        assert [r["deployment_id"] for r in listed] == [
            second.deployment_id,
            first.deployment_id,
        ]
        staging = await orchestrator.list_deployments("staging")
        assert [r["deployment_id"] for r in staging] == [first.deployment_id]
        assert await orchestrator.get_deployment_status("deployment_missing") is None

    @pytest.mark.asyncio
    async def test_lifecycle_events(self, events, orchestrator):
        """Start, phase and completion events are published."""
        result = await orchestrator.deploy(deployment("immediate", environment="development"))

        kinds = [e.kind for e in events.recent(source=result.deployment_id)]
        assert kinds[0] == EventKind.DEPLOYMENT_STARTED
        assert kinds.count(EventKind.DEPLOYMENT_PHASE) == 6
        assert kinds[-1] == EventKind.DEPLOYMENT_COMPLETED

    @pytest.mark.asyncio
    async def test_notification_flags(self, events, orchestrator):
        """Disabled notifications suppress lifecycle events but not phase events."""
        config = deployment(
            "immediate",
            environment="development",
            notifications=NotificationConfiguration(on_start=False, on_success=False),
        )

        result = await orchestrator.deploy(config)

        kinds = {e.kind for e in events.recent(source=result.deployment_id)}
        assert kinds == {EventKind.DEPLOYMENT_PHASE}

    @pytest.mark.asyncio
    async def test_stats(self, orchestrator):
        """Counts reflect final statuses."""
        await orchestrator.deploy(deployment("rolling_update"))

        stats = orchestrator.stats
        assert stats["created"] == 1
        assert stats["completed"] == 1
        assert stats["active"] == 0
