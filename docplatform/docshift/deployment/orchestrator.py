"""
Deployment orchestration.

A deployment moves an environment from its applied schema version to a
target version using one strategy:

    rolling_update  pre_deployment_checks, backup_creation,
                    migration_execution, post_deployment_validation,
                    monitoring
    blue_green      pre_deployment_checks, green_environment_setup,
                    green_migration, green_warmup, traffic_switch,
                    post_switch_monitoring
    canary          pre_deployment_checks, backup_creation,
                    canary_deployment, canary_monitoring, full_rollout,
                    final_validation
    immediate       pre_deployment_checks, backup_creation,
                    immediate_migration
    scheduled       scheduled_wait, then the rolling_update phases

Deployment status moves created -> running -> completed | failed |
cancelled. Each phase moves pending -> running -> completed | failed |
skipped and is persisted as it changes.

Invariants:
    - execute_deployment never raises for DocShiftError; failures land in
      the DeploymentResult
    - A failing critical pre-deployment check stops the run before any
      document is written
    - A canary below its success threshold never reaches full_rollout
    - Automatic rollback only runs when documents may have changed
    - Cancellation is honoured between phases and between migration
      pages; an in-flight write group always commits first

How to change safely:
    - New strategies compose the existing phase actions through _phase
    - Keep phase names stable; dashboards and tests match on them
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

from ..errors import (
    CanaryThresholdError,
    ConfigurationError,
    DeploymentError,
    DeploymentNotFoundError,
    DocShiftError,
    MigrationCancelledError,
)
from ..events import EventChannel, EventKind, Severity
from ..migration.context import DocumentSelector, MigrationOptions, MigrationResult
from ..migration.engine import MigrationEngine
from ..registry.registry import VersionRegistry
from ..store.base import Document, DocumentStore, FieldFilter
from ..safety.backup import BackupManager, BackupType, iter_collection
from ..safety.rollback import RollbackSystem
from .checks import run_safety_checks
from .router import TrafficRouter
from .types import (
    DeploymentConfiguration,
    DeploymentContext,
    DeploymentEnvironment,
    DeploymentMetrics,
    DeploymentPhase,
    DeploymentResult,
    DeploymentStatus,
    DeploymentStrategy,
    PhaseStatus,
    RollbackInfo,
    TriggerAction,
)

logger = logging.getLogger(__name__)

DEPLOYMENTS_COLLECTION = "_schema_deployments"
GREEN_MARKER = "__green_"

HealthProbe = Callable[[DeploymentContext], Awaitable[float]]
PhaseAction = Callable[[DeploymentContext], Awaitable[None]]


def canary_bucket(doc_id: str) -> int:
    """Stable bucket in [0, 100) for a document id."""
    digest = hashlib.sha256(doc_id.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") % 100


def canary_selector(percent: float) -> DocumentSelector:
    """Select the documents whose bucket falls below ``percent``."""

    def select(document: Document) -> bool:
        return canary_bucket(document.id) < percent

    return select


def green_collection(collection: str, deployment_id: str) -> str:
    return f"{collection}{GREEN_MARKER}{deployment_id}"


async def canary_success_rate(ctx: DeploymentContext) -> float:
    """Default health probe: document success rate of the latest run."""
    last = ctx.last_migration
    return last.stats.success_rate if last is not None else 100.0


class DeploymentOrchestrator:
    """Runs schema deployments with safety checks and automatic rollback.

    Example:
        >>> orchestrator = DeploymentOrchestrator(store, registry, engine, backups, rollback)
        >>> result = await orchestrator.deploy(
        ...     DeploymentConfiguration(
        ...         strategy=DeploymentStrategy.CANARY,
        ...         environment=DeploymentEnvironment.STAGING,
        ...         target_version="1.1.0",
        ...     )
        ... )
    """

    def __init__(
        self,
        store: DocumentStore,
        registry: VersionRegistry,
        engine: MigrationEngine,
        backup_manager: BackupManager,
        rollback_system: RollbackSystem,
        events: EventChannel | None = None,
        router: TrafficRouter | None = None,
        health_probe: HealthProbe | None = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.engine = engine
        self.backup_manager = backup_manager
        self.rollback_system = rollback_system
        self.events = events
        self.router = router or TrafficRouter(store)
        self.health_probe = health_probe or canary_success_rate
        self._contexts: dict[str, DeploymentContext] = {}
        self._strategies: dict[DeploymentStrategy, PhaseAction] = {
            DeploymentStrategy.ROLLING_UPDATE: self._rolling_update,
            DeploymentStrategy.BLUE_GREEN: self._blue_green,
            DeploymentStrategy.CANARY: self._canary,
            DeploymentStrategy.IMMEDIATE: self._immediate,
            DeploymentStrategy.SCHEDULED: self._scheduled,
        }
        self._counts = {status: 0 for status in DeploymentStatus}
        self._rollbacks = 0

    # ---------------------------------------------------------------------
    # Lifecycle
    # ---------------------------------------------------------------------

    async def create_deployment(self, configuration: DeploymentConfiguration) -> str:
        """Persist a deployment in the created state and return its id.

        Raises:
            ConfigurationError: If a rollback trigger names an unknown metric
                or a scheduled deployment has no scheduled_time
        """
        metrics = DeploymentMetrics()
        for trigger in configuration.rollback.triggers:
            if not isinstance(getattr(metrics, trigger.metric, None), (int, float)):
                raise ConfigurationError(
                    f"Rollback trigger metric '{trigger.metric}' is not a deployment metric",
                    details={"metric": trigger.metric},
                )
        if (
            configuration.strategy == DeploymentStrategy.SCHEDULED
            and configuration.rollout.scheduled_time is None
        ):
            raise ConfigurationError("Scheduled deployments need rollout.scheduled_time")

        deployment_id = (
            f"deployment_{configuration.environment.value}_{int(time.time() * 1000)}"
            f"_{uuid.uuid4().hex[:4]}"
        )
        ctx = DeploymentContext(deployment_id=deployment_id, configuration=configuration)
        self._contexts[deployment_id] = ctx
        self._counts[DeploymentStatus.CREATED] += 1
        await self._save(ctx)
        logger.info(
            "Deployment created",
            extra={
                "deployment_id": deployment_id,
                "strategy": configuration.strategy.value,
                "environment": configuration.environment.value,
                "target_version": configuration.target_version,
            },
        )
        return deployment_id

    async def execute_deployment(self, deployment_id: str) -> DeploymentResult:
        """Run a created deployment to completion.

        Raises:
            DeploymentNotFoundError: If no such deployment was created here
            DeploymentError: If the deployment already ran
        """
        ctx = self._contexts.get(deployment_id)
        if ctx is None:
            raise DeploymentNotFoundError(
                f"Deployment {deployment_id} not found", details={"deployment_id": deployment_id}
            )
        if ctx.status == DeploymentStatus.CANCELLED:
            self._contexts.pop(deployment_id, None)
            return self._result(ctx, None)
        if ctx.status != DeploymentStatus.CREATED:
            raise DeploymentError(
                f"Deployment {deployment_id} is already {ctx.status.value}",
                details={"deployment_id": deployment_id},
            )

        config = ctx.configuration
        ctx.status = DeploymentStatus.RUNNING
        ctx.started_at = time.time()
        await self._save(ctx)
        self._notify(
            ctx,
            "on_start",
            EventKind.DEPLOYMENT_STARTED,
            f"Deployment of {config.target_version} to {config.environment.value} started",
        )

        rollback_info: RollbackInfo | None = None
        try:
            await self._resolve(ctx)
            await self._strategies[config.strategy](ctx)
            ctx.status = DeploymentStatus.COMPLETED
        except MigrationCancelledError as e:
            ctx.status = DeploymentStatus.CANCELLED
            ctx.errors.append(e.message)
        except DocShiftError as e:
            ctx.status = DeploymentStatus.FAILED
            ctx.errors.append(e.message)
            logger.error(
                "Deployment failed",
                extra={
                    "deployment_id": deployment_id,
                    "phase": ctx.current_phase.name if ctx.current_phase else None,
                    "error": e.message,
                },
            )
            rollback_info = await self._auto_rollback(ctx, e.message)
        finally:
            self._contexts.pop(deployment_id, None)

        result = self._result(ctx, rollback_info)
        self._counts[ctx.status] += 1
        await self._save(ctx, result)
        self._announce(ctx, result)
        return result

    async def deploy(self, configuration: DeploymentConfiguration) -> DeploymentResult:
        """Create and execute in one call."""
        deployment_id = await self.create_deployment(configuration)
        return await self.execute_deployment(deployment_id)

    async def cancel_deployment(self, deployment_id: str) -> bool:
        """Stop a created or running deployment at its next boundary.

        Returns:
            False if the deployment already finished

        Raises:
            DeploymentNotFoundError: If no record exists
        """
        ctx = self._contexts.get(deployment_id)
        if ctx is None:
            if await self.store.get(DEPLOYMENTS_COLLECTION, deployment_id) is None:
                raise DeploymentNotFoundError(
                    f"Deployment {deployment_id} not found",
                    details={"deployment_id": deployment_id},
                )
            return False

        ctx.cancel_event.set()
        logger.warning("Deployment cancellation requested", extra={"deployment_id": deployment_id})
        if ctx.status == DeploymentStatus.CREATED:
            ctx.status = DeploymentStatus.CANCELLED
            ctx.errors.append(f"Deployment {deployment_id} cancelled before it started")
            self._counts[DeploymentStatus.CANCELLED] += 1
            result = self._result(ctx, None)
            await self._save(ctx, result)
            self._announce(ctx, result)
        return True

    async def get_deployment_status(self, deployment_id: str) -> dict[str, Any] | None:
        ctx = self._contexts.get(deployment_id)
        if ctx is not None:
            return self._record(ctx)
        doc = await self.store.get(DEPLOYMENTS_COLLECTION, deployment_id)
        return doc.data if doc else None

    async def list_deployments(
        self, environment: DeploymentEnvironment | str | None = None
    ) -> list[dict[str, Any]]:
        """Deployment records, newest first."""
        filters = []
        if environment is not None:
            env = (
                DeploymentEnvironment(environment) if isinstance(environment, str) else environment
            )
            filters.append(FieldFilter("environment", "==", env.value))
        page = await self.store.query(
            DEPLOYMENTS_COLLECTION, filters=filters, order_by="created_at", descending=True
        )
        return [doc.data for doc in page.documents]

    # ---------------------------------------------------------------------
    # Strategies
    # ---------------------------------------------------------------------

    async def _rolling_update(self, ctx: DeploymentContext) -> None:
        batch_size = ctx.configuration.rollout.batch_size
        await self._phase(ctx, "pre_deployment_checks", self._pre_checks)
        await self._phase(ctx, "backup_creation", self._backup)
        await self._phase(ctx, "migration_execution", lambda c: self._migrate(c, batch_size))
        await self._phase(ctx, "post_deployment_validation", self._post_checks)
        await self._phase(ctx, "monitoring", self._monitor)

    async def _blue_green(self, ctx: DeploymentContext) -> None:
        await self._phase(ctx, "pre_deployment_checks", self._pre_checks)
        await self._phase(ctx, "green_environment_setup", self._setup_green)
        await self._phase(ctx, "green_migration", self._migrate_green)
        await self._phase(ctx, "green_warmup", self._warmup)
        await self._phase(ctx, "traffic_switch", self._switch_traffic)
        await self._phase(ctx, "post_switch_monitoring", self._monitor)

    async def _canary(self, ctx: DeploymentContext) -> None:
        rollout = ctx.configuration.rollout
        selector = canary_selector(rollout.canary_traffic_percent)
        await self._phase(ctx, "pre_deployment_checks", self._pre_checks)
        await self._phase(ctx, "backup_creation", self._backup)
        await self._phase(
            ctx,
            "canary_deployment",
            lambda c: self._migrate(
                c, rollout.canary_batch_size, selector=selector, record_version=False
            ),
        )
        await self._phase(ctx, "canary_monitoring", self._observe_canary)
        await self._phase(
            ctx, "full_rollout", lambda c: self._migrate(c, rollout.full_rollout_batch_size)
        )
        await self._phase(ctx, "final_validation", self._post_checks)

    async def _immediate(self, ctx: DeploymentContext) -> None:
        if ctx.configuration.environment == DeploymentEnvironment.PRODUCTION:
            raise ConfigurationError(
                "Immediate deployments are not allowed in production",
                details={"deployment_id": ctx.deployment_id},
            )
        batch_size = ctx.configuration.rollout.batch_size
        await self._phase(ctx, "pre_deployment_checks", self._pre_checks)
        await self._phase(ctx, "backup_creation", self._backup)
        await self._phase(ctx, "immediate_migration", lambda c: self._migrate(c, batch_size))

    async def _scheduled(self, ctx: DeploymentContext) -> None:
        await self._phase(ctx, "scheduled_wait", self._wait_for_schedule)
        await self._rolling_update(ctx)

    # ---------------------------------------------------------------------
    # Phase actions
    # ---------------------------------------------------------------------

    async def _phase(self, ctx: DeploymentContext, name: str, action: PhaseAction) -> None:
        if ctx.cancelled:
            raise MigrationCancelledError(f"Deployment {ctx.deployment_id} cancelled before {name}")
        phase = DeploymentPhase(name=name, status=PhaseStatus.RUNNING, started_at=time.time())
        ctx.phases.append(phase)
        ctx.current_phase = phase
        await self._save(ctx)
        self._emit_phase(ctx, phase)

        try:
            await action(ctx)
        except DocShiftError as e:
            phase.status = PhaseStatus.FAILED
            phase.error = e.message
            phase.ended_at = time.time()
            self._emit_phase(ctx, phase)
            raise

        if phase.status == PhaseStatus.RUNNING:
            phase.status = PhaseStatus.COMPLETED
        phase.progress = 100.0
        phase.ended_at = time.time()
        await self._save(ctx)
        self._emit_phase(ctx, phase)

    async def _resolve(self, ctx: DeploymentContext) -> None:
        """Fix the source version and the collections the deployment touches."""
        config = ctx.configuration
        source = config.source_version
        if source is None:
            applied = await self.registry.get_applied_version()
            if applied is None:
                raise ConfigurationError(
                    "No applied schema version recorded; set source_version",
                    details={"deployment_id": ctx.deployment_id},
                )
            source = str(applied)
        ctx.source_version = source

        _, ordered = await self.engine.plan_operations(source, config.target_version)
        ctx.collections = list(config.collections or sorted({op.collection for op in ordered}))
        ctx.active_collections = {c: await self.router.resolve(c) for c in ctx.collections}

    async def _pre_checks(self, ctx: DeploymentContext) -> None:
        outcomes = await run_safety_checks(ctx.configuration.safety_checks.pre_deployment, ctx)
        self._phase_output(ctx)["checks"] = {c.name: r.passed for c, r in outcomes}

    async def _post_checks(self, ctx: DeploymentContext) -> None:
        outcomes = await run_safety_checks(ctx.configuration.safety_checks.post_deployment, ctx)
        self._phase_output(ctx)["checks"] = {c.name: r.passed for c, r in outcomes}

    async def _backup(self, ctx: DeploymentContext) -> None:
        physical = list(ctx.active_collections.values())
        if not physical:
            self._skip_phase(ctx, "No collections to back up")
            return
        ctx.backup_id = await self.backup_manager.create_backup(
            ctx.deployment_id, physical, backup_type=BackupType.ROLLBACK_POINT
        )
        self._phase_output(ctx)["backup_id"] = ctx.backup_id

    async def _migrate(
        self,
        ctx: DeploymentContext,
        batch_size: int,
        selector: DocumentSelector | None = None,
        collection_map: dict[str, str] | None = None,
        record_version: bool = True,
    ) -> MigrationResult:
        config = ctx.configuration
        options = MigrationOptions.from_config(
            self.engine.config,
            batch_size=batch_size,
            concurrency=config.rollout.max_concurrency,
            backup_before_migration=False,
            document_selector=selector,
            collection_map=collection_map if collection_map is not None else ctx.active_collections,
            record_version=record_version,
            applied_by=config.actor,
            environment=config.environment.value,
        )
        result = await self.engine.execute_migration(
            ctx.source_version,
            config.target_version,
            options,
            cancel_event=ctx.cancel_event,
        )
        self._absorb(ctx, result)
        self._phase_output(ctx).update(
            migration_id=result.migration_id,
            documents_processed=result.stats.documents_processed,
            documents_updated=result.stats.documents_updated,
            documents_skipped=result.stats.documents_skipped,
        )
        if result.cancelled:
            raise MigrationCancelledError(
                f"Deployment {ctx.deployment_id} cancelled during migration {result.migration_id}"
            )
        if not result.success:
            raise DeploymentError(
                f"Migration {result.migration_id} failed: " + "; ".join(result.errors),
                details={"migration_id": result.migration_id},
            )
        return result

    def _absorb(self, ctx: DeploymentContext, result: MigrationResult) -> None:
        ctx.migrations.append(result)
        ctx.warnings.extend(result.warnings)
        metrics = ctx.metrics
        metrics.documents_migrated += result.stats.documents_updated
        metrics.successful_operations += result.stats.operations_completed
        metrics.failed_operations += result.stats.errors_encountered
        processed = sum(r.stats.documents_processed for r in ctx.migrations)
        failed = sum(r.stats.errors_encountered for r in ctx.migrations)
        metrics.error_rate = failed / processed if processed else 0.0

    async def _observe_canary(self, ctx: DeploymentContext) -> None:
        """Probe the canary until its duration ends or it drops below threshold."""
        rollout = ctx.configuration.rollout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + rollout.canary_duration_seconds
        observations: list[float] = []
        self._phase_output(ctx)["observations"] = observations

        while True:
            rate = await self.health_probe(ctx)
            observations.append(rate)
            logger.info(
                "Canary observed",
                extra={
                    "deployment_id": ctx.deployment_id,
                    "success_rate": rate,
                    "threshold": rollout.canary_success_threshold,
                },
            )
            if rate < rollout.canary_success_threshold:
                raise CanaryThresholdError(rate, rollout.canary_success_threshold)
            remaining = deadline - loop.time()
            if remaining <= 0:
                return
            await self._sleep(ctx, min(rollout.canary_check_interval_seconds, remaining))

    async def _setup_green(self, ctx: DeploymentContext) -> None:
        copied: dict[str, int] = {}
        for logical, blue in ctx.active_collections.items():
            green = green_collection(logical, ctx.deployment_id)
            ctx.green_collections[logical] = green
            copied[green] = await self._copy_collection(blue, green)
        self._phase_output(ctx)["copied"] = copied

    async def _migrate_green(self, ctx: DeploymentContext) -> None:
        await self._migrate(
            ctx,
            ctx.configuration.rollout.green_batch_size,
            collection_map=ctx.green_collections,
            record_version=False,
        )

    async def _warmup(self, ctx: DeploymentContext) -> None:
        await self._sleep(ctx, ctx.configuration.rollout.warmup_seconds)
        await self._post_checks(ctx)

    async def _switch_traffic(self, ctx: DeploymentContext) -> None:
        config = ctx.configuration
        if not ctx.green_collections:
            self._skip_phase(ctx, "No collections to switch")
        else:
            elapsed = await self.router.switch(ctx.green_collections, ctx.deployment_id)
            ctx.traffic_switched = True
            ctx.metrics.traffic_switch_seconds = elapsed
            self._phase_output(ctx)["switch_seconds"] = elapsed
        last = ctx.last_migration
        await self.registry.record_version_application(
            config.target_version,
            applied_by=config.actor,
            environment=config.environment.value,
            migration_id=last.migration_id if last else None,
            stats=last.stats.to_dict() if last else None,
        )

    async def _monitor(self, ctx: DeploymentContext) -> None:
        """Run monitoring checks and rollback triggers over the observation window."""
        rollout = ctx.configuration.rollout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + rollout.monitoring_seconds
        evaluations = 0
        while True:
            await run_safety_checks(ctx.configuration.safety_checks.monitoring, ctx)
            self._evaluate_triggers(ctx)
            evaluations += 1
            self._phase_output(ctx)["evaluations"] = evaluations
            remaining = deadline - loop.time()
            if remaining <= 0:
                return
            await self._sleep(ctx, min(rollout.monitoring_check_interval_seconds, remaining))

    def _evaluate_triggers(self, ctx: DeploymentContext) -> None:
        for trigger in ctx.configuration.rollback.triggers:
            value = getattr(ctx.metrics, trigger.metric)
            if value <= trigger.threshold:
                continue
            message = (
                f"Rollback trigger {trigger.metric}={value} exceeded threshold {trigger.threshold}"
            )
            if trigger.action == TriggerAction.ROLLBACK:
                raise DeploymentError(
                    message, details={"metric": trigger.metric, "value": value}
                )
            if message not in ctx.warnings:
                ctx.warnings.append(message)
                if self.events is not None:
                    self.events.emit(
                        EventKind.ALERT_RAISED,
                        ctx.deployment_id,
                        message,
                        Severity.WARNING,
                        metric=trigger.metric,
                        value=value,
                    )

    async def _wait_for_schedule(self, ctx: DeploymentContext) -> None:
        scheduled = ctx.configuration.rollout.scheduled_time or 0.0
        delay = scheduled - time.time()
        self._phase_output(ctx)["scheduled_time"] = scheduled
        if delay > 0:
            logger.info(
                "Waiting for scheduled start",
                extra={"deployment_id": ctx.deployment_id, "delay_seconds": delay},
            )
        await self._sleep(ctx, delay)

    # ---------------------------------------------------------------------
    # Rollback
    # ---------------------------------------------------------------------

    async def _auto_rollback(self, ctx: DeploymentContext, reason: str) -> RollbackInfo | None:
        """Undo a failed deployment when the policy is automatic.

        A failure before anything was written yields an untriggered
        RollbackInfo: the store still holds the source version.
        """
        policy = ctx.configuration.rollback
        if not policy.automatic:
            return None

        if ctx.configuration.strategy == DeploymentStrategy.BLUE_GREEN:
            if not ctx.green_collections:
                return RollbackInfo(triggered=False, reason=reason, success=True)
            info = await self._switch_back(ctx, reason)
        elif not ctx.migrations:
            return RollbackInfo(triggered=False, reason=reason, success=True)
        elif ctx.backup_id is None:
            info = RollbackInfo(
                triggered=True, reason=reason, success=False, recoverable=False
            )
            ctx.errors.append("No backup was taken; documents cannot be restored")
        else:
            info = await self._restore(ctx, reason)

        self._rollbacks += 1
        ctx.metrics.rollback_count += 1
        self._notify(
            ctx,
            "on_rollback",
            EventKind.ROLLBACK_COMPLETED,
            f"Deployment {ctx.deployment_id} rolled back"
            if info.success
            else f"Rollback of deployment {ctx.deployment_id} failed",
            Severity.WARNING if info.success else Severity.CRITICAL,
            rollback_id=info.rollback_id,
        )
        return info

    async def _restore(self, ctx: DeploymentContext, reason: str) -> RollbackInfo:
        policy = ctx.configuration.rollback
        migration_id = ctx.migrations[-1].migration_id
        info = RollbackInfo(triggered=True, reason=reason)
        for attempt in range(max(1, policy.max_attempts)):
            try:
                outcome = await asyncio.wait_for(
                    self.rollback_system.rollback(
                        migration_id,
                        ctx.source_version,
                        ctx.backup_id,
                        collections=list(ctx.active_collections.values()),
                        reason=reason,
                    ),
                    timeout=policy.timeout_minutes * 60,
                )
            except asyncio.TimeoutError:
                info.success = False
                info.recoverable = False
                ctx.errors.append(f"Rollback timed out after {policy.timeout_minutes} minutes")
                break
            info.rollback_id = outcome.rollback_id or info.rollback_id
            info.success = outcome.success
            info.recoverable = outcome.recoverable
            if outcome.success:
                break
            ctx.errors.append(f"Rollback attempt {attempt + 1} failed: {outcome.error}")
            if not outcome.recoverable:
                break
        return info

    async def _switch_back(self, ctx: DeploymentContext, reason: str) -> RollbackInfo:
        info = RollbackInfo(
            triggered=True, reason=reason, rollback_id=f"switchback_{ctx.deployment_id}"
        )
        if not ctx.traffic_switched:
            info.success = True
            return info
        try:
            await self.router.switch_back(ctx.deployment_id)
            await self.registry.record_version_application(
                ctx.source_version,
                applied_by="rollback",
                environment=ctx.configuration.environment.value,
                rollback_info={"rollback_id": info.rollback_id, "reason": reason},
            )
        except DocShiftError as e:
            ctx.errors.append(f"Switch back failed: {e.message}")
            info.success = False
            info.recoverable = False
            return info
        ctx.traffic_switched = False
        info.success = True
        return info

    # ---------------------------------------------------------------------
    # Helpers
    # ---------------------------------------------------------------------

    async def _copy_collection(self, source: str, target: str) -> int:
        copied = 0
        group = self.store.write_group()
        async for doc in iter_collection(self.store, source):
            if group.is_full:
                await self.store.commit(group)
                group = self.store.write_group()
            group.set(target, doc.id, doc.data)
            copied += 1
        if len(group):
            await self.store.commit(group)
        return copied

    async def _sleep(self, ctx: DeploymentContext, seconds: float) -> None:
        """Sleep, or raise MigrationCancelledError as soon as the deployment is cancelled."""
        if ctx.cancelled:
            raise MigrationCancelledError(f"Deployment {ctx.deployment_id} cancelled")
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(ctx.cancel_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise MigrationCancelledError(f"Deployment {ctx.deployment_id} cancelled")

    def _phase_output(self, ctx: DeploymentContext) -> dict[str, Any]:
        return ctx.current_phase.output if ctx.current_phase is not None else {}

    def _skip_phase(self, ctx: DeploymentContext, reason: str) -> None:
        if ctx.current_phase is not None:
            ctx.current_phase.status = PhaseStatus.SKIPPED
            ctx.current_phase.output["reason"] = reason

    def _result(
        self, ctx: DeploymentContext, rollback_info: RollbackInfo | None
    ) -> DeploymentResult:
        success = ctx.status == DeploymentStatus.COMPLETED
        ctx.metrics.deployment_seconds = time.time() - (ctx.started_at or ctx.created_at)
        return DeploymentResult(
            success=success,
            deployment_id=ctx.deployment_id,
            status=ctx.status,
            final_version=ctx.configuration.target_version if success else ctx.source_version,
            duration_seconds=ctx.metrics.deployment_seconds,
            phases=list(ctx.phases),
            metrics=ctx.metrics,
            errors=list(ctx.errors),
            warnings=list(ctx.warnings),
            rollback_info=rollback_info,
        )

    def _record(
        self, ctx: DeploymentContext, result: DeploymentResult | None = None
    ) -> dict[str, Any]:
        config = ctx.configuration
        return {
            "deployment_id": ctx.deployment_id,
            "environment": config.environment.value,
            "strategy": config.strategy.value,
            "target_version": config.target_version,
            "source_version": ctx.source_version or config.source_version,
            "status": ctx.status.value,
            "created_at": ctx.created_at,
            "started_at": ctx.started_at,
            "updated_at": time.time(),
            "current_phase": ctx.current_phase.name if ctx.current_phase else None,
            "phases": [p.to_dict() for p in ctx.phases],
            "backup_id": ctx.backup_id,
            "metrics": ctx.metrics.to_dict(),
            "errors": list(ctx.errors),
            "warnings": list(ctx.warnings),
            "configuration": config.summary(),
            "result": result.to_dict() if result else None,
        }

    async def _save(self, ctx: DeploymentContext, result: DeploymentResult | None = None) -> None:
        group = self.store.write_group()
        group.set(DEPLOYMENTS_COLLECTION, ctx.deployment_id, self._record(ctx, result))
        await self.store.commit(group)

    def _emit_phase(self, ctx: DeploymentContext, phase: DeploymentPhase) -> None:
        if self.events is not None:
            self.events.emit(
                EventKind.DEPLOYMENT_PHASE,
                ctx.deployment_id,
                f"Phase {phase.name} {phase.status.value}",
                Severity.ERROR if phase.status == PhaseStatus.FAILED else Severity.INFO,
                phase=phase.name,
                status=phase.status.value,
            )

    def _notify(
        self,
        ctx: DeploymentContext,
        flag: str,
        kind: EventKind,
        message: str,
        severity: Severity = Severity.INFO,
        **data: Any,
    ) -> None:
        notifications = ctx.configuration.notifications
        if self.events is None or not notifications.enabled or not getattr(notifications, flag):
            return
        self.events.emit(
            kind,
            ctx.deployment_id,
            message,
            severity,
            strategy=ctx.configuration.strategy.value,
            environment=ctx.configuration.environment.value,
            **data,
        )

    def _announce(self, ctx: DeploymentContext, result: DeploymentResult) -> None:
        if result.status == DeploymentStatus.COMPLETED:
            logger.info(
                "Deployment completed",
                extra={
                    "deployment_id": ctx.deployment_id,
                    "duration_seconds": result.duration_seconds,
                    "documents_migrated": result.metrics.documents_migrated,
                },
            )
            self._notify(
                ctx,
                "on_success",
                EventKind.DEPLOYMENT_COMPLETED,
                f"Deployment {ctx.deployment_id} completed",
            )
        elif result.status == DeploymentStatus.CANCELLED:
            logger.warning("Deployment cancelled", extra={"deployment_id": ctx.deployment_id})
            self._notify(
                ctx,
                "on_failure",
                EventKind.DEPLOYMENT_CANCELLED,
                f"Deployment {ctx.deployment_id} cancelled",
                Severity.WARNING,
            )
        else:
            self._notify(
                ctx,
                "on_failure",
                EventKind.DEPLOYMENT_FAILED,
                f"Deployment {ctx.deployment_id} failed: " + "; ".join(result.errors),
                Severity.ERROR,
            )

    @property
    def stats(self) -> dict[str, Any]:
        """Deployment counts by final status."""
        return {
            "created": self._counts[DeploymentStatus.CREATED],
            "completed": self._counts[DeploymentStatus.COMPLETED],
            "failed": self._counts[DeploymentStatus.FAILED],
            "cancelled": self._counts[DeploymentStatus.CANCELLED],
            "rollbacks": self._rollbacks,
            "active": len(self._contexts),
        }
