"""
Deployment configuration, context and result types.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from ..registry.versions import SchemaVersion

if TYPE_CHECKING:
    from ..migration.context import MigrationResult


class DeploymentStrategy(Enum):
    ROLLING_UPDATE = "rolling_update"
    BLUE_GREEN = "blue_green"
    CANARY = "canary"
    IMMEDIATE = "immediate"
    SCHEDULED = "scheduled"

    @classmethod
    def from_str(cls, value: str) -> DeploymentStrategy:
        """Convert strategy string to DeploymentStrategy.

        Raises:
            ValueError: If value is not a known strategy
        """
        for strategy in cls:
            if strategy.value == value:
                return strategy
        valid = [s.value for s in cls]
        raise ValueError(f"Invalid deployment strategy '{value}'. Valid strategies: {valid}")


class DeploymentEnvironment(Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class DeploymentStatus(Enum):
    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PhaseStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class CheckSeverity(Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


class TriggerAction(Enum):
    ROLLBACK = "rollback"
    ALERT = "alert"


@dataclass
class RolloutConfiguration:
    """Per-strategy rollout parameters.

    Attributes:
        batch_size: Page size of rolling and scheduled migrations
        max_concurrency: Engine concurrency for every migration
        canary_traffic_percent: Share of documents in the canary slice
        canary_duration_seconds: How long the canary is observed
        canary_success_threshold: Minimum success rate (percent) during observation
        canary_check_interval_seconds: Time between canary health probes
        green_batch_size: Page size when migrating the green collections
        canary_batch_size: Page size of the canary migration
        full_rollout_batch_size: Page size of the post-canary migration
        warmup_seconds: Blue-green warmup before the traffic switch
        monitoring_seconds: Observation window of monitoring phases
        monitoring_check_interval_seconds: Time between monitoring evaluations
        scheduled_time: Unix seconds at which a scheduled deployment starts
    """

    batch_size: int = 100
    max_concurrency: int = 3
    canary_traffic_percent: float = 5.0
    canary_duration_seconds: float = 1800.0
    canary_success_threshold: float = 99.5
    canary_check_interval_seconds: float = 60.0
    green_batch_size: int = 500
    canary_batch_size: int = 50
    full_rollout_batch_size: int = 200
    warmup_seconds: float = 0.0
    monitoring_seconds: float = 0.0
    monitoring_check_interval_seconds: float = 30.0
    scheduled_time: float | None = None

    def __post_init__(self) -> None:
        if not 0 <= self.canary_traffic_percent <= 100:
            raise ValueError(
                f"canary_traffic_percent must be within 0-100, got {self.canary_traffic_percent}"
            )
        for name in (
            "batch_size",
            "max_concurrency",
            "green_batch_size",
            "canary_batch_size",
            "full_rollout_batch_size",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")
        if self.canary_check_interval_seconds <= 0 or self.monitoring_check_interval_seconds <= 0:
            raise ValueError("Check intervals must be positive")

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class SafetyCheckResult:
    passed: bool
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    metrics: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "message": self.message,
            "details": self.details,
            "metrics": self.metrics,
        }


SafetyCheckFn = Callable[["DeploymentContext"], Awaitable[SafetyCheckResult]]


@dataclass(frozen=True)
class SafetyCheck:
    """A named probe run before, after or while deploying.

    Attributes:
        name: Check name
        description: What the check verifies
        check: Coroutine function receiving the DeploymentContext
        timeout_seconds: Bound on one attempt
        retry_count: Extra attempts after a failed one
        severity: Critical failures abort the deployment; others only warn
    """

    name: str
    description: str
    check: SafetyCheckFn
    timeout_seconds: float = 30.0
    retry_count: int = 0
    severity: CheckSeverity = CheckSeverity.CRITICAL


@dataclass
class SafetyCheckConfiguration:
    pre_deployment: list[SafetyCheck] = field(default_factory=list)
    post_deployment: list[SafetyCheck] = field(default_factory=list)
    monitoring: list[SafetyCheck] = field(default_factory=list)


@dataclass(frozen=True)
class RollbackTrigger:
    """Fires when a deployment metric exceeds a threshold.

    Attributes:
        metric: DeploymentMetrics attribute, e.g. error_rate or failed_operations
        threshold: Value above which the trigger fires
        action: Roll back, or only raise an alert
    """

    metric: str
    threshold: float
    action: TriggerAction = TriggerAction.ROLLBACK


@dataclass
class RollbackConfiguration:
    automatic: bool = True
    max_attempts: int = 1
    timeout_minutes: float = 30.0
    triggers: list[RollbackTrigger] = field(default_factory=list)


@dataclass
class NotificationConfiguration:
    enabled: bool = True
    on_start: bool = True
    on_success: bool = True
    on_failure: bool = True
    on_rollback: bool = True


@dataclass
class DeploymentConfiguration:
    """Everything a deployment needs.

    Attributes:
        strategy: Rollout strategy
        environment: Target environment
        target_version: Version to deploy
        source_version: Starting version (defaults to the applied version)
        rollout: Strategy parameters
        safety_checks: Pre, post and monitoring checks
        rollback: Automatic rollback policy
        notifications: Which lifecycle events are published
        collections: Collections to back up (defaults to those the migration touches)
        actor: Recorded as applied_by in version history
    """

    strategy: DeploymentStrategy
    environment: DeploymentEnvironment
    target_version: str
    source_version: str | None = None
    rollout: RolloutConfiguration = field(default_factory=RolloutConfiguration)
    safety_checks: SafetyCheckConfiguration = field(default_factory=SafetyCheckConfiguration)
    rollback: RollbackConfiguration = field(default_factory=RollbackConfiguration)
    notifications: NotificationConfiguration = field(default_factory=NotificationConfiguration)
    collections: list[str] | None = None
    actor: str = "deployment-orchestrator"

    def __post_init__(self) -> None:
        if isinstance(self.strategy, str):
            self.strategy = DeploymentStrategy.from_str(self.strategy)
        if isinstance(self.environment, str):
            self.environment = DeploymentEnvironment(self.environment)
        self.target_version = str(SchemaVersion.parse(self.target_version))
        if self.source_version is not None:
            self.source_version = str(SchemaVersion.parse(self.source_version))

    def summary(self) -> dict[str, Any]:
        """JSON-safe description for the deployment record."""
        checks = self.safety_checks
        return {
            "strategy": self.strategy.value,
            "environment": self.environment.value,
            "target_version": self.target_version,
            "source_version": self.source_version,
            "rollout": self.rollout.to_dict(),
            "checks": {
                "pre_deployment": [c.name for c in checks.pre_deployment],
                "post_deployment": [c.name for c in checks.post_deployment],
                "monitoring": [c.name for c in checks.monitoring],
            },
            "rollback": {
                "automatic": self.rollback.automatic,
                "max_attempts": self.rollback.max_attempts,
                "triggers": [
                    {"metric": t.metric, "threshold": t.threshold, "action": t.action.value}
                    for t in self.rollback.triggers
                ],
            },
            "collections": self.collections,
            "actor": self.actor,
        }


@dataclass
class DeploymentPhase:
    name: str
    status: PhaseStatus = PhaseStatus.PENDING
    started_at: float | None = None
    ended_at: float | None = None
    progress: float = 0.0
    error: str | None = None
    output: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "progress": self.progress,
            "error": self.error,
            "output": self.output,
        }


@dataclass
class DeploymentMetrics:
    deployment_seconds: float = 0.0
    traffic_switch_seconds: float = 0.0
    error_rate: float = 0.0
    successful_operations: int = 0
    failed_operations: int = 0
    rollback_count: int = 0
    documents_migrated: int = 0

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class RollbackInfo:
    triggered: bool
    reason: str
    rollback_id: str | None = None
    success: bool = False
    recoverable: bool = True

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class DeploymentContext:
    """Mutable state of one deployment run."""

    deployment_id: str
    configuration: DeploymentConfiguration
    created_at: float = field(default_factory=time.time)
    started_at: float | None = None
    status: DeploymentStatus = DeploymentStatus.CREATED
    source_version: str | None = None
    metrics: DeploymentMetrics = field(default_factory=DeploymentMetrics)
    phases: list[DeploymentPhase] = field(default_factory=list)
    current_phase: DeploymentPhase | None = None
    backup_id: str | None = None
    migrations: list[MigrationResult] = field(default_factory=list)
    collections: list[str] = field(default_factory=list)
    active_collections: dict[str, str] = field(default_factory=dict)
    green_collections: dict[str, str] = field(default_factory=dict)
    traffic_switched: bool = False
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def last_migration(self) -> MigrationResult | None:
        return self.migrations[-1] if self.migrations else None

    @property
    def phase_names(self) -> list[str]:
        return [p.name for p in self.phases]


@dataclass
class DeploymentResult:
    """Outcome of a deployment.

    Attributes:
        success: Every phase completed
        deployment_id: Deployment id
        status: Final deployment status
        final_version: Target on success, source otherwise
        duration_seconds: Wall time of the run
        phases: Phase-by-phase record
        metrics: Aggregated metrics
        errors: Error messages
        warnings: Non-blocking findings
        rollback_info: Present when a rollback was attempted
    """

    success: bool
    deployment_id: str
    status: DeploymentStatus
    final_version: str | None
    duration_seconds: float
    phases: list[DeploymentPhase] = field(default_factory=list)
    metrics: DeploymentMetrics = field(default_factory=DeploymentMetrics)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    rollback_info: RollbackInfo | None = None

    @property
    def phase_names(self) -> list[str]:
        return [p.name for p in self.phases]

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "deployment_id": self.deployment_id,
            "status": self.status.value,
            "final_version": self.final_version,
            "duration_seconds": self.duration_seconds,
            "phases": [p.to_dict() for p in self.phases],
            "metrics": self.metrics.to_dict(),
            "errors": self.errors,
            "warnings": self.warnings,
            "rollback_info": self.rollback_info.to_dict() if self.rollback_info else None,
        }
