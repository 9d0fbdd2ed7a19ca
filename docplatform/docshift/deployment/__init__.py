"""
Deployment orchestration: strategies, safety checks and traffic routing.
"""

from .checks import (
    HEALTH_CHECK_COLLECTION,
    default_safety_checks,
    performance_baseline_check,
    run_safety_check,
    run_safety_checks,
    schema_validation_check,
    store_health_check,
)
from .orchestrator import (
    DEPLOYMENTS_COLLECTION,
    DeploymentOrchestrator,
    HealthProbe,
    canary_bucket,
    canary_selector,
    canary_success_rate,
    green_collection,
)
from .router import ROUTING_COLLECTION, TrafficRouter
from .types import (
    CheckSeverity,
    DeploymentConfiguration,
    DeploymentContext,
    DeploymentEnvironment,
    DeploymentMetrics,
    DeploymentPhase,
    DeploymentResult,
    DeploymentStatus,
    DeploymentStrategy,
    NotificationConfiguration,
    PhaseStatus,
    RollbackConfiguration,
    RollbackInfo,
    RollbackTrigger,
    RolloutConfiguration,
    SafetyCheck,
    SafetyCheckConfiguration,
    SafetyCheckResult,
    TriggerAction,
)

__all__ = [
    "DEPLOYMENTS_COLLECTION",
    "HEALTH_CHECK_COLLECTION",
    "ROUTING_COLLECTION",
    "CheckSeverity",
    "DeploymentConfiguration",
    "DeploymentContext",
    "DeploymentEnvironment",
    "DeploymentMetrics",
    "DeploymentOrchestrator",
    "DeploymentPhase",
    "DeploymentResult",
    "DeploymentStatus",
    "DeploymentStrategy",
    "HealthProbe",
    "NotificationConfiguration",
    "PhaseStatus",
    "RollbackConfiguration",
    "RollbackInfo",
    "RollbackTrigger",
    "RolloutConfiguration",
    "SafetyCheck",
    "SafetyCheckConfiguration",
    "SafetyCheckResult",
    "TrafficRouter",
    "TriggerAction",
    "canary_bucket",
    "canary_selector",
    "canary_success_rate",
    "default_safety_checks",
    "green_collection",
    "performance_baseline_check",
    "run_safety_check",
    "run_safety_checks",
    "schema_validation_check",
    "store_health_check",
]
