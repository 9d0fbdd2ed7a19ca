"""
Deployment safety checks.

A check is a coroutine function taking the DeploymentContext and
returning a SafetyCheckResult. Each attempt is bounded by the check's
timeout; a raised exception or a timeout counts as a failed attempt.

Invariants:
    - A failing critical check raises SafetyCheckFailedError
    - Warning and info failures are collected, never raised
    - Checks never write outside HEALTH_CHECK_COLLECTION
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid

from ..errors import SafetyCheckFailedError
from ..registry.registry import VersionRegistry
from ..store.base import DocumentStore
from .types import (
    CheckSeverity,
    DeploymentContext,
    SafetyCheck,
    SafetyCheckConfiguration,
    SafetyCheckResult,
)

logger = logging.getLogger(__name__)

HEALTH_CHECK_COLLECTION = "_health_check"
BASELINE_QUERY_SECONDS = 2.0


async def run_safety_check(check: SafetyCheck, ctx: DeploymentContext) -> SafetyCheckResult:
    """Run one check with its timeout and retries."""
    result = SafetyCheckResult(passed=False, message="Check did not run")
    for attempt in range(check.retry_count + 1):
        try:
            result = await asyncio.wait_for(check.check(ctx), timeout=check.timeout_seconds)
        except asyncio.TimeoutError:
            result = SafetyCheckResult(
                passed=False, message=f"Timed out after {check.timeout_seconds}s"
            )
        except Exception as e:
            result = SafetyCheckResult(passed=False, message=f"Check raised: {e}")
        if result.passed:
            break
        logger.debug(
            "Safety check attempt failed",
            extra={"check": check.name, "attempt": attempt + 1, "reason": result.message},
        )
    return result


async def run_safety_checks(
    checks: list[SafetyCheck], ctx: DeploymentContext
) -> list[tuple[SafetyCheck, SafetyCheckResult]]:
    """Run checks in order.

    Raises:
        SafetyCheckFailedError: On the first failing critical check
    """
    outcomes = []
    for check in checks:
        result = await run_safety_check(check, ctx)
        outcomes.append((check, result))
        if result.passed:
            logger.info(
                "Safety check passed",
                extra={"deployment_id": ctx.deployment_id, "check": check.name},
            )
            continue
        if check.severity == CheckSeverity.CRITICAL:
            logger.error(
                "Critical safety check failed",
                extra={
                    "deployment_id": ctx.deployment_id,
                    "check": check.name,
                    "reason": result.message,
                },
            )
            raise SafetyCheckFailedError(check.name, result.message)
        ctx.warnings.append(f"Safety check {check.name} failed: {result.message}")
        logger.warning(
            "Safety check failed",
            extra={"deployment_id": ctx.deployment_id, "check": check.name},
        )
    return outcomes


def store_health_check(store: DocumentStore, timeout_seconds: float = 30.0) -> SafetyCheck:
    """Write, read back and delete a probe document."""

    async def check(ctx: DeploymentContext) -> SafetyCheckResult:
        doc_id = f"{ctx.deployment_id}_{uuid.uuid4().hex[:8]}"
        started = time.monotonic()

        group = store.write_group()
        group.set(HEALTH_CHECK_COLLECTION, doc_id, {"probe": True, "at": time.time()})
        await store.commit(group)
        found = await store.get(HEALTH_CHECK_COLLECTION, doc_id)
        group = store.write_group()
        group.delete(HEALTH_CHECK_COLLECTION, doc_id)
        await store.commit(group)

        elapsed = time.monotonic() - started
        if found is None:
            return SafetyCheckResult(False, "Probe document was not readable after write")
        return SafetyCheckResult(
            True, "Store is reachable", metrics={"round_trip_seconds": elapsed}
        )

    return SafetyCheck(
        name="store_health",
        description="Store accepts a write, read and delete",
        check=check,
        timeout_seconds=timeout_seconds,
        retry_count=2,
    )


def schema_validation_check(registry: VersionRegistry) -> SafetyCheck:
    """The target version is registered and still validates."""

    async def check(ctx: DeploymentContext) -> SafetyCheckResult:
        target = ctx.configuration.target_version
        schema = await registry.get_schema_by_version(target)
        if schema is None:
            return SafetyCheckResult(False, f"Schema version {target} is not registered")
        report = await registry.validate_schema(schema)
        if not report.is_valid:
            return SafetyCheckResult(
                False,
                f"Schema {target} is invalid: " + "; ".join(report.errors),
                details=report.to_dict(),
            )
        return SafetyCheckResult(True, f"Schema {target} is valid", details=report.to_dict())

    return SafetyCheck(
        name="schema_validation",
        description="Target schema is registered and valid",
        check=check,
    )


def performance_baseline_check(
    store: DocumentStore, max_seconds: float = BASELINE_QUERY_SECONDS
) -> SafetyCheck:
    """A small query against each deployed collection stays under ``max_seconds``."""

    async def check(ctx: DeploymentContext) -> SafetyCheckResult:
        timings: dict[str, float] = {}
        for collection in ctx.collections or [HEALTH_CHECK_COLLECTION]:
            started = time.monotonic()
            await store.query(collection, limit=10)
            timings[collection] = time.monotonic() - started
        slowest = max(timings.values(), default=0.0)
        if slowest > max_seconds:
            return SafetyCheckResult(
                False,
                f"Baseline query took {slowest:.2f}s (limit {max_seconds:.2f}s)",
                metrics=timings,
            )
        return SafetyCheckResult(True, "Query latency within baseline", metrics=timings)

    return SafetyCheck(
        name="performance_baseline",
        description="Queries respond within the baseline latency",
        check=check,
        severity=CheckSeverity.WARNING,
    )


def default_safety_checks(
    store: DocumentStore, registry: VersionRegistry
) -> SafetyCheckConfiguration:
    """Store health and schema validation before, store health and latency after."""
    return SafetyCheckConfiguration(
        pre_deployment=[store_health_check(store), schema_validation_check(registry)],
        post_deployment=[store_health_check(store), performance_baseline_check(store)],
        monitoring=[store_health_check(store)],
    )
