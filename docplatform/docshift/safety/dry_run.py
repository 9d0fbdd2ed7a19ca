"""
Dry-run analysis of a migration.

DryRunEngine runs the migration engine in dry-run mode (every page is
read and every operation evaluated, nothing is committed) and wraps it
with checks the engine itself does not make:

    - Compatibility: breaking changes along the version path
    - Data loss: removed fields and breaking type conversions
    - Data integrity: sampled results checked against the target schema
    - Business rules: schema validation rules plus caller-supplied rules
    - Performance: duration estimate from a throughput baseline

Findings become DryRunIssue entries ranked critical > high > medium > low,
followed by recommendations and a Markdown report.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from ..errors import ConfigurationError
from ..migration.context import MigrationOptions, MigrationResult, SampleChange
from ..migration.operations import (
    ChangeFieldTypeOperation,
    MigrationOperation,
    RemoveFieldOperation,
)
from ..registry.compat import ChangeKind, check_compatibility
from ..registry.registry import MigrationPlan
from ..registry.types import SchemaDefinition
from ..store.base import FieldFilter, FilterOp

if TYPE_CHECKING:
    from ..migration.engine import MigrationEngine

logger = logging.getLogger(__name__)

LARGE_MIGRATION_DOCUMENTS = 10_000
LONG_MIGRATION_SECONDS = 3600


class IssueSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return list(IssueSeverity).index(self)

    @classmethod
    def from_str(cls, value: str) -> IssueSeverity:
        try:
            return cls(value.lower())
        except ValueError:
            return cls.MEDIUM


class IssueType(Enum):
    DATA_LOSS = "data_loss"
    VALIDATION_ERROR = "validation_error"
    PERFORMANCE = "performance"
    COMPATIBILITY = "compatibility"


BusinessRule = Callable[[SampleChange], "str | None"]


@dataclass
class DryRunOptions:
    """What the dry run checks.

    Attributes:
        sample_size: Before/after samples collected from the engine
        validate_data_integrity: Check samples against the target schema fields
        check_business_rules: Apply schema validation rules and business_rules
        estimate_performance: Estimate duration from docs_per_second
        docs_per_second: Throughput baseline for the estimate
        business_rules: Callables returning a violation message, or None
    """

    sample_size: int = 10
    validate_data_integrity: bool = True
    check_business_rules: bool = True
    estimate_performance: bool = True
    docs_per_second: float = 100.0
    business_rules: list[BusinessRule] = field(default_factory=list)


@dataclass
class DryRunIssue:
    """A finding of the dry run."""

    severity: IssueSeverity
    type: IssueType
    message: str
    collection: str | None = None
    affected_documents: int = 0
    suggested_action: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "severity": self.severity.value,
            "type": self.type.value,
            "message": self.message,
            "collection": self.collection,
            "affected_documents": self.affected_documents,
            "suggested_action": self.suggested_action,
        }


@dataclass
class DryRunResult:
    """Outcome of a dry run.

    Attributes:
        would_succeed: The run completed and no critical issue was found
        estimated_changes: Documents the migration would update
        estimated_duration_seconds: Duration at the baseline throughput
        potential_issues: Findings, most severe first
        sample_changes: Before/after samples
        validation_results: Per collection, sampled and failed counts
        recommendations: Human-readable advice
        report: Markdown summary
        migration: The underlying dry-run MigrationResult, if the engine ran
    """

    would_succeed: bool
    estimated_changes: int = 0
    estimated_duration_seconds: float = 0.0
    potential_issues: list[DryRunIssue] = field(default_factory=list)
    sample_changes: list[SampleChange] = field(default_factory=list)
    validation_results: dict[str, dict[str, int]] = field(default_factory=dict)
    recommendations: list[str] = field(default_factory=list)
    report: str = ""
    migration: MigrationResult | None = None

    @property
    def critical_issues(self) -> list[DryRunIssue]:
        return [i for i in self.potential_issues if i.severity == IssueSeverity.CRITICAL]

    def to_dict(self) -> dict[str, Any]:
        return {
            "would_succeed": self.would_succeed,
            "estimated_changes": self.estimated_changes,
            "estimated_duration_seconds": self.estimated_duration_seconds,
            "potential_issues": [i.to_dict() for i in self.potential_issues],
            "sample_changes": [s.to_dict() for s in self.sample_changes],
            "validation_results": self.validation_results,
            "recommendations": self.recommendations,
            "report": self.report,
        }


class DryRunEngine:
    """Simulates migrations and reports their impact.

    Example:
        >>> dry_run = DryRunEngine(engine)
        >>> result = await dry_run.execute_dry_run("1.0.0", "1.1.0")
        >>> print(result.report)
    """

    def __init__(self, engine: MigrationEngine) -> None:
        self.engine = engine
        self.registry = engine.registry
        self.store = engine.store

    async def execute_dry_run(
        self,
        from_version: str,
        to_version: str,
        options: DryRunOptions | None = None,
    ) -> DryRunResult:
        """Analyse a migration without writing to the store."""
        options = options or DryRunOptions()
        issues: list[DryRunIssue] = []

        try:
            plan, operations = await self.engine.plan_operations(from_version, to_version)
        except ConfigurationError as e:
            messages = e.details.get("errors") or [e.message]
            issues.extend(
                DryRunIssue(
                    IssueSeverity.CRITICAL,
                    IssueType.COMPATIBILITY,
                    message,
                    suggested_action="Fix the version path or operation graph",
                )
                for message in messages
            )
            return self._finish(False, issues, options, from_version, to_version)

        issues.extend(self._compatibility_issues(plan))
        issues.extend(await self._data_loss_issues(operations))

        migration = await self.engine.execute_migration(
            from_version,
            to_version,
            options=MigrationOptions.from_config(
                self.engine.config,
                sample_size=options.sample_size,
                backup_before_migration=False,
                validate_after_migration=False,
                record_version=False,
                continue_on_error=True,
                retry_attempts=1,
            ),
            dry_run=True,
        )
        for error in migration.errors:
            issues.append(
                DryRunIssue(
                    IssueSeverity.HIGH,
                    IssueType.VALIDATION_ERROR,
                    error,
                    suggested_action="Fix the data or the operation before migrating",
                )
            )
        for warning in migration.warnings:
            if warning in plan.warnings:
                continue
            issues.append(DryRunIssue(IssueSeverity.LOW, IssueType.VALIDATION_ERROR, warning))

        target = plan.path[-1] if plan.path else None
        validation_results: dict[str, dict[str, int]] = {}
        if target is not None and options.validate_data_integrity:
            issues.extend(self._integrity_issues(target, migration.samples, validation_results))
        if target is not None and options.check_business_rules:
            issues.extend(self._business_rule_issues(target, migration.samples, options))

        result = self._finish(
            migration.success, issues, options, from_version, to_version, migration
        )
        result.validation_results = validation_results
        result.report = self._report(result, from_version, to_version)
        return result

    # ---------------------------------------------------------------------
    # Checks
    # ---------------------------------------------------------------------

    def _compatibility_issues(self, plan: MigrationPlan) -> list[DryRunIssue]:
        issues = []
        for warning in plan.warnings:
            issues.append(
                DryRunIssue(
                    IssueSeverity.MEDIUM,
                    IssueType.COMPATIBILITY,
                    warning,
                    suggested_action="Coordinate client upgrades and keep a backup",
                )
            )
        previous: SchemaDefinition | None = None
        for schema in plan.path:
            if previous is not None:
                for change in check_compatibility(previous, schema):
                    if change.kind == ChangeKind.COLLECTION_REMOVED:
                        issues.append(
                            DryRunIssue(
                                IssueSeverity.HIGH,
                                IssueType.DATA_LOSS,
                                f"Collection {change.collection} is dropped from the schema "
                                f"in {schema.version}; its documents are left in place",
                                collection=change.collection,
                                suggested_action="Archive or delete the collection explicitly",
                            )
                        )
                    elif change.is_breaking and change.kind not in (
                        ChangeKind.FIELD_REMOVED,
                        ChangeKind.FIELD_TYPE_CHANGED,
                    ):
                        issues.append(
                            DryRunIssue(
                                IssueSeverity.MEDIUM,
                                IssueType.COMPATIBILITY,
                                f"{schema.version}: {change.message or change.kind.name}",
                                collection=change.collection,
                            )
                        )
            previous = schema
        return issues

    async def _data_loss_issues(self, operations: list[MigrationOperation]) -> list[DryRunIssue]:
        issues = []
        for op in operations:
            if isinstance(op, RemoveFieldOperation):
                affected = await self.store.count(
                    op.collection, [*op.filters, FieldFilter(op.field, FilterOp.EXISTS)]
                )
                archived = op.backup_location is not None
                issues.append(
                    DryRunIssue(
                        IssueSeverity.MEDIUM if archived else IssueSeverity.HIGH,
                        IssueType.DATA_LOSS,
                        f"Removing field '{op.field}' from {op.collection}"
                        + (f" (archived to {op.backup_location})" if archived else ""),
                        collection=op.collection,
                        affected_documents=affected,
                        suggested_action="Confirm the field is unused and a backup exists",
                    )
                )
            elif isinstance(op, ChangeFieldTypeOperation):
                affected = await self.store.count(
                    op.collection, [*op.filters, FieldFilter(op.field, FilterOp.EXISTS)]
                )
                source = op.from_type.value if op.from_type else "any"
                issues.append(
                    DryRunIssue(
                        IssueSeverity.MEDIUM,
                        IssueType.DATA_LOSS,
                        f"Converting '{op.field}' in {op.collection} from {source} "
                        f"to {op.to_type.value} may lose precision or fail",
                        collection=op.collection,
                        affected_documents=affected,
                        suggested_action="Review sample conversions before migrating",
                    )
                )
        return issues

    def _integrity_issues(
        self,
        target: SchemaDefinition,
        samples: list[SampleChange],
        results: dict[str, dict[str, int]],
    ) -> list[DryRunIssue]:
        failures: dict[tuple[str, str], int] = {}
        for sample in samples:
            collection_def = target.get_collection(sample.collection)
            counts = results.setdefault(sample.collection, {"checked": 0, "failed": 0})
            counts["checked"] += 1
            if collection_def is None or sample.after is None:
                continue
            failed = False
            for field_def in collection_def.fields:
                ok, message = field_def.validate_value(sample.after.get(field_def.name))
                if not ok:
                    failed = True
                    key = (sample.collection, message or field_def.name)
                    failures[key] = failures.get(key, 0) + 1
            if failed:
                counts["failed"] += 1

        return [
            DryRunIssue(
                IssueSeverity.HIGH,
                IssueType.VALIDATION_ERROR,
                f"Migrated document would violate the schema: {message}",
                collection=collection,
                affected_documents=count,
                suggested_action="Add a default value or a transform for this field",
            )
            for (collection, message), count in failures.items()
        ]

    def _business_rule_issues(
        self,
        target: SchemaDefinition,
        samples: list[SampleChange],
        options: DryRunOptions,
    ) -> list[DryRunIssue]:
        issues = []
        for sample in samples:
            if sample.after is None:
                continue
            collection_def = target.get_collection(sample.collection)
            rules = collection_def.validation_rules if collection_def else ()
            for rule in rules:
                if not rule.check(sample.after):
                    issues.append(
                        DryRunIssue(
                            IssueSeverity.from_str(rule.severity),
                            IssueType.VALIDATION_ERROR,
                            f"{sample.document_id}: "
                            + (rule.message or f"rule '{rule.name}' failed on {rule.field}"),
                            collection=sample.collection,
                            affected_documents=1,
                        )
                    )
            for business_rule in options.business_rules:
                violation = business_rule(sample)
                if violation:
                    issues.append(
                        DryRunIssue(
                            IssueSeverity.MEDIUM,
                            IssueType.VALIDATION_ERROR,
                            f"{sample.document_id}: {violation}",
                            collection=sample.collection,
                            affected_documents=1,
                        )
                    )
        return issues

    # ---------------------------------------------------------------------
    # Aggregation
    # ---------------------------------------------------------------------

    def _finish(
        self,
        completed: bool,
        issues: list[DryRunIssue],
        options: DryRunOptions,
        from_version: str,
        to_version: str,
        migration: MigrationResult | None = None,
    ) -> DryRunResult:
        processed = migration.stats.documents_processed if migration else 0
        duration = 0.0
        if options.estimate_performance and options.docs_per_second > 0:
            duration = round(processed / options.docs_per_second, 1)
            if duration > LONG_MIGRATION_SECONDS:
                issues.append(
                    DryRunIssue(
                        IssueSeverity.MEDIUM,
                        IssueType.PERFORMANCE,
                        f"Estimated duration {duration / 3600:.1f}h at "
                        f"{options.docs_per_second:.0f} docs/s",
                        affected_documents=processed,
                        suggested_action="Split the migration into smaller chunks",
                    )
                )

        issues.sort(key=lambda i: i.severity.rank, reverse=True)
        result = DryRunResult(
            would_succeed=completed
            and not any(i.severity == IssueSeverity.CRITICAL for i in issues),
            estimated_changes=migration.stats.documents_updated if migration else 0,
            estimated_duration_seconds=duration,
            potential_issues=issues,
            sample_changes=list(migration.samples) if migration else [],
            migration=migration,
        )
        result.recommendations = self._recommendations(result, processed)
        result.report = self._report(result, from_version, to_version)

        logger.info(
            "Dry run finished",
            extra={
                "from_version": str(from_version),
                "to_version": str(to_version),
                "would_succeed": result.would_succeed,
                "estimated_changes": result.estimated_changes,
                "issues": len(issues),
            },
        )
        return result

    def _recommendations(self, result: DryRunResult, processed: int) -> list[str]:
        recommendations = []
        if result.critical_issues:
            recommendations.append(
                f"Resolve {len(result.critical_issues)} critical issue(s) before deploying"
            )
        if processed > LARGE_MIGRATION_DOCUMENTS:
            recommendations.append(
                f"Large migration ({processed} documents): run it in a low-traffic window "
                "or use a canary deployment"
            )
        if result.estimated_duration_seconds > LONG_MIGRATION_SECONDS:
            recommendations.append(
                "Estimated duration exceeds one hour: split the migration into smaller chunks"
            )
        if any(i.type == IssueType.DATA_LOSS for i in result.potential_issues):
            recommendations.append("Keep backup_before_migration enabled; the migration drops data")
        return recommendations

    def _report(self, result: DryRunResult, from_version: str, to_version: str) -> str:
        lines = [
            f"# Dry run: {from_version} -> {to_version}",
            "",
            f"- Would succeed: {'yes' if result.would_succeed else 'no'}",
            f"- Estimated changes: {result.estimated_changes}",
            f"- Estimated duration: {result.estimated_duration_seconds:.1f}s",
            "",
            "## Issues",
            "",
        ]
        if result.potential_issues:
            lines.append("| Severity | Type | Collection | Documents | Message |")
            lines.append("|---|---|---|---|---|")
            for issue in result.potential_issues:
                lines.append(
                    f"| {issue.severity.value} | {issue.type.value} | {issue.collection or '-'} "
                    f"| {issue.affected_documents} | {issue.message} |"
                )
        else:
            lines.append("No issues found.")

        if result.validation_results:
            lines += ["", "## Validation", ""]
            for collection, counts in sorted(result.validation_results.items()):
                lines.append(
                    f"- {collection}: {counts['checked']} sampled, {counts['failed']} failed"
                )

        if result.sample_changes:
            lines += ["", "## Sample changes", ""]
            for sample in result.sample_changes:
                lines.append(
                    f"- `{sample.collection}/{sample.document_id}` ({sample.operation_id})"
                )

        if result.recommendations:
            lines += ["", "## Recommendations", ""]
            lines += [f"- {r}" for r in result.recommendations]
        return "\n".join(lines) + "\n"
