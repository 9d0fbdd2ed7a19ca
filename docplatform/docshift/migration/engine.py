"""
Migration engine for DocShift.

The engine moves stored documents from one schema version to another:

1. Resolve the version path through the VersionRegistry
2. Collect operations (registered per version, or derived from the diff)
3. Order them by dependency, ties broken by priority
4. Optionally back up every target collection
5. For each operation, page through its collection and apply per-document
   dispatch, writing through a BatchWriter in bounded groups
6. Validate a sample of migrated documents, persist the run log, and
   record the version application

Concurrency model:
    - Up to ``concurrency`` pages are prefetched ahead of processing
    - Documents of a page are evaluated concurrently under a semaphore
    - Mutations are added to the writer in document order; one group is
      open at a time and every page ends with a flush
    - Pause, cancellation and progress are handled between pages only

Invariants:
    - Dry runs and live runs share everything up to BatchWriter.flush()
    - A page is retried as a unit, re-reading its documents each attempt
    - No write group exceeds the store's mutation cap
    - Expected failures end up in MigrationResult, never as exceptions

How to change safely:
    - New operation kinds go through OperationVisitor; the dispatcher
      below cannot be instantiated until it handles them
    - Keep all store writes inside BatchWriter so dry runs stay honest
"""

from __future__ import annotations

import asyncio
import copy
import inspect
import logging
import time
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from ..config import MigrationConfig
from ..errors import (
    ConfigurationError,
    DocShiftError,
    MigrationCancelledError,
    MonitorNotFoundError,
    OperationFailedError,
    StoreError,
)
from ..events import EventChannel, EventKind, Severity
from ..registry.registry import MigrationPlan, VersionRegistry
from ..registry.versions import SchemaVersion
from ..safety.backup import BackupType
from ..safety.monitoring import MonitorStatus
from ..store.base import DELETE_FIELD, Document, DocumentStore, Mutation, MutationKind, apply_update
from .context import (
    MigrationContext,
    MigrationLogger,
    MigrationOptions,
    MigrationPhase,
    MigrationProgress,
    MigrationResult,
    SampleChange,
)
from .derive import derive_operations
from .operations import (
    AddFieldOperation,
    ChangeFieldTypeOperation,
    CustomOperation,
    MigrationOperation,
    OperationVisitor,
    RemoveFieldOperation,
    RenameFieldOperation,
    TransformDataOperation,
    convert_value,
    resolve,
)
from .ordering import order_operations
from .writer import BatchWriter

if TYPE_CHECKING:
    from ..safety.backup import BackupManager
    from ..safety.monitoring import MigrationMonitoringSystem

logger = logging.getLogger(__name__)

UPDATED_AT_FIELD = "updatedAt"
VALIDATION_SAMPLE = 20


def new_migration_id() -> str:
    return f"migration_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class DocumentResult:
    """What one operation wants to do to one document."""

    status: str  # "updated", "skipped" or "deleted"
    writes: list[Mutation] = field(default_factory=list)
    warning: str | None = None
    after: dict[str, Any] | None = None

    @classmethod
    def skip(cls, warning: str | None = None) -> DocumentResult:
        return cls(status="skipped", warning=warning)


class DocumentDispatcher(OperationVisitor[Any]):
    """Per-document semantics of every operation kind.

    Each visit method returns an awaitable DocumentResult; nothing here
    touches the store.
    """

    async def visit_add_field(
        self, op: AddFieldOperation, doc: Document, collection: str, ctx: MigrationContext
    ) -> DocumentResult:
        if op.field in doc.data:
            return DocumentResult.skip()
        updates = {op.field: copy.deepcopy(op.default_value), UPDATED_AT_FIELD: _now_iso()}
        return DocumentResult(
            status="updated",
            writes=[Mutation(MutationKind.UPDATE, collection, doc.id, updates)],
            after=apply_update(doc.data, updates),
        )

    async def visit_remove_field(
        self, op: RemoveFieldOperation, doc: Document, collection: str, ctx: MigrationContext
    ) -> DocumentResult:
        if op.field not in doc.data:
            return DocumentResult.skip()
        writes = []
        if op.backup_location:
            archive = {
                "originalDocId": doc.id,
                "originalCollection": collection,
                "removedField": op.field,
                "removedValue": doc.data[op.field],
                "removedAt": _now_iso(),
                "migrationId": ctx.migration_id,
            }
            archive_id = f"{collection}_{doc.id}_{op.field}"
            writes.append(Mutation(MutationKind.SET, op.backup_location, archive_id, archive))
        updates = {op.field: DELETE_FIELD, UPDATED_AT_FIELD: _now_iso()}
        writes.append(Mutation(MutationKind.UPDATE, collection, doc.id, updates))
        return DocumentResult(
            status="updated", writes=writes, after=apply_update(doc.data, updates)
        )

    async def visit_rename_field(
        self, op: RenameFieldOperation, doc: Document, collection: str, ctx: MigrationContext
    ) -> DocumentResult:
        if op.old_field not in doc.data:
            return DocumentResult.skip()
        updates: dict[str, Any] = {
            op.new_field: copy.deepcopy(doc.data[op.old_field]),
            UPDATED_AT_FIELD: _now_iso(),
        }
        if not op.preserve_old_field:
            updates[op.old_field] = DELETE_FIELD
        elif doc.data.get(op.new_field) == doc.data[op.old_field]:
            return DocumentResult.skip()
        return DocumentResult(
            status="updated",
            writes=[Mutation(MutationKind.UPDATE, collection, doc.id, updates)],
            after=apply_update(doc.data, updates),
        )

    async def visit_change_field_type(
        self, op: ChangeFieldTypeOperation, doc: Document, collection: str, ctx: MigrationContext
    ) -> DocumentResult:
        if op.field not in doc.data:
            return DocumentResult.skip()
        original = doc.data[op.field]
        if op.converter is not None:
            converted = await resolve(op.converter(copy.deepcopy(original)))
        else:
            converted = convert_value(original, op.to_type)
        if converted == original and type(converted) is type(original):
            return DocumentResult.skip()
        updates = {op.field: converted}
        return DocumentResult(
            status="updated",
            writes=[Mutation(MutationKind.UPDATE, collection, doc.id, updates)],
            after=apply_update(doc.data, updates),
        )

    async def visit_transform_data(
        self, op: TransformDataOperation, doc: Document, collection: str, ctx: MigrationContext
    ) -> DocumentResult:
        transformer = op.transformer
        transformed = await resolve(transformer.transform(copy.deepcopy(doc.data)))
        if transformed is None or transformed == doc.data:
            return DocumentResult.skip()
        if transformer.validate is not None:
            if not await resolve(transformer.validate(transformed)):
                return DocumentResult.skip(
                    warning=f"Transformed document {doc.id} failed validation "
                    f"({transformer.name}); left unchanged"
                )
        return DocumentResult(
            status="updated",
            writes=[Mutation(MutationKind.SET, collection, doc.id, transformed)],
            after=transformed,
        )

    async def visit_custom(
        self, op: CustomOperation, doc: Document, collection: str, ctx: MigrationContext
    ) -> DocumentResult:
        raise ConfigurationError(f"Custom operation '{op.id}' runs per page, not per document")


class MigrationEngine:
    """Plans and executes migrations against a document store.

    Attributes:
        store: Document store being migrated
        registry: Version registry resolving paths and recording history
        backup_manager: Optional; enables backup_before_migration
        monitoring: Optional; receives progress and checkpoints, gates pauses
        events: Optional channel for progress and completion messages

    Example:
        >>> engine = MigrationEngine(store, registry)
        >>> engine.register_operations("1.1.0", [add_degradation_rate])
        >>> result = await engine.execute_migration("1.0.0", "1.1.0")
    """

    def __init__(
        self,
        store: DocumentStore,
        registry: VersionRegistry,
        backup_manager: BackupManager | None = None,
        monitoring: MigrationMonitoringSystem | None = None,
        events: EventChannel | None = None,
        config: MigrationConfig | None = None,
        max_group_size: int | None = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.backup_manager = backup_manager
        self.monitoring = monitoring
        self.events = events
        self.config = config or MigrationConfig()
        self.max_group_size = max_group_size
        self._operations: dict[str, list[MigrationOperation]] = {}
        self._dispatcher = DocumentDispatcher()
        self._background: set[asyncio.Task[Any]] = set()

    # ---------------------------------------------------------------------
    # Operation catalogue
    # ---------------------------------------------------------------------

    def register_operations(
        self, version: str | SchemaVersion, operations: Sequence[MigrationOperation]
    ) -> None:
        """Operations that move documents to ``version``."""
        key = str(SchemaVersion.parse(version))
        self._operations[key] = list(operations)
        logger.debug("Registered operations", extra={"version": key, "count": len(operations)})

    async def operations_for_plan(self, plan: MigrationPlan) -> list[MigrationOperation]:
        """Registered operations per version, or ones derived from the schema diff."""
        operations: list[MigrationOperation] = []
        previous = await self.registry.get_schema_by_version(plan.from_version)
        for schema in plan.path:
            registered = self._operations.get(str(schema.version))
            if registered is not None:
                operations.extend(registered)
            elif previous is not None and schema.metadata.migration_required:
                operations.extend(derive_operations(previous, schema))
            previous = schema
        return operations

    async def plan_operations(
        self, from_version: str | SchemaVersion, to_version: str | SchemaVersion
    ) -> tuple[MigrationPlan, list[MigrationOperation]]:
        """Resolve the path and the ordered operations without running anything.

        Raises:
            ConfigurationError: For invalid versions, paths or dependency graphs
        """
        plan = await self.registry.plan_migration_path(from_version, to_version)
        if not plan.is_valid:
            raise ConfigurationError(
                f"Invalid migration path {plan.from_version} -> {plan.to_version}: "
                + "; ".join(plan.errors),
                details={"errors": plan.errors},
            )
        return plan, order_operations(await self.operations_for_plan(plan))

    # ---------------------------------------------------------------------
    # Entry points
    # ---------------------------------------------------------------------

    async def execute_migration(
        self,
        from_version: str | SchemaVersion,
        to_version: str | SchemaVersion,
        options: MigrationOptions | None = None,
        dry_run: bool = False,
        migration_id: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> MigrationResult:
        """Migrate stored documents from one version to another.

        Never raises for configuration, validation or operational
        failures; they are reported in the returned result.
        """
        options = options or MigrationOptions.from_config(self.config)
        ctx = self._new_context(
            migration_id, str(from_version), str(to_version), dry_run, options, cancel_event
        )

        try:
            plan, ordered = await self.plan_operations(from_version, to_version)
        except ConfigurationError as e:
            ctx.error(e.message, code=e.code)
            if e.details.get("errors"):
                ctx.errors.extend(e.details["errors"])
            return self._finish(ctx, [], success=False)

        ctx.plan = plan
        ctx.warnings.extend(plan.warnings)
        return await self._execute(ctx, ordered)

    async def execute_operations(
        self,
        operations: Sequence[MigrationOperation],
        options: MigrationOptions | None = None,
        dry_run: bool = False,
        migration_id: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> MigrationResult:
        """Run an ad-hoc set of operations (no registry path, no version record)."""
        options = options or MigrationOptions.from_config(self.config)
        ctx = self._new_context(migration_id, None, None, dry_run, options, cancel_event)
        try:
            ordered = order_operations(operations)
        except ConfigurationError as e:
            ctx.error(e.message, code=e.code)
            return self._finish(ctx, [], success=False)
        return await self._execute(ctx, ordered)

    def _new_context(
        self,
        migration_id: str | None,
        from_version: str | None,
        to_version: str | None,
        dry_run: bool,
        options: MigrationOptions,
        cancel_event: asyncio.Event | None,
    ) -> MigrationContext:
        migration_id = migration_id or new_migration_id()
        return MigrationContext(
            migration_id=migration_id,
            from_version=from_version,
            to_version=to_version,
            dry_run=dry_run,
            options=options,
            logger=MigrationLogger(migration_id, logger),
            cancel_event=cancel_event,
        )

    async def _execute(
        self, ctx: MigrationContext, ordered: list[MigrationOperation]
    ) -> MigrationResult:
        ctx.stats.total_operations = len(ordered)
        self._emit(
            EventKind.MIGRATION_STARTED,
            ctx,
            f"Migration {ctx.migration_id} started ({len(ordered)} operations)",
            dry_run=ctx.dry_run,
        )
        monitored = self.monitoring is not None and not ctx.dry_run
        if monitored:
            await self.monitoring.start_monitoring(ctx.migration_id)

        try:
            await asyncio.wait_for(self._run(ctx, ordered), timeout=ctx.options.timeout_ms / 1000)
        except asyncio.TimeoutError:
            ctx.error(f"Migration timed out after {ctx.options.timeout_ms} ms")
            return await self._conclude(ctx, ordered, success=False, monitored=monitored)
        except MigrationCancelledError as e:
            ctx.error(e.message)
            result = await self._conclude(ctx, ordered, success=False, monitored=monitored)
            result.cancelled = True
            return result
        except DocShiftError as e:
            ctx.error(e.message, code=e.code)
            return await self._conclude(ctx, ordered, success=False, monitored=monitored)

        return await self._conclude(ctx, ordered, success=True, monitored=monitored)

    async def _run(self, ctx: MigrationContext, ordered: list[MigrationOperation]) -> None:
        options = ctx.options
        self._report(ctx, MigrationPhase.PREPARATION, None, "Preparing migration")

        if options.backup_before_migration and not ctx.dry_run and ordered:
            if self.backup_manager is None:
                ctx.warn("backup_before_migration requested but no backup manager is configured")
            else:
                collections = sorted({options.physical_collection(op.collection) for op in ordered})
                ctx.backup_id = await self.backup_manager.create_backup(
                    ctx.migration_id, collections, backup_type=BackupType.PRE_MIGRATION
                )
                ctx.logger.info("Pre-migration backup created", extra={"backup_id": ctx.backup_id})

        for index, op in enumerate(ordered):
            ctx.operation_index = index
            await self._between_batches(ctx)
            self._report(ctx, MigrationPhase.EXECUTION, op, f"Executing {op.id}")
            try:
                await self._execute_operation(op, ctx)
            except OperationFailedError as e:
                if not options.continue_on_error:
                    raise
                ctx.error(f"Operation {op.id} failed: {e.message}", operation_id=op.id)
                continue
            ctx.stats.operations_completed += 1
            if self.monitoring is not None and not ctx.dry_run:
                await self.monitoring.create_checkpoint(
                    ctx.migration_id,
                    operation_index=index,
                    documents_processed=ctx.stats.documents_processed,
                    backup_id=ctx.backup_id,
                )

        ctx.operation_index = len(ordered)
        if options.validate_after_migration and not ctx.dry_run and ctx.plan is not None:
            self._report(ctx, MigrationPhase.VALIDATION, None, "Validating migrated documents")
            await self._validate_documents(ctx)

    async def _conclude(
        self,
        ctx: MigrationContext,
        ordered: list[MigrationOperation],
        success: bool,
        monitored: bool,
    ) -> MigrationResult:
        self._report(ctx, MigrationPhase.CLEANUP, None, "Cleaning up")
        if not ctx.dry_run:
            try:
                await ctx.logger.save(self.store)
            except StoreError as e:
                ctx.warn(f"Could not persist migration log: {e.message}")

            if success and ctx.options.record_version and ctx.to_version and ctx.plan:
                target = ctx.plan.path[-1] if ctx.plan.path else None
                await self.registry.record_version_application(
                    ctx.to_version,
                    schema_id=target.id if target else None,
                    applied_by=ctx.options.applied_by,
                    environment=ctx.options.environment,
                    migration_id=ctx.migration_id,
                    backup_id=ctx.backup_id,
                    stats=ctx.stats.to_dict(),
                )

        if monitored:
            try:
                await self.monitoring.update_progress(ctx.migration_id, ctx.stats)
            except MonitorNotFoundError:
                logger.debug(
                    "Monitor closed before the run ended",
                    extra={"migration_id": ctx.migration_id},
                )
            await self.monitoring.stop_monitoring(
                ctx.migration_id, MonitorStatus.COMPLETED if success else MonitorStatus.FAILED
            )

        self._report(ctx, MigrationPhase.COMPLETED, None, "Migration finished")
        return self._finish(ctx, ordered, success)

    def _finish(
        self, ctx: MigrationContext, ordered: list[MigrationOperation], success: bool
    ) -> MigrationResult:
        ctx.stats.end_time = time.time()
        result = MigrationResult(
            migration_id=ctx.migration_id,
            success=success,
            from_version=ctx.from_version,
            to_version=ctx.to_version,
            dry_run=ctx.dry_run,
            stats=ctx.stats,
            errors=list(ctx.errors),
            warnings=list(ctx.warnings),
            operations=[op.id for op in ordered],
            collections_touched=sorted(ctx.collections_touched),
            backup_id=ctx.backup_id,
            samples=list(ctx.samples),
        )
        kind = EventKind.MIGRATION_COMPLETED if success else EventKind.MIGRATION_FAILED
        self._emit(
            kind,
            ctx,
            f"Migration {ctx.migration_id} {'completed' if success else 'failed'}",
            severity=Severity.INFO if success else Severity.ERROR,
            stats=ctx.stats.to_dict(),
            errors=result.errors[:10],
        )
        logger.info(
            "Migration finished",
            extra={
                "migration_id": ctx.migration_id,
                "success": success,
                "dry_run": ctx.dry_run,
                "documents_updated": ctx.stats.documents_updated,
                "errors": len(result.errors),
            },
        )
        return result

    # ---------------------------------------------------------------------
    # Operation execution
    # ---------------------------------------------------------------------

    async def _execute_operation(self, op: MigrationOperation, ctx: MigrationContext) -> None:
        options = ctx.options
        collection = options.physical_collection(op.collection)
        ctx.collections_touched.add(collection)
        writer = BatchWriter(self.store, cap=self.max_group_size, dry_run=ctx.dry_run)

        pages: asyncio.Queue[list[Document] | BaseException | None] = asyncio.Queue(
            maxsize=options.concurrency
        )
        producer = asyncio.create_task(self._fetch_pages(collection, op, options, pages))
        try:
            while True:
                item = await pages.get()
                if item is None:
                    break
                if isinstance(item, BaseException):
                    raise OperationFailedError(
                        f"Query failed for {collection}: {item}", operation_id=op.id
                    ) from item

                await self._between_batches(ctx)
                documents = item
                if options.document_selector is not None:
                    documents = [d for d in documents if options.document_selector(d)]
                if documents:
                    await self._process_page(op, collection, documents, writer, ctx)
                self._report(ctx, MigrationPhase.EXECUTION, op, f"Processed page of {op.id}")
        finally:
            producer.cancel()
            await asyncio.gather(producer, return_exceptions=True)
            writer.discard()
            ctx.stats.write_groups_committed += writer.groups_committed
            ctx.stats.largest_write_group = max(
                ctx.stats.largest_write_group, writer.largest_group
            )

        ctx.logger.info(
            "Operation completed",
            extra={"operation_id": op.id, "collection": collection, **ctx.stats.to_dict()},
        )

    async def _fetch_pages(
        self,
        collection: str,
        op: MigrationOperation,
        options: MigrationOptions,
        pages: asyncio.Queue[list[Document] | BaseException | None],
    ) -> None:
        cursor = None
        try:
            while True:
                page = await self.store.query(
                    collection, op.filters, limit=options.batch_size, start_after=cursor
                )
                if page.documents:
                    await pages.put(page.documents)
                if page.cursor is None:
                    break
                cursor = page.cursor
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await pages.put(e)
            return
        await pages.put(None)

    async def _process_page(
        self,
        op: MigrationOperation,
        collection: str,
        documents: list[Document],
        writer: BatchWriter,
        ctx: MigrationContext,
    ) -> None:
        """Evaluate and write one page, retrying the documents not yet committed.

        A page may span several write groups. When a later group fails,
        documents from groups that already committed keep their outcome and
        are not evaluated again.
        """
        options = ctx.options
        attempts = options.retry_attempts
        settled: list[tuple[Document, DocumentResult | BaseException]] = []
        writer.take_committed()

        for attempt in range(attempts):
            last_attempt = attempt == attempts - 1
            if attempt:
                ctx.stats.retries += 1
                await asyncio.sleep(options.retry_delay_ms / 1000 * (2 ** (attempt - 1)))
                documents = await self._reload(collection, documents)

            if isinstance(op, CustomOperation):
                try:
                    updated = await resolve(op.executor(documents, writer, ctx))
                    await writer.flush()
                except Exception as e:
                    writer.discard()
                    if not last_attempt:
                        ctx.logger.warning(
                            f"Custom operation {op.id} failed, retrying: {e}",
                            extra={"attempt": attempt + 1},
                        )
                        continue
                    self._page_exhausted(op, documents, e, ctx)
                    return
                updated = min(int(updated or 0), len(documents))
                ctx.stats.documents_processed += len(documents)
                ctx.stats.documents_updated += updated
                ctx.stats.documents_skipped += len(documents) - updated
                return

            outcomes = await self._evaluate(op, collection, documents, ctx)
            failures = [(d, r) for d, r in outcomes if isinstance(r, BaseException)]
            if failures and not last_attempt:
                ctx.logger.warning(
                    f"{len(failures)} document(s) failed in {op.id}, retrying page",
                    extra={"attempt": attempt + 1, "operation_id": op.id},
                )
                continue
            if failures and not options.continue_on_error:
                doc, error = failures[0]
                self._account(op, collection, settled, ctx)
                ctx.stats.documents_processed += len(documents)
                ctx.stats.errors_encountered += len(failures)
                raise OperationFailedError(
                    f"Operation {op.id} failed on document {doc.id}: {error}",
                    operation_id=op.id,
                    document_id=doc.id,
                ) from error

            try:
                for doc, outcome in outcomes:
                    if isinstance(outcome, DocumentResult) and outcome.writes:
                        await writer.write_all(outcome.writes, owner=doc.id)
                await writer.flush()
            except StoreError as e:
                writer.discard()
                committed = writer.take_committed()
                settled.extend((d, r) for d, r in outcomes if d.id in committed)
                documents = [d for d in documents if d.id not in committed]
                if not last_attempt:
                    ctx.logger.warning(
                        f"Commit failed for {op.id}, retrying page: {e.message}",
                        extra={"attempt": attempt + 1},
                    )
                    continue
                self._account(op, collection, settled, ctx)
                self._page_exhausted(op, documents, e, ctx)
                return

            writer.take_committed()
            self._account(op, collection, settled + outcomes, ctx)
            return

    async def _evaluate(
        self,
        op: MigrationOperation,
        collection: str,
        documents: list[Document],
        ctx: MigrationContext,
    ) -> list[tuple[Document, DocumentResult | BaseException]]:
        semaphore = asyncio.Semaphore(ctx.options.concurrency)

        async def evaluate(doc: Document) -> tuple[Document, DocumentResult | BaseException]:
            async with semaphore:
                try:
                    return doc, await op.accept(self._dispatcher, doc, collection, ctx)
                except Exception as e:
                    return doc, e

        return list(await asyncio.gather(*(evaluate(d) for d in documents)))

    async def _reload(self, collection: str, documents: list[Document]) -> list[Document]:
        reloaded = []
        for doc in documents:
            current = await self.store.get(collection, doc.id)
            if current is not None:
                reloaded.append(current)
        return reloaded

    def _account(
        self,
        op: MigrationOperation,
        collection: str,
        outcomes: list[tuple[Document, DocumentResult | BaseException]],
        ctx: MigrationContext,
    ) -> None:
        stats = ctx.stats
        for doc, outcome in outcomes:
            stats.documents_processed += 1
            if isinstance(outcome, BaseException):
                stats.errors_encountered += 1
                ctx.error(
                    f"Operation {op.id} skipped document {doc.id}: {outcome}",
                    operation_id=op.id,
                    document_id=doc.id,
                )
                continue
            if outcome.warning:
                ctx.warn(outcome.warning, operation_id=op.id, document_id=doc.id)
            if outcome.status == "updated":
                stats.documents_updated += 1
                if len(ctx.samples) < ctx.options.sample_size:
                    ctx.samples.append(
                        SampleChange(collection, doc.id, op.id, doc.data, outcome.after)
                    )
            elif outcome.status == "deleted":
                stats.documents_deleted += 1
            else:
                stats.documents_skipped += 1

    def _page_exhausted(
        self,
        op: MigrationOperation,
        documents: list[Document],
        error: BaseException,
        ctx: MigrationContext,
    ) -> None:
        ctx.stats.documents_processed += len(documents)
        ctx.stats.errors_encountered += len(documents)
        if not ctx.options.continue_on_error:
            raise OperationFailedError(
                f"Operation {op.id} failed after {ctx.options.retry_attempts} attempts: {error}",
                operation_id=op.id,
            ) from error
        ctx.error(
            f"Operation {op.id} skipped a page of {len(documents)} documents: {error}",
            operation_id=op.id,
        )

    async def _between_batches(self, ctx: MigrationContext) -> None:
        if ctx.cancelled:
            raise MigrationCancelledError(f"Migration {ctx.migration_id} cancelled")
        if self.monitoring is not None and not ctx.dry_run:
            try:
                await self.monitoring.update_progress(ctx.migration_id, ctx.stats)
            except MonitorNotFoundError as e:
                raise MigrationCancelledError(
                    f"Monitoring for migration {ctx.migration_id} ended"
                ) from e
            await self.monitoring.wait_until_runnable(ctx.migration_id)
            if ctx.cancelled:
                raise MigrationCancelledError(f"Migration {ctx.migration_id} cancelled")

    # ---------------------------------------------------------------------
    # Validation and reporting
    # ---------------------------------------------------------------------

    async def _validate_documents(self, ctx: MigrationContext) -> None:
        """Spot-check migrated documents against the target schema."""
        target = ctx.plan.path[-1] if ctx.plan and ctx.plan.path else None
        if target is None:
            return
        for collection_def in target.collections:
            physical = ctx.options.physical_collection(collection_def.name)
            if physical not in ctx.collections_touched:
                continue
            page = await self.store.query(physical, limit=VALIDATION_SAMPLE)
            for doc in page.documents:
                for field_def in collection_def.fields:
                    ok, message = field_def.validate_value(doc.get(field_def.name))
                    if not ok:
                        ctx.warn(
                            f"{physical}/{doc.id}: {message}",
                            collection=physical,
                            document_id=doc.id,
                        )

    def _report(
        self,
        ctx: MigrationContext,
        phase: MigrationPhase,
        op: MigrationOperation | None,
        message: str,
    ) -> None:
        """Publish progress without ever blocking the mutation path."""
        progress = MigrationProgress(
            migration_id=ctx.migration_id,
            phase=phase,
            operation_index=ctx.operation_index,
            total_operations=ctx.stats.total_operations,
            operation_id=op.id if op else None,
            documents_processed=ctx.stats.documents_processed,
            message=message,
        )
        data = progress.to_dict()
        data.pop("message")
        self._emit(EventKind.MIGRATION_PROGRESS, ctx, message, **data)

        callback = ctx.options.progress_callback
        if callback is None:
            return
        try:
            outcome = callback(progress)
            if inspect.isawaitable(outcome):
                task = asyncio.ensure_future(outcome)
                self._background.add(task)
                task.add_done_callback(self._progress_done)
        except Exception as e:
            logger.warning(
                f"Progress callback failed: {e}", extra={"migration_id": ctx.migration_id}
            )

    def _progress_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Progress callback failed: {task.exception()}")

    def _emit(
        self,
        kind: EventKind,
        ctx: MigrationContext,
        message: str,
        severity: Severity = Severity.INFO,
        **data: Any,
    ) -> None:
        if self.events is None:
            return
        data.pop("migration_id", None)
        data.setdefault("dry_run", ctx.dry_run)
        self.events.emit(kind, ctx.migration_id, message, severity, **data)

    @property
    def stats(self) -> dict[str, Any]:
        """Engine statistics."""
        return {
            "registered_versions": sorted(self._operations),
            "pending_callbacks": len(self._background),
        }
