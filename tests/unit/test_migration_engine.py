"""
Unit tests for the migration engine.

Tests cover:
- Per-kind document semantics (add, remove, rename, convert, transform, custom)
- Idempotent reruns
- Page retries and continue_on_error
- Bounded write groups
- Dry runs leaving the store untouched
- Cancellation, invalid paths and version recording
- Backups, monitoring checkpoints and progress callbacks
"""

import asyncio

import pytest

from docplatform.docshift.config import MonitoringConfig
from docplatform.docshift.events import EventChannel, EventKind
from docplatform.docshift.migration import (
    LOGS_COLLECTION,
    AddFieldOperation,
    ChangeFieldTypeOperation,
    CustomOperation,
    DataTransformer,
    MigrationEngine,
    MigrationOptions,
    MigrationPhase,
    RemoveFieldOperation,
    RenameFieldOperation,
    TransformDataOperation,
    normalize_power_units,
)
from docplatform.docshift.registry import (
    CollectionSchemaDefinition,
    FieldDefinition,
    FieldType,
    SchemaDefinition,
    VersionRegistry,
)
from docplatform.docshift.safety import (
    BackupManager,
    BackupType,
    MigrationMonitoringSystem,
    MonitorStatus,
)
from docplatform.docshift.store import InMemoryDocumentStore

PANELS = "solarPanels"
MIXED_POWER = {"p1": {"serial": "A", "power": "1"}, "p2": {"serial": "B", "power": "abc"}}


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


def options(**overrides):
    """Helper for fast options without a pre-migration backup."""
    overrides.setdefault("retry_delay_ms", 1)
    overrides.setdefault("backup_before_migration", False)
    return MigrationOptions(**overrides)


def panels(count, **extra):
    return {f"p{i}": {"serial": f"SN{i}", **extra} for i in range(count)}


class TestMigrationEngine:
    """Tests for MigrationEngine."""

    @pytest.fixture
    def store(self):
        """Create store with a small mutation cap."""
        return InMemoryDocumentStore(max_group_size=4)

    @pytest.fixture
    async def registry(self, store):
        """Create registry with versions 1.0.0 and 1.1.0."""
        registry = VersionRegistry(store)
        await registry.register_schema(make_schema("1.0.0"))
        await registry.register_schema(make_schema("1.1.0"))
        return registry

    @pytest.fixture
    def engine(self, store, registry):
        """Create engine without safety components."""
        return MigrationEngine(store, registry)

    @pytest.mark.asyncio
    async def test_add_field(self, store, registry, engine):
        """Missing fields get the default and an updatedAt stamp."""
        await store.seed(PANELS, panels(3))
        engine.register_operations(
            "1.1.0",
            [
                AddFieldOperation(
                    id="add_rate", collection=PANELS, field="degradationRate", default_value=0.5
                )
            ],
        )

        result = await engine.execute_migration("1.0.0", "1.1.0", options=options())

        assert result.success
        assert result.stats.documents_updated == 3
        assert result.operations == ["add_rate"]
        assert result.collections_touched == [PANELS]
        for data in store.snapshot(PANELS).values():
            assert data["degradationRate"] == 0.5
            assert "updatedAt" in data
        assert str(await registry.get_applied_version()) == "1.1.0"

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, store, engine):
        """Running the same migration twice changes nothing the second time."""
        await store.seed(PANELS, panels(3))
        engine.register_operations(
            "1.1.0",
            [AddFieldOperation(id="add_rate", collection=PANELS, field="rate", default_value=0.5)],
        )

        await engine.execute_migration("1.0.0", "1.1.0", options=options())
        after_first = store.snapshot(PANELS)
        second = await engine.execute_migration("1.0.0", "1.1.0", options=options())

        assert second.success
        assert second.stats.documents_updated == 0
        assert second.stats.documents_skipped == 3
        assert store.snapshot(PANELS) == after_first

    @pytest.mark.asyncio
    async def test_add_field_keeps_existing_value(self, store, engine):
        """Documents that already have the field are skipped."""
        await store.seed(PANELS, {"p1": {"serial": "A", "rate": 0.8}})
        op = AddFieldOperation(id="add_rate", collection=PANELS, field="rate", default_value=0.5)

        result = await engine.execute_operations([op], options=options())

        assert result.stats.documents_skipped == 1
        assert store.snapshot(PANELS)["p1"]["rate"] == 0.8

    @pytest.mark.asyncio
    async def test_remove_field_archives_value(self, store, engine):
        """Removed values are archived under collection_docid_field."""
        await store.seed(PANELS, {"p1": {"serial": "A", "legacy": "old"}, "p2": {"serial": "B"}})
        op = RemoveFieldOperation(
            id="drop_legacy",
            collection=PANELS,
            field="legacy",
            backup_location="_removed_field_archive",
        )

        result = await engine.execute_operations([op], options=options(), migration_id="m1")

        assert result.stats.documents_updated == 1
        assert result.stats.documents_skipped == 1
        assert "legacy" not in store.snapshot(PANELS)["p1"]
        archived = store.snapshot("_removed_field_archive")["solarPanels_p1_legacy"]
        assert archived["removedValue"] == "old"
        assert archived["originalDocId"] == "p1"
        assert archived["migrationId"] == "m1"

    @pytest.mark.asyncio
    async def test_rename_field(self, store, engine):
        """Renames copy the value and drop the old field."""
        await store.seed(PANELS, {"p1": {"serial": "A", "kw": 4.2}})
        op = RenameFieldOperation(
            id="rename", collection=PANELS, old_field="kw", new_field="powerKw"
        )

        await engine.execute_operations([op], options=options())

        data = store.snapshot(PANELS)["p1"]
        assert data["powerKw"] == 4.2
        assert "kw" not in data

    @pytest.mark.asyncio
    async def test_rename_preserving_old_field(self, store, engine):
        """With preserve_old_field both fields remain and reruns skip."""
        await store.seed(PANELS, {"p1": {"serial": "A", "kw": 4.2}})
        op = RenameFieldOperation(
            id="rename",
            collection=PANELS,
            old_field="kw",
            new_field="powerKw",
            preserve_old_field=True,
        )

        await engine.execute_operations([op], options=options())
        rerun = await engine.execute_operations([op], options=options())

        data = store.snapshot(PANELS)["p1"]
        assert data["kw"] == data["powerKw"] == 4.2
        assert rerun.stats.documents_skipped == 1

    @pytest.mark.asyncio
    async def test_change_field_type(self, store, engine):
        """Values are converted; already-converted values are skipped."""
        await store.seed(
            PANELS, {"p1": {"serial": "A", "power": "4.2"}, "p2": {"serial": "B", "power": 5}}
        )
        op = ChangeFieldTypeOperation(
            id="power_number", collection=PANELS, field="power", to_type=FieldType.NUMBER
        )

        result = await engine.execute_operations([op], options=options())

        snapshot = store.snapshot(PANELS)
        assert snapshot["p1"]["power"] == 4.2
        assert snapshot["p2"]["power"] == 5
        assert result.stats.documents_updated == 1
        assert result.stats.documents_skipped == 1

    @pytest.mark.asyncio
    async def test_custom_converter(self, store, engine):
        """A converter replaces the default coercion."""
        await store.seed(PANELS, {"p1": {"serial": "A", "power": 4}})
        op = ChangeFieldTypeOperation(
            id="power_watts",
            collection=PANELS,
            field="power",
            to_type=FieldType.NUMBER,
            converter=lambda value: value * 1000,
        )

        await engine.execute_operations([op], options=options())

        assert store.snapshot(PANELS)["p1"]["power"] == 4000

    @pytest.mark.asyncio
    async def test_transform_data(self, store, engine):
        """Transformers replace the document; unchanged documents are skipped."""
        await store.seed(
            PANELS,
            {
                "p1": {"serial": "A", "power": 5, "powerUnit": "kW"},
                "p2": {"serial": "B", "power": 300, "powerUnit": "W"},
            },
        )
        op = TransformDataOperation(
            id="watts", collection=PANELS, transformer=normalize_power_units
        )

        result = await engine.execute_operations([op], options=options())

        snapshot = store.snapshot(PANELS)
        assert snapshot["p1"] == {"serial": "A", "power": 5000, "powerUnit": "W"}
        assert snapshot["p2"]["power"] == 300
        assert result.stats.documents_updated == 1

    @pytest.mark.asyncio
    async def test_transform_failing_validation_leaves_document(self, store, engine):
        """A transformed document failing validation is left unchanged with a warning."""
        await store.seed(PANELS, {"p1": {"serial": "A"}})
        transformer = DataTransformer(
            name="always_invalid",
            transform=lambda doc: {**doc, "flag": True},
            validate=lambda doc: False,
        )
        op = TransformDataOperation(id="flag", collection=PANELS, transformer=transformer)

        result = await engine.execute_operations([op], options=options())

        assert result.success
        assert store.snapshot(PANELS)["p1"] == {"serial": "A"}
        assert any("failed validation" in w for w in result.warnings)

    @pytest.mark.asyncio
    async def test_custom_operation(self, store, engine):
        """Custom executors write through the batch writer."""
        await store.seed(PANELS, panels(3))

        async def tag(documents, writer, ctx):
            for doc in documents:
                await writer.update(PANELS, doc.id, {"tagged": True})
            return len(documents)

        op = CustomOperation(id="tag", collection=PANELS, executor=tag)

        result = await engine.execute_operations([op], options=options())

        assert result.stats.documents_updated == 3
        assert all(d["tagged"] for d in store.snapshot(PANELS).values())

    @pytest.mark.asyncio
    async def test_failing_document_fails_run(self, store, engine):
        """Without continue_on_error a failing document fails the run."""
        await store.seed(PANELS, MIXED_POWER)
        op = ChangeFieldTypeOperation(
            id="power_number", collection=PANELS, field="power", to_type=FieldType.NUMBER
        )

        result = await engine.execute_operations([op], options=options(retry_attempts=1))

        assert not result.success
        assert any("failed on document p2" in e for e in result.errors)
        assert store.snapshot(PANELS)["p1"]["power"] == "1"

    @pytest.mark.asyncio
    async def test_continue_on_error(self, store, engine):
        """With continue_on_error failures are listed and the rest is migrated."""
        await store.seed(PANELS, MIXED_POWER)
        op = ChangeFieldTypeOperation(
            id="power_number", collection=PANELS, field="power", to_type=FieldType.NUMBER
        )

        result = await engine.execute_operations(
            [op], options=options(retry_attempts=1, continue_on_error=True)
        )

        assert result.success
        assert result.stats.errors_encountered == 1
        assert any("skipped document p2" in e for e in result.errors)
        assert store.snapshot(PANELS)["p1"]["power"] == 1

    @pytest.mark.asyncio
    async def test_commit_failure_is_retried(self, store, engine):
        """A failed commit retries the page and only final failures count as errors."""
        await store.seed(PANELS, panels(3))
        store.inject_commit_failures(1)
        op = AddFieldOperation(id="add_rate", collection=PANELS, field="rate", default_value=0.5)

        result = await engine.execute_operations([op], options=options(retry_attempts=3))

        assert result.success
        assert result.stats.retries == 1
        assert result.stats.errors_encountered == 0
        assert all(d["rate"] == 0.5 for d in store.snapshot(PANELS).values())

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, store, engine):
        """A page failing every attempt fails the run and leaves data untouched."""
        await store.seed(PANELS, panels(2))
        store.inject_commit_failures(2)
        op = AddFieldOperation(id="add_rate", collection=PANELS, field="rate", default_value=0.5)

        result = await engine.execute_operations([op], options=options(retry_attempts=2))

        assert not result.success
        assert any("failed after 2 attempts" in e for e in result.errors)
        assert store.snapshot(PANELS) == panels(2)

    @pytest.mark.asyncio
    async def test_partial_page_commit_not_reapplied(self, store, engine):
        """Documents committed before a failed group are not transformed again."""
        await store.seed(PANELS, {f"d{i}": {"n": 1} for i in range(10)})
        store.inject_commit_failures(after=1)
        transformer = DataTransformer(name="bump", transform=lambda doc: {**doc, "n": doc["n"] + 1})
        op = TransformDataOperation(id="bump", collection=PANELS, transformer=transformer)

        result = await engine.execute_operations([op], options=options(batch_size=100))

        assert result.success
        assert result.stats.retries == 1
        assert {d["n"] for d in store.snapshot(PANELS).values()} == {2}
        assert result.stats.documents_processed == 10
        assert result.stats.documents_updated == 10

    @pytest.mark.asyncio
    async def test_partial_page_commit_counted(self, store, engine):
        """Stats include documents committed before a failed group."""
        await store.seed(PANELS, panels(10))
        store.inject_commit_failures(after=1)
        op = AddFieldOperation(id="add_rate", collection=PANELS, field="rate", default_value=0.5)

        result = await engine.execute_operations([op], options=options(batch_size=100))

        assert result.success
        assert result.stats.documents_updated == 10
        assert result.stats.documents_skipped == 0
        assert all(d["rate"] == 0.5 for d in store.snapshot(PANELS).values())

    @pytest.mark.asyncio
    async def test_write_groups_bounded(self, store, engine):
        """A large page is committed in groups no larger than the store cap."""
        await store.seed(PANELS, panels(10))
        store.group_sizes.clear()
        op = AddFieldOperation(id="add_rate", collection=PANELS, field="rate", default_value=0.5)

        result = await engine.execute_operations([op], options=options(batch_size=100))

        assert max(store.group_sizes) <= 4
        assert result.stats.write_groups_committed == 3
        assert result.stats.largest_write_group == 4

    @pytest.mark.asyncio
    async def test_engine_cap_below_store_cap(self, store, registry):
        """max_group_size narrows groups further."""
        engine = MigrationEngine(store, registry, max_group_size=2)
        await store.seed(PANELS, panels(5))
        op = AddFieldOperation(id="add_rate", collection=PANELS, field="rate", default_value=0.5)

        result = await engine.execute_operations([op], options=options())

        assert result.stats.largest_write_group == 2
        assert result.stats.write_groups_committed == 3

    @pytest.mark.asyncio
    async def test_pages_follow_batch_size(self, store, engine):
        """Small batches still visit every document."""
        await store.seed(PANELS, panels(7))
        op = AddFieldOperation(id="add_rate", collection=PANELS, field="rate", default_value=0.5)

        result = await engine.execute_operations([op], options=options(batch_size=2))

        assert result.stats.documents_processed == 7
        assert result.stats.documents_updated == 7

    @pytest.mark.asyncio
    async def test_dry_run_does_not_mutate(self, store, registry, engine):
        """Dry runs evaluate everything and write nothing, bookkeeping included."""
        await store.seed(PANELS, panels(3))
        engine.register_operations(
            "1.1.0",
            [AddFieldOperation(id="add_rate", collection=PANELS, field="rate", default_value=0.5)],
        )
        before = store.snapshot(PANELS)

        result = await engine.execute_migration("1.0.0", "1.1.0", options=options(), dry_run=True)

        assert result.success
        assert result.dry_run
        assert result.stats.documents_updated == 3
        assert result.samples
        assert store.snapshot(PANELS) == before
        assert await registry.get_applied_version() is None
        assert LOGS_COLLECTION not in await store.list_collections()

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, store, engine):
        """A set cancel event stops the run before any write."""
        await store.seed(PANELS, panels(2))
        cancel = asyncio.Event()
        cancel.set()
        op = AddFieldOperation(id="add_rate", collection=PANELS, field="rate", default_value=0.5)

        result = await engine.execute_operations([op], options=options(), cancel_event=cancel)

        assert result.cancelled
        assert not result.success
        assert store.snapshot(PANELS) == panels(2)

    @pytest.mark.asyncio
    async def test_invalid_path_reported(self, engine):
        """Invalid version paths fail the result instead of raising."""
        result = await engine.execute_migration("1.1.0", "1.0.0", options=options())

        assert not result.success
        assert any("must be greater than source" in e for e in result.errors)

    @pytest.mark.asyncio
    async def test_cycle_reported(self, engine):
        """A dependency cycle fails the result."""
        ops = [
            AddFieldOperation(id="a", collection=PANELS, field="a", dependencies=("b",)),
            AddFieldOperation(id="b", collection=PANELS, field="b", dependencies=("a",)),
        ]

        result = await engine.execute_operations(ops, options=options())

        assert not result.success
        assert any("Circular dependency" in e for e in result.errors)

    @pytest.mark.asyncio
    async def test_version_not_recorded_when_disabled(self, store, registry, engine):
        """record_version=False leaves the history alone."""
        await store.seed(PANELS, panels(1))

        result = await engine.execute_migration(
            "1.0.0", "1.1.0", options=options(record_version=False)
        )

        assert result.success
        assert await registry.get_version_history() == []

    @pytest.mark.asyncio
    async def test_derived_operations(self, store):
        """Without registered operations the schema diff drives the run."""
        registry = VersionRegistry(store)
        await registry.register_schema(make_schema("1.0.0"))
        await registry.register_schema(
            make_schema("1.1.0", FieldDefinition("rate", FieldType.NUMBER, default_value=0.5))
        )
        engine = MigrationEngine(store, registry)
        await store.seed(PANELS, panels(2))

        result = await engine.execute_migration("1.0.0", "1.1.0", options=options())

        assert result.operations == ["1.1.0:field_added:solarPanels.rate"]
        assert all(d["rate"] == 0.5 for d in store.snapshot(PANELS).values())

    @pytest.mark.asyncio
    async def test_pre_migration_backup(self, store, registry):
        """backup_before_migration backs up the touched collections first."""
        backups = BackupManager(store)
        engine = MigrationEngine(store, registry, backup_manager=backups)
        await store.seed(PANELS, panels(2))
        op = AddFieldOperation(id="add_rate", collection=PANELS, field="rate", default_value=0.5)

        result = await engine.execute_operations(
            [op], options=options(backup_before_migration=True)
        )

        record = await backups.get_backup(result.backup_id)
        assert record.backup_type == BackupType.PRE_MIGRATION
        assert record.collection_names == [PANELS]
        assert record.total_documents == 2

    @pytest.mark.asyncio
    async def test_backup_requested_without_manager_warns(self, store, engine):
        """Without a backup manager the run proceeds with a warning."""
        await store.seed(PANELS, panels(1))
        op = AddFieldOperation(id="add_rate", collection=PANELS, field="rate", default_value=0.5)

        result = await engine.execute_operations(
            [op], options=options(backup_before_migration=True)
        )

        assert result.success
        assert result.backup_id is None
        assert any("no backup manager" in w for w in result.warnings)

    @pytest.mark.asyncio
    async def test_monitoring_checkpoints(self, store, registry):
        """Monitored runs checkpoint each operation and finish COMPLETED."""
        monitoring = MigrationMonitoringSystem(store, MonitoringConfig(sample_interval_seconds=0))
        engine = MigrationEngine(store, registry, monitoring=monitoring)
        await store.seed(PANELS, panels(2))
        ops = [
            AddFieldOperation(id="a", collection=PANELS, field="a", default_value=1),
            AddFieldOperation(id="b", collection=PANELS, field="b", default_value=2),
        ]

        result = await engine.execute_operations(ops, options=options(), migration_id="m1")

        monitor = await monitoring.get_monitor("m1")
        assert result.success
        assert monitor.status == MonitorStatus.COMPLETED
        assert [c.operation_index for c in monitor.checkpoints] == [0, 1]
        assert monitor.metrics.documents_processed == 4
        assert monitoring.stats["monitors"] == 0

    @pytest.mark.asyncio
    async def test_progress_callback_and_events(self, store, registry):
        """Progress reaches the callback and the event channel."""
        events = EventChannel()
        engine = MigrationEngine(store, registry, events=events)
        await store.seed(PANELS, panels(1))
        seen = []
        op = AddFieldOperation(id="add_rate", collection=PANELS, field="rate", default_value=0.5)

        await engine.execute_operations(
            [op], options=options(progress_callback=seen.append), migration_id="m1"
        )

        phases = [p.phase for p in seen]
        assert phases[0] == MigrationPhase.PREPARATION
        assert phases[-1] == MigrationPhase.COMPLETED
        kinds = [e.kind for e in events.recent(source="m1")]
        assert kinds[0] == EventKind.MIGRATION_STARTED
        assert kinds[-1] == EventKind.MIGRATION_COMPLETED

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_fail_run(self, store, engine):
        """Callback errors are logged, not raised."""
        await store.seed(PANELS, panels(1))

        def explode(progress):
            raise RuntimeError("boom")

        op = AddFieldOperation(id="add_rate", collection=PANELS, field="rate", default_value=0.5)

        result = await engine.execute_operations([op], options=options(progress_callback=explode))

        assert result.success

    @pytest.mark.asyncio
    async def test_collection_map(self, store, engine):
        """Logical collections resolve to physical names through collection_map."""
        await store.seed("solarPanels__green_d1", panels(1))
        op = AddFieldOperation(id="add_rate", collection=PANELS, field="rate", default_value=0.5)

        result = await engine.execute_operations(
            [op], options=options(collection_map={PANELS: "solarPanels__green_d1"})
        )

        assert result.collections_touched == ["solarPanels__green_d1"]
        assert store.snapshot("solarPanels__green_d1")["p0"]["rate"] == 0.5
        assert store.snapshot(PANELS) == {}

    @pytest.mark.asyncio
    async def test_document_selector(self, store, engine):
        """Only selected documents are migrated."""
        await store.seed(PANELS, panels(4))
        op = AddFieldOperation(id="add_rate", collection=PANELS, field="rate", default_value=0.5)

        result = await engine.execute_operations(
            [op], options=options(document_selector=lambda doc: doc.id in ("p0", "p1"))
        )

        snapshot = store.snapshot(PANELS)
        assert result.stats.documents_processed == 2
        assert "rate" in snapshot["p0"]
        assert "rate" not in snapshot["p3"]

    @pytest.mark.asyncio
    async def test_samples_and_logs(self, store, engine):
        """Samples are capped and the run log is persisted."""
        await store.seed(PANELS, panels(4))
        op = AddFieldOperation(id="add_rate", collection=PANELS, field="rate", default_value=0.5)

        result = await engine.execute_operations(
            [op], options=options(sample_size=2), migration_id="m1"
        )

        assert len(result.samples) == 2
        assert result.samples[0].after["rate"] == 0.5
        assert "rate" not in result.samples[0].before
        log = store.snapshot(LOGS_COLLECTION)["m1_0000"]
        assert log["migration_id"] == "m1"
        assert log["entries"]

    def test_invalid_options(self):
        """Non-positive batch sizes and concurrency are rejected."""
        with pytest.raises(ValueError, match="batch_size"):
            MigrationOptions(batch_size=0)
        with pytest.raises(ValueError, match="concurrency"):
            MigrationOptions(concurrency=0)
