"""
Property tests across the registry, engine and safety system.

Tests cover:
- Idempotent add, remove and rename operations
- The registry pointer never moving backwards
- Dry runs never writing documents
- Rollback restoring the backed-up document set
- Write groups staying within the store cap for any batch size
"""

import itertools

import pytest

from docplatform.docshift.migration import (
    REMOVED_FIELD_ARCHIVE,
    AddFieldOperation,
    MigrationEngine,
    MigrationOptions,
    RemoveFieldOperation,
    RenameFieldOperation,
)
from docplatform.docshift.registry import (
    CollectionSchemaDefinition,
    FieldDefinition,
    FieldType,
    SchemaDefinition,
    SchemaVersion,
    VersionRegistry,
)
from docplatform.docshift.safety import BackupManager, RollbackSystem
from docplatform.docshift.store import InMemoryDocumentStore

READINGS = "sensorReadings"
STORE_CAP = 4


def readings(count):
    return {
        f"r{i:02d}": {"sensor": f"S{i % 3}", "value": i * 1.5, "legacyUnit": "kW"}
        for i in range(count)
    }


def options(**overrides):
    overrides.setdefault("retry_delay_ms", 1)
    overrides.setdefault("backup_before_migration", False)
    return MigrationOptions(**overrides)


OPERATION_SETS = {
    "add": [
        AddFieldOperation(id="add_quality", collection=READINGS, field="quality", default_value=1)
    ],
    "remove": [RemoveFieldOperation(id="drop_unit", collection=READINGS, field="legacyUnit")],
    "rename": [
        RenameFieldOperation(
            id="rename_value", collection=READINGS, old_field="value", new_field="kw"
        )
    ],
    "archived_remove": [
        RemoveFieldOperation(
            id="archive_unit",
            collection=READINGS,
            field="legacyUnit",
            backup_location=REMOVED_FIELD_ARCHIVE,
        )
    ],
    "combined": [
        AddFieldOperation(id="add_quality", collection=READINGS, field="quality", default_value=1),
        RenameFieldOperation(
            id="rename_value",
            collection=READINGS,
            old_field="value",
            new_field="kw",
            dependencies=("add_quality",),
        ),
        RemoveFieldOperation(
            id="drop_unit",
            collection=READINGS,
            field="legacyUnit",
            dependencies=("rename_value",),
        ),
    ],
}


@pytest.fixture
async def store():
    store = InMemoryDocumentStore(max_group_size=STORE_CAP)
    await store.seed(READINGS, readings(10))
    return store


@pytest.fixture
def engine(store):
    return MigrationEngine(store, VersionRegistry(store))


class TestIdempotence:
    """Running an operation set twice equals running it once."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", sorted(OPERATION_SETS))
    async def test_second_run_changes_nothing(self, store, engine, name):
        """The second run skips every document."""
        first = await engine.execute_operations(OPERATION_SETS[name], options=options())
        once = store.snapshot(READINGS)

        second = await engine.execute_operations(OPERATION_SETS[name], options=options())

        assert first.success
        assert second.success
        assert second.stats.documents_updated == 0
        assert store.snapshot(READINGS) == once


class TestMonotonicVersion:
    """The registry pointer only moves forward."""

    VERSIONS = ("1.0.0", "1.1.0", "1.2.0", "1.2.1")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("order", list(itertools.permutations(VERSIONS)))
    async def test_pointer_never_decreases(self, order):
        """Any registration order leaves the pointer at the maximum seen so far."""
        registry = VersionRegistry(InMemoryDocumentStore())
        highest = None

        for version in order:
            await registry.register_schema(
                SchemaDefinition(
                    id=f"telemetry_{version.replace('.', '_')}",
                    version=version,
                    name="Telemetry",
                    description=f"Telemetry schema at {version}",
                    collections=(
                        CollectionSchemaDefinition(
                            name=READINGS,
                            fields=(FieldDefinition("sensor", FieldType.STRING, required=True),),
                        ),
                    ),
                )
            )
            current = await registry.get_current_version()
            assert highest is None or current >= highest
            highest = current

        assert highest == SchemaVersion.parse("1.2.1")


class TestDryRunNonMutation:
    """Dry runs predict changes without writing them."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", sorted(OPERATION_SETS))
    async def test_documents_unchanged(self, store, engine, name):
        """Every targeted document is untouched while changes are still counted."""
        before = store.snapshot(READINGS)
        collections = await store.list_collections()

        result = await engine.execute_operations(
            OPERATION_SETS[name], options=options(), dry_run=True
        )

        assert result.success
        assert result.stats.documents_updated > 0
        assert store.snapshot(READINGS) == before
        assert await store.list_collections() == collections


class TestRollbackRestores:
    """A rollback returns collections to their backed-up state."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", sorted(OPERATION_SETS))
    async def test_restored_equals_backup(self, store, engine, name):
        """Migrate, roll back, compare field for field."""
        before = store.snapshot(READINGS)
        backups = BackupManager(store)
        rollback = RollbackSystem(backups, engine.registry)
        backup_id = await backups.create_backup("m1", [READINGS])

        migrated = await engine.execute_operations(OPERATION_SETS[name], options=options())
        assert store.snapshot(READINGS) != before

        result = await rollback.rollback(migrated.migration_id, None, backup_id)

        assert result.success
        assert store.snapshot(READINGS) == before


class TestBatchBoundedness:
    """No write group exceeds the store cap."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("batch_size", [1, 3, 4, 7, 50])
    @pytest.mark.parametrize("name", ["add", "archived_remove", "combined"])
    async def test_groups_within_cap(self, store, engine, batch_size, name):
        """Every committed group holds at most STORE_CAP mutations."""
        result = await engine.execute_operations(
            OPERATION_SETS[name], options=options(batch_size=batch_size)
        )

        assert result.success
        assert result.stats.largest_write_group <= STORE_CAP
        assert store.group_sizes
        assert max(store.group_sizes) <= STORE_CAP
