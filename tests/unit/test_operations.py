"""
Unit tests for migration operations, ordering and batching.

Tests cover:
- Operation construction
- Dependency ordering with priority tie-breaks
- Cycle and unknown-dependency detection
- Default type conversion
- Operations derived from a schema diff
- Built-in transformers
- Capacity-bounded write batching
"""

import pytest

from docplatform.docshift.errors import (
    ConfigurationError,
    CyclicDependencyError,
    OperationFailedError,
    StoreError,
    UnknownDependencyError,
    WriteGroupFullError,
)
from docplatform.docshift.migration import (
    REMOVED_FIELD_ARCHIVE,
    AddFieldOperation,
    BatchWriter,
    ChangeFieldTypeOperation,
    OperationKind,
    RemoveFieldOperation,
    RenameFieldOperation,
    convert_value,
    derive_operations,
    migrate_address_format,
    normalize_power_units,
    order_operations,
)
from docplatform.docshift.registry import (
    CollectionSchemaDefinition,
    FieldDefinition,
    FieldType,
    SchemaDefinition,
)
from docplatform.docshift.store import FieldFilter, InMemoryDocumentStore
from docplatform.docshift.store.base import Mutation, MutationKind


def add(op_id, priority=100, dependencies=()):
    """Helper to build an add_field operation."""
    return AddFieldOperation(
        id=op_id,
        collection="panels",
        field=op_id,
        default_value=0,
        priority=priority,
        dependencies=dependencies,
    )


class TestOperations:
    """Tests for operation dataclasses."""

    def test_kind_and_summary(self):
        """Each variant carries its kind."""
        op = RenameFieldOperation(
            id="rename", collection="panels", old_field="kw", new_field="power"
        )
        assert op.kind == OperationKind.RENAME_FIELD
        assert op.summary()["kind"] == "rename_field"

    def test_empty_id_rejected(self):
        """Operations need an id."""
        with pytest.raises(ValueError, match="id cannot be empty"):
            AddFieldOperation(id="", collection="panels", field="x")

    def test_missing_collection_rejected(self):
        """Operations need a collection."""
        with pytest.raises(ValueError, match="must name a collection"):
            AddFieldOperation(id="a", collection="", field="x")

    def test_lists_become_tuples(self):
        """Dependencies and filters are stored as tuples."""
        op = AddFieldOperation(
            id="a",
            collection="panels",
            field="x",
            dependencies=["b"],
            filters=[FieldFilter("kind", "==", "mono")],
        )
        assert op.dependencies == ("b",)
        assert isinstance(op.filters, tuple)


class TestOrdering:
    """Tests for order_operations."""

    def test_priority_without_dependencies(self):
        """Independent operations run by ascending priority, then declaration order."""
        ordered = order_operations([add("c", 30), add("a", 10), add("b", 30)])
        assert [op.id for op in ordered] == ["a", "c", "b"]

    def test_dependencies_before_priority(self):
        """A dependency runs first even with a worse priority."""
        ordered = order_operations(
            [add("x", 100), add("y", 10, dependencies=("z",)), add("z", 200)]
        )
        assert [op.id for op in ordered] == ["z", "y", "x"]

    def test_every_dependency_precedes_dependent(self):
        """Topological order holds across a diamond."""
        ops = [
            add("d", 1, dependencies=("b", "c")),
            add("b", 5, dependencies=("a",)),
            add("c", 2, dependencies=("a",)),
            add("a", 9),
        ]
        position = {op.id: i for i, op in enumerate(order_operations(ops))}

        for op in ops:
            for dependency in op.dependencies:
                assert position[dependency] < position[op.id]

    def test_cycle_detected(self):
        """A dependency cycle raises CyclicDependencyError naming the cycle."""
        with pytest.raises(CyclicDependencyError) as exc_info:
            order_operations([add("a", dependencies=("b",)), add("b", dependencies=("a",))])

        assert exc_info.value.cycle == ["a", "b", "a"]
        assert "a -> b -> a" in exc_info.value.message

    def test_self_dependency_is_cycle(self):
        """An operation depending on itself is a cycle."""
        with pytest.raises(CyclicDependencyError):
            order_operations([add("a", dependencies=("a",))])

    def test_unknown_dependency(self):
        """Dependencies outside the set are rejected."""
        with pytest.raises(UnknownDependencyError, match="unknown operation 'ghost'"):
            order_operations([add("a", dependencies=("ghost",))])

    def test_duplicate_ids(self):
        """Operation ids must be unique."""
        with pytest.raises(ConfigurationError, match="Duplicate operation id"):
            order_operations([add("a"), add("a")])


class TestConvertValue:
    """Tests for the default type conversion."""

    def test_to_number(self):
        """Numeric strings become numbers."""
        assert convert_value("42", FieldType.NUMBER) == 42
        assert isinstance(convert_value("42", FieldType.NUMBER), int)
        assert convert_value(" 4.5 ", FieldType.NUMBER) == 4.5
        assert convert_value(True, FieldType.NUMBER) == 1

    def test_to_number_rejects_text(self):
        """Non-numeric strings cannot become numbers."""
        with pytest.raises(OperationFailedError, match="Cannot convert 'abc' to number"):
            convert_value("abc", FieldType.NUMBER)

    def test_to_string(self):
        """Values render as strings."""
        assert convert_value(True, FieldType.STRING) == "true"
        assert convert_value(3.0, FieldType.STRING) == "3"
        assert convert_value({"b": 1, "a": 2}, FieldType.STRING) == '{"a": 2, "b": 1}'

    def test_to_boolean(self):
        """Common truthy and falsy spellings are recognized."""
        assert convert_value("Yes", FieldType.BOOLEAN) is True
        assert convert_value("off", FieldType.BOOLEAN) is False
        assert convert_value(0, FieldType.BOOLEAN) is False
        with pytest.raises(OperationFailedError):
            convert_value("maybe", FieldType.BOOLEAN)

    def test_to_array(self):
        """Scalars are wrapped in a list."""
        assert convert_value(5, FieldType.ARRAY) == [5]
        assert convert_value([5], FieldType.ARRAY) == [5]

    def test_to_timestamp(self):
        """Epoch seconds, epoch millis and ISO strings become UTC ISO timestamps."""
        assert convert_value(0, FieldType.TIMESTAMP) == "1970-01-01T00:00:00+00:00"
        assert convert_value(1_700_000_000_000, FieldType.TIMESTAMP) == (
            "2023-11-14T22:13:20+00:00"
        )
        assert convert_value("2024-01-01T00:00:00Z", FieldType.TIMESTAMP) == (
            "2024-01-01T00:00:00+00:00"
        )

    def test_none_passes_through(self):
        """None stays None."""
        assert convert_value(None, FieldType.NUMBER) is None

    def test_unsupported_target(self):
        """Targets without a default coercion raise."""
        with pytest.raises(OperationFailedError, match="No default conversion"):
            convert_value("x", FieldType.GEOPOINT)


class TestDeriveOperations:
    """Tests for derive_operations."""

    def test_diff_to_operations(self):
        """Added defaults, type changes and removals become operations in that order."""
        old = SchemaDefinition(
            id="v1",
            version="1.0.0",
            name="Energy",
            collections=(
                CollectionSchemaDefinition(
                    name="panels",
                    fields=(
                        FieldDefinition("power", FieldType.STRING),
                        FieldDefinition("legacy", FieldType.STRING),
                    ),
                ),
            ),
        )
        new = SchemaDefinition(
            id="v2",
            version="2.0.0",
            name="Energy",
            collections=(
                CollectionSchemaDefinition(
                    name="panels",
                    fields=(
                        FieldDefinition("power", FieldType.NUMBER),
                        FieldDefinition("rate", FieldType.NUMBER, default_value=0.5),
                        FieldDefinition("note", FieldType.STRING),
                    ),
                ),
            ),
        )

        ordered = order_operations(derive_operations(old, new))

        assert [type(op) for op in ordered] == [
            AddFieldOperation,
            ChangeFieldTypeOperation,
            RemoveFieldOperation,
        ]
        assert ordered[0].default_value == 0.5
        assert ordered[1].to_type == FieldType.NUMBER
        assert ordered[2].backup_location == REMOVED_FIELD_ARCHIVE
        assert ordered[0].id == "2.0.0:field_added:panels.rate"


class TestTransformers:
    """Tests for built-in transformers."""

    def test_normalize_power_units(self):
        """Kilowatt ratings become watts; watt ratings are left alone."""
        transformed = normalize_power_units.transform({"power": 5, "powerUnit": "kW"})

        assert transformed == {"power": 5000, "powerUnit": "W"}
        assert normalize_power_units.validate(transformed)
        assert normalize_power_units.transform(transformed) is None

    def test_migrate_address_format(self):
        """Flat address fields move into an address map."""
        transformed = migrate_address_format.transform(
            {"name": "Site A", "city": "Austin", "state": "TX"}
        )

        assert transformed == {"name": "Site A", "address": {"city": "Austin", "state": "TX"}}
        assert migrate_address_format.transform(transformed) is None


class TestBatchWriter:
    """Tests for BatchWriter."""

    @pytest.fixture
    def store(self):
        """Create store with a cap of three mutations."""
        return InMemoryDocumentStore(max_group_size=3)

    @pytest.mark.asyncio
    async def test_groups_never_exceed_cap(self, store):
        """Mutations are committed in groups no larger than the cap."""
        writer = BatchWriter(store)
        for i in range(7):
            await writer.set("panels", f"p{i}", {"n": i})
        await writer.flush()

        assert store.group_sizes == [3, 3, 1]
        assert writer.groups_committed == 3
        assert writer.mutations_committed == 7
        assert len(store.snapshot("panels")) == 7

    @pytest.mark.asyncio
    async def test_cap_clamped_to_store(self, store):
        """A cap larger than the store's is clamped."""
        assert BatchWriter(store, cap=10).cap == 3
        assert BatchWriter(store, cap=2).cap == 2

    @pytest.mark.asyncio
    async def test_write_all_lands_in_one_group(self, store):
        """Mutations added together are never split across groups."""
        writer = BatchWriter(store)
        await writer.set("panels", "p0", {})
        await writer.write_all(
            [
                Mutation(MutationKind.SET, "archive", "a1", {"v": 1}),
                Mutation(MutationKind.UPDATE, "panels", "p1", {"v": 1}),
            ]
        )
        await writer.write_all(
            [
                Mutation(MutationKind.SET, "archive", "a2", {"v": 2}),
                Mutation(MutationKind.DELETE, "panels", "p0"),
            ]
        )
        await writer.flush()

        assert store.group_sizes == [3, 2]

    @pytest.mark.asyncio
    async def test_oversized_write_all(self, store):
        """More mutations than a group holds raises WriteGroupFullError."""
        writer = BatchWriter(store)
        mutations = [Mutation(MutationKind.DELETE, "panels", f"p{i}") for i in range(4)]

        with pytest.raises(WriteGroupFullError):
            await writer.write_all(mutations)

    @pytest.mark.asyncio
    async def test_dry_run_never_commits(self, store):
        """Dry-run writers count intended mutations without committing."""
        writer = BatchWriter(store, dry_run=True)
        for i in range(4):
            await writer.set("panels", f"p{i}", {})
        await writer.flush()

        assert writer.intended_mutations == 4
        assert writer.groups_committed == 0
        assert store.snapshot("panels") == {}

    @pytest.mark.asyncio
    async def test_discard(self, store):
        """discard() drops the open group."""
        writer = BatchWriter(store)
        await writer.set("panels", "p1", {})

        assert writer.discard() == 1
        assert await writer.flush() == 0
        assert store.snapshot("panels") == {}

    @pytest.mark.asyncio
    async def test_take_committed_reports_committed_owners(self, store):
        """Only documents whose group committed are reported."""
        writer = BatchWriter(store)
        store.inject_commit_failures(after=1)
        for i in range(5):
            await writer.write_all(
                [Mutation(MutationKind.SET, "panels", f"p{i}", {"n": i})], owner=f"p{i}"
            )

        with pytest.raises(StoreError):
            await writer.flush()
        writer.discard()

        assert writer.take_committed() == {"p0", "p1", "p2"}
        assert writer.take_committed() == set()
        assert sorted(store.snapshot("panels")) == ["p0", "p1", "p2"]
