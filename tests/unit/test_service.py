"""
Unit tests for the DocShift service container.

Tests cover:
- Component wiring over one store and one event channel
- Store backend and archiver selection
- Start/stop lifecycle and statistics
- Logging setup
"""

import logging

import json_log_formatter
import pytest

from docplatform.docshift.config import (
    BackupConfig,
    DocShiftConfig,
    ObservabilityConfig,
    S3Config,
    StorageLocation,
    StoreBackend,
    StoreConfig,
)
from docplatform.docshift.safety import BackupArchiver, BackupConfiguration
from docplatform.docshift.service import DocShift, create_store, setup_logging
from docplatform.docshift.store import InMemoryDocumentStore, SqliteDocumentStore


class TestDocShift:
    """Tests for DocShift."""

    @pytest.fixture
    def shift(self):
        return DocShift(DocShiftConfig())

    def test_components_share_store_and_events(self, shift):
        """Every component works on the same store and channel."""
        assert isinstance(shift.store, InMemoryDocumentStore)
        assert shift.registry.store is shift.store
        assert shift.engine.store is shift.store
        assert shift.backups.store is shift.store
        assert shift.engine.backup_manager is shift.backups
        assert shift.engine.monitoring is shift.monitoring
        assert shift.deployments.events is shift.events
        assert shift.dry_run.engine is shift.engine
        assert shift.archiver is None

    def test_archiver_for_cloud_backups(self):
        """Cloud backups get an S3 archiver."""
        shift = DocShift(
            DocShiftConfig(
                backup=BackupConfig(storage_location=StorageLocation.BOTH, compression=False),
                s3=S3Config(bucket="docshift-backups"),
            )
        )

        assert isinstance(shift.archiver, BackupArchiver)
        assert shift.backups.archiver is shift.archiver
        assert not shift.archiver.compression

    def test_create_store(self, tmp_path):
        """The backend setting picks the store class."""
        memory = create_store(DocShiftConfig(store=StoreConfig(max_write_group=7)))
        sqlite = create_store(
            DocShiftConfig(store=StoreConfig(backend=StoreBackend.SQLITE, data_dir=str(tmp_path)))
        )

        assert isinstance(memory, InMemoryDocumentStore)
        assert memory.max_group_size == 7
        assert isinstance(sqlite, SqliteDocumentStore)

    @pytest.mark.asyncio
    async def test_start_stop(self, shift):
        """start() and stop() are idempotent."""
        await shift.start()
        await shift.start()
        assert shift.running

        await shift.stop()
        await shift.stop()
        assert not shift.running

    @pytest.mark.asyncio
    async def test_start_validates(self):
        """Invalid configuration fails start()."""
        shift = DocShift(DocShiftConfig(environment="qa"))

        with pytest.raises(ValueError, match="DOCSHIFT_ENVIRONMENT"):
            await shift.start()
        assert not shift.running

    @pytest.mark.asyncio
    async def test_start_expires_backups(self, shift):
        """Expired backups are removed on start."""
        await shift.store.seed("panels", {"p1": {"serial": "A"}})
        backup_id = await shift.backups.create_backup(
            "m1", ["panels"], config=BackupConfiguration(retention_days=0)
        )

        await shift.start()

        assert await shift.backups.get_backup(backup_id) is None
        await shift.stop()

    def test_stats(self, shift):
        """Statistics cover every component."""
        assert set(shift.stats) == {
            "store",
            "events",
            "engine",
            "backups",
            "monitoring",
            "rollback",
            "deployments",
        }


class TestSetupLogging:
    """Tests for setup_logging."""

    @pytest.fixture(autouse=True)
    def restore_root_logger(self):
        root = logging.getLogger()
        handlers, level = list(root.handlers), root.level
        yield
        root.handlers = handlers
        root.setLevel(level)

    def test_json_format(self):
        """JSON format installs the json_log_formatter formatter."""
        setup_logging(DocShiftConfig(observability=ObservabilityConfig(log_level="DEBUG")))

        root = logging.getLogger()
        [handler] = root.handlers
        assert isinstance(handler.formatter, json_log_formatter.JSONFormatter)
        assert root.level == logging.DEBUG
        assert logging.getLogger("botocore").level == logging.WARNING

    def test_text_format(self):
        """Text format uses a plain formatter."""
        setup_logging(DocShiftConfig(observability=ObservabilityConfig(log_format="text")))

        [handler] = logging.getLogger().handlers
        assert not isinstance(handler.formatter, json_log_formatter.JSONFormatter)
