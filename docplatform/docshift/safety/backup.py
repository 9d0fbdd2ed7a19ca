"""
Backup manager for DocShift.

A backup copies whole collections into backup-scoped collections of the
same store, so it can be taken and restored with nothing but the store
primitives:

    _migration_backups/<backup_id>                 BackupRecord
    _backup_data_<backup_id>_<collection>/<id>     original data + _backup_metadata

Each backed-up document carries _backup_metadata with originalId,
originalCollection, backupId, backupTimestamp and docSize. The record's
checksum is sha256 over the canonical per-collection metadata (name,
document count, byte estimate).

When storage_location is cloud_storage or both, the completed backup is
also exported through a BackupArchiver. With cloud_storage the in-store
copy is dropped after a successful export and restores read from S3.

Invariants:
    - A record is written with status "creating" before any data is copied
    - Only "completed" backups can be restored
    - Restore never touches collections outside the backup
    - Collections whose names start with "_" are never backed up by default

How to change safely:
    - Keep _backup_metadata keys stable; restores of old backups depend on them
    - Checksum input must stay canonical (sorted keys, sorted collections)
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..config import BackupConfig, StorageLocation
from ..errors import ArchiveError, BackupError, BackupNotFoundError, DocShiftError, RestoreError
from ..events import EventChannel, EventKind, Severity
from ..store.base import Document, DocumentStore, WriteGroup
from .archive import BackupArchiver

logger = logging.getLogger(__name__)

BACKUPS_COLLECTION = "_migration_backups"
BACKUP_DATA_PREFIX = "_backup_data_"
BACKUP_METADATA_FIELD = "_backup_metadata"
SECONDS_PER_DAY = 86400


class BackupType(Enum):
    """Why a backup was taken."""

    PRE_MIGRATION = "pre_migration"
    CHECKPOINT = "checkpoint"
    ROLLBACK_POINT = "rollback_point"


class BackupStatus(Enum):
    """Lifecycle of a backup record."""

    CREATING = "creating"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


@dataclass
class BackupConfiguration:
    """Per-backup settings.

    Attributes:
        collections: Collections to back up (all user collections if empty)
        exclude_collections: Collections to skip
        retention_days: Days before the backup expires
        compression: Gzip exported archives
        storage_location: Where the data is kept
    """

    collections: list[str] = field(default_factory=list)
    exclude_collections: list[str] = field(default_factory=list)
    retention_days: int = 30
    compression: bool = True
    storage_location: StorageLocation = StorageLocation.STORE

    @classmethod
    def from_config(cls, config: BackupConfig) -> BackupConfiguration:
        return cls(
            retention_days=config.retention_days,
            compression=config.compression,
            storage_location=config.storage_location,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "collections": list(self.collections),
            "exclude_collections": list(self.exclude_collections),
            "retention_days": self.retention_days,
            "compression": self.compression,
            "storage_location": self.storage_location.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackupConfiguration:
        return cls(
            collections=list(data.get("collections", [])),
            exclude_collections=list(data.get("exclude_collections", [])),
            retention_days=data.get("retention_days", 30),
            compression=data.get("compression", True),
            storage_location=StorageLocation(data.get("storage_location", "store")),
        )


@dataclass
class BackupCollectionInfo:
    """Per-collection part of a backup."""

    name: str
    document_count: int = 0
    size_bytes: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "document_count": self.document_count,
            "size_bytes": self.size_bytes,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackupCollectionInfo:
        return cls(
            name=data["name"],
            document_count=data.get("document_count", 0),
            size_bytes=data.get("size_bytes", 0),
        )


@dataclass
class BackupRecord:
    """Metadata of one backup.

    Attributes:
        id: Backup id
        migration_id: Id of the migration or deployment that owns it
        backup_type: Why it was taken
        status: Lifecycle status
        created_at: Unix seconds
        expires_at: Unix seconds after which delete_expired_backups removes it
        collections: Per-collection counts
        checksum: sha256 over the collection metadata
        configuration: Settings used
        archive_location: s3:// location when exported
        error: Failure reason for failed backups
    """

    id: str
    migration_id: str
    backup_type: BackupType
    status: BackupStatus
    created_at: float
    expires_at: float
    collections: list[BackupCollectionInfo] = field(default_factory=list)
    checksum: str | None = None
    configuration: BackupConfiguration = field(default_factory=BackupConfiguration)
    archive_location: str | None = None
    error: str | None = None

    @property
    def total_documents(self) -> int:
        return sum(c.document_count for c in self.collections)

    @property
    def total_size_bytes(self) -> int:
        return sum(c.size_bytes for c in self.collections)

    @property
    def collection_names(self) -> list[str]:
        return [c.name for c in self.collections]

    def get_collection(self, name: str) -> BackupCollectionInfo | None:
        return next((c for c in self.collections if c.name == name), None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "migration_id": self.migration_id,
            "backup_type": self.backup_type.value,
            "status": self.status.value,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "collections": [c.to_dict() for c in self.collections],
            "checksum": self.checksum,
            "configuration": self.configuration.to_dict(),
            "archive_location": self.archive_location,
            "error": self.error,
            "total_documents": self.total_documents,
            "total_size_bytes": self.total_size_bytes,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackupRecord:
        return cls(
            id=data["id"],
            migration_id=data["migration_id"],
            backup_type=BackupType(data["backup_type"]),
            status=BackupStatus(data["status"]),
            created_at=data["created_at"],
            expires_at=data["expires_at"],
            collections=[BackupCollectionInfo.from_dict(c) for c in data.get("collections", [])],
            checksum=data.get("checksum"),
            configuration=BackupConfiguration.from_dict(data.get("configuration", {})),
            archive_location=data.get("archive_location"),
            error=data.get("error"),
        )


@dataclass
class RestoreOptions:
    """How a backup is replayed.

    Attributes:
        overwrite_existing: Replace documents that exist in the target
        specific_collections: Restore only these collections
        dry_run: Count what would happen without writing
        validate_before_restore: Verify the checksum and counts first
        remove_extraneous: Delete target documents absent from the backup
    """

    overwrite_existing: bool = False
    specific_collections: list[str] | None = None
    dry_run: bool = False
    validate_before_restore: bool = True
    remove_extraneous: bool = False


@dataclass
class RestoreResult:
    """Outcome of a restore."""

    success: bool
    backup_id: str
    restored_documents: int = 0
    skipped_documents: int = 0
    removed_documents: int = 0
    collections: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    dry_run: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "backup_id": self.backup_id,
            "restored_documents": self.restored_documents,
            "skipped_documents": self.skipped_documents,
            "removed_documents": self.removed_documents,
            "collections": self.collections,
            "errors": self.errors,
            "dry_run": self.dry_run,
        }


def data_collection(backup_id: str, collection: str) -> str:
    """Collection holding one collection's backed-up documents."""
    return f"{BACKUP_DATA_PREFIX}{backup_id}_{collection}"


def compute_checksum(collections: list[BackupCollectionInfo]) -> str:
    """sha256 over the canonical per-collection metadata."""
    canonical = json.dumps(
        sorted((c.to_dict() for c in collections), key=lambda c: c["name"]),
        sort_keys=True,
        separators=(",", ":"),
    )
    return "sha256:" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def estimate_size(data: dict[str, Any]) -> int:
    """Rough in-memory size of a document (two bytes per serialized char)."""
    return len(json.dumps(data, default=str)) * 2


async def iter_collection(
    store: DocumentStore, collection: str, page_size: int | None = None
) -> AsyncIterator[Document]:
    """Every document of a collection, in id order."""
    cursor = None
    while True:
        page = await store.query(
            collection, limit=page_size or store.max_group_size, start_after=cursor
        )
        for doc in page.documents:
            yield doc
        if page.cursor is None:
            return
        cursor = page.cursor


class BackupManager:
    """Creates, restores and expires collection backups.

    Attributes:
        store: Document store holding both the data and the backups
        config: Defaults for retention, compression and storage location
        archiver: Optional S3 exporter for cloud_storage/both locations
        events: Optional channel for backup events

    Example:
        >>> manager = BackupManager(store)
        >>> backup_id = await manager.create_backup("migration_1", ["panels"])
        >>> options = RestoreOptions(overwrite_existing=True)
        >>> result = await manager.restore_backup(backup_id, options)
    """

    def __init__(
        self,
        store: DocumentStore,
        config: BackupConfig | None = None,
        archiver: BackupArchiver | None = None,
        events: EventChannel | None = None,
    ) -> None:
        self.store = store
        self.config = config or BackupConfig()
        self.archiver = archiver
        self.events = events
        self._created = 0
        self._restored = 0

    # ---------------------------------------------------------------------
    # Create
    # ---------------------------------------------------------------------

    async def create_backup(
        self,
        owning_id: str,
        collections: list[str] | None = None,
        backup_type: BackupType = BackupType.PRE_MIGRATION,
        config: BackupConfiguration | None = None,
    ) -> str:
        """Back up collections and return the backup id.

        Args:
            owning_id: Migration or deployment id the backup belongs to
            collections: Collections to copy (overrides config.collections)
            backup_type: Why the backup is taken
            config: Per-backup settings (defaults from BackupConfig)

        Raises:
            BackupError: If copying, recording or exporting fails
        """
        config = config or BackupConfiguration.from_config(self.config)
        names = await self._resolve_collections(collections or config.collections, config)

        now = time.time()
        record = BackupRecord(
            id=f"backup_{int(now * 1000)}_{uuid.uuid4().hex[:8]}",
            migration_id=owning_id,
            backup_type=backup_type,
            status=BackupStatus.CREATING,
            created_at=now,
            expires_at=now + config.retention_days * SECONDS_PER_DAY,
            configuration=config,
        )
        await self._save_record(record)

        exported: dict[str, list[tuple[str, dict[str, Any]]]] = {}
        keep_copies = config.storage_location in (
            StorageLocation.CLOUD_STORAGE,
            StorageLocation.BOTH,
        )
        try:
            for name in names:
                info, copies = await self._copy_collection(record, name, keep_copies)
                record.collections.append(info)
                if keep_copies:
                    exported[name] = copies

            record.checksum = compute_checksum(record.collections)

            if keep_copies:
                if self.archiver is None:
                    raise BackupError(
                        f"Storage location {config.storage_location.value} needs a BackupArchiver"
                    )
                record.archive_location = await self.archiver.export(record, exported)
                if config.storage_location == StorageLocation.CLOUD_STORAGE:
                    for name in names:
                        await self._drop_collection(data_collection(record.id, name))

            record.status = BackupStatus.COMPLETED
            await self._save_record(record)
        except DocShiftError as e:
            await self._mark_failed(record, e.message)
            if isinstance(e, BackupError):
                raise
            raise BackupError(
                f"Backup {record.id} failed: {e.message}", details={"backup_id": record.id}
            ) from e

        self._created += 1
        logger.info(
            "Backup created",
            extra={
                "backup_id": record.id,
                "owner": owning_id,
                "collections": len(record.collections),
                "documents": record.total_documents,
                "size_bytes": record.total_size_bytes,
            },
        )
        if self.events is not None:
            self.events.emit(
                EventKind.BACKUP_CREATED,
                owning_id,
                f"Backup {record.id} created ({record.total_documents} documents)",
                backup_id=record.id,
                collections=record.collection_names,
            )
        return record.id

    async def _resolve_collections(
        self, requested: list[str], config: BackupConfiguration
    ) -> list[str]:
        if requested:
            names = list(dict.fromkeys(requested))
        else:
            names = [c for c in await self.store.list_collections() if not c.startswith("_")]
        return [n for n in names if n not in config.exclude_collections]

    async def _copy_collection(
        self, record: BackupRecord, collection: str, keep_copies: bool
    ) -> tuple[BackupCollectionInfo, list[tuple[str, dict[str, Any]]]]:
        document_count = size_bytes = 0
        copies: list[tuple[str, dict[str, Any]]] = []
        target = data_collection(record.id, collection)
        group = self.store.write_group()

        async for doc in iter_collection(self.store, collection):
            size = estimate_size(doc.data)
            payload = dict(doc.data)
            payload[BACKUP_METADATA_FIELD] = {
                "originalId": doc.id,
                "originalCollection": collection,
                "backupId": record.id,
                "backupTimestamp": record.created_at,
                "docSize": size,
            }
            if group.is_full:
                await self.store.commit(group)
                group = self.store.write_group()
            group.set(target, doc.id, payload)
            document_count += 1
            size_bytes += size
            if keep_copies:
                copies.append((doc.id, doc.data))

        if len(group):
            await self.store.commit(group)
        info = BackupCollectionInfo(collection, document_count, size_bytes)
        return info, copies

    async def _save_record(self, record: BackupRecord) -> None:
        group = self.store.write_group()
        group.set(BACKUPS_COLLECTION, record.id, record.to_dict())
        await self.store.commit(group)

    async def _mark_failed(self, record: BackupRecord, reason: str) -> None:
        record.status = BackupStatus.FAILED
        record.error = reason
        await self._save_record(record)
        logger.error("Backup failed", extra={"backup_id": record.id, "reason": reason})

    async def _drop_collection(self, collection: str) -> int:
        ids = [doc.id async for doc in iter_collection(self.store, collection)]
        for start in range(0, len(ids), self.store.max_group_size):
            group = self.store.write_group()
            for doc_id in ids[start : start + self.store.max_group_size]:
                group.delete(collection, doc_id)
            await self.store.commit(group)
        return len(ids)

    # ---------------------------------------------------------------------
    # Read
    # ---------------------------------------------------------------------

    async def get_backup(self, backup_id: str) -> BackupRecord | None:
        doc = await self.store.get(BACKUPS_COLLECTION, backup_id)
        return BackupRecord.from_dict(doc.data) if doc else None

    async def list_backups(self, migration_id: str | None = None) -> list[BackupRecord]:
        """Backups, newest first, optionally for one owner."""
        records = [
            BackupRecord.from_dict(doc.data)
            async for doc in iter_collection(self.store, BACKUPS_COLLECTION)
        ]
        if migration_id is not None:
            records = [r for r in records if r.migration_id == migration_id]
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    async def _load_documents(
        self, record: BackupRecord, collection: str
    ) -> list[tuple[str, dict[str, Any]]]:
        """(original id, original data) pairs of one backed-up collection."""
        if record.configuration.storage_location == StorageLocation.CLOUD_STORAGE:
            if self.archiver is None:
                raise RestoreError(f"Backup {record.id} lives in object storage; no archiver set")
            return await self.archiver.fetch(record.id, collection)

        documents = []
        async for doc in iter_collection(self.store, data_collection(record.id, collection)):
            data = dict(doc.data)
            metadata = data.pop(BACKUP_METADATA_FIELD, {}) or {}
            documents.append((metadata.get("originalId", doc.id), data))
        return documents

    async def verify_backup(self, backup_id: str) -> tuple[bool, list[str]]:
        """Recompute document counts and the checksum.

        Returns:
            Tuple of (is_valid, problems)
        """
        record = await self.get_backup(backup_id)
        if record is None:
            return False, [f"Backup {backup_id} not found"]

        problems = []
        if record.status != BackupStatus.COMPLETED:
            problems.append(f"Backup {backup_id} is {record.status.value}")
        if record.checksum != compute_checksum(record.collections):
            problems.append(f"Checksum mismatch for backup {backup_id}")

        for info in record.collections:
            try:
                documents = await self._load_documents(record, info.name)
            except (RestoreError, ArchiveError) as e:
                problems.append(e.message)
                continue
            if len(documents) != info.document_count:
                problems.append(
                    f"Collection {info.name}: expected {info.document_count} documents, "
                    f"found {len(documents)}"
                )
        return not problems, problems

    # ---------------------------------------------------------------------
    # Restore
    # ---------------------------------------------------------------------

    async def restore_backup(
        self, backup_id: str, options: RestoreOptions | None = None
    ) -> RestoreResult:
        """Replay a backup into its original collections.

        Never raises for a missing, incomplete or corrupt backup; those
        are reported in the result.
        """
        options = options or RestoreOptions()
        result = RestoreResult(success=False, backup_id=backup_id, dry_run=options.dry_run)

        try:
            record = await self.get_backup(backup_id)
            if record is None:
                raise BackupNotFoundError(
                    f"Backup {backup_id} not found", details={"backup_id": backup_id}
                )
            if record.status != BackupStatus.COMPLETED:
                raise RestoreError(
                    f"Backup {backup_id} is {record.status.value}, only completed backups "
                    "can be restored",
                    details={"backup_id": backup_id},
                )
            if options.validate_before_restore:
                valid, problems = await self.verify_backup(backup_id)
                if not valid:
                    raise RestoreError(
                        f"Backup {backup_id} failed verification: " + "; ".join(problems),
                        details={"problems": problems},
                    )

            for info in record.collections:
                if (
                    options.specific_collections is not None
                    and info.name not in options.specific_collections
                ):
                    continue
                await self._restore_collection(record, info.name, options, result)
                result.collections.append(info.name)
        except DocShiftError as e:
            result.errors.append(e.message)
            logger.error("Restore failed", extra={"backup_id": backup_id, "error": e.message})
            return result

        result.success = True
        self._restored += 1
        logger.info(
            "Backup restored",
            extra={
                "backup_id": backup_id,
                "restored": result.restored_documents,
                "skipped": result.skipped_documents,
                "removed": result.removed_documents,
                "dry_run": options.dry_run,
            },
        )
        if self.events is not None and not options.dry_run:
            self.events.emit(
                EventKind.BACKUP_RESTORED,
                record.migration_id,
                f"Backup {backup_id} restored ({result.restored_documents} documents)",
                Severity.WARNING,
                backup_id=backup_id,
                collections=result.collections,
            )
        return result

    async def _restore_collection(
        self,
        record: BackupRecord,
        collection: str,
        options: RestoreOptions,
        result: RestoreResult,
    ) -> None:
        documents = await self._load_documents(record, collection)
        existing = {doc.id async for doc in iter_collection(self.store, collection)}
        backed_up = {doc_id for doc_id, _ in documents}

        writes: list[tuple[str, dict[str, Any] | None]] = []
        for doc_id, data in documents:
            if doc_id in existing and not options.overwrite_existing:
                result.skipped_documents += 1
                continue
            writes.append((doc_id, data))
        result.restored_documents += len(writes)

        if options.remove_extraneous:
            extraneous = sorted(existing - backed_up)
            writes.extend((doc_id, None) for doc_id in extraneous)
            result.removed_documents += len(extraneous)

        if options.dry_run:
            return

        group: WriteGroup = self.store.write_group()
        for doc_id, data in writes:
            if group.is_full:
                await self.store.commit(group)
                group = self.store.write_group()
            if data is None:
                group.delete(collection, doc_id)
            else:
                group.set(collection, doc_id, data)
        if len(group):
            await self.store.commit(group)

    # ---------------------------------------------------------------------
    # Expiry
    # ---------------------------------------------------------------------

    async def delete_backup(self, backup_id: str) -> bool:
        """Remove a backup's data, export and record.

        Returns:
            False if the backup did not exist
        """
        record = await self.get_backup(backup_id)
        if record is None:
            return False

        for info in record.collections:
            await self._drop_collection(data_collection(record.id, info.name))
        if record.archive_location and self.archiver is not None:
            await self.archiver.delete(record.id)

        group = self.store.write_group()
        group.delete(BACKUPS_COLLECTION, record.id)
        await self.store.commit(group)
        logger.info("Backup deleted", extra={"backup_id": backup_id})
        return True

    async def delete_expired_backups(self, now: float | None = None) -> list[str]:
        """Delete every backup past its expiry.

        Returns:
            Ids of deleted backups
        """
        now = time.time() if now is None else now
        deleted = []
        for record in await self.list_backups():
            if record.expires_at <= now:
                await self.delete_backup(record.id)
                deleted.append(record.id)
        if deleted:
            logger.info("Expired backups deleted", extra={"count": len(deleted)})
        return deleted

    @property
    def stats(self) -> dict[str, Any]:
        """Backup statistics."""
        return {"created": self._created, "restored": self._restored}
