"""
Object-storage export of backups.

A completed backup can be exported to S3 so it survives loss of the
document store. Each collection becomes one JSON-lines object, gzip
compressed when configured:

    s3://<bucket>/<backup_prefix>/<backup_id>/<collection>.jsonl.gz
    s3://<bucket>/<backup_prefix>/<backup_id>/manifest.json

Each line is {"id": "<original id>", "data": {...}}. The manifest holds
backup_id, created_at, collections (name, document_count, key) and the
backup checksum.

Invariants:
    - The manifest is written after every collection object
    - Objects of an exported backup are never rewritten
    - A backup without a manifest is not listed

How to change safely:
    - Add manifest fields, never rename them
    - Keep reading uncompressed objects so old exports stay restorable
"""

from __future__ import annotations

import gzip
import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from aiobotocore.session import get_session

from ..config import S3Config
from ..errors import ArchiveError

if TYPE_CHECKING:
    from .backup import BackupRecord

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"


class BackupArchiver:
    """Exports backups to S3 and reads them back.

    Attributes:
        s3_config: Bucket, region, credentials and key prefix
        compression: Gzip the collection objects

    Example:
        >>> archiver = BackupArchiver(S3Config(bucket="docshift-backups"))
        >>> location = await archiver.export(record, {"panels": [("p1", {...})]})
    """

    def __init__(
        self,
        s3_config: S3Config,
        client: Any = None,
        compression: bool = True,
    ) -> None:
        """Initialize the archiver.

        Args:
            s3_config: S3Config instance
            client: Pre-built S3 client; when omitted one is created per call
            compression: Gzip collection objects
        """
        if not s3_config.bucket:
            raise ArchiveError("S3 bucket is not configured")
        self.s3_config = s3_config
        self.compression = compression
        self._client = client
        self._exports = 0

    @asynccontextmanager
    async def _s3(self) -> AsyncIterator[Any]:
        if self._client is not None:
            yield self._client
            return

        session = get_session()
        client_kwargs: dict[str, Any] = {"region_name": self.s3_config.region}
        if self.s3_config.endpoint_url:
            client_kwargs["endpoint_url"] = self.s3_config.endpoint_url
        if self.s3_config.access_key_id:
            client_kwargs["aws_access_key_id"] = self.s3_config.access_key_id
            client_kwargs["aws_secret_access_key"] = self.s3_config.secret_access_key

        async with session.create_client("s3", **client_kwargs) as s3:
            yield s3

    def _prefix(self, backup_id: str) -> str:
        return f"{self.s3_config.backup_prefix}/{backup_id}"

    def _collection_key(self, backup_id: str, collection: str) -> str:
        extension = ".jsonl.gz" if self.compression else ".jsonl"
        return f"{self._prefix(backup_id)}/{collection}{extension}"

    def location(self, backup_id: str) -> str:
        return f"s3://{self.s3_config.bucket}/{self._prefix(backup_id)}/"

    async def export(
        self,
        record: BackupRecord,
        documents: dict[str, list[tuple[str, dict[str, Any]]]],
    ) -> str:
        """Upload a backup's documents and its manifest.

        Args:
            record: Completed backup record
            documents: Per collection, (original id, data) pairs

        Returns:
            s3:// location of the export

        Raises:
            ArchiveError: If any upload fails
        """
        manifest_collections = []
        try:
            async with self._s3() as s3:
                for collection, docs in documents.items():
                    lines = "".join(
                        json.dumps({"id": doc_id, "data": data}, sort_keys=True, default=str) + "\n"
                        for doc_id, data in docs
                    )
                    body = lines.encode("utf-8")
                    if self.compression:
                        body = gzip.compress(body)
                    key = self._collection_key(record.id, collection)
                    await s3.put_object(
                        Bucket=self.s3_config.bucket,
                        Key=key,
                        Body=body,
                        ContentType="application/x-ndjson",
                    )
                    manifest_collections.append(
                        {"name": collection, "document_count": len(docs), "key": key}
                    )

                manifest = {
                    "backup_id": record.id,
                    "migration_id": record.migration_id,
                    "created_at": record.created_at,
                    "collections": manifest_collections,
                    "checksum": record.checksum,
                    "compression": "gzip" if self.compression else "none",
                }
                await s3.put_object(
                    Bucket=self.s3_config.bucket,
                    Key=f"{self._prefix(record.id)}/{MANIFEST_NAME}",
                    Body=json.dumps(manifest, indent=2).encode("utf-8"),
                    ContentType="application/json",
                )
        except ArchiveError:
            raise
        except Exception as e:
            raise ArchiveError(
                f"Failed to export backup {record.id}: {e}", details={"backup_id": record.id}
            ) from e

        self._exports += 1
        logger.info(
            "Exported backup",
            extra={
                "backup_id": record.id,
                "bucket": self.s3_config.bucket,
                "collections": len(manifest_collections),
            },
        )
        return self.location(record.id)

    async def read_manifest(self, backup_id: str) -> dict[str, Any]:
        """Download an export's manifest.

        Raises:
            ArchiveError: If the manifest cannot be read
        """
        try:
            async with self._s3() as s3:
                response = await s3.get_object(
                    Bucket=self.s3_config.bucket,
                    Key=f"{self._prefix(backup_id)}/{MANIFEST_NAME}",
                )
                content = await response["Body"].read()
        except Exception as e:
            raise ArchiveError(
                f"No readable manifest for backup {backup_id}: {e}",
                details={"backup_id": backup_id},
            ) from e
        return json.loads(content.decode("utf-8"))

    async def fetch(self, backup_id: str, collection: str) -> list[tuple[str, dict[str, Any]]]:
        """Download one collection of an export.

        Raises:
            ArchiveError: If the collection is not part of the export
        """
        manifest = await self.read_manifest(backup_id)
        entry = next((c for c in manifest["collections"] if c["name"] == collection), None)
        if entry is None:
            raise ArchiveError(
                f"Backup {backup_id} has no exported collection '{collection}'",
                details={"backup_id": backup_id, "collection": collection},
            )

        try:
            async with self._s3() as s3:
                response = await s3.get_object(Bucket=self.s3_config.bucket, Key=entry["key"])
                content = await response["Body"].read()
        except Exception as e:
            raise ArchiveError(f"Failed to download {entry['key']}: {e}") from e

        if entry["key"].endswith(".gz"):
            content = gzip.decompress(content)
        documents = []
        for line in content.decode("utf-8").splitlines():
            if line.strip():
                item = json.loads(line)
                documents.append((item["id"], item["data"]))
        return documents

    async def list_archives(self) -> list[str]:
        """Backup ids with a manifest under the configured prefix."""
        prefix = f"{self.s3_config.backup_prefix}/"
        backup_ids = []
        token = None
        async with self._s3() as s3:
            while True:
                kwargs: dict[str, Any] = {"Bucket": self.s3_config.bucket, "Prefix": prefix}
                if token:
                    kwargs["ContinuationToken"] = token
                response = await s3.list_objects_v2(**kwargs)
                for obj in response.get("Contents", []):
                    parts = obj["Key"][len(prefix) :].split("/")
                    if len(parts) == 2 and parts[1] == MANIFEST_NAME:
                        backup_ids.append(parts[0])
                if not response.get("IsTruncated"):
                    break
                token = response.get("NextContinuationToken")
        return sorted(backup_ids)

    async def delete(self, backup_id: str) -> int:
        """Remove every object of an export.

        Returns:
            Number of objects deleted
        """
        prefix = f"{self._prefix(backup_id)}/"
        deleted = 0
        async with self._s3() as s3:
            response = await s3.list_objects_v2(Bucket=self.s3_config.bucket, Prefix=prefix)
            for obj in response.get("Contents", []):
                await s3.delete_object(Bucket=self.s3_config.bucket, Key=obj["Key"])
                deleted += 1
        logger.info("Deleted backup export", extra={"backup_id": backup_id, "objects": deleted})
        return deleted

    @property
    def stats(self) -> dict[str, Any]:
        """Archiver statistics."""
        return {"bucket": self.s3_config.bucket, "exports": self._exports}
