"""
SQLite-backed document store for DocShift.

All collections live in one SQLite file as JSON documents. Each write
group commits inside a single BEGIN IMMEDIATE transaction, so a group is
either fully applied or not applied at all.

Invariants:
    - One SQLite file per store
    - Every commit is one transaction (preconditions checked inside it)
    - data_json always holds a JSON object

How to change safely:
    - Table changes must be backward compatible with existing files
    - Query semantics live in store.base.select_page; only id-ordered
      pagination is pushed down to SQL

Table schema:
    documents:
        - collection TEXT
        - doc_id TEXT
        - data_json TEXT (JSON object)
        - update_time REAL (Unix seconds)
        - PRIMARY KEY (collection, doc_id)
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path

from ..errors import PreconditionFailedError
from .base import (
    ID_FIELD,
    BaseDocumentStore,
    Cursor,
    Document,
    FieldFilter,
    MutationKind,
    QueryPage,
    WriteGroup,
    apply_update,
    matches_all,
    precondition_holds,
    select_page,
)

logger = logging.getLogger(__name__)


class SqliteDocumentStore(BaseDocumentStore):
    """Document store persisted in a SQLite database file.

    Attributes:
        db_path: Path of the database file

    Example:
        >>> store = SqliteDocumentStore("/var/lib/docshift")
        >>> await store.initialize()
    """

    SCHEMA_VERSION = 1
    DB_FILENAME = "documents.db"

    def __init__(
        self,
        data_dir: str,
        max_group_size: int = 500,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        scan_chunk: int = 500,
    ) -> None:
        """Initialize the store.

        Args:
            data_dir: Directory holding the database file
            max_group_size: Mutation cap per write group
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
            scan_chunk: Rows fetched per round trip during id-ordered scans
        """
        super().__init__(max_group_size)
        self.data_dir = Path(data_dir)
        self.db_path = self.data_dir / self.DB_FILENAME
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.scan_chunk = scan_chunk
        self._initialized = False

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Open a connection with the store's pragmas applied."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            if not self._initialized:
                self._create_schema(conn)
                self._initialized = True
            yield conn
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS documents (
                collection TEXT NOT NULL,
                doc_id TEXT NOT NULL,
                data_json TEXT NOT NULL DEFAULT '{}',
                update_time REAL NOT NULL,
                PRIMARY KEY (collection, doc_id)
            );

            CREATE INDEX IF NOT EXISTS idx_documents_updated
                ON documents(collection, update_time DESC);

            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, strftime('%s', 'now') * 1000);
        """)

    async def initialize(self) -> None:
        """Create the database file and schema if they don't exist."""
        with self._get_connection():
            logger.info("Initialized document store", extra={"db_path": str(self.db_path)})

    @staticmethod
    def _row_to_document(collection: str, row: sqlite3.Row) -> Document:
        return Document(
            collection=collection,
            id=row["doc_id"],
            data=json.loads(row["data_json"]),
            update_time=row["update_time"],
        )

    async def get(self, collection: str, doc_id: str) -> Document | None:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT doc_id, data_json, update_time FROM documents "
                "WHERE collection = ? AND doc_id = ?",
                (collection, doc_id),
            ).fetchone()
        return self._row_to_document(collection, row) if row else None

    async def query(
        self,
        collection: str,
        filters: Sequence[FieldFilter] = (),
        order_by: str = ID_FIELD,
        limit: int | None = None,
        start_after: Cursor | None = None,
        descending: bool = False,
    ) -> QueryPage:
        if order_by == ID_FIELD and not descending and limit is not None:
            return self._scan_by_id(collection, filters, limit, start_after)

        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT doc_id, data_json, update_time FROM documents WHERE collection = ?",
                (collection,),
            ).fetchall()
        documents = [self._row_to_document(collection, r) for r in rows]
        return select_page(documents, filters, order_by, limit, start_after, descending)

    def _scan_by_id(
        self,
        collection: str,
        filters: Sequence[FieldFilter],
        limit: int,
        start_after: Cursor | None,
    ) -> QueryPage:
        """Id-ordered page using keyset pagination in SQL."""
        matched: list[Document] = []
        last_id = start_after.doc_id if start_after else ""
        exhausted = False

        with self._get_connection() as conn:
            while len(matched) <= limit and not exhausted:
                rows = conn.execute(
                    "SELECT doc_id, data_json, update_time FROM documents "
                    "WHERE collection = ? AND doc_id > ? ORDER BY doc_id LIMIT ?",
                    (collection, last_id, self.scan_chunk),
                ).fetchall()
                exhausted = len(rows) < self.scan_chunk
                for row in rows:
                    last_id = row["doc_id"]
                    document = self._row_to_document(collection, row)
                    if matches_all(document, filters):
                        matched.append(document)
                        if len(matched) > limit:
                            break

        if len(matched) > limit:
            page = matched[:limit]
            return QueryPage(documents=page, cursor=Cursor(page[-1].id, page[-1].id))
        return QueryPage(documents=matched, cursor=None)

    async def count(self, collection: str, filters: Sequence[FieldFilter] = ()) -> int:
        if filters:
            return await super().count(collection, filters)
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM documents WHERE collection = ?", (collection,)
            ).fetchone()
        return int(row["n"])

    async def list_collections(self) -> list[str]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT DISTINCT collection FROM documents ORDER BY collection"
            ).fetchall()
        return [r["collection"] for r in rows]

    async def _apply(self, group: WriteGroup) -> None:
        now = time.time()
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                for precondition in group.preconditions:
                    row = conn.execute(
                        "SELECT data_json FROM documents WHERE collection = ? AND doc_id = ?",
                        (precondition.collection, precondition.doc_id),
                    ).fetchone()
                    current = json.loads(row["data_json"]) if row else None
                    if not precondition_holds(precondition, current):
                        raise PreconditionFailedError(
                            f"Precondition failed for "
                            f"{precondition.collection}/{precondition.doc_id}",
                            details={
                                "collection": precondition.collection,
                                "doc_id": precondition.doc_id,
                            },
                        )

                for mutation in group.mutations:
                    if mutation.kind == MutationKind.DELETE:
                        conn.execute(
                            "DELETE FROM documents WHERE collection = ? AND doc_id = ?",
                            (mutation.collection, mutation.doc_id),
                        )
                        continue

                    data = mutation.data or {}
                    if mutation.kind == MutationKind.UPDATE:
                        row = conn.execute(
                            "SELECT data_json FROM documents WHERE collection = ? AND doc_id = ?",
                            (mutation.collection, mutation.doc_id),
                        ).fetchone()
                        data = apply_update(json.loads(row["data_json"]) if row else {}, data)

                    conn.execute(
                        """
                        INSERT INTO documents (collection, doc_id, data_json, update_time)
                        VALUES (?, ?, ?, ?)
                        ON CONFLICT(collection, doc_id)
                        DO UPDATE SET data_json = excluded.data_json,
                                      update_time = excluded.update_time
                        """,
                        (mutation.collection, mutation.doc_id, json.dumps(data), now),
                    )

                conn.execute("COMMIT")

            except Exception:
                conn.execute("ROLLBACK")
                raise

        logger.debug(
            "Committed write group",
            extra={"mutations": len(group), "preconditions": len(group.preconditions)},
        )
