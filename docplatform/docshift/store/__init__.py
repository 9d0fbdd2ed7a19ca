"""
Document store abstraction.

Exports the DocumentStore protocol, write group types, and the bundled
in-memory and SQLite backends.
"""

from .base import (
    DELETE_FIELD,
    ID_FIELD,
    BaseDocumentStore,
    Cursor,
    Document,
    DocumentStore,
    FieldFilter,
    FilterOp,
    QueryPage,
    StoreSubscription,
    WriteGroup,
)
from .memory import InMemoryDocumentStore
from .sqlite import SqliteDocumentStore

__all__ = [
    "DELETE_FIELD",
    "ID_FIELD",
    "BaseDocumentStore",
    "Cursor",
    "Document",
    "DocumentStore",
    "FieldFilter",
    "FilterOp",
    "InMemoryDocumentStore",
    "QueryPage",
    "SqliteDocumentStore",
    "StoreSubscription",
    "WriteGroup",
]
