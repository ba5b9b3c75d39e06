from app.store.base import (
    DOCUMENT_ID,
    SERVER_TIMESTAMP,
    ArrayUnion,
    DocRef,
    DocumentStore,
    Filter,
    StoredDocument,
    WriteOp,
)
from app.store.sql import SqlDocumentStore, get_store

__all__ = [
    "DOCUMENT_ID",
    "SERVER_TIMESTAMP",
    "ArrayUnion",
    "DocRef",
    "DocumentStore",
    "Filter",
    "StoredDocument",
    "WriteOp",
    "SqlDocumentStore",
    "get_store",
]
