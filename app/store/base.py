"""
Document store contract used by every workflow service.

Keyed documents grouped in collections: get/set/delete by key, equality and
"in" queries with orderBy/limit, bounded atomic batch commits, optimistic
transactions and server-assigned timestamps.
"""

import copy
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

from app.core.exceptions import NotFoundError, ValidationError

# Filter / order_by field that addresses the document key instead of a body field.
DOCUMENT_ID = "__id__"

OP_SET = "set"
OP_UPDATE = "update"
OP_DELETE = "delete"


class _ServerTimestamp:
    """Placeholder resolved to the commit time when the write is applied."""

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


class ArrayUnion:
    """Append values to an array field, skipping values already present."""

    def __init__(self, *values: Any) -> None:
        self.values = list(values)

    def __repr__(self) -> str:
        return f"ArrayUnion({self.values!r})"


@dataclass(frozen=True)
class DocRef:
    collection: str
    doc_id: str


@dataclass
class StoredDocument:
    id: str
    data: Dict[str, Any]
    version: int = 1


@dataclass
class Filter:
    """Equality (`==`) or membership (`in`) test on a dotted field path."""

    field: str
    op: str
    value: Any

    @classmethod
    def eq(cls, field_path: str, value: Any) -> "Filter":
        return cls(field_path, "==", value)

    @classmethod
    def is_in(cls, field_path: str, values: Sequence[Any]) -> "Filter":
        return cls(field_path, "in", list(values))


@dataclass
class WriteOp:
    kind: str
    ref: DocRef
    fields: Dict[str, Any] = field(default_factory=dict)
    merge: bool = False

    @classmethod
    def set(cls, collection: str, doc_id: str, fields: Dict[str, Any], merge: bool = False) -> "WriteOp":
        return cls(OP_SET, DocRef(collection, doc_id), fields, merge)

    @classmethod
    def update(cls, collection: str, doc_id: str, fields: Dict[str, Any]) -> "WriteOp":
        """Field-path update of an existing document. Dotted keys address nested fields."""
        return cls(OP_UPDATE, DocRef(collection, doc_id), fields)

    @classmethod
    def delete(cls, collection: str, doc_id: str) -> "WriteOp":
        return cls(OP_DELETE, DocRef(collection, doc_id))


ReadResults = Dict[DocRef, Optional[StoredDocument]]
WriteFn = Callable[[ReadResults], Union[List[WriteOp], Awaitable[List[WriteOp]]]]


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def get_path(data: Dict[str, Any], path: str) -> Any:
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


def _resolve(value: Any, existing: Any, now: str) -> Any:
    if value is SERVER_TIMESTAMP:
        return now
    if isinstance(value, ArrayUnion):
        current = list(existing) if isinstance(existing, list) else []
        for item in value.values:
            item = _resolve(item, None, now)
            if item not in current:
                current.append(item)
        return current
    if isinstance(value, dict):
        return {k: _resolve(v, None, now) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_resolve(v, None, now) for v in value]
    return value


def _set_path(data: Dict[str, Any], path: str, value: Any, now: str) -> None:
    parts = path.split(".")
    target = data
    for part in parts[:-1]:
        child = target.get(part)
        if not isinstance(child, dict):
            child = {}
            target[part] = child
        target = child
    target[parts[-1]] = _resolve(value, target.get(parts[-1]), now)


def _deep_merge(target: Dict[str, Any], fields: Dict[str, Any], now: str) -> None:
    for key, value in fields.items():
        if "." in key:
            _set_path(target, key, value, now)
        elif isinstance(value, dict) and isinstance(target.get(key), dict):
            _deep_merge(target[key], value, now)
        else:
            target[key] = _resolve(value, target.get(key), now)


def apply_write(existing: Optional[Dict[str, Any]], op: WriteOp, now: str) -> Optional[Dict[str, Any]]:
    """Return the new body for `op` applied over `existing` (None means deleted)."""
    if op.kind == OP_DELETE:
        return None
    if op.kind == OP_UPDATE:
        if existing is None:
            raise NotFoundError(f"Cannot update missing document {op.ref.collection}/{op.ref.doc_id}")
        data = copy.deepcopy(existing)
        for path, value in op.fields.items():
            _set_path(data, path, value, now)
        return data
    if op.kind == OP_SET:
        if op.merge:
            data = copy.deepcopy(existing) if existing is not None else {}
            _deep_merge(data, op.fields, now)
            return data
        return {k: _resolve(v, None, now) for k, v in op.fields.items()}
    raise ValidationError(f"Unknown write operation: {op.kind}")


def matches(doc: StoredDocument, filters: Sequence[Filter]) -> bool:
    for f in filters:
        value = doc.id if f.field == DOCUMENT_ID else get_path(doc.data, f.field)
        if f.op == "==":
            if value != f.value:
                return False
        elif f.op == "in":
            if value not in f.value:
                return False
        else:
            raise ValidationError(f"Unsupported filter operator: {f.op}")
    return True


def sort_key(field_path: str):
    def _key(doc: StoredDocument):
        value = doc.id if field_path == DOCUMENT_ID else get_path(doc.data, field_path)
        return (value is not None, value if value is not None else "")

    return _key


class DocumentStore(ABC):
    """Contract every store backend satisfies. All calls are awaited one at a time."""

    max_batch_ops: int
    in_filter_limit: int

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[StoredDocument]:
        ...

    @abstractmethod
    async def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[StoredDocument]:
        ...

    async def set(self, collection: str, doc_id: str, fields: Dict[str, Any], merge: bool = False) -> None:
        """merge=True is a field-level upsert; merge=False replaces the whole document."""
        await self.batch_commit([WriteOp.set(collection, doc_id, fields, merge=merge)])

    async def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        await self.batch_commit([WriteOp.update(collection, doc_id, fields)])

    async def delete(self, collection: str, doc_id: str) -> None:
        await self.batch_commit([WriteOp.delete(collection, doc_id)])

    @abstractmethod
    async def batch_commit(self, ops: Sequence[WriteOp]) -> None:
        """Apply all ops atomically, or none. At most `max_batch_ops` per call."""

    @abstractmethod
    async def transaction(self, reads: Sequence[DocRef], write_fn: WriteFn) -> None:
        """
        Read `reads`, build writes with `write_fn(results)`, then commit only if
        none of the read documents changed in between. Raises ContentionError
        once retries are exhausted.
        """

    def server_timestamp(self) -> Any:
        return SERVER_TIMESTAMP

    def validate_filters(self, filters: Sequence[Filter]) -> None:
        in_filters = [f for f in filters if f.op == "in"]
        if len(in_filters) > 1:
            raise ValidationError("Only one 'in' filter is allowed per query")
        for f in in_filters:
            if len(f.value) > self.in_filter_limit:
                raise ValidationError(
                    f"'in' filter on {f.field} has {len(f.value)} values; the limit is {self.in_filter_limit}"
                )

    def validate_batch(self, ops: Sequence[WriteOp]) -> None:
        if len(ops) > self.max_batch_ops:
            raise ValidationError(
                f"Batch of {len(ops)} operations exceeds the store limit of {self.max_batch_ops}"
            )
