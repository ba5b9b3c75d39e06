"""Document store backed by the `documents` table through an async SQLAlchemy session factory."""

import inspect
import logging
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.core.exceptions import ContentionError
from app.core.models import Document
from app.db.session import AsyncSessionLocal

from .base import (
    DOCUMENT_ID,
    DocRef,
    DocumentStore,
    Filter,
    StoredDocument,
    WriteFn,
    WriteOp,
    apply_write,
    matches,
    sort_key,
    utc_now_iso,
)

logger = logging.getLogger(__name__)


def _to_stored(row: Document) -> StoredDocument:
    return StoredDocument(id=row.doc_id, data=dict(row.data or {}), version=row.version)


class SqlDocumentStore(DocumentStore):
    def __init__(
        self,
        session_factory: async_sessionmaker,
        max_batch_ops: Optional[int] = None,
        in_filter_limit: Optional[int] = None,
        transaction_max_attempts: Optional[int] = None,
    ) -> None:
        self._session_factory = session_factory
        self.max_batch_ops = max_batch_ops or settings.store_max_batch_ops
        self.in_filter_limit = in_filter_limit or settings.store_in_filter_limit
        self.transaction_max_attempts = transaction_max_attempts or settings.transaction_max_attempts

    async def get(self, collection: str, doc_id: str) -> Optional[StoredDocument]:
        async with self._session_factory() as db:
            row = await db.get(Document, (collection, doc_id))
            return _to_stored(row) if row else None

    async def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[StoredDocument]:
        self.validate_filters(filters)
        stmt = select(Document).where(Document.collection == collection)
        body_filters = []
        for f in filters:
            if f.field == DOCUMENT_ID and f.op == "==":
                stmt = stmt.where(Document.doc_id == f.value)
            elif f.field == DOCUMENT_ID and f.op == "in":
                stmt = stmt.where(Document.doc_id.in_(f.value))
            else:
                body_filters.append(f)
        async with self._session_factory() as db:
            result = await db.execute(stmt.order_by(Document.doc_id))
            docs = [_to_stored(row) for row in result.scalars().all()]

        # JSON bodies are filtered and ordered here so the same rules hold on every SQL dialect.
        docs = [d for d in docs if matches(d, body_filters)]
        if order_by:
            docs.sort(key=sort_key(order_by), reverse=descending)
        if limit is not None:
            docs = docs[:limit]
        return docs

    async def batch_commit(self, ops: Sequence[WriteOp]) -> None:
        self.validate_batch(ops)
        if not ops:
            return
        async with self._session_factory() as db:
            async with db.begin():
                await self._apply(db, ops, utc_now_iso())

    async def transaction(self, reads: Sequence[DocRef], write_fn: WriteFn) -> None:
        for attempt in range(1, self.transaction_max_attempts + 1):
            snapshots: Dict[DocRef, Optional[StoredDocument]] = {}
            for ref in reads:
                snapshots[ref] = await self.get(ref.collection, ref.doc_id)

            ops = write_fn(snapshots)
            if inspect.isawaitable(ops):
                ops = await ops
            self.validate_batch(ops)

            try:
                async with self._session_factory() as db:
                    async with db.begin():
                        await self._check_read_set(db, snapshots)
                        await self._apply(db, ops, utc_now_iso())
                return
            except ContentionError:
                logger.warning(
                    "Transaction contention on attempt %s/%s (%s documents read)",
                    attempt,
                    self.transaction_max_attempts,
                    len(reads),
                )
        raise ContentionError(
            f"Transaction aborted after {self.transaction_max_attempts} attempts: documents changed concurrently"
        )

    async def _check_read_set(self, db: AsyncSession, snapshots: Dict[DocRef, Optional[StoredDocument]]) -> None:
        for ref, snap in snapshots.items():
            row = await db.get(Document, (ref.collection, ref.doc_id), with_for_update=True)
            current = row.version if row else None
            expected = snap.version if snap else None
            if current != expected:
                raise ContentionError(f"{ref.collection}/{ref.doc_id} changed since it was read")

    async def _apply(self, db: AsyncSession, ops: Sequence[WriteOp], now: str) -> None:
        for op in ops:
            row = await db.get(Document, (op.ref.collection, op.ref.doc_id))
            existing: Optional[Dict[str, Any]] = dict(row.data) if row else None
            new_data = apply_write(existing, op, now)
            if new_data is None:
                if row is not None:
                    await db.delete(row)
                    await db.flush()
            elif row is None:
                db.add(
                    Document(
                        collection=op.ref.collection,
                        doc_id=op.ref.doc_id,
                        data=new_data,
                        version=1,
                    )
                )
                await db.flush()
            else:
                row.data = new_data
                row.version = row.version + 1


def get_store() -> DocumentStore:
    """FastAPI dependency: document store bound to the application session factory."""
    return SqlDocumentStore(AsyncSessionLocal)
