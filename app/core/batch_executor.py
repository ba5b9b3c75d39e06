"""
Chunked batch execution.

Splits a mutation list into bounded atomic commits. When a snapshot document
is given, each chunk carries its own progress write so the snapshot never
claims more than what was committed, and the last chunk also marks it
completed. A failed chunk marks the snapshot failed and raises; earlier
chunks stay committed.
"""

import logging
from math import ceil
from typing import List, Optional, Sequence

from pydantic import BaseModel

from app.core.config import settings
from app.core.enums import SnapshotStatus
from app.core.exceptions import ExecutionError, PartialExecutionError, ValidationError
from app.store import SERVER_TIMESTAMP, DocRef, DocumentStore, WriteOp

logger = logging.getLogger(__name__)


class BatchExecutionResult(BaseModel):
    chunks_committed: int
    total_operations: int
    snapshot_id: Optional[str] = None


def chunk_operations(ops: Sequence[WriteOp], chunk_size: int) -> List[List[WriteOp]]:
    if chunk_size < 1:
        raise ValidationError("Chunk size must be at least 1")
    return [list(ops[i:i + chunk_size]) for i in range(0, len(ops), chunk_size)]


def expected_chunk_count(total_ops: int, chunk_size: int) -> int:
    return ceil(total_ops / chunk_size) if total_ops else 0


async def execute_in_chunks(
    store: DocumentStore,
    ops: Sequence[WriteOp],
    snapshot: Optional[DocRef] = None,
    chunk_size: Optional[int] = None,
) -> BatchExecutionResult:
    size = chunk_size or settings.batch_chunk_size
    reserved = 1 if snapshot else 0
    if size + reserved > store.max_batch_ops:
        raise ValidationError(
            f"Chunk size {size} leaves no room under the store limit of {store.max_batch_ops}"
        )

    chunks = chunk_operations(ops, size)
    snapshot_id = snapshot.doc_id if snapshot else None
    completed = 0

    for index, chunk in enumerate(chunks):
        commit_ops = list(chunk)
        if snapshot:
            progress = {
                "lastCompletedChunk": index,
                "totalOperationsCompleted": completed + len(chunk),
                "updatedAt": SERVER_TIMESTAMP,
            }
            if index == len(chunks) - 1:
                progress.update(status=SnapshotStatus.completed.value, completedAt=SERVER_TIMESTAMP)
            commit_ops.append(WriteOp.set(snapshot.collection, snapshot.doc_id, progress, merge=True))
        try:
            await store.batch_commit(commit_ops)
        except Exception as exc:
            logger.error(
                "Chunk %s/%s failed after %s committed operations: %s",
                index + 1,
                len(chunks),
                completed,
                exc,
            )
            if snapshot:
                await _mark_failed(store, snapshot, index, exc)
            error_cls = PartialExecutionError if index > 0 else ExecutionError
            raise error_cls(
                f"Batch failed at chunk {index + 1} of {len(chunks)} "
                f"after {completed} committed operations: {exc}",
                snapshot_id=snapshot_id,
                failed_chunk=index,
                operations_completed=completed,
            ) from exc

        completed += len(chunk)
        logger.info("Committed chunk %s/%s (%s operations)", index + 1, len(chunks), len(chunk))

    if snapshot and not chunks:
        # Nothing to write; the run still closes its snapshot.
        await store.set(
            snapshot.collection,
            snapshot.doc_id,
            {"status": SnapshotStatus.completed.value, "totalOperationsCompleted": 0, "completedAt": SERVER_TIMESTAMP},
            merge=True,
        )

    return BatchExecutionResult(
        chunks_committed=len(chunks),
        total_operations=completed,
        snapshot_id=snapshot_id,
    )


async def _mark_failed(store: DocumentStore, snapshot: DocRef, index: int, exc: Exception) -> None:
    try:
        await store.set(
            snapshot.collection,
            snapshot.doc_id,
            {
                "status": SnapshotStatus.failed.value,
                "failedChunk": index,
                "error": str(exc),
                "updatedAt": SERVER_TIMESTAMP,
            },
            merge=True,
        )
    except Exception:
        logger.exception("Could not record failure on snapshot %s", snapshot.doc_id)
