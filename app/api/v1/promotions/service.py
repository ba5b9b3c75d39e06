"""
Year-end promotion: teacher request -> admin review (with overrides) -> execution.

pending -> rejected | completed. Review and execution are one step: there is
no approved-but-not-executed state. Execution runs through the batch executor
with a snapshot document created before the first write; a failed chunk
leaves earlier chunks committed and the request pending, and the snapshot
blocks re-execution until an admin reconciles it.
"""

import logging
import uuid
from typing import Dict, List, Optional, Sequence, Tuple

from app.api.v1.class_hierarchy import service as hierarchy_service
from app.api.v1.classes import service as class_service
from app.api.v1.classes.schemas import ClassResponse
from app.api.v1.pupils import service as pupil_service
from app.auth.schemas import CurrentUser
from app.core.batch_executor import execute_in_chunks
from app.core.enums import ALUMNI_DESTINATION, Collection, PromotionStatus, SnapshotStatus
from app.core.exceptions import InvalidStateError, NotFoundError, ValidationError
from app.store import SERVER_TIMESTAMP, ArrayUnion, DocRef, DocumentStore, Filter, StoredDocument, WriteOp
from app.store.base import utc_now_iso

from .schemas import (
    BulkApproveResult,
    BulkRejectResult,
    ExecutionSnapshotResponse,
    PromotionExecutionResult,
    PromotionOverride,
    PromotionPeriod,
    PromotionRequestCreate,
    PromotionRequestResponse,
    PromotionReview,
)

logger = logging.getLogger(__name__)

SETTINGS_DOC_ID = "current"
HELD_BACK_REASON = "Held back by admin/teacher decision"


def _request_to_response(doc: StoredDocument) -> PromotionRequestResponse:
    data = doc.data
    return PromotionRequestResponse(
        id=doc.id,
        from_class=data["fromClass"],
        to_class=data.get("toClass"),
        from_session=data.get("fromSession") or "",
        is_terminal_class=bool(data.get("isTerminalClass")),
        promoted_pupil_ids=list(data.get("promotedPupilIds") or []),
        held_back_pupil_ids=list(data.get("heldBackPupilIds") or []),
        overrides=[
            PromotionOverride(pupil_id=o["pupilId"], destination=o["destination"])
            for o in data.get("overrides") or []
        ],
        status=data["status"],
        initiated_by=data.get("initiatedBy"),
        created_at=data.get("createdAt"),
        approved_by=data.get("approvedBy"),
        executed_at=data.get("executedAt"),
        rejected_by=data.get("rejectedBy"),
        rejected_at=data.get("rejectedAt"),
        rejection_reason=data.get("rejectionReason"),
    )


def _snapshot_to_response(doc: StoredDocument) -> ExecutionSnapshotResponse:
    data = doc.data
    return ExecutionSnapshotResponse(
        id=doc.id,
        promotion_id=data["promotionId"],
        status=data["status"],
        last_completed_chunk=int(data.get("lastCompletedChunk", -1)),
        total_operations=int(data.get("totalOperations") or 0),
        total_operations_completed=int(data.get("totalOperationsCompleted") or 0),
        failed_chunk=data.get("failedChunk"),
        error=data.get("error"),
        reconciled=bool(data.get("reconciled")),
        created_at=data.get("createdAt"),
        completed_at=data.get("completedAt"),
    )


def _unique(ids: Sequence[str]) -> List[str]:
    return list(dict.fromkeys(i for i in ids if i))


def _check_disjoint(promoted: List[str], held_back: List[str]) -> None:
    both = sorted(set(promoted) & set(held_back))
    if both:
        raise ValidationError(f"Pupils cannot be both promoted and held back: {', '.join(both)}")


async def _load_pupils_in_class(
    store: DocumentStore, class_id: str, pupil_ids: List[str]
) -> Dict[str, StoredDocument]:
    pupils = await pupil_service.fetch_pupils_by_ids(store, pupil_ids)
    missing = [pid for pid in pupil_ids if pid not in pupils]
    if missing:
        raise NotFoundError(f"Pupils not found: {', '.join(missing)}")
    outside = [pid for pid in pupil_ids if (pupils[pid].data.get("class") or {}).get("id") != class_id]
    if outside:
        raise ValidationError(f"Pupils not in the class being promoted: {', '.join(outside)}")
    return pupils


async def _get_request_doc(store: DocumentStore, request_id: str) -> StoredDocument:
    doc = await store.get(Collection.PROMOTIONS.value, request_id)
    if not doc:
        raise NotFoundError("Promotion request not found")
    return doc


# ----- Promotion period -----

async def get_promotion_period(store: DocumentStore) -> PromotionPeriod:
    doc = await store.get(Collection.SETTINGS.value, SETTINGS_DOC_ID)
    if not doc:
        return PromotionPeriod(active=False)
    return PromotionPeriod(
        active=doc.data.get("promotionPeriodActive") is True,
        updated_at=doc.data.get("promotionPeriodUpdatedAt"),
        updated_by=doc.data.get("promotionPeriodUpdatedBy"),
    )


async def set_promotion_period(store: DocumentStore, current_user: CurrentUser, active: bool) -> PromotionPeriod:
    """Open or close the window in which teachers may submit promotion requests."""
    await store.set(
        Collection.SETTINGS.value,
        SETTINGS_DOC_ID,
        {
            "promotionPeriodActive": active,
            "promotionPeriodUpdatedAt": SERVER_TIMESTAMP,
            "promotionPeriodUpdatedBy": current_user.id,
        },
        merge=True,
    )
    logger.info("Promotion period %s by %s", "opened" if active else "closed", current_user.id)
    return await get_promotion_period(store)


# ----- Requests -----

async def submit_request(
    store: DocumentStore, current_user: CurrentUser, payload: PromotionRequestCreate
) -> PromotionRequestResponse:
    """Record a teacher's promote/hold-back split for one class and session."""
    period = await get_promotion_period(store)
    if not period.active:
        raise InvalidStateError("Promotion period is closed")
    session = payload.session.strip()
    if not session:
        raise ValidationError("Session is required")

    promoted = _unique(payload.promoted_pupil_ids)
    held_back = _unique(payload.held_back_pupil_ids)
    _check_disjoint(promoted, held_back)
    if not promoted and not held_back:
        raise ValidationError("Select at least one pupil to promote or hold back")

    from_class = await class_service.get_class_or_404(store, payload.from_class_id)
    terminal = await hierarchy_service.is_terminal(store, from_class.name)
    to_class: Optional[ClassResponse] = None
    if terminal:
        if payload.to_class_id:
            raise ValidationError(f"{from_class.name} is the terminal class; its pupils graduate to alumni")
    else:
        next_name = await hierarchy_service.get_next(store, from_class.name)
        if next_name is None:
            raise ValidationError(f"{from_class.name} has no next class in the class hierarchy")
        if not payload.to_class_id:
            raise ValidationError(f"Target class is required; pupils in {from_class.name} move to {next_name}")
        to_class = await class_service.get_class_or_404(store, payload.to_class_id)
        if to_class.name != next_name:
            raise ValidationError(f"Pupils in {from_class.name} can only be promoted to {next_name}")

    await _load_pupils_in_class(store, from_class.id, promoted + held_back)

    existing = await store.query(
        Collection.PROMOTIONS.value,
        [
            Filter.eq("fromClass.id", from_class.id),
            Filter.eq("fromSession", session),
            Filter.eq("status", PromotionStatus.pending.value),
        ],
        limit=1,
    )
    if existing:
        raise InvalidStateError("A promotion request for this class and session is already pending")

    request_id = uuid.uuid4().hex
    await store.set(
        Collection.PROMOTIONS.value,
        request_id,
        {
            "fromClass": {"id": from_class.id, "name": from_class.name},
            "toClass": {"id": to_class.id, "name": to_class.name} if to_class else None,
            "fromSession": session,
            "isTerminalClass": terminal,
            "promotedPupilIds": promoted,
            "heldBackPupilIds": held_back,
            "overrides": [],
            "status": PromotionStatus.pending.value,
            "initiatedBy": current_user.id,
            "createdAt": SERVER_TIMESTAMP,
        },
    )
    logger.info(
        "Promotion request %s submitted for %s (%s promoted, %s held back)",
        request_id,
        from_class.name,
        len(promoted),
        len(held_back),
    )
    return _request_to_response(await store.get(Collection.PROMOTIONS.value, request_id))


async def get_request(store: DocumentStore, request_id: str) -> PromotionRequestResponse:
    return _request_to_response(await _get_request_doc(store, request_id))


async def list_requests(store: DocumentStore, status_filter: Optional[str] = None) -> List[PromotionRequestResponse]:
    filters = [Filter.eq("status", status_filter)] if status_filter else []
    docs = await store.query(Collection.PROMOTIONS.value, filters, order_by="createdAt", descending=True)
    return [_request_to_response(d) for d in docs]


async def reject_request(
    store: DocumentStore, current_user: CurrentUser, request_id: str, reason: Optional[str] = None
) -> PromotionRequestResponse:
    """Close a pending request without touching any pupil."""
    doc = await _get_request_doc(store, request_id)
    if doc.data.get("status") != PromotionStatus.pending.value:
        raise InvalidStateError(f"Promotion request is {doc.data.get('status')}, only pending requests can be rejected")
    await store.set(
        Collection.PROMOTIONS.value,
        request_id,
        {
            "status": PromotionStatus.rejected.value,
            "rejectedBy": current_user.id,
            "rejectedAt": SERVER_TIMESTAMP,
            "rejectionReason": (reason or "").strip() or "No reason provided",
        },
        merge=True,
    )
    logger.info("Promotion request %s rejected", request_id)
    return await get_request(store, request_id)


async def reject_all_pending(
    store: DocumentStore, current_user: CurrentUser, reason: Optional[str] = None
) -> BulkRejectResult:
    pending = await store.query(Collection.PROMOTIONS.value, [Filter.eq("status", PromotionStatus.pending.value)])
    ops = [
        WriteOp.update(
            Collection.PROMOTIONS.value,
            doc.id,
            {
                "status": PromotionStatus.rejected.value,
                "rejectedBy": current_user.id,
                "rejectedAt": SERVER_TIMESTAMP,
                "rejectionReason": (reason or "").strip() or "Bulk rejection by admin",
            },
        )
        for doc in pending
    ]
    await execute_in_chunks(store, ops)
    logger.info("Rejected %s pending promotion requests", len(ops))
    return BulkRejectResult(rejected=len(ops))


# ----- Execution -----

def _history_entry(
    session: str, from_name: str, to_name: str, promoted: bool, manual_override: bool, when: str
) -> dict:
    entry = {
        "session": session,
        "fromClass": from_name,
        "toClass": to_name,
        "promoted": promoted,
        "date": when,
    }
    if manual_override:
        entry["manualOverride"] = True
    if not promoted:
        entry["reason"] = HELD_BACK_REASON
    return entry


def _graduate_ops(pupil: StoredDocument, session: str, final_class: str, manual_override: bool) -> List[WriteOp]:
    alumni = dict(pupil.data)
    alumni.update(
        {
            "graduationSession": session,
            "graduationDate": SERVER_TIMESTAMP,
            "finalClass": final_class,
            "manualOverride": manual_override,
            "promotionDate": SERVER_TIMESTAMP,
        }
    )
    return [
        WriteOp.set(Collection.ALUMNI.value, pupil.id, alumni),
        WriteOp.delete(Collection.PUPILS.value, pupil.id),
    ]


def _promote_op(
    pupil: StoredDocument, destination: ClassResponse, session: str, from_name: str, manual_override: bool, when: str
) -> WriteOp:
    return WriteOp.update(
        Collection.PUPILS.value,
        pupil.id,
        {
            "class": {"id": destination.id, "name": destination.name},
            "subjects": list(destination.subjects),
            "promotionHistory": ArrayUnion(
                _history_entry(session, from_name, destination.name, True, manual_override, when)
            ),
            "updatedAt": SERVER_TIMESTAMP,
        },
    )


def _hold_back_op(pupil: StoredDocument, session: str, from_name: str, when: str) -> WriteOp:
    return WriteOp.update(
        Collection.PUPILS.value,
        pupil.id,
        {
            "promotionHistory": ArrayUnion(_history_entry(session, from_name, from_name, False, False, when)),
            "updatedAt": SERVER_TIMESTAMP,
        },
    )


async def _assert_no_unreconciled_run(store: DocumentStore, request_id: str) -> None:
    snapshots = await store.query(
        Collection.PROMOTION_SNAPSHOTS.value, [Filter.eq("promotionId", request_id)]
    )
    for snap in snapshots:
        if snap.data.get("reconciled"):
            continue
        status = snap.data.get("status")
        if status == SnapshotStatus.in_progress.value:
            raise InvalidStateError(
                f"Promotion execution {snap.id} is in progress or was interrupted; reconcile it before retrying"
            )
        if status == SnapshotStatus.failed.value and int(snap.data.get("totalOperationsCompleted") or 0) > 0:
            raise InvalidStateError(
                f"Promotion execution {snap.id} was partially applied; reconcile it before retrying"
            )


def _resolve_overrides(
    overrides: Sequence[PromotionOverride], classes: Dict[str, ClassResponse]
) -> List[Tuple[str, str]]:
    resolved: List[Tuple[str, str]] = []
    seen = set()
    for o in overrides:
        if not o.pupil_id:
            raise ValidationError("Override is missing a pupil")
        if o.pupil_id in seen:
            raise ValidationError(f"Pupil {o.pupil_id} has more than one override")
        seen.add(o.pupil_id)
        if o.destination != ALUMNI_DESTINATION and o.destination not in classes:
            raise NotFoundError(f"Override destination class {o.destination} not found")
        resolved.append((o.pupil_id, o.destination))
    return resolved


async def review_and_execute(
    store: DocumentStore, current_user: CurrentUser, request_id: str, review: PromotionReview
) -> PromotionExecutionResult:
    """
    Apply the admin's final decision and complete the request.

    Override precedence: a pupil named in `overrides` is taken out of the
    promoted and held-back lists and handled only by its override.
    Everything is validated before the snapshot and the first write.
    """
    request = await _get_request_doc(store, request_id)
    data = request.data
    if data.get("status") != PromotionStatus.pending.value:
        raise InvalidStateError(f"Promotion request is {data.get('status')} and cannot be executed")
    await _assert_no_unreconciled_run(store, request_id)

    promoted = _unique(review.promoted_pupil_ids)
    held_back = _unique(review.held_back_pupil_ids)
    _check_disjoint(promoted, held_back)

    classes = await class_service.get_classes_by_id(store)
    overrides = _resolve_overrides(review.overrides, classes)
    override_ids = {pid for pid, _ in overrides}
    promoted = [pid for pid in promoted if pid not in override_ids]
    held_back = [pid for pid in held_back if pid not in override_ids]

    from_class = data["fromClass"]
    session = data.get("fromSession") or ""
    terminal = bool(data.get("isTerminalClass"))
    to_class: Optional[ClassResponse] = None
    if not terminal:
        target = data.get("toClass") or {}
        if not target.get("id"):
            raise ValidationError("Invalid promotion data: missing target class")
        to_class = classes.get(target["id"])
        if to_class is None:
            raise NotFoundError(f"Target class {target.get('name') or target['id']} no longer exists")

    pupils = await _load_pupils_in_class(
        store, from_class["id"], promoted + held_back + [pid for pid, _ in overrides]
    )

    when = utc_now_iso()
    ops: List[WriteOp] = []
    alumni_created = 0
    for pid in promoted:
        if terminal:
            ops.extend(_graduate_ops(pupils[pid], session, from_class["name"], False))
            alumni_created += 1
        else:
            ops.append(_promote_op(pupils[pid], to_class, session, from_class["name"], False, when))
    for pid in held_back:
        ops.append(_hold_back_op(pupils[pid], session, from_class["name"], when))
    for pid, destination in overrides:
        if destination == ALUMNI_DESTINATION:
            ops.extend(_graduate_ops(pupils[pid], session, from_class["name"], True))
            alumni_created += 1
        else:
            ops.append(_promote_op(pupils[pid], classes[destination], session, from_class["name"], True, when))

    snapshot = DocRef(Collection.PROMOTION_SNAPSHOTS.value, uuid.uuid4().hex)
    ops.append(
        WriteOp.update(
            Collection.PROMOTIONS.value,
            request_id,
            {
                "status": PromotionStatus.completed.value,
                "finalPromotedPupilIds": promoted,
                "finalHeldBackPupilIds": held_back,
                "overrides": [{"pupilId": pid, "destination": dest} for pid, dest in overrides],
                "approvedBy": current_user.id,
                "approvedAt": SERVER_TIMESTAMP,
                "executedAt": SERVER_TIMESTAMP,
                "snapshotId": snapshot.doc_id,
            },
        )
    )

    await store.set(
        snapshot.collection,
        snapshot.doc_id,
        {
            "promotionId": request_id,
            "status": SnapshotStatus.in_progress.value,
            "lastCompletedChunk": -1,
            "totalOperations": len(ops),
            "totalOperationsCompleted": 0,
            "executedBy": current_user.id,
            "createdAt": SERVER_TIMESTAMP,
        },
    )
    logger.info(
        "Executing promotion %s: %s promoted, %s held back, %s overrides, %s operations",
        request_id,
        len(promoted),
        len(held_back),
        len(overrides),
        len(ops),
    )
    result = await execute_in_chunks(store, ops, snapshot=snapshot)
    logger.info("Promotion %s completed in %s chunks", request_id, result.chunks_committed)

    return PromotionExecutionResult(
        request=await get_request(store, request_id),
        snapshot_id=snapshot.doc_id,
        promoted=len(promoted),
        held_back=len(held_back),
        overrides_applied=len(overrides),
        alumni_created=alumni_created,
        total_operations=result.total_operations,
        chunks_committed=result.chunks_committed,
    )


async def quick_approve(store: DocumentStore, current_user: CurrentUser, request_id: str) -> PromotionExecutionResult:
    """Execute a request exactly as the teacher classified it."""
    doc = await _get_request_doc(store, request_id)
    review = PromotionReview(
        promoted_pupil_ids=list(doc.data.get("promotedPupilIds") or []),
        held_back_pupil_ids=list(doc.data.get("heldBackPupilIds") or []),
    )
    return await review_and_execute(store, current_user, request_id, review)


async def bulk_approve(store: DocumentStore, current_user: CurrentUser) -> BulkApproveResult:
    """Quick-approve every pending request, oldest first. Stops at the first failure."""
    pending = await store.query(
        Collection.PROMOTIONS.value,
        [Filter.eq("status", PromotionStatus.pending.value)],
        order_by="createdAt",
    )
    executed = []
    for doc in pending:
        executed.append(await quick_approve(store, current_user, doc.id))
    logger.info("Approved and executed %s promotion requests", len(executed))
    return BulkApproveResult(executed=executed)


# ----- Snapshots -----

async def list_execution_snapshots(store: DocumentStore, request_id: str) -> List[ExecutionSnapshotResponse]:
    await _get_request_doc(store, request_id)
    docs = await store.query(
        Collection.PROMOTION_SNAPSHOTS.value,
        [Filter.eq("promotionId", request_id)],
        order_by="createdAt",
    )
    return [_snapshot_to_response(d) for d in docs]


async def reconcile_snapshot(
    store: DocumentStore, current_user: CurrentUser, snapshot_id: str, note: str
) -> ExecutionSnapshotResponse:
    """Record that an admin repaired a failed run by hand so the request may be executed again."""
    doc = await store.get(Collection.PROMOTION_SNAPSHOTS.value, snapshot_id)
    if not doc:
        raise NotFoundError("Execution snapshot not found")
    if doc.data.get("status") == SnapshotStatus.completed.value:
        raise InvalidStateError("Completed executions need no reconciliation")
    await store.set(
        Collection.PROMOTION_SNAPSHOTS.value,
        snapshot_id,
        {
            "reconciled": True,
            "reconciledBy": current_user.id,
            "reconciledAt": SERVER_TIMESTAMP,
            "reconcileNote": note.strip(),
        },
        merge=True,
    )
    logger.info("Execution snapshot %s marked reconciled", snapshot_id)
    return _snapshot_to_response(await store.get(Collection.PROMOTION_SNAPSHOTS.value, snapshot_id))
