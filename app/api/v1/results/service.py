"""
Result entry and approval.

draft -> pending (submitted) -> approved | rejected; rejected -> draft on the
next save. Drafts keep their stored status (draft/absent); the status shown
for a draft comes from its submission, so approve/reject never rewrite the
teacher's rows. Approval publishes one record per drafted pupil and locks the
scope; pupils only see records whose submission is approved.
"""

import logging
import uuid
from typing import Dict, List, Optional, Tuple

from app.api.v1.classes import service as class_service
from app.api.v1.pupils import service as pupil_service
from app.auth.schemas import CurrentUser
from app.core.batch_executor import execute_in_chunks
from app.core.config import settings
from app.core.enums import Collection, DraftStatus, SnapshotStatus, SubmissionStatus
from app.core.exceptions import (
    ExecutionError,
    InvalidStateError,
    NotFoundError,
    PartialExecutionError,
    ServiceError,
    ValidationError,
)
from app.store import DOCUMENT_ID, SERVER_TIMESTAMP, ArrayUnion, DocRef, DocumentStore, Filter, StoredDocument, WriteOp

from .schemas import (
    ApprovalResult,
    DraftEntry,
    DraftSave,
    DraftsBulkSave,
    LockStatus,
    ResultDraftResponse,
    ResultRecordResponse,
    ResultScope,
    ResultSubmissionResponse,
    ResultUnlock,
)

logger = logging.getLogger(__name__)


def _key_part(value: str) -> str:
    # Sessions look like "2024/2025"; a slash would split the key in URLs and store paths.
    return value.replace("/", "-")


def scope_key(class_id: str, session: str, term: str, subject: str) -> str:
    return "_".join(_key_part(v) for v in (class_id, session, term, subject))


def draft_key(pupil_id: str, scope: ResultScope) -> str:
    return f"{_key_part(pupil_id)}_{scope_key(scope.class_id, scope.session, scope.term, scope.subject)}"


def record_key(pupil_id: str, session: str, term: str, subject: str) -> str:
    return "_".join(_key_part(v) for v in (pupil_id, session, term, subject))


def calculate_grade(total: int) -> str:
    if total >= 75:
        return "A1"
    if total >= 70:
        return "B2"
    if total >= 65:
        return "B3"
    if total >= 60:
        return "C4"
    if total >= 55:
        return "C5"
    if total >= 50:
        return "C6"
    if total >= 45:
        return "D7"
    if total >= 40:
        return "D8"
    return "F9"


def _scope_filters(scope: ResultScope) -> List[Filter]:
    return [
        Filter.eq("classId", scope.class_id),
        Filter.eq("session", scope.session),
        Filter.eq("term", scope.term),
        Filter.eq("subject", scope.subject),
    ]


def _scope_from_doc(data: dict) -> ResultScope:
    return ResultScope(
        class_id=data["classId"],
        session=data["session"],
        term=data["term"],
        subject=data["subject"],
    )


def _validate_scope(scope: ResultScope) -> None:
    for name in ("class_id", "session", "term", "subject"):
        if not (getattr(scope, name) or "").strip():
            raise ValidationError(f"{name.replace('_', ' ').capitalize()} is required")


def _validate_scores(entry: DraftEntry) -> Tuple[int, int]:
    if entry.absent:
        return 0, 0
    ca, exam = entry.ca_score, entry.exam_score
    if isinstance(ca, bool) or not isinstance(ca, int) or ca < 0 or ca > settings.ca_max_score:
        raise ValidationError(f"Invalid CA score: {ca}. Must be between 0 and {settings.ca_max_score}.")
    if isinstance(exam, bool) or not isinstance(exam, int) or exam < 0 or exam > settings.exam_max_score:
        raise ValidationError(f"Invalid Exam score: {exam}. Must be between 0 and {settings.exam_max_score}.")
    return ca, exam


def _derived_status(draft: dict, submission: Optional[StoredDocument]) -> str:
    stored = draft.get("status") or DraftStatus.draft.value
    if submission is None:
        return stored
    status = submission.data.get("status")
    if status == SubmissionStatus.rejected.value:
        # A save after rejection puts the row back into draft.
        rejected_at = submission.data.get("rejectedAt") or ""
        if (draft.get("updatedAt") or "") > rejected_at:
            return stored
        return DraftStatus.rejected.value
    if status in (SubmissionStatus.pending.value, SubmissionStatus.approved.value):
        return status
    return stored


def _draft_to_response(doc: StoredDocument, submission: Optional[StoredDocument]) -> ResultDraftResponse:
    data = doc.data
    ca = int(data.get("caScore") or 0)
    exam = int(data.get("examScore") or 0)
    return ResultDraftResponse(
        id=doc.id,
        pupil_id=data["pupilId"],
        class_id=data["classId"],
        session=data["session"],
        term=data["term"],
        subject=data["subject"],
        ca_score=ca,
        exam_score=exam,
        total=ca + exam,
        status=_derived_status(data, submission),
        updated_at=data.get("updatedAt"),
    )


def _submission_to_response(doc: StoredDocument) -> ResultSubmissionResponse:
    data = doc.data
    return ResultSubmissionResponse(
        id=doc.id,
        class_id=data["classId"],
        class_name=data.get("className"),
        session=data["session"],
        term=data["term"],
        subject=data["subject"],
        status=data["status"],
        pupil_count=int(data.get("pupilCount") or 0),
        teacher_uid=data.get("teacherUid"),
        teacher_name=data.get("teacherName"),
        submitted_at=data.get("submittedAt"),
        approved_at=data.get("approvedAt"),
        approved_by=data.get("approvedBy"),
        rejected_at=data.get("rejectedAt"),
        rejected_by=data.get("rejectedBy"),
        rejection_reason=data.get("rejectionReason"),
    )


def _record_to_response(doc: StoredDocument) -> ResultRecordResponse:
    data = doc.data
    return ResultRecordResponse(
        id=doc.id,
        pupil_id=data["pupilId"],
        class_id=data["classId"],
        class_name=data.get("className"),
        session=data["session"],
        term=data["term"],
        subject=data["subject"],
        ca_score=int(data.get("caScore") or 0),
        exam_score=int(data.get("examScore") or 0),
        total=int(data.get("total") or 0),
        grade=data.get("grade") or calculate_grade(int(data.get("total") or 0)),
        absent=bool(data.get("absent")),
        submission_id=data["submissionId"],
        approved_at=data.get("approvedAt"),
    )


async def _get_scope_submission(store: DocumentStore, scope: ResultScope) -> Optional[StoredDocument]:
    return await store.get(
        Collection.RESULT_SUBMISSIONS.value,
        scope_key(scope.class_id, scope.session, scope.term, scope.subject),
    )


# ----- Locks -----

async def is_locked(store: DocumentStore, class_id: str, term: str, subject: str, session: str) -> LockStatus:
    """A missing lock record means unlocked."""
    doc = await store.get(Collection.RESULT_LOCKS.value, scope_key(class_id, session, term, subject))
    if not doc:
        return LockStatus(locked=False)
    return LockStatus(
        locked=bool(doc.data.get("locked")),
        reason=doc.data.get("reason"),
        locked_at=doc.data.get("lockedAt"),
        locked_by=doc.data.get("lockedBy"),
    )


async def _assert_editable(store: DocumentStore, scope: ResultScope) -> None:
    lock = await is_locked(store, scope.class_id, scope.term, scope.subject, scope.session)
    if lock.locked:
        raise InvalidStateError("Results for this class, term and subject are locked")
    submission = await _get_scope_submission(store, scope)
    if submission is None:
        return
    status = submission.data.get("status")
    if status == SubmissionStatus.pending.value:
        raise InvalidStateError("Results are awaiting admin approval and cannot be edited")
    if status == SubmissionStatus.approved.value:
        raise InvalidStateError("Results have been approved and cannot be edited")


# ----- Drafts -----

def _draft_write(scope: ResultScope, entry: DraftEntry, teacher_id: str) -> WriteOp:
    ca, exam = _validate_scores(entry)
    return WriteOp.set(
        Collection.RESULT_DRAFTS.value,
        draft_key(entry.pupil_id, scope),
        {
            "pupilId": entry.pupil_id,
            "classId": scope.class_id,
            "session": scope.session,
            "term": scope.term,
            "subject": scope.subject,
            "caScore": ca,
            "examScore": exam,
            "status": DraftStatus.absent.value if entry.absent else DraftStatus.draft.value,
            "teacherId": teacher_id,
            "updatedAt": SERVER_TIMESTAMP,
        },
        merge=True,
    )


async def _check_pupils_in_class(store: DocumentStore, scope: ResultScope, pupil_ids: List[str]) -> None:
    pupils = await pupil_service.fetch_pupils_by_ids(store, pupil_ids)
    missing = [pid for pid in pupil_ids if pid not in pupils]
    if missing:
        raise NotFoundError(f"Pupils not found: {', '.join(missing)}")
    outside = [pid for pid in pupil_ids if (pupils[pid].data.get("class") or {}).get("id") != scope.class_id]
    if outside:
        raise ValidationError(f"Pupils not in this class: {', '.join(outside)}")


async def save_draft(store: DocumentStore, current_user: CurrentUser, payload: DraftSave) -> ResultDraftResponse:
    """Upsert one pupil's scores while the scope is unlocked and not under review."""
    scope = ResultScope(**payload.model_dump(include={"class_id", "session", "term", "subject"}))
    entry = DraftEntry(**payload.model_dump(include={"pupil_id", "ca_score", "exam_score", "absent"}))
    _validate_scope(scope)
    op = _draft_write(scope, entry, current_user.id)
    await class_service.get_class_or_404(store, scope.class_id)
    await _check_pupils_in_class(store, scope, [entry.pupil_id])
    await _assert_editable(store, scope)

    await store.batch_commit([op])
    doc = await store.get(Collection.RESULT_DRAFTS.value, op.ref.doc_id)
    return _draft_to_response(doc, await _get_scope_submission(store, scope))


async def save_drafts(
    store: DocumentStore, current_user: CurrentUser, payload: DraftsBulkSave
) -> List[ResultDraftResponse]:
    """Save a whole class table of scores. Every row is validated before anything is written."""
    scope = ResultScope(**payload.model_dump(include={"class_id", "session", "term", "subject"}))
    _validate_scope(scope)
    pupil_ids = [e.pupil_id for e in payload.entries]
    if len(set(pupil_ids)) != len(pupil_ids):
        raise ValidationError("Each pupil may appear only once")
    ops = [_draft_write(scope, entry, current_user.id) for entry in payload.entries]
    await class_service.get_class_or_404(store, scope.class_id)
    await _check_pupils_in_class(store, scope, pupil_ids)
    await _assert_editable(store, scope)

    await execute_in_chunks(store, ops)
    logger.info("Saved %s result drafts for %s", len(ops), scope_key(scope.class_id, scope.session, scope.term, scope.subject))
    return await list_drafts(store, scope)


async def list_drafts(store: DocumentStore, scope: ResultScope) -> List[ResultDraftResponse]:
    docs = await store.query(Collection.RESULT_DRAFTS.value, _scope_filters(scope), order_by="pupilId")
    submission = await _get_scope_submission(store, scope)
    return [_draft_to_response(d, submission) for d in docs]


# ----- Submissions -----

async def submit(store: DocumentStore, current_user: CurrentUser, scope: ResultScope) -> ResultSubmissionResponse:
    """Send a scope's drafts for admin approval. Overwrites any earlier rejected submission."""
    _validate_scope(scope)
    school_class = await class_service.get_class_or_404(store, scope.class_id)
    lock = await is_locked(store, scope.class_id, scope.term, scope.subject, scope.session)
    if lock.locked:
        raise InvalidStateError("Results for this class, term and subject are locked")
    existing = await _get_scope_submission(store, scope)
    if existing is not None:
        status = existing.data.get("status")
        if status == SubmissionStatus.pending.value:
            raise InvalidStateError("Results already submitted for approval")
        if status == SubmissionStatus.approved.value:
            raise InvalidStateError("Results have already been approved")

    drafts = await store.query(Collection.RESULT_DRAFTS.value, _scope_filters(scope))
    if not drafts:
        raise ValidationError("No results entered for this class, term and subject")
    pupil_count = len({d.data["pupilId"] for d in drafts})

    submission_id = scope_key(scope.class_id, scope.session, scope.term, scope.subject)
    await store.set(
        Collection.RESULT_SUBMISSIONS.value,
        submission_id,
        {
            "classId": scope.class_id,
            "className": school_class.name,
            "session": scope.session,
            "term": scope.term,
            "subject": scope.subject,
            "teacherUid": current_user.id,
            "teacherName": current_user.name or None,
            "status": SubmissionStatus.pending.value,
            "pupilCount": pupil_count,
            "submittedAt": SERVER_TIMESTAMP,
        },
    )
    logger.info("Results submitted for approval: %s (%s pupils)", submission_id, pupil_count)
    return _submission_to_response(await store.get(Collection.RESULT_SUBMISSIONS.value, submission_id))


async def get_submission(store: DocumentStore, submission_id: str) -> ResultSubmissionResponse:
    doc = await store.get(Collection.RESULT_SUBMISSIONS.value, submission_id)
    if not doc:
        raise NotFoundError("Submission not found")
    return _submission_to_response(doc)


async def list_pending_submissions(store: DocumentStore) -> List[ResultSubmissionResponse]:
    docs = await store.query(
        Collection.RESULT_SUBMISSIONS.value,
        [Filter.eq("status", SubmissionStatus.pending.value)],
        order_by="submittedAt",
        descending=True,
    )
    return [_submission_to_response(d) for d in docs]


def _approval_writes(
    submission: StoredDocument, drafts: List[StoredDocument], admin_id: str
) -> List[WriteOp]:
    data = submission.data
    ops: List[WriteOp] = []
    for draft in drafts:
        d = draft.data
        ca = int(d.get("caScore") or 0)
        exam = int(d.get("examScore") or 0)
        total = ca + exam
        ops.append(
            WriteOp.set(
                Collection.RESULTS.value,
                record_key(d["pupilId"], d["session"], d["term"], d["subject"]),
                {
                    "pupilId": d["pupilId"],
                    "classId": d["classId"],
                    "className": data.get("className"),
                    "session": d["session"],
                    "term": d["term"],
                    "subject": d["subject"],
                    "caScore": ca,
                    "examScore": exam,
                    "total": total,
                    "grade": calculate_grade(total),
                    "absent": d.get("status") == DraftStatus.absent.value,
                    "submissionId": submission.id,
                    "approvedBy": admin_id,
                    "approvedAt": SERVER_TIMESTAMP,
                },
            )
        )
    # Status and lock go last: with chunking they land in the final chunk,
    # so the scope never reads as approved while records are still missing.
    ops.append(
        WriteOp.update(
            Collection.RESULT_SUBMISSIONS.value,
            submission.id,
            {
                "status": SubmissionStatus.approved.value,
                "approvedAt": SERVER_TIMESTAMP,
                "approvedBy": admin_id,
            },
        )
    )
    ops.append(
        WriteOp.set(
            Collection.RESULT_LOCKS.value,
            submission.id,
            {
                "classId": data["classId"],
                "className": data.get("className"),
                "session": data["session"],
                "term": data["term"],
                "subject": data["subject"],
                "locked": True,
                "lockedAt": SERVER_TIMESTAMP,
                "lockedBy": admin_id,
                "reason": "Admin approved and locked",
            },
            merge=True,
        )
    )
    return ops


async def _assert_records_free(store: DocumentStore, submission_id: str, drafts: List[StoredDocument]) -> None:
    """Refuse to overwrite a published record that belongs to another approved or locked scope."""
    keys = [record_key(d.data["pupilId"], d.data["session"], d.data["term"], d.data["subject"]) for d in drafts]
    step = store.in_filter_limit
    owners: Dict[str, List[str]] = {}
    for i in range(0, len(keys), step):
        for doc in await store.query(Collection.RESULTS.value, [Filter.is_in(DOCUMENT_ID, keys[i:i + step])]):
            owner = doc.data.get("submissionId")
            if owner and owner != submission_id:
                owners.setdefault(owner, []).append(doc.data.get("pupilId") or doc.id)

    for owner, pupil_ids in owners.items():
        other = await store.get(Collection.RESULT_SUBMISSIONS.value, owner)
        lock = await store.get(Collection.RESULT_LOCKS.value, owner)
        approved = other is not None and other.data.get("status") == SubmissionStatus.approved.value
        locked = lock is not None and bool(lock.data.get("locked"))
        if approved or locked:
            raise InvalidStateError(
                f"Published results for {', '.join(pupil_ids)} already belong to approved submission {owner}"
            )


async def _approve_in_chunks(store: DocumentStore, submission_id: str, ops: List[WriteOp]) -> int:
    """Every approval write is an idempotent set, so the whole list is retried until it lands."""
    last_error: Optional[ExecutionError] = None
    committed_any = False
    for attempt in range(1, settings.result_approval_max_attempts + 1):
        snapshot = DocRef(Collection.RESULT_APPROVAL_SNAPSHOTS.value, uuid.uuid4().hex)
        await store.set(
            snapshot.collection,
            snapshot.doc_id,
            {
                "submissionId": submission_id,
                "attempt": attempt,
                "status": SnapshotStatus.in_progress.value,
                "lastCompletedChunk": -1,
                "totalOperations": len(ops),
                "totalOperationsCompleted": 0,
                "createdAt": SERVER_TIMESTAMP,
            },
        )
        try:
            result = await execute_in_chunks(store, ops, snapshot=snapshot)
            return result.chunks_committed
        except ExecutionError as exc:
            last_error = exc
            committed_any = committed_any or exc.operations_completed > 0
            logger.warning(
                "Approval of %s failed on attempt %s/%s: %s",
                submission_id,
                attempt,
                settings.result_approval_max_attempts,
                exc.message,
            )

    error_cls = PartialExecutionError if committed_any else ExecutionError
    raise error_cls(
        f"Approval of {submission_id} could not be completed; the submission is still pending "
        f"and no results are visible to pupils. Last error: {last_error.message if last_error else 'unknown'}",
        snapshot_id=last_error.snapshot_id if last_error else None,
        failed_chunk=last_error.failed_chunk if last_error else None,
        operations_completed=last_error.operations_completed if last_error else 0,
    )


async def approve(store: DocumentStore, current_user: CurrentUser, submission_id: str) -> ApprovalResult:
    """Publish every draft in scope, mark the submission approved and lock the scope."""
    submission = await store.get(Collection.RESULT_SUBMISSIONS.value, submission_id)
    if not submission:
        raise NotFoundError("Submission not found")
    if submission.data.get("status") != SubmissionStatus.pending.value:
        raise InvalidStateError(f"Submission is {submission.data.get('status')}, only pending submissions can be approved")
    scope = _scope_from_doc(submission.data)
    lock = await is_locked(store, scope.class_id, scope.term, scope.subject, scope.session)
    if lock.locked:
        raise InvalidStateError("Results for this scope are already locked")
    drafts = await store.query(Collection.RESULT_DRAFTS.value, _scope_filters(scope))
    if not drafts:
        raise InvalidStateError("Submission has no result drafts to publish")

    await _assert_records_free(store, submission_id, drafts)

    ops = _approval_writes(submission, drafts, current_user.id)
    if len(ops) <= store.max_batch_ops:
        try:
            await store.batch_commit(ops)
        except ServiceError:
            raise
        except Exception as exc:
            logger.error("Approval of %s failed: %s", submission_id, exc)
            raise ExecutionError(
                f"Approval of {submission_id} could not be committed; the submission is still pending: {exc}"
            ) from exc
        chunks = 1
    else:
        chunks = await _approve_in_chunks(store, submission_id, ops)

    logger.info("Results approved and locked: %s (%s records)", submission_id, len(drafts))
    return ApprovalResult(
        submission=await get_submission(store, submission_id),
        records_published=len(drafts),
        chunks_committed=chunks,
    )


async def reject(
    store: DocumentStore, current_user: CurrentUser, submission_id: str, reason: Optional[str] = None
) -> ResultSubmissionResponse:
    """Send results back to the teacher. Drafts are left as they are for correction."""
    submission = await store.get(Collection.RESULT_SUBMISSIONS.value, submission_id)
    if not submission:
        raise NotFoundError("Submission not found")
    if submission.data.get("status") != SubmissionStatus.pending.value:
        raise InvalidStateError(f"Submission is {submission.data.get('status')}, only pending submissions can be rejected")
    await store.set(
        Collection.RESULT_SUBMISSIONS.value,
        submission_id,
        {
            "status": SubmissionStatus.rejected.value,
            "rejectedAt": SERVER_TIMESTAMP,
            "rejectedBy": current_user.id,
            "rejectionReason": (reason or "").strip() or "No reason provided",
        },
        merge=True,
    )
    logger.info("Results rejected: %s", submission_id)
    return await get_submission(store, submission_id)


async def unlock(store: DocumentStore, current_user: CurrentUser, payload: ResultUnlock) -> LockStatus:
    """
    Reopen a locked scope. The submission goes back to rejected with the unlock
    reason; its published records are hidden from pupils until the corrected
    results are approved again.
    """
    reason = payload.reason.strip()
    if not reason:
        raise ValidationError("A reason is required to unlock results")
    lock_id = scope_key(payload.class_id, payload.session, payload.term, payload.subject)
    lock_doc = await store.get(Collection.RESULT_LOCKS.value, lock_id)
    if not lock_doc or not lock_doc.data.get("locked"):
        raise InvalidStateError("Results for this scope are not locked")

    ops = [
        WriteOp.set(
            Collection.RESULT_LOCKS.value,
            lock_id,
            {
                "locked": False,
                "unlockedAt": SERVER_TIMESTAMP,
                "unlockedBy": current_user.id,
                "unlockReason": reason,
                "unlockHistory": ArrayUnion(
                    {
                        "unlockedBy": current_user.id,
                        "reason": reason,
                        "previousLockDate": lock_doc.data.get("lockedAt"),
                    }
                ),
            },
            merge=True,
        )
    ]
    submission = await store.get(Collection.RESULT_SUBMISSIONS.value, lock_id)
    if submission is not None:
        ops.append(
            WriteOp.set(
                Collection.RESULT_SUBMISSIONS.value,
                lock_id,
                {
                    "status": SubmissionStatus.rejected.value,
                    "rejectedAt": SERVER_TIMESTAMP,
                    "rejectedBy": current_user.id,
                    "rejectionReason": f"Unlocked by admin: {reason}",
                },
                merge=True,
            )
        )
    await store.batch_commit(ops)
    logger.info("Results unlocked: %s", lock_id)
    return await is_locked(store, payload.class_id, payload.term, payload.subject, payload.session)


# ----- Published results -----

async def list_pupil_results(
    store: DocumentStore, pupil_id: str, session: Optional[str] = None
) -> List[ResultRecordResponse]:
    """Published results a pupil may see: only those whose submission is approved."""
    filters = [Filter.eq("pupilId", pupil_id)]
    if session:
        filters.append(Filter.eq("session", session))
    records = await store.query(Collection.RESULTS.value, filters)

    approved: Dict[str, bool] = {}
    visible = []
    for record in records:
        submission_id = record.data.get("submissionId")
        if submission_id not in approved:
            submission = await store.get(Collection.RESULT_SUBMISSIONS.value, submission_id) if submission_id else None
            approved[submission_id] = (
                submission is not None and submission.data.get("status") == SubmissionStatus.approved.value
            )
        if approved[submission_id]:
            visible.append(_record_to_response(record))
    visible.sort(key=lambda r: (r.session, r.term, r.subject))
    return visible
