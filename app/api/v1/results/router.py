from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.auth.dependencies import get_current_user
from app.auth.rbac import require_admin, require_staff
from app.auth.schemas import CurrentUser
from app.core.enums import UserRole
from app.core.schemas import ApiResponse, ok
from app.store import DocumentStore, get_store

from .schemas import (
    ApprovalResult,
    DraftSave,
    DraftsBulkSave,
    LockStatus,
    ResultDraftResponse,
    ResultRecordResponse,
    ResultScope,
    ResultSubmissionResponse,
    ResultUnlock,
    SubmissionReject,
)
from . import service

router = APIRouter(prefix="/api/v1/results", tags=["results"])


@router.put("/drafts", response_model=ApiResponse[ResultDraftResponse])
async def save_draft(
    payload: DraftSave,
    store: DocumentStore = Depends(get_store),
    current_user: CurrentUser = Depends(require_staff),
) -> ApiResponse[ResultDraftResponse]:
    return ok(await service.save_draft(store, current_user, payload))


@router.put("/drafts/bulk", response_model=ApiResponse[List[ResultDraftResponse]])
async def save_drafts(
    payload: DraftsBulkSave,
    store: DocumentStore = Depends(get_store),
    current_user: CurrentUser = Depends(require_staff),
) -> ApiResponse[List[ResultDraftResponse]]:
    """Save a whole class table: [{pupil_id, ca_score, exam_score, absent}, ...]"""
    return ok(await service.save_drafts(store, current_user, payload))


@router.get(
    "/drafts",
    response_model=ApiResponse[List[ResultDraftResponse]],
    dependencies=[Depends(require_staff)],
)
async def list_drafts(
    class_id: str = Query(...),
    session: str = Query(...),
    term: str = Query(...),
    subject: str = Query(...),
    store: DocumentStore = Depends(get_store),
) -> ApiResponse[List[ResultDraftResponse]]:
    scope = ResultScope(class_id=class_id, session=session, term=term, subject=subject)
    return ok(await service.list_drafts(store, scope))


@router.post(
    "/submissions",
    response_model=ApiResponse[ResultSubmissionResponse],
    status_code=status.HTTP_201_CREATED,
)
async def submit(
    payload: ResultScope,
    store: DocumentStore = Depends(get_store),
    current_user: CurrentUser = Depends(require_staff),
) -> ApiResponse[ResultSubmissionResponse]:
    return ok(await service.submit(store, current_user, payload))


@router.get(
    "/submissions/pending",
    response_model=ApiResponse[List[ResultSubmissionResponse]],
    dependencies=[Depends(require_admin)],
)
async def list_pending_submissions(
    store: DocumentStore = Depends(get_store),
) -> ApiResponse[List[ResultSubmissionResponse]]:
    return ok(await service.list_pending_submissions(store))


@router.get(
    "/submissions/{submission_id}",
    response_model=ApiResponse[ResultSubmissionResponse],
    dependencies=[Depends(require_staff)],
)
async def get_submission(
    submission_id: str,
    store: DocumentStore = Depends(get_store),
) -> ApiResponse[ResultSubmissionResponse]:
    return ok(await service.get_submission(store, submission_id))


@router.post("/submissions/{submission_id}/approve", response_model=ApiResponse[ApprovalResult])
async def approve(
    submission_id: str,
    store: DocumentStore = Depends(get_store),
    current_user: CurrentUser = Depends(require_admin),
) -> ApiResponse[ApprovalResult]:
    return ok(await service.approve(store, current_user, submission_id))


@router.post("/submissions/{submission_id}/reject", response_model=ApiResponse[ResultSubmissionResponse])
async def reject(
    submission_id: str,
    payload: SubmissionReject,
    store: DocumentStore = Depends(get_store),
    current_user: CurrentUser = Depends(require_admin),
) -> ApiResponse[ResultSubmissionResponse]:
    return ok(await service.reject(store, current_user, submission_id, payload.reason))


@router.get("/lock", response_model=ApiResponse[LockStatus], dependencies=[Depends(get_current_user)])
async def lock_status(
    class_id: str = Query(...),
    session: str = Query(...),
    term: str = Query(...),
    subject: str = Query(...),
    store: DocumentStore = Depends(get_store),
) -> ApiResponse[LockStatus]:
    return ok(await service.is_locked(store, class_id, term, subject, session))


@router.post("/unlock", response_model=ApiResponse[LockStatus])
async def unlock(
    payload: ResultUnlock,
    store: DocumentStore = Depends(get_store),
    current_user: CurrentUser = Depends(require_admin),
) -> ApiResponse[LockStatus]:
    return ok(await service.unlock(store, current_user, payload))


@router.get("/pupils/{pupil_id}", response_model=ApiResponse[List[ResultRecordResponse]])
async def list_pupil_results(
    pupil_id: str,
    session: Optional[str] = Query(None),
    store: DocumentStore = Depends(get_store),
    current_user: CurrentUser = Depends(get_current_user),
) -> ApiResponse[List[ResultRecordResponse]]:
    if current_user.role == UserRole.PUPIL.value and current_user.id != pupil_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Pupils can only view their own results")
    return ok(await service.list_pupil_results(store, pupil_id, session))
