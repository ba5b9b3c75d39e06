from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from app.auth.rbac import require_admin, require_staff
from app.auth.schemas import CurrentUser
from app.core.schemas import ApiResponse, ok
from app.store import DocumentStore, get_store

from .schemas import (
    BulkApproveResult,
    BulkRejectResult,
    ExecutionSnapshotResponse,
    PromotionExecutionResult,
    PromotionPeriod,
    PromotionPeriodUpdate,
    PromotionReject,
    PromotionRequestCreate,
    PromotionRequestResponse,
    PromotionReview,
    SnapshotReconcile,
)
from . import service

router = APIRouter(prefix="/api/v1/promotions", tags=["promotions"])


@router.post(
    "",
    response_model=ApiResponse[PromotionRequestResponse],
    status_code=status.HTTP_201_CREATED,
)
async def submit_request(
    payload: PromotionRequestCreate,
    store: DocumentStore = Depends(get_store),
    current_user: CurrentUser = Depends(require_staff),
) -> ApiResponse[PromotionRequestResponse]:
    return ok(await service.submit_request(store, current_user, payload))


@router.get(
    "",
    response_model=ApiResponse[List[PromotionRequestResponse]],
    dependencies=[Depends(require_staff)],
)
async def list_requests(
    status_filter: Optional[str] = Query(None, alias="status"),
    store: DocumentStore = Depends(get_store),
) -> ApiResponse[List[PromotionRequestResponse]]:
    return ok(await service.list_requests(store, status_filter))


@router.get(
    "/period",
    response_model=ApiResponse[PromotionPeriod],
    dependencies=[Depends(require_staff)],
)
async def get_promotion_period(store: DocumentStore = Depends(get_store)) -> ApiResponse[PromotionPeriod]:
    return ok(await service.get_promotion_period(store))


@router.put("/period", response_model=ApiResponse[PromotionPeriod])
async def set_promotion_period(
    payload: PromotionPeriodUpdate,
    store: DocumentStore = Depends(get_store),
    current_user: CurrentUser = Depends(require_admin),
) -> ApiResponse[PromotionPeriod]:
    return ok(await service.set_promotion_period(store, current_user, payload.active))


@router.post("/approve-all", response_model=ApiResponse[BulkApproveResult])
async def bulk_approve(
    store: DocumentStore = Depends(get_store),
    current_user: CurrentUser = Depends(require_admin),
) -> ApiResponse[BulkApproveResult]:
    return ok(await service.bulk_approve(store, current_user))


@router.post("/reject-all", response_model=ApiResponse[BulkRejectResult])
async def reject_all_pending(
    payload: PromotionReject,
    store: DocumentStore = Depends(get_store),
    current_user: CurrentUser = Depends(require_admin),
) -> ApiResponse[BulkRejectResult]:
    return ok(await service.reject_all_pending(store, current_user, payload.reason))


@router.post("/snapshots/{snapshot_id}/reconcile", response_model=ApiResponse[ExecutionSnapshotResponse])
async def reconcile_snapshot(
    snapshot_id: str,
    payload: SnapshotReconcile,
    store: DocumentStore = Depends(get_store),
    current_user: CurrentUser = Depends(require_admin),
) -> ApiResponse[ExecutionSnapshotResponse]:
    return ok(await service.reconcile_snapshot(store, current_user, snapshot_id, payload.note))


@router.get(
    "/{request_id}",
    response_model=ApiResponse[PromotionRequestResponse],
    dependencies=[Depends(require_staff)],
)
async def get_request(request_id: str, store: DocumentStore = Depends(get_store)) -> ApiResponse[PromotionRequestResponse]:
    return ok(await service.get_request(store, request_id))


@router.post("/{request_id}/review", response_model=ApiResponse[PromotionExecutionResult])
async def review_and_execute(
    request_id: str,
    payload: PromotionReview,
    store: DocumentStore = Depends(get_store),
    current_user: CurrentUser = Depends(require_admin),
) -> ApiResponse[PromotionExecutionResult]:
    """Approve with the admin's final lists and overrides, then execute. Cannot be undone."""
    return ok(await service.review_and_execute(store, current_user, request_id, payload))


@router.post("/{request_id}/approve", response_model=ApiResponse[PromotionExecutionResult])
async def quick_approve(
    request_id: str,
    store: DocumentStore = Depends(get_store),
    current_user: CurrentUser = Depends(require_admin),
) -> ApiResponse[PromotionExecutionResult]:
    return ok(await service.quick_approve(store, current_user, request_id))


@router.post("/{request_id}/reject", response_model=ApiResponse[PromotionRequestResponse])
async def reject_request(
    request_id: str,
    payload: PromotionReject,
    store: DocumentStore = Depends(get_store),
    current_user: CurrentUser = Depends(require_admin),
) -> ApiResponse[PromotionRequestResponse]:
    return ok(await service.reject_request(store, current_user, request_id, payload.reason))


@router.get(
    "/{request_id}/snapshots",
    response_model=ApiResponse[List[ExecutionSnapshotResponse]],
    dependencies=[Depends(require_admin)],
)
async def list_execution_snapshots(
    request_id: str,
    store: DocumentStore = Depends(get_store),
) -> ApiResponse[List[ExecutionSnapshotResponse]]:
    return ok(await service.list_execution_snapshots(store, request_id))
