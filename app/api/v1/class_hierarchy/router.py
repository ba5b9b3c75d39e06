from fastapi import APIRouter, Depends, Query

from app.auth.rbac import require_admin, require_staff
from app.auth.schemas import CurrentUser
from app.core.schemas import ApiResponse, ok
from app.store import DocumentStore, get_store

from .schemas import (
    ClassHierarchyResponse,
    ClassHierarchySave,
    HierarchyInitResult,
    NextClassResponse,
    OrderedClassesResponse,
)
from . import service

router = APIRouter(prefix="/api/v1/class-hierarchy", tags=["class-hierarchy"])


@router.get(
    "",
    response_model=ApiResponse[ClassHierarchyResponse],
    dependencies=[Depends(require_staff)],
)
async def get_hierarchy(store: DocumentStore = Depends(get_store)) -> ApiResponse[ClassHierarchyResponse]:
    return ok(await service.get_hierarchy(store))


@router.post("/initialize", response_model=ApiResponse[HierarchyInitResult])
async def initialize(
    store: DocumentStore = Depends(get_store),
    current_user: CurrentUser = Depends(require_admin),
) -> ApiResponse[HierarchyInitResult]:
    return ok(await service.initialize(store, initiated_by=current_user.id))


@router.put("", response_model=ApiResponse[ClassHierarchyResponse])
async def save_hierarchy(
    payload: ClassHierarchySave,
    store: DocumentStore = Depends(get_store),
    current_user: CurrentUser = Depends(require_admin),
) -> ApiResponse[ClassHierarchyResponse]:
    return ok(await service.save(store, payload.ordered_class_ids, updated_by=current_user.id))


@router.get(
    "/ordered",
    response_model=ApiResponse[OrderedClassesResponse],
    dependencies=[Depends(require_staff)],
)
async def list_classes_in_order(store: DocumentStore = Depends(get_store)) -> ApiResponse[OrderedClassesResponse]:
    return ok(OrderedClassesResponse(classes=await service.list_classes_in_order(store)))


@router.get(
    "/next",
    response_model=ApiResponse[NextClassResponse],
    dependencies=[Depends(require_staff)],
)
async def get_next(
    class_name: str = Query(..., description="Current class name"),
    store: DocumentStore = Depends(get_store),
) -> ApiResponse[NextClassResponse]:
    return ok(
        NextClassResponse(
            class_name=class_name,
            next_class=await service.get_next(store, class_name),
            is_terminal=await service.is_terminal(store, class_name),
            grade_level=await service.get_grade_level(store, class_name),
        )
    )
