from typing import List

from fastapi import APIRouter, Depends, status

from app.auth.rbac import require_admin, require_staff
from app.core.exceptions import NotFoundError
from app.core.schemas import ApiResponse, ok
from app.store import DocumentStore, get_store

from .schemas import ClassCreate, ClassResponse, ClassSubjectsUpdate, SubjectsAssignedResponse
from . import service

router = APIRouter(prefix="/api/v1/classes", tags=["classes"])


@router.post(
    "",
    response_model=ApiResponse[ClassResponse],
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin)],
)
async def create_class(
    payload: ClassCreate,
    store: DocumentStore = Depends(get_store),
) -> ApiResponse[ClassResponse]:
    return ok(await service.create_class(store, payload))


@router.get(
    "",
    response_model=ApiResponse[List[ClassResponse]],
    dependencies=[Depends(require_staff)],
)
async def list_classes(store: DocumentStore = Depends(get_store)) -> ApiResponse[List[ClassResponse]]:
    return ok(await service.list_classes(store))


@router.get(
    "/{class_id}",
    response_model=ApiResponse[ClassResponse],
    dependencies=[Depends(require_staff)],
)
async def get_class(class_id: str, store: DocumentStore = Depends(get_store)) -> ApiResponse[ClassResponse]:
    return ok(await service.get_class_or_404(store, class_id))


@router.put(
    "/{class_id}/subjects",
    response_model=ApiResponse[SubjectsAssignedResponse],
    dependencies=[Depends(require_admin)],
)
async def assign_subjects(
    class_id: str,
    payload: ClassSubjectsUpdate,
    store: DocumentStore = Depends(get_store),
) -> ApiResponse[SubjectsAssignedResponse]:
    """Replace the class subject list and propagate it to enrolled pupils atomically."""
    return ok(await service.assign_subjects(store, class_id, payload.subjects))


@router.delete(
    "/{class_id}",
    response_model=ApiResponse[bool],
    dependencies=[Depends(require_admin)],
)
async def delete_class(class_id: str, store: DocumentStore = Depends(get_store)) -> ApiResponse[bool]:
    deleted = await service.delete_class(store, class_id)
    if not deleted:
        raise NotFoundError("Class not found")
    return ok(True)
