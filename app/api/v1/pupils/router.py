from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from app.auth.rbac import require_admin, require_staff
from app.core.exceptions import NotFoundError
from app.core.schemas import ApiResponse, ok
from app.store import DocumentStore, get_store

from .schemas import AlumnusResponse, PupilCreate, PupilResponse
from . import service

router = APIRouter(prefix="/api/v1/pupils", tags=["pupils"])


@router.post(
    "",
    response_model=ApiResponse[PupilResponse],
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin)],
)
async def create_pupil(
    payload: PupilCreate,
    store: DocumentStore = Depends(get_store),
) -> ApiResponse[PupilResponse]:
    return ok(await service.create_pupil(store, payload))


@router.get(
    "",
    response_model=ApiResponse[List[PupilResponse]],
    dependencies=[Depends(require_staff)],
)
async def list_pupils(
    class_id: str = Query(..., description="Class to list pupils for"),
    store: DocumentStore = Depends(get_store),
) -> ApiResponse[List[PupilResponse]]:
    return ok(await service.list_pupils_in_class(store, class_id))


@router.get(
    "/alumni",
    response_model=ApiResponse[List[AlumnusResponse]],
    dependencies=[Depends(require_staff)],
)
async def list_alumni(
    session: Optional[str] = Query(None, description="Filter by graduation session"),
    store: DocumentStore = Depends(get_store),
) -> ApiResponse[List[AlumnusResponse]]:
    return ok(await service.list_alumni(store, session))


@router.get(
    "/alumni/{pupil_id}",
    response_model=ApiResponse[AlumnusResponse],
    dependencies=[Depends(require_staff)],
)
async def get_alumnus(pupil_id: str, store: DocumentStore = Depends(get_store)) -> ApiResponse[AlumnusResponse]:
    obj = await service.get_alumnus(store, pupil_id)
    if not obj:
        raise NotFoundError("Alumni record not found")
    return ok(obj)


@router.get(
    "/{pupil_id}",
    response_model=ApiResponse[PupilResponse],
    dependencies=[Depends(require_staff)],
)
async def get_pupil(pupil_id: str, store: DocumentStore = Depends(get_store)) -> ApiResponse[PupilResponse]:
    return ok(await service.get_pupil_or_404(store, pupil_id))
