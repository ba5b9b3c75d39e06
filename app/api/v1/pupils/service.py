import logging
import uuid
from typing import Dict, Iterable, List, Optional

from app.api.v1.classes import service as class_service
from app.core.enums import Collection
from app.core.exceptions import NotFoundError
from app.store import DOCUMENT_ID, SERVER_TIMESTAMP, DocumentStore, Filter, StoredDocument

from .schemas import AlumnusResponse, PromotionHistoryEntry, PupilCreate, PupilResponse

logger = logging.getLogger(__name__)


def _pupil_to_response(doc: StoredDocument) -> PupilResponse:
    data = doc.data
    class_data = data.get("class") or None
    return PupilResponse(
        id=doc.id,
        name=data.get("name") or "",
        class_ref=class_data,
        subjects=list(data.get("subjects") or []),
        gender=data.get("gender"),
        admission_number=data.get("admissionNumber"),
        promotion_history=[PromotionHistoryEntry(**h) for h in data.get("promotionHistory") or []],
    )


def _alumnus_to_response(doc: StoredDocument) -> AlumnusResponse:
    data = doc.data
    return AlumnusResponse(
        id=doc.id,
        name=data.get("name") or "",
        final_class=data.get("finalClass"),
        graduation_session=data.get("graduationSession"),
        graduation_date=data.get("graduationDate"),
        manual_override=bool(data.get("manualOverride")),
        record=data,
    )


async def create_pupil(store: DocumentStore, payload: PupilCreate) -> PupilResponse:
    """Enrol a pupil in a class; the class subject list is copied onto the pupil."""
    school_class = await class_service.get_class_or_404(store, payload.class_id)
    pupil_id = uuid.uuid4().hex
    await store.set(
        Collection.PUPILS.value,
        pupil_id,
        {
            "name": payload.name.strip(),
            "class": {"id": school_class.id, "name": school_class.name},
            "subjects": list(school_class.subjects),
            "gender": payload.gender,
            "admissionNumber": payload.admission_number,
            "parentEmail": payload.parent_email,
            "promotionHistory": [],
            "createdAt": SERVER_TIMESTAMP,
        },
    )
    logger.info("Enrolled pupil %s in class %s", pupil_id, school_class.name)
    return _pupil_to_response(await store.get(Collection.PUPILS.value, pupil_id))


async def get_pupil(store: DocumentStore, pupil_id: str) -> Optional[PupilResponse]:
    doc = await store.get(Collection.PUPILS.value, pupil_id)
    return _pupil_to_response(doc) if doc else None


async def get_pupil_or_404(store: DocumentStore, pupil_id: str) -> PupilResponse:
    obj = await get_pupil(store, pupil_id)
    if not obj:
        raise NotFoundError(f"Pupil {pupil_id} not found")
    return obj


async def list_pupils_in_class(store: DocumentStore, class_id: str) -> List[PupilResponse]:
    docs = await store.query(Collection.PUPILS.value, [Filter.eq("class.id", class_id)], order_by="name")
    return [_pupil_to_response(d) for d in docs]


async def fetch_pupils_by_ids(store: DocumentStore, pupil_ids: Iterable[str]) -> Dict[str, StoredDocument]:
    """Load pupil documents by id, chunking the 'in' filter to the store's value limit."""
    ids = list(dict.fromkeys(pupil_ids))
    found: Dict[str, StoredDocument] = {}
    step = store.in_filter_limit
    for i in range(0, len(ids), step):
        docs = await store.query(Collection.PUPILS.value, [Filter.is_in(DOCUMENT_ID, ids[i:i + step])])
        for d in docs:
            found[d.id] = d
    return found


async def get_alumnus(store: DocumentStore, pupil_id: str) -> Optional[AlumnusResponse]:
    doc = await store.get(Collection.ALUMNI.value, pupil_id)
    return _alumnus_to_response(doc) if doc else None


async def list_alumni(store: DocumentStore, graduation_session: Optional[str] = None) -> List[AlumnusResponse]:
    filters = [Filter.eq("graduationSession", graduation_session)] if graduation_session else []
    docs = await store.query(Collection.ALUMNI.value, filters, order_by="name")
    return [_alumnus_to_response(d) for d in docs]
