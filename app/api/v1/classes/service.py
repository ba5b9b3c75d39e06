import logging
import uuid
from typing import Dict, List, Optional

from fastapi import status

from app.core.enums import Collection
from app.core.exceptions import NotFoundError, ServiceError, ValidationError
from app.store import SERVER_TIMESTAMP, DocRef, DocumentStore, Filter, StoredDocument, WriteOp

from .schemas import ClassCreate, ClassResponse, SubjectsAssignedResponse

logger = logging.getLogger(__name__)


def _class_to_response(doc: StoredDocument) -> ClassResponse:
    return ClassResponse(
        id=doc.id,
        name=doc.data.get("name") or "Unnamed Class",
        subjects=list(doc.data.get("subjects") or []),
        created_at=doc.data.get("createdAt"),
    )


def _clean_subjects(subjects: List[str]) -> List[str]:
    cleaned: List[str] = []
    for s in subjects:
        s = (s or "").strip()
        if s and s not in cleaned:
            cleaned.append(s)
    return cleaned


async def create_class(store: DocumentStore, payload: ClassCreate) -> ClassResponse:
    name = payload.name.strip()
    if not name:
        raise ValidationError("Class name is required")
    existing = await store.query(Collection.CLASSES.value, [Filter.eq("name", name)], limit=1)
    if existing:
        raise ServiceError("Class name already exists", status.HTTP_409_CONFLICT)
    class_id = uuid.uuid4().hex
    await store.set(
        Collection.CLASSES.value,
        class_id,
        {"name": name, "subjects": _clean_subjects(payload.subjects), "createdAt": SERVER_TIMESTAMP},
    )
    created = await store.get(Collection.CLASSES.value, class_id)
    return _class_to_response(created)


async def list_classes(store: DocumentStore) -> List[ClassResponse]:
    docs = await store.query(Collection.CLASSES.value, order_by="name")
    return [_class_to_response(d) for d in docs]


async def get_class(store: DocumentStore, class_id: str) -> Optional[ClassResponse]:
    doc = await store.get(Collection.CLASSES.value, class_id)
    return _class_to_response(doc) if doc else None


async def get_class_or_404(store: DocumentStore, class_id: str) -> ClassResponse:
    obj = await get_class(store, class_id)
    if not obj:
        raise NotFoundError(f"Class {class_id} not found")
    return obj


async def get_classes_by_id(store: DocumentStore) -> Dict[str, ClassResponse]:
    return {c.id: c for c in await list_classes(store)}


async def delete_class(store: DocumentStore, class_id: str, block_if_used: bool = True) -> bool:
    """Delete a class. The stored hierarchy keeps its id; display lists skip it."""
    doc = await store.get(Collection.CLASSES.value, class_id)
    if not doc:
        return False
    if block_if_used:
        used = await store.query(Collection.PUPILS.value, [Filter.eq("class.id", class_id)], limit=1)
        if used:
            raise ServiceError("Cannot delete class: it has pupils", status.HTTP_400_BAD_REQUEST)
    await store.delete(Collection.CLASSES.value, class_id)
    logger.info("Deleted class %s (%s)", class_id, doc.data.get("name"))
    return True


async def assign_subjects(store: DocumentStore, class_id: str, subjects: List[str]) -> SubjectsAssignedResponse:
    """
    Replace a class's subject list and copy it onto every enrolled pupil in one
    optimistic transaction. Aborts (ContentionError) if the class or any pupil
    changes between read and commit.
    """
    subjects = _clean_subjects(subjects)
    enrolled = await store.query(Collection.PUPILS.value, [Filter.eq("class.id", class_id)])
    class_ref = DocRef(Collection.CLASSES.value, class_id)
    pupil_refs = [DocRef(Collection.PUPILS.value, p.id) for p in enrolled]
    updated = {"count": 0}

    def build_writes(results: Dict[DocRef, Optional[StoredDocument]]) -> List[WriteOp]:
        if results.get(class_ref) is None:
            raise NotFoundError(f"Class {class_id} not found")
        ops = [WriteOp.update(Collection.CLASSES.value, class_id, {"subjects": subjects, "updatedAt": SERVER_TIMESTAMP})]
        count = 0
        for ref in pupil_refs:
            pupil = results.get(ref)
            # Pupils moved or removed since the enrollment query are left alone.
            if pupil is None or (pupil.data.get("class") or {}).get("id") != class_id:
                continue
            ops.append(WriteOp.update(ref.collection, ref.doc_id, {"subjects": subjects, "updatedAt": SERVER_TIMESTAMP}))
            count += 1
        updated["count"] = count
        return ops

    await store.transaction([class_ref] + pupil_refs, build_writes)
    logger.info("Assigned %s subjects to class %s and %s pupils", len(subjects), class_id, updated["count"])
    return SubjectsAssignedResponse(class_id=class_id, subjects=subjects, pupils_updated=updated["count"])
