"""
Class progression order.

The stored order is a list of class ids. `get_next` and `is_terminal` walk
that raw list as stored; ids of deleted classes are never renumbered away
there, only skipped when building display lists.
"""

import logging
from typing import Dict, List, Optional, Tuple

from app.api.v1.classes import service as class_service
from app.api.v1.classes.schemas import ClassRef
from app.core.enums import Collection
from app.core.exceptions import ValidationError
from app.store import SERVER_TIMESTAMP, DocRef, DocumentStore, StoredDocument, WriteOp

from .schemas import ClassHierarchyResponse, HierarchyInitResult

logger = logging.getLogger(__name__)

HIERARCHY_DOC_ID = "classHierarchy"


def _hierarchy_ref() -> DocRef:
    return DocRef(Collection.SETTINGS.value, HIERARCHY_DOC_ID)


async def get_hierarchy(store: DocumentStore) -> ClassHierarchyResponse:
    doc = await store.get(Collection.SETTINGS.value, HIERARCHY_DOC_ID)
    if not doc:
        return ClassHierarchyResponse()
    return ClassHierarchyResponse(
        ordered_class_ids=list(doc.data.get("orderedClassIds") or []),
        last_updated=doc.data.get("lastUpdated") or doc.data.get("createdAt"),
        updated_by=doc.data.get("updatedBy") or doc.data.get("createdBy"),
    )


async def initialize(store: DocumentStore, initiated_by: str = "system") -> HierarchyInitResult:
    """Create the hierarchy from all classes in alphabetical order if none exists. Idempotent."""
    classes = await class_service.list_classes(store)
    class_ids = [c.id for c in classes]
    ref = _hierarchy_ref()
    outcome: Dict[str, object] = {}

    def build_writes(results: Dict[DocRef, Optional[StoredDocument]]) -> List[WriteOp]:
        existing = results.get(ref)
        if existing is not None:
            ids = existing.data.get("orderedClassIds") or []
            outcome.update(created=False, is_empty=not ids, class_count=len(ids))
            return []
        outcome.update(created=True, is_empty=not class_ids, class_count=len(class_ids))
        return [
            WriteOp.set(
                ref.collection,
                ref.doc_id,
                {
                    "orderedClassIds": class_ids,
                    "createdAt": SERVER_TIMESTAMP,
                    "createdBy": initiated_by,
                    "version": 1,
                },
            )
        ]

    await store.transaction([ref], build_writes)
    result = HierarchyInitResult(**outcome)
    if result.created:
        logger.info("Class hierarchy initialized with %s classes", result.class_count)
    return result


async def save(store: DocumentStore, ordered_ids: List[str], updated_by: Optional[str] = None) -> ClassHierarchyResponse:
    """Replace the stored order. Every id must resolve to an existing class."""
    if not ordered_ids:
        raise ValidationError("Class hierarchy cannot be empty")
    if len(set(ordered_ids)) != len(ordered_ids):
        raise ValidationError("Class hierarchy contains duplicate classes")
    known = await class_service.get_classes_by_id(store)
    unknown = [cid for cid in ordered_ids if cid not in known]
    if unknown:
        raise ValidationError(f"Unknown class ids in hierarchy: {', '.join(unknown)}")

    await store.set(
        Collection.SETTINGS.value,
        HIERARCHY_DOC_ID,
        {"orderedClassIds": list(ordered_ids), "lastUpdated": SERVER_TIMESTAMP, "updatedBy": updated_by},
    )
    logger.info("Class progression order saved: %s", ordered_ids)
    return await get_hierarchy(store)


async def _raw_sequence(store: DocumentStore) -> List[Tuple[str, Optional[str]]]:
    """Stored ids paired with the current class name, None for deleted classes."""
    hierarchy = await get_hierarchy(store)
    if not hierarchy.ordered_class_ids:
        return []
    known = await class_service.get_classes_by_id(store)
    return [(cid, known[cid].name if cid in known else None) for cid in hierarchy.ordered_class_ids]


async def list_classes_in_order(store: DocumentStore) -> List[ClassRef]:
    """Display list: stored order minus deleted classes, then unordered classes alphabetically."""
    classes = await class_service.list_classes(store)
    hierarchy = await get_hierarchy(store)
    by_id = {c.id: c for c in classes}
    ordered = [ClassRef(id=cid, name=by_id[cid].name) for cid in hierarchy.ordered_class_ids if cid in by_id]
    placed = set(hierarchy.ordered_class_ids)
    remaining = sorted((c for c in classes if c.id not in placed), key=lambda c: c.name.lower())
    ordered.extend(ClassRef(id=c.id, name=c.name) for c in remaining)
    return ordered


async def get_next(store: DocumentStore, class_name: str) -> Optional[str]:
    """Name of the class after `class_name`; None if it is last or not in the hierarchy."""
    sequence = await _raw_sequence(store)
    names = [name for _, name in sequence]
    if class_name not in names:
        logger.warning('Class "%s" not found in hierarchy', class_name)
        return None
    index = names.index(class_name)
    if index == len(sequence) - 1:
        return None
    next_id, next_name = sequence[index + 1]
    if next_name is None:
        logger.warning('Class after "%s" (%s) no longer exists', class_name, next_id)
    return next_name


async def is_terminal(store: DocumentStore, class_name: str) -> bool:
    sequence = await _raw_sequence(store)
    if not sequence:
        return False
    return sequence[-1][1] == class_name


async def get_grade_level(store: DocumentStore, class_name: str) -> int:
    """1-based position in the display order; 0 when the class is unknown."""
    for index, cls in enumerate(await list_classes_in_order(store)):
        if cls.name == class_name:
            return index + 1
    return 0
