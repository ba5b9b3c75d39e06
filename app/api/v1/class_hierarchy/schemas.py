from typing import List, Optional

from pydantic import BaseModel, Field

from app.api.v1.classes.schemas import ClassRef


class ClassHierarchySave(BaseModel):
    """Promotion order produced by the ordering UI: first class first, terminal class last."""

    ordered_class_ids: List[str] = Field(..., min_length=1)


class ClassHierarchyResponse(BaseModel):
    ordered_class_ids: List[str] = Field(default_factory=list)
    last_updated: Optional[str] = None
    updated_by: Optional[str] = None


class HierarchyInitResult(BaseModel):
    created: bool
    is_empty: bool
    class_count: int


class OrderedClassesResponse(BaseModel):
    classes: List[ClassRef]


class NextClassResponse(BaseModel):
    class_name: str
    next_class: Optional[str] = None
    is_terminal: bool
    grade_level: int
