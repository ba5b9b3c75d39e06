from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.api.v1.classes.schemas import ClassRef


class PupilCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    class_id: str
    gender: Optional[str] = None
    admission_number: Optional[str] = None
    parent_email: Optional[str] = None


class PromotionHistoryEntry(BaseModel):
    model_config = ConfigDict(extra="allow")

    session: Optional[str] = None
    fromClass: Optional[str] = None
    toClass: Optional[str] = None
    promoted: bool
    manualOverride: bool = False
    reason: Optional[str] = None
    date: Optional[str] = None


class PupilResponse(BaseModel):
    id: str
    name: str
    class_ref: Optional[ClassRef] = None
    subjects: List[str] = Field(default_factory=list)
    gender: Optional[str] = None
    admission_number: Optional[str] = None
    promotion_history: List[PromotionHistoryEntry] = Field(default_factory=list)


class AlumnusResponse(BaseModel):
    id: str
    name: str
    final_class: Optional[str] = None
    graduation_session: Optional[str] = None
    graduation_date: Optional[str] = None
    manual_override: bool = False
    record: Dict[str, Any] = Field(default_factory=dict)
