from typing import List, Optional

from pydantic import BaseModel, Field

from app.api.v1.classes.schemas import ClassRef


class PromotionOverride(BaseModel):
    """Admin decision for one pupil: a class id, or "alumni"."""

    pupil_id: str
    destination: str


class PromotionRequestCreate(BaseModel):
    from_class_id: str
    to_class_id: Optional[str] = Field(None, description="Omit for the terminal class")
    session: str = Field(..., min_length=1)
    promoted_pupil_ids: List[str] = Field(default_factory=list)
    held_back_pupil_ids: List[str] = Field(default_factory=list)


class PromotionReview(BaseModel):
    promoted_pupil_ids: List[str] = Field(default_factory=list)
    held_back_pupil_ids: List[str] = Field(default_factory=list)
    overrides: List[PromotionOverride] = Field(default_factory=list)


class PromotionReject(BaseModel):
    reason: Optional[str] = None


class PromotionRequestResponse(BaseModel):
    id: str
    from_class: ClassRef
    to_class: Optional[ClassRef] = None
    from_session: str
    is_terminal_class: bool
    promoted_pupil_ids: List[str] = Field(default_factory=list)
    held_back_pupil_ids: List[str] = Field(default_factory=list)
    overrides: List[PromotionOverride] = Field(default_factory=list)
    status: str
    initiated_by: Optional[str] = None
    created_at: Optional[str] = None
    approved_by: Optional[str] = None
    executed_at: Optional[str] = None
    rejected_by: Optional[str] = None
    rejected_at: Optional[str] = None
    rejection_reason: Optional[str] = None


class ExecutionSnapshotResponse(BaseModel):
    id: str
    promotion_id: str
    status: str
    last_completed_chunk: int = -1
    total_operations: int = 0
    total_operations_completed: int = 0
    failed_chunk: Optional[int] = None
    error: Optional[str] = None
    reconciled: bool = False
    created_at: Optional[str] = None
    completed_at: Optional[str] = None


class SnapshotReconcile(BaseModel):
    note: str = Field(..., min_length=1)


class PromotionExecutionResult(BaseModel):
    request: PromotionRequestResponse
    snapshot_id: str
    promoted: int
    held_back: int
    overrides_applied: int
    alumni_created: int
    total_operations: int
    chunks_committed: int


class BulkApproveResult(BaseModel):
    executed: List[PromotionExecutionResult]


class BulkRejectResult(BaseModel):
    rejected: int


class PromotionPeriod(BaseModel):
    active: bool
    updated_at: Optional[str] = None
    updated_by: Optional[str] = None


class PromotionPeriodUpdate(BaseModel):
    active: bool
