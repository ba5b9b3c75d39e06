from typing import List, Optional

from pydantic import BaseModel, Field


class ResultScope(BaseModel):
    """One approval unit: class, session, term and subject."""

    class_id: str = Field(..., min_length=1)
    session: str = Field(..., min_length=1)
    term: str = Field(..., min_length=1)
    subject: str = Field(..., min_length=1)


class DraftEntry(BaseModel):
    pupil_id: str
    ca_score: int = 0
    exam_score: int = 0
    absent: bool = False


class DraftSave(ResultScope, DraftEntry):
    pass


class DraftsBulkSave(ResultScope):
    entries: List[DraftEntry] = Field(..., min_length=1)


class ResultDraftResponse(BaseModel):
    id: str
    pupil_id: str
    class_id: str
    session: str
    term: str
    subject: str
    ca_score: int
    exam_score: int
    total: int
    status: str
    updated_at: Optional[str] = None


class ResultSubmissionResponse(BaseModel):
    id: str
    class_id: str
    class_name: Optional[str] = None
    session: str
    term: str
    subject: str
    status: str
    pupil_count: int = 0
    teacher_uid: Optional[str] = None
    teacher_name: Optional[str] = None
    submitted_at: Optional[str] = None
    approved_at: Optional[str] = None
    approved_by: Optional[str] = None
    rejected_at: Optional[str] = None
    rejected_by: Optional[str] = None
    rejection_reason: Optional[str] = None


class SubmissionReject(BaseModel):
    reason: Optional[str] = None


class ResultUnlock(ResultScope):
    reason: str = Field(..., min_length=1)


class LockStatus(BaseModel):
    locked: bool
    reason: Optional[str] = None
    locked_at: Optional[str] = None
    locked_by: Optional[str] = None


class ResultRecordResponse(BaseModel):
    id: str
    pupil_id: str
    class_id: str
    class_name: Optional[str] = None
    session: str
    term: str
    subject: str
    ca_score: int
    exam_score: int
    total: int
    grade: str
    absent: bool = False
    submission_id: str
    approved_at: Optional[str] = None


class ApprovalResult(BaseModel):
    submission: ResultSubmissionResponse
    records_published: int
    chunks_committed: int
