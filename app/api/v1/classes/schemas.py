from typing import List, Optional

from pydantic import BaseModel, Field


class ClassCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    subjects: List[str] = Field(default_factory=list)


class ClassSubjectsUpdate(BaseModel):
    subjects: List[str]


class ClassRef(BaseModel):
    """Embedded {id, name} pair stored on pupils and promotion requests."""

    id: str
    name: str


class ClassResponse(BaseModel):
    id: str
    name: str
    subjects: List[str] = Field(default_factory=list)
    created_at: Optional[str] = None


class SubjectsAssignedResponse(BaseModel):
    class_id: str
    subjects: List[str]
    pupils_updated: int
