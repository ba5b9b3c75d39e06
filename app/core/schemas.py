from typing import Generic, Optional, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """Envelope returned by every workflow endpoint: {success, data} or {success, error}."""

    success: bool = True
    data: Optional[T] = None
    error: Optional[str] = None


def ok(data=None) -> ApiResponse:
    return ApiResponse(success=True, data=data)
