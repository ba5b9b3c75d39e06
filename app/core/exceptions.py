from typing import Optional

from fastapi import status


class ServiceError(Exception):
    """Base exception for service layer errors."""

    def __init__(self, message: str, status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class ValidationError(ServiceError):
    """Bad input, rejected before any write."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status.HTTP_400_BAD_REQUEST)


class NotFoundError(ServiceError):
    """Referenced class, pupil, submission or request does not exist."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status.HTTP_404_NOT_FOUND)


class InvalidStateError(ServiceError):
    """Operation not allowed from the current workflow status."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status.HTTP_409_CONFLICT)


class ContentionError(ServiceError):
    """A transaction's read set changed concurrently. Safe to retry."""

    def __init__(self, message: str = "Concurrent update detected, please retry") -> None:
        super().__init__(message, status.HTTP_409_CONFLICT)


class ExecutionError(ServiceError):
    """A chunked write failed before any chunk was committed."""

    def __init__(
        self,
        message: str,
        snapshot_id: Optional[str] = None,
        failed_chunk: Optional[int] = None,
        operations_completed: int = 0,
    ) -> None:
        super().__init__(message, status.HTTP_500_INTERNAL_SERVER_ERROR)
        self.snapshot_id = snapshot_id
        self.failed_chunk = failed_chunk
        self.operations_completed = operations_completed


class PartialExecutionError(ExecutionError):
    """
    A chunk failed after at least one earlier chunk was committed.
    Committed chunks are not rolled back; reconcile manually from the snapshot.
    """
