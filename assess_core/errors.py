"""Error taxonomy shared by the store and the HTTP layer.

Every error carries the HTTP status the API answers with, so the FastAPI
handler can translate without a lookup table.
"""
from __future__ import annotations


class AssessmentError(Exception):
    status_code: int = 400

    def __init__(self, detail: str = "") -> None:
        super().__init__(detail or self.__class__.__name__)
        self.detail = detail or self.__class__.__name__


class Unauthorized(AssessmentError):
    status_code = 401


class Forbidden(AssessmentError):
    status_code = 403


class NotFound(AssessmentError):
    status_code = 404


class SubjectNotFound(NotFound):
    pass


class TaskNotFound(NotFound):
    pass


class ResponseNotFound(NotFound):
    pass


class InstrumentNotFound(NotFound):
    pass


class ValidationError(AssessmentError):
    status_code = 422


class AlreadyCompleted(AssessmentError):
    status_code = 409


class StorageError(AssessmentError):
    status_code = 503


class ConflictDetected(AssessmentError):
    """Duplicate records found by reconciliation; logged and resolved, never raised."""

    status_code = 409

    def __init__(self, kind: str, key: tuple, kept: str, dropped: list[str]) -> None:
        super().__init__(f"{kind} duplicates for {key}: kept {kept}, dropping {', '.join(dropped)}")
        self.kind = kind
        self.key = key
        self.kept = kept
        self.dropped = list(dropped)


__all__ = [
    "AssessmentError",
    "Unauthorized",
    "Forbidden",
    "NotFound",
    "SubjectNotFound",
    "TaskNotFound",
    "ResponseNotFound",
    "InstrumentNotFound",
    "ValidationError",
    "AlreadyCompleted",
    "StorageError",
    "ConflictDetected",
]
