"""
Custom exception classes
"""
from typing import Optional

from fastapi import HTTPException


# ============================================================================
# HTTP-facing errors
# ============================================================================

class CaseNotFoundError(HTTPException):
    """Raised when case doesn't exist"""
    def __init__(self, case_id: str):
        super().__init__(
            status_code=404,
            detail=f"Case {case_id} not found"
        )


class CaseFileNotFoundError(HTTPException):
    """Raised when an uploaded file or CSV artifact doesn't exist"""
    def __init__(self, file_id: str):
        super().__init__(
            status_code=404,
            detail=f"File {file_id} not found"
        )


class JobNotFoundError(HTTPException):
    def __init__(self, job_id: str):
        super().__init__(
            status_code=404,
            detail=f"Job {job_id} not found"
        )


class UnauthorizedError(HTTPException):
    """Raised when user doesn't own resource"""
    def __init__(self):
        super().__init__(
            status_code=403,
            detail="You don't have permission to access this resource"
        )


class AdminRequiredError(HTTPException):
    def __init__(self):
        super().__init__(
            status_code=403,
            detail="Admin access required"
        )


class InvalidWebhookTokenError(HTTPException):
    def __init__(self):
        super().__init__(
            status_code=401,
            detail="Invalid webhook token"
        )


class InvalidUploadError(HTTPException):
    """Raised when an upload is rejected before anything is stored"""
    def __init__(self, reason: str):
        super().__init__(
            status_code=400,
            detail=reason
        )


class IdempotencyKeyReusedError(HTTPException):
    def __init__(self, key: str):
        super().__init__(
            status_code=422,
            detail=f"Idempotency-Key {key} was already used for a different request"
        )


# ============================================================================
# Domain errors (mapped to HTTP responses in caseflow.main)
# ============================================================================

class CaseflowError(Exception):
    """Base class for orchestration errors."""


class StorageError(CaseflowError):
    """Object-store call failed. The underlying message is kept verbatim."""
    def __init__(self, operation: str, path: str, message: str):
        self.operation = operation
        self.path = path
        self.message = message
        super().__init__(f"{operation} {path}: {message}")


class ArchiveBuildError(CaseflowError):
    """Archive could not be assembled; no partial archive is produced."""


class DispatchError(CaseflowError):
    """Analysis backend rejected or did not accept a job."""
    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        self.status_code = status_code
        self.body = body
        super().__init__(message)


class ExtractionError(CaseflowError):
    """Result archive could not be turned into a review set."""


class TransitionRejected(CaseflowError):
    """Trigger is not allowed from the case's current state."""
    def __init__(self, status: str, trigger: str, reason: str = ""):
        self.status = status
        self.trigger = trigger
        self.reason = reason
        message = f"Transition {trigger} not allowed from {status}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class CaseBusyError(TransitionRejected):
    """A job is already in flight for the case."""
    def __init__(self, case_id: str, trigger: str):
        self.case_id = case_id
        super().__init__("Processing", trigger, f"case {case_id} already has an active job")
