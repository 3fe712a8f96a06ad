"""
Error taxonomy for the sync core.
Validation errors are raised to callers; sync errors are converted to result objects by the engine.
"""
from typing import Any, Dict, Optional


class FieldSyncError(Exception):
    """Base class for every error raised by fieldsync."""


class ServiceError(FieldSyncError):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    CANNOT_EDIT = "CANNOT_EDIT"
    CANNOT_DELETE = "CANNOT_DELETE"
    NOT_FOUND = "NOT_FOUND"

    def __init__(self, code: str, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, **self.context}


class WorkOrderServiceError(ServiceError):
    pass


class ChecklistServiceError(ServiceError):
    pass


class StoreError(FieldSyncError):
    pass


class UnknownTableError(StoreError):
    def __init__(self, table: str):
        super().__init__(f"Unknown table: {table}")
        self.table = table


class SchemaIntegrityError(StoreError):
    def __init__(self, detail: str):
        super().__init__(f"Schema integrity check failed: {detail}")
        self.detail = detail


class SyncError(FieldSyncError):
    pass


class NotConfiguredError(SyncError):
    pass


class TransientSyncError(SyncError):
    """Network failure, timeout or server-side 5xx. The mutation stays pending."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RejectedMutationError(SyncError):
    """The server refused the request (4xx). Retrying the same payload will not help."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
