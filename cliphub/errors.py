"""
Domain error taxonomy.

Every error a client can observe is one of these kinds. The API layer maps
them 1:1 to HTTP status codes; raw dependency errors (SQLAlchemy, botocore,
httpx) are converted to `Unavailable` before they leave the service layer.
"""
from typing import Any, Optional


class CliphubError(Exception):
    kind = "internal"
    status_code = 500

    def __init__(self, message: str = "", details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "details": self.details}


class NotFound(CliphubError):
    kind = "not_found"
    status_code = 404


class Forbidden(CliphubError):
    """Ownership violation."""

    kind = "forbidden"
    status_code = 403


class ValidationError(CliphubError):
    kind = "validation_error"
    status_code = 422


class Conflict(CliphubError):
    """Uniqueness violation (duplicate handle, duplicate collection title)."""

    kind = "conflict"
    status_code = 409


class QuotaExceeded(CliphubError):
    kind = "quota_exceeded"
    status_code = 413


class UnsupportedType(CliphubError):
    kind = "unsupported_type"
    status_code = 415


class InvalidCursor(CliphubError):
    kind = "invalid_cursor"
    status_code = 400


class UploadIncomplete(CliphubError):
    kind = "upload_incomplete"
    status_code = 409


class PartialFailure(CliphubError):
    """
    A multi-step mutation was only partly applied. The persisted state is
    safe (the edge / child record is authoritative) and reconciliation will
    bring the derived counters back in line.
    """

    kind = "partial_failure"
    status_code = 500


class Unavailable(CliphubError):
    """A dependency timed out or failed; nothing was applied, safe to retry."""

    kind = "unavailable"
    status_code = 503


class Unauthenticated(CliphubError):
    kind = "unauthenticated"
    status_code = 401
