"""Error codes and exceptions raised by the import services."""
from typing import Any, Dict, Optional


INVALID_FILE_TYPE = "invalid_file_type"
FILE_TOO_LARGE = "file_too_large"
INVALID_SCOPE = "invalid_scope"
UNSUPPORTED_SOURCE = "unsupported_source"
INVALID_PAYLOAD = "invalid_payload"
JOB_NOT_FOUND = "job_not_found"
NOT_AUTHORIZED = "not_authorized"
CLIENT_NOT_FOUND = "client_not_found"
CLIENT_MISMATCH = "client_mismatch"
KILL_SWITCH_ENABLED = "kill_switch_enabled"
PROCESSING_FAILED = "processing_failed"
NO_EXERCISES_DETECTED = "no_exercises_detected"
PDF_LAYOUT_UNRESOLVED = "pdf_layout_unresolved"
OPTIMISTIC_LOCK_CONFLICT = "optimistic_lock_conflict"
BLOCKING_ISSUES = "blocking_issues"
INVALID_COMMIT_POLICY = "invalid_commit_policy"
INTERNAL_ERROR = "internal_error"


class ImportServiceError(Exception):
    """Raised by the job, commit and rollback services.

    The API layer turns it into an HTTPException carrying ``status_code`` and
    a ``{"code", "message", "meta"}`` detail.
    """

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        meta: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.meta = meta

    def to_detail(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "meta": self.meta}


class RepositoryError(RuntimeError):
    """Raised when the backing store rejects or fails an operation."""


class OptimisticLockConflict(RepositoryError):
    """The live routine version no longer matches the expected version."""

    def __init__(self, expected_version: Optional[int], current_version: Optional[int]):
        super().__init__(
            f"optimistic_lock_conflict expected_version={expected_version} "
            f"current_version={current_version}"
        )
        self.expected_version = expected_version
        self.current_version = current_version


class IdempotencyKeyReused(RepositoryError):
    """A commit idempotency key was replayed with a different payload."""


class ParserError(ValueError):
    """A source payload could not be decoded into lines or rows."""
