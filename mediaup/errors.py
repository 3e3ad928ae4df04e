"""Error taxonomy for the upload pipeline.

Every error carries ``retryable``; the retry coordinator only looks at that
flag and at the concrete class, never at message text.
"""
from typing import Optional


class UploadError(Exception):
    """Base exception for upload operations."""

    retryable = False
    attempts = 0

    @property
    def kind(self) -> str:
        return type(self).__name__


class ValidationError(UploadError):
    """Asset type or size rejected. Never retried."""

    def __init__(self, message: str, limit: Optional[int] = None):
        super().__init__(message)
        self.limit = limit


class Unauthenticated(UploadError):
    """Bearer session missing or invalid. Caller must re-authenticate."""


class AuthorizationDenied(Unauthenticated):
    """Authorization endpoint answered 401/403."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AuthorizationTransient(UploadError):
    """5xx or network failure while requesting an upload session."""

    retryable = True

    def __init__(self, message: str, unreachable: bool = False, status_code: Optional[int] = None):
        super().__init__(message)
        self.unreachable = unreachable
        self.status_code = status_code


class AuthorizationRejected(UploadError):
    """Authorization endpoint refused the request for a non-auth reason."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransferTransient(UploadError):
    """Network error, timeout or stale signature during the PUT."""

    retryable = True

    def __init__(self, message: str, signature_mismatch: bool = False, status_code: Optional[int] = None):
        super().__init__(message)
        self.signature_mismatch = signature_mismatch
        self.status_code = status_code


class TransferForbidden(UploadError):
    """Storage denied the write. Retried once, then terminal."""

    retryable = True

    def __init__(self, message: str, status_code: Optional[int] = 403):
        super().__init__(message)
        self.status_code = status_code


class TransferRejected(UploadError):
    """Storage refused the payload with a non-retryable client error."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PrimaryPathUnavailable(UploadError):
    """Direct-to-storage path is unreachable. Triggers the fallback once."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class PreprocessingError(UploadError):
    """Local decode, probe or thumbnail step failed."""


class Exhausted(UploadError):
    """Retry budget consumed. Carries the last underlying cause."""

    def __init__(self, attempts: int, cause: Optional[BaseException] = None, path: str = "primary"):
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Upload failed after {attempts} attempt(s) on {path} path{detail}")
        self.attempts = attempts
        self.cause = cause
        self.path = path

    @property
    def cause_kind(self) -> Optional[str]:
        if isinstance(self.cause, UploadError):
            return self.cause.kind
        return type(self.cause).__name__ if self.cause is not None else None
