"""Error taxonomy for the capture upload pipeline."""

from enum import Enum


class ErrorKind(str, Enum):
    """Terminal error classification reported to callers."""

    VALIDATION = "validation"
    GRANT = "grant"
    TRANSFER = "transfer"
    MULTIPART_ABORTED = "multipart_aborted"
    CONFIRMATION = "confirmation"
    CANCELLED = "cancelled"


class UploadError(Exception):
    """Base exception for the upload pipeline.

    ``attempts`` is filled in by the retry controller with the number of
    attempts made before the error surfaced.
    """

    kind: ErrorKind = ErrorKind.TRANSFER

    def __init__(self, message: str, *, retryable: bool = False, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.retryable = retryable
        self.status_code = status_code
        self.attempts = 1


class UploadValidationError(UploadError):
    """Artifact rejected before any network call. Never retried."""

    kind = ErrorKind.VALIDATION

    def __init__(self, violations: list[str]):
        super().__init__("; ".join(violations) or "Validation failed")
        self.violations = list(violations)


class GrantError(UploadError):
    """Broker refused or failed to issue a grant."""

    kind = ErrorKind.GRANT


class TransferError(UploadError):
    """Network failure, timeout or non-2xx response while writing bytes."""

    kind = ErrorKind.TRANSFER


class MultipartAbortedError(UploadError):
    """A part exhausted its retries and the multipart session was discarded."""

    kind = ErrorKind.MULTIPART_ABORTED


class ConfirmationError(UploadError):
    """Bytes are stored but the broker did not record the write."""

    kind = ErrorKind.CONFIRMATION


class UploadCancelledError(UploadError):
    """The caller cancelled the session."""

    kind = ErrorKind.CANCELLED

    def __init__(self, message: str = "Upload cancelled"):
        super().__init__(message)


def is_retryable_status(status_code: int) -> bool:
    """Timeouts, throttling and server errors are worth another attempt."""
    return status_code in (408, 429) or status_code >= 500
