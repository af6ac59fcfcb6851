from __future__ import annotations


class MetfishError(Exception):
    """Base class for failures reported back to the caller as a structured error."""

    error_type = "error"
    http_status = 500

    def __init__(self, message: str, *, output: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.output = output


class ValidationError(MetfishError):
    error_type = "validation_error"
    http_status = 400


class NotFoundError(MetfishError):
    error_type = "not_found"
    http_status = 404


class StorageError(MetfishError):
    error_type = "storage_error"


class ArchiveError(MetfishError):
    error_type = "archive_error"


class ExecutionError(MetfishError):
    error_type = "execution_error"


class JobTimeoutError(MetfishError):
    error_type = "timeout"
