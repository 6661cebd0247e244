"""
Error taxonomy for the extraction pipeline.

Pipeline errors (subclasses of ExtractionError) are caught at the job
lifecycle boundary and turned into a terminal `failed` status plus an
`error` log entry. Caller errors (EmptyBatch, InvalidSchema, ...) are raised
before any side effect happens.
"""
from typing import Optional


class ExtractionError(Exception):
    """Base class for failures that end a job in the `failed` state."""

    error_type = "ExtractionError"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class Unreachable(ExtractionError):
    """Target returned a non-2xx status or the transport failed."""

    error_type = "Unreachable"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class FetchTimeout(ExtractionError):
    """Target did not answer within the wall-clock budget."""

    error_type = "Timeout"


class InferenceFailure(ExtractionError):
    """Completion service errored; the provider message is kept verbatim."""

    error_type = "InferenceFailure"


class MalformedOutput(ExtractionError):
    """Completion service answered with something that is not a JSON object."""

    error_type = "MalformedOutput"

    def __init__(self, message: str, raw: Optional[str] = None):
        super().__init__(message)
        self.raw = (raw or "")[:500]


class Cancelled(ExtractionError):
    error_type = "Cancelled"


class PersistenceFailure(ExtractionError):
    """Store unavailable or rejected a write."""

    error_type = "PersistenceFailure"


# Caller errors

class EmptyBatch(ValueError):
    """No valid http(s) URL left after normalizing the batch input."""


class BatchTooLarge(ValueError):
    pass


class InvalidSchema(ValueError):
    pass


class InvalidTarget(ValueError):
    """Target URL is not an absolute http(s) URL."""


class JobNotFound(LookupError):
    pass


class InvalidTransition(RuntimeError):
    pass


def describe(exc: BaseException) -> str:
    """Human-readable cause recorded on failed jobs and error logs."""
    if isinstance(exc, ExtractionError):
        return f"{exc.error_type}: {exc.message}" if exc.message else exc.error_type
    return f"{type(exc).__name__}: {exc}"


def error_type_of(exc: BaseException) -> str:
    if isinstance(exc, ExtractionError):
        return exc.error_type
    return type(exc).__name__
