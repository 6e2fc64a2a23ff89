"""
Fact Engine - Error Taxonomy

Every error raised by the core derives from FactEngineError. The `code` is the
stable client-facing identifier; `status_code` is what the HTTP layer returns.
`retryable` tells the job queue whether another attempt can succeed.
"""
from typing import Optional


class FactEngineError(Exception):
    """Base class for all fact engine errors."""
    code = "INTERNAL"
    status_code = 500
    retryable = True

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class JobValidationError(FactEngineError):
    """Job payload is missing core identifiers. Never re-queued."""
    code = "VALIDATION"
    status_code = 422
    retryable = False


class UpstreamNotFoundError(FactEngineError):
    """Referenced entity or prerequisite snapshot does not exist."""
    code = "NOT_FOUND"
    status_code = 404
    retryable = False


class NoFactsAvailableError(FactEngineError):
    """Explain was requested but no fact snapshot exists even after a recompute."""
    code = "NO_FACTS"
    status_code = 400
    retryable = False


class FactsNotReadyError(FactEngineError):
    """The on-demand recompute did not finish inside the bounded wait."""
    code = "FACTS_NOT_READY"
    status_code = 503
    retryable = True

    def __init__(self, message: str, job_id: Optional[str] = None):
        super().__init__(message)
        self.job_id = job_id


class ForbiddenError(FactEngineError):
    """Caller has no tenant scope for the request."""
    code = "FORBIDDEN"
    status_code = 403
    retryable = False


class GeneratorError(FactEngineError):
    """Explanation generator failed. `retryable` distinguishes transient from terminal."""
    code = "GENERATOR_ERROR"
    status_code = 502

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class GeneratorRateLimitedError(GeneratorError):
    """Generator (or our own limiter) refused the call. Never cached."""
    code = "RATE_LIMITED"
    status_code = 429

    def __init__(self, message: str, retry_after_seconds: int, key: Optional[str] = None):
        super().__init__(message, retryable=True)
        self.retry_after_seconds = retry_after_seconds
        self.key = key


class TransientIOError(FactEngineError):
    """Network or blob storage hiccup that is worth retrying with backoff."""
    code = "TRANSIENT_IO"
    status_code = 503
    retryable = True


_ERRORS_BY_CODE = {
    cls.code: cls
    for cls in (
        JobValidationError,
        UpstreamNotFoundError,
        NoFactsAvailableError,
        ForbiddenError,
        TransientIOError,
    )
}


def error_for_code(code: Optional[str], message: str) -> FactEngineError:
    """Rebuild a taxonomy error from a stored error code (e.g. a failed job's result)."""
    if code == GeneratorError.code:
        return GeneratorError(message, retryable=False)
    return _ERRORS_BY_CODE.get(code, FactEngineError)(message)
