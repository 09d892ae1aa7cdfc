"""Error taxonomy for the generation pipeline.

Every error carries a stable ``code`` (surfaced to API callers), an HTTP
``status_code`` and a ``retryable`` flag. ``retryable`` is ``None`` when the
decision is left to the retry policy (code allow-list and message patterns).
"""

from typing import Any, Optional

from .types import utc_timestamp


class PipelineError(Exception):
    """Base class for all pipeline errors."""

    code = "INTERNAL_ERROR"
    status_code = 500
    retryable: Optional[bool] = None

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        retryable: Optional[bool] = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if retryable is not None:
            self.retryable = retryable
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


class ValidationError(PipelineError):
    """Bad or missing input. Never retried."""

    code = "VALIDATION_ERROR"
    status_code = 400
    retryable = False


class EventValidationError(ValidationError):
    """An event of a known detail-type failed its schema."""

    code = "EVENT_VALIDATION_ERROR"


class AuthenticationError(PipelineError):
    code = "UNAUTHORIZED"
    status_code = 401
    retryable = False


class AuthorizationError(PipelineError):
    code = "FORBIDDEN"
    status_code = 403
    retryable = False


class NotFoundError(PipelineError):
    code = "NOT_FOUND"
    status_code = 404
    retryable = False


class ConflictError(PipelineError):
    """Concurrent or duplicate state."""

    code = "CONFLICT"
    status_code = 409


class AlreadyExistsError(ConflictError):
    """A conditional create found the primary key already present."""

    code = "ALREADY_EXISTS"
    retryable = False


class RateLimitError(PipelineError):
    code = "RATE_LIMIT_EXCEEDED"
    status_code = 429
    retryable = True


class ThrottlingError(PipelineError):
    code = "THROTTLING_ERROR"
    status_code = 429
    retryable = True


class OperationTimeoutError(PipelineError):
    """A collaborator or store call timed out.

    Named to avoid shadowing the builtin ``TimeoutError``.
    """

    code = "TIMEOUT_ERROR"
    status_code = 504
    retryable = True


class ExternalServiceError(PipelineError):
    """A collaborator failed. Retryable only when flagged as such."""

    code = "EXTERNAL_SERVICE_ERROR"
    status_code = 502
    retryable = False

    def __init__(self, message: str, *, service: str = "unknown", **kwargs):
        details = kwargs.pop("details", None) or {}
        details.setdefault("service", service)
        super().__init__(message, details=details, **kwargs)
        self.service = service


class InternalError(PipelineError):
    """Catch-all. Retryable by policy, message sanitized for external callers."""

    code = "INTERNAL_ERROR"
    status_code = 500


class CircuitBreakerOpenError(PipelineError):
    """A call was rejected by a circuit breaker without reaching the dependency."""

    code = "CIRCUIT_BREAKER_OPEN"
    status_code = 503
    retryable = False

    def __init__(self, breaker_name: str, *, half_open_limit: bool = False):
        if half_open_limit:
            message = f"Circuit breaker '{breaker_name}' is half-open and at its trial call limit"
            code = "CIRCUIT_BREAKER_HALF_OPEN_LIMIT"
        else:
            message = f"Circuit breaker '{breaker_name}' is open"
            code = "CIRCUIT_BREAKER_OPEN"
        super().__init__(message, code=code, details={"breaker": breaker_name})
        self.breaker_name = breaker_name


INTERNAL_ERROR_MESSAGE = "An internal error occurred"


def error_body(code: str, message: str, request_id: Optional[str]) -> dict[str, Any]:
    """Build the structured error body returned by the API."""
    return {
        "error": {
            "code": code,
            "message": message,
            "requestId": request_id,
            "timestamp": utc_timestamp(),
        }
    }
