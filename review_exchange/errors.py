from __future__ import annotations


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status


class _TypedApiError(ApiError):
    """ApiError with per-class defaults; callers override only the code when needed."""

    default_code = "INTERNAL_ERROR"
    error_class = "internal"
    retryable = False
    http_status = 500

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(
            code=code or self.default_code,
            message=message,
            error_class=type(self).error_class,
            retryable=type(self).retryable,
            http_status=type(self).http_status,
        )


class ValidationError(_TypedApiError):
    default_code = "REQ_VALIDATION_FAILED"
    error_class = "validation"
    http_status = 400


class NotFoundError(_TypedApiError):
    default_code = "RESOURCE_NOT_FOUND"
    error_class = "validation"
    http_status = 404


class StateConflictError(_TypedApiError):
    default_code = "STATE_CONFLICT"
    error_class = "business_rule"
    http_status = 409


class InsufficientCreditsError(_TypedApiError):
    default_code = "LEDGER_INSUFFICIENT_CREDITS"
    error_class = "business_rule"
    http_status = 402


class CapReachedError(_TypedApiError):
    default_code = "CYCLE_CAP_REACHED"
    error_class = "business_rule"
    http_status = 429


class NoEligibleReviewerError(_TypedApiError):
    """Raised per item during matching; never surfaced as a failed request."""

    default_code = "MATCH_NO_ELIGIBLE_REVIEWER"
    error_class = "informational"
    retryable = True
    http_status = 200


class ConcurrencyConflictError(_TypedApiError):
    default_code = "CONCURRENCY_CONFLICT"
    error_class = "transient"
    retryable = True
    http_status = 409


class DependencyError(_TypedApiError):
    default_code = "DEPENDENCY_FAILED"
    error_class = "transient"
    retryable = True
    http_status = 502
