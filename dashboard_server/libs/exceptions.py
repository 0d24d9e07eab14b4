from typing import Any


class DashboardError(Exception):
    """Base class for errors that map to a structured HTTP response."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ParseError(DashboardError):
    """Raised when a request body is not valid JSON."""

    status_code = 400
    code = "PARSE_ERROR"


class ValidationError(DashboardError):
    """Raised when required fields are missing or invalid."""

    status_code = 400
    code = "VALIDATION_ERROR"


class UnsupportedEventTypeError(ValidationError):
    """Raised when a webhook carries an event type outside the supported set."""

    pass


class AuthenticationError(DashboardError):
    """Raised when a webhook signature is required but missing or invalid."""

    status_code = 401
    code = "AUTHENTICATION_ERROR"


class NotFoundError(DashboardError):
    """Raised when a requested resource does not exist upstream."""

    status_code = 404
    code = "NOT_FOUND"


class RateLimitError(DashboardError):
    """Raised when a rate limit tier is exhausted for an identifier."""

    status_code = 429
    code = "RATE_LIMITED"

    def __init__(self, message: str, retry_after: int, details: Any = None) -> None:
        super().__init__(message, details)
        self.retry_after = retry_after


class UpstreamError(DashboardError):
    """Raised when the Azure DevOps work item source fails."""

    status_code = 502
    code = "UPSTREAM_ERROR"


class UpstreamTimeoutError(UpstreamError):
    """Raised when an upstream call exceeds the configured request timeout."""

    status_code = 504
    code = "UPSTREAM_TIMEOUT"


class InternalError(DashboardError):
    """Raised for unexpected failures; detail is hidden in production."""

    pass


class BackingStoreError(Exception):
    """Raised by counter/cache stores when the backend is unreachable."""

    pass
