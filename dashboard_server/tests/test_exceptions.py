"""Tests for custom exceptions."""

import pytest

from dashboard_server.libs.exceptions import (
    AuthenticationError,
    BackingStoreError,
    DashboardError,
    InternalError,
    NotFoundError,
    ParseError,
    RateLimitError,
    UnsupportedEventTypeError,
    UpstreamError,
    UpstreamTimeoutError,
    ValidationError,
)


@pytest.mark.parametrize(
    "exc_class, status_code, code",
    [
        (ParseError, 400, "PARSE_ERROR"),
        (ValidationError, 400, "VALIDATION_ERROR"),
        (UnsupportedEventTypeError, 400, "VALIDATION_ERROR"),
        (AuthenticationError, 401, "AUTHENTICATION_ERROR"),
        (NotFoundError, 404, "NOT_FOUND"),
        (UpstreamError, 502, "UPSTREAM_ERROR"),
        (UpstreamTimeoutError, 504, "UPSTREAM_TIMEOUT"),
        (InternalError, 500, "INTERNAL_ERROR"),
    ],
)
def test_error_status_and_code(exc_class: type[DashboardError], status_code: int, code: str) -> None:
    """Each error class maps to a fixed HTTP status and machine-readable code."""
    error = exc_class("boom", details={"field": "x"})

    assert isinstance(error, DashboardError)
    assert error.status_code == status_code
    assert error.code == code
    assert error.message == "boom"
    assert error.details == {"field": "x"}
    assert str(error) == "boom"


def test_rate_limit_error_carries_retry_after() -> None:
    error = RateLimitError("slow down", retry_after=42)

    assert error.status_code == 429
    assert error.code == "RATE_LIMITED"
    assert error.retry_after == 42
    assert error.details is None


def test_upstream_timeout_is_upstream_error() -> None:
    with pytest.raises(UpstreamError):
        raise UpstreamTimeoutError("too slow")


def test_backing_store_error_is_not_http_error() -> None:
    """Store failures are handled by their owners, never rendered directly."""
    assert not issubclass(BackingStoreError, DashboardError)
