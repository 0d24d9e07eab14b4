"""Utility functions for the FastAPI application."""

import datetime
import hashlib
import hmac
import re
from collections.abc import Mapping

from fastapi import Request

from dashboard_server.libs.exceptions import ValidationError
from dashboard_server.utils.constants import SIGNATURE_HEADERS

_DIGESTS = {"sha256": hashlib.sha256, "sha1": hashlib.sha1}
_HEX_DIGEST_PATTERN = re.compile(r"[0-9a-f]+")


def verify_signature(payload_body: bytes, signature_header: str | None, secret: str | None) -> bool:
    """Verify the HMAC signature of a webhook body.

    Without a configured secret verification is disabled and always passes.
    With a secret, a missing or malformed header fails.

    Args:
        payload_body: original request body to verify (request.body()), never re-serialized JSON
        signature_header: `sha256=<hex>`, `sha1=<hex>` or a bare hex SHA-256 digest
        secret: shared webhook secret (webhook-secret)

    Returns:
        True if the signature matches or no secret is configured
    """
    if not secret:
        return True

    if not signature_header:
        return False

    algorithm, separator, received_digest = signature_header.strip().partition("=")
    if not separator:
        algorithm, received_digest = "sha256", algorithm

    digestmod = _DIGESTS.get(algorithm.lower())
    received_digest = received_digest.lower()
    if digestmod is None or not _HEX_DIGEST_PATTERN.fullmatch(received_digest):
        return False

    expected_digest = hmac.new(secret.encode("utf-8"), msg=payload_body, digestmod=digestmod).hexdigest()
    return hmac.compare_digest(expected_digest, received_digest)


def signature_validation_status(secret: str | None) -> str:
    return "enabled" if secret else "disabled"


def get_signature_header(headers: Mapping[str, str]) -> str | None:
    """Return the first signature header present, preferring SHA-256."""
    for header in SIGNATURE_HEADERS:
        value = headers.get(header)
        if value:
            return value
    return None


def get_client_ip(request: Request) -> str:
    """Client IP, honouring the first X-Forwarded-For hop when behind a proxy."""
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    if request.client and request.client.host:
        return request.client.host

    return "unknown"


def parse_datetime_string(datetime_str: str | None, field_name: str) -> datetime.datetime | None:
    """Parse datetime string to an aware datetime object or raise ValidationError.

    Args:
        datetime_str: The datetime string to parse (can be None)
        field_name: Name of the field for error messages

    Returns:
        Parsed datetime object (UTC when no offset is given) or None if input is None

    Raises:
        ValidationError: If datetime string is invalid
    """
    if not datetime_str:
        return None

    try:
        parsed = datetime.datetime.fromisoformat(datetime_str.replace("Z", "+00:00"))
    except ValueError as e:
        raise ValidationError(
            f"Invalid {field_name} format: {datetime_str}. Expected ISO 8601 format.",
            details=[{"field": field_name, "message": str(e)}],
        )

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.UTC)

    return parsed
