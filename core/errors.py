"""
core/errors.py -- Error taxonomy for the gateway.

Two layers of errors live here:

  UpstreamFailure / UpstreamFailureError -- the tagged variant produced once,
      at the upstream translation boundary (core/upstream.py). Code downstream
      of that boundary matches on FailureKind instead of probing attributes of
      raw requests exceptions.

  GatewayError and subclasses -- the client-facing outcomes. Each carries the
      HTTP status and a stable error code. api/main.py renders them all in the
      same {"error": {"code", "message"}} envelope. Messages are safe to show
      to a browser: no upstream body, no stack, never the credential.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

# ---------------------------------------------------------------------------
# Upstream failure variant
# ---------------------------------------------------------------------------


class FailureKind(str, Enum):
    INVALID_CREDENTIAL = "invalid_credential"
    NOT_FOUND = "not_found"
    UPSTREAM_ERROR = "upstream_error"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class UpstreamFailure:
    kind: FailureKind
    status: Optional[int] = None

    @classmethod
    def from_status(cls, status: int) -> "UpstreamFailure":
        if status == 401:
            return cls(FailureKind.INVALID_CREDENTIAL, status)
        if status == 404:
            return cls(FailureKind.NOT_FOUND, status)
        return cls(FailureKind.UPSTREAM_ERROR, status)

    @property
    def transient(self) -> bool:
        """True for network failures and 5xx -- never grounds for logout."""
        if self.kind is FailureKind.UNKNOWN:
            return True
        return self.kind is FailureKind.UPSTREAM_ERROR and (self.status is None or self.status >= 500)


class UpstreamFailureError(Exception):
    """Raised by the upstream client. Carries exactly one UpstreamFailure."""

    def __init__(self, failure: UpstreamFailure, path: str = "") -> None:
        self.failure = failure
        self.path = path
        super().__init__(f"{failure.kind.value} ({failure.status}) on {path or 'upstream'}")


# ---------------------------------------------------------------------------
# Client-facing errors
# ---------------------------------------------------------------------------


class GatewayError(Exception):
    status_code: int = 500
    code: str = "internal_error"
    message: str = "An unexpected error occurred."

    def __init__(self, message: Optional[str] = None, *, status_code: Optional[int] = None) -> None:
        if message is not None:
            self.message = message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)


class Unauthenticated(GatewayError):
    status_code = 401
    code = "unauthenticated"
    message = "Not authenticated."


class InvalidCredential(GatewayError):
    status_code = 401
    code = "invalid_credential"
    message = "The stored credential was rejected. Please log in again."


class ResourceNotFound(GatewayError):
    status_code = 404
    code = "not_found"
    message = "Resource not found."


class ValidationFailure(GatewayError):
    status_code = 400
    code = "validation_error"
    message = "Request validation failed."


class UpstreamRejected(GatewayError):
    """Upstream 4xx other than 401/404, passed through with its status."""

    status_code = 400
    code = "upstream_rejected"
    message = "The request was rejected by GitHub."


class UpstreamUnavailable(GatewayError):
    status_code = 500
    code = "upstream_unavailable"
    message = "GitHub is unavailable. Please try again."


def translate_failure(failure: UpstreamFailure) -> GatewayError:
    """Map an upstream failure to the client-facing error. Exhaustive over FailureKind."""
    if failure.kind is FailureKind.INVALID_CREDENTIAL:
        return InvalidCredential()
    if failure.kind is FailureKind.NOT_FOUND:
        return ResourceNotFound()
    if failure.kind is FailureKind.UPSTREAM_ERROR and failure.status is not None and 400 <= failure.status < 500:
        return UpstreamRejected(status_code=failure.status)
    return UpstreamUnavailable()
