"""
Typed failures surfaced by the remote client.

Every failure carries a FailureKind that drives the sync engine:

  TRANSIENT_NETWORK  timeout / connection failure        retried with backoff
  TRANSIENT_SERVER   5xx, rate limit, enrichment running  retried with backoff
  TERMINAL           validation, limits, auth             persisted, user retries
  NOT_FOUND          missing entity                       terminal, except during
                                                          lookup-before-create
"""

import enum
from typing import Any, Optional

import httpx


class FailureKind(str, enum.Enum):
    TRANSIENT_NETWORK = "transient_network"
    TRANSIENT_SERVER = "transient_server"
    TERMINAL = "terminal"
    NOT_FOUND = "not_found"


class RemoteError(Exception):
    kind = FailureKind.TRANSIENT_SERVER
    default_code = "UNKNOWN"

    def __init__(
        self,
        message: str = "",
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
        meta: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message or self.default_code)
        self.message = message or self.default_code
        self.code = code or self.default_code
        self.status_code = status_code
        self.retry_after = retry_after
        self.meta = meta or {}

    @property
    def is_retryable(self) -> bool:
        return self.kind in (FailureKind.TRANSIENT_NETWORK, FailureKind.TRANSIENT_SERVER)

    def describe(self) -> str:
        """Short diagnostic stored in Moment.last_sync_error."""
        status = f" ({self.status_code})" if self.status_code else ""
        return f"{self.code}{status}: {self.message}"


class NetworkError(RemoteError):
    kind = FailureKind.TRANSIENT_NETWORK
    default_code = "NETWORK_ERROR"


class NetworkTimeout(NetworkError):
    default_code = "TIMEOUT"


class ServerError(RemoteError):
    default_code = "INTERNAL_SERVER_ERROR"


class RateLimited(RemoteError):
    default_code = "RATE_LIMIT_EXCEEDED"


class EnrichmentInProgress(RemoteError):
    default_code = "ENRICHMENT_IN_PROGRESS"


class UnexpectedResponse(RemoteError):
    default_code = "INVALID_RESPONSE"


class NotFound(RemoteError):
    kind = FailureKind.NOT_FOUND
    default_code = "MOMENT_NOT_FOUND"


class ValidationFailed(RemoteError):
    kind = FailureKind.TERMINAL
    default_code = "VALIDATION_ERROR"


class Forbidden(RemoteError):
    kind = FailureKind.TERMINAL
    default_code = "FORBIDDEN"


class Unauthorized(RemoteError):
    kind = FailureKind.TERMINAL
    default_code = "UNAUTHORIZED"


class DailyLimitReached(RemoteError):
    kind = FailureKind.TERMINAL
    default_code = "DAILY_LIMIT_REACHED"


class RestrictedAccess(RemoteError):
    kind = FailureKind.TERMINAL
    default_code = "RESTRICTED_ACCESS"


_BY_CODE: dict[str, type[RemoteError]] = {
    "VALIDATION_ERROR": ValidationFailed,
    "INVALID_REQUEST": ValidationFailed,
    "INVALID_CURSOR": ValidationFailed,
    "MOMENT_NOT_FOUND": NotFound,
    "NOT_FOUND": NotFound,
    "FORBIDDEN": Forbidden,
    "UNAUTHORIZED": Unauthorized,
    "RESTRICTED_ACCESS": RestrictedAccess,
    "ENRICHMENT_IN_PROGRESS": EnrichmentInProgress,
    "DAILY_LIMIT_REACHED": DailyLimitReached,
    "RATE_LIMIT_EXCEEDED": RateLimited,
    "INTERNAL_SERVER_ERROR": ServerError,
}

_BY_STATUS: dict[int, type[RemoteError]] = {
    400: ValidationFailed,
    401: Unauthorized,
    403: Forbidden,
    404: NotFound,
    409: EnrichmentInProgress,
    422: ValidationFailed,
    429: RateLimited,
}


def error_for(
    status_code: int,
    code: Optional[str],
    message: str,
    retry_after: Optional[float] = None,
    meta: Optional[dict[str, Any]] = None,
) -> RemoteError:
    """Pick the RemoteError subclass for a non-2xx response."""
    cls = _BY_CODE.get(code or "")
    if cls is None:
        if status_code >= 500:
            cls = ServerError
        else:
            cls = _BY_STATUS.get(status_code, ValidationFailed if status_code < 500 else ServerError)
    return cls(
        message=message,
        code=code,
        status_code=status_code,
        retry_after=retry_after,
        meta=meta,
    )


def from_transport(exc: httpx.HTTPError) -> RemoteError:
    if isinstance(exc, httpx.TimeoutException):
        return NetworkTimeout(str(exc) or "request timed out")
    return NetworkError(str(exc) or exc.__class__.__name__)
