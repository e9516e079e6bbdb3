"""
nafflesync.errors — Error Taxonomy & Classification
====================================================

Every failure that crosses a component boundary is tagged with an
:class:`ErrorKind`.  The sync engine only looks at the kind (and the HTTP
status, for 5xx) to decide between retry and drop, so callers never need
to inspect raw ``httpx`` exceptions.
"""

from __future__ import annotations

import enum

import httpx


class ErrorKind(enum.StrEnum):
    """Stable error taxonomy shared by the engine, ingress, and policy layer."""
    NETWORK_TIMEOUT = "network_timeout"
    CONNECTION_REFUSED = "connection_refused"
    RATE_LIMITED = "rate_limited"
    AUTH = "auth"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    SIGNATURE_INVALID = "signature_invalid"
    POLICY_DENIED = "policy_denied"
    ANOMALY = "anomaly"
    INTERNAL = "internal"


# Stdlib exceptions that indicate connectivity issues rather than bugs
NETWORK_EXCEPTIONS: tuple[type[Exception], ...] = (
    ConnectionError,
    TimeoutError,
)

_RETRYABLE_KINDS = frozenset({
    ErrorKind.NETWORK_TIMEOUT,
    ErrorKind.CONNECTION_REFUSED,
    ErrorKind.RATE_LIMITED,
})


class NaffleSyncError(Exception):
    """Base class for all classified errors."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str, *, kind: ErrorKind | None = None) -> None:
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class PlatformError(NaffleSyncError):
    """A platform API call failed.

    ``status`` is the HTTP status when a response arrived, else ``None``.
    """

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind,
        status: int | None = None,
    ) -> None:
        super().__init__(message, kind=kind)
        self.status = status

    @property
    def retryable(self) -> bool:
        if self.kind in _RETRYABLE_KINDS:
            return True
        return self.status is not None and self.status >= 500


class SignatureError(NaffleSyncError):
    """Webhook body did not match its ``X-Naffles-Signature``."""

    kind = ErrorKind.SIGNATURE_INVALID


class PolicyDenied(NaffleSyncError):
    """An interaction was rejected by the policy layer."""

    kind = ErrorKind.POLICY_DENIED


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------
def kind_for_status(status: int) -> ErrorKind:
    """Map an HTTP error status onto the taxonomy."""
    if status == 429:
        return ErrorKind.RATE_LIMITED
    if status in (401, 403):
        return ErrorKind.AUTH
    if status == 404:
        return ErrorKind.NOT_FOUND
    if 400 <= status < 500:
        return ErrorKind.VALIDATION
    return ErrorKind.INTERNAL


def classify_http_error(exc: BaseException) -> PlatformError:
    """Wrap an ``httpx`` exception in a classified :class:`PlatformError`."""
    if isinstance(exc, PlatformError):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return PlatformError(
            f"{exc.request.method} {exc.request.url.path} → {status}",
            kind=kind_for_status(status),
            status=status,
        )
    if isinstance(exc, httpx.TimeoutException):
        return PlatformError(f"Request timed out: {exc}", kind=ErrorKind.NETWORK_TIMEOUT)
    if isinstance(exc, httpx.TransportError):
        return PlatformError(f"Connection failed: {exc}", kind=ErrorKind.CONNECTION_REFUSED)
    return PlatformError(str(exc) or exc.__class__.__name__, kind=ErrorKind.INTERNAL)


def is_retryable(exc: BaseException) -> bool:
    """Return True if the engine should retry after *exc*.

    Stdlib connectivity errors are retried; any other unclassified
    exception (bugs, Discord-side errors) is not.
    """
    if isinstance(exc, PlatformError):
        return exc.retryable
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError, httpx.HTTPStatusError)):
        return classify_http_error(exc).retryable
    if isinstance(exc, NaffleSyncError):
        return exc.kind in _RETRYABLE_KINDS
    return isinstance(exc, NETWORK_EXCEPTIONS)
