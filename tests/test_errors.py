"""
tests/test_errors.py — Error Taxonomy Tests
============================================
"""

from __future__ import annotations

import httpx
import pytest

from nafflesync.errors import (
    ErrorKind,
    NaffleSyncError,
    PlatformError,
    PolicyDenied,
    SignatureError,
    classify_http_error,
    is_retryable,
    kind_for_status,
)


def _status_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("PATCH", "https://api.naffles.test/api/social-tasks/t1/sync-status")
    response = httpx.Response(status, request=request)
    return httpx.HTTPStatusError("boom", request=request, response=response)


class TestKindForStatus:
    @pytest.mark.parametrize(
        "status, kind",
        [
            (429, ErrorKind.RATE_LIMITED),
            (401, ErrorKind.AUTH),
            (403, ErrorKind.AUTH),
            (404, ErrorKind.NOT_FOUND),
            (400, ErrorKind.VALIDATION),
            (409, ErrorKind.VALIDATION),
            (500, ErrorKind.INTERNAL),
            (503, ErrorKind.INTERNAL),
        ],
    )
    def test_mapping(self, status, kind):
        assert kind_for_status(status) is kind


class TestClassify:
    def test_status_error(self):
        err = classify_http_error(_status_error(503))
        assert err.kind is ErrorKind.INTERNAL
        assert err.status == 503
        assert "/api/social-tasks/t1/sync-status" in str(err)

    def test_platform_error_passes_through(self):
        original = PlatformError("x", kind=ErrorKind.AUTH, status=401)
        assert classify_http_error(original) is original

    def test_unknown_exception_is_internal(self):
        err = classify_http_error(RuntimeError())
        assert err.kind is ErrorKind.INTERNAL
        assert str(err) == "RuntimeError"


class TestRetryable:
    @pytest.mark.parametrize(
        "exc, expected",
        [
            (PlatformError("x", kind=ErrorKind.NETWORK_TIMEOUT), True),
            (PlatformError("x", kind=ErrorKind.CONNECTION_REFUSED), True),
            (PlatformError("x", kind=ErrorKind.RATE_LIMITED, status=429), True),
            (PlatformError("x", kind=ErrorKind.INTERNAL, status=502), True),
            (PlatformError("x", kind=ErrorKind.INTERNAL), False),
            (PlatformError("x", kind=ErrorKind.VALIDATION, status=400), False),
            (PlatformError("x", kind=ErrorKind.NOT_FOUND, status=404), False),
            (SignatureError("bad"), False),
            (PolicyDenied("no"), False),
            (ConnectionResetError(), True),
            (TimeoutError(), True),
            (ValueError("bug"), False),
        ],
    )
    def test_is_retryable(self, exc, expected):
        assert is_retryable(exc) is expected

    def test_raw_httpx_errors(self):
        assert is_retryable(_status_error(500))
        assert not is_retryable(_status_error(404))
        assert is_retryable(httpx.ConnectError("refused"))

    def test_kind_override(self):
        err = NaffleSyncError("slow", kind=ErrorKind.NETWORK_TIMEOUT)
        assert err.kind is ErrorKind.NETWORK_TIMEOUT
        assert is_retryable(err)
        assert SignatureError("x").kind is ErrorKind.SIGNATURE_INVALID
