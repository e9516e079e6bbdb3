"""
nafflesync.api.signature — Webhook body signatures
===================================================

The platform signs every webhook body with HMAC-SHA256 under the shared
secret and sends the hex digest in ``X-Naffles-Signature``.  Verification
runs over the raw request bytes, before any JSON decoding.
"""

from __future__ import annotations

import hashlib
import hmac

from nafflesync.errors import SignatureError


def compute_signature(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), msg=body, digestmod=hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: str | None, secret: str) -> None:
    """Raise :class:`SignatureError` unless *signature* matches *body*.

    A missing header, an empty secret, or a digest of the wrong length all
    fail without reaching the constant-time comparison.
    """
    if not signature or not secret:
        raise SignatureError("missing signature")
    expected = compute_signature(body, secret)
    provided = signature.strip().lower()
    if len(provided) != len(expected) or not hmac.compare_digest(expected, provided):
        raise SignatureError("invalid signature")
