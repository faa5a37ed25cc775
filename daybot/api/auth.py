"""
Shared-secret checks for the fill endpoints and the admin actions.
"""
import hashlib
import hmac
import time
from typing import Callable, Mapping, Optional


def scheduler_signature(secret: str, timestamp: str) -> str:
    """hex HMAC-SHA256(secret, timestamp)."""
    return hmac.new(secret.encode(), timestamp.encode(), hashlib.sha256).hexdigest()


def _equal(a: Optional[str], b: str) -> bool:
    return a is not None and hmac.compare_digest(a.encode(), b.encode())


def verify_scheduler_signature(
    secret: str,
    timestamp: Optional[str],
    signature: Optional[str],
    skew_seconds: int = 300,
    now_fn: Callable[[], float] = time.time,
) -> bool:
    if not timestamp or not signature:
        return False
    try:
        ts = float(timestamp)
    except ValueError:
        return False
    if abs(now_fn() - ts) > skew_seconds:
        return False
    return _equal(signature.lower(), scheduler_signature(secret, timestamp))


def is_authorized(
    secret: Optional[str],
    headers: Mapping[str, str],
    query: Mapping[str, str],
    skew_seconds: int = 300,
    now_fn: Callable[[], float] = time.time,
) -> bool:
    """
    Header secret, query token or scheduler signature. Open when no secret
    is configured.
    """
    if not secret:
        return True
    if _equal(headers.get("x-webhook-secret"), secret):
        return True
    if _equal(query.get("token"), secret):
        return True
    return verify_scheduler_signature(
        secret,
        headers.get("x-scheduler-timestamp"),
        headers.get("x-scheduler-signature"),
        skew_seconds,
        now_fn,
    )


def passkey_matches(expected: Optional[str], provided: Optional[str]) -> bool:
    """False when no passkey is configured; callers report that separately."""
    if not expected or provided is None:
        return False
    return _equal(str(provided), expected)
