"""
Shared-secret checks for fill sync, webhook and admin endpoints.
"""
from daybot.api.auth import is_authorized, passkey_matches, scheduler_signature, verify_scheduler_signature

SECRET = "hook-secret"
NOW = 1_773_673_500.0


def _now():
    return NOW


def test_open_when_no_secret_configured():
    assert is_authorized(None, {}, {})
    assert is_authorized("", {}, {})


def test_header_or_query_token():
    assert is_authorized(SECRET, {"x-webhook-secret": SECRET}, {})
    assert is_authorized(SECRET, {}, {"token": SECRET})
    assert not is_authorized(SECRET, {"x-webhook-secret": "wrong"}, {"token": "also-wrong"})
    assert not is_authorized(SECRET, {}, {})


def test_scheduler_signature_within_skew():
    ts = str(int(NOW) - 30)
    headers = {"x-scheduler-timestamp": ts, "x-scheduler-signature": scheduler_signature(SECRET, ts)}
    assert is_authorized(SECRET, headers, {}, now_fn=_now)


def test_scheduler_signature_rejects_stale_or_forged():
    stale = str(int(NOW) - 3600)
    assert not verify_scheduler_signature(SECRET, stale, scheduler_signature(SECRET, stale), now_fn=_now)

    ts = str(int(NOW))
    assert not verify_scheduler_signature(SECRET, ts, scheduler_signature("other", ts), now_fn=_now)
    assert not verify_scheduler_signature(SECRET, "not-a-number", "abc", now_fn=_now)
    assert not verify_scheduler_signature(SECRET, None, None, now_fn=_now)


def test_signature_is_case_insensitive_hex():
    ts = str(int(NOW))
    assert verify_scheduler_signature(SECRET, ts, scheduler_signature(SECRET, ts).upper(), now_fn=_now)


def test_passkey_matches():
    assert passkey_matches("9340", "9340")
    assert passkey_matches("9340", 9340)
    assert not passkey_matches("9340", "0000")
    assert not passkey_matches("9340", None)
    assert not passkey_matches(None, "9340")
