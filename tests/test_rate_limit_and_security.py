import time

import pytest

from record_custody import rate_limit
from record_custody.errors import ValidationError
from record_custody.rate_limit import RateLimiter
from record_custody.security import (
    sanitize_for_logging, validate_handle, validate_identity, validate_key_hex, validate_record_id,
)


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def time(self):
        return self.now


def test_limiter_blocks_after_limit():
    limiter = RateLimiter(2)
    first = limiter.check("a")
    assert first.allowed and first.remaining == 1
    assert limiter.allow("a")
    blocked = limiter.check("a")
    assert not blocked.allowed
    assert 0 <= blocked.retry_after <= 60
    # independent keys
    assert limiter.allow("b")


def test_limiter_window_expiry():
    limiter = RateLimiter(1, window_seconds=0)
    assert limiter.allow("a")
    time.sleep(0.01)
    assert limiter.cleanup_expired() == 1
    assert limiter.allow("a")


def test_limiter_drops_idle_keys_on_next_window(monkeypatch):
    clock = FakeClock()
    monkeypatch.setattr(rate_limit, "time", clock)
    limiter = RateLimiter(5, window_seconds=60)
    for i in range(50):
        limiter.allow(f"acct-{i}")
    clock.now += 30
    limiter.allow("acct-0")
    # still inside the first window: nothing swept yet
    assert limiter.tracked_keys() == 50

    clock.now += 31
    assert limiter.allow("late")
    # acct-0 keeps its hit from 31s ago; the other idle keys are gone
    assert limiter.tracked_keys() == 2


def test_limiter_reset_single_key():
    limiter = RateLimiter(1)
    limiter.allow("a")
    limiter.allow("b")
    limiter.reset("a")
    assert limiter.allow("a")
    assert not limiter.allow("b")


def test_validators():
    assert validate_identity(" 0xAbC ") == "0xAbC"
    assert validate_record_id("12") == 12
    assert validate_handle("cid:QmX") == "cid:QmX"
    assert validate_key_hex("AB" * 32) == b"\xab" * 32
    for bad in (lambda: validate_identity(""),
                lambda: validate_identity(".."),
                lambda: validate_identity("0xA/../users"),
                lambda: validate_record_id(-1),
                lambda: validate_record_id("x"),
                lambda: validate_handle("record:abc"),
                lambda: validate_key_hex("ab" * 31)):
        with pytest.raises(ValidationError):
            bad()


def test_sanitize_masks_secrets():
    data = {"key": "ab" * 32, "record_id": 1, "nested": {"X-Admin-Token": "t"}, "items": [{"material": "m"}]}
    out = sanitize_for_logging(data)
    assert out["key"] == "[REDACTED]"
    assert out["record_id"] == 1
    assert out["nested"]["X-Admin-Token"] == "[REDACTED]"
    assert out["items"][0]["material"] == "[REDACTED]"
