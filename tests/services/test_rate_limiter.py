"""
Tests for the receipt verification throttle, driven by a fake clock
"""
from services.rate_limiter import ReceiptThrottle


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_allows_up_to_limit_then_reports_wait():
    clock = FakeClock()
    throttle = ReceiptThrottle(limit=2, window_seconds=60, clock=clock)

    assert throttle.check((1, "validate_receipt")) == 0
    clock.now += 10
    assert throttle.check((1, "validate_receipt")) == 0
    clock.now += 5

    assert throttle.check((1, "validate_receipt")) == 45


def test_window_slides():
    clock = FakeClock()
    throttle = ReceiptThrottle(limit=1, window_seconds=60, clock=clock)
    throttle.check((1, "restore_purchases"))

    clock.now += 60

    assert throttle.check((1, "restore_purchases")) == 0


def test_keys_are_independent():
    throttle = ReceiptThrottle(limit=1, clock=FakeClock())
    throttle.check((1, "validate_receipt"))

    assert throttle.check((2, "validate_receipt")) == 0
    assert throttle.check((1, "restore_purchases")) == 0
    assert throttle.check((1, "validate_receipt")) > 0


def test_reset_clears_counters():
    throttle = ReceiptThrottle(limit=1, clock=FakeClock())
    throttle.check("user")
    throttle.reset()

    assert throttle.check("user") == 0
