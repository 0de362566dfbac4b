"""Clock abstraction."""

from datetime import datetime, timedelta, timezone

from presale_kernel.domain.clock import DeterministicClock, SystemClock


def test_system_clock_is_utc_aware():
    now = SystemClock().now()
    assert now.tzinfo is not None
    assert now.utcoffset() == timedelta(0)


def test_deterministic_clock_is_stable_until_advanced():
    start = datetime(2024, 1, 1, tzinfo=timezone.utc)
    clock = DeterministicClock(start)
    assert clock.now() == clock.now() == start

    clock.advance(360)
    assert clock.now() == start + timedelta(minutes=6)
    assert clock.tick() == start + timedelta(minutes=6, seconds=1)


def test_set_time_resets_offset():
    clock = DeterministicClock()
    clock.advance(100)
    target = datetime(2025, 6, 1, tzinfo=timezone.utc)
    clock.set_time(target)
    assert clock.now() == target
