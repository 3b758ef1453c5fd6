"""Tests for retry backoff."""

from datetime import datetime, timedelta

import pytest

from verifactu_api.transmission.backoff import BackoffPolicy


def test_default_curve():
    policy = BackoffPolicy()
    assert policy.delay(1) == timedelta(seconds=60)
    assert policy.delay(2) == timedelta(seconds=120)
    assert policy.delay(3) == timedelta(seconds=240)
    assert policy.delay(7) == timedelta(seconds=3600)
    assert policy.delay(500) == timedelta(seconds=3600)


def test_monotonic_up_to_cap():
    policy = BackoffPolicy(base_seconds=30, factor=3, cap_seconds=1800)
    delays = [policy.delay(count) for count in range(1, 40)]
    assert delays == sorted(delays)
    assert max(delays) == timedelta(seconds=1800)


def test_next_eligible_is_in_the_future():
    now = datetime(2025, 3, 1, 12, 0)
    assert BackoffPolicy().next_eligible(now, 1) > now


def test_from_settings(settings):
    policy = BackoffPolicy.from_settings(settings)
    assert policy.base_seconds == settings.backoff_base_seconds
    assert policy.cap_seconds == settings.backoff_cap_seconds


@pytest.mark.parametrize("kwargs", [{"base_seconds": 0}, {"cap_seconds": -1}, {"factor": 0.5}])
def test_invalid_policy(kwargs):
    with pytest.raises(ValueError):
        BackoffPolicy(**kwargs)
