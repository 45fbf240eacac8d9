import pytest
from datetime import datetime, timedelta

from core.retry import RetryPolicy, compute_backoff


def test_backoff_doubles_per_attempt():
    assert compute_backoff(0, 1.0, 60.0) == 1.0
    assert compute_backoff(1, 1.0, 60.0) == 2.0
    assert compute_backoff(3, 1.0, 60.0) == 8.0


def test_backoff_capped_at_max_delay():
    assert compute_backoff(10, 1.0, 30.0) == 30.0


def test_backoff_jitter_drawn_from_range():
    calls = []

    def fake_uniform(low, high):
        calls.append((low, high))
        return high

    assert compute_backoff(1, 1.0, 60.0, jitter=0.5, rand=fake_uniform) == 2.5
    assert calls == [(0.0, 0.5)]


def test_backoff_jitter_still_capped():
    assert compute_backoff(5, 1.0, 10.0, jitter=5.0, rand=lambda a, b: b) == 10.0


def test_backoff_rejects_negative_attempt():
    with pytest.raises(ValueError):
        compute_backoff(-1, 1.0, 10.0)


def test_policy_next_retry_at():
    policy = RetryPolicy(base_delay=60.0, max_delay=3600.0)
    now = datetime(2024, 1, 15, 10, 0, 0)

    assert policy.next_retry_at(0, now) == now + timedelta(seconds=60)
    assert policy.next_retry_at(2, now) == now + timedelta(seconds=240)


def test_policy_exhausted():
    policy = RetryPolicy(base_delay=1.0, max_delay=10.0, max_attempts=3)

    assert not policy.exhausted(2)
    assert policy.exhausted(3)


def test_policies_from_tenant(tenant_config):
    requests = RetryPolicy.for_requests(tenant_config)
    records = RetryPolicy.for_records(tenant_config)

    assert requests.base_delay == 0.5
    assert requests.max_attempts == 3
    assert records.base_delay == tenant_config.record_retry_base_delay_seconds
    assert records.max_attempts == tenant_config.max_retries
