import pytest

from crewflow.utils.retry import compute_backoff, schedule_retry


def test_compute_backoff_growth():
    first = compute_backoff(1, base=2, jitter=0)
    second = compute_backoff(2, base=2, jitter=0)
    assert first == 2
    assert second == 4


def test_compute_backoff_jitter_bounds():
    delay = compute_backoff(1, base=1, jitter=0.5)
    assert 1 <= delay <= 1.5


@pytest.mark.asyncio
async def test_schedule_retry_returns_delay():
    assert await schedule_retry(1, base=0) == 0
    assert await schedule_retry(1, base=0.001) == 0.001
