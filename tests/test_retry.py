import asyncio

import pytest

from trip_assistant.errors import ProviderError, ProviderTimeoutError, TransientSkillError
from trip_assistant.middleware import call_with_retry, get_events, reset_events
from trip_assistant.middleware.retry import backoff_delay


class Flaky:
    def __init__(self, failures, error=ConnectionError("reset by peer"), result="done"):
        self.failures = failures
        self.error = error
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.result


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def sleep(seconds):
        sleeps.append(seconds)
    return sleep


@pytest.mark.parametrize("attempt,low,high", [(0, 1.0, 1.5), (1, 2.0, 3.0), (2, 4.0, 6.0)])
def test_backoff_delay_bounds(attempt, low, high):
    for _ in range(20):
        assert low <= backoff_delay(attempt, 1.0, 2.0) <= high


@pytest.mark.asyncio
async def test_transient_errors_are_retried(fake_sleep, sleeps):
    fn = Flaky(failures=2)
    reset_events()

    result = await call_with_retry(fn, name="lookup", component="test", max_attempts=3, initial_delay=1.0, sleep=fake_sleep)

    assert result == "done"
    assert fn.calls == 3
    assert len(sleeps) == 2
    assert 1.0 <= sleeps[0] <= 1.5
    assert 2.0 <= sleeps[1] <= 3.0
    statuses = [e["status"] for e in get_events()]
    assert statuses == ["retrying", "retrying", "recovered"]


@pytest.mark.asyncio
async def test_other_errors_are_raised_immediately(fake_sleep, sleeps):
    fn = Flaky(failures=1, error=ValueError("bad input"))

    with pytest.raises(ValueError):
        await call_with_retry(fn, name="lookup", component="test", max_attempts=3, sleep=fake_sleep)

    assert fn.calls == 1
    assert sleeps == []


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts(fake_sleep):
    fn = Flaky(failures=5, error=TransientSkillError("503"))
    reset_events()

    with pytest.raises(TransientSkillError):
        await call_with_retry(fn, name="lookup", component="test", max_attempts=2, sleep=fake_sleep)

    assert fn.calls == 2
    assert get_events()[-1]["status"] == "failed"


@pytest.mark.asyncio
async def test_timeout_becomes_provider_timeout(fake_sleep):
    async def slow():
        await asyncio.sleep(1.0)

    with pytest.raises(ProviderTimeoutError) as excinfo:
        await call_with_retry(slow, name="completion", component="test", max_attempts=1, timeout=0.01, sleep=fake_sleep)

    assert isinstance(excinfo.value, ProviderError)


@pytest.mark.asyncio
async def test_custom_retry_on(fake_sleep):
    fn = Flaky(failures=1, error=ProviderError("quota"))

    result = await call_with_retry(
        fn, name="lookup", component="test", max_attempts=2, retry_on=(ProviderError,), sleep=fake_sleep,
    )

    assert result == "done"
