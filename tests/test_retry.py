import random

import pytest

from vaultp2p.retry import RetryPolicy


def test_delays_grow_and_cap() -> None:
    policy = RetryPolicy(max_attempts=6, base_delay_s=1.0, max_delay_s=4.0, jitter=0.0)
    assert [policy.delay_for(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 4.0, 4.0]
    assert len(list(policy.delays())) == 5


def test_jitter_stays_in_band() -> None:
    policy = RetryPolicy(base_delay_s=2.0, max_delay_s=2.0, jitter=0.5)
    rng = random.Random(7)
    for _ in range(100):
        assert 1.0 <= policy.delay_for(1, rng) <= 3.0


@pytest.mark.asyncio
async def test_run_retries_then_succeeds() -> None:
    calls = []

    async def flaky() -> str:
        calls.append(1)
        if len(calls) < 3:
            raise ConnectionError("not yet")
        return "ok"

    policy = RetryPolicy(max_attempts=3, base_delay_s=0.0, jitter=0.0)
    assert await policy.run(flaky, retry_on=(ConnectionError,)) == "ok"
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_run_reraises_last_error() -> None:
    calls = []

    async def broken() -> None:
        calls.append(1)
        raise ConnectionError(f"attempt {len(calls)}")

    policy = RetryPolicy(max_attempts=2, base_delay_s=0.0, jitter=0.0)
    with pytest.raises(ConnectionError, match="attempt 2"):
        await policy.run(broken, retry_on=(ConnectionError,))


@pytest.mark.asyncio
async def test_run_does_not_retry_other_errors() -> None:
    calls = []

    async def wrong() -> None:
        calls.append(1)
        raise KeyError("nope")

    with pytest.raises(KeyError):
        await RetryPolicy(max_attempts=5).run(wrong, retry_on=(ConnectionError,))
    assert len(calls) == 1
