import asyncio

import httpx
import pytest

from pims_sync.errors import (
    AuthError,
    ErrorType,
    NotFoundError,
    RemoteRequestError,
    TransientNetworkError,
    classify_error,
    is_retryable_error,
)
from pims_sync import retry
from pims_sync.retry import MAX_JITTER, compute_backoff_delay, default_jitter, with_retry


class Recorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def failing(errors, result="ok"):
    """Operation that raises ``errors`` in order, then returns ``result``."""
    calls = {"n": 0}

    async def op():
        calls["n"] += 1
        if errors:
            raise errors.pop(0)
        return result

    return op, calls


@pytest.mark.asyncio
async def test_persistent_transient_failure_stops_after_max_retries():
    sleep = Recorder()
    op, calls = failing([TransientNetworkError("ECONNRESET")] * 10)

    result = await with_retry(op, max_retries=3, sleep=sleep, jitter=lambda: 0.0)

    assert not result.success
    assert calls["n"] == 4
    assert result.attempts == 4
    # no sleep after the final attempt
    assert sleep.delays == [1.0, 2.0, 4.0]
    assert isinstance(result.error, TransientNetworkError)


@pytest.mark.asyncio
async def test_recovers_after_transient_failures():
    sleep = Recorder()
    op, calls = failing([httpx.ConnectError("boom"), TransientNetworkError("socket hang up")], result=42)

    result = await with_retry(op, sleep=sleep, jitter=lambda: 0.0)

    assert result.success and result.data == 42
    assert result.attempts == 3
    assert len(sleep.delays) == 2


@pytest.mark.asyncio
async def test_non_retryable_error_fails_immediately():
    sleep = Recorder()
    op, calls = failing([AuthError("Not authenticated")])

    result = await with_retry(op, sleep=sleep)

    assert not result.success
    assert calls["n"] == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_on_retry_sees_attempt_and_delay():
    seen = []
    op, _ = failing([asyncio.TimeoutError(), asyncio.TimeoutError()])

    await with_retry(
        op,
        base_delay=0.5,
        sleep=Recorder(),
        jitter=lambda: 0.0,
        on_retry=lambda err, attempt, delay: seen.append((attempt, delay)),
    )

    assert seen == [(1, 0.5), (2, 1.0)]


def test_backoff_is_monotonic_and_capped():
    delays = [compute_backoff_delay(k, 1.0, 10.0, jitter=0.0) for k in range(8)]
    assert delays == sorted(delays)
    assert delays[:4] == [1.0, 2.0, 4.0, 8.0]
    assert max(delays) == 10.0
    # jitter only stretches the delay, never past the cap
    assert compute_backoff_delay(1, 1.0, 10.0, jitter=0.29) == pytest.approx(2.58)
    assert compute_backoff_delay(5, 1.0, 10.0, jitter=0.29) == 10.0


@pytest.mark.parametrize(
    "error, expected",
    [
        (Exception("fetch failed: net::ERR_CONNECTION_RESET"), ErrorType.NETWORK),
        (Exception("Request timeout after 15000ms"), ErrorType.NETWORK),
        (RemoteRequestError(401, "Unauthorized"), ErrorType.AUTH),
        (Exception("Not authenticated"), ErrorType.AUTH),
        (RemoteRequestError(404, "Not Found"), ErrorType.NOT_FOUND),
        (NotFoundError("Invalid consultation response for 7"), ErrorType.NOT_FOUND),
        (ValueError("unexpected payload"), ErrorType.UNKNOWN),
    ],
)
def test_classify_error(error, expected):
    assert classify_error(error) == expected


def test_remote_server_errors_are_not_retried():
    assert not is_retryable_error(RemoteRequestError(500, "Internal Server Error"))
    assert is_retryable_error(Exception("getaddrinfo ENOTFOUND pims.test"))


def test_default_jitter_stays_below_the_cap(monkeypatch):
    monkeypatch.setattr(retry.random, "random", lambda: 0.0)
    assert default_jitter() == 0.0

    monkeypatch.setattr(retry.random, "random", lambda: 0.999999)
    assert 0.0 <= default_jitter() < MAX_JITTER


@pytest.mark.asyncio
async def test_zero_retries_means_one_attempt():
    sleep = Recorder()
    op, calls = failing([TransientNetworkError("ECONNRESET")])

    result = await with_retry(op, max_retries=0, sleep=sleep)

    assert not result.success
    assert result.attempts == 1
    assert calls["n"] == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_cancellation_is_not_swallowed():
    sleep = Recorder()
    op, calls = failing([asyncio.CancelledError()])

    with pytest.raises(asyncio.CancelledError):
        await with_retry(op, sleep=sleep)
    assert calls["n"] == 1
    assert sleep.delays == []
