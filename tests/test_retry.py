"""Tests for retry classification, backoff and polling."""

import asyncio

import httpx
import pytest

from envoy.errors import NetworkError, TransientNetworkError, ValidationError
from envoy.retry import Poller, PollCancelled, PollTimeout, RetryPolicy, is_transient_error, with_retry


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestClassification:
    @pytest.mark.parametrize(
        "error",
        [
            TransientNetworkError("HTTP 503"),
            httpx.ConnectError("refused"),
            RuntimeError("ECONNRESET while reading"),
            NetworkError("429 Too Many Requests"),
        ],
    )
    def test_transient(self, error):
        assert is_transient_error(error)

    @pytest.mark.parametrize("error", [ValidationError("network mismatch"), RuntimeError("execution reverted")])
    def test_fatal(self, error):
        assert not is_transient_error(error)


class TestWithRetry:
    async def test_retries_transient_then_succeeds(self):
        attempts = []
        delays = []

        async def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise TransientNetworkError("HTTP 502")
            return "ok"

        async def record(delay):
            delays.append(delay)

        result = await with_retry(flaky, RetryPolicy(max_retries=2, base_delay=0.5), sleep=record)
        assert result == "ok"
        assert delays == [0.5, 1.0]

    async def test_fatal_error_not_retried(self):
        attempts = []

        async def broken():
            attempts.append(1)
            raise ValidationError("bad input")

        with pytest.raises(ValidationError):
            await with_retry(broken, RetryPolicy(max_retries=5), sleep=_no_sleep)
        assert len(attempts) == 1

    async def test_last_transient_error_propagates(self):
        async def down():
            raise TransientNetworkError("HTTP 503")

        with pytest.raises(TransientNetworkError):
            await with_retry(down, RetryPolicy(max_retries=1), sleep=_no_sleep)

    async def test_retry_after_extends_delay(self):
        delays = []
        calls = []

        async def limited():
            calls.append(1)
            if len(calls) == 1:
                raise TransientNetworkError("HTTP 429", retry_after=3.0)
            return 1

        async def record(delay):
            delays.append(delay)

        await with_retry(limited, RetryPolicy(base_delay=0.1), sleep=record)
        assert delays == [3.0]


async def _no_sleep(_delay):
    return None


class TestPoller:
    async def test_returns_first_result(self):
        values = iter([None, None, "receipt"])

        async def check():
            return next(values)

        assert await Poller(interval=0, max_duration=1).poll(check) == "receipt"

    async def test_times_out(self):
        clock = FakeClock()

        async def never():
            clock.now += 1.0
            return None

        with pytest.raises(PollTimeout):
            await Poller(interval=0, max_duration=3, clock=clock).poll(never)

    async def test_transient_errors_keep_polling(self):
        calls = []

        async def check():
            calls.append(1)
            if len(calls) == 1:
                raise TransientNetworkError("timeout")
            return True

        assert await Poller(interval=0, max_duration=1).poll(check) is True

    async def test_fatal_errors_propagate(self):
        async def check():
            raise ValidationError("bad hash")

        with pytest.raises(ValidationError):
            await Poller(interval=0, max_duration=1).poll(check)

    async def test_cancel_event_stops_polling(self):
        cancel = asyncio.Event()

        async def check():
            cancel.set()
            return None

        with pytest.raises(PollCancelled):
            await Poller(interval=10, max_duration=60, cancel=cancel).poll(check)
