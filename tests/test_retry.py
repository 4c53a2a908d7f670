"""
Tests for the retry primitive and error classification.
"""

import asyncio
import random
import sys
from pathlib import Path
from unittest.mock import Mock

import pytest
import requests

sys.path.insert(0, str(Path(__file__).parent.parent))

from lp_swarm.errors import (
    ErrorKind, InsufficientFundsError, InvalidParamsError, NetworkError,
    ReplacementUnderpricedError, RetryExhaustedError, classify_error, is_fatal,
)
from lp_swarm.retry import (
    API_POLICY, POLLING_POLICY, RPC_READ_POLICY, TX_SUBMIT_POLICY,
    RetryPolicy, compute_delay, retry_async, with_retry,
)
from fakes import RecordingSleep

NO_JITTER = RetryPolicy(max_retries=4, base_delay=1.0, max_delay=3.0, jitter=False)


class Flaky:
    """Fails `failures` times with `error`, then returns "ok"."""

    def __init__(self, failures, error):
        self.failures = failures
        self.error = error
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


class TestComputeDelay:
    def test_exponential_then_capped(self):
        delays = [compute_delay(NO_JITTER, attempt) for attempt in range(1, 5)]
        assert delays == [1.0, 2.0, 3.0, 3.0]

    def test_jitter_adds_at_most_ten_percent(self):
        policy = RetryPolicy(base_delay=2.0, max_delay=30.0, jitter=True)
        rng = random.Random(7)
        for attempt in range(1, 6):
            base = min(2.0 * 2 ** (attempt - 1), 30.0)
            delay = compute_delay(policy, attempt, rng)
            assert base <= delay <= base * 1.1


class TestRetryAsync:
    def test_transient_errors_are_retried(self):
        """Network failures are retried until the call succeeds."""
        sleep = RecordingSleep()
        flaky = Flaky(2, NetworkError("connection reset"))
        result = asyncio.run(retry_async(flaky, NO_JITTER, sleep=sleep))
        assert result == "ok"
        assert flaky.calls == 3
        assert sleep.calls == [1.0, 2.0]

    def test_fatal_error_is_not_retried(self):
        """A fatal error propagates on the first failure, unwrapped."""
        sleep = RecordingSleep()
        flaky = Flaky(5, InvalidParamsError("bad token"))
        with pytest.raises(InvalidParamsError):
            asyncio.run(retry_async(flaky, NO_JITTER, sleep=sleep))
        assert flaky.calls == 1
        assert sleep.calls == []

    def test_insufficient_funds_is_not_retried(self):
        flaky = Flaky(5, InsufficientFundsError("empty"))
        with pytest.raises(InsufficientFundsError):
            asyncio.run(retry_async(flaky, NO_JITTER, sleep=RecordingSleep()))
        assert flaky.calls == 1

    def test_replacement_underpriced_is_left_to_gas_bumping(self):
        flaky = Flaky(5, ReplacementUnderpricedError("replacement transaction underpriced"))
        with pytest.raises(ReplacementUnderpricedError):
            asyncio.run(retry_async(flaky, NO_JITTER, sleep=RecordingSleep()))
        assert flaky.calls == 1

    def test_exhaustion_reports_attempts_and_delay(self):
        """After the last attempt the error carries attempt count and total backoff."""
        sleep = RecordingSleep()
        error = NetworkError("timeout talking to rpc")
        flaky = Flaky(10, error)
        with pytest.raises(RetryExhaustedError) as info:
            asyncio.run(retry_async(flaky, NO_JITTER, label="read", sleep=sleep))

        exhausted = info.value
        assert flaky.calls == 4
        assert exhausted.attempts == 4
        assert exhausted.total_delay == pytest.approx(1.0 + 2.0 + 3.0)
        assert exhausted.last_error is error
        assert exhausted.kind == ErrorKind.NETWORK
        assert "read failed after 4 attempts" in str(exhausted)

    def test_decorator(self):
        calls = []

        @with_retry(RetryPolicy(max_retries=3, base_delay=0, jitter=False), label="decorated")
        async def fetch(value):
            calls.append(value)
            if len(calls) < 2:
                raise NetworkError("flaky")
            return value * 2

        assert asyncio.run(fetch(21)) == 42
        assert calls == [21, 21]


class TestPresets:
    def test_submission_is_most_conservative(self):
        """Transaction submission retries least; polling retries most."""
        assert TX_SUBMIT_POLICY.max_retries < RPC_READ_POLICY.max_retries
        assert POLLING_POLICY.max_retries > API_POLICY.max_retries > RPC_READ_POLICY.max_retries
        assert POLLING_POLICY.max_delay < RPC_READ_POLICY.max_delay

    def test_with_overrides(self):
        policy = RPC_READ_POLICY.with_overrides(max_retries=9)
        assert policy.max_retries == 9
        assert policy.base_delay == RPC_READ_POLICY.base_delay


class TestClassifyError:
    def test_bot_errors_keep_their_kind(self):
        assert classify_error(InsufficientFundsError("x")) == ErrorKind.INSUFFICIENT_FUNDS
        assert classify_error(NetworkError("x", kind=ErrorKind.TIMEOUT)) == ErrorKind.TIMEOUT

    def test_message_patterns(self):
        assert classify_error(Exception("insufficient funds for gas * price + value")) == ErrorKind.INSUFFICIENT_FUNDS
        assert classify_error(Exception("replacement transaction underpriced")) == ErrorKind.REPLACEMENT_UNDERPRICED
        assert classify_error(Exception("429 Too Many Requests")) == ErrorKind.RATE_LIMITED
        assert classify_error(Exception("nonce too low")) == ErrorKind.NETWORK

    def test_http_errors(self):
        response = Mock(status_code=429)
        assert classify_error(requests.exceptions.HTTPError(response=response)) == ErrorKind.RATE_LIMITED
        assert classify_error(requests.exceptions.ConnectionError("down")) == ErrorKind.NETWORK

    def test_timeouts(self):
        assert classify_error(asyncio.TimeoutError()) == ErrorKind.TIMEOUT

    def test_programming_errors_are_fatal(self):
        assert is_fatal(ValueError("bad"))
        assert is_fatal(KeyError("missing"))
        assert not is_fatal(RuntimeError("socket closed"))
