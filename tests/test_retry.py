"""
Tests for timeout and retry helpers.
"""

import random
import threading
import time

import pytest

from runner_autoscaler.clock import ManualClock
from runner_autoscaler.config import RetryPolicy
from runner_autoscaler.errors import (
    TransientProviderError, RateLimitError, ProviderError, RetryError, OperationCancelled,
)
from runner_autoscaler.retry import TimeoutCaller, retry_call


class Flaky:
    """Callable failing a set number of times before succeeding"""

    def __init__(self, failures, error=None):
        self.failures = failures
        self.error = error or TransientProviderError("temporary")
        self.calls = 0

    def __call__(self, value="ok"):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return value


class TestRetryCall:
    """Test retry_call behaviour"""

    def setup_method(self):
        """Setup test fixtures"""
        self.clock = ManualClock()
        self.policy = RetryPolicy(max_retries=2, base_delay=1.0, max_delay=10.0, jitter=False)

    def test_success_after_retries(self):
        """Test transient failures are retried with backoff"""
        func = Flaky(2)

        result = retry_call(func, "done", policy=self.policy, clock=self.clock)

        assert result == "done"
        assert func.calls == 3
        assert self.clock.total_slept == pytest.approx(3.0)

    def test_exhaustion_raises_retry_error(self):
        """Test exhausted attempts surface the last error"""
        func = Flaky(5)

        with pytest.raises(RetryError) as exc_info:
            retry_call(func, policy=self.policy, clock=self.clock)

        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_exception, TransientProviderError)
        assert func.calls == 3

    def test_permanent_errors_propagate(self):
        """Test non-retryable errors are raised immediately"""
        func = Flaky(1, error=ProviderError("forbidden"))

        with pytest.raises(ProviderError, match="forbidden"):
            retry_call(func, policy=self.policy, clock=self.clock)

        assert func.calls == 1

    def test_retry_after_is_honoured(self):
        """Test rate-limit hints lengthen the delay"""
        func = Flaky(1, error=RateLimitError(retry_after=7.5))
        delays = []

        retry_call(func, policy=self.policy, clock=self.clock,
                   on_retry=lambda attempt, exc, delay: delays.append(delay))

        assert delays == [7.5]

    def test_cancel_before_attempt(self):
        """Test a set cancel event stops before calling"""
        cancel = threading.Event()
        cancel.set()
        func = Flaky(0)

        with pytest.raises(OperationCancelled):
            retry_call(func, policy=self.policy, clock=self.clock, cancel=cancel)

        assert func.calls == 0

    def test_cancel_during_backoff(self):
        """Test cancelling while backing off aborts the retry"""
        cancel = threading.Event()

        def fail_and_cancel():
            cancel.set()
            raise TransientProviderError("temporary")

        with pytest.raises(OperationCancelled):
            retry_call(fail_and_cancel, policy=self.policy, clock=self.clock, cancel=cancel)

    def test_jitter_within_bounds(self):
        """Test jittered delays stay within half to full delay"""
        policy = RetryPolicy(max_retries=3, base_delay=2.0, max_delay=60.0, jitter=True)
        rng = random.Random(3)

        for attempt in range(1, 4):
            nominal = 2.0 * 2 ** (attempt - 1)
            delay = policy.compute_delay(attempt, rng)
            assert nominal / 2 <= delay <= nominal


class TestTimeoutCaller:
    """Test call deadlines"""

    def setup_method(self):
        """Setup test fixtures"""
        self.caller = TimeoutCaller(default_timeout=0.1, max_workers=2)

    def teardown_method(self):
        """Cleanup"""
        self.caller.shutdown(wait=False)

    def test_returns_result(self):
        """Test fast calls return their result"""
        assert self.caller.call(lambda a, b: a + b, 2, 3) == 5

    def test_timeout_is_transient(self):
        """Test hung calls become transient errors"""
        release = threading.Event()

        def hang():
            release.wait(2.0)

        try:
            with pytest.raises(TransientProviderError, match="timed out"):
                self.caller.call(hang, timeout=0.05)
        finally:
            release.set()

    def test_errors_propagate(self):
        """Test exceptions from the call are re-raised"""
        def fail():
            raise ProviderError("bad request")

        with pytest.raises(ProviderError, match="bad request"):
            self.caller.call(fail)

    def test_per_call_timeout(self):
        """Test an explicit timeout overrides the default"""
        def slow():
            time.sleep(0.2)
            return "late"

        assert self.caller.call(slow, timeout=2.0) == "late"
