"""Tests for the tenacity-backed retry policy."""

import pytest

from prsieve_core.retry import RetryPolicy, is_retryable_error


class _Flaky:
    def __init__(self, failures, error=ConnectionError("connection refused")):
        self.failures = failures
        self.error = error
        self.calls = 0

    def __call__(self, value):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return value * 2


def _policy(**kw):
    sleeps = []
    return RetryPolicy(sleep=sleeps.append, **kw), sleeps


class TestIsRetryable:
    @pytest.mark.parametrize(
        "error",
        [
            TimeoutError("slow"),
            ConnectionError("refused"),
            RuntimeError("HTTP 503 Service Unavailable"),
            RuntimeError("rate limit exceeded"),
            RuntimeError("Overloaded"),
        ],
    )
    def test_transient(self, error):
        assert is_retryable_error(error)

    @pytest.mark.parametrize("error", [ValueError("bad input"), KeyError("field"), RuntimeError("401 unauthorized")])
    def test_permanent(self, error):
        assert not is_retryable_error(error)


class TestRetryPolicy:
    def test_succeeds_after_transient_failures(self):
        policy, sleeps = _policy(max_attempts=3, base_delay=1, max_delay=10)
        fn = _Flaky(failures=2)
        assert policy.call(fn, 21) == 42
        assert fn.calls == 3
        assert len(sleeps) == 2

    def test_backoff_capped(self):
        policy, sleeps = _policy(max_attempts=5, base_delay=4, max_delay=5)
        policy.call(_Flaky(failures=4), 1)
        assert all(s <= 5 for s in sleeps)

    def test_reraises_original_error(self):
        policy, _ = _policy(max_attempts=2, base_delay=0)
        with pytest.raises(ConnectionError):
            policy.call(_Flaky(failures=5), 1)

    def test_non_retryable_not_retried(self):
        policy, sleeps = _policy(max_attempts=3)
        fn = _Flaky(failures=1, error=ValueError("nope"))
        with pytest.raises(ValueError):
            policy.call(fn, 1)
        assert fn.calls == 1
        assert sleeps == []

    def test_custom_predicate(self):
        policy, _ = _policy(max_attempts=3, base_delay=0, retryable=lambda e: isinstance(e, ValueError))
        assert policy.call(_Flaky(failures=1, error=ValueError("again")), 2) == 4

    def test_decorator_form(self):
        policy, _ = _policy(max_attempts=2, base_delay=0)
        fn = _Flaky(failures=1)
        assert policy(fn)(5) == 10

    def test_no_retry(self):
        fn = _Flaky(failures=1)
        with pytest.raises(ConnectionError):
            RetryPolicy(max_attempts=1).call(fn, 1)
        assert fn.calls == 1

    def test_from_config(self):
        policy = RetryPolicy.from_config({"retry": {"max_attempts": 7, "base_delay": 0.5, "max_delay": 3}})
        assert (policy.max_attempts, policy.base_delay, policy.max_delay) == (7, 0.5, 3)
