"""Tests for retry_with_backoff."""

import pytest

from quartermaster.errors import ToolCallFailure, TransientToolError
from quartermaster.retry import retry_with_backoff


def flaky(failures, exc=TransientToolError("503")):
    calls = []

    def fn():
        calls.append(1)
        if len(calls) <= failures:
            raise exc
        return "ok"

    return fn, calls


def transient(e):
    return isinstance(e, TransientToolError)


def test_succeeds_after_retries():
    fn, calls = flaky(2)
    sleeps = []
    assert retry_with_backoff(fn, base_delay=0.5, is_retryable=transient, sleep=sleeps.append) == "ok"
    assert len(calls) == 3
    assert sleeps == [0.5, 1.0]


def test_exhausted_reraises_last_error():
    fn, calls = flaky(5)
    with pytest.raises(TransientToolError):
        retry_with_backoff(fn, max_attempts=3, is_retryable=transient, sleep=lambda _: None)
    assert len(calls) == 3


def test_non_retryable_propagates_immediately():
    fn, calls = flaky(1, ToolCallFailure("vendor-risk", 400, "bad request"))
    with pytest.raises(ToolCallFailure):
        retry_with_backoff(fn, is_retryable=transient, sleep=lambda _: None)
    assert len(calls) == 1


def test_on_retry_hook():
    fn, _ = flaky(1)
    seen = []
    retry_with_backoff(
        fn,
        base_delay=2.0,
        is_retryable=transient,
        sleep=lambda _: None,
        on_retry=lambda attempt, e, delay: seen.append((attempt, delay)),
    )
    assert seen == [(1, 2.0)]


def test_rejects_zero_attempts():
    with pytest.raises(ValueError):
        retry_with_backoff(lambda: None, max_attempts=0, is_retryable=transient)
