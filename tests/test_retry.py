"""RetryPolicy 与错误分类测试。"""

import pytest

from crawlqueue.core.errors import (
    ErrorClass,
    HttpStatusError,
    MalformedResponseError,
    PermanentFetchError,
    TransientFetchError,
)
from crawlqueue.scheduling.retry import DeadLetter, RetryAfter, RetryPolicy, classify_error
from crawlqueue.scheduling.tasks import DeadLetterReason


def test_backoff_sequence_then_exhausted():
    """max_attempts=3, base=1s, max=4s：依次 1s、2s、4s，之后进入死信"""
    policy = RetryPolicy(max_attempts=3, base_backoff=1.0, max_backoff=4.0)

    decisions = [policy.decide(attempt, ErrorClass.TRANSIENT) for attempt in range(4)]

    assert decisions[:3] == [RetryAfter(1.0), RetryAfter(2.0), RetryAfter(4.0)]
    assert decisions[3] == DeadLetter(DeadLetterReason.EXHAUSTED)


def test_delays_non_decreasing_and_capped():
    policy = RetryPolicy(max_attempts=100, base_backoff=0.5, max_backoff=30.0)

    delays = [policy.backoff(a) for a in range(100)]

    assert delays == sorted(delays)
    assert max(delays) == 30.0
    assert all(d <= 30.0 for d in delays)


def test_large_attempt_does_not_overflow():
    policy = RetryPolicy(max_attempts=10_000, base_backoff=1.0, max_backoff=10.0)

    assert policy.backoff(5000) == 10.0


def test_permanent_error_dead_letters_immediately():
    policy = RetryPolicy(max_attempts=5)

    assert policy.decide(0, ErrorClass.PERMANENT) == DeadLetter(DeadLetterReason.PERMANENT)


def test_zero_max_attempts_never_retries():
    policy = RetryPolicy(max_attempts=0)

    assert policy.decide(0, ErrorClass.TRANSIENT) == DeadLetter(DeadLetterReason.EXHAUSTED)


def test_jitter_stays_within_bounds():
    policy = RetryPolicy(max_attempts=5, base_backoff=2.0, max_backoff=8.0, jitter=0.25)

    low = policy.decide(0, ErrorClass.TRANSIENT, rand=0.0)
    high = policy.decide(0, ErrorClass.TRANSIENT, rand=0.999999)
    capped = policy.decide(3, ErrorClass.TRANSIENT, rand=0.999999)

    assert isinstance(low, RetryAfter) and low.delay == pytest.approx(1.5)
    assert isinstance(high, RetryAfter) and high.delay == pytest.approx(2.5, rel=1e-3)
    assert isinstance(capped, RetryAfter) and capped.delay == 8.0


@pytest.mark.parametrize(
    "kwargs",
    [{"max_attempts": -1}, {"base_backoff": -1.0}, {"jitter": 0.6}],
)
def test_invalid_policy_rejected(kwargs):
    with pytest.raises(ValueError):
        RetryPolicy(**kwargs)


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (TimeoutError(), ErrorClass.TRANSIENT),
        (ConnectionResetError(), ErrorClass.TRANSIENT),
        (TransientFetchError("reset"), ErrorClass.TRANSIENT),
        (HttpStatusError(503), ErrorClass.TRANSIENT),
        (HttpStatusError(429), ErrorClass.TRANSIENT),
        (HttpStatusError(404), ErrorClass.PERMANENT),
        (HttpStatusError(410, "https://example.com/"), ErrorClass.PERMANENT),
        (PermanentFetchError("nope"), ErrorClass.PERMANENT),
        (MalformedResponseError("bad body"), ErrorClass.PERMANENT),
        (ValueError("bad json"), ErrorClass.PERMANENT),
        (RuntimeError("unknown"), ErrorClass.TRANSIENT),
    ],
)
def test_classify_error(exc, expected):
    assert classify_error(exc) is expected
