import pytest
from hypothesis import given, settings, strategies as st

from replica_sync import RetryExhaustedError, RetryPolicy


def make_failing(failures: int, exc_type=PermissionError):
    calls = {"count": 0}

    def func():
        calls["count"] += 1
        if calls["count"] <= failures:
            raise exc_type(f"locked #{calls['count']}")
        return "done"

    return func, calls


def test_default_delays_double_per_attempt():
    policy = RetryPolicy()
    assert policy.delay(1) == pytest.approx(0.2)
    assert policy.delay(2) == pytest.approx(0.4)


@given(st.integers(min_value=1, max_value=10), st.floats(min_value=0.001, max_value=5.0))
@settings(max_examples=50, deadline=None)
def test_delay_is_exponential(attempt, base_delay):
    policy = RetryPolicy(base_delay=base_delay)
    assert policy.delay(attempt) == pytest.approx(base_delay * 2 ** attempt)
    assert policy.delay(attempt + 1) == pytest.approx(2 * policy.delay(attempt))


def test_succeeds_after_transient_failure():
    sleeps = []
    func, calls = make_failing(1)
    policy = RetryPolicy(sleep=sleeps.append)

    assert policy.call(func) == "done"
    assert calls["count"] == 2
    assert sleeps == [pytest.approx(0.2)]


def test_exhaustion_raises_aggregate_with_every_error():
    sleeps = []
    func, calls = make_failing(10)
    policy = RetryPolicy(max_attempts=3, sleep=sleeps.append)

    with pytest.raises(RetryExhaustedError) as info:
        policy.call(func, description="delete old.txt")

    err = info.value
    assert calls["count"] == 3
    assert len(err.errors) == 3
    assert all(isinstance(e, PermissionError) for e in err.errors)
    assert [str(e) for e in err.errors] == ["locked #1", "locked #2", "locked #3"]
    assert err.__cause__ is err.errors[-1]
    assert "delete old.txt" in str(err)
    assert sleeps == [pytest.approx(0.2), pytest.approx(0.4)]


def test_single_attempt_never_sleeps():
    sleeps = []
    func, _ = make_failing(1)
    with pytest.raises(RetryExhaustedError) as info:
        RetryPolicy(max_attempts=1, sleep=sleeps.append).call(func)
    assert len(info.value.errors) == 1
    assert sleeps == []


def test_non_retryable_error_propagates_immediately():
    sleeps = []
    func, calls = make_failing(5, exc_type=ValueError)
    with pytest.raises(ValueError):
        RetryPolicy(sleep=sleeps.append).call(func)
    assert calls["count"] == 1
    assert sleeps == []


def test_retry_warnings_are_logged(logger, recorder):
    func, _ = make_failing(2)
    RetryPolicy(sleep=lambda _: None).call(func, description="delete x", logger=logger)
    assert len(recorder.containing("Retrying delete x")) == 2


@pytest.mark.parametrize("kwargs", [{"max_attempts": 0}, {"base_delay": -1.0}])
def test_invalid_policy_rejected(kwargs):
    with pytest.raises(ValueError):
        RetryPolicy(**kwargs)
