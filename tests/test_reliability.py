"""
Tests for the retry policy — backoff, transient vs permanent, readiness polling.
"""

import pytest

from converge.core.errors import ProviderError
from converge.core.models.project import RetrySettings
from converge.core.reliability.retry import RetryPolicy, immediate_policy


class FakeClock:
    """Deterministic clock advanced by the fake sleep."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    def __call__(self) -> float:
        return self.now


def _flaky(failures: int, transient: bool = True):
    state = {"calls": 0}

    def fn():
        state["calls"] += 1
        if state["calls"] <= failures:
            raise ProviderError("busy", transient=transient, resource="web")
        return "ok"

    return fn, state


class TestBackoff:
    def test_exponential_without_jitter(self):
        policy = RetryPolicy(base_delay=1.0, multiplier=2.0, max_delay=5.0, jitter=0.0)
        assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]

    def test_jitter_bounded(self):
        policy = RetryPolicy(base_delay=1.0, jitter=0.5)
        for _ in range(20):
            assert 1.0 <= policy.delay_for(1) <= 1.5

    def test_jitter_never_exceeds_max_delay(self):
        policy = RetryPolicy(base_delay=4.0, max_delay=5.0, jitter=0.5)
        for attempt in (1, 2, 3, 6):
            for _ in range(20):
                assert policy.delay_for(attempt) <= 5.0

    def test_from_settings(self):
        policy = RetryPolicy.from_settings(RetrySettings(max_attempts=7, base_delay=0.5))
        assert policy.max_attempts == 7
        assert policy.base_delay == 0.5


class TestCall:
    def test_transient_then_success(self):
        clock = FakeClock()
        policy = RetryPolicy(max_attempts=5, base_delay=1.0, jitter=0.0, sleep=clock.sleep, clock=clock)
        fn, state = _flaky(2)
        assert policy.call(fn) == "ok"
        assert state["calls"] == 3
        assert clock.sleeps == [1.0, 2.0]

    def test_permanent_not_retried(self):
        fn, state = _flaky(5, transient=False)
        with pytest.raises(ProviderError, match="busy"):
            immediate_policy().call(fn)
        assert state["calls"] == 1

    def test_attempts_exhausted(self):
        fn, state = _flaky(10)
        with pytest.raises(ProviderError, match="create web failed after 3 attempts") as exc:
            immediate_policy(max_attempts=3).call(fn, "create web")
        assert state["calls"] == 3
        assert exc.value.transient is False
        assert exc.value.resource == "web"

    def test_deadline(self):
        clock = FakeClock()
        policy = RetryPolicy(
            max_attempts=10, base_delay=10.0, jitter=0.0, timeout=25.0,
            sleep=clock.sleep, clock=clock,
        )
        fn, state = _flaky(10)
        with pytest.raises(ProviderError, match="timed out"):
            policy.call(fn)
        # 10s + 20s would overshoot the 25s deadline
        assert clock.sleeps == [10.0]
        assert state["calls"] == 2


class TestWaitUntil:
    def test_returns_first_ready(self):
        results = iter(["booting", "booting", "running"])
        value = immediate_policy().wait_until(lambda: next(results), lambda s: s == "running")
        assert value == "running"

    def test_transient_probe_error_counts_as_not_ready(self):
        fn, state = _flaky(1)
        assert immediate_policy().wait_until(fn, lambda v: v == "ok") == "ok"
        assert state["calls"] == 2

    def test_permanent_probe_error_raises(self):
        fn, _ = _flaky(1, transient=False)
        with pytest.raises(ProviderError, match="busy"):
            immediate_policy().wait_until(fn, lambda v: True)

    def test_gives_up(self):
        calls = []
        with pytest.raises(ProviderError, match="Gave up waiting for web after 4 polls"):
            immediate_policy(max_polls=4).wait_until(
                lambda: calls.append(1), lambda _v: False, "web"
            )
        assert len(calls) == 4

    def test_gives_up_reports_last_error(self):
        fn, _ = _flaky(99)
        with pytest.raises(ProviderError, match="last error: busy"):
            immediate_policy(max_polls=2).wait_until(fn, lambda v: True)
