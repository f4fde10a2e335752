"""Unit tests for the in-memory token bucket limiter."""

import threading
from unittest.mock import Mock

import pytest

from ratekeeper.adapters.rate_limit.base import LimiterFunc
from ratekeeper.adapters.rate_limit.in_memory import InMemoryTokenBucketRateLimiter


def _limiter(rate: float, burst: int, **kwargs) -> tuple[InMemoryTokenBucketRateLimiter, Mock]:
    clock = Mock(return_value=1000.0)
    return InMemoryTokenBucketRateLimiter(rate, burst, clock=clock, **kwargs), clock


def test_allows_exactly_burst_without_elapsed_time() -> None:
    limiter, _ = _limiter(2.0, 3)

    results = [limiter.allow("u1") for _ in range(4)]

    assert results == [True, True, True, False]


def test_refills_after_waiting() -> None:
    limiter, clock = _limiter(1.0, 1)

    assert limiter.allow("k") is True
    assert limiter.allow("k") is False

    clock.return_value = 1001.1
    assert limiter.allow("k") is True
    assert limiter.allow("k") is False


def test_partial_refill_is_not_enough() -> None:
    limiter, clock = _limiter(2.0, 1)

    assert limiter.allow("k") is True

    clock.return_value = 1000.25  # 0.5 tokens
    assert limiter.allow("k") is False

    clock.return_value = 1000.5  # 0.5 + 0.5
    assert limiter.allow("k") is True


def test_refill_is_capped_at_burst() -> None:
    limiter, clock = _limiter(10.0, 2)

    assert limiter.allow("k") is True
    clock.return_value = 2000.0  # long idle, still only 2 tokens

    results = [limiter.allow("k") for _ in range(3)]

    assert results == [True, True, False]


def test_clock_going_backwards_never_removes_tokens() -> None:
    limiter, clock = _limiter(1.0, 2)

    assert limiter.allow("k") is True
    clock.return_value = 990.0

    assert limiter.allow("k") is True
    assert limiter.allow("k") is False


def test_isolated_by_key() -> None:
    limiter, _ = _limiter(2.0, 2)

    assert [limiter.allow("a") for _ in range(3)] == [True, True, False]
    assert [limiter.allow("b") for _ in range(2)] == [True, True]


@pytest.mark.parametrize("rate, burst", [(0.0, 5), (-1.0, 5), (1.0, 0), (1.0, -3)])
def test_non_positive_parameters_always_deny_without_state(rate: float, burst: int) -> None:
    limiter, _ = _limiter(rate, burst)

    assert limiter.allow("k") is False
    assert limiter.allow("k") is False
    assert len(limiter) == 0


@pytest.mark.parametrize("key", ["", " ", "user:123", "ключ-🔑"])
def test_any_key_is_accepted_verbatim(key: str) -> None:
    limiter, _ = _limiter(1.0, 1)

    assert limiter.allow(key) is True
    assert limiter.allow(key) is False


def test_buckets_are_created_lazily() -> None:
    limiter, _ = _limiter(1.0, 1)
    assert len(limiter) == 0

    limiter.allow("a")
    limiter.allow("a")
    limiter.allow("b")

    assert len(limiter) == 2


def test_concurrent_callers_share_one_bucket_per_key() -> None:
    limiter, _ = _limiter(1.0, 10)
    results: list[bool] = []
    results_lock = threading.Lock()
    start = threading.Barrier(50)

    def _caller() -> None:
        start.wait()
        allowed = limiter.allow("hot")
        with results_lock:
            results.append(allowed)

    threads = [threading.Thread(target=_caller) for _ in range(50)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(results) == 50
    assert sum(results) == 10
    assert len(limiter) == 1


def test_concurrent_keys_do_not_interfere() -> None:
    limiter, _ = _limiter(1.0, 3)
    counts: dict[str, int] = {}
    counts_lock = threading.Lock()

    def _caller(key: str) -> None:
        allowed = sum(limiter.allow(key) for _ in range(5))
        with counts_lock:
            counts[key] = allowed

    threads = [threading.Thread(target=_caller, args=(f"k-{i}",)) for i in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert counts == {f"k-{i}": 3 for i in range(20)}


def test_idle_buckets_are_evicted_once_full_again() -> None:
    limiter, clock = _limiter(1.0, 2, idle_ttl_seconds=30)

    assert limiter.allow("idle") is True
    clock.return_value = 1031.0

    limiter.allow("fresh")

    assert len(limiter) == 1
    # A recreated bucket is full, exactly like the refilled one would be
    assert [limiter.allow("idle") for _ in range(3)] == [True, True, False]


def test_idle_ttl_never_drops_a_bucket_that_is_still_refilling() -> None:
    # burst/rate = 100s, so a 5s idle ttl is raised to 100s
    limiter, clock = _limiter(0.1, 10, idle_ttl_seconds=5)

    assert all(limiter.allow("busy") for _ in range(10))
    clock.return_value = 1050.0

    limiter.allow("other")

    assert len(limiter) == 2
    # 50s * 0.1 = 5 tokens refilled, not a fresh bucket of 10
    assert sum(limiter.allow("busy") for _ in range(10)) == 5


def test_idle_sweep_runs_at_most_once_per_half_idle_period() -> None:
    # idle_after = 30s, so inserts sweep at most every 15s
    limiter, clock = _limiter(1.0, 2, idle_ttl_seconds=30)

    limiter.allow("a")
    clock.return_value = 1029.0
    limiter.allow("b")  # sweeps, "a" idle 29s is kept
    clock.return_value = 1035.0
    limiter.allow("c")  # 6s since last sweep, "a" survives though idle

    assert len(limiter) == 3

    clock.return_value = 1044.0
    limiter.allow("d")

    # "a" idle 44s goes; "b" and "c" have been idle under 30s
    assert len(limiter) == 3
    assert [limiter.allow("a") for _ in range(3)] == [True, True, False]


def test_no_eviction_by_default() -> None:
    limiter, clock = _limiter(1.0, 1)

    limiter.allow("a")
    clock.return_value = 10_000.0
    limiter.allow("b")

    assert len(limiter) == 2


def test_invalid_idle_ttl() -> None:
    with pytest.raises(ValueError):
        InMemoryTokenBucketRateLimiter(1.0, 1, idle_ttl_seconds=0)


def test_limiter_func_adapts_callables() -> None:
    seen: list[str] = []

    def _allow(key: str) -> bool:
        seen.append(key)
        return key == "vip"

    limiter = LimiterFunc(_allow)

    assert limiter.allow("vip") is True
    assert limiter.allow("anon") is False
    assert seen == ["vip", "anon"]
