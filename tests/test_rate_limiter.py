# tests/test_rate_limiter.py
from __future__ import annotations

import threading

import pytest

from rate_limiter import (
    DEFAULT_LIMITS,
    LimiterConfig,
    RateLimiter,
    RateLimitStore,
    action_key,
    build_default_registry,
    get_client_ip,
)


class FakeClock:
    """Millisecond clock the tests move by hand."""

    def __init__(self, now: int = 0):
        self.now = now

    def __call__(self) -> int:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return RateLimitStore(clock=clock)


def _limiter(store, window_ms=10_000, max_requests=5):
    config = LimiterConfig("like", window_ms, max_requests, key_func=lambda req: req)
    return RateLimiter(config, store)


def test_window_admits_quota_then_rejects_then_resets(store, clock):
    """Five admits at t=0..4, reject at t=5, fresh window at t=10001."""
    limiter = _limiter(store)

    remaining = []
    for t in range(5):
        clock.now = t
        decision = limiter.check("k")
        assert decision.admitted
        remaining.append(decision.remaining)
    assert remaining == [4, 3, 2, 1, 0]

    clock.now = 5
    rejected = limiter.check("k")
    assert not rejected.admitted
    assert rejected.remaining == 0
    assert rejected.reset_time == 10_000
    assert rejected.reason == "Rate limit exceeded"

    clock.now = 10_001
    fresh = limiter.check("k")
    assert fresh.admitted
    assert fresh.remaining == 4
    assert fresh.reset_time == 20_001


def test_window_expires_exactly_at_reset_time(store, clock):
    limiter = _limiter(store, window_ms=100, max_requests=1)
    assert limiter.check("k").admitted
    clock.now = 99
    assert not limiter.check("k").admitted
    clock.now = 100
    decision = limiter.check("k")
    assert decision.admitted and decision.remaining == 0


def test_rejections_do_not_extend_window(store, clock):
    limiter = _limiter(store, window_ms=1_000, max_requests=1)
    limiter.check("k")
    for t in (10, 500, 999):
        clock.now = t
        assert limiter.check("k").reset_time == 1_000


def test_no_carryover_after_unused_window(store, clock):
    limiter = _limiter(store, window_ms=1_000, max_requests=3)
    limiter.check("k")
    clock.now = 5_000
    assert limiter.check("k").remaining == 2


def test_distinct_keys_are_isolated(store):
    limiter = _limiter(store, max_requests=1)
    assert limiter.check("a").admitted
    assert not limiter.check("a").admitted
    assert limiter.check("b").admitted


def test_check_key_bypasses_key_func(store):
    limiter = _limiter(store, max_requests=2)
    limiter.check("user-1")
    assert limiter.check_key("user-1").remaining == 0


def test_sweep_removes_only_expired_windows(store, clock):
    short = _limiter(store, window_ms=100)
    long = _limiter(store, window_ms=10_000)
    short.check("short")
    long.check("long")

    clock.now = 100
    assert store.sweep() == 1
    assert "short" not in store
    assert "long" in store
    assert len(store) == 1

    assert store.sweep(now=10_000) == 1
    assert len(store) == 0


def test_sweep_with_nothing_expired(store):
    _limiter(store).check("k")
    assert store.sweep() == 0
    assert len(store) == 1


def test_concurrent_checks_never_exceed_cap():
    store = RateLimitStore()
    limiter = RateLimiter(
        LimiterConfig("comment", 60_000, 7, key_func=lambda req: req), store
    )
    barrier = threading.Barrier(50)
    results = []
    lock = threading.Lock()

    def worker():
        barrier.wait()
        decision = limiter.check("shared")
        with lock:
            results.append(decision.admitted)

    threads = [threading.Thread(target=worker) for _ in range(50)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 7
    assert results.count(False) == 43


def test_start_and_stop_background_sweep(clock):
    store = RateLimitStore(sweep_interval=0.01, clock=clock)
    _limiter(store, window_ms=10).check("k")
    clock.now = 50

    store.start()
    store.start()  # idempotent
    assert store.running
    finished = threading.Event()

    def wait_for_sweep():
        while len(store):
            if finished.wait(0.01):
                return

    waiter = threading.Thread(target=wait_for_sweep)
    waiter.start()
    waiter.join(timeout=2)
    finished.set()
    store.stop()

    assert len(store) == 0
    assert not store.running


def test_stop_without_start_is_harmless():
    RateLimitStore().stop()


@pytest.mark.parametrize("window_ms,max_requests", [(0, 1), (1, 0), (-5, 3)])
def test_invalid_config_is_rejected(window_ms, max_requests):
    with pytest.raises(ValueError):
        LimiterConfig("x", window_ms, max_requests, key_func=str)


def test_invalid_sweep_interval():
    with pytest.raises(ValueError):
        RateLimitStore(sweep_interval=0)


# ---------- client key derivation ----------

def test_forwarded_for_uses_first_entry_trimmed():
    assert get_client_ip({"x-forwarded-for": "1.2.3.4, 5.6.7.8"}) == "1.2.3.4"


def test_no_headers_falls_back_to_unknown():
    assert get_client_ip({}) == "unknown"
    assert action_key("comment")({}) == "comment-unknown"


def test_header_precedence():
    headers = {
        "X-Forwarded-For": "9.9.9.9",
        "X-Real-IP": "8.8.8.8",
        "CF-Connecting-IP": "7.7.7.7",
    }
    assert get_client_ip(headers) == "7.7.7.7"
    del headers["CF-Connecting-IP"]
    assert get_client_ip(headers) == "8.8.8.8"
    del headers["X-Real-IP"]
    assert get_client_ip(headers) == "9.9.9.9"


def test_blank_headers_are_ignored():
    assert get_client_ip({"cf-connecting-ip": "  ", "x-forwarded-for": " , 1.1.1.1"}) == "unknown"


def test_request_like_object_is_accepted():
    class Req:
        headers = {"x-real-ip": "10.0.0.1"}

    assert get_client_ip(Req()) == "10.0.0.1"
    assert get_client_ip(None) == "unknown"


def test_action_keys_give_independent_quotas(store):
    registry = build_default_registry(store)
    headers = {"x-real-ip": "1.1.1.1"}

    assert registry["image-upload"].check(headers).admitted
    assert not registry["image-upload"].check(headers).admitted
    assert registry["comment"].check(headers).admitted
    assert "image-upload-1.1.1.1" in store
    assert "comment-1.1.1.1" in store


# ---------- registry ----------

def test_default_registry_table(store):
    registry = build_default_registry(store)
    table = {
        name: (limiter.config.window_ms, limiter.max_requests)
        for name, limiter in registry.items()
    }
    assert table == {
        "recipe-create": (60_000, 2),
        "recipe-update": (30_000, 3),
        "like": (10_000, 5),
        "comment": (30_000, 3),
        "image-upload": (60_000, 1),
    }
    assert len(registry) == len(DEFAULT_LIMITS)
    assert all(limiter.store is store for limiter in registry.values())


def test_registry_rejects_duplicates_and_unknown_names(store):
    registry = build_default_registry(store)
    with pytest.raises(ValueError):
        registry.register("like", window_ms=1, max_requests=1)
    with pytest.raises(KeyError):
        registry["delete-everything"]


def test_non_text_header_values_do_not_raise():
    assert get_client_ip({"x-forwarded-for": ["1.2.3.4", "5.6.7.8"]}) == "1.2.3.4"
    assert get_client_ip({"x-real-ip": [b"10.0.0.2"]}) == "10.0.0.2"
    assert get_client_ip({"cf-connecting-ip": 1234, "x-forwarded-for": None}) == "unknown"


def test_source_without_headers_uses_unknown_bucket(store):
    registry = build_default_registry(store)
    decision = registry["like"].check(object())
    assert decision.admitted
    assert "like-unknown" in store


def test_stop_timeout_keeps_single_sweep_thread():
    entered = threading.Event()
    release = threading.Event()

    def slow_clock():
        if threading.current_thread().name == "rate-limit-sweep":
            entered.set()
            release.wait(2)
        return 0

    store = RateLimitStore(sweep_interval=0.01, clock=slow_clock)
    store.start()
    assert entered.wait(2)
    first = store._thread

    store.stop(timeout=0.01)
    assert store.running
    store.start()
    assert store._thread is first
    sweepers = [t for t in threading.enumerate() if t.name == "rate-limit-sweep"]
    assert sweepers == [first]

    release.set()
    store.stop()
    assert not store.running
