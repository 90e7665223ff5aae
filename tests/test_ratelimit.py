"""Tests for the token bucket rate limiter."""

import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from fastapi import Request, Response

from stockroom.errors import RateLimitedError
from stockroom.ratelimit import (
    RETRY_AFTER_SECONDS,
    STALE_AFTER_SECONDS,
    RateLimiter,
    RateLimiterStore,
)


class TestConsume:
    """RateLimiterStore.consume."""

    def test_new_bucket_starts_full(self, clock):
        store = RateLimiterStore(clock)
        assert store.consume("1.2.3.4", max_tokens=10, refill_rate=1) is True
        assert store.remaining("1.2.3.4") == 9

    def test_denies_after_capacity_without_refill(self, clock):
        store = RateLimiterStore(clock)
        results = [store.consume("same-ip", max_tokens=2, refill_rate=0) for _ in range(3)]
        assert results == [True, True, False]

    def test_refill_allows_another_call(self, clock):
        store = RateLimiterStore(clock)
        assert store.consume("k", 2, 0.5)
        assert store.consume("k", 2, 0.5)
        assert store.consume("k", 2, 0.5) is False

        clock.advance(1.0)  # 0.5 tokens
        assert store.consume("k", 2, 0.5) is False

        clock.advance(1.5)  # 0.5 + 0.75 tokens
        assert store.consume("k", 2, 0.5) is True

    def test_refill_capped_at_max_tokens(self, clock):
        store = RateLimiterStore(clock)
        store.consume("k", 3, 10)
        clock.advance(3600)
        store.consume("k", 3, 10)
        assert store.remaining("k") == 2

    def test_denied_consume_still_updates_refill_time(self, clock):
        store = RateLimiterStore(clock)
        store.consume("k", 1, 1)
        clock.advance(0.5)
        assert store.consume("k", 1, 1) is False

        bucket = store.get_bucket("k")
        assert bucket.last_refill == clock.now
        assert bucket.tokens == pytest.approx(0.5)

    def test_cost_greater_than_one(self, clock):
        store = RateLimiterStore(clock)
        assert store.consume("k", 5, 0, cost=3) is True
        assert store.consume("k", 5, 0, cost=3) is False
        assert store.remaining("k") == 2

    def test_keys_are_independent(self, clock):
        store = RateLimiterStore(clock)
        assert store.consume("a", 1, 0)
        assert store.consume("a", 1, 0) is False
        assert store.consume("b", 1, 0) is True

    def test_remaining_is_floored(self, clock):
        store = RateLimiterStore(clock)
        store.consume("k", 5, 1)
        store.consume("k", 5, 1)
        store.consume("k", 5, 1)
        clock.advance(0.7)
        store.consume("k", 5, 1)
        assert store.get_bucket("k").tokens == pytest.approx(1.7)
        assert store.remaining("k") == 1

    def test_remaining_unknown_key(self, clock):
        assert RateLimiterStore(clock).remaining("nobody") == 0

    def test_consume_with_remaining_reports_post_spend_count(self, clock):
        store = RateLimiterStore(clock)
        assert store.consume_with_remaining("k", 3, 0) == (True, 2)
        assert store.consume_with_remaining("k", 3, 0) == (True, 1)
        assert store.consume_with_remaining("k", 3, 0) == (True, 0)
        assert store.consume_with_remaining("k", 3, 0) == (False, 0)


class TestConcurrency:
    """Check-and-decrement is atomic per key."""

    def test_threads_never_overspend(self):
        store = RateLimiterStore()
        barrier = threading.Barrier(10)

        def attempt(_):
            barrier.wait()
            return store.consume("shared", max_tokens=5, refill_rate=0)

        with ThreadPoolExecutor(max_workers=10) as pool:
            results = list(pool.map(attempt, range(10)))

        assert results.count(True) == 5
        assert results.count(False) == 5

    def test_last_token_goes_to_exactly_one_caller(self):
        for _ in range(20):
            store = RateLimiterStore()
            store.consume("k", 2, 0)
            barrier = threading.Barrier(2)

            def attempt(_):
                barrier.wait()
                return store.consume("k", 2, 0)

            with ThreadPoolExecutor(max_workers=2) as pool:
                results = list(pool.map(attempt, range(2)))
            assert sorted(results) == [False, True]

    @pytest.mark.asyncio
    async def test_concurrent_tasks(self):
        store = RateLimiterStore()

        async def attempt():
            await asyncio.sleep(0)
            return store.consume("k", 5, 0)

        results = await asyncio.gather(*[attempt() for _ in range(10)])
        assert results.count(True) == 5


class TestCleanup:
    """Idle bucket eviction."""

    def test_evicts_old_empty_buckets(self, clock):
        store = RateLimiterStore(clock)
        store.consume("idle", 1, 0)
        clock.advance(STALE_AFTER_SECONDS + 1)

        assert store.cleanup() == 1
        assert "idle" not in store

    def test_keeps_recent_empty_buckets(self, clock):
        store = RateLimiterStore(clock)
        store.consume("busy", 1, 0)
        clock.advance(60)

        assert store.cleanup() == 0
        assert "busy" in store

    def test_keeps_old_buckets_with_tokens(self, clock):
        store = RateLimiterStore(clock)
        store.consume("regenerated", 5, 1)
        clock.advance(STALE_AFTER_SECONDS * 2)

        assert store.cleanup() == 0
        assert "regenerated" in store

    def test_clear(self, clock):
        store = RateLimiterStore(clock)
        store.consume("a", 1, 0)
        store.consume("b", 1, 0)
        store.clear()
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_background_task_runs_and_stops(self, clock):
        store = RateLimiterStore(clock)
        store.consume("idle", 1, 0)
        clock.advance(STALE_AFTER_SECONDS + 1)

        store.start(interval=0.01)
        for _ in range(100):
            if "idle" not in store:
                break
            await asyncio.sleep(0.01)
        await store.shutdown()

        assert "idle" not in store
        assert store._cleanup_task is None

    @pytest.mark.asyncio
    async def test_shutdown_without_start(self):
        await RateLimiterStore().shutdown()


def test_retry_after_policy():
    assert RETRY_AFTER_SECONDS == 60


def make_request(client_ip: str = "10.0.0.1") -> Request:
    return Request(
        {
            "type": "http",
            "method": "GET",
            "scheme": "http",
            "server": ("testserver", 80),
            "path": "/stores/1/inventory/low-stock",
            "query_string": b"",
            "headers": [],
            "client": (client_ip, 50000),
        }
    )


class InterleavingStore(RateLimiterStore):
    """Another client spends a token right after each consume."""

    def consume_with_remaining(self, key, max_tokens, refill_rate, cost=1):
        result = super().consume_with_remaining(key, max_tokens, refill_rate, cost)
        super().consume_with_remaining(key, max_tokens, refill_rate, cost)
        return result


class TestRateLimiterDependency:
    @pytest.mark.asyncio
    async def test_remaining_header_matches_this_request(self, clock):
        limiter = RateLimiter(InterleavingStore(clock), max_tokens=5, refill_rate=0)
        response = Response()

        await limiter(make_request(), response)

        assert response.headers["X-RateLimit-Limit"] == "5"
        assert response.headers["X-RateLimit-Remaining"] == "4"

    @pytest.mark.asyncio
    async def test_denied_request_raises(self, clock):
        limiter = RateLimiter(RateLimiterStore(clock), max_tokens=1, refill_rate=0)
        await limiter(make_request(), Response())

        with pytest.raises(RateLimitedError) as exc_info:
            await limiter(make_request(), Response())

        assert exc_info.value.headers["Retry-After"] == str(RETRY_AFTER_SECONDS)
