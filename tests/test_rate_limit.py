import asyncio

import fakeredis
import pytest

from findclass.service.runtime import LOCAL_BUCKET_SWEEP_SECONDS, Runtime, check_rate_limit
from findclass.storage.redis_store import RedisStore


def _check(runtime, key, limit=5, window=60):
    return asyncio.run(check_rate_limit(runtime, key, limit, window, return_remaining=True))


class TestLocalBucket:
    def test_limit_then_refill(self, runtime, clock):
        for _ in range(5):
            assert _check(runtime, "login:alice@example.com")[0]
        allowed, remaining, reset_seconds = _check(runtime, "login:alice@example.com")
        assert not allowed
        assert remaining == 0
        assert reset_seconds > 0

        clock.advance(seconds=13)
        assert _check(runtime, "login:alice@example.com")[0]

    def test_zero_limit_disables(self, runtime):
        assert asyncio.run(check_rate_limit(runtime, "login:x", 0, 60)) is True

    def test_refilled_buckets_are_dropped(self, runtime, clock):
        for i in range(200):
            _check(runtime, f"login:user{i}@example.com")
        assert len(runtime._local_rate_limits) == 200

        clock.advance(seconds=LOCAL_BUCKET_SWEEP_SECONDS)
        _check(runtime, "login:late@example.com")

        assert list(runtime._local_rate_limits) == ["login:late@example.com"]

    def test_exhausted_buckets_survive_the_sweep(self, runtime, clock):
        for _ in range(5):
            _check(runtime, "login:alice@example.com", limit=5, window=3600)
        clock.advance(seconds=LOCAL_BUCKET_SWEEP_SECONDS)
        _check(runtime, "login:bob@example.com")

        assert "login:alice@example.com" in runtime._local_rate_limits


@pytest.fixture
def redis_runtime(settings, clock, notifier):
    store = RedisStore(client=fakeredis.FakeRedis(decode_responses=True), prefix="ratelimit-test")
    rt = Runtime(settings, store=store, clock=clock, notifier=notifier)
    yield rt
    rt.close()


def test_redis_store_bucket_is_used(redis_runtime):
    assert _check(redis_runtime, "reset:alice@example.com", limit=1)[0]
    assert not _check(redis_runtime, "reset:alice@example.com", limit=1)[0]
    assert redis_runtime._local_rate_limits == {}
