"""Tests for fixed-window rate limiting over the entity store."""

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from linkhub.service import audit as audit_module
from linkhub.service.audit import AuditLogger, InMemoryAuditSink, SecurityEvent
from linkhub.service.errors import RateLimitedError, ServerError
from linkhub.service.rate_limit import RateLimiter
from linkhub.storage.errors import StoreUnavailableError
from linkhub.storage.memory import MemoryStore
from linkhub.storage.redis_cache import RedisCache, SyncRedisCache
from linkhub.storage.repository import RATE_LIMITS, AuthRepository


class BrokenRepository:
    def increment_counter(self, key, *, expires_at):
        raise StoreUnavailableError("entity store unavailable")

    def get_counter(self, key):
        raise StoreUnavailableError("entity store unavailable")


class LevelRecorder:
    def __init__(self):
        self.calls = []

    def __getattr__(self, level):
        return lambda event, **fields: self.calls.append((level, event))


class DictCache:
    """Counts windows in a dict behind the RedisCache interface."""

    def __init__(self):
        self.counters = {}
        self.ttls = {}

    async def incr_window(self, key, window_seconds, amount=1):
        self.counters[key] = self.counters.get(key, 0) + amount
        self.ttls.setdefault(key, window_seconds)
        return self.counters[key]

    async def get_window(self, key):
        return self.counters.get(key, 0)

    async def reset_window(self, key):
        self.counters.pop(key, None)


class DownCache(DictCache):
    async def incr_window(self, key, window_seconds, amount=1):
        raise RedisConnectionError("connection refused")


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def sink():
    return InMemoryAuditSink()


@pytest.fixture
def limiter(store, sink, clock):
    return RateLimiter(AuthRepository(store), audit=AuditLogger([sink], clock=clock), clock=clock)


class TestCheck:
    async def test_request_over_limit_is_denied(self, limiter):
        decisions = [await limiter.check("login", "10.0.0.1", limit=3) for _ in range(4)]

        assert [d.allowed for d in decisions] == [True, True, True, False]
        assert [d.remaining for d in decisions] == [2, 1, 0, 0]
        assert decisions[-1].retry_after == 60

    async def test_new_window_allows_again(self, limiter, clock):
        for _ in range(4):
            await limiter.check("login", "10.0.0.1", limit=3)
        clock.advance(seconds=60)

        decision = await limiter.check("login", "10.0.0.1", limit=3)
        assert decision.allowed is True
        assert decision.remaining == 2

    async def test_retry_after_counts_down_to_window_end(self, limiter, clock):
        clock.advance(seconds=20)
        await limiter.check("login", "10.0.0.1", limit=1)

        decision = await limiter.check("login", "10.0.0.1", limit=1)
        assert decision.retry_after == 40

    async def test_scopes_are_independent(self, limiter):
        for _ in range(3):
            await limiter.check("login-failed", "10.0.0.1", limit=2)

        assert (await limiter.check("refresh-failed", "10.0.0.1", limit=2)).allowed is True
        assert (await limiter.check("login-failed", "10.0.0.2", limit=2)).allowed is True

    async def test_every_denial_is_audited(self, limiter, sink):
        for _ in range(6):
            await limiter.check("login", "10.0.0.1", limit=2, client_ip="10.0.0.1")

        events = sink.events(SecurityEvent.RATE_LIMIT_EXCEEDED)
        assert [e.fields["count"] for e in events] == [3, 4, 5, 6]
        assert {e.fields["scope"] for e in events} == {"login"}
        assert {e.client_ip for e in events} == {"10.0.0.1"}

    async def test_only_the_first_denial_logs_a_warning(self, limiter, monkeypatch):
        log = LevelRecorder()
        monkeypatch.setattr(audit_module, "logger", log)

        for _ in range(3):
            await limiter.check("login", "10.0.0.1", limit=1)

        assert log.calls == [
            ("warning", "rate_limit_exceeded_failed"),
            ("info", "rate_limit_exceeded_failed"),
        ]

    async def test_zero_limit_disables_the_check(self, limiter):
        for _ in range(5):
            assert (await limiter.check("login", "10.0.0.1", limit=0)).allowed is True

    async def test_invalid_window_falls_back_to_a_minute(self, limiter):
        decision = await limiter.check("login", "10.0.0.1", limit=5, window_seconds=0)

        assert decision.window_seconds == 60

    async def test_identifiers_are_hashed_in_counter_keys(self, limiter, store):
        await limiter.check("login", "10.0.0.1", limit=5)

        keys = [entity.row_key for entity in store.query(RATE_LIMITS)]
        assert len(keys) == 1
        assert keys[0].startswith("login:")
        assert "10.0.0.1" not in keys[0]


class TestPeekEnforceReset:
    async def test_peek_does_not_count(self, limiter):
        for _ in range(3):
            assert (await limiter.peek("login-failed", "10.0.0.1", limit=2)).allowed is True

        await limiter.check("login-failed", "10.0.0.1", limit=2)
        await limiter.check("login-failed", "10.0.0.1", limit=2)
        assert (await limiter.peek("login-failed", "10.0.0.1", limit=2)).allowed is False

    async def test_enforce_raises_with_retry_after(self, limiter):
        await limiter.enforce("signup", "10.0.0.1", limit=1)

        with pytest.raises(RateLimitedError) as excinfo:
            await limiter.enforce("signup", "10.0.0.1", limit=1)
        assert excinfo.value.retry_after == 60
        assert excinfo.value.detail["retry_after"] == 60

    async def test_reset_clears_the_window(self, limiter):
        await limiter.check("login", "10.0.0.1", limit=1)
        await limiter.reset("login", "10.0.0.1")

        assert (await limiter.check("login", "10.0.0.1", limit=1)).allowed is True


class TestFailClosed:
    async def test_store_failure_denies_with_server_error(self, clock):
        limiter = RateLimiter(BrokenRepository(), clock=clock)

        with pytest.raises(ServerError):
            await limiter.check("login", "10.0.0.1", limit=5)
        with pytest.raises(ServerError):
            await limiter.peek("login", "10.0.0.1", limit=5)


@pytest.fixture
def fake_redis_cache():
    fakeredis = pytest.importorskip("fakeredis")
    cache = SyncRedisCache.__new__(SyncRedisCache)
    cache.redis_url = "redis://fake"
    cache.client = fakeredis.FakeRedis(decode_responses=True)
    cache._window_counter = cache.client.register_script(RedisCache._WINDOW_COUNTER_SCRIPT)
    return cache


class TestRedisBackend:
    async def test_counters_go_to_the_cache_when_configured(self, store, clock):
        cache = DictCache()
        limiter = RateLimiter(AuthRepository(store), cache, clock=clock)

        decisions = [await limiter.check("login", "10.0.0.1", limit=2) for _ in range(3)]

        assert [d.allowed for d in decisions] == [True, True, False]
        assert list(cache.ttls.values()) == [60]
        assert store.query(RATE_LIMITS) == []
        assert (await limiter.peek("login", "10.0.0.1", limit=2)).allowed is False

        await limiter.reset("login", "10.0.0.1")
        assert cache.counters == {}

    async def test_redis_outage_fails_closed(self, store, clock):
        limiter = RateLimiter(AuthRepository(store), DownCache(), clock=clock)

        with pytest.raises(ServerError):
            await limiter.check("login", "10.0.0.1", limit=5)

    def test_redis_keys_are_hashed(self):
        key = RedisCache._normalize_rate_key("login:10.0.0.1:0")

        assert key.startswith("rate:")
        assert "10.0.0.1" not in key

    async def test_window_counter_script_sets_expiry_once(self, fake_redis_cache):
        key = "login:10.0.0.1:0"
        redis_key = RedisCache._normalize_rate_key(key)

        assert await fake_redis_cache.incr_window(key, 60) == 1
        first_ttl = fake_redis_cache.client.ttl(redis_key)
        assert 0 < first_ttl <= 60

        fake_redis_cache.client.expire(redis_key, 30)
        assert await fake_redis_cache.incr_window(key, 60) == 2
        assert 0 < fake_redis_cache.client.ttl(redis_key) <= 30
        assert await fake_redis_cache.get_window(key) == 2

        await fake_redis_cache.reset_window(key)
        assert await fake_redis_cache.get_window(key) == 0

    async def test_limiter_over_redis_denies_past_the_limit(self, store, clock, fake_redis_cache):
        limiter = RateLimiter(AuthRepository(store), fake_redis_cache, clock=clock)

        decisions = [await limiter.check("login", "10.0.0.1", limit=2) for _ in range(3)]

        assert [d.allowed for d in decisions] == [True, True, False]
        assert store.query(RATE_LIMITS) == []
