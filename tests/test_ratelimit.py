"""Tests 59-63: Fixed-window rate limiting, in-process and Redis-backed."""

from __future__ import annotations

from claimsend.models.config import RateLimitConfig, RateLimitRule
from claimsend.ratelimit import (
    ENDPOINTS,
    InMemoryRateLimiter,
    RedisRateLimiter,
    rules_from_config,
)
from claimsend.service import build_rate_limiter

from tests.conftest import make_test_config
from tests.mocks import FailingRedis, FakeRedis


class Ticker:
    """Float clock for the limiters."""

    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


RULES = {"verify_otp": RateLimitRule(limit=3, window_seconds=600)}


# ── Test 59: In-memory window allows the limit, then rejects ──────


async def test_memory_limiter_window():
    ticker = Ticker()
    limiter = InMemoryRateLimiter(RULES, clock=ticker)

    decisions = [await limiter.hit("verify_otp", "1.2.3.4:9") for _ in range(3)]
    assert all(d.allowed for d in decisions)
    assert [d.remaining for d in decisions] == [2, 1, 0]

    ticker.now += 100
    rejected = await limiter.hit("verify_otp", "1.2.3.4:9")
    assert not rejected.allowed
    assert rejected.retry_after_seconds == 500

    # Other keys have their own bucket
    assert (await limiter.hit("verify_otp", "1.2.3.4:10")).allowed

    ticker.now += 500
    assert (await limiter.hit("verify_otp", "1.2.3.4:9")).allowed


# ── Test 60: Endpoints without a rule are unthrottled ─────────────


async def test_memory_limiter_unknown_endpoint():
    limiter = InMemoryRateLimiter(RULES, clock=Ticker())
    for _ in range(10):
        assert (await limiter.hit("healthz", "x")).allowed


async def test_memory_limiter_prunes_expired_buckets():
    ticker = Ticker()
    limiter = InMemoryRateLimiter(RULES, clock=ticker)
    limiter.PRUNE_EVERY = 3

    await limiter.hit("verify_otp", "a")
    await limiter.hit("verify_otp", "b")
    ticker.now += 601
    await limiter.hit("verify_otp", "c")
    assert set(limiter._buckets) == {"verify_otp:c"}


# ── Test 61: Redis window keys and expiry ─────────────────────────


async def test_redis_limiter_counts_per_window():
    redis = FakeRedis()
    ticker = Ticker(now=1_200.0)
    limiter = RedisRateLimiter(redis, RULES, key_prefix="test:rl", clock=ticker)

    for _ in range(3):
        assert (await limiter.hit("verify_otp", "ip:7")).allowed
    rejected = await limiter.hit("verify_otp", "ip:7")
    assert not rejected.allowed
    assert rejected.retry_after_seconds == 600

    assert redis.counts == {"test:rl:verify_otp:ip:7:2": 4}
    assert redis.expiries == {"test:rl:verify_otp:ip:7:2": 600}

    ticker.now = 1_800.0
    assert (await limiter.hit("verify_otp", "ip:7")).allowed
    assert redis.counts["test:rl:verify_otp:ip:7:3"] == 1


# ── Test 62: Backend failure rejects ──────────────────────────────


async def test_redis_limiter_fails_closed():
    redis = FailingRedis()
    limiter = RedisRateLimiter(redis, RULES, clock=Ticker())

    decision = await limiter.hit("verify_otp", "ip:7")
    assert not decision.allowed
    assert decision.retry_after_seconds == 600
    assert redis.calls == 1


# ── Test 63: Rules and backend come from configuration ────────────


async def test_rules_and_backend_from_config():
    rules = rules_from_config(RateLimitConfig())
    assert set(rules) == set(ENDPOINTS)
    assert rules["claim_start"].limit == 10
    assert rules["resend_otp"].limit == 12
    assert all(rule.window_seconds == 600 for rule in rules.values())

    assert isinstance(build_rate_limiter(make_test_config()), InMemoryRateLimiter)

    redis_cfg = make_test_config(
        rate_limits=RateLimitConfig(backend="redis", redis_url="redis://localhost:6379/0"),
    )
    limiter = build_rate_limiter(redis_cfg)
    assert isinstance(limiter, RedisRateLimiter)
    await limiter.close()
