"""Fixed-window rate limiters for the public claim endpoints."""

from __future__ import annotations

import logging
import math
import time
from typing import Callable

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from claimsend.models.config import RateLimitConfig, RateLimitRule
from claimsend.models.results import RateLimitDecision

log = logging.getLogger(__name__)

ENDPOINTS = ("claim_start", "verify_otp", "resend_otp", "payout")


def rules_from_config(cfg: RateLimitConfig) -> dict[str, RateLimitRule]:
    return {name: getattr(cfg, name) for name in ENDPOINTS}


class InMemoryRateLimiter:
    """Per-process fixed-window counter.

    Buckets are keyed by ``endpoint:key`` and reset when their window ends.
    Expired buckets are pruned on the way in.
    """

    PRUNE_EVERY = 500

    def __init__(
        self,
        rules: dict[str, RateLimitRule],
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._rules = rules
        self._clock = clock
        self._buckets: dict[str, tuple[int, float]] = {}  # key -> (count, reset_at)
        self._hits = 0

    async def hit(self, endpoint: str, key: str) -> RateLimitDecision:
        rule = self._rules.get(endpoint)
        if rule is None:
            return RateLimitDecision(allowed=True)

        now = self._clock()
        self._hits += 1
        if self._hits % self.PRUNE_EVERY == 0:
            self._prune(now)

        bucket_key = f"{endpoint}:{key}"
        count, reset_at = self._buckets.get(bucket_key, (0, 0.0))
        if now >= reset_at:
            count, reset_at = 0, now + rule.window_seconds
        count += 1
        self._buckets[bucket_key] = (count, reset_at)

        if count > rule.limit:
            return RateLimitDecision(
                allowed=False,
                retry_after_seconds=max(1, math.ceil(reset_at - now)),
            )
        return RateLimitDecision(allowed=True, remaining=rule.limit - count)

    def _prune(self, now: float) -> None:
        stale = [k for k, (_, reset_at) in self._buckets.items() if reset_at <= now]
        for k in stale:
            del self._buckets[k]


class RedisRateLimiter:
    """Shared fixed-window counter using INCR + EXPIRE.

    Any backend error rejects the request with ``retry_after = window``.
    """

    def __init__(
        self,
        client: aioredis.Redis,
        rules: dict[str, RateLimitRule],
        key_prefix: str = "claimsend:rl",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client = client
        self._rules = rules
        self._prefix = key_prefix
        self._clock = clock

    @classmethod
    def from_url(
        cls,
        url: str,
        rules: dict[str, RateLimitRule],
        key_prefix: str = "claimsend:rl",
        timeout: float = 2.0,
    ) -> RedisRateLimiter:
        client = aioredis.Redis.from_url(
            url,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
            decode_responses=True,
        )
        return cls(client, rules, key_prefix)

    async def hit(self, endpoint: str, key: str) -> RateLimitDecision:
        rule = self._rules.get(endpoint)
        if rule is None:
            return RateLimitDecision(allowed=True)

        now = self._clock()
        window_index = int(now // rule.window_seconds)
        redis_key = f"{self._prefix}:{endpoint}:{key}:{window_index}"
        try:
            count = int(await self._client.incr(redis_key))
            if count == 1:
                await self._client.expire(redis_key, rule.window_seconds)
        except (RedisError, OSError) as e:
            log.error("Rate limiter backend error for %s, rejecting: %s", endpoint, e)
            return RateLimitDecision(allowed=False, retry_after_seconds=rule.window_seconds)

        if count > rule.limit:
            reset_at = (window_index + 1) * rule.window_seconds
            return RateLimitDecision(
                allowed=False,
                retry_after_seconds=max(1, math.ceil(reset_at - now)),
            )
        return RateLimitDecision(allowed=True, remaining=rule.limit - count)

    async def close(self) -> None:
        await self._client.aclose()
