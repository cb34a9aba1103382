"""Shared fixtures: a controllable clock and a scripted fake Redis.

FakeRedis answers EVAL by recognising which limiter script it was given and
applying the same steps in Python, with TIME driven by the shared clock.
"""

import asyncio
import math
from typing import Dict, List, Optional

import pytest

from admission.app.services.rate_limit.redis_lua import (
    SLIDING_WINDOW_PEEK_SCRIPT,
    SLIDING_WINDOW_SCRIPT,
    TOKEN_BUCKET_PEEK_SCRIPT,
    TOKEN_BUCKET_REFUND_SCRIPT,
    TOKEN_BUCKET_SCRIPT,
)

START_TIME = 1_700_000_000.0


class FakeClock:
    """Manually advanced UNIX clock."""

    def __init__(self, now: float = START_TIME):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRedis:
    """Just enough of redis.asyncio.Redis for the rate limit store."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.zsets: Dict[str, Dict[str, float]] = {}
        self.hashes: Dict[str, Dict[str, float]] = {}
        self.expiry: Dict[str, float] = {}
        self.calls: List[str] = []
        self.error: Optional[Exception] = None
        self.delay = 0.0
        self.closed = False
        self._scripts = {
            SLIDING_WINDOW_SCRIPT: self._sliding_window,
            TOKEN_BUCKET_SCRIPT: self._token_bucket,
            TOKEN_BUCKET_REFUND_SCRIPT: self._token_bucket_refund,
            SLIDING_WINDOW_PEEK_SCRIPT: self._sliding_window_peek,
            TOKEN_BUCKET_PEEK_SCRIPT: self._token_bucket_peek,
        }

    async def _enter(self, command: str) -> float:
        self.calls.append(command)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        # TIME has microsecond resolution
        return round(self.clock(), 6)

    def _purge(self, key: str, now: float) -> None:
        expires_at = self.expiry.get(key)
        if expires_at is not None and expires_at <= now:
            self.zsets.pop(key, None)
            self.hashes.pop(key, None)
            self.expiry.pop(key, None)

    def _expire(self, key: str, ttl: int, now: float) -> None:
        if key in self.zsets or key in self.hashes:
            self.expiry[key] = now + ttl

    async def eval(self, script: str, numkeys: int, *args):
        now = await self._enter("eval")
        keys = list(args[:numkeys])
        argv = [str(a) for a in args[numkeys:]]
        self._purge(keys[0], now)
        return self._scripts[script](keys[0], argv, now)

    def _ranked(self, key: str) -> List[tuple]:
        members = self.zsets.get(key, {})
        return sorted((score, member) for member, score in members.items())

    def _sliding_window(self, key: str, argv: List[str], now: float) -> list:
        window, limit, cost, ttl = float(argv[0]), int(argv[1]), int(argv[2]), int(argv[3])
        member = argv[4]

        zset = self.zsets.setdefault(key, {})
        for i in range(1, cost + 1):
            zset[f"{member}:{i}"] = now
        cutoff = round(now - window, 6)
        for name, score in list(zset.items()):
            if score < cutoff:
                del zset[name]
        count = len(zset)

        allowed, remaining, retry_after, wait_rank = 1, limit - count, 0, 0
        if count > limit:
            for i in range(1, cost + 1):
                zset.pop(f"{member}:{i}", None)
            allowed, remaining = 0, 0
            wait_rank = count - limit - 1

        reset_after = 0
        ranked = self._ranked(key)
        if wait_rank < len(ranked):
            reset_after = max(0, math.ceil(ranked[wait_rank][0] + window - now))
        if not allowed:
            retry_after = max(1, reset_after)

        if not zset:
            del self.zsets[key]
        self._expire(key, ttl, now)
        return [allowed, remaining, reset_after, retry_after, f"{now:.6f}".encode()]

    def _token_bucket(self, key: str, argv: List[str], now: float) -> list:
        capacity, rate, cost, ttl = int(argv[0]), float(argv[1]), int(argv[2]), int(argv[3])

        state = self.hashes.get(key)
        if state is None:
            tokens, last_refill = float(capacity), now
        else:
            tokens, last_refill = state["tokens"], state["last_refill"]

        refilled = math.floor(max(0.0, now - last_refill) * rate)
        if refilled > 0:
            tokens += refilled
            last_refill += refilled / rate
        if tokens >= capacity:
            tokens, last_refill = float(capacity), now
        progress = max(0.0, now - last_refill)

        allowed, retry_after = 0, 0
        if tokens >= cost:
            tokens -= cost
            allowed = 1
        else:
            retry_after = max(1, math.ceil((cost - tokens) / rate - progress))

        reset_after = 0
        if tokens < capacity:
            reset_after = max(0, math.ceil((capacity - tokens) / rate - progress))

        self.hashes[key] = {"tokens": tokens, "last_refill": round(last_refill, 6)}
        self._expire(key, ttl, now)
        return [allowed, math.floor(tokens), reset_after, retry_after, f"{now:.6f}".encode()]

    def _token_bucket_refund(self, key: str, argv: List[str], now: float) -> int:
        capacity, cost = int(argv[0]), int(argv[1])
        state = self.hashes.get(key)
        if state is None:
            return 0
        state["tokens"] = min(capacity, state["tokens"] + cost)
        return 1

    def _sliding_window_peek(self, key: str, argv: List[str], now: float) -> list:
        cutoff = now - float(argv[0])
        return [sum(1 for score in self.zsets.get(key, {}).values() if score >= cutoff)]

    def _token_bucket_peek(self, key: str, argv: List[str], now: float) -> list:
        capacity, rate = int(argv[0]), float(argv[1])
        state = self.hashes.get(key)
        if state is None:
            return [capacity]
        refilled = math.floor(max(0.0, now - state["last_refill"]) * rate)
        return [math.floor(min(capacity, state["tokens"] + refilled))]

    async def zrem(self, key: str, *members: str) -> int:
        now = await self._enter("zrem")
        self._purge(key, now)
        zset = self.zsets.get(key, {})
        removed = sum(1 for m in members if zset.pop(m, None) is not None)
        if key in self.zsets and not zset:
            del self.zsets[key]
        return removed

    async def delete(self, *keys: str) -> int:
        await self._enter("delete")
        deleted = 0
        for key in keys:
            if self.zsets.pop(key, None) is not None or self.hashes.pop(key, None) is not None:
                deleted += 1
            self.expiry.pop(key, None)
        return deleted

    async def ping(self) -> bool:
        await self._enter("ping")
        return True

    async def aclose(self) -> None:
        self.closed = True

    def keys(self) -> List[str]:
        return sorted(set(self.zsets) | set(self.hashes))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_redis(clock):
    return FakeRedis(clock)
