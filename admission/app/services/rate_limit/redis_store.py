"""Redis-backed rate limit store.

Every check is a single EVAL round trip bounded by a client-side timeout.
Timeouts and connection failures are raised as BackendError subclasses and
never turned into an allow or deny here; the coordinator owns that policy.
"""

import asyncio
import math
import random
import uuid
from typing import Any, Awaitable, Callable, Optional, Sequence

import redis
import redis.asyncio as aioredis

from admission.app.core.logging import get_logger
from admission.app.exceptions import BackendConnectionError, BackendError, BackendTimeoutError
from admission.app.services.rate_limit.base import RateLimitStore
from admission.app.services.rate_limit.models import CheckResult, LimitSpec, LimitStatus
from admission.app.services.rate_limit.redis_lua import (
    SLIDING_WINDOW_PEEK_SCRIPT,
    SLIDING_WINDOW_SCRIPT,
    TOKEN_BUCKET_PEEK_SCRIPT,
    TOKEN_BUCKET_REFUND_SCRIPT,
    TOKEN_BUCKET_SCRIPT,
)

logger = get_logger(__name__)

# Fraction of the window added at random to a window set's TTL
TTL_JITTER_RATIO = 0.1


def create_redis_client(redis_url: str, timeout_seconds: float) -> Any:
    """Create an asyncio Redis client with socket timeouts matching the check budget."""
    return aioredis.from_url(
        redis_url,
        socket_timeout=timeout_seconds,
        socket_connect_timeout=timeout_seconds,
    )


class RedisRateLimitStore(RateLimitStore):
    """Distributed rate limit store on Redis.

    Redis key format:
    - {prefix}{key}:sw{window}[-slot] - sorted set of request timestamps
    - {prefix}{key}:tb{rate}[-slot] - hash {tokens, last_refill}
    """

    name = "redis"

    def __init__(
        self,
        redis_client: Any,
        key_prefix: str = "rate:",
        timeout_seconds: float = 0.1,
    ) -> None:
        """Initialize the Redis store.

        Args:
            redis_client: redis.asyncio client (or compatible)
            key_prefix: Namespace for all keys written by the limiter
            timeout_seconds: Upper bound on one round trip
        """
        self._redis = redis_client
        self._prefix = key_prefix
        self._timeout = timeout_seconds

    def state_key(self, key: str, spec: LimitSpec) -> str:
        return f"{self._prefix}{key}:{spec.slug}"

    async def _call(self, operation: str, method: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        """Run one Redis call under the timeout, translating failures."""
        try:
            return await asyncio.wait_for(method(*args), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise BackendTimeoutError(
                f"Redis {operation} exceeded {self._timeout * 1000:.0f}ms"
            ) from e
        except redis.exceptions.TimeoutError as e:
            raise BackendTimeoutError(f"Redis {operation} timed out: {e}") from e
        except (redis.exceptions.ConnectionError, OSError) as e:
            raise BackendConnectionError(f"Redis {operation} connection failed: {e}") from e
        except redis.exceptions.RedisError as e:
            raise BackendError(f"Redis {operation} failed: {e}") from e

    async def check_and_update(self, key: str, spec: LimitSpec) -> CheckResult:
        """Run the algorithm script for spec atomically on Redis."""
        state_key = self.state_key(key, spec)
        entry_id: Optional[str] = None
        if spec.is_sliding:
            entry_id = uuid.uuid4().hex
            jitter = random.randint(0, max(1, int(spec.window_seconds * TTL_JITTER_RATIO)))
            raw = await self._call(
                "sliding window check",
                self._redis.eval,
                SLIDING_WINDOW_SCRIPT,
                1,
                state_key,
                spec.window_seconds,
                spec.capacity,
                spec.cost,
                spec.state_ttl + jitter,
                entry_id,
            )
        else:
            raw = await self._call(
                "token bucket check",
                self._redis.eval,
                TOKEN_BUCKET_SCRIPT,
                1,
                state_key,
                spec.capacity,
                spec.refill_rate,
                spec.cost,
                spec.state_ttl,
            )
        return self._to_result(raw, spec, entry_id)

    def _to_result(self, raw: Sequence[Any], spec: LimitSpec, entry_id: Optional[str]) -> CheckResult:
        try:
            allowed = bool(int(raw[0]))
            remaining = max(0, int(raw[1]))
            reset_after = max(0, int(raw[2]))
            retry_after = int(raw[3])
            now_raw = raw[4]
            now = float(now_raw.decode() if isinstance(now_raw, bytes) else now_raw)
        except (IndexError, TypeError, ValueError) as e:
            raise BackendError(f"Unexpected rate limit script reply: {raw!r}") from e

        return CheckResult(
            allowed=allowed,
            remaining=remaining if allowed else 0,
            reset_after_seconds=reset_after,
            retry_after_seconds=None if allowed else max(1, retry_after),
            limit=spec.capacity,
            reset_at=int(math.ceil(now + reset_after)),
            binding_spec=spec,
            backend=self.name,
            entry_id=entry_id if allowed else None,
        )

    async def refund(self, key: str, spec: LimitSpec, result: CheckResult) -> None:
        state_key = self.state_key(key, spec)
        if spec.is_sliding:
            if result.entry_id is None:
                return
            members = [f"{result.entry_id}:{i}" for i in range(1, spec.cost + 1)]
            await self._call("refund", self._redis.zrem, state_key, *members)
        else:
            await self._call(
                "refund",
                self._redis.eval, TOKEN_BUCKET_REFUND_SCRIPT, 1, state_key, spec.capacity, spec.cost,
            )

    async def peek(self, key: str, spec: LimitSpec) -> LimitStatus:
        state_key = self.state_key(key, spec)
        if spec.is_sliding:
            raw = await self._call(
                "peek",
                self._redis.eval, SLIDING_WINDOW_PEEK_SCRIPT, 1, state_key, spec.window_seconds,
            )
            used = int(raw[0])
            remaining = max(0, spec.capacity - used)
        else:
            raw = await self._call(
                "peek",
                self._redis.eval, TOKEN_BUCKET_PEEK_SCRIPT, 1, state_key, spec.capacity, spec.refill_rate,
            )
            remaining = max(0, int(raw[0]))
            used = spec.capacity - remaining
        return LimitStatus(spec=spec, used=used, remaining=remaining, backend=self.name)

    async def reset(self, key: str, specs: Sequence[LimitSpec]) -> None:
        if not specs:
            return
        keys = [self.state_key(key, spec) for spec in specs]
        await self._call("reset", self._redis.delete, *keys)

    async def ping(self) -> bool:
        """Return True when Redis answers within the timeout."""
        try:
            await self._call("ping", self._redis.ping)
        except BackendError as e:
            logger.debug(f"Redis ping failed: {e}")
            return False
        return True

    async def close(self) -> None:
        """Close the underlying Redis client."""
        try:
            await self._redis.aclose()
        except (redis.exceptions.RedisError, OSError) as e:
            logger.warning(f"Error closing Redis connection: {e}")
