"""In-process fallback rate limit store.

Implements the same two algorithms as the Redis scripts against local
memory. State is per process: with several instances each one enforces its
own copy of every limit, so the effective limit is multiplied while the
backing store is down. That is the price of staying available.

Memory is bounded:
- Uses OrderedDict for LRU behaviour, most recently checked keys last
- Once more than max_keys keys are held the least recently used are evicted
- Keys expire after the same TTL the Redis store would set
"""

import asyncio
import bisect
import itertools
import math
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple, Union

from admission.app.core.logging import get_logger
from admission.app.services.rate_limit.base import RateLimitStore
from admission.app.services.rate_limit.models import (
    BucketState,
    CheckResult,
    LimitSpec,
    LimitStatus,
)

logger = get_logger(__name__)


@dataclass
class WindowEntrySet:
    """Ordered request timestamps of one sliding window key."""
    entries: List[Tuple[float, int]] = field(default_factory=list)

    def prune(self, cutoff: float) -> None:
        """Drop entries older than cutoff."""
        index = bisect.bisect_left(self.entries, (cutoff, -1))
        if index:
            del self.entries[:index]


@dataclass
class _Slot:
    state: Union[WindowEntrySet, BucketState]
    expires_at: float


class InMemoryRateLimitStore(RateLimitStore):
    """Bounded, LRU-evicting local store emulating the Redis contract."""

    name = "memory"

    DEFAULT_MAX_KEYS = 10000

    def __init__(
        self,
        max_keys: int = DEFAULT_MAX_KEYS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the fallback store.

        Args:
            max_keys: Maximum number of stored keys before LRU eviction
            clock: Time source returning UNIX time in seconds

        Raises:
            ValueError: If max_keys is not positive
        """
        if max_keys < 1:
            raise ValueError("max_keys must be >= 1")
        self._max_keys = max_keys
        self._clock = clock
        self._slots: "OrderedDict[str, _Slot]" = OrderedDict()
        self._sequence = itertools.count(1)
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._slots)

    def _get(self, state_key: str, now: float) -> Optional[_Slot]:
        slot = self._slots.get(state_key)
        if slot is None:
            return None
        if slot.expires_at <= now:
            del self._slots[state_key]
            return None
        self._slots.move_to_end(state_key)
        return slot

    def _put(self, state_key: str, slot: _Slot) -> None:
        self._slots[state_key] = slot
        self._slots.move_to_end(state_key)
        while len(self._slots) > self._max_keys:
            evicted, _ = self._slots.popitem(last=False)
            logger.debug(f"Fallback store full, evicted {evicted}")

    async def check_and_update(self, key: str, spec: LimitSpec) -> CheckResult:
        state_key = self.state_key(key, spec)
        async with self._lock:
            now = self._clock()
            if spec.is_sliding:
                return self._check_sliding_window(state_key, spec, now)
            return self._check_token_bucket(state_key, spec, now)

    def _check_sliding_window(self, state_key: str, spec: LimitSpec, now: float) -> CheckResult:
        slot = self._get(state_key, now)
        window = slot.state if slot is not None else WindowEntrySet()

        # Record the attempt first, then prune and count
        added = []
        for _ in range(spec.cost):
            entry = (now, next(self._sequence))
            bisect.insort(window.entries, entry)
            added.append(entry)
        window.prune(now - spec.window_seconds)
        count = len(window.entries)

        allowed = count <= spec.capacity
        wait_rank = 0
        if not allowed:
            # Rejected attempts are not counted against the quota
            for entry in added:
                window.entries.remove(entry)
            wait_rank = count - spec.capacity - 1

        reset_after = 0
        if wait_rank < len(window.entries):
            oldest = window.entries[wait_rank][0]
            reset_after = max(0, math.ceil(oldest + spec.window_seconds - now))

        if window.entries:
            self._put(state_key, _Slot(window, now + spec.state_ttl))
        else:
            self._slots.pop(state_key, None)

        return CheckResult(
            allowed=allowed,
            remaining=spec.capacity - count if allowed else 0,
            reset_after_seconds=reset_after,
            retry_after_seconds=None if allowed else max(1, reset_after),
            limit=spec.capacity,
            reset_at=int(math.ceil(now + reset_after)),
            binding_spec=spec,
            backend=self.name,
            entry_id=",".join(str(seq) for _, seq in added) if allowed else None,
        )

    def _check_token_bucket(self, state_key: str, spec: LimitSpec, now: float) -> CheckResult:
        slot = self._get(state_key, now)
        if slot is None:
            bucket = BucketState(tokens=float(spec.capacity), last_refill=now)
        else:
            bucket = slot.state

        # Whole tokens only; the unused fraction stays in last_refill
        elapsed = max(0.0, now - bucket.last_refill)
        refilled = math.floor(elapsed * spec.refill_rate)
        if refilled > 0:
            bucket.tokens += refilled
            bucket.last_refill += refilled / spec.refill_rate
        if bucket.tokens >= spec.capacity:
            bucket.tokens = float(spec.capacity)
            bucket.last_refill = now
        progress = max(0.0, now - bucket.last_refill)

        allowed = bucket.tokens >= spec.cost
        retry_after = None
        if allowed:
            bucket.tokens -= spec.cost
        else:
            retry_after = max(1, math.ceil((spec.cost - bucket.tokens) / spec.refill_rate - progress))

        reset_after = 0
        if bucket.tokens < spec.capacity:
            reset_after = max(0, math.ceil((spec.capacity - bucket.tokens) / spec.refill_rate - progress))

        # Refill progress persists even when the check is rejected
        self._put(state_key, _Slot(bucket, now + spec.state_ttl))

        return CheckResult(
            allowed=allowed,
            remaining=int(bucket.tokens) if allowed else 0,
            reset_after_seconds=reset_after,
            retry_after_seconds=retry_after,
            limit=spec.capacity,
            reset_at=int(math.ceil(now + reset_after)),
            binding_spec=spec,
            backend=self.name,
        )

    async def refund(self, key: str, spec: LimitSpec, result: CheckResult) -> None:
        state_key = self.state_key(key, spec)
        async with self._lock:
            slot = self._slots.get(state_key)
            if slot is None:
                return
            if spec.is_sliding:
                if result.entry_id is None:
                    return
                sequences = {int(seq) for seq in result.entry_id.split(",")}
                slot.state.entries = [e for e in slot.state.entries if e[1] not in sequences]
            else:
                slot.state.tokens = min(float(spec.capacity), slot.state.tokens + spec.cost)

    async def peek(self, key: str, spec: LimitSpec) -> LimitStatus:
        state_key = self.state_key(key, spec)
        async with self._lock:
            now = self._clock()
            slot = self._slots.get(state_key)
            if slot is not None and slot.expires_at <= now:
                slot = None
            if spec.is_sliding:
                cutoff = now - spec.window_seconds
                used = 0
                if slot is not None:
                    used = sum(1 for ts, _ in slot.state.entries if ts >= cutoff)
                remaining = max(0, spec.capacity - used)
            else:
                tokens = float(spec.capacity)
                if slot is not None:
                    bucket = slot.state
                    refilled = math.floor(max(0.0, now - bucket.last_refill) * spec.refill_rate)
                    tokens = min(float(spec.capacity), bucket.tokens + refilled)
                remaining = int(tokens)
                used = spec.capacity - remaining
        return LimitStatus(spec=spec, used=used, remaining=remaining, backend=self.name)

    async def reset(self, key: str, specs: Sequence[LimitSpec]) -> None:
        async with self._lock:
            for spec in specs:
                self._slots.pop(self.state_key(key, spec), None)

    async def clear(self) -> None:
        """Drop every key."""
        async with self._lock:
            self._slots.clear()
