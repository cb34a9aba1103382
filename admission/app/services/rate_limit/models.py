"""Rate limiting data models.

This module contains the typed limit specification, per-check results and
the state persisted by the stores.
"""

import math
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional


class Algorithm(str, Enum):
    """Supported limiting algorithms."""
    SLIDING_WINDOW = "sliding_window"
    TOKEN_BUCKET = "token_bucket"


@dataclass(frozen=True)
class LimitSpec:
    """One enforcement rule.

    Attributes:
        algorithm: Sliding window or token bucket
        capacity: Max requests per window (sliding) or bucket size (token)
        window_seconds: Window length, sliding window only
        refill_rate: Tokens added per second, token bucket only
        cost: Units consumed per check
        slot: Position among specs of one route that share a slug
    """
    algorithm: Algorithm
    capacity: int
    window_seconds: float = 0.0
    refill_rate: float = 0.0
    cost: int = 1
    slot: int = 0

    @property
    def is_sliding(self) -> bool:
        return self.algorithm is Algorithm.SLIDING_WINDOW

    @property
    def slug(self) -> str:
        """Short suffix naming this spec's state in a store.

        Capacity is left out so a tier change keeps the same counters.
        Specs of one route with the same window or rate differ by slot.
        """
        if self.is_sliding:
            base = f"sw{_format_number(self.window_seconds)}"
        else:
            base = f"tb{_format_number(self.refill_rate)}"
        return f"{base}-{self.slot}" if self.slot else base

    @property
    def state_ttl(self) -> int:
        """Seconds an idle key may live in the backing store."""
        if self.is_sliding:
            return int(math.ceil(self.window_seconds * 2))
        # At least twice the time a drained bucket needs to fill up again
        return max(60, int(math.ceil(self.capacity / self.refill_rate * 2)))

    def scaled(self, multiplier: float) -> "LimitSpec":
        """Return a copy with capacity multiplied and floored, never below 1."""
        return replace(self, capacity=max(1, int(self.capacity * multiplier)))

    def describe(self) -> str:
        if self.is_sliding:
            return f"{self.capacity} per {_format_number(self.window_seconds)}s"
        return f"{self.capacity} capacity, {_format_number(self.refill_rate)}/s refill"

    def to_descriptor(self) -> str:
        if self.is_sliding:
            text = f"sliding:{self.capacity}:{_format_number(self.window_seconds)}"
        else:
            text = f"token:{self.capacity}:{_format_number(self.refill_rate)}"
        if self.cost != 1:
            text += f":{self.cost}"
        return text


@dataclass
class CheckResult:
    """Outcome of one check against one or more specs.

    Attributes:
        allowed: Whether the request may proceed
        remaining: Quota units left (0 when denied)
        reset_after_seconds: Seconds until quota resets or partially refills
        retry_after_seconds: Seconds to wait before retrying, denials only
        limit: Capacity of the binding spec
        reset_at: Epoch seconds matching reset_after_seconds
        binding_spec: The most restrictive spec of the check
        backend: Store that produced the result ("redis" or "memory")
        entry_id: Sliding-window entry added by an allowed check
    """
    allowed: bool
    remaining: int
    reset_after_seconds: int
    retry_after_seconds: Optional[int] = None
    limit: int = 0
    reset_at: int = 0
    binding_spec: Optional[LimitSpec] = None
    backend: str = "redis"
    entry_id: Optional[str] = field(default=None, repr=False)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        data = {
            "allowed": self.allowed,
            "remaining": self.remaining,
            "reset_after": self.reset_after_seconds,
            "reset_at": self.reset_at,
            "limit": self.limit,
            "backend": self.backend,
        }
        if self.retry_after_seconds is not None:
            data["retry_after"] = self.retry_after_seconds
        if self.binding_spec is not None:
            data["binding_spec"] = self.binding_spec.to_descriptor()
        return data


@dataclass
class BucketState:
    """Token bucket state persisted per key."""
    tokens: float
    last_refill: float


@dataclass
class LimitStatus:
    """Current usage of one spec, read without consuming quota."""
    spec: LimitSpec
    used: int
    remaining: int
    backend: str

    def to_dict(self) -> dict:
        return {
            "spec": self.spec.to_descriptor(),
            "limit": self.spec.capacity,
            "used": self.used,
            "remaining": self.remaining,
            "backend": self.backend,
        }


def _format_number(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return f"{value:g}"
