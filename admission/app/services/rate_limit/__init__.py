"""Distributed admission control for multi-instance deployments.

This package provides sliding window and token bucket limits evaluated
atomically with Redis Lua scripts, with an in-process fallback store used
when Redis is unavailable.
"""

from .base import RateLimitStore
from .coordinator import RateLimitCoordinator, combine_results
from .events import (
    BackendDegraded,
    CallbackEventSink,
    CompositeEventSink,
    EventSink,
    LoggingEventSink,
    RateLimitEvent,
    RequestThrottled,
    publish_safely,
)
from .keys import SCOPE_ORDER, build_key, request_components
from .memory_store import InMemoryRateLimitStore
from .metrics import RateLimitMetrics
from .models import Algorithm, BucketState, CheckResult, LimitSpec, LimitStatus
from .redis_store import RedisRateLimitStore, create_redis_client
from .specs import apply_tier, parse_descriptor, parse_spec, resolve_multiplier, validate_tiers

__all__ = [
    "Algorithm",
    "BucketState",
    "CheckResult",
    "LimitSpec",
    "LimitStatus",
    "SCOPE_ORDER",
    "build_key",
    "request_components",
    "parse_spec",
    "parse_descriptor",
    "apply_tier",
    "resolve_multiplier",
    "validate_tiers",
    "RateLimitStore",
    "RedisRateLimitStore",
    "create_redis_client",
    "InMemoryRateLimitStore",
    "RateLimitMetrics",
    "RateLimitCoordinator",
    "combine_results",
    "RateLimitEvent",
    "RequestThrottled",
    "BackendDegraded",
    "EventSink",
    "LoggingEventSink",
    "CallbackEventSink",
    "CompositeEventSink",
    "publish_safely",
]
