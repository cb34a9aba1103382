"""Process-wide rate limiting counters.

One RateLimitMetrics instance is created at startup and handed to the
coordinator and middleware. Counters are process-local; aggregation across
instances is left to whatever scrapes the Prometheus endpoint.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional


@dataclass
class RateLimitMetrics:
    """Collects admission decisions.

    checks_total always equals allowed_total + throttled_total: both are
    updated under the same lock.
    """

    checks_total: int = 0
    allowed_total: int = 0
    throttled_total: int = 0
    fallback_total: int = 0
    whitelisted_total: int = 0
    backend_healthy: bool = True

    # Size of the fallback store, read at snapshot time
    fallback_size: Optional[Callable[[], int]] = field(default=None, repr=False)

    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    _start_time: float = field(default_factory=time.time, repr=False)

    async def record_check(self, allowed: bool) -> None:
        """Record the final outcome of one check."""
        async with self._lock:
            self.checks_total += 1
            if allowed:
                self.allowed_total += 1
            else:
                self.throttled_total += 1

    async def record_fallback(self) -> None:
        """Record one spec evaluated by the fallback store."""
        async with self._lock:
            self.fallback_total += 1

    async def record_whitelisted(self) -> None:
        async with self._lock:
            self.whitelisted_total += 1

    async def set_backend_healthy(self, healthy: bool) -> bool:
        """Update backend health.

        Returns:
            True if the value changed
        """
        async with self._lock:
            changed = self.backend_healthy != healthy
            self.backend_healthy = healthy
            return changed

    async def snapshot(self) -> Dict[str, Any]:
        """Get a read-only copy of all counters.

        Returns:
            Dictionary with metrics summary
        """
        async with self._lock:
            throttled_percentage = (
                round(self.throttled_total / self.checks_total * 100, 2)
                if self.checks_total > 0
                else 0.0
            )
            return {
                "checks_total": self.checks_total,
                "allowed_total": self.allowed_total,
                "throttled_total": self.throttled_total,
                "fallback_total": self.fallback_total,
                "whitelisted_total": self.whitelisted_total,
                "backend_healthy": self.backend_healthy,
                "throttled_percentage": throttled_percentage,
                "fallback_keys": self.fallback_size() if self.fallback_size else 0,
                "uptime_seconds": round(time.time() - self._start_time, 2),
            }

    async def get_prometheus_metrics(self) -> str:
        """Get metrics in Prometheus text format."""
        data = await self.snapshot()
        lines = []

        counters = [
            ("checks_total", "Total rate limit checks"),
            ("allowed_total", "Checks that admitted the request"),
            ("throttled_total", "Checks that rejected the request"),
            ("fallback_total", "Limit evaluations served by the in-memory fallback"),
            ("whitelisted_total", "Requests that bypassed rate limiting"),
        ]
        for name, help_text in counters:
            lines.append(f"# HELP rate_limit_{name} {help_text}")
            lines.append(f"# TYPE rate_limit_{name} counter")
            lines.append(f"rate_limit_{name} {data[name]}")

        lines.append(
            "# HELP rate_limit_backend_healthy Backing store health (1=healthy, 0=degraded)"
        )
        lines.append("# TYPE rate_limit_backend_healthy gauge")
        lines.append(f"rate_limit_backend_healthy {1 if data['backend_healthy'] else 0}")

        lines.append("# HELP rate_limit_fallback_keys Keys held by the in-memory fallback")
        lines.append("# TYPE rate_limit_fallback_keys gauge")
        lines.append(f"rate_limit_fallback_keys {data['fallback_keys']}")

        lines.append("# HELP rate_limit_uptime_seconds Seconds since the counters were created")
        lines.append("# TYPE rate_limit_uptime_seconds gauge")
        lines.append(f"rate_limit_uptime_seconds {data['uptime_seconds']}")

        return "\n".join(lines) + "\n"
