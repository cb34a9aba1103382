"""Store interface shared by the Redis client and the in-process fallback."""

from abc import ABC, abstractmethod
from typing import Sequence

from admission.app.services.rate_limit.models import CheckResult, LimitSpec, LimitStatus


class RateLimitStore(ABC):
    """Abstract base class for rate limit stores.

    A store owns the per-key state of both algorithms and applies one check
    as a single atomic step.
    """

    name: str = "store"

    @abstractmethod
    async def check_and_update(self, key: str, spec: LimitSpec) -> CheckResult:
        """Apply one check for key under spec.

        Args:
            key: Composite rate limit key
            spec: Limit to enforce

        Returns:
            CheckResult for this spec alone

        Raises:
            BackendError: If the store could not complete the operation
        """
        pass

    @abstractmethod
    async def refund(self, key: str, spec: LimitSpec, result: CheckResult) -> None:
        """Give back the units an allowed check consumed."""
        pass

    @abstractmethod
    async def peek(self, key: str, spec: LimitSpec) -> LimitStatus:
        """Report usage for key under spec without consuming quota."""
        pass

    @abstractmethod
    async def reset(self, key: str, specs: Sequence[LimitSpec]) -> None:
        """Drop all state held for key under specs."""
        pass

    def state_key(self, key: str, spec: LimitSpec) -> str:
        """Name of the stored state for one spec of a key."""
        return f"{key}:{spec.slug}"
