"""Rate limit coordinator.

Runs every spec of a check against the backing store, falling back to the
in-process store when the backing store fails, and folds the per-spec
results into one decision.

Failure policy:
- A backend timeout or error never reaches the caller; the spec is evaluated
  by the fallback store instead and fallback_total is incremented
- After a failure the backend is skipped for retry_backend_after seconds,
  then probed again with the next check
- BackendDegraded is published at most once per degraded_cooldown seconds
"""

import time
from typing import Callable, List, Optional, Sequence, Tuple

from admission.app.core.logging import get_log_context, get_logger
from admission.app.exceptions import BackendError
from admission.app.services.rate_limit.base import RateLimitStore
from admission.app.services.rate_limit.events import BackendDegraded, EventSink, publish_safely
from admission.app.services.rate_limit.memory_store import InMemoryRateLimitStore
from admission.app.services.rate_limit.metrics import RateLimitMetrics
from admission.app.services.rate_limit.models import CheckResult, LimitSpec, LimitStatus

logger = get_logger(__name__)


def combine_results(results: Sequence[CheckResult]) -> CheckResult:
    """Fold per-spec results into one.

    allowed is the AND of all results. remaining is the minimum. retry_after
    is the maximum among denying specs. The binding spec is the denying spec
    with the longest wait, or the spec with the least quota left.
    """
    if not results:
        raise ValueError("combine_results needs at least one result")

    denied = [r for r in results if not r.allowed]
    if denied:
        binding = max(denied, key=lambda r: (r.retry_after_seconds or 0, -r.remaining))
    else:
        binding = min(results, key=lambda r: (r.remaining, -r.reset_after_seconds))

    reset_after = max(r.reset_after_seconds for r in results)
    reset_at = max(r.reset_at for r in results)
    backends = {r.backend for r in results}

    return CheckResult(
        allowed=not denied,
        remaining=0 if denied else min(r.remaining for r in results),
        reset_after_seconds=reset_after,
        retry_after_seconds=binding.retry_after_seconds if denied else None,
        limit=binding.limit,
        reset_at=reset_at,
        binding_spec=binding.binding_spec,
        backend=backends.pop() if len(backends) == 1 else "mixed",
    )


class RateLimitCoordinator:
    """Checks keys against limit specs.

    Safe to call concurrently: all per-key coordination happens inside the
    stores (one Redis script per spec, or the fallback store's lock).
    """

    def __init__(
        self,
        backend: Optional[RateLimitStore],
        fallback: Optional[InMemoryRateLimitStore] = None,
        metrics: Optional[RateLimitMetrics] = None,
        event_sink: Optional[EventSink] = None,
        degraded_cooldown: float = 60.0,
        retry_backend_after: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the coordinator.

        Args:
            backend: Shared backing store; None runs on the fallback only
            fallback: In-process store used when the backend fails
            metrics: Counters updated on every check
            event_sink: Receives BackendDegraded events
            degraded_cooldown: Minimum seconds between BackendDegraded events
            retry_backend_after: Seconds to skip the backend after a failure
            clock: Monotonic time source for cooldown bookkeeping
        """
        self._backend = backend
        self._fallback = fallback if fallback is not None else InMemoryRateLimitStore()
        self._metrics = metrics if metrics is not None else RateLimitMetrics()
        if self._metrics.fallback_size is None:
            self._metrics.fallback_size = self._fallback.__len__
        if backend is None:
            self._metrics.backend_healthy = False
        self._event_sink = event_sink
        self._degraded_cooldown = degraded_cooldown
        self._retry_backend_after = retry_backend_after
        self._clock = clock

        self._backend_failed_at: Optional[float] = None
        self._degraded_since: Optional[float] = None
        self._last_degraded_event: Optional[float] = None

    @property
    def metrics(self) -> RateLimitMetrics:
        return self._metrics

    @property
    def fallback(self) -> InMemoryRateLimitStore:
        return self._fallback

    @property
    def backend(self) -> Optional[RateLimitStore]:
        return self._backend

    def _backend_usable(self) -> bool:
        if self._backend is None:
            return False
        if self._backend_failed_at is None:
            return True
        return self._clock() - self._backend_failed_at >= self._retry_backend_after

    async def _on_backend_failure(self, key: str, error: BackendError) -> None:
        now = self._clock()
        self._backend_failed_at = now
        if self._degraded_since is None:
            self._degraded_since = time.time()
        await self._metrics.set_backend_healthy(False)

        if (
            self._last_degraded_event is not None
            and now - self._last_degraded_event < self._degraded_cooldown
        ):
            return
        self._last_degraded_event = now
        logger.warning(
            f"Rate limit backend failed, using in-memory fallback: {error}",
            extra=get_log_context(rate_limit_key=key, backend=error.backend),
        )
        publish_safely(
            self._event_sink,
            BackendDegraded(error=str(error), since=self._degraded_since, backend=error.backend),
        )

    async def _on_backend_success(self) -> None:
        if self._backend_failed_at is None:
            return
        self._backend_failed_at = None
        self._degraded_since = None
        if await self._metrics.set_backend_healthy(True):
            logger.info("Rate limit backend recovered", extra=get_log_context(backend=self._backend.name))

    async def _check_spec(self, key: str, spec: LimitSpec) -> Tuple[CheckResult, RateLimitStore]:
        if self._backend_usable():
            try:
                result = await self._backend.check_and_update(key, spec)
            except BackendError as e:
                await self._on_backend_failure(key, e)
            else:
                await self._on_backend_success()
                return result, self._backend

        if self._backend is not None:
            await self._metrics.record_fallback()
        return await self._fallback.check_and_update(key, spec), self._fallback

    async def _refund(self, key: str, spec: LimitSpec, result: CheckResult, store: RateLimitStore) -> None:
        try:
            await store.refund(key, spec, result)
        except BackendError as e:
            # The consumed unit stays counted until the state expires
            logger.warning(
                f"Could not refund {spec.to_descriptor()} after rejection: {e}",
                extra=get_log_context(rate_limit_key=key),
            )

    async def check(self, key: str, specs: Sequence[LimitSpec]) -> CheckResult:
        """Check key against every spec.

        Args:
            key: Composite rate limit key
            specs: Limits that must all pass

        Returns:
            Combined CheckResult; never raises for backend failures
        """
        if not specs:
            raise ValueError("check needs at least one limit spec")

        outcomes: List[Tuple[LimitSpec, CheckResult, RateLimitStore]] = []
        for spec in specs:
            result, store = await self._check_spec(key, spec)
            outcomes.append((spec, result, store))

        combined = combine_results([result for _, result, _ in outcomes])

        if not combined.allowed:
            # Specs that passed give their units back, so a rejected request
            # costs nothing anywhere
            for spec, result, store in outcomes:
                if result.allowed:
                    await self._refund(key, spec, result, store)

        await self._metrics.record_check(combined.allowed)

        if combined.allowed:
            logger.debug(
                f"Rate limit passed, {combined.remaining} remaining",
                extra=get_log_context(rate_limit_key=key, backend=combined.backend),
            )
        return combined

    async def status(self, key: str, specs: Sequence[LimitSpec]) -> List[LimitStatus]:
        """Report usage per spec without consuming quota."""
        statuses = []
        for spec in specs:
            if self._backend_usable():
                try:
                    statuses.append(await self._backend.peek(key, spec))
                    continue
                except BackendError as e:
                    await self._on_backend_failure(key, e)
            statuses.append(await self._fallback.peek(key, spec))
        return statuses

    async def reset(self, key: str, specs: Sequence[LimitSpec]) -> bool:
        """Drop all state for key in both stores.

        Returns:
            False if the backing store could not be reset
        """
        await self._fallback.reset(key, specs)
        if self._backend is None:
            return True
        try:
            await self._backend.reset(key, specs)
        except BackendError as e:
            logger.error(f"Failed to reset rate limit: {e}", extra=get_log_context(rate_limit_key=key))
            return False
        logger.info("Rate limit reset", extra=get_log_context(rate_limit_key=key))
        return True
