"""Limit descriptor parsing.

Descriptors are colon-delimited triplets, optionally followed by a cost:

    sliding:5:60      5 requests per 60 seconds
    token:20:1        bucket of 20 tokens refilling 1 token per second
    token:20:1:2      same bucket, 2 tokens per check

A route descriptor is a comma-separated list of these; every spec in the
list must pass for the request to be admitted.
"""

import math
from dataclasses import replace
from typing import Dict, List, Mapping, Optional, Sequence

from admission.app.core.logging import get_logger
from admission.app.exceptions import ConfigurationError
from admission.app.services.rate_limit.models import Algorithm, LimitSpec

logger = get_logger(__name__)

ALGORITHM_TOKENS = {
    "sliding": Algorithm.SLIDING_WINDOW,
    "sliding_window": Algorithm.SLIDING_WINDOW,
    "token": Algorithm.TOKEN_BUCKET,
    "token_bucket": Algorithm.TOKEN_BUCKET,
}

# Used when a descriptor names a valid algorithm with an unusable number
DEFAULT_CAPACITY = 60
DEFAULT_WINDOW_SECONDS = 60.0
DEFAULT_REFILL_RATE = 1.0


def _number(raw: str) -> Optional[float]:
    try:
        value = float(raw)
    except ValueError:
        return None
    if not math.isfinite(value):
        return None
    return value


def parse_spec(descriptor: str, tier_multiplier: float = 1.0) -> LimitSpec:
    """Parse one ``{algorithm}:{max_or_capacity}:{window_or_refill}`` descriptor.

    Malformed structure and unknown algorithms raise; a non-positive number is
    replaced by a safe default and logged so the route is never silently left
    unprotected.

    Args:
        descriptor: Descriptor text
        tier_multiplier: Scale applied to capacity (floored, never below 1)

    Returns:
        Parsed LimitSpec

    Raises:
        ConfigurationError: If the descriptor cannot be parsed
    """
    if tier_multiplier < 1.0 or not math.isfinite(tier_multiplier):
        raise ConfigurationError("Tier multiplier must be >= 1.0", descriptor=str(tier_multiplier))

    parts = [p.strip() for p in descriptor.strip().split(":")]
    if len(parts) not in (3, 4):
        raise ConfigurationError("Malformed limit descriptor", descriptor=descriptor)

    algorithm = ALGORITHM_TOKENS.get(parts[0].lower())
    if algorithm is None:
        raise ConfigurationError("Unknown rate limit algorithm", descriptor=descriptor)

    capacity_raw = _number(parts[1])
    param_raw = _number(parts[2])
    if capacity_raw is None or param_raw is None:
        raise ConfigurationError("Limit descriptor values must be numeric", descriptor=descriptor)

    capacity = int(capacity_raw)
    if capacity < 1:
        logger.warning(
            f"Non-positive capacity in {descriptor!r}, using {DEFAULT_CAPACITY}"
        )
        capacity = DEFAULT_CAPACITY

    cost = 1
    if len(parts) == 4:
        cost_raw = _number(parts[3])
        if cost_raw is None:
            raise ConfigurationError("Limit descriptor cost must be numeric", descriptor=descriptor)
        cost = int(cost_raw)
        if cost < 1:
            logger.warning(f"Non-positive cost in {descriptor!r}, using 1")
            cost = 1

    if algorithm is Algorithm.SLIDING_WINDOW:
        window = param_raw
        if window <= 0:
            logger.warning(
                f"Non-positive window in {descriptor!r}, using {DEFAULT_WINDOW_SECONDS:g}s"
            )
            window = DEFAULT_WINDOW_SECONDS
        spec = LimitSpec(algorithm, capacity, window_seconds=window, cost=cost)
    else:
        rate = param_raw
        if rate <= 0:
            logger.warning(
                f"Non-positive refill rate in {descriptor!r}, using {DEFAULT_REFILL_RATE:g}/s"
            )
            rate = DEFAULT_REFILL_RATE
        spec = LimitSpec(algorithm, capacity, refill_rate=rate, cost=cost)

    if spec.cost > spec.capacity:
        raise ConfigurationError("Cost exceeds capacity, no check could ever pass", descriptor=descriptor)

    if tier_multiplier != 1.0:
        spec = spec.scaled(tier_multiplier)
    return spec


def parse_descriptor(descriptor: str, tier_multiplier: float = 1.0) -> List[LimitSpec]:
    """Parse a comma-separated route descriptor into specs.

    Specs sharing a window or refill rate get distinct slots so each keeps
    its own state.

    Raises:
        ConfigurationError: If the list is empty or any item is invalid
    """
    items = [item for item in (p.strip() for p in descriptor.split(",")) if item]
    if not items:
        raise ConfigurationError("Empty limit descriptor", descriptor=descriptor)
    specs = []
    seen: Dict[str, int] = {}
    for item in items:
        spec = parse_spec(item, tier_multiplier)
        slot = seen.get(spec.slug, 0)
        seen[spec.slug] = slot + 1
        if slot:
            spec = replace(spec, slot=slot)
        specs.append(spec)
    return specs


def apply_tier(specs: Sequence[LimitSpec], multiplier: float) -> List[LimitSpec]:
    """Scale already-parsed specs for a tier."""
    if multiplier == 1.0:
        return list(specs)
    return [spec.scaled(multiplier) for spec in specs]


def resolve_multiplier(tier: Optional[str], tiers: Mapping[str, float]) -> float:
    """Look up a tier's multiplier; unknown or missing tiers get 1.0."""
    if not tier:
        return 1.0
    multiplier = tiers.get(tier)
    if multiplier is None:
        logger.debug(f"Unknown rate limit tier {tier!r}, using base limits")
        return 1.0
    return float(multiplier)


def validate_tiers(tiers: Mapping[str, float]) -> None:
    """Raise ConfigurationError for multipliers below 1.0."""
    for name, multiplier in tiers.items():
        if not math.isfinite(multiplier) or multiplier < 1.0:
            raise ConfigurationError(f"Tier {name!r} multiplier must be >= 1.0", descriptor=str(multiplier))
