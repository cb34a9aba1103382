"""Rate limiting admin endpoints.

Exposes the limiter's counters for monitoring and lets operators inspect or
clear the quota state of a single key. All endpoints require the admin token.
"""

from typing import Any, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from admission.app.core.logging import get_logger
from admission.app.exceptions import ConfigurationError
from admission.app.middleware.auth import require_admin
from admission.app.middleware.rate_limit import RouteTable
from admission.app.services.rate_limit.coordinator import RateLimitCoordinator
from admission.app.services.rate_limit.keys import build_key, request_components
from admission.app.services.rate_limit.models import LimitSpec

logger = get_logger(__name__)
router = APIRouter(prefix="/rate-limit", tags=["rate-limit"])


class LimitTarget(BaseModel):
    """Identifies the quota state of one caller on one route.

    Either give the composite ``key`` directly (as it appears in logs and
    events) or the parts it is built from.
    """

    route: str = Field(..., description="Configured route, e.g. 'POST /bookings/{room_id}'")
    key: Optional[str] = None
    user_id: Optional[str] = None
    client_ip: Optional[str] = None
    resources: List[str] = Field(default_factory=list, description="'name:value' path parameters")
    tier: Optional[str] = None


def get_coordinator(request: Request) -> RateLimitCoordinator:
    return request.app.state.rate_limit_coordinator


def get_route_table(request: Request) -> RouteTable:
    return request.app.state.route_table


def _resolve(target: LimitTarget, route_table: RouteTable) -> tuple[str, List[LimitSpec]]:
    try:
        resolved = route_table.resolve(target.route)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=e.message) from e
    if resolved is None:
        raise HTTPException(status_code=404, detail=f"No rate limit configured for {target.route!r}")
    route, endpoint = resolved

    key = target.key
    if not key:
        if target.user_id is None and target.client_ip is None:
            raise HTTPException(status_code=400, detail="Give a key, a user_id or a client_ip")
        key = build_key(
            request_components(target.user_id, target.client_ip, endpoint, target.resources)
        )
    return key, route_table.specs_for(route, target.tier)


@router.get("/metrics", response_class=PlainTextResponse)
async def prometheus_metrics(
    coordinator: RateLimitCoordinator = Depends(get_coordinator),
    admin=Depends(require_admin),
) -> PlainTextResponse:
    """Prometheus-compatible rate limit metrics (admin only).

    Returns:
        Plain text response with Prometheus-formatted metrics
    """
    content = await coordinator.metrics.get_prometheus_metrics()
    return PlainTextResponse(
        content=content, media_type="text/plain; version=0.0.4; charset=utf-8"
    )


@router.get("/stats")
async def rate_limit_stats(
    coordinator: RateLimitCoordinator = Depends(get_coordinator),
    admin=Depends(require_admin),
) -> dict[str, Any]:
    """Metrics snapshot as JSON (admin only)."""
    return await coordinator.metrics.snapshot()


@router.get("/status")
async def rate_limit_status(
    route: str,
    key: Optional[str] = None,
    user_id: Optional[str] = None,
    client_ip: Optional[str] = None,
    resource: List[str] = Query([]),
    tier: Optional[str] = None,
    coordinator: RateLimitCoordinator = Depends(get_coordinator),
    route_table: RouteTable = Depends(get_route_table),
    admin=Depends(require_admin),
) -> dict[str, Any]:
    """Current usage of every limit on a route, without consuming quota.

    Args:
        route: Configured route name
        key: Composite key; built from user_id/client_ip/resource when absent
        resource: Repeatable ``name:value`` path parameter
        tier: Tier used to scale the reported limits
    """
    target = LimitTarget(
        route=route, key=key, user_id=user_id, client_ip=client_ip, resources=resource, tier=tier
    )
    rate_limit_key, specs = _resolve(target, route_table)
    statuses = await coordinator.status(rate_limit_key, specs)
    return {
        "key": rate_limit_key,
        "limits": [status.to_dict() for status in statuses],
    }


@router.post("/reset")
async def reset_rate_limit(
    target: LimitTarget,
    coordinator: RateLimitCoordinator = Depends(get_coordinator),
    route_table: RouteTable = Depends(get_route_table),
    admin=Depends(require_admin),
) -> dict[str, Any]:
    """Clear the quota state of one key on a route (admin only).

    Returns:
        ``{"key": ..., "reset": true}``; reset is false when the shared store
        could not be reached and only the local state was cleared
    """
    rate_limit_key, specs = _resolve(target, route_table)
    reset = await coordinator.reset(rate_limit_key, specs)
    logger.info(f"Admin reset of rate limit {rate_limit_key} (shared store: {reset})")
    return {"key": rate_limit_key, "reset": reset}
