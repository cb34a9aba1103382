from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from admission.app.api.rate_limit import router as rate_limit_router
from admission.app.core.config import Settings, settings
from admission.app.core.logging import get_logger, setup_logging
from admission.app.exceptions import AdmissionError
from admission.app.middleware.rate_limit import (
    AdmissionMiddleware,
    IdentityResolver,
    RouteTable,
    TrustedProxies,
    Whitelist,
    identity_from_state,
)
from admission.app.services.rate_limit.coordinator import RateLimitCoordinator
from admission.app.services.rate_limit.events import EventSink, LoggingEventSink
from admission.app.services.rate_limit.memory_store import InMemoryRateLimitStore
from admission.app.services.rate_limit.metrics import RateLimitMetrics
from admission.app.services.rate_limit.redis_store import RedisRateLimitStore, create_redis_client


def create_app(
    config: Optional[Settings] = None,
    redis_client: Optional[Any] = None,
    event_sink: Optional[EventSink] = None,
    identity_resolver: IdentityResolver = identity_from_state,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        config: Settings to use; defaults to the global settings
        redis_client: Pre-built redis.asyncio client; when omitted one is
            created from redis_url if redis_enabled is set
        event_sink: Receiver for throttling and degradation events
        identity_resolver: Returns (user_id, tier) for a request

    Returns:
        Configured FastAPI application instance

    Raises:
        ConfigurationError: If a route descriptor or tier table is invalid
    """
    config = config if config is not None else settings

    # Setup logging
    setup_logging(config)
    logger = get_logger(__name__)

    # Parse every descriptor now so bad configuration fails at boot
    route_table = RouteTable(
        config.rate_limit_routes,
        default=config.rate_limit_default or None,
        tiers=config.rate_limit_tiers,
    )
    whitelist = Whitelist.from_lists(
        ips=config.rate_limit_whitelist_ips,
        users=config.rate_limit_whitelist_users,
    )
    event_sink = event_sink if event_sink is not None else LoggingEventSink()

    owns_client = False
    if redis_client is None and config.redis_enabled:
        redis_client = create_redis_client(config.redis_url, config.backend_timeout_seconds)
        owns_client = True

    backend: Optional[RedisRateLimitStore] = None
    if redis_client is not None:
        backend = RedisRateLimitStore(
            redis_client,
            key_prefix=config.rate_limit_key_prefix,
            timeout_seconds=config.backend_timeout_seconds,
        )

    coordinator = RateLimitCoordinator(
        backend,
        fallback=InMemoryRateLimitStore(max_keys=config.rate_limit_fallback_max_keys),
        metrics=RateLimitMetrics(),
        event_sink=event_sink,
        degraded_cooldown=config.rate_limit_degraded_cooldown_seconds,
        retry_backend_after=config.rate_limit_backend_retry_seconds,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan context manager.

        Reports the backing store on startup and closes the Redis client on
        shutdown if this application created it.
        """
        if backend is not None and not await backend.ping():
            # Checks fall back to the in-memory store until Redis answers
            logger.warning("Redis is unreachable at startup, rate limits are enforced per instance")

        logger.info(
            "Application startup complete",
            extra={
                "backend": backend.name if backend is not None else "memory",
                "routes_limited": len(route_table.routes),
                "default_limit": config.rate_limit_default or None,
            }
        )

        yield

        if backend is not None and owns_client:
            await backend.close()

        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Admission Gateway",
        description="Distributed rate limiting with sliding window and token bucket limits",
        version="1.0.0",
        lifespan=lifespan
    )

    app.state.settings = config
    app.state.rate_limit_coordinator = coordinator
    app.state.route_table = route_table

    app.add_middleware(
        AdmissionMiddleware,
        coordinator=coordinator,
        route_table=route_table,
        whitelist=whitelist,
        event_sink=event_sink,
        trusted_proxies=TrustedProxies.from_list(config.rate_limit_trusted_proxies),
        identity_resolver=identity_resolver,
    )

    app.include_router(rate_limit_router)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Health check with the state of the rate limit backing store."""
        snapshot = await coordinator.metrics.snapshot()
        if backend is None:
            component = {"status": "ok", "type": "memory"}
        elif snapshot["backend_healthy"]:
            component = {"status": "ok", "type": backend.name}
        else:
            component = {"status": "degraded", "type": backend.name, "fallback": "memory"}

        return {
            "status": "ok" if component["status"] == "ok" else "degraded",
            "components": {"rate_limit_backend": component},
        }

    @app.exception_handler(AdmissionError)
    async def admission_error_handler(request: Request, exc: AdmissionError) -> JSONResponse:
        """Handle AdmissionError subclasses with their own status code."""
        request_id = getattr(request.state, "request_id", None)
        logger.error(
            f"Admission error: {exc.message}",
            extra={"request_id": request_id, "exception_type": type(exc).__name__},
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": type(exc).__name__, "message": exc.message},
        )

    return app


# Create the application instance
app = create_app()
