"""Admission middleware.

Each configured route carries one or more limit specs. For every matching
request the middleware resolves the caller's identity, builds the composite
key, asks the coordinator and either lets the request through with
X-RateLimit-* headers or answers 429 with Retry-After.
"""

import ipaddress
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Pattern, Tuple, Union

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.routing import compile_path

from admission.app.core.config import DEFAULT_TIERS
from admission.app.core.logging import get_log_context, get_logger
from admission.app.exceptions import ConfigurationError
from admission.app.services.rate_limit.coordinator import RateLimitCoordinator
from admission.app.services.rate_limit.events import (
    EventSink,
    LoggingEventSink,
    RequestThrottled,
    publish_safely,
)
from admission.app.services.rate_limit.keys import build_key, request_components
from admission.app.services.rate_limit.models import CheckResult, LimitSpec
from admission.app.services.rate_limit.specs import (
    apply_tier,
    parse_descriptor,
    resolve_multiplier,
    validate_tiers,
)

logger = get_logger(__name__)

# (user_id, tier) of the caller
Identity = Tuple[Optional[str], Optional[str]]
IdentityResolver = Callable[[Request], Identity]
IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

DEFAULT_ROUTE_NAME = "*"


def identity_from_state(request: Request) -> Identity:
    """Read the identity an upstream auth layer stored on request.state."""
    user_id = getattr(request.state, "user_id", None)
    tier = getattr(request.state, "tier", None)
    return (str(user_id) if user_id is not None else None, tier)


def split_route(route: str) -> Tuple[Optional[str], str]:
    """Split ``"POST /bookings/{room_id}"`` into method and path.

    A bare path or a ``*`` method matches every method.

    Raises:
        ConfigurationError: If the route has no path or the path is not absolute
    """
    parts = route.split()
    if len(parts) == 1:
        method, path = None, parts[0]
    elif len(parts) == 2:
        method, path = parts[0].upper(), parts[1]
        if method == "*":
            method = None
    else:
        raise ConfigurationError("Route must be 'METHOD /path'", descriptor=route)
    if not path.startswith("/"):
        raise ConfigurationError("Route path must start with '/'", descriptor=route)
    return method, path


@dataclass
class RouteLimit:
    """Limit specs attached to one route template."""
    name: str
    method: Optional[str]
    path: Optional[str]
    specs: List[LimitSpec]
    regex: Optional[Pattern] = field(default=None, repr=False)

    @classmethod
    def from_config(cls, route: str, descriptor: str) -> "RouteLimit":
        method, path = split_route(route)
        regex, _, _ = compile_path(path)
        name = f"{method} {path}" if method else path
        return cls(name=name, method=method, path=path, specs=parse_descriptor(descriptor), regex=regex)

    def match(self, method: str, path: str) -> Optional[Dict[str, str]]:
        """Return the path parameters if this route matches, else None."""
        if self.regex is None:
            return None
        if self.method is not None and self.method != method.upper():
            return None
        match = self.regex.match(path)
        if match is None:
            return None
        return match.groupdict()


def resources_from_params(params: Mapping[str, str]) -> List[str]:
    """Path parameters as ``name:value`` resource identifiers."""
    return [f"{name}:{value}" for name, value in params.items()]


class RouteTable:
    """Route-level limit configuration.

    Descriptors are parsed once, at construction, so a bad descriptor stops
    the application from booting. Tier-scaled spec lists are cached per
    route and multiplier.
    """

    def __init__(
        self,
        routes: Mapping[str, str],
        default: Optional[str] = None,
        tiers: Optional[Mapping[str, float]] = None,
    ) -> None:
        """Initialize the route table.

        Args:
            routes: ``"METHOD /path/{param}"`` -> limit descriptor
            default: Descriptor for requests no route matches; None leaves
                them unlimited
            tiers: Tier name -> capacity multiplier

        Raises:
            ConfigurationError: If any descriptor or multiplier is invalid
        """
        self.tiers: Dict[str, float] = dict(DEFAULT_TIERS if tiers is None else tiers)
        validate_tiers(self.tiers)

        self._routes: List[RouteLimit] = [
            RouteLimit.from_config(route, descriptor) for route, descriptor in routes.items()
        ]
        self._by_name: Dict[str, RouteLimit] = {route.name: route for route in self._routes}
        self._default: Optional[RouteLimit] = None
        if default:
            self._default = RouteLimit(
                name=DEFAULT_ROUTE_NAME, method=None, path=None, specs=parse_descriptor(default)
            )
        self._scaled: Dict[Tuple[str, float], List[LimitSpec]] = {}

    @property
    def routes(self) -> List[RouteLimit]:
        return list(self._routes)

    @property
    def default(self) -> Optional[RouteLimit]:
        return self._default

    def match(self, method: str, path: str) -> Optional[Tuple[RouteLimit, str, Dict[str, str]]]:
        """Find the limits for a request.

        Returns:
            ``(route, endpoint, path_params)``, or None when the request is
            not rate limited
        """
        for route in self._routes:
            params = route.match(method, path)
            if params is not None:
                return route, route.name, params
        if self._default is not None:
            return self._default, f"{method.upper()} {path}", {}
        return None

    def resolve(self, route: str) -> Optional[Tuple[RouteLimit, str]]:
        """Look up limits by route name, as used by the admin endpoints.

        A name that is not configured resolves to the default limits with
        the name itself as the endpoint.
        """
        method, path = split_route(route)
        name = f"{method} {path}" if method else path
        limit = self._by_name.get(name)
        if limit is not None:
            return limit, limit.name
        if self._default is not None:
            return self._default, name
        return None

    def specs_for(self, route: RouteLimit, tier: Optional[str]) -> List[LimitSpec]:
        """Specs of route scaled by the tier's multiplier."""
        multiplier = resolve_multiplier(tier, self.tiers)
        cache_key = (route.name, multiplier)
        specs = self._scaled.get(cache_key)
        if specs is None:
            specs = apply_tier(route.specs, multiplier)
            self._scaled[cache_key] = specs
        return specs


@dataclass(frozen=True)
class Whitelist:
    """Exact-match identities and source addresses that bypass all limits."""
    ips: FrozenSet[str] = frozenset()
    users: FrozenSet[str] = frozenset()

    @classmethod
    def from_lists(cls, ips: Iterable[str] = (), users: Iterable[str] = ()) -> "Whitelist":
        return cls(ips=frozenset(ips), users=frozenset(users))

    def matches(self, user_id: Optional[str], client_ip: Optional[str]) -> bool:
        if user_id is not None and user_id in self.users:
            return True
        return client_ip is not None and client_ip in self.ips


@dataclass(frozen=True)
class TrustedProxies:
    """Peers whose X-Forwarded-For header is believed.

    Entries are addresses or CIDR networks. Anything else is matched as a
    literal peer name, e.g. a unix socket peer.
    """
    networks: Tuple[IPNetwork, ...] = ()
    names: FrozenSet[str] = frozenset()

    @classmethod
    def from_list(cls, entries: Iterable[str] = ()) -> "TrustedProxies":
        networks = []
        names = set()
        for entry in entries:
            try:
                networks.append(ipaddress.ip_network(entry, strict=False))
            except ValueError:
                names.add(entry)
        return cls(networks=tuple(networks), names=frozenset(names))

    def trusts(self, host: Optional[str]) -> bool:
        if not host:
            return False
        if host in self.names:
            return True
        try:
            address = ipaddress.ip_address(host)
        except ValueError:
            return False
        return any(address in network for network in self.networks)

    def client_address(self, peer: Optional[str], forwarded: Optional[str]) -> Optional[str]:
        """Source address of a request that reached us from peer.

        The header is only read when peer is trusted. Hops are walked from
        the right and the first one not added by a trusted proxy wins.
        """
        if not forwarded or not self.trusts(peer):
            return peer
        hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
        for hop in reversed(hops):
            if not self.trusts(hop):
                return hop
        return hops[0] if hops else peer


class AdmissionMiddleware(BaseHTTPMiddleware):
    """Middleware to enforce rate limits on requests.

    Authenticated requests are limited per identity, anonymous requests per
    source address. Path parameters of the matched route become resource
    components of the key.
    """

    def __init__(
        self,
        app,
        coordinator: RateLimitCoordinator,
        route_table: RouteTable,
        whitelist: Optional[Whitelist] = None,
        event_sink: Optional[EventSink] = None,
        trusted_proxies: Optional[TrustedProxies] = None,
        identity_resolver: IdentityResolver = identity_from_state,
    ):
        super().__init__(app)
        self.coordinator = coordinator
        self.route_table = route_table
        self.whitelist = whitelist if whitelist is not None else Whitelist()
        self.event_sink = event_sink if event_sink is not None else LoggingEventSink()
        self.trusted_proxies = trusted_proxies if trusted_proxies is not None else TrustedProxies()
        self.identity_resolver = identity_resolver

    def _client_ip(self, request: Request) -> str:
        peer = request.client.host if request.client else None
        address = self.trusted_proxies.client_address(peer, request.headers.get("X-Forwarded-For"))
        return address or "unknown"

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        """Process request with rate limiting."""
        matched = self.route_table.match(request.method, request.url.path)
        if matched is None:
            return await call_next(request)
        route, endpoint, params = matched

        user_id, tier = self.identity_resolver(request)
        client_ip = self._client_ip(request)

        if self.whitelist.matches(user_id, client_ip):
            await self.coordinator.metrics.record_whitelisted()
            logger.debug(
                "Whitelisted request skipped rate limiting",
                extra=get_log_context(endpoint=endpoint, user_id=user_id, client_ip=client_ip),
            )
            return await call_next(request)

        key = build_key(
            request_components(user_id, client_ip, endpoint, resources_from_params(params))
        )
        specs = self.route_table.specs_for(route, tier)
        result = await self.coordinator.check(key, specs)

        if not result.allowed:
            return self._reject(result, key, endpoint, user_id, client_ip)

        response = await call_next(request)
        response.headers.update(rate_limit_headers(result))
        return response

    def _reject(
        self,
        result: CheckResult,
        key: str,
        endpoint: str,
        user_id: Optional[str],
        client_ip: str,
    ) -> JSONResponse:
        retry_after = result.retry_after_seconds or 1
        binding = result.binding_spec.to_descriptor() if result.binding_spec else None
        publish_safely(
            self.event_sink,
            RequestThrottled(
                key=key,
                endpoint=endpoint,
                binding_spec=binding,
                retry_after=retry_after,
                user_id=user_id,
                client_ip=client_ip,
            ),
        )
        headers = rate_limit_headers(result)
        headers["Retry-After"] = str(retry_after)
        return JSONResponse(
            status_code=429,
            content={"allowed": False, "retry_after": retry_after},
            headers=headers,
        )


def rate_limit_headers(result: CheckResult) -> Dict[str, str]:
    """Informational headers for a check result."""
    return {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(result.reset_at),
    }
