"""Middleware package for the admission service."""

from admission.app.middleware.auth import require_admin
from admission.app.middleware.rate_limit import (
    AdmissionMiddleware,
    RouteLimit,
    RouteTable,
    TrustedProxies,
    Whitelist,
    identity_from_state,
)

__all__ = [
    "require_admin",
    "AdmissionMiddleware",
    "RouteLimit",
    "RouteTable",
    "TrustedProxies",
    "Whitelist",
    "identity_from_state",
]
