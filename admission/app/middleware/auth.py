import hmac
import os
from typing import Optional

from fastapi import HTTPException, Request


def get_admin_token(request: Request) -> str:
    """Get the admin token configured for this application.

    Reads ``admin_token`` from the application's settings, falling back to
    the ADMIN_TOKEN environment variable.

    Raises:
        HTTPException: 503 if no admin token is configured
    """
    config = getattr(request.app.state, "settings", None)
    token = getattr(config, "admin_token", "") or os.getenv("ADMIN_TOKEN", "")
    # Normalize accidental whitespace/newline from env/secret stores.
    token = token.strip()
    if not token:
        raise HTTPException(status_code=503, detail="Admin endpoints are disabled")
    return token


def get_bearer_token(request: Request) -> Optional[str]:
    """Extract Bearer token from Authorization header.

    Args:
        request: The incoming request

    Returns:
        The token string if present, None otherwise
    """
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None
    return auth.replace("Bearer ", "", 1).strip()


def require_admin(request: Request) -> str:
    """Validate admin token for protected endpoints.

    Args:
        request: The incoming request

    Returns:
        Admin identifier if valid

    Raises:
        HTTPException: 401 if admin token is missing or invalid
    """
    expected_token = get_admin_token(request)

    # Always perform comparison to prevent enumeration via timing analysis
    token = get_bearer_token(request) or ""

    if not hmac.compare_digest(token.encode(), expected_token.encode()):
        raise HTTPException(status_code=401, detail="Invalid or missing admin token")

    return "admin"
