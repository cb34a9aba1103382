"""Composite rate limit keys.

A key is built from ``(scope, identifier)`` components joined as
``scope:identifier`` pairs. Known scopes always appear in this order,
whatever order the caller passes them in:

    user, ip, resource, endpoint

Unknown scopes follow in the order given. Components without an identifier
are dropped, so an anonymous request collapses onto its coarser IP-only key.

Identifiers are escaped (``%`` as ``%25``, ``:`` as ``%3A``) so a caller
cannot forge another component through its own id. A resource identifier
is ``name:value``; only the first colon separates the two.
"""

from typing import Iterable, Optional, Sequence, Tuple

SCOPE_ORDER: Tuple[str, ...] = ("user", "ip", "resource", "endpoint")

Component = Tuple[str, Optional[object]]


def escape_identifier(text: str) -> str:
    return text.replace("%", "%25").replace(":", "%3A")


def _format_identifier(scope: str, text: str) -> str:
    if scope == "resource" and ":" in text:
        name, value = text.split(":", 1)
        return f"{escape_identifier(name)}:{escape_identifier(value)}"
    return escape_identifier(text)


def build_key(components: Iterable[Component]) -> str:
    """Build a deterministic rate limit key.

    Args:
        components: ``(scope, identifier)`` pairs; identifier may be None

    Returns:
        Key such as ``user:42:resource:room:7:endpoint:POST /bookings``

    Raises:
        ValueError: If no component carries an identifier
    """
    present = []
    for position, (scope, identifier) in enumerate(components):
        if identifier is None:
            continue
        text = str(identifier).strip()
        if not text:
            continue
        rank = SCOPE_ORDER.index(scope) if scope in SCOPE_ORDER else len(SCOPE_ORDER)
        present.append((rank, position, scope, _format_identifier(scope, text)))

    if not present:
        raise ValueError("rate limit key needs at least one identified component")

    present.sort()
    return ":".join(f"{scope}:{text}" for _, _, scope, text in present)


def request_components(
    user_id: Optional[object],
    client_ip: Optional[str],
    endpoint: Optional[str],
    resources: Sequence[str] = (),
) -> list:
    """Components for an inbound request.

    Authenticated requests are keyed by identity, anonymous ones by source
    address.
    """
    components: list = []
    if user_id is not None and str(user_id).strip():
        components.append(("user", user_id))
    else:
        components.append(("ip", client_ip))
    for resource in resources:
        components.append(("resource", resource))
    components.append(("endpoint", endpoint))
    return components
