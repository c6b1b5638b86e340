"""Derive the routing key of an inbound request.

The classifier is a pure string operation on the Host header and the request
path. It never performs DNS lookups and never raises: a missing or malformed
Host header simply yields an empty subdomain label.
"""

from dataclasses import dataclass
from typing import Iterable, Optional, Tuple


@dataclass(frozen=True)
class RoutingKey:
    subdomain_label: str
    path: str


def subdomain_label(host: Optional[str]) -> str:
    """Return the first dot-delimited label of a Host header value.

    >>> subdomain_label("3dprint.example.net")
    '3dprint'
    >>> subdomain_label("hub.oznet:3000")
    'hub'
    >>> subdomain_label(None)
    ''
    """
    if not host or not isinstance(host, str):
        return ""
    host = host.strip().lower()
    # Bracketed IPv6 literal, there is no label to extract
    if host.startswith("["):
        return ""
    host = host.split(":", 1)[0]
    return host.split(".", 1)[0]


def classify(host: Optional[str], path: str) -> RoutingKey:
    return RoutingKey(subdomain_label=subdomain_label(host), path=path or "/")


def host_from_headers(headers: Iterable[Tuple[bytes, bytes]]) -> Optional[str]:
    """Pick the Host value out of raw ASGI header pairs."""
    for name, value in headers:
        if name.lower() == b"host":
            return value.decode("latin-1")
    return None


def classify_scope(scope: dict) -> RoutingKey:
    """Classify an ASGI ``http`` or ``websocket`` scope."""
    host = host_from_headers(scope.get("headers") or [])
    return classify(host, scope.get("path", "/"))
