"""Static routing table of the gateway.

A ``RouteTable`` is an ordered, immutable list of ``RouteRule`` entries built
once at startup. Each rule maps a match (URL path prefix or subdomain label) to
a destination: either an in-process ASGI application (``LocalHandler``) or a
fixed upstream service (``UpstreamTarget``).

Priority order is fixed: every path-prefix rule is evaluated before any
subdomain rule, and inside each group the declaration order is kept. The first
matching rule wins.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, Optional, Union
from urllib.parse import urlsplit

from gateway.routing.classifier import RoutingKey

ASGIApp = Callable[..., Any]


class RouteConfigError(ValueError):
    """Raised when the static routing configuration is unusable."""


class MatchKind(Enum):
    PATH_PREFIX = "path_prefix"
    SUBDOMAIN = "subdomain"


# Lower value is evaluated first
_KIND_PRIORITY = {MatchKind.PATH_PREFIX: 0, MatchKind.SUBDOMAIN: 1}

_DEFAULT_PORTS = {"http": 80, "https": 443}


@dataclass(frozen=True)
class LocalHandler:
    """An in-process application that produces complete responses itself."""

    name: str
    app: ASGIApp


@dataclass(frozen=True)
class UpstreamTarget:
    """A single fixed upstream service reached through the reverse proxy."""

    scheme: str
    host: str
    port: int
    forwarded_proto_override: Optional[str] = None
    host_rewrite: bool = True

    @property
    def authority(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def base_url(self) -> str:
        return f"{self.scheme}://{self.authority}"

    @property
    def ws_base_url(self) -> str:
        ws_scheme = "wss" if self.scheme == "https" else "ws"
        return f"{ws_scheme}://{self.authority}"

    @classmethod
    def from_url(
        cls,
        url: str,
        forwarded_proto_override: Optional[str] = None,
        host_rewrite: bool = True,
    ) -> "UpstreamTarget":
        """Build a target from ``scheme://host[:port]``.

        Raises:
            RouteConfigError: if the URL has no host, an unsupported scheme,
                a path component or an invalid port.
        """
        if not url:
            raise RouteConfigError("Upstream URL is empty")
        try:
            parsed = urlsplit(url)
            port = parsed.port
        except ValueError as e:
            raise RouteConfigError(f"Invalid upstream URL {url!r}: {e}") from e
        scheme = (parsed.scheme or "").lower()
        if scheme not in _DEFAULT_PORTS:
            raise RouteConfigError(
                f"Unsupported upstream scheme in {url!r} (expected http or https)"
            )
        if not parsed.hostname:
            raise RouteConfigError(f"Upstream URL {url!r} has no host")
        if parsed.path not in ("", "/") or parsed.query or parsed.fragment:
            raise RouteConfigError(
                f"Upstream URL {url!r} must not carry a path, query or fragment"
            )
        return cls(
            scheme=scheme,
            host=parsed.hostname,
            port=port or _DEFAULT_PORTS[scheme],
            forwarded_proto_override=forwarded_proto_override,
            host_rewrite=host_rewrite,
        )


Destination = Union[LocalHandler, UpstreamTarget]


def path_prefix_matches(prefix: str, path: str) -> bool:
    """Check a request path against a path-prefix rule.

    A prefix ending in ``/`` matches any path starting with it. Any other
    prefix only matches on a segment boundary, so ``/home`` matches ``/home``
    and ``/home/docs`` but not ``/homepage``.
    """
    if prefix.endswith("/"):
        return path.startswith(prefix)
    return path == prefix or path.startswith(prefix + "/")


@dataclass(frozen=True)
class RouteRule:
    match_kind: MatchKind
    match_value: str
    destination: Destination

    def matches(self, key: RoutingKey) -> bool:
        if self.match_kind is MatchKind.PATH_PREFIX:
            return path_prefix_matches(self.match_value, key.path)
        return key.subdomain_label == self.match_value

    @property
    def mount_path(self) -> str:
        """Root path a local handler sees when reached through a path prefix."""
        return self.match_value.rstrip("/")


def _validate(rule: RouteRule) -> None:
    if not isinstance(rule.match_kind, MatchKind):
        raise RouteConfigError(f"Unknown match kind: {rule.match_kind!r}")
    if not isinstance(rule.destination, (LocalHandler, UpstreamTarget)):
        raise RouteConfigError(
            f"Rule {rule.match_value!r} has no valid destination: {rule.destination!r}"
        )
    if rule.match_kind is MatchKind.PATH_PREFIX:
        if not rule.match_value.startswith("/") or rule.match_value == "/":
            raise RouteConfigError(
                f"Path prefix {rule.match_value!r} must start with '/' and not be the root"
            )
        if isinstance(rule.destination, UpstreamTarget):
            raise RouteConfigError(
                f"Upstream targets can only be routed by subdomain, not by path prefix {rule.match_value!r}"
            )
    else:
        value = rule.match_value
        if not value or "." in value or ":" in value or value != value.lower():
            raise RouteConfigError(
                f"Subdomain label {value!r} must be a single lower-case label"
            )


class RouteTable:
    """Ordered, read-only collection of route rules."""

    def __init__(self, rules: Iterable[RouteRule]):
        rules = list(rules)
        seen = set()
        for rule in rules:
            _validate(rule)
            ident = (rule.match_kind, rule.match_value)
            if ident in seen:
                raise RouteConfigError(
                    f"Duplicate {rule.match_kind.value} rule for {rule.match_value!r}"
                )
            seen.add(ident)
        # sorted() is stable, declaration order is kept inside each kind
        self._rules = tuple(sorted(rules, key=lambda r: _KIND_PRIORITY[r.match_kind]))

    @property
    def rules(self) -> tuple:
        return self._rules

    def __iter__(self):
        return iter(self._rules)

    def __len__(self) -> int:
        return len(self._rules)

    def match(self, key: RoutingKey) -> Optional[RouteRule]:
        """Return the first rule matching ``key``, or None."""
        for rule in self._rules:
            if rule.matches(key):
                return rule
        return None

    def subdomain_rules(self) -> list:
        return [r for r in self._rules if r.match_kind is MatchKind.SUBDOMAIN]

    def path_prefix_rules(self) -> list:
        return [r for r in self._rules if r.match_kind is MatchKind.PATH_PREFIX]
