"""Builds the gateway's static route table from configuration."""

import logging
from typing import Dict, Iterable, Tuple

from gateway import vars as gateway_vars
from gateway.routing.table import (
    LocalHandler,
    MatchKind,
    RouteConfigError,
    RouteRule,
    RouteTable,
    UpstreamTarget,
)

logger = logging.getLogger("uvicorn.error")

KNOWN_UPSTREAM_FLAGS = {"keep-host", "proto"}

# Subdomain label -> local app name
LOCAL_SUBDOMAINS = (
    ("home", "home"),
    ("server", "home"),
    ("hub", "hub"),
    ("files", "files"),
)

DEV_PREFIXES = ("home", "hub", "files")


def upstream_rule(label: str, url: str, flags: dict) -> RouteRule:
    """Turn one ``GATEWAY_UPSTREAMS`` entry into a subdomain rule."""
    if not label:
        raise RouteConfigError(f"Upstream entry for {url!r} has no subdomain label")
    unknown = set(flags) - KNOWN_UPSTREAM_FLAGS
    if unknown:
        raise RouteConfigError(
            f"Unknown flag(s) {', '.join(sorted(unknown))} for upstream {label!r}"
        )
    proto = flags.get("proto")
    if proto is not None and proto not in ("http", "https"):
        raise RouteConfigError(
            f"Upstream {label!r} has invalid proto={proto!r} (expected http or https)"
        )
    target = UpstreamTarget.from_url(
        url,
        forwarded_proto_override=proto,
        host_rewrite=not flags.get("keep-host", False),
    )
    return RouteRule(MatchKind.SUBDOMAIN, label, target)


def build_route_table(
    local_apps: Dict[str, object],
    upstreams: Iterable[Tuple[str, str, dict]] = None,
    dev_routes: bool = None,
) -> RouteTable:
    """Declare the gateway's rules.

    ``local_apps`` must provide ``certs``, ``home``, ``hub`` and ``files``.

    Raises:
        RouteConfigError: on a malformed upstream entry or conflicting rules.
    """
    if upstreams is None:
        upstreams = gateway_vars.UPSTREAMS
    if dev_routes is None:
        dev_routes = gateway_vars.GATEWAY_DEV_ROUTES

    missing = {"certs", "home", "hub", "files"} - set(local_apps)
    if missing:
        raise RouteConfigError(f"Missing local app(s): {', '.join(sorted(missing))}")

    def local(name: str) -> LocalHandler:
        return LocalHandler(name, local_apps[name])

    rules = [RouteRule(MatchKind.PATH_PREFIX, "/certs", local("certs"))]
    if dev_routes:
        rules += [RouteRule(MatchKind.PATH_PREFIX, f"/{name}", local(name)) for name in DEV_PREFIXES]
    rules += [
        RouteRule(MatchKind.SUBDOMAIN, label, local(name)) for label, name in LOCAL_SUBDOMAINS
    ]
    rules += [upstream_rule(label, url, flags) for label, url, flags in upstreams]

    table = RouteTable(rules)
    for rule in table:
        logger.info(f"[Dispatch] Route {rule.match_kind.value} {rule.match_value!r}")
    return table
