"""Per-request dispatch over the static route table.

``Dispatcher`` is a pure ASGI middleware placed in front of the gateway's own
application. For every ``http`` and ``websocket`` scope it computes the routing
key, selects the first matching rule and hands the connection to exactly one
destination:

- a ``LocalHandler`` app, invoked directly (mounted under the rule's prefix for
  path-prefix rules, untouched for subdomain rules);
- the reverse proxy app built for an ``UpstreamTarget``;
- the wrapped gateway application when no rule matches, whose catch-all route
  is the fallback page.

Once delegated, the dispatcher does not inspect or retry the exchange.
"""

import logging
from typing import Callable, Dict

from opentelemetry import trace

from gateway.routing.classifier import classify_scope, host_from_headers
from gateway.routing.table import (
    LocalHandler,
    MatchKind,
    RouteRule,
    RouteTable,
    UpstreamTarget,
)
from gateway.utils.traced_requests import traced_request

logger = logging.getLogger("uvicorn.error")
tracer = trace.get_tracer(__name__)


def mount_scope(scope: dict, mount_path: str) -> dict:
    """Child scope for an app mounted under ``mount_path``.

    The full path is kept and ``root_path`` is extended, matching how Starlette
    mounts sub-applications. A request for the bare prefix is presented with a
    trailing slash so the child app sees its root route.
    """
    child = dict(scope)
    root_path = scope.get("root_path", "") + mount_path
    child["root_path"] = root_path
    if scope["path"] == root_path:
        child["path"] = root_path + "/"
        raw_path = scope.get("raw_path")
        if raw_path is not None:
            child["raw_path"] = raw_path + b"/"
    return child


def _default_proxy_factory(target: UpstreamTarget, subdomain: str):
    from gateway.app_proxy import build_proxy_app

    return build_proxy_app(target, subdomain)


class Dispatcher:
    def __init__(
        self,
        app,
        route_table: RouteTable,
        proxy_factory: Callable = _default_proxy_factory,
    ):
        self.app = app
        self.route_table = route_table
        # Proxy apps are built once, the table never changes after startup
        self._proxies: Dict[str, object] = {
            rule.match_value: proxy_factory(rule.destination, rule.match_value)
            for rule in route_table
            if isinstance(rule.destination, UpstreamTarget)
        }

    def select(self, scope: dict):
        """Return the matching rule for an ASGI scope, or None."""
        return self.route_table.match(classify_scope(scope))

    async def __call__(self, scope, receive, send):
        if scope["type"] not in ("http", "websocket"):
            await self.app(scope, receive, send)
            return

        rule = self.select(scope)
        host = host_from_headers(scope.get("headers") or [])
        path = scope.get("path", "/")

        if rule is None:
            logger.debug(f"[Dispatch] No route for host={host!r} path={path}, serving fallback")
            await self.app(scope, receive, send)
            return

        with traced_request(
            tracer,
            operation="dispatch",
            host=host,
            path=path,
            start_message=f"[Dispatch] {scope['type']} host={host!r} path={path} -> {_describe(rule)}",
            extra_attrs={
                "gateway.rule.kind": rule.match_kind.value,
                "gateway.rule.value": rule.match_value,
            },
        ):
            await self._invoke(rule, scope, receive, send)

    async def _invoke(self, rule: RouteRule, scope, receive, send):
        destination = rule.destination
        if isinstance(destination, UpstreamTarget):
            await self._proxies[rule.match_value](scope, receive, send)
            return
        if rule.match_kind is MatchKind.PATH_PREFIX:
            scope = mount_scope(scope, rule.mount_path)
        await destination.app(scope, receive, send)


def _describe(rule: RouteRule) -> str:
    destination = rule.destination
    if isinstance(destination, LocalHandler):
        return f"local:{destination.name}"
    return f"upstream:{destination.base_url}"
