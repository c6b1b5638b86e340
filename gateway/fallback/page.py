"""Informational page served when no route matches.

The page is rendered once from the route table: every subdomain rule becomes a
link to its canonical public URL and every path-prefix rule to a development
route.
"""

from html import escape

from fastapi import APIRouter
from fastapi.responses import HTMLResponse

from gateway.routing.table import RouteTable
from gateway.services.catalog import describe, public_domain, public_url
from gateway.utils.html import link, render_page

FALLBACK_METHODS = ["GET", "HEAD", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"]

TITLE = "OzNet - Private Network"


def _item(href: str, text: str, description: str) -> str:
    suffix = f" - {escape(description)}" if description else ""
    return f"        <li>{link(href, text)}{suffix}</li>"


def render_fallback_page(route_table: RouteTable) -> str:
    services = [
        _item(public_url(rule.match_value), public_domain(rule.match_value), describe(rule.match_value))
        for rule in route_table.subdomain_rules()
    ]
    dev_routes = [
        _item(rule.match_value, rule.match_value, describe(rule.match_value.strip("/")))
        for rule in route_table.path_prefix_rules()
        if describe(rule.match_value.strip("/"))
    ]
    body = [
        f"      <h1>{escape(TITLE)}</h1>",
        "      <p>Welcome to the OzNet private network. Available services:</p>",
        "      <ul>",
        *services,
        "      </ul>",
    ]
    if dev_routes:
        body += [
            "      <p><strong>Direct routes:</strong></p>",
            "      <ul>",
            *dev_routes,
            "      </ul>",
        ]
    return render_page(TITLE, "\n".join(body))


def build_fallback_router(route_table: RouteTable) -> APIRouter:
    page = render_fallback_page(route_table)
    router = APIRouter()

    @router.api_route("/{path:path}", methods=FALLBACK_METHODS, include_in_schema=False)
    async def fallback(path: str):
        return HTMLResponse(content=page, status_code=200)

    return router
