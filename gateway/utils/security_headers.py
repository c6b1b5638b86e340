"""Framing and content policy for responses the gateway produces itself.

Applied to the local applications, the certificate endpoint and the fallback
page. Proxied responses never pass through this middleware, so the upstream's
own framing headers (which the proxy strips) are not replaced by ours.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, FastAPI
from starlette.datastructures import MutableHeaders
from starlette.middleware.gzip import GZipMiddleware

CONTENT_SECURITY_POLICY = "; ".join(
    [
        "default-src 'self'",
        "style-src 'self' 'unsafe-inline' https://cdn.jsdelivr.net",
        "script-src 'self' 'unsafe-inline'",
        "img-src 'self' data: https:",
    ]
)


@dataclass(frozen=True)
class SecurityHeadersConfig:
    x_frame_options: str = "SAMEORIGIN"
    x_content_type_options: str = "nosniff"
    referrer_policy: str = "no-referrer"
    content_security_policy: Optional[str] = CONTENT_SECURITY_POLICY


class SecurityHeadersMiddleware:
    """Pure ASGI middleware adding security headers that are not already set."""

    def __init__(self, app, config: Optional[SecurityHeadersConfig] = None):
        self.app = app
        self.config = config or SecurityHeadersConfig()

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        async def send_with_headers(message):
            if message["type"] == "http.response.start":
                headers = MutableHeaders(scope=message)
                headers.setdefault("X-Frame-Options", self.config.x_frame_options)
                headers.setdefault(
                    "X-Content-Type-Options", self.config.x_content_type_options
                )
                headers.setdefault("Referrer-Policy", self.config.referrer_policy)
                if self.config.content_security_policy:
                    headers.setdefault(
                        "Content-Security-Policy", self.config.content_security_policy
                    )
            await send(message)

        await self.app(scope, receive, send_with_headers)


def build_local_app(*routers: APIRouter) -> FastAPI:
    """Create a FastAPI app for an in-process handler, without API docs routes.

    Responses are gzip-compressed for clients that accept it.
    """
    app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)
    for router in routers:
        app.include_router(router)
    app.add_middleware(GZipMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    return app
