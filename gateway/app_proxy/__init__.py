from fastapi import FastAPI, Request, WebSocket

from gateway.app_proxy.route import PROXY_METHODS, forward_to_target
from gateway.app_proxy.websocket import tunnel_websocket
from gateway.routing.table import UpstreamTarget


def build_proxy_app(target: UpstreamTarget, subdomain: str) -> FastAPI:
    """ASGI app forwarding every HTTP request and WebSocket to ``target``."""
    app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)

    @app.api_route("/{path:path}", methods=PROXY_METHODS)
    async def proxy_all(request: Request, path: str):
        """Catch-all route that proxies all requests to the upstream target."""
        return await forward_to_target(request, target, subdomain)

    @app.websocket("/{path:path}")
    async def proxy_websocket(websocket: WebSocket, path: str):
        await tunnel_websocket(websocket, target, subdomain)

    return app


__all__ = ["build_proxy_app"]
