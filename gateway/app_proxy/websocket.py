"""WebSocket passthrough to the upstream target.

The upstream socket is dialled before the client handshake is accepted, so a
dead upstream refuses the client instead of accepting and closing at once.
Once both sides are open, two pump tasks copy frames in each direction. When
either pump ends (close frame, disconnect or error) the other one is cancelled
and both sockets are closed.
"""

import asyncio
import logging
from typing import Dict

import aiohttp
from fastapi import WebSocket
from opentelemetry import trace
from starlette.websockets import WebSocketDisconnect, WebSocketState

from gateway.app_proxy import route as proxy_route
from gateway.routing.table import UpstreamTarget

tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")

# Handshake headers generated by the upstream client itself
WS_HANDSHAKE_HEADERS = {
    "sec-websocket-key",
    "sec-websocket-version",
    "sec-websocket-extensions",
    "sec-websocket-protocol",
    "sec-websocket-accept",
}

CLOSE_INTERNAL_ERROR = 1011
CLOSE_NORMAL = 1000


def prepare_ws_headers(websocket: WebSocket, target: UpstreamTarget) -> Dict[str, str]:
    headers = proxy_route.prepare_headers(websocket, target)
    return {k: v for k, v in headers.items() if k not in WS_HANDSHAKE_HEADERS}


def get_ws_target_url(websocket: WebSocket, target: UpstreamTarget) -> str:
    return f"{target.ws_base_url}{proxy_route.get_upstream_path(websocket)}"


async def pump_client_to_upstream(websocket: WebSocket, upstream) -> None:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return
        if message.get("text") is not None:
            await upstream.send_str(message["text"])
        elif message.get("bytes") is not None:
            await upstream.send_bytes(message["bytes"])


async def pump_upstream_to_client(upstream, websocket: WebSocket) -> None:
    # Iteration stops on CLOSE / CLOSING / CLOSED frames
    async for msg in upstream:
        if msg.type == aiohttp.WSMsgType.TEXT:
            await websocket.send_text(msg.data)
        elif msg.type == aiohttp.WSMsgType.BINARY:
            await websocket.send_bytes(msg.data)
        elif msg.type == aiohttp.WSMsgType.ERROR:
            logger.warning(f"[WS-Proxy] Upstream socket error: {upstream.exception()}")
            return


def _relay_close_code(code) -> int:
    # 1005 and 1006 are reserved and must never be sent on the wire
    if not code or code in (1005, 1006):
        return CLOSE_NORMAL
    return code


def _client_is_open(websocket: WebSocket) -> bool:
    return (
        websocket.client_state != WebSocketState.DISCONNECTED
        and websocket.application_state != WebSocketState.DISCONNECTED
    )


async def run_tunnel(websocket: WebSocket, upstream) -> None:
    """Relay frames both ways until one side goes away, then close both."""
    tasks = [
        asyncio.create_task(pump_client_to_upstream(websocket, upstream)),
        asyncio.create_task(pump_upstream_to_client(upstream, websocket)),
    ]
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.warning(f"[WS-Proxy] Tunnel side failed: {exc!r}")
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if not upstream.closed:
            await upstream.close()
        if _client_is_open(websocket):
            await websocket.close(code=_relay_close_code(upstream.close_code))


async def tunnel_websocket(
    websocket: WebSocket, target: UpstreamTarget, subdomain: str
) -> None:
    target_url = get_ws_target_url(websocket, target)
    headers = prepare_ws_headers(websocket, target)
    protocols = tuple(websocket.scope.get("subprotocols") or ())

    with tracer.start_as_current_span("proxy_websocket") as span:
        span.set_attribute("proxy.target_url", target_url)
        span.set_attribute("proxy.subdomain", subdomain)
        logger.info(f"[WS-Proxy] Opening tunnel {websocket.url.path} -> {target_url}")

        timeout = aiohttp.ClientTimeout(total=None, connect=proxy_route.PROXY_TIMEOUT)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            try:
                upstream = await session.ws_connect(
                    target_url,
                    headers=headers,
                    protocols=protocols,
                    autoping=True,
                )
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.error(f"[WS-Proxy] Failed to connect to {target_url}: {e}")
                span.set_attribute("proxy.error", "connection_failed")
                await websocket.close(code=CLOSE_INTERNAL_ERROR)
                return

            await websocket.accept(subprotocol=upstream.protocol)
            await run_tunnel(websocket, upstream)
            logger.info(f"[WS-Proxy] Tunnel closed for {target_url}")
