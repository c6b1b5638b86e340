import asyncio
import logging
from typing import AsyncIterator, Dict, List, Optional, Tuple

import httpx
from fastapi import HTTPException, Request
from fastapi.responses import Response, StreamingResponse
from opentelemetry import trace
from starlette.background import BackgroundTask
from starlette.requests import ClientDisconnect, HTTPConnection

from gateway import vars as gateway_vars
from gateway.routing.table import UpstreamTarget
from gateway.utils import client_ip

tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")

PROXY_TIMEOUT = gateway_vars.PROXY_TIMEOUT
PUBLIC_SCHEME = gateway_vars.PUBLIC_SCHEME
PUBLIC_DOMAIN = gateway_vars.PUBLIC_DOMAIN

PROXY_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"]

# Hop-by-hop headers that should NOT be forwarded (RFC 2616)
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}

# Headers identifying the original request, always overwritten by the gateway
FORWARDED_HEADERS = {
    "host",
    "x-forwarded-for",
    "x-forwarded-host",
    "x-forwarded-proto",
    "x-real-ip",
    "x-script-name",
}

# Upstream framing policy is not propagated to the client
STRIPPED_RESPONSE_HEADERS = {
    "x-frame-options",
    "x-content-type-options",
}

# One pooled client per upstream base URL, shared by concurrent requests
_clients: Dict[str, httpx.AsyncClient] = {}


def get_upstream_client(target: UpstreamTarget) -> httpx.AsyncClient:
    client = _clients.get(target.base_url)
    if client is None or client.is_closed:
        client = httpx.AsyncClient(
            timeout=httpx.Timeout(PROXY_TIMEOUT),
            follow_redirects=False,  # Handle redirects manually for rewriting
            trust_env=False,
        )
        _clients[target.base_url] = client
    return client


async def close_upstream_clients() -> None:
    while _clients:
        _, client = _clients.popitem()
        await client.aclose()


def get_upstream_path(connection: HTTPConnection) -> str:
    """Path and query of the inbound request, as received on the wire."""
    raw_path = connection.scope.get("raw_path")
    if isinstance(raw_path, (bytes, bytearray)) and raw_path:
        path = raw_path.decode("latin-1")
    else:
        path = connection.url.path or "/"
    query_string = str(connection.url.query)
    if query_string:
        path = f"{path}?{query_string}"
    return path


def get_target_url(request: Request, target: UpstreamTarget) -> str:
    return f"{target.base_url}{get_upstream_path(request)}"


def prepare_headers(connection: HTTPConnection, target: UpstreamTarget) -> Dict[str, str]:
    """
    Prepare headers for forwarding to the upstream target.
    Removes hop-by-hop headers and sets the gateway's forwarding headers.
    """
    headers = {}
    for name, value in connection.headers.items():
        name_lower = name.lower()
        if name_lower in HOP_BY_HOP_HEADERS or name_lower in FORWARDED_HEADERS:
            continue
        headers[name_lower] = value

    inbound_host = connection.headers.get("host", "")
    peer = client_ip(connection)

    if target.host_rewrite:
        headers["host"] = target.authority
    elif inbound_host:
        headers["host"] = inbound_host

    headers["x-forwarded-host"] = inbound_host
    # The upstream always believes it is served on the gateway's public scheme
    headers["x-forwarded-proto"] = target.forwarded_proto_override or PUBLIC_SCHEME
    headers["x-forwarded-for"] = peer
    headers["x-real-ip"] = peer
    headers["x-script-name"] = "/"
    return headers


def public_host(subdomain: str) -> str:
    return f"{subdomain}.{PUBLIC_DOMAIN}" if PUBLIC_DOMAIN else subdomain


def rewrite_location_header(location: str, subdomain: str) -> str:
    """
    Turn a path-absolute redirect into an absolute URL on the public subdomain.

    ``/printer/1`` becomes ``https://3dprint.<domain>/printer/1``. Values that
    carry a scheme, network-path references (``//host/x``) and relative
    references are returned unchanged.
    """
    if not location or not location.startswith("/") or location.startswith("//"):
        return location
    # Concatenated verbatim, empty "?" and "#" markers survive
    return f"{PUBLIC_SCHEME}://{public_host(subdomain)}{location}"


def filter_response_headers(
    upstream_headers: httpx.Headers, subdomain: str
) -> List[Tuple[str, str]]:
    result = []
    for name, value in upstream_headers.multi_items():
        name_lower = name.lower()
        if name_lower in HOP_BY_HOP_HEADERS or name_lower in STRIPPED_RESPONSE_HEADERS:
            continue
        if name_lower == "location":
            value = rewrite_location_header(value, subdomain)
        result.append((name_lower, value))
    return result


async def stream_response(response: httpx.Response, target_url: str) -> AsyncIterator[bytes]:
    """
    Relay the upstream body chunk by chunk, without decoding it.

    The upstream response is closed when the relay ends, including when the
    client disconnects and the streaming task is cancelled.
    """
    try:
        async for chunk in response.aiter_raw():
            yield chunk
    except httpx.HTTPError as e:
        # Headers are already on the wire, aborting is the only signal left
        logger.error(f"[Proxy] Upstream stream failed for {target_url}: {e}")
        raise
    finally:
        await response.aclose()


async def relay_request_body(request: Request, body_sent: asyncio.Event) -> AsyncIterator[bytes]:
    try:
        async for chunk in request.stream():
            yield chunk
    finally:
        body_sent.set()


async def wait_for_disconnect(request: Request, body_sent: asyncio.Event) -> None:
    """
    Return once the client has gone away.

    ``receive()`` is only read after the request body has been relayed, so the
    body and the disconnect watcher never compete for the same messages.
    """
    await body_sent.wait()
    while True:
        message = await request.receive()
        if message["type"] == "http.disconnect":
            return


async def send_unless_disconnected(
    client: httpx.AsyncClient,
    upstream_request: httpx.Request,
    request: Request,
    body_sent: asyncio.Event,
) -> Optional[httpx.Response]:
    """
    Send the upstream request while watching the client connection.

    Returns None when the client disconnected first; the upstream request is
    cancelled in that case. Upstream errors propagate unchanged.
    """
    send_task = asyncio.create_task(client.send(upstream_request, stream=True))
    watch_task = asyncio.create_task(wait_for_disconnect(request, body_sent))
    try:
        await asyncio.wait({send_task, watch_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        watch_task.cancel()
        if not send_task.done():
            send_task.cancel()
        results = await asyncio.gather(send_task, watch_task, return_exceptions=True)

    if not send_task.cancelled():
        return send_task.result()
    # A response that raced in after cancellation still holds a connection
    if isinstance(results[0], httpx.Response):
        await results[0].aclose()
    return None


async def forward_to_target(
    request: Request, target: UpstreamTarget, subdomain: str
) -> Response:
    """
    Forward an inbound request to the upstream target.

    - Sets Host and X-Forwarded-* / X-Real-IP / X-Script-Name headers
    - Streams the request body and the response body
    - Cancels the upstream request if the client disconnects first
    - Rewrites path-absolute Location headers to the public subdomain
    - Strips X-Frame-Options and X-Content-Type-Options from the response
    """
    with tracer.start_as_current_span("proxy_request") as span:
        target_url = get_target_url(request, target)
        span.set_attribute("proxy.target_url", target_url)
        span.set_attribute("proxy.method", request.method)

        logger.debug(f"[Proxy] {request.method} {request.url.path} -> {target_url}")

        headers = prepare_headers(request, target)
        has_body = "content-length" in request.headers or "transfer-encoding" in request.headers

        body_sent = asyncio.Event()
        if not has_body:
            body_sent.set()

        client = get_upstream_client(target)
        upstream_request = client.build_request(
            method=request.method,
            url=target_url,
            headers=headers,
            content=relay_request_body(request, body_sent) if has_body else None,
        )

        try:
            response = await send_unless_disconnected(
                client, upstream_request, request, body_sent
            )
        except ClientDisconnect:
            response = None
        except httpx.TimeoutException as e:
            logger.error(f"[Proxy] Timeout for {target_url}: {e}")
            span.set_attribute("proxy.error", "timeout")
            raise HTTPException(status_code=500, detail="Proxy error")
        except httpx.ConnectError as e:
            logger.error(f"[Proxy] Failed to connect to target {target_url}: {e}")
            span.set_attribute("proxy.error", "connection_failed")
            raise HTTPException(status_code=500, detail="Proxy error")
        except httpx.HTTPError as e:
            logger.error(f"[Proxy] Upstream error for {target_url}: {e}", exc_info=True)
            span.set_attribute("proxy.error", str(e))
            raise HTTPException(status_code=500, detail="Proxy error")

        if response is None:
            logger.info(f"[Proxy] Client went away, cancelled request to {target_url}")
            span.set_attribute("proxy.error", "client_disconnected")
            # Nobody is listening, the status only shows up in access logs
            return Response(status_code=499)

        span.set_attribute("proxy.status_code", response.status_code)

        response_headers = filter_response_headers(response.headers, subdomain)
        location = dict(response_headers).get("location")
        if location:
            span.set_attribute("proxy.rewritten_location", location)

        result = StreamingResponse(
            stream_response(response, target_url),
            status_code=response.status_code,
            background=BackgroundTask(response.aclose),
        )
        result.raw_headers = [
            (name.encode("latin-1"), value.encode("latin-1"))
            for name, value in response_headers
        ]
        return result

