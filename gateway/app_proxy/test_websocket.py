import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import aiohttp
import pytest
from starlette.websockets import WebSocketState

from gateway.app_proxy.websocket import (
    CLOSE_INTERNAL_ERROR,
    get_ws_target_url,
    prepare_ws_headers,
    run_tunnel,
    tunnel_websocket,
)
from gateway.routing.table import UpstreamTarget

TARGET = UpstreamTarget.from_url("http://127.0.0.1:5000")


class FakeClientSocket:
    """Stands in for the client-facing starlette WebSocket."""

    def __init__(self, incoming=(), path="/sockjs/websocket", query=""):
        self.incoming = asyncio.Queue()
        for message in incoming:
            self.incoming.put_nowait(message)
        self.scope = {"raw_path": path.encode(), "subprotocols": ["v1.octoprint"]}
        self.url = SimpleNamespace(path=path, query=query)
        self.headers = {
            "host": "3dprint.oznet",
            "sec-websocket-key": "abc",
            "sec-websocket-version": "13",
            "origin": "https://3dprint.oznet",
        }
        self.client = SimpleNamespace(host="10.147.17.5")
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED
        self.sent = []
        self.accepted_with = None
        self.close_code = None

    async def receive(self):
        message = await self.incoming.get()
        if message["type"] == "websocket.disconnect":
            self.client_state = WebSocketState.DISCONNECTED
        return message

    async def send_text(self, data):
        self.sent.append(data)

    async def send_bytes(self, data):
        self.sent.append(data)

    async def accept(self, subprotocol=None):
        self.accepted_with = subprotocol

    async def close(self, code=1000):
        self.close_code = code
        self.application_state = WebSocketState.DISCONNECTED


class FakeUpstream:
    """Minimal aiohttp ClientWebSocketResponse double."""

    def __init__(self, messages=(), close_code=None, stay_open=False):
        self.messages = asyncio.Queue()
        for msg in messages:
            self.messages.put_nowait(msg)
        if not stay_open:
            self.messages.put_nowait(None)
        self.remote_close_code = close_code
        self.close_code = None
        self.closed = False
        self.protocol = "v1.octoprint"
        self.sent = []

    def __aiter__(self):
        return self

    async def __anext__(self):
        msg = await self.messages.get()
        if msg is None:
            self.closed = True
            self.close_code = self.remote_close_code
            raise StopAsyncIteration
        return msg

    async def send_str(self, data):
        self.sent.append(data)

    async def send_bytes(self, data):
        self.sent.append(data)

    async def close(self):
        self.closed = True
        if self.close_code is None:
            self.close_code = 1000
        self.messages.put_nowait(None)

    def exception(self):
        return None


def text(data):
    return SimpleNamespace(type=aiohttp.WSMsgType.TEXT, data=data)


def test_handshake_headers_not_forwarded():
    headers = prepare_ws_headers(FakeClientSocket(), TARGET)
    assert "sec-websocket-key" not in headers
    assert headers["origin"] == "https://3dprint.oznet"
    assert headers["host"] == "127.0.0.1:5000"
    assert headers["x-forwarded-for"] == "10.147.17.5"


def test_ws_target_url():
    socket = FakeClientSocket(path="/sockjs/123/websocket", query="t=1")
    assert get_ws_target_url(socket, TARGET) == "ws://127.0.0.1:5000/sockjs/123/websocket?t=1"


@pytest.mark.asyncio
async def test_client_disconnect_closes_upstream():
    client = FakeClientSocket(
        [
            {"type": "websocket.receive", "text": "hello"},
            {"type": "websocket.receive", "bytes": b"\x01"},
            {"type": "websocket.disconnect", "code": 1001},
        ]
    )
    upstream = FakeUpstream(stay_open=True)

    await asyncio.wait_for(run_tunnel(client, upstream), timeout=2)

    assert upstream.sent == ["hello", b"\x01"]
    assert upstream.closed
    # The client is already gone, nothing is sent back
    assert client.close_code is None


@pytest.mark.asyncio
async def test_upstream_close_closes_client_with_its_code():
    client = FakeClientSocket()
    upstream = FakeUpstream([text("status")], close_code=1001)

    await asyncio.wait_for(run_tunnel(client, upstream), timeout=2)

    assert client.sent == ["status"]
    assert client.close_code == 1001


@pytest.mark.asyncio
@pytest.mark.parametrize("code", [None, 1005, 1006])
async def test_reserved_close_codes_become_normal(code):
    client = FakeClientSocket()
    upstream = FakeUpstream(close_code=code)

    await asyncio.wait_for(run_tunnel(client, upstream), timeout=2)

    assert client.close_code == 1000


@pytest.mark.asyncio
async def test_unreachable_upstream_refuses_client():
    client = FakeClientSocket()
    with patch.object(aiohttp.ClientSession, "ws_connect", new_callable=AsyncMock) as connect:
        connect.side_effect = aiohttp.ClientConnectionError("refused")
        await tunnel_websocket(client, TARGET, "3dprint")

    assert client.accepted_with is None
    assert client.close_code == CLOSE_INTERNAL_ERROR


@pytest.mark.asyncio
async def test_tunnel_accepts_with_upstream_subprotocol():
    client = FakeClientSocket()
    upstream = FakeUpstream([text("connected")])
    with patch.object(aiohttp.ClientSession, "ws_connect", new_callable=AsyncMock) as connect:
        connect.return_value = upstream
        await asyncio.wait_for(tunnel_websocket(client, TARGET, "3dprint"), timeout=2)

    assert connect.call_args[0][0] == "ws://127.0.0.1:5000/sockjs/websocket"
    assert connect.call_args[1]["protocols"] == ("v1.octoprint",)
    assert client.accepted_with == "v1.octoprint"
    assert client.sent == ["connected"]
    assert client.close_code == 1000

