"""
Tests for the reverse proxy adapter.

Tests cover:
- Target URL construction (raw path and query preserved)
- Forwarding headers (Host, X-Forwarded-*, X-Real-IP, X-Script-Name)
- Location header rewriting for redirects
- Stripping of upstream framing headers
- Streaming and multi-valued response headers
- Error scenarios (timeout, connection and protocol errors, failures mid-stream)
- Cancellation of the upstream request when the client disconnects
"""

import asyncio

import pytest
from unittest.mock import AsyncMock, Mock, patch

import httpx
from fastapi import Request
from fastapi.testclient import TestClient
from httpx import AsyncClient, ConnectError, ReadError, RemoteProtocolError, TimeoutException

from gateway.app_proxy import build_proxy_app
from gateway.app_proxy import route as proxy_route
from gateway.app_proxy.route import (
    filter_response_headers,
    forward_to_target,
    get_target_url,
    prepare_headers,
    rewrite_location_header,
    stream_response,
)
from gateway.routing.table import UpstreamTarget

TARGET = UpstreamTarget.from_url("http://127.0.0.1:5000")


class ChunkStream(httpx.AsyncByteStream):
    def __init__(self, chunks, fail_with=None):
        self.chunks = chunks
        self.fail_with = fail_with
        self.closed = False

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk
        if self.fail_with is not None:
            raise self.fail_with

    async def aclose(self):
        self.closed = True


def upstream_response(status_code=200, headers=None, chunks=(b"test content",)):
    return httpx.Response(status_code, headers=headers or [], stream=ChunkStream(list(chunks)))


def make_request(path="/", query=b"", headers=None, raw_path=None, receive=None):
    scope = {
        "type": "http",
        "method": "GET",
        "scheme": "http",
        "path": path,
        "raw_path": raw_path if raw_path is not None else path.encode(),
        "root_path": "",
        "query_string": query,
        "headers": headers or [(b"host", b"3dprint.oznet")],
        "client": ("192.168.1.100", 50000),
        "server": ("gateway", 3000),
    }
    if receive is None:
        return Request(scope)
    return Request(scope, receive)


@pytest.fixture(autouse=True)
def public_identity(monkeypatch):
    monkeypatch.setattr(proxy_route, "PUBLIC_SCHEME", "https")
    monkeypatch.setattr(proxy_route, "PUBLIC_DOMAIN", "example.net")
    monkeypatch.setattr(proxy_route, "_clients", {})


@pytest.fixture
def mock_request():
    """Create a mock FastAPI Request object."""
    request = Mock(spec=Request)
    request.method = "GET"
    request.headers = {
        "host": "3dprint.example.net",
        "user-agent": "test-agent",
        "connection": "keep-alive",
        "x-forwarded-for": "6.6.6.6",
        "x-script-name": "/evil",
    }
    request.client.host = "192.168.1.100"
    return request


@pytest.fixture
def client():
    return TestClient(build_proxy_app(TARGET, "3dprint"))


class TestGetTargetUrl:
    def test_basic_path(self):
        assert get_target_url(make_request("/api/job"), TARGET) == "http://127.0.0.1:5000/api/job"

    def test_with_query_parameters(self):
        request = make_request("/api/files", query=b"recursive=true&force=1")
        assert (
            get_target_url(request, TARGET)
            == "http://127.0.0.1:5000/api/files?recursive=true&force=1"
        )

    def test_raw_path_kept_encoded(self):
        request = make_request("/files/a b.gcode", raw_path=b"/files/a%20b.gcode")
        assert get_target_url(request, TARGET) == "http://127.0.0.1:5000/files/a%20b.gcode"


class TestPrepareHeaders:
    def test_host_rewritten_to_target(self, mock_request):
        headers = prepare_headers(mock_request, TARGET)
        assert headers["host"] == "127.0.0.1:5000"
        assert headers["x-forwarded-host"] == "3dprint.example.net"

    def test_host_kept_when_rewrite_disabled(self, mock_request):
        target = UpstreamTarget.from_url("http://127.0.0.1:5000", host_rewrite=False)
        headers = prepare_headers(mock_request, target)
        assert headers["host"] == "3dprint.example.net"

    def test_forwarded_headers_overwritten(self, mock_request):
        headers = prepare_headers(mock_request, TARGET)
        assert headers["x-forwarded-proto"] == "https"
        assert headers["x-forwarded-for"] == "192.168.1.100"
        assert headers["x-real-ip"] == "192.168.1.100"
        assert headers["x-script-name"] == "/"

    def test_proto_override(self, mock_request):
        target = UpstreamTarget.from_url("http://127.0.0.1:5000", forwarded_proto_override="http")
        assert prepare_headers(mock_request, target)["x-forwarded-proto"] == "http"

    def test_hop_by_hop_removed_and_others_kept(self, mock_request):
        headers = prepare_headers(mock_request, TARGET)
        assert "connection" not in headers
        assert headers["user-agent"] == "test-agent"


class TestRewriteLocationHeader:
    def test_path_absolute_location(self):
        assert (
            rewrite_location_header("/printer/1", "3dprint")
            == "https://3dprint.example.net/printer/1"
        )

    def test_query_and_fragment_kept(self):
        assert (
            rewrite_location_header("/login?next=/x#top", "3dprint")
            == "https://3dprint.example.net/login?next=/x#top"
        )

    def test_empty_query_and_fragment_markers_kept(self):
        assert (
            rewrite_location_header("/printer/1?", "3dprint")
            == "https://3dprint.example.net/printer/1?"
        )
        assert (
            rewrite_location_header("/printer/1#", "3dprint")
            == "https://3dprint.example.net/printer/1#"
        )

    @pytest.mark.parametrize(
        "location",
        ["http://other.example.com/x", "//cdn.example.com/x", "relative/path", ""],
    )
    def test_other_locations_unchanged(self, location):
        assert rewrite_location_header(location, "3dprint") == location


class TestFilterResponseHeaders:
    def test_framing_headers_stripped(self):
        upstream = httpx.Headers(
            [
                ("X-Frame-Options", "DENY"),
                ("X-Content-Type-Options", "nosniff"),
                ("Content-Type", "text/html"),
            ]
        )
        assert filter_response_headers(upstream, "3dprint") == [("content-type", "text/html")]

    def test_multi_valued_headers_preserved(self):
        upstream = httpx.Headers([("Set-Cookie", "a=1"), ("Set-Cookie", "b=2")])
        assert filter_response_headers(upstream, "3dprint") == [
            ("set-cookie", "a=1"),
            ("set-cookie", "b=2"),
        ]


class TestForwardToTarget:
    def test_streams_body_and_status(self, client):
        response = upstream_response(201, [("content-type", "text/plain")], [b"a", b"b", b"c"])
        with patch.object(AsyncClient, "send", new_callable=AsyncMock) as send:
            send.return_value = response
            result = client.get("/api/job?x=1", headers={"host": "3dprint.example.net"})

        assert result.status_code == 201
        assert result.content == b"abc"
        upstream_request = send.call_args[0][0]
        assert str(upstream_request.url) == "http://127.0.0.1:5000/api/job?x=1"
        assert upstream_request.headers["host"] == "127.0.0.1:5000"
        assert upstream_request.headers["x-forwarded-host"] == "3dprint.example.net"
        assert send.call_args[1] == {"stream": True}

    def test_redirect_location_rewritten(self, client):
        response = upstream_response(302, [("location", "/printer/1")], [b""])
        with patch.object(AsyncClient, "send", new_callable=AsyncMock) as send:
            send.return_value = response
            result = client.get("/", follow_redirects=False)

        assert result.status_code == 302
        assert result.headers["location"] == "https://3dprint.example.net/printer/1"

    def test_response_headers_filtered(self, client):
        response = upstream_response(
            200,
            [
                ("x-frame-options", "DENY"),
                ("set-cookie", "session=1; Path=/"),
                ("set-cookie", "remember=0; Path=/"),
            ],
        )
        with patch.object(AsyncClient, "send", new_callable=AsyncMock) as send:
            send.return_value = response
            result = client.get("/")

        assert "x-frame-options" not in result.headers
        assert result.headers.get_list("set-cookie") == [
            "session=1; Path=/",
            "remember=0; Path=/",
        ]

    def test_request_body_forwarded(self, client):
        with patch.object(AsyncClient, "send", new_callable=AsyncMock) as send:
            send.return_value = upstream_response(204, chunks=[])
            result = client.post("/api/files/local", content=b"G28\n")

        assert result.status_code == 204
        upstream_request = send.call_args[0][0]
        assert upstream_request.method == "POST"
        assert upstream_request.headers["content-length"] == "4"

    def test_upstream_closed_after_stream(self, client):
        response = upstream_response(chunks=[b"done"])
        with patch.object(AsyncClient, "send", new_callable=AsyncMock) as send:
            send.return_value = response
            client.get("/")

        assert response.stream.closed

    @pytest.mark.parametrize(
        "error",
        [
            ConnectError("Connection refused"),
            TimeoutException("timed out"),
            RemoteProtocolError("illegal status line"),
        ],
    )
    def test_upstream_failure_maps_to_500(self, client, error):
        with patch.object(AsyncClient, "send", new_callable=AsyncMock) as send:
            send.side_effect = error
            result = client.get("/api/job")

        assert result.status_code == 500
        assert result.json() == {"detail": "Proxy error"}


class TestStreamFailures:
    @pytest.mark.asyncio
    async def test_read_error_mid_stream_is_raised_and_upstream_closed(self):
        stream = ChunkStream([b"first"], fail_with=ReadError("connection reset"))
        response = httpx.Response(200, stream=stream)

        received = []
        with pytest.raises(ReadError):
            async for chunk in stream_response(response, "http://127.0.0.1:5000/big.gcode"):
                received.append(chunk)

        assert received == [b"first"]
        assert stream.closed

    def test_client_sees_truncated_body(self):
        stream = ChunkStream([b"first"], fail_with=ReadError("connection reset"))
        client = TestClient(build_proxy_app(TARGET, "3dprint"), raise_server_exceptions=False)
        with patch.object(AsyncClient, "send", new_callable=AsyncMock) as send:
            send.return_value = httpx.Response(200, stream=stream)
            result = client.get("/downloads/big.gcode")

        assert result.content == b"first"
        assert stream.closed


class TestClientDisconnect:
    @pytest.mark.asyncio
    async def test_disconnect_before_headers_cancels_upstream_request(self):
        started = asyncio.Event()
        cancelled = asyncio.Event()

        async def slow_send(self, request, **kwargs):
            started.set()
            try:
                await asyncio.sleep(30)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        async def receive():
            await started.wait()
            return {"type": "http.disconnect"}

        request = make_request("/api/job", receive=receive)
        with patch.object(AsyncClient, "send", new=slow_send):
            result = await asyncio.wait_for(
                forward_to_target(request, TARGET, "3dprint"), timeout=2
            )

        assert cancelled.is_set()
        assert result.status_code == 499

    @pytest.mark.asyncio
    async def test_response_wins_while_client_connected(self):
        pending = asyncio.Event()

        async def receive():
            await pending.wait()
            return {"type": "http.disconnect"}

        request = make_request("/api/job", receive=receive)
        with patch.object(AsyncClient, "send", new_callable=AsyncMock) as send:
            send.return_value = upstream_response(200, [("content-type", "application/json")])
            result = await forward_to_target(request, TARGET, "3dprint")

        assert result.status_code == 200
        assert (b"content-type", b"application/json") in result.raw_headers
