import asyncio
import socket
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from fastapi import Request
from fastapi.testclient import TestClient

from dev_errors import BindError
from dev_server import RelayResponse, bind_socket, create_app
from preview_forwarder import PREVIEW_HOST
from preview_identity import build_preview_id
from server_config import ServerConfig

CONFIG = ServerConfig.new(host="localhost")
PREVIEW_ID = "abcs11localhost"


def make_client(handler) -> TestClient:
    upstream = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TestClient(create_app(CONFIG, PREVIEW_ID, client=upstream))


def test_only_tunneled_response_headers_reach_the_client():
    def handler(request):
        return httpx.Response(
            200,
            headers=[("cf-ew-raw-Content-Type", "text/plain"), ("Connection", "close")],
            content=b"hi",
        )

    resp = make_client(handler).get("/health")
    assert resp.status_code == 200
    assert resp.text == "hi"
    assert dict(resp.headers) == {"content-type": "text/plain"}


def test_forwarded_request_shape():
    seen = []

    def handler(request: httpx.Request):
        seen.append(request)
        return httpx.Response(204)

    make_client(handler).get("/health?deep=1", headers={"X-Test": "1"})

    request = seen[0]
    assert str(request.url) == f"https://{PREVIEW_HOST}/health?deep=1"
    assert request.headers["cf-ew-raw-x-test"] == "1"
    assert request.headers.get_list("host") == [PREVIEW_HOST]
    assert request.headers["cf-ew-preview"] == PREVIEW_ID


def test_duplicate_response_headers_survive():
    def handler(request):
        return httpx.Response(
            200,
            headers=[
                ("cf-ew-raw-location", "/login"),
                ("cf-ew-raw-set-cookie", "a=1"),
                ("cf-ew-raw-set-cookie", "b=2"),
            ],
        )

    resp = make_client(handler).get("/")
    assert resp.status_code == 200
    assert resp.headers["location"] == "/login"
    assert resp.headers.get_list("set-cookie") == ["a=1", "b=2"]


def test_any_method_and_body_is_forwarded():
    seen = {}

    def handler(request: httpx.Request):
        seen["method"] = request.method
        seen["body"] = request.read()
        return httpx.Response(200, content=b"purged")

    client = make_client(handler)
    resp = client.request("PURGE", "/cache/item", content=b"payload")
    assert resp.status_code == 200
    assert seen == {"method": "PURGE", "body": b"payload"}


def test_upstream_failure_is_502_and_server_keeps_serving():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, headers={"cf-ew-raw-x-ok": "1"}, content=b"back")

    client = make_client(handler)

    failed = client.get("/")
    assert failed.status_code == 502
    assert "Bad Gateway" in failed.text

    recovered = client.get("/")
    assert recovered.status_code == 200
    assert recovered.text == "back"


def test_bad_request_header_is_502_without_upstream_call():
    calls = []
    upstream = httpx.AsyncClient(transport=httpx.MockTransport(calls.append))
    proxy = create_app(CONFIG, PREVIEW_ID, client=upstream).state.proxy
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "raw_path": b"/",
        "query_string": b"",
        "headers": [(b"x bad", b"1")],
        "http_version": "1.1",
    }

    resp = asyncio.run(proxy.handle(Request(scope)))

    assert resp.status_code == 502
    assert b"x bad" in resp.body
    assert calls == []


def test_request_line_is_logged(capsys):
    make_client(lambda request: httpx.Response(200)).get("/foo?x=1")
    assert '"GET localhost/foo?x=1 HTTP/1.1"' in capsys.readouterr().out


def test_concurrent_requests_are_independent():
    order = []

    async def handler(request: httpx.Request):
        path = request.url.path
        await asyncio.sleep(0.2 if path == "/slow" else 0)
        order.append(path)
        return httpx.Response(200, headers={"cf-ew-raw-x-path": path}, content=path.encode())

    async def run():
        upstream = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        app = create_app(CONFIG, PREVIEW_ID, client=upstream)
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://localhost") as local:
            return await asyncio.gather(local.get("/slow"), local.get("/fast"))

    slow, fast = asyncio.run(run())
    assert (slow.text, slow.headers["x-path"]) == ("/slow", "/slow")
    assert (fast.text, fast.headers["x-path"]) == ("/fast", "/fast")
    assert order == ["/fast", "/slow"]


def test_live_log_started_for_session_and_client_closed_on_shutdown():
    upstream = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
    with patch("dev_server.live_log.listen", new=AsyncMock()) as listen:
        with TestClient(create_app(CONFIG, PREVIEW_ID, client=upstream, session_id="sess")):
            pass
    listen.assert_called_once_with("sess")
    assert upstream.is_closed


def test_bind_error_when_port_in_use():
    holder = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    holder.bind(("127.0.0.1", 0))
    holder.listen(1)
    try:
        config = ServerConfig.new(ip="127.0.0.1", port=holder.getsockname()[1])
        with pytest.raises(BindError):
            bind_socket(config)
    finally:
        holder.close()


def test_bind_socket_on_free_port():
    sock = bind_socket(ServerConfig.new(ip="127.0.0.1", port=0))
    try:
        assert sock.getsockname()[1] != 0
    finally:
        sock.close()


def test_response_header_with_bad_name_is_dropped_with_warning(capsys):
    def handler(request):
        return httpx.Response(
            200,
            headers=[
                ("cf-ew-raw-bad name", "x"),
                ("cf-ew-raw-", "empty"),
                ("cf-ew-raw-x-kept", "1"),
            ],
            content=b"still here",
        )

    resp = make_client(handler).get("/")

    assert resp.status_code == 200
    assert resp.text == "still here"
    assert dict(resp.headers) == {"x-kept": "1"}
    assert capsys.readouterr().out.count("Dropping response header") == 2


def test_internationalized_host_still_forwards():
    config = ServerConfig.new(host="bücher.例え.jp")
    preview_id = build_preview_id("abc", "s1", config)
    seen = []

    def handler(request: httpx.Request):
        seen.append(request.headers["cf-ew-preview"])
        return httpx.Response(200, content=b"ok")

    upstream = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    resp = TestClient(create_app(config, preview_id, client=upstream)).get("/")

    assert resp.status_code == 200
    assert seen == [preview_id]
    assert preview_id.isascii()


def test_client_disconnect_abandons_pending_upstream_call(capsys):
    cancelled = []
    upstream_started = asyncio.Event()

    async def handler(request):
        upstream_started.set()
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            cancelled.append(request.url.path)
            raise
        return httpx.Response(200)

    messages = [{"type": "http.request", "body": b"", "more_body": False}]

    async def receive():
        if messages:
            return messages.pop(0)
        await upstream_started.wait()
        return {"type": "http.disconnect"}

    scope = {
        "type": "http",
        "method": "GET",
        "path": "/slow",
        "raw_path": b"/slow",
        "query_string": b"",
        "headers": [],
        "http_version": "1.1",
    }

    async def run():
        upstream = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        proxy = create_app(CONFIG, PREVIEW_ID, client=upstream).state.proxy
        return await asyncio.wait_for(proxy.handle(Request(scope, receive)), timeout=5)

    resp = asyncio.run(run())

    assert resp.status_code == 499
    assert cancelled == ["/slow"]
    assert "Client went away" in capsys.readouterr().out


class TrackedStream(httpx.AsyncByteStream):
    def __init__(self):
        self.closed = False

    async def __aiter__(self):
        yield b"chunk"

    async def aclose(self):
        self.closed = True


def test_upstream_closed_when_client_disconnects_before_streaming():
    stream = TrackedStream()
    upstream = httpx.Response(200, headers={"cf-ew-raw-x-a": "1"}, stream=stream)
    scope = {"type": "http", "method": "GET", "path": "/", "headers": []}

    async def receive():
        return {"type": "http.disconnect"}

    async def send(message):
        await asyncio.sleep(0)

    asyncio.run(RelayResponse(upstream)(scope, receive, send))

    assert stream.closed
    assert upstream.is_closed
