"""
Local dev server
----------------
Plain HTTP on the configured address. Every request, whatever its method or
path, goes through PreviewProxy: forward to the preview host, restore the
worker's response headers, stream the body back.
"""

import asyncio
import socket
from typing import Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.responses import PlainTextResponse, StreamingResponse

import live_log
from dev_errors import BindError, DevProxyError, UpstreamRequestError
from header_codec import decode_inbound
from preview_forwarder import InboundRequest, path_and_query, preview_request
from server_config import ListeningAddress, ServerConfig

def _has_body(request: Request) -> bool:
    length = request.headers.get("content-length")
    if length is not None:
        return length.strip() != "0"
    return "transfer-encoding" in request.headers

def inbound_from(request: Request) -> InboundRequest:
    scope = request.scope
    raw_path = scope.get("raw_path") or scope.get("path", "").encode("utf-8")
    return InboundRequest(
        method=request.method,
        target=path_and_query(raw_path, scope.get("query_string", b"")),
        headers=[(bytes(k), bytes(v)) for k, v in scope.get("headers", [])],
        http_version=scope.get("http_version", "1.1"),
        body=request.stream() if _has_body(request) else None,
    )

async def _relay(upstream: httpx.Response):
    try:
        async for chunk in upstream.aiter_raw():
            yield chunk
    except httpx.HTTPError as e:
        print(f"⚠️ Upstream response interrupted: {e!r}")
        raise UpstreamRequestError(f"Upstream response interrupted: {e!r}") from e

async def _wait_for_disconnect(request: Request):
    while True:
        message = await request.receive()
        if message["type"] == "http.disconnect":
            return

class RelayResponse(StreamingResponse):
    """Upstream status, restored headers and raw body. The upstream response is
    closed however this ends, including a cancel before the first chunk."""

    def __init__(self, upstream: httpx.Response):
        super().__init__(_relay(upstream), status_code=upstream.status_code)
        self.raw_headers = decode_inbound(upstream.headers.raw)
        self.upstream = upstream

    async def __call__(self, scope, receive, send):
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.upstream.aclose()

class PreviewProxy:
    """ASGI handler shared by every request. Holds only immutable run state."""

    def __init__(self, server_config: ServerConfig, preview_id: str, client: httpx.AsyncClient):
        self.server_config = server_config
        self.preview_id = preview_id
        self.client = client

    async def _send(self, request: Request, inbound: InboundRequest) -> Optional[httpx.Response]:
        """Forward upstream. None if the local client left before the upstream answered."""
        sending = asyncio.ensure_future(preview_request(self.client, inbound, self.preview_id, self.server_config))
        if inbound.body is not None:
            # The body stream owns `receive`, so there is nothing to watch here
            return await sending

        watcher = asyncio.ensure_future(_wait_for_disconnect(request))
        try:
            await asyncio.wait({sending, watcher}, return_when=asyncio.FIRST_COMPLETED)
            if not sending.done() and watcher.exception() is not None:
                # Can't observe the client, just wait for the upstream
                await sending
        finally:
            for task in (sending, watcher):
                if not task.done():
                    task.cancel()
            await asyncio.gather(sending, watcher, return_exceptions=True)

        if sending.cancelled():
            return None
        return sending.result()

    async def handle(self, request: Request):
        inbound = inbound_from(request)
        try:
            upstream = await self._send(request, inbound)
        except DevProxyError as e:
            print(f"❌ {inbound.method} {inbound.target}: {e}")
            return PlainTextResponse(f"Bad Gateway: {e}\n", status_code=502)

        if upstream is None:
            print(f"🔌 Client went away, dropped {inbound.method} {inbound.target}")
            return Response(status_code=499)
        return RelayResponse(upstream)

    async def __call__(self, scope, receive, send):
        response = await self.handle(Request(scope, receive))
        await response(scope, receive, send)

def create_app(
    server_config: ServerConfig,
    preview_id: str,
    client: Optional[httpx.AsyncClient] = None,
    session_id: Optional[str] = None,
) -> FastAPI:
    client = client or httpx.AsyncClient(timeout=httpx.Timeout(server_config.upstream_timeout))
    proxy = PreviewProxy(server_config, preview_id, client)

    app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)
    app.state.proxy = proxy
    # Route with an ASGI endpoint and no method list: every method matches
    app.add_route("/{path:path}", proxy, include_in_schema=False)

    background: list = []

    @app.on_event("startup")
    async def startup_event():
        if session_id:
            background.append(asyncio.create_task(live_log.listen(session_id)))

    @app.on_event("shutdown")
    async def shutdown_event():
        for task in background:
            task.cancel()
        await client.aclose()

    return app

def bind_socket(server_config: ServerConfig) -> socket.socket:
    address = server_config.listening_address
    sock = socket.socket(address.family, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        sock.bind((address.ip, address.port))
    except OSError as e:
        sock.close()
        raise BindError(f"Could not listen on {address}: {e.strerror or e}") from e
    sock.set_inheritable(True)
    return sock

async def serve(server_config: ServerConfig, preview_id: str, session_id: Optional[str] = None):
    sock = bind_socket(server_config)
    ip, port = sock.getsockname()[:2]
    app = create_app(server_config, preview_id, session_id=session_id)
    config = uvicorn.Config(app, log_level="warning", server_header=False, date_header=False)
    server = uvicorn.Server(config)

    print(f"👂 Listening on http://{ListeningAddress(ip=ip, port=port)}")
    await server.serve(sockets=[sock])
