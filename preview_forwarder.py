"""
Preview request forwarder
-------------------------
Turns one local request into one request against the preview host:

  GET http://localhost:8787/foo?x=1         X-Test: 1
  → GET https://rawhttp.cloudflareworkers.com/foo?x=1
        cf-ew-raw-x-test: 1
        host: rawhttp.cloudflareworkers.com
        cf-ew-preview: <preview id>

The upstream response is returned as-is (still streaming, headers still
tunneled). Restoring header names is the server's job.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import AsyncIterator, List, Optional

import httpx

from dev_errors import HeaderEncodingError, UpstreamRequestError, UrlConstructionError
from header_codec import RawHeader, encode_outbound
from server_config import ServerConfig

PREVIEW_HOST = "rawhttp.cloudflareworkers.com"
PREVIEW_HEADER = b"cf-ew-preview"


@dataclass
class InboundRequest:
    method: str
    target: str  # path + query, exactly as received
    headers: List[RawHeader] = field(default_factory=list)
    http_version: str = "1.1"
    body: Optional[AsyncIterator[bytes]] = None


def path_and_query(raw_path: Optional[bytes], query_string: bytes = b"") -> str:
    path = (raw_path or b"").decode("latin-1")
    if query_string:
        path = f"{path}?{query_string.decode('latin-1')}"
    return path


def preview_url(path: str) -> httpx.URL:
    try:
        url = httpx.URL(f"https://{PREVIEW_HOST}{path}")
    except httpx.InvalidURL as e:
        raise UrlConstructionError(f"Cannot forward '{path}': {e}") from e
    # A target like "@evil.com/" would otherwise move the request off the preview host
    if url.host != PREVIEW_HOST or (path and not path.startswith("/")):
        raise UrlConstructionError(f"Cannot forward '{path}': not an origin-form request target")
    return url


def _replace(headers: List[RawHeader], name: bytes, value: bytes) -> List[RawHeader]:
    kept = [(k, v) for k, v in headers if k.lower() != name]
    kept.append((name, value))
    return kept


def build_preview_request(inbound: InboundRequest, preview_id: str, server_config: ServerConfig) -> httpx.Request:
    headers = encode_outbound(inbound.headers)
    url = preview_url(inbound.target)
    headers = _replace(headers, b"host", PREVIEW_HOST.encode())
    try:
        credential = preview_id.encode("latin-1")
    except UnicodeEncodeError as e:
        raise HeaderEncodingError(PREVIEW_HEADER, f"value is not latin-1 ({e.reason})") from e
    headers = _replace(headers, PREVIEW_HEADER, credential)

    extensions = {"timeout": httpx.Timeout(server_config.upstream_timeout).as_dict()}
    if inbound.target:
        # httpx re-quotes the URL; the request line carries the target as received
        extensions["target"] = inbound.target.encode("latin-1")
    return httpx.Request(
        inbound.method,
        url,
        headers=headers,
        content=inbound.body,
        extensions=extensions,
    )


def log_request(inbound: InboundRequest, server_config: ServerConfig):
    now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    print(f'[{now}] "{inbound.method} {server_config.host}{inbound.target} HTTP/{inbound.http_version}"', flush=True)


async def preview_request(
    client: httpx.AsyncClient,
    inbound: InboundRequest,
    preview_id: str,
    server_config: ServerConfig,
) -> httpx.Response:
    """Forward `inbound` and return the upstream response without reading its body."""
    log_request(inbound, server_config)
    req = build_preview_request(inbound, preview_id, server_config)
    try:
        return await client.send(req, stream=True)
    except httpx.HTTPError as e:
        raise UpstreamRequestError(f"Request to {PREVIEW_HOST} failed: {e!r}") from e
