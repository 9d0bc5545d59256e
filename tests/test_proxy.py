import socket

import httpx
import pytest

from repo_host.core.errors import ProxyError
from repo_host.proxy import ReverseProxy, RouteRequest, strip_hop_by_hop


def _unused_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def test_strip_hop_by_hop_keeps_end_to_end_headers():
    headers = [
        (b"Content-Type", b"text/plain"),
        (b"Connection", b"keep-alive, X-Trace"),
        (b"Keep-Alive", b"timeout=5"),
        (b"Transfer-Encoding", b"chunked"),
        (b"X-Trace", b"abc"),
        (b"Set-Cookie", b"a=1"),
        (b"Set-Cookie", b"b=2"),
        (b"Upgrade", b"h2c"),
    ]
    assert strip_hop_by_hop(headers) == [
        (b"Content-Type", b"text/plain"),
        (b"Set-Cookie", b"a=1"),
        (b"Set-Cookie", b"b=2"),
    ]


@pytest.mark.parametrize(
    "raw_path, expected",
    [
        ("/my-app", "/"),
        ("/my-app/", "/"),
        ("/my-app/api/items", "/api/items"),
        ("/my-app/api/items/", "/api/items/"),
        ("/my-app/a%20b", "/a%20b"),
    ],
)
def test_upstream_path_drops_project_prefix(raw_path, expected):
    assert RouteRequest(raw_path=raw_path, method="GET").upstream_path == expected


@pytest.mark.anyio
async def test_forward_rewrites_headers_and_streams_raw_bytes():
    seen = {}
    payload = bytes(range(256)) * 4

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["headers"] = request.headers
        seen["body"] = request.content
        return httpx.Response(
            201,
            headers=[
                ("Content-Type", "application/octet-stream"),
                ("Connection", "close"),
                ("Set-Cookie", "a=1"),
                ("Set-Cookie", "b=2"),
            ],
            content=payload,
        )

    proxy = ReverseProxy(transport=httpx.MockTransport(handler))
    request = RouteRequest(
        raw_path="/my-app/upload",
        method="POST",
        headers=[
            (b"Host", b"hosting.example"),
            (b"Content-Type", b"application/octet-stream"),
            (b"Content-Length", b"3"),
            (b"Proxy-Authorization", b"secret"),
            (b"X-Forwarded-For", b"10.0.0.1"),
        ],
        body=b"\x00\x01\x02",
        query_string="a=1&b=2",
        client_host="127.0.0.9",
        base_path="/hosted",
    )
    try:
        response = await proxy.forward(request, 3456)
        body = b"".join([chunk async for chunk in response.body])
    finally:
        await proxy.close()

    assert seen["url"] == "http://127.0.0.1:3456/upload?a=1&b=2"
    assert seen["body"] == b"\x00\x01\x02"
    outbound = seen["headers"]
    assert "proxy-authorization" not in outbound
    assert outbound["x-forwarded-for"] == "10.0.0.1, 127.0.0.9"
    assert outbound["x-forwarded-host"] == "hosting.example"
    assert outbound["x-forwarded-proto"] == "http"
    assert outbound["x-forwarded-prefix"] == "/hosted/my-app"
    assert outbound["host"] == "127.0.0.1:3456"

    assert response.status_code == 201
    assert body == payload
    names = [key.lower() for key, _ in response.headers]
    assert b"connection" not in names
    assert [v for k, v in response.headers if k.lower() == b"set-cookie"] == [b"a=1", b"b=2"]


@pytest.mark.anyio
async def test_forward_does_not_follow_redirects():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(302, headers={"Location": "/elsewhere"})

    proxy = ReverseProxy(transport=httpx.MockTransport(handler))
    try:
        response = await proxy.forward(RouteRequest(raw_path="/my-app/go", method="GET"), 4000)
        await response.close()
    finally:
        await proxy.close()
    assert response.status_code == 302
    assert (b"location", b"/elsewhere") in [(k.lower(), v) for k, v in response.headers]


@pytest.mark.anyio
async def test_connection_refused_is_proxy_error():
    proxy = ReverseProxy(timeout=2.0)
    try:
        with pytest.raises(ProxyError) as excinfo:
            await proxy.forward(RouteRequest(raw_path="/my-app", method="GET"), _unused_port())
    finally:
        await proxy.close()
    assert excinfo.value.status_code == 502


@pytest.mark.anyio
async def test_timeout_is_proxy_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("too slow", request=request)

    proxy = ReverseProxy(transport=httpx.MockTransport(handler))
    try:
        with pytest.raises(ProxyError, match="timed out"):
            await proxy.forward(RouteRequest(raw_path="/my-app", method="GET"), 4000)
    finally:
        await proxy.close()


@pytest.mark.anyio
async def test_non_ascii_header_bytes_pass_through_unchanged():
    seen = {}
    disposition = 'attachment; filename="日.txt"'.encode("utf-8")

    def handler(request: httpx.Request) -> httpx.Response:
        seen["headers"] = request.headers.raw
        return httpx.Response(
            200,
            headers=[
                (b"Content-Disposition", disposition),
                (b"X-Latin", b"caf\xe9"),
            ],
            content=b"ok",
        )

    proxy = ReverseProxy(transport=httpx.MockTransport(handler))
    request = RouteRequest(
        raw_path="/my-app/download",
        method="GET",
        headers=[
            (b"X-Name", "café".encode("utf-8")),
            (b"X-Raw", b"\xff\xfe"),
        ],
    )
    try:
        response = await proxy.forward(request, 4000)
        await response.close()
    finally:
        await proxy.close()

    assert (b"X-Name", b"caf\xc3\xa9") in seen["headers"]
    assert (b"X-Raw", b"\xff\xfe") in seen["headers"]
    assert (b"Content-Disposition", disposition) in response.headers
    assert (b"X-Latin", b"caf\xe9") in response.headers
