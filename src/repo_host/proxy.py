from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, Iterable, Optional

import httpx

from .core.errors import ProxyError
from .core.logging_utils import log_event
from .core.safe_paths import split_raw_path

# Header names and values travel as raw bytes end to end; nothing is decoded
# and re-encoded on the way through.
RawHeaders = list[tuple[bytes, bytes]]

HOP_BY_HOP_HEADERS = frozenset(
    {
        b"connection",
        b"keep-alive",
        b"proxy-authenticate",
        b"proxy-authorization",
        b"proxy-connection",
        b"te",
        b"trailer",
        b"trailers",
        b"transfer-encoding",
        b"upgrade",
    }
)

# Recomputed by the HTTP client for the outbound request.
_REQUEST_MANAGED_HEADERS = frozenset({b"host", b"content-length"})
_FORWARDED_PREFIX = b"x-forwarded-"


@dataclass
class RouteRequest:
    """One inbound request, as the router sees it.

    ``raw_path`` is the request path after the base path, still
    percent-encoded; its first segment names the project. ``headers`` are the
    raw ASGI header pairs.
    """

    raw_path: str
    method: str
    headers: RawHeaders = field(default_factory=list)
    body: bytes = b""
    query_string: str = ""
    client_host: Optional[str] = None
    scheme: str = "http"
    base_path: str = ""

    @property
    def raw_segments(self) -> list[str]:
        return split_raw_path(self.raw_path)

    @property
    def upstream_path(self) -> str:
        """The path the project server sees: everything after the project name."""
        _, _, rest = self.raw_path.lstrip("/").partition("/")
        return "/" + rest

    @property
    def mount_prefix(self) -> str:
        name = self.raw_segments[0] if self.raw_segments else ""
        return f"{self.base_path}/{name}"

    def header(self, name: str) -> Optional[bytes]:
        lowered = name.lower().encode("latin-1")
        for key, value in self.headers:
            if key.lower() == lowered:
                return value
        return None


@dataclass
class ProxiedResponse:
    status_code: int
    headers: RawHeaders
    body: AsyncIterator[bytes]
    close: Callable[[], Awaitable[None]]


def strip_hop_by_hop(headers: Iterable[tuple[bytes, bytes]]) -> RawHeaders:
    """Drop hop-by-hop headers, including any listed in ``Connection``."""
    pairs = list(headers)
    named: set[bytes] = set()
    for key, value in pairs:
        if key.lower() == b"connection":
            named.update(
                token.strip().lower() for token in value.split(b",") if token.strip()
            )
    return [
        (key, value)
        for key, value in pairs
        if key.lower() not in HOP_BY_HOP_HEADERS and key.lower() not in named
    ]


class ReverseProxy:
    """Forwards requests to project servers on the loopback interface.

    Bodies travel as raw bytes in both directions. Responses are streamed with
    ``aiter_raw`` so compressed payloads stay byte-identical to what the
    upstream sent. Failures surface immediately as ``ProxyError``.
    """

    def __init__(
        self,
        *,
        host: str = "127.0.0.1",
        timeout: Optional[float] = 30.0,
        logger: Optional[logging.Logger] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._host = host
        self._logger = logger or logging.getLogger(__name__)
        self._client = httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=False,
            trust_env=False,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    def _target_url(self, request: RouteRequest, port: int) -> str:
        url = f"http://{self._host}:{port}{request.upstream_path}"
        if request.query_string:
            url = f"{url}?{request.query_string}"
        return url

    def _outbound_headers(self, request: RouteRequest) -> RawHeaders:
        headers = [
            (key, value)
            for key, value in strip_hop_by_hop(request.headers)
            if key.lower() not in _REQUEST_MANAGED_HEADERS
            and not key.lower().startswith(_FORWARDED_PREFIX)
        ]
        forwarded_for = request.header("x-forwarded-for")
        if request.client_host:
            client = request.client_host.encode("latin-1")
            forwarded_for = (
                b"%s, %s" % (forwarded_for, client) if forwarded_for else client
            )
        if forwarded_for:
            headers.append((b"X-Forwarded-For", forwarded_for))
        host = request.header("host")
        if host:
            headers.append((b"X-Forwarded-Host", host))
        headers.append((b"X-Forwarded-Proto", request.scheme.encode("latin-1")))
        headers.append((b"X-Forwarded-Prefix", request.mount_prefix.encode("latin-1")))
        return headers

    async def forward(self, request: RouteRequest, port: int) -> ProxiedResponse:
        outbound = self._client.build_request(
            request.method,
            self._target_url(request, port),
            headers=self._outbound_headers(request),
            content=request.body
            if request.body or request.header("content-length") is not None
            else None,
        )
        try:
            upstream = await self._client.send(outbound, stream=True)
        except httpx.TimeoutException as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "proxy.forward.timeout",
                port=port,
                method=request.method,
                path=request.upstream_path,
                exc=exc,
            )
            raise ProxyError(f"Upstream on port {port} timed out: {exc!r}") from exc
        except httpx.HTTPError as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "proxy.forward.failed",
                port=port,
                method=request.method,
                path=request.upstream_path,
                exc=exc,
            )
            raise ProxyError(f"Upstream on port {port} unreachable: {exc!r}") from exc
        return ProxiedResponse(
            status_code=upstream.status_code,
            headers=strip_hop_by_hop(upstream.headers.raw),
            body=self._relay(upstream, port),
            close=upstream.aclose,
        )

    async def _relay(self, upstream: httpx.Response, port: int) -> AsyncIterator[bytes]:
        try:
            async for chunk in upstream.aiter_raw():
                yield chunk
        except httpx.HTTPError as exc:
            # Headers are already on the wire; the client sees a truncated body.
            log_event(
                self._logger,
                logging.WARNING,
                "proxy.relay.interrupted",
                port=port,
                exc=exc,
            )
            raise
        finally:
            await upstream.aclose()


__all__ = [
    "HOP_BY_HOP_HEADERS",
    "ProxiedResponse",
    "RawHeaders",
    "ReverseProxy",
    "RouteRequest",
    "strip_hop_by_hop",
]
