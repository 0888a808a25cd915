"""
StubTap Proxying

Three pieces that let a stub server stand in front of a real backend:

- UpstreamForwarder: sends one request to an upstream origin with httpx and
  hands back the raw response for verbatim relay
- AbsoluteFormMiddleware: ASGI middleware that turns browser proxy requests
  ('GET http://host/path HTTP/1.1') into normal paths and remembers the origin
- TunnelFrontDoor: asyncio listener used in proxy mode; answers CONNECT with
  an opaque byte tunnel and relays every other connection to the FastAPI app

Tunnelled (HTTPS) traffic is never decrypted, so it cannot be stubbed.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional, Set, Tuple
from urllib.parse import unquote

import httpx

from ..common import URLHelper, filter_hop_by_hop


logger = logging.getLogger("stubtap.proxy")

# ASGI scope key carrying 'scheme://host:port' of an absolute-form request
PROXY_ORIGIN_KEY = 'stubtap.proxy_origin'

MAX_HEAD_BYTES = 64 * 1024
CHUNK_SIZE = 64 * 1024


class UpstreamError(Exception):
    """Forwarding failed before an upstream response was received."""

    def __init__(self, url: str, reason: str):
        super().__init__(f"Upstream request to {url} failed: {reason}")
        self.url = url
        self.reason = reason


@dataclass
class ForwardedResponse:
    """Upstream response, headers already stripped of hop-by-hop entries."""

    status: int
    headers: List[Tuple[str, str]]
    body: bytes


class UpstreamForwarder:
    """
    Single-attempt HTTP forwarder.

    The body is relayed as received (aiter_raw), so a gzip-encoded upstream
    body reaches the client still gzip-encoded, with its Content-Encoding.

    Example:
        forwarder = UpstreamForwarder(timeout=5.0)
        response = await forwarder.forward('GET', 'https://example.test/anything', [], b'')
    """

    def __init__(
        self,
        timeout: float = 30.0,
        verify: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize forwarder.

        Args:
            timeout: Connect/read/write timeout in seconds
            verify: Verify upstream TLS certificates
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.timeout = timeout
        self.verify = verify
        self.transport = transport

    async def forward(
        self,
        method: str,
        url: str,
        headers: List[Tuple[str, str]],
        body: bytes
    ) -> ForwardedResponse:
        """
        Forward one request.

        Args:
            method: HTTP method
            url: Absolute upstream URL including path and query
            headers: Incoming request headers
            body: Incoming request body

        Returns:
            ForwardedResponse with status, relayable headers and raw body

        Raises:
            UpstreamError: On connection errors, timeouts and protocol errors
        """
        outgoing = filter_hop_by_hop(headers, extra=('host', 'content-length'))

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                verify=self.verify,
                transport=self.transport,
                follow_redirects=False,
                trust_env=False
            ) as client:
                request = client.build_request(method, url, headers=outgoing, content=body)
                response = await client.send(request, stream=True)
                try:
                    chunks = [chunk async for chunk in response.aiter_raw()]
                finally:
                    await response.aclose()
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise UpstreamError(url, f"{type(e).__name__}: {e}") from e

        relayed = filter_hop_by_hop(response.headers.multi_items(), extra=('content-length',))
        return ForwardedResponse(status=response.status_code, headers=relayed, body=b''.join(chunks))


class AbsoluteFormMiddleware:
    """
    Rewrite absolute-form request targets to origin-form.

    A browser configured to use the stub server as its HTTP proxy sends
    'GET http://shop.test/cart HTTP/1.1'. Stubs are written against '/cart',
    so the path is rewritten and 'http://shop.test' is stored in the scope
    under PROXY_ORIGIN_KEY for the router to forward unmatched requests to.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope['type'] == 'http':
            raw_path = scope.get('raw_path') or scope['path'].encode('latin-1')
            target = raw_path.decode('latin-1')
            if URLHelper.is_absolute(target):
                origin, path = URLHelper.split_absolute(target)
                scope = dict(scope)
                scope['path'] = unquote(path)
                scope['raw_path'] = path.encode('latin-1')
                scope[PROXY_ORIGIN_KEY] = origin
        await self.app(scope, receive, send)


async def _pipe(reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
    """Copy bytes until EOF, then half-close the writing side."""
    try:
        while True:
            chunk = await reader.read(CHUNK_SIZE)
            if not chunk:
                break
            writer.write(chunk)
            await writer.drain()
        if writer.can_write_eof():
            writer.write_eof()
    except (ConnectionError, OSError) as e:
        logger.debug(f"Relay stopped: {e}")


async def _close(writer: Optional[asyncio.StreamWriter]):
    if writer is None:
        return
    writer.close()
    try:
        await writer.wait_closed()
    except (ConnectionError, OSError):
        pass


class TunnelFrontDoor:
    """
    Public listener of a proxy-mode instance.

    Reads the head of each new connection:
    - 'CONNECT host:port' opens a TCP connection to the target, answers
      '200 Connection established' and relays bytes both ways untouched
    - anything else is replayed to the backend (the instance's uvicorn
      listener) and the rest of the connection is relayed as-is
    """

    def __init__(self, backend_host: str, backend_port: int, connect_timeout: float = 10.0):
        self.backend_host = backend_host
        self.backend_port = backend_port
        self.connect_timeout = connect_timeout
        self._server: Optional[asyncio.AbstractServer] = None
        self._tasks: Set[asyncio.Task] = set()
        self.tunnels_opened = 0

    async def start(self, sock):
        self._server = await asyncio.start_server(self._handle, sock=sock, limit=MAX_HEAD_BYTES)

    async def close(self):
        """Stop accepting, cancel open tunnels and relays."""
        if self._server is None:
            return
        self._server.close()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self._server.wait_closed()
        self._server = None

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        task = asyncio.current_task()
        self._tasks.add(task)
        upstream_writer = None
        try:
            try:
                head = await reader.readuntil(b'\r\n\r\n')
            except (asyncio.IncompleteReadError, asyncio.LimitOverrunError, ConnectionError):
                return

            request_line = head.split(b'\r\n', 1)[0]
            parts = request_line.split()
            if len(parts) >= 2 and parts[0].upper() == b'CONNECT':
                upstream_writer = await self._tunnel(parts[1].decode('latin-1'), reader, writer)
            else:
                upstream_writer = await self._relay(head, reader, writer)
        finally:
            await _close(upstream_writer)
            await _close(writer)
            self._tasks.discard(task)

    async def _open(self, host: str, port: int):
        return await asyncio.wait_for(asyncio.open_connection(host, port), timeout=self.connect_timeout)

    async def _tunnel(self, authority: str, reader, writer) -> Optional[asyncio.StreamWriter]:
        try:
            host, port = URLHelper.split_host_port(authority)
            target_reader, target_writer = await self._open(host, port)
        except (OSError, ValueError, asyncio.TimeoutError) as e:
            logger.warning(f"CONNECT {authority} failed: {e}")
            writer.write(b"HTTP/1.1 502 Bad Gateway\r\nContent-Length: 0\r\nConnection: close\r\n\r\n")
            await writer.drain()
            return None

        self.tunnels_opened += 1
        logger.debug(f"Tunnel opened to {host}:{port}")
        writer.write(b"HTTP/1.1 200 Connection established\r\n\r\n")
        await writer.drain()
        await asyncio.gather(_pipe(reader, target_writer), _pipe(target_reader, writer))
        return target_writer

    async def _relay(self, head: bytes, reader, writer) -> Optional[asyncio.StreamWriter]:
        try:
            backend_reader, backend_writer = await self._open(self.backend_host, self.backend_port)
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning(f"Backend listener unreachable: {e}")
            writer.write(b"HTTP/1.1 502 Bad Gateway\r\nContent-Length: 0\r\nConnection: close\r\n\r\n")
            await writer.drain()
            return None

        backend_writer.write(head)
        await backend_writer.drain()
        await asyncio.gather(_pipe(reader, backend_writer), _pipe(backend_reader, writer))
        return backend_writer
