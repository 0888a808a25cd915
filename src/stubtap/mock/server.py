"""
StubTap Mock Server

FastAPI-based HTTP stub server with proxy fallback.

Features:
- Stub matching (exact URL, URL pattern, body/header/query predicates)
- Canned responses with per-stub delays
- Per-rule and fallback forwarding to a real backend
- Proxy mode for browsers (absolute-form requests, CONNECT tunnels)
- Admin API for runtime stub management
- Metrics and a bounded request journal
"""

from __future__ import annotations  # Enable forward references for type hints

import asyncio
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field, fields
from datetime import datetime
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional, Union

import uvicorn
import yaml
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from ..common import URLHelper
from ..errors import InvalidStubDefinition, ResourceLoadError, ServerStartError, StubTapError
from .mappings import rule_from_dict, rule_to_dict
from .matcher import MatchResult, StubRegistry
from .ports import DEFAULT_RETRIES, bind_listener
from .proxy import (
    PROXY_ORIGIN_KEY,
    AbsoluteFormMiddleware,
    TunnelFrontDoor,
    UpstreamError,
    UpstreamForwarder,
)
from .stubs import IncomingRequest, StubRule


logger = logging.getLogger("stubtap.mock")

SERVED_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS", "TRACE"]

# Managed by Starlette/uvicorn, never copied from a stub definition
FRAMEWORK_HEADERS = {'content-length', 'transfer-encoding', 'connection'}


@dataclass
class MockConfig:
    """Configuration for stub server behavior."""

    # Network
    host: str = "127.0.0.1"
    public_host: str = "localhost"  # Host name used in base URLs
    port_retries: int = DEFAULT_RETRIES

    # Lifecycle
    startup_timeout: float = 10.0  # Seconds to wait for uvicorn to come up
    graceful_shutdown_timeout: float = 2.0  # Seconds in-flight requests get on stop

    # Upstream forwarding
    upstream_timeout: float = 30.0
    verify_upstream_tls: bool = True

    # Admin API
    admin_enabled: bool = True
    admin_prefix: str = "/__admin__"

    # Request journal (0 = unlimited)
    journal_limit: int = 1000

    # Directories searched for response body files
    resource_dirs: List[str] = field(default_factory=list)

    log_level: str = "warning"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MockConfig':
        """Create config from a dictionary; unknown keys are ignored with a warning."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            logger.warning(f"Ignoring unknown config keys: {', '.join(unknown)}")
        return cls(**{k: v for k, v in data.items() if k in known})

    @classmethod
    def from_yaml(cls, yaml_path: Union[str, Path]) -> 'MockConfig':
        """Load config from a YAML file."""
        try:
            with open(yaml_path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise StubTapError(f"Could not load config file {yaml_path}: {e}") from e
        if not isinstance(data, dict):
            raise StubTapError(f"Config file {yaml_path} must contain a mapping")
        return cls.from_dict(data)


@dataclass
class MockMetrics:
    """Track stub server metrics."""

    total_requests: int = 0
    matched_requests: int = 0
    proxied_requests: int = 0
    unmatched_requests: int = 0
    proxy_errors: int = 0
    start_time: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        uptime_seconds = (datetime.now() - datetime.fromisoformat(self.start_time)).total_seconds()
        return {
            'total_requests': self.total_requests,
            'matched_requests': self.matched_requests,
            'proxied_requests': self.proxied_requests,
            'unmatched_requests': self.unmatched_requests,
            'proxy_errors': self.proxy_errors,
            'uptime_seconds': round(uptime_seconds, 2),
            'start_time': self.start_time
        }


class MockServer:
    """
    FastAPI application serving registered stubs.

    Holds one StubRegistry; requests are matched against it and answered
    with the stub's canned response, forwarded upstream, or given a 404.
    The app can be run by ServerInstance or mounted in a TestClient.

    Example:
        server = MockServer()
        StubBuilder.get('/api/users/1').with_json_body({'id': 1}).stub(server.registry)
        client = TestClient(server.app)
        assert client.get('/api/users/1').json() == {'id': 1}
    """

    def __init__(
        self,
        config: Optional[MockConfig] = None,
        registry: Optional[StubRegistry] = None,
        forwarder: Optional[UpstreamForwarder] = None,
        proxy_mode: bool = False
    ):
        """
        Initialize stub server.

        Args:
            config: Optional MockConfig for server behavior
            registry: Optional StubRegistry (will create if None)
            forwarder: Optional UpstreamForwarder (will create if None)
            proxy_mode: Rewrite absolute-form targets and forward them to their origin
        """
        self.config = config or MockConfig()
        self.proxy_mode = proxy_mode
        self.registry = registry or StubRegistry()
        self.forwarder = forwarder or UpstreamForwarder(
            timeout=self.config.upstream_timeout,
            verify=self.config.verify_upstream_tls
        )
        self.metrics = MockMetrics()
        self.journal: Deque[Dict[str, Any]] = deque(maxlen=self.config.journal_limit or None)
        self._journal_lock = threading.Lock()
        self.app = self._create_app()

    def _create_app(self) -> FastAPI:
        """Create FastAPI application with routes."""
        app = FastAPI(
            title="StubTap",
            description="HTTP stub server with proxy fallback",
            version="1.0.0",
            docs_url=None,
            redoc_url=None,
            openapi_url=None
        )
        if self.proxy_mode:
            app.add_middleware(AbsoluteFormMiddleware)

        if self.config.admin_enabled:
            self._add_admin_routes(app)

        # Main catch-all route
        @app.api_route("/{path:path}", methods=SERVED_METHODS)
        async def stub_request(request: Request, path: str):
            """Handle incoming requests and serve stubbed responses."""
            return await self._handle_request(request)

        return app

    def _add_admin_routes(self, app: FastAPI):
        prefix = self.config.admin_prefix

        @app.get(f"{prefix}/mappings")
        async def list_mappings():
            """List registered stubs in match order."""
            fallback = self.registry.fallback
            return JSONResponse(content={
                'total': len(self.registry),
                'mappings': [rule_to_dict(r) for r in self.registry.rules()],
                'fallback': fallback.response.proxy_base_url if fallback else None
            })

        @app.post(f"{prefix}/mappings")
        async def add_mapping(request: Request):
            """Register a stub from a JSON mapping."""
            try:
                data = await request.json()
            except ValueError:
                return JSONResponse(content={'error': 'Body is not valid JSON'}, status_code=400)

            try:
                rule = self.registry.register(rule_from_dict(data, self.config.resource_dirs))
            except (InvalidStubDefinition, ResourceLoadError) as e:
                return JSONResponse(content={'error': str(e), 'details': e.details}, status_code=400)

            return JSONResponse(content=rule_to_dict(rule), status_code=201)

        @app.delete(f"{prefix}/mappings/{{rule_id}}")
        async def remove_mapping(rule_id: str):
            """Remove one stub."""
            if not self.registry.remove(rule_id):
                return JSONResponse(content={'error': f'No mapping {rule_id}'}, status_code=404)
            return JSONResponse(content={'status': 'removed', 'id': rule_id})

        @app.post(f"{prefix}/reset")
        async def reset_all():
            """Reset stubs, fallback, journal and metrics."""
            self.reset()
            return JSONResponse(content={'status': 'reset'})

        @app.get(f"{prefix}/requests")
        async def get_requests():
            """Get the request journal."""
            entries = self.journal_entries()
            return JSONResponse(content={
                'total': len(entries),
                'limit': self.config.journal_limit,
                'requests': entries
            })

        @app.delete(f"{prefix}/requests")
        async def clear_requests():
            """Clear the request journal."""
            count = self.clear_journal()
            return JSONResponse(content={'status': 'cleared', 'cleared_count': count})

        @app.get(f"{prefix}/metrics")
        async def get_metrics():
            """Get server metrics."""
            return JSONResponse(content=self.metrics.to_dict())

    def reset(self):
        """Forget every stub, the fallback, the journal and the metrics."""
        self.registry.reset()
        self.clear_journal()
        self.metrics = MockMetrics()

    def journal_entries(self) -> List[Dict[str, Any]]:
        """Copy of the request journal, oldest first."""
        with self._journal_lock:
            return list(self.journal)

    def clear_journal(self) -> int:
        """Empty the journal and return how many entries were dropped."""
        with self._journal_lock:
            count = len(self.journal)
            self.journal.clear()
        return count

    async def _handle_request(self, request: Request) -> Response:
        """
        Route one request: stub, forward, or 404.

        Args:
            request: FastAPI Request object

        Returns:
            FastAPI Response
        """
        start_time = time.time()
        self.metrics.total_requests += 1

        scope = request.scope
        raw_path = scope.get('raw_path') or scope['path'].encode('latin-1')
        incoming = IncomingRequest(
            method=request.method,
            path=raw_path.decode('latin-1'),
            query=scope.get('query_string', b'').decode('latin-1'),
            headers=tuple((k.decode('latin-1'), v.decode('latin-1')) for k, v in request.headers.raw),
            body=await request.body()
        )
        proxy_origin = scope.get(PROXY_ORIGIN_KEY)

        logger.debug(f"Incoming: {incoming.method} {incoming.path_and_query}")

        result = self.registry.match(incoming)

        if result.matched and not result.rule.is_proxy:
            self.metrics.matched_requests += 1
            response = await self._stub_response(result.rule)
        elif result.matched:
            self.metrics.proxied_requests += 1
            await self._apply_delay(result.rule)
            response = await self._forward(incoming, result.rule.response.proxy_base_url)
        elif proxy_origin:
            # Browser proxying: nothing stubbed, so go to where the browser was heading
            self.metrics.proxied_requests += 1
            response = await self._forward(incoming, proxy_origin)
        else:
            self.metrics.unmatched_requests += 1
            logger.info(f"No stub matched {incoming.method} {incoming.path_and_query}")
            response = Response(status_code=404)

        elapsed_ms = (time.time() - start_time) * 1000
        self._record(incoming, result, response.status_code, elapsed_ms, proxy_origin)
        return response

    async def _apply_delay(self, rule: StubRule):
        """Sleep for the stub's fixed delay without blocking other requests."""
        if rule.response.delay_ms > 0:
            await asyncio.sleep(rule.response.delay_ms / 1000)

    async def _stub_response(self, rule: StubRule) -> Response:
        """Create Response from a stub's response template."""
        await self._apply_delay(rule)
        template = rule.response
        response = Response(content=template.body, status_code=template.status)
        for name, value in template.headers:
            if name.lower() in FRAMEWORK_HEADERS:
                continue
            response.raw_headers.append((name.lower().encode('latin-1'), value.encode('latin-1')))
        return response

    async def _forward(self, incoming: IncomingRequest, base_url: str) -> Response:
        """Forward to base_url + original path and relay the answer, or 502."""
        url = URLHelper.join_upstream(base_url, incoming.path_and_query)
        try:
            upstream = await self.forwarder.forward(incoming.method, url, list(incoming.headers), incoming.body)
        except UpstreamError as e:
            self.metrics.proxy_errors += 1
            logger.warning(str(e))
            return Response(content=str(e), status_code=502, media_type="text/plain")

        logger.debug(f"Forwarded {incoming.method} {url} -> {upstream.status}")
        response = Response(content=upstream.body, status_code=upstream.status)
        for name, value in upstream.headers:
            response.raw_headers.append((name.lower().encode('latin-1'), value.encode('latin-1')))
        return response

    def _record(
        self,
        incoming: IncomingRequest,
        result: MatchResult,
        status: int,
        elapsed_ms: float,
        proxy_origin: Optional[str]
    ):
        """Append a request to the journal (oldest entries drop off at the limit)."""
        entry = {
            'timestamp': datetime.now().isoformat(),
            'method': incoming.method,
            'url': incoming.path_and_query,
            'proxy_origin': proxy_origin,
            'headers': dict(incoming.headers),
            'body': incoming.body_text,
            'matched': result.matched,
            'fallback': result.is_fallback,
            'rule_id': result.rule.id if result.rule else None,
            'response_status': status,
            'response_time_ms': round(elapsed_ms, 2)
        }
        with self._journal_lock:
            self.journal.append(entry)


class ServerInstance:
    """
    One independently addressable stub server.

    The FastAPI app runs under uvicorn on a dedicated thread with its own
    event loop, so the calling (test) thread stays free to register stubs
    while requests are being served. In proxy mode a TunnelFrontDoor owns the
    public port and uvicorn listens on a second, internal port.

    Example:
        instance = ServerInstance()
        base_url = instance.start()
        StubBuilder.get('/ping').with_body('pong').stub(instance)
        ...
        instance.stop()
    """

    def __init__(
        self,
        config: Optional[MockConfig] = None,
        proxy_mode: bool = False,
        name: Optional[str] = None,
        port: int = 0
    ):
        """
        Initialize instance (nothing is bound until start()).

        Args:
            config: Optional MockConfig
            proxy_mode: Accept CONNECT and browser proxy requests
            name: Label used in thread names and logs
            port: Fixed public port; 0 picks a free one on every start
        """
        self.config = config or MockConfig()
        self.proxy_mode = proxy_mode
        self.name = name or "stubtap"
        self.requested_port = port
        self.mock = MockServer(self.config, proxy_mode=proxy_mode)
        self.front_door: Optional[TunnelFrontDoor] = None

        self._lock = threading.RLock()
        self._server: Optional[uvicorn.Server] = None
        self._thread: Optional[threading.Thread] = None
        self._sockets: list = []
        self._port: Optional[int] = None
        self._ready = threading.Event()
        self._failure: Optional[BaseException] = None

    # Properties

    @property
    def registry(self) -> StubRegistry:
        return self.mock.registry

    @property
    def port(self) -> Optional[int]:
        return self._port if self.is_running else None

    @property
    def base_url(self) -> Optional[str]:
        if not self.is_running:
            return None
        return f"http://{self.config.public_host}:{self._port}"

    @property
    def is_running(self) -> bool:
        server, thread = self._server, self._thread
        return bool(server and thread and thread.is_alive() and server.started and not server.should_exit)

    # Stub control

    def register(self, rule: StubRule) -> StubRule:
        return self.registry.register(rule)

    def reset(self):
        self.mock.reset()

    def set_fallback(self, target_base_url: Optional[str]):
        return self.registry.set_fallback(target_base_url)

    def received_requests(self) -> List[Dict[str, Any]]:
        return self.mock.journal_entries()

    # Lifecycle

    def start(self) -> str:
        """
        Bind a free port and start serving.

        Returns:
            Base URL, e.g. 'http://localhost:54321'

        Raises:
            PortUnavailable: If no port could be bound
            ServerStartError: If uvicorn did not come up in time
        """
        with self._lock:
            if self.is_running:
                return self.base_url

            public_sock = bind_listener(
                self.config.host,
                retries=self.config.port_retries,
                port=self.requested_port
            )
            sockets = [public_sock]
            if self.proxy_mode:
                try:
                    sockets.append(bind_listener(self.config.host, retries=self.config.port_retries))
                except StubTapError:
                    public_sock.close()
                    raise

            self._sockets = sockets
            self._port = public_sock.getsockname()[1]
            self._ready.clear()
            self._failure = None

            uvicorn_config = uvicorn.Config(
                self.mock.app,
                http="h11",  # keeps absolute-form targets intact for proxy mode
                lifespan="off",
                log_level=self.config.log_level,
                log_config=None,
                access_log=False,
                server_header=False,
                date_header=False,
                timeout_graceful_shutdown=self.config.graceful_shutdown_timeout
            )
            self._server = uvicorn.Server(uvicorn_config)
            self._thread = threading.Thread(
                target=self._run,
                name=f"{self.name}-{self._port}",
                daemon=True
            )
            self._thread.start()

            self._ready.wait(self.config.startup_timeout)
            if not (self._server.started and self._thread.is_alive()):
                port = self._port
                reason = self._failure or "timed out"
                self._shutdown()
                raise ServerStartError(
                    f"Stub server on port {port} failed to start: {reason}",
                    details={'port': port}
                )

            mode = " (proxy mode)" if self.proxy_mode else ""
            logger.info(f"Stub server started: {self.base_url}{mode} [{self.name}]")
            return self.base_url

    def _run(self):
        """Thread body: own event loop running uvicorn (and the front door)."""
        try:
            asyncio.run(self._serve())
        except (Exception, SystemExit) as e:  # uvicorn exits on startup errors
            self._failure = e
            logger.exception(f"Stub server on port {self._port} crashed")
        finally:
            self._ready.set()

    async def _serve(self):
        server = self._server
        serve_sockets = self._sockets

        if self.proxy_mode:
            public_sock, backend_sock = self._sockets
            backend_host, backend_port = backend_sock.getsockname()[:2]
            self.front_door = TunnelFrontDoor(
                backend_host,
                backend_port,
                connect_timeout=self.config.upstream_timeout
            )
            await self.front_door.start(public_sock)
            serve_sockets = [backend_sock]

        watcher = asyncio.ensure_future(self._announce_started(server))
        try:
            await server.serve(sockets=serve_sockets)
        finally:
            watcher.cancel()
            if self.front_door is not None:
                await self.front_door.close()

    async def _announce_started(self, server: uvicorn.Server):
        while not server.started:
            await asyncio.sleep(0.01)
        self._ready.set()

    def stop(self):
        """
        Stop serving and release the port.

        In-flight requests get graceful_shutdown_timeout seconds, after which
        uvicorn is forced down. Safe to call repeatedly or before start().
        """
        with self._lock:
            if self._thread is None:
                return
            logger.info(f"Stopping stub server on port {self._port} [{self.name}]")
            self._shutdown()

    def _shutdown(self):
        server, thread = self._server, self._thread
        grace = self.config.graceful_shutdown_timeout

        if server is not None:
            server.should_exit = True
        if thread is not None and thread.is_alive():
            thread.join(grace + 1.0)
            if thread.is_alive():
                logger.warning(f"Stub server on port {self._port} did not stop in {grace}s, forcing exit")
                server.force_exit = True
                thread.join(grace + 1.0)

        for sock in self._sockets:
            sock.close()

        self._sockets = []
        self._server = None
        self._thread = None
        self.front_door = None
        self._port = None

    def __enter__(self) -> 'ServerInstance':
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()
