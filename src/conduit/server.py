# src/conduit/server.py
"""Starlette ASGI application for the collector's HTTP surface.

Routes:
    POST /v1/envelopes   one envelope object or an array of them
    GET  /health         supervisor health document
    GET  /metrics        Prometheus text exposition

Ingest responses:
    202 {"accepted_ids": [...]}
    400 invalid envelope or body that is not JSON
    422 no pipeline for the envelope's kind
    503 buffer full or shutting down (with Retry-After)

Usage:
    from conduit.server import create_app, IngestServer

    app = create_app(supervisor)            # for TestClient or any ASGI server
    server = IngestServer(app, "127.0.0.1", 4318)
    server.start()                          # uvicorn in a background thread
"""

from __future__ import annotations

import threading
import time
from typing import TYPE_CHECKING, Any

import structlog
from prometheus_client import CONTENT_TYPE_LATEST
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from conduit.contracts.enums import SupervisorStatus
from conduit.contracts.errors import BufferFull, EndpointClosed, InvalidEnvelope, UnknownKind

if TYPE_CHECKING:
    import uvicorn

    from conduit.engine.supervisor import PipelineSupervisor

logger = structlog.get_logger(__name__)

# Seconds producers are asked to wait after a 503
RETRY_AFTER_SECONDS = 1


class IngestAPI:
    """HTTP handlers bound to one supervisor.

    Attributes:
        app: The Starlette ASGI application
    """

    def __init__(self, supervisor: PipelineSupervisor) -> None:
        self._supervisor = supervisor
        self._app = self._create_app()

    def _create_app(self) -> Starlette:
        routes = [
            Route("/v1/envelopes", self._envelopes_endpoint, methods=["POST"]),
            Route("/health", self._health_endpoint, methods=["GET"]),
            Route("/metrics", self._metrics_endpoint, methods=["GET"]),
        ]
        return Starlette(debug=False, routes=routes)

    @property
    def app(self) -> Starlette:
        return self._app

    # === Endpoint handlers ===

    async def _envelopes_endpoint(self, request: Request) -> JSONResponse:
        """Handle POST /v1/envelopes."""
        try:
            body = await request.json()
        except ValueError as e:
            return JSONResponse(
                {"error": "invalid_envelope", "message": f"Request body is not valid JSON: {e}"},
                status_code=400,
            )

        endpoint = self._supervisor.endpoint
        try:
            # Blocking backpressure mode may wait for capacity; keep that off the event loop
            if isinstance(body, list):
                accepted = await run_in_threadpool(endpoint.submit_many, body)
            else:
                accepted = [await run_in_threadpool(endpoint.submit, body)]
        except InvalidEnvelope as e:
            return JSONResponse(
                {"error": "invalid_envelope", "message": str(e), "index": e.index},
                status_code=400,
            )
        except UnknownKind as e:
            return JSONResponse(
                {"error": "unknown_kind", "message": str(e), "kind": e.kind.value},
                status_code=422,
            )
        except BufferFull as e:
            error = "closed" if isinstance(e, EndpointClosed) else "buffer_full"
            return JSONResponse(
                {"error": error, "message": str(e)},
                status_code=503,
                headers={"Retry-After": str(RETRY_AFTER_SECONDS)},
            )

        return JSONResponse({"accepted_ids": accepted}, status_code=202)

    async def _health_endpoint(self, request: Request) -> JSONResponse:
        """Handle GET /health. 503 unless the collector is running."""
        health = self._supervisor.health()
        status_code = 200 if health["status"] == SupervisorStatus.RUNNING.value else 503
        return JSONResponse(health, status_code=status_code)

    async def _metrics_endpoint(self, request: Request) -> Response:
        """Handle GET /metrics."""
        return Response(self._supervisor.metrics.render(), media_type=CONTENT_TYPE_LATEST)


def create_app(supervisor: PipelineSupervisor) -> Starlette:
    """Create the Starlette ASGI application for a supervisor.

    Args:
        supervisor: Started supervisor whose endpoint receives the envelopes

    Returns:
        Starlette ASGI application
    """
    api = IngestAPI(supervisor)
    api.app.state.supervisor = supervisor
    return api.app


class IngestServer:
    """Runs an ASGI app under uvicorn in a background thread.

    Example:
        server = IngestServer(app, "127.0.0.1", 0)  # port 0: pick a free port
        server.start()
        print(server.url)
        server.stop()
    """

    def __init__(self, app: Any, host: str, port: int, *, startup_timeout: float = 10.0) -> None:
        self._app = app
        self._host = host
        self._port = port
        self._startup_timeout = startup_timeout
        self._server: uvicorn.Server | None = None
        self._thread: threading.Thread | None = None

    @property
    def port(self) -> int:
        """Bound port (resolved after start() when configured as 0)."""
        return self._port

    @property
    def url(self) -> str:
        return f"http://{self._host}:{self._port}"

    def start(self) -> None:
        """Start serving and wait until the socket is bound.

        Raises:
            OSError: If uvicorn exits before binding (e.g. port in use)
        """
        import uvicorn

        config = uvicorn.Config(
            app=self._app,
            host=self._host,
            port=self._port,
            log_config=None,  # keep the collector's logging configuration
            access_log=False,
        )
        self._server = uvicorn.Server(config)
        self._thread = threading.Thread(target=self._server.run, name="conduit-http", daemon=True)
        self._thread.start()

        deadline = time.monotonic() + self._startup_timeout
        while not self._server.started:
            if not self._thread.is_alive():
                raise OSError(f"HTTP listener failed to bind {self._host}:{self._port}")
            if time.monotonic() > deadline:
                self.stop()
                raise OSError(f"HTTP listener did not start within {self._startup_timeout}s")
            time.sleep(0.01)

        if self._port == 0:
            self._port = self._server.servers[0].sockets[0].getsockname()[1]
        logger.info("http_listener_started", url=self.url)

    def stop(self, timeout: float = 5.0) -> None:
        """Ask uvicorn to exit and wait for the thread."""
        if self._server is None or self._thread is None:
            return
        self._server.should_exit = True
        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            logger.error("http_listener_did_not_stop", timeout=timeout)
        else:
            logger.info("http_listener_stopped")
        self._server = None
        self._thread = None
