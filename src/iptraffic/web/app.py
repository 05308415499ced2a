"""FastAPI application factory for the /metrics endpoint."""

from __future__ import annotations

import logging
import threading

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST

from iptraffic import __version__
from iptraffic.metrics import MetricsRenderer

logger = logging.getLogger(__name__)


def create_app(renderer: MetricsRenderer) -> FastAPI:
    """Build the FastAPI application serving ``GET /metrics``."""
    app = FastAPI(
        title="iptraffic",
        version=__version__,
        docs_url=None,
        redoc_url=None,
    )
    app.add_middleware(GZipMiddleware, minimum_size=1024)
    app.state.renderer = renderer

    # Sync handler: runs in Starlette's worker thread pool, so a slow
    # enrichment lookup never blocks the event loop.
    @app.get("/metrics")
    def metrics(request: Request) -> Response:
        body = request.app.state.renderer.render()
        return Response(content=body, media_type=CONTENT_TYPE_LATEST)

    return app


class MetricsServer:
    """Runs uvicorn on a background thread so the main thread stays free."""

    def __init__(self, app: FastAPI, host: str, port: int) -> None:
        self.host = host
        self.port = port
        self._server = uvicorn.Server(
            uvicorn.Config(app, host=host, port=port, log_level="warning")
        )
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self._server.run, name="metrics-server", daemon=True
        )
        self._thread.start()
        logger.info("Metrics endpoint listening on http://%s:%d/metrics", self.host, self.port)

    def stop(self, timeout: float = 5.0) -> None:
        """Ask uvicorn to finish in-flight requests and exit."""
        self._server.should_exit = True
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("Metrics server did not stop within %.1fs", timeout)
