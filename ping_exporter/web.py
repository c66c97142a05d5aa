"""
HTTP shell: metrics text at a configurable path, small HTML index at '/'.
An optional background coroutine (the scheduler) lives for the app's lifespan.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Optional

from fastapi import FastAPI
from fastapi.responses import HTMLResponse, Response

from ping_exporter.metrics import render_metrics
from ping_exporter.publisher import ResultPublisher

logger = logging.getLogger("ping_exporter.web")

CONTENT_TYPE_LATEST = "text/plain; version=0.0.4; charset=utf-8"

INDEX_TEMPLATE = """<html>
<head><title>Ping Exporter</title></head>
<body>
<h1>Ping Exporter</h1>
<p><a href='{path}'>Metrics</a></p>
</body>
</html>
"""


def create_app(
    publisher: ResultPublisher,
    metrics_path: str = "/metrics",
    namespace: str = "ping",
    background: Optional[Callable[[], Awaitable[None]]] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        task = asyncio.create_task(background()) if background is not None else None
        logger.info("Serving metrics at %s", metrics_path)
        yield
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("HTTP server stopped")

    app = FastAPI(title="Ping Exporter", lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)
    app.state.publisher = publisher

    def metrics() -> Response:
        body = render_metrics(publisher.latest(), namespace)
        return Response(content=body, media_type=CONTENT_TYPE_LATEST)

    def index() -> HTMLResponse:
        return HTMLResponse(INDEX_TEMPLATE.format(path=metrics_path))

    app.add_api_route(metrics_path, metrics, methods=["GET"], response_class=Response)
    app.add_api_route("/", index, methods=["GET"], response_class=HTMLResponse)
    return app
