"""FastAPI application: proxy catch-all route plus log dashboard endpoints"""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse

from .config import Config, load_config
from .constants import CORS_ALLOW_HEADERS, CORS_ALLOW_METHODS
from .errors import LogWriteFailure
from .log_store import LogStore
from .models import ClearLogsResponse, ErrorResponse, HealthResponse, LogsResponse
from .proxy import ProxyOrchestrator
from .relay import UpstreamRelay
from .streamer import ResponseStreamer

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

_DASHBOARD_PAGE = Path(__file__).parent / "static" / "logs.html"


def _configure_logging(debug: bool) -> None:
    """Apply runtime log level from config."""
    level = logging.DEBUG if debug else logging.INFO
    logging.getLogger("llmlogproxy").setLevel(level)


def _log_failure_response(error: str, exc: LogWriteFailure) -> JSONResponse:
    body = ErrorResponse(error=error, detail=str(exc))
    return JSONResponse(status_code=500, content=body.model_dump())


def create_app(
    config_path: Optional[str] = None,
    env_file: Optional[str] = None,
    preloaded_config: Config | None = None,
    upstream_transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Create and configure FastAPI application

    Args:
        config_path: Path to configuration file
        env_file: Optional path to dotenv file
        preloaded_config: Preloaded config object to avoid re-parsing config
        upstream_transport: Optional httpx transport for the upstream client

    Returns:
        Configured FastAPI app
    """
    if preloaded_config is not None:
        config = preloaded_config
        _configure_logging(config.serve.debug)
        logger.info("Using preloaded configuration")
    else:
        try:
            config = load_config(config_path, env_file=env_file)
            _configure_logging(config.serve.debug)
            logger.info("Loaded configuration from %s", config_path or "environment")
        except Exception as e:
            logger.exception("Failed to load configuration: %s", e)
            raise

    store = LogStore(config.log.log_file)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        timeout = httpx.Timeout(config.upstream.timeout)
        async with httpx.AsyncClient(
            timeout=timeout, transport=upstream_transport
        ) as client:
            relay = UpstreamRelay(client, config, store)
            streamer = ResponseStreamer(config, store)
            app.state.proxy = ProxyOrchestrator(relay, streamer)
            logger.info("Upstream base: %s", config.upstream_base_url)
            logger.info("Logging to: %s", store.path)
            yield

    app = FastAPI(
        title="llmlogproxy",
        description="Logging proxy for generative-AI HTTP APIs",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.store = store

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=CORS_ALLOW_METHODS,
        allow_headers=CORS_ALLOW_HEADERS,
    )

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        """Health check endpoint"""
        return HealthResponse(
            status="ok",
            upstream_base_url=config.upstream_base_url,
            route_prefix=config.route_prefix,
        )

    @app.get("/logs/data", response_model=LogsResponse)
    async def read_logs(limit: Optional[str] = None):
        """Return the most recent log records in append order."""
        try:
            entries = await store.read_recent(limit)
        except LogWriteFailure as exc:
            logger.error("[logs] Failed to read log file: %s", exc)
            return _log_failure_response("Failed to read logs", exc)
        return LogsResponse(entries=entries)

    @app.delete("/logs/data", response_model=ClearLogsResponse)
    async def clear_logs():
        """Truncate the log store."""
        try:
            await store.clear()
        except LogWriteFailure as exc:
            logger.error("[logs] Failed to clear log file: %s", exc)
            return _log_failure_response("Failed to clear logs", exc)
        return ClearLogsResponse()

    @app.get("/logs")
    async def dashboard():
        """Serve the log dashboard page."""
        return FileResponse(_DASHBOARD_PAGE, media_type="text/html")

    @app.post(config.route_prefix + "/{path:path}")
    async def proxy_post(request: Request, path: str):
        """Relay any POST under the route prefix to the upstream."""
        client = request.client.host if request.client else "-"
        logger.info("[incoming] %s %s from %s", request.method, request.url.path, client)
        return await request.app.state.proxy.handle(request)

    return app
