"""Proxy orchestrator: one inbound request through relay and streamer."""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.responses import Response

from .errors import UpstreamProtocolError, UpstreamUnreachable
from .models import ErrorResponse
from .relay import UpstreamHandle, UpstreamRelay
from .sanitizers import sanitize_error_message
from .streamer import ResponseStreamer

logger = logging.getLogger(__name__)


def original_route(request: Request) -> str:
    """Return the inbound path and query exactly as the client sent them."""
    raw_path = request.scope.get("raw_path")
    path = raw_path.decode("latin-1") if raw_path else request.url.path
    query = request.url.query
    return f"{path}?{query}" if query else path


def _error_response(status_code: int, error: str, exc: BaseException) -> JSONResponse:
    body = ErrorResponse(error=error, detail=sanitize_error_message(exc))
    return JSONResponse(status_code=status_code, content=body.model_dump())


class ProxyOrchestrator:
    """Maps every failure before the response starts to a client-visible error.

    Once a streamed response has started, failures are handled inside the
    streamer and the connection simply ends.
    """

    def __init__(self, relay: UpstreamRelay, streamer: ResponseStreamer):
        self.relay = relay
        self.streamer = streamer

    async def handle(self, request: Request) -> Response:
        route = original_route(request)
        logger.info("[proxy] proxying %s %s", request.method, route.split("?", 1)[0])

        handle: UpstreamHandle | None = None
        try:
            body = await request.body()
            handle = await self.relay.forward(
                request.method, route, request.headers.items(), body
            )
            return await self.streamer.deliver(handle)
        except UpstreamUnreachable as exc:
            logger.error("[proxy] upstream unreachable: %s", exc)
            return _error_response(502, "Upstream unreachable", exc)
        except UpstreamProtocolError as exc:
            logger.error("[proxy] upstream protocol error: %s", exc)
            return _error_response(502, "Upstream protocol error", exc)
        except Exception as exc:
            logger.error("[proxy] error during proxying: %s", exc, exc_info=True)
            if handle is not None:
                await handle.aclose()
            return _error_response(500, "Proxy error", exc)
