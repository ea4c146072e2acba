"""Response streamer: relays the upstream response and records it.

Each response is classified once. Stream mode tees every upstream chunk to
the client and into a per-response capture from the same read loop; buffered
mode reads the whole body, re-frames it with an exact content-length, then
relays it. In both modes the ``response`` record is written from a background
task that runs after the client response is finished.
"""

import json
import logging
from typing import Any, AsyncIterator, List, Optional

import httpx
from starlette.background import BackgroundTask
from starlette.responses import Response, StreamingResponse

from .config import Config
from .constants import (
    BUFFERED_RESPONSE_STRIP_HEADERS,
    DEFAULT_BUFFERED_CONTENT_TYPE,
    DEFAULT_STREAM_CONTENT_TYPE,
    EVENT_STREAM_CONTENT_TYPE,
    STREAM_ROUTE_MARKER,
)
from .errors import UpstreamProtocolError
from .extractor import extract_content, extract_tool_calls
from .log_store import LogStore
from .models import ResponseRecord
from .relay import UpstreamHandle
from .sanitizers import preview, sanitize_error_message

logger = logging.getLogger(__name__)


def should_stream(route: str, content_type: Optional[str]) -> bool:
    """Stream when upstream declares an event stream or the route names the
    streaming generate-content operation."""
    if content_type and EVENT_STREAM_CONTENT_TYPE in content_type.lower():
        return True
    return STREAM_ROUTE_MARKER in (route or "").lower()


class StreamCapture:
    """Bytes seen on one streamed response, in arrival order."""

    def __init__(self):
        self.chunks: List[bytes] = []
        self.bytes_sent = 0
        self.completed = False

    def add(self, chunk: bytes) -> None:
        self.chunks.append(chunk)
        self.bytes_sent += len(chunk)

    def data(self) -> bytes:
        return b"".join(self.chunks)

    def text(self) -> str:
        return self.data().decode("utf-8", errors="replace")


def parse_body_for_log(body_text: str) -> Any:
    """Return the parsed JSON value, or the raw text when it isn't JSON."""
    try:
        return json.loads(body_text)
    except ValueError:
        return body_text


class ResponseStreamer:
    def __init__(self, config: Config, store: LogStore):
        self.config = config
        self.store = store

    async def deliver(self, handle: UpstreamHandle) -> Response:
        """Build the client response for a live upstream handle.

        Raises:
            UpstreamProtocolError: The upstream body failed before any byte
                could be relayed.
        """
        if should_stream(handle.route, handle.content_type):
            logger.info("[stream] streaming response id=%s", handle.correlation_id[:8])
            return await self._deliver_stream(handle)
        logger.info("[proxy] buffering response id=%s", handle.correlation_id[:8])
        return await self._deliver_buffered(handle)

    async def _deliver_stream(self, handle: UpstreamHandle) -> Response:
        chunks = handle.response.aiter_bytes()
        # Pull the first chunk before the response starts so an immediate
        # failure can still be answered with an error status.
        try:
            first_chunk = await anext(chunks, b"")
        except httpx.HTTPError as exc:
            await handle.aclose()
            raise UpstreamProtocolError(
                f"stream failed before first byte: {sanitize_error_message(exc)}"
            ) from exc

        capture = StreamCapture()
        return StreamingResponse(
            self._relay_chunks(handle, chunks, first_chunk, capture),
            status_code=handle.status_code,
            headers={"content-type": handle.content_type or DEFAULT_STREAM_CONTENT_TYPE},
            background=BackgroundTask(self._record_stream, handle, capture),
        )

    async def _relay_chunks(
        self,
        handle: UpstreamHandle,
        chunks: AsyncIterator[bytes],
        first_chunk: bytes,
        capture: StreamCapture,
    ) -> AsyncIterator[bytes]:
        try:
            if first_chunk:
                capture.add(first_chunk)
                yield first_chunk
            async for chunk in chunks:
                capture.add(chunk)
                yield chunk
            capture.completed = True
            logger.info(
                "[stream] upstream stream ended id=%s bytes=%d",
                handle.correlation_id[:8],
                capture.bytes_sent,
            )
        except httpx.HTTPError as exc:
            # Bytes already reached the client; end the stream as is.
            logger.warning(
                "[stream] upstream stream error id=%s after %d bytes: %s",
                handle.correlation_id[:8],
                capture.bytes_sent,
                sanitize_error_message(exc),
            )
        finally:
            await handle.aclose()

    async def _record_stream(self, handle: UpstreamHandle, capture: StreamCapture) -> None:
        if not capture.completed:
            logger.info(
                "[stream] incomplete stream id=%s not recorded", handle.correlation_id[:8]
            )
            return
        await self._record_response(handle, capture.text())

    async def _deliver_buffered(self, handle: UpstreamHandle) -> Response:
        try:
            payload = await handle.response.aread()
        except httpx.HTTPError as exc:
            raise UpstreamProtocolError(
                f"failed reading upstream body: {sanitize_error_message(exc)}"
            ) from exc
        finally:
            await handle.aclose()

        body_text = payload.decode("utf-8", errors="replace")
        logger.debug("[proxy] upstream body: %s", preview(body_text))
        # Starlette frames content-length from the buffered payload
        response = Response(
            content=payload,
            status_code=handle.status_code,
            background=BackgroundTask(self._record_response, handle, body_text),
        )
        # multi_items keeps repeated headers such as set-cookie as separate lines
        for key, value in handle.response.headers.multi_items():
            if key.lower() not in BUFFERED_RESPONSE_STRIP_HEADERS:
                response.headers.append(key, value)
        if "content-type" not in response.headers:
            response.headers["content-type"] = DEFAULT_BUFFERED_CONTENT_TYPE
        return response

    async def _record_response(self, handle: UpstreamHandle, body_text: str) -> None:
        content_type = handle.content_type
        content = extract_content(body_text, content_type)
        record_fields = {
            "correlation_id": handle.correlation_id,
            "route": handle.route,
            "status": handle.status_code,
            "tool_calls": extract_tool_calls(body_text, content_type),
            "content": content,
        }
        if self.config.raw_body_logging_enabled:
            record_fields["body"] = parse_body_for_log(body_text)
        await self.store.append(ResponseRecord(**record_fields))
        logger.info(
            "[proxy] recorded response id=%s status=%s content_chars=%d",
            handle.correlation_id[:8],
            handle.status_code,
            len(content),
        )
