"""Upstream relay: replays an inbound request against the configured upstream."""

import dataclasses
import json
import logging
import uuid
from typing import Any, Iterable, List, Tuple

import httpx

from .config import Config
from .constants import DEFAULT_REQUEST_CONTENT_TYPE, HOP_BY_HOP_REQUEST_HEADERS
from .errors import UpstreamProtocolError, UpstreamUnreachable
from .log_store import LogStore
from .models import RequestRecord
from .sanitizers import preview, redact_headers, redact_url, sanitize_error_message

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class UpstreamHandle:
    """A live upstream response plus the identifiers of the exchange."""

    response: httpx.Response
    correlation_id: str
    route: str
    target: str

    @property
    def status_code(self) -> int:
        return self.response.status_code

    @property
    def content_type(self) -> str | None:
        return self.response.headers.get("content-type")

    async def aclose(self) -> None:
        await self.response.aclose()


def sanitize_request_headers(
    headers: Iterable[Tuple[str, str]],
) -> List[Tuple[str, str]]:
    """Drop hop-by-hop headers and default the content type to JSON."""
    kept = [
        (key, value)
        for key, value in headers
        if key.lower() not in HOP_BY_HOP_REQUEST_HEADERS
    ]
    if not any(key.lower() == "content-type" for key, _ in kept):
        logger.debug("[proxy] no content-type header found, setting %s", DEFAULT_REQUEST_CONTENT_TYPE)
        kept.append(("content-type", DEFAULT_REQUEST_CONTENT_TYPE))
    return kept


def decode_request_body(raw: bytes) -> Tuple[Any, bytes]:
    """Return (value to log, bytes to send) for an inbound body.

    JSON bodies are logged parsed and re-serialized compactly; an empty body
    is sent as ``{}``; anything else is forwarded untouched and logged as text.
    """
    if not raw or not raw.strip():
        return {}, b"{}"
    try:
        parsed = json.loads(raw)
    except ValueError:
        return raw.decode("utf-8", errors="replace"), raw
    encoded = json.dumps(parsed, ensure_ascii=False, separators=(",", ":"))
    return parsed, encoded.encode("utf-8")


def new_correlation_id() -> str:
    return str(uuid.uuid4())


class UpstreamRelay:
    """Issues the upstream call for one inbound request at most once."""

    def __init__(self, client: httpx.AsyncClient, config: Config, store: LogStore):
        self.client = client
        self.config = config
        self.store = store

    def build_target_url(self, path_and_query: str) -> str:
        return self.config.upstream_base_url.rstrip("/") + path_and_query

    async def forward(
        self,
        method: str,
        path_and_query: str,
        inbound_headers: Iterable[Tuple[str, str]],
        inbound_body: bytes,
    ) -> UpstreamHandle:
        """Forward the request and return the live (unread) upstream response.

        Raises:
            UpstreamUnreachable: Connecting to or talking with the upstream failed.
            UpstreamProtocolError: The upstream response head was malformed.
        """
        target = self.build_target_url(path_and_query)
        headers = sanitize_request_headers(inbound_headers)
        logged_body, payload = decode_request_body(inbound_body)

        correlation_id = new_correlation_id()
        await self.store.append(
            RequestRecord(
                correlation_id=correlation_id,
                route=path_and_query,
                target=target,
                body=logged_body,
            )
        )

        logger.info("[proxy] %s %s id=%s", method, redact_url(target), correlation_id[:8])
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("[proxy] body: %s", preview(payload.decode("utf-8", errors="replace")))
            logger.debug(
                "[proxy] headers: %s",
                preview(json.dumps(redact_headers(headers))),
            )

        request = self.client.build_request(method, target, headers=headers, content=payload)
        try:
            response = await self.client.send(request, stream=True)
        except (httpx.ProtocolError, httpx.DecodingError) as exc:
            raise UpstreamProtocolError(sanitize_error_message(exc)) from exc
        except httpx.TransportError as exc:
            raise UpstreamUnreachable(
                f"{type(exc).__name__}: {sanitize_error_message(exc)}"
            ) from exc

        logger.info(
            "[proxy] upstream response %s %s id=%s",
            response.status_code,
            response.reason_phrase,
            correlation_id[:8],
        )
        return UpstreamHandle(
            response=response,
            correlation_id=correlation_id,
            route=path_and_query,
            target=target,
        )
