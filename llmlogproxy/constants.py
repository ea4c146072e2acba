"""Shared constants for llmlogproxy."""

import re

DEFAULT_UPSTREAM_BASE = "https://generativelanguage.googleapis.com"
DEFAULT_LOG_FILE = "logs/requests.ndjson"

# Read interface limits (log_store.py)
DEFAULT_LOG_LIMIT = 200
MAX_LOG_LIMIT = 1000

# Inbound headers that must not be replayed on the upstream hop (relay.py)
HOP_BY_HOP_REQUEST_HEADERS = {
    "content-length",
    "host",
    "connection",
    "transfer-encoding",
    "accept-encoding",
    "keep-alive",
    "proxy-connection",
    "te",
    "trailer",
    "upgrade",
}

# Upstream headers describing the upstream framing, dropped in buffered mode (streamer.py)
BUFFERED_RESPONSE_STRIP_HEADERS = {
    "content-length",
    "content-encoding",
    "transfer-encoding",
    "connection",
    "keep-alive",
}

DEFAULT_REQUEST_CONTENT_TYPE = "application/json"
DEFAULT_BUFFERED_CONTENT_TYPE = "application/json"
DEFAULT_STREAM_CONTENT_TYPE = "application/json; charset=utf-8"

EVENT_STREAM_CONTENT_TYPE = "text/event-stream"
# Lower-cased path marker of the streaming generate-content operation
STREAM_ROUTE_MARKER = "streamgeneratecontent"

SSE_DATA_PREFIX = "data:"
SSE_DONE_PAYLOAD = "[DONE]"
SSE_DATA_LINE_RE = re.compile(r"^data:", re.MULTILINE)

# Console log previews are cut to this many characters
LOG_PREVIEW_CHARS = 1000

CORS_ALLOW_HEADERS = [
    "Content-Type",
    "Authorization",
    "OpenAI-Organization",
    "OpenAI-Project",
    "OpenAI-Beta",
]
CORS_ALLOW_METHODS = ["GET", "POST", "OPTIONS", "DELETE"]
