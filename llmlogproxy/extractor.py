"""Best-effort content and tool-call extraction from upstream response bodies.

Bodies arrive either as a single JSON document or as a server-sent event
stream of ``data: <json>`` lines. Each known response dialect is parsed by an
independent function that returns ``None`` for "no match"; a dialect that
trips over an unexpected shape raises ``ExtractionFailure`` internally and is
treated the same way. Nothing in this module raises to its callers: the
results only feed the log, never the relayed response.
"""

import json
import logging
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from .constants import (
    EVENT_STREAM_CONTENT_TYPE,
    SSE_DATA_LINE_RE,
    SSE_DATA_PREFIX,
    SSE_DONE_PAYLOAD,
)
from .errors import ExtractionFailure
from .models import ToolCall

logger = logging.getLogger(__name__)

Dialect = Callable[[Any], Optional[str]]


def is_event_stream(body_text: str, content_type: Optional[str]) -> bool:
    """Decide SSE encoding from the declared type or a ``data:`` line probe."""
    if content_type and EVENT_STREAM_CONTENT_TYPE in content_type.lower():
        return True
    return bool(SSE_DATA_LINE_RE.search(body_text or ""))


def iter_sse_events(body_text: str) -> Iterator[Dict[str, Any]]:
    """Yield parsed JSON objects from ``data:`` lines, skipping malformed ones."""
    for line in (body_text or "").splitlines():
        if not line.startswith(SSE_DATA_PREFIX):
            continue
        payload = line[len(SSE_DATA_PREFIX) :].strip()
        if not payload or payload == SSE_DONE_PAYLOAD:
            continue
        try:
            event = json.loads(payload)
        except ValueError:
            logger.debug("[extract] skipping malformed event payload: %s", payload[:80])
            continue
        if isinstance(event, dict):
            yield event


def _attempt(name: str, dialect: Dialect, payload: Any) -> Optional[str]:
    try:
        return dialect(payload)
    except ExtractionFailure as exc:
        logger.debug("[extract] dialect %s did not match: %s", name, exc)
        return None


def _dicts(value: Any) -> List[Dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


# --- single JSON document dialects ---


def _chat_completion_text(payload: Dict[str, Any]) -> Optional[str]:
    parts = []
    for choice in _dicts(payload.get("choices")):
        message = choice.get("message")
        if isinstance(message, dict) and isinstance(message.get("content"), str):
            parts.append(message["content"])
        elif isinstance(choice.get("text"), str):
            parts.append(choice["text"])
    return "".join(parts) if parts else None


def _output_text(payload: Dict[str, Any]) -> Optional[str]:
    value = payload.get("output_text")
    if isinstance(value, list) and value:
        return "".join(item for item in value if isinstance(item, str))
    if isinstance(value, str):
        return value
    return None


def _top_level_content(payload: Dict[str, Any]) -> Optional[str]:
    value = payload.get("content")
    return value if isinstance(value, str) else None


def _responses_output_items(payload: Dict[str, Any]) -> Optional[str]:
    output = payload.get("output")
    if output is None:
        return None
    if not isinstance(output, list):
        raise ExtractionFailure(f"output is {type(output).__name__}, expected list")
    texts = []
    for item in _dicts(output):
        if item.get("type") in ("output_text", "message") and isinstance(
            item.get("text"), str
        ):
            texts.append(item["text"])
        elif isinstance(item.get("content"), list):
            texts.extend(
                part["text"]
                for part in _dicts(item["content"])
                if isinstance(part.get("text"), str)
            )
    return "".join(texts) if texts else None


_JSON_CONTENT_DIALECTS: Tuple[Tuple[str, Dialect], ...] = (
    ("chat_completion", _chat_completion_text),
    ("output_text", _output_text),
    ("content", _top_level_content),
    ("responses_output", _responses_output_items),
)


# --- event stream dialects ---


def _chat_completion_delta(event: Dict[str, Any]) -> Optional[str]:
    if not isinstance(event.get("choices"), list):
        return None
    parts = []
    for choice in _dicts(event["choices"]):
        delta = choice.get("delta")
        if isinstance(delta, dict) and isinstance(delta.get("content"), str):
            parts.append(delta["content"])
        elif isinstance(choice.get("text"), str):
            parts.append(choice["text"])
    return "".join(parts)


def _delta_text(event: Dict[str, Any]) -> Optional[str]:
    delta = event.get("delta")
    if isinstance(delta, dict) and isinstance(delta.get("text"), str):
        return delta["text"]
    return None


def _walk_text(value: Any, out: List[str]) -> None:
    if isinstance(value, dict):
        for key, item in value.items():
            if isinstance(item, str) and key in ("text", "content"):
                out.append(item)
            elif isinstance(item, (dict, list)):
                _walk_text(item, out)
    elif isinstance(value, list):
        for item in value:
            _walk_text(item, out)


def _delta_deep_walk(event: Dict[str, Any]) -> Optional[str]:
    delta = event.get("delta")
    if not isinstance(delta, (dict, list)):
        return None
    found: List[str] = []
    _walk_text(delta, found)
    return "".join(found)


# Chat-completion events always win for an event that carries ``choices``,
# even when they contribute no text.
_SSE_CONTENT_DIALECTS: Tuple[Tuple[str, Dialect], ...] = (
    ("chat_completion_delta", _chat_completion_delta),
    ("delta_text", _delta_text),
    ("delta_walk", _delta_deep_walk),
)


def _content_from_sse(body_text: str) -> str:
    fragments = []
    for event in iter_sse_events(body_text):
        for name, dialect in _SSE_CONTENT_DIALECTS:
            text = _attempt(name, dialect, event)
            if text is not None:
                fragments.append(text)
                break
    return "".join(fragments)


def _content_from_json(body_text: str) -> str:
    try:
        payload = json.loads(body_text)
    except ValueError:
        return ""
    if not isinstance(payload, dict):
        return ""
    for name, dialect in _JSON_CONTENT_DIALECTS:
        text = _attempt(name, dialect, payload)
        if text is not None:
            return text
    return ""


def extract_content(body_text: str, content_type: Optional[str] = None) -> str:
    """Return a human-readable summary of a response body, or ``""``."""
    try:
        if is_event_stream(body_text, content_type):
            return _content_from_sse(body_text)
        return _content_from_json(body_text)
    except Exception as exc:
        logger.debug("[extract] content extraction failed: %s", exc)
        return ""


# --- tool calls ---


class ToolCallAccumulator:
    """Reassembles fragmented streamed tool calls keyed by call index."""

    def __init__(self):
        self._by_index: Dict[int, Dict[str, str]] = {}

    def add(self, fragment: Dict[str, Any]) -> None:
        index = fragment.get("index")
        if not isinstance(index, int) or isinstance(index, bool):
            index = 0
        entry = self._by_index.setdefault(index, {"name": "", "arguments": ""})
        function = fragment.get("function")
        if not isinstance(function, dict):
            function = {}
        name = function.get("name")
        if isinstance(name, str) and name and not entry["name"]:
            entry["name"] = name
        arguments = function.get("arguments")
        if isinstance(arguments, str) and arguments:
            entry["arguments"] += arguments

    def calls(self) -> List[ToolCall]:
        result = []
        for index in sorted(self._by_index):
            entry = self._by_index[index]
            if entry["name"] or entry["arguments"]:
                result.append(
                    ToolCall(
                        name=entry["name"] or None,
                        arguments=entry["arguments"] or None,
                    )
                )
        return result


def _tool_calls_from_sse(body_text: str) -> List[ToolCall]:
    accumulator = ToolCallAccumulator()
    for event in iter_sse_events(body_text):
        for choice in _dicts(event.get("choices")):
            delta = choice.get("delta")
            if not isinstance(delta, dict):
                continue
            for fragment in _dicts(delta.get("tool_calls")):
                accumulator.add(fragment)
    return accumulator.calls()


def _tool_call_from_entry(entry: Dict[str, Any]) -> Optional[ToolCall]:
    function = entry.get("function")
    if not isinstance(function, dict):
        function = entry
    name = function.get("name")
    arguments = function.get("arguments")
    name = name if isinstance(name, str) and name else None
    arguments = arguments if isinstance(arguments, str) and arguments else None
    if name is None and arguments is None:
        return None
    return ToolCall(name=name, arguments=arguments)


def _tool_calls_from_json(body_text: str) -> List[ToolCall]:
    try:
        payload = json.loads(body_text)
    except ValueError:
        return []
    if not isinstance(payload, dict):
        return []

    entries: List[Dict[str, Any]] = []
    for choice in _dicts(payload.get("choices")):
        message = choice.get("message")
        if isinstance(message, dict):
            entries.extend(_dicts(message.get("tool_calls")))
    entries.extend(_dicts(payload.get("tool_calls")))

    calls = []
    for entry in entries:
        call = _tool_call_from_entry(entry)
        if call is not None:
            calls.append(call)
    return calls


def extract_tool_calls(
    body_text: str, content_type: Optional[str] = None
) -> List[ToolCall]:
    """Return the tool/function calls found in a response body."""
    try:
        if is_event_stream(body_text, content_type):
            return _tool_calls_from_sse(body_text)
        return _tool_calls_from_json(body_text)
    except Exception as exc:
        logger.debug("[extract] tool-call extraction failed: %s", exc)
        return []
