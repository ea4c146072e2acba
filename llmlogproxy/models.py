"""Pydantic models for log records and side-endpoint payloads"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class ToolCall(BaseModel):
    """Tool/function invocation recovered from a response body"""

    name: Optional[str] = None
    arguments: Optional[str] = None


class RequestRecord(BaseModel):
    """Pre-call record written before the upstream request is issued"""

    timestamp: str = Field(default_factory=utc_timestamp)
    correlation_id: str
    kind: Literal["request"] = "request"
    route: str
    target: str
    body: Any = None

    def as_entry(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class ResponseRecord(BaseModel):
    """Post-call record written once the upstream response has been relayed.

    ``body`` is only serialized when it was explicitly provided, so a record
    built with raw-body logging disabled carries no ``body`` key at all.
    ``tool_calls`` is omitted when empty.
    """

    timestamp: str = Field(default_factory=utc_timestamp)
    correlation_id: str
    kind: Literal["response"] = "response"
    route: str
    status: int
    tool_calls: List[ToolCall] = Field(default_factory=list)
    body: Any = None
    content: str = ""

    def as_entry(self) -> Dict[str, Any]:
        entry = self.model_dump(mode="json", exclude={"tool_calls", "body"})
        if self.tool_calls:
            entry["tool_calls"] = [
                call.model_dump(exclude_none=True) for call in self.tool_calls
            ]
        if "body" in self.model_fields_set:
            entry["body"] = self.body
        return entry


LogRecord = Union[RequestRecord, ResponseRecord]


class LogsResponse(BaseModel):
    """Payload of GET /logs/data"""

    model_config = ConfigDict(extra="allow")

    entries: List[Dict[str, Any]]


class ClearLogsResponse(BaseModel):
    ok: bool = True


class ErrorResponse(BaseModel):
    """Client-visible error body"""

    error: str
    detail: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response"""

    status: str
    upstream_base_url: str
    route_prefix: str
