"""Credential redaction for operational log lines and error details."""

import re
from typing import Iterable, List, Optional, Tuple

from .constants import LOG_PREVIEW_CHARS

_SENSITIVE_HEADER_KEYS = {
    "authorization",
    "x-api-key",
    "x-goog-api-key",
    "cookie",
    "set-cookie",
    "proxy-authorization",
}

_REDACTABLE_QUERY_PARAM_PATTERN = re.compile(
    r"([?&](?:key|api_key|x-api-key)=)([^&\s]+)",
    flags=re.IGNORECASE,
)


def redact_headers(headers: Iterable[Tuple[str, str]]) -> List[Tuple[str, str]]:
    """Return header pairs with credential values replaced."""
    return [
        (k, "[REDACTED]" if k.lower() in _SENSITIVE_HEADER_KEYS else v)
        for k, v in headers
    ]


def redact_url(url: str) -> str:
    """Redact API key material carried in query parameters."""
    return _REDACTABLE_QUERY_PARAM_PATTERN.sub(r"\1[REDACTED]", url)


def sanitize_error_message(
    error: BaseException | str, sensitive_values: Optional[list[str]] = None
) -> str:
    """Redact API key material from error strings before logging or replying."""
    message = redact_url(str(error))
    for value in sensitive_values or []:
        if value:
            message = message.replace(value, "[REDACTED]")
    return message


def preview(text: str, limit: int = LOG_PREVIEW_CHARS) -> str:
    """Truncate text for console output."""
    if len(text) > limit:
        return text[:limit] + "..."
    return text
