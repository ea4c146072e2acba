"""Error taxonomy for the relay and logging paths."""


class ProxyError(Exception):
    """Base class for llmlogproxy errors."""


class UpstreamUnreachable(ProxyError):
    """Network, DNS, TLS or timeout failure while reaching the upstream."""


class UpstreamProtocolError(ProxyError):
    """Upstream answered with malformed framing or the body read failed."""


class LogWriteFailure(ProxyError):
    """Reading or writing the log store failed."""


class ExtractionFailure(ProxyError):
    """A response dialect parser could not interpret a payload."""
