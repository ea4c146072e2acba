"""Append-only NDJSON store for request/response records."""

import asyncio
import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from .constants import DEFAULT_LOG_LIMIT, MAX_LOG_LIMIT
from .errors import LogWriteFailure
from .models import LogRecord, utc_timestamp

logger = logging.getLogger(__name__)


def clamp_limit(limit: Any) -> int:
    """Coerce a requested record count into [1, MAX_LOG_LIMIT].

    Missing, non-numeric, zero and negative values fall back to the default.
    """
    try:
        value = int(float(limit))
    except (TypeError, ValueError, OverflowError):
        return DEFAULT_LOG_LIMIT
    if value < 1:
        return DEFAULT_LOG_LIMIT
    return min(value, MAX_LOG_LIMIT)


class LogStore:
    """Owns the log file; safe for concurrent appends from request tasks.

    File I/O runs in a worker thread so the event loop is never blocked, and a
    single lock keeps every record on its own whole line.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _append_sync(self, entry: Dict[str, Any]) -> None:
        try:
            # Serialize outside the lock to minimize contention
            json_line = json.dumps(entry, ensure_ascii=False, default=str) + "\n"
            with self._lock:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(json_line)
        except (OSError, TypeError, ValueError) as exc:
            failure = LogWriteFailure(f"append to {self.path} failed: {exc}")
            logger.warning("[logs] %s", failure)

    async def append(self, record: LogRecord) -> None:
        """Append one record; failures are reported and never raised."""
        await asyncio.to_thread(self._append_sync, record.as_entry())

    def _read_recent_sync(self, limit: int) -> List[Dict[str, Any]]:
        try:
            with self._lock:
                data = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise LogWriteFailure(f"read of {self.path} failed: {exc}") from exc

        lines = [line for line in data.splitlines() if line.strip()]
        entries = []
        for line in lines[-limit:]:
            try:
                entries.append(json.loads(line))
            except ValueError as exc:
                entries.append(
                    {
                        "timestamp": utc_timestamp(),
                        "kind": "parse_error",
                        "raw": line,
                        "error": str(exc),
                    }
                )
        return entries

    async def read_recent(self, limit: Optional[Any] = None) -> List[Dict[str, Any]]:
        """Return the most recent records in append order.

        Raises:
            LogWriteFailure: If the log file exists but cannot be read.
        """
        return await asyncio.to_thread(self._read_recent_sync, clamp_limit(limit))

    def _clear_sync(self) -> None:
        try:
            with self._lock:
                if self.path.exists():
                    self.path.write_text("", encoding="utf-8")
        except OSError as exc:
            raise LogWriteFailure(f"clear of {self.path} failed: {exc}") from exc

    async def clear(self) -> None:
        """Truncate the store; a missing file counts as already empty."""
        await asyncio.to_thread(self._clear_sync)
