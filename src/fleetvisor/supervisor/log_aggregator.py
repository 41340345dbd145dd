"""Log aggregation for supervised units."""

import sys
from collections import deque
from datetime import datetime, timezone
from itertools import islice
from typing import Dict, List, Optional, TextIO

import structlog

logger = structlog.get_logger()


class LogEntry:
    """Represents a captured log line from a unit."""

    def __init__(self, unit_id: str, timestamp: datetime, source: str, message: str):
        self.unit_id = unit_id
        self.timestamp = timestamp
        self.source = source
        self.message = message

    def __str__(self) -> str:
        return f"[{self.timestamp.isoformat()}] [{self.source}] {self.message}"


class LogBuffer:
    """Fixed-capacity ring buffer; the oldest entry is evicted on overflow."""

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError("Log buffer capacity must be at least 1")
        self.capacity = capacity
        self._entries: deque = deque(maxlen=capacity)

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, entry: LogEntry) -> None:
        self._entries.append(entry)

    def tail(self, n: int) -> List[LogEntry]:
        """Last ``min(n, len)`` entries, oldest first."""
        if n <= 0:
            return []
        size = len(self._entries)
        return list(islice(self._entries, max(0, size - n), size))

    def clear(self) -> None:
        self._entries.clear()


class LogAggregator:
    """Owns one ring buffer per unit, with optional echo to the supervisor's output."""

    def __init__(self, capacity: int = 100, echo: bool = False, echo_stream: Optional[TextIO] = None):
        self.capacity = capacity
        self.echo = echo
        self.echo_stream = echo_stream
        self.buffers: Dict[str, LogBuffer] = {}

    def buffer_for(self, unit_id: str) -> LogBuffer:
        """Return the unit's buffer, creating it on first use."""
        buffer = self.buffers.get(unit_id)
        if buffer is None:
            buffer = LogBuffer(self.capacity)
            self.buffers[unit_id] = buffer
        return buffer

    def append(self, unit_id: str, source: str, message: str) -> LogEntry:
        """Retain a line and, when echo is on, write it prefixed with the unit id."""
        entry = LogEntry(
            unit_id=unit_id,
            timestamp=datetime.now(timezone.utc),
            source=source.upper(),
            message=message.rstrip(),
        )
        self.buffer_for(unit_id).append(entry)

        if self.echo:
            stream = self.echo_stream or sys.stdout
            try:
                stream.write(f"[{unit_id}] {entry}\n")
                stream.flush()
            except (OSError, ValueError) as e:
                logger.debug("Log echo failed", unit_id=unit_id, error=str(e))

        return entry

    def set_echo(self, enabled: bool) -> None:
        """Toggle echo; retention is unaffected."""
        self.echo = enabled

    def drop(self, unit_id: str) -> None:
        """Forget a unit's buffer entirely."""
        self.buffers.pop(unit_id, None)

    def clear_logs(self, unit_id: Optional[str] = None) -> None:
        """Clear logs for a unit or all units."""
        if unit_id:
            if unit_id in self.buffers:
                self.buffers[unit_id].clear()
        else:
            for buffer in self.buffers.values():
                buffer.clear()
