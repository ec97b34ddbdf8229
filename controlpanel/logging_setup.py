"""
Logging configuration for the Control Panel engine and backend.

Besides the console handler, a ``RingBufferHandler`` keeps the most recent
records in memory so the debug view can show them without tailing a file.
"""

import logging
import sys
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

_LOG_FORMAT = "%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_buffer_handler: Optional["RingBufferHandler"] = None


class RingBufferHandler(logging.Handler):
    """Keep the last ``capacity`` records as ``{level, timestamp, message}`` dicts."""

    def __init__(self, capacity: int = 200, level: int = logging.DEBUG):
        super().__init__(level)
        self._entries: Deque[Dict[str, Any]] = deque(maxlen=capacity)
        self._entries_lock = threading.Lock()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            message = record.getMessage()
            if record.exc_info and record.exc_info[1] is not None:
                message = f"{message} {record.exc_info[1]!r}"
            entry = {
                "level": record.levelname,
                "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                "logger": record.name,
                "message": message,
            }
        except Exception:
            self.handleError(record)
            return
        with self._entries_lock:
            self._entries.append(entry)

    def entries(self) -> List[Dict[str, Any]]:
        """Oldest-to-newest copy of the buffer."""
        with self._entries_lock:
            return list(self._entries)

    def clear(self) -> None:
        with self._entries_lock:
            self._entries.clear()


def setup_logging(
    level: str = "INFO", buffer_size: int = 200, buffer_level: Optional[str] = None
) -> RingBufferHandler:
    """
    Configure root logging with a console handler and the ring buffer.

    Call once at startup. Calling again replaces the previously installed
    handlers instead of stacking duplicates.

    Parameters
    ----------
    level : str
        Console level name (e.g. 'INFO', 'DEBUG')
    buffer_size : int
        Records kept for the debug view
    buffer_level : Optional[str]
        Lowest level kept in the buffer; defaults to ``level``

    Returns
    -------
    RingBufferHandler
        The installed buffer handler
    """
    global _buffer_handler

    console_level = _level_number(level)
    buffer_threshold = _level_number(buffer_level) if buffer_level else console_level

    root = logging.getLogger()
    root.setLevel(min(console_level, buffer_threshold))
    for handler in list(root.handlers):
        if getattr(handler, "_controlpanel", False):
            root.removeHandler(handler)

    fmt = logging.Formatter(fmt=_LOG_FORMAT, datefmt=_DATE_FORMAT)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(console_level)
    console.setFormatter(fmt)
    console._controlpanel = True  # type: ignore[attr-defined]
    root.addHandler(console)

    buffer = RingBufferHandler(capacity=buffer_size, level=buffer_threshold)
    buffer._controlpanel = True  # type: ignore[attr-defined]
    root.addHandler(buffer)

    logging.captureWarnings(True)
    _buffer_handler = buffer
    return buffer


def _level_number(name: str) -> int:
    level = logging.getLevelName(str(name).upper())
    return level if isinstance(level, int) else logging.INFO


def get_log_buffer() -> List[Dict[str, Any]]:
    """Entries of the installed ring buffer (empty before ``setup_logging``)."""
    if _buffer_handler is None:
        return []
    return _buffer_handler.entries()
