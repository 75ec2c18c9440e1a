"""Bounded activity log: a logging handler that keeps the latest entries in memory.

The ``/api/logs`` endpoint and the MCP server read from it.  Nothing in the
pipeline reads it back.
"""
from __future__ import annotations

import logging
import os
import threading
from collections import deque
from dataclasses import asdict, dataclass

DEFAULT_CAPACITY = 1000
DEFAULT_LIMIT = 200

_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(frozen=True)
class ActivityEntry:
    ts: int  # milliseconds since epoch
    level: str  # "info" | "warn" | "error" | "debug"
    logger: str
    text: str

    def as_dict(self) -> dict:
        return asdict(self)


_LEVELS = {"WARNING": "warn", "CRITICAL": "error"}


class ActivityLog(logging.Handler):
    """Ring buffer of the most recent ``capacity`` log records."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY, level: int = logging.INFO):
        super().__init__(level)
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._entries: deque[ActivityEntry] = deque(maxlen=capacity)
        self._entries_lock = threading.Lock()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            entry = ActivityEntry(
                ts=int(record.created * 1000),
                level=_LEVELS.get(record.levelname, record.levelname.lower()),
                logger=record.name,
                text=record.getMessage(),
            )
        except Exception:
            self.handleError(record)
            return
        with self._entries_lock:
            self._entries.append(entry)

    def entries(self, since: int | None = None, limit: int = DEFAULT_LIMIT) -> list[ActivityEntry]:
        """Entries newer than ``since`` (ms), else the last ``limit`` entries."""
        with self._entries_lock:
            snapshot = list(self._entries)
        if since:
            return [e for e in snapshot if e.ts > since]
        limit = max(0, min(limit, self.capacity))
        return snapshot[-limit:] if limit else []

    def clear(self) -> None:
        with self._entries_lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


_activity: ActivityLog | None = None


def get_activity_log() -> ActivityLog:
    """The process-wide activity log, created on first use."""
    global _activity
    if _activity is None:
        _activity = ActivityLog(int(os.environ.get("COUNCIL_LOG_CAPACITY", DEFAULT_CAPACITY)))
    return _activity


def setup_logging(level: int = logging.INFO) -> ActivityLog:
    """Attach the console and activity handlers to the ``council`` logger (idempotent)."""
    logger = logging.getLogger("council")
    logger.setLevel(level)
    activity = get_activity_log()
    if activity not in logger.handlers:
        logger.addHandler(activity)
    if not any(getattr(h, "_council_console", False) for h in logger.handlers):
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter(_FORMAT))
        console._council_console = True  # type: ignore[attr-defined]
        logger.addHandler(console)
    return activity
