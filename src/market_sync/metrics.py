"""Lightweight in-memory counters for feed visibility."""

from __future__ import annotations

from collections import deque
from datetime import datetime, timezone
from threading import Lock
from typing import Deque, Dict, Optional


class FeedMetrics:
    """Thread-safe, low-overhead counters for market-data feeds."""

    def __init__(self, max_errors: int = 50) -> None:
        self._lock = Lock()
        self._recent_errors: Deque[Dict[str, str]] = deque(maxlen=max_errors)
        self.messages_received = 0
        self.malformed_messages = 0
        self.flushes_applied = 0
        self.flushes_unchanged = 0
        self.reconnects_scheduled = 0
        self.streams_exhausted = 0
        self.snapshot_failures = 0
        self.rate_limit_retries = 0
        self.last_error: Optional[str] = None

    def record_message(self) -> None:
        with self._lock:
            self.messages_received += 1

    def record_malformed_message(self, message: str) -> None:
        with self._lock:
            self.malformed_messages += 1
            self._push_error(message)

    def record_flush(self, changed: bool = True) -> None:
        """Count a buffer drain; unchanged drains skipped publication."""

        with self._lock:
            if changed:
                self.flushes_applied += 1
            else:
                self.flushes_unchanged += 1

    def record_reconnect(self) -> None:
        with self._lock:
            self.reconnects_scheduled += 1

    def record_stream_exhausted(self, message: str) -> None:
        with self._lock:
            self.streams_exhausted += 1
            self._push_error(message)

    def record_snapshot_failure(self, message: str) -> None:
        with self._lock:
            self.snapshot_failures += 1
            self._push_error(message)

    def record_rate_limit_retry(self) -> None:
        with self._lock:
            self.rate_limit_retries += 1

    def snapshot(self) -> Dict[str, object]:
        """Return a read-only snapshot of current counters."""

        with self._lock:
            return {
                "messages_received": self.messages_received,
                "malformed_messages": self.malformed_messages,
                "flushes_applied": self.flushes_applied,
                "flushes_unchanged": self.flushes_unchanged,
                "reconnects_scheduled": self.reconnects_scheduled,
                "streams_exhausted": self.streams_exhausted,
                "snapshot_failures": self.snapshot_failures,
                "rate_limit_retries": self.rate_limit_retries,
                "last_error": self.last_error,
                "recent_errors": list(self._recent_errors),
            }

    def _push_error(self, message: str) -> None:
        self.last_error = message
        self._recent_errors.appendleft(
            {"at": datetime.now(timezone.utc).isoformat(), "message": message}
        )


__all__ = ["FeedMetrics"]
