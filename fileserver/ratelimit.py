"""Sliding-window request limiter keyed by (subject, action)."""

import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, NamedTuple, Optional

from .logs import get_logger, sanitize_log_value
from .metastore import MetadataStore, find_index
from .models import RATE_WINDOWS, RateWindow

logger = get_logger("ratelimit")

Clock = Callable[[], float]


class RateDecision(NamedTuple):
    allowed: bool
    retry_after: Optional[float] = None


def window_key(subject: str, action: str) -> str:
    return f"{action}:{subject}"


class MemoryWindowBackend:
    """Process-local windows guarded by a single lock."""

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self.clock = clock or time.monotonic
        self._windows: Dict[str, List[float]] = {}
        self._lock = threading.Lock()

    @contextmanager
    def window(self, key: str) -> Iterator[List[float]]:
        with self._lock:
            events = self._windows.setdefault(key, [])
            try:
                yield events
            finally:
                if not events:
                    self._windows.pop(key, None)

    def clear(self, key: str) -> None:
        with self._lock:
            self._windows.pop(key, None)

    def prune(self, max_window: float, now: Optional[float] = None) -> int:
        """Drop events older than *max_window*; returns the number of keys removed."""

        with self._lock:
            now = self.clock() if now is None else now
            dropped = 0
            for key in list(self._windows):
                events = [stamp for stamp in self._windows[key] if now - stamp < max_window]
                if events:
                    self._windows[key] = events
                else:
                    del self._windows[key]
                    dropped += 1
        return dropped


class StoreWindowBackend:
    """Windows persisted in the ``rate_windows`` collection.

    Uses wall-clock time so windows stay meaningful across processes.
    """

    def __init__(self, store: MetadataStore, clock: Optional[Clock] = None) -> None:
        self.store = store
        self.clock = clock or time.time

    @contextmanager
    def window(self, key: str) -> Iterator[List[float]]:
        with self.store.transaction(RATE_WINDOWS) as records:
            index = find_index(records, "key", key)
            current = RateWindow.from_dict(records[index]) if index is not None else RateWindow(key=key)
            events = [float(stamp) for stamp in current.events]
            yield events
            if events:
                updated = RateWindow(key=key, events=events).to_dict()
                if index is None:
                    records.append(updated)
                else:
                    records[index] = updated
            elif index is not None:
                del records[index]

    def clear(self, key: str) -> None:
        with self.store.transaction(RATE_WINDOWS) as records:
            index = find_index(records, "key", key)
            if index is not None:
                del records[index]

    def prune(self, max_window: float, now: Optional[float] = None) -> int:
        if not self.store.path_for(RATE_WINDOWS).exists():
            return 0
        dropped = 0
        with self.store.transaction(RATE_WINDOWS) as records:
            now = self.clock() if now is None else now
            kept = []
            for entry in records:
                events = [stamp for stamp in entry.get("events", []) if now - stamp < max_window]
                if events:
                    kept.append({**entry, "events": events})
                else:
                    dropped += 1
            records[:] = kept
        return dropped


class RateLimiter:
    def __init__(self, backend=None) -> None:
        self.backend = backend or MemoryWindowBackend()

    def allow(
        self,
        subject: str,
        action: str,
        max_requests: int,
        window_seconds: float,
    ) -> RateDecision:
        """Record one request for *subject* and *action* if the window allows it.

        Entries older than ``window_seconds`` are pruned first. When the
        remaining count is below ``max_requests`` the request is recorded and
        allowed; otherwise it is refused and ``retry_after`` says how long
        until the oldest retained entry leaves the window.
        """

        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

        key = window_key(subject, action)
        with self.backend.window(key) as events:
            # Read the clock only once the window is held.
            now = self.backend.clock()
            events[:] = [stamp for stamp in events if now - stamp < window_seconds]
            if len(events) < max_requests:
                events.append(now)
                return RateDecision(True)
            retry_after = min(events) + window_seconds - now

        logger.warning(
            "rate_limited subject=%s action=%s limit=%d window=%.0f retry_after=%.2f",
            sanitize_log_value(subject),
            action,
            max_requests,
            window_seconds,
            retry_after,
        )
        return RateDecision(False, retry_after)

    def reset(self, subject: str, action: str) -> None:
        self.backend.clear(window_key(subject, action))
