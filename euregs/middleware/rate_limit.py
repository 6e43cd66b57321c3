"""Fixed-window request rate limiting keyed by client identity.

Windows start on a key's first request and reset once expired, so a client
can burst up to twice the limit across a window boundary. That trade-off
keeps the limiter to one counter per key.
"""

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import schedule

logger = logging.getLogger(__name__)


@dataclass
class RateLimitWindow:
    count: int
    reset_at: float


@dataclass(frozen=True)
class RateLimitInfo:
    allowed: bool
    remaining: int
    reset_at: float
    limit: int

    def retry_after(self, now: Optional[float] = None) -> int:
        """Whole seconds until the window resets, at least 1."""
        now = time.time() if now is None else now
        return max(1, math.ceil(self.reset_at - now))


class RateLimiter:
    """Per-key fixed-window counter; safe to call from several threads."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        clock: Callable[[], float] = time.time,
    ):
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: Dict[str, RateLimitWindow] = {}
        self._lock = threading.Lock()

    def check(self, key: str) -> RateLimitInfo:
        """Count a request for ``key`` and report whether it is allowed."""
        with self._lock:
            now = self._clock()
            window = self._windows.get(key)
            if window is None or now > window.reset_at:
                window = RateLimitWindow(count=0, reset_at=now + self.window_seconds)
                self._windows[key] = window

            if self.max_requests <= 0 or window.count >= self.max_requests:
                return RateLimitInfo(False, 0, window.reset_at, self.max_requests)

            window.count += 1
            return RateLimitInfo(
                True, self.max_requests - window.count, window.reset_at, self.max_requests
            )

    def cleanup(self) -> int:
        """Drop expired windows; returns how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [key for key, w in self._windows.items() if now > w.reset_at]
            for key in expired:
                del self._windows[key]
        if expired:
            logger.debug(f"Rate limiter purged {len(expired)} expired window(s)")
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)


class RateLimitCleanup:
    """Run ``RateLimiter.cleanup`` periodically on a background thread."""

    def __init__(self, limiter: RateLimiter, interval_seconds: int = 300, poll_seconds: float = 1.0):
        self.limiter = limiter
        self.interval_seconds = interval_seconds
        self.poll_seconds = poll_seconds
        self.scheduler = schedule.Scheduler()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_cleanup(self) -> None:
        try:
            removed = self.limiter.cleanup()
            if removed:
                logger.info(f"Rate limit cleanup removed {removed} expired window(s)")
        except Exception as e:
            logger.error(f"Rate limit cleanup failed: {e}")

    def _run(self) -> None:
        while not self._stop.is_set():
            self.scheduler.run_pending()
            self._stop.wait(self.poll_seconds)

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self.scheduler.every(self.interval_seconds).seconds.do(self.run_cleanup)
        self._thread = threading.Thread(target=self._run, name="rate-limit-cleanup", daemon=True)
        self._thread.start()
        logger.info(f"Rate limit cleanup scheduled every {self.interval_seconds} seconds")

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
        self.scheduler.clear()
