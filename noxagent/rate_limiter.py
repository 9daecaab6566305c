"""
Nox Agent Rate Limiter — fixed-window admission per client identity.

Each identity gets a counter that resets hard once the window has elapsed.
Rejected requests still count against the window, so a client hammering the
service keeps getting rejected until the window rolls over.

Stale windows are evicted by a sweeper thread owned by the limiter:

    limiter = RateLimiter(window_s=60, max_per_window=10)
    limiter.start()
    decision = limiter.admit("203.0.113.7")
    if not decision.allowed:
        ... respond 429, Retry-After: decision.retry_after_seconds
    limiter.stop()
"""

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional


DEFAULT_WINDOW_S = 60.0
DEFAULT_MAX_PER_WINDOW = 10


# ── State ───────────────────────────────────────────────────────────────────

@dataclass
class ClientWindow:
    identity: str
    count: int
    window_start: float


@dataclass(frozen=True)
class Decision:
    """Allow (retry_after_seconds is None) or Reject(retry_after_seconds)."""
    allowed: bool
    retry_after_seconds: Optional[int] = None

    @classmethod
    def allow(cls) -> "Decision":
        return cls(allowed=True)

    @classmethod
    def reject(cls, retry_after_seconds: int) -> "Decision":
        return cls(allowed=False, retry_after_seconds=retry_after_seconds)


ALLOW = Decision.allow()


# ── Rate Limiter ────────────────────────────────────────────────────────────

class RateLimiter:
    """Per-identity fixed-window rate limiter. Thread-safe."""

    def __init__(
        self,
        window_s: float = DEFAULT_WINDOW_S,
        max_per_window: int = DEFAULT_MAX_PER_WINDOW,
        clock: Callable[[], float] = time.monotonic,
    ):
        if window_s <= 0:
            raise ValueError("window_s must be positive")
        if max_per_window < 1:
            raise ValueError("max_per_window must be at least 1")
        self.window_s = window_s
        self.max_per_window = max_per_window
        self.clock = clock
        self.windows: dict[str, ClientWindow] = {}
        self.lock = threading.Lock()
        self._stop = threading.Event()
        self._sweeper: Optional[threading.Thread] = None

    def admit(self, identity: str, now: Optional[float] = None) -> Decision:
        if now is None:
            now = self.clock()
        with self.lock:
            w = self.windows.get(identity)
            if w is None:
                self.windows[identity] = ClientWindow(identity, 1, now)
                return ALLOW
            if now - w.window_start > self.window_s:
                w.count = 1
                w.window_start = max(w.window_start, now)
                return ALLOW
            w.count += 1
            if w.count > self.max_per_window:
                remaining = w.window_start + self.window_s - now
                return Decision.reject(max(0, math.ceil(remaining)))
            return ALLOW

    def sweep(self, now: Optional[float] = None) -> int:
        """Drop windows idle for more than two window lengths. Returns count removed."""
        if now is None:
            now = self.clock()
        horizon = 2 * self.window_s
        with self.lock:
            stale = [k for k, w in self.windows.items() if now - w.window_start > horizon]
            for k in stale:
                del self.windows[k]
        return len(stale)

    def get(self, identity: str) -> Optional[ClientWindow]:
        with self.lock:
            w = self.windows.get(identity)
            return ClientWindow(w.identity, w.count, w.window_start) if w else None

    def __len__(self) -> int:
        with self.lock:
            return len(self.windows)

    # ── Sweeper lifecycle ───────────────────────────────────────────────────

    def start(self, interval_s: Optional[float] = None):
        """Start the background sweeper (every window length by default)."""
        if self._sweeper and self._sweeper.is_alive():
            return
        interval = interval_s if interval_s is not None else self.window_s
        self._stop.clear()
        self._sweeper = threading.Thread(
            target=self._sweep_loop, args=(interval,),
            name="rate-limit-sweeper", daemon=True,
        )
        self._sweeper.start()

    def stop(self, timeout: float = 5.0):
        self._stop.set()
        if self._sweeper:
            self._sweeper.join(timeout)
            self._sweeper = None

    @property
    def running(self) -> bool:
        return self._sweeper is not None and self._sweeper.is_alive()

    def _sweep_loop(self, interval: float):
        while not self._stop.wait(interval):
            self.sweep()
