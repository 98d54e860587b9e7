"""Thread-safe fixed-window request counter keyed by agent (and sender).

A single lock guards the whole map so concurrent increments for the same
key are strictly serialized and never observe the same pre-increment count.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

DEFAULT_SWEEP_THRESHOLD = 1024


@dataclass
class RateLimitState:
    """Counter state for one key.

    Attributes:
        count: Requests seen in the current window.
        window_start: Monotonic timestamp at which the window opened.
        window_seconds: Length of the window that was opened.
    """

    count: int
    window_start: float
    window_seconds: float

    def expired(self, now: float) -> bool:
        """Return True once the window has fully elapsed."""
        return now >= self.window_start + self.window_seconds


class RateLimitCounter:
    """Per-key fixed-window counter.

    Usage::

        counter = RateLimitCounter()
        counter.increment("todo", 3600)        # -> 1
        counter.increment("todo", 3600)        # -> 2
        counter.current_count("todo")          # -> 2

    Args:
        clock: Monotonic time source in seconds.  Injected by tests.
        wall_clock: Wall-clock source used only for reporting ``reset_at``.
        sweep_threshold: Number of tracked keys at which expired windows are
            dropped during the next increment.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        sweep_threshold: int = DEFAULT_SWEEP_THRESHOLD,
    ) -> None:
        self._clock = clock
        self._wall_clock = wall_clock
        self._lock = threading.Lock()
        self._states: dict[str, RateLimitState] = {}
        self._sweep_threshold = sweep_threshold
        self._next_sweep = sweep_threshold

    def __len__(self) -> int:
        with self._lock:
            return len(self._states)

    def increment(self, key: str, window_seconds: float) -> int:
        """Atomically count one request for *key* and return the new count.

        Starts a fresh window with a count of 1 when the key is new or its
        previous window has elapsed.

        Args:
            key: Counter key, e.g. ``"todo"`` or ``"todo:evil.com"``.
            window_seconds: Window length used when a new window is opened.

        Returns:
            The count after this request.
        """
        with self._lock:
            now = self._clock()
            if len(self._states) >= self._next_sweep:
                self._sweep(now)
            state = self._states.get(key)
            if state is None or state.expired(now):
                state = RateLimitState(count=0, window_start=now, window_seconds=window_seconds)
                self._states[key] = state
            state.count += 1
            return state.count

    def _sweep(self, now: float) -> None:
        # Caller holds the lock.  Next sweep once the surviving map doubles.
        self._states = {k: s for k, s in self._states.items() if not s.expired(now)}
        self._next_sweep = max(self._sweep_threshold, 2 * len(self._states))

    def current_count(self, key: str) -> int:
        """Return the count for *key* without incrementing (0 if expired or unseen)."""
        with self._lock:
            state = self._states.get(key)
            if state is None or state.expired(self._clock()):
                return 0
            return state.count

    def reset_at(self, key: str) -> datetime | None:
        """Return the wall-clock time at which *key*'s current window closes."""
        with self._lock:
            state = self._states.get(key)
            if state is None:
                return None
            now = self._clock()
            if state.expired(now):
                return None
            remaining = state.window_start + state.window_seconds - now
        return datetime.fromtimestamp(self._wall_clock() + remaining, tz=UTC)

    def reset(self, key: str | None = None) -> None:
        """Forget one key, or every key when *key* is ``None``."""
        with self._lock:
            if key is None:
                self._states.clear()
            else:
                self._states.pop(key, None)
