"""Min-heap timer management with lazy cancellation."""

from __future__ import annotations

import heapq
import itertools
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

TimerCallback = Callable[[], None]

_NS_PER_MS = 1_000_000
_INT_MAX = 2**31 - 1


@dataclass(frozen=True)
class ScheduledTimer:
    """Result of registering a timer."""

    timer_id: int
    earliest_changed: bool


@dataclass
class _TimerNode:
    expires_at: int
    callback: Optional[TimerCallback]
    cancelled: bool = False


class TimerManager:
    """Keeps timers ordered by expiry; equal expiries fire in registration order.

    ``clock`` returns monotonic time in integer nanoseconds.
    """

    def __init__(self, clock: Callable[[], int] = time.monotonic_ns) -> None:
        self._clock = clock
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._timers: Dict[int, _TimerNode] = {}
        self._heap: List[Tuple[int, int]] = []

    def add_timer(self, delay_ms: float, callback: TimerCallback) -> ScheduledTimer:
        """Register ``callback`` to fire after ``delay_ms`` milliseconds."""
        if callback is None:
            raise ValueError("timer callback cannot be empty")
        delay_ms = max(delay_ms, 0)
        expires_at = self._clock() + int(delay_ms * _NS_PER_MS)

        with self._lock:
            timer_id = next(self._ids)
            self._prune_top()
            old_top = self._heap[0][1] if self._heap else 0
            self._timers[timer_id] = _TimerNode(expires_at, callback)
            heapq.heappush(self._heap, (expires_at, timer_id))
            changed = old_top == 0 or self._heap[0][1] != old_top
        return ScheduledTimer(timer_id, changed)

    def cancel_timer(self, timer_id: int) -> bool:
        """Mark a timer cancelled; returns False if it is unknown."""
        if timer_id == 0:
            return False
        with self._lock:
            node = self._timers.get(timer_id)
            if node is None:
                return False
            node.cancelled = True
            node.callback = None
            return True

    def collect_expired_callbacks(self) -> List[TimerCallback]:
        """Remove and return the callbacks of all expired timers, earliest first."""
        callbacks: List[TimerCallback] = []
        now = self._clock()
        with self._lock:
            self._prune_top()
            while self._heap:
                _, timer_id = self._heap[0]
                node = self._timers.get(timer_id)
                if node is None:
                    heapq.heappop(self._heap)
                    continue
                if node.cancelled:
                    heapq.heappop(self._heap)
                    del self._timers[timer_id]
                    continue
                if node.expires_at > now:
                    break
                heapq.heappop(self._heap)
                if node.callback is not None:
                    callbacks.append(node.callback)
                del self._timers[timer_id]
        return callbacks

    def next_timeout_ms(self) -> int:
        """Milliseconds until the next timer: -1 if none, 0 if already due."""
        with self._lock:
            self._prune_top()
            if not self._heap:
                return -1
            node = self._timers.get(self._heap[0][1])
            if node is None:
                return -1
            now = self._clock()
            if node.expires_at <= now:
                return 0
            diff_ms = (node.expires_at - now) // _NS_PER_MS
            if diff_ms > _INT_MAX:
                return _INT_MAX
            # Never report 0 for a timer that is not yet due, to avoid busy polling.
            return diff_ms if diff_ms > 0 else 1

    def clear(self) -> None:
        """Drop every timer."""
        with self._lock:
            self._timers.clear()
            self._heap.clear()

    def _prune_top(self) -> None:
        while self._heap:
            _, timer_id = self._heap[0]
            node = self._timers.get(timer_id)
            if node is None:
                heapq.heappop(self._heap)
                continue
            if node.cancelled:
                heapq.heappop(self._heap)
                del self._timers[timer_id]
                continue
            break