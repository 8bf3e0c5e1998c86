"""Sliding-window retry budget."""

from __future__ import annotations

import math
import threading
import time
from collections import deque
from dataclasses import dataclass, replace
from typing import Callable, Deque, Optional

_NS_PER_MS = 1_000_000


@dataclass(frozen=True)
class RetryBudgetOptions:
    """Window length, retry share of requests, and guaranteed retry floor."""

    window_ms: int = 1000
    retry_ratio: float = 0.1
    min_retry_tokens: int = 1


@dataclass(frozen=True)
class RetryBudgetSnapshot:
    request_count: int = 0
    retry_count: int = 0
    max_retry_tokens: int = 0
    available_retry_tokens: int = 0


def _normalize(options: RetryBudgetOptions) -> RetryBudgetOptions:
    window_ms = options.window_ms if options.window_ms > 0 else 1
    ratio = options.retry_ratio
    if math.isnan(ratio) or ratio < 0.0:
        ratio = 0.0
    min_tokens = max(0, int(options.min_retry_tokens))
    return replace(options, window_ms=window_ms, retry_ratio=ratio, min_retry_tokens=min_tokens)


class RetryBudget:
    """Limits retries to a share of the requests seen within a time window.

    ``clock`` returns monotonic time in integer nanoseconds.
    """

    def __init__(
        self,
        options: Optional[RetryBudgetOptions] = None,
        clock: Callable[[], int] = time.monotonic_ns,
    ) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._options = _normalize(options or RetryBudgetOptions())
        self._requests: Deque[int] = deque()
        self._retries: Deque[int] = deque()

    @property
    def options(self) -> RetryBudgetOptions:
        """The normalized options in effect."""
        with self._lock:
            return self._options

    def update_options(self, options: RetryBudgetOptions) -> None:
        now = self._clock()
        with self._lock:
            self._options = _normalize(options)
            self._evict(now)

    def record_request(self) -> None:
        now = self._clock()
        with self._lock:
            self._evict(now)
            self._requests.append(now)

    def try_acquire_retry_token(self) -> bool:
        """Take one retry token if the window still allows it."""
        now = self._clock()
        with self._lock:
            self._evict(now)
            if len(self._retries) >= self._max_tokens():
                return False
            self._retries.append(now)
            return True

    def request_count(self) -> int:
        now = self._clock()
        with self._lock:
            self._evict(now)
            return len(self._requests)

    def retry_count(self) -> int:
        now = self._clock()
        with self._lock:
            self._evict(now)
            return len(self._retries)

    def snapshot(self) -> RetryBudgetSnapshot:
        now = self._clock()
        with self._lock:
            self._evict(now)
            max_tokens = self._max_tokens()
            retries = len(self._retries)
            return RetryBudgetSnapshot(
                request_count=len(self._requests),
                retry_count=retries,
                max_retry_tokens=max_tokens,
                available_retry_tokens=max(0, max_tokens - retries),
            )

    def _evict(self, now: int) -> None:
        threshold = now - self._options.window_ms * _NS_PER_MS
        for stamps in (self._requests, self._retries):
            while stamps and stamps[0] < threshold:
                stamps.popleft()

    def _max_tokens(self) -> int:
        ratio_tokens = math.floor(len(self._requests) * self._options.retry_ratio)
        return max(self._options.min_retry_tokens, int(ratio_tokens))