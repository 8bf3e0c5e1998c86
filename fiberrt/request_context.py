"""Per-request deadline, cancellation and key/value context."""

from __future__ import annotations

import threading
import time
import weakref
from contextlib import contextmanager
from typing import TYPE_CHECKING, Dict, Iterator, Optional

if TYPE_CHECKING:
    from fiberrt.io_manager import IOManager

_DEADLINE_EXCEEDED = "deadline_exceeded"

_local = threading.local()


class RequestContext:
    """Carries a request id, an optional deadline and a cancellation flag.

    ``deadline`` is a ``time.monotonic()`` value in seconds, or ``None`` for
    no deadline.
    """

    def __init__(self, request_id: str, deadline: Optional[float] = None) -> None:
        if not request_id:
            raise ValueError("request_id cannot be empty")
        self._request_id = request_id
        self._deadline = deadline
        self._lock = threading.Lock()
        self._cancelled = False
        self._cancel_reason = ""
        self._values: Dict[str, str] = {}
        self._deadline_timer_id: Optional[int] = None

    @classmethod
    def create(cls, request_id: str, deadline: Optional[float] = None) -> "RequestContext":
        return cls(request_id, deadline)

    @classmethod
    def create_with_timeout(cls, request_id: str, timeout_ms: float) -> "RequestContext":
        """Create a context whose deadline is ``timeout_ms`` from now (negative means now)."""
        timeout_ms = max(timeout_ms, 0)
        return cls(request_id, time.monotonic() + timeout_ms / 1000)

    @property
    def request_id(self) -> str:
        return self._request_id

    @property
    def deadline(self) -> Optional[float]:
        return self._deadline

    @property
    def cancelled(self) -> bool:
        with self._lock:
            return self._cancelled

    @property
    def cancel_reason(self) -> str:
        with self._lock:
            return self._cancel_reason

    def cancel(self, reason: str = "") -> bool:
        """Cancel once; returns False if already cancelled."""
        with self._lock:
            if self._cancelled:
                return False
            self._cancelled = True
            self._cancel_reason = reason or "cancelled"
            return True

    def check_deadline_and_cancel(self) -> bool:
        """True if cancelled, cancelling first when the deadline has passed."""
        if self.cancelled:
            return True
        if self._deadline is None:
            return False
        if time.monotonic() >= self._deadline:
            self.cancel(_DEADLINE_EXCEEDED)
            return True
        return False

    def set_value(self, key: str, value: str) -> None:
        with self._lock:
            self._values[key] = value

    def value(self, key: str) -> Optional[str]:
        with self._lock:
            return self._values.get(key)

    def bind_deadline_timer(self, io_manager: "IOManager") -> bool:
        """Arrange for cancellation at the deadline; False if there is none."""
        if self._deadline is None:
            return False
        with self._lock:
            if self._deadline_timer_id is not None:
                return True

        remaining = self._deadline - time.monotonic()
        if remaining <= 0:
            self.cancel(_DEADLINE_EXCEEDED)
            return True

        weak_self = weakref.ref(self)

        def on_deadline() -> None:
            context = weak_self()
            if context is not None:
                context.cancel(_DEADLINE_EXCEEDED)

        timer_id = io_manager.add_timer(int(remaining * 1000), on_deadline)
        with self._lock:
            if self._deadline_timer_id is None:
                self._deadline_timer_id = timer_id
                return True
        io_manager.cancel_timer(timer_id)
        return True

    def clear_deadline_timer(self, io_manager: "IOManager") -> None:
        with self._lock:
            timer_id, self._deadline_timer_id = self._deadline_timer_id, None
        if timer_id is not None:
            io_manager.cancel_timer(timer_id)

    def __repr__(self) -> str:
        return f"RequestContext(request_id={self._request_id!r}, cancelled={self.cancelled})"


def set_current_request_context(context: Optional[RequestContext]) -> None:
    """Bind ``context`` to the calling thread (and so the running coroutine)."""
    _local.context = context


def current_request_context() -> Optional[RequestContext]:
    return getattr(_local, "context", None)


@contextmanager
def scoped_request_context(context: Optional[RequestContext]) -> Iterator[Optional[RequestContext]]:
    """Make ``context`` current for the block, restoring the previous one after."""
    previous = current_request_context()
    set_current_request_context(context)
    try:
        yield context
    finally:
        set_current_request_context(previous)