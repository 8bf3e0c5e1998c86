"""Cooperative versions of blocking sleep and socket/file IO calls.

When hooking is enabled on the calling thread, the caller runs inside a
coroutine and an IO manager is registered, these calls suspend the coroutine
while they wait instead of blocking its worker. Otherwise they behave like
the plain blocking calls.
"""

from __future__ import annotations

import enum
import errno
import os
import socket
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional, Tuple, TypeVar, Union

from fiberrt.coroutine import Coroutine
from fiberrt.io_manager import IOEvent, IOManager
from fiberrt.request_context import current_request_context

T = TypeVar("T")
FileTarget = Union[int, Any]

_local = threading.local()
_manager_lock = threading.Lock()
_io_manager: Optional[IOManager] = None

_IN_PROGRESS = frozenset({errno.EINPROGRESS, errno.EALREADY, errno.EAGAIN, errno.EWOULDBLOCK})


# -- switches ---------------------------------------------------------------


def set_hook_enabled(enabled: bool) -> None:
    """Turn hooking on or off for the calling thread."""
    _local.enabled = bool(enabled)


def hook_enabled() -> bool:
    """Whether hooking is on for the calling thread (off by default)."""
    return getattr(_local, "enabled", False)


@contextmanager
def hook_scope(enabled: bool) -> Iterator[None]:
    """Set the calling thread's hook switch for the block, then restore it."""
    previous = hook_enabled()
    set_hook_enabled(enabled)
    try:
        yield
    finally:
        set_hook_enabled(previous)


def set_hook_io_manager(io_manager: Optional[IOManager]) -> None:
    """Register the process-wide IO manager used to wait for events."""
    global _io_manager
    with _manager_lock:
        _io_manager = io_manager


def hook_io_manager() -> Optional[IOManager]:
    with _manager_lock:
        return _io_manager


def set_hook_connect_timeout_ms(timeout_ms: int) -> None:
    """Set the calling thread's connect timeout; 0 means no timeout."""
    if timeout_ms < 0:
        raise ValueError("connect timeout cannot be negative")
    _local.connect_timeout_ms = int(timeout_ms)


def hook_connect_timeout_ms() -> int:
    return getattr(_local, "connect_timeout_ms", 0)


# -- internals --------------------------------------------------------------


def _hook_path_enabled() -> bool:
    return hook_enabled() and Coroutine.current() is not None and hook_io_manager() is not None


def _fileno(target: FileTarget) -> int:
    return target if isinstance(target, int) else target.fileno()


@contextmanager
def _non_blocking(target: FileTarget) -> Iterator[None]:
    """Put ``target`` in non-blocking mode for the block, restoring it after."""
    if isinstance(target, socket.socket):
        previous = target.gettimeout()
        if previous == 0.0:
            yield
            return
        target.setblocking(False)
        try:
            yield
        finally:
            try:
                target.settimeout(previous)
            except OSError:
                pass
    else:
        fd = _fileno(target)
        if not os.get_blocking(fd):
            yield
            return
        os.set_blocking(fd, False)
        try:
            yield
        finally:
            try:
                os.set_blocking(fd, True)
            except OSError:
                pass


def _busy() -> OSError:
    return OSError(errno.EBUSY, os.strerror(errno.EBUSY))


def _timed_out() -> TimeoutError:
    return TimeoutError(errno.ETIMEDOUT, os.strerror(errno.ETIMEDOUT))


def _wait_event_once(fd: int, event: IOEvent) -> bool:
    manager = hook_io_manager()
    current = Coroutine.current()
    if manager is None or current is None:
        return False
    coroutine_id = current.id
    if not manager.add_event(fd, event, lambda: manager.resume_coroutine(coroutine_id)):
        return False
    Coroutine.yield_current_waiting()
    return True


class _WaitResult(enum.Enum):
    READY = "ready"
    TIMEOUT = "timeout"
    FAILED = "failed"


class _WaitOutcome:
    """First of the event or the timer to settle wins."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.result: Optional[_WaitResult] = None

    def settle(self, result: _WaitResult) -> bool:
        with self._lock:
            if self.result is not None:
                return False
            self.result = result
            return True


def _wait_event_with_timeout(fd: int, event: IOEvent, timeout_ms: Optional[int]) -> _WaitResult:
    manager = hook_io_manager()
    current = Coroutine.current()
    if manager is None or current is None:
        return _WaitResult.FAILED
    coroutine_id = current.id
    outcome = _WaitOutcome()

    def on_ready() -> None:
        if outcome.settle(_WaitResult.READY):
            manager.resume_coroutine(coroutine_id)

    def on_timeout() -> None:
        if outcome.settle(_WaitResult.TIMEOUT):
            manager.resume_coroutine(coroutine_id)

    if not manager.add_event(fd, event, on_ready):
        return _WaitResult.FAILED

    timer_id = 0
    if timeout_ms is not None:
        timer_id = manager.add_timer(timeout_ms, on_timeout)

    Coroutine.yield_current_waiting()

    if timer_id:
        manager.cancel_timer(timer_id)
    if outcome.result is _WaitResult.READY:
        return _WaitResult.READY
    if outcome.result is _WaitResult.TIMEOUT:
        manager.del_event(fd, event)
        return _WaitResult.TIMEOUT
    return _WaitResult.FAILED


def _resolve_connect_wait_timeout() -> Optional[int]:
    configured = hook_connect_timeout_ms() or None
    context = current_request_context()
    if context is None or context.deadline is None:
        return configured
    remaining = context.deadline - time.monotonic()
    if remaining <= 0:
        return 0
    remaining_ms = int(remaining * 1000)
    return remaining_ms if configured is None else min(configured, remaining_ms)


def _run_io(target: FileTarget, event: IOEvent, operation: Callable[[], T]) -> T:
    if not _hook_path_enabled():
        return operation()
    fd = _fileno(target)
    with _non_blocking(target):
        while True:
            try:
                return operation()
            except InterruptedError:
                continue
            except BlockingIOError:
                pass
            if not _wait_event_once(fd, event):
                raise _busy()


# -- hooked calls -----------------------------------------------------------


def sleep(seconds: float) -> int:
    """Sleep for ``seconds``, yielding the coroutine when hooked. Returns 0."""
    if seconds < 0:
        raise ValueError("sleep length must be non-negative")
    manager = hook_io_manager()
    if not _hook_path_enabled() or manager is None:
        time.sleep(seconds)
        return 0

    done = threading.Event()
    manager.add_timer(seconds * 1000, done.set)
    while not done.is_set():
        Coroutine.yield_current()
    return 0


def read(fd: FileTarget, count: int) -> bytes:
    """Read up to ``count`` bytes from a file descriptor."""
    return _run_io(fd, IOEvent.READ, lambda: os.read(_fileno(fd), count))


def write(fd: FileTarget, data: bytes) -> int:
    """Write ``data`` to a file descriptor; returns the number of bytes written."""
    return _run_io(fd, IOEvent.WRITE, lambda: os.write(_fileno(fd), data))


def recv(sock: socket.socket, bufsize: int, flags: int = 0) -> bytes:
    return _run_io(sock, IOEvent.READ, lambda: sock.recv(bufsize, flags))


def send(sock: socket.socket, data: bytes, flags: int = 0) -> int:
    """Send ``data``; without flags, a refused send falls back to a plain write."""

    def once() -> int:
        try:
            return sock.send(data, flags)
        except PermissionError:
            if flags != 0:
                raise
            return os.write(sock.fileno(), data)

    return _run_io(sock, IOEvent.WRITE, once)


def connect(sock: socket.socket, address: Any) -> None:
    """Connect ``sock``; when hooked, honours the thread's connect timeout and
    the current request deadline, raising TimeoutError when either passes."""
    if not _hook_path_enabled():
        sock.connect(address)
        return

    with _non_blocking(sock):
        while True:
            err = sock.connect_ex(address)
            if err == 0:
                return
            if err == errno.EINTR:
                continue
            if err not in _IN_PROGRESS:
                raise OSError(err, os.strerror(err))

            timeout_ms = _resolve_connect_wait_timeout()
            if timeout_ms is not None and timeout_ms <= 0:
                raise _timed_out()

            result = _wait_event_with_timeout(sock.fileno(), IOEvent.WRITE, timeout_ms)
            if result is _WaitResult.TIMEOUT:
                raise _timed_out()
            if result is _WaitResult.FAILED:
                raise _busy()

            err = sock.getsockopt(socket.SOL_SOCKET, socket.SO_ERROR)
            if err == 0:
                return
            if err in _IN_PROGRESS:
                continue
            raise OSError(err, os.strerror(err))


def accept(sock: socket.socket) -> Tuple[socket.socket, Any]:
    """Accept a connection; returns ``(connection, address)``."""
    return _run_io(sock, IOEvent.READ, sock.accept)