"""Readiness-based IO event loop with timers.

Callbacks bound to file-descriptor events, and timer callbacks, are handed
to a coroutine scheduler as new coroutines when they fire. Each binding is
one-shot: once an event fires, its callback is unbound.
"""

from __future__ import annotations

import enum
import selectors
import socket
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional

from fiberrt.coroutine import CoroutineCallback
from fiberrt.scheduler import CoroutineScheduler
from fiberrt.timer import TimerManager

_WAKEUP = object()


class IOEvent(enum.Flag):
    NONE = 0
    READ = 1
    WRITE = 4


_SINGLE_EVENTS = (IOEvent.READ, IOEvent.WRITE)


def _to_selector_mask(events: IOEvent) -> int:
    mask = 0
    if IOEvent.READ in events:
        mask |= selectors.EVENT_READ
    if IOEvent.WRITE in events:
        mask |= selectors.EVENT_WRITE
    return mask


@dataclass
class _EventSlot:
    active: bool = False
    callback: Optional[CoroutineCallback] = None


class _FdContext:
    def __init__(self, fd: int) -> None:
        self.fd = fd
        self.lock = threading.Lock()
        self.events = IOEvent.NONE
        self.slots: Dict[IOEvent, _EventSlot] = {
            IOEvent.READ: _EventSlot(),
            IOEvent.WRITE: _EventSlot(),
        }


class IOManager:
    """Watches file descriptors and timers on a background thread."""

    def __init__(self, scheduler: CoroutineScheduler, max_events: int = 256) -> None:
        self._scheduler = scheduler
        self._max_events = max_events if max_events > 0 else 1
        self._timers = TimerManager()
        self._selector = selectors.DefaultSelector()
        self._selector_lock = threading.Lock()
        self._contexts: Dict[int, _FdContext] = {}
        self._contexts_lock = threading.Lock()
        self._lifecycle_lock = threading.Lock()
        self._running = False
        self._closed = False
        self._worker: Optional[threading.Thread] = None

        self._wake_r, self._wake_w = socket.socketpair()
        self._wake_r.setblocking(False)
        self._wake_w.setblocking(False)
        try:
            self._selector.register(self._wake_r, selectors.EVENT_READ, _WAKEUP)
        except (OSError, ValueError):
            self._wake_r.close()
            self._wake_w.close()
            self._selector.close()
            raise

    # -- lifecycle --------------------------------------------------------

    def start(self) -> None:
        """Start the event loop thread. Idempotent."""
        with self._lifecycle_lock:
            if self._running or self._closed:
                return
            self._running = True
            self._worker = threading.Thread(
                target=self._event_loop, name="io-manager", daemon=True
            )
            self._worker.start()

    def stop(self) -> None:
        """Stop the event loop and drop every pending timer."""
        with self._lifecycle_lock:
            if not self._running:
                self._timers.clear()
                return
            self._running = False
            worker, self._worker = self._worker, None

        self._wakeup()
        if worker is not None and worker is not threading.current_thread():
            worker.join()
        self._timers.clear()

    def close(self) -> None:
        """Stop the loop and release the selector and wake-up sockets."""
        self.stop()
        with self._lifecycle_lock:
            if self._closed:
                return
            self._closed = True
        with self._selector_lock:
            self._selector.close()
        self._wake_r.close()
        self._wake_w.close()

    def __enter__(self) -> "IOManager":
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # -- events -----------------------------------------------------------

    def add_event(self, fd: int, event: IOEvent, callback: CoroutineCallback) -> bool:
        """Bind a one-shot callback to READ or WRITE readiness of ``fd``."""
        if self._closed or fd < 0 or event not in _SINGLE_EVENTS or callback is None:
            return False
        ctx = self._fd_context(fd)
        with ctx.lock:
            slot = ctx.slots[event]
            if slot.active:
                return False
            old_events = ctx.events
            slot.active = True
            slot.callback = callback
            ctx.events = old_events | event
            if not self._apply_interest(ctx, old_events, ctx.events):
                slot.active = False
                slot.callback = None
                ctx.events = old_events
                return False
        self._wakeup()
        return True

    def del_event(self, fd: int, event: IOEvent) -> bool:
        """Unbind the callback for ``event`` on ``fd`` without running it."""
        if self._closed or fd < 0 or event not in _SINGLE_EVENTS:
            return False
        ctx = self._fd_context(fd)
        with ctx.lock:
            slot = ctx.slots[event]
            if not slot.active:
                return False
            old_events = ctx.events
            old_callback = slot.callback
            slot.active = False
            slot.callback = None
            ctx.events = old_events & ~event
            if not self._apply_interest(ctx, old_events, ctx.events):
                slot.active = True
                slot.callback = old_callback
                ctx.events = old_events
                return False
        return True

    # -- timers -----------------------------------------------------------

    def add_timer(self, delay_ms: float, callback: CoroutineCallback) -> int:
        """Run ``callback`` as a coroutine after ``delay_ms``; returns the timer id."""
        scheduled = self._timers.add_timer(delay_ms, callback)
        if scheduled.earliest_changed:
            self._wakeup()
        return scheduled.timer_id

    def cancel_timer(self, timer_id: int) -> bool:
        cancelled = self._timers.cancel_timer(timer_id)
        if cancelled:
            self._wakeup()
        return cancelled

    def resume_coroutine(self, coroutine_id: int) -> bool:
        """Wake a WAITING coroutine on the scheduler."""
        return self._scheduler.resume(coroutine_id)

    # -- internals --------------------------------------------------------

    def _fd_context(self, fd: int) -> _FdContext:
        with self._contexts_lock:
            ctx = self._contexts.get(fd)
            if ctx is None:
                ctx = _FdContext(fd)
                self._contexts[fd] = ctx
            return ctx

    def _apply_interest(self, ctx: _FdContext, old: IOEvent, new: IOEvent) -> bool:
        with self._selector_lock:
            try:
                if new == IOEvent.NONE:
                    self._selector.unregister(ctx.fd)
                elif old == IOEvent.NONE:
                    # A descriptor closed while registered may leave a stale entry.
                    if self._selector.get_map().get(ctx.fd) is not None:
                        self._selector.unregister(ctx.fd)
                    self._selector.register(ctx.fd, _to_selector_mask(new), ctx)
                else:
                    self._selector.modify(ctx.fd, _to_selector_mask(new), ctx)
            except (OSError, ValueError, KeyError, RuntimeError):
                return False
        return True

    def _wakeup(self) -> None:
        try:
            self._wake_w.send(b"\x01")
        except OSError:
            # A full or closed wake-up channel is harmless: the loop wakes anyway.
            pass

    def _drain_wakeup(self) -> None:
        while True:
            try:
                if not self._wake_r.recv(4096):
                    return
            except OSError:
                return

    def _dispatch(self, callback: CoroutineCallback) -> None:
        try:
            self._scheduler.schedule(callback)
        except Exception:
            # The scheduler may be stopping; the loop must keep going.
            pass

    def _trigger(self, ctx: _FdContext, triggered: IOEvent) -> None:
        callbacks: List[CoroutineCallback] = []
        with ctx.lock:
            old_events = ctx.events
            fired = triggered & old_events
            for event in _SINGLE_EVENTS:
                if event not in fired:
                    continue
                slot = ctx.slots[event]
                if slot.active and slot.callback is not None:
                    callbacks.append(slot.callback)
                slot.active = False
                slot.callback = None
                ctx.events &= ~event
            if ctx.events != old_events:
                self._apply_interest(ctx, old_events, ctx.events)
        for callback in callbacks:
            self._dispatch(callback)

    def _event_loop(self) -> None:
        while self._running:
            timeout_ms = self._timers.next_timeout_ms()
            timeout = None if timeout_ms < 0 else timeout_ms / 1000
            try:
                ready = self._selector.select(timeout)
            except (OSError, ValueError):
                break
            if not self._running:
                break

            for key, mask in ready[: self._max_events]:
                if key.data is _WAKEUP:
                    self._drain_wakeup()
                    continue
                triggered = IOEvent.NONE
                if mask & selectors.EVENT_READ:
                    triggered |= IOEvent.READ
                if mask & selectors.EVENT_WRITE:
                    triggered |= IOEvent.WRITE
                if triggered != IOEvent.NONE and isinstance(key.data, _FdContext):
                    self._trigger(key.data, triggered)

            for callback in self._timers.collect_expired_callbacks():
                self._dispatch(callback)