"""Process-wide runtime facade.

Owns one coroutine scheduler and one IO manager, and wraps task submission,
IO readiness waits, deadline contexts and the hook switch behind plain
functions.
"""

from __future__ import annotations

import enum
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

from fiberrt.coroutine import Coroutine, CoroutineCallback
from fiberrt.hook import hook_enabled, hook_scope, set_hook_enabled, set_hook_io_manager
from fiberrt.io_manager import IOEvent, IOManager
from fiberrt.request_context import (
    RequestContext,
    current_request_context,
    scoped_request_context,
)
from fiberrt.scheduler import CoroutineScheduler

DeadlineContext = Optional[RequestContext]


@dataclass(frozen=True)
class RuntimeStartOptions:
    """Worker pool size (0 picks the CPU count) and IO events handled per poll."""

    worker_threads: int = 0
    io_max_events: int = 256


@dataclass(frozen=True)
class RuntimeSchedulerSnapshot:
    """Scheduler state and counters; all zero when the runtime is not started."""

    running: bool = False
    worker_count: int = 0
    pending_tasks: int = 0
    alive_coroutines: int = 0
    completed_coroutines: int = 0
    idle_switches: int = 0
    steal_count: int = 0
    enqueue_local: int = 0
    enqueue_global: int = 0
    enqueue_fast: int = 0
    dequeue_local_fast: int = 0
    dequeue_local: int = 0
    dequeue_global: int = 0
    dequeue_steal: int = 0
    scheduler_state_lock_wait_ns_total: int = 0
    scheduler_state_lock_wait_samples: int = 0
    scheduler_state_lock_wait_ns_avg: int = 0


class RuntimeIoEvent(enum.Enum):
    READ = "read"
    WRITE = "write"


class RuntimeIoAwaitResult(enum.Enum):
    READY = "ready"
    TIMEOUT = "timeout"
    FAILED = "failed"


class RuntimeNotStartedError(RuntimeError):
    """Raised when work is submitted before the runtime is started."""


@dataclass
class _RuntimeHost:
    scheduler: CoroutineScheduler
    io_manager: IOManager


_lock = threading.Lock()
_host: Optional[_RuntimeHost] = None


def _to_io_event(event: RuntimeIoEvent) -> IOEvent:
    return IOEvent.WRITE if event is RuntimeIoEvent.WRITE else IOEvent.READ


class _AwaitOutcome:
    """First of the IO event or the timer to settle wins."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.result: Optional[RuntimeIoAwaitResult] = None

    def settle(self, result: RuntimeIoAwaitResult) -> bool:
        with self._lock:
            if self.result is not None:
                return False
            self.result = result
            return True


def start_runtime(options: Optional[RuntimeStartOptions] = None) -> None:
    """Start the scheduler and IO manager. Does nothing if already started."""
    global _host
    options = options or RuntimeStartOptions()
    with _lock:
        if _host is not None:
            return
        scheduler = CoroutineScheduler()
        scheduler.start(options.worker_threads)
        io_manager: Optional[IOManager] = None
        try:
            io_manager = IOManager(scheduler, options.io_max_events)
            io_manager.start()
            set_hook_io_manager(io_manager)
        except BaseException:
            set_hook_io_manager(None)
            if io_manager is not None:
                io_manager.close()
            scheduler.stop()
            raise
        _host = _RuntimeHost(scheduler, io_manager)


def stop_runtime() -> None:
    """Stop the IO manager and drain and stop the scheduler."""
    global _host
    with _lock:
        host, _host = _host, None
    if host is None:
        return
    set_hook_io_manager(None)
    host.io_manager.close()
    host.scheduler.stop()


def runtime_ready() -> bool:
    with _lock:
        return _host is not None


def runtime_scheduler_snapshot() -> RuntimeSchedulerSnapshot:
    with _lock:
        if _host is None:
            return RuntimeSchedulerSnapshot()
        scheduler = _host.scheduler
        profile = scheduler.profile_snapshot()
        return RuntimeSchedulerSnapshot(
            running=scheduler.running(),
            worker_count=scheduler.worker_count(),
            pending_tasks=scheduler.pending_count(),
            alive_coroutines=scheduler.alive_count(),
            completed_coroutines=scheduler.completed_count(),
            idle_switches=scheduler.idle_switch_count(),
            steal_count=scheduler.steal_count(),
            enqueue_local=profile.enqueue_local,
            enqueue_global=profile.enqueue_global,
            enqueue_fast=profile.enqueue_fast,
            dequeue_local_fast=profile.dequeue_local_fast,
            dequeue_local=profile.dequeue_local,
            dequeue_global=profile.dequeue_global,
            dequeue_steal=profile.dequeue_steal,
            scheduler_state_lock_wait_ns_total=profile.state_lock_wait_ns_total,
            scheduler_state_lock_wait_samples=profile.state_lock_wait_samples,
            scheduler_state_lock_wait_ns_avg=profile.state_lock_wait_ns_avg,
        )


def submit(task: CoroutineCallback, stack_size: int = 0) -> int:
    """Run ``task`` as a coroutine on the runtime; returns the coroutine id."""
    if task is None:
        raise ValueError("submitted task cannot be empty")
    with _lock:
        if _host is None:
            raise RuntimeNotStartedError("runtime is not started")
        effective_stack = stack_size or Coroutine.DEFAULT_STACK_SIZE
        return _host.scheduler.schedule(task, effective_stack)


def wait_runtime_idle() -> None:
    """Block until the runtime has nothing queued or executing."""
    with _lock:
        if _host is None:
            return
        scheduler = _host.scheduler
    scheduler.wait_idle()


def await_io(
    fd: int, event: RuntimeIoEvent, timeout_ms: Optional[float] = None
) -> RuntimeIoAwaitResult:
    """Suspend the current coroutine until ``fd`` is ready for ``event``.

    Must be called from a coroutine running on the runtime; otherwise, or if
    the event cannot be registered, returns FAILED.
    """
    if fd < 0:
        return RuntimeIoAwaitResult.FAILED
    with _lock:
        if _host is None:
            return RuntimeIoAwaitResult.FAILED
        io_manager = _host.io_manager

    current = Coroutine.current()
    if current is None:
        return RuntimeIoAwaitResult.FAILED
    coroutine_id = current.id
    outcome = _AwaitOutcome()

    def on_ready() -> None:
        if outcome.settle(RuntimeIoAwaitResult.READY):
            io_manager.resume_coroutine(coroutine_id)

    def on_timeout() -> None:
        if outcome.settle(RuntimeIoAwaitResult.TIMEOUT):
            io_manager.resume_coroutine(coroutine_id)

    io_event = _to_io_event(event)
    if not io_manager.add_event(fd, io_event, on_ready):
        return RuntimeIoAwaitResult.FAILED

    timer_id = 0
    if timeout_ms is not None:
        timer_id = io_manager.add_timer(timeout_ms, on_timeout)

    Coroutine.yield_current_waiting()

    if timer_id:
        io_manager.cancel_timer(timer_id)
    if outcome.result is RuntimeIoAwaitResult.READY:
        return RuntimeIoAwaitResult.READY
    if outcome.result is RuntimeIoAwaitResult.TIMEOUT:
        io_manager.del_event(fd, io_event)
        return RuntimeIoAwaitResult.TIMEOUT
    return RuntimeIoAwaitResult.FAILED


def create_deadline_context(request_id: str, timeout_ms: float) -> RequestContext:
    return RequestContext.create_with_timeout(request_id, timeout_ms)


def current_deadline_context() -> DeadlineContext:
    return current_request_context()


def set_deadline_context_value(context: DeadlineContext, key: str, value: str) -> None:
    """Store a value on ``context``; does nothing when ``context`` is None."""
    if context is None:
        return
    context.set_value(key, value)


def deadline_context_value(context: DeadlineContext, key: str) -> Optional[str]:
    if context is None:
        return None
    return context.value(key)


@contextmanager
def deadline_scope(context: DeadlineContext) -> Iterator[DeadlineContext]:
    """Make ``context`` current for the block, restoring the previous one after."""
    with scoped_request_context(context) as bound:
        yield bound


def set_runtime_hook_enabled(enabled: bool) -> None:
    set_hook_enabled(enabled)


def runtime_hook_enabled() -> bool:
    return hook_enabled()


@contextmanager
def runtime_hook_scope(enabled: bool) -> Iterator[None]:
    """Set the calling thread's hook switch for the block, then restore it."""
    with hook_scope(enabled):
        yield


def init_runtime() -> None:
    start_runtime()


def shutdown_runtime() -> None:
    stop_runtime()