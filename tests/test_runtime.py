import socket
import threading

import pytest

from fiberrt.hook import hook_io_manager
from fiberrt.runtime import (
    RuntimeIoAwaitResult,
    RuntimeIoEvent,
    RuntimeNotStartedError,
    RuntimeSchedulerSnapshot,
    RuntimeStartOptions,
    await_io,
    create_deadline_context,
    current_deadline_context,
    deadline_context_value,
    deadline_scope,
    init_runtime,
    runtime_hook_enabled,
    runtime_hook_scope,
    runtime_ready,
    runtime_scheduler_snapshot,
    set_deadline_context_value,
    set_runtime_hook_enabled,
    shutdown_runtime,
    start_runtime,
    stop_runtime,
    submit,
    wait_runtime_idle,
)


@pytest.fixture
def runtime():
    start_runtime(RuntimeStartOptions(worker_threads=2))
    try:
        yield
    finally:
        stop_runtime()


@pytest.fixture
def pair():
    left, right = socket.socketpair()
    try:
        yield left, right
    finally:
        left.close()
        right.close()


def _await_in_task(fd, event, timeout_ms=None, after_submit=None):
    """Run await_io inside a submitted coroutine and return its result."""
    results = []
    done = threading.Event()

    def task():
        results.append(await_io(fd, event, timeout_ms))
        done.set()

    submit(task)
    if after_submit is not None:
        after_submit()
    if not done.wait(4):
        raise AssertionError("await_io task did not finish in time")
    return results[0]


def test_submit_before_start_raises():
    stop_runtime()
    with pytest.raises(RuntimeNotStartedError):
        submit(lambda: None)


def test_submit_empty_task_raises(runtime):
    with pytest.raises(ValueError):
        submit(None)


def test_start_and_stop_lifecycle():
    stop_runtime()
    assert runtime_ready() is False
    start_runtime(RuntimeStartOptions(worker_threads=2))
    try:
        assert runtime_ready() is True
        assert hook_io_manager() is not None
    finally:
        stop_runtime()
    assert runtime_ready() is False
    assert hook_io_manager() is None


def test_start_is_idempotent(runtime):
    start_runtime(RuntimeStartOptions(worker_threads=5))
    assert runtime_scheduler_snapshot().worker_count == 2


def test_snapshot_when_stopped_is_empty():
    stop_runtime()
    snapshot = runtime_scheduler_snapshot()
    assert snapshot == RuntimeSchedulerSnapshot()
    assert snapshot.running is False


def test_submit_runs_task_and_counts_completion(runtime):
    done = threading.Event()
    submit(done.set)
    assert done.wait(3)
    wait_runtime_idle()
    snapshot = runtime_scheduler_snapshot()
    assert snapshot.running is True
    assert snapshot.worker_count == 2
    assert snapshot.completed_coroutines >= 1
    assert snapshot.pending_tasks == 0


def test_submit_many_tasks_all_complete(runtime):
    counter = []
    lock = threading.Lock()

    def task():
        with lock:
            counter.append(1)

    for _ in range(20):
        submit(task)
    wait_runtime_idle()
    assert len(counter) == 20
    assert runtime_scheduler_snapshot().alive_coroutines == 0


def test_init_and_shutdown():
    stop_runtime()
    init_runtime()
    try:
        assert runtime_ready() is True
        assert runtime_scheduler_snapshot().worker_count >= 1
    finally:
        shutdown_runtime()
    assert runtime_ready() is False


def test_await_io_outside_coroutine_fails(runtime, pair):
    left, _ = pair
    assert await_io(left.fileno(), RuntimeIoEvent.READ, 10) is RuntimeIoAwaitResult.FAILED


def test_await_io_negative_fd_fails(runtime):
    assert await_io(-1, RuntimeIoEvent.READ) is RuntimeIoAwaitResult.FAILED


def test_await_io_without_runtime_fails(pair):
    stop_runtime()
    left, _ = pair
    assert await_io(left.fileno(), RuntimeIoEvent.READ) is RuntimeIoAwaitResult.FAILED


def test_await_io_ready_when_data_arrives(runtime, pair):
    left, right = pair
    result = _await_in_task(
        left.fileno(),
        RuntimeIoEvent.READ,
        2000,
        after_submit=lambda: right.send(b"ping"),
    )
    assert result is RuntimeIoAwaitResult.READY
    assert left.recv(16) == b"ping"
    wait_runtime_idle()
    snapshot = runtime_scheduler_snapshot()
    assert snapshot.alive_coroutines == 0
    assert snapshot.completed_coroutines >= 1


def test_await_io_write_ready(runtime, pair):
    left, _ = pair
    result = _await_in_task(left.fileno(), RuntimeIoEvent.WRITE)
    assert result is RuntimeIoAwaitResult.READY
    wait_runtime_idle()
    snapshot = runtime_scheduler_snapshot()
    assert snapshot.alive_coroutines == 0
    assert snapshot.pending_tasks == 0


def test_await_io_times_out(runtime, pair):
    left, _ = pair
    result = _await_in_task(left.fileno(), RuntimeIoEvent.READ, 50)
    assert result is RuntimeIoAwaitResult.TIMEOUT
    wait_runtime_idle()
    snapshot = runtime_scheduler_snapshot()
    assert snapshot.alive_coroutines == 0
    assert snapshot.pending_tasks == 0


def test_deadline_context_values():
    context = create_deadline_context("req-w5-deadline", 80)
    assert context.request_id == "req-w5-deadline"
    set_deadline_context_value(context, "route", "gateway.backend")
    assert deadline_context_value(context, "route") == "gateway.backend"
    assert deadline_context_value(context, "missing") is None


def test_deadline_context_value_with_none_context():
    set_deadline_context_value(None, "route", "gateway.backend")
    assert deadline_context_value(None, "route") is None


def test_expired_deadline_context_cancels():
    context = create_deadline_context("req-expired", -5)
    assert context.check_deadline_and_cancel() is True
    assert context.cancel_reason == "deadline_exceeded"


def test_deadline_scope_restores_previous():
    outer = create_deadline_context("outer", 1000)
    inner = create_deadline_context("inner", 1000)
    with deadline_scope(outer):
        assert current_deadline_context() is outer
        with deadline_scope(inner) as bound:
            assert bound is inner
            assert current_deadline_context() is inner
        assert current_deadline_context() is outer
    assert current_deadline_context() is None


def test_runtime_hook_switch():
    set_runtime_hook_enabled(True)
    try:
        assert runtime_hook_enabled() is True
    finally:
        set_runtime_hook_enabled(False)
    assert runtime_hook_enabled() is False


def test_runtime_hook_scope_restores():
    set_runtime_hook_enabled(False)
    with runtime_hook_scope(True):
        assert runtime_hook_enabled() is True
        with runtime_hook_scope(False):
            assert runtime_hook_enabled() is False
        assert runtime_hook_enabled() is True
    assert runtime_hook_enabled() is False