# fiberrt

A small cooperative runtime for Python. It provides:

- coroutines that yield explicitly, from any depth of nested calls;
- an M:N scheduler with per-worker queues and work stealing;
- a timer heap;
- an IO manager that turns file-descriptor readiness into scheduled callbacks;
- request contexts that carry a deadline;
- a sliding-window retry budget.

The package has no dependencies outside the standard library.

## Install

```
pip install .
pip install ".[test]"   # with pytest for the test suite
```

## Modules

### `fiberrt.coroutine`

This module provides `Coroutine`, `CoroutineState` and `CoroutineStateError`.

- **States.** A coroutine moves through the states `READY`, `RUNNING`, `WAITING` and `TERM`.
- **How a body runs.** Each coroutine body runs on its own thread. Control passes back and forth so that only one side runs at a time.
- **Resuming.** `resume()` runs the body until it yields or finishes. Calling it on a terminated coroutine does nothing. Calling it in any other state except `READY` raises `CoroutineStateError`.
- **Yielding.** `Coroutine.current()` returns the coroutine running on the calling thread. `Coroutine.yield_current()` hands control back and stays `READY`. `Coroutine.yield_current_waiting()` hands control back and goes to `WAITING`. Both raise `CoroutineStateError` when they are called outside a coroutine.
- **Exceptions.** An exception raised by a body ends that coroutine. It is not passed on to the resumer.

### `fiberrt.scheduler`

`CoroutineScheduler` runs coroutines on a pool of worker threads.

- **Lifecycle.** `start(worker_threads)` starts the pool; passing 0 uses the CPU count. `stop()` drains all queued work first and then joins the workers.
- **Scheduling.** `schedule(callback)` returns a coroutine id. It raises `SchedulerStoppedError` when the scheduler is not running. Ids are reused after a coroutine has been recycled.
- **Waking.** `resume(id)` wakes a `WAITING` coroutine and puts it on its worker's fast queue.
- **Waiting.** `wait_idle()` blocks until nothing is queued or executing.
- **Counters.** The scheduler reports `alive_count()`, `completed_count()`, `pending_count()`, `worker_count()`, `idle_switch_count()` and `steal_count()`. `profile_snapshot()` returns a `SchedulerProfileSnapshot` with queue traffic and state-lock wait times.

### `fiberrt.timer`

`TimerManager` keeps a min-heap of timers and supports cancellation.

- **Adding.** `add_timer(delay_ms, callback)` returns a `ScheduledTimer(timer_id, earliest_changed)`.
- **Collecting.** `collect_expired_callbacks()` removes the due callbacks and returns them, earliest first. Timers that expire at the same time come back in the order they were registered.
- **Next timeout.** `next_timeout_ms()` returns -1 when there are no timers and 0 when a timer is already due.

### `fiberrt.io_manager`

This module provides `IOManager` and `IOEvent` (`READ`, `WRITE`).

- **Events.** `add_event(fd, event, callback)` binds a one-shot callback to a file descriptor. When the descriptor becomes ready, the callback is scheduled as a new coroutine. `del_event` unbinds the callback without running it.
- **Timers.** `add_timer` and `cancel_timer` run on the same event loop.
- **Waking coroutines.** `resume_coroutine(id)` wakes a waiting coroutine on the scheduler.
- **Lifecycle.** The loop thread starts with `start()` and stops with `stop()`. `close()` also releases the selector. An `IOManager` can be used as a context manager.

### `fiberrt.request_context`

`RequestContext` holds a request id, an optional deadline, a cancel flag and string key/value data. The deadline is a `time.monotonic()` value.

- **Creating.** Use `RequestContext.create(...)` or `RequestContext.create_with_timeout(...)`.
- **Cancelling.** `cancel()` succeeds only once.
- **Deadline.** `check_deadline_and_cancel()` cancels the context with reason `"deadline_exceeded"` once the deadline has passed. `bind_deadline_timer(io_manager)` does the same from a timer.
- **Current context.** `set_current_request_context()` and `current_request_context()` are per thread. `scoped_request_context()` makes a context current for a `with` block.

### `fiberrt.retry_budget`

`RetryBudget` limits retries to a share of the requests seen within a time window. The limits come from `RetryBudgetOptions(window_ms, retry_ratio, min_retry_tokens)`.

- **Using it.** Call `record_request()` for each request. `try_acquire_retry_token()` returns whether a retry is allowed.
- **Reporting.** `snapshot()` returns a `RetryBudgetSnapshot`.

### `fiberrt.hook`

This module has coroutine-aware versions of `sleep`, `read`, `write`, `recv`, `send`, `connect` and `accept`.

- **When they yield.** They suspend the current coroutine instead of blocking its worker when three things hold:
  1. hooking is on for the thread (`set_hook_enabled`, `hook_scope`);
  2. an IO manager has been registered with `set_hook_io_manager`;
  3. the call is made inside a coroutine.

  Otherwise they behave like the plain blocking calls.
- **Connect timeout.** A hooked `connect` honours `set_hook_connect_timeout_ms` and the current request context's deadline. It raises `TimeoutError` when either one passes.
- **Errors.** Errors are raised as `OSError`.

### `fiberrt.runtime`

This is a process-wide facade. It owns one scheduler and one IO manager.

- **Lifecycle.** `start_runtime(RuntimeStartOptions(...))`, `stop_runtime()` and `runtime_ready()`. `init_runtime()` and `shutdown_runtime()` are aliases.
- **Tasks.** `submit(task)` raises `RuntimeNotStartedError` before the runtime has started. `wait_runtime_idle()` blocks until the runtime is idle.
- **IO.** `await_io(fd, RuntimeIoEvent.READ, timeout_ms)` returns a `RuntimeIoAwaitResult`.
- **Snapshot.** `runtime_scheduler_snapshot()` returns the scheduler's state and counters.
- **Deadlines.** `create_deadline_context`, `current_deadline_context`, `deadline_scope`, `set_deadline_context_value` and `deadline_context_value`.
- **Hook switch.** `set_runtime_hook_enabled`, `runtime_hook_enabled` and `runtime_hook_scope`.

## Example

```python
from fiberrt.coroutine import Coroutine
from fiberrt.scheduler import CoroutineScheduler

counter = 0

def task():
    global counter
    for _ in range(1000):
        counter += 1
        Coroutine.yield_current()

scheduler = CoroutineScheduler()
scheduler.start(2)
scheduler.schedule(task)
scheduler.wait_idle()
assert counter == 1000
assert scheduler.alive_count() == 0
scheduler.stop()
```

Using the runtime facade:

```python
from fiberrt import runtime

runtime.start_runtime()
runtime.submit(lambda: print("hello from a coroutine"))
runtime.wait_runtime_idle()
runtime.stop_runtime()
```

## What it does not do

This is a library only.

- It has no command-line program.
- It has no HTTP server or gateway.
- It has no RPC client, service discovery or load balancing.
- It has no configuration storage.

The retry budget and the request contexts are building blocks for such layers. Nothing in the package uses them to make calls itself.

## Tests

```
pytest
```