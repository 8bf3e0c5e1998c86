"""Work-stealing M:N coroutine scheduler.

Coroutines are spread across worker threads. Each worker has a local queue
and a fast queue for coroutines woken from WAITING. There is also a global
queue that every worker polls. An idle worker steals coroutines that have
never run from the back of another worker's local queue.
"""

from __future__ import annotations

import os
import threading
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Deque, Dict, Iterator, List, Optional, Set

from fiberrt.coroutine import Coroutine, CoroutineCallback, CoroutineState

_tls = threading.local()

_COUNTER_NAMES = (
    "pending",
    "active",
    "idle_switches",
    "steals",
    "enqueue_local",
    "enqueue_global",
    "enqueue_fast",
    "dequeue_local_fast",
    "dequeue_local",
    "dequeue_global",
    "dequeue_steal",
)


@dataclass(frozen=True)
class SchedulerProfileSnapshot:
    """Queue traffic and state-lock contention counters."""

    enqueue_local: int = 0
    enqueue_global: int = 0
    enqueue_fast: int = 0
    dequeue_local_fast: int = 0
    dequeue_local: int = 0
    dequeue_global: int = 0
    dequeue_steal: int = 0
    state_lock_wait_ns_total: int = 0
    state_lock_wait_samples: int = 0
    state_lock_wait_ns_avg: int = 0


class SchedulerStoppedError(RuntimeError):
    """Raised when work is submitted to a scheduler that is not running."""


class _Worker:
    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.cv = threading.Condition(self.lock)
        self.local_fast_queue: Deque[int] = deque()
        self.local_queue: Deque[int] = deque()
        self.thread: Optional[threading.Thread] = None


def _normalize_worker_threads(worker_threads: int) -> int:
    if worker_threads > 0:
        return worker_threads
    return os.cpu_count() or 1


class CoroutineScheduler:
    """Runs coroutines on a pool of worker threads."""

    def __init__(self) -> None:
        self._state_lock = threading.Lock()
        self._lock_wait_ns_total = 0
        self._lock_wait_samples = 0

        self._started = False
        self._stop_requested = False
        self._workers: List[_Worker] = []
        self._dispatch_cursor = 0

        self._next_id = 1
        self._recycled_ids: List[int] = []
        self._coroutines: Dict[int, Coroutine] = {}
        self._last_worker: Dict[int, int] = {}
        self._running_coroutines: Set[int] = set()
        self._started_coroutines: Set[int] = set()
        self._pending_resumes: Set[int] = set()
        self._completed = 0

        self._global_lock = threading.Lock()
        self._global_queue: Deque[int] = deque()

        self._metrics_lock = threading.Lock()
        self._counters: Dict[str, int] = dict.fromkeys(_COUNTER_NAMES, 0)

        self._idle_lock = threading.Lock()
        self._idle_cv = threading.Condition(self._idle_lock)

    # -- internal helpers -------------------------------------------------

    @contextmanager
    def _state(self) -> Iterator[None]:
        """Hold the state lock, recording how long acquisition waited."""
        wait_started = time.monotonic_ns()
        with self._state_lock:
            self._lock_wait_ns_total += time.monotonic_ns() - wait_started
            self._lock_wait_samples += 1
            yield

    def _bump(self, name: str, delta: int = 1) -> None:
        with self._metrics_lock:
            self._counters[name] += delta

    def _counter(self, name: str) -> int:
        with self._metrics_lock:
            return self._counters[name]

    def _usable(self) -> bool:
        return self._started and not self._stop_requested and bool(self._workers)

    def _caller_worker_index(self) -> Optional[int]:
        """Worker index of the caller when it runs inside this scheduler."""
        if getattr(_tls, "scheduler", None) is self:
            return getattr(_tls, "worker_index", None)
        current = Coroutine.current()
        if current is None:
            return None
        cid = current.id
        if self._coroutines.get(cid) is not current or cid not in self._running_coroutines:
            return None
        return self._last_worker.get(cid)

    def _allocate_id(self) -> int:
        if self._recycled_ids:
            return self._recycled_ids.pop()
        cid = self._next_id
        self._next_id += 1
        return cid

    # -- public API -------------------------------------------------------

    def schedule(self, callback: CoroutineCallback, stack_size: int = 0) -> int:
        """Create a coroutine for ``callback`` and queue it; returns its id."""
        if callback is None:
            raise ValueError("coroutine callback cannot be empty")

        with self._state():
            if not self._usable():
                raise SchedulerStoppedError("schedule requires a started worker pool")
            cid = self._allocate_id()
            local_index = self._caller_worker_index()

        try:
            coroutine = Coroutine(cid, callback, stack_size)
        except BaseException:
            with self._state():
                self._recycled_ids.append(cid)
            raise

        with self._state():
            if not self._usable():
                self._recycled_ids.append(cid)
                raise SchedulerStoppedError("scheduler is stopping, schedule rejected")

            self._coroutines[cid] = coroutine
            enqueue_local = local_index is not None and local_index < len(self._workers)
            if enqueue_local:
                self._last_worker[cid] = local_index
            else:
                self._last_worker[cid] = self._dispatch_cursor % len(self._workers)
                self._dispatch_cursor += 1
            self._bump("pending")

            if enqueue_local:
                worker = self._workers[local_index]
                with worker.cv:
                    worker.local_queue.append(cid)
                    worker.cv.notify()
                self._bump("enqueue_local")
                # Wake the other workers so they can steal from this queue.
                for index, other in enumerate(self._workers):
                    if index != local_index:
                        with other.cv:
                            other.cv.notify()
            else:
                with self._global_lock:
                    self._global_queue.append(cid)
                self._bump("enqueue_global")
                for worker in self._workers:
                    with worker.cv:
                        worker.cv.notify()
        return cid

    def resume(self, coroutine_id: int) -> bool:
        """Wake a WAITING coroutine; returns False if it cannot be woken."""
        target: Optional[_Worker] = None
        with self._state():
            if not self._usable():
                return False
            coroutine = self._coroutines.get(coroutine_id)
            if coroutine is None:
                return False

            if coroutine.state is CoroutineState.RUNNING:
                # The wake-up arrived before the coroutine suspended itself.
                if coroutine_id in self._running_coroutines:
                    self._pending_resumes.add(coroutine_id)
                    return True
                return False

            if not coroutine.try_mark_ready_from_waiting():
                return False

            # Still unwinding on its worker: that worker re-queues it.
            if coroutine_id in self._running_coroutines:
                return True

            index = self._last_worker.get(coroutine_id)
            if index is None or index >= len(self._workers):
                index = self._dispatch_cursor % len(self._workers)
                self._dispatch_cursor += 1
                self._last_worker[coroutine_id] = index

            target = self._workers[index]
            self._bump("pending")
            self._bump("enqueue_fast")
            with target.lock:
                target.local_fast_queue.append(coroutine_id)

        with target.cv:
            target.cv.notify()
        return True

    def start(self, worker_threads: int = 0) -> None:
        """Start the worker pool; 0 picks the CPU count. Idempotent."""
        worker_threads = _normalize_worker_threads(worker_threads)

        with self._state():
            if self._started:
                return
            self._stop_requested = False
            self._workers = [_Worker() for _ in range(worker_threads)]
            with self._global_lock:
                self._global_queue.clear()
            with self._metrics_lock:
                self._counters = dict.fromkeys(_COUNTER_NAMES, 0)
            self._lock_wait_ns_total = 0
            self._lock_wait_samples = 0
            self._started = True
            workers = list(self._workers)

        for index, worker in enumerate(workers):
            worker.thread = threading.Thread(
                target=self._worker_loop,
                args=(index, worker),
                name=f"scheduler-worker-{index}",
                daemon=True,
            )
            worker.thread.start()

        for worker in workers:
            with worker.cv:
                worker.cv.notify_all()

    def stop(self) -> None:
        """Drain queued work, then stop and join all workers."""
        if not self._started:
            return

        self.wait_idle()
        self._stop_requested = True

        threads: List[threading.Thread] = []
        with self._state():
            for worker in self._workers:
                with worker.cv:
                    worker.cv.notify_all()
                if worker.thread is not None:
                    threads.append(worker.thread)
                    worker.thread = None

        for thread in threads:
            thread.join()

        with self._state():
            self._workers = []
            self._dispatch_cursor = 0
        with self._global_lock:
            self._global_queue.clear()

        self._started = False
        self._stop_requested = False
        self._notify_idle_waiters()

    def wait_idle(self) -> None:
        """Block until nothing is queued and nothing is executing."""
        with self._idle_cv:
            while not self._idle_cv.wait_for(self._is_idle, timeout=0.05):
                pass

    def recycle_terminated(self) -> None:
        """Release every coroutine that has already terminated."""
        with self._state():
            terminated = [
                cid
                for cid, coroutine in self._coroutines.items()
                if coroutine.state is CoroutineState.TERM
            ]
        for cid in terminated:
            self._recycle(cid)
        self._notify_idle_waiters()

    def alive_count(self) -> int:
        with self._state_lock:
            return len(self._coroutines)

    def completed_count(self) -> int:
        with self._state_lock:
            return self._completed

    def pending_count(self) -> int:
        return self._counter("pending")

    def worker_count(self) -> int:
        with self._state_lock:
            return len(self._workers)

    def idle_switch_count(self) -> int:
        return self._counter("idle_switches")

    def steal_count(self) -> int:
        return self._counter("steals")

    def profile_snapshot(self) -> SchedulerProfileSnapshot:
        with self._metrics_lock:
            counters = dict(self._counters)
        with self._state_lock:
            total = self._lock_wait_ns_total
            samples = self._lock_wait_samples
        return SchedulerProfileSnapshot(
            enqueue_local=counters["enqueue_local"],
            enqueue_global=counters["enqueue_global"],
            enqueue_fast=counters["enqueue_fast"],
            dequeue_local_fast=counters["dequeue_local_fast"],
            dequeue_local=counters["dequeue_local"],
            dequeue_global=counters["dequeue_global"],
            dequeue_steal=counters["dequeue_steal"],
            state_lock_wait_ns_total=total,
            state_lock_wait_samples=samples,
            state_lock_wait_ns_avg=0 if samples == 0 else total // samples,
        )

    def running(self) -> bool:
        return self._started

    # -- worker side ------------------------------------------------------

    def _is_idle(self) -> bool:
        with self._metrics_lock:
            return self._counters["pending"] == 0 and self._counters["active"] == 0

    def _notify_idle_waiters(self) -> None:
        if self._is_idle():
            with self._idle_cv:
                self._idle_cv.notify_all()

    def _recycle(self, cid: int) -> None:
        with self._state():
            if self._coroutines.pop(cid, None) is None:
                return
            self._recycled_ids.append(cid)
            self._last_worker.pop(cid, None)
            self._running_coroutines.discard(cid)
            self._started_coroutines.discard(cid)
            self._pending_resumes.discard(cid)
            self._completed += 1

    def _worker_loop(self, index: int, worker: _Worker) -> None:
        _tls.scheduler = self
        _tls.worker_index = index
        try:
            while True:
                cid = self._try_dequeue_next(index, worker)
                if cid is None:
                    if self._stop_requested:
                        return
                    self._bump("idle_switches")
                    with worker.cv:
                        worker.cv.wait_for(
                            lambda: self._stop_requested
                            or bool(worker.local_fast_queue)
                            or bool(worker.local_queue),
                            timeout=0.001,
                        )
                    continue
                self._bump("pending", -1)
                self._execute_coroutine(cid, index)
        finally:
            _tls.scheduler = None
            _tls.worker_index = None

    def _try_dequeue_next(self, index: int, worker: _Worker) -> Optional[int]:
        with worker.lock:
            if worker.local_fast_queue:
                cid = worker.local_fast_queue.popleft()
                self._bump("dequeue_local_fast")
                return cid
        cid = self._try_dequeue_global()
        if cid is not None:
            return cid
        with worker.lock:
            if worker.local_queue:
                cid = worker.local_queue.popleft()
                self._bump("dequeue_local")
                return cid
        cid = self._try_steal(index)
        if cid is not None:
            return cid
        return self._try_dequeue_global()

    def _try_dequeue_global(self) -> Optional[int]:
        with self._global_lock:
            if not self._global_queue:
                return None
            cid = self._global_queue.popleft()
        self._bump("dequeue_global")
        return cid

    def _try_steal(self, thief_index: int) -> Optional[int]:
        workers = self._workers
        if len(workers) <= 1 or thief_index >= len(workers):
            return None
        # First prefer victims with spare work, then take a lone task.
        for require_rich_victim in (True, False):
            cid = self._steal_once(workers, thief_index, require_rich_victim)
            if cid is not None:
                return cid
        return None

    def _steal_once(
        self, workers: List[_Worker], thief_index: int, require_rich_victim: bool
    ) -> Optional[int]:
        count = len(workers)
        for offset in range(1, count):
            victim = workers[(thief_index + offset) % count]
            with victim.lock:
                if not victim.local_queue:
                    continue
                if require_rich_victim and len(victim.local_queue) <= 1:
                    continue
                candidate = victim.local_queue.pop()

            with self._state():
                already_started = candidate in self._started_coroutines

            if already_started:
                # Coroutines that have run keep their worker affinity.
                with victim.lock:
                    victim.local_queue.append(candidate)
                continue

            self._bump("steals")
            self._bump("dequeue_steal")
            return candidate
        return None

    def _execute_coroutine(self, cid: int, worker_index: int) -> None:
        with self._state():
            coroutine = self._coroutines.get(cid)
            if coroutine is not None:
                self._last_worker[cid] = worker_index
                self._running_coroutines.add(cid)
                self._started_coroutines.add(cid)

        if coroutine is None:
            self._notify_idle_waiters()
            return

        if coroutine.state is CoroutineState.TERM:
            self._recycle(cid)
            self._notify_idle_waiters()
            return

        self._bump("active")
        requeue = False
        recycle = False
        try:
            coroutine.resume()
            state = coroutine.state
            if state is CoroutineState.READY:
                requeue = True
            elif state is CoroutineState.WAITING:
                with self._state():
                    resume_after_wait = cid in self._pending_resumes
                    self._pending_resumes.discard(cid)
                if resume_after_wait and coroutine.try_mark_ready_from_waiting():
                    requeue = True
            elif state is CoroutineState.TERM:
                recycle = True
        except Exception:
            recycle = True

        with self._state():
            self._running_coroutines.discard(cid)
            # A wake-up that landed while this worker was unwinding is re-queued here.
            if not requeue and not recycle and coroutine.state is CoroutineState.READY:
                requeue = True

        try:
            if requeue:
                self._enqueue_ready(cid, worker_index)
            elif recycle:
                self._recycle(cid)
        except SchedulerStoppedError:
            pass
        finally:
            self._bump("active", -1)
            self._notify_idle_waiters()

    def _enqueue_ready(self, cid: int, worker_index: int) -> None:
        with self._state():
            if not self._usable():
                raise SchedulerStoppedError("scheduler is stopping, cannot re-enqueue READY task")
            if worker_index >= len(self._workers):
                worker_index = self._dispatch_cursor % len(self._workers)
                self._dispatch_cursor += 1
            self._last_worker[cid] = worker_index
            worker = self._workers[worker_index]
            self._bump("pending")
            self._bump("enqueue_local")
            with worker.cv:
                worker.local_queue.append(cid)
                worker.cv.notify()