"""Stackful coroutines with READY/RUNNING/WAITING/TERM states.

Each coroutine body runs on its own thread; control is handed back and forth
so exactly one side runs at a time, which lets a body yield from any depth
of nested calls.
"""

from __future__ import annotations

import enum
import threading
from typing import Callable, Optional

CoroutineCallback = Callable[[], None]

_local = threading.local()


def _current() -> Optional["Coroutine"]:
    return getattr(_local, "current", None)


class CoroutineState(enum.Enum):
    READY = "ready"
    RUNNING = "running"
    WAITING = "waiting"
    TERM = "term"


class CoroutineStateError(RuntimeError):
    """Raised when a coroutine operation is not allowed in its current state."""


class Coroutine:
    """A resumable unit of work that can yield control back to its resumer."""

    DEFAULT_STACK_SIZE = 128 * 1024

    def __init__(self, coroutine_id: int, callback: CoroutineCallback, stack_size: int = 0) -> None:
        if callback is None:
            raise ValueError("coroutine callback cannot be empty")
        self._id = coroutine_id
        self._callback: Optional[CoroutineCallback] = callback
        self._stack_size = stack_size or self.DEFAULT_STACK_SIZE
        self._state = CoroutineState.READY
        self._state_lock = threading.Lock()
        self._to_body = threading.Semaphore(0)
        self._to_caller = threading.Semaphore(0)
        self._thread: Optional[threading.Thread] = None

    @property
    def id(self) -> int:
        return self._id

    @property
    def state(self) -> CoroutineState:
        with self._state_lock:
            return self._state

    @property
    def stack_size(self) -> int:
        """The requested stack size; recorded, not enforced."""
        return self._stack_size

    def _set_state(self, state: CoroutineState) -> None:
        with self._state_lock:
            self._state = state

    def resume(self) -> None:
        """Run the coroutine until it yields or finishes. No-op once terminated."""
        state = self.state
        if state is CoroutineState.TERM:
            return
        if state is not CoroutineState.READY:
            raise CoroutineStateError("coroutine can only resume from READY state")
        if _current() is not None:
            raise CoroutineStateError("nested coroutine resume is not supported")

        self._set_state(CoroutineState.RUNNING)
        if self._thread is None:
            self._thread = threading.Thread(
                target=self._run, name=f"coroutine-{self._id}", daemon=True
            )
            try:
                self._thread.start()
            except BaseException:
                self._set_state(CoroutineState.TERM)
                raise
        else:
            self._to_body.release()
        self._to_caller.acquire()

    def yield_(self) -> None:
        """Give control back to the resumer, staying READY."""
        self._switch_out(CoroutineState.READY, "yield")

    def yield_waiting(self) -> None:
        """Give control back to the resumer and wait for an external wake-up."""
        self._switch_out(CoroutineState.WAITING, "yield_waiting")

    def try_mark_ready_from_waiting(self) -> bool:
        """Atomically move WAITING to READY; False if not WAITING."""
        with self._state_lock:
            if self._state is not CoroutineState.WAITING:
                return False
            self._state = CoroutineState.READY
            return True

    @staticmethod
    def current() -> Optional["Coroutine"]:
        """The coroutine running on the calling thread, if any."""
        return _current()

    @staticmethod
    def yield_current() -> None:
        coroutine = _current()
        if coroutine is None:
            raise CoroutineStateError("no current coroutine to yield")
        coroutine.yield_()

    @staticmethod
    def yield_current_waiting() -> None:
        coroutine = _current()
        if coroutine is None:
            raise CoroutineStateError("no current coroutine to yield_waiting")
        coroutine.yield_waiting()

    def _switch_out(self, target: CoroutineState, operation: str) -> None:
        if self.state is not CoroutineState.RUNNING:
            raise CoroutineStateError(f"coroutine can only {operation} from RUNNING state")
        if _current() is not self:
            raise CoroutineStateError(f"only the running coroutine can {operation}")
        self._set_state(target)
        _local.current = None
        self._to_caller.release()
        self._to_body.acquire()
        _local.current = self

    def _run(self) -> None:
        _local.current = self
        try:
            callback = self._callback
            if callback is not None:
                callback()
        except Exception:
            # Failures end the coroutine; they never reach the resumer.
            pass
        finally:
            self._set_state(CoroutineState.TERM)
            self._callback = None
            _local.current = None
            self._to_caller.release()

    def __repr__(self) -> str:
        return f"Coroutine(id={self._id}, state={self.state.name})"