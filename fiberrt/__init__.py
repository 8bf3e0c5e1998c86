"""Cooperative coroutine runtime: scheduler, timers, IO events, request deadlines and retry budgets."""

__version__ = "0.1.0"

__all__ = [
    "coroutine",
    "hook",
    "io_manager",
    "request_context",
    "retry_budget",
    "runtime",
    "scheduler",
    "timer",
]