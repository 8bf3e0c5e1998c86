import math

import pytest

from fiberrt.retry_budget import RetryBudget, RetryBudgetOptions


class FakeClock:
    def __init__(self):
        self.now = 0

    def __call__(self):
        return self.now

    def advance_ms(self, ms):
        self.now += ms * 1_000_000


@pytest.fixture
def clock():
    return FakeClock()


def drain_tokens(budget):
    acquired = 0
    while budget.try_acquire_retry_token():
        acquired += 1
    return acquired


def test_floor_applies_without_requests(clock):
    options = RetryBudgetOptions(window_ms=1000, retry_ratio=0.5, min_retry_tokens=3)
    budget = RetryBudget(options, clock=clock)
    snapshot = budget.snapshot()
    assert snapshot.request_count == 0
    assert snapshot.max_retry_tokens == options.min_retry_tokens
    assert snapshot.available_retry_tokens == options.min_retry_tokens


def test_acquired_tokens_match_budget(clock):
    budget = RetryBudget(RetryBudgetOptions(window_ms=1000, retry_ratio=0.3, min_retry_tokens=1), clock=clock)
    for _ in range(17):
        budget.record_request()
    expected_max = budget.snapshot().max_retry_tokens
    acquired = drain_tokens(budget)
    snapshot = budget.snapshot()
    assert acquired == expected_max
    assert snapshot.retry_count == acquired
    assert snapshot.available_retry_tokens == 0
    assert budget.try_acquire_retry_token() is False


def test_full_ratio_allows_one_retry_per_request(clock):
    budget = RetryBudget(RetryBudgetOptions(window_ms=1000, retry_ratio=1.0, min_retry_tokens=0), clock=clock)
    requests = 4
    for _ in range(requests):
        budget.record_request()
    assert budget.request_count() == requests
    assert drain_tokens(budget) == requests
    assert budget.retry_count() == requests


def test_zero_budget_refuses(clock):
    budget = RetryBudget(RetryBudgetOptions(window_ms=1000, retry_ratio=0.0, min_retry_tokens=0), clock=clock)
    budget.record_request()
    assert budget.try_acquire_retry_token() is False
    assert budget.retry_count() == 0


def test_window_eviction(clock):
    budget = RetryBudget(RetryBudgetOptions(window_ms=100, retry_ratio=1.0, min_retry_tokens=0), clock=clock)
    for _ in range(3):
        budget.record_request()
    assert budget.try_acquire_retry_token() is True
    clock.advance_ms(100)
    assert budget.request_count() == 3
    clock.advance_ms(1)
    assert budget.request_count() == 0
    assert budget.retry_count() == 0


def test_snapshot_invariant(clock):
    budget = RetryBudget(RetryBudgetOptions(window_ms=1000, retry_ratio=0.5, min_retry_tokens=2), clock=clock)
    for _ in range(9):
        budget.record_request()
    budget.try_acquire_retry_token()
    snapshot = budget.snapshot()
    assert snapshot.available_retry_tokens + snapshot.retry_count == snapshot.max_retry_tokens


def test_options_normalized(clock):
    budget = RetryBudget(RetryBudgetOptions(window_ms=0, retry_ratio=-0.5, min_retry_tokens=2), clock=clock)
    assert budget.options.window_ms == 1
    assert budget.options.retry_ratio == 0.0
    budget.update_options(RetryBudgetOptions(window_ms=-10, retry_ratio=math.nan, min_retry_tokens=2))
    assert budget.options.window_ms == 1
    assert budget.options.retry_ratio == 0.0


def test_update_options_evicts(clock):
    budget = RetryBudget(RetryBudgetOptions(window_ms=1000, retry_ratio=1.0, min_retry_tokens=0), clock=clock)
    budget.record_request()
    clock.advance_ms(200)
    assert budget.request_count() == 1
    budget.update_options(RetryBudgetOptions(window_ms=100, retry_ratio=1.0, min_retry_tokens=0))
    assert budget.request_count() == 0