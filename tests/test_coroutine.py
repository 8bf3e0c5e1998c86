import pytest

from fiberrt.coroutine import Coroutine, CoroutineState, CoroutineStateError


def run_to_end(coroutine, limit=100_000):
    resumes = 0
    while coroutine.state is not CoroutineState.TERM and resumes < limit:
        coroutine.resume()
        resumes += 1
    return resumes


def test_yield_current_outside_coroutine_rejected():
    assert Coroutine.current() is None
    with pytest.raises(CoroutineStateError):
        Coroutine.yield_current()
    with pytest.raises(CoroutineStateError):
        Coroutine.yield_current_waiting()


def test_repeated_switches():
    switch_count = 1000
    counter = [0]
    visible = [True]

    def body():
        for _ in range(switch_count):
            if Coroutine.current() is None:
                visible[0] = False
            counter[0] += 1
            Coroutine.yield_current()

    coroutine = Coroutine(1, body)
    resumes = run_to_end(coroutine)
    assert counter[0] == switch_count
    assert resumes == switch_count + 1
    assert visible[0] is True
    assert coroutine.state is CoroutineState.TERM
    assert Coroutine.current() is None


def test_current_is_self_inside_body():
    seen = []
    coroutine = Coroutine(7, lambda: seen.append(Coroutine.current()))
    coroutine.resume()
    assert seen == [coroutine]
    assert coroutine.id == 7


def test_state_after_yield_is_ready():
    coroutine = Coroutine(1, Coroutine.yield_current)
    assert coroutine.state is CoroutineState.READY
    coroutine.resume()
    assert coroutine.state is CoroutineState.READY
    coroutine.resume()
    assert coroutine.state is CoroutineState.TERM


def test_waiting_requires_mark_ready():
    steps = []

    def body():
        steps.append("before")
        Coroutine.yield_current_waiting()
        steps.append("after")

    coroutine = Coroutine(1, body)
    assert coroutine.try_mark_ready_from_waiting() is False
    coroutine.resume()
    assert coroutine.state is CoroutineState.WAITING
    with pytest.raises(CoroutineStateError):
        coroutine.resume()
    assert coroutine.try_mark_ready_from_waiting() is True
    assert coroutine.try_mark_ready_from_waiting() is False
    coroutine.resume()
    assert steps == ["before", "after"]
    assert coroutine.state is CoroutineState.TERM


def test_resume_after_term_is_noop():
    calls = []
    coroutine = Coroutine(1, lambda: calls.append(1))
    coroutine.resume()
    coroutine.resume()
    assert calls == [1]
    assert coroutine.state is CoroutineState.TERM


def test_exception_terminates_coroutine():
    def body():
        raise RuntimeError("boom")

    coroutine = Coroutine(1, body)
    coroutine.resume()
    assert coroutine.state is CoroutineState.TERM
    assert Coroutine.current() is None


def test_empty_callback_rejected():
    with pytest.raises(ValueError):
        Coroutine(1, None)


def test_nested_resume_rejected():
    inner = Coroutine(2, lambda: None)
    outcome = []

    def body():
        try:
            inner.resume()
        except CoroutineStateError:
            outcome.append("rejected")

    outer = Coroutine(1, body)
    outer.resume()
    assert outcome == ["rejected"]
    assert inner.state is CoroutineState.READY


def test_yield_when_not_running_rejected():
    coroutine = Coroutine(1, lambda: None)
    with pytest.raises(CoroutineStateError):
        coroutine.yield_()
    with pytest.raises(CoroutineStateError):
        coroutine.yield_waiting()


def test_stack_size_defaults():
    assert Coroutine(1, lambda: None).stack_size == Coroutine.DEFAULT_STACK_SIZE
    assert Coroutine(1, lambda: None, 0).stack_size == Coroutine.DEFAULT_STACK_SIZE
    assert Coroutine(1, lambda: None, 65536).stack_size == 65536