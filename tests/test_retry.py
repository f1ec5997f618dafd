from __future__ import annotations

from dataclasses import replace
import threading

from hypothesis import given, strategies as st
import pytest

from autosolve.models import RetryAttempt, SessionResult
from autosolve.retry import backoff_delays, run_with_retry


_BASE = SessionResult(
    session_id="sess-1",
    model="sonnet",
    resume_of=None,
    message_count=0,
    tool_use_count=0,
    last_message="API Error: 500 Overloaded",
    terminal_state="overloaded",
    exit_code=1,
)
_SUCCESS = replace(_BASE, terminal_state="succeeded", exit_code=0, last_message="Task completed")


def test_backoff_delays_double_from_base() -> None:
    assert backoff_delays(4, 5.0) == (5.0, 10.0, 20.0, 40.0)
    assert backoff_delays(0, 5.0) == ()


def test_success_is_returned_without_retry() -> None:
    attempts: list[int] = []
    waits: list[float] = []

    def invoke(attempt: int) -> SessionResult:
        attempts.append(attempt)
        return _SUCCESS

    def wait(seconds: float) -> bool:
        waits.append(seconds)
        return False

    result = run_with_retry(invoke, wait=wait)

    assert result is _SUCCESS
    assert attempts == [0]
    assert waits == []


def test_non_overload_failures_are_not_retried() -> None:
    rate_limited = replace(_BASE, terminal_state="rate_limited")
    calls: list[int] = []

    def invoke(attempt: int) -> SessionResult:
        calls.append(attempt)
        return rate_limited

    result = run_with_retry(invoke, max_retries=5, wait=lambda seconds: False)

    assert result is rate_limited
    assert calls == [0]


def test_two_retries_then_overloaded_is_reported() -> None:
    calls: list[int] = []
    waits: list[float] = []
    seen: list[RetryAttempt] = []

    def invoke(attempt: int) -> SessionResult:
        calls.append(attempt)
        return _BASE

    def wait(seconds: float) -> bool:
        waits.append(seconds)
        return False

    result = run_with_retry(
        invoke,
        max_retries=2,
        base_delay_seconds=5.0,
        wait=wait,
        on_retry=lambda attempt, _result: seen.append(attempt),
    )

    assert result.terminal_state == "overloaded"
    assert calls == [0, 1, 2]
    assert waits == [5.0, 10.0]
    assert seen == [RetryAttempt(1, 5.0), RetryAttempt(2, 10.0)]


def test_cancelled_wait_stops_retrying() -> None:
    cancel_event = threading.Event()
    calls: list[int] = []

    def invoke(attempt: int) -> SessionResult:
        calls.append(attempt)
        return _BASE

    def wait(seconds: float) -> bool:
        _ = seconds
        cancel_event.set()
        return True

    result = run_with_retry(invoke, max_retries=3, cancel_event=cancel_event, wait=wait)

    assert result.terminal_state == "cancelled"
    assert calls == [0]


def test_negative_retry_budget_is_rejected() -> None:
    with pytest.raises(ValueError, match="max_retries"):
        run_with_retry(lambda attempt: _SUCCESS, max_retries=-1)


@given(
    overloads=st.integers(min_value=0, max_value=8),
    max_retries=st.integers(min_value=0, max_value=6),
    base=st.floats(min_value=0.5, max_value=30.0, allow_nan=False),
)
def test_overload_retry_schedule(overloads: int, max_retries: int, base: float) -> None:
    calls: list[int] = []
    waits: list[float] = []

    def invoke(attempt: int) -> SessionResult:
        calls.append(attempt)
        return _BASE if attempt < overloads else _SUCCESS

    def wait(seconds: float) -> bool:
        waits.append(seconds)
        return False

    result = run_with_retry(invoke, max_retries=max_retries, base_delay_seconds=base, wait=wait)

    retries = min(overloads, max_retries)
    assert len(waits) == retries
    assert len(calls) == retries + 1
    assert waits == [base * 2**k for k in range(retries)]
    assert all(later > earlier for earlier, later in zip(waits, waits[1:]))
    if overloads > max_retries:
        assert result.terminal_state == "overloaded"
    else:
        assert result.terminal_state == "succeeded"
