from __future__ import annotations

from datetime import datetime, timezone

import pytest

from autosolve.errors import (
    AgentError,
    AgentFailedError,
    ContextExceededError,
    OverloadError,
    RateLimitError,
    RestartLimitExceeded,
    SessionCancelled,
    SpawnError,
)
from autosolve.models import CycleOutcome, SessionResult, TerminalState


def _session(state: TerminalState, **overrides: object) -> SessionResult:
    values: dict[str, object] = {
        "session_id": "sess-1",
        "model": "sonnet",
        "resume_of": None,
        "message_count": 3,
        "tool_use_count": 1,
        "last_message": "detail text",
        "terminal_state": state,
        "exit_code": 1,
    }
    values.update(overrides)
    return SessionResult(**values)  # type: ignore[arg-type]


@pytest.mark.parametrize(
    ("state", "error_type"),
    [
        ("overloaded", OverloadError),
        ("rate_limited", RateLimitError),
        ("context_exceeded", ContextExceededError),
        ("cancelled", SessionCancelled),
        ("failed", AgentFailedError),
    ],
)
def test_session_result_error_maps_terminal_state(
    state: TerminalState, error_type: type[AgentError]
) -> None:
    error = _session(state).error()

    assert isinstance(error, error_type)
    assert error.session_id == "sess-1"


def test_session_result_success_has_no_error() -> None:
    assert _session("succeeded", exit_code=0).error() is None


def test_rate_limited_session_error_carries_reset_time() -> None:
    reset_at = datetime(2026, 2, 9, 23, 0, tzinfo=timezone.utc)

    error = _session("rate_limited", reset_at=reset_at).error()

    assert isinstance(error, RateLimitError)
    assert error.reset_at == reset_at


def test_failed_session_error_carries_exit_code_and_detail() -> None:
    error = _session("failed", exit_code=7, last_message=None).error()

    assert isinstance(error, AgentFailedError)
    assert error.exit_code == 7
    assert "<no output>" in str(error)


def test_cycle_outcome_restart_limit_error() -> None:
    outcome = CycleOutcome(
        success=False,
        state="done",
        terminal_state="succeeded",
        failure_reason="restart_limit_exceeded",
        session_id="sess-2",
        iterations=3,
    )

    error = outcome.error()

    assert isinstance(error, RestartLimitExceeded)
    assert error.iterations == 3
    assert "manual review required" in str(error)


@pytest.mark.parametrize(
    ("reason", "error_type"),
    [
        ("overloaded", OverloadError),
        ("context_exceeded", ContextExceededError),
        ("spawn_error", SpawnError),
        ("cancelled", SessionCancelled),
        ("failed", AgentFailedError),
    ],
)
def test_cycle_outcome_error_maps_failure_reason(
    reason: str, error_type: type[AgentError]
) -> None:
    outcome = CycleOutcome(
        success=False,
        state="done",
        terminal_state="failed",
        failure_reason=reason,  # type: ignore[arg-type]
        session_id=None,
        iterations=1,
    )

    assert isinstance(outcome.error(), error_type)


def test_successful_cycle_has_no_error() -> None:
    outcome = CycleOutcome(
        success=True,
        state="done",
        terminal_state="succeeded",
        failure_reason=None,
        session_id="s",
        iterations=1,
    )

    assert outcome.error() is None
