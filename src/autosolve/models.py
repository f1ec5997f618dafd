from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal

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


TerminalState = Literal[
    "running",
    "succeeded",
    "failed",
    "rate_limited",
    "overloaded",
    "context_exceeded",
    "cancelled",
]
OutputStream = Literal["stdout", "stderr", "exit"]
RestartState = Literal[
    "preparing",
    "executing",
    "inspecting",
    "restarting",
    "waiting_for_reset",
    "done",
    "cancelled",
]
FailureReason = Literal[
    "restart_limit_exceeded",
    "rate_limited",
    "overloaded",
    "context_exceeded",
    "failed",
    "spawn_error",
    "cancelled",
]
UncommittedChangesPolicy = Literal["restart", "commit", "ignore"]
AgentBackendName = Literal["claude", "codex"]
FeedbackKind = Literal["issue", "pr", "review"]
PullRequestState = Literal["open", "merged", "closed"]
WatchFinalState = Literal["merged", "closed", "errors_exhausted", "cancelled"]


@dataclass(frozen=True)
class OutputEvent:
    stream: OutputStream
    raw: str
    exit_code: int | None = None
    cancelled: bool = False


@dataclass
class SessionState:
    model: str | None
    resume_of: str | None = None
    session_id: str | None = None
    message_count: int = 0
    tool_use_count: int = 0
    last_message: str | None = None
    terminal_state: TerminalState = "running"


@dataclass(frozen=True)
class SessionResult:
    session_id: str | None
    model: str | None
    resume_of: str | None
    message_count: int
    tool_use_count: int
    last_message: str | None
    terminal_state: TerminalState
    exit_code: int | None
    reset_at: datetime | None = None
    log_path: Path | None = None

    def error(self) -> AgentError | None:
        detail = self.last_message or "<no output>"
        if self.terminal_state in {"running", "succeeded"}:
            return None
        if self.terminal_state == "overloaded":
            return OverloadError(
                f"Agent provider overloaded: {detail}", session_id=self.session_id
            )
        if self.terminal_state == "rate_limited":
            return RateLimitError(
                f"Agent rate limit reached: {detail}",
                session_id=self.session_id,
                reset_at=self.reset_at,
            )
        if self.terminal_state == "context_exceeded":
            return ContextExceededError(
                f"Agent context length exceeded: {detail}", session_id=self.session_id
            )
        if self.terminal_state == "cancelled":
            return SessionCancelled("Agent session cancelled", session_id=self.session_id)
        return AgentFailedError(
            f"Agent exited with code {self.exit_code}: {detail}",
            session_id=self.session_id,
            exit_code=self.exit_code,
        )


@dataclass(frozen=True)
class RetryAttempt:
    attempt_number: int
    delay_seconds: float


@dataclass(frozen=True)
class RestartCycle:
    iteration: int
    uncommitted_changes_detected: bool = False
    feedback_detected: bool = False


@dataclass(frozen=True)
class CycleOutcome:
    success: bool
    state: RestartState
    terminal_state: TerminalState
    failure_reason: FailureReason | None
    session_id: str | None
    iterations: int
    limit_waits: int = 0
    watermark: datetime | None = None
    last_message: str | None = None
    reset_at: datetime | None = None

    def error(self) -> AgentError | None:
        if self.success:
            return None
        detail = self.last_message or "<no output>"
        reason = self.failure_reason
        if reason == "restart_limit_exceeded":
            return RestartLimitExceeded(
                f"Restart limit reached after {self.iterations} iterations; manual review required",
                session_id=self.session_id,
                iterations=self.iterations,
            )
        if reason == "rate_limited":
            return RateLimitError(
                f"Agent rate limit reached: {detail}",
                session_id=self.session_id,
                reset_at=self.reset_at,
            )
        if reason == "overloaded":
            return OverloadError(
                f"Agent provider overloaded after retries: {detail}", session_id=self.session_id
            )
        if reason == "context_exceeded":
            return ContextExceededError(
                f"Agent context length exceeded: {detail}", session_id=self.session_id
            )
        if reason == "spawn_error":
            return SpawnError(f"Agent could not be started: {detail}", session_id=self.session_id)
        if reason == "cancelled":
            return SessionCancelled("Restart cycle cancelled", session_id=self.session_id)
        return AgentFailedError(f"Agent failed: {detail}", session_id=self.session_id)


@dataclass(frozen=True)
class FeedbackComment:
    comment_id: int
    kind: FeedbackKind
    author: str
    body: str
    html_url: str
    created_at: datetime


@dataclass(frozen=True)
class PullRequestStatus:
    number: int
    state: PullRequestState
    merge_state_status: str | None = None


@dataclass(frozen=True)
class PromptPair:
    user: str
    system: str


@dataclass(frozen=True)
class ControllerSignal:
    kind: str
    detail: str
    created_at: datetime
    iteration: int | None = None
    session_id: str | None = None

    @classmethod
    def now(
        cls,
        *,
        kind: str,
        detail: str,
        iteration: int | None = None,
        session_id: str | None = None,
    ) -> ControllerSignal:
        return cls(
            kind=kind,
            detail=detail,
            created_at=datetime.now(timezone.utc),
            iteration=iteration,
            session_id=session_id,
        )
