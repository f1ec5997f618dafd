from __future__ import annotations

from datetime import datetime


class AgentError(RuntimeError):
    """Base class for conditions that end an agent session or restart cycle."""

    def __init__(self, message: str, *, session_id: str | None = None) -> None:
        super().__init__(message)
        self.session_id = session_id


class SpawnError(AgentError):
    pass


class OverloadError(AgentError):
    pass


class RateLimitError(AgentError):
    def __init__(
        self,
        message: str,
        *,
        session_id: str | None = None,
        reset_at: datetime | None = None,
    ) -> None:
        super().__init__(message, session_id=session_id)
        self.reset_at = reset_at


class ContextExceededError(AgentError):
    pass


class RestartLimitExceeded(AgentError):
    def __init__(self, message: str, *, session_id: str | None = None, iterations: int) -> None:
        super().__init__(message, session_id=session_id)
        self.iterations = iterations


class AgentFailedError(AgentError):
    def __init__(
        self, message: str, *, session_id: str | None = None, exit_code: int | None = None
    ) -> None:
        super().__init__(message, session_id=session_id)
        self.exit_code = exit_code


class SessionCancelled(AgentError):
    pass


class TransientPollError(RuntimeError):
    """Feedback or pull request polling failed; the next poll may succeed."""
