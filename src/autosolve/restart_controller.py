from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from datetime import datetime, timezone
import logging
import threading
from typing import Protocol

from autosolve.config import RestartPolicy, RetryConfig
from autosolve.errors import SpawnError, TransientPollError
from autosolve.models import (
    ControllerSignal,
    CycleOutcome,
    FailureReason,
    FeedbackComment,
    PromptPair,
    PullRequestStatus,
    RestartCycle,
    RestartState,
    RetryAttempt,
    SessionResult,
    TerminalState,
)
from autosolve.observability import (
    log_error_event,
    log_event,
    log_warning_event,
    logging_cycle_context,
)
from autosolve.prompts import (
    PromptContext,
    build_feedback_lines,
    build_limit_resume_prompt,
    build_prompts,
    build_uncommitted_changes_prompt,
)
from autosolve.retry import WaitFn, run_with_retry
from autosolve.shell import CommandError


LOGGER = logging.getLogger("autosolve.restart_controller")

SignalSink = Callable[[ControllerSignal], None]

_FAILURE_REASONS: dict[TerminalState, FailureReason] = {
    "overloaded": "overloaded",
    "context_exceeded": "context_exceeded",
    "rate_limited": "rate_limited",
}


class WorkingCopy(Protocol):
    def has_uncommitted_changes(self) -> bool: ...

    def status_lines(self) -> tuple[str, ...]: ...

    def diff_stat(self) -> str: ...

    def commit_and_push(self, message: str) -> None: ...


class FeedbackSource(Protocol):
    def list_feedback_since(self, since: datetime | None) -> tuple[FeedbackComment, ...]: ...

    def pull_request_status(self) -> PullRequestStatus | None: ...


class SessionInvoker(Protocol):
    def run(
        self, prompts: PromptPair, *, resume_session_id: str | None = None
    ) -> SessionResult: ...


class Waiter(Protocol):
    def wait_until(self, deadline: datetime) -> bool: ...


class EventWaiter:
    """Blocks until a deadline plus a small buffer; returns False if cancelled first."""

    def __init__(
        self,
        cancel_event: threading.Event,
        *,
        buffer_seconds: float = 30.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._cancel_event = cancel_event
        self._buffer_seconds = buffer_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def wait_until(self, deadline: datetime) -> bool:
        remaining = (deadline - self._clock()).total_seconds()
        if remaining <= 0:
            return not self._cancel_event.is_set()
        return not self._cancel_event.wait(remaining + self._buffer_seconds)


@dataclass(frozen=True)
class _Decision:
    cycle: RestartCycle
    watermark: datetime | None
    next_prompts: PromptPair | None = None
    next_resume_id: str | None = None
    commit_failed: bool = False


class RestartController:
    """Drives one restart cycle: execute, inspect the checkout and feedback, then decide.

    A cycle ends in ``done`` (success or failure) or ``cancelled``. Restarts for leftover
    changes and for reviewer feedback share the ``max_iterations`` cap; waits for a rate
    limit reset do not count as iterations.
    """

    def __init__(
        self,
        *,
        session_runner: SessionInvoker,
        working_copy: WorkingCopy,
        prompt_context: PromptContext,
        policy: RestartPolicy,
        retry: RetryConfig,
        waiter: Waiter,
        cancel_event: threading.Event,
        feedback_source: FeedbackSource | None = None,
        signal_sink: SignalSink | None = None,
        retry_wait: WaitFn | None = None,
    ) -> None:
        self._session_runner = session_runner
        self._working_copy = working_copy
        self._context = prompt_context
        self._policy = policy
        self._retry = retry
        self._waiter = waiter
        self._cancel_event = cancel_event
        self._feedback_source = feedback_source
        self._signal_sink = signal_sink
        self._retry_wait = retry_wait
        self._state: RestartState = "preparing"

    @property
    def state(self) -> RestartState:
        return self._state

    def run(
        self,
        *,
        feedback_lines: Sequence[str] = (),
        resume_session_id: str | None = None,
        watermark: datetime | None = None,
    ) -> CycleOutcome:
        self._state = "preparing"
        context = self._context
        if feedback_lines:
            context = replace(context, continue_mode=True)
        prompts = build_prompts(context, feedback_lines)
        resume_id = resume_session_id
        cycle = RestartCycle(iteration=1)
        limit_waits = 0
        session_id = resume_session_id
        last_result: SessionResult | None = None

        while True:
            if self._cancel_event.is_set():
                return self._cancelled(cycle, limit_waits, session_id, watermark, last_result)

            self._state = "executing"
            self._emit(
                "restart_cycle_started", f"resume_of={resume_id}", cycle.iteration, resume_id
            )
            with logging_cycle_context(iteration=cycle.iteration):
                log_event(
                    LOGGER,
                    "restart_cycle_started",
                    resume_of=resume_id,
                    limit_waits=limit_waits,
                )
                try:
                    result = self._execute(prompts, resume_id, cycle.iteration)
                except SpawnError as exc:
                    log_error_event(LOGGER, "agent_spawn_failed", error=str(exc))
                    return self._done(
                        cycle,
                        success=False,
                        reason="spawn_error",
                        terminal_state="failed",
                        session_id=session_id,
                        limit_waits=limit_waits,
                        watermark=watermark,
                        last_message=str(exc),
                    )

            last_result = result
            if result.session_id:
                session_id = result.session_id
            self._state = "inspecting"

            if result.terminal_state == "cancelled":
                return self._cancelled(cycle, limit_waits, session_id, watermark, last_result)

            if result.terminal_state == "rate_limited" and self._can_wait_for_reset(
                result, session_id, limit_waits
            ):
                reset_at = result.reset_at or datetime.now(timezone.utc)
                self._state = "waiting_for_reset"
                limit_waits += 1
                log_event(
                    LOGGER,
                    "limit_reset_wait_started",
                    session_id=session_id,
                    reset_at=reset_at.isoformat(),
                    limit_waits=limit_waits,
                )
                self._emit("limit_wait", reset_at.isoformat(), cycle.iteration, session_id)
                if not self._waiter.wait_until(reset_at):
                    return self._cancelled(cycle, limit_waits, session_id, watermark, last_result)
                prompts = PromptPair(user=build_limit_resume_prompt(), system=prompts.system)
                resume_id = session_id
                continue

            if result.terminal_state != "succeeded":
                return self._finish_failure(
                    cycle,
                    result,
                    _FAILURE_REASONS.get(result.terminal_state, "failed"),
                    session_id,
                    limit_waits,
                    watermark,
                )

            decision = self._inspect_success(cycle, prompts, session_id, watermark)
            cycle = decision.cycle
            watermark = decision.watermark
            if decision.commit_failed:
                return self._finish_failure(
                    cycle, result, "failed", session_id, limit_waits, watermark
                )
            if decision.next_prompts is None:
                return self._done(
                    cycle,
                    success=True,
                    reason=None,
                    terminal_state="succeeded",
                    session_id=session_id,
                    limit_waits=limit_waits,
                    watermark=watermark,
                    last_message=result.last_message,
                )

            if cycle.iteration >= self._policy.max_iterations:
                log_error_event(
                    LOGGER,
                    "restart_limit_exceeded",
                    iterations=cycle.iteration,
                    max_iterations=self._policy.max_iterations,
                    session_id=session_id,
                )
                return self._done(
                    cycle,
                    success=False,
                    reason="restart_limit_exceeded",
                    terminal_state=result.terminal_state,
                    session_id=session_id,
                    limit_waits=limit_waits,
                    watermark=watermark,
                    last_message=result.last_message,
                )

            self._state = "restarting"
            log_event(
                LOGGER,
                "auto_restart_triggered",
                iteration=cycle.iteration,
                next_iteration=cycle.iteration + 1,
                uncommitted_changes=cycle.uncommitted_changes_detected,
                feedback=cycle.feedback_detected,
            )
            self._emit(
                "restart",
                "uncommitted changes" if cycle.uncommitted_changes_detected else "new feedback",
                cycle.iteration + 1,
                session_id,
            )
            cycle = RestartCycle(iteration=cycle.iteration + 1)
            prompts = decision.next_prompts
            resume_id = decision.next_resume_id

    def _execute(self, prompts: PromptPair, resume_id: str | None, iteration: int) -> SessionResult:
        def invoke(attempt: int) -> SessionResult:
            return self._session_runner.run(prompts, resume_session_id=resume_id)

        def on_retry(retry: RetryAttempt, result: SessionResult) -> None:
            self._emit(
                "overload_retry",
                f"attempt {retry.attempt_number} in {retry.delay_seconds:g}s",
                iteration,
                result.session_id,
            )

        return run_with_retry(
            invoke,
            max_retries=self._retry.max_retries,
            base_delay_seconds=self._retry.base_delay_seconds,
            cancel_event=self._cancel_event,
            on_retry=on_retry,
            wait=self._retry_wait,
        )

    def _inspect_success(
        self,
        cycle: RestartCycle,
        prompts: PromptPair,
        session_id: str | None,
        watermark: datetime | None,
    ) -> _Decision:
        if self._working_copy.has_uncommitted_changes():
            cycle = replace(cycle, uncommitted_changes_detected=True)
            policy = self._policy.uncommitted_changes
            log_event(LOGGER, "uncommitted_changes_detected", policy=policy)
            if policy == "restart":
                user = build_uncommitted_changes_prompt(
                    self._working_copy.status_lines(), self._working_copy.diff_stat()
                )
                # Resume so the agent keeps the context of the work it left uncommitted.
                return _Decision(
                    cycle=cycle,
                    watermark=watermark,
                    next_prompts=PromptPair(user=user, system=prompts.system),
                    next_resume_id=session_id,
                )
            if policy == "commit":
                try:
                    self._working_copy.commit_and_push(self._policy.commit_message)
                except CommandError as exc:
                    log_error_event(LOGGER, "auto_commit_failed", error=str(exc))
                    return _Decision(cycle=cycle, watermark=watermark, commit_failed=True)
                log_event(LOGGER, "auto_commit_pushed")
                return _Decision(cycle=cycle, watermark=watermark)
            log_warning_event(LOGGER, "uncommitted_changes_ignored")

        source = self._feedback_source
        if source is None:
            return _Decision(cycle=cycle, watermark=watermark)

        comments = self._poll_feedback(source, watermark)
        if not comments:
            return _Decision(cycle=cycle, watermark=watermark)

        status = self._poll_status(source)
        merge_state_status = (
            status.merge_state_status if status is not None else self._context.merge_state_status
        )
        newest = max(comment.created_at for comment in comments)
        log_event(LOGGER, "feedback_detected", comment_count=len(comments))
        context = replace(self._context, continue_mode=True, merge_state_status=merge_state_status)
        return _Decision(
            cycle=replace(cycle, feedback_detected=True),
            watermark=newest if watermark is None else max(watermark, newest),
            next_prompts=build_prompts(
                context, build_feedback_lines(comments, merge_state_status)
            ),
        )

    def _poll_feedback(
        self, source: FeedbackSource, watermark: datetime | None
    ) -> tuple[FeedbackComment, ...]:
        try:
            comments = source.list_feedback_since(watermark)
        except (TransientPollError, CommandError) as exc:
            log_warning_event(LOGGER, "feedback_check_failed", error=str(exc))
            return ()
        return tuple(
            comment for comment in comments if watermark is None or comment.created_at > watermark
        )

    def _poll_status(self, source: FeedbackSource) -> PullRequestStatus | None:
        try:
            return source.pull_request_status()
        except (TransientPollError, CommandError) as exc:
            log_warning_event(LOGGER, "pull_request_status_failed", error=str(exc))
            return None

    def _can_wait_for_reset(
        self, result: SessionResult, session_id: str | None, limit_waits: int
    ) -> bool:
        if not self._policy.auto_continue_on_limit:
            return False
        if result.reset_at is None:
            log_warning_event(LOGGER, "limit_reset_time_unknown", session_id=session_id)
            return False
        if session_id is None:
            log_warning_event(LOGGER, "limit_resume_without_session")
            return False
        if limit_waits >= self._policy.max_limit_waits:
            log_warning_event(
                LOGGER,
                "limit_waits_exhausted",
                limit_waits=limit_waits,
                max_limit_waits=self._policy.max_limit_waits,
            )
            return False
        return True

    def _finish_failure(
        self,
        cycle: RestartCycle,
        result: SessionResult,
        reason: FailureReason,
        session_id: str | None,
        limit_waits: int,
        watermark: datetime | None,
    ) -> CycleOutcome:
        return self._done(
            cycle,
            success=False,
            reason=reason,
            terminal_state=result.terminal_state,
            session_id=session_id,
            limit_waits=limit_waits,
            watermark=watermark,
            last_message=result.last_message,
            reset_at=result.reset_at,
        )

    def _cancelled(
        self,
        cycle: RestartCycle,
        limit_waits: int,
        session_id: str | None,
        watermark: datetime | None,
        last_result: SessionResult | None,
    ) -> CycleOutcome:
        self._state = "cancelled"
        log_warning_event(
            LOGGER,
            "restart_cycle_cancelled",
            iteration=cycle.iteration,
            session_id=session_id,
        )
        self._emit("cycle_finished", "cancelled", cycle.iteration, session_id)
        return CycleOutcome(
            success=False,
            state="cancelled",
            terminal_state="cancelled",
            failure_reason="cancelled",
            session_id=session_id,
            iterations=cycle.iteration,
            limit_waits=limit_waits,
            watermark=watermark,
            last_message=last_result.last_message if last_result is not None else None,
        )

    def _done(
        self,
        cycle: RestartCycle,
        *,
        success: bool,
        reason: FailureReason | None,
        terminal_state: TerminalState,
        session_id: str | None,
        limit_waits: int,
        watermark: datetime | None,
        last_message: str | None,
        reset_at: datetime | None = None,
    ) -> CycleOutcome:
        self._state = "done"
        log_event(
            LOGGER,
            "restart_cycle_finished",
            success=success,
            failure_reason=reason,
            terminal_state=terminal_state,
            iterations=cycle.iteration,
            session_id=session_id,
        )
        self._emit(
            "cycle_finished",
            "success" if success else f"failure: {reason}",
            cycle.iteration,
            session_id,
        )
        return CycleOutcome(
            success=success,
            state="done",
            terminal_state=terminal_state,
            failure_reason=reason,
            session_id=session_id,
            iterations=cycle.iteration,
            limit_waits=limit_waits,
            watermark=watermark,
            last_message=last_message,
            reset_at=reset_at,
        )

    def _emit(
        self, kind: str, detail: str, iteration: int | None, session_id: str | None
    ) -> None:
        if self._signal_sink is not None:
            self._signal_sink(
                ControllerSignal.now(
                    kind=kind, detail=detail, iteration=iteration, session_id=session_id
                )
            )
