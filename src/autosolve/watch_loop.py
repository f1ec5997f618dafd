from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
import logging
import threading

from autosolve.errors import TransientPollError
from autosolve.models import ControllerSignal, CycleOutcome, WatchFinalState
from autosolve.observability import log_error_event, log_event, log_warning_event
from autosolve.prompts import build_feedback_lines
from autosolve.restart_controller import FeedbackSource
from autosolve.retry import WaitFn
from autosolve.shell import CommandError


LOGGER = logging.getLogger("autosolve.watch_loop")

# Receives the rendered feedback lines and the watermark of the newest comment in them.
CycleRunner = Callable[[Sequence[str], datetime], CycleOutcome]
SignalSink = Callable[[ControllerSignal], None]


@dataclass(frozen=True)
class WatchOutcome:
    final_state: WatchFinalState
    watermark: datetime | None
    cycles: int
    polls: int
    last_cycle: CycleOutcome | None = None
    failed_cycles: int = 0


class WatchLoop:
    """Polls a pull request for reviewer feedback and runs one restart cycle per batch.

    Stops when the pull request is merged or closed, after too many consecutive poll
    failures, or when cancelled. A failed cycle is logged and polling goes on.
    """

    def __init__(
        self,
        feedback_source: FeedbackSource,
        run_cycle: CycleRunner,
        *,
        interval_seconds: float = 60,
        max_consecutive_errors: int = 10,
        cancel_event: threading.Event | None = None,
        wait: WaitFn | None = None,
        signal_sink: SignalSink | None = None,
    ) -> None:
        self._feedback_source = feedback_source
        self._run_cycle = run_cycle
        self._interval_seconds = interval_seconds
        self._max_consecutive_errors = max_consecutive_errors
        self._cancel_event = cancel_event if cancel_event is not None else threading.Event()
        self._wait = wait if wait is not None else self._cancel_event.wait
        self._signal_sink = signal_sink
        self._failed_cycles = 0

    def run(self, watermark: datetime | None) -> WatchOutcome:
        consecutive_errors = 0
        self._failed_cycles = 0
        cycles = 0
        polls = 0
        last_cycle: CycleOutcome | None = None
        log_event(
            LOGGER,
            "watch_started",
            interval_seconds=self._interval_seconds,
            watermark=watermark.isoformat() if watermark is not None else None,
        )

        while True:
            if self._cancel_event.is_set():
                return self._stop("cancelled", watermark, cycles, polls, last_cycle)

            polls += 1
            try:
                status = self._feedback_source.pull_request_status()
                if status is not None and status.state in {"merged", "closed"}:
                    final_state: WatchFinalState = (
                        "merged" if status.state == "merged" else "closed"
                    )
                    return self._stop(final_state, watermark, cycles, polls, last_cycle)
                comments = self._feedback_source.list_feedback_since(watermark)
            except (TransientPollError, CommandError) as exc:
                consecutive_errors += 1
                log_warning_event(
                    LOGGER,
                    "watch_poll_failed",
                    consecutive_errors=consecutive_errors,
                    max_consecutive_errors=self._max_consecutive_errors,
                    error=str(exc),
                )
                if consecutive_errors >= self._max_consecutive_errors:
                    log_error_event(
                        LOGGER, "watch_poll_errors_exhausted", consecutive_errors=consecutive_errors
                    )
                    return self._stop("errors_exhausted", watermark, cycles, polls, last_cycle)
                if self._wait(self._interval_seconds):
                    return self._stop("cancelled", watermark, cycles, polls, last_cycle)
                continue

            consecutive_errors = 0
            new_comments = tuple(
                comment
                for comment in comments
                if watermark is None or comment.created_at > watermark
            )
            if new_comments:
                newest = max(comment.created_at for comment in new_comments)
                log_event(
                    LOGGER,
                    "watch_feedback_detected",
                    comment_count=len(new_comments),
                    newest=newest.isoformat(),
                )
                self._emit("feedback_detected", f"{len(new_comments)} new comment(s)")
                lines = build_feedback_lines(
                    new_comments, status.merge_state_status if status is not None else None
                )
                last_cycle = self._run_cycle(lines, newest)
                cycles += 1
                watermark = newest
                if last_cycle.watermark is not None and last_cycle.watermark > watermark:
                    watermark = last_cycle.watermark
                if last_cycle.state == "cancelled":
                    return self._stop("cancelled", watermark, cycles, polls, last_cycle)
                if not last_cycle.success:
                    self._failed_cycles += 1
                    log_warning_event(
                        LOGGER,
                        "watch_cycle_failed",
                        failure_reason=last_cycle.failure_reason,
                        session_id=last_cycle.session_id,
                        failed_cycles=self._failed_cycles,
                    )
                    self._emit("cycle_failed", str(last_cycle.failure_reason))
                # Poll again right away; the cycle may have taken a while.
                continue

            if self._wait(self._interval_seconds):
                return self._stop("cancelled", watermark, cycles, polls, last_cycle)

    def _stop(
        self,
        final_state: WatchFinalState,
        watermark: datetime | None,
        cycles: int,
        polls: int,
        last_cycle: CycleOutcome | None,
    ) -> WatchOutcome:
        log_event(
            LOGGER,
            "watch_stopped",
            final_state=final_state,
            cycles=cycles,
            failed_cycles=self._failed_cycles,
            polls=polls,
        )
        self._emit("watch_stopped", final_state)
        return WatchOutcome(
            final_state=final_state,
            watermark=watermark,
            cycles=cycles,
            polls=polls,
            last_cycle=last_cycle,
            failed_cycles=self._failed_cycles,
        )

    def _emit(self, kind: str, detail: str) -> None:
        if self._signal_sink is not None:
            self._signal_sink(ControllerSignal.now(kind=kind, detail=detail))
