from __future__ import annotations

from collections.abc import Callable
from dataclasses import replace
import logging
import threading

from autosolve.models import RetryAttempt, SessionResult
from autosolve.observability import log_error_event, log_warning_event


LOGGER = logging.getLogger("autosolve.retry")

InvokeFn = Callable[[int], SessionResult]
RetryCallback = Callable[[RetryAttempt, SessionResult], None]
# Returns True when the wait was interrupted.
WaitFn = Callable[[float], bool]


def backoff_delays(max_retries: int, base_delay_seconds: float) -> tuple[float, ...]:
    return tuple(base_delay_seconds * 2**attempt for attempt in range(max_retries))


def run_with_retry(
    invoke_fn: InvokeFn,
    *,
    max_retries: int = 3,
    base_delay_seconds: float = 5.0,
    cancel_event: threading.Event | None = None,
    on_retry: RetryCallback | None = None,
    wait: WaitFn | None = None,
) -> SessionResult:
    """Invoke the agent, retrying provider overloads with exponential backoff.

    ``invoke_fn`` receives the zero-based attempt number. Every other terminal state is
    returned as soon as it is seen.
    """
    if max_retries < 0:
        raise ValueError("max_retries must be >= 0")
    event = cancel_event if cancel_event is not None else threading.Event()
    wait_fn = wait if wait is not None else event.wait

    attempt = 0
    while True:
        result = invoke_fn(attempt)
        if result.terminal_state != "overloaded":
            return result
        if attempt >= max_retries:
            log_error_event(
                LOGGER,
                "overload_retries_exhausted",
                attempts=attempt + 1,
                max_retries=max_retries,
                last_message=result.last_message,
            )
            return result

        retry = RetryAttempt(
            attempt_number=attempt + 1,
            delay_seconds=base_delay_seconds * 2**attempt,
        )
        log_warning_event(
            LOGGER,
            "overload_retry_scheduled",
            attempt=retry.attempt_number,
            max_retries=max_retries,
            delay_seconds=retry.delay_seconds,
        )
        if on_retry is not None:
            on_retry(retry, result)
        if wait_fn(retry.delay_seconds) or event.is_set():
            log_warning_event(LOGGER, "overload_retry_cancelled", attempt=retry.attempt_number)
            return replace(result, terminal_state="cancelled")
        attempt += 1
