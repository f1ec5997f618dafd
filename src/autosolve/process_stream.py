from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path
import logging
import queue
import subprocess
import threading
from typing import IO

from autosolve.errors import SpawnError
from autosolve.models import OutputEvent, OutputStream
from autosolve.observability import log_event, log_warning_event


LOGGER = logging.getLogger("autosolve.process_stream")

_POLL_SECONDS = 0.2
_DEFAULT_TERMINATE_GRACE_SECONDS = 10.0

_QueueItem = tuple[OutputStream, str | None]


def stream_process(
    argv: list[str],
    *,
    cwd: Path,
    input_text: str | None = None,
    cancel_event: threading.Event | None = None,
    terminate_grace_seconds: float = _DEFAULT_TERMINATE_GRACE_SECONDS,
) -> Iterator[OutputEvent]:
    """Run ``argv`` and yield its output lines in arrival order.

    The last event is always ``stream="exit"`` carrying the exit code. Setting
    ``cancel_event`` terminates the process and marks the exit event as cancelled.
    """
    try:
        proc = subprocess.Popen(
            argv,
            cwd=str(cwd),
            stdin=subprocess.PIPE if input_text is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            bufsize=1,
        )
    except OSError as exc:
        raise SpawnError(f"Could not start agent binary {argv[0]!r}: {exc}") from exc

    log_event(LOGGER, "agent_process_started", pid=proc.pid, binary=argv[0])
    events: queue.SimpleQueue[_QueueItem] = queue.SimpleQueue()
    threads = [
        threading.Thread(
            target=_drain,
            args=(proc.stdout, "stdout", events),
            name="agent-stdout",
            daemon=True,
        ),
        threading.Thread(
            target=_drain,
            args=(proc.stderr, "stderr", events),
            name="agent-stderr",
            daemon=True,
        ),
    ]
    if input_text is not None:
        threads.append(
            threading.Thread(
                target=_feed_stdin,
                args=(proc.stdin, input_text),
                name="agent-stdin",
                daemon=True,
            )
        )
    for thread in threads:
        thread.start()

    cancelled = False
    open_streams = 2
    try:
        while open_streams:
            if not cancelled and cancel_event is not None and cancel_event.is_set():
                cancelled = True
                log_event(LOGGER, "agent_process_cancelling", pid=proc.pid)
                _terminate(proc, grace_seconds=terminate_grace_seconds)
            try:
                stream_name, line = events.get(timeout=_POLL_SECONDS)
            except queue.Empty:
                continue
            if line is None:
                open_streams -= 1
                continue
            yield OutputEvent(stream=stream_name, raw=line)

        exit_code = proc.wait()
        for thread in threads:
            thread.join(timeout=_POLL_SECONDS)
        log_event(
            LOGGER,
            "agent_process_exited",
            pid=proc.pid,
            exit_code=exit_code,
            cancelled=cancelled,
        )
        yield OutputEvent(stream="exit", raw="", exit_code=exit_code, cancelled=cancelled)
    finally:
        if proc.poll() is None:
            _terminate(proc, grace_seconds=terminate_grace_seconds)


def _drain(pipe: IO[str] | None, stream_name: OutputStream, events: queue.SimpleQueue[_QueueItem]) -> None:
    if pipe is None:
        events.put((stream_name, None))
        return
    try:
        for line in pipe:
            events.put((stream_name, line.rstrip("\r\n")))
    finally:
        pipe.close()
        events.put((stream_name, None))


def _feed_stdin(pipe: IO[str] | None, text: str) -> None:
    if pipe is None:
        return
    try:
        pipe.write(text)
    except BrokenPipeError:
        log_warning_event(LOGGER, "agent_stdin_closed_early", prompt_chars=len(text))
    finally:
        try:
            pipe.close()
        except BrokenPipeError:
            log_warning_event(LOGGER, "agent_stdin_closed_early", prompt_chars=len(text))


def _terminate(proc: subprocess.Popen[str], *, grace_seconds: float) -> None:
    proc.terminate()
    try:
        proc.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        log_warning_event(LOGGER, "agent_process_killed", pid=proc.pid)
        proc.kill()
        proc.wait()
