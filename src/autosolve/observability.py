from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
import json
import logging
from pathlib import Path
import sys
from typing import Final, Iterator, Literal, TextIO, cast


_LOGGER_NAME: Final[str] = "autosolve"
_CYCLE_CONTEXT: ContextVar[dict[str, object]] = ContextVar("autosolve_cycle_context", default={})
_MAX_VALUE_LEN: Final[int] = 120
_VERBOSE_FORMAT: Final[str] = "%(asctime)s %(levelname)s %(name)s [%(threadName)s] %(message)s"
_LOW_VERBOSITY_EVENTS: Final[frozenset[str]] = frozenset(
    {
        "agent_invocation_started",
        "agent_invocation_finished",
        "session_id_captured",
        "overload_retry_scheduled",
        "restart_cycle_started",
        "restart_cycle_finished",
        "auto_restart_triggered",
        "limit_reset_wait_started",
        "watch_started",
        "watch_feedback_detected",
        "watch_stopped",
        "git_push_failed",
    }
)


VerboseMode = Literal["low", "high"]


def configure_logging(
    verbose: bool | str | None,
    *,
    log_dir: Path | None = None,
) -> None:
    """Route `autosolve` events to stderr and, with `log_dir`, to a UTC-dated file there."""
    logger = logging.getLogger(_LOGGER_NAME)
    logger.propagate = False
    logger.handlers.clear()
    mode = _normalize_verbose_mode(verbose)

    if mode is None:
        logger.addHandler(logging.NullHandler())
        logger.setLevel(logging.CRITICAL + 1)
        return

    stream_handler = logging.StreamHandler(sys.stderr)
    _configure_handler(stream_handler, mode)
    logger.addHandler(stream_handler)

    if log_dir is not None:
        file_handler = _UtcDailyFileHandler(log_dir=log_dir)
        _configure_handler(file_handler, mode)
        logger.addHandler(file_handler)

    logger.setLevel(logging.INFO)


def log_event(logger: logging.Logger, event: str, **fields: object) -> None:
    logger.info(_build_event_message(event=event, fields=fields))


def log_warning_event(logger: logging.Logger, event: str, **fields: object) -> None:
    logger.warning(_build_event_message(event=event, fields=fields))


def log_error_event(logger: logging.Logger, event: str, **fields: object) -> None:
    logger.error(_build_event_message(event=event, fields=fields))


@contextmanager
def logging_cycle_context(**fields: object) -> Iterator[None]:
    """Attach fields (working dir, iteration, ...) to every event logged in this block."""
    merged = {**_CYCLE_CONTEXT.get(), **fields}
    token = _CYCLE_CONTEXT.set(merged)
    try:
        yield
    finally:
        _CYCLE_CONTEXT.reset(token)


def _build_event_message(*, event: str, fields: dict[str, object]) -> str:
    combined = {**_CYCLE_CONTEXT.get(), **fields}
    parts = [f"event={_normalize_field_value(event)}"]
    for key in sorted(combined.keys()):
        parts.append(f"{key}={_normalize_field_value(combined[key])}")
    return " ".join(parts)


def _normalize_field_value(value: object) -> str:
    if value is None:
        normalized = "null"
    elif isinstance(value, bool):
        normalized = "true" if value else "false"
    elif isinstance(value, int | float):
        normalized = str(value)
    elif isinstance(value, datetime):
        normalized = value.isoformat()
    elif isinstance(value, Path):
        normalized = str(value)
    elif isinstance(value, str):
        collapsed = " ".join(value.split())
        if len(collapsed) > _MAX_VALUE_LEN:
            collapsed = f"{collapsed[:_MAX_VALUE_LEN]}..."
        normalized = collapsed if collapsed else "<empty>"
    else:
        normalized = f"<{type(value).__name__}>"

    if any(ch.isspace() for ch in normalized) or "=" in normalized:
        return json.dumps(normalized)
    return normalized


def _normalize_verbose_mode(verbose: bool | str | None) -> VerboseMode | None:
    if verbose is None:
        return None
    if isinstance(verbose, bool):
        return "high" if verbose else None
    normalized = verbose.strip().lower()
    if normalized in {"low", "high"}:
        return cast(VerboseMode, normalized)
    raise ValueError(f"Unsupported verbose mode: {verbose!r}")


def _configure_handler(handler: logging.Handler, mode: VerboseMode) -> None:
    handler.setFormatter(logging.Formatter(_VERBOSE_FORMAT))
    if mode == "low":
        handler.addFilter(_LowVerbosityFilter())


def _extract_event_name(message: str) -> str | None:
    if not message.startswith("event="):
        return None
    first_field = message.split(" ", 1)[0]
    if first_field == "event=":
        return None
    return first_field[len("event=") :]


class _LowVerbosityFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= logging.WARNING:
            return True
        event_name = _extract_event_name(record.getMessage())
        return event_name in _LOW_VERBOSITY_EVENTS


class _UtcDailyFileHandler(logging.Handler):
    def __init__(self, *, log_dir: Path) -> None:
        super().__init__()
        self._logs_dir = log_dir
        self._stream: TextIO | None = None
        self._active_date = ""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            stream = self._stream_for_current_date()
            stream.write(f"{self.format(record)}\n")
            stream.flush()
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        self.acquire()
        try:
            self._close_stream()
            super().close()
        finally:
            self.release()

    def _stream_for_current_date(self) -> TextIO:
        date_key = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        if self._stream is None or self._active_date != date_key:
            self._close_stream()
            self._logs_dir.mkdir(parents=True, exist_ok=True)
            # Shares the directory with `<session_id>.log` transcripts.
            path = self._logs_dir / f"autosolve-{date_key}.log"
            self._stream = path.open("a", encoding="utf-8")
            self._active_date = date_key
        return self._stream

    def _close_stream(self) -> None:
        if self._stream is not None:
            self._stream.close()
            self._stream = None


class FileSessionLog:
    """Raw agent output sink.

    Lines are appended to ``<log_dir>/<pending_name>.log`` until the agent reports its
    session id, after which the file is renamed to ``<session_id>.log`` so a manual
    resume can find the transcript. Resumed sessions append to the existing transcript.
    """

    def __init__(self, *, log_dir: Path, pending_name: str) -> None:
        self._log_dir = log_dir
        self._path = log_dir / f"{pending_name}.log"
        self._stream: TextIO | None = None

    @property
    def path(self) -> Path:
        return self._path

    def write_line(self, stream_name: str, line: str) -> None:
        handle = self._open()
        if stream_name == "stdout":
            handle.write(f"{line}\n")
        else:
            handle.write(f"[{stream_name}] {line}\n")
        handle.flush()

    def bind_session(self, session_id: str) -> None:
        target = self._log_dir / f"{session_id}.log"
        if target == self._path:
            return
        self.close()
        try:
            if self._path.exists():
                if target.exists():
                    # A resumed session keeps its earlier transcript; append after it.
                    with target.open("a", encoding="utf-8") as handle:
                        handle.write(self._path.read_text(encoding="utf-8"))
                    self._path.unlink()
                else:
                    self._path.rename(target)
        except OSError as exc:
            log_warning_event(
                logging.getLogger("autosolve.observability"),
                "session_log_rename_failed",
                path=str(self._path),
                target=str(target),
                error=str(exc),
            )
            return
        self._path = target

    def close(self) -> None:
        if self._stream is not None:
            self._stream.close()
            self._stream = None

    def _open(self) -> TextIO:
        if self._stream is None:
            self._log_dir.mkdir(parents=True, exist_ok=True)
            self._stream = self._path.open("a", encoding="utf-8")
        return self._stream
