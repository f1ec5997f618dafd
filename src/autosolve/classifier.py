from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
import json
from pathlib import Path
from typing import cast

from autosolve.models import OutputEvent, SessionResult, SessionState, TerminalState
from autosolve.reset_time import parse_reset_time


@dataclass(frozen=True)
class RecordFacts:
    session_id: str | None = None
    message_count: int = 0
    tool_use_count: int = 0
    text: str | None = None


RecordInterpreter = Callable[[dict[str, object]], RecordFacts]


@dataclass(frozen=True)
class TerminalMarker:
    name: str
    predicate: Callable[[str], bool]
    state: TerminalState


def contains_all(*needles: str) -> Callable[[str], bool]:
    lowered = tuple(needle.lower() for needle in needles)
    return lambda text: all(needle in text.lower() for needle in lowered)


def contains_any(*needles: str) -> Callable[[str], bool]:
    lowered = tuple(needle.lower() for needle in needles)
    return lambda text: any(needle in text.lower() for needle in lowered)


# Evaluated in order; the first match wins.
TERMINAL_MARKERS: tuple[TerminalMarker, ...] = (
    TerminalMarker("overload_http_500", contains_all("API Error: 500", "Overloaded"), "overloaded"),
    TerminalMarker("overload_api_error", contains_all("api_error", "Overloaded"), "overloaded"),
    TerminalMarker(
        "rate_limit",
        contains_any(
            "rate_limit_exceeded",
            "You have exceeded your rate limit",
            "rate limit",
            "usage limit reached",
            "hit your limit",
        ),
        "rate_limited",
    ),
    TerminalMarker(
        "context_length",
        contains_any("context_length_exceeded", "Prompt is too long"),
        "context_exceeded",
    ),
)


def with_markers(
    extra: Sequence[TerminalMarker],
    *,
    base: Sequence[TerminalMarker] = TERMINAL_MARKERS,
    first: bool = True,
) -> tuple[TerminalMarker, ...]:
    if first:
        return (*extra, *base)
    return (*base, *extra)


def classify_terminal_state(
    exit_code: int,
    text: str | None,
    *,
    cancelled: bool = False,
    markers: Sequence[TerminalMarker] = TERMINAL_MARKERS,
) -> TerminalState:
    if cancelled:
        return "cancelled"
    if exit_code == 0:
        return "succeeded"
    if text:
        for marker in markers:
            if marker.predicate(text):
                return marker.state
    return "failed"


def parse_record(line: str) -> dict[str, object] | None:
    text = line.strip()
    if not text.startswith("{"):
        return None
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return None
    return as_object_dict(payload)


def as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


class OutputClassifier:
    """Folds one session's output events into its running state.

    Each stdout line that parses as a JSON object is handed to the backend's record
    interpreter; anything else is passed through for logging only.
    """

    def __init__(
        self,
        interpret_record: RecordInterpreter,
        *,
        model: str | None,
        resume_of: str | None = None,
        markers: Sequence[TerminalMarker] = TERMINAL_MARKERS,
    ) -> None:
        self._interpret_record = interpret_record
        self._markers = tuple(markers)
        self._state = SessionState(model=model, resume_of=resume_of)
        self._last_unstructured: str | None = None

    @property
    def session_id(self) -> str | None:
        return self._state.session_id

    @property
    def message_count(self) -> int:
        return self._state.message_count

    @property
    def tool_use_count(self) -> int:
        return self._state.tool_use_count

    @property
    def last_message(self) -> str | None:
        return self._state.last_message

    @property
    def terminal_state(self) -> TerminalState:
        return self._state.terminal_state

    def observe(self, event: OutputEvent) -> tuple[str, ...]:
        if self._state.terminal_state != "running":
            raise RuntimeError("Cannot observe output after the session finished")
        if event.stream == "exit":
            raise ValueError("Exit events are handled by finish()")

        forwarded: list[str] = []
        for line in event.raw.split("\n"):
            forwarded.append(line)
            record = parse_record(line) if event.stream == "stdout" else None
            if record is None:
                if line.strip():
                    self._last_unstructured = line.strip()
                continue
            self._apply(self._interpret_record(record))
        return tuple(forwarded)

    def finish(
        self,
        exit_code: int,
        *,
        cancelled: bool = False,
        now: datetime | None = None,
        log_path: Path | None = None,
    ) -> SessionResult:
        if self._state.terminal_state != "running":
            raise RuntimeError("Session already finished")
        # Unstructured output only feeds classification when no structured text was seen.
        text = self._state.last_message or self._last_unstructured
        terminal_state = classify_terminal_state(
            exit_code, text, cancelled=cancelled, markers=self._markers
        )
        self._state.terminal_state = terminal_state
        reset_at = None
        if terminal_state == "rate_limited" and text:
            reset_at = parse_reset_time(text, now=now)
        return SessionResult(
            session_id=self._state.session_id,
            model=self._state.model,
            resume_of=self._state.resume_of,
            message_count=self._state.message_count,
            tool_use_count=self._state.tool_use_count,
            last_message=self._state.last_message,
            terminal_state=terminal_state,
            exit_code=exit_code,
            reset_at=reset_at,
            log_path=log_path,
        )

    def _apply(self, facts: RecordFacts) -> None:
        if facts.session_id and self._state.session_id is None:
            self._state.session_id = facts.session_id
        self._state.message_count += facts.message_count
        self._state.tool_use_count += facts.tool_use_count
        if facts.text:
            self._state.last_message = facts.text
