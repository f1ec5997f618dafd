from __future__ import annotations

from collections.abc import Callable, Sequence
from pathlib import Path
import logging
import threading
import uuid

from autosolve.agent_adapter import AgentBackend
from autosolve.classifier import TERMINAL_MARKERS, TerminalMarker
from autosolve.models import ControllerSignal, PromptPair, SessionResult
from autosolve.observability import FileSessionLog, log_event


LOGGER = logging.getLogger("autosolve.session_runner")

SignalSink = Callable[[ControllerSignal], None]


class SessionRunner:
    """Runs one agent session to its terminal state.

    Output is classified as it arrives and every raw line is appended to the session log.
    """

    def __init__(
        self,
        backend: AgentBackend,
        *,
        working_dir: Path,
        log_dir: Path,
        cancel_event: threading.Event | None = None,
        signal_sink: SignalSink | None = None,
        markers: Sequence[TerminalMarker] = TERMINAL_MARKERS,
    ) -> None:
        self._backend = backend
        self._working_dir = working_dir
        self._log_dir = log_dir
        self._cancel_event = cancel_event
        self._signal_sink = signal_sink
        self._markers = tuple(markers)

    @property
    def backend(self) -> AgentBackend:
        return self._backend

    def run(self, prompts: PromptPair, *, resume_session_id: str | None = None) -> SessionResult:
        session_log = FileSessionLog(
            log_dir=self._log_dir, pending_name=f"pending-{uuid.uuid4().hex[:12]}"
        )
        classifier = self._backend.new_classifier(
            resume_of=resume_session_id, markers=self._markers
        )
        log_event(
            LOGGER,
            "agent_invocation_started",
            backend=self._backend.name,
            model=self._backend.model,
            resume_of=resume_session_id,
        )
        self._emit("session_started", f"backend={self._backend.name}", resume_session_id)

        result: SessionResult | None = None
        try:
            for event in self._backend.invoke(
                prompts,
                cwd=self._working_dir,
                resume_session_id=resume_session_id,
                cancel_event=self._cancel_event,
            ):
                if event.stream == "exit":
                    result = classifier.finish(
                        event.exit_code if event.exit_code is not None else -1,
                        cancelled=event.cancelled,
                        log_path=session_log.path,
                    )
                    break
                had_session_id = classifier.session_id is not None
                previous_message = classifier.last_message
                for line in classifier.observe(event):
                    session_log.write_line(event.stream, line)
                if not had_session_id and classifier.session_id is not None:
                    session_log.bind_session(classifier.session_id)
                    log_event(LOGGER, "session_id_captured", session_id=classifier.session_id)
                    self._emit("session_id", classifier.session_id, classifier.session_id)
                if classifier.last_message != previous_message and classifier.last_message:
                    self._emit("agent_message", classifier.last_message, classifier.session_id)
        finally:
            session_log.close()

        if result is None:
            raise RuntimeError("Agent output ended without an exit event")

        log_event(
            LOGGER,
            "agent_invocation_finished",
            session_id=result.session_id,
            terminal_state=result.terminal_state,
            exit_code=result.exit_code,
            message_count=result.message_count,
            tool_use_count=result.tool_use_count,
        )
        self._emit("session_finished", result.terminal_state, result.session_id)
        return result

    def _emit(self, kind: str, detail: str, session_id: str | None) -> None:
        if self._signal_sink is not None:
            self._signal_sink(ControllerSignal.now(kind=kind, detail=detail, session_id=session_id))
