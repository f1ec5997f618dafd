from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from pathlib import Path
import shlex
import threading

from autosolve.classifier import TERMINAL_MARKERS, OutputClassifier, RecordFacts, TerminalMarker
from autosolve.config import AgentConfig
from autosolve.models import AgentBackendName, OutputEvent, PromptPair
from autosolve.process_stream import stream_process


@dataclass(frozen=True)
class AgentInvocation:
    argv: tuple[str, ...]
    input_text: str | None

    def render(self) -> str:
        return shlex.join(self.argv)


class AgentBackend(ABC):
    """One agent CLI: how to launch it and how to read its JSON records.

    Controllers only talk to this interface; command flags and record shapes stay in the
    concrete backends.
    """

    name: AgentBackendName

    def __init__(self, config: AgentConfig) -> None:
        self._config = config

    @property
    def model(self) -> str | None:
        return self._config.model

    @abstractmethod
    def build_invocation(
        self, prompts: PromptPair, *, resume_session_id: str | None = None
    ) -> AgentInvocation:
        """Return the argv and stdin payload for one session."""

    @abstractmethod
    def interpret_record(self, record: dict[str, object]) -> RecordFacts:
        """Extract session id, counters, and text from one parsed output record."""

    @abstractmethod
    def resume_command(self, session_id: str, *, working_dir: Path) -> str:
        """Shell command an operator can run to continue the session by hand."""

    def invoke(
        self,
        prompts: PromptPair,
        *,
        cwd: Path,
        resume_session_id: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> Iterator[OutputEvent]:
        invocation = self.build_invocation(prompts, resume_session_id=resume_session_id)
        return stream_process(
            list(invocation.argv),
            cwd=cwd,
            input_text=invocation.input_text,
            cancel_event=cancel_event,
        )

    def new_classifier(
        self,
        *,
        resume_of: str | None = None,
        markers: Sequence[TerminalMarker] = TERMINAL_MARKERS,
    ) -> OutputClassifier:
        return OutputClassifier(
            self.interpret_record,
            model=self.model,
            resume_of=resume_of,
            markers=markers,
        )
