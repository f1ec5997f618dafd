from __future__ import annotations

from queue import Empty, SimpleQueue
from typing import Callable

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Vertical, VerticalScroll
from textual.widgets import DataTable, Footer, Header, Static

from autosolve.models import ControllerSignal


_SIGNAL_DRAIN_SECONDS = 0.2
_DETAIL_MAX_CHARS = 80
_ROW_LIMIT = 500
FINISHED_SIGNAL_KIND = "solve_finished"


class SessionMonitorApp(App[None]):
    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("c", "cancel_run", "Cancel Run"),
    ]
    CSS = """
    Screen {
        layout: vertical;
    }
    .panel-title {
        text-style: bold;
        padding-left: 1;
    }
    #summary {
        height: 3;
        padding: 0 1;
    }
    #signals-table {
        height: 2fr;
    }
    #message-scroll {
        height: 1fr;
        border: round $boost;
        padding: 0 1;
    }
    """

    def __init__(
        self,
        *,
        signal_queue: SimpleQueue[ControllerSignal],
        on_shutdown: Callable[[], None] | None = None,
        exit_when_finished: bool = True,
    ) -> None:
        super().__init__()
        self._signal_queue = signal_queue
        self._on_shutdown = on_shutdown
        self._exit_when_finished = exit_when_finished
        self._shutdown_notified = False
        self._session_id: str | None = None
        self._iteration: int | None = None
        self._status = "running"
        self._signal_count = 0
        self._last_message = ""
        self._finished_detail: str | None = None

    @property
    def finished_detail(self) -> str | None:
        return self._finished_detail

    @property
    def signal_count(self) -> int:
        return self._signal_count

    @property
    def status(self) -> str:
        return self._status

    @property
    def last_message(self) -> str:
        return self._last_message

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        with Vertical():
            yield Static("", id="summary")
            yield Static("Controller Signals", classes="panel-title")
            yield DataTable(id="signals-table")
            yield Static("Last Agent Message", classes="panel-title")
            with VerticalScroll(id="message-scroll"):
                yield Static("", id="last-message")
        yield Footer()

    def on_mount(self) -> None:
        table = self.query_one("#signals-table", DataTable)
        table.add_columns("Time", "Kind", "Iter", "Session", "Detail")
        self._render_summary()
        self.set_interval(_SIGNAL_DRAIN_SECONDS, self.drain_signals)

    def action_cancel_run(self) -> None:
        self._status = "cancelling"
        self._render_summary()
        self._notify_shutdown()

    async def action_quit(self) -> None:
        self._notify_shutdown()
        await super().action_quit()

    def drain_signals(self) -> None:
        table = self.query_one("#signals-table", DataTable)
        while True:
            try:
                signal = self._signal_queue.get_nowait()
            except Empty:
                break
            self._apply_signal(signal)
            if signal.kind == "agent_message":
                continue
            table.add_row(
                signal.created_at.strftime("%H:%M:%S"),
                signal.kind,
                "-" if signal.iteration is None else str(signal.iteration),
                _short_session(signal.session_id),
                _truncate(signal.detail),
            )
            if table.row_count > _ROW_LIMIT:
                table.remove_row(next(iter(table.rows)))
            if signal.kind == FINISHED_SIGNAL_KIND and self._exit_when_finished:
                self.exit()
                return
        self._render_summary()

    def _apply_signal(self, signal: ControllerSignal) -> None:
        self._signal_count += 1
        if signal.session_id:
            self._session_id = signal.session_id
        if signal.iteration is not None:
            self._iteration = signal.iteration
        if signal.kind == "agent_message":
            self._last_message = signal.detail
            self.query_one("#last-message", Static).update(signal.detail)
        elif signal.kind == "limit_wait":
            self._status = f"waiting for limit reset ({signal.detail})"
        elif signal.kind == "session_started" and self._status != "cancelling":
            self._status = "running"
        elif signal.kind == FINISHED_SIGNAL_KIND:
            self._status = "finished"
            self._finished_detail = signal.detail

    def _render_summary(self) -> None:
        self.query_one("#summary", Static).update(
            _summary_text(
                status=self._status,
                iteration=self._iteration,
                session_id=self._session_id,
                signal_count=self._signal_count,
            )
        )

    def _notify_shutdown(self) -> None:
        if self._shutdown_notified:
            return
        self._shutdown_notified = True
        if self._on_shutdown is None:
            return
        self._on_shutdown()


def run_session_tui(
    *,
    signal_queue: SimpleQueue[ControllerSignal],
    on_shutdown: Callable[[], None] | None = None,
) -> None:
    app = SessionMonitorApp(signal_queue=signal_queue, on_shutdown=on_shutdown)
    app.run()


def _short_session(session_id: str | None) -> str:
    if not session_id:
        return "-"
    return session_id[:12]


def _truncate(text: str) -> str:
    collapsed = " ".join(text.split())
    if len(collapsed) <= _DETAIL_MAX_CHARS:
        return collapsed
    return f"{collapsed[: _DETAIL_MAX_CHARS - 3]}..."


def _summary_text(
    *, status: str, iteration: int | None, session_id: str | None, signal_count: int
) -> str:
    return (
        f"status={status} iteration={iteration if iteration is not None else '-'} "
        f"session={session_id or '-'} signals={signal_count}"
    )
