from __future__ import annotations

from collections.abc import Callable
from queue import SimpleQueue
import sys
from threading import Event, Thread

from autosolve.models import ControllerSignal
from autosolve.session_tui import FINISHED_SIGNAL_KIND, run_session_tui
from autosolve.solver import SignalSink, SolveRequest, SolveResult, Solver


_JOIN_TIMEOUT_SECONDS = 30.0

SolverFactory = Callable[[SignalSink], Solver]


def run_with_monitor(
    *,
    solver_factory: SolverFactory,
    request: SolveRequest,
    cancel_event: Event,
) -> SolveResult:
    """Run the solve on a worker thread while the live monitor owns the terminal."""
    if not _is_interactive_terminal():
        raise RuntimeError("The live monitor requires an interactive terminal. Drop --tui.")

    signals: SimpleQueue[ControllerSignal] = SimpleQueue()
    results: list[SolveResult] = []
    errors: list[BaseException] = []
    solver = solver_factory(signals.put)

    def run_solver_thread() -> None:
        try:
            result = solver.solve(request)
            results.append(result)
            signals.put(
                ControllerSignal.now(
                    kind=FINISHED_SIGNAL_KIND,
                    detail=f"exit_code={result.exit_code}",
                    session_id=result.cycle.session_id,
                )
            )
        except BaseException as exc:  # noqa: BLE001
            errors.append(exc)
            signals.put(ControllerSignal.now(kind=FINISHED_SIGNAL_KIND, detail=f"error: {exc}"))

    solver_thread = Thread(target=run_solver_thread, name="autosolve-solver", daemon=True)
    solver_thread.start()

    tui_error: BaseException | None = None
    try:
        run_session_tui(signal_queue=signals, on_shutdown=cancel_event.set)
    except BaseException as exc:  # noqa: BLE001
        tui_error = exc
        cancel_event.set()
    finally:
        # Quitting the monitor early cancels the run; otherwise the solver already finished.
        if solver_thread.is_alive():
            cancel_event.set()
        solver_thread.join(timeout=_JOIN_TIMEOUT_SECONDS)

    if solver_thread.is_alive():
        raise RuntimeError("Solver thread did not stop after the monitor shut down.")
    if errors:
        error = errors[0]
        if isinstance(error, Exception):
            raise error
        raise RuntimeError("Solver thread failed with a non-Exception error.") from error
    if tui_error is not None:
        raise tui_error
    return results[0]


def _is_interactive_terminal() -> bool:
    return bool(sys.stdin.isatty() and sys.stdout.isatty())
