from __future__ import annotations

import json
from pathlib import Path
import signal
import threading

import pytest

from autosolve import cli
from autosolve.config import AppConfig
from autosolve.models import CycleOutcome
from autosolve.solver import SolveRequest, SolveResult


ISSUE_URL = "https://github.com/octo/widgets/issues/12"


def _result(exit_code: int = 0) -> SolveResult:
    cycle = CycleOutcome(
        success=exit_code == 0,
        state="done",
        terminal_state="succeeded" if exit_code == 0 else "failed",
        failure_reason=None if exit_code == 0 else "failed",
        session_id="sess-1",
        iterations=1,
    )
    return SolveResult(cycle=cycle, watch=None, report="Result: success", exit_code=exit_code)


class FakeSolver:
    instances: list[FakeSolver] = []

    def __init__(self, config: AppConfig, *, cancel_event: threading.Event, signal_sink: object = None) -> None:
        self.config = config
        self.cancel_event = cancel_event
        self.signal_sink = signal_sink
        self.requests: list[SolveRequest] = []
        FakeSolver.instances.append(self)

    def solve(self, request: SolveRequest) -> SolveResult:
        self.requests.append(request)
        return _result(exit_code=1 if request.branch == "broken" else 0)


@pytest.fixture(autouse=True)
def _reset_fake_solver(monkeypatch: pytest.MonkeyPatch) -> None:
    FakeSolver.instances = []
    monkeypatch.setattr(cli, "Solver", FakeSolver)
    monkeypatch.setattr(cli, "configure_logging", lambda verbose, log_dir=None: None)


def test_build_parser_supports_commands() -> None:
    parser = cli.build_parser()

    parsed_run = parser.parse_args(
        [
            "run",
            "--issue-url",
            ISSUE_URL,
            "--branch",
            "issue-12",
            "--continue",
            "--watch",
            "--think",
            "max",
            "--fork",
            "me/widgets",
            "-v",
        ]
    )
    parsed_show = parser.parse_args(["show-config"])

    assert parsed_run.command == "run"
    assert parsed_run.continue_mode is True
    assert parsed_run.watch is True
    assert parsed_run.think == "max"
    assert parsed_run.forked_repo == "me/widgets"
    assert parsed_run.verbose is True
    assert parsed_run.tui is False
    assert parsed_show.command == "show-config"


def test_run_requires_issue_and_branch() -> None:
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(["run", "--branch", "x"])


def test_main_run_builds_request_and_exits_with_result_code(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.chdir(tmp_path)

    with pytest.raises(SystemExit) as exc_info:
        cli.main(
            [
                "run",
                "--cwd",
                str(tmp_path),
                "--issue-url",
                ISSUE_URL,
                "--branch",
                "issue-12",
                "--resume",
                "sess-0",
                "--model",
                "opus",
            ]
        )

    assert exc_info.value.code == 0
    solver = FakeSolver.instances[0]
    request = solver.requests[0]
    assert request.issue_url == ISSUE_URL
    assert request.working_dir == tmp_path.resolve()
    assert request.resume_session_id == "sess-0"
    assert request.watch is False
    assert solver.config.agent.model == "opus"
    assert solver.signal_sink is None
    assert "Result: success" in capsys.readouterr().out


def test_main_run_propagates_failure_exit_code(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    monkeypatch.chdir(tmp_path)

    with pytest.raises(SystemExit) as exc_info:
        cli.main(["run", "--issue-url", ISSUE_URL, "--branch", "broken"])

    assert exc_info.value.code == 1


def test_main_run_reads_config_file_and_watch_default(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    monkeypatch.chdir(tmp_path)
    (tmp_path / "autosolve.toml").write_text(
        '[agent]\nbackend = "codex"\n\n[watch]\nenabled = true\n', encoding="utf-8"
    )

    with pytest.raises(SystemExit):
        cli.main(["run", "--issue-url", ISSUE_URL, "--branch", "issue-12", "--backend", "claude"])

    solver = FakeSolver.instances[0]
    assert solver.config.agent.backend == "claude"
    assert solver.config.watch.enabled is True
    assert solver.requests[0].watch is True


def test_main_rejects_missing_explicit_config(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    with pytest.raises(SystemExit) as exc_info:
        cli.main(["show-config", "--config", str(tmp_path / "missing.toml")])

    assert exc_info.value.code == 2
    assert "Config file not found" in capsys.readouterr().err


def test_show_config_prints_effective_config(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.chdir(tmp_path)

    cli.main(["show-config"])

    payload = json.loads(capsys.readouterr().out)
    assert payload["agent"]["backend"] == "claude"
    assert payload["restart"]["max_iterations"] == 3
    assert payload["watch"]["interval_seconds"] == 60


def test_main_run_with_tui_uses_monitor(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    captured: dict[str, object] = {}

    def fake_run_with_monitor(*, solver_factory, request, cancel_event):  # type: ignore[no-untyped-def]
        sink: list[object] = []
        solver = solver_factory(sink.append)
        captured["solver"] = solver
        captured["cancel_event"] = cancel_event
        return solver.solve(request)

    monkeypatch.setattr(cli, "run_with_monitor", fake_run_with_monitor)

    with pytest.raises(SystemExit) as exc_info:
        cli.main(["run", "--issue-url", ISSUE_URL, "--branch", "issue-12", "--tui"])

    assert exc_info.value.code == 0
    solver = captured["solver"]
    assert isinstance(solver, FakeSolver)
    assert solver.signal_sink is not None
    assert solver.cancel_event is captured["cancel_event"]


def test_cancel_on_interrupt_sets_event_then_restores_handler() -> None:
    cancel_event = threading.Event()
    previous = signal.getsignal(signal.SIGINT)

    with cli._cancel_on_interrupt(cancel_event):
        handler = signal.getsignal(signal.SIGINT)
        assert callable(handler)
        handler(signal.SIGINT, None)
        assert cancel_event.is_set()
        with pytest.raises(KeyboardInterrupt):
            handler(signal.SIGINT, None)

    assert signal.getsignal(signal.SIGINT) == previous
