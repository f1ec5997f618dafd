from __future__ import annotations

import argparse
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import asdict, replace
import json
from pathlib import Path
import signal
import sys
import threading
from types import FrameType

from autosolve.config import AppConfig, ConfigError, load_config
from autosolve.models import ControllerSignal
from autosolve.monitor_mode import run_with_monitor
from autosolve.observability import configure_logging
from autosolve.solver import SolveRequest, SolveResult, Solver


DEFAULT_CONFIG_PATH = Path("autosolve.toml")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="autosolve")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser(
        "run", help="Run the coding agent against an issue until the work is committed"
    )
    run_parser.add_argument("--config", type=Path, default=None)
    run_parser.add_argument(
        "--cwd",
        type=Path,
        default=None,
        help="Working copy the agent runs in (defaults to the current directory)",
    )
    run_parser.add_argument("--issue-url", required=True, help="GitHub issue or pull request URL")
    run_parser.add_argument("--pr-url", default=None, help="Pull request to watch for feedback")
    run_parser.add_argument("--branch", required=True, help="Branch the agent works on")
    run_parser.add_argument("--resume", default=None, help="Resume an earlier agent session id")
    run_parser.add_argument(
        "--continue",
        dest="continue_mode",
        action="store_true",
        help="Continue work on an existing pull request",
    )
    run_parser.add_argument(
        "--watch",
        action="store_true",
        help="Keep polling the pull request for feedback after the first cycle",
    )
    run_parser.add_argument("--backend", choices=("claude", "codex"), default=None)
    run_parser.add_argument("--model", default=None)
    run_parser.add_argument(
        "--think", choices=("low", "medium", "high", "max"), default=None
    )
    run_parser.add_argument(
        "--fork", dest="forked_repo", default=None, help="owner/name of the fork to push to"
    )
    run_parser.add_argument(
        "--tui", action="store_true", help="Show the live session monitor while running"
    )
    run_parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose runtime logging to stderr",
    )

    show_parser = subparsers.add_parser("show-config", help="Print the effective configuration")
    show_parser.add_argument("--config", type=Path, default=None)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        config = _load_app_config(args.config)
    except ConfigError as exc:
        parser.error(str(exc))

    if args.command == "show-config":
        _cmd_show_config(config)
        return
    if args.command == "run":
        raise SystemExit(_cmd_run(config, args))

    raise RuntimeError(f"Unknown command: {args.command}")


def _load_app_config(path: Path | None) -> AppConfig:
    if path is not None:
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
        return load_config(path)
    if DEFAULT_CONFIG_PATH.exists():
        return load_config(DEFAULT_CONFIG_PATH)
    return AppConfig()


def _cmd_show_config(config: AppConfig) -> None:
    print(json.dumps(asdict(config), indent=2, sort_keys=True, default=str))


def _cmd_run(config: AppConfig, args: argparse.Namespace) -> int:
    config = apply_overrides(config, args)
    verbose = "high" if args.verbose else config.runtime.verbose
    configure_logging(verbose, log_dir=config.runtime.log_dir if verbose else None)

    request = SolveRequest(
        issue_url=args.issue_url,
        branch=args.branch,
        working_dir=(args.cwd or Path.cwd()).resolve(),
        pr_url=args.pr_url,
        resume_session_id=args.resume,
        continue_mode=bool(args.continue_mode),
        watch=bool(args.watch) or config.watch.enabled,
        forked_repo=args.forked_repo,
        think=args.think,
        config_path=args.config,
    )
    cancel_event = threading.Event()

    def make_solver(signal_sink: Callable[[ControllerSignal], None] | None) -> Solver:
        return Solver(config, cancel_event=cancel_event, signal_sink=signal_sink)

    if args.tui:
        result = run_with_monitor(
            solver_factory=make_solver, request=request, cancel_event=cancel_event
        )
    else:
        with _cancel_on_interrupt(cancel_event):
            result = make_solver(None).solve(request)
    return _report(result)


def apply_overrides(config: AppConfig, args: argparse.Namespace) -> AppConfig:
    agent = config.agent
    if args.backend is not None:
        agent = replace(agent, backend=args.backend)
    if args.model is not None:
        agent = replace(agent, model=args.model)
    return replace(config, agent=agent)


def _report(result: SolveResult) -> int:
    print(result.report)
    return result.exit_code


@contextmanager
def _cancel_on_interrupt(cancel_event: threading.Event) -> Iterator[None]:
    """Route SIGINT to the cancel event; a second interrupt raises KeyboardInterrupt."""

    def handle(signum: int, frame: FrameType | None) -> None:
        if cancel_event.is_set():
            raise KeyboardInterrupt
        print("Interrupt received; cancelling the running session...", file=sys.stderr)
        cancel_event.set()

    previous = signal.getsignal(signal.SIGINT)
    signal.signal(signal.SIGINT, handle)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous if previous is not None else signal.SIG_DFL)
