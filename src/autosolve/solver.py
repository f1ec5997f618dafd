from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
import logging
import shlex
import threading

from autosolve.agent_adapter import AgentBackend
from autosolve.claude_adapter import ClaudeBackend
from autosolve.codex_adapter import CodexBackend
from autosolve.config import AgentConfig, AppConfig
from autosolve.feedback import PullRequestFeedbackSource
from autosolve.git_ops import GitWorkingCopy
from autosolve.github_gateway import GitHubGateway, parse_github_url
from autosolve.models import ControllerSignal, CycleOutcome
from autosolve.observability import log_event, log_warning_event, logging_cycle_context
from autosolve.prompts import PromptContext, ThinkLevel
from autosolve.restart_controller import (
    EventWaiter,
    FeedbackSource,
    RestartController,
    Waiter,
    WorkingCopy,
)
from autosolve.session_runner import SessionRunner
from autosolve.watch_loop import WatchLoop, WatchOutcome


LOGGER = logging.getLogger("autosolve.solver")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CANCELLED = 130

SignalSink = Callable[[ControllerSignal], None]


@dataclass(frozen=True)
class SolveRequest:
    issue_url: str
    branch: str
    working_dir: Path
    pr_url: str | None = None
    resume_session_id: str | None = None
    continue_mode: bool = False
    watch: bool = False
    forked_repo: str | None = None
    think: ThinkLevel | None = None
    merge_state_status: str | None = None
    config_path: Path | None = None


@dataclass(frozen=True)
class SolveResult:
    cycle: CycleOutcome
    watch: WatchOutcome | None
    report: str
    exit_code: int


def build_backend(config: AgentConfig) -> AgentBackend:
    if config.backend == "codex":
        return CodexBackend(config)
    return ClaudeBackend(config)


def build_prompt_context(request: SolveRequest) -> PromptContext:
    issue_ref = parse_github_url(request.issue_url)
    pr_number: int | None = None
    if request.pr_url is not None:
        pr_number = parse_github_url(request.pr_url).number
    elif issue_ref.kind == "pull":
        pr_number = issue_ref.number
    return PromptContext(
        owner=issue_ref.owner,
        repo=issue_ref.repo,
        issue_url=request.issue_url,
        issue_number=issue_ref.number if issue_ref.kind == "issue" else None,
        pr_number=pr_number,
        pr_url=request.pr_url,
        branch=request.branch,
        working_dir=str(request.working_dir),
        continue_mode=request.continue_mode,
        merge_state_status=request.merge_state_status,
        forked_repo=request.forked_repo,
        think=request.think,
    )


class Solver:
    """Runs the restart cycle for one issue and, when asked, keeps watching its pull request."""

    def __init__(
        self,
        config: AppConfig,
        *,
        cancel_event: threading.Event,
        signal_sink: SignalSink | None = None,
        backend: AgentBackend | None = None,
        working_copy: WorkingCopy | None = None,
        feedback_source: FeedbackSource | None = None,
        waiter: Waiter | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config
        self._cancel_event = cancel_event
        self._signal_sink = signal_sink
        self._backend = backend or build_backend(config.agent)
        self._working_copy = working_copy
        self._feedback_source = feedback_source
        self._waiter = waiter or EventWaiter(cancel_event)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def backend(self) -> AgentBackend:
        return self._backend

    def solve(self, request: SolveRequest) -> SolveResult:
        context = build_prompt_context(request)
        working_copy = self._working_copy or GitWorkingCopy(request.working_dir, request.branch)
        feedback_source = self._feedback_source
        if feedback_source is None and context.pr_number is not None:
            feedback_source = PullRequestFeedbackSource(
                GitHubGateway(owner=context.owner, name=context.repo),
                pr_number=context.pr_number,
                issue_number=context.issue_number,
            )

        session_runner = SessionRunner(
            self._backend,
            working_dir=request.working_dir,
            log_dir=self._config.runtime.log_dir,
            cancel_event=self._cancel_event,
            signal_sink=self._signal_sink,
        )
        controller = RestartController(
            session_runner=session_runner,
            working_copy=working_copy,
            prompt_context=context,
            policy=self._config.restart,
            retry=self._config.retry,
            waiter=self._waiter,
            cancel_event=self._cancel_event,
            feedback_source=feedback_source,
            signal_sink=self._signal_sink,
        )

        with logging_cycle_context(
            working_dir=str(request.working_dir), backend=self._backend.name
        ):
            started_at = self._clock()
            log_event(
                LOGGER,
                "solve_started",
                issue_url=request.issue_url,
                branch=request.branch,
                resume_of=request.resume_session_id,
                watch=request.watch,
            )
            cycle = controller.run(
                resume_session_id=request.resume_session_id,
                watermark=started_at if feedback_source is not None else None,
            )

            watch_outcome: WatchOutcome | None = None
            if request.watch and cycle.success:
                if feedback_source is None:
                    log_warning_event(LOGGER, "watch_skipped_without_pull_request")
                else:
                    loop = WatchLoop(
                        feedback_source,
                        lambda lines, watermark: _run_feedback_cycle(controller, lines, watermark),
                        interval_seconds=self._config.watch.interval_seconds,
                        max_consecutive_errors=self._config.watch.max_consecutive_errors,
                        cancel_event=self._cancel_event,
                        signal_sink=self._signal_sink,
                    )
                    watch_outcome = loop.run(cycle.watermark or started_at)

        final_cycle = cycle
        if watch_outcome is not None and watch_outcome.last_cycle is not None:
            final_cycle = watch_outcome.last_cycle
        exit_code = _exit_code(final_cycle, watch_outcome)
        report = render_report(
            request,
            final_cycle,
            watch_outcome,
            backend=self._backend,
            log_dir=self._config.runtime.log_dir,
        )
        return SolveResult(cycle=final_cycle, watch=watch_outcome, report=report, exit_code=exit_code)


def _run_feedback_cycle(
    controller: RestartController, lines: Sequence[str], watermark: datetime
) -> CycleOutcome:
    return controller.run(feedback_lines=lines, watermark=watermark)


def _exit_code(cycle: CycleOutcome, watch: WatchOutcome | None) -> int:
    if cycle.state == "cancelled" or (watch is not None and watch.final_state == "cancelled"):
        return EXIT_CANCELLED
    if watch is not None:
        # Once watching, the pull request outcome decides the exit code.
        return EXIT_OK if watch.final_state in {"merged", "closed"} else EXIT_FAILURE
    return EXIT_OK if cycle.success else EXIT_FAILURE


def resume_invocation(request: SolveRequest, session_id: str, *, backend: AgentBackend) -> str:
    """The `autosolve run` command that picks the session back up with the same settings."""
    argv = ["autosolve", "run"]
    if request.config_path is not None:
        argv.extend(["--config", str(request.config_path)])
    argv.extend(
        [
            "--cwd",
            str(request.working_dir),
            "--issue-url",
            request.issue_url,
            "--branch",
            request.branch,
        ]
    )
    if request.pr_url is not None:
        argv.extend(["--pr-url", request.pr_url])
    argv.extend(["--backend", backend.name])
    if backend.model is not None:
        argv.extend(["--model", backend.model])
    if request.think is not None:
        argv.extend(["--think", request.think])
    if request.forked_repo is not None:
        argv.extend(["--fork", request.forked_repo])
    if request.continue_mode:
        argv.append("--continue")
    if request.watch:
        argv.append("--watch")
    argv.extend(["--resume", session_id])
    return shlex.join(argv)


def render_report(
    request: SolveRequest,
    cycle: CycleOutcome,
    watch: WatchOutcome | None,
    *,
    backend: AgentBackend,
    log_dir: Path,
) -> str:
    """Operator-facing summary; failures that captured a session id include resume commands."""
    lines: list[str] = []
    if cycle.success:
        lines.append("Result: success")
    else:
        lines.append(f"Result: failure ({cycle.failure_reason})")
    lines.append(f"Terminal state: {cycle.terminal_state}")
    lines.append(f"Iterations: {cycle.iterations}")
    if cycle.limit_waits:
        lines.append(f"Limit waits: {cycle.limit_waits}")
    if cycle.session_id:
        lines.append(f"Session ID: {cycle.session_id}")
        lines.append(f"Session log: {log_dir / f'{cycle.session_id}.log'}")

    error = cycle.error()
    if error is not None:
        lines.append(f"Error: {error}")
    if cycle.failure_reason == "rate_limited" and cycle.reset_at is not None:
        lines.append(f"Limit resets at: {cycle.reset_at.isoformat()}")
    if cycle.failure_reason == "restart_limit_exceeded":
        lines.append("Manual review required: the restart limit was reached.")

    if not cycle.success and cycle.session_id:
        lines.append("")
        lines.append("To resume this session, run:")
        lines.append(f"   {resume_invocation(request, cycle.session_id, backend=backend)}")
        lines.append("Or continue interactively with the agent:")
        lines.append(
            f"   {backend.resume_command(cycle.session_id, working_dir=request.working_dir)}"
        )

    if watch is not None:
        lines.append("")
        lines.append(f"Watch: {watch.final_state} after {watch.cycles} feedback cycle(s)")
        if watch.failed_cycles:
            lines.append(f"Failed feedback cycles: {watch.failed_cycles}")
    return "\n".join(lines)
