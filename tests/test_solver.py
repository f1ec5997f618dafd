from __future__ import annotations

from collections.abc import Iterator
from datetime import datetime, timedelta, timezone
import json
from pathlib import Path
import threading

from autosolve.claude_adapter import ClaudeBackend
from autosolve.codex_adapter import CodexBackend
from autosolve.config import (
    AgentConfig,
    AppConfig,
    RestartPolicy,
    RetryConfig,
    RuntimeConfig,
    WatchConfig,
)
from autosolve.models import (
    ControllerSignal,
    FeedbackComment,
    OutputEvent,
    PromptPair,
    PullRequestStatus,
)
from autosolve.solver import (
    EXIT_CANCELLED,
    EXIT_FAILURE,
    EXIT_OK,
    SolveRequest,
    Solver,
    build_backend,
    build_prompt_context,
    resume_invocation,
)


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
ISSUE_URL = "https://github.com/octo/widgets/issues/12"
PR_URL = "https://github.com/octo/widgets/pull/3"


class ScriptedBackend(ClaudeBackend):
    def __init__(self, sessions: list[list[OutputEvent]]) -> None:
        super().__init__(AgentConfig())
        self.sessions = list(sessions)
        self.resume_ids: list[str | None] = []

    def invoke(
        self,
        prompts: PromptPair,
        *,
        cwd: Path,
        resume_session_id: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> Iterator[OutputEvent]:
        _ = prompts, cwd, cancel_event
        self.resume_ids.append(resume_session_id)
        return iter(self.sessions.pop(0))


class ScriptedCodexBackend(CodexBackend):
    def __init__(self, sessions: list[list[OutputEvent]], *, model: str) -> None:
        super().__init__(AgentConfig(backend="codex", model=model))
        self.sessions = list(sessions)

    def invoke(
        self,
        prompts: PromptPair,
        *,
        cwd: Path,
        resume_session_id: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> Iterator[OutputEvent]:
        _ = prompts, cwd, resume_session_id, cancel_event
        return iter(self.sessions.pop(0))


class CleanWorkingCopy:
    def has_uncommitted_changes(self) -> bool:
        return False

    def status_lines(self) -> tuple[str, ...]:
        return ()

    def diff_stat(self) -> str:
        return ""

    def commit_and_push(self, message: str) -> None:
        raise AssertionError(f"unexpected commit: {message}")


class ScriptedFeedback:
    def __init__(
        self, batches: list[tuple[FeedbackComment, ...]], statuses: list[PullRequestStatus]
    ) -> None:
        self.batches = list(batches)
        self.statuses = list(statuses)

    def list_feedback_since(self, since: datetime | None) -> tuple[FeedbackComment, ...]:
        _ = since
        return self.batches.pop(0) if self.batches else ()

    def pull_request_status(self) -> PullRequestStatus | None:
        return self.statuses.pop(0)


class ImmediateWaiter:
    def __init__(self) -> None:
        self.deadlines: list[datetime] = []

    def wait_until(self, deadline: datetime) -> bool:
        self.deadlines.append(deadline)
        return True


def _session(session_id: str, text: str, exit_code: int) -> list[OutputEvent]:
    return [
        OutputEvent(stream="stdout", raw=json.dumps({"type": "system", "session_id": session_id})),
        OutputEvent(stream="stdout", raw=json.dumps({"type": "text", "text": text})),
        OutputEvent(stream="exit", raw="", exit_code=exit_code),
    ]


def _config(tmp_path: Path, **restart: object) -> AppConfig:
    return AppConfig(
        runtime=RuntimeConfig(log_dir=tmp_path / "logs"),
        restart=RestartPolicy(**restart),  # type: ignore[arg-type]
        watch=WatchConfig(interval_seconds=1),
    )


def _solver(
    tmp_path: Path,
    backend: ScriptedBackend,
    *,
    config: AppConfig | None = None,
    feedback: ScriptedFeedback | None = None,
    waiter: ImmediateWaiter | None = None,
    cancel_event: threading.Event | None = None,
    signals: list[ControllerSignal] | None = None,
) -> Solver:
    return Solver(
        config or _config(tmp_path),
        cancel_event=cancel_event or threading.Event(),
        signal_sink=signals.append if signals is not None else None,
        backend=backend,
        working_copy=CleanWorkingCopy(),
        feedback_source=feedback,
        waiter=waiter or ImmediateWaiter(),
        clock=lambda: NOW,
    )


def _request(tmp_path: Path, **overrides: object) -> SolveRequest:
    values: dict[str, object] = {
        "issue_url": ISSUE_URL,
        "branch": "issue-12",
        "working_dir": tmp_path / "repo",
    }
    values.update(overrides)
    return SolveRequest(**values)  # type: ignore[arg-type]


def test_completed_task_succeeds_without_retry_or_restart(tmp_path: Path) -> None:
    backend = ScriptedBackend([_session("sess-1", "Task completed", 0)])
    signals: list[ControllerSignal] = []

    result = _solver(tmp_path, backend, signals=signals).solve(_request(tmp_path))

    assert result.exit_code == EXIT_OK
    assert result.cycle.success is True
    assert result.cycle.iterations == 1
    assert result.watch is None
    assert backend.resume_ids == [None]
    assert "Result: success" in result.report
    assert "Session ID: sess-1" in result.report
    assert "To resume" not in result.report
    assert (tmp_path / "logs" / "sess-1.log").exists()
    assert any(signal.kind == "cycle_finished" for signal in signals)


def test_overload_is_retried_then_reported(tmp_path: Path) -> None:
    overloaded = _session("sess-2", "API Error: 500 Overloaded", 1)
    backend = ScriptedBackend([overloaded, overloaded, overloaded])
    config = AppConfig(
        runtime=RuntimeConfig(log_dir=tmp_path / "logs"),
        retry=RetryConfig(max_retries=2, base_delay_seconds=0.0),
    )

    result = _solver(tmp_path, backend, config=config).solve(_request(tmp_path))

    assert result.exit_code == EXIT_FAILURE
    assert result.cycle.failure_reason == "overloaded"
    assert result.cycle.terminal_state == "overloaded"
    assert len(backend.resume_ids) == 3


def test_rate_limit_failure_report_includes_resume_commands(tmp_path: Path) -> None:
    backend = ScriptedBackend(
        [_session("sess-3", "Claude AI usage limit reached|1772370000", 1)]
    )

    result = _solver(tmp_path, backend).solve(_request(tmp_path, pr_url=PR_URL))

    assert result.exit_code == EXIT_FAILURE
    assert "Result: failure (rate_limited)" in result.report
    assert "Limit resets at: 2026-03-01T13:00:00+00:00" in result.report
    assert "To resume this session, run:" in result.report
    assert "--resume sess-3" in result.report
    assert "claude --resume sess-3" in result.report


def test_rate_limit_report_resumes_with_the_same_backend_and_flags(tmp_path: Path) -> None:
    backend = ScriptedCodexBackend(
        [
            [
                OutputEvent(
                    stream="stdout",
                    raw=json.dumps({"type": "thread.started", "thread_id": "thread-9"}),
                ),
                OutputEvent(
                    stream="stdout",
                    raw=json.dumps({"type": "error", "message": "You have exceeded your rate limit"}),
                ),
                OutputEvent(stream="exit", raw="", exit_code=1),
            ]
        ],
        model="gpt-5",
    )
    solver = Solver(
        _config(tmp_path),
        cancel_event=threading.Event(),
        backend=backend,
        working_copy=CleanWorkingCopy(),
        waiter=ImmediateWaiter(),
        clock=lambda: NOW,
    )

    result = solver.solve(
        _request(tmp_path, think="high", forked_repo="me/widgets", continue_mode=True)
    )

    assert result.cycle.failure_reason == "rate_limited"
    assert result.cycle.session_id == "thread-9"
    expected = resume_invocation(
        _request(tmp_path, think="high", forked_repo="me/widgets", continue_mode=True),
        "thread-9",
        backend=backend,
    )
    assert f"   {expected}" in result.report
    for flag in (
        "--backend codex",
        "--model gpt-5",
        "--think high",
        "--fork me/widgets",
        "--continue",
        "--resume thread-9",
    ):
        assert flag in expected


def test_rate_limit_auto_continue_resumes_in_process(tmp_path: Path) -> None:
    backend = ScriptedBackend(
        [
            _session("sess-4", "Claude AI usage limit reached|1772370000", 1),
            _session("sess-4", "Task completed", 0),
        ]
    )
    waiter = ImmediateWaiter()
    config = _config(tmp_path, auto_continue_on_limit=True)

    result = _solver(tmp_path, backend, config=config, waiter=waiter).solve(_request(tmp_path))

    assert result.exit_code == EXIT_OK
    assert backend.resume_ids == [None, "sess-4"]
    assert waiter.deadlines == [datetime.fromtimestamp(1772370000, tz=timezone.utc)]
    assert "Limit waits: 1" in result.report


def test_cancelled_run_exits_130(tmp_path: Path) -> None:
    backend = ScriptedBackend(
        [[OutputEvent(stream="exit", raw="", exit_code=-15, cancelled=True)]]
    )

    result = _solver(tmp_path, backend).solve(_request(tmp_path))

    assert result.exit_code == EXIT_CANCELLED
    assert result.cycle.state == "cancelled"


def test_watch_runs_feedback_cycle_until_merged(tmp_path: Path) -> None:
    comment = FeedbackComment(
        comment_id=9,
        kind="review",
        author="reviewer",
        body="Please add a test for the empty case",
        html_url=f"{PR_URL}#discussion_r9",
        created_at=NOW + timedelta(minutes=10),
    )
    feedback = ScriptedFeedback(
        batches=[(), (comment,), ()],
        statuses=[
            PullRequestStatus(number=3, state="open", merge_state_status="CLEAN"),
            PullRequestStatus(number=3, state="merged"),
        ],
    )
    backend = ScriptedBackend(
        [_session("sess-5", "Task completed", 0), _session("sess-6", "Addressed review", 0)]
    )

    result = _solver(tmp_path, backend, feedback=feedback).solve(
        _request(tmp_path, pr_url=PR_URL, watch=True)
    )

    assert result.watch is not None
    assert result.watch.final_state == "merged"
    assert result.watch.cycles == 1
    assert result.watch.watermark == NOW + timedelta(minutes=10)
    assert result.cycle.session_id == "sess-6"
    assert result.exit_code == EXIT_OK
    assert backend.resume_ids == [None, None]
    assert "Watch: merged after 1 feedback cycle(s)" in result.report


def test_failed_feedback_cycle_keeps_watching_and_merge_exits_ok(tmp_path: Path) -> None:
    comment = FeedbackComment(
        comment_id=10,
        kind="pr",
        author="reviewer",
        body="Rename the helper",
        html_url=f"{PR_URL}#issuecomment-10",
        created_at=NOW + timedelta(minutes=10),
    )
    feedback = ScriptedFeedback(
        batches=[(), (comment,)],
        statuses=[
            PullRequestStatus(number=3, state="open", merge_state_status="CLEAN"),
            PullRequestStatus(number=3, state="merged"),
        ],
    )
    backend = ScriptedBackend(
        [_session("sess-5", "Task completed", 0), _session("sess-6", "agent crashed", 1)]
    )

    result = _solver(tmp_path, backend, feedback=feedback).solve(
        _request(tmp_path, pr_url=PR_URL, watch=True)
    )

    assert result.watch is not None
    assert result.watch.final_state == "merged"
    assert result.watch.failed_cycles == 1
    assert result.exit_code == EXIT_OK
    assert "Failed feedback cycles: 1" in result.report


def test_watch_without_pull_request_is_skipped(tmp_path: Path) -> None:
    backend = ScriptedBackend([_session("sess-7", "Task completed", 0)])

    result = _solver(tmp_path, backend).solve(_request(tmp_path, watch=True))

    assert result.watch is None
    assert result.exit_code == EXIT_OK


def test_build_backend_selects_implementation() -> None:
    assert isinstance(build_backend(AgentConfig()), ClaudeBackend)
    assert isinstance(build_backend(AgentConfig(backend="codex")), CodexBackend)


def test_build_prompt_context_from_urls(tmp_path: Path) -> None:
    context = build_prompt_context(_request(tmp_path, pr_url=PR_URL, continue_mode=True))

    assert context.repo_full_name == "octo/widgets"
    assert context.issue_number == 12
    assert context.pr_number == 3
    assert context.continue_mode is True


def test_build_prompt_context_from_pull_request_url(tmp_path: Path) -> None:
    context = build_prompt_context(_request(tmp_path, issue_url=PR_URL))

    assert context.issue_number is None
    assert context.pr_number == 3


def test_resume_invocation_quotes_arguments(tmp_path: Path) -> None:
    request = _request(
        tmp_path,
        working_dir=Path("/work/my repo"),
        pr_url=PR_URL,
        config_path=Path("autosolve.toml"),
    )

    command = resume_invocation(request, "sess-8", backend=ClaudeBackend(AgentConfig()))

    assert command == (
        "autosolve run --config autosolve.toml --cwd '/work/my repo' "
        f"--issue-url {ISSUE_URL} --branch issue-12 --pr-url {PR_URL} "
        "--backend claude --model sonnet --resume sess-8"
    )
