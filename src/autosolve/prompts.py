from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Literal

from autosolve.models import FeedbackComment, PromptPair


ThinkLevel = Literal["low", "medium", "high", "max"]

_USER_THINK_LINES: dict[str, str] = {
    "low": "Think.",
    "medium": "Think hard.",
    "high": "Think harder.",
    "max": "Ultrathink.",
}
_SYSTEM_THINK_LINES: dict[str, str] = {
    "low": "You always think on every step.",
    "medium": "You always think hard on every step.",
    "high": "You always think harder on every step.",
    "max": "You always ultrathink on every step.",
}
_FEEDBACK_EXCERPT_LIMIT = 400


@dataclass(frozen=True)
class PromptContext:
    owner: str
    repo: str
    issue_url: str
    issue_number: int | None
    branch: str
    working_dir: str
    pr_number: int | None = None
    pr_url: str | None = None
    continue_mode: bool = False
    merge_state_status: str | None = None
    forked_repo: str | None = None
    think: ThinkLevel | None = None

    @property
    def repo_full_name(self) -> str:
        return f"{self.owner}/{self.repo}"


def build_prompts(context: PromptContext, feedback_lines: Sequence[str] = ()) -> PromptPair:
    return PromptPair(
        user=build_user_prompt(context, feedback_lines),
        system=build_system_prompt(context),
    )


def build_user_prompt(context: PromptContext, feedback_lines: Sequence[str] = ()) -> str:
    lines = [f"Issue to solve: {_issue_reference(context)}"]
    lines.append(f"Your prepared branch: {context.branch}")
    lines.append(f"Your prepared working directory: {context.working_dir}")
    if context.pr_url:
        lines.append(f"Your prepared Pull Request: {context.pr_url}")
    if context.continue_mode and context.merge_state_status:
        lines.append(f"Existing pull request's merge state status: {context.merge_state_status}")
    if context.forked_repo:
        lines.append(f"Your forked repository: {context.forked_repo}")
        lines.append(f"Original repository (upstream): {context.repo_full_name}")
    lines.append("")

    if feedback_lines:
        lines.extend(feedback_lines)
        lines.append("")

    if context.think is not None:
        lines.append(_USER_THINK_LINES[context.think])

    lines.append("Continue." if context.continue_mode else "Proceed.")
    return "\n".join(lines)


def _issue_reference(context: PromptContext) -> str:
    if not context.continue_mode:
        return context.issue_url
    if context.issue_number is not None:
        return f"https://github.com/{context.repo_full_name}/issues/{context.issue_number}"
    if context.pr_number is not None:
        return f"Issue linked to PR #{context.pr_number}"
    return context.issue_url


def build_system_prompt(context: PromptContext) -> str:
    owner = context.owner
    repo = context.repo
    issue_number = "" if context.issue_number is None else str(context.issue_number)
    pr_number = "" if context.pr_number is None else str(context.pr_number)
    branch = context.branch
    think_line = ""
    if context.think is not None:
        think_line = f"\n{_SYSTEM_THINK_LINES[context.think]}\n"

    return f"""You are AI issue solver.{think_line}

General guidelines.
   - When you execute commands, always save their logs to files for easy reading if the output gets large.
   - When running commands, do not set a timeout yourself, let them run as long as needed and review the logs in the file once they finish.
   - When CI is failing, make sure you download the logs locally and carefully investigate them.
   - When a code or log file has more than 2500 lines, read it in chunks of 2500 lines.
   - When facing a complex problem, do as much tracing as possible and turn on all verbose modes.
   - When you create debug, test, or example/experiment scripts for fixing, always keep them in an examples or/and experiments folders so you can reuse them later.
   - When you face something extremely hard, use divide and conquer.

Initial research.
   - When you start, create a detailed plan for yourself and follow your todo list step by step.
   - When you read issue, read all details and comments thoroughly.
   - When you need issue details, use gh issue view https://github.com/{owner}/{repo}/issues/{issue_number}.
   - When you need related code, use gh search code --owner {owner} [keywords].
   - When you need repo context, read files in your working directory.
   - When you study related work, study related previous latest pull requests.
   - When issue is not defined enough, write a comment to ask clarifying questions.
   - When you are fixing a bug, please make sure you first find the actual root cause, do as much experiments as needed.

Solution development and testing.
   - When issue is solvable, implement code with tests.
   - When coding, each atomic step that can be useful by itself should be committed to the pull request's branch.
   - When you test, start from small functions.
   - When you test, write unit tests with mocks.
   - When you test integrations, use existing framework.
   - When you encounter any problems that you are unable to solve yourself, write a comment to the pull request asking for help.
   - When you need human help, use gh pr comment {pr_number} --body "your message" to comment on existing PR.

Preparing pull request.
   - When you code, follow contributing guidelines.
   - When you commit, write clear message.
   - When you need examples of style, use gh pr list --repo {owner}/{repo} --state merged --search [keywords].
   - When you open pr, describe solution draft and include tests.
   - When you update existing pr {pr_number}, use gh pr edit to modify title and description.
   - When you finalize the pull request:
      follow style from merged prs for code, title, and description,
      make sure no uncommitted changes which correspond to original requirements are left behind,
      make sure the default branch is merged to the pull request's branch,
      make sure all CI checks pass if they exist before you finish,
      double-check that all changes in the pull request answer to original requirements of the issue.
   - When you finish implementation, use gh pr ready {pr_number}.

Workflow and collaboration.
   - When you check branch, verify with git branch --show-current.
   - When you push, push only to branch {branch}.
   - When you finish, update pull request {pr_number} from branch {branch} instead of creating a new one.
   - When you organize workflow, use pull requests instead of direct merges to default branch (main or master).
   - When you manage commits, preserve commit history for later analysis.
   - When you collaborate, respect branch protections by working only on {branch}.
   - When you mention result, include pull request url or comment url.

Self review.
   - When you check your solution draft, run all tests locally.
   - When you compare with repo style, use gh pr diff [number].
   - When you finalize, confirm code, tests, and description are consistent."""


def build_uncommitted_changes_prompt(status_lines: Sequence[str], diff_stat: str) -> str:
    files = "\n".join(status_lines)
    summary = diff_stat.strip() or "(no tracked file changes)"
    return f"""Auto-restart: Previous session completed with uncommitted changes.

Uncommitted files ({len(status_lines)}):
{files}

Changes summary:
{summary}

Please review these changes and commit them with an appropriate commit message.
Follow the repository's commit message conventions from previous commits."""


def build_limit_resume_prompt() -> str:
    return (
        "The usage limit has reset. Continue solving the issue from where you stopped, "
        "then commit and push your work."
    )


def build_feedback_lines(
    comments: Sequence[FeedbackComment], merge_state_status: str | None = None
) -> tuple[str, ...]:
    """Render new reviewer activity as the ordered block embedded in continuation prompts."""
    ordered = sorted(comments, key=lambda comment: (comment.created_at, comment.comment_id))
    pr_count = sum(1 for comment in ordered if comment.kind in {"pr", "review"})
    issue_count = sum(1 for comment in ordered if comment.kind == "issue")

    lines: list[str] = []
    if pr_count:
        lines.append(f"New comments on the pull request: {pr_count}")
    if issue_count:
        lines.append(f"New comments on the issue: {issue_count}")
    if merge_state_status and merge_state_status.upper() != "CLEAN":
        lines.append(f"Merge status is {merge_state_status.upper()}")
    for comment in ordered:
        lines.append(
            f"- {comment.author} ({comment.kind}, {comment.created_at.isoformat()}): "
            f"{_excerpt(comment.body)} {comment.html_url}".rstrip()
        )
    return tuple(lines)


def _excerpt(body: str) -> str:
    collapsed = " ".join(body.split())
    if len(collapsed) <= _FEEDBACK_EXCERPT_LIMIT:
        return collapsed
    return f"{collapsed[:_FEEDBACK_EXCERPT_LIMIT]}..."
