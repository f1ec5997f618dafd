from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
import logging

from autosolve.github_gateway import GitHubGateway, format_github_timestamp
from autosolve.models import FeedbackComment, PullRequestStatus
from autosolve.observability import log_event


LOGGER = logging.getLogger("autosolve.feedback")


def is_bot_login(login: str) -> bool:
    normalized = login.strip().lower()
    return normalized.endswith("[bot]")


def filter_feedback(
    comments: Iterable[FeedbackComment],
    *,
    since: datetime | None,
    ignored_logins: frozenset[str] = frozenset(),
) -> tuple[FeedbackComment, ...]:
    """Keep human comments created after ``since``, oldest first, without duplicates."""
    seen: set[tuple[str, int]] = set()
    kept: list[FeedbackComment] = []
    for comment in comments:
        key = (comment.kind, comment.comment_id)
        if key in seen:
            continue
        seen.add(key)
        author = comment.author.strip().lower()
        if is_bot_login(author) or author in ignored_logins:
            continue
        if since is not None and comment.created_at <= since:
            continue
        kept.append(comment)
    kept.sort(key=lambda comment: (comment.created_at, comment.comment_id))
    return tuple(kept)


class PullRequestFeedbackSource:
    """Reviewer activity on one pull request (and optionally its issue) via ``gh api``."""

    def __init__(
        self,
        gateway: GitHubGateway,
        *,
        pr_number: int,
        issue_number: int | None = None,
        ignored_logins: Iterable[str] = (),
        ignore_viewer: bool = True,
    ) -> None:
        self._gateway = gateway
        self._pr_number = pr_number
        self._issue_number = issue_number
        self._ignored_logins = frozenset(login.strip().lower() for login in ignored_logins)
        self._ignore_viewer = ignore_viewer
        self._viewer_login: str | None = None

    def list_feedback_since(self, since: datetime | None) -> tuple[FeedbackComment, ...]:
        since_text = format_github_timestamp(since) if since is not None else None
        comments: list[FeedbackComment] = []
        comments.extend(
            self._gateway.list_issue_comments(self._pr_number, since=since_text, kind="pr")
        )
        comments.extend(
            self._gateway.list_pull_request_review_comments(self._pr_number, since=since_text)
        )
        if self._issue_number is not None and self._issue_number != self._pr_number:
            comments.extend(self._gateway.list_issue_comments(self._issue_number, since=since_text))
        feedback = filter_feedback(comments, since=since, ignored_logins=self._ignored())
        log_event(
            LOGGER,
            "feedback_polled",
            pr_number=self._pr_number,
            fetched=len(comments),
            new=len(feedback),
        )
        return feedback

    def pull_request_status(self) -> PullRequestStatus:
        return self._gateway.get_pull_request_status(self._pr_number)

    def _ignored(self) -> frozenset[str]:
        if not self._ignore_viewer:
            return self._ignored_logins
        if self._viewer_login is None:
            self._viewer_login = self._gateway.viewer_login()
        return self._ignored_logins | {self._viewer_login}
