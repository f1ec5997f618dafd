from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import json
import logging
import re
from typing import Literal, cast
from urllib.parse import urlencode

from autosolve.errors import TransientPollError
from autosolve.models import FeedbackComment, FeedbackKind, PullRequestState, PullRequestStatus
from autosolve.observability import log_event, log_warning_event
from autosolve.shell import run


LOGGER = logging.getLogger("autosolve.github_gateway")
_GITHUB_URL_PATTERN = re.compile(
    r"^https?://github\.com/([^/\s]+)/([^/\s]+)/(issues|pull)/(\d+)/?(?:[?#].*)?$"
)
_PAGE_SIZE = 100


@dataclass(frozen=True)
class GitHubRef:
    owner: str
    repo: str
    kind: Literal["issue", "pull"]
    number: int

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"


def parse_github_url(url: str) -> GitHubRef:
    match = _GITHUB_URL_PATTERN.match(url.strip())
    if match is None:
        raise ValueError(f"Not a GitHub issue or pull request URL: {url}")
    return GitHubRef(
        owner=match.group(1),
        repo=match.group(2),
        kind="issue" if match.group(3) == "issues" else "pull",
        number=int(match.group(4)),
    )


def parse_github_timestamp(value: str) -> datetime | None:
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_github_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class GitHubGateway:
    owner: str
    name: str
    _etags_by_path: dict[str, str] = field(
        default_factory=dict,
        init=False,
        repr=False,
        compare=False,
    )
    _cached_get_payload_by_path: dict[str, object] = field(
        default_factory=dict,
        init=False,
        repr=False,
        compare=False,
    )

    def get_pull_request_status(self, pr_number: int) -> PullRequestStatus:
        path = f"/repos/{self.owner}/{self.name}/pulls/{pr_number}"
        payload_obj = _as_object_dict(self._api_json("GET", path))
        if payload_obj is None:
            raise TransientPollError("Unexpected GitHub response: expected object for pull request")

        state: PullRequestState
        if payload_obj.get("merged") is True or payload_obj.get("merged_at"):
            state = "merged"
        elif _as_string(payload_obj.get("state")).lower() == "closed":
            state = "closed"
        else:
            state = "open"
        mergeable_state = _as_optional_str(payload_obj.get("mergeable_state"))
        status = PullRequestStatus(
            number=_as_int(payload_obj.get("number"), field="number"),
            state=state,
            merge_state_status=mergeable_state.upper() if mergeable_state else None,
        )
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request",
            pr_number=status.number,
            state=status.state,
        )
        return status

    def list_issue_comments(
        self,
        issue_number: int,
        *,
        since: str | None = None,
        kind: FeedbackKind = "issue",
    ) -> list[FeedbackComment]:
        comments = self._list_comments(
            f"/repos/{self.owner}/{self.name}/issues/{issue_number}/comments",
            since=since,
            kind=kind,
        )
        log_event(
            LOGGER,
            "github_read",
            endpoint="issue_comments",
            issue_number=issue_number,
            since=since,
            count=len(comments),
        )
        return comments

    def list_pull_request_review_comments(
        self,
        pr_number: int,
        *,
        since: str | None = None,
    ) -> list[FeedbackComment]:
        comments = self._list_comments(
            f"/repos/{self.owner}/{self.name}/pulls/{pr_number}/comments",
            since=since,
            kind="review",
        )
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request_review_comments",
            pr_number=pr_number,
            since=since,
            count=len(comments),
        )
        return comments

    def viewer_login(self) -> str:
        payload_obj = _as_object_dict(self._api_json("GET", "/user"))
        if payload_obj is None:
            raise TransientPollError("Unexpected GitHub response: expected object for user")
        return _as_login(payload_obj.get("login"))

    def _list_comments(
        self, base_path: str, *, since: str | None, kind: FeedbackKind
    ) -> list[FeedbackComment]:
        comments: list[FeedbackComment] = []
        page = 1
        while True:
            query_items: dict[str, object] = {"per_page": _PAGE_SIZE, "page": page}
            if since is not None:
                query_items["since"] = since
            payload = self._api_json("GET", f"{base_path}?{urlencode(query_items)}")
            if not isinstance(payload, list):
                raise TransientPollError("Unexpected GitHub response: expected list of comments")

            for item in payload:
                item_obj = _as_object_dict(item)
                if item_obj is None:
                    continue
                user_obj = _as_object_dict(item_obj.get("user"))
                created_at = parse_github_timestamp(_as_string(item_obj.get("created_at")))
                if created_at is None:
                    log_warning_event(
                        LOGGER,
                        "github_comment_without_timestamp",
                        path=base_path,
                        comment_id=item_obj.get("id"),
                    )
                    continue
                comments.append(
                    FeedbackComment(
                        comment_id=_as_int(item_obj.get("id"), field="id"),
                        kind=kind,
                        author=_as_login(user_obj.get("login") if user_obj else None),
                        body=_as_string(item_obj.get("body")),
                        html_url=_as_string(item_obj.get("html_url")),
                        created_at=created_at,
                    )
                )
            if len(payload) < _PAGE_SIZE:
                break
            page += 1
        return comments

    def _api_json(self, method: str, path: str) -> object:
        method_upper = method.upper()
        if method_upper != "GET":
            raise ValueError("_api_json only supports GET")
        cmd = ["gh", "api", "--method", method_upper]
        etag = self._etags_by_path.get(path)
        if etag:
            cmd.extend(["--header", f"If-None-Match: {etag}"])
        cmd.extend(["--include", path])

        raw = run(cmd, check=False)
        try:
            status_code, headers, body = _parse_http_response(raw)

            if status_code == 304:
                cached_payload = self._cached_get_payload_by_path.get(path)
                if cached_payload is None:
                    raise RuntimeError(f"GitHub returned 304 for uncached path: {path}")
                return cached_payload

            if status_code < 200 or status_code >= 300:
                message = body.strip() or "<empty>"
                raise RuntimeError(
                    f"GitHub API request failed with status {status_code}: {message}"
                )

            payload_obj = json.loads(body)
            etag = headers.get("etag")
            if etag:
                self._etags_by_path[path] = etag
                self._cached_get_payload_by_path[path] = payload_obj
            return payload_obj
        except (RuntimeError, ValueError) as exc:
            log_warning_event(
                LOGGER,
                "github_poll_get_failed",
                path=path,
                error_type=type(exc).__name__,
                error=str(exc),
                raw_preview=_preview_for_log(raw),
            )
            raise TransientPollError(f"GitHub polling GET failed for path {path}: {exc}") from exc


def _parse_http_response(raw: str) -> tuple[int, dict[str, str], str]:
    normalized = raw.replace("\r\n", "\n")
    lines = normalized.split("\n")

    status_line_index = -1
    for index, line in enumerate(lines):
        if line.startswith("HTTP/"):
            status_line_index = index

    if status_line_index < 0:
        raise RuntimeError("Unexpected GitHub response: missing HTTP status line")

    status_line = lines[status_line_index]
    status_parts = status_line.split(" ", 2)
    if len(status_parts) < 2:
        raise RuntimeError(f"Unexpected GitHub response status line: {status_line!r}")

    try:
        status_code = int(status_parts[1])
    except ValueError as exc:
        raise RuntimeError(f"Unexpected GitHub response status line: {status_line!r}") from exc

    headers: dict[str, str] = {}
    body_start = len(lines)
    for index in range(status_line_index + 1, len(lines)):
        line = lines[index]
        if line == "":
            body_start = index + 1
            break
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        headers[key.strip().lower()] = value.strip()

    return status_code, headers, "\n".join(lines[body_start:])


def _preview_for_log(text: str, *, limit: int = 240) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_optional_str(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return str(value)


def _as_login(value: object) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip().lower()


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise TransientPollError(f"Unexpected GitHub response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise TransientPollError(
                f"Unexpected GitHub response value for {field}: {value}"
            ) from exc
    raise TransientPollError(f"Unexpected GitHub response type for {field}")
