"""
GitHub access: issues through PyGithub, board data through the Projects v2 GraphQL API.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from datetime import date, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

from github import Auth, Github, GithubException

from . import utils
from .exceptions import SyncError, TransportError
from .models import Comment, ProjectFieldValue, ProjectInfo, SourceEvent, SourceRecord

if TYPE_CHECKING:
    from github.Issue import Issue
    from github.Repository import Repository

logger: logging.Logger = logging.getLogger(__name__)

_TOKEN_ENV_VAR: Final[str] = "GITHUB_TOKEN"
_DEFAULT_TOKEN_PASS_PATH: Final[str] = "github/cli/token"

PROJECT_ITEMS_QUERY: Final[str] = """
query($owner: String!, $repo: String!, $number: Int!) {
  repository(owner: $owner, name: $repo) {
    issue(number: $number) {
      projectItems(first: 10) {
        nodes {
          project { title number }
          fieldValues(first: 20) {
            nodes {
              __typename
              ... on ProjectV2ItemFieldSingleSelectValue {
                name
                field { ... on ProjectV2FieldCommon { name } }
              }
              ... on ProjectV2ItemFieldTextValue {
                text
                field { ... on ProjectV2FieldCommon { name } }
              }
              ... on ProjectV2ItemFieldDateValue {
                date
                field { ... on ProjectV2FieldCommon { name } }
              }
              ... on ProjectV2ItemFieldNumberValue {
                number
                field { ... on ProjectV2FieldCommon { name } }
              }
              ... on ProjectV2ItemFieldIterationValue {
                title
                startDate
                duration
                field { ... on ProjectV2FieldCommon { name } }
              }
            }
          }
        }
      }
    }
  }
}
"""


def get_token(pass_path: str | None = None) -> str | None:
    """Get GitHub token from pass path, env var GITHUB_TOKEN, or default pass location."""
    return utils.get_token(pass_path, _TOKEN_ENV_VAR, _DEFAULT_TOKEN_PASS_PATH)


def get_client(token: str | None = None, per_page: int = 100) -> Github:
    """Get a GitHub client using the token."""
    auth = Auth.Token(token) if token else None
    return Github(auth=auth, per_page=per_page)


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class GitHubSource:
    """Issues of one repository, read and written through PyGithub."""

    client: Github
    repo_path: str
    parent_id: int | None
    _repo: Repository | None

    def __init__(self, client: Github, repo_path: str, *, parent_id: int | None = None) -> None:
        self.client = client
        self.repo_path = repo_path
        self.parent_id = parent_id
        self._repo = None

    @property
    def repo(self) -> Repository:
        if self._repo is None:
            try:
                self._repo = self.client.get_repo(self.repo_path)
            except GithubException as e:
                msg = f"Cannot access GitHub repository {self.repo_path}: {e}"
                raise TransportError(msg, status=e.status) from e
        return self._repo

    def to_record(self, issue: Issue) -> SourceRecord:
        owner, _, name = self.repo_path.partition("/")
        return SourceRecord(
            number=issue.number,
            title=issue.title or "",
            body=issue.body or "",
            state="closed" if issue.state == "closed" else "open",
            author=issue.user.login if issue.user else "",
            assignees=tuple(assignee.login for assignee in issue.assignees),
            labels=tuple(label.name for label in issue.labels),
            created_at=issue.created_at,
            closed_at=issue.closed_at,
            updated_at=issue.updated_at,
            parent_id=self.parent_id,
            owner=owner,
            repository=name,
            url=issue.html_url,
            repo_url=f"https://github.com/{self.repo_path}",
            is_pull_request=issue.pull_request is not None,
        )

    def get_single(self, number: int) -> SourceRecord:
        try:
            return self.to_record(self.repo.get_issue(number))
        except GithubException as e:
            msg = f"Cannot read issue #{number} of {self.repo_path}: {e}"
            raise TransportError(msg, status=e.status) from e

    def iter_pages(self, state: str, start_page: int = 0) -> Iterator[list[SourceRecord]]:
        issues = self.repo.get_issues(state=state, sort="created", direction="asc")
        page = start_page
        while True:
            try:
                items = issues.get_page(page)
            except GithubException as e:
                msg = f"Cannot read page {page} of {state} issues of {self.repo_path}: {e}"
                raise TransportError(msg, status=e.status) from e
            if not items:
                return
            logger.debug(f"Read page {page} with {len(items)} item(s) from {self.repo_path}")
            yield [self.to_record(issue) for issue in items]
            page += 1

    def list_comments(self, number: int) -> list[Comment]:
        try:
            comments = self.repo.get_issue(number).get_comments()
            return [
                Comment(
                    body=comment.body or "",
                    author=comment.user.login if comment.user else "",
                    created_at=comment.created_at,
                    url=comment.html_url,
                )
                for comment in comments
            ]
        except GithubException as e:
            msg = f"Cannot read comments of issue #{number}: {e}"
            raise TransportError(msg, status=e.status) from e

    def append_back_reference(self, number: int, marker_text: str) -> bool:
        """Append marker_text (e.g. "AB#123") to the issue body so GitHub links the work item."""
        try:
            issue = self.repo.get_issue(number)
            body = issue.body or ""
            if marker_text in body:
                return False
            issue.edit(body=f"{body}\r\n\r\n{marker_text}" if body else marker_text)
        except GithubException as e:
            msg = f"Cannot update body of issue #{number}: {e}"
            raise TransportError(msg, status=e.status) from e
        logger.info(f"Added {marker_text} to issue #{number}")
        return True


def parse_field_value(node: dict[str, Any]) -> tuple[str, ProjectFieldValue] | None:
    """Convert one GraphQL field value node into (field name, value); None for unsupported types."""
    field_name = (node.get("field") or {}).get("name")
    if not field_name:
        return None
    typename = node.get("__typename")
    if typename == "ProjectV2ItemFieldSingleSelectValue":
        return field_name, ProjectFieldValue("single_select", node.get("name"))
    if typename == "ProjectV2ItemFieldTextValue":
        return field_name, ProjectFieldValue("text", node.get("text"))
    if typename == "ProjectV2ItemFieldDateValue":
        return field_name, ProjectFieldValue("date", node.get("date"))
    if typename == "ProjectV2ItemFieldNumberValue":
        number = node.get("number")
        return field_name, ProjectFieldValue("number", float(number) if number is not None else None)
    if typename == "ProjectV2ItemFieldIterationValue":
        start = node.get("startDate")
        return field_name, ProjectFieldValue(
            "iteration",
            node.get("title"),
            start_date=date.fromisoformat(start) if start else None,
            duration=node.get("duration"),
        )
    return None


def parse_project_items(data: dict[str, Any]) -> ProjectInfo | None:
    """Build the ProjectInfo of the first board an issue is on."""
    issue = ((data.get("repository") or {}).get("issue")) or {}
    nodes = (issue.get("projectItems") or {}).get("nodes") or []
    if not nodes:
        return None
    if len(nodes) > 1:
        logger.debug(f"Issue is on {len(nodes)} boards, using the first")
    item = nodes[0]
    project = item.get("project") or {}
    fields: dict[str, ProjectFieldValue] = {}
    for node in (item.get("fieldValues") or {}).get("nodes") or []:
        parsed = parse_field_value(node)
        if parsed is not None:
            fields[parsed[0]] = parsed[1]
    return ProjectInfo(name=project.get("title", ""), number=project.get("number"), fields=fields)


class GitHubProjectsClient:
    """Reads Projects v2 board data of issues over GraphQL, through PyGithub's requester."""

    client: Github

    def __init__(self, client: Github) -> None:
        self.client = client

    def get_project_info(self, owner: str, repo: str, number: int) -> ProjectInfo | None:
        payload = {"query": PROJECT_ITEMS_QUERY, "variables": {"owner": owner, "repo": repo, "number": number}}
        try:
            # Use PyGithub's requester for consistent auth and rate limiting
            _, response = self.client.requester.requestJsonAndCheck("POST", "/graphql", input=payload)
        except GithubException as e:
            msg = f"Projects query for issue #{number} failed: {e}"
            raise TransportError(msg, status=e.status) from e
        if response.get("errors"):
            msg = f"Projects query for issue #{number} returned errors: {response['errors']}"
            raise TransportError(msg)
        info = parse_project_items(response.get("data") or {})
        if info is None:
            logger.debug(f"Issue #{number} is not on any project board")
        return info


def load_event(path: str | Path) -> dict[str, Any]:
    try:
        return json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        msg = f"Cannot read GitHub event payload '{path}': {e}"
        raise SyncError(msg) from e


def event_from_payload(payload: dict[str, Any], parent_id: int | None = None) -> SourceEvent:
    """Turn a GitHub Actions issues / issue_comment event payload into a SourceEvent."""
    issue = payload.get("issue")
    repository = payload.get("repository")
    if not issue or not repository:
        msg = "Event payload has no issue or repository"
        raise SyncError(msg)

    record = SourceRecord(
        number=issue["number"],
        title=issue.get("title") or "",
        body=issue.get("body") or "",
        state="closed" if issue.get("state") == "closed" else "open",
        author=(issue.get("user") or {}).get("login", ""),
        assignees=tuple(assignee["login"] for assignee in issue.get("assignees") or []),
        labels=tuple(label["name"] for label in issue.get("labels") or []),
        created_at=_parse_timestamp(issue.get("created_at")),
        closed_at=_parse_timestamp(issue.get("closed_at")),
        updated_at=_parse_timestamp(issue.get("updated_at")),
        parent_id=parent_id,
        owner=(repository.get("owner") or {}).get("login", ""),
        repository=repository.get("name", ""),
        url=issue.get("html_url", ""),
        repo_url=repository.get("html_url", ""),
        is_pull_request="pull_request" in issue,
    )

    comment = None
    raw_comment = payload.get("comment")
    if raw_comment:
        comment = Comment(
            body=raw_comment.get("body") or "",
            author=(raw_comment.get("user") or {}).get("login", ""),
            created_at=_parse_timestamp(raw_comment.get("created_at")),
            url=raw_comment.get("html_url", ""),
        )

    return SourceEvent(
        action=payload.get("action"),
        record=record,
        sender=(payload.get("sender") or {}).get("login", ""),
        label=(payload.get("label") or {}).get("name"),
        comment=comment,
    )
