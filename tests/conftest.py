"""
Pytest configuration and fixtures.

This module configures pytest behavior for different test types:
- Integration tests: Fail on any warnings from the code under test
- Unit tests: Allow warnings

It also provides in-memory stand-ins for GitHub and Azure DevOps.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterator
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import pytest
from typing_extensions import override

from github_to_ado_sync.exceptions import TransportError
from github_to_ado_sync.models import Comment, Iteration, PatchDocument, ProjectInfo, SourceRecord

if TYPE_CHECKING:
    from collections.abc import Generator

# Store warning records during test execution
_integration_test_warnings: dict[str, list[logging.LogRecord]] = {}


class IntegrationTestWarningHandler(logging.Handler):
    """Custom logging handler to capture warnings during integration tests."""

    test_nodeid: str

    def __init__(self, test_nodeid: str) -> None:
        super().__init__()
        self.test_nodeid = test_nodeid
        self.setLevel(logging.WARNING)

    @override
    def emit(self, record: logging.LogRecord) -> None:
        """Capture WARNING and above level logs."""
        _integration_test_warnings.setdefault(self.test_nodeid, []).append(record)


@pytest.fixture(autouse=True)
def fail_on_log_warnings_for_integration_tests(
    request: pytest.FixtureRequest,
) -> Generator[None]:
    """
    Automatically fail integration tests if any WARNING level logs are emitted from the code under test.

    A full sync against well-formed data should not need any fallback, so a
    logger.warning() or logger.error() during an integration test is treated
    as a failure. Unit tests that exercise fallbacks on purpose are not checked.
    """
    if request.node.get_closest_marker("integration") is None:
        yield
        return

    test_nodeid = request.node.nodeid
    _integration_test_warnings[test_nodeid] = []

    handler = IntegrationTestWarningHandler(test_nodeid)
    root_logger = logging.getLogger()
    root_logger.addHandler(handler)

    try:
        yield
    finally:
        root_logger.removeHandler(handler)


@pytest.hookimpl(tryfirst=True, hookwrapper=True)
def pytest_runtest_makereport(
    item: pytest.Item, call: pytest.CallInfo[None]
) -> Generator[None]:  # type: ignore[misc]
    """Mark a passed integration test as failed when the code under test logged warnings."""
    outcome = yield
    report = outcome.get_result()

    if call.when != "call":
        return
    warning_records = _integration_test_warnings.pop(item.nodeid, [])
    if report.outcome == "passed" and warning_records:
        lines = [f"  - {r.levelname}: {r.getMessage()} (in {r.name}:{r.lineno})" for r in warning_records]
        report.outcome = "failed"
        report.longrepr = f"Integration test failed: {len(warning_records)} warning(s) logged:\n" + "\n".join(lines)


# -- in-memory systems ---------------------------------------------------------

_CONTAINS = r"CONTAINS '((?:[^']|'')*)'"


def _unquote(value: str) -> str:
    return value.replace("''", "'")


class FakeTarget:
    """Azure DevOps work items held in memory; understands the identity WIQL query."""

    def __init__(self) -> None:
        self.items: dict[int, dict[str, Any]] = {}
        self.history: dict[int, list[str]] = {}
        self.queries: list[str] = []
        self.creates: list[tuple[str, PatchDocument, bool]] = []
        self.updates: list[tuple[int, PatchDocument]] = []
        self.fail_query: bool = False
        self.fail_create: bool = False
        self.fail_update: bool = False
        self._next_id = 100

    def _apply(self, work_item_id: int, patch: PatchDocument) -> None:
        item = self.items[work_item_id]
        for operation in patch:
            if operation.path == "/relations/-":
                item["relations"].append(operation.value)
                continue
            name = operation.path.removeprefix("/fields/")
            if name == "System.History":
                self.history[work_item_id].append(operation.value)
            elif operation.op == "remove":
                item["fields"].pop(name, None)
            else:
                item["fields"][name] = operation.value

    def query(self, wiql: str) -> list[dict[str, Any]]:
        self.queries.append(wiql)
        if self.fail_query:
            msg = "Service unavailable"
            raise TransportError(msg, status=503)
        title_part = re.search(r"\[System\.Title\] " + _CONTAINS, wiql)
        tags = [_unquote(tag) for tag in re.findall(r"\[System\.Tags\] " + _CONTAINS, wiql)]
        matches = []
        for item in self.items.values():
            fields = item["fields"]
            item_tags = [tag.strip() for tag in fields.get("System.Tags", "").split(";")]
            if title_part and _unquote(title_part.group(1)) not in fields.get("System.Title", ""):
                continue
            if all(tag in item_tags for tag in tags):
                matches.append(item)
        return matches

    def create(self, work_item_type: str, patch: PatchDocument, *, bypass_rules: bool = False) -> dict[str, Any]:
        if self.fail_create:
            msg = "Create rejected"
            raise TransportError(msg, status=500)
        work_item_id = self._next_id
        self._next_id += 1
        self.items[work_item_id] = {
            "id": work_item_id,
            "fields": {"System.WorkItemType": work_item_type},
            "relations": [],
            "url": self.work_item_url(work_item_id),
        }
        self.history[work_item_id] = []
        self._apply(work_item_id, patch)
        self.creates.append((work_item_type, patch, bypass_rules))
        return self.items[work_item_id]

    def update(self, work_item_id: int, patch: PatchDocument, *, bypass_rules: bool = False) -> dict[str, Any]:
        if self.fail_update:
            msg = "Update rejected"
            raise TransportError(msg, status=503)
        self._apply(work_item_id, patch)
        self.updates.append((work_item_id, patch))
        return self.items[work_item_id]

    def work_item_url(self, work_item_id: int) -> str:
        return f"https://dev.azure.com/contoso/Siwar/_apis/wit/workitems/{work_item_id}"


class FakeIterationStore:
    def __init__(self, existing: list[Iteration] | None = None) -> None:
        self.existing = list(existing or [])
        self.created: list[Iteration] = []
        self.list_calls = 0
        self.fail_list = False
        self.fail_create = False

    def list_iterations(self) -> list[Iteration]:
        self.list_calls += 1
        if self.fail_list:
            msg = "Unauthorized"
            raise TransportError(msg, status=401)
        return list(self.existing)

    def create_iteration(self, iteration: Iteration) -> Iteration:
        if self.fail_create:
            msg = "Conflict"
            raise TransportError(msg, status=409)
        self.created.append(iteration)
        return iteration


class FakeSource:
    """GitHub issues held in pages; also records back references."""

    def __init__(self, pages: list[list[SourceRecord]] | None = None) -> None:
        self.pages = pages or []
        self.comments: dict[int, list[Comment]] = {}
        self.back_references: dict[int, list[str]] = {}
        self.fail_at_page: int | None = None

    def get_single(self, number: int) -> SourceRecord:
        for page in self.pages:
            for record in page:
                if record.number == number:
                    return record
        msg = f"Issue #{number} not found"
        raise TransportError(msg, status=404)

    def iter_pages(self, state: str, start_page: int = 0) -> Iterator[list[SourceRecord]]:
        for index in range(start_page, len(self.pages)):
            if index == self.fail_at_page:
                msg = "Bad gateway"
                raise TransportError(msg, status=502)
            yield [r for r in self.pages[index] if state == "all" or r.state == state]

    def list_comments(self, number: int) -> list[Comment]:
        return self.comments.get(number, [])

    def append_back_reference(self, number: int, marker_text: str) -> bool:
        existing = self.back_references.setdefault(number, [])
        if marker_text in existing:
            return False
        existing.append(marker_text)
        return True


class FakeProjects:
    def __init__(self, infos: dict[int, ProjectInfo] | None = None) -> None:
        self.infos = infos or {}
        self.calls: list[int] = []

    def get_project_info(self, owner: str, repo: str, number: int) -> ProjectInfo | None:
        self.calls.append(number)
        return self.infos.get(number)


class PlainConverter:
    """Leaves text untouched so patch values are easy to assert on."""

    def to_markup(self, text: str) -> str:
        return text


@pytest.fixture
def fake_target() -> FakeTarget:
    return FakeTarget()


@pytest.fixture
def fake_iteration_store() -> FakeIterationStore:
    return FakeIterationStore()


@pytest.fixture
def fake_source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def fake_projects() -> FakeProjects:
    return FakeProjects()


@pytest.fixture
def converter() -> PlainConverter:
    return PlainConverter()


@pytest.fixture
def make_record() -> Callable[..., SourceRecord]:
    """Factory for source records of the octo-org/portal repository."""

    def factory(number: int = 42, title: str = "Login page crashes", **overrides: Any) -> SourceRecord:
        values: dict[str, Any] = {
            "number": number,
            "title": title,
            "body": "Steps to reproduce",
            "state": "open",
            "author": "octocat",
            "created_at": datetime(2024, 10, 1, 9, 30, tzinfo=UTC),
            "owner": "octo-org",
            "repository": "portal",
            "url": f"https://github.com/octo-org/portal/issues/{number}",
            "repo_url": "https://github.com/octo-org/portal",
        }
        values.update(overrides)
        return SourceRecord(**values)

    return factory
