"""
Tests for the sync orchestrator: single events, batches and failure handling.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, date, datetime
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from github_to_ado_sync.config import SyncConfig
from github_to_ado_sync.exceptions import SyncError, TransportError
from github_to_ado_sync.iterations import IterationResolver
from github_to_ado_sync.models import Comment, ProjectFieldValue, ProjectInfo, SourceEvent, SourceRecord
from github_to_ado_sync.orchestrator import BOT_SENDER, BatchResult, RecordResult, SyncOrchestrator
from github_to_ado_sync.state_mapping import StateResolver
from github_to_ado_sync.user_mapping import UserMap

if TYPE_CHECKING:
    from conftest import FakeIterationStore, FakeProjects, FakeSource, FakeTarget, PlainConverter


def _board(status: str = "In Progress") -> ProjectInfo:
    return ProjectInfo(
        name="Siwar",
        number=1,
        fields={
            "Status": ProjectFieldValue("single_select", status),
            "Sprint": ProjectFieldValue("iteration", "Sprint 68", start_date=date(2024, 10, 13), duration=14),
        },
    )


class _FailingWriter:
    def append_back_reference(self, number: int, marker_text: str) -> bool:
        msg = "Forbidden"
        raise TransportError(msg, status=403)


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def make_orchestrator(
    fake_target: FakeTarget,
    fake_source: FakeSource,
    fake_projects: FakeProjects,
    fake_iteration_store: FakeIterationStore,
    converter: PlainConverter,
    sleeps: list[float],
    tmp_path: Path,
) -> Callable[..., SyncOrchestrator]:
    def factory(config: SyncConfig | None = None, **overrides: object) -> SyncOrchestrator:
        config = config or SyncConfig()
        config = replace(
            config,
            error_handling=replace(config.error_handling, failure_log_path=str(tmp_path / "failed_issues.json")),
        )
        kwargs: dict[str, object] = {
            "states": StateResolver(),
            "users": UserMap({"octocat": "octo@contoso.com", "hubot": "hubot@contoso.com"}),
            "converter": converter,
            "iterations": IterationResolver(fake_iteration_store, "Siwar", sleep=lambda _: None),
            "source": fake_source,
            "source_writer": fake_source,
            "projects": fake_projects,
            "sleep": sleeps.append,
        }
        kwargs.update(overrides)
        return SyncOrchestrator(config, fake_target, **kwargs)  # type: ignore[arg-type]

    return factory


@pytest.fixture
def orchestrator(make_orchestrator: Callable[..., SyncOrchestrator]) -> SyncOrchestrator:
    return make_orchestrator()


@pytest.mark.unit
class TestSingleEvent:
    def test_opened_creates_work_item(
        self,
        orchestrator: SyncOrchestrator,
        make_record: Callable[..., SourceRecord],
        fake_target: FakeTarget,
        fake_source: FakeSource,
    ) -> None:
        result = orchestrator.sync_event(SourceEvent("opened", make_record(), sender="octocat"))

        assert result == RecordResult(42, "created", 100)
        fields = fake_target.items[100]["fields"]
        assert fields["System.WorkItemType"] == "Product Backlog Item"
        assert fields["System.Title"] == "Login page crashes (GitHub Issue #42)"
        assert fake_source.back_references == {42: ["AB#100"]}

    def test_second_sync_updates_same_work_item(
        self,
        orchestrator: SyncOrchestrator,
        make_record: Callable[..., SourceRecord],
        fake_target: FakeTarget,
    ) -> None:
        """The identity marker makes the sync idempotent: no second work item."""
        orchestrator.sync_event(SourceEvent("opened", make_record(), sender="octocat"))

        result = orchestrator.sync_event(
            SourceEvent("edited", make_record(title="Login page crashes on Safari"), sender="octocat")
        )

        assert result == RecordResult(42, "updated", 100)
        assert len(fake_target.creates) == 1
        assert fake_target.items[100]["fields"]["System.Title"] == "Login page crashes on Safari (GitHub Issue #42)"
        assert fake_target.history[100][-1] == "Issue updated on GitHub by octocat"

    def test_opened_again_is_unchanged(
        self, orchestrator: SyncOrchestrator, make_record: Callable[..., SourceRecord], fake_target: FakeTarget
    ) -> None:
        orchestrator.sync_event(SourceEvent("opened", make_record(), sender="octocat"))

        result = orchestrator.sync_event(SourceEvent("opened", make_record(), sender="octocat"))

        assert result.status == "unchanged"
        assert result.work_item_id == 100
        assert fake_target.updates == []

    def test_same_number_in_other_repository_is_a_new_work_item(
        self, orchestrator: SyncOrchestrator, make_record: Callable[..., SourceRecord]
    ) -> None:
        orchestrator.sync_event(SourceEvent("opened", make_record(), sender="octocat"))

        result = orchestrator.sync_event(SourceEvent("opened", make_record(repository="billing"), sender="octocat"))

        assert result == RecordResult(42, "created", 101)

    def test_lookup_failure_writes_nothing(
        self, orchestrator: SyncOrchestrator, make_record: Callable[..., SourceRecord], fake_target: FakeTarget
    ) -> None:
        """A failed lookup must never be treated as "not found"."""
        fake_target.fail_query = True

        result = orchestrator.sync_event(SourceEvent("opened", make_record(), sender="octocat"))

        assert result.status == "lookup_failed"
        assert result.retryable is True
        assert "Service unavailable" in result.reason
        assert fake_target.creates == []
        assert fake_target.updates == []

    def test_lookup_auth_failure_is_not_retryable(
        self, orchestrator: SyncOrchestrator, make_record: Callable[..., SourceRecord], fake_target: FakeTarget
    ) -> None:
        def deny(wiql: str) -> list[dict[str, object]]:
            msg = "Forbidden"
            raise TransportError(msg, status=403)

        fake_target.query = deny  # type: ignore[method-assign]

        result = orchestrator.sync_event(SourceEvent("opened", make_record(), sender="octocat"))

        assert result.status == "lookup_failed"
        assert result.retryable is False
        assert fake_target.creates == []

    def test_bot_sender_is_skipped(
        self, orchestrator: SyncOrchestrator, make_record: Callable[..., SourceRecord], fake_target: FakeTarget
    ) -> None:
        result = orchestrator.sync_event(SourceEvent("edited", make_record(), sender=BOT_SENDER))

        assert result.status == "skipped"
        assert fake_target.queries == []

    def test_pull_request_is_skipped(
        self, orchestrator: SyncOrchestrator, make_record: Callable[..., SourceRecord], fake_target: FakeTarget
    ) -> None:
        result = orchestrator.sync_event(SourceEvent("opened", make_record(is_pull_request=True), sender="octocat"))

        assert result == RecordResult(42, "skipped", reason="pull request")
        assert fake_target.queries == []

    def test_existing_comments_posted_on_create(
        self,
        orchestrator: SyncOrchestrator,
        make_record: Callable[..., SourceRecord],
        fake_target: FakeTarget,
        fake_source: FakeSource,
        sleeps: list[float],
    ) -> None:
        created = datetime(2024, 10, 2, 14, 5, tzinfo=UTC)
        fake_source.comments[42] = [
            Comment("First", "hubot", created, "https://github.com/octo-org/portal/issues/42#issuecomment-1"),
            Comment("Second", "octocat", created, "https://github.com/octo-org/portal/issues/42#issuecomment-2"),
        ]

        orchestrator.sync_event(SourceEvent("opened", make_record(), sender="octocat"))

        comments = fake_target.history[100][1:]
        assert len(comments) == 2
        assert "<b>hubot</b>" in comments[0]
        assert "Second" in comments[1]
        assert sleeps == [0.5]

    def test_comment_event_adds_history(
        self, orchestrator: SyncOrchestrator, make_record: Callable[..., SourceRecord], fake_target: FakeTarget
    ) -> None:
        orchestrator.sync_event(SourceEvent("opened", make_record(), sender="octocat"))
        comment = Comment(
            "Fixed in #43", "hubot", datetime(2024, 10, 3, tzinfo=UTC), "https://github.com/o/p/issues/42#c"
        )

        result = orchestrator.sync_event(SourceEvent("created", make_record(), sender="hubot", comment=comment))

        assert result.status == "updated"
        assert "Fixed in #43" in fake_target.history[100][-1]

    def test_close_and_reopen(
        self,
        orchestrator: SyncOrchestrator,
        make_record: Callable[..., SourceRecord],
        fake_target: FakeTarget,
        fake_projects: FakeProjects,
    ) -> None:
        fake_projects.infos[42] = _board()
        orchestrator.sync_event(SourceEvent("opened", make_record(), sender="octocat"))
        assert fake_target.items[100]["fields"]["System.State"] == "Committed"

        orchestrator.sync_event(SourceEvent("closed", make_record(state="closed"), sender="octocat"))
        assert fake_target.items[100]["fields"]["System.State"] == "Done"

        orchestrator.sync_event(SourceEvent("reopened", make_record(), sender="octocat"))
        assert fake_target.items[100]["fields"]["System.State"] == "Committed"

    def test_label_events(
        self, orchestrator: SyncOrchestrator, make_record: Callable[..., SourceRecord], fake_target: FakeTarget
    ) -> None:
        orchestrator.sync_event(SourceEvent("opened", make_record(), sender="octocat"))

        orchestrator.sync_event(SourceEvent("labeled", make_record(labels=("backend",)), "octocat", label="backend"))
        assert fake_target.items[100]["fields"]["System.Tags"] == "GitHub Issue; portal; GH-42; backend"

        orchestrator.sync_event(SourceEvent("unlabeled", make_record(), "octocat", label="backend"))
        assert fake_target.items[100]["fields"]["System.Tags"] == "GitHub Issue; portal; GH-42"

    def test_unassigned_removes_assignee(
        self, orchestrator: SyncOrchestrator, make_record: Callable[..., SourceRecord], fake_target: FakeTarget
    ) -> None:
        orchestrator.sync_event(SourceEvent("opened", make_record(assignees=("hubot",)), sender="octocat"))
        assert fake_target.items[100]["fields"]["System.AssignedTo"] == "hubot@contoso.com"

        result = orchestrator.sync_event(SourceEvent("unassigned", make_record(), sender="octocat"))

        assert result.status == "updated"
        assert "System.AssignedTo" not in fake_target.items[100]["fields"]

    def test_back_reference_failure_keeps_created_result(
        self,
        make_orchestrator: Callable[..., SyncOrchestrator],
        make_record: Callable[..., SourceRecord],
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        orchestrator = make_orchestrator(source_writer=_FailingWriter())

        result = orchestrator.sync_event(SourceEvent("opened", make_record(), sender="octocat"))

        assert result.status == "created"
        assert "Could not write AB#100 back to issue #42" in caplog.text

    def test_create_failure_propagates(
        self, orchestrator: SyncOrchestrator, make_record: Callable[..., SourceRecord], fake_target: FakeTarget
    ) -> None:
        fake_target.fail_create = True

        with pytest.raises(TransportError, match="Create rejected"):
            orchestrator.sync_event(SourceEvent("opened", make_record(), sender="octocat"))

    def test_board_data_failure_syncs_without_board(
        self,
        orchestrator: SyncOrchestrator,
        make_record: Callable[..., SourceRecord],
        fake_target: FakeTarget,
        fake_projects: FakeProjects,
    ) -> None:
        def fail(owner: str, repo: str, number: int) -> ProjectInfo | None:
            msg = "GraphQL errors"
            raise TransportError(msg)

        fake_projects.get_project_info = fail  # type: ignore[method-assign]

        result = orchestrator.sync_event(SourceEvent("opened", make_record(), sender="octocat"))

        assert result.status == "created"
        assert fake_target.items[100]["fields"]["System.State"] == "New"


@pytest.mark.unit
class TestBatch:
    def test_batch_creates_then_updates(
        self,
        orchestrator: SyncOrchestrator,
        make_record: Callable[..., SourceRecord],
        fake_source: FakeSource,
        fake_projects: FakeProjects,
        sleeps: list[float],
    ) -> None:
        fake_source.pages = [[make_record(1), make_record(2), make_record(3, is_pull_request=True)], [make_record(4)]]

        first = orchestrator.run_batch("all")
        second = orchestrator.run_batch("all")

        assert first.summary() == {"success": 3, "failed": 0, "created": 3, "updated": 0, "unchanged": 0, "skipped": 0}
        assert second.updated == 3
        assert second.created == 0
        assert sorted(fake_projects.calls) == [1, 1, 2, 2, 4, 4]
        # call delay before records 2 and 4, page delay before page 1
        assert sleeps[:3] == [0.5, 0.5, 0.5]

    def test_batch_filters_by_state(
        self, orchestrator: SyncOrchestrator, make_record: Callable[..., SourceRecord], fake_source: FakeSource
    ) -> None:
        fake_source.pages = [[make_record(1), make_record(2, state="closed")]]

        result = orchestrator.run_batch("closed")

        assert result.created == 1

    def test_start_page(
        self, orchestrator: SyncOrchestrator, make_record: Callable[..., SourceRecord], fake_source: FakeSource
    ) -> None:
        fake_source.pages = [[make_record(1)], [make_record(2)]]

        result = orchestrator.run_batch("all", start_page=1)

        assert result.created == 1

    def test_lookup_failure_recorded_and_logged(
        self,
        orchestrator: SyncOrchestrator,
        make_record: Callable[..., SourceRecord],
        fake_source: FakeSource,
        fake_target: FakeTarget,
        tmp_path: Path,
    ) -> None:
        fake_source.pages = [[make_record(1), make_record(2)]]
        fake_target.fail_query = True

        result = orchestrator.run_batch("all")

        assert result.failure_count == 2
        assert fake_target.creates == []
        logged = json.loads((tmp_path / "failed_issues.json").read_text(encoding="utf-8"))
        assert [entry["number"] for entry in logged] == [1, 2]
        assert logged[0]["title"] == "Login page crashes"

    def test_continue_on_error_off_stops_at_first_failure(
        self,
        make_orchestrator: Callable[..., SyncOrchestrator],
        make_record: Callable[..., SourceRecord],
        fake_source: FakeSource,
        fake_target: FakeTarget,
        tmp_path: Path,
    ) -> None:
        """Halting still writes the failure log before the error propagates."""
        config = SyncConfig()
        orchestrator = make_orchestrator(
            replace(config, error_handling=replace(config.error_handling, continue_on_error=False))
        )
        fake_source.pages = [[make_record(1), make_record(2)]]
        fake_target.fail_create = True

        with pytest.raises(SyncError, match="Create rejected"):
            orchestrator.run_batch("all")

        assert len(fake_target.queries) == 1
        logged = json.loads((tmp_path / "failed_issues.json").read_text(encoding="utf-8"))
        assert logged == [{"number": 1, "title": "Login page crashes", "message": "Create rejected"}]

    def test_failed_comment_post_keeps_record_created(
        self,
        orchestrator: SyncOrchestrator,
        make_record: Callable[..., SourceRecord],
        fake_source: FakeSource,
        fake_target: FakeTarget,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """A work item that exists is reported as created, and still gets its AB# back reference."""
        fake_source.pages = [[make_record(7)]]
        fake_source.comments[7] = [
            Comment("First", "hubot", datetime(2024, 10, 2, tzinfo=UTC), "https://github.com/o/p/issues/7#c1")
        ]
        fake_target.fail_update = True

        result = orchestrator.run_batch("all")

        assert result.created == 1
        assert result.failures == []
        assert list(fake_target.items) == [100]
        assert fake_source.back_references == {7: ["AB#100"]}
        assert "Could not post comment 1 of issue #7" in caplog.text

    def test_failed_custom_fields_post_keeps_record_created(
        self,
        orchestrator: SyncOrchestrator,
        make_record: Callable[..., SourceRecord],
        fake_target: FakeTarget,
        fake_projects: FakeProjects,
        fake_source: FakeSource,
    ) -> None:
        board = _board()
        fake_projects.infos[42] = replace(
            board, fields={**board.fields, "Assignee QA": ProjectFieldValue("text", "mona")}
        )
        fake_target.fail_update = True

        result = orchestrator.sync_event(SourceEvent("opened", make_record(), sender="octocat"))

        assert result == RecordResult(42, "created", 100)
        assert fake_source.back_references == {42: ["AB#100"]}

    def test_malformed_sprint_name_does_not_stop_batch(
        self,
        orchestrator: SyncOrchestrator,
        make_record: Callable[..., SourceRecord],
        fake_source: FakeSource,
        fake_projects: FakeProjects,
    ) -> None:
        fake_source.pages = [[make_record(1), make_record(2)]]
        fake_projects.infos[1] = ProjectInfo(
            name="Siwar",
            number=1,
            fields={"Sprint": ProjectFieldValue("iteration", "Sprint ² 13 - oct 26")},
        )

        result = orchestrator.run_batch("all")

        assert result.created == 2
        assert result.failures == []

    def test_failed_record_does_not_stop_batch(
        self,
        orchestrator: SyncOrchestrator,
        make_record: Callable[..., SourceRecord],
        fake_source: FakeSource,
    ) -> None:
        fake_source.pages = [[make_record(1, title=" "), make_record(2)]]

        result = orchestrator.run_batch("all")

        assert result.created == 1
        assert [failure.number for failure in result.failures] == [1]
        assert "no title" in result.failures[0].message

    def test_pagination_failure_ends_batch(
        self,
        orchestrator: SyncOrchestrator,
        make_record: Callable[..., SourceRecord],
        fake_source: FakeSource,
    ) -> None:
        fake_source.pages = [[make_record(1)], [make_record(2)]]
        fake_source.fail_at_page = 1

        result = orchestrator.run_batch("all")

        assert result.created == 1
        assert result.failures[0].number == 0
        assert result.failures[0].title == "page 1"

    def test_no_source(self, make_orchestrator: Callable[..., SyncOrchestrator]) -> None:
        orchestrator = make_orchestrator(source=None)

        with pytest.raises(SyncError, match="needs a source reader"):
            orchestrator.run_batch()

    def test_prefetch_without_projects(
        self, make_orchestrator: Callable[..., SyncOrchestrator], make_record: Callable[..., SourceRecord]
    ) -> None:
        assert make_orchestrator(projects=None).prefetch_project_info([make_record()]) == {}

    def test_batch_result_counts(self) -> None:
        result = BatchResult()
        for status in ("created", "updated", "updated", "unchanged", "skipped"):
            result.add(RecordResult(1, status))  # type: ignore[arg-type]

        assert result.success_count == 5
        assert result.failure_count == 0


@pytest.mark.integration
class TestEndToEnd:
    """Full runs over well-formed data must not log any warnings."""

    def test_issue_lifecycle(
        self,
        orchestrator: SyncOrchestrator,
        make_record: Callable[..., SourceRecord],
        fake_target: FakeTarget,
        fake_projects: FakeProjects,
        fake_iteration_store: FakeIterationStore,
    ) -> None:
        fake_projects.infos[42] = _board()
        record = make_record(labels=("bug", "frontend"), assignees=("octocat",))

        created = orchestrator.sync_event(SourceEvent("opened", record, sender="octocat"))
        closed = orchestrator.sync_event(SourceEvent("closed", replace(record, state="closed"), sender="hubot"))

        assert created == RecordResult(42, "created", 100)
        assert closed == RecordResult(42, "updated", 100)
        fields = fake_target.items[100]["fields"]
        assert fields["System.WorkItemType"] == "Bug"
        assert fields["System.State"] == "Done"
        assert fields["System.IterationPath"] == "Siwar\\Sprint 68"
        assert fields["System.AssignedTo"] == "octo@contoso.com"
        assert [iteration.name for iteration in fake_iteration_store.created] == ["Sprint 68"]
        assert fake_target.history[100][-1] == "Issue closed on GitHub by hubot"

    def test_batch_run(
        self,
        orchestrator: SyncOrchestrator,
        make_record: Callable[..., SourceRecord],
        fake_source: FakeSource,
        fake_projects: FakeProjects,
        fake_iteration_store: FakeIterationStore,
    ) -> None:
        fake_source.pages = [[make_record(n) for n in range(1, 13)]]
        for n in range(1, 13):
            fake_projects.infos[n] = _board()

        result = orchestrator.run_batch("open")

        assert result.created == 12
        assert result.failures == []
        assert len(fake_iteration_store.created) == 1
