"""Sync orchestrator that coordinates GitHub and Azure DevOps.

The SyncOrchestrator drives two workflows.

Single event
------------
    event ──► skip bot senders ──► IdentityResolver.find(record)
        Found        ──► apply the event action (edit, close, reopen,
                         assign, label, comment) as an update patch
        NotFound     ──► build_create ──► create work item
                         ──► post existing comments as history
                         ──► post the custom-fields comment
                         ──► write AB#<id> back into the issue body
        LookupFailed ──► nothing written, retryable unless access was denied

Batch
-----
    pages of issues ──► drop pull requests ──► batches of batch_size
        ──► prefetch board data for the batch (bounded thread pool, read-only)
        ──► sync each record sequentially, with a fixed delay between records

A record that fails is recorded and the batch continues, unless
continue_on_error is off. Failures can be written to a JSON file for
reprocessing.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Literal

from .exceptions import SyncError, TransportError
from .identity import Found, IdentityResolver, LookupFailed
from .patch_builder import PatchBuilder

if TYPE_CHECKING:
    from .config import SyncConfig
    from .iterations import IterationResolver
    from .models import Comment, PatchDocument, ProjectInfo, SourceEvent, SourceRecord, TargetRecord
    from .protocols import MarkupConverter, ProjectInfoReader, SourceReader, SourceWriter, TargetSystem
    from .state_mapping import StateResolver
    from .user_mapping import UserMap

logger: logging.Logger = logging.getLogger(__name__)

BOT_SENDER = "azure-boards[bot]"


@dataclass
class FailedRecord:
    number: int
    title: str
    message: str


@dataclass
class RecordResult:
    """Outcome of syncing one record."""

    number: int
    status: Literal["created", "updated", "unchanged", "skipped", "lookup_failed"]
    work_item_id: int | None = None
    retryable: bool = False
    reason: str = ""


@dataclass
class BatchResult:
    """Aggregated outcome of a batch run."""

    created: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0
    failures: list[FailedRecord] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return self.created + self.updated + self.unchanged + self.skipped

    @property
    def failure_count(self) -> int:
        return len(self.failures)

    def add(self, result: RecordResult) -> None:
        if result.status == "created":
            self.created += 1
        elif result.status == "updated":
            self.updated += 1
        elif result.status == "unchanged":
            self.unchanged += 1
        elif result.status == "skipped":
            self.skipped += 1

    def summary(self) -> dict[str, int]:
        return {
            "success": self.success_count,
            "failed": self.failure_count,
            "created": self.created,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "skipped": self.skipped,
        }


class SyncOrchestrator:
    """Synchronizes GitHub issues into Azure DevOps work items.

    Usage:
        orchestrator = SyncOrchestrator(config, ado_client, states=..., users=..., converter=...,
                                        source=github_source, projects=projects_client)
        orchestrator.sync_event(event)
        orchestrator.run_batch("open")
    """

    config: SyncConfig
    target: TargetSystem
    identity: IdentityResolver
    builder: PatchBuilder
    states: StateResolver
    source: SourceReader | None
    source_writer: SourceWriter | None
    projects: ProjectInfoReader | None

    def __init__(
        self,
        config: SyncConfig,
        target: TargetSystem,
        *,
        states: StateResolver,
        users: UserMap,
        converter: MarkupConverter,
        iterations: IterationResolver | None = None,
        source: SourceReader | None = None,
        source_writer: SourceWriter | None = None,
        projects: ProjectInfoReader | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.target = target
        self.states = states
        self.source = source
        self.source_writer = source_writer
        self.projects = projects
        self.identity = IdentityResolver(target, marker_tag=config.labels.marker_tag)
        self.builder = PatchBuilder(config, states, users, converter, target, iterations)
        self._sleep = sleep

    def _pause(self, milliseconds: int) -> None:
        if milliseconds > 0:
            self._sleep(milliseconds / 1000)

    # -- project info --------------------------------------------------------

    def _fetch_project_info(self, record: SourceRecord) -> ProjectInfo | None:
        if self.projects is None:
            return None
        try:
            return self.projects.get_project_info(record.owner, record.repository, record.number)
        except TransportError as e:
            logger.error(f"Could not read board data for issue #{record.number}: {e}")
            return None

    def prefetch_project_info(self, records: list[SourceRecord]) -> dict[int, ProjectInfo | None]:
        """Read board data for several records concurrently; completes before returning."""
        if self.projects is None or not records:
            return {}
        workers = max(1, self.config.rate_limiting.max_concurrent)
        with ThreadPoolExecutor(max_workers=workers) as pool:
            infos = list(pool.map(self._fetch_project_info, records))
        return {record.number: info for record, info in zip(records, infos, strict=True)}

    # -- single record -------------------------------------------------------

    def sync_event(self, event: SourceEvent) -> RecordResult:
        """Sync one GitHub event."""
        if event.sender == BOT_SENDER:
            logger.info(f"Skipping event on issue #{event.record.number} sent by {BOT_SENDER}")
            return RecordResult(event.record.number, "skipped", reason="bot sender")
        return self.sync_record(
            event.record, action=event.action, sender=event.sender, label=event.label, comment=event.comment
        )

    def sync_record(
        self,
        record: SourceRecord,
        *,
        action: str | None = None,
        sender: str | None = None,
        label: str | None = None,
        comment: Comment | None = None,
        project_info: ProjectInfo | None = None,
        prefetched: bool = False,
        batch: bool = False,
    ) -> RecordResult:
        """Create or update the work item of one record.

        Args:
            record: The source issue.
            action: Event action; ignored in batch mode, where an existing work item is always updated.
            sender: GitHub login that triggered the event.
            label: Label of a labeled/unlabeled event.
            comment: Comment of a comment-created event.
            project_info: Board data, when already fetched.
            prefetched: True if project_info was fetched by the caller (even if None).
            batch: Batch mode.

        Raises:
            SyncError: On transport failures while writing, or a ValidationGap.
        """
        if record.is_pull_request:
            return RecordResult(record.number, "skipped", reason="pull request")

        lookup = self.identity.find(record)
        if isinstance(lookup, LookupFailed):
            return RecordResult(record.number, "lookup_failed", retryable=lookup.retryable, reason=lookup.reason)

        if not prefetched:
            project_info = self._fetch_project_info(record)

        if isinstance(lookup, Found):
            return self._apply_action(
                record,
                lookup.record,
                "edited" if batch else action,
                project_info,
                sender=sender or record.author,
                label=label,
                comment=comment,
            )
        return self._create(record, project_info)

    def _create(self, record: SourceRecord, project_info: ProjectInfo | None) -> RecordResult:
        work_item_type = self.states.resolve_work_item_type(record.title, record.labels)
        patch = self.builder.build_create(record, project_info, work_item_type)
        payload = self.target.create(work_item_type, patch, bypass_rules=self.config.bypass_rules)
        work_item_id = int(payload["id"])
        logger.info(f"Created {work_item_type} {work_item_id} for issue #{record.number}")

        if self.config.features.sync_comments:
            self._sync_comments(record, work_item_id)

        custom_fields_patch = self.builder.build_custom_fields_comment(project_info, work_item_type)
        if custom_fields_patch:
            try:
                self.target.update(work_item_id, custom_fields_patch)
            except TransportError as e:
                logger.error(
                    f"Could not post custom fields of issue #{record.number} to work item {work_item_id}: {e}"
                )

        if self.source_writer is not None:
            try:
                self.source_writer.append_back_reference(record.number, f"AB#{work_item_id}")
            except TransportError as e:
                # The work item exists; the next run finds it by its marker.
                logger.error(f"Could not write AB#{work_item_id} back to issue #{record.number}: {e}")

        return RecordResult(record.number, "created", work_item_id)

    def _sync_comments(self, record: SourceRecord, work_item_id: int) -> None:
        # Runs after the work item exists: failures are logged per comment and never fail the record.
        comments = list(record.comments)
        if not comments and self.source is not None:
            try:
                comments = self.source.list_comments(record.number)
            except TransportError as e:
                logger.error(f"Could not read comments of issue #{record.number}: {e}")
                return
        posted = 0
        for index, comment in enumerate(comments):
            if index:
                self._pause(self.config.rate_limiting.delay_between_calls_ms)
            try:
                self.target.update(work_item_id, self.builder.build_comment(comment))
            except TransportError as e:
                logger.error(f"Could not post comment {index + 1} of issue #{record.number}: {e}")
                continue
            posted += 1
        if comments:
            logger.debug(
                f"Synced {posted}/{len(comments)} comment(s) of issue #{record.number} to work item {work_item_id}"
            )

    def _apply_action(
        self,
        record: SourceRecord,
        target: TargetRecord,
        action: str | None,
        project_info: ProjectInfo | None,
        *,
        sender: str,
        label: str | None,
        comment: Comment | None,
    ) -> RecordResult:
        patch: PatchDocument
        if action == "edited":
            patch = self.builder.build_update(record, target, project_info, sender)
        elif action == "closed":
            patch = self.builder.build_close(record, target, project_info, sender)
        elif action == "reopened":
            patch = self.builder.build_reopen(record, target, project_info, sender)
        elif action in ("assigned", "unassigned"):
            patch = self.builder.build_assignee_update(record, target)
        elif action == "labeled":
            patch = self.builder.build_label_added(target, label)
        elif action == "unlabeled":
            patch = self.builder.build_label_removed(record, target, label)
        elif action == "created" and comment is not None:
            patch = [] if not self.config.features.sync_comments else self.builder.build_comment(comment)
        else:
            logger.info(f"Work item {target.id} already exists for issue #{record.number}, nothing to do for {action}")
            return RecordResult(record.number, "unchanged", target.id)

        if not patch:
            return RecordResult(record.number, "unchanged", target.id)
        self.target.update(target.id, patch, bypass_rules=self.config.bypass_rules)
        logger.info(f"Updated work item {target.id} for issue #{record.number} ({action})")
        return RecordResult(record.number, "updated", target.id)

    # -- batch ---------------------------------------------------------------

    def run_batch(self, state: Literal["all", "open", "closed"] = "all", start_page: int = 0) -> BatchResult:
        """Sync every issue with the given state.

        Raises:
            SyncError: The first record failure, when continue_on_error is off.
        """
        if self.source is None:
            msg = "Batch sync needs a source reader"
            raise SyncError(msg)

        limits = self.config.rate_limiting
        result = BatchResult()
        pages = iter(self.source.iter_pages(state, start_page))
        page_index = start_page
        first_record = True

        # The summary and failure log are written even when a halting failure propagates.
        try:
            while True:
                try:
                    page = next(pages)
                except StopIteration:
                    break
                except TransportError as e:
                    logger.error(f"Fetching issues failed at page {page_index}: {e}")
                    result.failures.append(FailedRecord(0, f"page {page_index}", str(e)))
                    break

                if page_index > start_page:
                    self._pause(limits.delay_between_pages_ms)
                issues = [record for record in page if not record.is_pull_request]
                logger.info(f"Page {page_index}: {len(issues)} issue(s)")

                for offset in range(0, len(issues), max(1, limits.batch_size)):
                    chunk = issues[offset : offset + max(1, limits.batch_size)]
                    infos = self.prefetch_project_info(chunk)
                    for record in chunk:
                        if not first_record:
                            self._pause(limits.delay_between_calls_ms)
                        first_record = False
                        self._sync_batch_record(record, infos.get(record.number), result)
                page_index += 1
        finally:
            self._report(result)
        return result

    def _sync_batch_record(self, record: SourceRecord, project_info: ProjectInfo | None, result: BatchResult) -> None:
        continue_on_error = self.config.error_handling.continue_on_error
        try:
            outcome = self.sync_record(record, project_info=project_info, prefetched=True, batch=True)
        except SyncError as e:
            logger.error(f"Failed to sync issue #{record.number}: {e}")
            result.failures.append(FailedRecord(record.number, record.title, str(e)))
            if not continue_on_error:
                raise
            return

        if outcome.status == "lookup_failed":
            result.failures.append(FailedRecord(record.number, record.title, outcome.reason))
            if not continue_on_error:
                msg = f"Work item lookup for issue #{record.number} failed: {outcome.reason}"
                raise TransportError(msg)
            return
        result.add(outcome)

    def _report(self, result: BatchResult) -> None:
        logger.info(
            f"Batch finished: {result.success_count} succeeded, {result.failure_count} failed "
            f"({result.created} created, {result.updated} updated)"
        )
        handling = self.config.error_handling
        if result.failures and handling.log_failures:
            self.write_failure_log(result.failures, Path(handling.failure_log_path))

    def write_failure_log(self, failures: list[FailedRecord], path: Path) -> None:
        path.write_text(
            json.dumps([asdict(failure) for failure in failures], indent=2, ensure_ascii=False), encoding="utf-8"
        )
        logger.info(f"Wrote {len(failures)} failure(s) to {path}")
