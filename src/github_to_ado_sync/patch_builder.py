"""
JSON-Patch construction for work item creates, updates and lifecycle events.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .exceptions import ValidationGap
from .identity import render_title
from .models import PatchOperation

if TYPE_CHECKING:
    from .config import SyncConfig
    from .iterations import IterationResolver
    from .models import Comment, PatchDocument, ProjectInfo, SourceRecord, SprintInfo, TargetRecord
    from .protocols import MarkupConverter, TargetSystem
    from .state_mapping import StateResolver
    from .user_mapping import UserMap

logger: logging.Logger = logging.getLogger(__name__)

TITLE = "/fields/System.Title"
DESCRIPTION = "/fields/System.Description"
REPRO_STEPS = "/fields/Microsoft.VSTS.TCM.ReproSteps"
STATE = "/fields/System.State"
TAGS = "/fields/System.Tags"
HISTORY = "/fields/System.History"
AREA_PATH = "/fields/System.AreaPath"
ITERATION_PATH = "/fields/System.IterationPath"
ASSIGNED_TO = "/fields/System.AssignedTo"
CREATED_DATE = "/fields/System.CreatedDate"
CREATED_BY = "/fields/System.CreatedBy"
CLOSED_DATE = "/fields/Microsoft.VSTS.Common.ClosedDate"
PRIORITY = "/fields/Microsoft.VSTS.Common.Priority"
STORY_POINTS = "/fields/Microsoft.VSTS.Scheduling.StoryPoints"
RELATIONS = "/relations/-"

CUSTOM_FIELDS_HEADER = "**GitHub Projects Custom Fields:**"


def _add(path: str, value: Any) -> PatchOperation:
    return PatchOperation("add", path, value)


def _replace(path: str, value: Any) -> PatchOperation:
    return PatchOperation("replace", path, value)


def _history(html: str) -> PatchOperation:
    return _add(HISTORY, html)


class PatchBuilder:
    """Builds ordered patch documents from source records.

    Feature flags in the SyncConfig switch individual fields on and off.
    """

    config: SyncConfig
    states: StateResolver
    users: UserMap
    converter: MarkupConverter
    target: TargetSystem
    iterations: IterationResolver | None

    def __init__(
        self,
        config: SyncConfig,
        states: StateResolver,
        users: UserMap,
        converter: MarkupConverter,
        target: TargetSystem,
        iterations: IterationResolver | None = None,
    ) -> None:
        self.config = config
        self.states = states
        self.users = users
        self.converter = converter
        self.target = target
        self.iterations = iterations

    # -- field helpers -------------------------------------------------------

    def description(self, record: SourceRecord) -> str:
        return self.converter.to_markup(record.body) if record.body else ""

    def priority_from_labels(self, labels: tuple[str, ...] | list[str]) -> int | None:
        priority_labels = self.config.labels.priority_labels
        for label in labels:
            if label in priority_labels:
                return priority_labels[label]
        return None

    def build_tags(
        self, record: SourceRecord, project_info: ProjectInfo | None = None, work_item_type: str = ""
    ) -> list[str]:
        """Return the tag list: marker tag, repository, GH-<number>, labels and tag-routed custom fields.

        The first three are always present because the identity lookup relies on them.
        """
        tags = [self.config.labels.marker_tag, record.repository, f"GH-{record.number}"]
        if self.config.features.sync_labels and self.config.labels.all_as_tags:
            tags.extend(label for label in record.labels if label not in self.config.labels.priority_labels)
        if project_info is not None:
            _, _, custom_tags = self.map_custom_fields(project_info, work_item_type)
            tags.extend(custom_tags)
        return list(dict.fromkeys(tag for tag in tags if tag))

    def map_custom_fields(
        self, project_info: ProjectInfo, work_item_type: str
    ) -> tuple[list[PatchOperation], dict[str, str], list[str]]:
        """Route board custom fields to work item fields, the custom-fields comment, or tags.

        Returns:
            (field operations, fields for the comment, tags)
        """
        settings = self.config.custom_fields
        operations: list[PatchOperation] = []
        for_comment: dict[str, str] = {}
        tags: list[str] = []

        for name, field_value in project_info.custom_fields().items():
            display = field_value.display()
            if not display:
                continue
            mapping = settings.mappings.get(name)
            if mapping is None:
                if settings.write_to_comments:
                    for_comment[name] = display
                continue
            if not mapping.applies_to(work_item_type):
                continue
            if mapping.target_field:
                value = mapping.value_map.get(display, field_value.value)
                operations.append(_add(f"/fields/{mapping.target_field}", value))
            elif mapping.fallback == "tag":
                tags.append(f"{name}: {display}")
            elif mapping.fallback == "comment" and settings.write_to_comments:
                for_comment[name] = display

        return operations, for_comment, tags

    def _resolve_iteration_path(self, sprint: SprintInfo) -> str | None:
        if self.iterations is None:
            return None
        if self.config.features.create_iterations:
            iteration = self.iterations.create_from_sprint_info(sprint, self.config.iterations.default_duration_days)
            if iteration is None:
                logger.warning(f"Iteration '{sprint.name}' could not be created, leaving iteration path unset")
                return None
            return iteration.path
        iteration = self.iterations.get(sprint.name)
        if iteration is None:
            logger.debug(f"Iteration '{sprint.name}' does not exist and auto-creation is off")
            return None
        return iteration.path

    def _project_state(self, work_item_type: str, record: SourceRecord, project_info: ProjectInfo | None) -> str:
        # With syncProjectStatus off the board column never drives the state.
        if project_info is None or not self.config.features.sync_project_status:
            return self.states.resolve(work_item_type, record.state)
        return self.states.resolve(work_item_type, record.state, project_info.project_key, project_info.status())

    # -- create / update -----------------------------------------------------

    def build_create(
        self, record: SourceRecord, project_info: ProjectInfo | None, work_item_type: str
    ) -> PatchDocument:
        """Build the patch that creates the work item for a source record.

        Raises:
            ValidationGap: If the record has no title.
        """
        if not record.title.strip():
            msg = f"Issue #{record.number} has no title"
            raise ValidationGap(msg)

        features = self.config.features
        # The title always carries the marker; the identity lookup depends on it.
        patch: PatchDocument = [_add(TITLE, render_title(record.title, record.number))]

        if features.sync_description:
            description = self.description(record)
            patch.append(_add(DESCRIPTION, description))
            if work_item_type == "Bug":
                patch.append(_add(REPRO_STEPS, description))

        if features.sync_state:
            patch.append(_add(STATE, self._project_state(work_item_type, record, project_info)))

        patch.append(_add(TAGS, "; ".join(self.build_tags(record, project_info, work_item_type))))

        if record.url:
            patch.append(_add(RELATIONS, {"rel": "Hyperlink", "url": record.url}))
            patch.append(
                _history(
                    f'GitHub <a href="{record.url}" target="_new">issue #{record.number}</a> created in '
                    f'<a href="{record.repo_url}" target="_new">{record.repo_full_name}</a> by {record.author}'
                )
            )

        if project_info is not None:
            area_path = self.states.area_path(project_info.project_key)
            if area_path:
                patch.append(_add(AREA_PATH, area_path))
            sprint = project_info.sprint_info() if features.sync_iterations else None
            if sprint is not None:
                iteration_path = self._resolve_iteration_path(sprint)
                if iteration_path:
                    patch.append(_add(ITERATION_PATH, iteration_path))

        if features.sync_assignees and record.assignees:
            assignee = self.users.primary_target_user(record.assignees)
            if assignee:
                patch.append(_add(ASSIGNED_TO, assignee))

        if features.sync_dates and self.config.bypass_rules:
            if record.created_at:
                patch.append(_add(CREATED_DATE, record.created_at.isoformat()))
            if record.closed_at:
                patch.append(_add(CLOSED_DATE, record.closed_at.isoformat()))
            creator = self.users.target_user(record.author) if record.author else None
            if creator:
                patch.append(_add(CREATED_BY, creator))

        if project_info is not None:
            field_operations, _, _ = self.map_custom_fields(project_info, work_item_type)
            patch.extend(field_operations)

        priority = self.priority_from_labels(record.labels)
        if priority is not None:
            patch.append(_add(PRIORITY, priority))

        if self.config.default_story_points is not None:
            patch.append(_add(STORY_POINTS, self.config.default_story_points))

        if features.sync_hierarchy and record.parent_id:
            patch.append(
                _add(
                    RELATIONS,
                    {
                        "rel": self.config.hierarchy.link_type,
                        "url": self.target.work_item_url(record.parent_id),
                        "attributes": {"comment": "Parent from GitHub"},
                    },
                )
            )

        return patch

    def build_update(
        self,
        record: SourceRecord,
        target: TargetRecord,
        project_info: ProjectInfo | None,
        sender: str | None = None,
    ) -> PatchDocument:
        """Build the patch that brings an existing work item up to date.

        Title, description and state are replaced only when they differ from
        the target snapshot. The state is recomputed when board data is
        available, or when the issue is closed, so an open issue off the board
        never moves an active work item back. A history entry is always added.
        """
        features = self.config.features
        work_item_type = target.work_item_type or self.states.resolve_work_item_type(record.title, record.labels)
        patch: PatchDocument = []

        if features.sync_title:
            title = render_title(record.title, record.number)
            if title != target.title:
                patch.append(_replace(TITLE, title))

        if features.sync_description:
            description = self.description(record)
            if description != target.description:
                patch.append(_replace(DESCRIPTION, description))

        if features.sync_state:
            state: str | None = None
            if project_info is not None and features.sync_project_status:
                state = self._project_state(work_item_type, record, project_info)
            elif record.state == "closed":
                state = self.states.global_fallback("closed")
            if state and state != target.state:
                patch.append(_replace(STATE, state))

        patch.append(_history(f"Issue updated on GitHub by {sender or record.author}"))
        return patch

    # -- lifecycle events ----------------------------------------------------

    def build_close(
        self, record: SourceRecord, target: TargetRecord, project_info: ProjectInfo | None, sender: str
    ) -> PatchDocument:
        patch: PatchDocument = []
        if self.config.features.sync_state:
            project_key = project_info.project_key if project_info else None
            state = self.states.resolve(target.work_item_type, "closed", project_key, "In Production")
            patch.append(_replace(STATE, state))
        patch.append(_history(f"Issue closed on GitHub by {sender}"))
        if self.config.features.sync_dates and self.config.bypass_rules and record.closed_at:
            patch.append(_add(CLOSED_DATE, record.closed_at.isoformat()))
        return patch

    def build_reopen(
        self, record: SourceRecord, target: TargetRecord, project_info: ProjectInfo | None, sender: str
    ) -> PatchDocument:
        patch: PatchDocument = []
        if self.config.features.sync_state:
            project_key = project_info.project_key if project_info else None
            status: str | None = None
            if project_info is not None and self.config.features.sync_project_status:
                status = project_info.status()
            status = status or "No status"
            state = self.states.resolve(target.work_item_type, "open", project_key, status)
            patch.append(_replace(STATE, state))
        patch.append(_history(f"Issue reopened on GitHub by {sender}"))
        return patch

    def build_assignee_update(self, record: SourceRecord, target: TargetRecord) -> PatchDocument:
        if not self.config.features.sync_assignees:
            return []
        assignee = self.users.primary_target_user(record.assignees)
        if assignee:
            if assignee == target.assigned_to:
                return []
            return [_replace(ASSIGNED_TO, assignee)]
        if target.assigned_to:
            return [PatchOperation("remove", ASSIGNED_TO)]
        return []

    def build_label_added(self, target: TargetRecord, label: str | None) -> PatchDocument:
        if not label or not self.config.features.sync_labels:
            return []
        priority = self.priority_from_labels([label])
        if priority is not None:
            return [_replace(PRIORITY, priority)]
        if label in target.tags:
            return []
        return [_replace(TAGS, "; ".join([*target.tags, label]))]

    def build_label_removed(self, record: SourceRecord, target: TargetRecord, label: str | None) -> PatchDocument:
        if not label or not self.config.features.sync_labels or label not in target.tags:
            return []
        protected = {self.config.labels.marker_tag, record.repository, f"GH-{record.number}"}
        if label in protected:
            logger.debug(f"Not removing identity tag '{label}' from work item {target.id}")
            return []
        return [_replace(TAGS, "; ".join(tag for tag in target.tags if tag != label))]

    def build_comment(self, comment: Comment) -> PatchDocument:
        """Render a GitHub comment as a work item history entry."""
        settings = self.config.comments
        header: list[str] = []
        if settings.include_author and comment.author:
            header.append(f"<b>{comment.author}</b> commented")
        if settings.include_date and comment.created_at:
            header.append(f"on {comment.created_at:%Y-%m-%d %H:%M} UTC")
        parts: list[str] = []
        if header:
            parts.append("<p>" + " ".join(header) + ":</p>")
        parts.append(self.converter.to_markup(comment.body or ""))
        if settings.include_link_back and comment.url:
            parts.append(f'<p><a href="{comment.url}" target="_new">View on GitHub</a></p>')
        return [_history("\n".join(parts))]

    def build_custom_fields_comment(self, project_info: ProjectInfo | None, work_item_type: str) -> PatchDocument:
        """History entry listing the board fields that have no work item field."""
        if project_info is None:
            return []
        _, for_comment, _ = self.map_custom_fields(project_info, work_item_type)
        if not for_comment:
            return []
        lines = [CUSTOM_FIELDS_HEADER, ""] + [f"- **{name}**: {value}" for name, value in for_comment.items()]
        return [_history(self.converter.to_markup("\n".join(lines)))]
