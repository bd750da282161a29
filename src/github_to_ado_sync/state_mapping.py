"""
Work item state, type and area path resolution.

Maps a GitHub issue state plus its Projects v2 board column to an Azure DevOps
state, using per-project tables with a global fallback. Tables are validated
once when loaded.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .exceptions import ConfigurationError

logger: logging.Logger = logging.getLogger(__name__)

WILDCARD = "*"
NO_STATUS_KEYS: tuple[str, ...] = ("No status", "No Status")


@dataclass(frozen=True)
class ClosedIssueHandling:
    in_production: str = "Done"
    not_in_production: str = "Done"
    no_project: str = "Done"


@dataclass(frozen=True)
class GlobalStateSettings:
    unmapped_status_fallback: dict[str, str] = field(default_factory=lambda: {"open": "New", "closed": "Done"})
    closed_issue_handling: ClosedIssueHandling = field(default_factory=ClosedIssueHandling)


@dataclass(frozen=True)
class WorkItemTypeRules:
    """Title prefix rules (ordered, first match wins), label rules and the default type."""

    title_prefixes: tuple[tuple[str, str], ...] = ()
    label_types: dict[str, str] = field(default_factory=dict)
    default: str = "Product Backlog Item"


@dataclass(frozen=True)
class ProjectStateTable:
    """State table of one board: work item type -> source state -> board column -> target state."""

    name: str
    area_path: str | None = None
    status_mappings: dict[str, dict[str, dict[str, str]]] = field(default_factory=dict)


@dataclass(frozen=True)
class StateMappingConfig:
    default_project: str | None = None
    global_settings: GlobalStateSettings = field(default_factory=GlobalStateSettings)
    work_item_types: WorkItemTypeRules = field(default_factory=WorkItemTypeRules)
    projects: dict[str, ProjectStateTable] = field(default_factory=dict)  # keyed by lower-cased name

    @classmethod
    def from_dict(cls, data: Any) -> StateMappingConfig:
        """Validate and build the state mapping from its JSON form.

        The JSON form uses the keys defaultProject, globalSettings,
        workItemTypeMapping, labelToWorkItemType and projects.

        Raises:
            ConfigurationError: When the document has the wrong shape.
        """
        _require_dict(data, "state mapping")

        default_project = data.get("defaultProject")
        if default_project is not None and not isinstance(default_project, str):
            msg = "State mapping 'defaultProject' must be a string"
            raise ConfigurationError(msg)

        raw_global = data.get("globalSettings", {})
        _require_dict(raw_global, "globalSettings")
        fallback = raw_global.get("unmappedStatusFallback", {"open": "New", "closed": "Done"})
        _require_str_map(fallback, "globalSettings.unmappedStatusFallback")
        raw_closed = raw_global.get("closedIssueHandling", {})
        _require_str_map(raw_closed, "globalSettings.closedIssueHandling")
        closed = ClosedIssueHandling(
            in_production=raw_closed.get("inProduction", "Done"),
            not_in_production=raw_closed.get("notInProduction", "Done"),
            no_project=raw_closed.get("noProject", "Done"),
        )
        global_settings = GlobalStateSettings(
            unmapped_status_fallback={k.lower(): v for k, v in fallback.items()}, closed_issue_handling=closed
        )

        raw_types = data.get("workItemTypeMapping", {})
        _require_str_map(raw_types, "workItemTypeMapping")
        default_type = raw_types.get("default", "Product Backlog Item")
        prefixes = tuple((prefix, wit) for prefix, wit in raw_types.items() if prefix != "default")
        raw_labels = data.get("labelToWorkItemType", {})
        _require_str_map(raw_labels, "labelToWorkItemType")
        type_rules = WorkItemTypeRules(
            title_prefixes=prefixes,
            label_types={label.lower(): wit for label, wit in raw_labels.items()},
            default=default_type,
        )

        raw_projects = data.get("projects", {})
        _require_dict(raw_projects, "projects")
        projects: dict[str, ProjectStateTable] = {}
        for key, raw_project in raw_projects.items():
            where = f"projects.{key}"
            _require_dict(raw_project, where)
            area_path = raw_project.get("adoAreaPath")
            if area_path is not None and not isinstance(area_path, str):
                msg = f"State mapping '{where}.adoAreaPath' must be a string"
                raise ConfigurationError(msg)
            raw_status = raw_project.get("statusMappings", {})
            _require_dict(raw_status, f"{where}.statusMappings")
            status_mappings: dict[str, dict[str, dict[str, str]]] = {}
            for wit, by_state in raw_status.items():
                _require_dict(by_state, f"{where}.statusMappings.{wit}")
                status_mappings[wit] = {}
                for source_state, columns in by_state.items():
                    _require_str_map(columns, f"{where}.statusMappings.{wit}.{source_state}")
                    status_mappings[wit][source_state.lower()] = dict(columns)
            projects[key.lower()] = ProjectStateTable(
                name=raw_project.get("name", key), area_path=area_path, status_mappings=status_mappings
            )

        return cls(
            default_project=default_project.lower() if default_project else None,
            global_settings=global_settings,
            work_item_types=type_rules,
            projects=projects,
        )


def _require_dict(value: Any, where: str) -> None:
    if not isinstance(value, dict):
        msg = f"State mapping '{where}' must be an object"
        raise ConfigurationError(msg)


def _require_str_map(value: Any, where: str) -> None:
    _require_dict(value, where)
    for key, item in value.items():
        if not isinstance(item, str):
            msg = f"State mapping '{where}.{key}' must be a string, got {item!r}"
            raise ConfigurationError(msg)


_SIWAR_STATUS_MAPPINGS: dict[str, dict[str, dict[str, str]]] = {
    "Epic": {
        "open": {
            "No status": "New",
            "Product Backlog": "New",
            "Sprint Backlog": "New",
            "Ready": "New",
            "In Progress": "In Progress",
            "In PR review": "In Progress",
            "In Beta": "In Progress",
            "In Main": "In Progress",
            "In Production": "Done",
        },
        "closed": {WILDCARD: "Done"},
    },
    "Product Backlog Item": {
        "open": {
            "No status": "New",
            "Product Backlog": "New",
            "Sprint Backlog": "Approved",
            "Ready": "Approved",
            "In Progress": "Committed",
            "In PR review": "Committed",
            "In Beta": "Committed",
            "In Main": "Committed",
            "In Production": "Done",
        },
        "closed": {WILDCARD: "Done"},
    },
    "Bug": {
        "open": {
            "No status": "New",
            "Product Backlog": "New",
            "Sprint Backlog": "Approved",
            "Ready": "Approved",
            "In Progress": "Committed",
            "In PR review": "Committed",
            "In Beta": "Committed",
            "In Main": "Committed",
            "In Production": "Done",
        },
        "closed": {WILDCARD: "Done"},
    },
    "Task": {
        "open": {
            "No status": "To Do",
            "Product Backlog": "To Do",
            "Sprint Backlog": "To Do",
            "Ready": "To Do",
            "In Progress": "In Progress",
            "In PR review": "In Progress",
            "In Beta": "In Progress",
            "In Main": "In Progress",
            "In Production": "Done",
        },
        "closed": {WILDCARD: "Done"},
    },
}


def default_state_mapping() -> StateMappingConfig:
    """Return the built-in state mapping."""
    return StateMappingConfig.from_dict(
        {
            "defaultProject": "siwar",
            "globalSettings": {
                "closedIssueHandling": {"inProduction": "Done", "notInProduction": "Done", "noProject": "Done"},
                "unmappedStatusFallback": {"open": "New", "closed": "Done"},
            },
            "workItemTypeMapping": {
                "[Epic]": "Epic",
                "[Story]": "Product Backlog Item",
                "[Request]": "Product Backlog Item",
                "[IMPROVEMENT]": "Product Backlog Item",
                "[Bug]": "Bug",
                "default": "Product Backlog Item",
            },
            "labelToWorkItemType": {
                "epic": "Epic",
                "user-story": "Product Backlog Item",
                "task": "Task",
                "bug": "Bug",
                "spike": "Task",
            },
            "projects": {
                "siwar": {
                    "name": "Siwar",
                    "adoAreaPath": "سوار\\سوار Team",
                    "statusMappings": _SIWAR_STATUS_MAPPINGS,
                }
            },
        }
    )


def load_state_mapping(path: str | Path | None) -> StateMappingConfig:
    """Load the state mapping from a JSON file, or the built-in mapping when no path is given."""
    if path is None:
        return default_state_mapping()
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except OSError as e:
        msg = f"Cannot read state mapping '{path}': {e}"
        raise ConfigurationError(msg) from e
    except json.JSONDecodeError as e:
        msg = f"State mapping '{path}' is not valid JSON: {e}"
        raise ConfigurationError(msg) from e
    logger.info(f"Loaded state mapping from {path}")
    return StateMappingConfig.from_dict(data)


class StateResolver:
    """Resolves target states, work item types and area paths from a StateMappingConfig."""

    config: StateMappingConfig

    def __init__(self, config: StateMappingConfig | None = None) -> None:
        self.config = config or default_state_mapping()

    def global_fallback(self, source_state: str | None) -> str:
        state = (source_state or "open").lower()
        configured = self.config.global_settings.unmapped_status_fallback.get(state)
        if configured:
            return configured
        return "Done" if state == "closed" else "New"

    def resolve(
        self,
        work_item_type: str,
        source_state: str | None,
        project_key: str | None = None,
        status_column: str | None = None,
    ) -> str:
        """Resolve the target state. Never raises.

        Args:
            work_item_type: Target work item type, e.g. "Bug".
            source_state: "open" or "closed" (case-insensitive, absent means open).
            project_key: Board name; absent means the configured default project.
            status_column: Board column of the issue, if it is on a board.

        Returns:
            The first match of: global fallback when there is no column or no
            table for the project; the type's wildcard entry; the column entry;
            the "No status" entry; the global fallback.
        """
        state = (source_state or "open").lower()
        key = (project_key or self.config.default_project or "").lower()
        table = self.config.projects.get(key)

        if not status_column or table is None:
            return self.global_fallback(state)

        by_state = table.status_mappings.get(work_item_type)
        if by_state is None:
            logger.warning(f"No state mapping for work item type '{work_item_type}' in project '{key}'")
            return self.global_fallback(state)

        columns = by_state.get(state)
        if columns is None:
            return self.global_fallback(state)

        if WILDCARD in columns:
            return columns[WILDCARD]
        if status_column in columns:
            return columns[status_column]
        for sentinel in NO_STATUS_KEYS:
            if sentinel in columns:
                return columns[sentinel]
        return self.global_fallback(state)

    def resolve_work_item_type(self, title: str, labels: tuple[str, ...] | list[str] = ()) -> str:
        """Pick the work item type from the title prefix, then labels, then the default."""
        rules = self.config.work_item_types
        lowered_title = title.lower()
        for prefix, work_item_type in rules.title_prefixes:
            if lowered_title.startswith(prefix.lower()):
                return work_item_type
        for label in labels:
            work_item_type = rules.label_types.get(label.lower())
            if work_item_type:
                return work_item_type
        return rules.default

    def area_path(self, project_key: str | None) -> str | None:
        key = (project_key or self.config.default_project or "").lower()
        table = self.config.projects.get(key)
        if table and table.area_path:
            return table.area_path
        return key or None

    def closed_issue_state(self, *, in_production: bool, has_project: bool) -> str:
        handling = self.config.global_settings.closed_issue_handling
        if not has_project:
            return handling.no_project
        return handling.in_production if in_production else handling.not_in_production

    def projects(self) -> list[str]:
        return list(self.config.projects)

    def is_valid_project(self, name: str | None) -> bool:
        return bool(name) and name.lower() in self.config.projects
