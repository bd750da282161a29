"""
Sync configuration: feature flags, rate limits, error policy and field mappings.

The configuration is a tree of frozen dataclasses. It is read once from a JSON
file with camelCase keys (snake_case is accepted too) and validated at load, so
a malformed file fails before any record is processed.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Literal

from .exceptions import ConfigurationError

logger: logging.Logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeatureFlags:
    sync_title: bool = True
    sync_description: bool = True
    sync_state: bool = True
    sync_assignees: bool = True
    sync_labels: bool = True
    sync_comments: bool = True
    sync_dates: bool = True
    sync_hierarchy: bool = True
    sync_project_status: bool = True
    sync_iterations: bool = True
    create_iterations: bool = True


@dataclass(frozen=True)
class RateLimitSettings:
    delay_between_calls_ms: int = 500
    delay_between_pages_ms: int = 500
    max_concurrent: int = 3
    batch_size: int = 10


@dataclass(frozen=True)
class ErrorHandlingSettings:
    continue_on_error: bool = True
    log_failures: bool = True
    failure_log_path: str = "failed_issues.json"
    retry_count: int = 3
    retry_delay_ms: int = 2000


@dataclass(frozen=True)
class IterationSettings:
    parse_sprint_name: bool = True
    default_duration_days: int = 14


@dataclass(frozen=True)
class LabelSettings:
    marker_tag: str = "GitHub Issue"
    all_as_tags: bool = True
    # Labels that set Microsoft.VSTS.Common.Priority instead of becoming tags
    priority_labels: dict[str, int] = field(
        default_factory=lambda: {"ذات أهمية قصوى": 1, "blocker": 1, "high-priority": 1, "مؤجل": 4}
    )


@dataclass(frozen=True)
class CommentSettings:
    include_author: bool = True
    include_date: bool = True
    include_link_back: bool = True


@dataclass(frozen=True)
class HierarchySettings:
    link_type: str = "System.LinkTypes.Hierarchy-Reverse"


@dataclass(frozen=True)
class CustomFieldMapping:
    """Where a board field goes in the work item.

    With no target_field the value is routed by fallback.
    """

    target_field: str | None = None
    value_map: dict[str, Any] = field(default_factory=dict)
    work_item_types: tuple[str, ...] = ()  # empty means every type
    fallback: Literal["comment", "tag", "skip"] = "comment"

    def applies_to(self, work_item_type: str) -> bool:
        return not self.work_item_types or work_item_type in self.work_item_types


def _default_custom_field_mappings() -> dict[str, CustomFieldMapping]:
    return {
        "Business Priority": CustomFieldMapping(
            target_field="Microsoft.VSTS.Common.Priority", value_map={"High": 1, "Normal": 2, "Low": 3}
        ),
        "Time Priority": CustomFieldMapping(fallback="comment"),
        "Time Estimation": CustomFieldMapping(target_field="Microsoft.VSTS.Scheduling.Effort"),
        "Start Date": CustomFieldMapping(target_field="Microsoft.VSTS.Scheduling.StartDate", work_item_types=("Epic",)),
        "End Date": CustomFieldMapping(target_field="Microsoft.VSTS.Scheduling.TargetDate", work_item_types=("Epic",)),
        "Business Value": CustomFieldMapping(target_field="Microsoft.VSTS.Common.BusinessValue"),
        "Product": CustomFieldMapping(fallback="tag"),
        "Category": CustomFieldMapping(fallback="tag"),
        "Assignee QA": CustomFieldMapping(fallback="comment"),
        "Business Owner": CustomFieldMapping(fallback="comment"),
    }


@dataclass(frozen=True)
class CustomFieldSettings:
    write_to_comments: bool = True
    mappings: dict[str, CustomFieldMapping] = field(default_factory=_default_custom_field_mappings)


@dataclass(frozen=True)
class SyncConfig:
    """Complete sync configuration."""

    features: FeatureFlags = field(default_factory=FeatureFlags)
    rate_limiting: RateLimitSettings = field(default_factory=RateLimitSettings)
    error_handling: ErrorHandlingSettings = field(default_factory=ErrorHandlingSettings)
    iterations: IterationSettings = field(default_factory=IterationSettings)
    labels: LabelSettings = field(default_factory=LabelSettings)
    comments: CommentSettings = field(default_factory=CommentSettings)
    hierarchy: HierarchySettings = field(default_factory=HierarchySettings)
    custom_fields: CustomFieldSettings = field(default_factory=CustomFieldSettings)
    default_story_points: float | None = 0.5
    # Allows writing CreatedDate/ClosedDate/CreatedBy (requires bypassRules on the target)
    bypass_rules: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncConfig:
        """Build a validated configuration from a parsed JSON document.

        Raises:
            ConfigurationError: On unknown keys or wrongly typed values.
        """
        if not isinstance(data, dict):
            msg = "Sync configuration must be a JSON object"
            raise ConfigurationError(msg)

        sections: dict[str, type] = {
            "features": FeatureFlags,
            "rate_limiting": RateLimitSettings,
            "error_handling": ErrorHandlingSettings,
            "iterations": IterationSettings,
            "labels": LabelSettings,
            "comments": CommentSettings,
            "hierarchy": HierarchySettings,
        }
        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            name = _snake(key)
            if name in sections:
                kwargs[name] = _build_section(sections[name], value, key)
            elif name == "custom_fields":
                kwargs[name] = _build_custom_fields(value)
            elif name == "default_story_points":
                if value is not None and (isinstance(value, bool) or not isinstance(value, int | float)):
                    msg = f"Config key '{key}' must be a number or null, got {value!r}"
                    raise ConfigurationError(msg)
                kwargs[name] = None if value is None else float(value)
            elif name == "bypass_rules":
                kwargs[name] = _check_value(bool, value, key)
            else:
                msg = f"Unknown config key '{key}'"
                raise ConfigurationError(msg)
        return cls(**kwargs)


def _snake(key: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()


def _check_value(expected: type, value: Any, key: str) -> Any:
    # bool is a subclass of int; keep them apart
    if expected is bool:
        ok = isinstance(value, bool)
    elif expected is int:
        ok = isinstance(value, int) and not isinstance(value, bool)
    else:
        ok = isinstance(value, expected)
    if not ok:
        msg = f"Config key '{key}' must be of type {expected.__name__}, got {value!r}"
        raise ConfigurationError(msg)
    return value


def _build_section(cls: type, data: Any, where: str) -> Any:
    if not isinstance(data, dict):
        msg = f"Config section '{where}' must be an object"
        raise ConfigurationError(msg)
    defaults = cls()
    known = {f.name for f in fields(cls)}
    kwargs: dict[str, Any] = {}
    for key, value in data.items():
        name = _snake(key)
        if name not in known:
            msg = f"Unknown config key '{where}.{key}'"
            raise ConfigurationError(msg)
        expected = type(getattr(defaults, name))
        kwargs[name] = _check_value(expected, value, f"{where}.{key}")
    return replace(defaults, **kwargs)


def _build_custom_fields(data: Any) -> CustomFieldSettings:
    if not isinstance(data, dict):
        msg = "Config section 'customFields' must be an object"
        raise ConfigurationError(msg)
    raw_flag = data.get("writeToComments", data.get("write_to_comments", True))
    write_to_comments = _check_value(bool, raw_flag, "customFields.writeToComments")
    raw_mappings = data.get("mappings")
    if raw_mappings is None:
        return CustomFieldSettings(write_to_comments=write_to_comments)
    if not isinstance(raw_mappings, dict):
        msg = "Config key 'customFields.mappings' must be an object"
        raise ConfigurationError(msg)

    mappings: dict[str, CustomFieldMapping] = {}
    for name, raw in raw_mappings.items():
        where = f"customFields.mappings.{name}"
        if not isinstance(raw, dict):
            msg = f"Config key '{where}' must be an object"
            raise ConfigurationError(msg)
        target_field = raw.get("adoField", raw.get("target_field"))
        if target_field is not None and not isinstance(target_field, str):
            msg = f"Config key '{where}.adoField' must be a string or null"
            raise ConfigurationError(msg)
        fallback = raw.get("fallback", "comment")
        if fallback not in ("comment", "tag", "skip"):
            msg = f"Config key '{where}.fallback' must be one of comment, tag, skip; got {fallback!r}"
            raise ConfigurationError(msg)
        value_map = raw.get("valueMap", raw.get("value_map", {}))
        if not isinstance(value_map, dict):
            msg = f"Config key '{where}.valueMap' must be an object"
            raise ConfigurationError(msg)
        types = raw.get("workItemTypes", raw.get("work_item_types", []))
        if not isinstance(types, list) or not all(isinstance(t, str) for t in types):
            msg = f"Config key '{where}.workItemTypes' must be a list of strings"
            raise ConfigurationError(msg)
        mappings[name] = CustomFieldMapping(
            target_field=target_field, value_map=value_map, work_item_types=tuple(types), fallback=fallback
        )
    return CustomFieldSettings(write_to_comments=write_to_comments, mappings=mappings)


def default_config() -> SyncConfig:
    return SyncConfig()


def load_config(path: str | Path | None) -> SyncConfig:
    """Load the sync configuration from a JSON file, or the defaults when no path is given."""
    if path is None:
        logger.debug("No sync configuration file given, using defaults")
        return default_config()
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except OSError as e:
        msg = f"Cannot read sync configuration '{path}': {e}"
        raise ConfigurationError(msg) from e
    except json.JSONDecodeError as e:
        msg = f"Sync configuration '{path}' is not valid JSON: {e}"
        raise ConfigurationError(msg) from e
    config = SyncConfig.from_dict(data)
    logger.info(f"Loaded sync configuration from {path}")
    return config
