"""Data models exchanged between the source reader, the sync engine and the target system.

These models represent normalized snapshots. Source records are created by the
ingestion side and never mutated by the engine.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Literal

STATUS_FIELD_NAMES: tuple[str, ...] = ("Status", "State", "Column")
SPRINT_FIELD_NAMES: tuple[str, ...] = ("Sprint", "Iteration")


@dataclass(frozen=True)
class Comment:
    """A comment on a source issue."""

    body: str
    author: str
    created_at: datetime | None = None
    url: str = ""


@dataclass(frozen=True)
class SourceRecord:
    """Immutable snapshot of one GitHub issue.

    parent_id is the target work item id of a parent, when one was supplied
    by the caller.
    """

    number: int
    title: str
    body: str = ""
    state: Literal["open", "closed"] = "open"
    author: str = ""
    assignees: tuple[str, ...] = ()
    labels: tuple[str, ...] = ()
    comments: tuple[Comment, ...] = ()
    created_at: datetime | None = None
    closed_at: datetime | None = None
    updated_at: datetime | None = None
    parent_id: int | None = None
    owner: str = ""
    repository: str = ""
    url: str = ""
    repo_url: str = ""
    is_pull_request: bool = False

    @property
    def repo_full_name(self) -> str:
        return f"{self.owner}/{self.repository}"


@dataclass(frozen=True)
class SourceEvent:
    """One lifecycle event on a source issue."""

    action: str | None
    record: SourceRecord
    sender: str = ""
    label: str | None = None
    comment: Comment | None = None


@dataclass(frozen=True)
class ProjectFieldValue:
    """A typed value of a Projects v2 board field."""

    kind: Literal["single_select", "text", "date", "number", "iteration"]
    value: str | float | None
    start_date: date | None = None  # iteration fields only
    duration: int | None = None  # days, iteration fields only

    def display(self) -> str:
        if self.value is None:
            return ""
        if isinstance(self.value, float) and self.value.is_integer():
            return str(int(self.value))
        return str(self.value)


@dataclass(frozen=True)
class SprintInfo:
    """Sprint assignment taken from a board field."""

    name: str
    start_date: date | None = None
    duration: int | None = None


@dataclass(frozen=True)
class ProjectInfo:
    """Board membership of an issue: the project and its field values, in board order."""

    name: str
    number: int | None = None
    fields: dict[str, ProjectFieldValue] = field(default_factory=dict)

    @property
    def project_key(self) -> str:
        return self.name.lower()

    def _first(self, names: tuple[str, ...]) -> ProjectFieldValue | None:
        for name in names:
            value = self.fields.get(name)
            if value is not None and value.value not in (None, ""):
                return value
        return None

    def status(self) -> str | None:
        """Return the board column, looking at Status, State and Column in that order."""
        value = self._first(STATUS_FIELD_NAMES)
        return value.display() if value else None

    def sprint_info(self) -> SprintInfo | None:
        """Return the sprint assignment from the Sprint or Iteration field, if any."""
        value = self._first(SPRINT_FIELD_NAMES)
        if value is None:
            return None
        if value.kind == "iteration":
            return SprintInfo(name=value.display(), start_date=value.start_date, duration=value.duration)
        return SprintInfo(name=value.display())

    def custom_fields(self) -> dict[str, ProjectFieldValue]:
        """Return every field that is not the title, status or sprint field."""
        standard = {"Title", *STATUS_FIELD_NAMES, *SPRINT_FIELD_NAMES}
        return {name: value for name, value in self.fields.items() if name not in standard}

    def custom_field(self, name: str) -> ProjectFieldValue | None:
        return self.custom_fields().get(name)


@dataclass(frozen=True)
class TargetRecord:
    """Snapshot of an existing Azure DevOps work item."""

    id: int
    work_item_type: str = ""
    title: str = ""
    state: str = ""
    tags: tuple[str, ...] = ()
    assigned_to: str | None = None
    area_path: str = ""
    iteration_path: str = ""
    description: str = ""
    url: str = ""

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> TargetRecord:
        """Build a snapshot from a work item REST payload."""
        fields: dict[str, Any] = payload.get("fields", {})
        assigned = fields.get("System.AssignedTo")
        if isinstance(assigned, dict):
            assigned = assigned.get("uniqueName") or assigned.get("displayName")
        raw_tags: str = fields.get("System.Tags") or ""
        return cls(
            id=int(payload["id"]),
            work_item_type=fields.get("System.WorkItemType", ""),
            title=fields.get("System.Title", ""),
            state=fields.get("System.State", ""),
            tags=tuple(tag.strip() for tag in raw_tags.split(";") if tag.strip()),
            assigned_to=assigned,
            area_path=fields.get("System.AreaPath", ""),
            iteration_path=fields.get("System.IterationPath", ""),
            description=fields.get("System.Description") or "",
            url=payload.get("url", ""),
        )


@dataclass(frozen=True)
class PatchOperation:
    """A single JSON-Patch field operation."""

    op: Literal["add", "replace", "remove"]
    path: str
    value: Any = None

    def to_json(self) -> dict[str, Any]:
        if self.op == "remove":
            return {"op": self.op, "path": self.path}
        return {"op": self.op, "path": self.path, "value": self.value}


# Applied strictly in order by the target system.
PatchDocument = list[PatchOperation]


@dataclass(frozen=True)
class Iteration:
    """A named, dated sprint in the target system.

    estimated is set when the dates were defaulted rather than known.
    """

    name: str
    path: str = ""
    start_date: date | None = None
    finish_date: date | None = None
    estimated: bool = False
