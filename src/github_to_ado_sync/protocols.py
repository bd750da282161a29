"""Protocols defining the contracts for the source and target systems.

The sync engine is split into collaborators:

1. SourceReader / SourceWriter: GitHub issues (read, plus the AB# back reference)
2. ProjectInfoReader: GitHub Projects v2 board state for an issue
3. TargetSystem / IterationStore: Azure DevOps work items and iterations
4. MarkupConverter: markdown to the HTML the target stores

Concrete implementations live in github_source, ado_client and markup. Tests
provide in-memory implementations.
"""

from __future__ import annotations

from collections.abc import Iterator
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from .models import Comment, Iteration, PatchDocument, ProjectInfo, SourceRecord


class SourceReader(Protocol):
    """Read access to source issues."""

    def get_single(self, number: int) -> SourceRecord:
        """Get one issue by number."""
        ...

    def iter_pages(self, state: str, start_page: int = 0) -> Iterator[list[SourceRecord]]:
        """Yield pages of issues with the given state ("open", "closed" or "all").

        Pages are numbered from zero so an interrupted run can restart at a page.
        Pull requests may be included; the caller filters them.
        """
        ...

    def list_comments(self, number: int) -> list[Comment]:
        """Return the comments of an issue in creation order."""
        ...


class SourceWriter(Protocol):
    """Write access to source issues."""

    def append_back_reference(self, number: int, marker_text: str) -> bool:
        """Append marker_text to the issue body unless already present.

        Returns:
            True if the body was changed.
        """
        ...


class ProjectInfoReader(Protocol):
    def get_project_info(self, owner: str, repo: str, number: int) -> ProjectInfo | None: ...


class TargetSystem(Protocol):
    """Azure DevOps work item access."""

    def query(self, wiql: str) -> list[dict[str, Any]]:
        """Run a WIQL query and return full work item payloads for the matches."""
        ...

    def create(self, work_item_type: str, patch: PatchDocument, *, bypass_rules: bool = False) -> dict[str, Any]:
        """Create a work item from an ordered patch and return its payload."""
        ...

    def update(self, work_item_id: int, patch: PatchDocument, *, bypass_rules: bool = False) -> dict[str, Any]:
        """Apply an ordered patch to an existing work item and return its payload."""
        ...

    def work_item_url(self, work_item_id: int) -> str:
        """Return the API URL used to reference a work item in relations."""
        ...


class IterationStore(Protocol):
    def list_iterations(self) -> list[Iteration]: ...

    def create_iteration(self, iteration: Iteration) -> Iteration: ...


class MarkupConverter(Protocol):
    def to_markup(self, text: str) -> str: ...
