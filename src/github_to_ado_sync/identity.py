"""
Finding the work item previously created for a GitHub issue.

Every synced work item carries "(GitHub Issue #<number>)" in its title and the
marker tag plus the repository name in its tags. At most one work item per
(repository, issue number) satisfies that predicate.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .exceptions import TransportError
from .models import TargetRecord

if TYPE_CHECKING:
    from .models import SourceRecord
    from .protocols import TargetSystem

logger: logging.Logger = logging.getLogger(__name__)


def title_marker(number: int) -> str:
    return f"(GitHub Issue #{number})"


def render_title(title: str, number: int) -> str:
    return f"{title} {title_marker(number)}"


def _wiql_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


@dataclass(frozen=True)
class Found:
    record: TargetRecord


@dataclass(frozen=True)
class NotFound:
    pass


@dataclass(frozen=True)
class LookupFailed:
    reason: str
    retryable: bool = True


LookupResult = Found | NotFound | LookupFailed


class IdentityResolver:
    target: TargetSystem
    marker_tag: str

    def __init__(self, target: TargetSystem, marker_tag: str = "GitHub Issue") -> None:
        self.target = target
        self.marker_tag = marker_tag

    def build_query(self, record: SourceRecord) -> str:
        return (
            "SELECT [System.Id], [System.Title], [System.State] FROM workitems "
            "WHERE [System.TeamProject] = @project "
            f"AND [System.Title] CONTAINS {_wiql_literal(title_marker(record.number))} "
            f"AND [System.Tags] CONTAINS {_wiql_literal(self.marker_tag)} "
            f"AND [System.Tags] CONTAINS {_wiql_literal(record.repository)}"
        )

    def find(self, record: SourceRecord) -> LookupResult:
        """Look up the work item of a source record.

        A transport failure is reported as LookupFailed, never as NotFound.
        """
        try:
            rows = self.target.query(self.build_query(record))
        except TransportError as e:
            logger.error(f"Work item lookup for issue #{record.number} failed: {e}")
            return LookupFailed(reason=str(e), retryable=e.retryable)

        if not rows:
            logger.debug(f"No work item found for issue #{record.number}")
            return NotFound()
        if len(rows) > 1:
            ids = ", ".join(str(row.get("id")) for row in rows)
            logger.warning(f"Multiple work items ({ids}) match issue #{record.number}, using the first")
        return Found(TargetRecord.from_api(rows[0]))
