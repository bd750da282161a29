"""
Azure DevOps iteration (sprint) resolution with a run-scoped cache.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import date, timedelta
from typing import TYPE_CHECKING, Any

from .exceptions import TransportError
from .models import Iteration
from .sprint_dates import parse_sprint_dates

if TYPE_CHECKING:
    from .models import SprintInfo
    from .protocols import IterationStore

logger: logging.Logger = logging.getLogger(__name__)


class IterationResolver:
    """Finds or creates iterations, keyed case-insensitively by name.

    The existing iterations are loaded from the store once per run. A failed
    load raises and leaves the cache unloaded, so the next call retries instead
    of assuming that no iteration exists.
    """

    store: IterationStore
    project: str
    _cache: dict[str, Iteration]
    _loaded: bool

    def __init__(
        self,
        store: IterationStore,
        project: str,
        *,
        parse_sprint_name: bool = True,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.project = project
        self.parse_sprint_name = parse_sprint_name
        self._sleep = sleep
        self._cache = {}
        self._loaded = False

    def load_all(self) -> None:
        """Populate the cache from the store if it has not been loaded yet.

        Raises:
            TransportError: When the store cannot be read.
        """
        if self._loaded:
            return
        iterations = self.store.list_iterations()
        self._cache = {iteration.name.lower(): iteration for iteration in iterations}
        self._loaded = True
        logger.info(f"Loaded {len(self._cache)} existing iteration(s) for project {self.project}")

    def exists(self, name: str) -> bool:
        self.load_all()
        return name.lower() in self._cache

    def get(self, name: str) -> Iteration | None:
        self.load_all()
        return self._cache.get(name.lower())

    def iteration_path(self, name: str) -> str:
        return f"{self.project}\\{name}"

    def create_if_absent(
        self, name: str, start: date | None, end: date | None, path: str | None = None, *, estimated: bool = False
    ) -> Iteration | None:
        """Return the cached iteration of that name, or create it.

        Returns:
            The iteration, or None when the store failed to create it.
        """
        existing = self.get(name)
        if existing is not None:
            logger.debug(f"Iteration '{name}' already exists")
            return existing

        wanted = Iteration(
            name=name,
            path=path or self.iteration_path(name),
            start_date=start,
            finish_date=end,
            estimated=estimated,
        )
        try:
            created = self.store.create_iteration(wanted)
        except TransportError as e:
            logger.error(f"Failed to create iteration '{name}': {e}")
            return None
        if estimated and not created.estimated:
            created = Iteration(created.name, created.path, created.start_date, created.finish_date, estimated=True)
        self._cache[name.lower()] = created
        logger.info(f"Created iteration '{name}' ({start} - {end})")
        return created

    def create_from_sprint_info(self, sprint_info: SprintInfo, default_duration_days: int = 14) -> Iteration | None:
        """Create (or find) the iteration for a board sprint.

        Dates come from the board's start date and duration, else from the
        sprint name, else today plus the default duration (flagged estimated).
        """
        existing = self.get(sprint_info.name)
        if existing is not None:
            return existing

        estimated = False
        start: date | None = sprint_info.start_date
        end: date | None = None
        if start is not None and sprint_info.duration:
            end = start + timedelta(days=sprint_info.duration)
        elif start is None and self.parse_sprint_name:
            parsed = parse_sprint_dates(sprint_info.name)
            if parsed is not None:
                start, end = parsed.start, parsed.end
                estimated = parsed.month_fallback

        if start is None or end is None:
            logger.warning(
                f"Could not determine dates for sprint '{sprint_info.name}', "
                f"using today plus {default_duration_days} days"
            )
            start = start or date.today()
            end = start + timedelta(days=default_duration_days)
            estimated = True

        return self.create_if_absent(sprint_info.name, start, end, estimated=estimated)

    def batch_create(
        self, sprints: list[SprintInfo], default_duration_days: int = 14, delay_ms: int = 500
    ) -> list[Iteration]:
        """Create several iterations, pausing between store calls."""
        results: list[Iteration] = []
        for index, sprint in enumerate(sprints):
            if index:
                self._sleep(delay_ms / 1000)
            iteration = self.create_from_sprint_info(sprint, default_duration_days)
            if iteration is not None:
                results.append(iteration)
        return results

    def stats(self) -> dict[str, Any]:
        return {"cached_iterations": len(self._cache), "loaded": self._loaded}
