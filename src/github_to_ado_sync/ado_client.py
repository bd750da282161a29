"""
Azure DevOps REST client for work items, WIQL queries and iterations.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from datetime import date, datetime
from typing import TYPE_CHECKING, Any, Final
from urllib.parse import quote

import requests

from . import utils
from .exceptions import TransportError
from .models import Iteration

if TYPE_CHECKING:
    from .models import PatchDocument

logger: logging.Logger = logging.getLogger(__name__)

_TOKEN_ENV_VAR: Final[str] = "ADO_TOKEN"
_DEFAULT_TOKEN_PASS_PATH: Final[str] = "azure-devops/cli/token"

API_VERSION: Final[str] = "7.1"
JSON_PATCH: Final[str] = "application/json-patch+json"
RETRYABLE_STATUS: Final[frozenset[int]] = frozenset({429, 500, 502, 503, 504})
MAX_IDS_PER_REQUEST: Final[int] = 200


def get_token(pass_path: str | None = None) -> str | None:
    """Get the Azure DevOps PAT from pass path, env var ADO_TOKEN, or default pass location."""
    return utils.get_token(pass_path, _TOKEN_ENV_VAR, _DEFAULT_TOKEN_PASS_PATH)


def _parse_date(value: str | None) -> date | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00")).date()


class AzureDevOpsClient:
    """Work item and iteration access for one Azure DevOps project.

    Requests that fail with HTTP 429 or 5xx, or with a connection error, are
    retried retry_count times after a fixed delay. Every failure surfaces as
    TransportError.
    """

    organization: str
    project: str
    base_url: str

    def __init__(
        self,
        organization: str,
        project: str,
        token: str,
        *,
        base_url: str = "https://dev.azure.com",
        retry_count: int = 3,
        retry_delay_ms: int = 2000,
        timeout: float = 30.0,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.organization = organization
        self.project = project
        self.base_url = base_url.rstrip("/")
        self.retry_count = retry_count
        self.retry_delay_ms = retry_delay_ms
        self.timeout = timeout
        self._sleep = sleep
        self.session = session or requests.Session()
        self.session.auth = ("", token)
        self.session.headers.update({"Accept": "application/json"})

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{quote(self.organization)}/{quote(self.project)}/_apis/{path}"

    def _request(
        self,
        method: str,
        url: str,
        *,
        body: Any = None,
        content_type: str = "application/json",
        params: dict[str, str] | None = None,
    ) -> Any:
        query = {"api-version": API_VERSION} | (params or {})
        data = json.dumps(body) if body is not None else None
        headers = {"Content-Type": content_type} if data is not None else {}

        attempts = self.retry_count + 1
        for attempt in range(1, attempts + 1):
            try:
                response = self.session.request(
                    method, url, params=query, data=data, headers=headers, timeout=self.timeout
                )
            except requests.RequestException as e:
                if attempt == attempts:
                    msg = f"{method} {url} failed: {e}"
                    raise TransportError(msg) from e
                logger.warning(f"{method} {url} failed ({e}), retrying in {self.retry_delay_ms} ms")
                self._sleep(self.retry_delay_ms / 1000)
                continue

            if response.status_code in RETRYABLE_STATUS and attempt < attempts:
                logger.warning(
                    f"{method} {url} returned {response.status_code}, retrying in {self.retry_delay_ms} ms "
                    f"(attempt {attempt}/{attempts})"
                )
                self._sleep(self.retry_delay_ms / 1000)
                continue

            if not response.ok:
                msg = f"{method} {url} returned {response.status_code}: {response.text[:500]}"
                raise TransportError(msg, status=response.status_code)
            return response.json() if response.content else {}

        # Unreachable: the last attempt either returns or raises.
        msg = f"{method} {url} failed after {attempts} attempts"
        raise TransportError(msg)

    # -- work items ----------------------------------------------------------

    def query(self, wiql: str) -> list[dict[str, Any]]:
        result = self._request("POST", self._url("wit/wiql"), body={"query": wiql})
        ids = [str(item["id"]) for item in result.get("workItems", [])]
        if not ids:
            return []
        if len(ids) > MAX_IDS_PER_REQUEST:
            logger.warning(f"WIQL query matched {len(ids)} work items, reading the first {MAX_IDS_PER_REQUEST}")
            ids = ids[:MAX_IDS_PER_REQUEST]
        items = self._request("GET", self._url("wit/workitems"), params={"ids": ",".join(ids)})
        return items.get("value", [])

    def create(self, work_item_type: str, patch: PatchDocument, *, bypass_rules: bool = False) -> dict[str, Any]:
        params = {"bypassRules": "true"} if bypass_rules else None
        return self._request(
            "POST",
            self._url(f"wit/workitems/${quote(work_item_type)}"),
            body=[operation.to_json() for operation in patch],
            content_type=JSON_PATCH,
            params=params,
        )

    def update(self, work_item_id: int, patch: PatchDocument, *, bypass_rules: bool = False) -> dict[str, Any]:
        params = {"bypassRules": "true"} if bypass_rules else None
        return self._request(
            "PATCH",
            self._url(f"wit/workitems/{work_item_id}"),
            body=[operation.to_json() for operation in patch],
            content_type=JSON_PATCH,
            params=params,
        )

    def work_item_url(self, work_item_id: int) -> str:
        return self._url(f"wit/workitems/{work_item_id}")

    # -- iterations ----------------------------------------------------------

    def _iteration_path(self, node_path: str) -> str:
        # Node paths look like "\Project\Iteration\Sprint 1"; work items use "Project\Sprint 1".
        parts = [part for part in node_path.split("\\") if part]
        if len(parts) > 1 and parts[1] == "Iteration":
            del parts[1]
        return "\\".join(parts)

    def _flatten(self, node: dict[str, Any]) -> list[Iteration]:
        iterations: list[Iteration] = []
        for child in node.get("children", []):
            attributes = child.get("attributes", {})
            iterations.append(
                Iteration(
                    name=child["name"],
                    path=self._iteration_path(child.get("path", "")),
                    start_date=_parse_date(attributes.get("startDate")),
                    finish_date=_parse_date(attributes.get("finishDate")),
                )
            )
            iterations.extend(self._flatten(child))
        return iterations

    def list_iterations(self) -> list[Iteration]:
        root = self._request("GET", self._url("wit/classificationnodes/Iterations"), params={"$depth": "10"})
        return self._flatten(root)

    def create_iteration(self, iteration: Iteration) -> Iteration:
        attributes: dict[str, str] = {}
        if iteration.start_date:
            attributes["startDate"] = iteration.start_date.isoformat()
        if iteration.finish_date:
            attributes["finishDate"] = iteration.finish_date.isoformat()
        node = self._request(
            "POST",
            self._url("wit/classificationnodes/Iterations"),
            body={"name": iteration.name, "attributes": attributes},
        )
        return Iteration(
            name=node.get("name", iteration.name),
            path=self._iteration_path(node["path"]) if node.get("path") else iteration.path,
            start_date=iteration.start_date,
            finish_date=iteration.finish_date,
            estimated=iteration.estimated,
        )
