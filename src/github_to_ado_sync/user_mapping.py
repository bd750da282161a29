"""
GitHub login to Azure DevOps identity mapping.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from .exceptions import ConfigurationError

logger: logging.Logger = logging.getLogger(__name__)


class UserMap:
    """Case-insensitive map of GitHub logins to Azure DevOps identities (usually e-mail addresses).

    Accepted sources:
        - a list of {"github": login, "ado": identity} objects
        - a {login: identity} dict
        - a path to a JSON file holding either of the above
        - a JSON string of [login, identity] pairs (the DEVELOPER_USERNAMES secret format)
    """

    _users: dict[str, str]

    def __init__(self, source: Any = None) -> None:
        self._users = {}
        if source is not None:
            self.load(source)

    def load(self, source: Any) -> None:
        """Merge mappings from source into this map."""
        if isinstance(source, Path) or (isinstance(source, str) and not source.lstrip().startswith(("[", "{"))):
            self._load_file(Path(source))
            return
        if isinstance(source, str):
            try:
                source = json.loads(source)
            except json.JSONDecodeError as e:
                msg = f"User mapping is not valid JSON: {e}"
                raise ConfigurationError(msg) from e
        self._load_data(source)

    def _load_file(self, path: Path) -> None:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except OSError as e:
            msg = f"Cannot read user mapping file '{path}': {e}"
            raise ConfigurationError(msg) from e
        except json.JSONDecodeError as e:
            msg = f"User mapping file '{path}' is not valid JSON: {e}"
            raise ConfigurationError(msg) from e
        self._load_data(data)
        logger.info(f"Loaded {len(self)} user mapping(s) from {path}")

    def _load_data(self, data: Any) -> None:
        if isinstance(data, dict):
            for login, identity in data.items():
                self.add(login, identity)
            return
        if not isinstance(data, list):
            msg = f"User mapping must be a list or an object, got {type(data).__name__}"
            raise ConfigurationError(msg)
        for entry in data:
            if isinstance(entry, dict) and "github" in entry and "ado" in entry:
                self.add(entry["github"], entry["ado"])
            elif isinstance(entry, list | tuple) and len(entry) == 2:
                self.add(entry[0], entry[1])
            else:
                msg = f"Invalid user mapping entry: {entry!r}"
                raise ConfigurationError(msg)

    def add(self, login: str, identity: str) -> None:
        if not isinstance(login, str) or not isinstance(identity, str) or not login or not identity:
            msg = f"User mapping entries must be non-empty strings: {login!r} -> {identity!r}"
            raise ConfigurationError(msg)
        self._users[login.lower()] = identity

    def remove(self, login: str) -> bool:
        return self._users.pop(login.lower(), None) is not None

    def clear(self) -> None:
        self._users.clear()

    def has_mapping(self, login: str | None) -> bool:
        return bool(login) and login.lower() in self._users

    def target_user(self, login: str | None) -> str | None:
        """Return the Azure DevOps identity for a GitHub login, or None if it is not mapped."""
        if not login:
            return None
        identity = self._users.get(login.lower())
        if identity is None:
            logger.warning(f"No Azure DevOps user mapping for GitHub user '{login}'")
        return identity

    def target_users(self, logins: tuple[str, ...] | list[str]) -> list[str]:
        """Map several logins, dropping the unmapped ones."""
        return [identity for identity in (self.target_user(login) for login in logins) if identity]

    def primary_target_user(self, logins: tuple[str, ...] | list[str]) -> str | None:
        # Azure DevOps work items have a single assignee.
        mapped = self.target_users(logins)
        return mapped[0] if mapped else None

    def additional_target_users(self, logins: tuple[str, ...] | list[str]) -> list[str]:
        return self.target_users(logins)[1:]

    def source_user(self, identity: str) -> str | None:
        """Reverse lookup: the GitHub login mapped to an identity."""
        wanted = identity.lower()
        for login, mapped in self._users.items():
            if mapped.lower() == wanted:
                return login
        return None

    def export(self) -> list[dict[str, str]]:
        return [{"github": login, "ado": identity} for login, identity in self._users.items()]

    def stats(self) -> dict[str, Any]:
        return {"total_mappings": len(self._users), "github_users": sorted(self._users)}

    def __len__(self) -> int:
        return len(self._users)
