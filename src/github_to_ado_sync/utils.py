"""
Utility functions for the GitHub to Azure DevOps sync tool.
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
from subprocess import CompletedProcess

logger: logging.Logger = logging.getLogger(__name__)


class PassError(Exception):
    """Base class for pass-related errors."""


class InvalidPassPathError(PassError):
    """Raised when a pass entry does not exist."""


class PassphraseRequiredError(PassError):
    """Raised when the GPG key protecting the pass store needs a passphrase."""


def setup_logging(*, verbosity: int = 0) -> None:
    """Configure logging: console at WARNING/INFO/DEBUG for verbosity 0/1/2, sync.log at DEBUG."""
    console_level = {0: logging.WARNING, 1: logging.INFO}.get(verbosity, logging.DEBUG)
    console = logging.StreamHandler()
    console.setLevel(console_level)
    log_file = logging.FileHandler("sync.log", mode="a", encoding="utf-8")
    log_file.setLevel(logging.DEBUG)
    logging.basicConfig(
        level=logging.DEBUG,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[console, log_file],
    )
    # urllib3 logs every request at DEBUG
    logging.getLogger("urllib3").setLevel(logging.INFO)


def _validate_pass_path(pass_path: str) -> None:
    if not re.fullmatch(r"[A-Za-z0-9_.-]+(?:/[A-Za-z0-9_.-]+)*", pass_path):
        msg = f"Invalid pass path: {pass_path}"
        raise ValueError(msg)


def _run_pass(pass_path: str, passphrase: str | None = None) -> CompletedProcess[str]:
    env = None
    if passphrase is not None:
        env = os.environ.copy() | {"PASSWORD_STORE_GPG_OPTS": "--pinentry-mode=loopback --passphrase-fd 0"}
    return subprocess.run(  # noqa: S603
        ["pass", pass_path], input=passphrase, capture_output=True, text=True, check=True, env=env
    )


def get_pass_value(pass_path: str) -> str:
    """Read a secret from the pass password store.

    Raises:
        ValueError: If the path is malformed.
        InvalidPassPathError: If the entry does not exist.
        PassphraseRequiredError: If the GPG passphrase is needed but cannot be read.
        PassError: For any other pass failure.
    """
    _validate_pass_path(pass_path)

    try:
        result = _run_pass(pass_path)
    except FileNotFoundError as e:
        msg = "The pass utility is not installed"
        raise PassError(msg) from e
    except subprocess.CalledProcessError as e:
        stderr = e.stderr.lower()
        if e.returncode == 1 and "not in the password store" in stderr:
            msg = f"Pass path '{pass_path}' not found."
            raise InvalidPassPathError(msg) from e
        if "gpg" not in stderr or "decryption failed" not in stderr:
            msg = f"Failed to read '{pass_path}' from pass (exit {e.returncode}): {e.stderr.strip()}"
            raise PassError(msg) from e
        # Non-interactive sessions (CI, pytest) cannot answer the prompt.
        try:
            passphrase = input("Enter passphrase for GPG key used by pass: ")
        except EOFError as eof:
            msg = "A GPG passphrase is required. Please run the command in an interactive session."
            raise PassphraseRequiredError(msg) from eof
        try:
            result = _run_pass(pass_path, passphrase)
        except subprocess.CalledProcessError as retry_error:
            msg = f"Failed to read '{pass_path}' from pass with passphrase: {retry_error.stderr.strip()}"
            raise PassphraseRequiredError(msg) from retry_error

    return result.stdout.strip()


def get_token(pass_path: str | None, env_var: str, default_pass_path: str) -> str | None:
    """Get an API token from a pass path, an environment variable, or the default pass location."""
    if pass_path:
        return get_pass_value(pass_path)

    token = os.environ.get(env_var)
    if token:
        return token

    try:
        return get_pass_value(default_pass_path)
    except PassError:
        logger.warning(f"No token given, {env_var} is not set and pass has no {default_pass_path}")
        return None
