"""
Custom exception classes for the GitHub to Azure DevOps sync tool.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base exception for sync errors."""


class TransportError(SyncError):
    """Raised when a call to GitHub or Azure DevOps fails (network, auth, HTTP error)."""

    status: int | None

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status

    @property
    def retryable(self) -> bool:
        # Authentication and permission problems will not fix themselves.
        return self.status not in (401, 403)


class ConfigurationError(SyncError):
    """Raised when a configuration file or value is malformed."""


class ValidationGap(SyncError):
    """Raised when a source record lacks a field the target requires."""
