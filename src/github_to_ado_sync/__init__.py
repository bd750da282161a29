"""
GitHub to Azure DevOps Sync Tool

Synchronizes GitHub issues and their Projects v2 board state into Azure DevOps
work items, without creating duplicates, from single events or in bulk.
"""

from __future__ import annotations

from .cli import main
from .config import SyncConfig, load_config
from .exceptions import ConfigurationError, SyncError, TransportError, ValidationGap
from .iterations import IterationResolver
from .orchestrator import BatchResult, SyncOrchestrator
from .patch_builder import PatchBuilder
from .sprint_dates import parse_sprint_dates
from .state_mapping import StateResolver, load_state_mapping
from .user_mapping import UserMap
from .utils import setup_logging

# Package version
__version__ = "0.1.0"

__all__ = [
    "BatchResult",
    "ConfigurationError",
    "IterationResolver",
    "PatchBuilder",
    "StateResolver",
    "SyncConfig",
    "SyncError",
    "SyncOrchestrator",
    "TransportError",
    "UserMap",
    "ValidationGap",
    "load_config",
    "load_state_mapping",
    "main",
    "parse_sprint_dates",
    "setup_logging",
]
