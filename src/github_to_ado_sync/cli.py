"""
Command-line interface for the GitHub to Azure DevOps sync tool.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from dataclasses import replace
from typing import Final

from . import ado_client as adoc
from . import github_source as ghs
from .ado_client import AzureDevOpsClient
from .config import load_config
from .exceptions import ConfigurationError, SyncError
from .iterations import IterationResolver
from .markup import MarkdownConverter
from .orchestrator import BatchResult, RecordResult, SyncOrchestrator
from .state_mapping import StateResolver, load_state_mapping
from .user_mapping import UserMap
from .utils import setup_logging

logger: logging.Logger = logging.getLogger(__name__)

BULK_MODES: Final[dict[str, str]] = {"bulk_all": "all", "bulk_open": "open", "bulk_closed": "closed"}


def parse_arguments() -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Sync GitHub issues to Azure DevOps work items")

    # Positional arguments
    _ = parser.add_argument("github_repo", help="GitHub repository path (owner/repo)")
    _ = parser.add_argument("ado_organization", help="Azure DevOps organization")
    _ = parser.add_argument("ado_project", help="Azure DevOps project")

    _ = parser.add_argument(
        "--mode",
        choices=["single", *BULK_MODES],
        default=os.environ.get("MIGRATION_MODE", "single"),
        help="single: sync the event in --event-path; bulk_*: sync all, open or closed issues (default: single)",
    )
    _ = parser.add_argument(
        "--event-path",
        default=os.environ.get("GITHUB_EVENT_PATH"),
        help="GitHub event payload file for single mode (default: $GITHUB_EVENT_PATH)",
    )
    _ = parser.add_argument("--config", help="Sync configuration JSON file")
    _ = parser.add_argument(
        "--state-mapping",
        default=os.environ.get("STATE_MAPPING_CONFIG"),
        help="State mapping JSON file (default: $STATE_MAPPING_CONFIG, else the built-in mapping)",
    )
    _ = parser.add_argument(
        "--user-mapping", help="User mapping JSON file; $DEVELOPER_USERNAMES is merged in when set"
    )
    _ = parser.add_argument("--parent-id", type=int, help="Work item id to link new work items to as parent")
    _ = parser.add_argument(
        "--bypass-rules",
        action="store_true",
        help="Write created/closed dates and creator (needs bypass rules permission)",
    )
    _ = parser.add_argument(
        "--github-pass-token", help="Path for GitHub token in pass utility (default: github/cli/token)"
    )
    _ = parser.add_argument(
        "--ado-pass-token", help="Path for Azure DevOps token in pass utility (default: azure-devops/cli/token)"
    )
    _ = parser.add_argument(
        "--verbose", "-v", action="count", default=0, help="Increase console verbosity (-v: info, -vv: debug)"
    )

    return parser.parse_args()


def _print_record_result(result: RecordResult) -> None:
    print(f"\nIssue #{result.number}: {result.status.upper()}")
    if result.work_item_id is not None:
        print(f"  Work item: {result.work_item_id}")
    if result.reason:
        print(f"  Reason: {result.reason}")


def _print_batch_summary(result: BatchResult) -> None:
    print("\n" + "=" * 50)
    print("SYNC SUMMARY")
    print("=" * 50)
    status = "PASSED" if not result.failures else "FAILED"
    print(f"Status: {status}")
    print(f"Succeeded: {result.success_count} (created={result.created}, updated={result.updated}, "
          f"unchanged={result.unchanged}, skipped={result.skipped})")
    print(f"Failed: {result.failure_count}")
    for failure in result.failures:
        print(f"  - #{failure.number} {failure.title}: {failure.message}")


def build_orchestrator(args: argparse.Namespace) -> SyncOrchestrator:
    """Wire configuration, clients and resolvers together."""
    config = load_config(args.config)
    if args.bypass_rules:
        config = replace(config, bypass_rules=True)
    states = StateResolver(load_state_mapping(args.state_mapping))

    users = UserMap()
    if args.user_mapping:
        users.load(args.user_mapping)
    developer_usernames = os.environ.get("DEVELOPER_USERNAMES")
    if developer_usernames:
        users.load(developer_usernames)

    ado_token = adoc.get_token(args.ado_pass_token)
    if not ado_token:
        msg = "No Azure DevOps token available"
        raise ConfigurationError(msg)
    github_client = ghs.get_client(ghs.get_token(args.github_pass_token))

    target = AzureDevOpsClient(
        args.ado_organization,
        args.ado_project,
        ado_token,
        retry_count=config.error_handling.retry_count,
        retry_delay_ms=config.error_handling.retry_delay_ms,
    )
    iterations = None
    if config.features.sync_iterations:
        iterations = IterationResolver(
            target, args.ado_project, parse_sprint_name=config.iterations.parse_sprint_name
        )
    # Board data is only read when the board status is synced
    projects = ghs.GitHubProjectsClient(github_client) if config.features.sync_project_status else None
    source = ghs.GitHubSource(github_client, args.github_repo, parent_id=args.parent_id)
    orchestrator = SyncOrchestrator(
        config,
        target,
        states=states,
        users=users,
        converter=MarkdownConverter(),
        iterations=iterations,
        source=source,
        source_writer=source,
        projects=projects,
    )
    return orchestrator


def main() -> None:
    """Main entry point."""
    args = parse_arguments()
    setup_logging(verbosity=args.verbose)

    try:
        orchestrator = build_orchestrator(args)

        if args.mode in BULK_MODES:
            batch = orchestrator.run_batch(BULK_MODES[args.mode])
            _print_batch_summary(batch)
            sys.exit(1 if batch.failures else 0)

        if not args.event_path:
            msg = "Single mode needs --event-path or GITHUB_EVENT_PATH"
            raise ConfigurationError(msg)
        event = ghs.event_from_payload(ghs.load_event(args.event_path), parent_id=args.parent_id)
        result = orchestrator.sync_event(event)
        _print_record_result(result)
        sys.exit(1 if result.status == "lookup_failed" else 0)

    except SyncError as e:
        logger.error(f"Sync failed: {e}")
        sys.exit(1)
