"""
Command-line interface for the GitLab to Azure DevOps migration tool.
"""

from __future__ import annotations

import argparse
import logging
import sys
from collections.abc import Sequence

from .config import load_settings
from .context import MigrationContext
from .credentials import SecretMasker
from .exceptions import ConfigurationError, MigrationError
from .models import ResourceDescriptor
from .provisioner import Provisioner, ProvisioningReport
from .utils import setup_logging

logger = logging.getLogger(__name__)


def parse_arguments(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Provision Azure DevOps resources for a GitLab migration")

    _ = parser.add_argument(
        "--config",
        "-c",
        action="append",
        default=[],
        help="Additional YAML config file, merged over the defaults. Can be specified multiple times.",
    )
    _ = parser.add_argument("--source-token", help="GitLab token (overrides GITLAB_TOKEN and config)")
    _ = parser.add_argument("--destination-token", help="Azure DevOps PAT (overrides AZURE_DEVOPS_TOKEN and config)")
    _ = parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    provision = subparsers.add_parser("provision", help="Ensure a project and its resources exist")
    _ = provision.add_argument("project", help="Azure DevOps project name")
    _ = provision.add_argument("--description", default="", help="Description used when the project is created")
    _ = provision.add_argument("--repo", "-r", action="append", default=[], help="Repository to ensure")
    _ = provision.add_argument("--area", action="append", default=[], help="Area path to ensure (e.g. Team/Backend)")
    _ = provision.add_argument("--iteration", action="append", default=[], help="Iteration path to ensure")
    _ = provision.add_argument("--wiki", action="store_true", help="Ensure the project wiki")
    _ = provision.add_argument(
        "--gitlab-group", help="Ensure one repository per project of this GitLab group"
    )

    field_values = subparsers.add_parser("field-values", help="Show the allowed values of a work item field")
    _ = field_values.add_argument("project", help="Azure DevOps project name")
    _ = field_values.add_argument("field", help="Field reference name (e.g. Microsoft.VSTS.Common.Priority)")

    return parser.parse_args(argv)


def _print_report(report: ProvisioningReport) -> None:
    for result in report.results:
        d = result.descriptor
        print(f"  {result.outcome.value:8} {d.resource_type:12} {d.natural_key}")

    stats = report.stats
    print(f"\nCreated: {stats.created}  Adopted: {stats.adopted}  Failed: {stats.failed}")
    for failure in stats.failures:
        where = f" [{failure.target} {failure.path} -> {failure.status}]" if failure.path else ""
        print(f"  FAILED {failure.resource_type} '{failure.natural_key}'{where}: {failure.message}")


def _run_provision(context: MigrationContext, args: argparse.Namespace) -> int:
    provisioner = Provisioner(context)
    repositories: list[str] = list(args.repo)
    group_error: MigrationError | None = None
    if args.gitlab_group:
        try:
            repositories += provisioner.repositories_from_gitlab_group(args.gitlab_group)
        except ConfigurationError:
            raise
        except MigrationError as e:
            # Still provision what was requested explicitly
            logger.error(f"Cannot list projects of GitLab group '{args.gitlab_group}': {e}")
            group_error = e

    report = provisioner.provision_project(
        args.project,
        description=args.description,
        repositories=repositories,
        area_paths=args.area,
        iterations=args.iteration,
        wiki=args.wiki,
    )
    if group_error is not None:
        report.add_failure(ResourceDescriptor("gitlab_group", args.gitlab_group), group_error)
    _print_report(report)
    return 0 if report.success else 1


def _run_field_values(context: MigrationContext, args: argparse.Namespace) -> int:
    values = context.field_cache(args.project).get_allowed_values(args.field)
    if not values:
        print(f"{args.field}: no restricted value list")
        return 0
    print(f"{args.field}:")
    for value in sorted(values):
        print(f"  {value}")
    return 0


def main(argv: Sequence[str] | None = None) -> None:
    """Main entry point."""
    args = parse_arguments(argv)

    masker = SecretMasker()
    verbose: bool = getattr(args, "verbose", False)
    setup_logging(verbose=verbose, masker=masker)

    try:
        settings = load_settings(args.config)
        context = MigrationContext.build(
            settings,
            source_token=args.source_token,
            destination_token=args.destination_token,
            masker=masker,
        )
        if args.command == "provision":
            exit_code = _run_provision(context, args)
        else:
            exit_code = _run_field_values(context, args)
    except MigrationError as e:
        logger.error(str(e))
        sys.exit(2)
    except Exception:
        logger.exception("Migration failed")
        sys.exit(1)

    sys.exit(exit_code)
