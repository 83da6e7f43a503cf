#!/usr/bin/env python3
"""dora-sync CLI.

Command-line tool for one-off sync runs and administrator operations.

Usage:
    dora_sync_cli.py --job commits                      # Run one job once
    dora_sync_cli.py --status                           # Show cursors per job key
    dora_sync_cli.py --trigger-deployments [--repository-id 3]
    dora_sync_cli.py --trigger-repositories             # Register new repositories
    dora_sync_cli.py --update-repository 3 --service-name checkout --workflow-file deploy.yml
    dora_sync_cli.py --check-member octocat [--org my-org]
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from dora_sync.admin import (
    trigger_deployment_sync,
    trigger_repository_sync,
    update_repository_config,
    verify_member,
)
from dora_sync.config import JOB_NAMES, get_config
from dora_sync.service import SyncService


def show_status(service: SyncService) -> None:
    """Display configuration and the stored cursor of every job key."""
    config = service.config
    print("dora-sync Status")
    print("=" * 50)
    print(f"Database: {config.database_url_masked}")
    print(f"GitHub configured: {config.github_enabled}")
    print(f"Datadog configured: {config.datadog_enabled}")
    print(f"Organization: {config.github_org or '(not set)'}")
    print(f"Enabled jobs: {', '.join(config.enabled_jobs)}")
    print()

    targets = service.targets()
    print(f"Tracked repositories: {len(targets)}")
    for target in targets:
        print(
            f"  [{target.id}] {target.label}"
            f"  service={target.service_name or '-'}"
            f"  workflow={target.workflow_file or '-'}"
        )
    print()

    cursors = service.cursor_status()
    if not cursors:
        print("No cursors stored (never synced)")
        return
    print("Last successful run per job key:")
    for job_key, last_run in cursors.items():
        print(f"  {job_key}: {last_run.isoformat()}")


def print_result(result) -> None:
    summary = result.to_dict()
    print(f"Job: {summary['job']} ({'ok' if summary['ok'] else 'FAILED'})")
    print(
        f"  Inserted: {summary['inserted']}, Updated: {summary['updated']}, "
        f"Unchanged: {summary['unchanged']}"
    )
    print(f"  Skipped records: {summary['skipped']}, Failed records: {summary['failed']}")
    print(
        f"  Sources: {summary['sources_succeeded']} ok, {summary['sources_failed']} failed, "
        f"{summary['sources_skipped']} skipped"
    )
    for error in summary["errors"]:
        print(f"  ERROR {error}")
    if summary["aborted"]:
        print("  Run aborted after the first failing source")
    print(f"  Duration: {summary['duration_seconds']:.1f}s")


def print_operation(op) -> None:
    print(f"{'OK' if op.success else 'FAILED'}: {op.message}")
    for key, value in op.details.items():
        print(f"  {key}: {value}")


async def run(args, service: SyncService) -> bool:
    if args.job:
        result = await service.run_job(args.job)
        print_result(result)
        return result.ok

    if args.trigger_deployments:
        op = await trigger_deployment_sync(service, repository_id=args.repository_id)
        print_operation(op)
        return op.success

    if args.trigger_repositories:
        op = await trigger_repository_sync(service)
        print_operation(op)
        return op.success

    if args.check_member:
        org = args.org or service.config.github_org
        if not org or service.github is None:
            print("ERROR: --check-member needs GITHUB_TOKEN and an organization (--org or GITHUB_ORG)")
            return False
        op = await verify_member(service.github, args.check_member, org)
        print_operation(op)
        return op.success

    return False


def parse_args():
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Sync DORA metrics source data from GitHub and Datadog",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --job deployments                # Run deployment sync once
  %(prog)s --status                         # Display cursors
  %(prog)s --trigger-repositories           # Register repositories visible to the token

Configuration (.env):
    GITHUB_TOKEN=ghp_your_token_here
    GITHUB_ORG=your-org
    DATADOG_API_KEY=...
    DATADOG_APP_KEY=...
    DATABASE_URL=sqlite:///dora_sync.db
        """,
    )

    action = parser.add_mutually_exclusive_group(required=True)
    action.add_argument("--job", choices=JOB_NAMES, help="Run one sync job once")
    action.add_argument("--status", action="store_true", help="Display sync status")
    action.add_argument(
        "--trigger-deployments", action="store_true", help="Run deployment sync now"
    )
    action.add_argument(
        "--trigger-repositories", action="store_true", help="Run repository sync now"
    )
    action.add_argument(
        "--update-repository",
        type=int,
        metavar="ID",
        help="Edit the service name / workflow file of a repository config",
    )
    action.add_argument(
        "--check-member", metavar="USERNAME", help="Check organization membership"
    )

    parser.add_argument(
        "--repository-id", type=int, help="Limit --trigger-deployments to one repository"
    )
    parser.add_argument("--service-name", help="Datadog service name (with --update-repository)")
    parser.add_argument("--workflow-file", help="Workflow file name (with --update-repository)")
    parser.add_argument("--org", help="Organization for --check-member (default: GITHUB_ORG)")

    return parser.parse_args()


def main():
    """Main CLI entry point."""
    args = parse_args()

    try:
        config = get_config()
    except Exception as e:
        print(f"ERROR: invalid configuration: {e}")
        sys.exit(1)

    service = SyncService.from_config(config)

    if args.status:
        show_status(service)
        asyncio.run(service.close())
        return

    if args.update_repository is not None:
        fields = {}
        if args.service_name is not None:
            fields["datadog_service_name"] = args.service_name
        if args.workflow_file is not None:
            fields["deployment_workflow_file_name"] = args.workflow_file
        op = update_repository_config(service.database, args.update_repository, **fields)
        print_operation(op)
        asyncio.run(service.close())
        if not op.success:
            sys.exit(1)
        return

    async def _run_and_close() -> bool:
        async with service:
            return await run(args, service)

    try:
        ok = asyncio.run(_run_and_close())
    except (RuntimeError, KeyError, ValueError) as e:
        print(f"ERROR: {e}")
        sys.exit(1)

    if not ok:
        sys.exit(1)
    print("\nDone.")


if __name__ == "__main__":
    main()
