"""CLI entry point: get, test, apply, export, scheduler."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from dataclasses import replace
from pathlib import Path

from rich.console import Console
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)

from scripts.teamsync.config import EXPORT_FORMATS, load_config
from scripts.teamsync.desired_state import load_desired_state
from scripts.teamsync.directory import GraphDirectoryFactory
from scripts.teamsync.exceptions import DirectoryError
from scripts.teamsync.export import render_document
from scripts.teamsync.extractor import BulkExtractor, ExtractionProgress
from scripts.teamsync.logging_config import configure_logging
from scripts.teamsync.models import MembershipRecord, Role
from scripts.teamsync.reconciler import MembershipReconciler

logger = logging.getLogger("teamsync.cli")

console = Console(stderr=True)


def _connect():
    config = load_config()
    factory = GraphDirectoryFactory.from_config(config.graph)
    return config, factory, factory()


def cmd_get(args: argparse.Namespace) -> None:
    """Print the current state of one membership."""
    _, _, client = _connect()
    desired = MembershipRecord(
        team_name=args.team,
        user=args.user,
        role=Role(args.role) if args.role else None,
    )
    current = MembershipReconciler(client).read(desired)
    entry = current.to_dict()
    entry["group_id"] = current.group_id
    print(json.dumps(entry, indent=2))


def cmd_test(args: argparse.Namespace) -> None:
    """Exit 1 when any desired record has drifted."""
    _, _, client = _connect()
    reconciler = MembershipReconciler(client)
    records = load_desired_state(args.file, organization=client.auth.organization)

    drifted = [r for r in records if not reconciler.test(r)]
    for record in drifted:
        print(f"DRIFT  {record.team_name}  {record.user}  {record.ensure.value}")
    print(f"{len(records) - len(drifted)}/{len(records)} records in desired state")
    if drifted:
        sys.exit(1)


def cmd_apply(args: argparse.Namespace) -> None:
    """Converge every desired record, stopping at the first failure."""
    _, _, client = _connect()
    reconciler = MembershipReconciler(client)
    records = load_desired_state(args.file, organization=client.auth.organization)

    changed = 0
    for record in records:
        try:
            if not reconciler.reconcile(record, auto_correct=True):
                changed += 1
        except DirectoryError as exc:
            logger.error(
                "Apply failed: %s", exc,
                extra={"team": record.team_name, "user": record.user},
            )
            sys.exit(1)
    logger.info("Apply complete: %d of %d records changed", changed, len(records))


def cmd_export(args: argparse.Namespace) -> None:
    """Extract every team membership in the tenant."""
    config, factory, client = _connect()
    extraction = config.extraction
    if args.format:
        extraction = replace(extraction, export_format=args.format)
    if args.deadline is not None:
        extraction = replace(extraction, deadline_s=args.deadline)
    if args.threads:
        extraction = replace(extraction, worker_mode="thread")

    extractor = BulkExtractor(client, factory, extraction)
    progress = Progress(
        SpinnerColumn(),
        TextColumn("[bold]Extracting teams"),
        BarColumn(),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
        console=console,
    )
    with progress:
        task = progress.add_task("extract", total=None)

        def on_progress(p: ExtractionProgress) -> None:
            progress.update(task, completed=p.completed, total=p.total)

        result = extractor.extract(max_concurrency=args.max_concurrency, on_progress=on_progress)

    if result.error:
        console.print(f"[red]Could not enumerate teams: {result.error}")
        sys.exit(1)

    document = render_document(
        result.content,
        extraction.export_format,
        extraction.credential_placeholder,
        extraction.organization_placeholder,
    )
    if args.output:
        Path(args.output).write_text(document, encoding="utf-8")
    else:
        sys.stdout.write(document)

    console.print(
        f"{result.records} records from {result.completed_jobs}/{result.total_jobs} batches "
        f"in {result.elapsed_s:.1f}s"
    )
    if result.failed_jobs:
        console.print(f"[yellow]Failed batches: {', '.join(map(str, result.failed_jobs))}")
    if result.skipped_teams:
        console.print(f"[yellow]Skipped teams: {', '.join(result.skipped_teams)}")


def cmd_scheduler(args: argparse.Namespace) -> None:
    """Start the APScheduler-based consistency loop."""
    from scripts.teamsync.scheduler import start_scheduler

    config = load_config()
    factory = GraphDirectoryFactory.from_config(config.graph)
    start_scheduler(config, args.file, factory)


def main() -> None:
    """Main CLI entry point."""
    configure_logging(os.environ.get("LOG_LEVEL", "INFO"))

    parser = argparse.ArgumentParser(
        prog="teamsync",
        description="Declarative Microsoft Teams membership management",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # get command
    get_parser = subparsers.add_parser("get", help="Show the current state of one membership")
    get_parser.add_argument("--team", "-t", required=True, help="Team display name")
    get_parser.add_argument("--user", "-u", required=True, help="User principal name")
    get_parser.add_argument("--role", "-r", choices=[r.value for r in Role])
    get_parser.set_defaults(func=cmd_get)

    # test command
    test_parser = subparsers.add_parser("test", help="Check desired records for drift")
    test_parser.add_argument("--file", "-f", required=True, help="Desired-state JSON/JSONL file")
    test_parser.set_defaults(func=cmd_test)

    # apply command
    apply_parser = subparsers.add_parser("apply", help="Converge desired records")
    apply_parser.add_argument("--file", "-f", required=True, help="Desired-state JSON/JSONL file")
    apply_parser.set_defaults(func=cmd_apply)

    # export command
    export_parser = subparsers.add_parser("export", help="Extract all team memberships")
    export_parser.add_argument("--output", "-o", help="Write to file instead of stdout")
    export_parser.add_argument("--format", choices=EXPORT_FORMATS)
    export_parser.add_argument(
        "--max-concurrency", "-c",
        type=int,
        default=None,
        help="Number of parallel workers (default: EXTRACT_MAX_CONCURRENCY or 8)",
    )
    export_parser.add_argument(
        "--deadline",
        type=float,
        default=None,
        help="Give up on unfinished batches after this many seconds",
    )
    export_parser.add_argument(
        "--threads",
        action="store_true",
        help="Run workers as threads instead of processes",
    )
    export_parser.set_defaults(func=cmd_export)

    # scheduler command
    sched_parser = subparsers.add_parser("scheduler", help="Start periodic consistency checks")
    sched_parser.add_argument("--file", "-f", required=True, help="Desired-state JSON/JSONL file")
    sched_parser.set_defaults(func=cmd_scheduler)

    args = parser.parse_args()
    args.func(args)
