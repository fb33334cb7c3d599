"""Command-line interface for the migration engine."""

import argparse
import json
import logging
import sys
from typing import Any, Dict, List, Optional

from .loaders.base import TargetStore
from .loaders.rest_store import PostgRESTStore
from .models.migration import ConfigError, MigrationConfig, MigrationRun, RunStatus
from .models.record import EntityType
from .models.schema import ENTITY_ORDER
from .orchestrator import MigrationOrchestrator
from .services.reversal import ReversalError
from .services.verifier import VerificationReport
from .storage import MigrationInProgressError, RunLog

logger = logging.getLogger(__name__)


EXIT_OK = 0
EXIT_PARTIAL = 1
EXIT_FAILED = 2


def build_store(config: MigrationConfig) -> TargetStore:
    """Create the target store client for a configuration."""
    retry_config = config.source.retry_config
    return PostgRESTStore(
        config.target,
        max_retries=retry_config.get("max_retries", 3),
        backoff_factor=retry_config.get("backoff_factor", 2.0),
    )


class StoreUnavailableError(Exception):
    """The target store did not answer."""


def connect_store(config: MigrationConfig) -> TargetStore:
    """Build the target store client and check that it answers."""
    store = build_store(config)
    if not store.validate_connection():
        raise StoreUnavailableError(f"Cannot reach target store at {config.target.url}")
    return store


def parse_entity_types(value: Optional[str]) -> List[EntityType]:
    """Parse ``all`` or a comma-separated list of entity type names."""
    if not value or value.strip().lower() == "all":
        return list(ENTITY_ORDER)
    try:
        requested = {EntityType.parse(part) for part in value.split(",") if part.strip()}
    except ValueError as e:
        raise ConfigError(str(e))
    return [et for et in ENTITY_ORDER if et in requested]


def load_config(args, need_source: bool = True, need_target: bool = True) -> MigrationConfig:
    """Load the JSON config file (if any), then apply environment overrides."""
    config_data: Dict[str, Any] = {}
    if getattr(args, "config", None):
        try:
            with open(args.config) as f:
                config_data = json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigError(f"Cannot read config file {args.config}: {e}")

    config = MigrationConfig.from_dict(config_data).apply_env()

    errors = config.validate(need_source=need_source, need_target=need_target)
    if errors:
        raise ConfigError("; ".join(errors))
    return config


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CLI."""
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", help="Path to a JSON config file")
    common.add_argument("--json", action="store_true", help="Machine-readable output")
    common.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    parser = argparse.ArgumentParser(
        prog="ledger-migrate",
        description="Migrate storyteller records from the source system into the target store"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Run migration
    migrate_parser = subparsers.add_parser("migrate", parents=[common], help="Run a migration")
    migrate_parser.add_argument("--entity", default="all", help="all, or entity types separated by commas")
    migrate_parser.add_argument("--dry-run", action="store_true", help="Write to an in-memory snapshot only")
    migrate_parser.add_argument("--reset-first", action="store_true", help="Delete migrated data before migrating")
    migrate_parser.add_argument("--retry-failed", metavar="RUN_ID", help="Re-process records that failed in a run")
    migrate_parser.add_argument("--timeout", type=float, help="Abort the run after this many seconds")

    # Verify
    verify_parser = subparsers.add_parser("verify", parents=[common], help="Verify the target store")
    verify_parser.add_argument("--run-id", help="Also check the stats of this run")

    # Reset
    reset_parser = subparsers.add_parser("reset", parents=[common], help="Delete all migrated data")
    reset_parser.add_argument("--confirm", action="store_true", help="Required to actually delete")
    reset_parser.add_argument("--entity", default="all", help="all, or entity types separated by commas")

    # Run log
    runs_parser = subparsers.add_parser("runs", parents=[common], help="List recorded runs")
    runs_parser.add_argument("--limit", type=int, default=10, help="Number of runs to show")

    args = parser.parse_args(argv)

    # Set up logging
    log_level = logging.DEBUG if getattr(args, "verbose", False) else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    commands = {
        "migrate": run_migrate,
        "verify": run_verify,
        "reset": run_reset,
        "runs": run_list_runs,
    }
    if args.command not in commands:
        parser.print_help()
        return EXIT_FAILED

    try:
        return commands[args.command](args)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_FAILED
    except MigrationInProgressError as e:
        print(str(e), file=sys.stderr)
        return EXIT_FAILED
    except StoreUnavailableError as e:
        print(f"Target store unavailable: {e}", file=sys.stderr)
        return EXIT_FAILED


def run_migrate(args) -> int:
    """Run a migration."""
    config = load_config(args)
    config.entity_types = parse_entity_types(args.entity)
    if args.dry_run:
        config.dry_run = True
    if args.reset_first:
        config.reset_first = True
    if args.timeout is not None:
        config.run_timeout_seconds = args.timeout

    only = None
    if args.retry_failed:
        previous = RunLog(config.output_dir).get(args.retry_failed)
        if previous is None:
            raise ConfigError(f"Run not found: {args.retry_failed}")
        only = MigrationOrchestrator.failed_records(previous)
        if not only:
            print(f"Run {args.retry_failed} has no failed records to retry")
            return EXIT_OK

    orchestrator = MigrationOrchestrator(config, connect_store(config))
    run = orchestrator.run_migration(config.entity_types, only=only)

    if args.json:
        print(json.dumps(run.to_dict(), indent=2, default=str))
    else:
        print_run_summary(run)

    return exit_code_for(run)


def exit_code_for(run: MigrationRun) -> int:
    if run.status == RunStatus.COMPLETED:
        return EXIT_OK
    if run.status == RunStatus.PARTIAL and not run.aborted:
        return EXIT_PARTIAL
    return EXIT_FAILED


def run_verify(args) -> int:
    """Verify the target store. Read-only."""
    config = load_config(args, need_source=False)

    run = None
    if args.run_id:
        run = RunLog(config.output_dir).get(args.run_id)
        if run is None:
            raise ConfigError(f"Run not found: {args.run_id}")

    orchestrator = MigrationOrchestrator(config, connect_store(config))
    report = orchestrator.verify(run)

    if args.json:
        print(json.dumps(report.to_dict(), indent=2, default=str))
    else:
        print_verification(report)

    return EXIT_PARTIAL if report.has_orphans else EXIT_OK


def run_reset(args) -> int:
    """Delete migrated data in reverse dependency order."""
    if not args.confirm:
        print("Refusing to delete without --confirm", file=sys.stderr)
        return EXIT_FAILED

    config = load_config(args, need_source=False)
    orchestrator = MigrationOrchestrator(config, connect_store(config))

    try:
        report = orchestrator.reset(parse_entity_types(args.entity))
    except ReversalError as e:
        print(f"Reset incomplete: {e}", file=sys.stderr)
        if args.json:
            print(json.dumps(e.report.to_dict(), indent=2, default=str))
        return EXIT_FAILED

    if args.json:
        print(json.dumps(report.to_dict(), indent=2, default=str))
    else:
        print("\n=== Reset ===")
        for entity_type, deleted in report.deleted.items():
            print(f"  {entity_type.value:<12} deleted {deleted}")
        for column, cleared in report.cleared_references.items():
            print(f"  cleared {cleared} references in {column}")
        print(f"Total deleted: {report.total_deleted}")

    return EXIT_OK


def run_list_runs(args) -> int:
    """List runs from the audit log."""
    config = load_config(args, need_source=False, need_target=False)
    runs = RunLog(config.output_dir).list_runs(limit=args.limit)

    if args.json:
        print(json.dumps([run.to_dict() for run in runs], indent=2, default=str))
        return EXIT_OK

    if not runs:
        print("No runs recorded")
        return EXIT_OK

    for run in runs:
        flags = " (dry run)" if run.dry_run else ""
        flags += " (aborted)" if run.aborted else ""
        print(
            f"{run.run_id}  {run.started_at.isoformat(timespec='seconds')}  "
            f"{run.command:<8} {run.status.value:<11} "
            f"{sum(run.entity_counts.values())} upserted, {len(run.errors)} errors{flags}"
        )
    return EXIT_OK


def print_run_summary(run: MigrationRun):
    """Print one line per entity type, the verification report and every error."""
    print("\n" + "=" * 60)
    print(f"  Migration {run.run_id}: {run.status.value}{' (dry run)' if run.dry_run else ''}")
    print("=" * 60)

    for entity_type in run.entity_types:
        stats = run.stats_for(entity_type)
        line = (
            f"  {entity_type.value:<12} fetched {stats.fetched:>5}  resolved {stats.resolved:>5}  "
            f"upserted {stats.upserted:>5}  failed {stats.failed:>4}  unresolved {stats.unresolved:>4}"
        )
        if stats.fetch_failed:
            line += "  [fetch failed]"
        print(line)

    if run.aborted:
        print(f"\nAborted: {run.abort_reason}")
    elif run.abort_reason:
        print(f"\n{run.abort_reason}")

    if run.verification:
        v = run.verification
        print("\nVerification:")
        print(f"  Orphans: {v.get('orphan_counts')}")
        print(f"  Coverage: {v.get('overall_coverage')}%")
        print(f"  Discrepancies: {len(v.get('discrepancies', []))}")

    if run.errors:
        print(f"\nErrors ({len(run.errors)}):")
        for error in run.errors:
            print(f"  - {error}")

    if run.unresolved:
        print(f"\nUnresolved references ({len(run.unresolved)}):")
        for ref in run.unresolved:
            print(f"  - {ref.entity_type.value}:{ref.external_id}.{ref.column} ({ref.reason}) {ref.value!r}")


def print_verification(report: VerificationReport):
    print("\n=== Verification ===")
    for entity_type, counts in report.counts_by_type.items():
        orphans = report.orphan_counts.get(entity_type, 0)
        print(
            f"  {entity_type.value:<12} total {counts['total']:>5}  migrated {counts['migrated']:>5}  "
            f"organic {counts['organic']:>5}  orphans {orphans:>4}"
        )

    if report.overall_coverage is not None:
        print(f"\nCoverage: {report.overall_coverage}%")

    if report.discrepancies:
        print(f"\nDiscrepancies ({len(report.discrepancies)}):")
        for d in report.discrepancies:
            print(f"  - [{d.kind}] {d.message}")
    else:
        print("\nNo discrepancies found")


if __name__ == "__main__":
    sys.exit(main())
