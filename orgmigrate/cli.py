"""Command line interface for the migration engine."""

import argparse
import json
import logging
import os
import sys
from typing import Dict, List, Optional

from .config import EngineSettings
from .exceptions import AuthError, ConfigurationError, MigrationError, SchemaError, ValidationError
from .models.execution import ExecutionConfig, ExecutionContext
from .models.validation import ValidationResult
from .orchestrator import MigrationOrchestrator, build_container
from .services.credential_store import JsonFileCredentialStore

logger = logging.getLogger(__name__)

DEFAULT_CREDENTIALS_FILE = os.path.join("data", "credentials.json")


def parse_selection(values: Optional[List[str]]) -> Dict[str, List[str]]:
    """``["Obj=id1,id2", "Obj=id3"]`` -> ``{"Obj": ["id1", "id2", "id3"]}``."""
    selection: Dict[str, List[str]] = {}
    for value in values or []:
        object_type, sep, ids = value.partition("=")
        if not sep or not object_type.strip():
            raise argparse.ArgumentTypeError(f"Selection must look like Object=id1,id2: {value!r}")
        bucket = selection.setdefault(object_type.strip(), [])
        for record_id in ids.split(","):
            record_id = record_id.strip()
            if record_id and record_id not in bucket:
                bucket.append(record_id)
    return selection


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Org Migration Tool - Migrate records between CRM orgs using templates"
    )
    parser.add_argument(
        "--credentials",
        default=os.environ.get("ORGMIGRATE_CREDENTIALS_FILE", DEFAULT_CREDENTIALS_FILE),
        help="Path to the JSON credential store",
    )
    parser.add_argument("--templates-dir", action="append", help="Extra directory of JSON templates")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # List templates
    templates_parser = subparsers.add_parser("templates", help="List migration templates")
    templates_parser.add_argument("--category", help="Only templates in this category")
    templates_parser.add_argument("--complexity", choices=["simple", "moderate", "complex"], help="Only templates of this complexity")
    templates_parser.add_argument("--search", help="Free-text search")
    templates_parser.add_argument("--show", metavar="TEMPLATE_ID", help="Print one template in full")

    # Shared migration arguments
    def add_migration_args(sub: argparse.ArgumentParser) -> None:
        sub.add_argument("--template", required=True, help="Template id")
        sub.add_argument("--source", required=True, help="Source org id")
        sub.add_argument("--target", required=True, help="Target org id")
        sub.add_argument(
            "--select",
            action="append",
            metavar="OBJECT=ID1,ID2",
            help="Selected source records (repeatable)",
        )

    validate_parser = subparsers.add_parser("validate", help="Run pre-flight checks")
    add_migration_args(validate_parser)

    run_parser = subparsers.add_parser("run", help="Validate and run a migration")
    add_migration_args(run_parser)
    run_parser.add_argument("--batch-size", type=int, help="Override each step's batch size")
    run_parser.add_argument("--concurrency", type=int, default=1, help="Parallel load batches per step")
    run_parser.add_argument("--no-partial", action="store_true", help="Halt on the first partial or failed step")
    run_parser.add_argument("--rollback-on-failure", action="store_true", help="Delete inserted records on halt")
    run_parser.add_argument("--skip-validation", action="store_true", help="Skip pre-flight checks")
    run_parser.add_argument("--output", help="Write the run report to this JSON file")

    clone_parser = subparsers.add_parser("clone", help="Clone one record")
    clone_parser.add_argument("--source", required=True, help="Source org id")
    clone_parser.add_argument("--target", required=True, help="Target org id")
    clone_parser.add_argument("--record", required=True, help="Source record id")
    clone_parser.add_argument("--object", required=True, help="Object type")

    subparsers.add_parser("token-health", help="Show token refresh health per org")
    subparsers.add_parser("refresh-tokens", help="Refresh tokens that are close to expiry")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    # Set up logging
    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    if not args.command:
        parser.print_help()
        return 1

    try:
        selection = parse_selection(getattr(args, "select", None))
    except argparse.ArgumentTypeError as e:
        parser.error(str(e))

    container = build_container(
        settings=EngineSettings.from_env(),
        credential_store=JsonFileCredentialStore(args.credentials),
        template_dirs=args.templates_dir,
    )
    try:
        if args.command == "templates":
            return list_templates(container, args)
        if args.command == "validate":
            return run_validation(container, args, selection)
        if args.command == "run":
            return run_migration(container, args, selection)
        if args.command == "clone":
            return run_clone(container, args)
        if args.command == "token-health":
            print(json.dumps(container.token_manager.health_report(), indent=2))
            return 0
        if args.command == "refresh-tokens":
            return refresh_tokens(container)
    except MigrationError as e:
        logger.error(f"{type(e).__name__}: {e.message}")
        return 1
    finally:
        container.close()

    parser.print_help()
    return 1


def list_templates(container, args) -> int:
    """List or show templates."""
    registry = container.registry
    if args.show:
        template = registry.require(args.show)
        print(json.dumps(template.to_dict(), indent=2))
        return 0

    templates = registry.find(category=args.category, complexity=args.complexity, search=args.search)

    print("\n=== Migration Templates ===")
    if not templates:
        print("No templates match")
    for template in templates:
        summary = template.summary()
        print(f"\n{summary['id']}  ({summary['category']}, {summary['complexity']})")
        print(f"   {summary['name']}: {summary['description']}")
        print(f"   Steps: {summary['step_count']}  Objects: {', '.join(summary['object_types'])}")
    return 0


def print_validation(result: ValidationResult) -> None:
    summary = result.summary()
    print("\n=== Validation ===")
    for issue in result.issues:
        where = f" [{issue.record_id}]" if issue.record_id else ""
        print(f"  {issue.severity.value.upper():7} {issue.check_name}{where}: {issue.message}")
        if issue.suggested_fix:
            print(f"          fix: {issue.suggested_fix}")
    print(
        f"\n{summary['errors']} error(s), {summary['warnings']} warning(s), "
        f"{summary['info']} info from {summary['checks_run']} check(s)"
    )
    if result.short_circuited:
        print("Later checks were skipped")


def run_validation(container, args, selection: Dict[str, List[str]]) -> int:
    """Run pre-flight checks."""
    template = container.registry.require(args.template)
    result = container.validator.validate(template, args.source, args.target, selection)
    print_validation(result)
    print("\nValidation passed!" if result.is_valid else "\nValidation failed")
    return 0 if result.is_valid else 2


def run_migration(container, args, selection: Dict[str, List[str]]) -> int:
    """Validate and execute a migration."""
    template = container.registry.require(args.template)
    context = ExecutionContext(
        source_org_id=args.source,
        target_org_id=args.target,
        template=template,
        selected_ids=selection,
        config=ExecutionConfig(
            batch_size=args.batch_size,
            concurrency=args.concurrency,
            tolerate_partial_success=not args.no_partial,
            rollback_on_failure=args.rollback_on_failure,
        ),
        on_progress=lambda p: logger.debug(
            f"[{p.step_index + 1}/{p.total_steps}] {p.step_name} {p.phase} "
            f"({p.records_succeeded} ok, {p.records_failed} failed)"
        ),
    )

    try:
        result = container.orchestrator.run(context, skip_validation=args.skip_validation)
    except ValidationError as e:
        print_validation(e.result)
        print("\nMigration not started: validation failed")
        return 2
    except AuthError as e:
        print(f"\nAuthentication failed: {e.message}")
        if e.requires_reconnect:
            print("Reconnect the org and try again")
        return 3
    except (ConfigurationError, SchemaError) as e:
        print(f"\n{type(e).__name__}: {e.message}")
        return 1

    print("\n" + "=" * 60)
    print("MIGRATION COMPLETE")
    print("=" * 60)
    print(f"Status: {result.status.value}")
    print(f"Records Processed: {result.total_records}")
    print(f"Succeeded: {result.successful_records}")
    print(f"Failed: {result.failed_records}")
    for step in result.step_results:
        print(f"  {step.step_name}: {step.status.value} ({step.succeeded}/{step.total})")
        for error in step.errors[:10]:
            print(f"    - {error.source_id}: {error.error_code} {error.message}")
    if result.halted_at:
        print(f"Halted at: {result.halted_at} ({result.error})")
    if result.requires_reconnect:
        print("An org must be reconnected before running again")
    if result.rolled_back:
        print(f"Rolled back: {result.rolled_back} record(s)")
    if result.duration_seconds:
        print(f"Duration: {result.duration_seconds:.2f} seconds")

    if args.output:
        MigrationOrchestrator.save_report(result, args.output)
        print(f"Report saved to {args.output}")

    return 0 if result.status.value == "success" else 4


def run_clone(container, args) -> int:
    """Clone one record."""
    result = container.cloning.clone_record(args.source, args.target, args.record, args.object)
    print(json.dumps(result.to_dict(), indent=2))
    return 0 if result.success else 1


def refresh_tokens(container) -> int:
    """Refresh tokens close to expiry once."""
    outcomes = container.token_manager.refresh_due_tokens()
    if not outcomes:
        print("No tokens due for refresh")
    for org_id, ok in outcomes.items():
        print(f"  {org_id}: {'refreshed' if ok else 'FAILED'}")
    return 0 if all(outcomes.values()) else 1


if __name__ == "__main__":
    sys.exit(main())
