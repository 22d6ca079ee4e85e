"""CLI interface for pydirsync."""

import logging
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Optional

import click

from .cli_progress import SyncProgressDisplay, run_interruptible
from .config import SyncProfile, find_profile, load_sync_profiles_from_json
from .exceptions import CancellationRequested, DirSyncError, SyncConfigError
from .output import OutputFormatter
from .sync import ActionKind, SessionState, SyncEngine, SyncPlan, SyncReport
from .utils import format_size

logger = logging.getLogger(__name__)

# Exit code for a sync interrupted with Ctrl-C (128 + SIGINT)
EXIT_INTERRUPTED = 130


@click.group()
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output")
@click.option("--json", is_flag=True, help="Output in JSON format")
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable verbose/debug logging output",
)
@click.version_option(package_name="pydirsync")
@click.pass_context
def main(ctx: Any, quiet: bool, json: bool, verbose: bool) -> None:
    """PyDirSync - Mirror a source directory onto a target directory."""
    ctx.ensure_object(dict)
    ctx.obj["out"] = OutputFormatter(json_output=json, quiet=quiet)
    ctx.obj["verbose"] = verbose

    # Configure logging based on verbose flag
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%H:%M:%S",
        )
        logging.getLogger("pydirsync").setLevel(logging.DEBUG)
    else:
        # Set default logging level to WARNING to suppress debug/info messages
        logging.basicConfig(level=logging.WARNING)


def sync_options(func: Callable) -> Callable:
    """Options shared by the plan and sync commands."""
    options = [
        click.argument("source", required=False, type=click.Path(file_okay=False)),
        click.argument("target", required=False, type=click.Path(file_okay=False)),
        click.option(
            "--profile", "-p", help="Name (alias) of a sync profile from --config"
        ),
        click.option(
            "--config",
            "-c",
            "config_file",
            type=click.Path(exists=True, dir_okay=False),
            help="JSON file with sync profiles",
        ),
        click.option(
            "--allow-delete",
            is_flag=True,
            help="Delete target entries that do not exist in the source",
        ),
        click.option(
            "--ignore",
            "-i",
            multiple=True,
            help="Gitignore-style pattern to skip (can be repeated)",
        ),
        click.option(
            "--prune-empty-dirs",
            is_flag=True,
            help="Remove directories left empty by deletions",
        ),
        click.option(
            "--chunk-threshold",
            type=click.IntRange(min=1),
            default=None,
            help="Copy files of at least this size (MiB) in chunks (default: 128)",
        ),
        click.option(
            "--workers",
            "-j",
            type=int,
            default=None,
            help="Number of parallel transfers (default: 2, max: 8)",
        ),
        click.option(
            "--show-kept", is_flag=True, help="List unchanged files in the plan"
        ),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _resolve_profile(
    out: OutputFormatter,
    source: Optional[str],
    target: Optional[str],
    profile: Optional[str],
    config_file: Optional[str],
    allow_delete: bool,
    ignore: tuple[str, ...],
    prune_empty_dirs: bool,
    chunk_threshold: Optional[int],
    workers: Optional[int],
    show_kept: bool,
) -> SyncProfile:
    """Build the sync profile from arguments, a config file and overrides.

    Raises:
        SyncConfigError: If the combination of arguments is invalid
    """
    if profile:
        if source or target:
            raise SyncConfigError("Use either SOURCE TARGET or --profile, not both")
        if not config_file:
            raise SyncConfigError("--profile requires --config")
        selected = find_profile(load_sync_profiles_from_json(config_file), profile)
        if not out.quiet:
            out.info(f"Using sync profile: {selected.name}")
    else:
        if not source or not target:
            raise SyncConfigError("SOURCE and TARGET are required (or use --profile)")
        selected = SyncProfile(source=Path(source), target=Path(target))

    if not selected.source.is_dir():
        raise SyncConfigError(f"Source is not a directory: {selected.source}")

    policy = selected.policy
    changes: dict[str, Any] = {}
    if allow_delete:
        changes["allow_delete_extra"] = True
    if ignore:
        changes["ignore_patterns"] = policy.ignore_patterns + tuple(ignore)
    if prune_empty_dirs:
        changes["prune_empty_dirs"] = True
    if chunk_threshold is not None:
        threshold = chunk_threshold * 1024 * 1024
        changes["chunk_threshold_bytes"] = threshold
        changes["chunk_size_bytes"] = min(policy.chunk_size_bytes, threshold)
    if workers is not None:
        changes["max_workers"] = workers
    if show_kept:
        changes["include_kept"] = True
    if changes:
        policy = replace(policy, **changes)
    return replace(selected, policy=policy)


def _print_plan(out: OutputFormatter, plan: SyncPlan) -> None:
    """Print a plan, one action per line."""
    if plan.is_empty:
        out.success("Everything is in sync")
    for action in plan:
        suffix = "/" if action.is_dir else ""
        size = f" [{format_size(action.size)}]" if action.transfers_bytes else ""
        out.print(
            f"{action.kind.value.capitalize():8} {action.relative_path}{suffix}"
            f"{size}  ({action.reason})"
        )
    for path in plan.blocked:
        out.warning(
            f"Skipped {path}: replacing it would delete target-only files "
            "(use --allow-delete)"
        )
    for error in plan.scan_errors:
        out.warning(f"Could not scan {error.path}: {error.cause or error}")

    out.print_summary(
        "Sync Plan",
        [
            ("Create", plan.count(ActionKind.CREATE)),
            ("Replace", plan.count(ActionKind.REPLACE)),
            ("Delete", plan.count(ActionKind.DELETE)),
            ("Unchanged", plan.kept_count),
            ("To copy", f"{plan.total_files} files, {format_size(plan.total_bytes)}"),
        ],
    )


def _print_report(out: OutputFormatter, report: SyncReport) -> None:
    """Print the outcome of a sync session."""
    for failed in report.failed:
        out.warning(f"Failed: {failed.path}: {failed.cause}")
    if report.state == SessionState.FAILED:
        out.error(f"Sync failed: {report.error}")
        return

    items = [
        ("Created", report.created),
        ("Replaced", report.replaced),
        ("Deleted", report.deleted),
        ("Unchanged", report.kept),
        ("Failed", len(report.failed)),
        ("Transferred", format_size(report.bytes_transferred)),
    ]
    if report.pruned:
        items.append(("Pruned directories", len(report.pruned)))
    if report.left_in_place:
        items.append(("Left in place", len(report.left_in_place)))
    title = "Sync Cancelled" if report.cancelled else "Sync Complete"
    out.print_summary(title, items)
    if report.cancelled:
        out.warning("Sync was cancelled, remaining actions were not applied")


def _build_plan(
    ctx: Any, out: OutputFormatter, engine: SyncEngine
) -> Optional[SyncPlan]:
    """Scan and plan, exiting on errors and interrupts."""
    try:
        plan, interrupted = run_interruptible(engine, engine.plan)
    except CancellationRequested:
        out.warning("Sync cancelled while scanning")
        ctx.exit(EXIT_INTERRUPTED)
        return None
    except DirSyncError as e:
        out.error(str(e))
        ctx.exit(1)
        return None
    if interrupted:
        out.warning("Interrupted")
        ctx.exit(EXIT_INTERRUPTED)
    return plan


@main.command()
@sync_options
@click.pass_context
def plan(ctx: Any, **kwargs: Any) -> None:
    """Show what a sync would change without touching the target.

    Examples:
        pydirsync plan ./photos /mnt/backup/photos
        pydirsync plan ./photos /mnt/backup/photos --allow-delete -i "*.tmp"
        pydirsync plan --profile photos --config profiles.json
    """
    out: OutputFormatter = ctx.obj["out"]
    try:
        profile = _resolve_profile(out, **kwargs)
    except SyncConfigError as e:
        out.error(str(e))
        ctx.exit(1)
        return

    engine = SyncEngine(profile.source, profile.target, profile.policy)
    sync_plan = _build_plan(ctx, out, engine)
    if sync_plan is None:
        return

    if out.json_output:
        out.output_json(sync_plan.to_dict())
    else:
        _print_plan(out, sync_plan)


@main.command()
@sync_options
@click.option(
    "--dry-run", is_flag=True, help="Show what would be synced without syncing"
)
@click.option("--no-progress", is_flag=True, help="Disable progress bars")
@click.pass_context
def sync(ctx: Any, dry_run: bool, no_progress: bool, **kwargs: Any) -> None:
    """Mirror SOURCE onto TARGET.

    New and changed files are copied from SOURCE to TARGET. With
    --allow-delete, entries that exist only in TARGET are removed.
    SOURCE is never modified. Press Ctrl-C to stop after the current
    actions; partially copied files are removed.

    Examples:
        pydirsync sync ./photos /mnt/backup/photos
        pydirsync sync ./photos /mnt/backup/photos --allow-delete --prune-empty-dirs
        pydirsync sync ./data /mnt/data -j 4 --chunk-threshold 64
        pydirsync sync --profile photos --config profiles.json --dry-run
    """
    out: OutputFormatter = ctx.obj["out"]
    try:
        profile = _resolve_profile(out, **kwargs)
    except SyncConfigError as e:
        out.error(str(e))
        ctx.exit(1)
        return

    if not out.quiet:
        out.info(f"Source: {profile.source}")
        out.info(f"Target: {profile.target}")
        out.info("")

    display = SyncProgressDisplay()
    engine = SyncEngine(
        profile.source,
        profile.target,
        profile.policy,
        progress_callback=display.handle_event,
    )
    sync_plan = _build_plan(ctx, out, engine)
    if sync_plan is None:
        return

    if dry_run:
        if out.json_output:
            out.output_json(sync_plan.to_dict())
        else:
            _print_plan(out, sync_plan)
            out.info("Dry run - no changes made")
        return

    if engine.state == SessionState.COMPLETED:
        report = engine.report()
        interrupted = False
    elif no_progress or out.quiet or out.json_output:
        report, interrupted = run_interruptible(engine, engine.apply)
    else:
        with display.for_plan(sync_plan):
            report, interrupted = run_interruptible(engine, engine.apply)

    if out.json_output:
        out.output_json(report.to_dict())
    else:
        _print_report(out, report)

    if interrupted or report.cancelled:
        ctx.exit(EXIT_INTERRUPTED)
    if not report.succeeded:
        ctx.exit(1)


if __name__ == "__main__":
    main()
