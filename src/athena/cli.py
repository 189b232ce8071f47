"""CLI commands for the athena archiver."""

import argparse
import functools
import logging
import os
import sys
from datetime import datetime, timezone

from athena import __version__
from athena.config import EngineSettings
from athena.engine.backup import RunStatus
from athena.errors import AthenaError, ConfigError
from athena.logging_config import setup_logging
from athena.runtime import (
    init_repo,
    list_snapshots,
    run_backup,
    run_check,
    run_gc,
    run_prune,
    run_rebuild_index,
    run_restore,
    run_unlock,
)

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_PARTIAL = 3


def _human_size(n: int) -> str:
    size = float(n)
    for unit in ("B", "KiB", "MiB", "GiB", "TiB"):
        if size < 1024 or unit == "TiB":
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{n} B"


def _format_time(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def command(func):
    """Resolve the repository URL and map errors to exit codes."""

    @functools.wraps(func)
    def wrapper(args: argparse.Namespace) -> int:
        try:
            if not args.repo_url:
                raise ConfigError("Provide the repository URL with --repo or ATHENA_REPO.")
            return func(args)
        except ConfigError as e:
            print(f"Error: {e}", file=sys.stderr)
            return EXIT_USAGE
        except (AthenaError, OSError) as e:
            logger.debug("Command failed", exc_info=True)
            print(f"Error: {e}", file=sys.stderr)
            return EXIT_FAILURE

    return wrapper


@command
def cmd_init(args: argparse.Namespace) -> int:
    """Initialize a repository."""
    config = init_repo(args.repo_url, settings=args.settings)
    print(f"Initialized repository {config.repository_id[:8]} at {args.repo_url}")
    return EXIT_OK


@command
def cmd_backup(args: argparse.Namespace) -> int:
    """Back up one or more sources."""
    result = run_backup(
        args.repo_url,
        args.sources,
        parent=args.parent,
        workers=args.workers,
        settings=args.settings,
    )
    if result.status == RunStatus.CANCELLED:
        print("Backup cancelled; nothing was committed.")
        return EXIT_FAILURE
    for skipped in result.skipped:
        print(f"Warning: Skipped {skipped.path}: {skipped.reason}", file=sys.stderr)
    print(
        f"Snapshot {result.snapshot_id[:8]} created with {result.manifest.file_count} files "
        f"({result.chunks_new} new of {result.chunks_total} chunks, "
        f"{_human_size(result.bytes_read)} read)"
    )
    if result.status == RunStatus.PARTIAL:
        print(f"{len(result.skipped)} file(s) were skipped.", file=sys.stderr)
        return EXIT_PARTIAL
    return EXIT_OK


@command
def cmd_snapshots(args: argparse.Namespace) -> int:
    """List snapshots."""
    snapshots = list_snapshots(args.repo_url, settings=args.settings)
    if not snapshots:
        print("No snapshots found.")
        return EXIT_OK

    print(f"{'Snapshot ID':<12} {'Created At':<20} {'Hostname':<15} {'Files':>6} {'Size':>10} Parent")
    print("-" * 76)
    for snap in snapshots:
        parent = snap.parent_snapshot_id[:8] if snap.parent_snapshot_id else "-"
        print(
            f"{snap.snapshot_id[:8]:<12} {_format_time(snap.creation_time):<20} "
            f"{snap.hostname[:15]:<15} {snap.file_count:>6} "
            f"{_human_size(snap.total_size):>10} {parent}"
        )
    return EXIT_OK


@command
def cmd_restore(args: argparse.Namespace) -> int:
    """Restore a snapshot."""
    if not os.path.isdir(args.dest):
        if os.path.exists(args.dest):
            raise ConfigError(f"Destination is not a directory: {args.dest}")
        if not args.yes:
            answer = input(
                f"Specified file or directory does not exist: {args.dest}. Create it? [y/N] "
            )
            if answer.strip().lower() not in ("y", "yes"):
                print("Aborted.")
                return EXIT_FAILURE
        os.makedirs(args.dest, exist_ok=True)

    report = run_restore(
        args.repo_url,
        args.dest,
        snapshot_id=args.snapshot_id,
        paths=args.paths,
        settings=args.settings,
    )
    print(
        f"Restored snapshot {report.snapshot_id[:8]} "
        f"({report.files_restored} files, {_human_size(report.bytes_written)}) to {args.dest}"
    )
    return EXIT_OK


@command
def cmd_prune(args: argparse.Namespace) -> int:
    """Delete a snapshot."""
    report = run_prune(args.repo_url, args.snapshot_id, settings=args.settings)
    print(
        f"Pruned snapshot {report.snapshot_id[:8]}: {report.collectible} chunk(s) "
        f"can be reclaimed by gc"
    )
    return EXIT_OK


@command
def cmd_gc(args: argparse.Namespace) -> int:
    """Reclaim unreferenced chunks."""
    report = run_gc(args.repo_url, settings=args.settings)
    print(
        f"Removed {report.chunks_removed} chunk(s), {report.containers_removed} container(s) "
        f"deleted, {report.containers_rewritten} rewritten, "
        f"{_human_size(report.bytes_freed)} freed"
    )
    if report.missing:
        print(f"{len(report.missing)} referenced chunk(s) are missing; run check", file=sys.stderr)
        return EXIT_FAILURE
    return EXIT_OK


@command
def cmd_check(args: argparse.Namespace) -> int:
    """Verify repository integrity."""
    report = run_check(args.repo_url, read_data=not args.no_read_data, settings=args.settings)
    for damaged in report.missing + report.corrupt:
        print(f"Damaged chunk {damaged.fingerprint[:12]}: {damaged.reason}")
        for snapshot_id, path in damaged.affected:
            print(f"  {snapshot_id[:8]} {path}")
    for container_id in report.damaged_containers:
        print(f"Unreadable container {container_id}")
    if not report.ok:
        print("Repository has errors.")
        return EXIT_FAILURE
    print(f"No errors found ({report.chunks_checked} chunks checked).")
    return EXIT_OK


@command
def cmd_rebuild_index(args: argparse.Namespace) -> int:
    """Rebuild the chunk index."""
    count = run_rebuild_index(args.repo_url, settings=args.settings)
    print(f"Index rebuilt with {count} chunks")
    return EXIT_OK


@command
def cmd_unlock(args: argparse.Namespace) -> int:
    """Remove stale locks."""
    removed = run_unlock(args.repo_url, settings=args.settings)
    print(f"Removed {removed} lock file(s)")
    return EXIT_OK


def add_repository_commands(subparsers) -> None:
    """Add the repository subcommands to the main parser."""
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--repo",
        "-r",
        dest="repo_url",
        default=os.environ.get("ATHENA_REPO"),
        help="fsspec URL for the repository (e.g., file:///path, s3://bucket/prefix, "
        "memory://repo). Defaults to $ATHENA_REPO",
    )

    p_init = subparsers.add_parser("init", parents=[common], help="Initialize a repository")
    p_init.set_defaults(func=cmd_init)

    p_backup = subparsers.add_parser("backup", parents=[common], help="Create a snapshot")
    p_backup.add_argument(
        "sources",
        nargs="+",
        help="One or more local file/directory paths to back up",
    )
    p_backup.add_argument(
        "--parent",
        default=None,
        help="Parent snapshot ID (defaults to the latest snapshot of the same sources)",
    )
    p_backup.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Number of worker threads (defaults to $ATHENA_WORKERS or min(8, CPUs))",
    )
    p_backup.set_defaults(func=cmd_backup)

    p_snapshots = subparsers.add_parser("snapshots", parents=[common], help="List snapshots")
    p_snapshots.set_defaults(func=cmd_snapshots)

    p_restore = subparsers.add_parser("restore", parents=[common], help="Restore a snapshot")
    p_restore.add_argument(
        "dest",
        help="Destination directory for restored files",
    )
    p_restore.add_argument(
        "--snapshot-id",
        "-s",
        dest="snapshot_id",
        default=None,
        help="Snapshot ID or unique prefix to restore (defaults to latest)",
    )
    p_restore.add_argument(
        "--path",
        "-p",
        dest="paths",
        action="append",
        default=None,
        help="Restore only this path from the snapshot (repeatable)",
    )
    p_restore.add_argument(
        "--yes",
        "-y",
        action="store_true",
        help="Create the destination without asking",
    )
    p_restore.set_defaults(func=cmd_restore)

    p_prune = subparsers.add_parser("prune", parents=[common], help="Delete a snapshot")
    p_prune.add_argument("snapshot_id", help="Snapshot ID or unique prefix")
    p_prune.set_defaults(func=cmd_prune)

    p_gc = subparsers.add_parser(
        "gc", parents=[common], help="Reclaim chunks no snapshot references"
    )
    p_gc.set_defaults(func=cmd_gc)

    p_check = subparsers.add_parser("check", parents=[common], help="Verify repository integrity")
    p_check.add_argument(
        "--no-read-data",
        action="store_true",
        help="Only check that chunks are indexed, do not read them",
    )
    p_check.set_defaults(func=cmd_check)

    p_rebuild = subparsers.add_parser(
        "rebuild-index", parents=[common], help="Rebuild the chunk index from the repository"
    )
    p_rebuild.set_defaults(func=cmd_rebuild_index)

    p_unlock = subparsers.add_parser(
        "unlock", parents=[common], help="Remove stale lock files"
    )
    p_unlock.set_defaults(func=cmd_unlock)


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="athena", description="Content-addressed deduplicating backups"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Log progress to stderr"
    )
    sub = parser.add_subparsers(dest="cmd", required=True)
    add_repository_commands(sub)

    args = parser.parse_args(argv)
    try:
        args.settings = EngineSettings.from_env()
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_USAGE
    setup_logging(args.settings.log_level, args.verbose)
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
