"""
Command-line interface for vss-migrate.

Commands:
- run: migrate history to the configured target
- probe: show where a resumed run would continue
- users: write unmapped users to emails.properties
- watch: keep the target in sync with a changing source
- config: show, init
"""

import sys
import os
import argparse
import logging
import time
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import load_dotenv
from pydantic import ValidationError

from vss_migrate.config import ConfigManager, DEFAULT_SETTINGS_FILE, MigrationSettings
from vss_migrate.errors import MigrationError
from vss_migrate.models import PipelineStatus, RunState
from vss_migrate.pipeline import MigrationPipeline
from vss_migrate.watcher import SourceWatcher


logger = logging.getLogger(__name__)

# .env file in the working directory (SVN_PASSWORD, LOG_LEVEL)
ENV_FILE = Path(".env")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"

# Seconds between progress lines
PROGRESS_INTERVAL = 2.0

# Seconds between checks for settled source changes
WATCH_INTERVAL = 1.0

EXIT_INTERRUPTED = 130


def configure_logging(log_file: Optional[str] = None, verbose: bool = False) -> None:
    """Log to stdout, and to log_file when set. LOG_LEVEL overrides the level."""
    level_name = os.environ.get("LOG_LEVEL", "DEBUG" if verbose else "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)]
    )
    root = logging.getLogger()
    root.setLevel(level)

    if log_file:
        path = str(Path(log_file).resolve())
        for handler in root.handlers:
            if isinstance(handler, logging.FileHandler) and handler.baseFilename == path:
                return
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(file_handler)


def _load_settings(args) -> MigrationSettings:
    config_manager = ConfigManager(args.settings)
    settings = config_manager.settings
    configure_logging(settings.log_file, getattr(args, "verbose", False))
    return settings


def _print_progress(status: PipelineStatus) -> None:
    print(
        f"⏳ {status.last_status or 'Working'} | "
        f"{status.file_count} files, {status.revision_count} revisions, "
        f"{status.changeset_count} changesets, {status.commit_count} commits"
    )


def _print_summary(status: PipelineStatus) -> None:
    print("\n📊 Summary:")
    print(f"   Projects:   {status.project_count}")
    print(f"   Files:      {status.file_count}")
    print(f"   Revisions:  {status.revision_count}")
    print(f"   Changesets: {status.changeset_count}")
    print(f"   Commits:    {status.commit_count}")
    print(f"   Tags:       {status.tag_count}")
    if status.skipped_count:
        print(f"   Skipped:    {status.skipped_count} (already exported)")
    print(f"   Time:       {status.active_time}")


def _wait_for_pipeline(pipeline: MigrationPipeline, quiet: bool = False) -> PipelineStatus:
    """Wait for the run, printing progress. Ctrl-C aborts and keeps waiting."""
    interrupted = False
    while True:
        try:
            if pipeline.wait(timeout=PROGRESS_INTERVAL):
                break
            if not quiet:
                _print_progress(pipeline.status())
        except KeyboardInterrupt:
            if interrupted:
                raise
            interrupted = True
            print("\n⚠️  Interrupted, stopping after the current changeset...")
            pipeline.abort()
    return pipeline.status()


def _report(status: PipelineStatus) -> int:
    if status.state == RunState.FAILED:
        print("\n❌ Migration failed:")
        for error in status.errors:
            print(f"   {error}")
        return 1
    if status.state == RunState.CANCELLED:
        print(f"\n⏹️  Migration cancelled after {status.commit_count} commits")
        return EXIT_INTERRUPTED
    print("\n✅ Migration complete")
    return 0


# =============================================================================
# RUN COMMAND
# =============================================================================

def cmd_run(args):
    """Run a migration to completion."""
    settings = _load_settings(args)

    print("=" * 60)
    print("🚚 VSS Migration" + (" (dry run)" if args.dry_run else ""))
    print("=" * 60)
    print(f"Source:  {settings.vss_directory} {settings.vss_project}")
    print(f"Target:  {'memory' if args.dry_run else settings.out_directory} ({settings.vcs_type.value})")
    print()

    pipeline = MigrationPipeline(settings, dry_run=args.dry_run)
    try:
        result = pipeline.start()
        if not result.ok:
            print(f"❌ {result.error_kind}: {result.message}", file=sys.stderr)
            return 1

        status = _wait_for_pipeline(pipeline, quiet=args.quiet)
        _print_summary(status)
        return _report(status)
    finally:
        pipeline.close()


# =============================================================================
# PROBE COMMAND
# =============================================================================

def cmd_probe(args):
    """Print the resume cursor of the configured target."""
    settings = _load_settings(args)
    pipeline = MigrationPipeline(settings)
    try:
        continue_after = pipeline.probe_resume_cursor()
    except MigrationError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 1
    finally:
        pipeline.close()

    if continue_after is None:
        print("📭 Target is empty, a run starts from the beginning")
    else:
        print(f"📌 Last commit: {continue_after.isoformat(sep=' ')} (UTC)")
    return 0


# =============================================================================
# USERS COMMAND
# =============================================================================

def cmd_users(args):
    """Write unmapped users to emails.properties."""
    settings = _load_settings(args)
    pipeline = MigrationPipeline(settings)
    try:
        result = pipeline.dump_users(args.output)
        if not result.ok:
            print(f"❌ {result.error_kind}: {result.message}", file=sys.stderr)
            return 1

        status = _wait_for_pipeline(pipeline, quiet=True)
        if status.state == RunState.FAILED:
            return _report(status)
        print(f"✅ Users written ({status.revision_count} revisions analyzed)")
        return 0
    finally:
        pipeline.close()


# =============================================================================
# WATCH COMMAND
# =============================================================================

def _sync_once(settings: MigrationSettings) -> int:
    pipeline = MigrationPipeline(settings)
    try:
        result = pipeline.start()
        if not result.ok:
            print(f"❌ {result.error_kind}: {result.message}", file=sys.stderr)
            return 1
        status = _wait_for_pipeline(pipeline, quiet=True)
        if status.state != RunState.COMPLETED:
            return _report(status)
        print(f"🔄 Synced: {status.commit_count} new commits, {status.tag_count} tags")
        return 0
    finally:
        pipeline.close()


def cmd_watch(args):
    """Re-run a resumed migration whenever the source changes."""
    settings = _load_settings(args)
    settings = settings.model_copy(update={"continue_sync": True, "reset_repo": False})

    watcher = SourceWatcher(
        Path(settings.vss_directory),
        debounce_ms=args.debounce,
        ignored_names=["emails.properties"],
    )

    print("=" * 60)
    print("👀 Watching for source changes")
    print("=" * 60)
    print(f"Source: {settings.vss_directory}")
    print("Press Ctrl-C to stop\n")

    if _sync_once(settings) == 1 and not args.keep_going:
        return 1

    try:
        watcher.start()
    except FileNotFoundError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 1

    try:
        while True:
            time.sleep(WATCH_INTERVAL)
            if watcher.has_settled_change():
                logger.info("Source changed, syncing")
                if _sync_once(settings) == 1 and not args.keep_going:
                    return 1
    except KeyboardInterrupt:
        print("\n\nStopped")
    finally:
        watcher.stop()

    return 0


# =============================================================================
# CONFIG COMMANDS
# =============================================================================

def cmd_config_show(args):
    """Show effective settings."""
    config_manager = ConfigManager(args.settings)
    settings = config_manager.settings

    exists = config_manager.settings_file.exists()
    print(f"Settings file: {config_manager.settings_file}" + ("" if exists else " (not found, defaults)"))
    print()
    for key, value in settings.model_dump(by_alias=True, mode="json").items():
        if key == "SvnPassword" and value:
            value = "********"
        print(f"  {key} = {value}")
    return 0


def _parse_assignments(pairs: List[str]) -> Dict[str, str]:
    values: Dict[str, str] = {}
    for pair in pairs:
        if "=" not in pair:
            raise ValueError(f"Expected KEY=VALUE, got: {pair}")
        key, value = pair.split("=", 1)
        values[key.strip()] = value.strip()
    return values


def cmd_config_init(args):
    """Write a settings file."""
    config_manager = ConfigManager(args.settings)
    if config_manager.settings_file.exists() and not args.force:
        print(f"⚠️  {config_manager.settings_file} already exists (use --force to overwrite)")
        return 1

    try:
        values = _parse_assignments(args.values)
        config_manager.settings = MigrationSettings.from_properties(values)
        config_manager.save_settings()
    except (ValueError, ValidationError, MigrationError) as e:
        print(f"❌ Invalid settings: {e}", file=sys.stderr)
        return 1

    print(f"💾 Settings written: {config_manager.settings_file}")
    return 0


# =============================================================================
# MAIN
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vss-migrate",
        description="Migrate Visual SourceSafe history to git or Subversion",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Create a settings file
  vss-migrate config init VssDirectory=/data/vss VssProject=$/Product OutDirectory=/data/git

  # Migrate
  vss-migrate run
  vss-migrate run --dry-run

  # Resume from the last exported commit
  vss-migrate -s product.properties run

  # Author mapping
  vss-migrate users

  # Continuous one-way sync
  vss-migrate watch
        """
    )

    parser.add_argument("-s", "--settings", type=Path, default=None, help="Path to settings file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Run command
    run_parser = subparsers.add_parser("run", help="Run the migration")
    run_parser.add_argument("--dry-run", action="store_true", help="Export to memory only")
    run_parser.add_argument("--quiet", "-q", action="store_true", help="No progress lines")
    run_parser.set_defaults(func=cmd_run)

    # Probe command
    probe_parser = subparsers.add_parser("probe", help="Show the resume cursor")
    probe_parser.set_defaults(func=cmd_probe)

    # Users command
    users_parser = subparsers.add_parser("users", help="Dump unmapped users to emails.properties")
    users_parser.add_argument("--output", "-o", type=Path, default=None, help="Mapping file to write")
    users_parser.set_defaults(func=cmd_users)

    # Watch command
    watch_parser = subparsers.add_parser("watch", help="Sync continuously")
    watch_parser.add_argument("--debounce", type=int, default=5000, help="Quiet period in milliseconds")
    watch_parser.add_argument("--keep-going", action="store_true", help="Keep watching after a failed sync")
    watch_parser.set_defaults(func=cmd_watch)

    # Config subcommands
    config_parser = subparsers.add_parser("config", help="Manage settings")
    config_subparsers = config_parser.add_subparsers(dest="config_command", help="Config commands")

    config_show_parser = config_subparsers.add_parser("show", help="Show settings")
    config_show_parser.set_defaults(func=cmd_config_show)

    config_init_parser = config_subparsers.add_parser("init", help="Write a settings file")
    config_init_parser.add_argument("values", nargs="*", metavar="KEY=VALUE", help="Settings to store")
    config_init_parser.add_argument("--force", action="store_true", help="Overwrite an existing file")
    config_init_parser.set_defaults(func=cmd_config_init)

    return parser


def main(argv: Optional[List[str]] = None):
    """CLI entry point."""
    if ENV_FILE.exists():
        load_dotenv(ENV_FILE)

    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.settings:
        args.settings = DEFAULT_SETTINGS_FILE

    if hasattr(args, 'func'):
        return args.func(args)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
