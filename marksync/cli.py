#!/usr/bin/env python3
"""
marksync - keep browser bookmarks in sync through GitHub.

Command-line interface: one-shot sync, background watch mode, offline
queue management, remote history and configuration.
"""
import sys
import json
import time
import logging
import argparse
import threading
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.table import Table
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn

from marksync.backup import create_backup, load_backup, save_backup
from marksync.config import SyncConfig, init_config, get_config
from marksync.db import Database
from marksync.envelope import SyncEnvelope
from marksync.errors import ConfigError, SyncError, ValidationError
from marksync.host import ChromiumBookmarksHost
from marksync.queue import OfflineQueue
from marksync.remote import RepositoryStore, create_store
from marksync.sync import AutoSyncScheduler, ProgressKind, SyncOrchestrator, SyncState
from marksync.utils import ms_to_iso

logger = logging.getLogger(__name__)

console = Console()


def setup_logging(level: str, verbose: bool = False, quiet: bool = False):
    """Configure root logging for the CLI; --quiet keeps warnings and errors only."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format='%(levelname)s: %(name)s: %(message)s')
    elif quiet:
        logging.basicConfig(level=logging.WARNING, format='%(levelname)s: %(message)s')
    else:
        logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO),
                            format='%(levelname)s: %(message)s')


def open_db(config: SyncConfig) -> Database:
    return Database(path=config.state_db)


def build_orchestrator(config: SyncConfig, db: Optional[Database] = None) -> SyncOrchestrator:
    """Wire host, store and state database together from the configuration."""
    config.require_valid()
    db = db or open_db(config)
    host = ChromiumBookmarksHost.from_config(config)
    store = create_store(config)
    return SyncOrchestrator(host=host, store=store, db=db, config=config)


def format_time(value) -> str:
    if value is None:
        return "-"
    return value.astimezone().strftime("%Y-%m-%d %H:%M:%S")


def print_outcome(outcome) -> None:
    if outcome is None:
        console.print("[yellow]A sync is already running[/yellow]")
        return
    if outcome.ok:
        action = "merged with remote" if outcome.merged else "uploaded"
        console.print(f"[green]✓ Synced {outcome.total_count} bookmarks "
                      f"in {outcome.folder_count} folders ({action})[/green]")
    elif outcome.queued:
        console.print(f"[yellow]⚠ {outcome.error}[/yellow]")
    else:
        console.print(f"[red]✗ {outcome.error}[/red]")


def cmd_sync(args):
    """Run one sync cycle with a progress bar."""
    config = get_config()
    orchestrator = build_orchestrator(config)

    result = {}
    subscription = orchestrator.channel.subscribe()
    worker = threading.Thread(target=lambda: result.update(outcome=orchestrator.sync_now()), daemon=True)

    if args.quiet:
        worker.start()
        worker.join()
    else:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            console=console
        ) as progress:
            task = progress.add_task("Starting bookmark sync...", total=100)

            def show_events():
                for event in subscription.get_all():
                    if event.percent is not None:
                        progress.update(task, completed=event.percent)
                    if event.kind in (ProgressKind.START, ProgressKind.PROGRESS):
                        progress.update(task, description=event.message)

            worker.start()
            while worker.is_alive():
                show_events()
                worker.join(0.1)
            show_events()
    subscription.close()

    outcome = result.get("outcome")
    print_outcome(outcome)
    if outcome is None or not outcome.ok:
        sys.exit(1)


def cmd_status(args):
    """Show the last sync outcome and local state."""
    config = get_config()
    db = open_db(config)
    queue = OfflineQueue(db)

    table = Table(title="marksync status", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")

    backend = config.backend
    if backend == "repository":
        location = f"{config.owner}/{config.repo}@{config.branch}:{config.path}"
    else:
        location = f"gist {config.gist_id or db.get_state('gist_id') or '<not created>'}"
    table.add_row("Backend", backend)
    table.add_row("Remote", location)
    table.add_row("Device", config.device_id or db.get_state("device_id") or "-")
    table.add_row("Last write", ms_to_iso(db.get_state("last_sync")) or "never")

    counts = db.get_state("last_counts") or {}
    if counts:
        table.add_row("Bookmarks", f"{counts.get('totalCount', 0)} in {counts.get('folderCount', 0)} folders")
    table.add_row("Queued", str(len(queue)))

    record = db.latest_record()
    if record is not None:
        style = "green" if record.status == SyncState.SUCCESS.value else "red"
        table.add_row("Last sync", f"[{style}]{record.status}[/{style}] at {format_time(record.finished_at)}")
        if record.error:
            table.add_row("Last error", record.error)

    console.print(table)

    if args.history:
        records = db.records(limit=args.history)
        log = Table(title="Recent syncs")
        log.add_column("Finished", style="cyan")
        log.add_column("Status")
        log.add_column("Bookmarks", justify="right")
        log.add_column("Merged")
        log.add_column("Error", style="red")
        for row in records:
            log.add_row(
                format_time(row.finished_at),
                row.status,
                str(row.total_count),
                "yes" if row.merged else "",
                (row.error or "")[:60],
            )
        console.print(log)


def cmd_watch(args):
    """Sync on bookmark changes and on a fixed interval until interrupted."""
    config = get_config()
    if args.interval:
        config.sync_interval = args.interval
    orchestrator = build_orchestrator(config)
    scheduler = AutoSyncScheduler(orchestrator, config.sync_interval, run_immediately=True)

    console.print(f"[bold]Watching {orchestrator.host.path}[/bold]")
    console.print(f"Remote: {orchestrator.location.describe()}")
    console.print(f"Interval: {scheduler.interval_minutes} min, debounce: {config.change_debounce}s")
    console.print("[dim]Press Ctrl+C to stop[/dim]")

    scheduler.start()
    last_seen = orchestrator.host.fingerprint()
    try:
        while True:
            time.sleep(args.poll)
            current = orchestrator.host.fingerprint()
            if current != last_seen:
                last_seen = current
                orchestrator.notify_change("file changed")
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopping watch mode[/yellow]")
    finally:
        scheduler.stop()
        orchestrator.close()


def cmd_queue(args):
    """Inspect or drain the offline queue."""
    config = get_config()
    db = open_db(config)
    queue = OfflineQueue(db)

    if args.queue_command == "list":
        operations = queue.peek_all()
        if not operations:
            console.print("[green]Offline queue is empty[/green]")
            return
        table = Table(title=f"Offline queue ({len(operations)})")
        table.add_column("ID", style="cyan")
        table.add_column("Kind")
        table.add_column("Queued at")
        table.add_column("Bookmarks", justify="right")
        table.add_column("Attempts", justify="right")
        table.add_column("Last error", style="red")
        for operation in operations:
            try:
                count = str(SyncEnvelope.from_json(operation.payload).metadata.total_count)
            except ValidationError:
                count = "?"
            table.add_row(
                str(operation.id),
                operation.kind,
                format_time(operation.enqueued_at),
                count,
                str(operation.attempts),
                (operation.last_error or "")[:50],
            )
        console.print(table)

    elif args.queue_command == "drain":
        orchestrator = build_orchestrator(config, db)
        result = orchestrator.replay_pending()
        if result is None:
            console.print("[yellow]A sync is running, try again later[/yellow]")
            sys.exit(1)
        if result.error is not None:
            console.print(f"[red]✗ Replayed {result.replayed}, {result.remaining} left: {result.error}[/red]")
            sys.exit(1)
        console.print(f"[green]✓ Replayed {result.replayed} queued operation(s)[/green]")

    elif args.queue_command == "clear":
        if not args.yes:
            console.print(f"[yellow]This discards {len(queue)} queued change(s); pass --yes to confirm[/yellow]")
            sys.exit(1)
        removed = queue.clear()
        console.print(f"[green]Removed {removed} queued operation(s)[/green]")


def cmd_history(args):
    """List remote history copies (repository backend)."""
    config = get_config()
    orchestrator = build_orchestrator(config)
    store = orchestrator.store
    if not isinstance(store, RepositoryStore):
        raise ConfigError("History is only kept by the repository backend", ["backend is not repository"])

    entries = store.list_history(orchestrator.location)
    if not entries:
        console.print("[yellow]No history copies yet[/yellow]")
        return

    if args.output == "json":
        print(json.dumps([{"name": e.name, "path": e.path, "sha": e.sha} for e in entries], indent=2))
        return

    table = Table(title=f"History of {orchestrator.location.describe()}")
    table.add_column("Name", style="cyan")
    table.add_column("SHA", style="dim")
    for entry in entries:
        table.add_row(entry.name, entry.sha[:10])
    console.print(table)


def cmd_rollback(args):
    """Restore a history copy as the current remote document."""
    config = get_config()
    orchestrator = build_orchestrator(config)
    restored = orchestrator.rollback(args.name)
    console.print(f"[green]✓ Restored {args.name}: {restored.metadata.total_count} bookmarks "
                  f"in {restored.metadata.folder_count} folders[/green]")


def cmd_backup(args):
    """Export the local bookmarks and settings to a file, or restore one to the remote."""
    config = get_config()

    if args.backup_command == "export":
        db = open_db(config)
        host = ChromiumBookmarksHost.from_config(config)
        backup = create_backup(host, config, db)
        path = save_backup(backup, args.path)
        console.print(f"[green]✓ Backed up {backup.envelope.metadata.total_count} bookmarks "
                      f"in {backup.envelope.metadata.folder_count} folders to {path}[/green]")

    elif args.backup_command == "restore":
        backup = load_backup(args.path)
        if args.settings:
            settings_path = Path(args.settings).expanduser()
            if settings_path.exists() and not args.force:
                console.print(f"[red]{settings_path} already exists (use --force to overwrite)[/red]")
                sys.exit(1)
            backup.to_config().save(settings_path)
            console.print(f"[green]Wrote backed-up settings to {settings_path} (token not included)[/green]")
        orchestrator = build_orchestrator(config)
        restored = orchestrator.restore(backup.envelope)
        console.print(f"[green]✓ Restored {restored.metadata.total_count} bookmarks "
                      f"in {restored.metadata.folder_count} folders to "
                      f"{orchestrator.location.describe()}[/green]")


def cmd_config(args):
    """Manage configuration."""
    config = get_config()

    if args.action == "show":
        data = config.redacted()
        if args.key:
            if args.key not in data:
                console.print(f"[red]Unknown config key: {args.key}[/red]")
                sys.exit(1)
            print(data[args.key])
        else:
            print(json.dumps(data, indent=2))

    elif args.action == "init":
        config_path = Path(args.path) if args.path else Path.home() / ".config" / "marksync" / "config.toml"
        if config_path.exists() and not args.force:
            console.print(f"[red]{config_path} already exists (use --force to overwrite)[/red]")
            sys.exit(1)
        config.save(config_path)
        console.print(f"[green]Created config at {config_path}[/green]")

    elif args.action == "validate":
        problems = config.validate()
        if problems:
            for problem in problems:
                console.print(f"[red]✗ {problem}[/red]")
            sys.exit(1)
        console.print("[green]✓ Configuration is valid[/green]")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="marksync",
        description="marksync - sync browser bookmarks through a GitHub gist or repository",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  marksync config init
  marksync sync
  marksync watch --interval 30
  marksync queue list
  marksync history
  marksync rollback bookmarks-20261018T120000000Z.json
  marksync backup export ~/bookmarks-backup.json

Configuration:
  Config file: ~/.config/marksync/config.toml (or ./marksync.toml)
  Environment: MARKSYNC_TOKEN, MARKSYNC_BACKEND, MARKSYNC_GIST_ID, ...
        """
    )

    # Global options
    parser.add_argument("--config", help="Config file path")
    parser.add_argument("--db", help="State database file")
    parser.add_argument("--bookmarks", help="Chromium Bookmarks file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("-q", "--quiet", action="store_true", help="Minimal output")

    subparsers = parser.add_subparsers(dest="command", required=True, help="Commands")

    sync_parser = subparsers.add_parser("sync", help="Sync bookmarks now")
    sync_parser.set_defaults(func=cmd_sync)

    status_parser = subparsers.add_parser("status", help="Show sync status")
    status_parser.add_argument("--history", type=int, nargs="?", const=10, default=0,
                               help="Also list the last N sync outcomes")
    status_parser.set_defaults(func=cmd_status)

    watch_parser = subparsers.add_parser("watch", help="Sync on changes and on a schedule")
    watch_parser.add_argument("--interval", type=int, help="Auto-sync interval in minutes")
    watch_parser.add_argument("--poll", type=float, default=2.0,
                              help="Seconds between bookmark file checks (default: 2)")
    watch_parser.set_defaults(func=cmd_watch)

    queue_parser = subparsers.add_parser("queue", help="Offline queue")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", required=True)
    queue_subparsers.add_parser("list", help="List queued changes")
    queue_subparsers.add_parser("drain", help="Replay queued changes now")
    queue_clear = queue_subparsers.add_parser("clear", help="Discard queued changes")
    queue_clear.add_argument("--yes", action="store_true", help="Confirm")
    queue_parser.set_defaults(func=cmd_queue)

    history_parser = subparsers.add_parser("history", help="List remote history copies")
    history_parser.add_argument("-o", "--output", choices=["table", "json"], default="table")
    history_parser.set_defaults(func=cmd_history)

    rollback_parser = subparsers.add_parser("rollback", help="Restore a remote history copy")
    rollback_parser.add_argument("name", help="History file name (see 'marksync history')")
    rollback_parser.set_defaults(func=cmd_rollback)

    backup_parser = subparsers.add_parser("backup", help="Local backup files")
    backup_subparsers = backup_parser.add_subparsers(dest="backup_command", required=True)
    backup_export = backup_subparsers.add_parser("export", help="Write local bookmarks and settings to a file")
    backup_export.add_argument("path", help="Backup file to write")
    backup_restore = backup_subparsers.add_parser("restore", help="Write a backup to the remote")
    backup_restore.add_argument("path", help="Backup file to read")
    backup_restore.add_argument("--settings", help="Also write the backed-up settings to this config file")
    backup_restore.add_argument("--force", action="store_true", help="Overwrite the settings file")
    backup_parser.set_defaults(func=cmd_backup)

    config_parser = subparsers.add_parser("config", help="Manage configuration")
    config_parser.add_argument("action", choices=["show", "init", "validate"], help="Action")
    config_parser.add_argument("key", nargs="?", help="Config key (for show)")
    config_parser.add_argument("--path", help="Config file to write (for init)")
    config_parser.add_argument("--force", action="store_true", help="Overwrite (for init)")
    config_parser.set_defaults(func=cmd_config)

    return parser


def main(argv=None):
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    config = init_config(
        config_file=Path(args.config) if args.config else None,
        state_db=args.db,
        bookmarks_file=args.bookmarks,
    )
    setup_logging(config.log_level, args.verbose, args.quiet)

    try:
        args.func(args)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        sys.exit(130)
    except ConfigError as e:
        for problem in e.problems or [str(e)]:
            console.print(f"[red]Config error: {problem}[/red]")
        sys.exit(2)
    except SyncError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)
    except Exception as e:
        logger.debug("Command failed", exc_info=True)
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
