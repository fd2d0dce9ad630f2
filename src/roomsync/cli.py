"""Command-line interface with Rich formatting."""

import asyncio
import logging
import signal
import sys
from datetime import datetime
from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table
import structlog

from . import __version__
from .config import create_example_config, get_room, load_rooms, load_settings
from .database import DatabaseManager, SyncMetadataStore
from .models import RoomStatus
from .services import AuthenticationError
from .sync_engine import SyncEngine

console = Console()
logger = structlog.get_logger()


def setup_logging(level: str, debug: bool = False, log_format: str = None) -> None:
    """Set up stdlib and structured logging."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=log_format or "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer() if debug else structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def async_command(f):
    """Decorator to wrap async click commands."""
    @click.pass_context
    def wrapper(ctx, *args, **kwargs):
        return asyncio.run(f(ctx, *args, **kwargs))
    wrapper.__name__ = f.__name__
    wrapper.__doc__ = f.__doc__
    return wrapper


def _require_valid_settings(settings) -> None:
    missing_fields = settings.validate_required_settings()
    if missing_fields:
        console.print(Panel(
            "[red]Missing required configuration fields:[/red]\n" +
            "\n".join(f"• {field}" for field in missing_fields) +
            "\n\nPlease set these environment variables or create a configuration file.\n" +
            "Use [bold]roomsync config create[/bold] to create an example file.",
            title="Configuration Error"
        ))
        sys.exit(1)


def _select_rooms(settings, names):
    """Resolve --room options to room configs; None means every room."""
    if not names:
        return None
    rooms = []
    for name in names:
        room = get_room(settings, name)
        if room is None:
            console.print(f"[red]Unknown room: {name}[/red]")
            sys.exit(1)
        rooms.append(room)
    return rooms


@click.group()
@click.version_option(version=__version__)
@click.option('--config', '-c', type=click.Path(exists=True),
              help='Path to configuration file')
@click.option('--debug', is_flag=True, help='Enable debug mode')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose output')
@click.pass_context
def cli(ctx, config, debug, verbose):
    """roomsync - push room proposals to Google Calendar.

    Each room's data/calendars/<room>/proposals.ics is mirrored one way onto
    the room's Google calendar. Rooms whose proposals did not change since
    the last successful sync are skipped without any API calls.
    """
    ctx.ensure_object(dict)

    try:
        settings = load_settings(config)
        if debug:
            settings.debug = True
        if verbose:
            settings.log_level = 'DEBUG'

        ctx.obj['settings'] = settings

        setup_logging(settings.log_level, settings.debug, settings.log_format)

    except Exception as e:
        console.print(f"[red]Error loading configuration: {e}[/red]")
        sys.exit(1)


@cli.command()
@click.option('--host', default='0.0.0.0', help='Bind host for HTTP server')
@click.option('--port', default=8080, type=int, help='Bind port for HTTP server')
def serve(host, port):
    """Run HTTP server with background sync loop (container friendly)."""
    import uvicorn
    try:
        uvicorn.run("roomsync.server:app", host=host, port=port, reload=False)
    except Exception as e:
        console.print(f"[red]Failed to start server: {e}[/red]")
        sys.exit(1)


@cli.command()
@click.option('--room', '-r', 'room_names', multiple=True,
              help='Room name or slug to sync (repeatable, default: all rooms)')
@click.option('--dry-run', '-n', is_flag=True,
              help='Show what would be synced without making changes')
@click.option('--force', '-f', is_flag=True,
              help='Sync rooms even if their proposals are unchanged')
@async_command
async def sync(ctx, room_names, dry_run, force):
    """Synchronize room calendars once."""
    settings = ctx.obj['settings']
    _require_valid_settings(settings)
    rooms = _select_rooms(settings, room_names)

    if dry_run:
        console.print("[yellow]Running in dry-run mode - no changes will be made[/yellow]")

    try:
        async with SyncEngine(settings) as sync_engine:
            console.print("🚀 Synchronizing rooms...")
            sync_report = await sync_engine.sync_rooms(rooms, dry_run=dry_run, force=force)
    except AuthenticationError as e:
        console.print(f"[red]Authentication failed: {e}[/red]")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("[yellow]Sync cancelled by user[/yellow]")
        sys.exit(1)

    logger.info(
        "sync_finished",
        sync_id=str(sync_report.sync_id),
        rooms=len(sync_report.rooms),
        failed_rooms=len(sync_report.failed_rooms),
        dry_run=dry_run,
    )
    _display_sync_results(sync_report)

    if sync_report.failed_rooms:
        console.print(Panel(
            "\n".join(f"• {r.room_name}: {r.stage.value}: {r.reason}" for r in sync_report.failed_rooms),
            title="[red]Failed rooms[/red]",
            border_style="red"
        ))
        sys.exit(1)


@cli.command()
@click.option('--interval', '-i', type=int,
              help='Sync interval in minutes (overrides config)')
@click.option('--dry-run', '-n', is_flag=True,
              help='Run in dry-run mode')
@click.option('--max-runs', type=int,
              help='Maximum number of sync runs (default: infinite)')
@async_command
async def daemon(ctx, interval, dry_run, max_runs):
    """Run roomsync continuously, stopping gracefully on SIGINT/SIGTERM."""
    settings = ctx.obj['settings']
    _require_valid_settings(settings)

    if interval:
        settings.sync_config.sync_interval_minutes = interval

    sync_interval = settings.sync_config.sync_interval_minutes

    if dry_run:
        console.print("[yellow]Running daemon in dry-run mode[/yellow]")

    console.print(f"[green]Starting roomsync daemon[/green] - interval: {sync_interval} minutes")

    stopping = asyncio.Event()
    runs = 0
    try:
        async with SyncEngine(settings) as sync_engine:
            def _stop():
                console.print("\n[yellow]Stop requested, finishing current work...[/yellow]")
                sync_engine.request_stop()
                stopping.set()

            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, _stop)

            while not stopping.is_set():
                if max_runs and runs >= max_runs:
                    console.print(f"[yellow]Reached maximum runs ({max_runs}), stopping daemon[/yellow]")
                    break

                console.print(
                    f"\n[blue]--- Sync Run {runs + 1} at "
                    f"{datetime.now().strftime('%Y-%m-%d %H:%M:%S')} ---[/blue]"
                )
                sync_report = await sync_engine.sync_rooms(dry_run=dry_run)
                logger.info(
                    "sync_run_finished",
                    run=runs + 1,
                    rooms=len(sync_report.rooms),
                    failed_rooms=len(sync_report.failed_rooms),
                    operations=sync_report.total_operations,
                )
                _display_sync_results(sync_report, compact=True)
                for room in sync_report.failed_rooms:
                    console.print(f"   [red]{room.room_name}: {room.summary()}[/red]")
                runs += 1

                if (max_runs and runs >= max_runs) or stopping.is_set():
                    continue

                console.print(f"[dim]Next sync in {sync_interval} minutes...[/dim]")
                try:
                    await asyncio.wait_for(stopping.wait(), timeout=sync_interval * 60)
                except asyncio.TimeoutError:
                    pass
    except AuthenticationError as e:
        console.print(f"[red]Authentication failed: {e}[/red]")
        sys.exit(1)

    console.print("[yellow]Daemon stopped[/yellow]")


@cli.command()
@click.pass_context
def status(ctx):
    """Show per-room sync state and recent runs."""
    settings = ctx.obj['settings']

    try:
        sync_engine = SyncEngine(settings)
        sync_engine.db_manager.init_db()
        sync_status = sync_engine.get_sync_status()
    except Exception as e:
        console.print(f"[red]Failed to get status: {e}[/red]")
        if settings.debug:
            console.print_exception()
        sys.exit(1)

    _display_sync_status(sync_status)


@cli.command()
@click.pass_context
def rooms(ctx):
    """List configured rooms."""
    settings = ctx.obj['settings']
    configured = load_rooms(settings)

    if not configured:
        console.print(f"[yellow]No rooms configured (looked in {settings.rooms_file})[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta", title="Rooms")
    table.add_column("Name", style="cyan")
    table.add_column("Slug")
    table.add_column("Calendar ID", style="dim")
    table.add_column("Proposals")
    table.add_column("Enabled", justify="center")

    for room in configured:
        source = settings.room_source_path(room)
        table.add_row(
            room.name,
            room.room_id,
            room.calendar_id or "[red]missing[/red]",
            str(source) if source.exists() else f"[dim]{source} (missing)[/dim]",
            "Yes" if room.enabled else "No",
        )

    console.print(table)


@cli.group()
def config():
    """Configuration management commands."""
    pass


@config.command('create')
@click.option('--path', '-p', type=click.Path(), default='.env',
              help='Path to create config file')
@click.option('--force', '-f', is_flag=True,
              help='Overwrite existing file')
def create_config(path, force):
    """Create an example configuration file."""
    config_path = Path(path)

    if config_path.exists() and not force:
        if not Confirm.ask(f"File {path} already exists. Overwrite?"):
            console.print("[yellow]Configuration creation cancelled[/yellow]")
            return

    try:
        create_example_config(config_path)
        console.print(f"[green]Configuration file created at {path}[/green]")
        console.print("Please edit the file with your actual credentials.")
    except OSError as e:
        console.print(f"[red]Failed to create configuration file: {e}[/red]")
        sys.exit(1)


@config.command('validate')
@click.pass_context
def validate_config(ctx):
    """Validate the current configuration."""
    settings = ctx.obj['settings']

    missing_fields = settings.validate_required_settings()

    if missing_fields:
        console.print(Panel(
            "[red]Missing required fields:[/red]\n" +
            "\n".join(f"• {field}" for field in missing_fields),
            title="Configuration Validation",
            border_style="red"
        ))
        sys.exit(1)
    else:
        console.print(Panel(
            "[green]✓ All required configuration fields are present[/green]",
            title="Configuration Validation",
            border_style="green"
        ))


@cli.command()
@click.option('--room', '-r', 'room_name', help='Only reset this room (name or slug)')
@click.confirmation_option(prompt='Are you sure you want to reset sync data?')
@click.pass_context
def reset(ctx, room_name):
    """Forget stored sync state so the next run re-diffs everything."""
    settings = ctx.obj['settings']

    room_id = None
    if room_name:
        room = get_room(settings, room_name)
        if room is None:
            console.print(f"[red]Unknown room: {room_name}[/red]")
            sys.exit(1)
        room_id = room.room_id

    try:
        db_manager = DatabaseManager(settings)
        db_manager.init_db()
        cleared = SyncMetadataStore(db_manager).clear_metadata(room_id)
    except Exception as e:
        console.print(f"[red]Failed to reset sync data: {e}[/red]")
        sys.exit(1)

    console.print(f"[green]✓ Sync data reset for {cleared} room(s)[/green]")
    console.print("[yellow]⚠️  Next sync will re-check every event against the remote calendar[/yellow]")


def _display_sync_results(sync_report, compact=False):
    """Display sync results."""
    if compact:
        # Compact display for daemon mode
        total_ops = sync_report.total_operations
        success_rate = sync_report.success_rate * 100
        failed = len(sync_report.failed_rooms)
        color = "red" if failed else "green"
        console.print(
            f"[{color}]✓ {len(sync_report.rooms)} rooms, {total_ops} operations, "
            f"{success_rate:.1f}% success, {failed} failed rooms[/{color}]"
        )
        return

    title = "Sync Results (dry run)" if sync_report.dry_run else "Sync Results"
    table = Table(show_header=True, header_style="bold magenta", title=title)
    table.add_column("Room", style="cyan")
    table.add_column("Status")
    table.add_column("Created", justify="center")
    table.add_column("Updated", justify="center")
    table.add_column("Deleted", justify="center")
    table.add_column("Unchanged", justify="center", style="dim")
    table.add_column("Errors", justify="center")

    status_color = {
        RoomStatus.SYNCED: 'green',
        RoomStatus.SKIPPED_UNCHANGED: 'dim',
        RoomStatus.FAILED: 'red',
    }
    for room in sync_report.rooms:
        color = status_color[room.status]
        if room.status == RoomStatus.SYNCED and room.failed_operations:
            color = 'yellow'
        table.add_row(
            room.room_name,
            f"[{color}]{room.status.value}[/{color}]",
            str(room.created),
            str(room.updated),
            str(room.deleted),
            str(room.unchanged),
            str(len(room.failed_operations)),
        )

    console.print(table)

    if sync_report.completed_at:
        duration = sync_report.completed_at - sync_report.started_at
        console.print(f"[dim]Completed in {duration.total_seconds():.1f} seconds[/dim]")


def _display_sync_status(sync_status):
    """Display sync status."""
    table = Table(show_header=True, header_style="bold magenta", title="Rooms")
    table.add_column("Room", style="cyan")
    table.add_column("Last synced", style="dim")
    table.add_column("Mapped events", justify="center")
    table.add_column("Last run")

    for room in sync_status['rooms']:
        last_synced = room['last_synced_at']
        last_run = room['last_status'] or "never"
        if room['last_status'] == RoomStatus.FAILED.value:
            last_run = f"[red]failed during {room['last_stage']}: {room['last_reason']}[/red]"
        table.add_row(
            room['name'],
            last_synced.strftime("%Y-%m-%d %H:%M") if last_synced else "never",
            str(room['mapped_events']),
            last_run,
        )
    console.print(table)

    if sync_status['recent_sessions']:
        console.print("\n[bold]Recent Sync Runs[/bold]")

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Started", style="dim")
        table.add_column("Status")
        table.add_column("Synced", justify="center")
        table.add_column("Skipped", justify="center")
        table.add_column("Failed", justify="center")
        table.add_column("Dry Run", justify="center")

        for session in sync_status['recent_sessions']:
            started = datetime.fromisoformat(session['started_at']).strftime("%m-%d %H:%M")
            status = session['status']
            status_color = {
                'completed': 'green',
                'failed': 'red',
                'running': 'yellow'
            }.get(status, 'white')

            table.add_row(
                started,
                f"[{status_color}]{status}[/{status_color}]",
                str(session['rooms']['synced']),
                str(session['rooms']['skipped']),
                str(session['rooms']['failed']),
                "Yes" if session['dry_run'] else "No",
            )

        console.print(table)


def main():
    """Entry point for the CLI."""
    cli()


if __name__ == '__main__':
    main()
