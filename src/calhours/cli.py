"""Command-line interface with Rich formatting."""

import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import List

import click
from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich.prompt import Confirm
import structlog

from .admin import NoUsersConfiguredError, create_sync_admin
from .config import load_settings, create_example_config
from .database import DatabaseManager
from .models import UserSyncResult, UserSyncStatus
from .stores import EventStore, SyncStateStore, TaskStore
from .tags import MissingGenericTaskError, TagCache, TagResolver
from .tasks import TaskError, TaskService

console = Console()
logger = structlog.get_logger()


def setup_logging(level: str, debug: bool = False, log_format: str = None) -> None:
    """Set up stdlib and structured logging."""
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
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


def _task_service(settings) -> TaskService:
    db_manager = DatabaseManager(settings)
    db_manager.init_db()
    task_store = TaskStore(db_manager)
    resolver = TagResolver(task_store, TagCache(), settings.ingestion.generic_tag)
    return TaskService(task_store, resolver)


@click.group()
@click.version_option(version="0.1.0")
@click.option('--config', '-c', type=click.Path(exists=True),
              help='Path to configuration file')
@click.option('--debug', is_flag=True, help='Enable debug mode')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose output')
@click.pass_context
def cli(ctx, config, debug, verbose):
    """calhours - work hours from tagged Google Calendar events.

    Events are attributed to tasks through a leading #TAG in their title;
    untagged events go to the generic task.
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


@cli.command('init-db')
@click.pass_context
def init_db(ctx):
    """Create database tables."""
    settings = ctx.obj['settings']
    DatabaseManager(settings).init_db()
    console.print(f"[green]Database ready at {settings.database_url}[/green]")


@cli.command()
@click.pass_context
def bootstrap(ctx):
    """Create the generic task (and its internal client and project)."""
    settings = ctx.obj['settings']
    task = _task_service(settings).ensure_generic_task()
    console.print(f"[green]Generic task {task.tag} ready (id {task.id})[/green]")


@cli.group()
def tasks():
    """Task management commands."""
    pass


@tasks.command('list')
@click.pass_context
def list_tasks(ctx):
    """List tasks and their tags."""
    settings = ctx.obj['settings']
    db_manager = DatabaseManager(settings)
    db_manager.init_db()

    table = Table(title="Tasks")
    table.add_column("ID", justify="right")
    table.add_column("Tag", style="cyan")
    table.add_column("Name")
    table.add_column("Project", justify="right")
    table.add_column("Active")

    for task in TaskStore(db_manager).all_tasks():
        table.add_row(str(task.id), task.tag, task.name, str(task.project_id), "✓" if task.active else "✗")

    console.print(table)


@tasks.command('add')
@click.option('--name', '-n', required=True, help='Task name')
@click.option('--tag', '-t', required=True, help='Tag used in event titles, e.g. #ACME_SUPPORT')
@click.option('--project', '-p', required=True, help='Project name (created if missing)')
@click.option('--client', default='Internal', show_default=True, help='Client owning the project')
@click.option('--description', '-d', help='Task description')
@click.pass_context
def add_task(ctx, name, tag, project, client, description):
    """Create a task."""
    settings = ctx.obj['settings']
    service = _task_service(settings)
    try:
        project_id = service.task_store.ensure_project(project, client)
        task = service.create_task(name=name, tag=tag, project_id=project_id, description=description)
    except (TaskError, ValueError) as e:
        console.print(f"[red]Failed to create task: {e}[/red]")
        sys.exit(1)
    console.print(f"[green]Created task {task.tag} (id {task.id})[/green]")


@cli.command()
@click.option('--user', '-u', 'users', multiple=True, help='User email to sync (repeatable)')
@click.option('--all', 'sync_all', is_flag=True, help='Sync every configured user')
@click.option('--reset', is_flag=True, help='Discard stored sync tokens first (full resync)')
@async_command
async def sync(ctx, users, sync_all, reset):
    """Synchronize calendars of one or more users."""
    settings = ctx.obj['settings']

    if not users and not sync_all:
        console.print("[red]Pass --user EMAIL or --all[/red]")
        sys.exit(1)

    missing_fields = [f for f in settings.validate_required_settings() if not (users and f == 'WORKSPACE_USERS')]
    if missing_fields:
        console.print(Panel(
            f"[red]Missing required configuration fields:[/red]\n" +
            "\n".join(f"• {field}" for field in missing_fields) +
            f"\n\nPlease set these environment variables or create a configuration file.\n" +
            f"Use [bold]calhours config create[/bold] to create an example file.",
            title="Configuration Error"
        ))
        sys.exit(1)

    try:
        admin = create_sync_admin(settings)
        if sync_all:
            results = await admin.sync_all_users(reset=reset)
        else:
            results = [await admin.sync_one_user(email, reset=reset) for email in users]
    except MissingGenericTaskError as e:
        console.print(f"[red]{e}[/red]")
        console.print("Run [bold]calhours bootstrap[/bold] to create the generic task.")
        sys.exit(1)
    except NoUsersConfiguredError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)

    _display_sync_results(results)
    if any(r.status == UserSyncStatus.ERROR for r in results):
        sys.exit(1)


@cli.command()
@click.pass_context
def status(ctx):
    """Show sync state and stored event counts per user."""
    settings = ctx.obj['settings']
    db_manager = DatabaseManager(settings)
    db_manager.init_db()

    counts = EventStore(db_manager).count_by_user()
    states = SyncStateStore(db_manager).all_states()

    table = Table(title="Sync State")
    table.add_column("User", style="cyan")
    table.add_column("Calendar")
    table.add_column("Last Synced")
    table.add_column("Token")
    table.add_column("Events", justify="right")

    for state in states:
        table.add_row(
            state.user_email,
            state.calendar_id,
            state.last_synced_at.strftime('%Y-%m-%d %H:%M:%S %Z') if state.last_synced_at else "never",
            "full sync pending" if state.needs_full_sync else "incremental",
            str(counts.get(state.user_email, 0)),
        )

    if not states:
        console.print("[yellow]No users synchronized yet[/yellow]")
    else:
        console.print(table)


@cli.command()
@click.option('--interval', '-i', type=int,
              help='Sync interval in minutes (overrides config)')
@click.option('--max-runs', type=int,
              help='Maximum number of sync runs (default: infinite)')
@async_command
async def daemon(ctx, interval, max_runs):
    """Sync every configured user continuously."""
    settings = ctx.obj['settings']

    if interval:
        settings.ingestion.sync_interval_minutes = interval
    sync_interval = settings.ingestion.sync_interval_minutes

    try:
        admin = create_sync_admin(settings)
    except MissingGenericTaskError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)

    console.print(f"[green]Starting calhours daemon[/green] - interval: {sync_interval} minutes")

    runs = 0
    try:
        while True:
            console.print(f"\n[blue]--- Sync Run {runs + 1} at {datetime.now().strftime('%Y-%m-%d %H:%M:%S')} ---[/blue]")

            try:
                results = await admin.sync_all_users()
                _display_sync_results(results, compact=True)
            except NoUsersConfiguredError as e:
                console.print(f"[red]{e}[/red]")
                sys.exit(1)
            runs += 1

            if max_runs and runs >= max_runs:
                console.print(f"[yellow]Reached maximum runs ({max_runs}), stopping daemon[/yellow]")
                break

            console.print(f"[dim]Next sync in {sync_interval} minutes...[/dim]")
            await asyncio.sleep(sync_interval * 60)

    except KeyboardInterrupt:
        console.print("\n[yellow]Daemon stopped by user[/yellow]")
        sys.exit(0)


@cli.command()
@click.option('--host', default='0.0.0.0', help='Bind host for HTTP server')
@click.option('--port', default=8080, type=int, help='Bind port for HTTP server')
@click.pass_context
def serve(ctx, host, port):
    """Run HTTP server with the background sync scheduler (container friendly)."""
    from .server import create_app

    try:
        import uvicorn
        uvicorn.run(create_app(ctx.obj['settings']), host=host, port=port, reload=False)
    except Exception as e:
        console.print(f"[red]Failed to start server: {e}[/red]")
        sys.exit(1)


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
    except Exception as e:
        console.print(f"[red]Failed to create configuration file: {e}[/red]")


@config.command('validate')
@click.pass_context
def validate_config(ctx):
    """Validate the current configuration."""
    settings = ctx.obj['settings']

    missing_fields = settings.validate_required_settings()

    if missing_fields:
        console.print(Panel(
            f"[red]Missing required fields:[/red]\n" +
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


def _display_sync_results(results: List[UserSyncResult], compact: bool = False) -> None:
    """Display per-user sync results."""
    if compact:
        ok = sum(1 for r in results if r.status == UserSyncStatus.OK)
        console.print(f"✅ {ok}/{len(results)} users synced")
        for r in results:
            if r.status == UserSyncStatus.ERROR:
                console.print(f"   [red]{r.email}: {r.error}[/red]")
        return

    table = Table(title="Sync Results")
    table.add_column("User", style="cyan")
    table.add_column("Status")
    table.add_column("Mode")
    table.add_column("Created", justify="right")
    table.add_column("Updated", justify="right")
    table.add_column("Deleted", justify="right")
    table.add_column("Error", style="red")

    for r in results:
        report = r.report
        table.add_row(
            r.email,
            "[green]OK[/green]" if r.status == UserSyncStatus.OK else "[red]ERROR[/red]",
            report.mode.value if report and report.mode else "-",
            str(report.created) if report else "-",
            str(report.updated) if report else "-",
            str(report.deleted) if report else "-",
            r.error or "",
        )

    console.print(table)


def main():
    """Entry point for the CLI."""
    cli()


if __name__ == '__main__':
    main()
