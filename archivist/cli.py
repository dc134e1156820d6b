"""
Command line interface.

    archivist backup [--archive NAME ...]   run all or selected archives
    archivist check                         load and validate the configuration
    archivist history                       show recent archive runs
    archivist encrypt-secret NAME           store a secret in the secrets file

Exit codes of `backup`: 0 when every archive succeeded, 1 when at least one
archive failed or was only partially delivered, 2 on configuration errors.
"""

import logging
import signal
from contextlib import contextmanager
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from archivist import __version__, configure_logging
from archivist.config import get_config
from archivist.history import HistoryStore
from archivist.loader import load_configuration
from archivist.models import ConfigurationError
from archivist.secrets import SecretStore, create_resolver
from archivist.backup.coordinator import RunCoordinator
from archivist.backup.report import STATUS_SUCCESS, STATUS_PARTIAL, STATUS_CANCELLED
from archivist.utils.formatting import format_duration, format_size


logger = logging.getLogger(__name__)

EXIT_CONFIGURATION_ERROR = 2

STATUS_STYLES = {
    STATUS_SUCCESS: 'green',
    STATUS_PARTIAL: 'yellow',
    STATUS_CANCELLED: 'magenta',
}

app = typer.Typer(
    help="archivist - scheduled database and directory archives",
    rich_markup_mode="rich",
    no_args_is_help=True
)

console = Console()


class State:
    settings = None


state = State()


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        console.print(f"archivist version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None, "--version", callback=version_callback, is_eager=True,
        help="Show version and exit"
    ),
    env: Optional[str] = typer.Option(
        None, "--env", envvar="ARCHIVIST_ENV",
        help="Settings profile: production, development or testing"
    ),
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging")
) -> None:
    """archivist - scheduled database and directory archives."""
    settings = get_config(env)
    if debug:
        settings = type('DebugConfig', (settings,), {'DEBUG': True})
    state.settings = settings
    configure_logging(settings)


def _load(settings_file: Optional[str]):
    settings = state.settings
    path = settings_file or settings.SETTINGS_FILE
    return load_configuration(path, resolve_secret=create_resolver(settings))


def _fail_configuration(error: Exception):
    console.print(f"[red]Configuration error:[/red] {error}")
    raise typer.Exit(EXIT_CONFIGURATION_ERROR)


@contextmanager
def _cancel_on_signals(coordinator: RunCoordinator):
    """Cancel the run on SIGINT/SIGTERM, restoring the previous handlers afterwards."""
    def handler(signum, frame):
        console.print(f"[yellow]Received signal {signum}, cancelling...[/yellow]")
        coordinator.cancel()

    previous = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            previous[signum] = signal.signal(signum, handler)
        except ValueError:
            # Not in the main thread
            pass
    try:
        yield
    finally:
        for signum, old_handler in previous.items():
            signal.signal(signum, old_handler)


def _outcome_table(report) -> Table:
    table = Table(title=f"Run {report.run_id}")
    table.add_column("Archive")
    table.add_column("Status")
    table.add_column("Size", justify="right")
    table.add_column("Duration", justify="right")
    table.add_column("Destinations")
    table.add_column("Error")

    for outcome in report.archives:
        style = STATUS_STYLES.get(outcome.status, 'red')
        size = format_size(outcome.file_size_bytes) if outcome.file_size_bytes is not None else '-'
        destinations = ', '.join(
            f"{d.destination_id}" if d.success else f"[red]{d.destination_id}[/red]"
            for d in outcome.destinations
        ) or '-'
        duration = '-'
        if outcome.started_at and outcome.completed_at:
            duration = format_duration((outcome.completed_at - outcome.started_at).total_seconds())
        error = outcome.error or ''
        if outcome.failed_stage and outcome.status != STATUS_PARTIAL:
            error = f"{outcome.failed_stage}: {error}"
        table.add_row(outcome.name or outcome.archive, f"[{style}]{outcome.status}[/{style}]", size, duration, destinations, error)

    return table


@app.command()
def backup(
    archive: Optional[List[str]] = typer.Option(
        None, "--archive", "-a", help="Archive name template to run (repeatable, default: all)"
    ),
    settings_file: Optional[str] = typer.Option(
        None, "--settings", "-s", help="Backup configuration document"
    ),
    working_directory: Optional[str] = typer.Option(
        None, "--working-directory", "-w", help="Root for temporary files"
    ),
    workers: Optional[int] = typer.Option(None, "--workers", help="Archives run concurrently"),
    history: bool = typer.Option(True, "--history/--no-history", help="Record the run in the history database")
):
    """Run all (or the selected) archives of the configuration."""
    settings = state.settings

    try:
        configuration = _load(settings_file)
    except ConfigurationError as e:
        _fail_configuration(e)

    history_store = None
    if history and settings.HISTORY_DATABASE_URL:
        try:
            history_store = HistoryStore(settings.HISTORY_DATABASE_URL)
        except Exception as e:
            logger.error(f"History database unavailable, continuing without it: {e}")

    coordinator = RunCoordinator(
        configuration,
        working_directory=working_directory or configuration.working_directory or settings.WORKING_DIRECTORY,
        max_workers=workers or settings.MAX_WORKERS,
        history=history_store,
        command_timeout=settings.COMMAND_TIMEOUT,
        delivery_retries=settings.DELIVERY_RETRIES,
        delivery_retry_delay=settings.DELIVERY_RETRY_DELAY,
        destination_options=settings.destination_options()
    )

    try:
        with _cancel_on_signals(coordinator):
            report = coordinator.run(archive)
    except ConfigurationError as e:
        _fail_configuration(e)
    finally:
        if history_store is not None:
            history_store.close()

    console.print(_outcome_table(report))
    raise typer.Exit(report.exit_code)


@app.command()
def check(
    settings_file: Optional[str] = typer.Option(
        None, "--settings", "-s", help="Backup configuration document"
    )
):
    """Load and validate the configuration without running anything."""
    try:
        configuration = _load(settings_file)
        configuration.validate()
    except ConfigurationError as e:
        _fail_configuration(e)

    table = Table(title="Archives")
    table.add_column("Name")
    table.add_column("Compression")
    table.add_column("Encryption")
    table.add_column("Destinations")
    table.add_column("Sources")

    for definition in configuration.archives:
        sources = [
            f"{selection.db_id}: {', '.join(s.name for s in selection.selectors)}"
            for selection in definition.databases
        ]
        sources += [directory.path for directory in definition.directories]
        table.add_row(
            definition.name,
            definition.compression,
            definition.encryption or '-',
            ', '.join(definition.destinations),
            '\n'.join(sources) or '-'
        )

    console.print(table)
    console.print(
        f"[green]Configuration OK[/green]: {len(configuration.archives)} archive(s), "
        f"{len(configuration.databases)} database(s), {len(configuration.destinations)} destination(s)"
    )


@app.command(name="history")
def history_command(
    limit: int = typer.Option(20, "--limit", "-n", help="Number of runs to show"),
    archive: Optional[str] = typer.Option(None, "--archive", "-a", help="Only this archive name template")
):
    """Show recent archive runs."""
    settings = state.settings
    if not settings.HISTORY_DATABASE_URL:
        console.print("[yellow]History is disabled (no HISTORY_DATABASE_URL)[/yellow]")
        raise typer.Exit(1)

    store = HistoryStore(settings.HISTORY_DATABASE_URL)
    try:
        runs = store.recent(limit=limit, archive=archive)
    finally:
        store.close()

    if not runs:
        console.print("No archive runs recorded")
        return

    table = Table(title="Archive history")
    table.add_column("Started")
    table.add_column("Run")
    table.add_column("Archive")
    table.add_column("Status")
    table.add_column("Size", justify="right")
    table.add_column("Delivered to")

    for run in runs:
        style = STATUS_STYLES.get(run.status, 'red')
        table.add_row(
            run.started_at.strftime('%Y-%m-%d %H:%M:%S') if run.started_at else '-',
            run.run_id,
            run.name or run.archive,
            f"[{style}]{run.status}[/{style}]",
            format_size(run.file_size_bytes) if run.file_size_bytes is not None else '-',
            ', '.join(d.destination_id for d in run.deliveries if d.success) or '-'
        )

    console.print(table)


@app.command(name="encrypt-secret")
def encrypt_secret(
    name: str = typer.Argument(..., help="Secret name, referenced as [name] in the configuration"),
    value: str = typer.Option(..., "--value", prompt=True, hide_input=True, help="Secret value"),
    passphrase: Optional[str] = typer.Option(
        None, "--passphrase", envvar="ARCHIVIST_SECRETS_PASSPHRASE", help="Secrets file passphrase"
    ),
    secrets_file: Optional[str] = typer.Option(None, "--secrets-file", help="Secrets file path")
):
    """Add or replace a secret in the encrypted secrets file."""
    settings = state.settings
    passphrase = passphrase or settings.SECRETS_PASSPHRASE
    if not passphrase:
        passphrase = typer.prompt("Passphrase", hide_input=True)

    store = SecretStore(secrets_file or settings.SECRETS_FILE, passphrase)
    try:
        store.set(name, value)
    except ConfigurationError as e:
        _fail_configuration(e)

    console.print(f"[green]Stored secret[/green] '{name}' in {store.path}")


if __name__ == "__main__":
    app()
