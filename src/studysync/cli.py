"""Command-line interface for studysync."""

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, Optional, TypeVar

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from .cloud import CloudStorageError
from .codec import SnapshotError
from .config import ConfigError, ConfigModel, load_config
from .domain import SyncStatus
from .events import LOCAL_ORIGIN
from .orchestrator import BackupResult
from .resolver import ResolutionChoice
from .service import SyncService
from .storage import StoreError
from .utils.datetime import format_timestamp

console = Console()

T = TypeVar("T")

STATUS_STYLES = {
    SyncStatus.IDLE: "dim",
    SyncStatus.CHECKING: "yellow",
    SyncStatus.SYNCING_UP: "yellow",
    SyncStatus.SYNCING_DOWN: "yellow",
    SyncStatus.UP_TO_DATE: "green",
    SyncStatus.CONFLICT: "magenta",
    SyncStatus.ERROR: "red",
}

HANDLED_ERRORS = (CloudStorageError, SnapshotError, StoreError, ConfigError, OSError)


def setup_logging(verbose: bool):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=verbose)],
        force=True,
    )


def format_status(status: SyncStatus) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status.value.replace('_', ' ')}[/{style}]"


def run_with_service(ctx: click.Context, action: Callable[[SyncService], Awaitable[T]]) -> T:
    """Build a SyncService, run one async action against it and tear it down."""
    config: ConfigModel = ctx.obj["config"]

    async def runner():
        service = SyncService(config)
        try:
            return await action(service)
        finally:
            await service.close()

    try:
        return asyncio.run(runner())
    except HANDLED_ERRORS as e:
        console.print(f"[red]Error: {e}[/red]")
        ctx.exit(1)


def print_conflict(service: SyncService):
    conflict = service.resolver.conflict
    if conflict is None:
        return
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Replica", style="cyan")
    table.add_column("Modified")
    table.add_column("Size", justify="right")
    table.add_row("Remote", format_timestamp(conflict.cloud.modified_time),
                  str(conflict.cloud.size) if conflict.cloud.size is not None else "-")
    table.add_row("Local", format_timestamp(conflict.local.modified_time),
                  str(conflict.local.size) if conflict.local.size is not None else "-")
    console.print(Panel(table, title="[bold magenta]Conflict[/bold magenta]", subtitle=conflict.describe()))
    console.print("Run [bold]studysync resolve local[/bold] or [bold]studysync resolve remote[/bold]")


def print_outcome(service: SyncService):
    orchestrator = service.orchestrator
    console.print(f"Status: {format_status(orchestrator.status)}")
    if orchestrator.last_error:
        style = "red" if orchestrator.status is SyncStatus.ERROR else "yellow"
        console.print(f"[{style}]{orchestrator.last_error}[/{style}]")
    print_conflict(service)


@click.group()
@click.option("--config", "config_path", type=click.Path(dir_okay=False, path_type=Path),
              help="Path to config file")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.pass_context
def main(ctx, config_path: Optional[Path], verbose: bool):
    """studysync - back up and restore your study data."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    setup_logging(verbose)

    try:
        ctx.obj["config"] = load_config(config_path)
    except ConfigError as e:
        console.print(f"[red]{e}[/red]")
        ctx.exit(1)


@main.command()
@click.pass_context
def status(ctx):
    """Show sync status without contacting the remote."""

    async def action(service: SyncService):
        await service.start(run_check=False)
        return service

    service = run_with_service(ctx, action)
    orchestrator = service.orchestrator

    table = Table(show_header=False, box=None)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Provider", service.adapter.provider_name)
    table.add_row("Signed in", "[green]yes[/green]" if service.adapter.is_authenticated else "[red]no[/red]")
    table.add_row("Status", format_status(orchestrator.status))
    table.add_row("Last sync", format_timestamp(orchestrator.last_sync_time))
    table.add_row("Database", str(service.database_path))
    table.add_row("Device", service.state_store.device_id)
    console.print(table)

    if service.adapter.auth_state.error:
        console.print(f"[yellow]{service.adapter.auth_state.error}[/yellow]")


@main.command()
@click.pass_context
def check(ctx):
    """Compare local data with the remote backup and sync if safe."""

    async def action(service: SyncService):
        await service.start(run_check=True)
        if not service.adapter.is_authenticated:
            console.print(f"[red]Not signed in to {service.adapter.provider_name}[/red]")
            if service.adapter.auth_state.error:
                console.print(f"[yellow]{service.adapter.auth_state.error}[/yellow]")
            return False
        print_outcome(service)
        return service.orchestrator.status is not SyncStatus.ERROR

    if not run_with_service(ctx, action):
        ctx.exit(1)


@main.command()
@click.pass_context
def backup(ctx):
    """Upload pending materials and the full backup now."""

    async def action(service: SyncService) -> BackupResult:
        await service.start(run_check=False)
        with console.status("Backing up..."):
            return await service.orchestrator.backup()

    result = run_with_service(ctx, action)

    if result.ok:
        console.print(f"[green]Backup complete[/green] at {format_timestamp(result.synced_at)}")
    else:
        console.print(f"[red]{result.error}[/red]")
    if result.uploaded or result.skipped:
        console.print(f"Materials uploaded: {result.uploaded}, skipped: {result.skipped}")
    if result.error_count:
        console.print(f"[red]Materials failed: {result.error_count}[/red] ({', '.join(result.failed_ids)})")
    if not result.ok:
        ctx.exit(1)


@main.command()
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def restore(ctx, yes: bool):
    """Replace local data with the remote backup."""
    if not yes and not click.confirm("This will overwrite all local data. Continue?"):
        console.print("[yellow]Restore cancelled[/yellow]")
        return

    async def action(service: SyncService):
        await service.start(run_check=False)
        with console.status("Restoring..."):
            restored = await service.orchestrator.restore()
        print_outcome(service)
        return restored

    if not run_with_service(ctx, action):
        ctx.exit(1)


@main.command()
@click.argument("choice", type=click.Choice([c.value for c in ResolutionChoice]))
@click.pass_context
def resolve(ctx, choice: str):
    """Resolve a pending conflict by keeping LOCAL or REMOTE data."""

    async def action(service: SyncService):
        await service.start(run_check=True)
        if service.resolver.conflict is None:
            console.print("[yellow]No conflict pending[/yellow]")
            print_outcome(service)
            return True
        await service.resolver.resolve(choice)
        print_outcome(service)
        return service.orchestrator.status is SyncStatus.UP_TO_DATE

    if not run_with_service(ctx, action):
        ctx.exit(1)


@main.command("export")
@click.argument("file", type=click.Path(dir_okay=False, path_type=Path))
@click.option("--full", is_flag=True, help="Embed material payloads as base64")
@click.pass_context
def export_snapshot(ctx, file: Path, full: bool):
    """Write a snapshot of all local data to FILE."""

    async def action(service: SyncService) -> bytes:
        snapshot = await service.codec.export(strip_binary_content=not full)
        return service.codec.dumps(snapshot)

    data = run_with_service(ctx, action)
    file.write_bytes(data)
    console.print(f"[green]Exported {len(data)} bytes to {file}[/green]")


@main.command("import")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def import_snapshot(ctx, file: Path):
    """Replace local data with the snapshot in FILE."""

    async def action(service: SyncService):
        snapshot = service.codec.loads(file.read_bytes())
        await service.start(connect=False)
        await service.codec.import_snapshot(snapshot, origin=LOCAL_ORIGIN)
        return {name: len(items) for name, items in snapshot.items() if isinstance(items, list)}

    counts = run_with_service(ctx, action)
    summary = ", ".join(f"{name}: {count}" for name, count in counts.items())
    console.print(f"[green]Imported {file}[/green]")
    console.print(summary)


if __name__ == "__main__":
    main()
