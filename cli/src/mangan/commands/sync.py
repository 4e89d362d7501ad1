"""Sync commands for Mangan CLI."""

import click
from rich.console import Console
from rich.table import Table

from backend.app.dependencies import get_settings, get_sync_service, get_sync_status_reporter
from backend.app.repositories.sync_run_repository import SyncAlreadyRunningError
from backend.app.services.sync_service import SyncOptions

console = Console()


@click.group()
def sync():
    """Run and inspect restaurant syncs."""


@sync.command(name="run")
@click.option("--max-videos", type=int, default=None, help="Videos examined per channel")
@click.option(
    "--use-api",
    is_flag=True,
    help="Skip yt-dlp and read channels through the YouTube Data API",
)
def run_sync(max_videos: int | None, use_api: bool):
    """Run a full sync in the foreground."""
    settings = get_settings()
    options = SyncOptions(
        max_videos=max_videos if max_videos is not None else settings.sync_default_max_videos,
        force_api=use_api,
    )

    try:
        with console.status("[cyan]Syncing channels...[/cyan]"):
            outcome = get_sync_service().run(options)
    except SyncAlreadyRunningError as exc:
        console.print(f"[red]A sync is already running:[/red] {exc.run_id}")
        raise SystemExit(1) from exc

    if outcome.no_op:
        console.print(f"[yellow]{outcome.message}[/yellow]")
        return

    color = "green" if outcome.status == "completed" else "red"
    console.print(f"[{color}]{outcome.message}[/{color}] ({outcome.run_id})")
    console.print(f"  Videos processed: {outcome.videos_processed}")
    console.print(f"  Added: {outcome.added}")
    console.print(f"  Updated: {outcome.updated}")

    if outcome.errors:
        console.print("\n[bold yellow]Errors[/bold yellow]")
        for error in outcome.errors:
            console.print(f"  - {error}")

    if outcome.status != "completed":
        raise SystemExit(1)


@sync.command(name="status")
def sync_status():
    """Show the most recent sync run."""
    snapshot = get_sync_status_reporter().latest()
    if snapshot is None:
        console.print("[dim]idle[/dim] (no sync has run yet)")
        return

    table = Table(title=f"Sync {snapshot.run_id}", show_header=False)
    table.add_column("field", style="bold")
    table.add_column("value")
    table.add_row("Status", snapshot.status)
    table.add_row("Progress", f"{snapshot.progress}%")
    channel_label = f"{snapshot.current_channel}/{snapshot.total_channels}"
    if snapshot.channel_name:
        channel_label = f"{channel_label} {snapshot.channel_name}"
    table.add_row("Channel", channel_label)
    table.add_row("Videos", f"{snapshot.processed_videos}/{snapshot.total_videos}")
    table.add_row("Skipped", str(snapshot.skipped_videos))
    table.add_row("Added", str(snapshot.added))
    table.add_row("Updated", str(snapshot.updated))
    table.add_row("Started", snapshot.started_at.isoformat())
    table.add_row("Completed", snapshot.completed_at.isoformat() if snapshot.completed_at else "-")
    console.print(table)

    for error in snapshot.errors:
        console.print(f"[red]-[/red] {error}")
