"""Channel management commands for Mangan CLI."""

import click
from rich.console import Console
from rich.table import Table

from backend.app.dependencies import get_channel_repository, get_youtube_api_client
from backend.app.repositories.channel_repository import ChannelAlreadyExistsError
from backend.app.services.video_sources import VideoSourceError

console = Console()


@click.group()
def channels():
    """Manage the channels that get synced."""


@channels.command(name="list")
def list_channels():
    """List configured channels."""
    configured = get_channel_repository().list_channels()
    if not configured:
        console.print("  (none)")
        return

    table = Table()
    table.add_column("ID", style="dim")
    table.add_column("YouTube ID", style="cyan")
    table.add_column("Name")
    table.add_column("Added")
    for channel in configured:
        table.add_row(channel.channel_id, channel.youtube_id, channel.name, channel.created_at)
    console.print(table)


@channels.command(name="add")
@click.argument("handle_or_id")
def add_channel(handle_or_id: str):
    """Add a channel by @handle or UC... id."""
    try:
        resolved = get_youtube_api_client().resolve_channel(handle_or_id)
    except VideoSourceError as exc:
        console.print(f"[red]Could not look up channel:[/red] {exc}")
        raise SystemExit(1) from exc

    if resolved is None:
        console.print(f"[yellow]Channel not found on YouTube:[/yellow] {handle_or_id}")
        raise SystemExit(1)

    try:
        channel = get_channel_repository().add_channel(
            youtube_id=resolved.channel_id,
            name=resolved.title,
        )
    except ChannelAlreadyExistsError as exc:
        console.print(f"[yellow]Channel already exists:[/yellow] {resolved.title}")
        raise SystemExit(1) from exc

    console.print(f"[green]Added channel:[/green] {channel.name} ({channel.youtube_id})")


@channels.command(name="remove")
@click.argument("channel_id")
def remove_channel(channel_id: str):
    """Remove a channel by its internal id."""
    if get_channel_repository().delete_channel(channel_id):
        console.print(f"[green]Removed channel:[/green] {channel_id}")
    else:
        console.print(f"[yellow]No channel with id:[/yellow] {channel_id}")
        raise SystemExit(1)
