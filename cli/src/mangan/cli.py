"""Main CLI entry point for Mangan."""

import click

from backend.app.dependencies import get_settings
from backend.app.logging_config import configure_cli_logging

from .commands import channels, sync


@click.group()
@click.version_option(version="0.1.0")
@click.option("--log-level", default=None, help="Console log level (defaults to MANGAN_LOG_LEVEL)")
def main(log_level: str | None):
    """Mangan - restaurant discovery from food-review channels."""
    configure_cli_logging(log_level or get_settings().log_level)


# Sync commands
main.add_command(sync.sync)

# Channel commands
main.add_command(channels.channels)


if __name__ == "__main__":
    main()
