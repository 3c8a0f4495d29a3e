"""Operator CLI entry point for Content Pulse."""

import click

from contentpulse.cli.commands import links, metrics, sync, usage
from contentpulse.dependencies import get_settings
from contentpulse.logging_config import configure_cli_logging


@click.group()
@click.version_option(version="0.1.0")
def main():
    """Content Pulse - track engagement metrics for posted content."""
    configure_cli_logging(get_settings())


# Link commands
main.add_command(links.links)

# Sync commands
main.add_command(sync.sync)

# Metrics commands
main.add_command(metrics.show_metrics, name="metrics")

# Chat allowance commands
main.add_command(usage.chat_usage, name="chat-usage")


if __name__ == "__main__":
    main()
