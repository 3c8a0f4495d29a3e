"""Cached metrics commands for the Content Pulse CLI."""

import click
from rich.console import Console
from rich.table import Table

from contentpulse.dependencies import get_metrics_repository
from contentpulse.models.platforms import SUPPORTED_PLATFORMS

console = Console()


@click.command()
@click.argument("owner_id")
@click.option("--platform", "-p", type=click.Choice(SUPPORTED_PLATFORMS), default=None)
def show_metrics(owner_id: str, platform: str | None):
    """Show cached metrics for an owner, most recently fetched first."""
    records = get_metrics_repository().list_all(owner_id=owner_id, platform=platform)

    if not records:
        console.print("[yellow]No cached metrics[/yellow]")
        return

    table = Table(title=f"Metrics for {owner_id}")
    table.add_column("Platform")
    table.add_column("ID", style="cyan")
    table.add_column("Likes", justify="right")
    table.add_column("Comments", justify="right")
    table.add_column("Plays/Views", justify="right")
    table.add_column("Reshares", justify="right")
    table.add_column("Fetched")
    table.add_column("Error", style="red")

    for record in records:
        table.add_row(
            record.platform,
            record.canonical_id,
            str(record.counts.likes),
            str(record.counts.comments),
            str(record.counts.plays_or_views),
            str(record.counts.reshares),
            record.last_fetched.strftime("%Y-%m-%d %H:%M"),
            record.error_message or "",
        )

    console.print(table)
