"""Chat allowance commands for the Content Pulse CLI."""

import click
from rich.console import Console

from contentpulse.dependencies import get_chat_usage_service

console = Console()


@click.command()
@click.argument("owner_id")
def chat_usage(owner_id: str):
    """Show how much of the daily chat allowance an owner has left."""
    snapshot = get_chat_usage_service().status(owner_id=owner_id)

    console.print(f"\n[bold cyan]Chat allowance for {owner_id}[/bold cyan]\n")
    console.print(f"  Used: {snapshot.messages_used} / {snapshot.daily_limit}")
    console.print(f"  Remaining: {snapshot.remaining}")
    if snapshot.resets_at is not None:
        console.print(f"  Resets at: {snapshot.resets_at.isoformat()}")
    if snapshot.limit_reached:
        console.print("  [red]Limit reached[/red]")
    console.print()
