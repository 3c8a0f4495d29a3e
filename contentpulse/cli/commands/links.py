"""Link registry commands for the Content Pulse CLI."""

from pathlib import Path

import click
import yaml
from rich.console import Console

from contentpulse.dependencies import get_link_tracking_service
from contentpulse.models.platforms import SUPPORTED_PLATFORMS

console = Console()
PLATFORM_CHOICE = click.Choice(SUPPORTED_PLATFORMS)


@click.group()
def links():
    """Manage the links an owner tracks."""
    pass


@links.command(name="add")
@click.argument("owner_id")
@click.argument("platform", type=PLATFORM_CHOICE)
@click.argument("urls", nargs=-1, required=True)
def add_links(owner_id: str, platform: str, urls: tuple[str, ...]):
    """Track one or more links for an owner."""
    service = get_link_tracking_service()
    result = service.assign_links(owner_id=owner_id, platform=platform, links=urls)

    if result.added_count:
        console.print(f"[green]Added {result.added_count} link(s)[/green] ({len(result.links)} tracked)")
    else:
        console.print(f"[yellow]Nothing new to add[/yellow] ({len(result.links)} tracked)")


@links.command(name="list")
@click.argument("owner_id")
@click.argument("platform", type=PLATFORM_CHOICE)
def list_links(owner_id: str, platform: str):
    """List the links an owner tracks on a platform."""
    assignment = get_link_tracking_service().list_links(owner_id=owner_id, platform=platform)

    refreshed = (
        assignment.last_refreshed_at.isoformat() if assignment.last_refreshed_at else "never"
    )
    console.print(f"\n[bold]{platform.upper()}[/bold] (last refreshed {refreshed})")
    if assignment.links:
        for link in assignment.links:
            console.print(f"  - {link}")
    else:
        console.print("  (none)")
    console.print()


@links.command(name="remove")
@click.argument("owner_id")
@click.argument("platform", type=PLATFORM_CHOICE)
@click.argument("url")
def remove_link(owner_id: str, platform: str, url: str):
    """Stop tracking a link and drop its cached metrics."""
    result = get_link_tracking_service().remove_link(owner_id=owner_id, platform=platform, link=url)

    if not result.removed:
        console.print("[yellow]Link was not tracked[/yellow]")
        return
    console.print(f"[green]Removed[/green] {url}")
    if result.deleted_canonical_id:
        console.print(f"  Cached metrics for {result.deleted_canonical_id} deleted")


@links.command(name="import")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def import_links(path: Path):
    """Bulk-assign links from a YAML file.

    Expected shape: ``{owner_id: {platform: [url, ...]}}``.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise click.BadParameter("top level must map owner ids to platforms", param_hint="PATH")

    service = get_link_tracking_service()
    total_added = 0
    for owner_id, platforms in data.items():
        if not isinstance(platforms, dict):
            raise click.BadParameter(f"owner {owner_id!r} must map platforms to link lists")
        for platform, urls in platforms.items():
            if platform not in SUPPORTED_PLATFORMS:
                raise click.BadParameter(f"unsupported platform {platform!r} for owner {owner_id!r}")
            if not isinstance(urls, list):
                raise click.BadParameter(f"links for {owner_id!r}/{platform} must be a list")
            result = service.assign_links(
                owner_id=str(owner_id),
                platform=platform,
                links=[str(url) for url in urls],
            )
            total_added += result.added_count
            console.print(f"  {owner_id}/{platform}: +{result.added_count} ({len(result.links)} tracked)")

    console.print(f"[green]Imported {total_added} new link(s)[/green]")
