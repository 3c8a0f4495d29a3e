"""Sync commands for the Content Pulse CLI."""

import click
from rich.console import Console
from rich.progress import BarColumn, Progress, TaskProgressColumn, TextColumn

from contentpulse.dependencies import get_sync_service
from contentpulse.models.platforms import SUPPORTED_PLATFORMS
from contentpulse.services.sync_service import SyncRunError, SyncState

console = Console()


@click.command()
@click.argument("owner_id")
@click.argument("platform", type=click.Choice(SUPPORTED_PLATFORMS))
def sync(owner_id: str, platform: str):
    """Refresh metrics for every link an owner tracks on a platform."""
    service = get_sync_service()

    with Progress(
        TextColumn("[bold]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        TextColumn("{task.fields[detail]}"),
        console=console,
    ) as progress:
        task = progress.add_task(f"{owner_id}/{platform}", total=None, detail="")

        def _on_progress(snapshot):
            progress.update(
                task,
                total=snapshot.total or None,
                completed=snapshot.processed,
                detail=f"ok {snapshot.succeeded} / failed {snapshot.failed}",
            )

        try:
            summary = service.run(owner_id=owner_id, platform=platform, on_progress=_on_progress)
        except SyncRunError as exc:
            console.print(f"[red]Sync failed:[/red] {exc}")
            raise SystemExit(1) from exc
        finally:
            service.shutdown()

    colour = "green" if summary.state is SyncState.COMPLETED else "yellow"
    console.print(f"\n[bold {colour}]{summary.state.value.upper()}[/bold {colour}]")
    console.print(f"  Total: {summary.total}")
    console.print(f"  Succeeded: {summary.succeeded}")
    console.print(f"  Failed: {summary.failed}")
    console.print(f"  Unresolved links: {summary.unresolved}")
    console.print(f"  Stale records removed: {summary.orphans_deleted}")
    console.print()
