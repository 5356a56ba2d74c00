"""CLI interface for Notesync."""

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

import typer
from rich.console import Console
from rich.table import Table
from rich.tree import Tree

from notesync import __version__
from notesync.config import Settings, get_settings
from notesync.errors import NoteSyncError
from notesync.logging_config import configure_logging
from notesync.models.note import NoteSyncStatus
from notesync.models.sync import SyncStatus
from notesync.models.tree import NoteTreeNode
from notesync.services.tree import build_tree
from notesync.store import NotesStore

app = typer.Typer(
    name="notesync",
    help="Offline-first hierarchical notes with background sync.",
    no_args_is_help=True,
)
console = Console()

T = TypeVar("T")

STATUS_STYLES = {
    NoteSyncStatus.SYNCED: "[green]✓[/green]",
    NoteSyncStatus.PENDING: "[yellow]●[/yellow]",
    NoteSyncStatus.SYNCING: "[blue]↻[/blue]",
    NoteSyncStatus.ERROR: "[red]✗[/red]",
    NoteSyncStatus.OFFLINE: "[dim]○[/dim]",
}


def build_store(settings: Settings) -> NotesStore:
    """Get a store wired from settings."""
    return NotesStore.from_settings(settings)


def run_with_store(action: Callable[[NotesStore], Awaitable[T]]) -> T:
    """Start a store, run one action against it and close it."""
    try:
        settings = get_settings()
    except Exception as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        raise typer.Exit(1)

    store = build_store(settings)

    async def session() -> T:
        await store.start()
        try:
            return await action(store)
        finally:
            await store.close()

    try:
        return asyncio.run(session())
    except NoteSyncError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)


def _add_branch(parent: Tree, node: NoteTreeNode, statuses: dict[str, NoteSyncStatus]) -> None:
    marker = STATUS_STYLES.get(statuses.get(node.id, NoteSyncStatus.SYNCED), "")
    label = f"{marker} {node.title} [dim]{node.id}[/dim]"
    if node.is_archived:
        label += " [dim](archived)[/dim]"
    branch = parent.add(label)
    for child in node.children:
        _add_branch(branch, child, statuses)


@app.command("list")
def list_notes(
    archived: bool = typer.Option(False, "--archived", "-a", help="Include archived notes"),
):
    """Show the note hierarchy."""

    async def action(store: NotesStore):
        return store.snapshot()

    snapshot = run_with_store(action)
    if not snapshot.notes:
        console.print("[yellow]No notes yet. Add one with 'notesync add'.[/yellow]")
        raise typer.Exit(0)

    nodes = build_tree(snapshot.notes, include_archived=True) if archived else snapshot.tree
    statuses = {note.id: note.sync_status for note in snapshot.notes}
    root = Tree(f"[bold]Notes[/bold] ({len(snapshot.notes)})")
    for node in nodes:
        _add_branch(root, node, statuses)
    console.print(root)
    if snapshot.queue_length:
        console.print(f"[yellow]{snapshot.queue_length} change(s) waiting to sync[/yellow]")


@app.command()
def add(
    title: str = typer.Argument(..., help="Note title"),
    content: str = typer.Option("", "--content", "-c", help="Note content"),
    parent: Optional[str] = typer.Option(None, "--parent", "-p", help="Parent note id"),
    tags: Optional[list[str]] = typer.Option(None, "--tag", "-t", help="Tag (repeatable)"),
):
    """Create a note."""

    async def action(store: NotesStore):
        return await store.create_note(
            {"title": title, "content": content, "parent_id": parent, "tags": tags or []}
        )

    note = run_with_store(action)
    console.print(f"[green]✓[/green] Created [bold]{note.title}[/bold] ({note.id})")
    if note.sync_status != NoteSyncStatus.SYNCED:
        console.print(f"  [yellow]Sync status: {note.sync_status.value}[/yellow]")


@app.command()
def edit(
    note_id: str = typer.Argument(..., help="Note id"),
    title: Optional[str] = typer.Option(None, "--title", help="New title"),
    content: Optional[str] = typer.Option(None, "--content", "-c", help="New content"),
    favorite: Optional[bool] = typer.Option(
        None, "--favorite/--no-favorite", help="Mark or unmark as favorite"
    ),
    archived: Optional[bool] = typer.Option(
        None, "--archive/--unarchive", help="Archive or restore the note"
    ),
):
    """Update a note."""
    changes: dict = {"id": note_id}
    if title is not None:
        changes["title"] = title
    if content is not None:
        changes["content"] = content
    if favorite is not None:
        changes["is_favorite"] = favorite
    if archived is not None:
        changes["is_archived"] = archived
    if len(changes) == 1:
        console.print("[yellow]Nothing to change.[/yellow]")
        raise typer.Exit(0)

    async def action(store: NotesStore):
        return await store.update_note(changes)

    note = run_with_store(action)
    console.print(f"[green]✓[/green] Updated [bold]{note.title}[/bold] (v{note.version})")


@app.command()
def mv(
    note_id: str = typer.Argument(..., help="Note to move"),
    parent: Optional[str] = typer.Argument(None, help="New parent id (omit for root)"),
    position: Optional[int] = typer.Option(None, "--position", help="Position among siblings"),
):
    """Move a note under another note, or to the root."""

    async def action(store: NotesStore):
        return await store.move_note(note_id, parent, position)

    note = run_with_store(action)
    where = f"under {parent}" if parent else "to the root"
    console.print(f"[green]✓[/green] Moved [bold]{note.title}[/bold] {where}")


@app.command()
def rm(note_id: str = typer.Argument(..., help="Note id")):
    """Delete a note. Its children move up to the root."""

    async def action(store: NotesStore):
        return await store.delete_note(note_id)

    run_with_store(action)
    console.print(f"[green]✓[/green] Deleted {note_id}")


@app.command()
def search(query: str = typer.Argument(..., help="Search text")):
    """Search notes by title, content and tags."""

    async def action(store: NotesStore):
        return await store.search(query)

    results = run_with_store(action)
    if not results:
        console.print("[yellow]No matching notes.[/yellow]")
        raise typer.Exit(0)

    table = Table(title=f"Results for '{query}'")
    table.add_column("ID", style="dim")
    table.add_column("Title", style="cyan")
    table.add_column("Tags", style="green")
    for note in results:
        table.add_row(note.id, note.title, ", ".join(note.tags))
    console.print(table)


@app.command()
def sync(
    retry: bool = typer.Option(
        False, "--retry", "-r", help="Reset the retry counter before syncing"
    ),
):
    """Replay queued changes and refresh notes from the server."""

    async def action(store: NotesStore):
        ok = await (store.retry_failed_sync() if retry else store.sync())
        return ok, store.snapshot().sync

    with console.status("[yellow]Syncing...[/yellow]"):
        ok, state = run_with_store(action)

    if ok:
        console.print(
            f"[green]✓[/green] Synced at {state.last_sync_at:%Y-%m-%d %H:%M:%S} "
            f"in {state.stats.last_sync_duration:.2f}s"
        )
        return
    if not state.is_online:
        console.print("[yellow]Offline. Changes stay queued until the server is reachable.[/yellow]")
    else:
        console.print(f"[red]Sync failed: {state.last_error}[/red]")
    console.print(f"  Queued changes: {state.queue_length}")
    raise typer.Exit(1)


@app.command()
def status():
    """Show connectivity and sync status."""

    async def action(store: NotesStore):
        return store.snapshot(), store.monitor.quality

    snapshot, quality = run_with_store(action)
    state = snapshot.sync
    status_style = "red" if state.status == SyncStatus.ERROR else "green"

    table = Table(title="Notesync Status")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right", style="green")

    table.add_row("Connection", "online" if state.is_online else "[yellow]offline[/yellow]")
    table.add_row("Quality", quality.value)
    table.add_row("Sync status", f"[{status_style}]{state.status.value}[/{status_style}]")
    last_sync = f"{state.last_sync_at:%Y-%m-%d %H:%M:%S}" if state.last_sync_at else "never"
    table.add_row("Last sync", last_sync)
    table.add_row("Queued changes", str(state.queue_length))
    table.add_row("Notes", str(len(snapshot.notes)))
    pending = sum(1 for note in snapshot.notes if note.sync_status != NoteSyncStatus.SYNCED)
    table.add_row("  Not synced", str(pending))
    if state.last_error:
        table.add_row("Last error", f"[red]{state.last_error}[/red]")
    stats = state.stats
    table.add_row("Sync cycles", str(stats.total_syncs))
    if stats.total_syncs:
        table.add_row("  Succeeded", str(stats.successful_syncs))
        table.add_row("  Failed", str(stats.failed_syncs))
        table.add_row("  Success rate", f"{stats.success_rate:.0f}%")
        table.add_row("  Last duration", f"{stats.last_sync_duration:.2f}s")
        table.add_row("  Average duration", f"{stats.average_sync_time:.2f}s")

    console.print(table)


@app.command()
def queue():
    """List changes waiting to be synced."""

    async def action(store: NotesStore):
        return store.queue.operations

    operations = run_with_store(action)
    if not operations:
        console.print("[green]Nothing queued.[/green]")
        raise typer.Exit(0)

    table = Table(title="Offline Queue")
    table.add_column("#", justify="right")
    table.add_column("Operation ID", style="dim")
    table.add_column("Kind", style="cyan")
    table.add_column("Note", style="green")
    table.add_column("Queued at")
    for index, operation in enumerate(operations, 1):
        table.add_row(
            str(index),
            operation.id,
            operation.kind.value,
            operation.note_id,
            f"{operation.timestamp:%Y-%m-%d %H:%M:%S}",
        )
    console.print(table)


@app.command()
def discard(
    operation_id: Optional[str] = typer.Argument(None, help="Queued operation id"),
    all_: bool = typer.Option(False, "--all", help="Discard every queued change"),
):
    """Abandon queued changes without sending them."""
    if not operation_id and not all_:
        console.print("[red]Give an operation id or --all.[/red]")
        raise typer.Exit(1)

    async def action(store: NotesStore):
        if all_:
            return store.clear_offline_queue()
        return 1 if store.discard_operation(operation_id) else 0

    count = run_with_store(action)
    if count == 0:
        console.print(f"[yellow]No queued operation {operation_id}.[/yellow]")
        raise typer.Exit(1)
    console.print(f"[green]✓[/green] Discarded {count} queued change(s)")


@app.command()
def config():
    """Show current configuration."""
    try:
        settings = get_settings()
    except Exception as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        console.print("\nMake sure you have a valid .env file.")
        raise typer.Exit(1)

    table = Table(title="Notesync Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    token_masked = (
        settings.api_token[:6] + "..." if len(settings.api_token) > 6 else "***"
    ) if settings.api_token else "(not set)"

    table.add_row("API URL", settings.api_url)
    table.add_row("API Token", token_masked)
    table.add_row("API Timeout", f"{settings.api_timeout:g}s")
    table.add_row("Probe URL", settings.probe_url)
    table.add_row("Connectivity Check Interval", f"{settings.connectivity_check_interval:g}s")
    table.add_row("Sync Interval", f"{settings.sync_interval:g}s")
    table.add_row(
        "Retry Backoff",
        f"{settings.retry_base_delay:g}s x 2^n, {settings.retry_max_attempts} attempts",
    )
    table.add_row("Max Hierarchy Depth", str(settings.max_hierarchy_depth))
    table.add_row("Database Path", str(settings.database_path))

    console.print(table)


@app.command()
def version():
    """Show version information."""
    console.print(f"Notesync v{__version__}")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """
    Notesync - offline-first hierarchical notes.

    Edits always succeed locally; queued changes are replayed
    against the server once it is reachable.
    """
    configure_logging(verbose=verbose)


if __name__ == "__main__":
    app()
