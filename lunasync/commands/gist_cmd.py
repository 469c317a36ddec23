"""
CLI commands for GitHub Gist synchronization.
"""

import time
from typing import NoReturn, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

from lunasync.config.sync_config import load_sync_config, save_sync_config
from lunasync.sync.exceptions import ConfigError, GistApiError, SyncError
from lunasync.sync.gist_client import GistClient
from lunasync.sync.local_store import SqliteStore
from lunasync.sync.models import Choice, Conflict, Resolution, SyncResult
from lunasync.sync.revisions import ADDED, REMOVED, RevisionInfo, group_for_display
from lunasync.sync.sync_manager import SyncManager
from lunasync.sync.token_manager import TokenManager


app = typer.Typer(help="GitHub Gist synchronization commands")
console = Console()


def _build_manager() -> SyncManager:
    config = load_sync_config()
    config.credentials.token = TokenManager().get_token() or ""
    return SyncManager(
        config,
        SqliteStore(),
        on_progress=lambda message: console.print(f"[dim]{message}[/dim]"),
    )


def _validate_token(token: str) -> str:
    """Return the GitHub login for a token, exiting on failure."""
    console.print("Validating token...", end="")
    try:
        user = GistClient(token).get_authenticated_user()
    except (ConfigError, GistApiError) as e:
        console.print(f" [red]✗ {e}[/red]")
        raise typer.Exit(1)
    console.print(" [green]✓ Valid[/green]")
    return user.get("login", "")


def _print_result(result: SyncResult) -> None:
    if not result.success:
        console.print(f"[red]✗ {result.error or result.message}[/red]")
        raise typer.Exit(1)

    console.print(f"[green]✓ {result.message}[/green]")
    if result.recreated:
        console.print("[yellow]⚠ The previous Gist was missing; a new Gist was created.[/yellow]")

    table = Table(show_header=False, box=None)
    table.add_row("Gist ID:", result.remote_id or "N/A")
    if result.remote_url:
        table.add_row("URL:", result.remote_url)
    table.add_row("Uploaded:", "Yes" if result.uploaded else "No changes")
    console.print(table)

    if result.failures:
        console.print("\n[yellow]Items that could not be read (kept locally):[/yellow]")
        for failure in result.failures:
            console.print(f"  • {failure.name}: [dim]{failure.reason}[/dim]")


def _fail(message: Optional[str]) -> NoReturn:
    console.print(f"[red]Error: {message}[/red]")
    raise typer.Exit(1)


def _require_gist() -> SyncManager:
    manager = _build_manager()
    if not manager.config.remote_id:
        _fail("No Gist configured. Run 'lunasync gist push' first.")
    return manager


def _match_revision(history: list[RevisionInfo], version: str) -> RevisionInfo:
    """Find a revision by SHA or unique SHA prefix, exiting when there is none."""
    matches = [revision for revision in history if revision.version.startswith(version)]
    if not matches:
        _fail(f"No revision matching '{version}'")
    if len(matches) > 1:
        _fail(f"Ambiguous revision '{version}'")
    return matches[0]


def _conflict_table(conflicts: list[Conflict]) -> Table:
    table = Table(title="Conflicts")
    table.add_column("#", justify="right")
    table.add_column("Type")
    table.add_column("Local")
    table.add_column("Local edited")
    table.add_column("Remote")
    table.add_column("Remote edited")

    for number, conflict in enumerate(conflicts, start=1):
        table.add_row(
            str(number),
            conflict.entity_type.value,
            conflict.local_name,
            f"{conflict.local_edited:%Y-%m-%d %H:%M}" if conflict.local_edited else "-",
            conflict.remote_name,
            f"{conflict.remote_edited:%Y-%m-%d %H:%M}" if conflict.remote_edited else "-",
        )
    return table


def _prompt_resolutions(conflicts: list[Conflict]) -> Optional[list[Resolution]]:
    console.print(_conflict_table(conflicts))
    answer = Prompt.ask(
        "Keep which version?",
        choices=["local", "remote", "each", "cancel"],
        default="each",
        console=console,
    )
    if answer == "cancel":
        return None
    if answer in ("local", "remote"):
        return [Resolution(c.entity_id, Choice(answer), c.entity_type) for c in conflicts]

    resolutions = []
    for number, conflict in enumerate(conflicts, start=1):
        choice = Prompt.ask(
            f"[{number}] {conflict.entity_type.value} '{conflict.local_name}'",
            choices=["local", "remote"],
            default="remote",
            console=console,
        )
        resolutions.append(Resolution(conflict.entity_id, Choice(choice), conflict.entity_type))
    return resolutions


@app.command(name="setup")
def setup_wizard(
    gist_id: Optional[str] = typer.Option(None, "--gist-id", help="Use an existing sync Gist"),
):
    """
    Interactive setup wizard for Gist synchronization.
    """
    console.print("\n[bold cyan]GitHub Gist Sync Setup[/bold cyan]\n")

    token_manager = TokenManager()
    if not TokenManager.is_keyring_available():
        console.print(
            "[yellow]⚠ No keyring backend available[/yellow]\n"
            "The token will be stored in a file (less secure).\n"
            "In Docker/CI, prefer the environment variable:\n"
            f"[cyan]export {TokenManager.ENV_VAR}=\"ghp_xxx\"[/cyan]\n"
        )

    console.print("[bold]Step 1: GitHub Personal Access Token[/bold]")
    console.print("Create a token at: https://github.com/settings/tokens")
    console.print("Required scope: [cyan]gist[/cyan]\n")

    token = typer.prompt("Enter your GitHub token", hide_input=True)
    username = _validate_token(token)

    token_manager.set_token(token)
    console.print(f"[green]✓[/green] Token saved: {token_manager.get_storage_location()}")

    config = load_sync_config()
    config.credentials.username = username
    config.enabled = True
    if gist_id:
        config.remote_id = gist_id
    save_sync_config(config)

    console.print("\n[bold]Step 2: First synchronization[/bold]")
    if typer.confirm("Sync now?", default=True):
        config.credentials.token = token
        manager = SyncManager(config, SqliteStore())
        _print_result(manager.sync(resolver=_prompt_resolutions))

    console.print("\n[green]✓ Setup complete![/green]")
    console.print("\nAvailable commands:")
    console.print("  [cyan]lunasync gist sync[/cyan]    - Two-way sync with conflict prompts")
    console.print("  [cyan]lunasync gist push[/cyan]    - Upload local library to Gist")
    console.print("  [cyan]lunasync gist pull[/cyan]    - Apply Gist data, remote wins conflicts")
    console.print("  [cyan]lunasync gist status[/cyan]  - Show sync status\n")


@app.command()
def set_token(token: str):
    """
    Set GitHub Personal Access Token.
    """
    username = _validate_token(token)

    token_manager = TokenManager()
    token_manager.set_token(token)

    config = load_sync_config()
    config.credentials.username = username
    save_sync_config(config)

    console.print(f"[green]✓[/green] Token saved: {token_manager.get_storage_location()}")


@app.command()
def push(
    force: bool = typer.Option(
        False, "--force", "-f",
        help="Overwrite the Gist with the local library, deleting anything missing locally",
    ),
):
    """
    Upload the local library to the Gist.

    Novels and models added on other devices since the last sync are kept
    in the Gist unless --force is given.
    """
    if force and not typer.confirm("Replace the Gist contents with the local library?"):
        raise typer.Exit()
    _print_result(_build_manager().upload(force=force))


@app.command()
def pull():
    """
    Download Gist data and apply it; the remote copy wins every conflict.
    """
    _print_result(_build_manager().pull())


@app.command()
def sync(
    prefer: Optional[Choice] = typer.Option(
        None, "--prefer", help="Resolve every conflict with this side instead of asking"
    ),
):
    """
    Two-way sync: download, resolve conflicts, apply and upload.
    """
    manager = _build_manager()

    if prefer is None:
        resolver = _prompt_resolutions
    else:
        def resolver(conflicts: list[Conflict]) -> list[Resolution]:
            return [Resolution(c.entity_id, prefer, c.entity_type) for c in conflicts]

    _print_result(manager.sync(resolver=resolver))


@app.command()
def watch(
    interval: Optional[int] = typer.Option(None, "--interval", "-i", help="Seconds between syncs"),
    prefer: Choice = typer.Option(Choice.REMOTE, "--prefer", help="Side that wins conflicts"),
):
    """
    Sync periodically until interrupted.
    """
    manager = _build_manager()
    seconds = interval or manager.config.sync_interval

    def resolver(conflicts: list[Conflict]) -> list[Resolution]:
        return [Resolution(c.entity_id, prefer, c.entity_type) for c in conflicts]

    console.print(f"Syncing every {seconds}s, press Ctrl+C to stop")
    try:
        while True:
            result = manager.sync(resolver=resolver)
            stamp = time.strftime("%H:%M:%S")
            if result.success:
                console.print(f"[dim]{stamp}[/dim] [green]✓[/green] {result.message}")
            else:
                console.print(f"[dim]{stamp}[/dim] [red]✗ {result.error or result.message}[/red]")
            time.sleep(seconds)
    except KeyboardInterrupt:
        console.print("\nStopped")


@app.command()
def status():
    """
    Show synchronization status.
    """
    token_manager = TokenManager()
    token_configured = token_manager.has_token()

    token_panel = Panel(
        f"[{'green' if token_configured else 'red'}]"
        f"{'✓ Configured' if token_configured else '✗ Not configured'}[/]\n"
        f"Location: {token_manager.get_storage_location()}",
        title="GitHub Token",
        border_style="green" if token_configured else "red",
    )
    console.print(token_panel)

    if not token_configured:
        console.print("\n[yellow]Run 'lunasync gist setup' to configure[/yellow]")
        return

    manager = _build_manager()
    status_data = manager.status()

    table = Table(title="Local Library", show_header=False, box=None)
    table.add_row("Account:", manager.config.credentials.username or "N/A")
    table.add_row("Novels:", str(status_data["local_novels"]))
    last_sync = status_data.get("last_sync_time")
    table.add_row("Last sync:", last_sync.strftime("%Y-%m-%d %H:%M:%S %Z") if last_sync else "Never")
    table.add_row("Auto sync:", "Enabled" if status_data["enabled"] else "Disabled")
    console.print("\n", table)

    if not status_data.get("remote_id"):
        console.print("\n[yellow]No Gist yet. Run 'lunasync gist push' to create one.[/yellow]")
        return

    if status_data.get("error"):
        console.print(f"\n[red]Error: {status_data['error']}[/red]")
        return

    gist_table = Table(title="GitHub Gist", show_header=False, box=None)
    gist_table.add_row("ID:", status_data["remote_id"])
    gist_table.add_row("URL:", status_data.get("remote_url") or "N/A")
    gist_table.add_row("Updated:", status_data.get("remote_updated_at") or "N/A")
    gist_table.add_row("Files:", str(status_data.get("remote_files", 0)))
    gist_table.add_row("Size:", f"{status_data.get('remote_size', 0):,} bytes")
    console.print("\n", gist_table)


@app.command()
def revisions(
    version: Optional[str] = typer.Argument(None, help="Show file changes of this revision"),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of revisions to list"),
):
    """
    List Gist revisions, or the file changes of one revision.
    """
    manager = _require_gist()
    listed = manager.list_revisions()
    if not listed.success:
        _fail(listed.error)
    history = listed.revisions

    if version is None:
        table = Table(title="Revisions")
        table.add_column("Version")
        table.add_column("Committed")
        table.add_column("Changes", justify="right")
        table.add_column("+", justify="right", style="green")
        table.add_column("-", justify="right", style="red")
        for revision in history[:limit]:
            table.add_row(
                revision.version[:7],
                f"{revision.committed_at:%Y-%m-%d %H:%M}",
                str(revision.total),
                str(revision.additions),
                str(revision.deletions),
            )
        console.print(table)
        return

    changes = manager.revision_changes(_match_revision(history, version).version)
    if not changes.success:
        _fail(changes.error)
    diff = changes.diff

    table = Table(title=f"Revision {diff.revision.version[:7]}")
    table.add_column("File")
    table.add_column("Status")
    table.add_column("Size", justify="right")
    table.add_column("Change", justify="right")
    colors = {ADDED: "green", REMOVED: "red"}
    for change in group_for_display(diff.files):
        color = colors.get(change.status, "yellow")
        table.add_row(
            change.filename,
            f"[{color}]{change.status}[/{color}]",
            f"{change.size:,}" if change.size is not None else "-",
            f"{change.size_diff:+,}" if change.size_diff else "",
        )
    console.print(table)


@app.command()
def restore(
    version: str = typer.Argument(..., help="Revision SHA (as listed by 'gist revisions')"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """
    Restore the library from an older Gist revision.
    """
    manager = _require_gist()
    listed = manager.list_revisions()
    if not listed.success:
        _fail(listed.error)
    revision = _match_revision(listed.revisions, version)

    if not yes and not typer.confirm(
        f"Replace local library with revision {revision.version[:7]} "
        f"({revision.committed_at:%Y-%m-%d %H:%M})?"
    ):
        raise typer.Exit()

    _print_result(manager.restore_revision(revision.version))


@app.command()
def info():
    """
    Show detailed Gist information.
    """
    manager = _build_manager()
    if not manager.config.remote_id:
        console.print("[yellow]No Gist configured[/yellow]")
        return

    try:
        gist = manager.client.get_gist(manager.config.remote_id)
        rate = manager.client.get_rate_limit().get("rate", {})
    except SyncError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    console.print(f"\n[bold cyan]{gist.get('description')}[/bold cyan]")
    console.print(f"URL: {gist.get('html_url')}")
    console.print(f"Created: {gist.get('created_at')}")
    console.print(f"Updated: {gist.get('updated_at')}")
    console.print(f"Public: {'Yes' if gist.get('public') else 'No'}")
    console.print(f"API rate limit: {rate.get('remaining', '?')}/{rate.get('limit', '?')}")

    console.print("\n[bold]Files:[/bold]")
    files_table = Table()
    files_table.add_column("Filename")
    files_table.add_column("Size", justify="right")
    files_table.add_column("Truncated")

    for filename, remote_file in sorted(manager.client.get_files(gist).items()):
        files_table.add_row(
            filename,
            f"{remote_file.size:,} bytes",
            "Yes" if remote_file.truncated else "",
        )

    console.print(files_table)


@app.command()
def delete(
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """
    Delete the sync Gist. The local library is not touched.
    """
    if not yes and not typer.confirm("Delete the sync Gist and all its revisions?"):
        raise typer.Exit()
    _print_result(_build_manager().delete_remote())


if __name__ == "__main__":
    app()
