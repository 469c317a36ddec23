"""
CLI commands for offline JSON backups of the local library.
"""

from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from lunasync.sync.json_export import export_to_file
from lunasync.sync.json_import import import_from_file
from lunasync.sync.local_store import SqliteStore


app = typer.Typer(help="Export and import the local library as JSON")
console = Console()


@app.command(name="export")
def export_data(
    path: Path = typer.Argument(..., help="Output file"),
    no_content: bool = typer.Option(False, "--no-content", help="Leave chapter text out"),
):
    """
    Export the local library to a JSON file.
    """
    stats = export_to_file(SqliteStore(), path, include_content=not no_content)

    console.print(f"[green]✓[/green] Exported to {path}")
    table = Table(show_header=False, box=None)
    table.add_row("Novels:", str(stats["novels"]))
    table.add_row("Chapters:", str(stats["chapters"]))
    table.add_row("AI models:", str(stats["ai_models"]))
    table.add_row("Covers:", str(stats["covers"]))
    console.print(table)


@app.command(name="import")
def import_data(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Export file to import"),
    replace: bool = typer.Option(False, "--replace", help="Replace the library instead of merging"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Only report what would change"),
):
    """
    Import a JSON export into the local library.
    """
    if replace and not dry_run and not typer.confirm("Replace the whole local library?"):
        raise typer.Exit()

    try:
        stats = import_from_file(path, SqliteStore(), replace=replace, dry_run=dry_run)
    except ValueError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(1)

    console.print(f"[green]✓[/green] {'Checked' if dry_run else 'Imported'} {path}")
    table = Table(show_header=False, box=None)
    table.add_row("New:", str(stats["new_records"]))
    table.add_row("Updated:", str(stats["updated_records"]))
    table.add_row("Skipped:", str(stats["skipped_records"]))
    if stats["errors"]:
        table.add_row("[red]Errors:[/red]", str(stats["errors"]))
    console.print(table)
