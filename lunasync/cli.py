"""
Command line entry point.
"""

import typer

from lunasync import __version__
from lunasync.commands import data_cmd, gist_cmd
from lunasync.logging_config import setup_logging


app = typer.Typer(help="Sync a Luna AI Translator library with a GitHub Gist", no_args_is_help=True)
app.add_typer(gist_cmd.app, name="gist")
app.add_typer(data_cmd.app, name="data")


def _version_callback(value: bool):
    if value:
        typer.echo(f"lunasync {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logs"),
    version: bool = typer.Option(
        False, "--version", callback=_version_callback, is_eager=True, help="Show version and exit"
    ),
):
    setup_logging(verbose)


if __name__ == "__main__":
    app()
