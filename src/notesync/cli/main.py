"""notesync CLI entry point."""

from __future__ import annotations

import importlib.metadata
from typing import Annotated

import typer

from notesync.cli.embed import embed_cmd, embed_pending_cmd, reindex_cmd, remove_cmd
from notesync.cli.init import init_cmd
from notesync.cli.queue import queue_app
from notesync.cli.search import search_cmd
from notesync.cli.status import status_cmd


def _installed_version() -> str:
    try:
        return importlib.metadata.version("notesync")
    except importlib.metadata.PackageNotFoundError:
        return "dev"


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"notesync {_installed_version()}")
        raise typer.Exit()


app = typer.Typer(
    name="notesync",
    help=(
        "notesync: keep work-note embeddings in sync and search them.\n\n"
        "  notesync embed-pending  Embed work notes that changed since their last embedding.\n"
        "  notesync search         Hybrid lexical + semantic search."
    ),
    add_completion=False,
)


@app.callback()
def main_callback(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
) -> None:
    """notesync: embedding synchronization for work notes."""


app.command("init")(init_cmd)
app.command("embed")(embed_cmd)
app.command("remove")(remove_cmd)
app.command("reindex")(reindex_cmd)
app.command("embed-pending")(embed_pending_cmd)
app.command("search")(search_cmd)
app.command("status")(status_cmd)
app.add_typer(queue_app, name="queue")


@app.command("version")
def version_cmd() -> None:
    """Show the installed notesync version."""
    typer.echo(f"notesync {_installed_version()}")


if __name__ == "__main__":
    app()
