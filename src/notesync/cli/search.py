"""notesync search: hybrid lexical + semantic search across entity types.

Usage:
  notesync search "quarterly budget review" --dept Finance --limit 5
"""

from __future__ import annotations

from typing import Annotated, Optional

import typer
from rich.table import Table

from notesync.cli.common import DbOption, VerboseOption, console, load_cli_config, open_engine
from notesync.cli.errors import err_search_failed
from notesync.db.models import EntityType, SearchFilters
from notesync.search.hybrid import SearchError, SearchResult, Source

_SOURCE_STYLE = {
    Source.HYBRID: "[magenta]hybrid[/]",
    Source.LEXICAL: "[cyan]lexical[/]",
    Source.SEMANTIC: "[green]semantic[/]",
}

_GROUP_TITLES = {
    EntityType.WORK_NOTE: "Work notes",
    EntityType.PERSON: "Persons",
    EntityType.DEPARTMENT: "Departments",
}


def search_cmd(
    query: Annotated[str, typer.Argument(help="Free-text query.")],
    person: Annotated[
        Optional[str], typer.Option("--person", help="Only work notes linked to this person id.")
    ] = None,
    dept: Annotated[
        Optional[str], typer.Option("--dept", help="Only work notes of people in this department.")
    ] = None,
    category: Annotated[
        Optional[str], typer.Option("--category", help="Only work notes in this category.")
    ] = None,
    date_from: Annotated[
        Optional[str], typer.Option("--from", help="Created on or after (YYYY-MM-DD).")
    ] = None,
    date_to: Annotated[
        Optional[str], typer.Option("--to", help="Created on or before (YYYY-MM-DD).")
    ] = None,
    limit: Annotated[
        Optional[int], typer.Option("--limit", "-n", min=1, help="Results per group.")
    ] = None,
    db: DbOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Search work notes, persons and departments."""
    cfg = load_cli_config(verbose)
    filters = SearchFilters(
        person_id=person,
        dept_name=dept,
        category=category,
        date_from=date_from,
        date_to=date_to,
        limit=limit or cfg.search.limit,
    )
    with open_engine(db, cfg, needs_embeddings=True) as engine:
        try:
            result = engine.search.search(query, filters)
        except SearchError as exc:
            console.print(err_search_failed(str(exc)))
            raise typer.Exit(1) from exc

    if result.is_empty:
        console.print("[dim]No results.[/]")
        return

    for entity_type in EntityType:
        hits = result.group(entity_type)
        if hits:
            console.print(_results_table(_GROUP_TITLES[entity_type], hits))


def _results_table(title: str, hits: list[SearchResult]) -> Table:
    table = Table(title=f"{title} ({len(hits)})")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Id", style="bold", no_wrap=True)
    table.add_column("Title")
    table.add_column("Score", justify="right")
    table.add_column("Source")
    for i, hit in enumerate(hits, start=1):
        table.add_row(
            str(i),
            hit.entity_id,
            hit.title,
            f"{hit.score:.3f}",
            _SOURCE_STYLE[hit.source],
        )
    return table
