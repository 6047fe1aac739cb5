"""notesync queue commands: sweep the retry queue and manage dead letters.

Usage:
  notesync queue sweep --limit 20
  notesync queue dead-letters
  notesync queue retry RETRY-1f3c...
"""

from __future__ import annotations

from typing import Annotated, Optional

import typer
from rich.table import Table

from notesync.cli.common import DbOption, VerboseOption, console, load_cli_config, open_engine
from notesync.cli.errors import err_dead_letter_not_found

queue_app = typer.Typer(help="Inspect and process the embedding retry queue.")


@queue_app.command("sweep")
def sweep_cmd(
    limit: Annotated[
        Optional[int],
        typer.Option("--limit", "-n", min=1, help="Max items to claim (default: retry.sweep_limit)."),
    ] = None,
    db: DbOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Retry due items once: success deletes, failure reschedules or dead-letters."""
    cfg = load_cli_config(verbose)
    with open_engine(db, cfg, needs_embeddings=True) as engine:
        report = engine.processor.sweep(limit or cfg.retry.sweep_limit)
    if report.claimed == 0:
        console.print("[dim]No retry items due.[/]")
        return
    console.print(
        f"[bold]Sweep:[/] claimed {report.claimed}  |  "
        f"[green]succeeded {report.succeeded}[/]  |  "
        f"[yellow]rescheduled {report.rescheduled}[/]  |  "
        f"[red]dead-lettered {report.dead_lettered}[/]"
    )
    if report.lost:
        console.print(
            f"[yellow]⚠[/] {report.lost} claims were taken over by another sweep and left to it."
        )


@queue_app.command("dead-letters")
def dead_letters_cmd(
    limit: Annotated[int, typer.Option("--limit", "-n", min=1, help="Rows to show.")] = 50,
    offset: Annotated[int, typer.Option("--offset", min=0, help="Rows to skip.")] = 0,
    db: DbOption = None,
    verbose: VerboseOption = False,
) -> None:
    """List dead-lettered items, most recent first."""
    cfg = load_cli_config(verbose)
    with open_engine(db, cfg) as engine:
        items = engine.queue.list_dead_letters(limit=limit, offset=offset)
        total = engine.queue.count_dead_letters()

    if not items:
        console.print("[green]✓[/] No dead letters.")
        return

    table = Table(title=f"Dead letters ({len(items)} of {total})")
    table.add_column("Id", style="bold", no_wrap=True)
    table.add_column("Work note")
    table.add_column("Op")
    table.add_column("Attempts", justify="right")
    table.add_column("Dead since", style="dim")
    table.add_column("Error")
    for item in items:
        work = item.work_id if not item.work_title else f"{item.work_id} ({item.work_title})"
        table.add_row(
            item.id,
            work,
            item.operation_type.value,
            f"{item.attempt_count}/{item.max_attempts}",
            (item.dead_letter_at or "")[:19],
            item.error_message or "",
        )
    console.print(table)


@queue_app.command("retry")
def retry_cmd(
    item_id: Annotated[str, typer.Argument(help="Dead-letter item id (RETRY-…).")],
    db: DbOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Reset a dead-lettered item so the next sweep retries it."""
    cfg = load_cli_config(verbose)
    with open_engine(db, cfg) as engine:
        resurrected = engine.queue.retry_dead_letter(item_id)
    if not resurrected:
        console.print(err_dead_letter_not_found(item_id))
        raise typer.Exit(1)
    console.print(f"[green]✓[/] '{item_id}' is pending and due now.")
