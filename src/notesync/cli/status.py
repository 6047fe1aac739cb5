"""notesync status command.

Shows embedding coverage, the vector index and the retry-queue breakdown.
"""

from __future__ import annotations

from rich.panel import Panel
from rich.table import Table

from notesync.cli.common import (
    DbOption,
    VerboseOption,
    console,
    load_cli_config,
    open_engine,
    resolve_db,
)
from notesync.db.vectors import list_vec_tables
from notesync.engine import Engine


def status_cmd(
    db: DbOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Show embedding coverage and retry-queue health."""
    cfg = load_cli_config(verbose)
    db_path = resolve_db(db, cfg)
    with open_engine(db, cfg) as engine:
        size_mb = db_path.stat().st_size / (1024 * 1024)
        console.print(
            Panel(
                f"Database:  {db_path} ({size_mb:.1f} MB)\n"
                f"Model:     {cfg.embedding.model} ({cfg.embedding.dimensions} dims)",
                title="[bold]Project[/]",
                expand=False,
            )
        )
        _show_embedding_panel(engine)
        _show_queue_panel(engine)


def _show_embedding_panel(engine: Engine) -> None:
    stats = engine.repo.get_embedding_stats()
    lines = [
        f"Work notes: [bold]{stats['total']}[/]  |  "
        f"Embedded: [green]{stats['embedded']}[/]  |  "
        f"Pending: [yellow]{stats['pending']}[/]",
        f"Chunks indexed: [bold]{engine.index.count():,}[/]",
    ]
    for table in list_vec_tables(engine.conn):
        lines.append(f"  [dim]{table}[/]")
    if stats["pending"]:
        lines.append("  Run:  notesync embed-pending")
    console.print(Panel("\n".join(lines), title="[bold]Embeddings[/]", expand=False))


def _show_queue_panel(engine: Engine) -> None:
    stats = engine.queue.stats()
    table = Table(show_header=False, box=None, padding=(0, 1))
    table.add_column("Status", style="bold")
    table.add_column("Count", justify="right")
    table.add_row("pending", str(stats["pending"]))
    table.add_row("  due now", str(stats["due"]))
    table.add_row("retrying", str(stats["retrying"]))
    table.add_row("[red]dead_letter[/]", str(stats["dead_letter"]))
    console.print(
        Panel(table, title=f"[bold]Retry queue[/] [dim]({stats['total']} items)[/]", expand=False)
    )
