"""notesync embedding commands: embed, remove, reindex, embed-pending.

Usage:
  notesync embed WORK-42
  notesync remove WORK-42
  notesync reindex --batch-size 25
  notesync embed-pending
"""

from __future__ import annotations

from typing import Annotated, Optional

import typer
from rich.table import Table

from notesync.cli.common import DbOption, VerboseOption, console, load_cli_config, open_engine
from notesync.cli.errors import err_embed_failed, warn_skipped
from notesync.db.models import OperationType
from notesync.ingest.processor import EmbedResult, EmbedStatus, ReindexReport

BatchSizeOption = Annotated[
    Optional[int],
    typer.Option("--batch-size", "-b", min=1, help="Records per page (default: processor.batch_size)."),
]


def embed_cmd(
    work_id: Annotated[str, typer.Argument(help="Work note id to embed.")],
    db: DbOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Run one embedding pass for a work note. Exits 1 on a retryable failure."""
    cfg = load_cli_config(verbose)
    with open_engine(db, cfg, needs_embeddings=True) as engine:
        result = engine.processor.embed(work_id, OperationType.UPDATE)
    _report_single(result)


def remove_cmd(
    work_id: Annotated[str, typer.Argument(help="Work note id whose chunks to remove.")],
    db: DbOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Remove every indexed chunk of a work note from the vector index."""
    cfg = load_cli_config(verbose)
    with open_engine(db, cfg) as engine:
        result = engine.processor.remove_embedding(work_id)
    _report_single(result)


def reindex_cmd(
    batch_size: BatchSizeOption = None,
    db: DbOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Re-embed every work note, page by page."""
    cfg = load_cli_config(verbose)
    with open_engine(db, cfg, needs_embeddings=True) as engine:
        with console.status("[bold]Reindexing…[/]"):
            report = engine.processor.reindex_all(batch_size)
    _report_batch("Reindex", report)


def embed_pending_cmd(
    batch_size: BatchSizeOption = None,
    db: DbOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Embed work notes that have never been embedded or changed since."""
    cfg = load_cli_config(verbose)
    with open_engine(db, cfg, needs_embeddings=True) as engine:
        with console.status("[bold]Embedding pending work notes…[/]"):
            report = engine.processor.embed_pending(batch_size)
    _report_batch("Embed pending", report)


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------


def _report_single(result: EmbedResult) -> None:
    if result.status is EmbedStatus.EMBEDDED:
        console.print(f"[green]✓[/] Embedded '{result.work_id}' ({result.chunk_count} chunks)")
    elif result.status is EmbedStatus.STALE:
        console.print(
            f"[yellow]⚠[/] '{result.work_id}' changed while embedding; "
            "the newer version will be embedded by its own update."
        )
    elif result.status is EmbedStatus.REMOVED:
        console.print(f"[green]✓[/] Removed {result.chunk_count} chunks of '{result.work_id}'")
    elif result.status is EmbedStatus.SKIPPED:
        console.print(warn_skipped(result.work_id, result.error.message))
    else:
        console.print(
            err_embed_failed(
                result.work_id, result.error.reason.value, result.error.message, queued=True
            )
        )
        raise typer.Exit(1)


def _report_batch(label: str, report: ReindexReport) -> None:
    console.print(
        f"[bold]{label}:[/] processed [bold]{report.processed}[/] of {report.total}  |  "
        f"[green]succeeded {report.succeeded}[/]  |  "
        f"[red]failed {report.failed}[/]  |  "
        f"[yellow]skipped {report.skipped}[/]"
    )
    if report.errors:
        table = Table(title="Failures (queued for retry)", show_lines=False)
        table.add_column("Work id", style="bold")
        table.add_column("Error")
        for work_id, message in sorted(report.errors.items()):
            table.add_row(work_id, message)
        console.print(table)
