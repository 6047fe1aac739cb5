"""notesync init: create the database and a project config.

Creates:
  .notesync.db     schema (migrations), FTS5 tables and the vec table for
                   the configured embedding model
  notesync.yaml    project config with the defaults (kept if present)
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer

from notesync.cli.common import DbOption, VerboseOption, console, load_cli_config
from notesync.config import write_project_config
from notesync.db.migrations import current_version
from notesync.engine import build_engine

_DEFAULT_PROJECT_DIR = Path(".")


def init_cmd(
    project_dir: Annotated[
        Path,
        typer.Argument(help="Directory to initialize. Defaults to current directory."),
    ] = _DEFAULT_PROJECT_DIR,
    db: DbOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Initialize a notesync database and project config."""
    cfg = load_cli_config(verbose)
    project_dir = project_dir.resolve()
    project_dir.mkdir(parents=True, exist_ok=True)

    db_path = db if db is not None else project_dir / cfg.database.path
    existed = db_path.exists()

    # The embedder is never called here, so no API key is needed.
    with build_engine(cfg, db_path=db_path, embedder=_NoEmbedder()) as engine:
        version = current_version(engine.conn)
        vec_table = engine.index.table

    verb = "Upgraded" if existed else "Created"
    console.print(f"  [green]✓[/] {verb} {db_path} (schema v{version})")
    console.print(f"  [green]✓[/] {vec_table} ({cfg.embedding.dimensions} dims)")

    cfg_path = write_project_config(project_dir, cfg)
    console.print(f"  [green]✓[/] {cfg_path}")

    console.print("\nNext steps:")
    console.print("  1. export OPENAI_API_KEY=sk-...        (or your provider's key)")
    console.print("  2. notesync embed-pending               (embed existing work notes)")
    console.print("  3. notesync search \"<query>\"            (hybrid search)")


class _NoEmbedder:
    def embed(self, text: str) -> list[float]:
        raise RuntimeError("notesync init does not embed")
