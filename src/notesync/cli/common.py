"""Options and setup shared by the notesync commands."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console

from notesync.cli.errors import err_config, err_no_api_key, err_no_db
from notesync.config import ConfigError, NotesyncConfig, load_config
from notesync.engine import Engine, build_engine
from notesync.ingest.embedding_client import validate_api_key
from notesync.logging_config import configure_logging

console = Console()

DbOption = Annotated[
    Optional[Path],
    typer.Option("--db", help="Path to the notesync database (default: .notesync.db)."),
]
VerboseOption = Annotated[
    bool,
    typer.Option("--verbose", "-v", help="Log debug output to stderr."),
]


def load_cli_config(verbose: bool = False) -> NotesyncConfig:
    """Load config from the current directory and configure logging."""
    try:
        cfg = load_config()
    except ConfigError as exc:
        console.print(err_config(str(exc)))
        raise typer.Exit(1) from exc
    configure_logging("DEBUG" if verbose else cfg.logging.level, cfg.logging.file)
    return cfg


def resolve_db(db: Path | None, cfg: NotesyncConfig) -> Path:
    """CLI flag wins over config (which already includes NOTESYNC_DB)."""
    return db if db is not None else Path(cfg.database.path)


def open_engine(
    db: Path | None,
    cfg: NotesyncConfig,
    *,
    needs_embeddings: bool = False,
) -> Engine:
    """Open an existing database; exit with an actionable message on failure."""
    db_path = resolve_db(db, cfg)
    if not db_path.exists():
        console.print(err_no_db(str(db_path)))
        raise typer.Exit(1)
    if needs_embeddings:
        try:
            validate_api_key(cfg.embedding.model)
        except EnvironmentError as exc:
            model = cfg.embedding.model
            provider = model.split("/")[0] if "/" in model else "openai"
            console.print(err_no_api_key(provider))
            raise typer.Exit(1) from exc
    return build_engine(cfg, db_path=db_path)
