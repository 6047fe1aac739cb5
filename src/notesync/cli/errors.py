"""notesync rich error messages: actionable feedback.

Every error shown to the user must contain:
  1. What went wrong (clear cause)
  2. The exact action the user should take to fix it

Usage:
    from notesync.cli.errors import err_no_db
    console.print(err_no_db(".notesync.db"))
    raise typer.Exit(1)
"""

from __future__ import annotations


def err_no_api_key(provider: str) -> str:
    """No API key for *provider*.

    Example:
        No API key for 'openai'. Set:  export OPENAI_API_KEY=sk-...
    """
    env_map = {
        "openai": "OPENAI_API_KEY",
        "cohere": "COHERE_API_KEY",
        "gemini": "GEMINI_API_KEY",
        "mistral": "MISTRAL_API_KEY",
        "azure": "AZURE_API_KEY",
        "voyage": "VOYAGE_API_KEY",
    }
    env_var = env_map.get(provider.lower(), f"{provider.upper()}_API_KEY")
    return (
        f"[red]Error:[/] No API key for '{provider}'.\n"
        f"  Set:  export {env_var}=sk-..."
    )


def err_no_db(db_path: str = ".notesync.db") -> str:
    """No database at *db_path*."""
    return (
        f"[red]Error:[/] No database found at '{db_path}'.\n"
        "  Run:  notesync init"
    )


def err_config(message: str) -> str:
    """Config file could not be loaded."""
    return (
        f"[red]Error:[/] Invalid configuration.\n"
        f"  {message}\n"
        "  Fix notesync.yaml (or ~/.notesync/config.yaml) and retry."
    )


def err_embed_failed(work_id: str, reason: str, message: str, queued: bool) -> str:
    """A retryable embedding failure for *work_id*."""
    follow_up = (
        "  A retry is queued. Run:  notesync queue sweep"
        if queued
        else "  Check the embedding provider and run the command again."
    )
    return (
        f"[red]Error:[/] Embedding '{work_id}' failed ({reason}).\n"
        f"  {message}\n"
        f"{follow_up}"
    )


def err_search_failed(message: str) -> str:
    """Every search source that ran failed."""
    return (
        f"[red]Error:[/] Search failed: {message}\n"
        "  Run:  notesync status  to check the index, and rerun with --verbose for details."
    )


def err_dead_letter_not_found(item_id: str) -> str:
    """Retry requested for an unknown or non-dead-lettered item."""
    return (
        f"[yellow]Not a dead letter:[/] '{item_id}' does not exist or is still active.\n"
        "  Run:  notesync queue dead-letters  to list retryable items."
    )


def warn_skipped(work_id: str, message: str) -> str:
    """Permanent (non-retryable) skip."""
    return (
        f"[yellow]Skipped:[/] '{work_id}': {message}\n"
        "  Nothing was queued; fix the record and save it again."
    )
