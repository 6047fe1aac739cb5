"""Logging configuration for notesync.

Library modules log through ``logging.getLogger(__name__)`` and never install
handlers themselves; the CLI (or an embedding application) calls
configure_logging() once.
"""

from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

_LOGGER_NAME = "notesync"

# Third-party loggers that are noisy at INFO
_QUIET_LIBRARIES = ("LiteLLM", "LiteLLM Router", "LiteLLM Proxy", "httpx", "openai")


def configure_logging(level: str = "WARNING", log_file: str | Path | None = None) -> logging.Logger:
    """Configure the ``notesync`` logger.

    Installs one stderr handler at *level* and, when *log_file* is given, a
    rotating file handler (1MB max, 3 backups) that always records INFO and
    above. Calling it again replaces the handlers installed previously.

    Returns:
        The configured ``notesync`` logger.
    """
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        raise ValueError(f"Unknown log level: {level!r}")

    logger = logging.getLogger(_LOGGER_NAME)
    for handler in list(logger.handlers):
        if getattr(handler, "_notesync", False):
            logger.removeHandler(handler)
            handler.close()

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(numeric)
    stderr_handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    ))
    stderr_handler._notesync = True  # type: ignore[attr-defined]
    logger.addHandler(stderr_handler)
    effective = numeric

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(str(path), maxBytes=1_000_000, backupCount=3)
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))
        file_handler._notesync = True  # type: ignore[attr-defined]
        logger.addHandler(file_handler)
        effective = min(effective, logging.INFO)

    logger.setLevel(effective)

    library_level = logging.DEBUG if numeric <= logging.DEBUG else logging.WARNING
    for name in _QUIET_LIBRARIES:
        logging.getLogger(name).setLevel(library_level)

    return logger
