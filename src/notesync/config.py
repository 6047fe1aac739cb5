"""notesync configuration loader.

Priority (high → low):
  1. CLI flags           (handled at call site, not in this module)
  2. Environment variables  (NOTESYNC_EMBEDDING_MODEL, NOTESYNC_LOG_LEVEL, NOTESYNC_DB)
  3. Per-project notesync.yaml
  4. Global ~/.notesync/config.yaml  (model defaults only, no API keys)
  5. Hardcoded defaults

Global config must never contain API keys; use environment variables instead.
All YAML reads use yaml.safe_load(), never yaml.load().
"""

from __future__ import annotations

import os
import re
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_GLOBAL_CONFIG_DIR: Path = Path.home() / ".notesync"
_GLOBAL_CONFIG_PATH: Path = _GLOBAL_CONFIG_DIR / "config.yaml"
_PROJECT_CONFIG_NAME: str = "notesync.yaml"

# Matches: api_key, apikey, api-key, api_secret, _token (suffix), standalone token,
# standalone secret, _secret (suffix), password, passwd, credential(s).
# Does NOT match legitimate config keys like max_tokens or num_retries.
_API_KEY_RE: re.Pattern[str] = re.compile(
    r"api[_\-]?(?:key|secret)"
    r"|_token$"
    r"|^token$"
    r"|_secret$"
    r"|^secret$"
    r"|passw(?:ord|d)"
    r"|credential",
    re.IGNORECASE,
)

_KNOWN_SECTIONS: frozenset[str] = frozenset(
    ["database", "embedding", "chunking", "processor", "retry", "search", "logging"]
)

_LOG_LEVELS: frozenset[str] = frozenset(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ConfigError(ValueError):
    """Raised when a config file contains an invalid or forbidden value."""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass
class DatabaseCfg:
    """SQLite database location (notesync.yaml: database:)."""

    path: str = ".notesync.db"
    busy_timeout: float = 5.0


@dataclass
class EmbeddingCfg:
    """Embedding provider configuration (notesync.yaml: embedding:)."""

    model: str = "openai/text-embedding-3-small"
    dimensions: int = 1536
    timeout: float = 30.0
    num_retries: int = 2


@dataclass
class ChunkingCfg:
    """Sliding-window chunker (notesync.yaml: chunking:).

    ``chunk_size`` is in approximate tokens (4 characters ≈ 1 token).
    """

    chunk_size: int = 512
    overlap: float = 0.20
    min_chunk_ratio: float = 0.10


@dataclass
class ProcessorCfg:
    """Embedding processor concurrency (notesync.yaml: processor:)."""

    chunk_workers: int = 4
    record_workers: int = 4
    call_timeout: float = 60.0
    batch_size: int = 10


@dataclass
class RetryCfg:
    """Retry queue backoff and dead-lettering (notesync.yaml: retry:).

    Delay before attempt n is ``min(backoff_base * 2**n, backoff_max)`` seconds.
    """

    max_attempts: int = 3
    backoff_base: float = 30.0
    backoff_max: float = 3_600.0
    sweep_limit: int = 10
    stale_claim_seconds: float = 600.0


@dataclass
class SearchCfg:
    """Hybrid search fusion (notesync.yaml: search:)."""

    limit: int = 10
    lexical_weight: float = 0.5
    semantic_weight: float = 0.5
    candidate_multiplier: int = 2
    max_workers: int = 4
    timeout: float = 30.0


@dataclass
class LoggingCfg:
    """Log level and optional rotating log file (notesync.yaml: logging:)."""

    level: str = "WARNING"
    file: str | None = None


@dataclass
class NotesyncConfig:
    """Root configuration object, built by load_config() from merged YAML layers."""

    database: DatabaseCfg = field(default_factory=DatabaseCfg)
    embedding: EmbeddingCfg = field(default_factory=EmbeddingCfg)
    chunking: ChunkingCfg = field(default_factory=ChunkingCfg)
    processor: ProcessorCfg = field(default_factory=ProcessorCfg)
    retry: RetryCfg = field(default_factory=RetryCfg)
    search: SearchCfg = field(default_factory=SearchCfg)
    logging: LoggingCfg = field(default_factory=LoggingCfg)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _check_no_api_keys(data: dict[str, Any], source: Path) -> None:
    """Raise ConfigError if *data* contains any API-key-like key names."""

    def _scan(obj: Any, path: str) -> None:
        if isinstance(obj, dict):
            for k, v in obj.items():
                full = f"{path}.{k}" if path else k
                if _API_KEY_RE.search(str(k)):
                    raise ConfigError(
                        f"Global config '{source}' contains a forbidden key '{full}'.\n"
                        f"  API keys must be set via environment variables, not config files.\n"
                        f"  Remove '{full}' from {source.name} and use:\n"
                        f"    export {str(k).upper().replace('-', '_')}=<value>"
                    )
                _scan(v, full)

    _scan(data, "")


def _warn_unknown_keys(data: dict[str, Any], source: Path) -> None:
    """Emit a UserWarning for unrecognised top-level keys."""
    for key in data:
        if key not in _KNOWN_SECTIONS:
            warnings.warn(
                f"Unknown config key '{key}' in '{source}', ignored.",
                UserWarning,
                stacklevel=4,
            )


def validate_config(cfg: NotesyncConfig) -> None:
    """Raise ConfigError if any value is out of range."""
    positive_ints = {
        "embedding.dimensions": cfg.embedding.dimensions,
        "chunking.chunk_size": cfg.chunking.chunk_size,
        "processor.chunk_workers": cfg.processor.chunk_workers,
        "processor.record_workers": cfg.processor.record_workers,
        "processor.batch_size": cfg.processor.batch_size,
        "retry.max_attempts": cfg.retry.max_attempts,
        "retry.sweep_limit": cfg.retry.sweep_limit,
        "search.limit": cfg.search.limit,
        "search.candidate_multiplier": cfg.search.candidate_multiplier,
        "search.max_workers": cfg.search.max_workers,
    }
    for name, value in positive_ints.items():
        if value < 1:
            raise ConfigError(f"{name} must be >= 1, got {value}")

    positive_floats = {
        "embedding.timeout": cfg.embedding.timeout,
        "processor.call_timeout": cfg.processor.call_timeout,
        "search.timeout": cfg.search.timeout,
        "retry.backoff_base": cfg.retry.backoff_base,
        "retry.backoff_max": cfg.retry.backoff_max,
    }
    for name, value in positive_floats.items():
        if value <= 0:
            raise ConfigError(f"{name} must be > 0, got {value}")

    if cfg.retry.backoff_max < cfg.retry.backoff_base:
        raise ConfigError("retry.backoff_max must be >= retry.backoff_base")
    if not 0.0 <= cfg.chunking.overlap < 1.0:
        raise ConfigError(f"chunking.overlap must be in [0.0, 1.0), got {cfg.chunking.overlap}")
    if not 0.0 <= cfg.chunking.min_chunk_ratio < 1.0:
        raise ConfigError(
            f"chunking.min_chunk_ratio must be in [0.0, 1.0), got {cfg.chunking.min_chunk_ratio}"
        )
    if cfg.search.lexical_weight < 0 or cfg.search.semantic_weight < 0:
        raise ConfigError("search weights must be >= 0")
    if cfg.search.lexical_weight + cfg.search.semantic_weight == 0:
        raise ConfigError("search.lexical_weight and search.semantic_weight cannot both be 0")
    if cfg.logging.level.upper() not in _LOG_LEVELS:
        raise ConfigError(
            f"logging.level must be one of {', '.join(sorted(_LOG_LEVELS))}, "
            f"got '{cfg.logging.level}'"
        )


# ---------------------------------------------------------------------------
# Merge + build
# ---------------------------------------------------------------------------


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return a new dict that is *base* deep-merged with *override*."""
    result = dict(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


def _cfg_from_dict(data: dict[str, Any]) -> NotesyncConfig:
    """Build a *NotesyncConfig* from a merged raw YAML dict."""
    cfg = NotesyncConfig()

    if "database" in data:
        d = data["database"] or {}
        cfg.database = DatabaseCfg(
            path=str(d.get("path", cfg.database.path)),
            busy_timeout=float(d.get("busy_timeout", cfg.database.busy_timeout)),
        )

    if "embedding" in data:
        e = data["embedding"] or {}
        cfg.embedding = EmbeddingCfg(
            model=str(e.get("model", cfg.embedding.model)),
            dimensions=int(e.get("dimensions", cfg.embedding.dimensions)),
            timeout=float(e.get("timeout", cfg.embedding.timeout)),
            num_retries=int(e.get("num_retries", cfg.embedding.num_retries)),
        )

    if "chunking" in data:
        c = data["chunking"] or {}
        cfg.chunking = ChunkingCfg(
            chunk_size=int(c.get("chunk_size", cfg.chunking.chunk_size)),
            overlap=float(c.get("overlap", cfg.chunking.overlap)),
            min_chunk_ratio=float(c.get("min_chunk_ratio", cfg.chunking.min_chunk_ratio)),
        )

    if "processor" in data:
        p = data["processor"] or {}
        cfg.processor = ProcessorCfg(
            chunk_workers=int(p.get("chunk_workers", cfg.processor.chunk_workers)),
            record_workers=int(p.get("record_workers", cfg.processor.record_workers)),
            call_timeout=float(p.get("call_timeout", cfg.processor.call_timeout)),
            batch_size=int(p.get("batch_size", cfg.processor.batch_size)),
        )

    if "retry" in data:
        r = data["retry"] or {}
        cfg.retry = RetryCfg(
            max_attempts=int(r.get("max_attempts", cfg.retry.max_attempts)),
            backoff_base=float(r.get("backoff_base", cfg.retry.backoff_base)),
            backoff_max=float(r.get("backoff_max", cfg.retry.backoff_max)),
            sweep_limit=int(r.get("sweep_limit", cfg.retry.sweep_limit)),
            stale_claim_seconds=float(
                r.get("stale_claim_seconds", cfg.retry.stale_claim_seconds)
            ),
        )

    if "search" in data:
        s = data["search"] or {}
        cfg.search = SearchCfg(
            limit=int(s.get("limit", cfg.search.limit)),
            lexical_weight=float(s.get("lexical_weight", cfg.search.lexical_weight)),
            semantic_weight=float(s.get("semantic_weight", cfg.search.semantic_weight)),
            candidate_multiplier=int(
                s.get("candidate_multiplier", cfg.search.candidate_multiplier)
            ),
            max_workers=int(s.get("max_workers", cfg.search.max_workers)),
            timeout=float(s.get("timeout", cfg.search.timeout)),
        )

    if "logging" in data:
        lg = data["logging"] or {}
        cfg.logging = LoggingCfg(
            level=str(lg.get("level", cfg.logging.level)).upper(),
            file=lg.get("file") or cfg.logging.file,
        )

    return cfg


def _apply_env_overrides(cfg: NotesyncConfig) -> NotesyncConfig:
    """Apply NOTESYNC_* environment variable overrides."""
    if model := os.environ.get("NOTESYNC_EMBEDDING_MODEL"):
        cfg.embedding.model = model
    if level := os.environ.get("NOTESYNC_LOG_LEVEL"):
        cfg.logging.level = level.upper()
    if db_path := os.environ.get("NOTESYNC_DB"):
        cfg.database.path = db_path
    return cfg


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(
    project_dir: Path | None = None,
    *,
    global_config_path: Path | None = None,
) -> NotesyncConfig:
    """Load and return a merged *NotesyncConfig*.

    Applies layers in order: global → per-project → env vars.
    CLI flag overrides must be applied by the caller after this function.

    Args:
        project_dir: Directory to search for *notesync.yaml*. Defaults to CWD.
        global_config_path: Override the global config path (for testing).

    Returns:
        Fully merged and validated *NotesyncConfig*.

    Raises:
        ConfigError: If global config contains API-key-like fields or a value
            is out of range.
    """
    global_path = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    search_dir = project_dir if project_dir is not None else Path.cwd()

    merged: dict[str, Any] = {}

    if global_path.exists():
        raw_global = yaml.safe_load(global_path.read_text(encoding="utf-8")) or {}
        _check_no_api_keys(raw_global, global_path)
        _warn_unknown_keys(raw_global, global_path)
        merged = _deep_merge(merged, raw_global)

    project_cfg_path = search_dir / _PROJECT_CONFIG_NAME
    if project_cfg_path.exists():
        raw_project = yaml.safe_load(project_cfg_path.read_text(encoding="utf-8")) or {}
        _warn_unknown_keys(raw_project, project_cfg_path)
        merged = _deep_merge(merged, raw_project)

    try:
        cfg = _cfg_from_dict(merged)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid config value: {exc}") from exc

    cfg = _apply_env_overrides(cfg)
    validate_config(cfg)
    return cfg


def write_project_config(project_dir: Path, cfg: NotesyncConfig | None = None) -> Path:
    """Write a default ``notesync.yaml`` into *project_dir* unless one exists.

    Returns:
        Path to the project config file.
    """
    cfg = cfg or NotesyncConfig()
    target = project_dir / _PROJECT_CONFIG_NAME
    if target.exists():
        return target

    data = {
        "embedding": {
            "model": cfg.embedding.model,
            "dimensions": cfg.embedding.dimensions,
        },
        "chunking": {
            "chunk_size": cfg.chunking.chunk_size,
            "overlap": cfg.chunking.overlap,
        },
        "retry": {
            "max_attempts": cfg.retry.max_attempts,
            "backoff_base": cfg.retry.backoff_base,
            "backoff_max": cfg.retry.backoff_max,
        },
        "search": {
            "lexical_weight": cfg.search.lexical_weight,
            "semantic_weight": cfg.search.semantic_weight,
        },
    }
    header = (
        "# notesync project configuration.\n"
        "# NEVER store API keys here, use environment variables:\n"
        "#   export OPENAI_API_KEY=sk-...\n\n"
    )
    target.write_text(header + yaml.safe_dump(data, sort_keys=False), encoding="utf-8")
    return target
