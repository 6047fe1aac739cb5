"""Lexical search adapter over the SQLite FTS5 tables.

The FTS5 tables use the trigram tokenizer, so substring matches work for
languages without whitespace word boundaries. Query text must pass through
sanitize_fts_query() first: FTS5 treats punctuation, quotes and the bare words
AND/OR/NOT/NEAR as query syntax and raises on malformed expressions.
"""

from __future__ import annotations

import logging
import re
import sqlite3
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from notesync.db.connection import connection_lock
from notesync.db.models import EntityType, SearchFilters
from notesync.db.repository import work_note_filter_sql

logger = logging.getLogger(__name__)

# The trigram tokenizer never matches terms shorter than three characters;
# in an implicit-AND query such a term would empty the whole result set.
_MIN_TERM_CHARS = 3

_TERM_RE = re.compile(r"\w+", re.UNICODE)


class LexicalSearchError(RuntimeError):
    """The full-text engine failed to answer a query."""


@dataclass
class LexicalHit:
    """A ranked full-text hit. ``score`` is ``-bm25()`` (higher is better)."""

    entity_id: str
    score: float
    title: str = ""
    updated_at: str | None = None


@runtime_checkable
class LexicalSearch(Protocol):
    """Capability interface consumed by the hybrid search service."""

    def query(
        self,
        entity_type: EntityType,
        text: str,
        filters: SearchFilters | None = None,
        limit: int = 10,
    ) -> list[LexicalHit]:
        ...


def sanitize_fts_query(text: str) -> str:
    """Turn free text into a safe FTS5 expression.

    Every word is double-quoted (so operator words lose their meaning) and
    the words are joined with implicit AND. Punctuation is dropped. Returns
    an empty string when nothing searchable remains, e.g. for ``"!!! ((( )))"``.
    """
    terms = [t for t in _TERM_RE.findall(text or "") if len(t) >= _MIN_TERM_CHARS]
    return " ".join(f'"{term}"' for term in terms)


class Fts5LexicalSearch:
    """LexicalSearch over ``notes_fts``, ``persons_fts`` and ``departments_fts``.

    Work-note queries honour every SearchFilters field; person and department
    queries ignore filters other than ``limit``.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def query(
        self,
        entity_type: EntityType,
        text: str,
        filters: SearchFilters | None = None,
        limit: int = 10,
    ) -> list[LexicalHit]:
        """Return up to *limit* hits best-first.

        *text* is sanitized again here, so callers may pass raw input.

        Raises:
            LexicalSearchError: On SQLite failure.
        """
        fts_query = sanitize_fts_query(text)
        if not fts_query or limit < 1:
            return []

        entity_type = EntityType(entity_type)
        if entity_type is EntityType.WORK_NOTE:
            sql, params = self._work_note_sql(fts_query, filters or SearchFilters(), limit)
        elif entity_type is EntityType.PERSON:
            sql, params = self._person_sql(fts_query, limit)
        else:
            sql, params = self._department_sql(fts_query, limit)

        with connection_lock(self._conn):
            try:
                rows = self._conn.execute(sql, params).fetchall()
            except sqlite3.Error as exc:
                raise LexicalSearchError(
                    f"Full-text query on {entity_type.value} failed: {exc}"
                ) from exc

        return [
            LexicalHit(
                entity_id=row["entity_id"],
                score=-row["bm25_score"],
                title=row["title"] or "",
                updated_at=row["updated_at"],
            )
            for row in rows
        ]

    @staticmethod
    def _work_note_sql(fts_query: str, filters: SearchFilters, limit: int) -> tuple[str, list]:
        conditions = ["notes_fts MATCH ?"]
        params: list = [fts_query]
        filter_conditions, filter_params = work_note_filter_sql(filters)
        conditions.extend(filter_conditions)
        params.extend(filter_params)
        params.append(limit)
        sql = f"""
            SELECT wn.work_id AS entity_id, wn.title AS title, wn.updated_at AS updated_at,
                   bm25(notes_fts) AS bm25_score
            FROM notes_fts
            JOIN work_notes wn ON wn.work_id = notes_fts.work_id
            WHERE {' AND '.join(conditions)}
            ORDER BY bm25_score, wn.work_id
            LIMIT ?
        """  # noqa: S608
        return sql, params

    @staticmethod
    def _person_sql(fts_query: str, limit: int) -> tuple[str, list]:
        sql = """
            SELECT p.person_id AS entity_id, p.name AS title, p.updated_at AS updated_at,
                   bm25(persons_fts) AS bm25_score
            FROM persons_fts
            JOIN persons p ON p.person_id = persons_fts.person_id
            WHERE persons_fts MATCH ?
            ORDER BY bm25_score, p.person_id
            LIMIT ?
        """
        return sql, [fts_query, limit]

    @staticmethod
    def _department_sql(fts_query: str, limit: int) -> tuple[str, list]:
        sql = """
            SELECT d.dept_name AS entity_id, d.dept_name AS title, d.updated_at AS updated_at,
                   bm25(departments_fts) AS bm25_score
            FROM departments_fts
            JOIN departments d ON d.dept_name = departments_fts.dept_key
            WHERE departments_fts MATCH ?
            ORDER BY bm25_score, d.dept_name
            LIMIT ?
        """
        return sql, [fts_query, limit]
