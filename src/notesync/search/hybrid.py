"""Hybrid search: lexical (FTS5) + semantic (sqlite-vec) fused per entity type.

Each source's scores are min-max normalized within its own result set and
fused with a fixed weighted mean over the sources that answered:

  score(id) = Σ w_s · norm_s(id) / Σ w_s      (s over successful sources)

An id missing from a source contributes 0 for that source. Results are
ordered by score desc, then ``updated_at`` desc, then entity id asc, a total
order that keeps repeated queries (and pagination) stable.

Work notes use both sources; persons and departments are lexical only. A
failing source degrades its entity type to the remaining source, or to an
empty group when none is left. SearchError is raised only when every source
that ran failed.
"""

from __future__ import annotations

import logging
import re
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum

from notesync.db.models import EntityType, SearchFilters
from notesync.db.repository import WorkNoteRepository
from notesync.index.lexical import LexicalSearch, sanitize_fts_query
from notesync.index.vector_index import VectorIndex
from notesync.ingest.chunker import parse_chunk_id
from notesync.ingest.embedding_client import EmbeddingClient

logger = logging.getLogger(__name__)

# Vector hits are chunks; fetch several per requested note so collapsing to
# the best chunk per note still fills the candidate list.
_CHUNKS_PER_NOTE = 3

_WORD_RE = re.compile(r"\w")


class SearchError(RuntimeError):
    """Every search source that ran failed."""


class Source(str, Enum):
    LEXICAL = "lexical"
    SEMANTIC = "semantic"
    HYBRID = "hybrid"


@dataclass
class Candidate:
    """One source's scored hit before fusion."""

    entity_id: str
    score: float
    title: str = ""
    updated_at: str | None = None


@dataclass
class SearchResult:
    entity_id: str
    entity_type: EntityType
    score: float
    source: Source
    updated_at: str | None = None
    title: str = ""


@dataclass
class UnifiedResult:
    """Search results grouped by entity type, each group ranked independently."""

    work_notes: list[SearchResult] = field(default_factory=list)
    persons: list[SearchResult] = field(default_factory=list)
    departments: list[SearchResult] = field(default_factory=list)

    def group(self, entity_type: EntityType) -> list[SearchResult]:
        return {
            EntityType.WORK_NOTE: self.work_notes,
            EntityType.PERSON: self.persons,
            EntityType.DEPARTMENT: self.departments,
        }[EntityType(entity_type)]

    @property
    def is_empty(self) -> bool:
        return not (self.work_notes or self.persons or self.departments)


def min_max_normalize(scores: dict[str, float]) -> dict[str, float]:
    """Scale *scores* to [0, 1]; every score maps to 1.0 when all are equal."""
    if not scores:
        return {}
    low, high = min(scores.values()), max(scores.values())
    if high == low:
        return {key: 1.0 for key in scores}
    span = high - low
    return {key: (value - low) / span for key, value in scores.items()}


def rank_results(results: list[SearchResult]) -> list[SearchResult]:
    """Order by score desc, ``updated_at`` desc, entity id asc."""
    ordered = sorted(results, key=lambda r: r.entity_id)
    ordered.sort(key=lambda r: r.updated_at or "", reverse=True)
    ordered.sort(key=lambda r: r.score, reverse=True)
    return ordered


def fuse(
    entity_type: EntityType,
    channels: dict[Source, list[Candidate]],
    weights: dict[Source, float],
) -> list[SearchResult]:
    """Fuse per-source candidates with the weighted mean of normalized scores.

    Args:
        entity_type: Type recorded on every result.
        channels: Candidates of each source that ran successfully.
        weights: Weight per source; when the successful sources all weigh
            zero they are weighted equally instead.
    """
    if not channels:
        return []
    active_weights = {s: weights.get(s, 0.0) for s in channels}
    if sum(active_weights.values()) == 0:
        active_weights = {s: 1.0 for s in channels}
    total_weight = sum(active_weights.values())

    normalized: dict[Source, dict[str, float]] = {}
    details: dict[str, Candidate] = {}
    found_in: dict[str, list[Source]] = {}
    for source, candidates in channels.items():
        best: dict[str, float] = {}
        for cand in candidates:
            if cand.entity_id not in best or cand.score > best[cand.entity_id]:
                best[cand.entity_id] = cand.score
            details.setdefault(cand.entity_id, cand)
            if source not in found_in.setdefault(cand.entity_id, []):
                found_in[cand.entity_id].append(source)
        normalized[source] = min_max_normalize(best)

    results: list[SearchResult] = []
    for entity_id, sources in found_in.items():
        score = sum(
            active_weights[s] * normalized[s].get(entity_id, 0.0) for s in channels
        ) / total_weight
        tag = Source.HYBRID if len(sources) > 1 else sources[0]
        info = details[entity_id]
        results.append(
            SearchResult(
                entity_id=entity_id,
                entity_type=entity_type,
                score=score,
                source=tag,
                updated_at=info.updated_at,
                title=info.title,
            )
        )
    return rank_results(results)


class HybridSearchService:
    """Fan a query out to the lexical and semantic adapters and fuse the answers.

    Args:
        lexical: Full-text adapter.
        embedder: Embeds the raw query for the semantic path.
        index: Vector index holding work-note chunks.
        repo: Applies person / department / date filters to semantic hits
            and supplies their titles and ``updated_at``.
        lexical_weight: Fusion weight of the lexical source.
        semantic_weight: Fusion weight of the semantic source.
        candidate_multiplier: Candidates fetched per source per requested result.
        max_workers: Size of the fan-out thread pool.
        timeout: Seconds to wait for each source.
    """

    def __init__(
        self,
        lexical: LexicalSearch,
        embedder: EmbeddingClient,
        index: VectorIndex,
        repo: WorkNoteRepository,
        *,
        lexical_weight: float = 0.5,
        semantic_weight: float = 0.5,
        candidate_multiplier: int = 2,
        max_workers: int = 4,
        timeout: float | None = 30.0,
    ) -> None:
        self._lexical = lexical
        self._embedder = embedder
        self._index = index
        self._repo = repo
        self.weights = {Source.LEXICAL: lexical_weight, Source.SEMANTIC: semantic_weight}
        self.candidate_multiplier = candidate_multiplier
        self.timeout = timeout
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="notesync-search"
        )

    def close(self) -> None:
        self._executor.shutdown(wait=True, cancel_futures=True)

    def __enter__(self) -> HybridSearchService:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def search(self, query: str, filters: SearchFilters | None = None) -> UnifiedResult:
        """Run *query* against every entity type.

        The lexical path receives the sanitized query, the semantic path the
        raw text. Input without a single word character returns an empty
        UnifiedResult without touching any adapter. Input whose words are all
        too short for the lexical index (``"AI"``) is searched semantically
        only, so persons and departments come back empty.

        A failing source degrades its entity type to the remaining source; an
        entity type left without any source returns an empty group.

        Raises:
            SearchError: If every source that ran failed.
        """
        filters = filters or SearchFilters()
        if not query or not _WORD_RE.search(query):
            return UnifiedResult()
        fts_query = sanitize_fts_query(query)
        if not fts_query:
            logger.debug("Query %r has no lexical terms, searching semantically only", query)

        candidates = max(1, filters.limit * self.candidate_multiplier)
        lexical_futures: dict[EntityType, Future[list[Candidate]]] = {}
        if fts_query:
            lexical_futures = {
                entity_type: self._executor.submit(
                    self._run_lexical, entity_type, fts_query, filters, candidates
                )
                for entity_type in EntityType
            }
        semantic_future = self._executor.submit(
            self._run_semantic, query.strip(), filters, candidates
        )

        result = UnifiedResult()
        failed: list[str] = []
        answered = 0
        for entity_type in EntityType:
            channels: dict[Source, list[Candidate]] = {}
            if entity_type in lexical_futures:
                lexical_hits = self._collect(
                    lexical_futures[entity_type], entity_type, Source.LEXICAL
                )
                if lexical_hits is None:
                    failed.append(f"{Source.LEXICAL.value}/{entity_type.value}")
                else:
                    channels[Source.LEXICAL] = lexical_hits
            if entity_type is EntityType.WORK_NOTE:
                semantic_hits = self._collect(semantic_future, entity_type, Source.SEMANTIC)
                if semantic_hits is None:
                    failed.append(f"{Source.SEMANTIC.value}/{entity_type.value}")
                else:
                    channels[Source.SEMANTIC] = semantic_hits
            answered += len(channels)
            ranked = fuse(entity_type, channels, self.weights)[: filters.limit]
            result.group(entity_type).extend(ranked)

        if answered == 0:
            raise SearchError(f"All search sources failed: {', '.join(failed)}")
        return result

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------

    def _collect(
        self, future: Future[list[Candidate]], entity_type: EntityType, source: Source
    ) -> list[Candidate] | None:
        """Wait for *future*; a failure or timeout degrades to None."""
        try:
            return future.result(timeout=self.timeout)
        except Exception as exc:
            future.cancel()
            logger.warning(
                "%s search for %s failed, degrading: %s: %s",
                source.value, entity_type.value, type(exc).__name__, exc,
            )
            return None

    def _run_lexical(
        self, entity_type: EntityType, fts_query: str, filters: SearchFilters, limit: int
    ) -> list[Candidate]:
        hits = self._lexical.query(entity_type, fts_query, filters, limit)
        return [
            Candidate(entity_id=h.entity_id, score=h.score, title=h.title, updated_at=h.updated_at)
            for h in hits
        ]

    def _run_semantic(self, query: str, filters: SearchFilters, limit: int) -> list[Candidate]:
        vector = self._embedder.embed(query)
        metadata_filter = {"category": filters.category} if filters.category else None
        matches = self._index.query(vector, limit * _CHUNKS_PER_NOTE, metadata_filter)

        # Collapse chunk hits to the best chunk per work note.
        best: dict[str, float] = {}
        for match in matches:
            work_id = match.metadata.get("work_id") or parse_chunk_id(match.id)[0]
            if work_id not in best or match.score > best[work_id]:
                best[work_id] = match.score

        notes = self._repo.filter_work_note_ids(list(best), filters)
        return [
            Candidate(
                entity_id=work_id,
                score=score,
                title=notes[work_id].title,
                updated_at=notes[work_id].updated_at,
            )
            for work_id, score in best.items()
            if work_id in notes
        ][:limit]
