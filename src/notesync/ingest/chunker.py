"""Sliding-window chunker for work notes.

The title and content are joined as ``f"{title}\\n\\n{content}"`` and split
into overlapping windows. Token counting uses a 4-chars-per-token
approximation; no external tokenizer dependency is required.
"""

from __future__ import annotations

import re

from notesync.db.models import EmbeddingChunk, RecordSnapshot

CHARS_PER_TOKEN = 4

# Chunks are always produced for this scope; other scopes (file attachments)
# share the id format but are indexed elsewhere.
WORK_SCOPE = "WORK"

_CHUNK_ID_RE = re.compile(r"^(.+?)#chunk(\d+)$")


def generate_chunk_id(work_id: str, chunk_index: int) -> str:
    """Return the stable vector id ``<workId>#chunk<N>``."""
    return f"{work_id}#chunk{chunk_index}"


def parse_chunk_id(chunk_id: str) -> tuple[str, int]:
    """Split a chunk id back into ``(work_id, chunk_index)``.

    Raises:
        ValueError: If *chunk_id* is not in ``<workId>#chunk<N>`` form.
    """
    match = _CHUNK_ID_RE.match(chunk_id)
    if match is None:
        raise ValueError(f"Invalid chunk ID format: {chunk_id!r}")
    return match.group(1), int(match.group(2))


class Chunker:
    """Split a record snapshot into overlapping EmbeddingChunks.

    Window size is ``chunk_size * 4`` characters; consecutive windows overlap
    by ``overlap`` of the window. A trailing window shorter than
    ``min_chunk_ratio`` of the window size is merged into the previous window,
    which then runs to the end of the text. Text that fits in one window yields
    exactly one chunk.
    """

    def __init__(
        self,
        chunk_size: int = 512,
        overlap: float = 0.20,
        min_chunk_ratio: float = 0.10,
    ) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        if not 0.0 <= overlap < 1.0:
            raise ValueError("overlap must be in [0.0, 1.0)")
        if not 0.0 <= min_chunk_ratio < 1.0:
            raise ValueError("min_chunk_ratio must be in [0.0, 1.0)")
        self.chunk_size = chunk_size
        self.overlap = overlap
        self.min_chunk_ratio = min_chunk_ratio

    @staticmethod
    def count_tokens(text: str) -> int:
        """Approximate token count: 4 characters ≈ 1 token."""
        return max(1, -(-len(text) // CHARS_PER_TOKEN))

    @staticmethod
    def full_text(title: str, content: str) -> str:
        return f"{title}\n\n{content}"

    def chunk(self, snapshot: RecordSnapshot) -> list[EmbeddingChunk]:
        """Chunk *snapshot* into EmbeddingChunks with sequential ``chunk_index``.

        Returns an empty list when both title and content are blank; the
        caller treats that as a permanent (non-retryable) failure.
        """
        if not (snapshot.title or "").strip() and not (snapshot.content_raw or "").strip():
            return []
        text = self.full_text(snapshot.title or "", snapshot.content_raw or "")
        base_metadata = self._base_metadata(snapshot)
        return [
            EmbeddingChunk(
                id=generate_chunk_id(snapshot.work_id, i),
                text=segment,
                metadata={**base_metadata, "chunk_index": i},
            )
            for i, segment in enumerate(self.split(text))
        ]

    def split(self, text: str) -> list[str]:
        """Split *text* into overlapping windows (no stripping, offsets are stable)."""
        if not text:
            return []
        char_size = self.chunk_size * CHARS_PER_TOKEN
        if len(text) <= char_size:
            return [text]

        step = max(1, int(char_size * (1 - self.overlap)))
        min_chars = char_size * self.min_chunk_ratio

        segments: list[str] = []
        pos = prev = 0
        while pos < len(text):
            segment = text[pos:pos + char_size]
            if pos > 0 and len(segment) < min_chars:
                # Short tail: the previous window absorbs it.
                segments[-1] = text[prev:]
                break
            segments.append(segment)
            if pos + char_size >= len(text):
                break
            prev = pos
            pos += step
        return segments

    @staticmethod
    def _base_metadata(snapshot: RecordSnapshot) -> dict:
        metadata: dict = {
            "work_id": snapshot.work_id,
            "scope": WORK_SCOPE,
            "created_at_bucket": snapshot.created_at_bucket,
        }
        if snapshot.category:
            metadata["category"] = snapshot.category
        if snapshot.person_ids:
            metadata["person_ids"] = ",".join(snapshot.person_ids)
        if snapshot.dept_name:
            metadata["dept_name"] = snapshot.dept_name
        return metadata
