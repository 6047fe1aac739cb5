"""notesync ingest pipeline: chunker, embedding client, embedding processor."""

from notesync.ingest.chunker import Chunker, generate_chunk_id, parse_chunk_id
from notesync.ingest.embedding_client import (
    EmbeddingClient,
    EmbeddingProviderError,
    LiteLLMEmbeddingClient,
)
from notesync.ingest.processor import (
    EmbeddingProcessor,
    EmbedError,
    EmbedResult,
    EmbedStatus,
    FailureReason,
    ReindexReport,
)

__all__ = [
    "Chunker",
    "EmbedError",
    "EmbedResult",
    "EmbedStatus",
    "EmbeddingClient",
    "EmbeddingProcessor",
    "EmbeddingProviderError",
    "FailureReason",
    "LiteLLMEmbeddingClient",
    "ReindexReport",
    "generate_chunk_id",
    "parse_chunk_id",
]
